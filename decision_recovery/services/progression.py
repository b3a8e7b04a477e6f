import logging
import os
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from decision_recovery.db.models import DailyStep, User
from decision_recovery.db.store import (
    ConstraintViolation,
    StorageUnavailable,
    find_step,
    insert_step_if_absent,
    loads_list,
    mark_program_completed,
    recent_steps,
)
from decision_recovery.services.decisions import synthesize
from decision_recovery.services.llm import GenerationClient
from decision_recovery.services.questions import PROGRAM_LENGTH_DAYS, canned_questions, questions_for
from decision_recovery.services.session_cache import new_session_token, record_session

logger = logging.getLogger("uvicorn.error")

FORCED_DAY_CACHE_TTL_SECONDS = int(os.getenv("FORCED_DAY_CACHE_TTL_SECONDS", str(30 * 60)))
PRIOR_STEP_LIMIT = 6
GRADUATION_PREVIEW_DAY = PROGRAM_LENGTH_DAYS + 1

CLOSING_QUESTIONS = ["What is one way you can carry this clarity with you into the next week?"]
GRADUATION_PREVIEW_QUESTIONS = ["Congratulations on completing the program."]


class InvalidSubmission(ValueError):
    pass


@dataclass(frozen=True)
class DayState:
    day_number: int
    questions: list[str]
    has_completed_program: bool


@dataclass(frozen=True)
class CompletionResult:
    decision: str
    session_token: str
    already_completed_today: bool
    is_graduating: bool


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def date_key(value: date) -> str:
    return value.isoformat()


class ForcedDayCache:
    """Process-local question cache for forced-day previews, keyed by (user_id, day)."""

    def __init__(self, ttl_seconds: float = FORCED_DAY_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[int, int], tuple[float, list[str]]] = {}

    def get(self, user_id: int, day_number: int) -> Optional[list[str]]:
        key = (user_id, day_number)
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, questions = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return list(questions)

    def put(self, user_id: int, day_number: int, questions: Sequence[str]) -> None:
        self.evict_expired()
        self._entries[(user_id, day_number)] = (self._clock() + self.ttl_seconds, list(questions))

    def evict_expired(self) -> None:
        now = self._clock()
        for key in [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


def calculate_day_number(db: Session, user_id: int, today: date) -> int:
    """Consecutive program day: yesterday's day + 1 (max 7), or 1 after any missed day."""
    yesterday = date_key(today - timedelta(days=1))
    try:
        step = find_step(db, user_id, yesterday)
    except StorageUnavailable as exc:
        logger.warning("progression_history_unavailable user_id=%s detail=%s", user_id, str(exc))
        return 1
    if step is None:
        return 1
    return min(step.day_number + 1, PROGRAM_LENGTH_DAYS)


def _replay(step: DailyStep) -> CompletionResult:
    return CompletionResult(
        decision=step.content,
        session_token=step.session_id,
        already_completed_today=True,
        is_graduating=False,
    )


class ProgressionTracker:
    def __init__(self, forced_cache: Optional[ForcedDayCache] = None) -> None:
        self.forced_cache = forced_cache if forced_cache is not None else ForcedDayCache()

    async def current_day(
        self,
        db: Session,
        user: User,
        client: GenerationClient,
        force_day: Optional[int] = None,
        today: Optional[date] = None,
    ) -> DayState:
        if user.has_completed_program:
            return DayState(PROGRAM_LENGTH_DAYS, list(CLOSING_QUESTIONS), True)
        if force_day == GRADUATION_PREVIEW_DAY:
            return DayState(PROGRAM_LENGTH_DAYS, list(GRADUATION_PREVIEW_QUESTIONS), True)

        user_id = user.id
        today = today or utc_today()
        forcing = force_day is not None and 1 <= force_day <= PROGRAM_LENGTH_DAYS

        if not forcing:
            try:
                todays_step = await run_in_threadpool(find_step, db, user_id, date_key(today))
            except StorageUnavailable as exc:
                logger.warning("progression_today_lookup_failed user_id=%s detail=%s", user_id, str(exc))
                todays_step = None
            if todays_step is not None:
                # Submissions may omit the questions they answered.
                questions = loads_list(todays_step.questions_json) or canned_questions(todays_step.day_number)
                return DayState(todays_step.day_number, questions, False)

        if forcing:
            day_number = force_day
            cached = self.forced_cache.get(user_id, day_number)
            if cached is not None:
                return DayState(day_number, cached, False)
        else:
            day_number = await run_in_threadpool(calculate_day_number, db, user_id, today)

        try:
            prior = await run_in_threadpool(recent_steps, db, user_id, limit=PRIOR_STEP_LIMIT)
        except StorageUnavailable as exc:
            logger.warning("progression_prior_steps_unavailable user_id=%s detail=%s", user_id, str(exc))
            prior = []

        questions = await questions_for(client, day_number, [step.content for step in prior])
        if forcing:
            self.forced_cache.put(user_id, day_number, questions)
        return DayState(day_number, questions, False)

    async def complete_today(
        self,
        db: Session,
        user: User,
        answers: Sequence[str],
        questions: Sequence[str],
        day_number: int,
        client: GenerationClient,
        today: Optional[date] = None,
    ) -> CompletionResult:
        """Record today's step once. Duplicate and racing submissions get the stored step back."""
        if not 1 <= day_number <= PROGRAM_LENGTH_DAYS:
            raise InvalidSubmission(f"dayNumber must be between 1 and {PROGRAM_LENGTH_DAYS}")

        user_id = user.id
        step_date = date_key(today or utc_today())
        existing = await run_in_threadpool(find_step, db, user_id, step_date)
        if existing is not None:
            return _replay(existing)

        session_token = new_session_token()
        decision = await synthesize(client, answers, day_number)

        try:
            await run_in_threadpool(
                insert_step_if_absent,
                db,
                user_id=user_id,
                step_date=step_date,
                day_number=day_number,
                questions=list(questions),
                answers=list(answers),
                content=decision,
                session_id=session_token,
            )
        except ConstraintViolation:
            logger.info("daily_step_race_lost user_id=%s date=%s", user_id, step_date)
            winner = await run_in_threadpool(find_step, db, user_id, step_date)
            if winner is None:
                raise StorageUnavailable(f"winning daily step not readable user_id={user_id} date={step_date}")
            return _replay(winner)

        is_graduating = False
        if day_number == PROGRAM_LENGTH_DAYS:
            is_graduating = True
            try:
                await run_in_threadpool(mark_program_completed, db, user_id)
            except StorageUnavailable:
                logger.exception("program_completion_flag_failed user_id=%s", user_id)

        # Analytics mirror; failures are logged inside record_session.
        await run_in_threadpool(record_session, db, session_token, answers, decision)

        return CompletionResult(
            decision=decision,
            session_token=session_token,
            already_completed_today=False,
            is_graduating=is_graduating,
        )
