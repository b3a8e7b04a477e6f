import json
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from decision_recovery.db.models import DailyStep, DecisionSession, User

STEP_UNIQUE_MARKERS = ("uq_daily_steps_user_date", "daily_steps.user_id, daily_steps.step_date")
SESSION_UNIQUE_MARKERS = ("decision_sessions.session_id", "ix_decision_sessions_session_id")


class StorageUnavailable(RuntimeError):
    """The persistence layer could not be reached or did not answer."""


class ConstraintViolation(RuntimeError):
    def __init__(self, constraint: str, message: str):
        super().__init__(message)
        self.constraint = constraint


def _violates(exc: IntegrityError, markers: tuple[str, ...]) -> bool:
    detail = str(getattr(exc, "orig", exc) or exc)
    return any(marker in detail for marker in markers)


@contextmanager
def storage_guard(db: Session) -> Iterator[None]:
    try:
        yield
    except OperationalError as exc:
        db.rollback()
        raise StorageUnavailable(str(exc.orig or exc)[:220]) from exc


def loads_list(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    try:
        loaded = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(loaded, list):
        return []
    return [str(item) for item in loaded]


def dumps_list(items: list[str]) -> str:
    return json.dumps(list(items), separators=(",", ":"))


def find_user(db: Session, user_id: int) -> Optional[User]:
    with storage_guard(db):
        return db.query(User).filter(User.id == user_id).first()


def find_step(db: Session, user_id: int, step_date: str) -> Optional[DailyStep]:
    with storage_guard(db):
        return (
            db.query(DailyStep)
            .filter(DailyStep.user_id == user_id, DailyStep.step_date == step_date)
            .first()
        )


def recent_steps(db: Session, user_id: int, limit: int = 6) -> list[DailyStep]:
    """Most recent steps for a user, returned oldest first."""
    with storage_guard(db):
        rows = (
            db.query(DailyStep)
            .filter(DailyStep.user_id == user_id)
            .order_by(DailyStep.step_date.desc())
            .limit(limit)
            .all()
        )
    return list(reversed(rows))


def insert_step_if_absent(
    db: Session,
    *,
    user_id: int,
    step_date: str,
    day_number: int,
    questions: list[str],
    answers: list[str],
    content: str,
    session_id: str,
) -> DailyStep:
    """Insert a step, relying on UNIQUE(user_id, step_date) to reject a second writer.

    Raises ConstraintViolation when a step for that user and date already exists.
    Other integrity failures propagate unchanged.
    """
    row = DailyStep(
        user_id=user_id,
        step_date=step_date,
        day_number=day_number,
        questions_json=dumps_list(questions),
        answers_json=dumps_list(answers),
        content=content,
        session_id=session_id,
        completed=True,
    )
    with storage_guard(db):
        db.add(row)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if _violates(exc, STEP_UNIQUE_MARKERS):
                raise ConstraintViolation(
                    "uq_daily_steps_user_date",
                    f"daily step already exists user_id={user_id} date={step_date}",
                ) from exc
            raise
    db.refresh(row)
    return row


def mark_program_completed(db: Session, user_id: int, now: Optional[datetime] = None) -> bool:
    """Flip the completion flag once. Returns False when it was already set."""
    with storage_guard(db):
        result = db.execute(
            update(User)
            .where(User.id == user_id, User.has_completed_program.is_(False))
            .values(has_completed_program=True, completed_program_at=now or datetime.utcnow())
        )
        db.commit()
    return bool(result.rowcount)


def find_session(db: Session, session_id: str) -> Optional[DecisionSession]:
    with storage_guard(db):
        return db.query(DecisionSession).filter(DecisionSession.session_id == session_id).first()


def insert_session(db: Session, session_id: str, answers: list[str], decision: str) -> DecisionSession:
    row = DecisionSession(
        session_id=session_id,
        answers_json=dumps_list(answers),
        generated_decision=decision,
    )
    with storage_guard(db):
        db.add(row)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if _violates(exc, SESSION_UNIQUE_MARKERS):
                raise ConstraintViolation(
                    "uq_decision_sessions_session_id",
                    f"decision session already exists session_id={session_id}",
                ) from exc
            raise
    db.refresh(row)
    return row
