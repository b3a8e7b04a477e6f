import asyncio
import threading
from datetime import datetime, timedelta

import pytest

from conftest import FakeGenerationClient, FakeScenario
from decision_recovery.db.models import DailyStep, DecisionSession, User
from decision_recovery.db.session import SessionLocal, purge_expired_steps
from decision_recovery.db.store import StorageUnavailable, loads_list
from decision_recovery.services import progression
from decision_recovery.services.progression import (
    CLOSING_QUESTIONS,
    GRADUATION_PREVIEW_QUESTIONS,
    ForcedDayCache,
    InvalidSubmission,
    ProgressionTracker,
    calculate_day_number,
)
from decision_recovery.services.questions import DAY_ONE_QUESTIONS


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _step_count(db, user_id: int) -> int:
    return db.query(DailyStep).filter(DailyStep.user_id == user_id).count()


def test_new_user_starts_at_day_one(db_session, create_user, today) -> None:
    user = create_user()
    assert calculate_day_number(db_session, user.id, today) == 1


def test_day_advances_from_yesterday(db_session, create_user, seed_step, today, yesterday) -> None:
    user = create_user()
    seed_step(user.id, yesterday, 4)
    assert calculate_day_number(db_session, user.id, today) == 5


def test_missed_day_restarts_program(db_session, create_user, seed_step, today) -> None:
    user = create_user()
    seed_step(user.id, today - timedelta(days=2), 4)
    assert calculate_day_number(db_session, user.id, today) == 1


def test_day_six_advances_to_seven(db_session, create_user, seed_step, today, yesterday) -> None:
    user = create_user()
    seed_step(user.id, yesterday, 6)
    assert calculate_day_number(db_session, user.id, today) == 7


def test_day_never_exceeds_seven(db_session, create_user, seed_step, today, yesterday) -> None:
    user = create_user()
    seed_step(user.id, yesterday, 7)
    assert calculate_day_number(db_session, user.id, today) == 7


def test_forced_day_cache_expires_after_ttl() -> None:
    clock = FakeClock()
    cache = ForcedDayCache(ttl_seconds=1800, clock=clock)
    cache.put(1, 3, ["Q?"])
    assert cache.get(1, 3) == ["Q?"]
    assert cache.get(1, 4) is None

    clock.now += 1801
    assert cache.get(1, 3) is None
    assert len(cache) == 0


def test_forced_day_cache_evicts_expired_entries_on_put() -> None:
    clock = FakeClock()
    cache = ForcedDayCache(ttl_seconds=10, clock=clock)
    cache.put(1, 2, ["old?"])
    clock.now += 11
    cache.put(2, 2, ["new?"])
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_current_day_is_idempotent_within_a_day(db_session, create_user, today) -> None:
    user = create_user()
    tracker = ProgressionTracker()
    client = FakeGenerationClient(FakeScenario.OK)

    first = await tracker.current_day(db_session, user, client, today=today)
    second = await tracker.current_day(db_session, user, client, today=today)
    assert first.day_number == second.day_number == 1

    await tracker.complete_today(db_session, user, ["a"] * 5, first.questions, first.day_number, client, today=today)
    stored_one = await tracker.current_day(db_session, user, client, today=today)
    stored_two = await tracker.current_day(db_session, user, client, today=today)

    assert stored_one == stored_two
    assert stored_one.questions == first.questions
    assert stored_one.day_number == 1
    assert len(client.question_calls) == 2


@pytest.mark.asyncio
async def test_current_day_passes_prior_actions_oldest_first(db_session, create_user, seed_step, today) -> None:
    user = create_user()
    for offset in range(8, 0, -1):
        seed_step(user.id, today - timedelta(days=offset), min(9 - offset, 7), content=f"Action {offset}")
    client = FakeGenerationClient(FakeScenario.OK)

    state = await ProgressionTracker().current_day(db_session, user, client, today=today)

    assert state.day_number == 7
    instructions = client.calls[0]["system_instruction"]
    assert "Action 7" not in instructions
    assert instructions.index("Day 1: Action 6") < instructions.index("Day 6: Action 1")


@pytest.mark.asyncio
async def test_completed_program_always_gets_closing_prompt(db_session, create_user, today) -> None:
    user = create_user(has_completed_program=True)
    client = FakeGenerationClient(FakeScenario.OK)

    state = await ProgressionTracker().current_day(db_session, user, client, force_day=3, today=today)

    assert state.day_number == 7
    assert state.has_completed_program is True
    assert state.questions == CLOSING_QUESTIONS
    assert client.calls == []


@pytest.mark.asyncio
async def test_forcing_day_eight_previews_graduation(db_session, create_user, today) -> None:
    user = create_user()
    state = await ProgressionTracker().current_day(
        db_session, user, FakeGenerationClient(FakeScenario.OK), force_day=8, today=today
    )
    assert state.questions == GRADUATION_PREVIEW_QUESTIONS
    assert state.has_completed_program is True


@pytest.mark.asyncio
async def test_forced_day_bypasses_todays_step_and_is_cached(db_session, create_user, seed_step, today) -> None:
    user = create_user()
    seed_step(user.id, today, 1, questions=["Stored?"])
    tracker = ProgressionTracker()
    client = FakeGenerationClient(FakeScenario.OK)

    first = await tracker.current_day(db_session, user, client, force_day=5, today=today)
    second = await tracker.current_day(db_session, user, client, force_day=5, today=today)

    assert first.day_number == second.day_number == 5
    assert first.questions == second.questions
    assert first.questions != ["Stored?"]
    assert len(client.question_calls) == 1


@pytest.mark.asyncio
async def test_history_outage_degrades_to_day_one(db_session, create_user, seed_step, yesterday, today, monkeypatch) -> None:
    user = create_user()
    seed_step(user.id, yesterday, 3)

    def _unavailable(*args, **kwargs):
        raise StorageUnavailable("database is locked")

    monkeypatch.setattr(progression, "find_step", _unavailable)
    monkeypatch.setattr(progression, "recent_steps", _unavailable)

    state = await ProgressionTracker().current_day(
        db_session, user, FakeGenerationClient(FakeScenario.UNCONFIGURED), today=today
    )
    assert state.day_number == 1
    assert state.questions == DAY_ONE_QUESTIONS


@pytest.mark.asyncio
@pytest.mark.parametrize("day_number", [0, 8, -1])
async def test_complete_rejects_out_of_range_day(db_session, create_user, day_number) -> None:
    user = create_user()
    client = FakeGenerationClient(FakeScenario.OK)
    with pytest.raises(InvalidSubmission):
        await ProgressionTracker().complete_today(db_session, user, ["a"], ["q"], day_number, client)
    assert client.calls == []
    assert _step_count(db_session, user.id) == 0


@pytest.mark.asyncio
async def test_second_completion_returns_stored_step(db_session, create_user, today) -> None:
    user = create_user()
    tracker = ProgressionTracker()
    client = FakeGenerationClient(FakeScenario.UNIQUE_DECISIONS)

    first = await tracker.complete_today(db_session, user, ["a"], ["q?"], 2, client, today=today)
    second = await tracker.complete_today(db_session, user, ["different"], ["q?"], 2, client, today=today)

    assert first.already_completed_today is False
    assert second.already_completed_today is True
    assert second.decision == first.decision
    assert second.session_token == first.session_token
    assert len(client.decision_calls) == 1

    step = db_session.query(DailyStep).filter(DailyStep.user_id == user.id).one()
    assert loads_list(step.answers_json) == ["a"]
    assert step.step_date == today.isoformat()


@pytest.mark.asyncio
async def test_completion_is_mirrored_into_session_store(db_session, create_user, today) -> None:
    user = create_user()
    result = await ProgressionTracker().complete_today(
        db_session, user, ["a", "b"], ["q1?", "q2?"], 1, FakeGenerationClient(FakeScenario.OK), today=today
    )
    mirrored = db_session.query(DecisionSession).filter(DecisionSession.session_id == result.session_token).one()
    assert mirrored.generated_decision == result.decision
    assert loads_list(mirrored.answers_json) == ["a", "b"]


@pytest.mark.asyncio
async def test_concurrent_completions_leave_exactly_one_step(create_user, db_session, today) -> None:
    user = create_user()
    user_id = user.id
    tracker = ProgressionTracker()
    client = FakeGenerationClient(FakeScenario.UNIQUE_DECISIONS)
    sessions = [SessionLocal() for _ in range(6)]
    try:
        results = await asyncio.gather(
            *[
                tracker.complete_today(db, user, [f"answer {idx}"], ["q?"], 3, client, today=today)
                for idx, db in enumerate(sessions)
            ]
        )
    finally:
        for db in sessions:
            db.close()

    assert len({result.decision for result in results}) == 1
    assert len({result.session_token for result in results}) == 1
    assert sum(1 for result in results if not result.already_completed_today) == 1
    assert _step_count(db_session, user_id) == 1


@pytest.mark.asyncio
async def test_day_seven_graduates_once(create_user, db_session, today) -> None:
    user = create_user()
    user_id = user.id
    tracker = ProgressionTracker()
    client = FakeGenerationClient(FakeScenario.OK)
    sessions = [SessionLocal() for _ in range(2)]
    try:
        results = await asyncio.gather(
            *[tracker.complete_today(db, user, ["done"], ["q?"], 7, client, today=today) for db in sessions]
        )
    finally:
        for db in sessions:
            db.close()

    winners = [result for result in results if not result.already_completed_today]
    losers = [result for result in results if result.already_completed_today]
    assert len(winners) == 1 and winners[0].is_graduating is True
    assert len(losers) == 1 and losers[0].is_graduating is False

    db_session.expire_all()
    refreshed = db_session.query(User).filter(User.id == user_id).one()
    assert refreshed.has_completed_program is True
    assert refreshed.completed_program_at is not None

    replay = await tracker.complete_today(db_session, refreshed, ["again"], ["q?"], 7, client, today=today)
    assert replay.already_completed_today is True
    assert replay.is_graduating is False


@pytest.mark.asyncio
async def test_completion_store_calls_run_off_the_event_loop_thread(db_session, create_user, today, monkeypatch) -> None:
    user = create_user()
    loop_thread = threading.get_ident()
    seen: list[int] = []
    real_find, real_insert = progression.find_step, progression.insert_step_if_absent

    def _find(*args, **kwargs):
        seen.append(threading.get_ident())
        return real_find(*args, **kwargs)

    def _insert(*args, **kwargs):
        seen.append(threading.get_ident())
        return real_insert(*args, **kwargs)

    monkeypatch.setattr(progression, "find_step", _find)
    monkeypatch.setattr(progression, "insert_step_if_absent", _insert)

    result = await ProgressionTracker().complete_today(
        db_session, user, ["a"], ["q?"], 2, FakeGenerationClient(FakeScenario.OK), today=today
    )

    assert result.already_completed_today is False
    assert len(seen) == 2
    assert loop_thread not in seen


def test_purge_removes_only_expired_steps(db_session, create_user, seed_step, today) -> None:
    user = create_user()
    old = seed_step(user.id, today - timedelta(days=120), 1, created_at=datetime.utcnow() - timedelta(days=120))
    recent = seed_step(user.id, today - timedelta(days=10), 1, created_at=datetime.utcnow() - timedelta(days=10))
    old_id, recent_id = old.id, recent.id

    purge_expired_steps(db_session)

    remaining = {row.id for row in db_session.query(DailyStep).filter(DailyStep.user_id == user.id)}
    assert old_id not in remaining
    assert recent_id in remaining
