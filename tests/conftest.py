import asyncio
import json
import os
import tempfile
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

# Keep the import-time engine away from the production default path.
os.environ.setdefault("DB_PATH", str(Path(tempfile.gettempdir()) / "decision_recovery_import.db"))
os.environ.pop("GEMINI_API_KEY", None)
os.environ.pop("GOOGLE_API_KEY", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from decision_recovery.core.security import get_password_hash
from decision_recovery.db.models import DailyStep, User
from decision_recovery.db.session import SessionLocal, configure_database, create_tables
from decision_recovery.services.llm import GenerationFailed, get_generation_client

QUESTIONS_PROMPT = "Generate the questions now."


class FakeScenario(str, Enum):
    OK = "OK"
    UNIQUE_DECISIONS = "UNIQUE_DECISIONS"
    PROSE_QUESTIONS = "PROSE_QUESTIONS"
    UNPARSEABLE = "UNPARSEABLE"
    FAILED = "FAILED"
    UNCONFIGURED = "UNCONFIGURED"


class FakeGenerationClient:
    def __init__(self, scenario: FakeScenario) -> None:
        self.scenario = scenario
        self.calls: list[dict] = []

    @property
    def configured(self) -> bool:
        return self.scenario != FakeScenario.UNCONFIGURED

    @property
    def question_calls(self) -> list[dict]:
        return [call for call in self.calls if call["prompt"] == QUESTIONS_PROMPT]

    @property
    def decision_calls(self) -> list[dict]:
        return [call for call in self.calls if call["prompt"] != QUESTIONS_PROMPT]

    async def generate(
        self, prompt: str, system_instruction: str, max_output_tokens: int, temperature: float
    ) -> str:
        self.calls.append(
            {
                "prompt": prompt,
                "system_instruction": system_instruction,
                "max_output_tokens": max_output_tokens,
                "temperature": temperature,
            }
        )
        # Yield so concurrent callers interleave the way separate requests would.
        await asyncio.sleep(0)
        if self.scenario == FakeScenario.FAILED:
            raise GenerationFailed("simulated exhaustion", model="gemini-2.0-flash")
        if prompt == QUESTIONS_PROMPT:
            if self.scenario == FakeScenario.UNPARSEABLE:
                return "I would rather not."
            if self.scenario == FakeScenario.PROSE_QUESTIONS:
                return (
                    "Here are your questions:\n"
                    "1. What felt lighter after yesterday's action?\n"
                    "2) Where did you notice resistance today?\n"
                    "- Short?\n"
                    "* What would make tomorrow easier to start?\n"
                )
            return json.dumps([f"Generated question {idx}?" for idx in range(1, 7)])
        if self.scenario == FakeScenario.UNIQUE_DECISIONS:
            return f"Write the first line of the draft. (call {len(self.calls)})"
        return "  Write the first line of the draft before lunch.  "


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "decision_recovery_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from decision_recovery.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(has_completed_program: bool = False) -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(
            name="Test User",
            email=email,
            password_hash=get_password_hash("StrongPass123"),
            has_completed_program=has_completed_program,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def seed_step(db_session: Session) -> Callable[..., DailyStep]:
    def _seed(
        user_id: int,
        step_date: date,
        day_number: int,
        content: str = "Take a short walk.",
        questions: Optional[list[str]] = None,
        created_at: Optional[datetime] = None,
    ) -> DailyStep:
        row = DailyStep(
            user_id=user_id,
            step_date=step_date.isoformat(),
            day_number=day_number,
            questions_json=json.dumps(questions or ["Seeded question?"]),
            answers_json=json.dumps(["Seeded answer"]),
            content=content,
            session_id=str(uuid4()),
            created_at=created_at or datetime.utcnow(),
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def today() -> date:
    return datetime.now(timezone.utc).date()


@pytest.fixture
def yesterday(today: date) -> date:
    return today - timedelta(days=1)


@pytest.fixture
def auth_token(client: TestClient) -> str:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    signup = client.post(
        "/auth/signup",
        json={"first_name": "Avery", "last_name": "Stone", "email": email, "password": password},
    )
    assert signup.status_code == 201
    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    return login.json()["access_token"]


@pytest.fixture
def fake_generation_factory() -> Callable[[FakeScenario], FakeGenerationClient]:
    def _factory(scenario: FakeScenario) -> FakeGenerationClient:
        return FakeGenerationClient(scenario)

    return _factory


@pytest.fixture
def override_generation(app, fake_generation_factory):
    def _override(scenario: FakeScenario) -> FakeGenerationClient:
        fake = fake_generation_factory(scenario)
        app.dependency_overrides[get_generation_client] = lambda: fake
        return fake

    return _override
