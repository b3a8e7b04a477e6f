import logging
from dataclasses import dataclass
from typing import Optional, Sequence
from uuid import uuid4

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from decision_recovery.db.store import ConstraintViolation, StorageUnavailable, find_session, insert_session
from decision_recovery.services.decisions import synthesize
from decision_recovery.services.llm import GenerationClient

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class Resolution:
    decision: str
    session_token: str


def new_session_token() -> str:
    return str(uuid4())


def record_session(db: Session, session_token: str, answers: Sequence[str], decision: str) -> bool:
    """Best-effort persistence of an answers/decision pair. Never raises."""
    try:
        insert_session(db, session_token, list(answers), decision)
    except ConstraintViolation:
        logger.warning("session_record_duplicate session_id=%s", session_token)
        return False
    except (StorageUnavailable, SQLAlchemyError) as exc:
        logger.warning("session_record_failed session_id=%s detail=%s", session_token, str(exc)[:220])
        return False
    return True


async def resolve(
    db: Session,
    answers: Sequence[str],
    session_token: Optional[str],
    client: GenerationClient,
) -> Resolution:
    """Decision for an anonymous submission; replays the stored one when the token is known."""
    if session_token:
        try:
            existing = await run_in_threadpool(find_session, db, session_token)
        except StorageUnavailable as exc:
            logger.warning("session_lookup_failed session_id=%s detail=%s", session_token, str(exc)[:220])
            existing = None
        if existing:
            return Resolution(decision=existing.generated_decision, session_token=existing.session_id)

    token = session_token or new_session_token()
    decision = await synthesize(client, answers)
    await run_in_threadpool(record_session, db, token, answers, decision)
    return Resolution(decision=decision, session_token=token)
