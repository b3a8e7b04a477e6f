import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from decision_recovery.api.auth import get_current_user, get_optional_user
from decision_recovery.db.models import User
from decision_recovery.db.session import get_db
from decision_recovery.db.store import StorageUnavailable
from decision_recovery.services import session_cache
from decision_recovery.services.llm import GenerationClient, get_generation_client
from decision_recovery.services.progression import InvalidSubmission, ProgressionTracker

router = APIRouter(tags=["program"])
logger = logging.getLogger("uvicorn.error")
DEBUG_FORCE_DAY_ENABLED = os.getenv("DEBUG_FORCE_DAY_ENABLED", "true").strip().lower() in {"1", "true", "yes", "on"}


class DayStateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    questions: list[str]
    day_number: int = Field(alias="dayNumber")
    has_completed_program: bool = Field(alias="hasCompletedProgram")


class DecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    answers: list[str] = Field(min_length=1, max_length=20)
    questions: list[str] = Field(default_factory=list, max_length=20)
    day_number: Optional[int] = Field(default=None, alias="dayNumber")
    session_id: Optional[str] = Field(default=None, alias="sessionId", min_length=1, max_length=64)


class DecisionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    decision: str
    session_id: str = Field(alias="sessionId")
    already_completed_today: bool = Field(default=False, alias="alreadyCompletedToday")
    is_graduating: bool = Field(default=False, alias="isGraduating")


def get_progression_tracker(request: Request) -> ProgressionTracker:
    return request.app.state.progression_tracker


@router.get("/questions", response_model=DayStateResponse)
async def get_todays_questions(
    force_to_day: Optional[int] = Query(default=None, alias="forceToDay", ge=1, le=8),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    tracker: ProgressionTracker = Depends(get_progression_tracker),
) -> DayStateResponse:
    if force_to_day is not None and not DEBUG_FORCE_DAY_ENABLED:
        force_to_day = None
    state = await tracker.current_day(db, user, client, force_day=force_to_day)
    return DayStateResponse(
        questions=state.questions,
        day_number=state.day_number,
        has_completed_program=state.has_completed_program,
    )


@router.post("/decision", response_model=DecisionResponse)
async def submit_decision(
    payload: DecisionRequest,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    tracker: ProgressionTracker = Depends(get_progression_tracker),
) -> DecisionResponse:
    if payload.day_number is not None and not 1 <= payload.day_number <= 7:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="dayNumber must be between 1 and 7")

    if user is not None and payload.day_number is not None:
        try:
            result = await tracker.complete_today(
                db, user, payload.answers, payload.questions, payload.day_number, client
            )
        except InvalidSubmission as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StorageUnavailable as exc:
            # Degrade to the anonymous path rather than failing the submission.
            logger.warning("decision_tracker_unavailable user_id=%s detail=%s", user.id, str(exc))
        else:
            return DecisionResponse(
                decision=result.decision,
                session_id=result.session_token,
                already_completed_today=result.already_completed_today,
                is_graduating=result.is_graduating,
            )

    resolution = await session_cache.resolve(db, payload.answers, payload.session_id, client)
    return DecisionResponse(decision=resolution.decision, session_id=resolution.session_token)
