import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from decision_recovery.core.security import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    create_access_token,
    decode_access_token,
    get_password_hash,
    verify_password,
)
from decision_recovery.db.models import User
from decision_recovery.db.session import get_db
from decision_recovery.db.store import StorageUnavailable, find_user, storage_guard
from decision_recovery.services.notifications import send_welcome_email

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)
logger = logging.getLogger("uvicorn.error")


class SignupRequest(BaseModel):
    first_name: str = Field(min_length=1, max_length=120)
    middle_name: Optional[str] = Field(default=None, max_length=120)
    last_name: str = Field(min_length=1, max_length=120)
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)

    def display_name(self) -> str:
        parts = [self.first_name, self.middle_name or "", self.last_name]
        return " ".join(part.strip() for part in parts if part and part.strip())


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


def _bad_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _already_registered() -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists. Please sign in.")


def _identity_unavailable() -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Identity store unavailable")


def _resolve_user(token: str, db: Session) -> Optional[User]:
    try:
        user_id = int(decode_access_token(token))
    except (JWTError, ValueError):
        return None
    try:
        return find_user(db, user_id)
    except StorageUnavailable as exc:
        logger.error("identity_lookup_failed user_id=%s detail=%s", user_id, str(exc))
        raise _identity_unavailable() from exc


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    user = _resolve_user(token, db)
    if not user:
        raise _bad_credentials()
    return user


def get_optional_user(
    token: Optional[str] = Depends(optional_oauth2_scheme), db: Session = Depends(get_db)
) -> Optional[User]:
    """The caller's user, or None for anonymous (or unverifiable) requests."""
    if not token:
        return None
    return _resolve_user(token, db)


def _issue_token(user: User) -> TokenResponse:
    token = create_access_token(
        subject=str(user.id), expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return TokenResponse(access_token=token)


@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(
    payload: SignupRequest, background_tasks: BackgroundTasks, db: Session = Depends(get_db)
) -> TokenResponse:
    email = payload.email.lower()
    try:
        with storage_guard(db):
            existing = db.query(User).filter(User.email == email).first()
            if existing:
                raise _already_registered()

            user = User(
                name=payload.display_name(),
                email=email,
                password_hash=get_password_hash(payload.password),
                provider="email",
                has_completed_program=False,
            )
            db.add(user)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise _already_registered() from exc
            db.refresh(user)
    except StorageUnavailable as exc:
        logger.error("signup_storage_failed email=%s detail=%s", email, str(exc))
        raise _identity_unavailable() from exc

    background_tasks.add_task(send_welcome_email, user.email, payload.first_name.strip())
    return _issue_token(user)


@router.post("/login", response_model=TokenResponse)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> TokenResponse:
    try:
        with storage_guard(db):
            user = db.query(User).filter(User.email == form_data.username.lower()).first()
    except StorageUnavailable as exc:
        raise _identity_unavailable() from exc
    if not user or not verify_password(form_data.password, user.password_hash):
        raise _bad_credentials()
    return _issue_token(user)
