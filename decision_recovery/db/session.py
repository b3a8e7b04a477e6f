import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, delete
from sqlalchemy.orm import Session, sessionmaker

from decision_recovery.db.models import Base, DailyStep

# Override with DB_PATH when needed.
DB_PATH = os.getenv("DB_PATH", "/var/data/decision_recovery.db")
STEP_RETENTION_DAYS = int(os.getenv("STEP_RETENTION_DAYS", "90"))

# Ensure parent directory exists when a nested path is configured.
connect_args = {"check_same_thread": False}


def _build_engine(db_path: str):
    db_parent = Path(db_path).expanduser().resolve().parent
    db_parent.mkdir(parents=True, exist_ok=True)
    database_url = f"sqlite:///{db_path}"
    return create_engine(database_url, connect_args=connect_args)


engine = _build_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_database(db_path: str) -> None:
    global DB_PATH, engine
    DB_PATH = db_path
    engine = _build_engine(DB_PATH)
    SessionLocal.configure(bind=engine)


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)


def purge_expired_steps(db: Session, now: Optional[datetime] = None) -> int:
    """Delete daily steps older than the retention window. Returns the row count."""
    cutoff = (now or datetime.utcnow()) - timedelta(days=STEP_RETENTION_DAYS)
    result = db.execute(delete(DailyStep).where(DailyStep.created_at < cutoff))
    db.commit()
    return result.rowcount or 0


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
