import logging

from fastapi import FastAPI

from decision_recovery.api.auth import router as auth_router
from decision_recovery.api.program import router as program_router
from decision_recovery.db.session import SessionLocal, create_tables, purge_expired_steps
from decision_recovery.services.progression import ProgressionTracker

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="Decision Recovery")
app.state.progression_tracker = ProgressionTracker()


@app.on_event("startup")
def on_startup() -> None:
    create_tables()
    db = SessionLocal()
    try:
        purged = purge_expired_steps(db)
    finally:
        db.close()
    if purged:
        logger.info("daily_steps_purged count=%s", purged)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Decision Recovery API", "status": "ok"}


app.include_router(auth_router)
app.include_router(program_router)
