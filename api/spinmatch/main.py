import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .config import LOG_LEVEL, SWEEP_ON_STARTUP
from .database import Base, SessionLocal, engine
from .deps import get_matchmaker
from .routes import include_modular_routers
from .scheduler import SweepScheduler

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Spin Match API")
include_modular_routers(app)

_scheduler: SweepScheduler | None = None


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


@app.on_event("startup")
def on_startup() -> None:
    global _scheduler
    wait_for_db()
    Base.metadata.create_all(bind=engine)
    if SWEEP_ON_STARTUP:
        matchmaker = get_matchmaker()
        _scheduler = SweepScheduler(matchmaker, matchmaker.settings.sweep_interval_seconds)
        _scheduler.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.stop(timeout=5)
        _scheduler = None


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
