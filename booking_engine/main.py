import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from booking_engine.api.error_handlers import register_exception_handlers
from booking_engine.api.routes.routes import router
from booking_engine.application.event_status_scheduler import EventStatusScheduler
from booking_engine.config import settings
from booking_engine.infrastructure.db.session import SessionLocal, engine
from booking_engine.infrastructure.db.models import Base

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(title=settings.PROJECT_NAME)

register_exception_handlers(app)
app.include_router(router, prefix="/api/v1")
logger = logging.getLogger(__name__)

scheduler = EventStatusScheduler(
    session_factory=SessionLocal,
    interval_seconds=settings.EVENT_STATUS_INTERVAL_SECONDS,
)


def _wait_for_db() -> None:
    # Handles the common case where API starts before Postgres is ready.
    max_retries = settings.DB_CONNECT_MAX_RETRIES
    retry_delay_seconds = settings.DB_CONNECT_RETRY_DELAY

    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable.")
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL and Postgres status.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


@app.on_event("startup")
def on_startup() -> None:
    _wait_for_db()
    Base.metadata.create_all(bind=engine)
    if settings.EVENT_STATUS_SCHEDULER_ENABLED:
        scheduler.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    scheduler.stop(timeout=settings.EVENT_STATUS_INTERVAL_SECONDS)
