import os

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from turnrelay.config import settings
from turnrelay.database import init_db
from turnrelay.logging_config import get_logger, setup_logging
from turnrelay.pipeline import build_pipeline
from turnrelay.routers import webhook

setup_logging(settings.log_level, settings.log_format)
logger = get_logger("main")

app = FastAPI(
    title="Turnrelay",
    description="WhatsApp gateway relay: inbound aggregation and assistant turns",
    version="0.1.0",
    debug=settings.debug,
)
app.state.pipeline = None

app.include_router(webhook.router)


def _is_startup_wiring_enabled() -> bool:
    return not os.environ.get("PYTEST_CURRENT_TEST")


@app.on_event("startup")
async def start_pipeline() -> None:
    if not _is_startup_wiring_enabled():
        return

    if settings.auto_migrate:
        try:
            init_db()
        except SQLAlchemyError as exc:
            logger.error("Database migration failed", extra={"context": {"error": str(exc)}})

    try:
        app.state.pipeline = build_pipeline(settings)
    except ValueError as exc:
        logger.error("Pipeline not configured, webhook will answer 503", extra={"context": {"error": str(exc)}})
        return
    logger.info(
        "Pipeline started",
        extra={"context": {"buffer_timeout_seconds": settings.buffer_timeout_seconds}},
    )


@app.on_event("shutdown")
async def stop_pipeline() -> None:
    pipeline = app.state.pipeline
    if pipeline is None:
        return
    pending = pipeline.buffer.pending_senders()
    dropped = pipeline.buffer.close()
    await pipeline.buffer.wait_idle()
    logger.info("Pipeline stopped", extra={"context": {"dropped_turns": dropped, "dropped_senders": pending}})
    app.state.pipeline = None


@app.get("/health")
async def health():
    return {"status": "ok"}
