import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from labchat.config import settings
from labchat.database import SessionLocal, get_db
from labchat.logging_config import get_logger, setup_logging
from labchat.models import ChatSession, Lab, OutboxMessage, WhatsAppMessage
from labchat.routers import admin, webhook
from labchat.services.dispatcher import deliver_outbox_rows
from labchat.services.outbox_service import (
    STATUS_PENDING,
    claim_pending_outbox,
    get_outbox_retry_settings,
    release_stale_processing,
)

setup_logging(settings.log_level, mask_phones=settings.log_mask_phones)

app = FastAPI(
    title="Lab Chat API",
    description="WhatsApp conversation backend for diagnostic labs",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(admin.router)

outbox_logger = get_logger("outbox_worker")
_outbox_worker_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_outbox_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("OUTBOX_WORKER_ENABLED"), default=True)


def _get_outbox_worker_settings() -> tuple[float, int, int, int, float]:
    interval_seconds = float(os.environ.get("OUTBOX_WORKER_INTERVAL_SECONDS", "2"))
    interval_seconds = max(interval_seconds, 0.1)
    limit = int(os.environ.get("OUTBOX_PROCESS_LIMIT", "10"))
    stale_seconds = max(int(float(os.environ.get("OUTBOX_STALE_PROCESSING_SECONDS", "120"))), 0)
    max_attempts, retry_backoff_seconds = get_outbox_retry_settings()
    return interval_seconds, limit, stale_seconds, max_attempts, retry_backoff_seconds


def drain_outbox_once(limit: int, stale_seconds: int, max_attempts: int, retry_backoff_seconds: float) -> dict:
    db = SessionLocal()
    try:
        released = release_stale_processing(db, stale_seconds=stale_seconds, max_attempts=max_attempts)
        rows = claim_pending_outbox(db, limit=limit)
        results = deliver_outbox_rows(
            db,
            rows,
            max_attempts=max_attempts,
            retry_backoff_seconds=retry_backoff_seconds,
        )
        results["released"] = released
        return results
    finally:
        db.close()


async def _outbox_worker_loop() -> None:
    while True:
        try:
            interval_seconds, limit, stale_seconds, max_attempts, retry_backoff_seconds = (
                _get_outbox_worker_settings()
            )
            await asyncio.sleep(interval_seconds)
            # Delivery uses blocking HTTP and DB calls
            results = await asyncio.to_thread(
                drain_outbox_once, limit, stale_seconds, max_attempts, retry_backoff_seconds
            )
            if results["claimed"] or results["released"]:
                outbox_logger.info("Outbox worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            outbox_logger.error(
                "Outbox worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_outbox_worker() -> None:
    global _outbox_worker_task
    if not _is_outbox_worker_enabled():
        return
    if _outbox_worker_task is None or _outbox_worker_task.done():
        _outbox_worker_task = asyncio.create_task(_outbox_worker_loop())
        outbox_logger.info("Outbox worker started")


@app.on_event("shutdown")
async def stop_outbox_worker() -> None:
    global _outbox_worker_task
    if _outbox_worker_task is None:
        return
    _outbox_worker_task.cancel()
    try:
        await _outbox_worker_task
    except asyncio.CancelledError:
        pass
    _outbox_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "labs": db.query(Lab).count(),
        "sessions": db.query(ChatSession).count(),
        "messages": db.query(WhatsAppMessage).count(),
        "pending_outbox": db.query(OutboxMessage).filter(OutboxMessage.status == STATUS_PENDING).count(),
    }
