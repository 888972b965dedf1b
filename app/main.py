import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal, get_db
from app.logging_config import get_logger, setup_logging
from app.routers import admin, conversations
from app.services.health_service import check_and_heal

setup_logging(settings.log_level)

app = FastAPI(
    title="LeadPilot API",
    description="Conversation orchestration for the lead qualification agent",
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

app.include_router(conversations.router)
app.include_router(admin.router)

reconcile_logger = get_logger("reconcile_worker")
_reconcile_worker_task: asyncio.Task | None = None


def _is_reconcile_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.reconcile_worker_enabled


def _run_reconciliation_once() -> dict:
    db = SessionLocal()
    try:
        return check_and_heal(db)
    finally:
        db.close()


async def _reconcile_worker_loop() -> None:
    interval_seconds = max(settings.reconcile_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = await asyncio.to_thread(_run_reconciliation_once)
            if results["healed_count"]:
                reconcile_logger.info("Reconcile worker healed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            reconcile_logger.error(
                "Reconcile worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_reconcile_worker() -> None:
    global _reconcile_worker_task
    if not _is_reconcile_worker_enabled():
        return
    if _reconcile_worker_task is None or _reconcile_worker_task.done():
        _reconcile_worker_task = asyncio.create_task(_reconcile_worker_loop())
        reconcile_logger.info("Reconcile worker started")


@app.on_event("shutdown")
async def stop_reconcile_worker() -> None:
    global _reconcile_worker_task
    if _reconcile_worker_task is None:
        return
    _reconcile_worker_task.cancel()
    try:
        await _reconcile_worker_task
    except asyncio.CancelledError:
        pass
    _reconcile_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
