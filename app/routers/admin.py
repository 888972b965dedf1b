"""Admin API endpoints for operating the delivery pipeline."""

import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.health_service import check_and_heal, get_system_health
from app.services.rule_config import get_rule_config

router = APIRouter(prefix="/admin", tags=["admin"])


class VersionResponse(BaseModel):
    version: str
    rules_version: str
    git_commit: Optional[str] = None
    build_time: Optional[str] = None


def _require_admin_token(provided: Optional[str]) -> None:
    expected = os.environ.get("ADMIN_TOKEN")
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.get("/health")
def system_health(db: Session = Depends(get_db)):
    """Conversation stages and dedup statuses."""
    return get_system_health(db)


@router.post("/reconcile")
def reconcile(
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Run the reconciliation sweep once."""
    _require_admin_token(x_admin_token)
    return check_and_heal(db)


@router.get("/version", response_model=VersionResponse)
def get_version():
    """Return build metadata for diagnostics."""
    return VersionResponse(
        version=os.environ.get("APP_VERSION", "unknown"),
        rules_version=get_rule_config().engine.version,
        git_commit=os.environ.get("GIT_COMMIT"),
        build_time=os.environ.get("BUILD_TIME"),
    )
