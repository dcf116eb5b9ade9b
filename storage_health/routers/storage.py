"""
Storage connection endpoints used by dashboards and the upload UI.

Health snapshots are read-only; retry and upload submission hand work to
the upload queue and return immediately.
"""

import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import (
    TaskNotFoundError,
    UploadTasksRepository,
    UserNotFoundError,
    UsersRepository,
    get_db_session,
)
from ..providers.google_drive import DISPLAY_NAMES, GOOGLE_DRIVE
from ..services.health_service import HealthService, get_health_service
from ..services.reconnection import ConnectionRecoveryService, get_recovery_service
from ..services.token_manager import TokenManager, get_token_manager
from ..services.upload_queue import UploadQueue, get_upload_queue
from ..services.uploads import describe_task, on_user_upload_submitted
from .oauth import error_json

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/storage", tags=["storage"])


class UploadSubmission(BaseModel):
    """Upload request from the file-manager."""

    user_id: uuid.UUID
    provider: str = GOOGLE_DRIVE
    original_filename: str = Field(..., min_length=1, max_length=1024)
    local_path: str = Field(..., min_length=1)
    size_bytes: int = Field(..., ge=0)
    mime_type: Optional[str] = None
    description: Optional[str] = None


def _unknown_provider(provider: str, request: Request):
    return error_json(
        404,
        "STORAGE-UNSUPPORTED-PROVIDER",
        f"Unknown provider: {provider}",
        request,
        origin="storage",
    )


# ===== Uploads =====


@router.post("/uploads", status_code=status.HTTP_201_CREATED)
async def submit_upload(
    submission: UploadSubmission,
    request: Request,
    db: AsyncSession = Depends(get_db_session),  # noqa: B008
    queue: UploadQueue = Depends(get_upload_queue),  # noqa: B008
) -> Dict[str, Any]:
    """Create an UploadTask and enqueue it."""
    if submission.provider not in DISPLAY_NAMES:
        return _unknown_provider(submission.provider, request)
    try:
        await UsersRepository(db).require_user(submission.user_id)
    except UserNotFoundError:
        return error_json(404, "APP-404-NOT-FOUND", "User not found", request, origin="storage")

    task = await on_user_upload_submitted(
        db,
        queue,
        submission.user_id,
        submission.provider,
        original_filename=submission.original_filename,
        local_path=submission.local_path,
        size_bytes=submission.size_bytes,
        mime_type=submission.mime_type,
        description=submission.description,
    )
    return describe_task(task)


@router.get("/uploads/{task_id}")
async def get_upload(
    task_id: uuid.UUID,
    request: Request,
    db: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> Dict[str, Any]:
    try:
        task = await UploadTasksRepository(db).require_task(task_id)
    except TaskNotFoundError:
        return error_json(
            404, "STORAGE-TASK-NOT-FOUND", "Upload task not found", request, origin="storage"
        )
    return describe_task(task)


# ===== Connection Health =====


@router.get("/{user_id}/health")
async def get_all_health(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db_session),  # noqa: B008
    health: HealthService = Depends(get_health_service),  # noqa: B008
) -> Dict[str, Any]:
    """Health snapshot for every supported provider."""
    snapshots = await health.get_all_snapshots(db, user_id, DISPLAY_NAMES.keys())
    return {"user_id": str(user_id), "connections": snapshots}


@router.get("/{user_id}/{provider}/health")
async def get_provider_health(
    user_id: uuid.UUID,
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),  # noqa: B008
    health: HealthService = Depends(get_health_service),  # noqa: B008
) -> Dict[str, Any]:
    """
    Consolidated health for one connection.

    Example response:
        {
            "provider": "google-drive",
            "status": "authentication_required",
            "consecutive_failures": 1,
            "requires_reconnection": true,
            "last_error_type": "token_expired",
            "user_friendly_message": "Your Google Drive connection has expired...",
            "pending_uploads_count": 3,
            ...
        }
    """
    if provider not in DISPLAY_NAMES:
        return _unknown_provider(provider, request)
    return await health.get_health_snapshot(db, user_id, provider)


@router.post("/{user_id}/{provider}/retry")
async def retry_uploads(
    user_id: uuid.UUID,
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),  # noqa: B008
    recovery: ConnectionRecoveryService = Depends(get_recovery_service),  # noqa: B008
) -> Dict[str, Any]:
    """Requeue every blocked upload for the connection, whatever its error."""
    if provider not in DISPLAY_NAMES:
        return _unknown_provider(provider, request)
    requeued = await recovery.bulk_retry(db, user_id, provider)
    return {"requeued_count": requeued}


@router.delete("/{user_id}/{provider}/connection")
async def disconnect_provider(
    user_id: uuid.UUID,
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),  # noqa: B008
    token_manager: TokenManager = Depends(get_token_manager),  # noqa: B008
) -> Dict[str, Any]:
    if provider not in DISPLAY_NAMES:
        return _unknown_provider(provider, request)
    removed = await token_manager.disconnect(db, user_id, provider)
    return {"disconnected": removed}
