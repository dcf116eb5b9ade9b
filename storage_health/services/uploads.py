"""Upload intake: entry point used by the file-manager when a user submits a file."""

import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import UploadTask, UploadTasksRepository
from ..providers.google_drive import get_provider
from .reconnection import TaskEnqueuer

logger = structlog.get_logger(__name__)


async def on_user_upload_submitted(
    db: AsyncSession,
    queue: TaskEnqueuer,
    user_id: uuid.UUID,
    provider: str,
    original_filename: str,
    local_path: str,
    size_bytes: int,
    mime_type: Optional[str] = None,
    description: Optional[str] = None,
) -> UploadTask:
    """
    Persist a new UploadTask and hand it to the queue.

    Raises:
        UnsupportedProviderError: If the provider id is not registered
    """
    get_provider(provider)

    task = await UploadTasksRepository(db).create_task(
        user_id,
        provider,
        original_filename=original_filename,
        local_path=local_path,
        size_bytes=size_bytes,
        mime_type=mime_type,
        description=description,
    )
    await db.commit()
    queue.enqueue(task.id)

    logger.info(
        "Upload submitted",
        task_id=str(task.id),
        user_id=str(user_id),
        provider=provider,
        size_bytes=size_bytes,
    )
    return task


def describe_task(task: UploadTask) -> Dict[str, Any]:
    context = task.cloud_storage_error_context or {}
    return {
        "id": str(task.id),
        "user_id": str(task.user_id),
        "provider": task.provider,
        "original_filename": task.original_filename,
        "size_bytes": task.size_bytes,
        "status": task.status,
        "attempts": task.attempts,
        "provider_file_id": task.provider_file_id,
        "error_type": task.cloud_storage_error_type,
        "user_message": context.get("user_message"),
        "requires_reconnection": bool(context.get("requires_reconnection", False)),
        "recommended_actions": context.get("recommended_actions", []),
        "retry_recommended_at": (
            task.retry_recommended_at.isoformat() if task.retry_recommended_at else None
        ),
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        "created_at": task.created_at.isoformat() if task.created_at else None,
    }
