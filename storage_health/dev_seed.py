#!/usr/bin/env python3
"""
Development data seeding script for Storage Health Core.

Creates a demo user with a Google Drive connection and a handful of upload
tasks in the states the dashboard and the reconnection sweep care about:
one pending, one blocked by an expired token, one waiting out a network
backoff and one rejected by pre-flight validation.

Run with: python -m storage_health.dev_seed
"""

import asyncio
import sys
from datetime import timedelta
from typing import Any, Dict

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import AsyncSession

from .db import (
    ProviderTokensRepository,
    UploadTasksRepository,
    UsersRepository,
    create_tables,
    get_session_factory,
    utcnow,
)
from .providers.google_drive import GOOGLE_DRIVE
from .utils.crypto import CryptoService, get_crypto_service

DEMO_EMAIL = "demo@storage-health.test"

# (filename, size, blocking error, retry offset in minutes)
DEMO_TASKS = [
    ("quarterly-report.pdf", 184_320, None, None),
    ("contract-signed.pdf", 92_160, "token_expired", None),
    ("scan-0042.png", 2_411_724, "network_error", 1),
    ("installer.exe", 31_457_280, "invalid_file_type", None),
]


async def seed_demo_data(session: AsyncSession, crypto: CryptoService) -> Dict[str, Any]:
    """
    Seed the demo user, connection and upload tasks.

    Safe to run repeatedly: the user is reused and the token record is
    overwritten, only the tasks are added again.
    """
    user = await UsersRepository(session).create_or_get_user(DEMO_EMAIL, name="Demo User")

    # Expires inside the proactive window and cannot renew itself
    await ProviderTokensRepository(session, crypto).save_token(
        user.id,
        GOOGLE_DRIVE,
        access_token="ya29.demo-access-token",
        expires_at=utcnow() + timedelta(minutes=30),
        token_type="Bearer",
        scopes=["https://www.googleapis.com/auth/drive.file"],
    )

    tasks_repo = UploadTasksRepository(session)
    task_ids = []
    for filename, size_bytes, error_type, retry_in in DEMO_TASKS:
        task = await tasks_repo.create_task(
            user.id,
            GOOGLE_DRIVE,
            original_filename=filename,
            local_path=f"/var/lib/storage-health/uploads/{filename}",
            size_bytes=size_bytes,
        )
        task.cloud_storage_error_type = error_type
        if retry_in is not None:
            task.retry_recommended_at = utcnow() + timedelta(minutes=retry_in)
        task_ids.append(task.id)

    await session.commit()
    return {"user_id": user.id, "email": user.email, "task_ids": task_ids}


async def main() -> int:
    load_dotenv()

    print("🌱 Storage Health Core - Development Data Seeder")
    print("=" * 50)

    await create_tables()
    print("✅ Database tables created/verified")

    async with get_session_factory()() as session:
        summary = await seed_demo_data(session, get_crypto_service())

    print(f"👤 Demo user: {summary['email']} ({summary['user_id']})")
    print(f"   📄 Upload tasks seeded: {len(summary['task_ids'])}")
    print("\n✨ Development seeding complete!")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
