"""
Integration tests for the development seeder.
"""

from storage_health.db import ProviderTokensRepository, UploadTasksRepository
from storage_health.dev_seed import DEMO_EMAIL, DEMO_TASKS, seed_demo_data
from storage_health.providers.google_drive import GOOGLE_DRIVE


class TestDevSeed:
    async def test_seed_creates_user_connection_and_tasks(self, db_session, crypto):
        summary = await seed_demo_data(db_session, crypto)

        assert summary["email"] == DEMO_EMAIL
        assert len(summary["task_ids"]) == len(DEMO_TASKS)

        tokens = ProviderTokensRepository(db_session, crypto)
        record = await tokens.get_token(summary["user_id"], GOOGLE_DRIVE)
        assert record is not None
        assert record.refresh_token_ciphertext is None

        tasks = UploadTasksRepository(db_session)
        assert await tasks.count_pending(summary["user_id"], GOOGLE_DRIVE) == len(DEMO_TASKS)

    async def test_seed_reuses_existing_user(self, db_session, crypto):
        first = await seed_demo_data(db_session, crypto)
        second = await seed_demo_data(db_session, crypto)

        assert first["user_id"] == second["user_id"]
