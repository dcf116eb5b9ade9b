"""
Repository layer for Storage Health Core database operations.

This module provides repository classes that encapsulate database access patterns
and provide clean async interfaces for database operations. Repositories handle:
- CRUD operations for User, ProviderToken and UploadTask entities
- Encryption/decryption of OAuth tokens
- Selection queries used by the reconnection sweep and health snapshots
- Transaction error handling

Security: All OAuth tokens are automatically encrypted/decrypted by repositories.
"""

import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..utils.crypto import CryptoService, CryptoServiceError, get_crypto_service
from .models import ProviderToken, UploadTask, User


class RepositoryError(Exception):
    """Base exception for repository operations."""

    pass


class UserNotFoundError(RepositoryError):
    """Raised when a user is not found."""

    pass


class TaskNotFoundError(RepositoryError):
    """Raised when an upload task is not found."""

    pass


class UsersRepository:
    """Repository for User entity operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_user(
        self, email: str, name: Optional[str] = None, status: str = "active"
    ) -> User:
        """
        Create a new user.

        Raises:
            RepositoryError: If user creation fails (e.g., duplicate email)
        """
        try:
            user = User(
                id=uuid.uuid4(),
                email=email.lower().strip(),
                name=name,
                status=status,
            )

            self.session.add(user)
            await self.session.flush()

            return user

        except IntegrityError as e:
            await self.session.rollback()
            raise RepositoryError(f"User with email {email} already exists") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error creating user: {e}") from e

    async def get_user_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        try:
            return await self.session.get(User, user_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting user: {e}") from e

    async def get_user_by_email(self, email: str) -> Optional[User]:
        try:
            result = await self.session.execute(
                select(User).where(User.email == email.lower().strip())
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting user by email: {e}") from e

    async def require_user(self, user_id: uuid.UUID) -> User:
        """Get a user or raise UserNotFoundError."""
        user = await self.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    async def create_or_get_user(self, email: str, name: Optional[str] = None) -> User:
        user = await self.get_user_by_email(email)
        if user:
            return user
        return await self.create_user(email, name=name)


class ProviderTokensRepository:
    """
    Repository for ProviderToken (OAuth token record) operations.

    Handles encrypted storage with one record per (user, provider). Saving a
    token response that omits the refresh token keeps the stored one.
    """

    def __init__(self, session: AsyncSession, crypto: Optional[CryptoService] = None):
        self.session = session
        self.crypto = crypto or get_crypto_service()

    async def get_token(
        self, user_id: uuid.UUID, provider: str
    ) -> Optional[ProviderToken]:
        try:
            result = await self.session.execute(
                select(ProviderToken)
                .where(ProviderToken.user_id == user_id)
                .where(ProviderToken.provider == provider)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting token: {e}") from e

    async def list_tokens(self, provider: Optional[str] = None) -> List[ProviderToken]:
        """List token records, earliest expiry first."""
        stmt = select(ProviderToken).order_by(ProviderToken.expires_at)
        if provider:
            stmt = stmt.where(ProviderToken.provider == provider)
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error listing tokens: {e}") from e

    async def save_token(
        self,
        user_id: uuid.UUID,
        provider: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        token_type: Optional[str] = None,
        scopes: Optional[Iterable[str]] = None,
    ) -> ProviderToken:
        """
        Create or update the token record for (user, provider).

        Args:
            refresh_token: New refresh token; None or empty keeps the stored one
            scopes: Granted scopes; None keeps the stored ones

        Raises:
            RepositoryError: If encryption or the database write fails
        """
        try:
            record = await self.get_token(user_id, provider)
            if record is None:
                record = ProviderToken(id=uuid.uuid4(), user_id=user_id, provider=provider)
                self.session.add(record)

            record.access_token_ciphertext = self.crypto.encrypt_token(access_token)
            if refresh_token:
                record.refresh_token_ciphertext = self.crypto.encrypt_token(
                    refresh_token
                )
            record.expires_at = expires_at
            if token_type:
                record.token_type = token_type
            if scopes is not None:
                record.scopes = sorted(set(scopes))

            await self.session.flush()
            return record

        except CryptoServiceError as e:
            await self.session.rollback()
            raise RepositoryError(f"Token encryption failed: {e}") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error saving token: {e}") from e

    async def delete_token(self, user_id: uuid.UUID, provider: str) -> bool:
        """Remove the token record on explicit disconnect."""
        record = await self.get_token(user_id, provider)
        if record is None:
            return False
        try:
            await self.session.delete(record)
            await self.session.flush()
            return True
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error deleting token: {e}") from e

    def decrypt_access_token(self, record: ProviderToken) -> str:
        try:
            return self.crypto.decrypt_token(record.access_token_ciphertext)
        except CryptoServiceError as e:
            raise RepositoryError(f"Failed to decrypt access token: {e}") from e

    def decrypt_refresh_token(self, record: ProviderToken) -> Optional[str]:
        if record.refresh_token_ciphertext is None:
            return None
        try:
            return self.crypto.decrypt_token(record.refresh_token_ciphertext)
        except CryptoServiceError as e:
            raise RepositoryError(f"Failed to decrypt refresh token: {e}") from e


class UploadTasksRepository:
    """
    Repository for UploadTask operations.

    Selection helpers never return tasks that already have a provider_file_id.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_task(
        self,
        user_id: uuid.UUID,
        provider: str,
        original_filename: str,
        local_path: str,
        size_bytes: int,
        mime_type: Optional[str] = None,
        description: Optional[str] = None,
    ) -> UploadTask:
        try:
            task = UploadTask(
                id=uuid.uuid4(),
                user_id=user_id,
                provider=provider,
                original_filename=original_filename,
                local_path=local_path,
                size_bytes=size_bytes,
                mime_type=mime_type,
                description=description,
                attempts=0,
            )
            self.session.add(task)
            await self.session.flush()
            return task
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error creating upload task: {e}") from e

    async def get_task(self, task_id: uuid.UUID) -> Optional[UploadTask]:
        try:
            return await self.session.get(UploadTask, task_id, populate_existing=True)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting upload task: {e}") from e

    async def require_task(self, task_id: uuid.UUID) -> UploadTask:
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Upload task {task_id} not found")
        return task

    async def count_pending(self, user_id: uuid.UUID, provider: str) -> int:
        """Count tasks that have not reached the provider yet."""
        try:
            result = await self.session.execute(
                select(func.count(UploadTask.id))
                .where(UploadTask.user_id == user_id)
                .where(UploadTask.provider == provider)
                .where(UploadTask.provider_file_id.is_(None))
            )
            return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error counting uploads: {e}") from e

    async def find_blocked_tasks(
        self,
        user_id: uuid.UUID,
        provider: str,
        error_types: Optional[Iterable[str]] = None,
        retry_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[UploadTask]:
        """
        Find unfinished tasks currently blocked by an error.

        Args:
            error_types: Only these ErrorKinds (any blocking kind when None)
            retry_before: Skip tasks whose retry_recommended_at is at or after
                this instant (tasks never recommended always qualify)
            limit: Maximum number of tasks, oldest first
        """
        stmt = (
            select(UploadTask)
            .where(UploadTask.user_id == user_id)
            .where(UploadTask.provider == provider)
            .where(UploadTask.provider_file_id.is_(None))
            .where(UploadTask.cloud_storage_error_type.is_not(None))
            .order_by(UploadTask.created_at)
        )
        if error_types is not None:
            stmt = stmt.where(UploadTask.cloud_storage_error_type.in_(list(error_types)))
        if retry_before is not None:
            stmt = stmt.where(
                or_(
                    UploadTask.retry_recommended_at.is_(None),
                    UploadTask.retry_recommended_at < retry_before,
                )
            )
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error finding blocked uploads: {e}") from e

    async def find_recoverable_tasks(
        self, retryable_types: Iterable[str], limit: Optional[int] = None
    ) -> List[UploadTask]:
        """
        Find unfinished tasks that should be in the upload queue.

        That is every task not blocked by an error, plus tasks blocked by a
        retryable error that still have a retry scheduled. Oldest first.
        """
        stmt = (
            select(UploadTask)
            .where(UploadTask.provider_file_id.is_(None))
            .where(
                or_(
                    UploadTask.cloud_storage_error_type.is_(None),
                    and_(
                        UploadTask.cloud_storage_error_type.in_(list(retryable_types)),
                        UploadTask.retry_recommended_at.is_not(None),
                    ),
                )
            )
            .order_by(UploadTask.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error finding unfinished uploads: {e}") from e

    async def reset_for_retry(
        self, tasks: Iterable[UploadTask], reset_attempts: bool = False
    ) -> List[UploadTask]:
        """Clear error fields and stamp retry_recommended_at = now."""
        now = datetime.now(timezone.utc)
        reset = []
        for task in tasks:
            if task.is_completed:
                continue
            task.clear_error()
            task.retry_recommended_at = now
            if reset_attempts:
                task.attempts = 0
            reset.append(task)
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error resetting uploads: {e}") from e
        return reset
