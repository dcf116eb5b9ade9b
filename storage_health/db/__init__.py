"""
Database module for Storage Health Core.

Single import point for all database functionality.
All other modules should import from here, not from individual files.
"""

from .database import (
    advisory_key,
    create_tables,
    get_async_session,
    get_db_session,
    get_engine,
    get_pool_stats,
    get_session_factory,
    on_shutdown,
    on_startup,
    ping,
    try_advisory_lock,
)
from .models import (
    Base,
    ConnectionHealth,
    OAuthState,
    ProviderToken,
    UploadTask,
    User,
    utcnow,
)
from .repositories import (
    ProviderTokensRepository,
    RepositoryError,
    TaskNotFoundError,
    UploadTasksRepository,
    UserNotFoundError,
    UsersRepository,
)

__all__ = [
    # Session management
    "get_async_session",
    "get_db_session",
    "get_engine",
    "get_session_factory",
    # Advisory locks
    "advisory_key",
    "try_advisory_lock",
    # Lifecycle
    "on_startup",
    "on_shutdown",
    # Health
    "ping",
    "get_pool_stats",
    # Schema
    "create_tables",
    # Models
    "Base",
    "User",
    "ProviderToken",
    "ConnectionHealth",
    "UploadTask",
    "OAuthState",
    "utcnow",
    # Repositories
    "UsersRepository",
    "ProviderTokensRepository",
    "UploadTasksRepository",
    "RepositoryError",
    "UserNotFoundError",
    "TaskNotFoundError",
]
