"""
Provider failure classification and the retry/reconnection policy table.

``classify`` maps a provider failure (HTTP status plus message) to an
``ErrorKind``. Every downstream decision (requeue, reconnection, health
impact, the message shown to the user) is read from ``POLICIES`` rather than
re-derived by callers.

Pre-flight checks (file type and size) never reach the provider and are
handled by ``preflight_check``.
"""

import math
from enum import Enum
from pathlib import PurePath
from typing import Dict, List, NamedTuple, Optional

from ..config import Settings, get_settings


class ErrorKind(str, Enum):
    """Closed classification of a provider failure."""

    TOKEN_EXPIRED = "token_expired"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    FOLDER_ACCESS_DENIED = "folder_access_denied"
    API_QUOTA_EXCEEDED = "api_quota_exceeded"
    NETWORK_ERROR = "network_error"
    FILE_TOO_LARGE = "file_too_large"
    INVALID_FILE_TYPE = "invalid_file_type"
    UNKNOWN = "unknown"


class HealthImpact(str, Enum):
    """How strongly an ErrorKind reflects on the connection itself."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ErrorPolicy(NamedTuple):
    retryable: bool
    requires_reconnection: bool
    user_message_template: str
    health_impact: HealthImpact
    recommended_actions: tuple


_RECONNECT_STEPS = (
    "Go to Settings → Cloud Storage",
    'Click "Reconnect {provider}"',
)

POLICIES: Dict[ErrorKind, ErrorPolicy] = {
    ErrorKind.TOKEN_EXPIRED: ErrorPolicy(
        retryable=False,
        requires_reconnection=True,
        user_message_template=(
            "Your {provider} connection has expired. Please reconnect your "
            "{provider} account to continue uploading files."
        ),
        health_impact=HealthImpact.HIGH,
        recommended_actions=_RECONNECT_STEPS
        + ("Complete the authorization process", "Retry your upload"),
    ),
    ErrorKind.INSUFFICIENT_PERMISSIONS: ErrorPolicy(
        retryable=False,
        requires_reconnection=True,
        user_message_template=(
            "Insufficient {provider} permissions. Please reconnect your account "
            "and ensure you grant full access to {provider}."
        ),
        health_impact=HealthImpact.HIGH,
        recommended_actions=_RECONNECT_STEPS
        + (
            "Ensure you grant full access when prompted",
            "Check that you have edit permissions for the target folder",
        ),
    ),
    ErrorKind.FOLDER_ACCESS_DENIED: ErrorPolicy(
        retryable=False,
        requires_reconnection=False,
        user_message_template=(
            "Access denied to the {provider} folder. Please check your folder "
            "permissions or reconnect your account."
        ),
        health_impact=HealthImpact.MEDIUM,
        recommended_actions=(
            "Check that the target folder exists in your {provider}",
            "Verify you have write permissions to the folder",
            "Try reconnecting your {provider} account",
        ),
    ),
    ErrorKind.API_QUOTA_EXCEEDED: ErrorPolicy(
        retryable=True,
        requires_reconnection=False,
        user_message_template=(
            "{provider} API limit reached. Your uploads will resume automatically "
            "in {quota_reset}. No action is required."
        ),
        health_impact=HealthImpact.LOW,
        recommended_actions=(
            "Wait for the quota to reset (usually within an hour)",
            "Uploads will resume automatically",
            "Consider spreading uploads across multiple days for large batches",
        ),
    ),
    ErrorKind.NETWORK_ERROR: ErrorPolicy(
        retryable=True,
        requires_reconnection=False,
        user_message_template=(
            "Network connection issue prevented the {provider} upload. "
            "The upload will be retried automatically."
        ),
        health_impact=HealthImpact.MEDIUM,
        recommended_actions=(
            "Uploads will be retried automatically",
            "Check your internet connection",
            "Contact support if the problem persists",
        ),
    ),
    ErrorKind.FILE_TOO_LARGE: ErrorPolicy(
        retryable=False,
        requires_reconnection=False,
        user_message_template=(
            "The file '{file_name}' is too large for {provider}. "
            "Maximum file size is {max_size} for most file types."
        ),
        health_impact=HealthImpact.NONE,
        recommended_actions=(
            "Compress the file to reduce its size",
            "Split large files into smaller parts",
            "Use the {provider} web interface for very large files",
        ),
    ),
    ErrorKind.INVALID_FILE_TYPE: ErrorPolicy(
        retryable=False,
        requires_reconnection=False,
        user_message_template=(
            "The file type of '{file_name}' is not supported by {provider}. "
            "Please try a different file format."
        ),
        health_impact=HealthImpact.NONE,
        recommended_actions=(
            "Convert the file to a supported format",
            "Check the file types {provider} accepts",
            "Try uploading a different file to test",
        ),
    ),
    ErrorKind.UNKNOWN: ErrorPolicy(
        retryable=False,
        requires_reconnection=False,
        user_message_template="An unexpected error occurred with {provider}. {detail}",
        health_impact=HealthImpact.MEDIUM,
        recommended_actions=(
            "Try uploading the file again",
            "Check your internet connection",
            "Contact support if the problem persists",
        ),
    ),
}

# Kinds the queue retries on its own
RETRYABLE = frozenset(kind for kind, policy in POLICIES.items() if policy.retryable)

# Kinds a fresh OAuth authorization can fix
RECONNECTION_FIXABLE = frozenset(
    {ErrorKind.TOKEN_EXPIRED, ErrorKind.INSUFFICIENT_PERMISSIONS}
)

_NETWORK_MARKERS = ("curl", "connection", "timeout", "timed out", "resolve host")
_QUOTA_MARKERS = ("rate limit", "ratelimit", "quota")


def classify(status_code: Optional[int], message: Optional[str]) -> ErrorKind:
    """
    Classify a provider failure. First matching rule wins.

    Args:
        status_code: HTTP status of the provider response (None for
            transport-level failures)
        message: Provider or exception message, matched case-insensitively

    Examples:
        classify(401, "Token has been expired or revoked")  # TOKEN_EXPIRED
        classify(403, "insufficient permissions for folder")  # FOLDER_ACCESS_DENIED
        classify(429, "Rate Limit Exceeded")  # API_QUOTA_EXCEEDED
    """
    text = (message or "").lower()

    if status_code == 401 or "expired" in text or "revoked" in text:
        return ErrorKind.TOKEN_EXPIRED
    if status_code == 403 and "folder" in text:
        return ErrorKind.FOLDER_ACCESS_DENIED
    if status_code == 403:
        return ErrorKind.INSUFFICIENT_PERMISSIONS
    if status_code == 429 or any(marker in text for marker in _QUOTA_MARKERS):
        return ErrorKind.API_QUOTA_EXCEEDED
    if any(marker in text for marker in _NETWORK_MARKERS):
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.UNKNOWN


def policy_for(kind: ErrorKind) -> ErrorPolicy:
    return POLICIES[ErrorKind(kind)]


def requires_reconnection(kind: ErrorKind) -> bool:
    return policy_for(kind).requires_reconnection


def _format_quota_reset(retry_after: Optional[int]) -> str:
    if not retry_after:
        return "1 hour"
    minutes = math.ceil(retry_after / 60)
    if minutes <= 60:
        return f"{minutes} minutes"
    return f"{math.ceil(minutes / 60)} hours"


def _format_size(size_bytes: float) -> str:
    units = ("B", "KB", "MB", "GB")
    for unit in units:
        if size_bytes < 1024:
            return f"{size_bytes:g}{unit}"
        size_bytes /= 1024
    return f"{size_bytes:g}TB"


def render_user_message(
    kind: ErrorKind,
    provider_name: str = "Google Drive",
    file_name: Optional[str] = None,
    retry_after: Optional[int] = None,
    original_message: Optional[str] = None,
    max_size_bytes: Optional[int] = None,
) -> str:
    """
    Render the user-facing message for an ErrorKind.

    Raw provider text is only included for UNKNOWN failures, where there is
    nothing more specific to say.
    """
    template = policy_for(kind).user_message_template
    return template.format(
        provider=provider_name,
        file_name=file_name or "file",
        quota_reset=_format_quota_reset(retry_after),
        max_size=_format_size(max_size_bytes or get_settings().upload_max_file_size_bytes),
        detail=original_message
        or "Please try again or contact support if the problem persists.",
    )


def recommended_actions(kind: ErrorKind, provider_name: str = "Google Drive") -> List[str]:
    return [
        action.format(provider=provider_name)
        for action in policy_for(kind).recommended_actions
    ]


def retry_delay(kind: ErrorKind, attempt: int, retry_after: Optional[int] = None) -> int:
    """
    Seconds to wait before the next attempt.

    Args:
        attempt: 1-based number of the attempt that just failed
        retry_after: Provider-supplied Retry-After, honored for quota errors
    """
    attempt = max(1, attempt)
    if kind == ErrorKind.API_QUOTA_EXCEEDED:
        return int(retry_after) if retry_after else 3600
    if kind == ErrorKind.NETWORK_ERROR:
        return min(300, 30 * 2 ** (attempt - 1))
    return min(300, 30 * attempt)


def max_attempts(kind: ErrorKind, settings: Optional[Settings] = None) -> int:
    """Maximum automatic attempts for a kind (0 = never auto-retried)."""
    settings = settings or get_settings()
    if kind == ErrorKind.NETWORK_ERROR:
        return settings.upload_network_max_attempts
    if kind == ErrorKind.API_QUOTA_EXCEEDED:
        return settings.upload_quota_max_attempts
    return 0


def should_retry(
    kind: ErrorKind, attempt: int, settings: Optional[Settings] = None
) -> bool:
    """Whether a task that just failed its ``attempt``-th try goes back to the queue."""
    return policy_for(kind).retryable and attempt < max_attempts(kind, settings)


def preflight_check(
    file_name: str, size_bytes: int, settings: Optional[Settings] = None
) -> Optional[ErrorKind]:
    """
    Validate a file before any token or network work.

    Returns:
        INVALID_FILE_TYPE, FILE_TOO_LARGE, or None when the file may be sent
    """
    settings = settings or get_settings()
    extension = PurePath(file_name).suffix.lower().lstrip(".")
    if extension and extension in settings.upload_blocked_extensions:
        return ErrorKind.INVALID_FILE_TYPE
    if size_bytes > settings.upload_max_file_size_bytes:
        return ErrorKind.FILE_TOO_LARGE
    return None
