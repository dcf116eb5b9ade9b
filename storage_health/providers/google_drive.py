"""
Storage provider integrations.

A provider wraps one remote storage API behind the ``StorageProvider``
protocol: OAuth code exchange and refresh, the consent URL, file upload and
a cheap operational probe. Failures are raised as ``ProviderError`` carrying
the HTTP status, the provider's message and any Retry-After hint, so the
error classifier can turn them into an ErrorKind.

Only Google Drive is implemented; providers are looked up by id through
``get_provider`` and every caller passes the provider id explicitly.
"""

import asyncio
import json
import mimetypes
import secrets
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Protocol
from urllib.parse import urlencode

import httpx
import structlog

from ..config import Settings, get_settings
from ..services.error_classifier import ErrorKind, classify

logger = structlog.get_logger(__name__)

GOOGLE_DRIVE = "google-drive"
GOOGLE_DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
DISPLAY_NAMES = {GOOGLE_DRIVE: "Google Drive"}


class ProviderError(Exception):
    """
    Failure reported by (or while talking to) a storage provider.

    Attributes:
        status_code: HTTP status, or None for transport-level failures
        message: Provider error text (used for classification)
        retry_after: Seconds the provider asked us to wait, if any
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def is_permanent_auth_failure(self) -> bool:
        """Refresh token revoked or invalid; only a new authorization helps."""
        text = self.message.lower()
        return any(
            marker in text
            for marker in ("invalid_grant", "expired or revoked", "invalid_client", "invalid_token")
        )

    def __repr__(self) -> str:
        return f"ProviderError(status_code={self.status_code}, message={self.message!r})"


class UnsupportedProviderError(ValueError):
    """Raised when a provider id has no registered integration."""

    pass


class TokenGrant(NamedTuple):
    """Token endpoint response (authorization code exchange or refresh)."""

    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    token_type: str
    scopes: List[str]

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return (now or datetime.now(timezone.utc)) + timedelta(seconds=self.expires_in)


class StorageProvider(Protocol):
    provider_id: str
    display_name: str

    def classify(self, status_code: Optional[int], message: Optional[str]) -> ErrorKind: ...

    def build_authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> TokenGrant: ...

    async def refresh(self, refresh_token: str) -> TokenGrant: ...

    async def upload(
        self,
        access_token: str,
        local_path: str,
        file_name: str,
        mime_type: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str: ...

    async def probe(self, access_token: str) -> None: ...

    async def aclose(self) -> None: ...


def _parse_retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        return None


def _error_from_response(response: httpx.Response) -> ProviderError:
    """
    Build a ProviderError from a Google error response.

    Google uses two shapes: OAuth endpoints return
    ``{"error": "invalid_grant", "error_description": "..."}`` while Drive
    endpoints return ``{"error": {"code": 403, "message": "...",
    "errors": [{"reason": "..."}]}}``.
    """
    message = response.text[:500] or response.reason_phrase
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, str):
            description = body.get("error_description")
            message = f"{error}: {description}" if description else error
        elif isinstance(error, dict):
            reasons = [
                item.get("reason") for item in error.get("errors", []) if item.get("reason")
            ]
            message = error.get("message") or message
            if reasons:
                message = f"{message} ({', '.join(reasons)})"

    return ProviderError(
        message,
        status_code=response.status_code,
        retry_after=_parse_retry_after(response),
    )


def _transport_error(exc: httpx.RequestError) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(f"Request timeout: {exc!r}")
    return ProviderError(f"Connection error: {exc!r}")


class GoogleDriveProvider:
    """Google Drive integration over the public OAuth2 and Drive v3 REST APIs."""

    provider_id = GOOGLE_DRIVE
    display_name = DISPLAY_NAMES[GOOGLE_DRIVE]

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=3.0,
                read=float(settings.google_drive_timeout_seconds),
                write=float(settings.google_drive_timeout_seconds),
                pool=10.0,
            ),
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()

    def classify(self, status_code: Optional[int], message: Optional[str]) -> ErrorKind:
        return classify(status_code, message)

    def _require_credentials(self) -> None:
        if not self.settings.google_client_id or not self.settings.google_client_secret:
            raise ProviderError("Google OAuth credentials not configured")

    def build_authorization_url(self, state: str) -> str:
        """Consent URL requesting offline access so a refresh token is issued."""
        self._require_credentials()
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": str(self.settings.google_redirect_uri),
            "response_type": "code",
            "scope": " ".join(GOOGLE_DRIVE_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{self.settings.google_auth_url}?{urlencode(params)}"

    async def _token_request(self, payload: Dict[str, str]) -> TokenGrant:
        self._require_credentials()
        payload = {
            **payload,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
        }

        try:
            response = await self.http_client.post(
                self.settings.google_token_url,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as e:
            raise _transport_error(e) from e

        if response.status_code != 200:
            raise _error_from_response(response)

        body = response.json()
        if "access_token" not in body:
            raise ProviderError(
                "Token response missing access_token", status_code=response.status_code
            )

        expires_in = body.get("expires_in")
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or None,
            expires_in=int(expires_in) if expires_in is not None else None,
            token_type=body.get("token_type") or "Bearer",
            scopes=body.get("scope", "").split(),
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        logger.info(
            "Exchanging Google authorization code",
            redirect_uri=str(self.settings.google_redirect_uri),
        )
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": str(self.settings.google_redirect_uri),
            }
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def upload(
        self,
        access_token: str,
        local_path: str,
        file_name: str,
        mime_type: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        """
        Upload one file with a multipart/related request.

        Returns:
            The Drive file id
        """
        content = await asyncio.to_thread(Path(local_path).read_bytes)
        mime_type = (
            mime_type or mimetypes.guess_type(file_name)[0] or "application/octet-stream"
        )

        metadata: Dict[str, object] = {"name": file_name}
        if description:
            metadata["description"] = description
        if self.settings.google_drive_root_folder_id:
            metadata["parents"] = [self.settings.google_drive_root_folder_id]

        boundary = f"storage_health_{secrets.token_hex(12)}"
        body = b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(metadata).encode("utf-8"),
                f"\r\n--{boundary}\r\n".encode(),
                f"Content-Type: {mime_type}\r\n\r\n".encode(),
                content,
                f"\r\n--{boundary}--\r\n".encode(),
            ]
        )

        try:
            response = await self.http_client.post(
                f"{self.settings.google_drive_upload_url}/files",
                params={"uploadType": "multipart", "fields": "id,name"},
                content=body,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": f"multipart/related; boundary={boundary}",
                },
            )
        except httpx.RequestError as e:
            raise _transport_error(e) from e

        if response.status_code not in (200, 201):
            raise _error_from_response(response)

        file_id = response.json().get("id")
        if not file_id:
            raise ProviderError(
                "Upload response missing file id", status_code=response.status_code
            )
        return file_id

    async def probe(self, access_token: str) -> None:
        """Cheap authenticated call proving the connection works end to end."""
        try:
            response = await self.http_client.get(
                f"{self.settings.google_drive_api_url}/about",
                params={"fields": "user(emailAddress),storageQuota"},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.RequestError as e:
            raise _transport_error(e) from e

        if response.status_code != 200:
            raise _error_from_response(response)


# ===== Provider Registry =====

_providers: Optional[Dict[str, StorageProvider]] = None


def get_provider_registry() -> Dict[str, StorageProvider]:
    """Get the provider registry keyed by provider id."""
    global _providers
    if _providers is None:
        _providers = {GOOGLE_DRIVE: GoogleDriveProvider(get_settings())}
    return _providers


def get_provider(provider_id: str) -> StorageProvider:
    try:
        return get_provider_registry()[provider_id]
    except KeyError:
        raise UnsupportedProviderError(f"Unsupported storage provider: {provider_id}") from None


async def close_providers() -> None:
    """Close provider HTTP clients (application shutdown)."""
    global _providers
    if _providers is None:
        return
    for provider in _providers.values():
        await provider.aclose()
    _providers = None


def reset_provider_registry() -> None:
    """Forget registered providers without closing them (for tests)."""
    global _providers
    _providers = None


def provider_display_name(provider_id: str) -> str:
    """Human-readable provider name for messages (falls back to the id)."""
    return DISPLAY_NAMES.get(provider_id, provider_id)
