"""
OAuth endpoints for storage provider connections.

- /oauth/{provider}/connect - Start the consent flow (redirect to provider)
- /oauth/{provider}/callback - Exchange the code, verify the connection and
  requeue uploads blocked by the old authorization

Security features:
- CSRF protection with one-time state tokens bound to user and provider
- Encrypted token storage immediately after exchange
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import UserNotFoundError, UsersRepository, get_db_session
from ..providers.google_drive import DISPLAY_NAMES, ProviderError
from ..services.reconnection import ConnectionRecoveryService, get_recovery_service
from ..services.token_manager import (
    StateValidationError,
    TokenManager,
    get_token_manager,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])

# OAuth error taxonomy mapping for consistent error responses
OAUTH_ERROR_MAPPING = {
    "access_denied": ("OAUTH-ACCESS-DENIED", "User denied authorization"),
    "invalid_request": ("OAUTH-EXCHANGE-FAIL", "Invalid OAuth request"),
    "invalid_scope": ("OAUTH-EXCHANGE-FAIL", "Invalid or unauthorized scope"),
    "server_error": ("OAUTH-EXCHANGE-FAIL", "OAuth provider server error"),
    "temporarily_unavailable": (
        "OAUTH-EXCHANGE-FAIL",
        "OAuth provider temporarily unavailable",
    ),
}


def create_error_response(
    error_code: str,
    message: str,
    origin: str = "oauth",
    request_id: Optional[str] = None,
) -> dict:
    """
    Create standardized error response following the error taxonomy.

    Args:
        error_code: Error code from taxonomy (e.g., OAUTH-ACCESS-DENIED)
        message: Human-readable error message
        origin: Component where error occurred
        request_id: Request ID for tracing
    """
    return {
        "error": error_code,
        "message": message,
        "origin": origin,
        "requestId": request_id or "unknown",
    }


def error_json(
    status_code: int,
    error_code: str,
    message: str,
    request: Request,
    origin: str = "oauth",
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(
            error_code,
            message,
            origin=origin,
            request_id=getattr(request.state, "request_id", None),
        ),
    )


# ===== OAuth Initiation =====


@router.get("/{provider}/connect", response_class=RedirectResponse)
async def connect_provider(
    provider: str,
    request: Request,
    user_id: uuid.UUID = Query(..., description="User starting the connection"),
    db: AsyncSession = Depends(get_db_session),  # noqa: B008
    token_manager: TokenManager = Depends(get_token_manager),  # noqa: B008
):
    """
    Redirect the user to the provider consent screen.

    Stores a one-time state token (10 minute TTL) bound to the user.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    if provider not in DISPLAY_NAMES:
        return error_json(404, "OAUTH-UNSUPPORTED-PROVIDER", f"Unknown provider: {provider}", request)

    try:
        await UsersRepository(db).require_user(user_id)
    except UserNotFoundError:
        return error_json(404, "APP-404-NOT-FOUND", "User not found", request)

    try:
        authorization_url = await token_manager.build_authorization_url(db, user_id, provider)
    except ProviderError as e:
        logger.error("OAuth configuration error", request_id=request_id, error=e.message)
        return error_json(500, "OAUTH-CONFIG-ERROR", "OAuth configuration error", request)

    logger.info(
        "Redirecting to provider authorization",
        request_id=request_id,
        provider=provider,
        user_id=str(user_id),
    )
    return RedirectResponse(url=authorization_url, status_code=302)


# ===== OAuth Callback =====


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code"),
    state: Optional[str] = Query(None, description="CSRF state token"),
    error: Optional[str] = Query(None, description="Error code if authorization failed"),
    error_description: Optional[str] = Query(None, description="Provider error description"),
    db: AsyncSession = Depends(get_db_session),  # noqa: B008
    token_manager: TokenManager = Depends(get_token_manager),  # noqa: B008
    recovery: ConnectionRecoveryService = Depends(get_recovery_service),  # noqa: B008
):
    """
    Complete a (re)connection.

    Returns ``{"success": true, "requeued_count": n, "message": ...}`` once the
    tokens are stored, the connection probe succeeded and blocked uploads
    were requeued.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.info(
        "Processing OAuth callback",
        request_id=request_id,
        provider=provider,
        has_code=bool(code),
        has_error=bool(error),
        state_token=state[:8] + "..." if state else None,
    )

    if provider not in DISPLAY_NAMES:
        return error_json(404, "OAUTH-UNSUPPORTED-PROVIDER", f"Unknown provider: {provider}", request)

    if error:
        error_code, error_message = OAUTH_ERROR_MAPPING.get(
            error, ("OAUTH-EXCHANGE-FAIL", f"OAuth error: {error}")
        )
        logger.warning(
            "OAuth authorization error",
            request_id=request_id,
            error=error,
            error_description=error_description,
        )

        # Burn the state so it cannot be replayed
        if state:
            try:
                await token_manager.validate_and_consume_state(db, state, provider)
            except StateValidationError:
                logger.debug("State already invalid during error cleanup", request_id=request_id)

        return error_json(400, error_code, error_message, request)

    if not code or not state:
        return error_json(
            400, "OAUTH-EXCHANGE-FAIL", "Missing required authorization parameters", request
        )

    try:
        oauth_state = await token_manager.validate_and_consume_state(db, state, provider)
    except StateValidationError as e:
        logger.warning("OAuth state validation failed", request_id=request_id, error=str(e))
        return error_json(
            400, "OAUTH-STATE-INVALID", "Invalid or expired authorization state", request
        )

    result = await recovery.on_oauth_callback(db, oauth_state.user_id, provider, code)
    if not result.success:
        return error_json(502, result.error_code or "OAUTH-EXCHANGE-FAIL", result.message, request)

    logger.info(
        "OAuth flow completed",
        request_id=request_id,
        provider=provider,
        user_id=str(oauth_state.user_id),
        requeued_count=result.requeued_count,
    )
    return result.to_dict()
