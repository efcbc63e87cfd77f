"""
Tokens API — push token registration and maintenance.

POST /api/v1/tokens/register    — Register or refresh a device token
POST /api/v1/tokens/attach      — Same, best effort (never fails the caller)
POST /api/v1/tokens/deactivate  — Unregister a token on logout
POST /api/v1/tokens/sweep       — Deactivate tokens over the failure threshold (admin)
GET  /api/v1/tokens/stats       — Registry counters (admin)
GET  /api/v1/tokens/{recipient_id} — Active tokens of a recipient

Registry errors (ValidationError, NotFoundError, StorageError) are
mapped to HTTP responses by the handlers registered in app/main.py.
"""

import logging

from fastapi import APIRouter, Depends, status

from app.core.dependencies import get_token_registry
from app.core.security import require_admin
from app.models.tokens import (
    TokenAttachResponse,
    TokenDeactivateRequest,
    TokenDeactivateResponse,
    TokenListItem,
    TokenRegisterRequest,
    TokenRegisterResponse,
    TokenStatsResponse,
    TokenSweepResponse,
)
from app.services.token_registry import TokenRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/tokens", tags=["tokens"])


@router.post(
    "/register",
    status_code=status.HTTP_200_OK,
    response_model=TokenRegisterResponse,
)
async def register_token(
    payload: TokenRegisterRequest,
    registry: TokenRegistry = Depends(get_token_registry),
) -> TokenRegisterResponse:
    """
    Register or refresh the push token of one app installation.

    Called by the app on launch and whenever the provider rotates the
    token. Registration is additive: other devices of the same
    recipient stay active unless `exclusive` is set.

    Returns:
        200: Token registered, refreshed, or moved to this recipient.
        404: Recipient not found.
        422: Missing recipient_id/token or unsupported platform.
    """
    registration = registry.register(
        payload.recipient_id,
        payload.token,
        payload.platform,
        payload.device_info,
        exclusive=payload.exclusive,
    )
    return TokenRegisterResponse(
        token_id=registration.token.token,
        platform=registration.token.platform,
        is_active=registration.token.is_active,
        status=registration.status,
    )


@router.post(
    "/attach",
    status_code=status.HTTP_200_OK,
    response_model=TokenAttachResponse,
)
async def attach_token(
    payload: TokenRegisterRequest,
    registry: TokenRegistry = Depends(get_token_registry),
) -> TokenAttachResponse:
    """
    Best-effort registration for sign-up and login flows.

    Always 200: a failed attach is reported in the body so the calling
    flow can carry on without push.
    """
    result = registry.try_register(
        payload.recipient_id,
        payload.token,
        payload.platform,
        payload.device_info,
        exclusive=payload.exclusive,
    )
    return TokenAttachResponse(attached=result.ok, error=result.error)


@router.post(
    "/deactivate",
    status_code=status.HTTP_200_OK,
    response_model=TokenDeactivateResponse,
)
async def deactivate_token(
    payload: TokenDeactivateRequest,
    registry: TokenRegistry = Depends(get_token_registry),
) -> TokenDeactivateResponse:
    """
    Mark a token inactive (logout / unregister).

    Returns:
        200: Token deactivated.
        404: The recipient does not own this token.
    """
    registry.deactivate(payload.recipient_id.strip(), payload.token.strip())
    return TokenDeactivateResponse(ok=True)


@router.post(
    "/sweep",
    status_code=status.HTTP_200_OK,
    response_model=TokenSweepResponse,
    dependencies=[Depends(require_admin)],
)
async def sweep_tokens(
    registry: TokenRegistry = Depends(get_token_registry),
) -> TokenSweepResponse:
    """Deactivate every active token at or over the failure threshold."""
    return TokenSweepResponse(deactivated_count=registry.sweep_invalid())


@router.get(
    "/stats",
    response_model=TokenStatsResponse,
    dependencies=[Depends(require_admin)],
)
async def token_stats(
    registry: TokenRegistry = Depends(get_token_registry),
) -> TokenStatsResponse:
    """Total, active, and inactive token counts, plus active per platform."""
    return TokenStatsResponse(**registry.stats())


@router.get(
    "/{recipient_id}",
    response_model=list[TokenListItem],
    dependencies=[Depends(require_admin)],
)
async def list_tokens(
    recipient_id: str,
    registry: TokenRegistry = Depends(get_token_registry),
) -> list[TokenListItem]:
    """Active tokens of one recipient, most recently used first."""
    return [
        TokenListItem(
            token=t.token,
            platform=t.platform,
            is_active=t.is_active,
            last_used=t.last_used,
        )
        for t in registry.list_active(recipient_id)
    ]
