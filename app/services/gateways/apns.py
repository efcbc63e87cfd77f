"""
APNs Push Gateway — direct delivery to Apple devices.

Used when PUSH_PROVIDER=apns. Each device token gets its own
POST /3/device/{token} on Apple's HTTP/2 endpoint, authenticated with a
provider token: an ES256 JWT signed by the team's .p8 key. Apple accepts
a provider token for an hour and throttles regenerating it too often,
so one token is shared by every request until TOKEN_REFRESH_INTERVAL.

Rejections carry a `reason` in the body. Unregistered (410) and bad
device tokens are invalid-token outcomes; throttling and Apple-side
errors are transient; rejected provider tokens fail the whole send.
"""

import logging
import time
from pathlib import Path

import httpx
import jwt

from app.core.config import (
    APNS_AUTH_KEY_PATH,
    APNS_BUNDLE_ID,
    APNS_KEY_ID,
    APNS_TEAM_ID,
    APNS_USE_SANDBOX,
)
from app.core.exceptions import GatewayError
from app.models.notifications import ErrorClass, PushEnvelope
from app.services.gateways.base import GatewayTokenResult, HttpPushGateway

logger = logging.getLogger(__name__)

APNS_PRODUCTION_URL = "https://api.push.apple.com"
APNS_SANDBOX_URL = "https://api.sandbox.push.apple.com"

# Shared provider token; Apple rejects tokens older than 60 minutes
_cached_token: str | None = None
_token_generated_at: float = 0
TOKEN_REFRESH_INTERVAL = 50 * 60

INVALID_TOKEN_REASONS = {"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic"}
AUTH_REASONS = {"ExpiredProviderToken", "InvalidProviderToken", "MissingProviderToken"}
TRANSIENT_REASONS = {
    "TooManyRequests",
    "TooManyProviderTokenUpdates",
    "InternalServerError",
    "ServiceUnavailable",
    "Shutdown",
}


# ===================================================================
# Provider Token
# ===================================================================

def _load_auth_key() -> str:
    """
    Read the .p8 signing key named by APNS_AUTH_KEY_PATH.

    Raises:
        RuntimeError: APNS_AUTH_KEY_PATH is empty.
        FileNotFoundError: The path does not exist.
    """
    if not APNS_AUTH_KEY_PATH:
        raise RuntimeError("APNS_AUTH_KEY_PATH not configured. Set it in your .env file.")
    path = Path(APNS_AUTH_KEY_PATH)
    if not path.exists():
        raise FileNotFoundError(f"APNs auth key file not found: {APNS_AUTH_KEY_PATH}")
    return path.read_text()


def _generate_apns_token() -> str:
    """
    Return the shared provider token, signing a new one when the
    current one is older than TOKEN_REFRESH_INTERVAL.

    Claims are `iss` (team id) and `iat`; the key id goes in `kid`.
    """
    global _cached_token, _token_generated_at

    now = time.time()
    if _cached_token and now - _token_generated_at < TOKEN_REFRESH_INTERVAL:
        return _cached_token

    _cached_token = jwt.encode(
        {"iss": APNS_TEAM_ID, "iat": int(now)},
        _load_auth_key(),
        algorithm="ES256",
        headers={"kid": APNS_KEY_ID},
    )
    _token_generated_at = now
    logger.debug("Signed new APNs provider token (key_id=%s)", APNS_KEY_ID)
    return _cached_token


def _reset_cached_token() -> None:
    """Forget the shared token after Apple refused it."""
    global _cached_token, _token_generated_at
    _cached_token = None
    _token_generated_at = 0


# ===================================================================
# Payload Builder
# ===================================================================

def build_apns_payload(envelope: PushEnvelope, data: dict[str, str]) -> dict:
    """
    Build the APNs JSON payload.

    The alert lives under `aps`; custom data keys sit at the top level
    next to it so the app can read them on tap. An image URL turns on
    `mutable-content` so a notification service extension can fetch it.
    """
    aps: dict = {
        "alert": {
            "title": envelope.title,
            "body": envelope.body,
        },
        "sound": "default",
        "badge": 1,
    }
    payload: dict = {**data, "aps": aps}
    if envelope.image_url:
        aps["mutable-content"] = 1
        payload["image_url"] = envelope.image_url
    return payload


def classify_apns_error(status_code: int, reason: str | None) -> ErrorClass:
    """Map an APNs rejection onto a DeliveryOutcome error class."""
    if status_code == 410 or reason in INVALID_TOKEN_REASONS:
        return ErrorClass.INVALID_TOKEN
    if reason in TRANSIENT_REASONS or status_code in (429, 500, 503):
        return ErrorClass.TRANSIENT
    return ErrorClass.UNKNOWN


# ===================================================================
# Gateway
# ===================================================================

class ApnsGateway(HttpPushGateway):
    name = "apns"

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        token: str,
        envelope: PushEnvelope,
        data: dict[str, str],
    ) -> GatewayTokenResult:
        if not APNS_KEY_ID or not APNS_TEAM_ID:
            raise GatewayError(
                "APNs credentials not configured. "
                "Set APNS_KEY_ID, APNS_TEAM_ID, APNS_AUTH_KEY_PATH, "
                "and APNS_BUNDLE_ID in your .env file."
            )

        try:
            provider_token = _generate_apns_token()
        except (RuntimeError, FileNotFoundError) as exc:
            raise GatewayError(f"APNs provider token unavailable: {exc}") from exc

        base_url = APNS_SANDBOX_URL if APNS_USE_SANDBOX else APNS_PRODUCTION_URL
        headers = {
            "authorization": f"bearer {provider_token}",
            "apns-topic": APNS_BUNDLE_ID,
            "apns-push-type": "alert",
            "apns-priority": "10",
        }

        response = await client.post(
            f"{base_url}/3/device/{token}",
            json=build_apns_payload(envelope, data),
            headers=headers,
        )

        apns_id = response.headers.get("apns-id")

        if response.status_code == 200:
            logger.debug(
                "Push notification delivered: apns_id=%s, device=%s...",
                apns_id, token[:16],
            )
            return GatewayTokenResult(success=True, message_id=apns_id)

        # Parse error response
        try:
            reason = response.json().get("reason")
        except ValueError:
            reason = response.text or f"HTTP {response.status_code}"

        if response.status_code == 403 and reason in AUTH_REASONS:
            _reset_cached_token()
            raise GatewayError(f"APNs rejected provider token: {reason}")

        error_class = classify_apns_error(response.status_code, reason)
        logger.warning(
            "APNs delivery failed: status=%d, reason=%s, device=%s..., apns_id=%s",
            response.status_code, reason, token[:16], apns_id,
        )
        return GatewayTokenResult(
            success=False,
            message_id=apns_id,
            error_code=reason,
            error_class=error_class,
        )
