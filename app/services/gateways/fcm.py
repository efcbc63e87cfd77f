"""
FCM Push Gateway — Firebase Cloud Messaging HTTP v1 delivery.

Authenticates with a Google service account (OAuth2 JWT bearer grant,
RS256) and sends one message per token to:

    POST https://fcm.googleapis.com/v1/projects/{project_id}/messages:send

The v1 API has no multicast endpoint, so batches go out as concurrent
single sends over one HTTP/2 connection (see HttpPushGateway).

FCM requires:
1. A service account JSON with a private key (FIREBASE_SERVICE_ACCOUNT
   inline, or FIREBASE_SERVICE_ACCOUNT_PATH on disk)
2. The firebase.messaging OAuth scope
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any

import httpx
import jwt

from app.core.config import (
    FIREBASE_SERVICE_ACCOUNT,
    FIREBASE_SERVICE_ACCOUNT_PATH,
    PUSH_ANDROID_CHANNEL_ID,
)
from app.core.exceptions import GatewayError
from app.models.notifications import ErrorClass, PushEnvelope
from app.services.gateways.base import GatewayTokenResult, HttpPushGateway

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

# Google access tokens live 60 minutes; refresh 5 minutes early
ACCESS_TOKEN_LIFETIME = 60 * 60
ACCESS_TOKEN_REFRESH_MARGIN = 5 * 60

INVALID_TOKEN_CODES = {"UNREGISTERED", "INVALID_ARGUMENT", "SENDER_ID_MISMATCH"}
TRANSIENT_CODES = {"UNAVAILABLE", "INTERNAL", "QUOTA_EXCEEDED"}


# ===================================================================
# Service Account Loading
# ===================================================================

def load_service_account() -> dict:
    """
    Load the Firebase service account credentials.

    The inline FIREBASE_SERVICE_ACCOUNT variable wins (hosted
    deployments); FIREBASE_SERVICE_ACCOUNT_PATH is the local fallback.

    Raises:
        RuntimeError: If neither is configured or the JSON is unusable.
        FileNotFoundError: If the configured file does not exist.
    """
    if FIREBASE_SERVICE_ACCOUNT:
        raw = FIREBASE_SERVICE_ACCOUNT
    elif FIREBASE_SERVICE_ACCOUNT_PATH:
        path = Path(FIREBASE_SERVICE_ACCOUNT_PATH)
        if not path.exists():
            raise FileNotFoundError(
                f"Firebase service account file not found: {FIREBASE_SERVICE_ACCOUNT_PATH}"
            )
        raw = path.read_text()
    else:
        raise RuntimeError(
            "Firebase credentials not configured. Set FIREBASE_SERVICE_ACCOUNT "
            "or FIREBASE_SERVICE_ACCOUNT_PATH in your .env file."
        )

    try:
        account = json.loads(raw)
    except ValueError as exc:
        raise RuntimeError(f"Firebase service account is not valid JSON: {exc}") from exc

    missing = [k for k in ("project_id", "client_email", "private_key") if not account.get(k)]
    if missing:
        raise RuntimeError(
            f"Firebase service account is missing: {', '.join(missing)}"
        )
    return account


# ===================================================================
# Message Builder
# ===================================================================

def build_fcm_message(
    token: str,
    envelope: PushEnvelope,
    data: dict[str, str],
    *,
    channel_id: str = PUSH_ANDROID_CHANNEL_ID,
) -> dict:
    """
    Build an FCM v1 message for one token.

    Both parts are always present: `notification` is shown by the OS
    when the app is in the background, `data` lets the app handle the
    push itself in the foreground.
    """
    notification: dict[str, Any] = {
        "title": envelope.title,
        "body": envelope.body,
    }
    if envelope.image_url:
        notification["image"] = envelope.image_url

    return {
        "token": token,
        "notification": notification,
        "data": data,
        "android": {
            "priority": "high",
            "notification": {
                "sound": "default",
                "channel_id": channel_id,
                "notification_priority": "PRIORITY_HIGH",
                "default_sound": True,
                "default_vibrate_timings": True,
            },
        },
        "apns": {
            "payload": {
                "aps": {
                    "sound": "default",
                    "badge": 1,
                },
            },
        },
    }


def classify_fcm_error(status_code: int, error_code: str | None) -> ErrorClass:
    """Map an FCM error response onto a DeliveryOutcome error class."""
    if error_code in INVALID_TOKEN_CODES or status_code == 404:
        return ErrorClass.INVALID_TOKEN
    if error_code in TRANSIENT_CODES or status_code in (429, 500, 503):
        return ErrorClass.TRANSIENT
    return ErrorClass.UNKNOWN


def _parse_error_code(response: httpx.Response) -> str | None:
    """
    Pull the most specific error code out of an FCM error body.

    FcmError details carry `errorCode` (e.g. UNREGISTERED); otherwise
    fall back to the canonical `status` (e.g. INVALID_ARGUMENT).
    """
    try:
        error = response.json().get("error", {})
    except ValueError:
        return None
    for detail in error.get("details") or []:
        if detail.get("errorCode"):
            return detail["errorCode"]
    return error.get("status")


# ===================================================================
# Gateway
# ===================================================================

class FcmGateway(HttpPushGateway):
    name = "fcm"

    def __init__(self, service_account: dict | None = None, **kwargs):
        super().__init__(**kwargs)
        self._service_account = service_account
        self._access_token: str | None = None
        self._access_token_expires_at: float = 0
        self._token_lock = asyncio.Lock()

    @property
    def service_account(self) -> dict:
        if self._service_account is None:
            try:
                self._service_account = load_service_account()
            except (RuntimeError, FileNotFoundError) as exc:
                raise GatewayError(f"FCM credentials unavailable: {exc}") from exc
        return self._service_account

    def _build_assertion(self, now: int) -> str:
        """Sign the OAuth2 JWT bearer assertion (RS256)."""
        account = self.service_account
        headers = {}
        if account.get("private_key_id"):
            headers["kid"] = account["private_key_id"]
        try:
            return jwt.encode(
                {
                    "iss": account["client_email"],
                    "scope": FCM_SCOPE,
                    "aud": account.get("token_uri") or GOOGLE_TOKEN_URL,
                    "iat": now,
                    "exp": now + ACCESS_TOKEN_LIFETIME,
                },
                account["private_key"],
                algorithm="RS256",
                headers=headers,
            )
        except (KeyError, ValueError, TypeError, jwt.PyJWTError) as exc:
            raise GatewayError(f"Could not sign FCM OAuth assertion: {exc}") from exc

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        """
        Return a cached Google access token, exchanging a fresh
        assertion when it is about to expire.
        """
        async with self._token_lock:
            now = time.time()
            if self._access_token and now < self._access_token_expires_at:
                return self._access_token
            return await self._refresh_access_token(client, now)

    async def _refresh_access_token(self, client: httpx.AsyncClient, now: float) -> str:
        assertion = self._build_assertion(int(now))
        response = await client.post(
            self.service_account.get("token_uri") or GOOGLE_TOKEN_URL,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
        )
        if response.status_code != 200:
            raise GatewayError(
                f"FCM authentication failed: HTTP {response.status_code} {response.text}"
            )

        try:
            body = response.json()
            access_token = body["access_token"]
            lifetime = int(body.get("expires_in", ACCESS_TOKEN_LIFETIME))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise GatewayError(f"FCM token endpoint returned an unusable response: {exc}") from exc

        self._access_token = access_token
        self._access_token_expires_at = now + lifetime - ACCESS_TOKEN_REFRESH_MARGIN
        logger.debug("Obtained new FCM access token (expires_in=%s)", lifetime)
        return self._access_token

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        token: str,
        envelope: PushEnvelope,
        data: dict[str, str],
    ) -> GatewayTokenResult:
        access_token = await self._get_access_token(client)
        url = FCM_SEND_URL.format(project_id=self.service_account["project_id"])

        response = await client.post(
            url,
            json={"message": build_fcm_message(token, envelope, data)},
            headers={"Authorization": f"Bearer {access_token}"},
        )

        if response.status_code == 200:
            message_id = response.json().get("name")
            logger.debug("FCM accepted message %s for token %s...", message_id, token[:16])
            return GatewayTokenResult(success=True, message_id=message_id)

        error_code = _parse_error_code(response)

        if response.status_code in (401, 403) and error_code not in INVALID_TOKEN_CODES:
            # Our credentials, not the device token, were refused
            self._access_token = None
            raise GatewayError(
                f"FCM rejected credentials: HTTP {response.status_code} ({error_code})"
            )

        error_class = classify_fcm_error(response.status_code, error_code)
        logger.warning(
            "FCM delivery failed: status=%d, error=%s, class=%s, token=%s...",
            response.status_code, error_code, error_class.value, token[:16],
        )
        return GatewayTokenResult(
            success=False,
            error_code=error_code or f"HTTP {response.status_code}",
            error_class=error_class,
        )
