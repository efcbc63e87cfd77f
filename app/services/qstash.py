"""
QStash Service — delayed delivery for scheduled notifications.

A scheduled notification is one QStash message whose body is
`{"notification_id": ...}`, held until `Upstash-Not-Before` and then
POSTed to the process webhook.

Webhook calls carry an `Upstash-Signature` JWT (HS256). Its `sub` is the
destination URL and its `body` claim the SHA-256 hex digest of the raw
request body; both are checked against the request we received.
"""

import hashlib
import logging
from typing import Any

import httpx
import jwt

from app.core.config import (
    QSTASH_CURRENT_SIGNING_KEY,
    QSTASH_NEXT_SIGNING_KEY,
    UPSTASH_QSTASH_TOKEN,
    UPSTASH_QSTASH_URL,
)

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["iss", "sub", "exp", "nbf", "iat", "jti", "body"]
PUBLISH_TIMEOUT_SECONDS = 10.0


# ===================================================================
# Signature Verification
# ===================================================================

def _signing_keys() -> list[tuple[str, str]]:
    keys = [("current", QSTASH_CURRENT_SIGNING_KEY), ("next", QSTASH_NEXT_SIGNING_KEY)]
    return [(name, key) for name, key in keys if key]


def _check_request(claims: dict, body: bytes, url: str) -> None:
    digest = hashlib.sha256(body).hexdigest()
    if claims.get("body") != digest:
        raise ValueError(
            f"Body hash mismatch: expected {digest}, got {claims.get('body')}"
        )
    if claims.get("sub") != url:
        raise ValueError(
            f"Destination URL mismatch: expected {url}, got {claims.get('sub')}"
        )


def verify_qstash_signature(signature: str, body: bytes, url: str) -> dict:
    """
    Authenticate a webhook call from QStash.

    The current signing key is tried first; the next key keeps
    verification working while keys are being rotated.

    Args:
        signature: Value of the Upstash-Signature header.
        body: Raw request body, exactly as received.
        url: Full URL the request was delivered to.

    Returns:
        The verified JWT claims.

    Raises:
        ValueError: Missing, forged, or expired signature, or a body/URL
            that does not match what QStash signed.
    """
    if not signature:
        raise ValueError("Missing Upstash-Signature header")

    keys = _signing_keys()
    if not keys:
        raise ValueError(
            "No QStash signing keys configured. "
            "Set QSTASH_CURRENT_SIGNING_KEY in your .env file."
        )

    failures = []
    for key_name, signing_key in keys:
        try:
            claims = jwt.decode(
                signature,
                signing_key,
                algorithms=["HS256"],
                issuer="Upstash",
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            # Signed with this key, so the other key cannot help
            raise ValueError("QStash signature has expired") from exc
        except jwt.InvalidTokenError as exc:
            failures.append(f"{key_name} key: {exc}")
            continue

        _check_request(claims, body, url)
        logger.info(
            "QStash webhook verified with %s key (message_id=%s)",
            key_name, claims.get("jti"),
        )
        return claims

    raise ValueError(f"Invalid QStash signature ({'; '.join(failures)})")


# ===================================================================
# Publishing
# ===================================================================

async def publish_to_qstash(
    destination_url: str,
    body: dict[str, Any],
    *,
    not_before: int | None = None,
    deduplication_id: str | None = None,
    retries: int = 3,
) -> dict:
    """
    Queue `body` for delivery to `destination_url`.

    Args:
        destination_url: Webhook QStash will POST to.
        body: JSON payload.
        not_before: Unix seconds; QStash holds the message until then.
        deduplication_id: Repeated publishes with the same id are dropped.
        retries: Delivery attempts QStash makes if the webhook fails.

    Returns:
        QStash's publish response (contains `messageId`).

    Raises:
        RuntimeError: UPSTASH_QSTASH_TOKEN is not set.
        httpx.HTTPError: QStash unreachable or refused the message.
    """
    if not UPSTASH_QSTASH_TOKEN:
        raise RuntimeError(
            "UPSTASH_QSTASH_TOKEN not configured. Set it in your .env file."
        )

    headers = {
        "Authorization": f"Bearer {UPSTASH_QSTASH_TOKEN}",
        "Content-Type": "application/json",
        "Upstash-Retries": str(retries),
    }
    if not_before is not None:
        headers["Upstash-Not-Before"] = str(not_before)
    if deduplication_id:
        headers["Upstash-Deduplication-Id"] = deduplication_id

    async with httpx.AsyncClient() as client:
        response = await client.post(
            f"{UPSTASH_QSTASH_URL}/v2/publish/{destination_url}",
            headers=headers,
            json=body,
            timeout=PUBLISH_TIMEOUT_SECONDS,
        )
        response.raise_for_status()

    result = response.json()
    logger.info(
        "Queued QStash message %s for %s (not_before=%s)",
        result.get("messageId"), destination_url, not_before,
    )
    return result
