"""
Token Registry — single source of truth for deliverable push tokens.

Owns the push_tokens table: which tokens exist, who owns them, and
whether they are still eligible for delivery. The delivery engine and
the lifecycle manager only read through here, and every health
mutation goes through `record_success` / `record_failure`.

Registration is additive (multi-device) unless the caller asks for
`exclusive=True`, which is what a fresh login that wants single-device
semantics passes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional

from app.core.config import PUSH_FAILURE_THRESHOLD
from app.core.exceptions import (
    NotFoundError,
    PushServiceError,
    StorageError,
    ValidationError,
)
from app.db.recipient_directory import RecipientDirectory
from app.db.token_store import PushTokenStore
from app.models.tokens import PLATFORMS, DeviceInfo, PushToken

logger = logging.getLogger(__name__)

# Conditional updates retried before giving up on a contended token
MAX_CAS_ATTEMPTS = 5


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class BestEffortResult:
    """
    Outcome of a sub-operation whose failure must not fail its parent.

    Callers decide explicitly whether to look at it.
    """
    ok: bool
    error: Optional[str] = None
    value: Any = None


class TokenRegistration(NamedTuple):
    token: PushToken
    status: str  # registered | updated | transferred


class TokenRegistry:
    """Registry of push tokens per recipient, backed by a PushTokenStore."""

    def __init__(
        self,
        store: PushTokenStore,
        directory: RecipientDirectory,
        *,
        failure_threshold: int = PUSH_FAILURE_THRESHOLD,
    ):
        self.store = store
        self.directory = directory
        self.failure_threshold = failure_threshold

    # ---------------------------------------------------------------
    # Registration
    # ---------------------------------------------------------------

    def register(
        self,
        recipient_id: str,
        token: str,
        platform: str = "unknown",
        device_info: DeviceInfo | None = None,
        *,
        exclusive: bool = False,
    ) -> TokenRegistration:
        """
        Upsert a push token for a recipient.

        An existing token is refreshed: metadata updated, failure
        counter reset, marked active, last_used touched. A token string
        owned by a different recipient is moved to this one. A new
        token is created active.

        Args:
            recipient_id: Owner of the device.
            token: Provider-issued token string.
            platform: android, ios, web, or unknown.
            device_info: Optional device metadata.
            exclusive: Deactivate the recipient's other active tokens.

        Raises:
            ValidationError: recipient_id or token missing, bad platform.
            NotFoundError: recipient_id is not a known recipient.
        """
        recipient_id = (recipient_id or "").strip()
        token = (token or "").strip()
        platform = (platform or "unknown").lower()

        if not recipient_id or not token:
            raise ValidationError("recipient_id and token are required.")
        if platform not in PLATFORMS:
            raise ValidationError(
                f"Platform must be one of: {', '.join(PLATFORMS)}."
            )
        if not self.directory.recipient_exists(recipient_id):
            raise NotFoundError(f"Recipient {recipient_id} not found.")

        now = _utcnow()
        fields: dict[str, Any] = {
            "recipient_id": recipient_id,
            "is_active": True,
            "last_used": now,
            "failure_count": 0,
            "last_failure": None,
            "updated_at": now,
        }
        info = device_info or DeviceInfo()
        for column, value in (
            ("device_model", info.model),
            ("os_version", info.os_version),
            ("app_version", info.app_version),
        ):
            if value is not None:
                fields[column] = value

        existing = self.store.get(token)
        previous_owner = None

        if existing:
            # Keep the stored platform when the client did not report one
            if platform != "unknown" or not existing.get("platform"):
                fields["platform"] = platform
            if existing["recipient_id"] == recipient_id:
                status = "updated"
            else:
                status = "transferred"
                previous_owner = existing["recipient_id"]
            row = self.store.update(token, fields) or {**existing, **fields}
        else:
            status = "registered"
            row = self.store.insert({
                "token": token,
                "platform": platform,
                "created_at": now,
                **fields,
            })

        if exclusive:
            deactivated = self.store.deactivate_others(recipient_id, token)
            if deactivated:
                logger.info(
                    "Deactivated %d sibling token(s) for recipient %s (exclusive login)",
                    deactivated, recipient_id[:8],
                )

        self._refresh_push_flag(recipient_id)
        if previous_owner:
            logger.info(
                "Token %s... moved from recipient %s to %s",
                token[:16], previous_owner[:8], recipient_id[:8],
            )
            self._refresh_push_flag(previous_owner)

        logger.info(
            "Push token %s for recipient %s (platform=%s, token=%s...)",
            status, recipient_id[:8], row.get("platform"), token[:16],
        )
        return TokenRegistration(PushToken.from_row(row), status)

    def try_register(
        self,
        recipient_id: str,
        token: str,
        platform: str = "unknown",
        device_info: DeviceInfo | None = None,
        *,
        exclusive: bool = False,
    ) -> BestEffortResult:
        """
        Register a token as part of another flow (sign-up, login).

        Never raises for registry errors: the parent operation decides
        whether the returned result matters.
        """
        try:
            registration = self.register(
                recipient_id, token, platform, device_info, exclusive=exclusive,
            )
        except PushServiceError as exc:
            logger.warning(
                "Best-effort token registration failed for recipient %s: %s",
                (recipient_id or "")[:8], exc.message,
            )
            return BestEffortResult(ok=False, error=exc.message)
        return BestEffortResult(ok=True, value=registration)

    # ---------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------

    def list_active(self, recipient_id: str) -> list[PushToken]:
        """Active tokens for one recipient, newest last_used first."""
        if not recipient_id:
            return []
        rows = self.store.list_for_recipients([recipient_id])
        return [PushToken.from_row(row) for row in rows]

    def list_active_for(self, recipient_ids: list[str]) -> list[PushToken]:
        """Active tokens for many recipients at once."""
        rows = self.store.list_for_recipients(list(recipient_ids))
        return [PushToken.from_row(row) for row in rows]

    def stats(self) -> dict[str, Any]:
        return self.store.stats()

    # ---------------------------------------------------------------
    # Mutations
    # ---------------------------------------------------------------

    def deactivate(self, recipient_id: str, token: str) -> PushToken:
        """
        Mark one of the recipient's tokens inactive (logout/unregister).

        Raises:
            ValidationError: recipient_id or token missing.
            NotFoundError: the (recipient, token) pair does not exist.
        """
        if not recipient_id or not token:
            raise ValidationError("recipient_id and token are required.")

        existing = self.store.get(token)
        if not existing or existing["recipient_id"] != recipient_id:
            raise NotFoundError("Token not found for this recipient.")

        row = self.store.update(
            token, {"is_active": False, "updated_at": _utcnow()},
        ) or {**existing, "is_active": False}

        self._refresh_push_flag(recipient_id)
        logger.info(
            "Push token deactivated for recipient %s (token=%s...)",
            recipient_id[:8], token[:16],
        )
        return PushToken.from_row(row)

    def record_success(self, token: str) -> PushToken | None:
        """
        Reset a token's health after a delivery the gateway accepted.

        Failure counter goes to 0, the token is (re)activated and
        last_used is touched. Returns None for unknown tokens.
        """
        now = _utcnow()
        row = self.store.update(token, {
            "failure_count": 0,
            "last_failure": None,
            "last_used": now,
            "is_active": True,
            "updated_at": now,
        })
        if row is None:
            logger.warning("record_success for unknown token %s...", token[:16])
            return None
        return PushToken.from_row(row)

    def record_failure(
        self,
        token: str,
        *,
        threshold: int | None = None,
        force_deactivate: bool = False,
    ) -> PushToken | None:
        """
        Count one failed delivery against a token.

        Increments the counter and stamps last_failure atomically with
        respect to other reports for the same token. The token is
        deactivated once the counter reaches `threshold`, or right away
        when `force_deactivate` is set. Returns None for unknown tokens.

        Raises:
            StorageError: the token stayed contended for every attempt.
        """
        limit = threshold if threshold is not None else self.failure_threshold

        for _ in range(MAX_CAS_ATTEMPTS):
            current = self.store.get(token)
            if current is None:
                logger.warning("record_failure for unknown token %s...", token[:16])
                return None

            seen = current.get("failure_count") or 0
            failures = seen + 1
            now = _utcnow()
            changes: dict[str, Any] = {
                "failure_count": failures,
                "last_failure": now,
                "updated_at": now,
            }
            deactivate = force_deactivate or failures >= limit
            if deactivate:
                changes["is_active"] = False

            row = self.store.compare_and_update(token, seen, changes)
            if row is None:
                continue

            if deactivate and current.get("is_active"):
                logger.info(
                    "Deactivated token %s... of recipient %s after %d failure(s)%s",
                    token[:16], current["recipient_id"][:8], failures,
                    " (invalid token)" if force_deactivate else "",
                )
                self._refresh_push_flag(current["recipient_id"])
            return PushToken.from_row(row)

        raise StorageError(
            f"Token {token[:16]}... stayed contended after {MAX_CAS_ATTEMPTS} attempts."
        )

    def sweep_invalid(self, failure_threshold: int | None = None) -> int:
        """
        Deactivate every active token at or over the failure threshold.

        Idempotent: a second run with no new failures deactivates nothing.
        """
        limit = failure_threshold if failure_threshold is not None else self.failure_threshold
        count = self.store.deactivate_over_threshold(limit)
        logger.info("Swept %d failing push token(s) (threshold=%d)", count, limit)
        return count

    # ---------------------------------------------------------------
    # Denormalized recipient flag
    # ---------------------------------------------------------------

    def _refresh_push_flag(self, recipient_id: str) -> BestEffortResult:
        try:
            has_active = bool(self.store.list_for_recipients([recipient_id]))
            self.directory.set_push_flag(recipient_id, has_active)
        except PushServiceError as exc:
            logger.warning(
                "Could not refresh has_push_token for recipient %s: %s",
                recipient_id[:8], exc.message,
            )
            return BestEffortResult(ok=False, error=exc.message)
        return BestEffortResult(ok=True, value=has_active)
