"""
Delivery Engine — dispatches one payload to a set of tokens.

One code path for every audience size:

- 0 tokens: nothing to do, empty result, the gateway is not called.
- 1 token: the gateway's single send; a per-token refusal becomes a
  failed outcome.
- N tokens: the gateway's batch send in chunks of `batch_size`; each
  chunk's results are zipped back onto its tokens by position.

Every gateway call is bounded by `timeout`. A transport failure or a
timeout in any chunk fails the whole dispatch with GatewayError, and
token health is left untouched. Outcomes reach the lifecycle manager
only after every chunk has returned.

All data values are coerced to strings before they reach the gateway:
push providers reject or silently mangle non-string data values.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from app.core.config import PUSH_BATCH_SIZE, PUSH_GATEWAY_TIMEOUT_SECONDS
from app.core.exceptions import GatewayError, TokenRejectedError
from app.models.notifications import (
    DeliveryOutcome,
    DeliveryResult,
    ErrorClass,
    NotificationPayload,
    PushEnvelope,
)
from app.services.gateways.base import PushGateway
from app.services.lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)


# ===================================================================
# Data Map Coercion
# ===================================================================

def stringify_value(value: Any) -> str:
    """
    Coerce one data value to a string.

    Strings pass through. Everything else is JSON-encoded, so numbers
    become "5", booleans "true"/"false", None "null", and dicts/lists
    their JSON text.
    """
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def stringify_data(data: dict[str, Any]) -> dict[str, str]:
    return {str(key): stringify_value(value) for key, value in data.items()}


def build_data_map(envelope: PushEnvelope, data: dict[str, Any]) -> dict[str, str]:
    """
    The data map sent alongside the envelope.

    Title and body are repeated in the data so a foregrounded app can
    render the push itself; a timestamp records when it was sent.
    """
    merged = {
        **data,
        "title": envelope.title,
        "body": envelope.body,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return stringify_data(merged)


def _failure_class(success: bool, error_class: ErrorClass) -> ErrorClass:
    if success:
        return ErrorClass.NONE
    # A failure the gateway did not classify counts as unknown
    return ErrorClass.UNKNOWN if error_class == ErrorClass.NONE else error_class


def _chunks(items: list[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


# ===================================================================
# Engine
# ===================================================================

class DeliveryEngine:
    def __init__(
        self,
        gateway: PushGateway,
        lifecycle: TokenLifecycleManager,
        *,
        batch_size: int = PUSH_BATCH_SIZE,
        timeout: float = PUSH_GATEWAY_TIMEOUT_SECONDS,
    ):
        self.gateway = gateway
        self.lifecycle = lifecycle
        self.batch_size = max(1, batch_size)
        self.timeout = timeout

    async def dispatch(
        self, payload: NotificationPayload, tokens: list[str],
    ) -> DeliveryResult:
        """
        Deliver `payload` to every token and report the aggregate.

        Per-token failures are part of a successful result and are
        handed to the lifecycle manager before returning.

        Raises:
            GatewayError: the transport failed or timed out.
        """
        tokens = list(tokens)
        if not tokens:
            logger.info("Dispatch skipped: no tokens to deliver to")
            return DeliveryResult()

        envelope = payload.envelope
        data = build_data_map(envelope, payload.data)
        outcomes: list[DeliveryOutcome] = []

        try:
            if len(tokens) == 1:
                outcomes.append(await self._send_single(tokens[0], envelope, data))
            else:
                for chunk in _chunks(tokens, self.batch_size):
                    outcomes.extend(await self._send_chunk(chunk, envelope, data))
        except GatewayError as exc:
            logger.error(
                "Dispatch to %d token(s) failed at the gateway after %d outcome(s); "
                "no token health applied: %s",
                len(tokens), len(outcomes), exc.message,
            )
            raise

        result = self._finish(outcomes)
        logger.info(
            "Dispatch complete via %s: %d delivered, %d failed",
            self.gateway.name, result.success_count, result.failure_count,
        )
        return result

    async def _call(self, operation, what: str):
        try:
            return await asyncio.wait_for(operation, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise GatewayError(
                f"{self.gateway.name} {what} timed out after {self.timeout}s"
            ) from exc

    async def _send_single(
        self, token: str, envelope: PushEnvelope, data: dict[str, str],
    ) -> DeliveryOutcome:
        try:
            message_id = await self._call(
                self.gateway.send_one(token, envelope, data), "send",
            )
        except TokenRejectedError as exc:
            return DeliveryOutcome(
                token=token,
                success=False,
                error_class=_failure_class(False, ErrorClass(exc.error_class)),
                error_code=exc.error_code,
            )
        return DeliveryOutcome(token=token, success=True, message_id=message_id or None)

    async def _send_chunk(
        self, chunk: list[str], envelope: PushEnvelope, data: dict[str, str],
    ) -> list[DeliveryOutcome]:
        batch = await self._call(
            self.gateway.send_batch(chunk, envelope, data), "batch send",
        )
        results = batch.per_token_results
        if len(results) != len(chunk):
            raise GatewayError(
                f"{self.gateway.name} returned {len(results)} results for {len(chunk)} tokens"
            )

        # Results are positional: index i belongs to chunk[i]
        return [
            DeliveryOutcome(
                token=token,
                success=result.success,
                error_class=_failure_class(result.success, result.error_class),
                error_code=result.error_code,
                message_id=result.message_id,
            )
            for token, result in zip(chunk, results)
        ]

    def _finish(self, outcomes: list[DeliveryOutcome]) -> DeliveryResult:
        self.lifecycle.apply(outcomes)
        success_count = sum(1 for o in outcomes if o.success)
        return DeliveryResult(
            success_count=success_count,
            failure_count=len(outcomes) - success_count,
            per_token=outcomes,
        )
