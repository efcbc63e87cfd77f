"""
Token Lifecycle Manager — keeps token health in line with delivery reality.

A stateless policy layer over the token registry's mutation primitives,
called synchronously for every per-token outcome of a dispatch:

- success              -> reset counter, reactivate, touch last_used
- invalid-token        -> count the failure and deactivate immediately
- transient / unknown  -> count the failure; deactivate at the threshold

Outcomes for different tokens commute, so the order they arrive in
does not matter.
"""

import logging

from app.core.config import PUSH_FAILURE_THRESHOLD
from app.core.exceptions import PushServiceError
from app.models.notifications import DeliveryOutcome, ErrorClass
from app.services.token_registry import TokenRegistry

logger = logging.getLogger(__name__)


class TokenLifecycleManager:
    def __init__(
        self,
        registry: TokenRegistry,
        *,
        failure_threshold: int = PUSH_FAILURE_THRESHOLD,
    ):
        self.registry = registry
        self.failure_threshold = failure_threshold

    def on_outcome(self, outcome: DeliveryOutcome) -> None:
        """Apply one per-token delivery outcome to the registry."""
        if outcome.success:
            self.registry.record_success(outcome.token)
            return

        invalid = outcome.error_class == ErrorClass.INVALID_TOKEN
        if invalid:
            logger.warning(
                "Gateway reported token %s... as no longer registered (%s)",
                outcome.token[:16], outcome.error_code,
            )
        self.registry.record_failure(
            outcome.token,
            threshold=self.failure_threshold,
            force_deactivate=invalid,
        )

    def apply(self, outcomes: list[DeliveryOutcome]) -> int:
        """
        Apply a dispatch's outcomes, continuing past storage errors.

        A token whose health update fails keeps its previous state and
        is picked up again on its next delivery. Returns how many
        outcomes could not be applied.
        """
        errors = 0
        for outcome in outcomes:
            try:
                self.on_outcome(outcome)
            except PushServiceError as exc:
                errors += 1
                logger.error(
                    "Failed to update health of token %s...: %s",
                    outcome.token[:16], exc.message,
                )
        return errors
