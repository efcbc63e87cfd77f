"""
Token Lifecycle Manager Verification

Tests that:
1. A success outcome resets the token's failure counter
2. An invalid-token outcome deactivates the token immediately
3. Transient and unknown failures deactivate only at the threshold
4. apply() keeps going past storage errors and reports how many failed

Run with: pytest tests/test_lifecycle.py -v
"""

from unittest.mock import MagicMock

from app.core.exceptions import StorageError
from app.models.notifications import DeliveryOutcome, ErrorClass
from app.services.lifecycle import TokenLifecycleManager


def _failure(token: str, error_class: ErrorClass) -> DeliveryOutcome:
    return DeliveryOutcome(token=token, success=False, error_class=error_class, error_code="X")


class TestOnOutcome:

    def test_success_resets_failures(self, registry, lifecycle, token_store):
        registry.register("r1", "tok-1", "android")
        token_store.rows["tok-1"]["failure_count"] = 2

        lifecycle.on_outcome(DeliveryOutcome(token="tok-1", success=True))

        assert token_store.rows["tok-1"]["failure_count"] == 0

    def test_invalid_token_deactivates_immediately(self, registry, lifecycle, token_store):
        registry.register("r1", "tok-1", "android")

        lifecycle.on_outcome(_failure("tok-1", ErrorClass.INVALID_TOKEN))

        assert token_store.rows["tok-1"]["is_active"] is False
        assert token_store.rows["tok-1"]["failure_count"] == 1

    def test_transient_failures_deactivate_at_threshold(self, registry, lifecycle, token_store):
        registry.register("r1", "tok-1", "android")

        lifecycle.on_outcome(_failure("tok-1", ErrorClass.TRANSIENT))
        lifecycle.on_outcome(_failure("tok-1", ErrorClass.UNKNOWN))
        assert token_store.rows["tok-1"]["is_active"] is True

        lifecycle.on_outcome(_failure("tok-1", ErrorClass.TRANSIENT))
        assert token_store.rows["tok-1"]["is_active"] is False

    def test_threshold_is_passed_to_registry(self):
        registry = MagicMock()
        manager = TokenLifecycleManager(registry, failure_threshold=7)

        manager.on_outcome(_failure("tok-1", ErrorClass.TRANSIENT))

        registry.record_failure.assert_called_once_with(
            "tok-1", threshold=7, force_deactivate=False,
        )


class TestApply:

    def test_outcomes_for_different_tokens_all_apply(self, registry, lifecycle, token_store):
        registry.register("r1", "tok-a", "android")
        registry.register("r2", "tok-b", "android")

        errors = lifecycle.apply([
            DeliveryOutcome(token="tok-a", success=True),
            _failure("tok-b", ErrorClass.INVALID_TOKEN),
        ])

        assert errors == 0
        assert token_store.rows["tok-a"]["is_active"] is True
        assert token_store.rows["tok-b"]["is_active"] is False

    def test_storage_error_does_not_stop_the_rest(self):
        registry = MagicMock()
        registry.record_success.side_effect = [StorageError("down"), None]
        manager = TokenLifecycleManager(registry, failure_threshold=3)

        errors = manager.apply([
            DeliveryOutcome(token="tok-a", success=True),
            DeliveryOutcome(token="tok-b", success=True),
        ])

        assert errors == 1
        assert registry.record_success.call_count == 2
