"""
Dependencies — lazily built service singletons for route handlers.

Routes ask for the registry or the sender with `Depends(...)`; tests
replace them through `app.dependency_overrides`.
"""

import logging

from app.core.config import (
    PUSH_BATCH_SIZE,
    PUSH_FAILURE_THRESHOLD,
    PUSH_GATEWAY_TIMEOUT_SECONDS,
    PUSH_MAX_CONCURRENCY,
    PUSH_PROVIDER,
)
from app.db.notification_store import SupabaseNotificationRecordStore
from app.db.recipient_directory import SupabaseRecipientDirectory
from app.db.supabase_client import get_service_client
from app.db.token_store import SupabasePushTokenStore
from app.services.audience import AudienceResolver
from app.services.delivery import DeliveryEngine
from app.services.gateways.apns import ApnsGateway
from app.services.gateways.base import PushGateway
from app.services.gateways.fcm import FcmGateway
from app.services.lifecycle import TokenLifecycleManager
from app.services.notification_sender import NotificationSender
from app.services.token_registry import TokenRegistry

logger = logging.getLogger(__name__)

# Module-level singletons, initialized lazily
_registry: TokenRegistry | None = None
_sender: NotificationSender | None = None
_gateway: PushGateway | None = None


def build_gateway(provider: str) -> PushGateway:
    """Create the push gateway named by PUSH_PROVIDER ('fcm' or 'apns')."""
    options = {
        "max_concurrency": PUSH_MAX_CONCURRENCY,
        "request_timeout": PUSH_GATEWAY_TIMEOUT_SECONDS,
    }
    if provider == "fcm":
        return FcmGateway(**options)
    if provider == "apns":
        return ApnsGateway(**options)
    raise EnvironmentError(
        f"Unknown PUSH_PROVIDER '{provider}'. Use 'fcm' or 'apns'."
    )


def get_token_registry() -> TokenRegistry:
    global _registry
    if _registry is None:
        client = get_service_client()
        _registry = TokenRegistry(
            SupabasePushTokenStore(client),
            SupabaseRecipientDirectory(client),
            failure_threshold=PUSH_FAILURE_THRESHOLD,
        )
    return _registry


def get_gateway() -> PushGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway(PUSH_PROVIDER)
        logger.info("Using %s push gateway", _gateway.name)
    return _gateway


def get_notification_sender() -> NotificationSender:
    global _sender
    if _sender is None:
        registry = get_token_registry()
        lifecycle = TokenLifecycleManager(
            registry, failure_threshold=PUSH_FAILURE_THRESHOLD,
        )
        engine = DeliveryEngine(
            get_gateway(),
            lifecycle,
            batch_size=PUSH_BATCH_SIZE,
            timeout=PUSH_GATEWAY_TIMEOUT_SECONDS,
        )
        _sender = NotificationSender(
            SupabaseNotificationRecordStore(get_service_client()),
            AudienceResolver(registry.directory, registry),
            engine,
        )
    return _sender
