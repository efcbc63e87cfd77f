"""
Shared fixtures: the push core wired on in-memory stores.

Recipients r1..r4 exist; r4 is not approved, so it is never eligible.
"""

import pytest

from app.services.audience import AudienceResolver
from app.services.delivery import DeliveryEngine
from app.services.lifecycle import TokenLifecycleManager
from app.services.notification_sender import NotificationSender
from app.services.token_registry import TokenRegistry
from fakes import (
    FakeGateway,
    InMemoryNotificationRecordStore,
    InMemoryPushTokenStore,
    InMemoryRecipientDirectory,
)


@pytest.fixture
def token_store():
    return InMemoryPushTokenStore()


@pytest.fixture
def directory():
    return InMemoryRecipientDirectory({
        "r1": {"city": "Lagos", "category": "plumbing"},
        "r2": {"city": "Lagos", "category": "cleaning"},
        "r3": {"city": "Abuja", "category": "plumbing"},
        "r4": {"city": "Lagos", "category": "plumbing", "status": "Pending"},
    })


@pytest.fixture
def registry(token_store, directory):
    return TokenRegistry(token_store, directory, failure_threshold=3)


@pytest.fixture
def lifecycle(registry):
    return TokenLifecycleManager(registry, failure_threshold=3)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(gateway, lifecycle):
    return DeliveryEngine(gateway, lifecycle, batch_size=500, timeout=1.0)


@pytest.fixture
def records():
    return InMemoryNotificationRecordStore()


@pytest.fixture
def resolver(directory, registry):
    return AudienceResolver(directory, registry)


@pytest.fixture
def sender(records, resolver, engine):
    return NotificationSender(records, resolver, engine)
