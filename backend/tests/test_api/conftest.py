"""
Shared pytest fixtures for API tests.

The app is exercised without its lifespan: the dispatch service is built
over in-memory provider doubles and placed on app.state, and the device
repository dependency is bound to the per-test database.
"""
import pytest
from fastapi.testclient import TestClient

from main import app
from pushgate.api.v1.devices import get_device_repository
from pushgate.core.retry import RetryConfig
from pushgate.services.push.dispatch_service import PushDispatchService
from pushgate.services.push.retry_controller import RetryController
from tests.mocks import FakeProvider


@pytest.fixture
def fake_providers():
    return {name: FakeProvider(name) for name in ("apns", "fcm", "expo")}


@pytest.fixture
def dispatch_service(device_repo, notification_repo, ticket_repo, fake_providers):
    return PushDispatchService(
        devices=device_repo,
        notifications=notification_repo,
        providers=fake_providers,
        retry=RetryController(RetryConfig(max_attempts=2, base_delay=0, jitter=False)),
        tickets=ticket_repo,
    )


@pytest.fixture
def client(device_repo, dispatch_service):
    """
    TestClient with the dependency override and dispatch service in place.

    Both are removed again after the test so modules stay isolated.
    """
    app.dependency_overrides[get_device_repository] = lambda: device_repo
    app.state.dispatch_service = dispatch_service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_device_repository, None)
        if hasattr(app.state, "dispatch_service"):
            del app.state.dispatch_service
