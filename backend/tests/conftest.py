"""Pytest fixtures and configuration for test suite

This module provides:
1. An isolated in-memory database per test
2. Repository fixtures bound to that database
3. A generated APNS auth key and provider configs

Factory Functions:
    - make_device(repo, **overrides) -> DeviceTarget
"""
import uuid

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pushgate.core.database import Base
import pushgate.models  # noqa: F401  registers tables on Base.metadata
from pushgate.services.push.models import APNSConfig, DeviceTarget, FCMConfig
from pushgate.services.push.repository import (
    DeviceTokenRepository,
    ExpoTicketRepository,
    NotificationRepository,
)


# =============================================================================
# Factory Functions for Test Objects
# =============================================================================

def make_device(
    repo: DeviceTokenRepository,
    user_id: str = "user-1",
    platform: str = "apns",
    token: str = None,
    device_id: str = None,
) -> DeviceTarget:
    """
    Register a device through the repository and return its DeviceTarget.

    Example:
        device = make_device(device_repo, platform="expo")
    """
    if token is None:
        if platform == "expo":
            token = f"ExponentPushToken[{uuid.uuid4().hex[:22]}]"
        else:
            token = uuid.uuid4().hex * 2
    row, _ = repo.register(user_id=user_id, token=token, platform=platform, device_id=device_id)
    return DeviceTarget(
        id=row.id,
        user_id=row.user_id,
        platform=row.platform,
        token=row.token,
        device_id=row.device_id,
    )


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="function")
def session_factory():
    """
    In-memory SQLite database shared by every session of one test.

    StaticPool keeps the single connection alive so short-lived repository
    sessions all see the same data.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def device_repo(session_factory):
    return DeviceTokenRepository(session_factory)


@pytest.fixture
def notification_repo(session_factory):
    return NotificationRepository(session_factory)


@pytest.fixture
def ticket_repo(session_factory):
    return ExpoTicketRepository(session_factory)


# =============================================================================
# Provider configuration
# =============================================================================

@pytest.fixture
def test_key_file(tmp_path):
    """Create a temporary .p8 key file with a freshly generated P-256 key."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    key_file = tmp_path / "AuthKey_TEST.p8"
    key_file.write_bytes(pem)
    return str(key_file)


@pytest.fixture
def apns_config(test_key_file):
    return APNSConfig(
        key_file=test_key_file,
        key_id="KEYID12345",
        team_id="TEAMID1234",
        bundle_id="com.pushgate.test",
        use_sandbox=True,
    )


@pytest.fixture
def fcm_config(tmp_path):
    credentials_file = tmp_path / "service-account.json"
    credentials_file.write_text("{}")
    return FCMConfig(project_id="test-project", credentials_path=str(credentials_file))
