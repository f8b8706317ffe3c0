"""
Mock Factories Package

Provides factory functions for creating realistic provider responses and
in-memory provider doubles.
"""
from tests.mocks.http_mocks import (
    create_http_response,
    create_json_response,
    create_apns_response,
    create_fcm_response,
    create_expo_ticket,
    create_expo_response,
    create_error_response,
)
from tests.mocks.provider_mocks import FakeProvider, failure

__all__ = [
    "create_http_response",
    "create_json_response",
    "create_apns_response",
    "create_fcm_response",
    "create_expo_ticket",
    "create_expo_response",
    "create_error_response",
    "FakeProvider",
    "failure",
]
