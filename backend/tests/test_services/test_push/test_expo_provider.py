"""
Tests for the Expo push provider.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from pushgate.services.push.credentials import CredentialManager, ExpoTokenGenerator
from pushgate.services.push.exceptions import PermanentOther, RateLimited, TransientNetworkError
from pushgate.services.push.expo_provider import ExpoProvider
from pushgate.services.push.models import ExpoConfig, NotificationContent
from tests.mocks import (
    create_error_response,
    create_expo_response,
    create_expo_ticket,
    create_json_response,
)


def expo_token(n: int) -> str:
    return f"ExponentPushToken[token{n:04d}]"


@pytest.fixture
def provider():
    return ExpoProvider()


@pytest.fixture
def content():
    return NotificationContent(title="Package", body="Delivered", data={"kind": "package"})


def mock_client(*responses, handler=None):
    client = AsyncMock(spec=httpx.AsyncClient)
    client.is_closed = False
    if handler is not None:
        async def post(url, json=None, headers=None):
            return handler(url, json, headers)
        client.post = AsyncMock(side_effect=post)
    else:
        client.post = AsyncMock(side_effect=list(responses))
    return client


class TestExpoTokens:
    @pytest.mark.parametrize("token", [
        "ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]",
        "ExpoPushToken[abc]",
    ])
    def test_valid(self, token):
        assert ExpoProvider.is_valid_token(token) is True

    @pytest.mark.parametrize("token", [
        "",
        "ExponentPushToken[]",
        "ExponentPushToken[abc",
        "a" * 64,
        None,
    ])
    def test_invalid(self, token):
        assert ExpoProvider.is_valid_token(token) is False


class TestExpoMessage:
    def test_alert_message(self, provider, content):
        message = provider.build_message(expo_token(1), content)

        assert message["to"] == expo_token(1)
        assert message["title"] == "Package"
        assert message["priority"] == "high"
        assert message["data"] == {"kind": "package"}

    def test_silent_message(self, provider):
        message = provider.build_message(expo_token(1), NotificationContent(data={"a": "1"}, silent=True))

        assert message["_contentAvailable"] is True
        assert "title" not in message

    def test_thread_id_is_not_a_channel(self, provider):
        message = provider.build_message(
            expo_token(1), NotificationContent(title="Chat", body="New reply", thread_id="conversation-42")
        )

        assert "channelId" not in message

    def test_channel_id(self, provider):
        message = provider.build_message(
            expo_token(1), NotificationContent(title="Chat", body="New reply", channel_id="messages")
        )

        assert message["channelId"] == "messages"


class TestExpoSendBatch:
    """Tests for ticket handling and request chunking."""

    @pytest.mark.asyncio
    async def test_tickets_are_receipt_pending(self, provider, content):
        client = mock_client(create_expo_response([
            create_expo_ticket("ticket-1"),
            create_expo_ticket(error="DeviceNotRegistered"),
        ]))

        with patch.object(provider, "_get_client", return_value=client):
            results = await provider.send_batch([expo_token(1), expo_token(2)], content)

        assert results[0].success is True
        assert results[0].message_id == "ticket-1"
        assert results[0].receipt_pending is True
        assert results[1].success is False
        assert results[1].error.reason == "DeviceNotRegistered"

    @pytest.mark.asyncio
    async def test_malformed_token_fails_without_request(self, provider, content):
        client = mock_client()

        with patch.object(provider, "_get_client", return_value=client):
            results = await provider.send_batch(["not-an-expo-token"], content)

        assert results[0].error.reason == "InvalidPushToken"
        client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_chunks_of_100(self, provider, content):
        """250 tokens go out as requests of 100, 100 and 50 messages."""
        sizes = []

        def handler(url, json, headers):
            sizes.append(len(json))
            return create_expo_response([create_expo_ticket(f"t-{m['to']}") for m in json])

        tokens = [expo_token(i) for i in range(250)]
        with patch.object(provider, "_get_client", return_value=mock_client(handler=handler)):
            results = await provider.send_batch(tokens, content)

        assert sizes == [100, 100, 50]
        assert len(results) == 250
        assert all(r.success for r in results)
        assert [r.token for r in results] == tokens

    @pytest.mark.asyncio
    async def test_request_error_fails_chunk(self, provider, content):
        client = mock_client(create_error_response(429, code="TOO_MANY_REQUESTS", retry_after=3))

        with patch.object(provider, "_get_client", return_value=client):
            results = await provider.send_batch([expo_token(1), expo_token(2)], content)

        assert all(not r.success for r in results)
        assert results[0].error.status_code == 429
        assert results[0].error.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_missing_ticket_is_transient(self, provider, content):
        client = mock_client(create_expo_response([create_expo_ticket("ticket-1")]))

        with patch.object(provider, "_get_client", return_value=client):
            results = await provider.send_batch([expo_token(1), expo_token(2)], content)

        assert results[0].success is True
        assert isinstance(results[1].exception, TransientNetworkError)

    @pytest.mark.asyncio
    async def test_access_token_header(self, content):
        manager = CredentialManager({"expo": ExpoTokenGenerator("expo-secret")})
        provider = ExpoProvider(ExpoConfig(), manager)
        client = mock_client(create_expo_response([create_expo_ticket("ticket-1")]))

        with patch.object(provider, "_get_client", return_value=client):
            await provider.send(expo_token(1), content)

        assert client.post.call_args.kwargs["headers"]["Authorization"] == "Bearer expo-secret"

    @pytest.mark.asyncio
    async def test_no_auth_header_without_token(self, provider, content):
        client = mock_client(create_expo_response([create_expo_ticket("ticket-1")]))

        with patch.object(provider, "_get_client", return_value=client):
            await provider.send(expo_token(1), content)

        assert "Authorization" not in client.post.call_args.kwargs["headers"]


class TestExpoReceipts:
    """Tests for receipt retrieval."""

    @pytest.mark.asyncio
    async def test_receipts_mapped_by_ticket(self, provider):
        client = mock_client(create_json_response({"data": {
            "ticket-1": {"status": "ok"},
            "ticket-2": {"status": "error", "message": "gone", "details": {"error": "DeviceNotRegistered"}},
        }}))

        with patch.object(provider, "_get_client", return_value=client):
            receipts = await provider.get_receipts(["ticket-1", "ticket-2", "ticket-3"])

        assert set(receipts) == {"ticket-1", "ticket-2"}
        assert receipts["ticket-1"].success is True
        assert receipts["ticket-1"].receipt_pending is False
        assert receipts["ticket-2"].error.reason == "DeviceNotRegistered"

    @pytest.mark.asyncio
    async def test_rate_limited(self, provider):
        client = mock_client(create_error_response(429, code="TOO_MANY_REQUESTS", retry_after=10))

        with patch.object(provider, "_get_client", return_value=client):
            with pytest.raises(RateLimited) as exc_info:
                await provider.get_receipts(["ticket-1"])

        assert exc_info.value.retry_after == 10.0

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, provider):
        client = mock_client(create_error_response(503))

        with patch.object(provider, "_get_client", return_value=client):
            with pytest.raises(TransientNetworkError):
                await provider.get_receipts(["ticket-1"])

    @pytest.mark.asyncio
    async def test_rejected_request(self, provider):
        client = mock_client(create_error_response(400, code="VALIDATION_ERROR", message="bad ids"))

        with patch.object(provider, "_get_client", return_value=client):
            with pytest.raises(PermanentOther):
                await provider.get_receipts(["ticket-1"])
