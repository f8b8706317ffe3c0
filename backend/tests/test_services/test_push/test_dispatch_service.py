"""
Tests for PushDispatchService.

Providers are in-memory doubles; repositories run against the per-test
SQLite database so token removal and persistence are observed end to end.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from pushgate.core.retry import RetryConfig
from pushgate.services.push.apns_provider import APNSProvider
from pushgate.services.push.credentials import CredentialManager
from pushgate.services.push.dispatch_service import (
    DispatchGate,
    InvalidTokenBlocklist,
    PushDispatchService,
)
from pushgate.services.push.models import (
    AttemptStatus,
    DeliveryStatus,
    DispatchOptions,
    NotificationContent,
    Priority,
    ProviderCredential,
    Verdict,
)
from pushgate.services.push.retry_controller import RetryController
from tests.conftest import make_device
from tests.mocks import FakeProvider, create_apns_response, failure


@pytest.fixture
def content():
    return NotificationContent(title="Doorbell", body="Someone rang the doorbell")


@pytest.fixture
def build_service(device_repo, notification_repo, ticket_repo):
    """Factory for a dispatch service over the given provider doubles."""
    def _build(*providers, **kwargs):
        kwargs.setdefault("notifications", notification_repo)
        return PushDispatchService(
            devices=device_repo,
            providers={p.name: p for p in providers},
            retry=RetryController(RetryConfig(max_attempts=3, base_delay=0, jitter=False)),
            tickets=ticket_repo,
            **kwargs,
        )
    return _build


# =============================================================================
# Aggregation
# =============================================================================

class TestDispatchAggregation:
    """Every device ends with exactly one terminal attempt."""

    @pytest.mark.asyncio
    async def test_mixed_providers_partial(self, build_service, device_repo, content):
        """APNS accepted, FCM INVALID_ARGUMENT: one sent, one failed, token kept."""
        make_device(device_repo, platform="apns", token="apns-token-1")
        make_device(device_repo, platform="fcm", token="fcm-token-1")
        fcm = FakeProvider("fcm", {
            "fcm-token-1": lambda t: failure("fcm", t, 400, "INVALID_ARGUMENT"),
        })
        service = build_service(FakeProvider("apns"), fcm)

        outcome = await service.dispatch("user-1", content)

        assert outcome.to_summary() == {"sent": 1, "failed": 1}
        assert outcome.delivery_status == DeliveryStatus.PARTIAL
        assert outcome.invalid_token_ids == []
        failed = [a for a in outcome.per_device if a.status == AttemptStatus.FAILED][0]
        assert failed.error_code == "INVALID_ARGUMENT"
        assert failed.verdict == Verdict.PERMANENT_OTHER
        assert len(device_repo.list_for_user("user-1")) == 2

    @pytest.mark.asyncio
    async def test_multicast_unregistered_token_removed(self, build_service, device_repo, content):
        """One of three FCM tokens is unregistered: 2 sent, 1 failed and removed."""
        devices = [make_device(device_repo, platform="fcm", token=f"fcm-token-{i}") for i in range(1, 4)]
        fcm = FakeProvider("fcm", {
            "fcm-token-2": lambda t: failure("fcm", t, 404, "UNREGISTERED"),
        })
        service = build_service(fcm)

        outcome = await service.dispatch("user-1", content)

        assert fcm.calls == [["fcm-token-1", "fcm-token-2", "fcm-token-3"]]
        assert outcome.sent == 2
        assert outcome.failed == 1
        assert outcome.invalid_token_ids == [devices[1].id]
        remaining = {d.token for d in device_repo.list_for_user("user-1")}
        assert remaining == {"fcm-token-1", "fcm-token-3"}

    @pytest.mark.asyncio
    async def test_removed_token_not_used_again(self, build_service, device_repo, content):
        make_device(device_repo, platform="fcm", token="fcm-token-1")
        make_device(device_repo, platform="fcm", token="fcm-token-2")
        fcm = FakeProvider("fcm", {
            "fcm-token-2": lambda t: failure("fcm", t, 404, "UNREGISTERED"),
        })
        service = build_service(fcm)

        await service.dispatch("user-1", content)
        second = await service.dispatch("user-1", content)

        assert fcm.calls[-1] == ["fcm-token-1"]
        assert second.to_summary() == {"sent": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_blocklist_covers_failed_removal(self, build_service, device_repo, content, caplog):
        """A token the database could not drop is still skipped by this process."""
        make_device(device_repo, platform="apns", token="apns-token-1")
        apns = FakeProvider("apns", {
            "apns-token-1": lambda t: failure("apns", t, 410, "Unregistered"),
        })
        service = build_service(apns)

        with patch.object(device_repo, "remove_tokens", side_effect=RuntimeError("database is locked")):
            await service.dispatch("user-1", content)
        second = await service.dispatch("user-1", content)

        assert "apns-token-1" in service.blocklist
        assert second.error == "no_devices"
        assert len(apns.calls) == 1
        assert any("Failed to remove invalid device tokens" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_counts_match_device_count(self, build_service, device_repo, content):
        make_device(device_repo, platform="apns", token="apns-ok")
        make_device(device_repo, platform="apns", token="apns-bad")
        make_device(device_repo, platform="fcm", token="fcm-ok")
        make_device(device_repo, platform="expo")
        make_device(device_repo, platform="web", token="web-sub")
        apns = FakeProvider("apns", {"apns-bad": lambda t: failure("apns", t, 400, "BadTopic")})
        service = build_service(apns, FakeProvider("fcm"), FakeProvider("expo"))

        outcome = await service.dispatch("user-1", content)

        assert outcome.sent + outcome.failed == 5
        assert len({a.device_token_id for a in outcome.per_device}) == 5
        assert all(a.status != AttemptStatus.RETRYING for a in outcome.per_device)

    @pytest.mark.asyncio
    async def test_transient_failure_capped(self, build_service, device_repo, content):
        """Three transient errors leave the device failed at the attempt cap."""
        make_device(device_repo, platform="fcm", token="fcm-token-1")
        fcm = FakeProvider("fcm", {"fcm-token-1": lambda t: failure("fcm", t, 503)})
        service = build_service(fcm)

        outcome = await service.dispatch("user-1", content)

        attempt = outcome.per_device[0]
        assert len(fcm.calls) == 3
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.verdict == Verdict.TRANSIENT
        assert attempt.retry_count == 2
        assert outcome.invalid_token_ids == []

    @pytest.mark.asyncio
    async def test_expo_batches_of_100(self, build_service, device_repo, ticket_repo, content):
        """250 Expo tokens are sent as 100/100/50 and every ticket is stored."""
        for _ in range(250):
            make_device(device_repo, platform="expo")
        expo = FakeProvider("expo")
        service = build_service(expo)

        outcome = await service.dispatch("user-1", content)

        assert sorted(len(c) for c in expo.calls) == [50, 100, 100]
        assert outcome.sent == 250
        assert all(a.receipt_pending for a in outcome.per_device)
        assert ticket_repo.count() == 250


# =============================================================================
# Unsupported and edge cases
# =============================================================================

class TestDispatchEdgeCases:

    @pytest.mark.asyncio
    async def test_no_devices(self, build_service, content):
        apns = FakeProvider("apns")
        service = build_service(apns)

        outcome = await service.dispatch("nobody", content)

        assert outcome.error == "no_devices"
        assert outcome.per_device == []
        assert outcome.delivery_status is None
        assert apns.calls == []

    @pytest.mark.parametrize("user_id", ["", "   ", None, 42])
    @pytest.mark.asyncio
    async def test_invalid_user(self, build_service, content, user_id):
        service = build_service(FakeProvider("apns"))

        outcome = await service.dispatch(user_id, content)

        assert outcome.error == "invalid_user"
        assert outcome.user_id is None

    @pytest.mark.asyncio
    async def test_push_disabled(self, build_service, device_repo, content):
        make_device(device_repo, platform="apns")
        apns = FakeProvider("apns")
        service = build_service(apns, enabled=False)

        outcome = await service.dispatch("user-1", content)

        assert outcome.error == "push_disabled"
        assert apns.calls == []

    @pytest.mark.asyncio
    async def test_unsupported_platform(self, build_service, device_repo, content):
        """web devices and providers without configuration fail without a send."""
        web = make_device(device_repo, platform="web", token="web-sub")
        android = make_device(device_repo, platform="fcm", token="fcm-token-1")
        make_device(device_repo, platform="apns", token="apns-token-1")
        service = build_service(FakeProvider("apns"))

        outcome = await service.dispatch("user-1", content)

        by_id = {a.device_token_id: a for a in outcome.per_device}
        assert by_id[web.id].error_code == "unsupported_platform"
        assert by_id[android.id].error_code == "unsupported_platform"
        assert outcome.sent == 1
        assert outcome.invalid_token_ids == []

    @pytest.mark.asyncio
    async def test_timeout_marks_unfinished_devices(self, build_service, device_repo, content):
        slow = make_device(device_repo, platform="apns", token="apns-token-1")
        make_device(device_repo, platform="fcm", token="fcm-token-1")
        service = build_service(FakeProvider("apns", delay=5), FakeProvider("fcm"))

        outcome = await service.dispatch("user-1", content, DispatchOptions(timeout=0.1))

        by_id = {a.device_token_id: a for a in outcome.per_device}
        assert outcome.timed_out is True
        assert by_id[slow.id].error_code == "dispatch_timeout"
        assert by_id[slow.id].verdict == Verdict.TRANSIENT
        assert outcome.sent == 1

    @pytest.mark.asyncio
    async def test_timeout_keeps_rejected_token_verdict(self, build_service, device_repo, content):
        """A token rejected before the deadline is removed even though its batch was cancelled."""
        waiting = make_device(device_repo, platform="fcm", token="fcm-1")
        dead = make_device(device_repo, platform="fcm", token="fcm-2")
        fcm = FakeProvider("fcm", {
            "fcm-1": lambda t: failure("fcm", t, 429, "QUOTA_EXCEEDED", retry_after=5),
            "fcm-2": lambda t: failure("fcm", t, 404, "UNREGISTERED"),
        })
        service = build_service(fcm)

        outcome = await service.dispatch("user-1", content, DispatchOptions(timeout=0.3))

        by_id = {a.device_token_id: a for a in outcome.per_device}
        assert outcome.timed_out is True
        assert by_id[waiting.id].error_code == "dispatch_timeout"
        assert by_id[dead.id].verdict == Verdict.PERMANENT_TOKEN_INVALID
        assert outcome.invalid_token_ids == [dead.id]
        assert [d.token for d in device_repo.list_for_user("user-1")] == ["fcm-1"]

        await service.dispatch("user-1", content, DispatchOptions(timeout=0.3))

        assert fcm.calls[-1] == ["fcm-1"]

    @pytest.mark.asyncio
    async def test_timeout_covers_admission(self, build_service, device_repo, content):
        """A dispatch stuck behind a full gate gives up at its deadline."""
        device = make_device(device_repo, platform="apns", token="apns-token-1")
        apns = FakeProvider("apns")
        service = build_service(apns, max_concurrent_dispatches=1)
        await service.gate.acquire()
        try:
            started = time.monotonic()
            outcome = await asyncio.wait_for(
                service.dispatch("user-1", content, DispatchOptions(timeout=0.2)), timeout=2
            )
            elapsed = time.monotonic() - started
        finally:
            service.gate.release()

        assert elapsed < 1.0
        assert outcome.timed_out is True
        assert outcome.per_device[0].device_token_id == device.id
        assert outcome.per_device[0].error_code == "dispatch_timeout"
        assert outcome.delivery_status == DeliveryStatus.FAILED
        assert apns.calls == []
        assert service.gate.waiting == 0
        assert service.gate.active == 0

    @pytest.mark.asyncio
    async def test_configuration_error(self, build_service, device_repo, content, apns_config):
        """A provider without credentials fails its devices, others still send."""
        make_device(device_repo, platform="apns", token="apns-token-1")
        make_device(device_repo, platform="fcm", token="fcm-token-1")
        apns = APNSProvider(apns_config, CredentialManager())
        service = build_service(FakeProvider("fcm"))
        service._providers["apns"] = apns

        outcome = await service.dispatch("user-1", content)

        codes = sorted(a.error_code or "sent" for a in outcome.per_device)
        assert codes == ["configuration_error", "sent"]

    @pytest.mark.asyncio
    async def test_device_lookup_failure(self, build_service, device_repo, content):
        service = build_service(FakeProvider("apns"))

        with patch.object(device_repo, "list_for_user", side_effect=RuntimeError("db down")):
            outcome = await service.dispatch("user-1", content)

        assert outcome.error == "device_lookup_failed"

    @pytest.mark.asyncio
    async def test_platform_filter(self, build_service, device_repo, content):
        make_device(device_repo, platform="apns", token="apns-token-1")
        make_device(device_repo, platform="fcm", token="fcm-token-1")
        apns, fcm = FakeProvider("apns"), FakeProvider("fcm")
        service = build_service(apns, fcm)

        outcome = await service.dispatch("user-1", content, DispatchOptions(platforms=["ios"]))

        assert len(outcome.per_device) == 1
        assert fcm.calls == []

    @pytest.mark.asyncio
    async def test_unknown_platform_filter(self, build_service, device_repo, content):
        make_device(device_repo, platform="apns")
        service = build_service(FakeProvider("apns"))

        with pytest.raises(ValueError):
            await service.dispatch("user-1", content, DispatchOptions(platforms=["blackberry"]))

    @pytest.mark.asyncio
    async def test_exclude_device_ids(self, build_service, device_repo, content):
        make_device(device_repo, platform="apns", token="apns-token-1", device_id="iphone")
        make_device(device_repo, platform="apns", token="apns-token-2", device_id="ipad")
        apns = FakeProvider("apns")
        service = build_service(apns)

        await service.dispatch("user-1", content, DispatchOptions(exclude_device_ids=["ipad"]))

        assert apns.tokens_sent == ["apns-token-1"]


# =============================================================================
# Concurrency
# =============================================================================

class TestDispatchConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_dispatches_are_independent(self, build_service, device_repo, content):
        alice = make_device(device_repo, user_id="alice", platform="apns", token="apns-alice")
        bob = make_device(device_repo, user_id="bob", platform="fcm", token="fcm-bob")
        service = build_service(FakeProvider("apns", delay=0.01), FakeProvider("fcm", delay=0.01))

        first, second = await asyncio.gather(
            service.dispatch("alice", content),
            service.dispatch("bob", content),
        )

        assert [a.device_token_id for a in first.per_device] == [alice.id]
        assert [a.device_token_id for a in second.per_device] == [bob.id]
        assert service.gate.active == 0

    @pytest.mark.asyncio
    async def test_credential_generated_once(self, build_service, device_repo, apns_config, content):
        """Concurrent APNS sends on a cold cache mint a single provider token."""
        calls = []

        class SlowGenerator:
            async def generate(self):
                calls.append(1)
                await asyncio.sleep(0.02)
                now = datetime.now(timezone.utc)
                return ProviderCredential("apns", "jwt-1", now, now + timedelta(hours=1), now + timedelta(minutes=50))

        for i in range(5):
            make_device(device_repo, platform="apns", token=f"apns-token-{i}")
        provider = APNSProvider(apns_config, CredentialManager({"apns": SlowGenerator()}))
        client = AsyncMock(spec=httpx.AsyncClient)
        client.is_closed = False
        client.post = AsyncMock(return_value=create_apns_response(200))
        service = build_service()
        service._providers["apns"] = provider

        with patch.object(provider, "_get_client", return_value=client):
            outcome = await service.dispatch("user-1", content)

        assert outcome.sent == 5
        assert len(calls) == 1


class TestDispatchGate:
    """Tests for priority admission."""

    @pytest.mark.asyncio
    async def test_urgent_admitted_first(self):
        gate = DispatchGate(1)
        await gate.acquire()
        order = []

        async def waiter(name, urgent):
            await gate.acquire(urgent)
            order.append(name)
            gate.release()

        tasks = [
            asyncio.create_task(waiter("normal-1", False)),
            asyncio.create_task(waiter("normal-2", False)),
            asyncio.create_task(waiter("urgent", True)),
        ]
        await asyncio.sleep(0)
        assert gate.waiting == 3

        gate.release()
        await asyncio.gather(*tasks)

        assert order == ["urgent", "normal-1", "normal-2"]
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        gate = DispatchGate(1)
        await gate.acquire()
        task = asyncio.create_task(gate.acquire())
        await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert gate.waiting == 0
        gate.release()
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_cancel_racing_release(self):
        """Cancelling a waiter in the same iteration as release() still raises CancelledError."""
        gate = DispatchGate(1)
        await gate.acquire()
        task = asyncio.create_task(gate.acquire())
        await asyncio.sleep(0)

        task.cancel()
        gate.release()
        results = await asyncio.gather(task, return_exceptions=True)

        assert isinstance(results[0], asyncio.CancelledError)
        assert gate.waiting == 0
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_limit_bounds_active(self):
        gate = DispatchGate(2)
        peak = 0

        async def work():
            nonlocal peak
            async with gate.slot():
                peak = max(peak, gate.active)
                await asyncio.sleep(0.01)

        await asyncio.gather(*[work() for _ in range(6)])

        assert peak == 2

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            DispatchGate(0)


class TestInvalidTokenBlocklist:
    def test_evicts_oldest(self):
        blocklist = InvalidTokenBlocklist(max_size=2)
        for token in ("a", "b", "c"):
            blocklist.add(token)

        assert "a" not in blocklist
        assert "c" in blocklist
        assert len(blocklist) == 2

    def test_discard(self):
        blocklist = InvalidTokenBlocklist()
        blocklist.add("a")
        blocklist.discard("a")
        blocklist.discard("missing")
        assert "a" not in blocklist


# =============================================================================
# Persistence
# =============================================================================

class TestDispatchPersistence:

    @pytest.mark.asyncio
    async def test_status_written_back(self, build_service, device_repo, notification_repo, content):
        make_device(device_repo, platform="apns", token="apns-token-1")
        make_device(device_repo, platform="fcm", token="fcm-token-1")
        fcm = FakeProvider("fcm", {"fcm-token-1": lambda t: failure("fcm", t, 400, "INVALID_ARGUMENT")})
        service = build_service(FakeProvider("apns"), fcm)
        notification_id = notification_repo.create("user-1", "Doorbell", "Someone rang")

        await service.dispatch("user-1", content, DispatchOptions(notification_id=notification_id))

        row = notification_repo.get(notification_id)
        assert row["delivery_status"] == "partial"
        assert row["sent_count"] == 1
        assert row["failed_count"] == 1
        assert row["delivered_at"] is not None

    @pytest.mark.asyncio
    async def test_persisted_once(self, build_service, device_repo, content):
        for i in range(3):
            make_device(device_repo, platform="apns", token=f"apns-token-{i}")
        notifications = MagicMock()
        service = build_service(FakeProvider("apns"), notifications=notifications)

        await service.dispatch("user-1", content, DispatchOptions(notification_id="notif-1"))

        notifications.update_delivery_status.assert_called_once()
        kwargs = notifications.update_delivery_status.call_args.kwargs
        assert kwargs["delivery_status"] == "delivered"
        assert kwargs["sent_count"] == 3

    @pytest.mark.asyncio
    async def test_failed_delivery_has_no_delivered_at(self, build_service, device_repo, content):
        make_device(device_repo, platform="apns", token="apns-token-1")
        notifications = MagicMock()
        apns = FakeProvider("apns", {"apns-token-1": lambda t: failure("apns", t, 400, "BadTopic")})
        service = build_service(apns, notifications=notifications)

        await service.dispatch("user-1", content, DispatchOptions(notification_id="notif-1"))

        kwargs = notifications.update_delivery_status.call_args.kwargs
        assert kwargs["delivery_status"] == "failed"
        assert kwargs["delivered_at"] is None

    @pytest.mark.asyncio
    async def test_persist_failure_logged(self, build_service, device_repo, content, caplog):
        """The outcome is still returned when the write-back fails."""
        make_device(device_repo, platform="apns", token="apns-token-1")
        notifications = MagicMock()
        notifications.update_delivery_status.side_effect = RuntimeError("disk full")
        service = build_service(FakeProvider("apns"), notifications=notifications)

        outcome = await service.dispatch("user-1", content, DispatchOptions(notification_id="notif-1"))

        assert outcome.sent == 1
        assert any("Failed to persist delivery status" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_no_write_without_notification_id(self, build_service, device_repo, content):
        make_device(device_repo, platform="apns")
        notifications = MagicMock()
        service = build_service(FakeProvider("apns"), notifications=notifications)

        await service.dispatch("user-1", content)

        notifications.update_delivery_status.assert_not_called()


# =============================================================================
# Variants, stats and maintenance
# =============================================================================

class TestDispatchVariants:

    @pytest.mark.asyncio
    async def test_dispatch_urgent(self, build_service, device_repo):
        make_device(device_repo, platform="fcm")
        fcm = FakeProvider("fcm")
        service = build_service(fcm)
        options = DispatchOptions()

        await service.dispatch_urgent("user-1", NotificationContent(title="t", priority=Priority.NORMAL), options)

        assert fcm.contents[0].priority == Priority.HIGH
        assert options.urgent is False

    @pytest.mark.asyncio
    async def test_send_silent(self, build_service, device_repo):
        make_device(device_repo, platform="fcm")
        fcm = FakeProvider("fcm")
        service = build_service(fcm)

        outcome = await service.send_silent("user-1", {"sync": "settings"})

        sent = fcm.contents[0]
        assert outcome.sent == 1
        assert sent.silent is True
        assert sent.data == {"sync": "settings"}
        assert sent.priority == Priority.NORMAL

    @pytest.mark.asyncio
    async def test_broadcast(self, build_service, device_repo, content):
        make_device(device_repo, user_id="u1", platform="apns")
        make_device(device_repo, user_id="u2", platform="fcm")
        service = build_service(FakeProvider("apns"), FakeProvider("fcm"), broadcast_chunk_size=2)

        result = await service.broadcast(["u1", "u2", "u3", "u1"], content)

        assert result.users == 3
        assert result.sent == 2
        assert result.failed == 0
        assert result.no_devices == 1
        assert set(result.outcomes) == {"u1", "u2", "u3"}

    @pytest.mark.asyncio
    async def test_get_stats(self, build_service, device_repo, content):
        make_device(device_repo, platform="fcm", token="fcm-token-1")
        make_device(device_repo, platform="fcm", token="fcm-token-2")
        fcm = FakeProvider("fcm", {"fcm-token-2": lambda t: failure("fcm", t, 404, "UNREGISTERED")})
        service = build_service(fcm)

        await service.dispatch("user-1", content)
        stats = service.get_stats()

        assert stats["providers"] == ["fcm"]
        assert stats["dispatches"] == {"partial": 1}
        assert stats["by_provider"]["fcm"] == {
            "sent": 1,
            "failed": 1,
            "invalid_tokens": 1,
            "errors": {"UNREGISTERED": 1},
        }
        assert stats["blocklisted_tokens"] == 1
        assert stats["devices_by_platform"] == {"fcm": 1}
        assert stats["admission"]["active"] == 0

    @pytest.mark.asyncio
    async def test_check_receipts_removes_dead_tokens(self, build_service, device_repo, ticket_repo, content):
        device = make_device(device_repo, platform="expo")
        expo = FakeProvider("expo")
        service = build_service(expo)

        outcome = await service.dispatch("user-1", content)
        ticket_id = outcome.per_device[0].provider_message_id
        expo.receipts[ticket_id] = failure("expo", ticket_id, 200, "DeviceNotRegistered")

        result = await service.check_receipts()

        assert result.checked == 1
        assert result.tokens_removed == 1
        assert device.token in service.blocklist
        assert device_repo.list_for_user("user-1") == []
        assert ticket_repo.count() == 0

    @pytest.mark.asyncio
    async def test_check_receipts_without_expo(self, build_service):
        service = build_service(FakeProvider("apns"))

        result = await service.check_receipts()

        assert result.checked == 0

    @pytest.mark.asyncio
    async def test_close_closes_providers(self, build_service):
        apns, fcm = FakeProvider("apns"), FakeProvider("fcm")

        async with build_service(apns, fcm):
            pass

        assert apns.closed and fcm.closed
