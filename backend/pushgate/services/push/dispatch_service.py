"""
Unified Push Dispatch Service.

Routes a notification to every device a user has registered, across APNS,
FCM and Expo.

Features:
- One concurrent task per provider group, bounded sends inside each group
- Retry and backoff delegated to the RetryController
- Invalid tokens removed (and blocklisted) before dispatch returns
- Aggregate delivery status persisted once per call
- Priority admission: urgent dispatches jump the waiting queue
"""

import asyncio
import heapq
import itertools
import logging
import time
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pushgate.core.config import settings
from pushgate.core.logging_config import clear_correlation_id, get_correlation_id, set_correlation_id
from pushgate.core.metrics import push_dispatches_in_progress, record_dispatch, record_token_invalidated
from pushgate.core.retry import RetryConfig
from pushgate.services.push import batch_planner
from pushgate.services.push.apns_provider import APNSProvider
from pushgate.services.push.batch_planner import Batch, BatchLimits
from pushgate.services.push.constants import PROVIDER_APNS, PROVIDER_EXPO, PROVIDER_FCM
from pushgate.services.push.credentials import (
    APNsTokenGenerator,
    CredentialManager,
    ExpoTokenGenerator,
    FCMTokenGenerator,
)
from pushgate.services.push.exceptions import ConfigurationError, InvalidUserError
from pushgate.services.push.expo_provider import ExpoProvider
from pushgate.services.push.fcm_provider import FCMProvider
from pushgate.services.push.models import (
    APNSConfig,
    AttemptStatus,
    DeliveryAttempt,
    DeliveryOutcome,
    DeviceTarget,
    DispatchOptions,
    ExpoConfig,
    FCMConfig,
    NotificationContent,
    Priority,
    Verdict,
)
from pushgate.services.push.receipts import ReceiptChecker, ReceiptCheckResult
from pushgate.services.push.repository import (
    DeviceTokenRepository,
    ExpoTicketRepository,
    NotificationRepository,
    PendingTicket,
    normalize_platform,
)
from pushgate.services.push.retry_controller import RetryController

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_DISPATCHES = 50
DEFAULT_PROVIDER_CONCURRENCY = 10
DEFAULT_BROADCAST_CHUNK_SIZE = 500

ERROR_INVALID_USER = "invalid_user"
ERROR_NO_DEVICES = "no_devices"
ERROR_PUSH_DISABLED = "push_disabled"
ERROR_DEVICE_LOOKUP = "device_lookup_failed"


class InvalidTokenBlocklist:
    """
    Tokens found invalid during this process' lifetime.

    Guards the window between a provider rejecting a token and the row
    disappearing from every concurrent reader. Oldest entries are evicted
    once max_size is reached.
    """

    def __init__(self, max_size: int = 100_000):
        self._max_size = max_size
        self._tokens: "OrderedDict[str, None]" = OrderedDict()

    def add(self, token: str) -> None:
        self._tokens[token] = None
        self._tokens.move_to_end(token)
        while len(self._tokens) > self._max_size:
            self._tokens.popitem(last=False)

    def discard(self, token: str) -> None:
        self._tokens.pop(token, None)

    def __contains__(self, token: object) -> bool:
        return token in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)


class DispatchGate:
    """
    Bounds concurrent dispatches.

    Behaves like a semaphore, except that waiters are admitted urgent-first
    and in arrival order within each priority.
    """

    def __init__(self, limit: int = DEFAULT_MAX_CONCURRENT_DISPATCHES):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._active = 0
        self._waiters: List[Tuple[int, int, asyncio.Future]] = []
        self._counter = itertools.count()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def acquire(self, urgent: bool = False) -> None:
        if self._active < self._limit and not self._waiters:
            self._active += 1
            return

        future = asyncio.get_running_loop().create_future()
        entry = (0 if urgent else 1, next(self._counter), future)
        heapq.heappush(self._waiters, entry)
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # Slot was handed over as we were cancelled; pass it on
                self.release()
            elif entry in self._waiters:
                # release() may already have popped it in this loop iteration
                self._waiters.remove(entry)
                heapq.heapify(self._waiters)
            raise

    def release(self) -> None:
        # The slot moves straight to the next waiter, so _active is unchanged
        while self._waiters:
            _, _, future = heapq.heappop(self._waiters)
            if not future.done():
                future.set_result(None)
                return
        self._active -= 1

    @asynccontextmanager
    async def slot(self, urgent: bool = False):
        await self.acquire(urgent)
        try:
            yield
        finally:
            self.release()


@dataclass
class ProviderStats:
    """Running totals for one provider since process start."""

    sent: int = 0
    failed: int = 0
    invalid_tokens: int = 0
    errors: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "invalid_tokens": self.invalid_tokens,
            "errors": dict(self.errors),
        }


@dataclass
class BroadcastResult:
    """Aggregated result of a broadcast.

    Attributes:
        users: Number of user ids processed
        sent: Devices sent across all users
        failed: Devices failed across all users
        no_devices: Users without any target device
        outcomes: Per-user outcomes keyed by user id
    """

    users: int = 0
    sent: int = 0
    failed: int = 0
    no_devices: int = 0
    outcomes: Dict[str, DeliveryOutcome] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "users": self.users,
            "sent": self.sent,
            "failed": self.failed,
            "no_devices": self.no_devices,
        }


def _failed_attempt(device: DeviceTarget, error_code: str, verdict: Verdict = Verdict.PERMANENT_OTHER) -> DeliveryAttempt:
    return DeliveryAttempt(
        device_token_id=device.id,
        provider=device.platform,
        status=AttemptStatus.FAILED,
        token=device.token,
        error_code=error_code,
        verdict=verdict,
    )


class PushDispatchService:
    """
    Unified push dispatch service.

    Usage:
        service = PushDispatchService.from_settings()
        outcome = await service.dispatch(
            "user-123",
            NotificationContent(title="Order shipped", body="Arrives Friday"),
            DispatchOptions(notification_id="notif-456"),
        )
        outcome.to_summary()  # {"sent": 2, "failed": 0}
    """

    def __init__(
        self,
        devices: DeviceTokenRepository,
        notifications: NotificationRepository,
        providers: Dict[str, Any],
        retry: Optional[RetryController] = None,
        limits: Optional[BatchLimits] = None,
        tickets: Optional[ExpoTicketRepository] = None,
        credentials: Optional[CredentialManager] = None,
        enabled: bool = True,
        max_concurrent_dispatches: int = DEFAULT_MAX_CONCURRENT_DISPATCHES,
        provider_concurrency: int = DEFAULT_PROVIDER_CONCURRENCY,
        broadcast_chunk_size: int = DEFAULT_BROADCAST_CHUNK_SIZE,
        on_token_invalid: Optional[Callable[[str, str], None]] = None,
    ):
        """
        Initialize dispatch service.

        Args:
            devices: Device token repository
            notifications: Notification repository for the persisted outcome
            providers: Constructed provider clients keyed by provider name
            retry: Retry controller (defaults to the push send policy)
            limits: Per-provider batch ceilings
            tickets: Store for Expo tickets awaiting receipts
            credentials: Credential manager shared by the providers
            enabled: When False, dispatch is a logged no-op
            max_concurrent_dispatches: Admission limit of the DispatchGate
            provider_concurrency: Parallel provider calls within one provider group
            broadcast_chunk_size: User ids processed together by broadcast
            on_token_invalid: Callback(device_token_id, provider) for removed tokens
        """
        self._devices = devices
        self._notifications = notifications
        self._providers = dict(providers)
        self._retry = retry or RetryController()
        self._limits = limits or BatchLimits()
        self._tickets = tickets
        self._credentials = credentials
        self._enabled = enabled
        self._provider_concurrency = max(1, provider_concurrency)
        self._broadcast_chunk_size = max(1, broadcast_chunk_size)
        self._on_token_invalid = on_token_invalid

        self.blocklist = InvalidTokenBlocklist()
        self.gate = DispatchGate(max_concurrent_dispatches)

        self._stats: Dict[str, ProviderStats] = {}
        self._dispatch_counts: Dict[str, int] = {}

        logger.info(
            "PushDispatchService initialized",
            extra={
                "providers": sorted(self._providers),
                "enabled": enabled,
                "max_concurrent_dispatches": max_concurrent_dispatches,
            }
        )

    @classmethod
    def from_settings(cls, session_factory=None) -> "PushDispatchService":
        """
        Build the service and its providers from application settings.

        Providers whose configuration is missing or invalid are left out;
        their devices are then reported as unsupported_platform.
        """
        credentials = CredentialManager()
        providers: Dict[str, Any] = {}
        timeout = settings.PUSH_SEND_TIMEOUT_SECONDS
        concurrency = settings.PUSH_PROVIDER_CONCURRENCY

        if settings.apns_ready:
            try:
                apns_config = APNSConfig(
                    key_file=settings.APNS_KEY_FILE,
                    key_id=settings.APNS_KEY_ID,
                    team_id=settings.APNS_TEAM_ID,
                    bundle_id=settings.APNS_BUNDLE_ID,
                    use_sandbox=settings.APNS_USE_SANDBOX,
                )
                credentials.register(PROVIDER_APNS, APNsTokenGenerator(apns_config))
                providers[PROVIDER_APNS] = APNSProvider(apns_config, credentials, concurrency, timeout)
            except ValueError as e:
                logger.error(f"APNS configuration invalid, provider disabled: {e}")
        else:
            logger.info("APNS not configured, iOS devices will be skipped")

        if settings.fcm_ready:
            try:
                fcm_config = FCMConfig(
                    project_id=settings.FCM_PROJECT_ID,
                    credentials_path=settings.FCM_CREDENTIALS_FILE,
                )
                credentials.register(PROVIDER_FCM, FCMTokenGenerator(fcm_config))
                providers[PROVIDER_FCM] = FCMProvider(fcm_config, credentials, concurrency, timeout)
            except ValueError as e:
                logger.error(f"FCM configuration invalid, provider disabled: {e}")
        else:
            logger.info("FCM not configured, Android devices will be skipped")

        if settings.EXPO_ENABLED:
            expo_config = ExpoConfig(batch_size=settings.PUSH_EXPO_BATCH_SIZE)
            if settings.EXPO_ACCESS_TOKEN:
                credentials.register(PROVIDER_EXPO, ExpoTokenGenerator(settings.EXPO_ACCESS_TOKEN))
            providers[PROVIDER_EXPO] = ExpoProvider(expo_config, credentials, timeout)

        retry = RetryController(
            RetryConfig(
                max_attempts=settings.PUSH_MAX_ATTEMPTS,
                base_delay=settings.PUSH_RETRY_BASE_DELAY,
                max_delay=settings.PUSH_RETRY_MAX_DELAY,
                max_retry_after=settings.PUSH_RETRY_MAX_RETRY_AFTER,
            ),
            send_timeout=timeout,
        )

        return cls(
            devices=DeviceTokenRepository(session_factory),
            notifications=NotificationRepository(session_factory),
            providers=providers,
            retry=retry,
            limits=BatchLimits.from_settings(),
            tickets=ExpoTicketRepository(session_factory),
            credentials=credentials,
            enabled=settings.PUSH_ENABLED,
            max_concurrent_dispatches=settings.PUSH_MAX_CONCURRENT_DISPATCHES,
            provider_concurrency=concurrency,
            broadcast_chunk_size=settings.PUSH_BROADCAST_CHUNK_SIZE,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def providers(self) -> List[str]:
        return sorted(self._providers)

    @property
    def credentials(self) -> Optional[CredentialManager]:
        return self._credentials

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate_user_id(user_id: Any) -> str:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidUserError(f"Invalid user id: {user_id!r}")
        return user_id

    async def dispatch(
        self,
        user_id: str,
        content: NotificationContent,
        options: Optional[DispatchOptions] = None,
    ) -> DeliveryOutcome:
        """
        Send a notification to every device of a user.

        Never raises for delivery failures: each device ends up with exactly
        one terminal attempt in the returned outcome.

        Args:
            user_id: Target user
            content: Notification content
            options: Device filters, notification id, timeout and urgency

        Returns:
            DeliveryOutcome. error is set (and per_device empty) for an invalid
            user, a user without devices, or when push is disabled.
        """
        options = options or DispatchOptions()
        start_time = time.time()

        try:
            user_id = self._validate_user_id(user_id)
        except InvalidUserError as e:
            logger.warning(str(e))
            self._count_dispatch(ERROR_INVALID_USER, start_time)
            return DeliveryOutcome(user_id=None, error=ERROR_INVALID_USER)

        if not self._enabled:
            logger.info(
                "Push disabled, dispatch skipped",
                extra={"user_id": user_id},
            )
            self._count_dispatch("disabled", start_time)
            return DeliveryOutcome(user_id=user_id, error=ERROR_PUSH_DISABLED)

        if options.urgent and content.priority != Priority.HIGH:
            content = content.with_priority(Priority.HIGH)

        correlation_token = None
        if get_correlation_id() is None:
            correlation_token = set_correlation_id(f"dispatch-{uuid.uuid4().hex[:12]}")
        try:
            devices = self._resolve_devices(user_id, options)
            if devices is None:
                self._count_dispatch(ERROR_DEVICE_LOOKUP, start_time)
                return DeliveryOutcome(user_id=user_id, error=ERROR_DEVICE_LOOKUP)
            if not devices:
                logger.debug(
                    f"No devices found for user {user_id}",
                    extra={"user_id": user_id}
                )
                self._count_dispatch(ERROR_NO_DEVICES, start_time)
                return DeliveryOutcome(
                    user_id=user_id,
                    error=ERROR_NO_DEVICES,
                    duration_ms=(time.time() - start_time) * 1000,
                )

            # The caller's timeout covers admission as well as sending
            deadline = None if options.timeout is None else time.monotonic() + options.timeout
            try:
                await asyncio.wait_for(self.gate.acquire(urgent=options.urgent), timeout=options.timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Dispatch not admitted within {options.timeout}s",
                    extra={"user_id": user_id, "waiting": self.gate.waiting},
                )
                return self._finish(user_id, devices, {}, True, options.notification_id, start_time)

            try:
                with push_dispatches_in_progress.track_inprogress():
                    remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                    attempts, timed_out = await self._send_all(user_id, devices, content, remaining)
                    return self._finish(user_id, devices, attempts, timed_out, options.notification_id, start_time)
            finally:
                self.gate.release()
        finally:
            if correlation_token is not None:
                clear_correlation_id(correlation_token)

    async def dispatch_urgent(
        self,
        user_id: str,
        content: NotificationContent,
        options: Optional[DispatchOptions] = None,
    ) -> DeliveryOutcome:
        """Dispatch with priority=high, admitted ahead of queued dispatches."""
        options = replace(options, urgent=True) if options else DispatchOptions(urgent=True)
        return await self.dispatch(user_id, content, options)

    async def send_silent(
        self,
        user_id: str,
        data: Dict[str, Any],
        options: Optional[DispatchOptions] = None,
    ) -> DeliveryOutcome:
        """Data-only push that wakes the app without showing anything."""
        content = NotificationContent(data=data, silent=True, priority=Priority.NORMAL, sound=None)
        return await self.dispatch(user_id, content, options)

    async def broadcast(
        self,
        user_ids: Iterable[str],
        content: NotificationContent,
        options: Optional[DispatchOptions] = None,
    ) -> BroadcastResult:
        """
        Dispatch the same notification to many users.

        Users are processed in chunks; each user is an independent dispatch
        going through the admission gate. notification_id is not persisted
        for broadcasts since it identifies a single user's notification.
        """
        options = options or DispatchOptions()
        base = DispatchOptions(
            exclude_device_ids=list(options.exclude_device_ids),
            platforms=options.platforms,
            timeout=options.timeout,
            urgent=options.urgent,
        )
        unique_ids = list(dict.fromkeys(user_ids))
        result = BroadcastResult(users=len(unique_ids))

        for start in range(0, len(unique_ids), self._broadcast_chunk_size):
            chunk = unique_ids[start:start + self._broadcast_chunk_size]
            outcomes = await asyncio.gather(*[
                self.dispatch(uid, content, replace(base)) for uid in chunk
            ])
            for uid, outcome in zip(chunk, outcomes):
                result.outcomes[uid] = outcome
                result.sent += outcome.sent
                result.failed += outcome.failed
                if outcome.error == ERROR_NO_DEVICES:
                    result.no_devices += 1

        logger.info(
            "Broadcast complete",
            extra=result.to_dict(),
        )
        return result

    def _resolve_devices(self, user_id: str, options: DispatchOptions) -> Optional[List[DeviceTarget]]:
        """
        Target devices after filters and the blocklist.

        Returns:
            None when the lookup itself failed

        Raises:
            ValueError: Unknown platform in options.platforms
        """
        platforms = None
        if options.platforms is not None:
            platforms = [normalize_platform(p) for p in options.platforms]

        try:
            devices = self._devices.list_for_user(
                user_id,
                platforms=platforms,
                exclude_device_ids=options.exclude_device_ids,
            )
        except Exception as e:
            logger.error(
                f"Device lookup failed for user {user_id}: {e}",
                exc_info=True,
                extra={"user_id": user_id},
            )
            return None

        return [d for d in devices if d.token not in self.blocklist]

    async def _send_all(
        self,
        user_id: str,
        devices: List[DeviceTarget],
        content: NotificationContent,
        timeout: Optional[float],
    ) -> Tuple[Dict[str, DeliveryAttempt], bool]:
        """Fan out one task per provider group; returns attempts by device id and the timed_out flag."""
        plan = batch_planner.plan(devices, self._limits, enabled=self._providers.keys())

        attempts: Dict[str, DeliveryAttempt] = {}
        for device in plan.unsupported:
            attempts[device.id] = _failed_attempt(device, "unsupported_platform")

        tasks = [
            asyncio.create_task(self._send_group(provider, batches, content, attempts))
            for provider, batches in plan.by_provider().items()
        ]

        timed_out = False
        if tasks:
            try:
                done, pending = await asyncio.wait(tasks, timeout=timeout)
            except asyncio.CancelledError:
                for task in tasks:
                    task.cancel()
                raise
            if pending:
                timed_out = True
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    f"Dispatch timed out after {timeout}s",
                    extra={"user_id": user_id, "pending_groups": len(pending)},
                )
            for task in done:
                if task.exception() is not None:
                    logger.error(
                        f"Provider group failed: {task.exception()}",
                        exc_info=task.exception(),
                        extra={"user_id": user_id},
                    )

        return attempts, timed_out

    def _finish(
        self,
        user_id: str,
        devices: List[DeviceTarget],
        attempts: Dict[str, DeliveryAttempt],
        timed_out: bool,
        notification_id: Optional[str],
        start_time: float,
    ) -> DeliveryOutcome:
        """Settle one terminal attempt per device, then remove, store, persist and log once."""
        missing_code = "dispatch_timeout" if timed_out else "internal_error"
        per_device = [
            attempts.get(d.id) or _failed_attempt(
                d, missing_code, Verdict.TRANSIENT if timed_out else Verdict.PERMANENT_OTHER
            )
            for d in devices
        ]

        outcome = DeliveryOutcome(
            user_id=user_id,
            per_device=per_device,
            timed_out=timed_out,
        )
        outcome.invalid_token_ids = self._remove_invalid_tokens(per_device)
        self._store_tickets(per_device, notification_id)
        self._record_stats(per_device)
        self._persist(outcome, notification_id)

        outcome.duration_ms = (time.time() - start_time) * 1000
        self._count_dispatch(outcome.delivery_status.value, start_time)

        logger.info(
            "Dispatch complete",
            extra={
                "user_id": user_id,
                "total_devices": len(per_device),
                "success": outcome.sent,
                "failed": outcome.failed,
                "invalid_tokens": len(outcome.invalid_token_ids),
                "delivery_status": outcome.delivery_status.value,
                "timed_out": timed_out,
                "duration_ms": round(outcome.duration_ms, 2),
            }
        )
        return outcome

    async def _send_group(
        self,
        provider_name: str,
        batches: List[Batch],
        content: NotificationContent,
        sink: Dict[str, DeliveryAttempt],
    ) -> None:
        """Send every batch for one provider; each terminal attempt lands in sink as soon as it is decided."""
        provider = self._providers[provider_name]
        semaphore = asyncio.Semaphore(self._provider_concurrency)

        async def run_batch(batch: Batch) -> None:
            def publish(attempt: DeliveryAttempt) -> None:
                for device in batch.devices.get(attempt.token, []):
                    sink[device.id] = attempt.for_device(device)

            async with semaphore:
                try:
                    if len(batch.tokens) == 1:
                        token = batch.tokens[0]
                        await self._retry.execute(
                            provider_name, token, lambda: provider.send(token, content), on_final=publish
                        )
                    else:
                        await self._retry.execute_batch(
                            provider_name,
                            batch.tokens,
                            lambda tokens: provider.send_batch(tokens, content),
                            on_final=publish,
                        )
                except ConfigurationError as e:
                    logger.error(
                        f"{provider_name} is not usable: {e}",
                        extra={"provider": provider_name, "devices": batch.device_count},
                    )
                    for token in batch.tokens:
                        publish(DeliveryAttempt(
                            device_token_id=None,
                            provider=provider_name,
                            status=AttemptStatus.FAILED,
                            token=token,
                            error_code="configuration_error",
                            verdict=Verdict.PERMANENT_OTHER,
                        ))

        outcomes = await asyncio.gather(*[run_batch(b) for b in batches], return_exceptions=True)
        for batch, outcome in zip(batches, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, asyncio.CancelledError):
                logger.error(
                    f"{provider_name} batch raised: {outcome}",
                    exc_info=outcome,
                    extra={"provider": provider_name, "batch_size": len(batch)},
                )

    # -------------------------------------------------------------------------
    # Post-dispatch bookkeeping
    # -------------------------------------------------------------------------

    def _remove_invalid_tokens(self, per_device: List[DeliveryAttempt]) -> List[str]:
        invalid = [a for a in per_device if a.token_invalid and a.device_token_id]
        if not invalid:
            return []

        for attempt in invalid:
            self.blocklist.add(attempt.token)

        ids = [a.device_token_id for a in invalid]
        try:
            self._devices.remove_tokens(ids)
        except Exception as e:
            # Blocklist still keeps the tokens out of this process
            logger.error(
                f"Failed to remove invalid device tokens: {e}",
                exc_info=True,
                extra={"device_token_ids": ids},
            )

        by_provider: Dict[str, int] = {}
        for attempt in invalid:
            by_provider[attempt.provider] = by_provider.get(attempt.provider, 0) + 1
            if self._on_token_invalid:
                try:
                    self._on_token_invalid(attempt.device_token_id, attempt.provider)
                except Exception as e:
                    logger.error(f"Token invalidation callback error: {e}")
        for provider, count in by_provider.items():
            record_token_invalidated(provider, count)

        return ids

    def _store_tickets(self, per_device: List[DeliveryAttempt], notification_id: Optional[str]) -> None:
        if self._tickets is None:
            return
        pending = [
            PendingTicket(
                ticket_id=a.provider_message_id,
                token=a.token,
                device_token_id=a.device_token_id,
                notification_id=notification_id,
            )
            for a in per_device
            if a.sent and a.receipt_pending and a.provider_message_id
        ]
        if not pending:
            return
        try:
            self._tickets.add(pending)
        except Exception as e:
            logger.error(
                f"Failed to store Expo tickets: {e}",
                exc_info=True,
                extra={"tickets": len(pending)},
            )

    def _persist(self, outcome: DeliveryOutcome, notification_id: Optional[str]) -> None:
        if notification_id is None:
            return
        try:
            self._notifications.update_delivery_status(
                notification_id,
                delivery_status=outcome.delivery_status.value,
                delivered_at=outcome.timestamp if outcome.sent > 0 else None,
                sent_count=outcome.sent,
                failed_count=outcome.failed,
            )
        except Exception as e:
            # The pushes already went out; only the record is lost
            logger.error(
                f"Failed to persist delivery status: {e}",
                exc_info=True,
                extra={"notification_id": notification_id},
            )

    def _record_stats(self, per_device: List[DeliveryAttempt]) -> None:
        for attempt in per_device:
            stats = self._stats.setdefault(attempt.provider, ProviderStats())
            if attempt.sent:
                stats.sent += 1
                continue
            stats.failed += 1
            if attempt.token_invalid:
                stats.invalid_tokens += 1
            if attempt.error_code:
                stats.errors[attempt.error_code] = stats.errors.get(attempt.error_code, 0) + 1

    def _count_dispatch(self, result: str, start_time: float) -> None:
        self._dispatch_counts[result] = self._dispatch_counts.get(result, 0) + 1
        record_dispatch(result, time.time() - start_time)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Running totals since process start, plus token and credential state."""
        stats: Dict[str, Any] = {
            "enabled": self._enabled,
            "providers": self.providers,
            "dispatches": dict(self._dispatch_counts),
            "by_provider": {name: s.to_dict() for name, s in sorted(self._stats.items())},
            "blocklisted_tokens": len(self.blocklist),
            "admission": {
                "limit": self.gate.limit,
                "active": self.gate.active,
                "waiting": self.gate.waiting,
            },
            "devices_by_platform": self._devices.count_by_platform(),
        }
        if self._tickets is not None:
            stats["pending_receipts"] = self._tickets.count()
        if self._credentials is not None:
            stats["credentials"] = self._credentials.status()
        return stats

    async def check_receipts(self, min_age_seconds: int = 0) -> ReceiptCheckResult:
        """Reconcile stored Expo tickets against their receipts."""
        expo = self._providers.get(PROVIDER_EXPO)
        if expo is None or self._tickets is None:
            return ReceiptCheckResult()

        checker = ReceiptChecker(
            expo,
            self._tickets,
            self._devices,
            on_token_invalid=self.blocklist.add,
        )
        result = await checker.check_receipts(min_age_seconds=min_age_seconds)
        if result.tokens_removed:
            stats = self._stats.setdefault(PROVIDER_EXPO, ProviderStats())
            stats.invalid_tokens += result.tokens_removed
        return result

    async def refresh_credentials(self) -> Dict[str, bool]:
        if self._credentials is None:
            return {}
        return await self._credentials.refresh_all()

    async def close(self) -> None:
        """Close every provider's HTTP client."""
        for name, provider in self._providers.items():
            try:
                await provider.close()
            except Exception as e:
                logger.warning(f"Error closing {name} provider: {e}")
        logger.info("PushDispatchService closed")

    async def __aenter__(self) -> "PushDispatchService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

