"""
Expo receipt reconciliation.

Expo tickets only say a message was accepted by the relay. The receipt,
available some minutes later, says whether APNS/FCM took it. Receipts that
report DeviceNotRegistered remove the token so later dispatches skip it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from pushgate.core.metrics import record_push_attempt, record_token_invalidated
from pushgate.core.retry import RetryConfig, retry_async
from pushgate.services.push.constants import EXPO_MAX_RECEIPT_IDS_PER_REQUEST, PROVIDER_EXPO
from pushgate.services.push.error_classifier import classify, error_code_for
from pushgate.services.push.exceptions import RateLimited, TransientNetworkError
from pushgate.services.push.expo_provider import ExpoProvider
from pushgate.services.push.models import Verdict
from pushgate.services.push.repository import (
    DeviceTokenRepository,
    ExpoTicketRepository,
    PendingTicket,
)

logger = logging.getLogger(__name__)

RETRY_RECEIPTS = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    retryable_exceptions=(TransientNetworkError, RateLimited),
)

# Expo keeps receipts for 24 hours
RECEIPT_RETENTION = timedelta(hours=24)


@dataclass
class ReceiptCheckResult:
    checked: int = 0
    delivered: int = 0
    failed: int = 0
    still_pending: int = 0
    tokens_removed: int = 0
    errors: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "delivered": self.delivered,
            "failed": self.failed,
            "still_pending": self.still_pending,
            "tokens_removed": self.tokens_removed,
            "errors": dict(self.errors),
        }


class ReceiptChecker:
    """
    Polls Expo for receipts of stored tickets.

    Args:
        provider: Expo provider used to fetch receipts
        tickets: Store of tickets awaiting a receipt
        devices: Device repository for removing dead tokens
        on_token_invalid: Called with each token found to be unregistered
    """

    def __init__(
        self,
        provider: ExpoProvider,
        tickets: ExpoTicketRepository,
        devices: DeviceTokenRepository,
        on_token_invalid: Optional[Callable[[str], None]] = None,
    ):
        self._provider = provider
        self._tickets = tickets
        self._devices = devices
        self._on_token_invalid = on_token_invalid

    async def check_receipts(self, limit: int = EXPO_MAX_RECEIPT_IDS_PER_REQUEST, min_age_seconds: int = 0) -> ReceiptCheckResult:
        """
        Fetch receipts for up to `limit` pending tickets and apply them.

        Tickets with a receipt (ok or error) are removed from the store.
        Tickets Expo has not produced a receipt for stay pending until they
        age past the 24 hour retention.
        """
        result = ReceiptCheckResult()
        pending = self._tickets.pending(limit=limit, min_age_seconds=min_age_seconds)
        if not pending:
            return result

        by_id = {t.ticket_id: t for t in pending}
        receipts = await retry_async(
            self._provider.get_receipts,
            list(by_id),
            config=RETRY_RECEIPTS,
            operation_name="expo_get_receipts",
        )

        resolved: List[str] = []
        dead_tokens: List[str] = []
        for ticket_id, receipt in receipts.items():
            ticket = by_id.get(ticket_id)
            if ticket is None:
                continue
            resolved.append(ticket_id)
            result.checked += 1

            if receipt.success:
                result.delivered += 1
                record_push_attempt(PROVIDER_EXPO, "receipt_ok")
                continue

            result.failed += 1
            code = error_code_for(receipt.raw_error) or "unknown"
            result.errors[code] = result.errors.get(code, 0) + 1
            verdict = classify(PROVIDER_EXPO, receipt.raw_error)
            record_push_attempt(PROVIDER_EXPO, f"receipt_{verdict.value}")
            if verdict == Verdict.PERMANENT_TOKEN_INVALID:
                dead_tokens.append(ticket.token)
            else:
                logger.warning(
                    f"Expo receipt reported {code}",
                    extra={"ticket_id": ticket_id, "verdict": verdict.value},
                )

        if dead_tokens:
            result.tokens_removed = self._devices.remove_token_values(dead_tokens)
            record_token_invalidated(PROVIDER_EXPO, result.tokens_removed)
            if self._on_token_invalid:
                for token in dead_tokens:
                    self._on_token_invalid(token)

        self._tickets.delete(resolved)

        unresolved = [t for t in pending if t.ticket_id not in receipts]
        result.still_pending = len(unresolved)
        expired = self._expired(unresolved)
        if expired:
            self._tickets.delete(expired)
            result.still_pending -= len(expired)
            logger.info(
                f"Dropped {len(expired)} Expo tickets past receipt retention",
                extra={"expired": len(expired)},
            )

        logger.info(
            "Expo receipt check complete",
            extra=result.to_dict(),
        )
        return result

    @staticmethod
    def _expired(tickets: List[PendingTicket], now: Optional[datetime] = None) -> List[str]:
        cutoff = (now or datetime.now(timezone.utc)) - RECEIPT_RETENTION
        expired = []
        for ticket in tickets:
            created = ticket.created_at
            if created is None:
                continue
            if created.tzinfo is None:
                # SQLite hands back naive UTC
                created = created.replace(tzinfo=timezone.utc)
            if created <= cutoff:
                expired.append(ticket.ticket_id)
        return expired
