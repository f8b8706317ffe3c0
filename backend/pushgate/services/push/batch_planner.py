"""
Batch planning for push dispatch.

Groups a user's device tokens by provider and splits each group into chunks
that respect the provider's per-call ceiling.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from pushgate.core.config import settings
from pushgate.services.push.constants import (
    EXPO_MAX_MESSAGES_PER_REQUEST,
    FCM_MAX_MULTICAST_TOKENS,
    PROVIDER_APNS,
    PROVIDER_EXPO,
    PROVIDER_FCM,
    SUPPORTED_PROVIDERS,
)
from pushgate.services.push.models import DeviceTarget

logger = logging.getLogger(__name__)


@dataclass
class BatchLimits:
    """Maximum tokens per provider call."""

    apns: int = 1
    fcm: int = FCM_MAX_MULTICAST_TOKENS
    expo: int = EXPO_MAX_MESSAGES_PER_REQUEST

    def __post_init__(self):
        for name in (PROVIDER_APNS, PROVIDER_FCM, PROVIDER_EXPO):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} batch limit must be >= 1")

    @classmethod
    def from_settings(cls) -> "BatchLimits":
        return cls(
            apns=1,
            fcm=settings.PUSH_FCM_BATCH_SIZE,
            expo=settings.PUSH_EXPO_BATCH_SIZE,
        )

    def for_provider(self, provider: str) -> int:
        return getattr(self, provider)


@dataclass
class Batch:
    """
    One provider call worth of tokens.

    Attributes:
        provider: Provider the batch is routed to
        tokens: Distinct tokens, in first-seen order
        devices: Every device sharing each token (duplicates collapsed into one send)
    """

    provider: str
    tokens: List[str] = field(default_factory=list)
    devices: Dict[str, List[DeviceTarget]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.tokens)

    @property
    def device_count(self) -> int:
        return sum(len(d) for d in self.devices.values())


@dataclass
class BatchPlan:
    """
    Result of planning a dispatch.

    Attributes:
        batches: Provider batches, grouped by provider in input order
        unsupported: Devices whose platform is unknown or has no configured provider
    """

    batches: List[Batch] = field(default_factory=list)
    unsupported: List[DeviceTarget] = field(default_factory=list)

    def by_provider(self) -> Dict[str, List[Batch]]:
        grouped: Dict[str, List[Batch]] = {}
        for batch in self.batches:
            grouped.setdefault(batch.provider, []).append(batch)
        return grouped

    @property
    def device_count(self) -> int:
        return sum(b.device_count for b in self.batches) + len(self.unsupported)

    @property
    def is_empty(self) -> bool:
        return not self.batches and not self.unsupported


def plan(
    devices: Iterable[DeviceTarget],
    limits: Optional[BatchLimits] = None,
    enabled: Optional[Iterable[str]] = None,
) -> BatchPlan:
    """
    Group devices into provider batches.

    Args:
        devices: Target devices
        limits: Per-provider ceilings (defaults to BatchLimits())
        enabled: Providers that can currently send; others are unsupported

    Returns:
        BatchPlan whose batches together cover every supported device exactly once
    """
    limits = limits or BatchLimits()
    enabled_set = set(SUPPORTED_PROVIDERS if enabled is None else enabled)

    # provider -> token -> devices, preserving first-seen order
    grouped: Dict[str, Dict[str, List[DeviceTarget]]] = {}
    result = BatchPlan()

    for device in devices:
        if device.platform not in SUPPORTED_PROVIDERS or device.platform not in enabled_set:
            result.unsupported.append(device)
            continue
        grouped.setdefault(device.platform, {}).setdefault(device.token, []).append(device)

    for provider, token_devices in grouped.items():
        size = limits.for_provider(provider)
        tokens = list(token_devices)
        for start in range(0, len(tokens), size):
            chunk = tokens[start:start + size]
            result.batches.append(Batch(
                provider=provider,
                tokens=chunk,
                devices={t: token_devices[t] for t in chunk},
            ))

    if result.unsupported:
        logger.debug(
            f"{len(result.unsupported)} devices excluded as unsupported",
            extra={"platforms": sorted({d.platform for d in result.unsupported})},
        )

    return result
