"""
Usage accounting.

Accumulates token counts reported by droplets. Counters only grow; every
add happens under the provider's lock so concurrent reports are never lost.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional

from .errors import InvalidUsageAmount, NotConfigured

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageReport:
    """Metadata of the most recent usage report for a provider."""
    amount: int
    droplet: Optional[str]
    reported_at: Optional[str]
    received_at: Optional[datetime]


@dataclass
class UsageCounter:
    """Running token total for one provider."""
    total_units: int = 0
    last_report: Optional[UsageReport] = None


def normalize_amount(amount: object) -> int:
    """Coerce a reported amount to the non-negative units it contributes.

    Missing and non-positive amounts contribute zero. Whole-number floats
    are accepted since JSON decoders may produce them.

    Raises:
        InvalidUsageAmount: If the amount is not a whole number
    """
    if amount is None:
        return 0
    if isinstance(amount, bool):
        raise InvalidUsageAmount(amount)
    if isinstance(amount, float):
        if not amount.is_integer():
            raise InvalidUsageAmount(amount)
        amount = int(amount)
    if not isinstance(amount, int):
        raise InvalidUsageAmount(amount)
    return max(amount, 0)


class UsageLedger:
    """Per-provider token counters for the process lifetime."""

    def __init__(self, providers: Iterable[str]):
        self._counters: Dict[str, UsageCounter] = {p: UsageCounter() for p in providers}
        self._locks: Dict[str, threading.Lock] = {p: threading.Lock() for p in self._counters}

    def record_usage(
        self,
        provider: str,
        amount: object,
        droplet: Optional[str] = None,
        reported_at: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> int:
        """Add a usage report to a provider's total.

        Args:
            provider: Provider identifier
            amount: Reported token count (missing/negative counts as 0)
            droplet: Optional reporting droplet name
            reported_at: Optional timestamp supplied by the droplet
            now: Time the report was received

        Returns:
            The provider's new total

        Raises:
            NotConfigured: If the provider is unknown
            InvalidUsageAmount: If the amount is not a whole number
        """
        lock = self._locks.get(provider)
        if lock is None:
            raise NotConfigured(provider)
        units = normalize_amount(amount)
        with lock:
            counter = self._counters[provider]
            counter.total_units += units
            counter.last_report = UsageReport(
                amount=units,
                droplet=droplet,
                reported_at=reported_at,
                received_at=now
            )
            total = counter.total_units
        logger.debug("Usage reported: %s %d tokens by %s", provider, units, droplet or "unknown")
        return total

    def total(self, provider: str) -> int:
        lock = self._locks.get(provider)
        if lock is None:
            raise NotConfigured(provider)
        with lock:
            return self._counters[provider].total_units

    def last_report(self, provider: str) -> Optional[UsageReport]:
        lock = self._locks.get(provider)
        if lock is None:
            raise NotConfigured(provider)
        with lock:
            return self._counters[provider].last_report

    def snapshot(self) -> Dict[str, int]:
        """Point-in-time copy of every provider's total."""
        snapshot = {}
        for provider, lock in self._locks.items():
            with lock:
                snapshot[provider] = self._counters[provider].total_units
        return snapshot
