"""
Credential rotation engine.

Answers "give me a valid credential for provider P" with rotation-on-read
semantics, forces rotations on demand, and records usage reports.

Concurrency model:
1. Each provider has its own lock; providers never wait on each other
2. Backup values are fetched outside the lock
3. The (value, last_rotated_at, next_deadline) swap is applied under the
   lock after re-checking that the provider is still due

Every public operation returns a result object. Component errors are
converted to an ErrorCode at this boundary and never propagate.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .clock import Clock, SystemClock
from .errors import ErrorCode, KeyManagerError, NoBackupAvailable, NotConfigured
from .ledger import UsageLedger, UsageReport
from .policy import PolicyRegistry, RotationState, StaleCredentialAction
from .store import CredentialRecord, CredentialStore

logger = logging.getLogger(__name__)

NOT_SCHEDULED = "not scheduled"


@dataclass(frozen=True)
class RotationInfo:
    """Rotation metadata returned alongside a credential."""
    last_rotated_at: datetime
    next_deadline: Optional[datetime]

    @property
    def next_label(self) -> str:
        if self.next_deadline is None:
            return NOT_SCHEDULED
        return self.next_deadline.isoformat()


@dataclass(frozen=True)
class CredentialResult:
    """Outcome of get_credential."""
    provider: str
    value: Optional[str] = field(default=None, repr=False)
    rotation: Optional[RotationInfo] = None
    rotated: bool = False
    stale: bool = False
    error: Optional[ErrorCode] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RotationOutcome:
    """Outcome of rotate_now."""
    provider: str
    new_value: Optional[str] = field(default=None, repr=False)
    rotated_at: Optional[datetime] = None
    next_deadline: Optional[datetime] = None
    error: Optional[ErrorCode] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class UsageResult:
    """Outcome of record_usage."""
    provider: str
    total: Optional[int] = None
    droplet: Optional[str] = None
    error: Optional[ErrorCode] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class UsageDetail:
    """Usage total and rotation bookkeeping for one provider."""
    provider: str
    total: Optional[int] = None
    rotation: Optional[RotationInfo] = None
    last_report: Optional[UsageReport] = None
    error: Optional[ErrorCode] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class StatusResult:
    """Configured providers and a usage snapshot for health reporting."""
    providers: List[str]
    usage_snapshot: Dict[str, int]


class RotationEngine:
    """Owns rotation state and orchestrates store, policies and ledger.

    Created once at startup and handed to the transport layer.
    """

    def __init__(
        self,
        store: CredentialStore,
        policies: PolicyRegistry,
        ledger: Optional[UsageLedger] = None,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.policies = policies
        self.clock = clock or SystemClock()
        self.ledger = ledger or UsageLedger(store.providers())

        started_at = self._resolve_now(None)
        self._states: Dict[str, RotationState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        for provider in store.providers():
            self._states[provider] = RotationState(
                last_rotated_at=started_at,
                next_deadline=policies.policy(provider).next_deadline(started_at)
            )
            self._locks[provider] = threading.Lock()

    @property
    def providers(self) -> List[str]:
        return self.store.providers()

    def get_credential(self, provider: str, now: Optional[datetime] = None) -> CredentialResult:
        """Return the active credential, rotating first if the policy says it is due.

        A due provider whose backup does not resolve is handled by its
        StaleCredentialAction: SERVE_STALE returns the current value,
        REJECT returns NO_BACKUP_AVAILABLE.

        Raises:
            ValueError: If now is a timezone-naive datetime
        """
        now = self._resolve_now(now)
        try:
            lock = self._lock_for(provider)
            with lock:
                state = self._states[provider]
                if not self.policies.is_due(provider, state, now):
                    return self._credential_result(provider, state)
                record = self.store.get(provider)

            new_value = _fetch_backup(provider, record)

            with lock:
                state = self._states[provider]
                rotated = stale = False
                if self.policies.is_due(provider, state, now):
                    if new_value is not None:
                        self._apply_rotation(provider, new_value, now)
                        rotated = True
                    elif self.policies.stale_action(provider) is StaleCredentialAction.REJECT:
                        logger.warning("Rejecting stale %s key: no backup available", provider)
                        raise NoBackupAvailable(provider)
                    else:
                        logger.warning("Serving stale %s key: no backup available", provider)
                        stale = True
                return self._credential_result(provider, state, rotated=rotated, stale=stale)
        except KeyManagerError as e:
            logger.debug("get_credential failed for %s: %s", provider, e)
            return CredentialResult(provider=provider, error=e.code, message=str(e))

    def rotate_now(self, provider: str, now: Optional[datetime] = None) -> RotationOutcome:
        """Replace the active credential with its backup regardless of due-ness."""
        now = self._resolve_now(now)
        try:
            lock = self._lock_for(provider)
            with lock:
                record = self.store.get(provider)

            new_value = _fetch_backup(provider, record)
            if new_value is None:
                raise NoBackupAvailable(provider)

            with lock:
                state = self._apply_rotation(provider, new_value, now)
                logger.info("[MANUAL] Rotated %s key", provider)
                return RotationOutcome(
                    provider=provider,
                    new_value=new_value,
                    rotated_at=state.last_rotated_at,
                    next_deadline=state.next_deadline
                )
        except KeyManagerError as e:
            logger.debug("rotate_now failed for %s: %s", provider, e)
            return RotationOutcome(provider=provider, error=e.code, message=str(e))

    def record_usage(
        self,
        provider: str,
        amount: object,
        droplet: Optional[str] = None,
        reported_at: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> UsageResult:
        """Add a usage report to the provider's running total."""
        now = self._resolve_now(now)
        try:
            total = self.ledger.record_usage(
                provider, amount, droplet=droplet, reported_at=reported_at, now=now
            )
        except KeyManagerError as e:
            logger.debug("record_usage failed for %s: %s", provider, e)
            return UsageResult(provider=provider, droplet=droplet, error=e.code, message=str(e))
        return UsageResult(provider=provider, total=total, droplet=droplet)

    def usage(self, provider: str) -> UsageDetail:
        """Usage total, last report and rotation bookkeeping for a provider."""
        try:
            lock = self._lock_for(provider)
            with lock:
                rotation = _rotation_info(self._states[provider])
            return UsageDetail(
                provider=provider,
                total=self.ledger.total(provider),
                rotation=rotation,
                last_report=self.ledger.last_report(provider)
            )
        except KeyManagerError as e:
            return UsageDetail(provider=provider, error=e.code, message=str(e))

    def status(self) -> StatusResult:
        return StatusResult(
            providers=self.store.providers(),
            usage_snapshot=self.ledger.snapshot()
        )

    def rotation_schedule(self) -> Dict[str, str]:
        """Human-readable rotation cadence per provider."""
        return {p: self.policies.policy(p).describe() for p in self.store.providers()}

    def _resolve_now(self, now: Optional[datetime]) -> datetime:
        now = now or self.clock.now()
        if now.tzinfo is None:
            raise ValueError("now must be a timezone-aware datetime")
        return now

    def _lock_for(self, provider: str) -> threading.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            raise NotConfigured(provider)
        return lock

    def _apply_rotation(self, provider: str, new_value: str, now: datetime) -> RotationState:
        # Caller holds the provider lock.
        logger.info("Rotating %s key...", provider)
        self.store.replace(provider, new_value)
        state = self._states[provider]
        state.last_rotated_at = now
        state.next_deadline = self.policies.policy(provider).next_deadline(now)
        logger.info("%s key rotated", provider)
        return state

    def _credential_result(
        self,
        provider: str,
        state: RotationState,
        rotated: bool = False,
        stale: bool = False
    ) -> CredentialResult:
        return CredentialResult(
            provider=provider,
            value=self.store.get(provider).active_value,
            rotation=_rotation_info(state),
            rotated=rotated,
            stale=stale
        )


def _fetch_backup(provider: str, record: CredentialRecord) -> Optional[str]:
    # An unreachable backup is treated like a missing one.
    if not record.can_rotate:
        return None
    try:
        return record.backup_source.fetch()
    except Exception as e:
        logger.warning("Backup lookup failed for %s (%s): %s", provider, record.backup_source.describe(), e)
        return None


def _rotation_info(state: RotationState) -> RotationInfo:
    return RotationInfo(
        last_rotated_at=state.last_rotated_at,
        next_deadline=state.next_deadline
    )
