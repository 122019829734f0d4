"""
Rotation policies.

Each provider carries a RotationSchedule, either Periodic(interval) or
ManualOnly, and the registry turns schedules into policies that decide
when the active credential is due. The engine never branches on provider
identity.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple, Union


class StaleCredentialAction(Enum):
    """What to do when a credential is due but no backup resolves."""
    SERVE_STALE = "serve_stale"  # fail-open, keep serving the old value
    REJECT = "reject"


@dataclass(frozen=True)
class Periodic:
    """Rotate automatically every `interval`."""
    interval: timedelta

    def __post_init__(self):
        """Validate the interval is positive."""
        if self.interval <= timedelta(0):
            raise ValueError("rotation interval must be > 0")


@dataclass(frozen=True)
class ManualOnly:
    """Rotate only when explicitly requested."""


RotationSchedule = Union[Periodic, ManualOnly]


@dataclass
class RotationState:
    """Rotation bookkeeping for one provider."""
    last_rotated_at: datetime
    next_deadline: Optional[datetime] = None


def compute_next_deadline(now: datetime, interval: timedelta) -> datetime:
    """Deadline for the next automatic rotation."""
    return now + interval


class RotationPolicy:
    """Decides whether a provider's credential is due for rotation."""

    def is_due(self, provider: str, state: RotationState, now: datetime) -> bool:
        raise NotImplementedError

    def next_deadline(self, now: datetime) -> Optional[datetime]:
        """Deadline to store after a rotation at `now` (None = unscheduled)."""
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


class PeriodicPolicy(RotationPolicy):
    """Due once the stored deadline has been reached."""

    def __init__(self, interval: timedelta):
        self.interval = Periodic(interval).interval

    def is_due(self, provider: str, state: RotationState, now: datetime) -> bool:
        if state.next_deadline is None:
            return False
        return now >= state.next_deadline

    def next_deadline(self, now: datetime) -> Optional[datetime]:
        return compute_next_deadline(now, self.interval)

    def describe(self) -> str:
        return _format_interval(self.interval)


class ManualOnlyPolicy(RotationPolicy):
    """Never due on automatic checks."""

    def is_due(self, provider: str, state: RotationState, now: datetime) -> bool:
        return False

    def next_deadline(self, now: datetime) -> Optional[datetime]:
        return None

    def describe(self) -> str:
        return "manual"


def policy_for(schedule: RotationSchedule) -> RotationPolicy:
    """Build the policy matching a schedule variant."""
    if isinstance(schedule, Periodic):
        return PeriodicPolicy(schedule.interval)
    if isinstance(schedule, ManualOnly):
        return ManualOnlyPolicy()
    raise TypeError(f"Unsupported rotation schedule: {schedule!r}")


class PolicyRegistry:
    """Rotation policy and stale-credential action keyed by provider."""

    def __init__(
        self,
        entries: Iterable[Tuple[str, RotationSchedule, StaleCredentialAction]] = ()
    ):
        self._policies: Dict[str, RotationPolicy] = {}
        self._stale_actions: Dict[str, StaleCredentialAction] = {}
        for provider, schedule, on_stale in entries:
            self.register(provider, schedule, on_stale)

    def register(
        self,
        provider: str,
        schedule: RotationSchedule,
        on_stale: StaleCredentialAction = StaleCredentialAction.SERVE_STALE
    ) -> RotationPolicy:
        policy = policy_for(schedule)
        self._policies[provider] = policy
        self._stale_actions[provider] = on_stale
        return policy

    def policy(self, provider: str) -> RotationPolicy:
        # Providers without an entry rotate only on demand.
        return self._policies.get(provider) or ManualOnlyPolicy()

    def stale_action(self, provider: str) -> StaleCredentialAction:
        return self._stale_actions.get(provider, StaleCredentialAction.SERVE_STALE)

    def is_due(self, provider: str, state: RotationState, now: datetime) -> bool:
        return self.policy(provider).is_due(provider, state, now)


def _format_interval(interval: timedelta) -> str:
    seconds = int(interval.total_seconds())
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds and seconds % size == 0:
            count = seconds // size
            return f"{count} {unit}{'' if count == 1 else 's'}"
    return f"{interval.total_seconds():g} seconds"
