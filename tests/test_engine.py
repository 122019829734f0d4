"""
Tests for the rotation engine.

Covers rotation-on-read, forced rotation, fail-open handling, usage
delegation and behavior under concurrent callers.
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from api_key_manager.core.backup import BackupSource, EnvBackupSource, StaticBackupSource
from api_key_manager.core.clock import ManualClock
from api_key_manager.core.engine import NOT_SCHEDULED, RotationEngine
from api_key_manager.core.errors import ErrorCode
from api_key_manager.core.policy import (
    ManualOnly,
    Periodic,
    PolicyRegistry,
    StaleCredentialAction,
)
from api_key_manager.core.store import CredentialRecord, CredentialStore

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
FIVE_HOURS = timedelta(hours=5)


def make_engine(records, schedules, clock=None, on_stale=None):
    """Create an engine from records and per-provider schedules."""
    on_stale = on_stale or {}
    registry = PolicyRegistry()
    for provider, schedule in schedules.items():
        registry.register(
            provider,
            schedule,
            on_stale.get(provider, StaleCredentialAction.SERVE_STALE)
        )
    return RotationEngine(CredentialStore(records), registry, clock=clock or ManualClock(T0))


@pytest.fixture
def engine():
    return make_engine(
        {
            "alpha": CredentialRecord(active_value="K1", backup_source=StaticBackupSource("K2")),
            "beta": CredentialRecord(active_value="B1"),
        },
        {"alpha": Periodic(FIVE_HOURS), "beta": ManualOnly()},
    )


class UnreachableBackup(BackupSource):
    """Backup source whose lookup always fails."""

    def fetch(self):
        raise ConnectionError("vault unreachable")

    def describe(self):
        return "unreachable"


class TestGetCredential:
    """Test rotation-on-read."""

    def test_fresh_credential_returned_with_deadline(self, engine):
        """Test initial read returns the initial value and a scheduled deadline."""
        result = engine.get_credential("alpha", T0)

        assert result.ok
        assert result.value == "K1"
        assert not result.rotated
        assert result.rotation.last_rotated_at == T0
        assert result.rotation.next_deadline == T0 + FIVE_HOURS

    def test_due_credential_rotates_to_backup(self, engine):
        """Test the 5-hour scenario: K1 then K2 with a new deadline."""
        later = T0 + FIVE_HOURS + timedelta(seconds=1)

        assert engine.get_credential("alpha", T0).value == "K1"
        result = engine.get_credential("alpha", later)

        assert result.ok
        assert result.rotated
        assert result.value == "K2"
        assert result.rotation.last_rotated_at == later
        assert result.rotation.next_deadline == T0 + timedelta(hours=10, seconds=1)

    def test_rotates_exactly_at_deadline(self, engine):
        """Test due-ness fires at the deadline itself."""
        result = engine.get_credential("alpha", T0 + FIVE_HOURS)
        assert result.rotated

    def test_not_due_right_after_rotation(self, engine):
        """Test a rotated provider is fresh again immediately."""
        later = T0 + FIVE_HOURS
        engine.get_credential("alpha", later)

        again = engine.get_credential("alpha", later)

        assert not again.rotated
        assert again.value == "K2"
        assert again.rotation.next_deadline == later + FIVE_HOURS

    def test_repeated_reads_are_idempotent(self, engine):
        """Test back-to-back reads without time advance agree."""
        first = engine.get_credential("alpha", T0 + timedelta(hours=1))
        second = engine.get_credential("alpha", T0 + timedelta(hours=1))

        assert first.value == second.value
        assert first.rotation == second.rotation

    def test_manual_provider_never_rotates_automatically(self, engine):
        """Test manual-only providers stay on their value and are unscheduled."""
        result = engine.get_credential("beta", T0 + timedelta(days=30))

        assert result.value == "B1"
        assert not result.rotated
        assert result.rotation.next_deadline is None
        assert result.rotation.next_label == NOT_SCHEDULED

    def test_uses_clock_when_now_omitted(self):
        """Test the injected clock supplies the time."""
        clock = ManualClock(T0)
        engine = make_engine(
            {"alpha": CredentialRecord(active_value="K1", backup_source=StaticBackupSource("K2"))},
            {"alpha": Periodic(FIVE_HOURS)},
            clock=clock,
        )

        assert engine.get_credential("alpha").value == "K1"
        clock.advance(FIVE_HOURS)
        assert engine.get_credential("alpha").value == "K2"

    def test_unknown_provider(self, engine):
        """Test unknown providers report NOT_CONFIGURED."""
        result = engine.get_credential("unknown", T0)

        assert not result.ok
        assert result.error == ErrorCode.NOT_CONFIGURED
        assert result.value is None

    def test_naive_timestamp_rejected(self, engine):
        """Test timestamps without a timezone are refused up front."""
        naive = datetime(2024, 1, 1, 18, 0, 0)

        with pytest.raises(ValueError, match="timezone-aware"):
            engine.get_credential("alpha", naive)
        with pytest.raises(ValueError, match="timezone-aware"):
            engine.rotate_now("alpha", naive)
        assert engine.get_credential("alpha", T0).value == "K1"

    def test_naive_clock_rejected(self):
        """Test a clock reporting naive time fails at construction."""
        with pytest.raises(ValueError, match="timezone-aware"):
            make_engine(
                {"alpha": CredentialRecord(active_value="K1")},
                {"alpha": ManualOnly()},
                clock=ManualClock(datetime(2024, 1, 1)),
            )


class TestFailOpen:
    """Test behavior when a due provider has no backup."""

    def test_stale_value_served_without_backup(self):
        """Test fail-open returns the last known value while rotate_now fails."""
        engine = make_engine(
            {"alpha": CredentialRecord(active_value="K1")},
            {"alpha": Periodic(FIVE_HOURS)},
        )
        later = T0 + timedelta(hours=6)

        result = engine.get_credential("alpha", later)
        outcome = engine.rotate_now("alpha", later)

        assert result.ok
        assert result.value == "K1"
        assert result.stale
        assert not result.rotated
        assert result.rotation.next_deadline == T0 + FIVE_HOURS
        assert outcome.error == ErrorCode.NO_BACKUP_AVAILABLE

    def test_provider_stays_due_until_backup_appears(self):
        """Test the Due state persists and resolves once a backup shows up."""
        environ = {}
        engine = make_engine(
            {"alpha": CredentialRecord(
                active_value="K1",
                backup_source=EnvBackupSource("ALPHA_BACKUP_KEY", environ=environ)
            )},
            {"alpha": Periodic(FIVE_HOURS)},
        )
        later = T0 + timedelta(hours=6)

        assert engine.get_credential("alpha", later).stale
        assert engine.get_credential("alpha", later + timedelta(minutes=1)).stale

        environ["ALPHA_BACKUP_KEY"] = "K2"
        result = engine.get_credential("alpha", later + timedelta(minutes=2))

        assert result.rotated
        assert result.value == "K2"
        assert result.rotation.next_deadline == later + timedelta(minutes=2) + FIVE_HOURS

    def test_reject_policy_refuses_stale_value(self):
        """Test REJECT turns a missing backup into an error."""
        engine = make_engine(
            {"alpha": CredentialRecord(active_value="K1")},
            {"alpha": Periodic(FIVE_HOURS)},
            on_stale={"alpha": StaleCredentialAction.REJECT},
        )

        assert engine.get_credential("alpha", T0).value == "K1"
        result = engine.get_credential("alpha", T0 + FIVE_HOURS)

        assert not result.ok
        assert result.error == ErrorCode.NO_BACKUP_AVAILABLE
        assert result.value is None

    def test_unreachable_backup_treated_as_missing(self):
        """Test a backup source that raises falls back to the stale action."""
        engine = make_engine(
            {"alpha": CredentialRecord(active_value="K1", backup_source=UnreachableBackup())},
            {"alpha": Periodic(FIVE_HOURS)},
        )
        later = T0 + timedelta(hours=6)

        result = engine.get_credential("alpha", later)
        outcome = engine.rotate_now("alpha", later)

        assert result.ok
        assert result.value == "K1"
        assert result.stale
        assert outcome.error == ErrorCode.NO_BACKUP_AVAILABLE
        assert engine.get_credential("alpha", later).rotation.last_rotated_at == T0

    def test_unreachable_backup_with_reject_policy(self):
        """Test REJECT also applies when the backup source raises."""
        engine = make_engine(
            {"alpha": CredentialRecord(active_value="K1", backup_source=UnreachableBackup())},
            {"alpha": Periodic(FIVE_HOURS)},
            on_stale={"alpha": StaleCredentialAction.REJECT},
        )

        result = engine.get_credential("alpha", T0 + FIVE_HOURS)

        assert result.error == ErrorCode.NO_BACKUP_AVAILABLE


class TestRotateNow:
    """Test forced rotation."""

    def test_manual_provider_rotates_on_demand(self):
        """Test RotateNow swaps a manual provider and keeps it unscheduled."""
        engine = make_engine(
            {"beta": CredentialRecord(active_value="B1", backup_source=StaticBackupSource("B2"))},
            {"beta": ManualOnly()},
        )
        at = T0 + timedelta(hours=1)

        outcome = engine.rotate_now("beta", at)

        assert outcome.ok
        assert outcome.new_value == "B2"
        assert outcome.rotated_at == at
        assert outcome.next_deadline is None
        assert engine.get_credential("beta", at).value == "B2"

    def test_periodic_provider_deadline_recomputed(self, engine):
        """Test forcing a rotation restarts the periodic window."""
        at = T0 + timedelta(hours=2)

        outcome = engine.rotate_now("alpha", at)
        result = engine.get_credential("alpha", T0 + FIVE_HOURS)

        assert outcome.next_deadline == at + FIVE_HOURS
        assert not result.rotated
        assert result.rotation.last_rotated_at == at

    def test_no_backup(self, engine):
        """Test explicit rotation without a backup reports failure and changes nothing."""
        outcome = engine.rotate_now("beta", T0 + timedelta(hours=1))
        result = engine.get_credential("beta", T0 + timedelta(hours=1))

        assert outcome.error == ErrorCode.NO_BACKUP_AVAILABLE
        assert result.value == "B1"
        assert result.rotation.last_rotated_at == T0

    def test_unknown_provider(self, engine):
        """Test unknown providers report NOT_CONFIGURED."""
        assert engine.rotate_now("unknown", T0).error == ErrorCode.NOT_CONFIGURED


class TestUsageAndStatus:
    """Test usage delegation and status reporting."""

    def test_usage_scenario(self, engine):
        """Test 1500 + 500 tokens shows 2000 in status."""
        engine.record_usage("beta", 1500)
        result = engine.record_usage("beta", 500, droplet="droplet-1")

        assert result.ok
        assert result.total == 2000
        assert result.droplet == "droplet-1"
        assert engine.status().usage_snapshot["beta"] == 2000

    def test_unknown_provider_usage(self, engine):
        """Test usage for unknown providers is rejected and not listed."""
        result = engine.record_usage("unknown", 100)
        status = engine.status()

        assert result.error == ErrorCode.NOT_CONFIGURED
        assert "unknown" not in status.usage_snapshot
        assert "unknown" not in status.providers

    def test_invalid_amount(self, engine):
        """Test non-numeric amounts report INVALID_USAGE_AMOUNT."""
        result = engine.record_usage("beta", "many")

        assert result.error == ErrorCode.INVALID_USAGE_AMOUNT
        assert engine.status().usage_snapshot["beta"] == 0

    def test_status_lists_providers(self, engine):
        """Test status reports every configured provider."""
        status = engine.status()

        assert status.providers == ["alpha", "beta"]
        assert status.usage_snapshot == {"alpha": 0, "beta": 0}

    def test_usage_detail(self, engine):
        """Test per-provider usage detail includes rotation bookkeeping."""
        engine.record_usage("alpha", 7, droplet="d1")

        detail = engine.usage("alpha")

        assert detail.ok
        assert detail.total == 7
        assert detail.last_report.droplet == "d1"
        assert detail.rotation.next_deadline == T0 + FIVE_HOURS
        assert engine.usage("unknown").error == ErrorCode.NOT_CONFIGURED

    def test_rotation_schedule(self, engine):
        """Test schedule description per provider."""
        assert engine.rotation_schedule() == {"alpha": "5 hours", "beta": "manual"}


class GatedBackup(BackupSource):
    """Backup whose fetch blocks until the gate opens."""

    def __init__(self, value, gate):
        self.value = value
        self.gate = gate
        self.entered = threading.Event()

    def fetch(self):
        self.entered.set()
        self.gate.wait(timeout=5)
        return self.value

    def describe(self):
        return "gated"


class TestConcurrency:
    """Test behavior with many simultaneous callers."""

    def test_concurrent_reads_rotate_consistently(self):
        """Test simultaneous due reads leave one consistent rotation behind."""
        engine = make_engine(
            {"alpha": CredentialRecord(active_value="K1", backup_source=StaticBackupSource("K2"))},
            {"alpha": Periodic(FIVE_HOURS)},
        )
        later = T0 + FIVE_HOURS + timedelta(seconds=1)
        barrier = threading.Barrier(16)
        results = []
        results_lock = threading.Lock()

        def reader():
            barrier.wait()
            result = engine.get_credential("alpha", later)
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=reader) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.value == "K2" for r in results)
        assert sum(1 for r in results if r.rotated) == 1
        final = engine.get_credential("alpha", later)
        assert final.rotation.last_rotated_at == later
        assert final.rotation.next_deadline == later + FIVE_HOURS
        assert final.rotation.next_deadline > final.rotation.last_rotated_at

    def test_slow_backup_does_not_block_other_providers(self):
        """Test a pending backup fetch holds no lock other callers need."""
        gate = threading.Event()
        backup = GatedBackup("K2", gate)
        engine = make_engine(
            {
                "alpha": CredentialRecord(active_value="K1", backup_source=backup),
                "beta": CredentialRecord(active_value="B1"),
            },
            {"alpha": Periodic(FIVE_HOURS), "beta": ManualOnly()},
        )
        later = T0 + FIVE_HOURS
        rotating = threading.Thread(target=engine.get_credential, args=("alpha", later))
        rotating.start()

        try:
            assert backup.entered.wait(timeout=5)
            assert engine.usage("alpha").rotation.last_rotated_at == T0
            assert engine.record_usage("alpha", 10).total == 10
            assert engine.get_credential("beta", later).value == "B1"
        finally:
            gate.set()
            rotating.join()

        assert engine.get_credential("alpha", later).value == "K2"

    def test_concurrent_usage_matches_sum(self, engine):
        """Test concurrent reports across threads are all counted."""
        amounts = list(range(1, 201))
        barrier = threading.Barrier(10)

        def reporter(chunk):
            barrier.wait()
            for amount in chunk:
                engine.record_usage("beta", amount)

        threads = [threading.Thread(target=reporter, args=(amounts[i::10],)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert engine.status().usage_snapshot["beta"] == sum(amounts)
