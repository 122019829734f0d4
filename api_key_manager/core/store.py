"""
In-memory credential store.

Holds one immutable CredentialRecord per provider. Replacement swaps the
whole record under the provider's lock, so readers see either the old
record or the new one and never a partial write.
"""

import threading
import dataclasses
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .backup import BackupSource
from .errors import NotConfigured


@dataclass(frozen=True)
class CredentialRecord:
    """Active credential for a provider and where its replacement lives."""
    active_value: str = field(repr=False)
    backup_source: Optional[BackupSource] = None

    def __post_init__(self):
        """Validate the active value is present."""
        if not self.active_value:
            raise ValueError("active_value cannot be empty")

    @property
    def can_rotate(self) -> bool:
        return self.backup_source is not None


class CredentialStore:
    """Authoritative record of active credentials for the process lifetime."""

    def __init__(self, records: Dict[str, CredentialRecord]):
        self._records: Dict[str, CredentialRecord] = dict(records)
        # Closed provider set, so locks are created once up front.
        self._locks: Dict[str, threading.Lock] = {
            provider: threading.Lock() for provider in self._records
        }

    def providers(self) -> List[str]:
        """Configured providers in configuration order."""
        return list(self._records)

    def __contains__(self, provider: object) -> bool:
        return provider in self._records

    def get(self, provider: str) -> CredentialRecord:
        """Look up the record for a provider.

        Raises:
            NotConfigured: If the provider is unknown
        """
        lock = self._lock_for(provider)
        with lock:
            return self._records[provider]

    def replace(self, provider: str, new_value: str) -> CredentialRecord:
        """Overwrite the active value for a provider.

        Args:
            provider: Provider identifier
            new_value: Replacement credential (must be non-empty)

        Returns:
            The record now in effect

        Raises:
            NotConfigured: If the provider is unknown
            ValueError: If new_value is empty
        """
        lock = self._lock_for(provider)
        with lock:
            record = dataclasses.replace(self._records[provider], active_value=new_value)
            self._records[provider] = record
            return record

    def _lock_for(self, provider: str) -> threading.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            raise NotConfigured(provider)
        return lock
