"""
Backup credential sources.

A backup source is a reference to where a replacement credential can be
read. Lookups are synchronous in-process reads, so a value that appears
in the environment after startup is picked up on the next rotation.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


class BackupSource:
    """Reference to a replacement credential."""

    def fetch(self) -> Optional[str]:
        """Return the backup value, or None if nothing is available."""
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class EnvBackupSource(BackupSource):
    """Backup read from an environment variable at rotation time."""
    variable: str
    environ: Optional[Mapping[str, str]] = field(default=None, compare=False, repr=False)

    def fetch(self) -> Optional[str]:
        environ = os.environ if self.environ is None else self.environ
        value = environ.get(self.variable)
        return value or None

    def describe(self) -> str:
        return f"env:{self.variable}"


@dataclass(frozen=True)
class StaticBackupSource(BackupSource):
    """Backup value fixed in configuration."""
    value: str = field(repr=False)

    def fetch(self) -> Optional[str]:
        return self.value or None

    def describe(self) -> str:
        return "static"
