"""
Error taxonomy for the key manager core.

Components raise these exceptions internally; the rotation engine turns
them into result values so nothing escapes to the transport layer.
"""

from enum import Enum


class ErrorCode(Enum):
    """Defined error conditions returned by engine operations."""
    NOT_CONFIGURED = "not_configured"
    NO_BACKUP_AVAILABLE = "no_backup_available"
    INVALID_USAGE_AMOUNT = "invalid_usage_amount"


class KeyManagerError(Exception):
    """Base error carrying the code it maps to."""
    code: ErrorCode

    def __init__(self, message: str, code: ErrorCode):
        super().__init__(message)
        self.code = code


class NotConfigured(KeyManagerError):
    """Raised when a provider is outside the configured set."""
    def __init__(self, provider: str):
        super().__init__(f"Provider not found: {provider}", ErrorCode.NOT_CONFIGURED)
        self.provider = provider


class NoBackupAvailable(KeyManagerError):
    """Raised when a rotation needs a backup value and none resolves."""
    def __init__(self, provider: str):
        super().__init__(
            f"No backup credential available for provider: {provider}",
            ErrorCode.NO_BACKUP_AVAILABLE,
        )
        self.provider = provider


class InvalidUsageAmount(KeyManagerError):
    """Raised when a usage report carries a non-numeric amount."""
    def __init__(self, amount: object):
        super().__init__(
            f"Usage amount must be a whole number of tokens, got {amount!r}",
            ErrorCode.INVALID_USAGE_AMOUNT,
        )
        self.amount = amount
