"""
Transport-neutral request handlers.

Each handler calls the rotation engine and returns (status_code, payload)
ready for any HTTP layer to serialize as JSON.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from api_key_manager.core.engine import RotationEngine
from api_key_manager.core.errors import ErrorCode

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]

STATUS_CODES = {
    ErrorCode.NOT_CONFIGURED: 404,
    ErrorCode.NO_BACKUP_AVAILABLE: 409,
    ErrorCode.INVALID_USAGE_AMOUNT: 400,
}

MASK_PREFIX_LENGTH = 20


def mask_credential(value: str) -> str:
    """Show only the first characters of a credential."""
    return value[:MASK_PREFIX_LENGTH] + "..."


def error_response(code: ErrorCode, message: str) -> Response:
    return STATUS_CODES[code], {"error": message, "code": code.value}


class KeyService:
    """The operations droplets and operators call, bound to one engine."""

    def __init__(self, engine: RotationEngine):
        self.engine = engine

    def get_credential(self, provider: str, client: Optional[str] = None) -> Response:
        result = self.engine.get_credential(provider)
        if not result.ok:
            return error_response(result.error, result.message)

        logger.info("Key fetched: %s by %s", provider, client or "unknown")
        return 200, {
            "provider": provider,
            "key": result.value,
            "rotation": {
                "last": result.rotation.last_rotated_at.isoformat(),
                "next": result.rotation.next_label,
            },
        }

    def record_usage(self, provider: str, body: Optional[Mapping[str, Any]] = None) -> Response:
        """Record a usage report.

        The body may carry `tokens`, `droplet` and `timestamp`; a missing
        token count contributes nothing.
        """
        body = body or {}
        droplet = body.get("droplet")
        result = self.engine.record_usage(
            provider,
            body.get("tokens"),
            droplet=droplet,
            reported_at=body.get("timestamp")
        )
        if not result.ok:
            return error_response(result.error, result.message)

        return 200, {
            "success": True,
            "provider": provider,
            "totalUsage": result.total,
            "droplet": droplet,
        }

    def usage(self, provider: str) -> Response:
        detail = self.engine.usage(provider)
        if not detail.ok:
            return error_response(detail.error, detail.message)

        return 200, {
            "provider": provider,
            "totalUsage": detail.total,
            "lastRotation": detail.rotation.last_rotated_at.isoformat(),
            "nextRotation": detail.rotation.next_label,
        }

    def rotate_now(self, provider: str) -> Response:
        outcome = self.engine.rotate_now(provider)
        if not outcome.ok:
            return error_response(outcome.error, outcome.message)

        return 200, {
            "success": True,
            "provider": provider,
            "newKey": mask_credential(outcome.new_value),
            "rotatedAt": outcome.rotated_at.isoformat(),
        }

    def list_providers(self) -> Response:
        return 200, {
            "providers": self.engine.providers,
            "rotationSchedule": self.engine.rotation_schedule(),
        }

    def status(self) -> Response:
        status = self.engine.status()
        return 200, {
            "status": "ok",
            "providers": status.providers,
            "totalUsage": status.usage_snapshot,
        }
