"""
Error types for tutorsync.

Reads never raise for bad stored data: malformed legacy values are
recovered by substituting field defaults. The exceptions here cover
programming/configuration mistakes, store failures and rejected writes.
"""

from typing import List, Optional


class TutorSyncError(Exception):
    """Base class for all tutorsync errors."""


class StoreError(TutorSyncError):
    """Raised when the entity store cannot complete a read or write."""


class UnknownEntity(TutorSyncError, LookupError):
    """Raised when an entity id is not known to the store."""

    def __init__(self, entity_id: int):
        self.entity_id = entity_id
        super().__init__(f"Entity {entity_id} not found")


class MappingError(TutorSyncError):
    """Raised when a mapping table violates its invariants."""


class ConfigError(TutorSyncError):
    """Raised when a config file cannot be parsed or holds invalid values."""


class MalformedLegacyValue(TutorSyncError, ValueError):
    """A stored value does not have the shape its codec expects."""

    def __init__(self, reason: str, raw=None):
        self.reason = reason
        self.raw = raw
        super().__init__(reason)


class InvalidSettingValue(TutorSyncError, ValueError):
    """Raised when a canonical write carries a value that cannot be normalized."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[List[str]] = None):
        self.message = message
        self.field = field
        self.details = details or []
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.field:
            msg = f"{self.field}: {msg}"
        if self.details:
            msg += "\n  - " + "\n  - ".join(self.details)
        return msg
