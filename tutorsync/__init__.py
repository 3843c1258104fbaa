"""
tutorsync - bidirectional settings sync between block-editor fields and
legacy LMS meta.

Usage:
    from tutorsync import MemoryEntityStore, SyncConfig, create_service

    store = MemoryEntityStore()
    service = create_service(SyncConfig(), store)
    course_id = store.create_entity("course")
    service.update(course_id, {"course_level": "expert"})
    store.get(course_id, "_tutor_course_level")   # "expert"
"""

__version__ = "0.3.0"

from tutorsync.assembler import SettingsAssembler
from tutorsync.capabilities import KNOWN_CAPABILITIES, CapabilitySet
from tutorsync.config import SyncConfig, load_config, save_config
from tutorsync.engine import SyncEngine, SyncOutcome, SyncResult
from tutorsync.errors import (
    ConfigError,
    InvalidSettingValue,
    MalformedLegacyValue,
    MappingError,
    StoreError,
    TutorSyncError,
    UnknownEntity,
)
from tutorsync.guard import Direction, LoopGuard
from tutorsync.legacy import MISSING, Known, Malformed
from tutorsync.mapping import FieldMapper, MappingEntry, StorageMode
from tutorsync.mappings import build_mapper
from tutorsync.service import SettingsService, WriteReport, create_service
from tutorsync.store import ChangeEvent, EntityStore, MemoryEntityStore, SQLiteEntityStore

__all__ = [
    "__version__",
    "CapabilitySet",
    "ChangeEvent",
    "ConfigError",
    "Direction",
    "EntityStore",
    "FieldMapper",
    "InvalidSettingValue",
    "KNOWN_CAPABILITIES",
    "Known",
    "LoopGuard",
    "MISSING",
    "Malformed",
    "MalformedLegacyValue",
    "MappingEntry",
    "MappingError",
    "MemoryEntityStore",
    "SQLiteEntityStore",
    "SettingsAssembler",
    "SettingsService",
    "StorageMode",
    "StoreError",
    "SyncConfig",
    "SyncEngine",
    "SyncOutcome",
    "SyncResult",
    "TutorSyncError",
    "UnknownEntity",
    "WriteReport",
    "build_mapper",
    "create_service",
    "load_config",
    "save_config",
]
