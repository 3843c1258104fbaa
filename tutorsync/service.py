"""
Settings service: the write path behind the REST surface.

update() takes a partial, nested canonical payload such as

    {"course_level": "expert", "lesson_preview": {"enabled": True}}

flattens it to canonical paths, applies the entity's cross-field rules,
normalizes every value and writes it to its home. Dedicated fields get one
write each; aggregate fields sharing a settings bag are merged into a
single bag write. The store's change notifications drive the sync engine;
the service only collects what the engine reported and turns legacy
mirroring trouble into warnings instead of failures.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from tutorsync.assembler import SettingsAssembler
from tutorsync.config import SyncConfig
from tutorsync.engine import SyncEngine, SyncOutcome, SyncResult
from tutorsync.errors import InvalidSettingValue, MalformedLegacyValue, StoreError, UnknownEntity
from tutorsync.guard import Direction, LoopGuard
from tutorsync.legacy import Known, read_bag, same_value, set_in
from tutorsync.mapping import MappingEntry, StorageMode
from tutorsync.mappings import build_mapper
from tutorsync.store import EntityStore, SQLiteEntityStore

logger = logging.getLogger(__name__)


@dataclass
class WriteReport:
    """Outcome of one settings write."""
    entity_id: int
    success: bool = True
    written: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    results: List[SyncResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "success": self.success,
            "written": list(self.written),
            "warnings": list(self.warnings),
            "results": [r.to_dict() for r in self.results],
        }


def flatten_payload(payload: Mapping[str, Any], known_paths: Optional[set] = None, prefix: str = "") -> Dict[str, Any]:
    """Flatten a nested payload into {"a.b": value}.

    Nesting stops at a path in known_paths, so record-valued fields such
    as course_duration stay whole.
    """
    flat: Dict[str, Any] = {}
    for name, value in payload.items():
        path = f"{prefix}{name}"
        if isinstance(value, Mapping) and (known_paths is None or path not in known_paths):
            flat.update(flatten_payload(value, known_paths, f"{path}."))
        else:
            flat[path] = value
    return flat


class SettingsService:
    """Reads and writes canonical settings for any mapped entity."""

    def __init__(self, engine: SyncEngine, assembler: SettingsAssembler, cache_enabled: bool = True):
        self.engine = engine
        self.assembler = assembler
        self.cache_enabled = cache_enabled

    @property
    def store(self):
        return self.engine.store

    @property
    def mapper(self):
        return self.engine.mapper

    def get(self, entity_id: int) -> Dict[str, Any]:
        """Canonical settings for an entity."""
        return self.assembler.get_canonical_settings(entity_id)

    def update(self, entity_id: int, payload: Mapping[str, Any]) -> WriteReport:
        """Write a partial canonical payload.

        Raises:
            UnknownEntity: If the entity does not exist
            InvalidSettingValue: If a value cannot be normalized; nothing
                is written in that case
        """
        entity_type = self.store.entity_type(entity_id)
        if entity_type is None:
            raise UnknownEntity(entity_id)

        report = WriteReport(entity_id)
        mapping = self.mapper.mapping(entity_type)
        if mapping is None:
            report.warnings.append(f"No settings are mapped for entity type {entity_type!r}")
            return report

        known = {entry.path for entry in mapping.entries}
        values: Dict[str, Any] = {}
        errors: List[Tuple[str, str]] = []

        for path, value in flatten_payload(payload, known).items():
            entry = self.mapper.resolve(entity_type, path)
            if entry is None:
                if self.mapper.is_derived(entity_type, path):
                    report.warnings.append(f"{path} is read-only")
                else:
                    report.warnings.append(f"Unknown field {path}")
                continue
            try:
                values[path] = entry.codec.normalize(value)
            except MalformedLegacyValue as e:
                errors.append((path, e.reason))

        if errors:
            if len(errors) == 1:
                raise InvalidSettingValue(errors[0][1], field=errors[0][0])
            raise InvalidSettingValue(
                "Invalid setting values",
                details=[f"{path}: {reason}" for path, reason in errors],
            )

        if mapping.normalize_payload and values:
            values = mapping.normalize_payload(values, self.get(entity_id))

        with self.engine.recording() as results:
            self._write_values(entity_id, entity_type, values, report)

        report.results = list(results)
        for result in results:
            if result.outcome == SyncOutcome.PARTIAL_FAILURE:
                failed = ", ".join(f"{loc} ({reason})" for loc, reason in result.failed.items())
                report.warnings.append(f"{result.path}: legacy sync failed for {failed}")
            elif result.outcome == SyncOutcome.CAPABILITY_DISABLED:
                entry = self.mapper.resolve(entity_type, result.path)
                report.warnings.append(
                    f"{result.path}: saved but not synced, {entry.capability} is not enabled"
                )
            elif result.outcome == SyncOutcome.SUPPRESSED_ECHO and result.direction == Direction.FORWARD:
                # Service writes only touch homes, so a forward echo here comes from the loop guard
                report.warnings.append(
                    f"{result.path}: saved but not mirrored, the LMS wrote this entity moments ago"
                )

        if self.cache_enabled and report.written:
            try:
                self.assembler.refresh_cache(entity_id)
            except StoreError as e:
                report.warnings.append(f"Settings cache not refreshed: {e}")

        logger.info(f"Updated {entity_type} {entity_id}: {len(report.written)} fields")
        return report

    def _write_values(self, entity_id: int, entity_type: str, values: Dict[str, Any], report: WriteReport) -> None:
        bags: "OrderedDict[str, List[Tuple[MappingEntry, Any]]]" = OrderedDict()

        for path, value in values.items():
            entry = self.mapper.resolve(entity_type, path)
            if entry.storage_mode == StorageMode.AGGREGATE:
                bags.setdefault(entry.home.key, []).append((entry, value))
                continue
            self._write(entity_id, entry.home.key, entry.canonical_to_home(value), [path], report)

        for key, items in bags.items():
            bag = read_bag(self.store, entity_id, key)
            merged = bag.value if isinstance(bag, Known) else {}
            for entry, value in items:
                merged = set_in(merged, entry.home.subkey, entry.canonical_to_home(value))
            self._write(entity_id, key, merged, [entry.path for entry, _ in items], report)

    def _write(self, entity_id: int, key: str, value: Any, paths: List[str], report: WriteReport) -> None:
        current = self.store.get(entity_id, key)
        if same_value(current, value):
            report.written.extend(paths)
            return
        try:
            ok = self.store.set(entity_id, key, value)
        except StoreError as e:
            ok = False
            logger.warning(f"Write of {key} on {entity_id} failed: {e}")
        if ok:
            report.written.extend(paths)
        else:
            report.success = False
            report.warnings.append(f"Could not save {', '.join(paths)}")


def create_service(
    config: Optional[SyncConfig] = None,
    store: Optional[EntityStore] = None,
    clock: Optional[Callable[[], float]] = None,
) -> SettingsService:
    """Wire store, mapper, engine and assembler from a config.

    The engine is attached to the store, so every write through the
    returned service (or directly to the store) is synced.
    """
    config = config or SyncConfig()
    if store is None:
        store = SQLiteEntityStore(config.db_path)

    capabilities = config.capability_set()
    guard = LoopGuard(config.debounce_seconds, clock or time.monotonic)
    mapper = build_mapper()

    engine = SyncEngine(store, mapper, capabilities, guard, config.debounce_overrides).attach()
    assembler = SettingsAssembler(store, mapper, capabilities)
    return SettingsService(engine, assembler, cache_enabled=config.cache_enabled)
