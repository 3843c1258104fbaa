"""
Sync engine: keeps canonical settings and legacy meta in agreement.

One dispatch point, SyncEngine.handle_change(), receives every store
change notification. The key is routed through the FieldMapper:

    key is an entry's HOME    -> forward sync (canonical -> legacy targets)
    key is an entry's TARGET  -> reverse sync (legacy -> canonical home,
                                 then re-mirror the sibling targets)

Per route the engine checks the capability gate, then the loop guard for
the opposite direction, then marks its own direction and writes. Writes
to an aggregate bag are read-modify-write so unrelated sub-keys written
by the LMS survive. A failing target is reported in the result, never
rolled back.

Usage:
    engine = SyncEngine(store, build_mapper(), CapabilitySet(["course_preview"]))
    engine.attach()
    store.set(course_id, "_tutorpress_course_level", "expert")
    store.get(course_id, "_tutor_course_level")   # "expert"
"""

import logging
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from tutorsync.capabilities import CapabilitySet
from tutorsync.errors import MalformedLegacyValue, StoreError, UnknownEntity
from tutorsync.guard import Direction, LoopGuard
from tutorsync.legacy import MISSING, Known, Malformed, delete_in, get_in, read_bag, same_value, set_in
from tutorsync.mapping import FieldMapper, Location, MappingEntry, Route, RouteRole
from tutorsync.store import ChangeEvent, EntityStore
from tutorsync.transforms import DELETE

logger = logging.getLogger(__name__)


class SyncOutcome(Enum):
    """What happened to one routed change."""
    SYNCED = "synced"
    PARTIAL_FAILURE = "partial_failure"
    SUPPRESSED_ECHO = "suppressed_echo"
    NO_MAPPING = "no_mapping"
    CAPABILITY_DISABLED = "capability_disabled"
    UNMANAGED = "unmanaged"


@dataclass
class SyncResult:
    """Result of handling one change for one mapping entry."""
    entity_id: int
    key: str
    direction: Optional[Direction]
    outcome: SyncOutcome
    path: Optional[str] = None
    written: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome != SyncOutcome.PARTIAL_FAILURE

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "key": self.key,
            "direction": self.direction.value if self.direction else None,
            "outcome": self.outcome.value,
            "path": self.path,
            "written": list(self.written),
            "failed": dict(self.failed),
        }


# A pending write: location and legacy/home value (or DELETE)
Write = Tuple[Location, Any]


class SyncEngine:
    """Routes store notifications into forward and reverse sync."""

    def __init__(
        self,
        store: EntityStore,
        mapper: FieldMapper,
        capabilities: Optional[CapabilitySet] = None,
        guard: Optional[LoopGuard] = None,
        debounce_overrides: Optional[Mapping[str, float]] = None,
    ):
        self.store = store
        self.mapper = mapper
        self.capabilities = capabilities if capabilities is not None else CapabilitySet()
        self.guard = guard if guard is not None else LoopGuard()
        self.debounce_overrides = dict(debounce_overrides or {})
        self._writing: Set[int] = set()
        self._recorders: List[List[SyncResult]] = []
        self._attached = False

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self) -> "SyncEngine":
        """Subscribe to the store's change notifications."""
        if not self._attached:
            self.store.subscribe(self._on_change)
            self._attached = True
        return self

    def detach(self) -> None:
        if self._attached:
            self.store.unsubscribe(self._on_change)
            self._attached = False

    def _on_change(self, event: ChangeEvent) -> None:
        self.handle_change(event.entity_id, event.key, event.value, event.previous, event.deleted)

    @contextmanager
    def recording(self) -> Iterator[List[SyncResult]]:
        """Collect every SyncResult produced while the block runs."""
        results: List[SyncResult] = []
        self._recorders.append(results)
        try:
            yield results
        finally:
            self._recorders.remove(results)

    def _record(self, results: List[SyncResult]) -> List[SyncResult]:
        for recorder in self._recorders:
            recorder.extend(results)
        return results

    def window_for(self, entity_type: str) -> float:
        return self.debounce_overrides.get(entity_type, self.guard.window)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle_change(
        self,
        entity_id: int,
        key: str,
        value: Any,
        previous: Any = MISSING,
        deleted: bool = False,
    ) -> List[SyncResult]:
        """Handle one property change notification.

        Args:
            entity_id: Entity whose property changed
            key: Meta key that changed
            value: New value (ignored when deleted)
            previous: Value before the change, MISSING if unknown
            deleted: True if the key was removed

        Returns:
            One SyncResult per routed mapping entry, or a single
            NO_MAPPING / UNMANAGED result
        """
        entity_type = self.store.entity_type(entity_id)
        if entity_type is None:
            return self._record([SyncResult(entity_id, key, None, SyncOutcome.UNMANAGED)])

        changes = self._changed_routes(entity_type, key, value, previous, deleted)
        if not changes:
            return self._record([SyncResult(entity_id, key, None, SyncOutcome.NO_MAPPING)])

        # Our own writes echo back synchronously through the store
        if entity_id in self._writing:
            results = []
            for route, _ in changes:
                direction = _direction(route)
                logger.debug(f"Own write on {entity_id}:{route.location} ({direction.value})")
                results.append(SyncResult(entity_id, key, direction, SyncOutcome.SUPPRESSED_ECHO,
                                          route.entry.path))
            return self._record(results)

        # Decide suppression for the whole notification before any route writes
        window = self.window_for(entity_type)
        suppressed = {
            d: self.guard.is_suppressed(entity_id, d.opposite, window) for d in Direction
        }

        results = []
        for route, new_value in changes:
            direction = _direction(route)
            results.append(self._run(entity_id, key, route, direction, new_value,
                                     suppressed[direction]))
        return self._record(results)

    def _changed_routes(
        self,
        entity_type: str,
        key: str,
        value: Any,
        previous: Any,
        deleted: bool,
    ) -> List[Tuple[Route, Any]]:
        """Routes whose location actually changed, with the new raw value.

        For a bag key only sub-keys that differ from previous are routed;
        when previous is unknown every present sub-key is. Removals only
        matter for dedicated homes, which forward as deletes.
        """
        changes = []
        for route in self.mapper.routes(entity_type, key):
            location = route.location
            if location.subkey is None:
                new_value = MISSING if deleted else value
                old_value = previous
            else:
                new_value = MISSING if deleted else get_in(value, location.subkey)
                old_value = get_in(previous, location.subkey)
                if previous is not MISSING and same_value(new_value, old_value):
                    continue

            if new_value is MISSING:
                if old_value is MISSING:
                    continue
                if route.role != RouteRole.HOME or location.subkey is not None:
                    continue
            changes.append((route, new_value))
        return changes

    def _run(
        self,
        entity_id: int,
        key: str,
        route: Route,
        direction: Direction,
        raw: Any,
        suppressed: bool,
    ) -> SyncResult:
        entry = route.entry

        if entry.capability and not self.capabilities.is_enabled(entry.capability):
            logger.debug(f"{entry.path} on {entity_id}: capability {entry.capability} disabled")
            return SyncResult(entity_id, key, direction, SyncOutcome.CAPABILITY_DISABLED, entry.path)

        if suppressed:
            logger.debug(f"{entry.path} on {entity_id}: suppressed {direction.value} echo")
            return SyncResult(entity_id, key, direction, SyncOutcome.SUPPRESSED_ECHO, entry.path)

        self.guard.mark(entity_id, direction)
        if direction == Direction.FORWARD:
            writes = self._forward_writes(entity_id, entry, raw)
        else:
            writes = self._reverse_writes(entity_id, route, raw)

        written, failed = self._apply(entity_id, writes)
        if failed:
            logger.warning(
                f"{entry.path} on {entity_id}: {direction.value} sync failed for {', '.join(failed)}"
            )
            outcome = SyncOutcome.PARTIAL_FAILURE
        else:
            if written:
                logger.info(f"{entry.path} on {entity_id}: {direction.value} sync wrote {', '.join(written)}")
            outcome = SyncOutcome.SYNCED
        return SyncResult(entity_id, key, direction, outcome, entry.path, written, failed)

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def _forward_writes(self, entity_id: int, entry: MappingEntry, raw: Any) -> List[Write]:
        if raw is MISSING:
            return [(target.location, DELETE) for target in entry.targets]

        try:
            canonical = entry.home_to_canonical(raw)
        except MalformedLegacyValue as e:
            logger.debug(f"{entry.path} on {entity_id}: malformed home value ({e.reason}), using default")
            canonical = entry.default_value()

        return [
            (target.location, entry.codec_for(target).encode(canonical))
            for target in entry.targets
        ]

    def _reverse_writes(self, entity_id: int, route: Route, raw: Any) -> List[Write]:
        entry = route.entry
        try:
            canonical = entry.codec_for(route.target).decode(raw)
        except MalformedLegacyValue as e:
            logger.debug(f"{entry.path} on {entity_id}: malformed legacy {route.location} ({e.reason}), using default")
            canonical = entry.default_value()

        writes = [(entry.home, entry.canonical_to_home(canonical))]
        for target in entry.targets:
            if target.location != route.location:
                writes.append((target.location, entry.codec_for(target).encode(canonical)))
        return writes

    # ------------------------------------------------------------------
    # Store writes
    # ------------------------------------------------------------------

    def _apply(self, entity_id: int, writes: List[Write]) -> Tuple[List[str], Dict[str, str]]:
        """Write grouped by key: one read-modify-write per bag.

        Returns:
            (written locations, {failed location: reason})
        """
        grouped: "OrderedDict[str, List[Write]]" = OrderedDict()
        for location, value in writes:
            grouped.setdefault(location.key, []).append((location, value))

        written: List[str] = []
        failed: Dict[str, str] = {}

        self._writing.add(entity_id)
        try:
            for key, items in grouped.items():
                labels = [str(location) for location, _ in items]
                try:
                    changed, ok = self._write_key(entity_id, key, items)
                except StoreError as e:
                    failed.update({label: str(e) for label in labels})
                    continue
                if not ok:
                    failed.update({label: "store rejected the write" for label in labels})
                elif changed:
                    written.extend(labels)
        finally:
            self._writing.discard(entity_id)

        return written, failed

    def _write_key(self, entity_id: int, key: str, items: List[Write]) -> Tuple[bool, bool]:
        """Apply writes for one key. Returns (changed, ok)."""
        if items[0][0].subkey is None:
            _, value = items[-1]
            current = self.store.get(entity_id, key)
            if value is DELETE:
                if current is MISSING:
                    return False, True
                return True, self.store.delete(entity_id, key)
            if same_value(current, value):
                return False, True
            return True, self.store.set(entity_id, key, value)

        bag = read_bag(self.store, entity_id, key)
        if isinstance(bag, Malformed):
            logger.debug(f"{key} on {entity_id}: {bag.reason}, replacing with a fresh bag")
        original = bag.value if isinstance(bag, Known) else {}

        merged = original
        for location, value in items:
            if value is DELETE:
                merged = delete_in(merged, location.subkey)
            else:
                merged = set_in(merged, location.subkey, value)

        if isinstance(bag, Known) and same_value(merged, original):
            return False, True
        if bag is MISSING and not merged:
            return False, True
        return True, self.store.set(entity_id, key, merged)

    # ------------------------------------------------------------------
    # Explicit resync
    # ------------------------------------------------------------------

    def resync(self, entity_id: int, direction: Direction = Direction.FORWARD) -> List[SyncResult]:
        """Push stored canonical values to legacy, or pull legacy into canonical.

        Ignores the loop guard's suppression check (this is an explicit
        request) but still marks it so the resulting echoes are dropped.

        Raises:
            UnknownEntity: If the entity does not exist
        """
        entity_type = self.store.entity_type(entity_id)
        if entity_type is None:
            raise UnknownEntity(entity_id)

        results = []
        for entry in self.mapper.entries(entity_type):
            if direction == Direction.FORWARD:
                raw = self._read_location(entity_id, entry.home)
                if raw is MISSING:
                    continue
                route = Route(entry, RouteRole.HOME, entry.home)
            else:
                route, raw = None, MISSING
                for target in entry.targets:
                    raw = self._read_location(entity_id, target.location)
                    if raw is not MISSING:
                        route = Route(entry, RouteRole.TARGET, target.location, target)
                        break
                if route is None:
                    continue

            results.append(self._run(entity_id, route.location.key, route, direction, raw, False))

        logger.info(f"Resynced {entity_id} ({direction.value}): {len(results)} fields")
        return self._record(results)

    def _read_location(self, entity_id: int, location: Location) -> Any:
        if location.subkey is None:
            return self.store.get(entity_id, location.key)
        bag = read_bag(self.store, entity_id, location.key)
        if not isinstance(bag, Known):
            return MISSING
        return get_in(bag.value, location.subkey)


def _direction(route: Route) -> Direction:
    return Direction.FORWARD if route.role == RouteRole.HOME else Direction.REVERSE
