"""
Field Mapper: static tables linking canonical settings to legacy meta.

Each entity type (course, lesson, assignment, bundle) has an EntityMapping
listing its MappingEntry rows. An entry says where the canonical value
lives (its "home"), which legacy locations mirror it, how values are
transformed between the two shapes, and which capability gates its sync.

    DEDICATED  home is its own meta key holding the canonical value
    AGGREGATE  home is a sub-key of a legacy settings bag, legacy-encoded

Locations are written "key" or "key[sub.key]" in the tables:

    dedicated("course_level", "_tutorpress_course_level", LEVEL, "all_levels",
              "_tutor_course_level")
    aggregate("maximum_students", "_tutor_course_settings", "maximum_students",
              UNLIMITED_COUNT, None,
              "_tutor_course_settings[maximum_students_allowed]",
              "_tutor_maximum_students")

Lookups are pure: FieldMapper.resolve() returns None for fields that are
not subject to sync, and FieldMapper.routes() lists every entry touching a
meta key together with the role that key plays for it.
"""

import copy
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from tutorsync.errors import MappingError
from tutorsync.transforms import Codec


class StorageMode(Enum):
    """Where an entry's canonical value is stored."""
    DEDICATED = "dedicated"
    AGGREGATE = "aggregate"


class RouteRole(Enum):
    """Role a meta key plays for an entry."""
    HOME = "home"       # writes here trigger forward sync
    TARGET = "target"   # writes here trigger reverse sync


_LOCATION_RE = re.compile(r"^(?P<key>[^\[\]]+)(?:\[(?P<subkey>[^\[\]]+)\])?$")


@dataclass(frozen=True)
class Location:
    """A meta key, optionally a dotted sub-key of the bag stored there."""
    key: str
    subkey: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "Location":
        """Parse "key" or "key[sub.key]"."""
        match = _LOCATION_RE.match(text.strip())
        if not match:
            raise MappingError(f"Invalid location: {text!r}")
        return cls(match.group("key"), match.group("subkey"))

    def __str__(self) -> str:
        if self.subkey:
            return f"{self.key}[{self.subkey}]"
        return self.key


@dataclass(frozen=True)
class LegacyTarget:
    """A legacy mirror of a canonical field. Its codec overrides the entry's."""
    location: Location
    codec: Optional[Codec] = None


@dataclass(frozen=True)
class MappingEntry:
    """One canonical field and everything needed to sync it."""
    path: str
    home: Location
    codec: Codec
    default: Any
    targets: Tuple[LegacyTarget, ...] = ()
    storage_mode: StorageMode = StorageMode.DEDICATED
    capability: Optional[str] = None

    def __post_init__(self):
        if self.storage_mode == StorageMode.DEDICATED and self.home.subkey:
            raise MappingError(f"{self.path}: dedicated home cannot be a sub-key ({self.home})")
        if self.storage_mode == StorageMode.AGGREGATE and not self.home.subkey:
            raise MappingError(f"{self.path}: aggregate home must be a sub-key ({self.home})")

    def default_value(self) -> Any:
        return copy.deepcopy(self.default)

    def codec_for(self, target: LegacyTarget) -> Codec:
        return target.codec or self.codec

    def home_to_canonical(self, raw: Any) -> Any:
        """Canonical value from the stored home value.

        Raises:
            MalformedLegacyValue: If the stored value has the wrong shape
        """
        if self.storage_mode == StorageMode.DEDICATED:
            return self.codec.normalize(raw)
        return self.codec.decode(raw)

    def canonical_to_home(self, value: Any) -> Any:
        """Value to store at the home for a normalized canonical value."""
        if self.storage_mode == StorageMode.DEDICATED:
            return value
        return self.codec.encode(value)

    def locations(self) -> List[Location]:
        return [self.home] + [t.location for t in self.targets]


@dataclass(frozen=True)
class Route:
    """An entry reached through a meta key, and the role of that key."""
    entry: MappingEntry
    role: RouteRole
    location: Location
    target: Optional[LegacyTarget] = None


@dataclass(frozen=True)
class DerivedField:
    """Read-only canonical value computed from assembled settings.

    compute(settings, capabilities) receives the nested settings built so
    far and the active CapabilitySet. When parent_key names the meta key
    holding a parent entity id, compute also gets that parent's canonical
    settings as a third argument ({} when there is no usable parent).
    """
    path: str
    compute: Callable[..., Any]
    parent_key: Optional[str] = None


PayloadRule = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class EntityMapping:
    """All mapping entries for one entity type.

    normalize_payload(values, current) applies cross-field rules to a
    flat {path: normalized value} write, given the current nested
    settings, and returns the values to write.
    """
    entity_type: str
    entries: Tuple[MappingEntry, ...]
    derived: Tuple[DerivedField, ...] = ()
    cache_key: Optional[str] = None
    normalize_payload: Optional[PayloadRule] = None


TargetSpec = Union[str, Location, LegacyTarget]


def _target(spec: TargetSpec) -> LegacyTarget:
    if isinstance(spec, LegacyTarget):
        return spec
    if isinstance(spec, Location):
        return LegacyTarget(spec)
    return LegacyTarget(Location.parse(spec))


def dedicated(
    path: str,
    key: str,
    codec: Codec,
    default: Any,
    *targets: TargetSpec,
    capability: Optional[str] = None,
) -> MappingEntry:
    """Entry whose canonical value lives in its own meta key."""
    return MappingEntry(
        path=path,
        home=Location.parse(key),
        codec=codec,
        default=default,
        targets=tuple(_target(t) for t in targets),
        storage_mode=StorageMode.DEDICATED,
        capability=capability,
    )


def aggregate(
    path: str,
    bag_key: str,
    subkey: str,
    codec: Codec,
    default: Any,
    *targets: TargetSpec,
    capability: Optional[str] = None,
) -> MappingEntry:
    """Entry whose canonical value lives inside a legacy settings bag."""
    bag = Location.parse(bag_key)
    if bag.subkey:
        raise MappingError(f"{path}: bag key must be a plain key ({bag_key})")
    return MappingEntry(
        path=path,
        home=Location(bag.key, subkey),
        codec=codec,
        default=default,
        targets=tuple(_target(t) for t in targets),
        storage_mode=StorageMode.AGGREGATE,
        capability=capability,
    )


class FieldMapper:
    """Registry of entity mappings with path and meta-key indexes."""

    def __init__(self, mappings: Iterable[EntityMapping] = ()):
        self._mappings: Dict[str, EntityMapping] = {}
        self._by_path: Dict[str, Dict[str, MappingEntry]] = {}
        self._by_key: Dict[str, Dict[str, List[Route]]] = {}
        for mapping in mappings:
            self.register(mapping)

    def register(self, mapping: EntityMapping) -> None:
        """Add an entity mapping after validating its invariants.

        Raises:
            MappingError: On duplicate paths, a legacy location claimed by
                two entries, a location that is both home and target, or a
                key used both whole and as a bag
        """
        if mapping.entity_type in self._mappings:
            raise MappingError(f"Mapping for {mapping.entity_type!r} already registered")

        by_path: Dict[str, MappingEntry] = {}
        by_key: Dict[str, List[Route]] = {}
        homes: Dict[Location, str] = {}
        targets: Dict[Location, str] = {}
        whole_keys = set()
        bag_keys = set()

        for entry in mapping.entries:
            if entry.path in by_path:
                raise MappingError(f"{mapping.entity_type}: duplicate path {entry.path!r}")
            by_path[entry.path] = entry

            if entry.home in homes:
                raise MappingError(
                    f"{mapping.entity_type}: {entry.home} is home to both "
                    f"{homes[entry.home]!r} and {entry.path!r}"
                )
            homes[entry.home] = entry.path
            by_key.setdefault(entry.home.key, []).append(
                Route(entry, RouteRole.HOME, entry.home)
            )

            for target in entry.targets:
                loc = target.location
                if loc in targets:
                    raise MappingError(
                        f"{mapping.entity_type}: {loc} is a target of both "
                        f"{targets[loc]!r} and {entry.path!r}"
                    )
                targets[loc] = entry.path
                by_key.setdefault(loc.key, []).append(
                    Route(entry, RouteRole.TARGET, loc, target)
                )

            for loc in entry.locations():
                (bag_keys if loc.subkey else whole_keys).add(loc.key)

        overlap = set(homes) & set(targets)
        if overlap:
            names = ", ".join(sorted(str(loc) for loc in overlap))
            raise MappingError(f"{mapping.entity_type}: locations both home and target: {names}")

        mixed = whole_keys & bag_keys
        if mixed:
            raise MappingError(
                f"{mapping.entity_type}: keys used both whole and as a bag: {', '.join(sorted(mixed))}"
            )

        for derived in mapping.derived:
            if derived.path in by_path:
                raise MappingError(f"{mapping.entity_type}: derived path {derived.path!r} shadows an entry")

        self._mappings[mapping.entity_type] = mapping
        self._by_path[mapping.entity_type] = by_path
        self._by_key[mapping.entity_type] = by_key

    def entity_types(self) -> List[str]:
        return sorted(self._mappings)

    def mapping(self, entity_type: str) -> Optional[EntityMapping]:
        return self._mappings.get(entity_type)

    def entries(self, entity_type: str) -> List[MappingEntry]:
        mapping = self._mappings.get(entity_type)
        return list(mapping.entries) if mapping else []

    def resolve(self, entity_type: str, canonical_path: str) -> Optional[MappingEntry]:
        """Entry for a canonical path, or None if the field is not synced."""
        return self._by_path.get(entity_type, {}).get(canonical_path)

    def routes(self, entity_type: str, key: str) -> List[Route]:
        """Every route touching a meta key, homes before targets."""
        routes = self._by_key.get(entity_type, {}).get(key, [])
        return sorted(routes, key=lambda r: r.role != RouteRole.HOME)

    def is_derived(self, entity_type: str, canonical_path: str) -> bool:
        mapping = self._mappings.get(entity_type)
        if not mapping:
            return False
        return any(d.path == canonical_path for d in mapping.derived)
