"""
Settings assembler: the full canonical settings object for an entity.

For each mapping entry the value is taken from the first usable source:

    1. the entry's home (dedicated key, or sub-key of the settings bag)
    2. each legacy target, in table order
    3. the entry's static default

Malformed data at any source is skipped and logged at debug level, so
reads always return a fully populated object. Derived fields are computed
last from the assembled values.

get_canonical_settings() never writes. refresh_cache() is the separate,
explicit operation that stores the assembled object under the entity
type's cache key.
"""

import logging
from typing import Any, Dict, FrozenSet, Optional

from tutorsync.capabilities import CapabilitySet
from tutorsync.errors import MalformedLegacyValue, UnknownEntity
from tutorsync.legacy import MISSING, Known, Malformed, read_value, set_in
from tutorsync.mapping import FieldMapper, MappingEntry
from tutorsync.store import EntityStore
from tutorsync.transforms import absint

logger = logging.getLogger(__name__)

PARENT_ID = absint()


class SettingsAssembler:
    """Builds canonical settings from canonical and legacy storage."""

    def __init__(
        self,
        store: EntityStore,
        mapper: FieldMapper,
        capabilities: Optional[CapabilitySet] = None,
    ):
        self.store = store
        self.mapper = mapper
        self.capabilities = capabilities if capabilities is not None else CapabilitySet()

    def get_canonical_settings(self, entity_id: int) -> Dict[str, Any]:
        """Assemble the nested canonical settings for an entity.

        Raises:
            UnknownEntity: If the entity does not exist
        """
        entity_type = self.store.entity_type(entity_id)
        if entity_type is None:
            raise UnknownEntity(entity_id)
        return self._assemble(entity_id, entity_type, frozenset())

    def _assemble(self, entity_id: int, entity_type: str, seen: FrozenSet[int]) -> Dict[str, Any]:
        mapping = self.mapper.mapping(entity_type)
        if mapping is None:
            return {}

        settings: Dict[str, Any] = {}
        for entry in mapping.entries:
            settings = set_in(settings, entry.path, self.read_field(entity_id, entry))

        parents: Dict[str, Dict[str, Any]] = {}
        for derived in mapping.derived:
            if derived.parent_key is None:
                value = derived.compute(settings, self.capabilities)
            else:
                if derived.parent_key not in parents:
                    parents[derived.parent_key] = self._parent_settings(
                        entity_id, derived.parent_key, seen | {entity_id}
                    )
                value = derived.compute(settings, self.capabilities, parents[derived.parent_key])
            settings = set_in(settings, derived.path, value)

        return settings

    def _parent_settings(self, entity_id: int, key: str, seen: FrozenSet[int]) -> Dict[str, Any]:
        """Canonical settings of the entity whose id is stored under key."""
        parent = read_value(self.store, entity_id, key, codec=PARENT_ID)
        if not isinstance(parent, Known) or not parent.value or parent.value in seen:
            return {}
        parent_type = self.store.entity_type(parent.value)
        if parent_type is None:
            logger.debug(f"{key} on {entity_id}: parent {parent.value} does not exist")
            return {}
        return self._assemble(parent.value, parent_type, seen)

    def read_field(self, entity_id: int, entry: MappingEntry) -> Any:
        """Value of one entry: home, then legacy targets, then default."""
        value = self._read_home(entity_id, entry)
        if value is not MISSING:
            return value

        for target in entry.targets:
            loc = target.location
            decoded = read_value(self.store, entity_id, loc.key, loc.subkey, entry.codec_for(target))
            if isinstance(decoded, Known):
                return decoded.value
            if isinstance(decoded, Malformed):
                logger.debug(f"{entry.path} on {entity_id}: malformed {loc} ({decoded.reason})")

        return entry.default_value()

    def _read_home(self, entity_id: int, entry: MappingEntry) -> Any:
        home = entry.home
        raw = read_value(self.store, entity_id, home.key, home.subkey)
        if isinstance(raw, Malformed):
            logger.debug(f"{entry.path} on {entity_id}: malformed {home} ({raw.reason})")
            return MISSING
        if raw is MISSING:
            return MISSING

        try:
            return entry.home_to_canonical(raw.value)
        except MalformedLegacyValue as e:
            logger.debug(f"{entry.path} on {entity_id}: malformed {home} ({e.reason})")
            return MISSING

    def refresh_cache(self, entity_id: int) -> Optional[Dict[str, Any]]:
        """Write the assembled settings to the entity type's cache key.

        Returns:
            The cached settings, or None if the type has no cache key
        """
        entity_type = self.store.entity_type(entity_id)
        if entity_type is None:
            raise UnknownEntity(entity_id)

        mapping = self.mapper.mapping(entity_type)
        if mapping is None or not mapping.cache_key:
            return None

        settings = self.get_canonical_settings(entity_id)
        self.store.set(entity_id, mapping.cache_key, settings)
        logger.debug(f"Refreshed {mapping.cache_key} on {entity_id}")
        return settings

