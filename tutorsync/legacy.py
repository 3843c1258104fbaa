"""
Decoding of stored values at the entity store boundary.

The host LMS writes meta values of uncertain shape: aggregate bags that
may be missing, empty strings where a dict is expected, numbers stored
as strings. Everything read by the sync engine or the settings assembler
passes through read_value(), which returns one of:

    Known(value)          - decoded successfully
    Malformed(raw, why)   - present but unusable; caller substitutes a default
    MISSING               - key or sub-key absent

Bag helpers (get_in / set_in / delete_in) address dotted sub-keys such as
"runtime.hours" inside an aggregate bag without mutating the input.
"""

import copy
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

from tutorsync.errors import MalformedLegacyValue

if TYPE_CHECKING:
    from tutorsync.store import EntityStore
    from tutorsync.transforms import Codec


class _Missing:
    """Marker for an absent key. Falsy, singleton."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


@dataclass(frozen=True)
class Known:
    """A successfully decoded value."""
    value: Any


@dataclass(frozen=True)
class Malformed:
    """A stored value that could not be decoded."""
    raw: Any
    reason: str


LegacyValue = Union[Known, Malformed, _Missing]


def same_value(a: Any, b: Any) -> bool:
    """Equality that does not treat True and 1 (or 0.0 and 0) as the same."""
    return type(a) is type(b) and a == b


def get_in(bag: Any, subkey: str, default: Any = MISSING) -> Any:
    """Read a dotted sub-key from a nested mapping."""
    current = bag
    for part in subkey.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def set_in(bag: Mapping, subkey: str, value: Any) -> dict:
    """Return a copy of bag with the dotted sub-key set to value.

    Intermediate levels that are missing or not mappings are replaced
    with empty dicts. Keys outside the sub-key path are preserved.
    """
    result = copy.deepcopy(dict(bag))
    parts = subkey.split(".")
    current = result
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = copy.deepcopy(value)
    return result


def delete_in(bag: Mapping, subkey: str) -> dict:
    """Return a copy of bag without the dotted sub-key."""
    result = copy.deepcopy(dict(bag))
    parts = subkey.split(".")
    current = result
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return result
    current.pop(parts[-1], None)
    return result


def decode(raw: Any, codec: Optional["Codec"] = None) -> LegacyValue:
    """Decode a raw stored value with a codec's reverse transform."""
    if raw is MISSING:
        return MISSING
    if codec is None:
        return Known(raw)
    try:
        return Known(codec.decode(raw))
    except MalformedLegacyValue as e:
        return Malformed(raw, e.reason)


def read_bag(store: "EntityStore", entity_id: int, key: str) -> Union[Known, Malformed, _Missing]:
    """Read an aggregate bag. Present-but-not-a-mapping is Malformed."""
    raw = store.get(entity_id, key)
    if raw is MISSING:
        return MISSING
    if not isinstance(raw, Mapping):
        return Malformed(raw, f"{key} is {type(raw).__name__}, expected a mapping")
    return Known(dict(raw))


def read_value(
    store: "EntityStore",
    entity_id: int,
    key: str,
    subkey: Optional[str] = None,
    codec: Optional["Codec"] = None,
) -> LegacyValue:
    """Read and decode a key, or a dotted sub-key of the bag stored at key."""
    if subkey is None:
        return decode(store.get(entity_id, key), codec)

    bag = read_bag(store, entity_id, key)
    if not isinstance(bag, Known):
        return bag
    return decode(get_in(bag.value, subkey), codec)
