"""
Value codecs between canonical settings and legacy meta values.

A Codec bundles three functions for one field family:

    normalize(value)  canonical -> canonical   (sanitize an incoming write)
    encode(value)     canonical -> legacy      (forward sync)
    decode(raw)       legacy    -> canonical   (reverse sync, assembly)

normalize and decode raise MalformedLegacyValue when a value has the wrong
shape. encode may return DELETE to remove the legacy key or sub-key instead
of writing it.

Usage:
    YES_NO.encode(True)      # "yes"
    YES_NO.decode("maybe")   # False
    UNLIMITED_COUNT.decode("0")  # None
"""

import copy
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from tutorsync.errors import MalformedLegacyValue


class _Delete:
    """Sentinel returned by encode() to remove a legacy value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE"


DELETE = _Delete()


def _identity(value: Any) -> Any:
    return value


@dataclass(frozen=True)
class Codec:
    """Per-field transforms. Missing functions default to identity."""
    name: str
    normalize: Callable[[Any], Any] = _identity
    encode: Callable[[Any], Any] = _identity
    decode: Callable[[Any], Any] = _identity

    def __repr__(self) -> str:
        return f"Codec({self.name})"


# ---------------------------------------------------------------------------
# Primitive coercions
# ---------------------------------------------------------------------------

def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise MalformedLegacyValue("boolean is not a number", value)
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0.0
        try:
            number = float(text)
        except ValueError:
            raise MalformedLegacyValue(f"not a number: {value!r}", value)
    elif isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            raise MalformedLegacyValue("number out of range", value)
    else:
        raise MalformedLegacyValue(f"not a number: {type(value).__name__}", value)

    if not math.isfinite(number):
        raise MalformedLegacyValue(f"not a finite number: {value!r}", value)
    return number


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    return int(_to_float(value))


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if value is None:
        return False
    raise MalformedLegacyValue(f"not a boolean: {type(value).__name__}", value)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise MalformedLegacyValue("boolean is not text", value)
    if isinstance(value, (str, int, float)):
        return str(value).strip()
    raise MalformedLegacyValue(f"not text: {type(value).__name__}", value)


# ---------------------------------------------------------------------------
# Booleans
# ---------------------------------------------------------------------------

def _yes_no_encode(value: Any) -> str:
    return "yes" if _to_bool(value) else "no"


def _yes_no_decode(raw: Any) -> bool:
    # Only the exact legacy "yes" (or a native True) is truthy
    return raw is True or raw == "yes"


YES_NO = Codec("yes_no", normalize=_to_bool, encode=_yes_no_encode, decode=_yes_no_decode)

FLAG_INT = Codec(
    "flag_int",
    normalize=_to_bool,
    encode=lambda value: 1 if _to_bool(value) else 0,
    decode=_to_bool,
)

BOOL = Codec("bool", normalize=_to_bool, encode=_to_bool, decode=_to_bool)


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------

def _unlimited_normalize(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    number = abs(_to_int(value))
    return number or None


def _unlimited_encode(value: Any) -> Any:
    normalized = _unlimited_normalize(value)
    return "" if normalized is None else normalized


UNLIMITED_COUNT = Codec(
    "unlimited_count",
    normalize=_unlimited_normalize,
    encode=_unlimited_encode,
    decode=_unlimited_normalize,
)


def absint(minimum: int = 0, maximum: Optional[int] = None) -> Codec:
    """Non-negative integer clamped to [minimum, maximum]."""

    def clamp(value: Any) -> int:
        number = max(minimum, abs(_to_int(value)))
        if maximum is not None:
            number = min(maximum, number)
        return number

    name = f"absint({minimum},{maximum})" if maximum is not None else f"absint({minimum})"
    return Codec(name, normalize=clamp, encode=clamp, decode=clamp)


def _price(value: Any) -> float:
    price = _to_float(value)
    if price < 0:
        raise MalformedLegacyValue(f"negative price: {value!r}", value)
    return round(price, 2)


PRICE = Codec("price", normalize=_price, encode=_price, decode=_price)


# ---------------------------------------------------------------------------
# Text and choices
# ---------------------------------------------------------------------------

TEXT = Codec("text", normalize=_to_text, encode=_to_text, decode=_to_text)


def choice(allowed: Sequence[str], fallback: str, optional: bool = False) -> Codec:
    """One of a fixed set of strings.

    Incoming writes with an unknown value fall back; stored legacy values
    outside the set are malformed and replaced by the field default.
    With optional, "" means no choice and removes the legacy key.
    """
    allowed = tuple(allowed)
    accepted = allowed + ("",) if optional else allowed

    def normalize(value: Any) -> str:
        text = _to_text(value)
        return text if text in accepted else fallback

    def encode(value: Any) -> Any:
        text = normalize(value)
        if optional and text == "":
            return DELETE
        return text

    def decode(raw: Any) -> str:
        text = _to_text(raw)
        if text not in accepted:
            raise MalformedLegacyValue(f"{text!r} not one of {', '.join(allowed)}", raw)
        return text

    name = f"choice({'|'.join(allowed)})"
    return Codec(name, normalize=normalize, encode=encode if optional else normalize, decode=decode)


def _price_type(value: Any) -> str:
    return "free" if _to_text(value) == "free" else "paid"


PRICE_TYPE = Codec("price_type", normalize=_price_type, encode=_price_type, decode=_price_type)


VIDEO_SOURCES = ("", "html5", "youtube", "vimeo", "external_url", "embedded", "shortcode")


def _video_source_normalize(value: Any) -> str:
    text = _to_text(value)
    if text == "-1":
        return ""
    return text if text in VIDEO_SOURCES else ""


def _video_source_decode(raw: Any) -> str:
    text = _to_text(raw)
    if text == "-1":
        return ""
    if text not in VIDEO_SOURCES:
        raise MalformedLegacyValue(f"unknown video source {text!r}", raw)
    return text


VIDEO_SOURCE = Codec(
    "video_source",
    normalize=_video_source_normalize,
    encode=lambda value: _video_source_normalize(value) or "-1",
    decode=_video_source_decode,
)


DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _datetime_text(value: Any) -> str:
    text = _to_text(value)
    if text == "":
        return ""
    for fmt in (DATETIME_FORMAT, "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).strftime(DATETIME_FORMAT)
        except ValueError:
            continue
    return ""


DATETIME_TEXT = Codec("datetime_text", normalize=_datetime_text, encode=_datetime_text, decode=_datetime_text)


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------

def _ids(value: Any) -> List[int]:
    if value is None or value == "":
        return []
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        value = str(value).split(",")
    if not isinstance(value, (list, tuple)):
        raise MalformedLegacyValue(f"not a list of ids: {type(value).__name__}", value)

    ids = set()
    for item in value:
        if isinstance(item, str) and item.strip() == "":
            continue
        number = _to_int(item)
        if number > 0:
            ids.add(number)
    return sorted(ids)


def id_list(delete_empty: bool = False) -> Codec:
    """Sorted unique positive ids. Empty lists remove the legacy key when delete_empty."""

    def encode(value: Any) -> Any:
        ids = _ids(value)
        if not ids and delete_empty:
            return DELETE
        return ids

    return Codec("id_list", normalize=_ids, encode=encode, decode=_ids)


CSV_IDS = Codec(
    "csv_ids",
    normalize=_ids,
    encode=lambda value: ",".join(str(i) for i in _ids(value)),
    decode=_ids,
)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def record(defaults: Dict[str, Any], fields: Optional[Dict[str, Codec]] = None) -> Codec:
    """A dict with a fixed set of keys merged over defaults.

    Unknown keys are dropped. Per-key codecs normalize individual values.
    """
    fields = fields or {}

    def normalize(value: Any) -> Dict[str, Any]:
        if value is None or value == "":
            return copy.deepcopy(defaults)
        if not isinstance(value, dict):
            raise MalformedLegacyValue(f"expected a mapping, got {type(value).__name__}", value)

        result = copy.deepcopy(defaults)
        for key in defaults:
            if key not in value:
                continue
            codec = fields.get(key)
            result[key] = codec.normalize(value[key]) if codec else value[key]
        return result

    def decode(raw: Any) -> Dict[str, Any]:
        if isinstance(raw, dict):
            result = copy.deepcopy(defaults)
            for key in defaults:
                if key in raw:
                    codec = fields.get(key)
                    result[key] = codec.decode(raw[key]) if codec else raw[key]
            return result
        return normalize(raw)

    def encode(value: Any) -> Dict[str, Any]:
        normalized = normalize(value)
        for key, codec in fields.items():
            if key in normalized:
                normalized[key] = codec.encode(normalized[key])
        return normalized

    return Codec(f"record({','.join(defaults)})", normalize=normalize, encode=encode, decode=decode)


DURATION = record(
    {"hours": 0, "minutes": 0},
    {"hours": absint(), "minutes": absint(0, 59)},
)
