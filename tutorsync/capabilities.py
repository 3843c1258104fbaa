"""
Capability flags: which LMS addons are active.

Addon detection itself is outside tutorsync; the host reports a boolean
per addon (usually through the config file) and the sync engine only asks
is_enabled(name). Unknown names are treated as disabled.
"""

from typing import Dict, Iterable, Mapping, Optional


# Addons whose presence changes which fields participate in sync
KNOWN_CAPABILITIES = (
    "course_preview",
    "google_meet",
    "zoom",
    "h5p",
    "certificate",
    "content_drip",
    "prerequisites",
    "multi_instructors",
    "enrollments",
    "course_attachments",
    "subscription",
    "woocommerce",
)


class CapabilitySet:
    """Immutable set of enabled capability names."""

    def __init__(self, enabled: Iterable[str] = ()):
        self._enabled = frozenset(enabled)

    @classmethod
    def from_mapping(cls, flags: Optional[Mapping[str, bool]]) -> "CapabilitySet":
        """Build from a {name: bool} mapping as found in config files."""
        return cls(name for name, on in (flags or {}).items() if on)

    def is_enabled(self, name: str) -> bool:
        return name in self._enabled

    def enabled(self) -> list:
        return sorted(self._enabled)

    def to_dict(self) -> Dict[str, bool]:
        """Status of every known capability plus any extra enabled names."""
        status = {name: name in self._enabled for name in KNOWN_CAPABILITIES}
        for name in sorted(self._enabled):
            status.setdefault(name, True)
        return status

    def __contains__(self, name: str) -> bool:
        return self.is_enabled(name)

    def __repr__(self) -> str:
        return f"CapabilitySet({self.enabled()})"
