"""
Mapping tables for the four synced entity types.

Usage:
    from tutorsync.mappings import build_mapper

    mapper = build_mapper()
    mapper.resolve("course", "course_level")
"""

from tutorsync.mapping import FieldMapper
from tutorsync.mappings.assignment import ASSIGNMENT
from tutorsync.mappings.bundle import BUNDLE
from tutorsync.mappings.course import COURSE
from tutorsync.mappings.lesson import LESSON


ENTITY_MAPPINGS = (COURSE, LESSON, ASSIGNMENT, BUNDLE)

ENTITY_TYPES = tuple(m.entity_type for m in ENTITY_MAPPINGS)


def build_mapper() -> FieldMapper:
    """FieldMapper with every built-in entity mapping registered."""
    return FieldMapper(ENTITY_MAPPINGS)


__all__ = [
    "ASSIGNMENT",
    "BUNDLE",
    "COURSE",
    "ENTITY_MAPPINGS",
    "ENTITY_TYPES",
    "LESSON",
    "build_mapper",
]
