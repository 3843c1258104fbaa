"""
Tests for the field mapper and the built-in entity tables.
"""

import pytest

from tutorsync.errors import MappingError
from tutorsync.mapping import (
    EntityMapping,
    FieldMapper,
    Location,
    RouteRole,
    StorageMode,
    aggregate,
    dedicated,
)
from tutorsync.mappings import ENTITY_TYPES, build_mapper
from tutorsync.transforms import FLAG_INT, TEXT, YES_NO


class TestLocation:
    """Tests for location parsing."""

    def test_parse_plain_key(self):
        assert Location.parse("_tutor_course_level") == Location("_tutor_course_level")

    def test_parse_subkey(self):
        loc = Location.parse("_video[runtime.hours]")
        assert loc.key == "_video"
        assert loc.subkey == "runtime.hours"
        assert str(loc) == "_video[runtime.hours]"

    def test_parse_invalid(self):
        with pytest.raises(MappingError):
            Location.parse("a[b]c]")


class TestMappingEntry:
    """Tests for entry construction rules."""

    def test_dedicated_home_cannot_be_subkey(self):
        with pytest.raises(MappingError):
            dedicated("x", "bag[x]", TEXT, "")

    def test_aggregate_bag_key_must_be_plain(self):
        with pytest.raises(MappingError):
            aggregate("x", "bag[inner]", "x", TEXT, "")

    def test_aggregate_home_needs_subkey(self):
        entry = aggregate("x", "bag", "x", TEXT, "")
        assert entry.storage_mode == StorageMode.AGGREGATE
        assert entry.home == Location("bag", "x")

    def test_target_codec_overrides_entry_codec(self):
        entry = dedicated("flag", "_flag", YES_NO, False, "_legacy_flag")
        assert entry.codec_for(entry.targets[0]) is YES_NO


class TestFieldMapperValidation:
    """Invariants enforced when a mapping is registered."""

    def test_duplicate_path_rejected(self):
        mapping = EntityMapping("thing", (
            dedicated("a", "_a", TEXT, ""),
            dedicated("a", "_a2", TEXT, ""),
        ))
        with pytest.raises(MappingError, match="duplicate path"):
            FieldMapper([mapping])

    def test_target_shared_by_two_entries_rejected(self):
        mapping = EntityMapping("thing", (
            dedicated("a", "_a", TEXT, "", "_legacy"),
            dedicated("b", "_b", TEXT, "", "_legacy"),
        ))
        with pytest.raises(MappingError, match="target of both"):
            FieldMapper([mapping])

    def test_home_used_as_target_rejected(self):
        mapping = EntityMapping("thing", (
            dedicated("a", "_a", TEXT, ""),
            dedicated("b", "_b", TEXT, "", "_a"),
        ))
        with pytest.raises(MappingError, match="both home and target"):
            FieldMapper([mapping])

    def test_key_used_whole_and_as_bag_rejected(self):
        mapping = EntityMapping("thing", (
            dedicated("a", "_a", TEXT, "", "_video"),
            dedicated("b", "_b", TEXT, "", "_video[b]"),
        ))
        with pytest.raises(MappingError, match="whole and as a bag"):
            FieldMapper([mapping])

    def test_entity_type_registered_once(self):
        mapping = EntityMapping("thing", (dedicated("a", "_a", TEXT, ""),))
        mapper = FieldMapper([mapping])
        with pytest.raises(MappingError):
            mapper.register(mapping)


class TestBuiltinTables:
    """Lookups against the shipped course/lesson/assignment/bundle tables."""

    @pytest.fixture
    def mapper(self):
        return build_mapper()

    def test_all_types_registered(self, mapper):
        assert mapper.entity_types() == sorted(ENTITY_TYPES)

    def test_resolve_known_field(self, mapper):
        entry = mapper.resolve("course", "course_level")
        assert entry.home == Location("_tutorpress_course_level")
        assert [str(t.location) for t in entry.targets] == ["_tutor_course_level"]

    def test_resolve_unknown_field_is_none(self, mapper):
        assert mapper.resolve("course", "topics") is None
        assert mapper.resolve("quiz", "course_level") is None

    def test_fan_out_to_two_legacy_keys(self, mapper):
        entry = mapper.resolve("course", "pause_enrollment")
        assert entry.storage_mode == StorageMode.AGGREGATE
        assert [str(t.location) for t in entry.targets] == [
            "_tutor_course_settings[enrollment_status]",
            "_tutor_enrollment_status",
        ]

    def test_display_only_field_has_no_targets(self, mapper):
        assert mapper.resolve("course", "schedule").targets == ()
        assert mapper.resolve("bundle", "benefits").targets == ()

    def test_routes_for_settings_bag(self, mapper):
        routes = mapper.routes("course", "_tutor_course_settings")
        homes = {r.entry.path for r in routes if r.role == RouteRole.HOME}
        targets = {r.entry.path for r in routes if r.role == RouteRole.TARGET}
        assert "maximum_students" in homes
        assert "schedule" in homes
        assert targets == {
            "maximum_students",
            "pause_enrollment",
            "enable_content_drip",
            "content_drip_type",
        }
        # homes come first
        assert routes[0].role == RouteRole.HOME

    def test_routes_for_unmapped_key(self, mapper):
        assert mapper.routes("course", "_edit_lock") == []

    def test_preview_target_uses_int_flag(self, mapper):
        entry = mapper.resolve("lesson", "lesson_preview.enabled")
        assert entry.capability == "course_preview"
        assert entry.codec_for(entry.targets[0]) is FLAG_INT

    def test_derived_fields(self, mapper):
        assert mapper.is_derived("course", "is_free")
        assert mapper.is_derived("lesson", "lesson_preview.addon_available")
        assert not mapper.is_derived("course", "course_level")

    def test_drip_entries_gated_into_settings_bag(self, mapper):
        for path in ("enable_content_drip", "content_drip_type"):
            entry = mapper.resolve("course", path)
            assert entry.storage_mode == StorageMode.DEDICATED
            assert entry.capability == "content_drip"
            assert [str(t.location) for t in entry.targets] == [f"_tutor_course_settings[{path}]"]

    def test_assignment_drip_fields_read_from_course(self, mapper):
        derived = {d.path: d for d in mapper.mapping("assignment").derived}
        assert set(derived) == {"content_drip.enabled", "content_drip.type", "content_drip.show_days_field"}
        assert {d.parent_key for d in derived.values()} == {"_tutor_course_id_for_assignments"}
