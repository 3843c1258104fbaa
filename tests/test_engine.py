"""
Tests for the sync engine.

Forward and reverse routing, loop suppression, aggregate merges,
capability gating, partial failures and explicit resync.
"""

import pytest

from tutorsync.config import SyncConfig
from tutorsync.engine import SyncEngine, SyncOutcome
from tutorsync.errors import StoreError, UnknownEntity
from tutorsync.guard import Direction, LoopGuard
from tutorsync.legacy import MISSING
from tutorsync.mapping import EntityMapping, FieldMapper, dedicated
from tutorsync.service import create_service
from tutorsync.store import MemoryEntityStore
from tutorsync.transforms import absint


def outcomes(results, outcome):
    return [r for r in results if r.outcome == outcome]


class TestForwardSync:
    """Canonical writes propagate to legacy keys."""

    def test_dedicated_field(self, service, store):
        course = store.create_entity("course")
        with service.engine.recording() as results:
            store.set(course, "_tutorpress_course_level", "expert")

        assert store.get(course, "_tutor_course_level") == "expert"
        synced = outcomes(results, SyncOutcome.SYNCED)
        assert len(synced) == 1
        assert synced[0].direction == Direction.FORWARD
        assert synced[0].path == "course_level"
        assert synced[0].written == ["_tutor_course_level"]

    def test_boolean_written_as_yes_no(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutorpress_is_public_course", True)
        assert store.get(course, "_tutor_is_public_course") == "yes"
        store.set(course, "_tutorpress_is_public_course", False)
        assert store.get(course, "_tutor_is_public_course") == "no"

    def test_fan_out_to_two_mirrors(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_course_settings", {"pause_enrollment": "yes"})

        assert store.get(course, "_tutor_course_settings")["enrollment_status"] == "yes"
        assert store.get(course, "_tutor_enrollment_status") == "yes"

    def test_deleted_home_deletes_mirror(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutorpress_course_level", "expert")
        store.delete(course, "_tutorpress_course_level")
        assert store.get(course, "_tutor_course_level") is MISSING

    def test_empty_list_deletes_mirror(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_course_attachments", [7, 3])
        assert store.get(course, "_tutor_attachments") == [3, 7]
        store.set(course, "_tutor_course_attachments", [])
        assert store.get(course, "_tutor_attachments") is MISSING

    def test_lesson_video_merges_into_video_bag(self, service, store):
        lesson = store.create_entity("lesson")
        store.set(lesson, "_lesson_video_source", "youtube")
        store.set(lesson, "_lesson_video_duration_hours", 1)
        store.set(lesson, "_lesson_video_duration_minutes", 5)

        assert store.get(lesson, "_video") == {
            "source": "youtube",
            "runtime": {"hours": 1, "minutes": 5},
        }

    def test_empty_video_source_is_minus_one(self, service, store):
        lesson = store.create_entity("lesson")
        store.set(lesson, "_lesson_video_source", "")
        assert store.get(lesson, "_video") == {"source": "-1"}

    def test_removing_subkey_from_absent_bag_writes_nothing(self, service, store, counter):
        course = store.create_entity("course")
        store.set(course, "_tutorpress_content_drip_type", "")

        assert store.get(course, "_tutor_course_settings") is MISSING
        assert counter[(course, "_tutor_course_settings")] == 0

    def test_empty_drip_type_removes_subkey(self, service, store, clock):
        course = store.create_entity("course")
        store.set(course, "_tutor_course_settings", {"content_drip_type": "specific_days", "foo": 1})
        assert store.get(course, "_tutorpress_content_drip_type") == "specific_days"
        clock.advance(6.0)
        store.set(course, "_tutorpress_content_drip_type", "")

        assert store.get(course, "_tutor_course_settings") == {"foo": 1}


class TestAggregateMerge:
    """Read-modify-write of settings bags keeps unrelated sub-keys."""

    def test_only_synced_subkey_changes(self, clock):
        store = MemoryEntityStore()
        mapper = FieldMapper([EntityMapping("thing", (
            dedicated("b", "_b", absint(), 0, "bag[b]"),
        ))])
        engine = SyncEngine(store, mapper, guard=LoopGuard(5.0, clock)).attach()

        thing = store.create_entity("thing")
        store.set(thing, "bag", {"a": 1, "b": 2})
        assert store.get(thing, "_b") == 2
        clock.advance(5.0)

        with engine.recording() as results:
            store.set(thing, "_b", 3)

        assert outcomes(results, SyncOutcome.SYNCED)[0].written == ["bag[b]"]
        assert store.get(thing, "bag") == {"a": 1, "b": 3}

    def test_lms_keys_in_course_settings_survive(self, make_service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_course_settings", {"custom_lms_key": 1, "maximum_students_allowed": 2})
        service = make_service()

        service.update(course, {"maximum_students": 3})

        assert store.get(course, "_tutor_course_settings") == {
            "custom_lms_key": 1,
            "maximum_students_allowed": 3,
            "maximum_students": 3,
        }
        assert store.get(course, "_tutor_maximum_students") == 3

    def test_unrelated_bag_change_has_no_mapping(self, service, store):
        course = store.create_entity("course")
        results = service.engine.handle_change(course, "_tutor_course_settings", {"custom": 1})
        assert [r.outcome for r in results] == [SyncOutcome.NO_MAPPING]

    def test_malformed_bag_is_replaced(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_course_settings", "")
        service.update(course, {"pause_enrollment": True})
        assert store.get(course, "_tutor_course_settings") == {
            "pause_enrollment": "yes",
            "enrollment_status": "yes",
        }


class TestLoopSuppression:
    """Sync writes must not bounce back."""

    def test_one_user_change_writes_canonical_once(self, service, store, counter):
        course = store.create_entity("course")
        service.update(course, {"course_level": "expert"})

        assert counter[(course, "_tutorpress_course_level")] == 1
        assert counter[(course, "_tutor_course_level")] == 1

    def test_own_echo_is_reported_as_suppressed(self, service, store):
        course = store.create_entity("course")
        with service.engine.recording() as results:
            store.set(course, "_tutorpress_course_level", "expert")

        echoes = outcomes(results, SyncOutcome.SUPPRESSED_ECHO)
        assert len(echoes) == 1
        assert echoes[0].direction == Direction.REVERSE
        assert echoes[0].key == "_tutor_course_level"

    def test_legacy_write_inside_window_is_suppressed(self, service, store, clock):
        course = store.create_entity("course")
        service.update(course, {"course_level": "expert"})

        clock.advance(4.0)
        with service.engine.recording() as results:
            store.set(course, "_tutor_course_level", "beginner")

        assert [r.outcome for r in results] == [SyncOutcome.SUPPRESSED_ECHO]
        assert store.get(course, "_tutorpress_course_level") == "expert"

    def test_legacy_write_after_window_syncs(self, service, store, clock):
        course = store.create_entity("course")
        service.update(course, {"course_level": "expert"})

        clock.advance(5.0)
        store.set(course, "_tutor_course_level", "beginner")
        assert store.get(course, "_tutorpress_course_level") == "beginner"

    def test_window_override_per_entity_type(self, make_service, store, clock):
        service = make_service(debounce_overrides={"course": 1.0})
        course = store.create_entity("course")
        service.update(course, {"course_level": "expert"})

        clock.advance(1.5)
        store.set(course, "_tutor_course_level", "beginner")
        assert store.get(course, "_tutorpress_course_level") == "beginner"

    def test_configured_window_and_clock_reach_engine(self, store, clock):
        service = create_service(SyncConfig(debounce_seconds=0.5), store, clock)
        guard = service.engine.guard

        assert guard.window == 0.5
        guard.mark(1, Direction.FORWARD)
        assert guard.is_suppressed(1, Direction.FORWARD)
        clock.advance(0.5)
        assert not guard.is_suppressed(1, Direction.FORWARD)

    def test_zero_window_never_suppresses(self, make_service, store):
        service = make_service(debounce_seconds=0.0)
        course = store.create_entity("course")
        service.update(course, {"course_level": "expert"})

        store.set(course, "_tutor_course_level", "beginner")
        assert store.get(course, "_tutorpress_course_level") == "beginner"

    def test_markers_are_per_entity(self, service, store):
        first = store.create_entity("course")
        second = store.create_entity("course")
        service.update(first, {"course_level": "expert"})

        store.set(second, "_tutor_course_level", "beginner")
        assert store.get(second, "_tutorpress_course_level") == "beginner"

    def test_suppression_decided_before_routes_run(self, service, store):
        """A bag write touching a home and a target syncs both ways."""
        course = store.create_entity("course")
        store.set(course, "_tutor_course_settings", {"maximum_students": 10, "enrollment_status": "yes"})

        assert store.get(course, "_tutor_maximum_students") == 10
        assert store.get(course, "_tutor_enrollment_status") == "yes"
        assert store.get(course, "_tutor_course_settings")["pause_enrollment"] == "yes"


class TestReverseSync:
    """Legacy writes propagate back to canonical fields."""

    def test_dedicated_field(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_course_level", "intermediate")
        assert store.get(course, "_tutorpress_course_level") == "intermediate"

    def test_yes_no_decoded(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_is_public_course", "yes")
        assert store.get(course, "_tutorpress_is_public_course") is True

    def test_sibling_mirrors_are_updated(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_enrollment_status", "yes")

        assert store.get(course, "_tutor_course_settings") == {
            "pause_enrollment": "yes",
            "enrollment_status": "yes",
        }

    def test_unlimited_from_legacy(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_maximum_students", "30")
        assert service.get(course)["maximum_students"] == 30

        store.set(course, "_tutor_maximum_students", "0")
        assert service.get(course)["maximum_students"] is None
        assert store.get(course, "_tutor_course_settings")["maximum_students_allowed"] == ""

    def test_malformed_legacy_value_uses_default(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_course_level", "wizard")
        assert store.get(course, "_tutorpress_course_level") == "all_levels"

    def test_non_finite_legacy_number_uses_default(self, service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_maximum_students", "inf")

        assert store.get(course, "_tutor_course_settings")["maximum_students"] == ""
        assert service.get(course)["maximum_students"] is None

    def test_legacy_delete_does_not_reverse(self, service, store):
        course = store.create_entity("course")
        service.update(course, {"course_level": "expert"})
        results = service.engine.handle_change(course, "_tutor_course_level", MISSING, "expert", deleted=True)
        assert [r.outcome for r in results] == [SyncOutcome.NO_MAPPING]

    def test_lesson_video_bag_changes(self, service, store, clock):
        lesson = store.create_entity("lesson")
        service.update(lesson, {"video": {"source": "youtube"}, "duration": {"hours": 1, "minutes": 5}})

        clock.advance(5.0)
        store.set(lesson, "_video", {"source": "-1", "runtime": {"hours": 2}})

        settings = service.get(lesson)
        assert settings["video"]["source"] == ""
        assert settings["duration"] == {"hours": 2, "minutes": 5, "seconds": 0}


class TestCapabilityGate:
    """Gated fields only sync while their addon is active."""

    def test_preview_not_written_when_disabled(self, make_service, store):
        service = make_service()
        lesson = store.create_entity("lesson")

        with service.engine.recording() as results:
            store.set(lesson, "_lesson_is_preview", True)

        assert "_is_preview" not in store.keys(lesson)
        assert [r.outcome for r in results] == [SyncOutcome.CAPABILITY_DISABLED]

    def test_preview_written_as_int_when_enabled(self, make_service, store):
        make_service({"course_preview": True})
        lesson = store.create_entity("lesson")
        store.set(lesson, "_lesson_is_preview", True)
        assert store.get(lesson, "_is_preview") == 1

    def test_gate_applies_to_reverse_sync(self, make_service, store):
        make_service()
        assignment = store.create_entity("assignment")
        store.set(assignment, "_content_drip_settings", {"after_xdays_of_enroll": 4})
        assert store.get(assignment, "_assignment_available_after_days") is MISSING

    def test_ungated_fields_unaffected(self, make_service, store):
        make_service()
        course = store.create_entity("course")
        store.set(course, "_tutorpress_course_level", "expert")
        assert store.get(course, "_tutor_course_level") == "expert"


class FlakyStore(MemoryEntityStore):
    """Memory store whose writes to some keys fail."""

    def __init__(self, broken):
        super().__init__()
        self.broken = set(broken)

    def _write(self, entity_id, key, value):
        if key in self.broken:
            raise StoreError("disk full")
        super()._write(entity_id, key, value)


class TestPartialFailure:
    """Failed targets are reported, never rolled back."""

    def test_failed_target_reported(self, clock):
        store = FlakyStore(["_tutor_enrollment_status"])
        service = create_service(SyncConfig(), store, clock)
        course = store.create_entity("course")

        with service.engine.recording() as results:
            store.set(course, "_tutor_course_settings", {"pause_enrollment": "yes"})

        failed = outcomes(results, SyncOutcome.PARTIAL_FAILURE)
        assert len(failed) == 1
        assert failed[0].failed == {"_tutor_enrollment_status": "disk full"}
        assert failed[0].written == ["_tutor_course_settings[enrollment_status]"]
        assert not failed[0].ok

        # canonical value stays
        assert store.get(course, "_tutor_course_settings")["pause_enrollment"] == "yes"


class TestDispatch:
    """Routing edge cases."""

    def test_unknown_entity_is_unmanaged(self, service):
        results = service.engine.handle_change(999, "_tutor_course_level", "expert")
        assert [r.outcome for r in results] == [SyncOutcome.UNMANAGED]

    def test_unmapped_key(self, service, store):
        course = store.create_entity("course")
        results = service.engine.handle_change(course, "_edit_lock", "1")
        assert [r.outcome for r in results] == [SyncOutcome.NO_MAPPING]

    def test_detach_stops_sync(self, service, store):
        course = store.create_entity("course")
        service.engine.detach()
        store.set(course, "_tutorpress_course_level", "expert")
        assert store.get(course, "_tutor_course_level") is MISSING

    def test_result_to_dict(self, service, store):
        course = store.create_entity("course")
        with service.engine.recording() as results:
            store.set(course, "_tutorpress_course_level", "expert")
        data = outcomes(results, SyncOutcome.SYNCED)[0].to_dict()
        assert data["direction"] == "forward"
        assert data["outcome"] == "synced"


class TestResync:
    """Explicit push and pull."""

    def test_forward_pushes_existing_canonical_values(self, make_service, store):
        course = store.create_entity("course")
        store.set(course, "_tutorpress_course_level", "beginner")
        store.set(course, "_tutorpress_is_public_course", True)
        service = make_service()

        results = service.engine.resync(course)

        assert store.get(course, "_tutor_course_level") == "beginner"
        assert store.get(course, "_tutor_is_public_course") == "yes"
        assert {r.path for r in results} == {"course_level", "is_public_course"}

    def test_reverse_pulls_legacy_values(self, make_service, store):
        course = store.create_entity("course")
        store.set(course, "_tutor_course_level", "intermediate")
        store.set(course, "_tutor_maximum_students", "40")
        service = make_service()

        service.engine.resync(course, Direction.REVERSE)

        assert store.get(course, "_tutorpress_course_level") == "intermediate"
        assert store.get(course, "_tutor_course_settings") == {
            "maximum_students": 40,
            "maximum_students_allowed": 40,
        }

    def test_resync_ignores_live_markers(self, service, store):
        course = store.create_entity("course")
        service.update(course, {"course_level": "expert"})
        store.set(course, "_tutor_course_level", "beginner")  # suppressed echo window

        service.engine.resync(course, Direction.REVERSE)
        assert store.get(course, "_tutorpress_course_level") == "beginner"

    def test_unknown_entity(self, service):
        with pytest.raises(UnknownEntity):
            service.engine.resync(999)
