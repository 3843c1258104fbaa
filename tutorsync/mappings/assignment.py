"""
Assignment settings mapping.

Every field except the attachment toggles mirrors into the LMS's
assignment_option bag. Content drip days mirror into
_content_drip_settings only while the content drip addon is active.
Whether drip applies at all, and how, is decided by the parent course
(linked through COURSE_LINK).
"""

from typing import Any, Dict

from tutorsync.legacy import get_in
from tutorsync.mapping import DerivedField, EntityMapping, dedicated
from tutorsync.transforms import BOOL, absint, choice, id_list


OPTIONS_BAG = "assignment_option"
COURSE_LINK = "_tutor_course_id_for_assignments"

TIME_UNITS = ("weeks", "days", "hours")


def _clamp_pass_points(values: Dict[str, Any], current: Dict[str, Any]) -> Dict[str, Any]:
    """Pass points can never exceed a non-zero total."""
    total = values.get("total_points", get_in(current, "total_points", 0))
    if "pass_points" in values or "total_points" in values:
        passing = values.get("pass_points", get_in(current, "pass_points", 0))
        if total and passing > total:
            values["pass_points"] = total
    return values


def _drip_enabled(settings: Dict[str, Any], caps: Any, course: Dict[str, Any]) -> bool:
    return caps.is_enabled("content_drip") and bool(course.get("enable_content_drip"))


def _drip_type(settings: Dict[str, Any], caps: Any, course: Dict[str, Any]) -> str:
    if not course:
        return ""
    return course.get("content_drip_type") or "unlock_by_date"


ASSIGNMENT = EntityMapping(
    entity_type="assignment",
    cache_key="assignment_settings",
    entries=(
        dedicated("time_duration.value", "_assignment_time_duration_value", absint(), 0,
                  f"{OPTIONS_BAG}[time_duration.value]"),
        dedicated("time_duration.unit", "_assignment_time_duration_unit",
                  choice(TIME_UNITS, "hours"), "hours",
                  f"{OPTIONS_BAG}[time_duration.time]"),
        dedicated("total_points", "_assignment_total_points", absint(), 10,
                  f"{OPTIONS_BAG}[total_mark]"),
        dedicated("pass_points", "_assignment_pass_points", absint(), 5,
                  f"{OPTIONS_BAG}[pass_mark]"),
        dedicated("file_upload_limit", "_assignment_file_upload_limit", absint(), 1,
                  f"{OPTIONS_BAG}[upload_files_limit]"),
        dedicated("file_size_limit", "_assignment_file_size_limit", absint(minimum=1), 2,
                  f"{OPTIONS_BAG}[upload_file_size_limit]"),
        dedicated("attachments_enabled", "_assignment_attachments_enabled", BOOL, True),
        dedicated("instructor_attachments", "_tutor_assignment_attachments", id_list(), []),
        dedicated("content_drip.available_after_days", "_assignment_available_after_days",
                  absint(), 0,
                  "_content_drip_settings[after_xdays_of_enroll]",
                  capability="content_drip"),
    ),
    derived=(
        DerivedField("content_drip.enabled", _drip_enabled, parent_key=COURSE_LINK),
        DerivedField("content_drip.type", _drip_type, parent_key=COURSE_LINK),
        DerivedField("content_drip.show_days_field",
                     lambda settings, caps, course: (
                         _drip_enabled(settings, caps, course)
                         and _drip_type(settings, caps, course) == "specific_days"
                     ),
                     parent_key=COURSE_LINK),
    ),
    normalize_payload=_clamp_pass_points,
)
