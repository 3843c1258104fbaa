"""
Course settings mapping.

Course Details fields have dedicated canonical keys mirrored to the LMS's
individual meta keys. Enrollment and scheduling fields have no dedicated
slot: they live in the LMS's _tutor_course_settings bag, and some of them
fan out to older flag keys still read by other LMS code paths.
"""

from typing import Any, Dict

from tutorsync.mapping import DerivedField, EntityMapping, aggregate, dedicated
from tutorsync.transforms import (
    BOOL,
    DATETIME_TEXT,
    DURATION,
    PRICE,
    PRICE_TYPE,
    TEXT,
    UNLIMITED_COUNT,
    VIDEO_SOURCE,
    YES_NO,
    absint,
    choice,
    id_list,
    record,
)


SETTINGS_BAG = "_tutor_course_settings"

COURSE_LEVELS = ("beginner", "intermediate", "expert", "all_levels")
SELLING_OPTIONS = ("one_time", "subscription", "both", "membership", "all")
DRIP_TYPES = ("unlock_by_date", "specific_days", "unlock_sequentially", "after_finishing_prerequisites")
DEFAULT_DRIP_TYPE = "unlock_by_date"

INTRO_VIDEO_DEFAULT = {
    "source": "",
    "source_video_id": 0,
    "source_youtube": "",
    "source_vimeo": "",
    "source_external_url": "",
    "source_embedded": "",
    "source_shortcode": "",
    "poster": "",
}

INTRO_VIDEO = record(
    INTRO_VIDEO_DEFAULT,
    {
        "source": VIDEO_SOURCE,
        "source_video_id": absint(),
        "source_youtube": TEXT,
        "source_vimeo": TEXT,
        "source_external_url": TEXT,
        "source_embedded": TEXT,
        "source_shortcode": TEXT,
        "poster": TEXT,
    },
)

SCHEDULE = record(
    {"enabled": False, "start_date": "", "start_time": "", "show_coming_soon": False},
    {"enabled": BOOL, "start_date": TEXT, "start_time": TEXT, "show_coming_soon": BOOL},
)


def _course_rules(values: Dict[str, Any], current: Dict[str, Any]) -> Dict[str, Any]:
    """Cross-field rules applied to every course write.

    Turning the enrollment period off clears both dates. A drip type only
    exists while content drip is on: enabling drip keeps the current type
    or picks the default one, disabling it clears the type.
    """
    if values.get("course_enrollment_period") is False:
        values["enrollment_starts_at"] = ""
        values["enrollment_ends_at"] = ""

    if "enable_content_drip" in values or "content_drip_type" in values:
        enabled = values.get("enable_content_drip", current.get("enable_content_drip", False))
        if enabled:
            values["content_drip_type"] = (
                values.get("content_drip_type") or current.get("content_drip_type") or DEFAULT_DRIP_TYPE
            )
        else:
            values["content_drip_type"] = ""
    return values


COURSE = EntityMapping(
    entity_type="course",
    cache_key="course_settings",
    entries=(
        # Course Details
        dedicated("course_level", "_tutorpress_course_level",
                  choice(COURSE_LEVELS, "all_levels"), "all_levels",
                  "_tutor_course_level"),
        dedicated("is_public_course", "_tutorpress_is_public_course", YES_NO, False,
                  "_tutor_is_public_course"),
        dedicated("enable_qna", "_tutorpress_enable_qna", YES_NO, True,
                  "_tutor_enable_qa"),
        dedicated("course_duration", "_tutorpress_course_duration", DURATION,
                  {"hours": 0, "minutes": 0},
                  "_course_duration"),
        dedicated("course_material_includes", "_tutorpress_course_material_includes", TEXT, "",
                  "_tutor_course_material_includes"),
        dedicated("intro_video", "_tutorpress_intro_video", INTRO_VIDEO, dict(INTRO_VIDEO_DEFAULT),
                  "_video"),
        dedicated("course_prerequisites", "_tutorpress_course_prerequisites",
                  id_list(delete_empty=True), [],
                  "_tutor_course_prerequisites_ids",
                  capability="prerequisites"),
        dedicated("attachments", "_tutor_course_attachments", id_list(delete_empty=True), [],
                  "_tutor_attachments"),

        # Additional content
        dedicated("what_will_learn", "_tutorpress_course_what_will_learn", TEXT, "",
                  "_tutor_course_benefits"),
        dedicated("target_audience", "_tutorpress_course_target_audience", TEXT, "",
                  "_tutor_course_target_audience"),
        dedicated("requirements", "_tutorpress_course_requirements", TEXT, "",
                  "_tutor_course_requirements"),
        dedicated("enable_content_drip", "_tutorpress_enable_content_drip", BOOL, False,
                  f"{SETTINGS_BAG}[enable_content_drip]",
                  capability="content_drip"),
        dedicated("content_drip_type", "_tutorpress_content_drip_type",
                  choice(DRIP_TYPES, DEFAULT_DRIP_TYPE, optional=True), "",
                  f"{SETTINGS_BAG}[content_drip_type]",
                  capability="content_drip"),

        # Pricing
        dedicated("pricing_model", "_tutorpress_pricing_model", PRICE_TYPE, "free",
                  "_tutor_course_price_type"),
        dedicated("price", "_tutorpress_price", PRICE, 0.0,
                  "tutor_course_price"),
        dedicated("sale_price", "_tutorpress_sale_price", PRICE, 0.0,
                  "tutor_course_sale_price"),
        dedicated("selling_option", "_tutorpress_selling_option",
                  choice(SELLING_OPTIONS, "one_time"), "one_time",
                  "_tutor_course_selling_option",
                  capability="subscription"),
        dedicated("woocommerce_product_id", "_tutorpress_woocommerce_product_id", TEXT, "",
                  "_tutor_course_product_id",
                  capability="woocommerce"),

        # Enrollment, inside the LMS settings bag
        aggregate("maximum_students", SETTINGS_BAG, "maximum_students", UNLIMITED_COUNT, None,
                  f"{SETTINGS_BAG}[maximum_students_allowed]",
                  "_tutor_maximum_students"),
        aggregate("pause_enrollment", SETTINGS_BAG, "pause_enrollment", YES_NO, False,
                  f"{SETTINGS_BAG}[enrollment_status]",
                  "_tutor_enrollment_status"),
        aggregate("course_enrollment_period", SETTINGS_BAG, "course_enrollment_period", YES_NO, False,
                  "_tutor_course_enrollment_period"),
        aggregate("enrollment_starts_at", SETTINGS_BAG, "enrollment_starts_at", DATETIME_TEXT, "",
                  "_tutor_enrollment_starts_at"),
        aggregate("enrollment_ends_at", SETTINGS_BAG, "enrollment_ends_at", DATETIME_TEXT, "",
                  "_tutor_enrollment_ends_at"),
        aggregate("schedule", SETTINGS_BAG, "schedule", SCHEDULE,
                  {"enabled": False, "start_date": "", "start_time": "", "show_coming_soon": False}),
    ),
    derived=(
        DerivedField("is_free", lambda settings, caps: settings.get("pricing_model") == "free"),
        DerivedField("subscription_enabled",
                     lambda settings, caps: settings.get("selling_option") == "subscription"),
    ),
    normalize_payload=_course_rules,
)
