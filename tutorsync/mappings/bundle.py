"""Course bundle settings mapping."""

from tutorsync.mapping import EntityMapping, dedicated
from tutorsync.transforms import CSV_IDS, TEXT, choice


RIBBON_TYPES = ("in_percentage", "in_amount", "none")

BUNDLE = EntityMapping(
    entity_type="bundle",
    cache_key="bundle_settings",
    entries=(
        dedicated("course_ids", "_tutorpress_bundle_course_ids", CSV_IDS, [],
                  "bundle-course-ids"),
        dedicated("ribbon_type", "tutor_bundle_ribbon_type", choice(RIBBON_TYPES, "none"), "none"),
        dedicated("benefits", "_tutor_course_benefits", TEXT, ""),
    ),
)
