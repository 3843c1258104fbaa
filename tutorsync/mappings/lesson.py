"""
Lesson settings mapping.

Video fields are dedicated keys mirrored into the LMS's _video bag, with
the runtime nested under _video["runtime"]. The preview flag only syncs
while the course preview addon is active.
"""

from tutorsync.mapping import DerivedField, EntityMapping, LegacyTarget, Location, dedicated
from tutorsync.transforms import BOOL, FLAG_INT, TEXT, VIDEO_SOURCE, absint, id_list


VIDEO_BAG = "_video"

# canonical field -> dedicated key
VIDEO_FIELDS = (
    ("source", "_lesson_video_source", VIDEO_SOURCE, ""),
    ("source_video_id", "_lesson_video_source_id", absint(), 0),
    ("source_external_url", "_lesson_video_external_url", TEXT, ""),
    ("source_youtube", "_lesson_video_youtube", TEXT, ""),
    ("source_vimeo", "_lesson_video_vimeo", TEXT, ""),
    ("source_embedded", "_lesson_video_embedded", TEXT, ""),
    ("source_shortcode", "_lesson_video_shortcode", TEXT, ""),
    ("poster", "_lesson_video_poster", TEXT, ""),
)

DURATION_UNITS = (
    ("hours", absint()),
    ("minutes", absint(0, 59)),
    ("seconds", absint(0, 59)),
)


def _video_entries():
    for name, key, codec, default in VIDEO_FIELDS:
        yield dedicated(f"video.{name}", key, codec, default, f"{VIDEO_BAG}[{name}]")


def _duration_entries():
    for unit, codec in DURATION_UNITS:
        yield dedicated(f"duration.{unit}", f"_lesson_video_duration_{unit}", codec, 0,
                        f"{VIDEO_BAG}[runtime.{unit}]")


LESSON = EntityMapping(
    entity_type="lesson",
    cache_key="lesson_settings",
    entries=(
        *_video_entries(),
        *_duration_entries(),
        dedicated("exercise_files", "_lesson_exercise_files", id_list(delete_empty=True), [],
                  "_tutor_attachments"),
        dedicated("lesson_preview.enabled", "_lesson_is_preview", BOOL, False,
                  LegacyTarget(Location("_is_preview"), FLAG_INT),
                  capability="course_preview"),
    ),
    derived=(
        DerivedField("lesson_preview.addon_available",
                     lambda settings, caps: caps.is_enabled("course_preview")),
    ),
)
