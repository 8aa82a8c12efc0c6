"""
snaptag

Tag photos with labels and a comment, search them by tag, and set one-shot
reminders that bring a tagged photo back when they fire.

Quick Start:
    from snaptag import PhotoTagger

    tagger = PhotoTagger()  # uses ~/.snaptag/
    record = tagger.create_tagged_record("file:///photos/cat.jpg", "cat, dog", "vet")
    alarm = tagger.schedule_alarm(record.id, fire_at)
    tagger.search_by_tag("cat")

CLI Usage:
    snaptag add file:///photos/cat.jpg --tags "cat, dog" --comment vet
    snaptag remind <record-id> +1h
    snaptag watch

Default Store:
    ~/.snaptag/ (created automatically). Override with SNAPTAG_STORE_PATH
    or an explicit path argument.

Environment Variables:
    SNAPTAG_STORE_PATH  - Override default store location
    SNAPTAG_VERBOSE     - Set to 1 for debug logging from the CLI
"""

from .api import PhotoTagger
from .errors import (
    InvalidState,
    NotFound,
    PlatformSchedulingError,
    SnaptagError,
    StorageError,
    ValidationError,
)
from .tags import parse_tags
from .types import Alarm, AlarmStatus, ShowRecordEvent, TaggedRecord

__version__ = "0.1.0"
__all__ = [
    "PhotoTagger",
    "TaggedRecord",
    "Alarm",
    "AlarmStatus",
    "ShowRecordEvent",
    "parse_tags",
    "SnaptagError",
    "ValidationError",
    "NotFound",
    "InvalidState",
    "StorageError",
    "PlatformSchedulingError",
]
