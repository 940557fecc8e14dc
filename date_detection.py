#!/usr/bin/env python3
"""
Date Detection

Selects one representative metadata timestamp per file and classifies how far
the filesystem modification time is from it.
"""

import enum
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple

from metadata_reader import (
    TAG_CREATED,
    TAG_CREATION_DATE,
    TAG_CREATION_DATE_NO_TIME_ZONE,
    TAG_DATE_TIME,
    TAG_DATE_TIME_DIGITIZED,
    TAG_DATE_TIME_ORIGINAL,
    TAG_LAST_MODIFICATION_TIME,
    TAG_MODIFIED,
    MetadataGroup,
    MetadataGroupKind,
)

SMALL_DIFFERENCE_SECONDS = 10
BIG_DIFFERENCE_SECONDS = 30758400  # 356 days
TIME_ZONE_MAX_SECONDS = 86405
TIME_ZONE_HOUR_TOLERANCE_SECONDS = 5

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

# First tag present in a group wins
GROUP_TAGS = {
    MetadataGroupKind.EXIF: (
        TAG_DATE_TIME_ORIGINAL,
        TAG_DATE_TIME_DIGITIZED,
        TAG_DATE_TIME,
    ),
    MetadataGroupKind.QUICKTIME_META: (
        TAG_CREATION_DATE_NO_TIME_ZONE,
        TAG_CREATION_DATE,
    ),
    MetadataGroupKind.QUICKTIME_MOVIE_HEADER: (TAG_CREATED, TAG_MODIFIED),
    MetadataGroupKind.QUICKTIME_TRACK_HEADER: (TAG_CREATED, TAG_MODIFIED),
    MetadataGroupKind.PNG: (TAG_LAST_MODIFICATION_TIME,),
}

# Used when no QuickTime meta value exists
GROUP_PRIORITY = (
    MetadataGroupKind.EXIF,
    MetadataGroupKind.QUICKTIME_MOVIE_HEADER,
    MetadataGroupKind.QUICKTIME_TRACK_HEADER,
    MetadataGroupKind.PNG,
)


class Detection(enum.IntFlag):
    """Closed set of timestamp discrepancy categories, usable as filter bits."""

    MATCHING_DATES = 1
    NORMAL_DIFFERENCE = 2
    SMALL_DIFFERENCE = 4
    BIG_DIFFERENCE = 8
    TIME_ZONE_DIFFERENCE = 16
    APPLIED = 32
    APPLY_FAILED = 64
    NO_META_DATE = 1024
    FORMAT_ERROR = 2048

    @property
    def label(self) -> str:
        """Human-readable name, e.g. 'Time Zone Difference'."""
        return self.name.replace("_", " ").title()

    @classmethod
    def members(cls):
        """All single-bit categories in declaration order."""
        return [cls[name] for name in cls.__members__]

    @classmethod
    def from_name(cls, name: str) -> "Detection":
        """
        Look up a category by a loose name such as 'time-zone-difference'.

        Raises:
            ValueError: If no category has that name
        """
        normalized_name = name.strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls[normalized_name]
        except KeyError:
            choices = ", ".join(member.name.lower() for member in cls.members())
            raise ValueError(
                f"Unknown detection '{name}' (choose from {choices})"
            ) from None


DEFAULT_DETECTION_FILTER = (
    Detection.MATCHING_DATES | Detection.NO_META_DATE | Detection.FORMAT_ERROR
)


def _first_tag_value(group: MetadataGroup) -> Optional[datetime]:
    for tag in GROUP_TAGS.get(group.kind, ()):
        value = group.get_datetime(tag)
        if value is None:
            continue
        if group.kind is MetadataGroupKind.PNG:
            # PNG stores time in UTC
            return value.replace(tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        return value
    return None


def select_meta_date(groups: Iterable[MetadataGroup]) -> Optional[datetime]:
    """
    Pick one representative creation timestamp from metadata groups.

    A QuickTime meta value always wins because movie and track header
    timestamps may or may not be in UTC. Otherwise the first group kind in
    priority order (Exif, movie header, track header, PNG) with a value wins.

    Args:
        groups: Metadata groups as returned by MetadataReader.read_metadata

    Returns:
        Naive local datetime, or None if no group holds a timestamp
    """
    found = {}

    for group in groups:
        value = _first_tag_value(group)
        if value is None:
            continue
        if group.kind is MetadataGroupKind.QUICKTIME_META:
            return value
        found.setdefault(group.kind, value)

    for kind in GROUP_PRIORITY:
        if kind in found:
            return found[kind]

    return None


def clamp_to_int32(value: int) -> int:
    return max(INT32_MIN, min(INT32_MAX, value))


def classify(
    file_date: datetime, meta_date: Optional[datetime], had_error: bool
) -> Tuple[Detection, int]:
    """
    Classify the difference between filesystem and metadata timestamps.

    Args:
        file_date: Filesystem modification time
        meta_date: Selected metadata timestamp or None
        had_error: True if metadata extraction failed

    Returns:
        Tuple of (detection, difference in whole seconds clamped to 32 bits)
    """
    if had_error:
        return Detection.FORMAT_ERROR, 0
    if meta_date is not None and file_date == meta_date:
        return Detection.MATCHING_DATES, 0
    if meta_date is None:
        return Detection.NO_META_DATE, 0

    diff = int((file_date - meta_date).total_seconds())
    abs_diff = abs(diff)
    # Distance from the nearest whole hour
    hour_abs_diff = abs(((abs_diff + 1800) % 3600) - 1800)

    if abs_diff < SMALL_DIFFERENCE_SECONDS:
        detection = Detection.SMALL_DIFFERENCE
    elif abs_diff > BIG_DIFFERENCE_SECONDS:
        detection = Detection.BIG_DIFFERENCE
    elif (
        abs_diff < TIME_ZONE_MAX_SECONDS
        and hour_abs_diff < TIME_ZONE_HOUR_TOLERANCE_SECONDS
    ):
        detection = Detection.TIME_ZONE_DIFFERENCE
    else:
        detection = Detection.NORMAL_DIFFERENCE

    return detection, clamp_to_int32(diff)
