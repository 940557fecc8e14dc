#!/usr/bin/env python3
"""
Tests for the date_detection module.
"""

from datetime import datetime, timedelta, timezone

import pytest

from date_detection import (
    DEFAULT_DETECTION_FILTER,
    INT32_MAX,
    INT32_MIN,
    Detection,
    classify,
    select_meta_date,
)
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

META_DATE = datetime(2021, 6, 15, 12, 0, 0)


class TestClassify:
    """Test suite for discrepancy classification."""

    def test_error_forces_format_error(self):
        """Extraction error always classifies as format error."""
        # Act
        detection, diff = classify(META_DATE, META_DATE, had_error=True)

        # Assert
        assert detection == Detection.FORMAT_ERROR
        assert diff == 0

    def test_equal_dates_match(self):
        """Exactly equal dates classify as matching dates with zero diff."""
        # Act
        detection, diff = classify(META_DATE, META_DATE, had_error=False)

        # Assert
        assert detection == Detection.MATCHING_DATES
        assert diff == 0

    def test_absent_meta_date(self):
        """Missing metadata date classifies as no meta date."""
        # Act
        detection, diff = classify(META_DATE, None, had_error=False)

        # Assert
        assert detection == Detection.NO_META_DATE
        assert diff == 0

    @pytest.mark.parametrize("seconds", [1, -1, 9, -9])
    def test_small_difference(self, seconds):
        """Differences under ten seconds are small differences."""
        # Act
        detection, diff = classify(
            META_DATE + timedelta(seconds=seconds), META_DATE, had_error=False
        )

        # Assert
        assert detection == Detection.SMALL_DIFFERENCE
        assert diff == seconds

    def test_ten_seconds_is_not_small(self):
        """Ten seconds exactly is a normal difference."""
        # Act
        detection, _ = classify(
            META_DATE + timedelta(seconds=10), META_DATE, had_error=False
        )

        # Assert
        assert detection == Detection.NORMAL_DIFFERENCE

    def test_sub_second_difference_truncates(self):
        """Sub-second differences truncate to zero but still are not matching."""
        # Act
        detection, diff = classify(
            META_DATE + timedelta(microseconds=500000), META_DATE, had_error=False
        )

        # Assert
        assert detection == Detection.SMALL_DIFFERENCE
        assert diff == 0

    @pytest.mark.parametrize("seconds", [30758401, -30758401, 10 * 365 * 86400])
    def test_big_difference(self, seconds):
        """Differences over 356 days are big differences."""
        # Act
        detection, _ = classify(
            META_DATE + timedelta(seconds=seconds), META_DATE, had_error=False
        )

        # Assert
        assert detection == Detection.BIG_DIFFERENCE

    def test_exactly_threshold_is_not_big(self):
        """A difference of exactly 30758400 seconds is not a big difference."""
        # Act
        detection, _ = classify(
            META_DATE + timedelta(seconds=30758400), META_DATE, had_error=False
        )

        # Assert
        assert detection == Detection.NORMAL_DIFFERENCE

    @pytest.mark.parametrize(
        "seconds, expected",
        [
            (3600, Detection.TIME_ZONE_DIFFERENCE),
            (-3600, Detection.TIME_ZONE_DIFFERENCE),
            (7200, Detection.TIME_ZONE_DIFFERENCE),
            (3604, Detection.TIME_ZONE_DIFFERENCE),
            (3605, Detection.NORMAL_DIFFERENCE),
            (3596, Detection.TIME_ZONE_DIFFERENCE),
            (3595, Detection.NORMAL_DIFFERENCE),
            (86400, Detection.TIME_ZONE_DIFFERENCE),
            (86404, Detection.TIME_ZONE_DIFFERENCE),
            (86405, Detection.NORMAL_DIFFERENCE),
            (90000, Detection.NORMAL_DIFFERENCE),
            (1800, Detection.NORMAL_DIFFERENCE),
        ],
    )
    def test_time_zone_hour_boundary(self, seconds, expected):
        """Near-whole-hour differences within a day are time zone differences."""
        # Act
        detection, diff = classify(
            META_DATE + timedelta(seconds=seconds), META_DATE, had_error=False
        )

        # Assert
        assert detection == expected
        assert diff == seconds

    def test_diff_is_clamped_to_int32(self):
        """Difference is clamped to the signed 32-bit range."""
        # Act
        late_detection, late_diff = classify(
            datetime(2100, 1, 1), datetime(1900, 1, 1), had_error=False
        )
        early_detection, early_diff = classify(
            datetime(1900, 1, 1), datetime(2100, 1, 1), had_error=False
        )

        # Assert
        assert late_detection == Detection.BIG_DIFFERENCE
        assert late_diff == INT32_MAX
        assert early_detection == Detection.BIG_DIFFERENCE
        assert early_diff == INT32_MIN


class TestSelectMetaDate:
    """Test suite for choosing the representative metadata date."""

    def test_no_groups(self):
        """No groups yields no meta date."""
        # Act & Assert
        assert select_meta_date([]) is None

    def test_exif_tag_priority(self):
        """Exif prefers DateTimeOriginal over Digitized over DateTime."""
        # Arrange
        group = MetadataGroup(
            MetadataGroupKind.EXIF,
            {
                TAG_DATE_TIME: datetime(2020, 1, 3),
                TAG_DATE_TIME_DIGITIZED: datetime(2020, 1, 2),
                TAG_DATE_TIME_ORIGINAL: datetime(2020, 1, 1),
            },
        )

        # Act & Assert
        assert select_meta_date([group]) == datetime(2020, 1, 1)

    def test_exif_falls_back_to_date_time(self):
        """Exif uses DateTime when the other tags are absent."""
        # Arrange
        group = MetadataGroup(
            MetadataGroupKind.EXIF, {TAG_DATE_TIME: datetime(2020, 1, 3)}
        )

        # Act & Assert
        assert select_meta_date([group]) == datetime(2020, 1, 3)

    def test_quicktime_meta_overrides_headers_in_any_order(self):
        """QuickTime meta date wins over movie and track headers regardless of order."""
        # Arrange
        movie_header = MetadataGroup(
            MetadataGroupKind.QUICKTIME_MOVIE_HEADER,
            {TAG_CREATED: datetime(2020, 5, 1, 8, 0)},
        )
        track_header = MetadataGroup(
            MetadataGroupKind.QUICKTIME_TRACK_HEADER,
            {TAG_CREATED: datetime(2020, 5, 1, 8, 0)},
        )
        meta = MetadataGroup(
            MetadataGroupKind.QUICKTIME_META,
            {
                TAG_CREATION_DATE: datetime(2020, 5, 1, 9, 0),
                TAG_CREATION_DATE_NO_TIME_ZONE: datetime(2020, 5, 1, 10, 0),
            },
        )

        # Act & Assert
        assert select_meta_date([movie_header, track_header, meta]) == datetime(
            2020, 5, 1, 10, 0
        )
        assert select_meta_date([meta, movie_header]) == datetime(2020, 5, 1, 10, 0)

    def test_movie_header_before_track_header(self):
        """Movie header wins over track header, falling back to Modified."""
        # Arrange
        track_header = MetadataGroup(
            MetadataGroupKind.QUICKTIME_TRACK_HEADER,
            {TAG_CREATED: datetime(2020, 5, 2)},
        )
        movie_header = MetadataGroup(
            MetadataGroupKind.QUICKTIME_MOVIE_HEADER,
            {TAG_MODIFIED: datetime(2020, 5, 1)},
        )

        # Act & Assert
        assert select_meta_date([track_header, movie_header]) == datetime(2020, 5, 1)
        assert select_meta_date([track_header]) == datetime(2020, 5, 2)

    def test_png_time_is_converted_from_utc(self):
        """PNG modification time is converted from UTC to local time."""
        # Arrange
        utc_time = datetime(2020, 7, 1, 12, 0, 0)
        group = MetadataGroup(
            MetadataGroupKind.PNG, {TAG_LAST_MODIFICATION_TIME: utc_time}
        )
        expected = utc_time.replace(tzinfo=timezone.utc).astimezone().replace(
            tzinfo=None
        )

        # Act & Assert
        assert select_meta_date([group]) == expected

    def test_group_without_known_tags(self):
        """Groups with no usable tag yield nothing."""
        # Arrange
        group = MetadataGroup(MetadataGroupKind.EXIF, {"Unrelated": datetime(2020, 1, 1)})

        # Act & Assert
        assert select_meta_date([group]) is None


class TestDetection:
    """Test suite for the Detection flags."""

    def test_default_filter_hides_noise(self):
        """Default filter hides matching dates, no meta date and format errors."""
        # Assert
        assert DEFAULT_DETECTION_FILTER & Detection.MATCHING_DATES
        assert DEFAULT_DETECTION_FILTER & Detection.NO_META_DATE
        assert DEFAULT_DETECTION_FILTER & Detection.FORMAT_ERROR
        assert not DEFAULT_DETECTION_FILTER & Detection.TIME_ZONE_DIFFERENCE
        assert not DEFAULT_DETECTION_FILTER & Detection.APPLIED

    def test_label(self):
        """Labels are human readable."""
        # Assert
        assert Detection.TIME_ZONE_DIFFERENCE.label == "Time Zone Difference"
        assert Detection.NO_META_DATE.label == "No Meta Date"

    @pytest.mark.parametrize(
        "name", ["time-zone-difference", "Time Zone Difference", "TIME_ZONE_DIFFERENCE"]
    )
    def test_from_name(self, name):
        """Detections can be looked up by loose names."""
        # Act & Assert
        assert Detection.from_name(name) == Detection.TIME_ZONE_DIFFERENCE

    def test_from_name_unknown(self):
        """Unknown detection names raise ValueError."""
        # Act & Assert
        with pytest.raises(ValueError, match="Unknown detection"):
            Detection.from_name("sideways")
