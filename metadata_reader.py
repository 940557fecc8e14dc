#!/usr/bin/env python3
"""
Metadata Reader

Reads embedded creation timestamps from photos and videos and exposes them
as groups of (tag -> datetime) pairs, one group per metadata directory.
"""

import enum
import logging
import struct
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import exifread
from PIL import Image
from PIL.ExifTags import TAGS
from pymediainfo import MediaInfo

from png_chunk_utils import find_time_chunk, parse_png_time

logger = logging.getLogger(__name__)

EXIF_IFD_POINTER = 0x8769
MAX_DESCRIPTION_WIDTH = 150

# Errors raised by Pillow and exifread on corrupt or hostile files
IMAGE_READ_ERRORS = (
    OSError,
    SyntaxError,
    ValueError,
    struct.error,
    Image.DecompressionBombError,
)
RAW_READ_ERRORS = (OSError, ValueError, KeyError, IndexError, TypeError, struct.error)

# Tag identifiers
TAG_DATE_TIME_ORIGINAL = "DateTimeOriginal"
TAG_DATE_TIME_DIGITIZED = "DateTimeDigitized"
TAG_DATE_TIME = "DateTime"
TAG_CREATION_DATE_NO_TIME_ZONE = "CreationDateNoTimeZone"
TAG_CREATION_DATE = "CreationDate"
TAG_CREATED = "Created"
TAG_MODIFIED = "Modified"
TAG_LAST_MODIFICATION_TIME = "LastModificationTime"


class MetadataFormatError(Exception):
    """Exception raised when a file's metadata cannot be read."""

    pass


class MetadataGroupKind(enum.Enum):
    """Metadata directories that can carry a creation timestamp."""

    EXIF = "Exif"
    QUICKTIME_META = "QuickTime Metadata"
    QUICKTIME_MOVIE_HEADER = "QuickTime Movie Header"
    QUICKTIME_TRACK_HEADER = "QuickTime Track Header"
    PNG = "PNG"


@dataclass
class MetadataGroup:
    """One metadata directory with its timestamp tags."""

    kind: MetadataGroupKind
    tags: Dict[str, datetime] = field(default_factory=dict)

    def get_datetime(self, tag: str) -> Optional[datetime]:
        """Look up a timestamp by tag identifier, None when absent."""
        return self.tags.get(tag)


class MetadataReader:
    """Reads timestamp metadata groups from media files."""

    IMAGE_EXTENSIONS = {
        ".jpg",
        ".jpeg",
        ".png",
        ".tiff",
        ".tif",
        ".bmp",
        ".gif",
        ".webp",
    }
    RAW_EXTENSIONS = {
        ".cr2",
        ".nef",
        ".nrw",
        ".arw",
        ".dng",
        ".orf",
        ".rw2",
        ".raf",
        ".pef",
        ".srw",
        ".heic",
        ".heif",
    }
    QUICKTIME_EXTENSIONS = {".mp4", ".mov", ".m4v", ".3gp", ".3g2"}
    QUICKTIME_FORMATS = {"MPEG-4", "QuickTime"}

    def read_metadata(self, file_path: Path) -> List[MetadataGroup]:
        """
        Read all timestamp metadata groups from a media file.

        Args:
            file_path: Path to the media file

        Returns:
            List of metadata groups in the order they were found

        Raises:
            MetadataFormatError: If the file is unsupported, unreadable or corrupt
        """
        file_path = Path(file_path)
        suffix = file_path.suffix.lower()
        logger.debug("Reading metadata from %s", file_path)

        if suffix in self.IMAGE_EXTENSIONS:
            return self.read_image_metadata(file_path)
        if suffix in self.RAW_EXTENSIONS:
            return self.read_raw_metadata(file_path)
        if suffix in self.QUICKTIME_EXTENSIONS:
            return self.read_quicktime_metadata(file_path)

        raise MetadataFormatError("File format could not be determined")

    def read_image_metadata(self, file_path: Path) -> List[MetadataGroup]:
        """Read EXIF (and PNG tIME) timestamps from an image Pillow can open."""
        groups = []

        try:
            with Image.open(file_path) as image:
                image_format = image.format
                exif_data = image.getexif()
                exif_group = MetadataGroup(MetadataGroupKind.EXIF)
                self._collect_exif_tags(exif_data, exif_group)
                self._collect_exif_tags(exif_data.get_ifd(EXIF_IFD_POINTER), exif_group)
                if exif_group.tags:
                    groups.append(exif_group)
        except IMAGE_READ_ERRORS as error:
            raise MetadataFormatError(str(error)) from error

        if image_format == "PNG":
            data = file_path.read_bytes()
            try:
                time_chunk = find_time_chunk(data)
            except ValueError as error:
                raise MetadataFormatError(str(error)) from error

            png_time = parse_png_time(time_chunk) if time_chunk else None
            if png_time is not None:
                groups.append(
                    MetadataGroup(
                        MetadataGroupKind.PNG,
                        {TAG_LAST_MODIFICATION_TIME: png_time},
                    )
                )

        return groups

    def _collect_exif_tags(self, exif_data, exif_group: MetadataGroup) -> None:
        """Add parsed DateTime* tags from a Pillow EXIF mapping to the group."""
        target_tags = [TAG_DATE_TIME_ORIGINAL, TAG_DATE_TIME_DIGITIZED, TAG_DATE_TIME]

        for tag_id, value in exif_data.items():
            tag_name = TAGS.get(tag_id, str(tag_id))
            if tag_name in target_tags and tag_name not in exif_group.tags:
                parsed_date = self._parse_exif_datetime_string(str(value))
                if parsed_date:
                    exif_group.tags[tag_name] = parsed_date

    def read_raw_metadata(self, file_path: Path) -> List[MetadataGroup]:
        """Read EXIF timestamps from RAW/HEIC containers using exifread."""
        try:
            with open(file_path, "rb") as file_handle:
                exif_tags = exifread.process_file(file_handle, details=False)
        except RAW_READ_ERRORS as error:
            raise MetadataFormatError(str(error)) from error

        tag_names = {
            "EXIF DateTimeOriginal": TAG_DATE_TIME_ORIGINAL,
            "EXIF DateTimeDigitized": TAG_DATE_TIME_DIGITIZED,
            "Image DateTime": TAG_DATE_TIME,
        }

        exif_group = MetadataGroup(MetadataGroupKind.EXIF)
        for exifread_name, tag_name in tag_names.items():
            if exifread_name in exif_tags:
                parsed_date = self._parse_exif_datetime_string(
                    str(exif_tags[exifread_name])
                )
                if parsed_date:
                    exif_group.tags[tag_name] = parsed_date

        return [exif_group] if exif_group.tags else []

    def _parse_exif_datetime_string(self, date_string: str) -> Optional[datetime]:
        """Parse EXIF datetime string to datetime object."""
        try:
            return datetime.strptime(
                date_string.strip().rstrip("\x00").strip(), "%Y:%m:%d %H:%M:%S"
            )
        except ValueError:
            return None

    def read_quicktime_metadata(self, file_path: Path) -> List[MetadataGroup]:
        """Read QuickTime meta, movie header and track header timestamps."""
        general_track, other_tracks = self._parse_quicktime_tracks(file_path)
        general_data = general_track.to_data() or {}

        groups = []

        # Apple creation date keeps the recording wall clock plus its offset
        creation_string = general_data.get("comapplequicktimecreationdate")
        if creation_string:
            meta_group = MetadataGroup(MetadataGroupKind.QUICKTIME_META)
            creation_date = self._parse_quicktime_creation_date(str(creation_string))
            if creation_date is not None:
                meta_group.tags[TAG_CREATION_DATE_NO_TIME_ZONE] = creation_date.replace(
                    tzinfo=None
                )
                if creation_date.tzinfo is not None:
                    meta_group.tags[TAG_CREATION_DATE] = creation_date.astimezone().replace(
                        tzinfo=None
                    )
                groups.append(meta_group)

        movie_group = self._header_group(
            MetadataGroupKind.QUICKTIME_MOVIE_HEADER, general_data
        )
        if movie_group.tags:
            groups.append(movie_group)

        video_tracks = [t for t in other_tracks if t.track_type == "Video"]
        for track in video_tracks or other_tracks:
            track_group = self._header_group(
                MetadataGroupKind.QUICKTIME_TRACK_HEADER, track.to_data() or {}
            )
            if track_group.tags:
                groups.append(track_group)
                break

        return groups

    def _parse_quicktime_tracks(self, file_path: Path):
        """Parse the file with MediaInfo and split off the General track."""
        try:
            media_info = MediaInfo.parse(str(file_path))
        except (OSError, RuntimeError) as error:
            raise MetadataFormatError(str(error)) from error

        general_track = None
        other_tracks = []
        for track in media_info.tracks:
            if track.track_type == "General" and general_track is None:
                general_track = track
            else:
                other_tracks.append(track)

        container_format = getattr(general_track, "format", None)
        if general_track is None or container_format not in self.QUICKTIME_FORMATS:
            raise MetadataFormatError("File format could not be determined")

        return general_track, other_tracks

    def _header_group(self, kind: MetadataGroupKind, track_data: dict) -> MetadataGroup:
        """Build a movie/track header group from encoded/tagged dates."""
        header_group = MetadataGroup(kind)
        for field_name, tag_name in (
            ("encoded_date", TAG_CREATED),
            ("tagged_date", TAG_MODIFIED),
        ):
            parsed_date = self._parse_header_datetime_string(track_data.get(field_name))
            if parsed_date is not None:
                header_group.tags[tag_name] = parsed_date
        return header_group

    def _parse_header_datetime_string(self, date_string) -> Optional[datetime]:
        """Parse MediaInfo header dates such as '2019-01-01 10:00:00 UTC'."""
        if not date_string:
            return None

        # Older MediaInfo releases prefix the zone, newer ones append it
        cleaned_date_string = str(date_string).replace("UTC", "").strip()
        try:
            return datetime.strptime(cleaned_date_string, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return None

    def _parse_quicktime_creation_date(self, date_string: str) -> Optional[datetime]:
        """Parse com.apple.quicktime.creationdate, e.g. '2019-06-01T14:23:45+0200'."""
        date_string = date_string.strip()
        for date_format in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S"):
            try:
                return datetime.strptime(date_string, date_format)
            except ValueError:
                continue
        return None

    def describe_metadata(self, file_path: Path) -> List[str]:
        """
        List every metadata tag of a file as '[Group] Tag = value' lines.

        Args:
            file_path: Path to the media file

        Returns:
            One line per tag, each truncated to 150 characters

        Raises:
            MetadataFormatError: If the file is unsupported, unreadable or corrupt
        """
        file_path = Path(file_path)
        suffix = file_path.suffix.lower()
        lines = []

        if suffix in self.IMAGE_EXTENSIONS:
            try:
                with Image.open(file_path) as image:
                    exif_data = image.getexif()
                    for tag_id, value in exif_data.items():
                        lines.append(f"[Exif IFD0] {TAGS.get(tag_id, tag_id)} = {value}")
                    for tag_id, value in exif_data.get_ifd(EXIF_IFD_POINTER).items():
                        lines.append(f"[Exif SubIFD] {TAGS.get(tag_id, tag_id)} = {value}")
                    for key, value in image.info.items():
                        lines.append(f"[{image.format}] {key} = {value}")
            except IMAGE_READ_ERRORS as error:
                raise MetadataFormatError(str(error)) from error
            for group in self.read_image_metadata(file_path):
                if group.kind is MetadataGroupKind.PNG:
                    lines.extend(self._describe_group(group))
        elif suffix in self.RAW_EXTENSIONS:
            try:
                with open(file_path, "rb") as file_handle:
                    exif_tags = exifread.process_file(file_handle, details=False)
            except RAW_READ_ERRORS as error:
                raise MetadataFormatError(str(error)) from error
            for tag_name, value in exif_tags.items():
                group_name, _, short_name = tag_name.partition(" ")
                lines.append(f"[{group_name}] {short_name or group_name} = {value}")
        elif suffix in self.QUICKTIME_EXTENSIONS:
            general_track, other_tracks = self._parse_quicktime_tracks(file_path)
            for track in [general_track] + other_tracks:
                for key, value in (track.to_data() or {}).items():
                    lines.append(f"[{track.track_type}] {key} = {value}")
        else:
            raise MetadataFormatError("File format could not be determined")

        return [line[:MAX_DESCRIPTION_WIDTH].rstrip() for line in lines]

    def _describe_group(self, group: MetadataGroup) -> List[str]:
        return [f"[{group.kind.value}] {tag} = {value}" for tag, value in group.tags.items()]
