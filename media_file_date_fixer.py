#!/usr/bin/env python3
"""
Media File Date Fixer

Compares the filesystem modification time of media files with the creation
time stored in their metadata and rewrites the modification time to match,
optionally shifted by a fixed time-zone offset.
"""

import argparse
import enum
import logging
import os
import queue
import re
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from date_detection import (
    DEFAULT_DETECTION_FILTER,
    Detection,
    classify,
    select_meta_date,
)
from metadata_reader import MetadataFormatError, MetadataReader

logger = logging.getLogger(__name__)

DATE_DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"


class DirectoryNotFoundError(ValueError):
    """Exception raised when the directory to scan does not exist."""

    pass


class OffsetParsingError(Exception):
    """Exception raised when a fix offset cannot be parsed."""

    pass


class BusyError(RuntimeError):
    """Exception raised when a query or apply pass is already running."""

    pass


class ProgressState(enum.Enum):
    READY = "Ready"
    COUNTING = "Counting"
    QUERYING = "Querying"
    APPLYING = "Applying"


class ProgressType(enum.Enum):
    INIT = "init"
    INCREMENT = "increment"
    FINISH = "finish"


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification emitted by a query or apply pass."""

    state: ProgressState
    kind: ProgressType
    value: int = 0


class ProgressCounter:
    """Bounded progress counter driven by ProgressEvent notifications."""

    def __init__(self):
        self.state = ProgressState.READY
        self.total = 0
        self.current = 0

    def handle(self, event: ProgressEvent) -> None:
        if event.kind is ProgressType.INIT:
            self.total = event.value
            self.current = 0
        elif event.kind is ProgressType.INCREMENT:
            self.current = min(self.current + 1, self.total)
        elif event.kind is ProgressType.FINISH:
            self.current = 0
        self.state = event.state


class CancellationToken:
    """Cancel request shared between a pass and its caller, checked between files."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    def set(self) -> None:
        """Request cancellation of the running pass."""
        self._cancelled.set()

    def is_set(self) -> bool:
        return self._cancelled.is_set()


def format_duration(delta: timedelta) -> str:
    """Format a duration as [-][d.]hh:mm:ss."""
    total_seconds = int(delta.total_seconds())
    sign = "-" if total_seconds < 0 else ""
    days, remainder = divmod(abs(total_seconds), 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)
    day_part = f"{days}." if days else ""
    return f"{sign}{day_part}{hours:02}:{minutes:02}:{seconds:02}"


@dataclass
class Entry:
    """One discovered file with its two timestamps and selection state."""

    path: Path
    file_date: datetime
    meta_date: Optional[datetime] = None
    error: Optional[str] = None
    detection: Detection = Detection.NO_META_DATE
    diff: int = 0
    active: bool = False

    @property
    def file_name(self) -> str:
        return str(self.path)

    def target_date(self, fix_offset: timedelta) -> Optional[datetime]:
        """Filesystem date this entry would get on apply."""
        if self.meta_date is None:
            return None
        try:
            return self.meta_date + fix_offset
        except OverflowError:
            return None

    def needs_fix(self, fix_offset: timedelta) -> bool:
        """True if there is a representable target date different from the file date."""
        target_date = self.target_date(fix_offset)
        return target_date is not None and self.file_date != target_date

    def file_date_text(self) -> str:
        return self.file_date.strftime(DATE_DISPLAY_FORMAT)

    def meta_date_text(self, fix_offset: timedelta) -> str:
        if self.meta_date is None:
            return ""
        text = self.meta_date.strftime(DATE_DISPLAY_FORMAT)
        if self.active and fix_offset:
            sign = "+" if fix_offset > timedelta(0) else ""
            text += f" ({sign}{format_duration(fix_offset)})"
        return text

    def diff_text(self) -> str:
        if self.meta_date is None or self.diff == 0:
            return ""
        return format_duration(timedelta(seconds=self.diff))


@dataclass
class ApplySummary:
    applied: int = 0
    failed: int = 0
    cancelled: bool = False


class SortField(enum.Enum):
    ACTIVE = "active"
    FILE_NAME = "file_name"
    FILE_DATE = "file_date"
    META_DATE = "meta_date"
    DETECTION = "detection"
    ERROR = "error"
    DIFF = "diff"


SORT_KEYS = {
    SortField.ACTIVE: lambda entry: int(entry.active),
    SortField.FILE_NAME: lambda entry: entry.file_name,
    SortField.FILE_DATE: lambda entry: entry.file_date,
    # Absent meta dates sort before every real date
    SortField.META_DATE: lambda entry: entry.meta_date or datetime.min,
    SortField.DETECTION: lambda entry: int(entry.detection),
    SortField.ERROR: lambda entry: entry.error or "",
    SortField.DIFF: lambda entry: entry.diff,
}


def parse_fix_offset(offset_string: str) -> timedelta:
    """
    Parse a fix offset such as '+2', '-1:30' or '+05:45'.

    Args:
        offset_string: Signed hours with optional minutes

    Returns:
        timedelta object representing the offset

    Raises:
        OffsetParsingError: If the format cannot be parsed
    """
    offset_string = offset_string.strip()

    if not offset_string.startswith(("+", "-")):
        raise OffsetParsingError(f"Fix offset must start with + or -: {offset_string}")

    match = re.fullmatch(r"([+-])(\d{1,2})(?::(\d{2}))?", offset_string)
    if not match:
        raise OffsetParsingError(f"Invalid fix offset format: {offset_string}")

    hours = int(match.group(2))
    minutes = int(match.group(3) or 0)
    if minutes >= 60:
        raise OffsetParsingError(f"Minutes must be below 60: {offset_string}")

    offset = timedelta(hours=hours, minutes=minutes)
    return offset if match.group(1) == "+" else -offset


def _list_directory(directory: Path) -> Tuple[List[Path], List[Path]]:
    """Split a directory's children into files and subdirectories, by name."""
    children = sorted(directory.iterdir(), key=lambda child: child.name)
    files = [child for child in children if child.is_file()]
    subdirectories = [
        child for child in children if child.is_dir() and not child.is_symlink()
    ]
    return files, subdirectories


def _check_directory(directory) -> Path:
    directory_path = Path(directory or "")
    if not directory or not directory_path.is_dir():
        raise DirectoryNotFoundError(f"Directory '{directory}' does not exist")
    return directory_path.resolve()


def find_files(directory) -> List[Path]:
    """
    Recursively find every regular file below a directory.

    Files of a directory come first, then each subdirectory depth-first.

    Raises:
        DirectoryNotFoundError: If the directory does not exist
    """
    root = _check_directory(directory)
    files, subdirectories = _list_directory(root)
    for subdirectory in subdirectories:
        files.extend(find_files(subdirectory))
    return files


def read_file_date(file_path: Path) -> datetime:
    """Last-write time of a file as naive local time."""
    return datetime.fromtimestamp(file_path.stat().st_mtime)


def write_file_date(file_path: Path, file_date: datetime) -> None:
    """
    Set the last-write time of a file, keeping its access time.

    Raises:
        OSError: If the timestamp cannot be written
    """
    file_stat = os.stat(file_path)
    os.utime(file_path, (file_stat.st_atime, file_date.timestamp()))


class MediaFileDateFixer:
    """Entry registry with selection, category filter, sorting and apply."""

    def __init__(
        self,
        directory: Optional[str] = None,
        fix_offset: timedelta = timedelta(0),
        detection_filter: Detection = DEFAULT_DETECTION_FILTER,
        reader: Optional[MetadataReader] = None,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        """
        Initialize a fixer session.

        Args:
            directory: Directory to scan on query
            fix_offset: Offset added to metadata dates when applying
            detection_filter: Detections hidden from view
            reader: Metadata reader, a default MetadataReader if omitted
            on_progress: Callback receiving ProgressEvent notifications
        """
        self.directory = directory
        self.fix_offset = fix_offset
        self.detection_filter = detection_filter
        self.reader = reader or MetadataReader()
        self.on_progress = on_progress
        self.entries: List[Entry] = []
        self.active_count = 0
        self.errors: List[str] = []
        self._pass_lock = threading.Lock()

    def _emit(self, state: ProgressState, kind: ProgressType, value: int = 0) -> None:
        if self.on_progress is not None:
            self.on_progress(ProgressEvent(state, kind, value))

    def _begin_pass(self) -> None:
        if not self._pass_lock.acquire(blocking=False):
            raise BusyError("A query or apply pass is already running")

    def query(
        self,
        directory: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Entry]:
        """
        Scan the directory and classify every file found.

        Args:
            directory: Directory to scan, defaults to the session directory
            cancel_token: Checked between files; entries found so far are kept

        Returns:
            The new list of entries, all inactive

        Raises:
            DirectoryNotFoundError: If the directory does not exist
            BusyError: If another pass is running
        """
        self._begin_pass()
        try:
            root = _check_directory(directory or self.directory or "")
            self.directory = str(root)
            logger.info("Querying %s", root)
            self.errors = []

            self._emit(ProgressState.COUNTING, ProgressType.INIT, 1)
            files, subdirectories = _list_directory(root)
            self._emit(
                ProgressState.QUERYING, ProgressType.INIT, max(1, len(subdirectories))
            )
            for subdirectory in subdirectories:
                try:
                    files.extend(find_files(subdirectory))
                except OSError as error:
                    logger.warning("Could not list %s: %s", subdirectory, error)
                    self.errors.append(f"Could not list {subdirectory}: {error}")
                self._emit(ProgressState.QUERYING, ProgressType.INCREMENT)

            self._emit(ProgressState.QUERYING, ProgressType.INIT, len(files))
            self.active_count = 0
            self.entries = []
            for file_path in files:
                if cancel_token is not None and cancel_token.is_set():
                    logger.info("Query cancelled after %d files", len(self.entries))
                    break
                entry = self._query_file(file_path)
                if entry is not None:
                    self.entries.append(entry)
                self._emit(ProgressState.QUERYING, ProgressType.INCREMENT)

            logger.info("Classified %d files", len(self.entries))
            self._emit(ProgressState.READY, ProgressType.FINISH)
            return self.entries
        finally:
            self._pass_lock.release()

    def _query_file(self, file_path: Path) -> Optional[Entry]:
        try:
            entry = Entry(path=file_path, file_date=read_file_date(file_path))
        except OSError as error:
            logger.warning("Could not stat %s: %s", file_path, error)
            self.errors.append(f"Could not read file date of {file_path}: {error}")
            return None

        try:
            entry.meta_date = select_meta_date(self.reader.read_metadata(file_path))
        except Exception as error:
            if not isinstance(error, (MetadataFormatError, OSError)):
                logger.warning("Unexpected error reading %s: %r", file_path, error)
            entry.error = str(error) or error.__class__.__name__
            self.errors.append(f"Could not read metadata from {file_path}: {entry.error}")

        entry.detection, entry.diff = classify(
            entry.file_date, entry.meta_date, entry.error is not None
        )
        logger.debug("%s: %s (%d s)", file_path, entry.detection.label, entry.diff)
        return entry

    def is_detection_visible(self, detection: Detection) -> bool:
        return (self.detection_filter & detection) == 0

    def is_visible(self, entry: Entry) -> bool:
        return self.is_detection_visible(entry.detection)

    def visible_entries(self) -> List[Entry]:
        return [entry for entry in self.entries if self.is_visible(entry)]

    def is_eligible(self, entry: Entry) -> bool:
        """True if applying would commit this entry."""
        return (
            entry.active
            and entry.needs_fix(self.fix_offset)
            and self.is_visible(entry)
        )

    def _count_change(self, entry: Entry) -> None:
        if self.is_visible(entry):
            self.active_count += 1 if entry.active else -1

    def set_active(self, entry: Entry, active: bool) -> bool:
        """
        Select or deselect an entry for the next apply.

        Returns:
            True if the entry changed, False if the request was a no-op
        """
        if (
            entry.active == active
            or entry.meta_date is None
            or (active and not entry.needs_fix(self.fix_offset))
        ):
            return False
        entry.active = active
        self._count_change(entry)
        return True

    def toggle_active(self, entry: Entry) -> bool:
        """Flip an entry's selection; refused when nothing would be fixed."""
        if not entry.needs_fix(self.fix_offset):
            return False
        entry.active = not entry.active
        self._count_change(entry)
        return True

    def set_all_active(self, active: bool) -> int:
        """Select or deselect every visible entry, returning how many changed."""
        return sum(
            1 for entry in self.visible_entries() if self.set_active(entry, active)
        )

    def toggle_filter(self, detection: Detection) -> None:
        """Show or hide one detection, keeping active_count to visible entries."""
        old_filter = self.detection_filter
        self.detection_filter ^= detection
        for entry in self.entries:
            if not entry.active:
                continue
            old_visibility = (old_filter & entry.detection) == 0
            new_visibility = self.is_visible(entry)
            if old_visibility != new_visibility:
                self.active_count += 1 if new_visibility else -1

    def sort_entries(self, sort_field: SortField, descending: bool = False) -> None:
        if not self.entries:
            return
        self.entries.sort(key=SORT_KEYS[sort_field], reverse=descending)

    def apply(self, cancel_token: Optional[CancellationToken] = None) -> ApplySummary:
        """
        Write the offset-adjusted meta date to every active, visible entry.

        A failed write marks only that entry as APPLY_FAILED; the pass continues.

        Args:
            cancel_token: Checked between files

        Returns:
            ApplySummary with applied/failed counts

        Raises:
            BusyError: If another pass is running
        """
        summary = ApplySummary()
        self._begin_pass()
        try:
            if not self.entries or self.active_count == 0:
                self._emit(ProgressState.READY, ProgressType.FINISH)
                return summary

            self._emit(ProgressState.COUNTING, ProgressType.INIT, 1)
            eligible_entries = [
                entry for entry in self.entries if self.is_eligible(entry)
            ]
            self._emit(ProgressState.APPLYING, ProgressType.INIT, len(eligible_entries))
            logger.info("Applying %d entries", len(eligible_entries))

            for entry in eligible_entries:
                if cancel_token is not None and cancel_token.is_set():
                    summary.cancelled = True
                    break
                self._apply_entry(entry, summary)
                self._emit(ProgressState.APPLYING, ProgressType.INCREMENT)

            # Entries skipped as already matching stay active
            self.active_count = sum(
                1 for entry in self.visible_entries() if entry.active
            )

            logger.info(
                "Applied %d entries, %d failed", summary.applied, summary.failed
            )
            self._emit(ProgressState.READY, ProgressType.FINISH)
            return summary
        finally:
            self._pass_lock.release()

    def _apply_entry(self, entry: Entry, summary: ApplySummary) -> None:
        try:
            target_date = entry.target_date(self.fix_offset)
            write_file_date(entry.path, target_date)
        except (OSError, OverflowError, ValueError) as error:
            logger.warning("Could not set file date of %s: %s", entry.path, error)
            self.errors.append(f"Could not set file date of {entry.path}: {error}")
            entry.error = str(error)
            entry.detection = Detection.APPLY_FAILED
            entry.active = False
            summary.failed += 1
            return

        entry.file_date = target_date
        entry.diff = 0
        entry.active = False
        entry.detection = Detection.APPLIED
        summary.applied += 1


class BatchRunner:
    """
    Runs query and apply passes on one background worker thread.

    Progress events are queued for the consumer instead of calling back into
    presentation code from the worker.
    """

    def __init__(self, fixer: MediaFileDateFixer):
        self.fixer = fixer
        self.event_queue: "queue.Queue[ProgressEvent]" = queue.Queue()
        self.fixer.on_progress = self.event_queue.put
        self.cancel_token: Optional[CancellationToken] = None
        self._thread: Optional[threading.Thread] = None
        self._result = None
        self._error: Optional[BaseException] = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_query(self, directory: Optional[str] = None) -> None:
        self._start(self.fixer.query, directory)

    def start_apply(self) -> None:
        self._start(self.fixer.apply)

    def _start(self, target, *args) -> None:
        if self.is_running():
            raise BusyError("A query or apply pass is already running")

        self.cancel_token = CancellationToken()
        self._result = None
        self._error = None
        self._thread = threading.Thread(
            target=self._run, args=(target, args, self.cancel_token), daemon=True
        )
        self._thread.start()

    def _run(self, target, args, cancel_token: CancellationToken) -> None:
        try:
            self._result = target(*args, cancel_token=cancel_token)
        except Exception as error:
            # Re-raised from wait() on the consumer side
            self._error = error
            self.event_queue.put(ProgressEvent(ProgressState.READY, ProgressType.FINISH))

    def cancel(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.set()

    def wait(self, timeout: Optional[float] = None):
        """Wait for the current pass and return its result, re-raising its error."""
        if self._thread is not None:
            self._thread.join(timeout)
        if self._error is not None:
            raise self._error
        return self._result

    def events(self) -> Iterator[ProgressEvent]:
        """Yield progress events until the current pass finishes."""
        while True:
            event = self.event_queue.get()
            yield event
            if event.kind is ProgressType.FINISH:
                return

    def poll_events(self) -> List[ProgressEvent]:
        """Drain queued progress events without blocking."""
        drained_events = []
        while True:
            try:
                drained_events.append(self.event_queue.get_nowait())
            except queue.Empty:
                return drained_events


def _print_entries(fixer: MediaFileDateFixer) -> None:
    for entry in fixer.visible_entries():
        marker = "[x]" if entry.active else "[ ]"
        print(
            f"{marker} {entry.detection.label:<22} {entry.file_date_text():<20} "
            f"{entry.meta_date_text(fixer.fix_offset):<32} {entry.diff_text():>14}  "
            f"{entry.file_name}"
        )
        if entry.error:
            print(f"      {entry.error}")


def _run_pass(runner: BatchRunner, start: Callable[[], None]):
    """Start a pass, render its progress on stderr and return its result."""
    counter = ProgressCounter()
    start()
    for event in runner.events():
        counter.handle(event)
        if event.kind is ProgressType.INCREMENT and counter.total:
            print(
                f"\r{counter.state.value}: {counter.current}/{counter.total}",
                end="",
                file=sys.stderr,
            )
    print(file=sys.stderr)
    return runner.wait()


def main():
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description="Fix file modification dates of photos and videos from their metadata",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s /path/to/photos                          # List differences
  %(prog)s /path/to/photos --select all --apply     # Fix every visible file
  %(prog)s /path/to/photos --offset +2 --select time-zone-difference --apply
  %(prog)s --show-metadata /path/to/photo.jpg       # Dump all metadata tags

Detections:
  matching-dates, normal-difference, small-difference, big-difference,
  time-zone-difference, applied, apply-failed, no-meta-date, format-error
        """,
    )

    parser.add_argument(
        "directory", nargs="?", help="Directory to scan (prompted if omitted)"
    )
    parser.add_argument(
        "--offset",
        default="+0",
        help="Fix offset added to metadata dates, e.g. '+2' or '-1:30'",
    )
    parser.add_argument(
        "--show",
        action="append",
        default=[],
        metavar="DETECTION",
        help="Show a detection hidden by default",
    )
    parser.add_argument(
        "--hide",
        action="append",
        default=[],
        metavar="DETECTION",
        help="Hide a detection",
    )
    parser.add_argument(
        "--select",
        action="append",
        default=[],
        metavar="DETECTION",
        help="Select visible entries of a detection ('all' for every visible entry)",
    )
    parser.add_argument(
        "--sort",
        choices=[sort_field.value for sort_field in SortField],
        help="Sort the listing by a field",
    )
    parser.add_argument("--descending", action="store_true", help="Sort descending")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Write the selected dates (otherwise only show what would change)",
    )
    parser.add_argument(
        "--show-metadata", metavar="FILE", help="List all metadata tags of a file"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    parsed_arguments = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if parsed_arguments.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if parsed_arguments.show_metadata:
            for line in MetadataReader().describe_metadata(
                Path(parsed_arguments.show_metadata)
            ):
                print(line)
            return

        directory = parsed_arguments.directory
        if directory is None:
            directory = input("Directory to scan: ").strip()
        _check_directory(directory)

        fixer = MediaFileDateFixer(
            directory, fix_offset=parse_fix_offset(parsed_arguments.offset)
        )
        for name in parsed_arguments.show:
            detection = Detection.from_name(name)
            if not fixer.is_detection_visible(detection):
                fixer.toggle_filter(detection)
        for name in parsed_arguments.hide:
            detection = Detection.from_name(name)
            if fixer.is_detection_visible(detection):
                fixer.toggle_filter(detection)

        print(f"Directory: {directory}")
        print(f"Fix offset: {format_duration(fixer.fix_offset)}")
        print(f"Dry run: {'No' if parsed_arguments.apply else 'Yes'}")
        print()

        runner = BatchRunner(fixer)
        _run_pass(runner, lambda: runner.start_query(directory))

        for name in parsed_arguments.select:
            if name.strip().lower() == "all":
                fixer.set_all_active(True)
                continue
            detection = Detection.from_name(name)
            for entry in fixer.visible_entries():
                if entry.detection == detection:
                    fixer.set_active(entry, True)

        if parsed_arguments.sort:
            fixer.sort_entries(
                SortField(parsed_arguments.sort), parsed_arguments.descending
            )

        _print_entries(fixer)

        selected_count = fixer.active_count
        summary = ApplySummary()
        if parsed_arguments.apply and selected_count:
            summary = _run_pass(runner, runner.start_apply)

        # Show summary
        print("=" * 60)
        print(f"{'' if parsed_arguments.apply else 'DRY RUN '}SUMMARY:")
        print(f"Total files: {len(fixer.entries)}")
        print(f"Visible files: {len(fixer.visible_entries())}")
        if parsed_arguments.apply:
            print(f"Files updated: {summary.applied}")
            print(f"Files failed: {summary.failed}")
        else:
            print(f"Files that would be updated: {selected_count}")

        # Show errors in red if any
        if fixer.errors:
            print()
            print(f"\033[91mERRORS ENCOUNTERED ({len(fixer.errors)}):\033[0m")
            for error in fixer.errors:
                print(f"\033[91m  {error}\033[0m")

    except (ValueError, OffsetParsingError, MetadataFormatError) as error:
        print(f"Error: {error}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
