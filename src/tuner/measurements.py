"""
Measurement recordings for offline tracker studies.

Provides functionality to:
- Parse recorded CSV files (one header line, one line per video frame)
- Keep ground-truth pose, timestamp and blob measurements per frame
- Report malformed lines without aborting the load
- Write recordings back out in the same layout
"""

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Generator, Iterable, Sequence

import numpy as np


FIXED_COLUMNS = ["refx", "refy", "refz", "refqw", "refqx", "refqy", "refqz", "sec", "usec"]
FIXED_FIELD_COUNT = len(FIXED_COLUMNS)
BLOB_FIELD_COUNT = 3  # x, y, size

# Ground-truth quaternions shorter than this cannot be normalized.
MIN_QUATERNION_NORM = 1e-9

ISSUE_LOAD = "load"
ISSUE_RECORD = "record"
ISSUE_STRUCTURAL = "structural"


@dataclass(frozen=True, order=True)
class TimeValue:
    """Seconds + microseconds timestamp."""
    seconds: int
    microseconds: int = 0

    @classmethod
    def from_seconds(cls, value: float) -> "TimeValue":
        whole = math.floor(value)
        return cls(int(whole), int(round((value - whole) * 1_000_000))).normalized()

    def normalized(self) -> "TimeValue":
        extra, usec = divmod(self.microseconds, 1_000_000)
        return TimeValue(self.seconds + extra, usec)

    @property
    def timestamp_us(self) -> int:
        return self.seconds * 1_000_000 + self.microseconds

    @property
    def total_seconds(self) -> float:
        return self.seconds + self.microseconds / 1_000_000.0

    def __sub__(self, other: "TimeValue") -> float:
        """Elapsed time in seconds from ``other`` to ``self``."""
        return (self.timestamp_us - other.timestamp_us) / 1_000_000.0


@dataclass(frozen=True)
class Blob:
    """A detected bright spot: pixel location and size."""
    x: float
    y: float
    size: float
    image_size: Tuple[int, int] = (640, 480)  # width, height

    @property
    def location(self) -> Tuple[float, float]:
        return (self.x, self.y)

    @property
    def normalized(self) -> Tuple[float, float]:
        width, height = self.image_size
        return (self.x / width, self.y / height)


@dataclass(frozen=True, eq=False)
class MeasurementRecord:
    """One frame of recorded data: ground truth plus blob measurements."""
    timestamp: TimeValue
    position: np.ndarray  # ground-truth translation, 3
    quaternion: np.ndarray  # ground-truth rotation [w, x, y, z]
    blobs: Tuple[Blob, ...] = ()
    valid: bool = True
    line_number: int = 0

    def __post_init__(self):
        position = np.array(self.position, dtype=np.float64).reshape(3)
        quaternion = np.array(self.quaternion, dtype=np.float64).reshape(4)
        position.setflags(write=False)
        quaternion.setflags(write=False)
        object.__setattr__(self, "position", position)
        object.__setattr__(self, "quaternion", quaternion)
        object.__setattr__(self, "blobs", tuple(self.blobs))

    @property
    def blob_count(self) -> int:
        return len(self.blobs)

    def image_points(self) -> np.ndarray:
        """Blob locations as an Nx2 array."""
        if not self.blobs:
            return np.zeros((0, 2), dtype=np.float64)
        return np.array([b.location for b in self.blobs], dtype=np.float64)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_us": self.timestamp.timestamp_us,
            "position": self.position.tolist(),
            "quaternion": self.quaternion.tolist(),
            "blobs": [{"x": b.x, "y": b.y, "size": b.size} for b in self.blobs],
        }


@dataclass
class LoaderConfig:
    """Layout of a recording file."""
    image_size: Tuple[int, int] = (640, 480)  # width, height blobs are measured against
    delimiter: str = ","


@dataclass
class LoadIssue:
    """A problem found while loading a recording."""
    kind: str  # "load", "record" or "structural"
    line_number: int
    message: str
    line: str = ""

    def __str__(self) -> str:
        where = f"line {self.line_number}: " if self.line_number else ""
        return f"[{self.kind}] {where}{self.message}"


class _RowParser:
    """Parse one data line into a record, collecting issues."""

    def __init__(self, config: LoaderConfig):
        self.config = config

    def parse(self, line: str, line_number: int) -> Tuple[Optional[MeasurementRecord], List[LoadIssue]]:
        issues: List[LoadIssue] = []
        fields = [f.strip() for f in line.split(self.config.delimiter)]
        # Trailing delimiters leave empty fields behind.
        while fields and fields[-1] == "":
            fields.pop()

        if len(fields) < FIXED_FIELD_COUNT:
            issues.append(LoadIssue(
                ISSUE_RECORD, line_number,
                f"expected at least {FIXED_FIELD_COUNT} fields, got {len(fields)}",
                line
            ))
            return None, issues

        values: List[float] = []
        for index, (name, raw) in enumerate(zip(FIXED_COLUMNS, fields[:7])):
            try:
                value = float(raw)
            except ValueError:
                issues.append(LoadIssue(
                    ISSUE_RECORD, line_number,
                    f"field {index + 1} ({name}) is not a number: {raw!r}", line
                ))
                return None, issues
            if not math.isfinite(value):
                issues.append(LoadIssue(
                    ISSUE_RECORD, line_number,
                    f"field {index + 1} ({name}) is not finite: {raw!r}", line
                ))
                return None, issues
            values.append(value)

        if math.sqrt(sum(v * v for v in values[3:7])) < MIN_QUATERNION_NORM:
            issues.append(LoadIssue(
                ISSUE_RECORD, line_number,
                "ground-truth quaternion has zero norm", line
            ))
            return None, issues

        try:
            seconds = int(fields[7])
            microseconds = int(fields[8])
        except ValueError:
            issues.append(LoadIssue(
                ISSUE_RECORD, line_number,
                f"timestamp fields are not integers: {fields[7]!r}, {fields[8]!r}", line
            ))
            return None, issues

        blobs, blob_issues = self._parse_blobs(fields[FIXED_FIELD_COUNT:], line, line_number)
        issues.extend(blob_issues)

        record = MeasurementRecord(
            timestamp=TimeValue(seconds, microseconds).normalized(),
            position=values[0:3],
            quaternion=values[3:7],
            blobs=tuple(blobs),
            valid=True,
            line_number=line_number
        )
        return record, issues

    def _parse_blobs(
        self,
        fields: Sequence[str],
        line: str,
        line_number: int
    ) -> Tuple[List[Blob], List[LoadIssue]]:
        blobs: List[Blob] = []
        issues: List[LoadIssue] = []
        pieces: List[float] = []
        group = BLOB_FIELD_COUNT

        for offset, raw in enumerate(fields):
            try:
                value = float(raw)
            except ValueError:
                issues.append(LoadIssue(
                    ISSUE_STRUCTURAL, line_number,
                    f"blob field {FIXED_FIELD_COUNT + offset + 1} is not a number: "
                    f"{raw!r}; remaining blob fields ignored",
                    line
                ))
                break
            pieces.append(value)
            if len(pieces) == group:
                blobs.append(Blob(pieces[0], pieces[1], pieces[2], self.config.image_size))
                pieces = []

        if pieces:
            issues.append(LoadIssue(
                ISSUE_STRUCTURAL, line_number,
                f"{len(pieces)} leftover blob value(s) after {len(blobs)} complete blob(s); "
                f"blob fields must come in groups of {group}",
                line
            ))

        return blobs, issues


class MeasurementLoader:
    """
    Load a recorded measurement file.

    Usage:
        loader = MeasurementLoader("augmented-blobs.csv")
        records = loader.load()
        for issue in loader.issues:
            print(issue, file=sys.stderr)
    """

    def __init__(self, path: str, config: Optional[LoaderConfig] = None):
        """
        Initialize the loader.

        Args:
            path: Path to the CSV recording
            config: File layout (image size, delimiter)
        """
        self.path = Path(path)
        self.config = config or LoaderConfig()

        self.header: List[str] = []
        self.records: List[MeasurementRecord] = []
        self.issues: List[LoadIssue] = []
        self.lines_read = 0
        self.blank_lines = 0
        self._loaded = False

    def load(self) -> List[MeasurementRecord]:
        """
        Parse the whole file.

        Returns:
            Valid records in file order; empty if the file cannot be opened
            or its header line is empty.
        """
        self.header = []
        self.records = []
        self.issues = []
        self.lines_read = 0
        self.blank_lines = 0
        self._loaded = True

        try:
            f = open(self.path, 'rb')
        except OSError as e:
            self.issues.append(LoadIssue(ISSUE_LOAD, 0, f"could not open {self.path}: {e}"))
            return []

        with f:
            try:
                header_line = f.readline().decode('utf-8').strip()
            except UnicodeDecodeError as e:
                self.issues.append(LoadIssue(ISSUE_LOAD, 1, f"header row is not valid UTF-8: {e}"))
                return []
            if not header_line:
                self.issues.append(LoadIssue(ISSUE_LOAD, 1, "header row is empty"))
                return []
            self.header = [h.strip() for h in header_line.split(self.config.delimiter)]

            parser = _RowParser(self.config)
            for line_number, raw in enumerate(f, start=2):
                try:
                    line = raw.decode('utf-8').strip()
                except UnicodeDecodeError as e:
                    self.lines_read += 1
                    self.issues.append(LoadIssue(
                        ISSUE_RECORD, line_number, f"line is not valid UTF-8: {e}",
                        raw.decode('utf-8', errors='replace').strip()
                    ))
                    continue
                if not line:
                    self.blank_lines += 1
                    continue
                self.lines_read += 1
                record, issues = parser.parse(line, line_number)
                self.issues.extend(issues)
                if record is not None and record.valid:
                    self.records.append(record)

        return list(self.records)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    @property
    def record_count(self) -> int:
        self._ensure_loaded()
        return len(self.records)

    @property
    def rejected_count(self) -> int:
        """Number of data lines dropped as malformed."""
        return sum(1 for issue in self.issues if issue.kind == ISSUE_RECORD)

    def issues_of_kind(self, kind: str) -> List[LoadIssue]:
        return [issue for issue in self.issues if issue.kind == kind]

    def replay(
        self,
        start_frame: int = 0,
        end_frame: Optional[int] = None
    ) -> Generator[MeasurementRecord, None, None]:
        """
        Iterate records in file order.

        Args:
            start_frame: Record index to start from
            end_frame: Record index to end at (None = until end)
        """
        self._ensure_loaded()
        for record in self.records[start_frame:end_frame]:
            yield record

    def get_timestamp_range(self) -> Tuple[int, int]:
        """
        Get the timestamp range of the recording.

        Returns:
            Tuple of (min_timestamp, max_timestamp) in microseconds
        """
        self._ensure_loaded()
        if not self.records:
            return (0, 0)
        timestamps = [r.timestamp.timestamp_us for r in self.records]
        return (min(timestamps), max(timestamps))

    def get_duration_seconds(self) -> float:
        min_ts, max_ts = self.get_timestamp_range()
        return (max_ts - min_ts) / 1_000_000.0


def load_measurements(
    path: str,
    config: Optional[LoaderConfig] = None
) -> Tuple[List[MeasurementRecord], List[LoadIssue]]:
    """Load a recording, returning (records, issues)."""
    loader = MeasurementLoader(path, config)
    records = loader.load()
    return records, list(loader.issues)


def count_non_monotonic(records: Iterable[MeasurementRecord]) -> int:
    """Number of records whose timestamp goes backwards."""
    count = 0
    previous: Optional[TimeValue] = None
    for record in records:
        if previous is not None and record.timestamp < previous:
            count += 1
        previous = record.timestamp
    return count


def validate_measurement_file(path: str, config: Optional[LoaderConfig] = None) -> Dict[str, Any]:
    """
    Validate a recording for integrity and consistency.

    Args:
        path: Path to the CSV recording

    Returns:
        Validation result dictionary
    """
    result: Dict[str, Any] = {
        "valid": True,
        "errors": [],
        "warnings": [],
        "stats": {}
    }

    loader = MeasurementLoader(path, config)
    records = loader.load()

    for issue in loader.issues:
        if issue.kind == ISSUE_LOAD:
            result["errors"].append(str(issue))
            result["valid"] = False
        else:
            result["warnings"].append(str(issue))

    if loader.blank_lines:
        result["warnings"].append(f"{loader.blank_lines} blank line(s) skipped")

    if not records and result["valid"]:
        result["errors"].append("No valid records")
        result["valid"] = False

    non_monotonic = count_non_monotonic(records)
    if non_monotonic:
        result["warnings"].append(f"{non_monotonic} record(s) with decreasing timestamp")

    blob_counts = [r.blob_count for r in records]
    result["stats"] = {
        "total_records": len(records),
        "lines_read": loader.lines_read,
        "blank_lines": loader.blank_lines,
        "rejected_lines": loader.rejected_count,
        "structural_issues": len(loader.issues_of_kind(ISSUE_STRUCTURAL)),
        "frames_without_blobs": sum(1 for c in blob_counts if c == 0),
        "mean_blob_count": float(np.mean(blob_counts)) if blob_counts else 0.0,
        "max_blob_count": max(blob_counts) if blob_counts else 0,
        "non_monotonic_timestamps": non_monotonic,
        "duration_seconds": loader.get_duration_seconds(),
    }

    return result


def format_record_line(record: MeasurementRecord, delimiter: str = ",") -> str:
    """Format a record as one data line of a recording."""
    values = [repr(float(v)) for v in record.position]
    values += [repr(float(v)) for v in record.quaternion]
    values += [str(record.timestamp.seconds), str(record.timestamp.microseconds)]
    for blob in record.blobs:
        values += [repr(float(blob.x)), repr(float(blob.y)), repr(float(blob.size))]
    return delimiter.join(values)


def write_measurement_csv(
    path: str,
    records: Iterable[MeasurementRecord],
    delimiter: str = ","
) -> int:
    """
    Write records in the recording layout.

    Returns:
        Number of records written
    """
    count = 0
    with open(path, 'w', encoding='utf-8') as f:
        f.write(delimiter.join(FIXED_COLUMNS + ["x", "y", "size", "..."]) + '\n')
        for record in records:
            f.write(format_record_line(record, delimiter) + '\n')
            count += 1
    return count
