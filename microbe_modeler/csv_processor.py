#!/usr/bin/env python3
"""
CSV Ingestor
Parses microbial-survival CSV text into typed rows, mapping header synonyms onto the
canonical time / temperature / microbe fields and rejecting malformed lines with
row-level diagnostics.
"""

import argparse
import logging
import math
import re
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

TIME = "time"
TEMPERATURE = "temperature"
MICROBE = "microbe"
MICROBE_FITTED = "microbe_fitted"
MICROBE_LOG = "microbe_log"

# Normalized (trimmed, lower-cased) header -> canonical field
HEADER_SYNONYMS: dict[str, str] = {
    "time": TIME,
    "t": TIME,
    "hours": TIME,
    "minute": TIME,
    "min": TIME,
    "temperature": TEMPERATURE,
    "temp": TEMPERATURE,
    "°c": TEMPERATURE,
    "c": TEMPERATURE,
    "microbe": MICROBE,
    "count": MICROBE,
    "cfu": MICROBE,
    "concentration": MICROBE,
    "value": MICROBE,
    "target": MICROBE,
}

QUOTE_CHARS = frozenset({'"', "“", "”"})

_NUMERIC_RE = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")
_LINE_SPLIT_RE = re.compile(r"\r\n|\n")


class CSVProcessingError(Exception):
    """Base exception for CSV processing errors."""

    pass


class FormatError(CSVProcessingError):
    """Raised when the CSV is too short or its header has no recognizable column."""

    pass


class MalformedRowError(FormatError):
    """Raised in strict mode when a data line does not match the header width."""

    pass


class FileAccessError(CSVProcessingError):
    """Raised when file cannot be accessed or read."""

    pass


@dataclass(frozen=True)
class RowDiagnostic:
    line_number: int
    expected_fields: int
    actual_fields: int
    reason: str


class IngestReport:
    """Container for ingestion results and diagnostics."""

    def __init__(self, label: Optional[str] = None) -> None:
        self.label: Optional[str] = label

        # Row counters
        self.original_rows: int = 0
        self.accepted_rows: int = 0

        # Diagnostics
        self.rejected: list[RowDiagnostic] = []
        self.header_mapping: dict[str, str] = {}
        self.passthrough_columns: list[str] = []
        self.warnings: list[str] = []
        self.events: list[str] = []

        # Timing
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.perf_counter()

    def stop(self) -> None:
        self.finished_at = time.perf_counter()
        if self.started_at is not None:
            self.elapsed_ms = (self.finished_at - self.started_at) * 1000.0

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)
        logger.warning(message)

    def add_event(self, message: str) -> None:
        """Add an info-level event message."""
        self.events.append(message)
        logger.info(message)

    def reject_row(self, diagnostic: RowDiagnostic) -> None:
        self.rejected.append(diagnostic)
        logger.warning(
            f"Rejected CSV line {diagnostic.line_number}: {diagnostic.reason}"
        )

    @property
    def rejected_rows(self) -> int:
        return len(self.rejected)

    def summarize(self) -> str:
        """Produce a concise summary string for diagnostics."""
        lbl = f"{self.label} " if self.label else ""
        parts = [f"{lbl}result: {self.original_rows} → {self.accepted_rows}"]
        if self.rejected:
            parts.append(f"rejected_rows={len(self.rejected)}")
        if self.header_mapping:
            parts.append(f"mapping={self.header_mapping}")
        if self.elapsed_ms is not None:
            parts.append(f"elapsed_ms={self.elapsed_ms:.1f}")
        return " | ".join(parts)


def split_csv_line(line: str) -> List[str]:
    """
    Split one CSV line on commas, honoring quoted segments.

    Any quote character toggles the inside-quotes state and is dropped from the
    output, so `"1,000",25,100` yields three fields. Fields are trimmed.
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    for ch in line:
        if ch in QUOTE_CHARS:
            in_quotes = not in_quotes
            continue
        if ch == "," and not in_quotes:
            fields.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    fields.append("".join(current).strip())
    return fields


def coerce_value(text: str) -> Union[float, str]:
    """
    Return a float for numeric literals, otherwise the trimmed text.
    Empty fields stay empty strings.
    """
    value = text.strip()
    if value == "":
        return value
    if _NUMERIC_RE.match(value):
        return float(value)
    return value


def to_finite_float(value: Any) -> Optional[float]:
    """
    Coerce a row value to a finite float, or None.
    Booleans and non-numeric text never count as numbers.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
    elif isinstance(value, str):
        s = value.strip()
        if not _NUMERIC_RE.match(s):
            return None
        f = float(s)
    else:
        try:
            f = float(value)
        except (TypeError, ValueError):
            return None
    return f if math.isfinite(f) else None


def map_header(columns: List[str]) -> Dict[str, str]:
    """
    Map raw header names to canonical field names via HEADER_SYNONYMS.

    Matching is case-insensitive after trimming. The first column to claim a
    canonical field wins; later claimants are left unmapped and reported.
    """
    mapping: Dict[str, str] = {}
    claimed: Dict[str, str] = {}
    for col in columns:
        canonical = HEADER_SYNONYMS.get(col.strip().lower())
        if canonical is None:
            continue
        if canonical in claimed:
            logger.warning(
                f"Column {col!r} also maps to {canonical!r} (already taken by "
                f"{claimed[canonical]!r}); keeping it as a pass-through column"
            )
            continue
        claimed[canonical] = col
        mapping[col] = canonical
    return mapping


def _header_names(raw_header: List[str]) -> List[str]:
    names: List[str] = []
    for j, name in enumerate(raw_header):
        names.append(name if name else f"col{j}")
    return names


def parse_csv_text_with_report(
    text: str, strict: bool = False
) -> Tuple[List[Row], IngestReport]:
    """
    Parse CSV text into rows and an IngestReport.

    Behavior:
    - Lines are split on CRLF or LF; blank lines are dropped.
    - The first non-blank line is the header; at least one data line is required.
    - Recognized header synonyms are renamed to time/temperature/microbe and their
      values become floats, or None when not numeric.
    - Unrecognized columns pass through; numeric literals become floats.
    - Lines whose field count differs from the header are rejected and recorded.
      With strict=True the first such line raises MalformedRowError.

    Raises:
        FormatError: fewer than 2 non-blank lines or no recognizable header column.
    """
    report = IngestReport(label="parse_csv")
    report.start()

    lines = [ln for ln in _LINE_SPLIT_RE.split(text or "") if ln.strip() != ""]
    if len(lines) < 2:
        report.stop()
        raise FormatError(
            f"CSV must contain a header and at least one data line (found {len(lines)} non-blank line(s))"
        )

    header_line = lines[0].lstrip("\ufeff")
    columns = _header_names(split_csv_line(header_line))
    if len(set(columns)) != len(columns):
        report.add_warning(f"Duplicate header names in CSV: {columns}")

    mapping = map_header(columns)
    if not mapping:
        report.stop()
        raise FormatError(
            "CSV header has no recognizable columns; expected names such as "
            f"time, temperature and microbe (got {columns})"
        )
    report.header_mapping = dict(mapping)
    report.passthrough_columns = [c for c in columns if c not in mapping]

    # Output key per column; a pass-through column named exactly like a claimed
    # canonical field gets an index suffix so it cannot overwrite that field.
    claimed = set(mapping.values())
    keys: List[str] = []
    for j, name in enumerate(columns):
        if name in mapping:
            keys.append(mapping[name])
        elif name in claimed:
            keys.append(f"{name}_{j}")
        else:
            keys.append(name)
    missing = sorted({TIME, TEMPERATURE, MICROBE} - set(mapping.values()))
    if missing:
        report.add_warning(f"CSV header is missing canonical column(s): {missing}")

    rows: List[Row] = []
    for offset, line in enumerate(lines[1:], start=2):
        report.original_rows += 1
        fields = split_csv_line(line)
        if len(fields) != len(columns):
            diagnostic = RowDiagnostic(
                line_number=offset,
                expected_fields=len(columns),
                actual_fields=len(fields),
                reason=f"expected {len(columns)} fields, found {len(fields)}",
            )
            if strict:
                report.stop()
                raise MalformedRowError(
                    f"Line {offset}: {diagnostic.reason}: {line!r}"
                )
            report.reject_row(diagnostic)
            continue

        row: Row = {}
        for name, key, raw in zip(columns, keys, fields):
            if name in mapping:
                row[key] = to_finite_float(raw)
            else:
                row[key] = coerce_value(raw)
        rows.append(row)

    report.accepted_rows = len(rows)
    report.stop()
    logger.debug(report.summarize())
    return rows, report


def parse_csv_text(text: str, strict: bool = False) -> List[Row]:
    """Parse CSV text into rows; see parse_csv_text_with_report()."""
    rows, _ = parse_csv_text_with_report(text, strict=strict)
    return rows


def read_csv_file(
    file_path: Union[str, Path], strict: bool = False
) -> Tuple[List[Row], IngestReport]:
    """
    Read a CSV file from disk and parse it.

    Raises:
        FileNotFoundError: If the file does not exist
        FileAccessError: If the file cannot be read
        FormatError: If the content is not a usable CSV
    """
    with CSVFileIngestor(file_path) as ingestor:
        return ingestor.read_rows(strict=strict)


def rows_to_frame(rows: List[Row]) -> pd.DataFrame:
    """Build a DataFrame from rows for display and export; absent values become NaN."""
    if not rows:
        return pd.DataFrame()
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return pd.DataFrame.from_records(rows, columns=columns)


class CSVFileIngestor:
    """
    Reads an uploaded CSV file and parses it into rows.

    Uploaded files are small, so the whole file is read as text in one go.
    """

    def __init__(self, file_path: Union[str, Path]) -> None:
        """
        Args:
            file_path: Path to the CSV file to ingest

        Raises:
            FileNotFoundError: If the specified file does not exist
            FileAccessError: If the path is not a regular file
        """
        self.file_path = Path(file_path)
        if not self.file_path.exists():
            raise FileNotFoundError(f"CSV file not found: {self.file_path}")
        if not self.file_path.is_file():
            raise FileAccessError(f"Path is not a file: {self.file_path}")
        if not self.file_path.suffix.lower() == ".csv":
            logger.warning(f"File does not have .csv extension: {self.file_path}")

    def read_text(self) -> str:
        try:
            return self.file_path.read_text(encoding="utf-8-sig")
        except (OSError, UnicodeDecodeError) as e:
            raise FileAccessError(f"Error reading CSV file: {e}") from e

    def read_rows(self, strict: bool = False) -> Tuple[List[Row], IngestReport]:
        rows, report = parse_csv_text_with_report(self.read_text(), strict=strict)
        report.add_event(f"Loaded {len(rows)} rows from {self.file_path.name}")
        return rows, report

    def get_file_info(self) -> Dict[str, Any]:
        """
        Get information about the CSV file and how its header maps.

        Raises:
            FileAccessError: If the file cannot be read
            FormatError: If the content is not a usable CSV
        """
        rows, report = self.read_rows()
        columns = list(rows_to_frame(rows).columns)
        return {
            "file_path": str(self.file_path),
            "file_size": self.file_path.stat().st_size,
            "total_rows": report.original_rows,
            "accepted_rows": report.accepted_rows,
            "rejected_rows": report.rejected_rows,
            "columns": columns,
            "header_mapping": report.header_mapping,
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        pass


def main() -> None:
    """Command-line interface for inspecting how a CSV will be ingested."""
    parser = argparse.ArgumentParser(
        description="Inspect how a microbial-survival CSV is parsed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m microbe_modeler.csv_processor data.csv
  python -m microbe_modeler.csv_processor data.csv --info
  python -m microbe_modeler.csv_processor data.csv --strict
        """,
    )

    parser.add_argument("csv_file", help="Path to the CSV file")
    parser.add_argument(
        "--info",
        action="store_true",
        help="Print file information and header mapping only",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail on the first line whose field count does not match the header",
    )

    args = parser.parse_args()

    try:
        with CSVFileIngestor(args.csv_file) as ingestor:
            if args.info:
                info = ingestor.get_file_info()
                print(f"CSV File: {info['file_path']}")
                print(f"Total data rows: {info['total_rows']}")
                print(f"Accepted rows: {info['accepted_rows']}")
                print(f"Rejected rows: {info['rejected_rows']}")
                print(f"Columns: {info['columns']}")
                print(f"Header mapping: {info['header_mapping']}")
                return

            rows, report = ingestor.read_rows(strict=args.strict)
            print(report.summarize())
            for diag in report.rejected:
                print(f"  line {diag.line_number}: {diag.reason}")
            if rows:
                print(f"\nLoaded {len(rows)} rows:")
                print(rows_to_frame(rows).head())

    except (FileNotFoundError, FileAccessError, FormatError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
