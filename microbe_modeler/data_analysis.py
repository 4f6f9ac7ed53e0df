"""
Descriptive statistics and insights over ingested rows.

All functions are pure: they read rows and return new objects.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

try:
    from .csv_processor import MICROBE, MICROBE_LOG, Row, to_finite_float
except ImportError:
    from csv_processor import MICROBE, MICROBE_LOG, Row, to_finite_float  # type: ignore

MAX_INSIGHTS = 10


@dataclass
class ColumnStats:
    mean: float
    std: float
    min: float
    max: float
    count: int


@dataclass
class DataSummary:
    total_rows: int
    column_stats: Dict[str, ColumnStats] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "columnStats": {k: asdict(v) for k, v in self.column_stats.items()},
        }


@dataclass
class DataInsight:
    type: str
    title: str
    description: str
    confidence: str = "high"
    column: Optional[str] = None
    details: Optional[dict[str, Any]] = None


def is_numeric_value(value: Any) -> bool:
    """True for finite int/float values; bools are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
        return False
    return math.isfinite(float(value))


def _ordered_columns(rows: List[Row]) -> List[str]:
    columns: List[str] = []
    seen: set[str] = set()
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def get_data_summary(
    rows: List[Row], min_numeric_fraction: float = 0.0
) -> Optional[DataSummary]:
    """
    Return total rows and per-column numeric statistics.

    A column is summarised when it holds at least one numeric value and the
    numeric share of its present values (None and "" count as absent) is at
    least `min_numeric_fraction`. The default 0.0 summarises every column that
    has any numeric value. std is the population standard deviation.
    """
    if not rows:
        return None

    summary = DataSummary(total_rows=len(rows))
    for col in _ordered_columns(rows):
        present = 0
        numeric: List[float] = []
        for row in rows:
            val = row.get(col)
            if val is None or (isinstance(val, str) and val == ""):
                continue
            present += 1
            if is_numeric_value(val):
                numeric.append(float(val))
        if not numeric:
            continue
        if present and (len(numeric) / present) < min_numeric_fraction:
            continue
        arr = np.asarray(numeric, dtype=float)
        summary.column_stats[col] = ColumnStats(
            mean=float(arr.mean()),
            std=float(arr.std(ddof=0)),
            min=float(arr.min()),
            max=float(arr.max()),
            count=int(arr.size),
        )
    return summary


def get_numeric_columns(rows: List[Row]) -> List[str]:
    summary = get_data_summary(rows)
    if summary is None:
        return []
    return list(summary.column_stats.keys())


def get_column_values(rows: List[Row], column: str) -> List[Any]:
    """Values of one column, skipping absent and boolean entries."""
    return [
        row[column]
        for row in rows
        if row.get(column) is not None and not isinstance(row.get(column), bool)
    ]


def calculate_statistics(values: List[float]) -> Optional[dict[str, float]]:
    """Descriptive statistics for a list of numbers (population variance)."""
    if not values:
        return None
    arr = np.asarray(values, dtype=float)
    counts = Counter(arr.tolist())
    # Most frequent value; ties go to the first one encountered
    mode = counts.most_common(1)[0][0]
    minimum = float(arr.min())
    maximum = float(arr.max())
    variance = float(arr.var(ddof=0))
    return {
        "mean": float(arr.mean()),
        "median": float(np.median(arr)),
        "mode": float(mode),
        "min": minimum,
        "max": maximum,
        "range": maximum - minimum,
        "std": math.sqrt(variance),
        "variance": variance,
        "count": int(arr.size),
    }


def generate_data_insights(rows: List[Row]) -> List[DataInsight]:
    """Dataset overview plus one insight per numeric column, capped at MAX_INSIGHTS."""
    summary = get_data_summary(rows)
    if summary is None:
        return []

    columns = _ordered_columns(rows)
    insights = [
        DataInsight(
            type="summary",
            title="Dataset Overview",
            description=f"Your dataset contains {summary.total_rows} rows and {len(columns)} columns.",
        )
    ]
    for col in columns:
        stats = summary.column_stats.get(col)
        if stats is None:
            continue
        insights.append(
            DataInsight(
                type="summary",
                title=f"{col} Stats",
                description=f"Mean: {stats.mean:.2f}, Min: {stats.min:.2f}, Max: {stats.max:.2f}",
                column=col,
                details=asdict(stats),
            )
        )
    return insights[:MAX_INSIGHTS]


def transform_log(rows: List[Row]) -> List[Row]:
    """
    Return copies of rows with `microbe_log = ln(microbe)`.
    Non-positive or missing microbe values give None; `microbe` itself is kept.
    """
    out: List[Row] = []
    for row in rows:
        val = to_finite_float(row.get(MICROBE))
        new_row = dict(row)
        new_row[MICROBE_LOG] = math.log(val) if val is not None and val > 0 else None
        out.append(new_row)
    return out
