"""CSV input for exported track files."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from route_guard.models import TracePoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CsvSummary:
    """Quick summary of CSV parsing."""

    rows_total: int
    rows_parsed: int
    rows_skipped: int
    fieldnames: Sequence[str]


def _parse_optional_float(value: str | None, sentinel: float | None = None) -> float | None:
    if value is None or not value.strip():
        return None
    v = float(value.strip())
    if sentinel is not None and v == sentinel:
        return None
    return v


def _row_to_point(row: dict[str, str]) -> TracePoint:
    return TracePoint(
        latitude=float(row["latitude"].strip()),
        longitude=float(row["longitude"].strip()),
        timestamp=int(row["geoTime"].strip()),
        accuracy=_parse_optional_float(row.get("horizontalAccuracy"), sentinel=-1.0),
        altitude=_parse_optional_float(row.get("altitude")),
        speed=_parse_optional_float(row.get("speed"), sentinel=-1.0),
    )


def load_trace_points(csv_path: str | Path) -> tuple[list[TracePoint], CsvSummary]:
    """Load all samples sorted by time.

    Args:
        csv_path: Path to the exported CSV. Required columns: geoTime (epoch ms),
            latitude, longitude. Optional: altitude, speed, horizontalAccuracy
            (-1 means "not reported").

    Returns:
        (points, summary)

    Raises:
        KeyError: If a required column is missing.
    """

    p = Path(csv_path)
    rows_total = 0
    parsed: list[TracePoint] = []

    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        fieldnames: Sequence[str] = reader.fieldnames or ()
        missing = [c for c in ("geoTime", "latitude", "longitude") if c not in fieldnames]
        if missing:
            raise KeyError(f"CSV缺少必要字段：{missing}. 实际字段：{list(fieldnames)}")
        for row in reader:
            rows_total += 1
            try:
                parsed.append(_row_to_point(row))
            except (KeyError, ValueError, TypeError, AttributeError):
                # 某些行可能损坏/空行，直接跳过
                continue

    parsed.sort(key=lambda pt: pt.timestamp)
    summary = CsvSummary(
        rows_total=rows_total,
        rows_parsed=len(parsed),
        rows_skipped=rows_total - len(parsed),
        fieldnames=fieldnames,
    )
    if summary.rows_skipped > 0:
        logger.warning("CSV中有 %s 行解析失败已跳过", summary.rows_skipped)
    return parsed, summary


def split_journeys(points: Sequence[TracePoint], max_gap_seconds: float) -> list[list[TracePoint]]:
    """Split a long recording into journeys wherever the sampling gap exceeds the limit."""

    journeys: list[list[TracePoint]] = []
    current: list[TracePoint] = []
    for pt in points:
        if current and (pt.timestamp - current[-1].timestamp) / 1000.0 > max_gap_seconds:
            journeys.append(current)
            current = []
        current.append(pt)
    if current:
        journeys.append(current)
    return journeys
