"""CSV input utilities for recorded GPS tracks."""

from __future__ import annotations

import csv
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from track_review.geo import cumulative_distances
from track_review.models import GpsFix, Track

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CsvSummary:
    """Quick summary of CSV parsing."""

    rows_total: int
    rows_parsed: int
    rows_skipped: int
    fieldnames: Sequence[str]
    distance_computed: bool = False


def _parse_float(value: str) -> float:
    parsed = float(value.strip())
    if not math.isfinite(parsed):
        raise ValueError(f"not a finite number: {value!r}")
    return parsed


def _parse_second(value: str) -> float:
    second = _parse_float(value)
    if second < 0:
        raise ValueError(f"negative second: {value!r}")
    return second


def load_track(csv_path: str | Path, start_offset_km: float = 0.0) -> tuple[Track, CsvSummary]:
    """Load a whole track CSV into memory.

    When the file has no usable ``totalDistance`` column the cumulative distance
    is computed from the coordinates (haversine). Rows with a non-finite value or a
    negative ``second`` are skipped.

    Args:
        csv_path: Path to the CSV.
        start_offset_km: Kilometer mark where the recording starts.

    Returns:
        (track, summary)
    """

    p = Path(csv_path)
    rows_total = 0
    fieldnames: Sequence[str] = ()
    rows: list[tuple[float, float, float, float | None]] = []

    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        fieldnames = reader.fieldnames or ()
        for row in reader:
            rows_total += 1
            try:
                dist_raw = (row.get("totalDistance") or "").strip()
                rows.append(
                    (
                        _parse_second(row["second"]),
                        _parse_float(row["lat"]),
                        _parse_float(row["lon"]),
                        _parse_float(dist_raw) if dist_raw else None,
                    )
                )
            except (KeyError, ValueError, TypeError, AttributeError):
                continue

    computed = any(r[3] is None for r in rows)
    if computed:
        rows.sort(key=lambda r: r[0])
        distances = cumulative_distances((r[1], r[2]) for r in rows)
        fixes = [GpsFix(r[0], r[1], r[2], d) for r, d in zip(rows, distances)]
    else:
        fixes = [GpsFix(r[0], r[1], r[2], r[3]) for r in rows]  # type: ignore[arg-type]

    summary = CsvSummary(
        rows_total=rows_total,
        rows_parsed=len(rows),
        rows_skipped=rows_total - len(rows),
        fieldnames=fieldnames,
        distance_computed=computed,
    )
    if summary.rows_skipped > 0:
        logger.warning("Skipped %s unparseable rows in %s", summary.rows_skipped, p)
    return Track.from_fixes(fixes, start_offset_km), summary


def write_track(track: Track, out_path: str | Path) -> None:
    """Write a track back to CSV (second, lat, lon, totalDistance)."""

    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=["second", "lat", "lon", "totalDistance"])
        w.writeheader()
        for fix in track.fixes:
            w.writerow(fix.to_record())
