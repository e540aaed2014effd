"""Distance readout formatting and distance-based fix search."""

from __future__ import annotations

import math

from track_review.config import SEARCH_LIMIT
from track_review.models import GpsFix, Track


def format_distance(meters: float) -> str:
    """Render a cumulative distance as ``"<km>k + <m>m"``.

    ``km`` is ``floor(meters / 1000)`` and the part after the plus sign is the
    remainder ``meters mod 1000`` with two decimals, e.g. 1500 -> "1k + 500.00m".
    Non-finite input renders as zero.
    """

    if not math.isfinite(meters):
        meters = 0.0
    km = math.floor(meters / 1000.0)
    rest = math.fmod(meters, 1000.0)
    return f"{km}k + {rest:.2f}m"


def track_distance(track: Track, fix: GpsFix) -> float:
    """Displayed distance of ``fix`` in meters, including the track's start offset."""

    return track.start_offset_km * 1000.0 + fix.total_distance


def distance_label(track: Track, fix: GpsFix | None) -> str:
    if fix is None:
        return ""
    return format_distance(track_distance(track, fix))


def search_fixes(track: Track, query: str, limit: int = SEARCH_LIMIT) -> list[GpsFix]:
    """Find fixes whose formatted distance contains ``query`` (case-insensitive).

    Recomputed from the full fix list on every call; tracks are single-file
    recordings so no incremental index is kept.

    Args:
        track: Loaded track.
        query: Free text typed by the operator, e.g. "12k + 3".
        limit: Maximum number of matches.

    Returns:
        Matching fixes in track order.
    """

    q = query.strip().lower()
    out: list[GpsFix] = []
    if limit <= 0:
        return out
    for fix in track.fixes:
        if q in format_distance(track_distance(track, fix)).lower():
            out.append(fix)
            if len(out) >= limit:
                break
    return out
