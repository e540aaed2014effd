from __future__ import annotations

import math

from conftest import make_track

from track_review.distance import distance_label, format_distance, search_fixes
from track_review.models import GpsFix, Track


def test_format_distance() -> None:
    assert format_distance(1500) == "1k + 500.00m"
    assert format_distance(999) == "0k + 999.00m"
    assert format_distance(0) == "0k + 0.00m"
    assert format_distance(2999.5) == "2k + 999.50m"
    assert format_distance(12003) == "12k + 3.00m"


def test_format_distance_non_finite_renders_zero() -> None:
    assert format_distance(math.nan) == "0k + 0.00m"
    assert format_distance(math.inf) == "0k + 0.00m"


def test_label_includes_start_offset() -> None:
    t = make_track(start_offset_km=12.0)
    assert distance_label(t, t.fixes[0]) == "12k + 0.00m"
    assert distance_label(t, t.fixes[1]) == "12k + 100.00m"
    assert distance_label(t, None) == ""


def test_search_is_case_insensitive_substring() -> None:
    t = make_track(n=30, step_m=100.0)
    hits = search_fixes(t, "1K + 5")
    assert [f.total_distance for f in hits] == [1500.0]


def test_search_caps_results_in_track_order() -> None:
    t = Track.from_fixes([GpsFix(float(i), 45.0, 9.0, float(i)) for i in range(100)])
    hits = search_fixes(t, "0k")
    assert len(hits) == 30
    assert [f.second for f in hits] == [float(i) for i in range(30)]


def test_search_without_match_or_limit() -> None:
    t = make_track()
    assert search_fixes(t, "99k") == []
    assert search_fixes(t, "0k", limit=0) == []
