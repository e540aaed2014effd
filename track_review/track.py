"""Playback-time to GPS position resolution and map follow logic."""

from __future__ import annotations

import math
from bisect import bisect_left
from dataclasses import dataclass, field

from track_review.config import DEFAULT_ZOOM, FOCUS_EPSILON_DEG, FOCUS_ZOOM, RECENTER_EPSILON_DEG
from track_review.models import GpsFix, Track


class PositionResolver:
    """Nearest-fix lookup for one track.

    Fixes are pre-sorted by second, so each lookup is a binary search. The
    resolver never raises: an empty track resolves to None and cursors outside
    the recorded range clamp to the first/last fix.
    """

    def __init__(self, track: Track) -> None:
        self._track = track
        self._seconds = [f.second for f in track.fixes]

    @property
    def track(self) -> Track:
        return self._track

    def resolve(self, cursor: float) -> GpsFix | None:
        fixes = self._track.fixes
        if not fixes:
            return None
        if math.isnan(cursor):
            return fixes[0]

        i = bisect_left(self._seconds, cursor)
        if i <= 0:
            return fixes[0]
        if i >= len(fixes):
            return fixes[-1]

        before = fixes[i - 1]
        after = fixes[i]
        # equal distance resolves to the earlier fix
        if cursor - before.second <= after.second - cursor:
            return before
        return after


def resolve_fix(track: Track, cursor: float) -> GpsFix | None:
    """Return the fix whose second is closest to ``cursor`` (ties: smaller second)."""

    return PositionResolver(track).resolve(cursor)


@dataclass(slots=True)
class MapViewport:
    """Map center/zoom as driven by playback and legend selection.

    ``follow`` is called on every resolved fix and only moves the map when the
    position changed by more than ``recenter_epsilon_deg`` on either axis.
    ``focus`` jumps to a selected annotation at ``focus_zoom``.
    """

    center: tuple[float, float] | None = None
    zoom: int = DEFAULT_ZOOM
    recenter_epsilon_deg: float = RECENTER_EPSILON_DEG
    focus_epsilon_deg: float = FOCUS_EPSILON_DEG
    focus_zoom: int = FOCUS_ZOOM
    _last_followed: tuple[float, float] | None = field(default=None, init=False, repr=False)

    def follow(self, fix: GpsFix | None) -> bool:
        """Re-center on ``fix`` unless it is within epsilon of the last followed position.

        Returns:
            True if the map center changed.
        """

        if fix is None:
            return False
        last = self._last_followed
        if (
            last is not None
            and abs(last[0] - fix.lat) <= self.recenter_epsilon_deg
            and abs(last[1] - fix.lon) <= self.recenter_epsilon_deg
        ):
            return False
        self.center = (fix.lat, fix.lon)
        self._last_followed = (fix.lat, fix.lon)
        return True

    def focus(self, lat: float | None, lon: float | None) -> bool:
        """Center on a selected position (legend item) at the focus zoom."""

        if lat is None or lon is None:
            return False
        if (
            self.center is not None
            and abs(self.center[0] - lat) < self.focus_epsilon_deg
            and abs(self.center[1] - lon) < self.focus_epsilon_deg
        ):
            return False
        self.center = (lat, lon)
        self.zoom = self.focus_zoom
        return True

    def reset(self) -> None:
        self._last_followed = None
