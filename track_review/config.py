"""Configuration objects and defaults."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

SEARCH_LIMIT: Final[int] = 30
RECENTER_EPSILON_DEG: Final[float] = 1e-4
FOCUS_EPSILON_DEG: Final[float] = 1e-5
FOCUS_ZOOM: Final[int] = 18
DEFAULT_ZOOM: Final[int] = 15
NEARBY_RADIUS_M: Final[float] = 25.0

EXPORT_FIELDNAMES: Final[tuple[str, ...]] = (
    "id",
    "lat",
    "lon",
    "comment",
    "markerId",
    "marker",
    "parentId",
    "tags",
)
TAG_SEPARATOR: Final[str] = ";"


@dataclass(frozen=True, slots=True)
class ViewerConfig:
    """Parameters of the file view (map follow, search, proximity readout)."""

    # Map follow is suppressed for moves smaller than this on both axes (sub-meter jitter).
    recenter_epsilon_deg: float = RECENTER_EPSILON_DEG
    # Legend selection does not re-center when the map already sits on the item.
    focus_epsilon_deg: float = FOCUS_EPSILON_DEG
    focus_zoom: int = FOCUS_ZOOM
    default_zoom: int = DEFAULT_ZOOM
    search_limit: int = SEARCH_LIMIT
    nearby_radius_m: float = NEARBY_RADIUS_M


@dataclass(frozen=True, slots=True)
class ImportPolicy:
    """How forgiving CSV import is.

    The tolerant default turns unparseable numbers into absent values and drops
    unknown tag names. ``strict=True`` fails such rows instead.
    """

    strict: bool = False
    remap_parents: bool = True


@dataclass(frozen=True, slots=True)
class HttpConfig:
    """Configuration for the REST persistence boundary."""

    base_url: str = "http://localhost:3000"
    timeout_seconds: float = 20.0
    user_agent: str = "track-review/0.1.0"
    auth_token: str | None = None
