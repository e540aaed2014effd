"""Data models for track fixes, annotations and their catalogs."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Final, Iterable, Mapping, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GpsFix:
    """A single GPS sample of a recording.

    Attributes:
        second: Playback time in seconds from the start of the video.
        lat: Latitude in decimal degrees.
        lon: Longitude in decimal degrees.
        total_distance: Cumulative meters from the track start.
    """

    second: float
    lat: float
    lon: float
    total_distance: float

    @property
    def is_usable(self) -> bool:
        values = (self.second, self.lat, self.lon, self.total_distance)
        return all(math.isfinite(v) for v in values) and self.second >= 0

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> GpsFix:
        return cls(
            second=float(record["second"]),
            lat=float(record["lat"]),
            lon=float(record["lon"]),
            total_distance=float(record.get("totalDistance", 0.0) or 0.0),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "second": self.second,
            "lat": self.lat,
            "lon": self.lon,
            "totalDistance": self.total_distance,
        }


@dataclass(slots=True)
class Track:
    """Ordered GPS fixes of one recording.

    The fix tuple never changes after load. ``start_offset_km`` is the kilometer
    mark where the recording starts; it only affects how distances are displayed.
    """

    fixes: tuple[GpsFix, ...] = ()
    start_offset_km: float = 0.0

    @classmethod
    def from_fixes(cls, fixes: Iterable[GpsFix], start_offset_km: float = 0.0) -> Track:
        """Build a track, enforcing ascending unique seconds and monotonic distance.

        Fixes with a non-finite value or a negative second are dropped. Duplicate
        seconds keep the first fix. A distance lower than its predecessor is raised
        to the running maximum.
        """

        given = list(fixes)
        ordered = sorted((f for f in given if f.is_usable), key=lambda f: f.second)
        invalid = len(given) - len(ordered)
        out: list[GpsFix] = []
        dropped = 0
        clamped = 0
        for fix in ordered:
            if out and fix.second == out[-1].second:
                dropped += 1
                continue
            if out and fix.total_distance < out[-1].total_distance:
                fix = GpsFix(fix.second, fix.lat, fix.lon, out[-1].total_distance)
                clamped += 1
            out.append(fix)
        if invalid:
            logger.warning("Dropped %s fixes with non-finite values or a negative second", invalid)
        if dropped:
            logger.warning("Dropped %s fixes with duplicate seconds", dropped)
        if clamped:
            logger.warning("Clamped %s fixes whose totalDistance decreased", clamped)
        return cls(fixes=tuple(out), start_offset_km=float(start_offset_km or 0.0))

    def __len__(self) -> int:
        return len(self.fixes)

    def __bool__(self) -> bool:
        return bool(self.fixes)

    @property
    def seconds(self) -> list[float]:
        return [f.second for f in self.fixes]

    @property
    def duration_seconds(self) -> float:
        if not self.fixes:
            return 0.0
        return self.fixes[-1].second - self.fixes[0].second

    @property
    def total_meters(self) -> float:
        if not self.fixes:
            return 0.0
        return self.fixes[-1].total_distance


@dataclass(frozen=True, slots=True)
class MarkerType:
    """Catalog entry describing a kind of marker (icon + name)."""

    id: int
    name: str
    icon_ref: str = ""

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> MarkerType:
        return cls(id=int(record["id"]), name=str(record.get("name", "")), icon_ref=str(record.get("icon", "") or ""))

    def to_record(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "icon": self.icon_ref}


@dataclass(frozen=True, slots=True)
class Tag:
    """Catalog tag. ``color`` is a hex string without the leading '#'."""

    id: int
    name: str
    color: str = ""

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Tag:
        return cls(id=int(record["id"]), name=str(record.get("name", "")), color=str(record.get("color", "") or ""))

    def to_record(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "color": self.color}


def _tag_ids_from_record(raw: Any) -> frozenset[int]:
    if not raw:
        return frozenset()
    ids: set[int] = set()
    for item in raw:
        if isinstance(item, Mapping):
            item = item.get("id")
        try:
            ids.add(int(item))
        except (TypeError, ValueError):
            continue
    return frozenset(ids)


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _opt_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True, slots=True)
class Annotation:
    """A geo-anchored note (point marker).

    Attributes:
        id: Identifier assigned by the persistence layer.
        lat: Latitude, or None when the anchor is absent (tolerant import).
        lon: Longitude, or None when the anchor is absent.
        comment: Free text, may be empty.
        marker_type_id: MarkerType id, None for "no type" (legend group 0).
        parent_id: Weak reference to the annotation this one replies to.
        tag_ids: Ids of catalog tags.
        attachment_ref: Opaque reference returned by an attachment upload.
    """

    id: int
    lat: float | None
    lon: float | None
    comment: str = ""
    marker_type_id: int | None = None
    parent_id: int | None = None
    tag_ids: frozenset[int] = field(default_factory=frozenset)
    attachment_ref: str | None = None
    project_id: int | None = None
    created_by_id: int | None = None

    @property
    def group_id(self) -> int:
        """Legend group key; annotations without a marker type fall into group 0."""

        return self.marker_type_id or 0

    @property
    def has_position(self) -> bool:
        return self.lat is not None and self.lon is not None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Annotation:
        return cls(
            id=int(record["id"]),
            lat=_opt_float(record.get("lat")),
            lon=_opt_float(record.get("lon")),
            comment=str(record.get("comment") or ""),
            marker_type_id=_opt_int(record.get("markerId")),
            parent_id=_opt_int(record.get("parentId")),
            tag_ids=_tag_ids_from_record(record.get("tags")),
            attachment_ref=record.get("urlFile") or None,
            project_id=_opt_int(record.get("projectId")),
            created_by_id=_opt_int(record.get("createdById")),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lat": self.lat,
            "lon": self.lon,
            "comment": self.comment,
            "markerId": self.marker_type_id,
            "parentId": self.parent_id,
            "tags": sorted(self.tag_ids),
            "urlFile": self.attachment_ref,
            "projectId": self.project_id,
            "createdById": self.created_by_id,
        }


@dataclass(frozen=True, slots=True)
class AnnotationDraft:
    """Unvalidated input for a new annotation.

    Form fields arrive as text, so ``lat``/``lon`` may be strings here. The
    annotation store is the only place that validates a draft.
    """

    lat: float | str | None = None
    lon: float | str | None = None
    comment: str = ""
    marker_type_id: int | None = None
    parent_id: int | None = None
    tag_ids: Sequence[int] = ()
    attachment_ref: str | None = None


class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Final = _Unset()


@dataclass(frozen=True, slots=True)
class AnnotationPatch:
    """Partial update. Fields left as ``UNSET`` are untouched, ``None`` clears."""

    lat: Any = UNSET
    lon: Any = UNSET
    comment: Any = UNSET
    marker_type_id: Any = UNSET
    parent_id: Any = UNSET
    tag_ids: Any = UNSET
    attachment_ref: Any = UNSET

    def changed_fields(self) -> dict[str, Any]:
        names = ("lat", "lon", "comment", "marker_type_id", "parent_id", "tag_ids", "attachment_ref")
        return {n: getattr(self, n) for n in names if getattr(self, n) is not UNSET}


NO_GROUP_ID: Final[int] = 0
