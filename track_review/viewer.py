"""File view: playback cursor, map, legend and annotation tools for one recording."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from track_review.backend import PersistenceBackend
from track_review.config import ViewerConfig
from track_review.distance import distance_label, search_fixes
from track_review.groups import Group, GroupVisibility
from track_review.models import Annotation, GpsFix, Track
from track_review.placement import PlacementDraft, PlacementSession
from track_review.store import AnnotationStore
from track_review.track import MapViewport, PositionResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CursorReadout:
    """What the map shows for the current playback time."""

    cursor: float
    fix: GpsFix | None
    distance: str
    recentered: bool
    nearby: tuple[Annotation, ...] = ()

    @property
    def lines(self) -> list[str]:
        if self.fix is None:
            return []
        return [
            f"Lat: {self.fix.lat:.5f}",
            f"Lon: {self.fix.lon:.5f}",
            f"Dist: {self.distance}",
        ]


class ReviewSession:
    """Everything the file view keeps while it is open.

    Args:
        track: Loaded recording.
        store: Annotation store of the recording's project (already loaded).
        config: Viewer parameters.
        on_capture: Called when a placement click was captured (opens the form).
        can_place: Optional predicate that rejects placement positions.
    """

    def __init__(
        self,
        track: Track,
        store: AnnotationStore,
        config: ViewerConfig = ViewerConfig(),
        *,
        on_capture: Callable[[float, float], None] | None = None,
        can_place: Callable[[float, float], bool] | None = None,
    ) -> None:
        self.track = track
        self.store = store
        self.config = config
        self._resolver = PositionResolver(track)
        self.groups = GroupVisibility()
        first = track.fixes[0] if track.fixes else None
        self.viewport = MapViewport(
            center=(first.lat, first.lon) if first is not None else None,
            zoom=config.default_zoom,
            recenter_epsilon_deg=config.recenter_epsilon_deg,
            focus_epsilon_deg=config.focus_epsilon_deg,
            focus_zoom=config.focus_zoom,
        )
        self.placement = PlacementSession(store, on_capture=on_capture, can_place=can_place)
        self.cursor = 0.0
        self.selected_annotation_id: int | None = None
        self.closed = False
        self.refresh_groups()

    @classmethod
    def open(
        cls,
        backend: PersistenceBackend,
        file_id: int,
        *,
        project_id: int | None = None,
        user_id: int | None = None,
        is_privileged: bool = False,
        config: ViewerConfig = ViewerConfig(),
    ) -> ReviewSession:
        """Fetch the recording and its project's annotations and open a view on them."""

        track = backend.fetch_track(file_id).to_track()
        store = AnnotationStore(backend, project_id=project_id, user_id=user_id, is_privileged=is_privileged)
        store.load()
        logger.info("Opened file %s: %s fixes, %s annotations", file_id, len(track), len(store))
        return cls(track, store, config)

    @property
    def start_offset_km(self) -> float:
        return self.track.start_offset_km

    @start_offset_km.setter
    def start_offset_km(self, value: float) -> None:
        self.track.start_offset_km = float(value)

    # ----------------------------------------------------------------- playback

    def seek(self, cursor: float) -> CursorReadout:
        """Handle a playback-time update from the video surface."""

        self.cursor = cursor
        fix = self._resolver.resolve(cursor)
        recentered = self.viewport.follow(fix)
        nearby: tuple[Annotation, ...] = ()
        if fix is not None:
            nearby = tuple(self.store.near(fix.lat, fix.lon, self.config.nearby_radius_m))
        return CursorReadout(
            cursor=cursor,
            fix=fix,
            distance=distance_label(self.track, fix),
            recentered=recentered,
            nearby=nearby,
        )

    def jump_to_fix(self, fix: GpsFix) -> CursorReadout:
        """Clicking a track point (or picking a search result) moves playback there."""

        return self.seek(fix.second)

    def search(self, query: str) -> list[tuple[GpsFix, str]]:
        """Distance search suggestions as (fix, label) pairs."""

        return [(f, distance_label(self.track, f)) for f in search_fixes(self.track, query, self.config.search_limit)]

    # ------------------------------------------------------------------- legend

    def refresh_groups(self) -> list[Group]:
        return self.groups.observe(self.store.list(), self.store.marker_types)

    def visible_annotations(self) -> list[Annotation]:
        return self.groups.visible_annotations(self.store.list())

    def select_annotation(self, annotation_id: int) -> bool:
        """Focus the map on a legend item. Returns True if the map moved."""

        annotation = self.store.get(annotation_id)
        if annotation is None:
            return False
        self.selected_annotation_id = annotation_id
        return self.viewport.focus(annotation.lat, annotation.lon)

    # ---------------------------------------------------------------- placement

    def commit_placement(self, draft: PlacementDraft) -> Annotation:
        created = self.placement.commit(draft)
        self.refresh_groups()
        return created

    def close(self) -> None:
        """Tear the view down; an armed placement does not survive navigation."""

        self.placement.teardown()
        self.closed = True
