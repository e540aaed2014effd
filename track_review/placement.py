"""Interactive "click the map to add an annotation" mode."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Sequence

from track_review.errors import TransportError, ValidationError
from track_review.models import Annotation, AnnotationDraft
from track_review.store import AnnotationStore

logger = logging.getLogger(__name__)


class PlacementState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    AWAITING_COMMIT = "awaiting_commit"


@dataclass(frozen=True, slots=True)
class PlacementDraft:
    """What the operator typed into the creation form.

    The position comes from the captured click, not from the form.
    """

    comment: str = ""
    tag_ids: Sequence[int] = ()
    marker_type_id: int | None = None
    attachment: bytes | None = None
    attachment_name: str = ""


@dataclass(slots=True)
class PlacementSession:
    """State machine: IDLE -> ARMED -> AWAITING_COMMIT -> IDLE.

    Args:
        store: Annotation store receiving the new annotation on commit.
        on_capture: Called with (lat, lon) when a click was captured; opens the form.
        can_place: Optional predicate rejecting positions (e.g. outside the project area).
    """

    store: AnnotationStore
    on_capture: Callable[[float, float], None] | None = None
    can_place: Callable[[float, float], bool] | None = None
    state: PlacementState = PlacementState.IDLE
    pending_position: tuple[float, float] | None = None
    pointer_position: tuple[float, float] | None = None
    waiting: bool = False
    _attachment_ref: str | None = field(default=None, init=False, repr=False)
    _attachment_key: tuple[str, str] | None = field(default=None, init=False, repr=False)

    @property
    def active(self) -> bool:
        return self.state is not PlacementState.IDLE

    @property
    def cursor(self) -> str:
        """CSS cursor for the map container."""

        return "crosshair" if self.state is PlacementState.ARMED else "grab"

    @property
    def pointer_label(self) -> str:
        if self.pointer_position is None:
            return ""
        lat, lon = self.pointer_position
        label = f"Lat: {lat:.5f}, Lng: {lon:.5f}"
        return f"{label} (validating...)" if self.waiting else label

    def arm(self) -> bool:
        """Enter add mode. Returns False (no-op) if a placement is already in progress."""

        if self.state is not PlacementState.IDLE:
            return False
        self.state = PlacementState.ARMED
        self.pending_position = None
        self.pointer_position = None
        self.waiting = False
        self._attachment_ref = None
        self._attachment_key = None
        return True

    def hover(self, lat: float, lon: float) -> None:
        if self.state is PlacementState.ARMED:
            self.pointer_position = (lat, lon)

    def click(self, lat: float, lon: float) -> bool:
        """Capture a map click. Returns True if the click became the pending position."""

        if self.state is not PlacementState.ARMED or self.waiting:
            return False
        self.waiting = True
        if self.can_place is not None and not self.can_place(lat, lon):
            logger.info("Placement rejected at %.5f, %.5f", lat, lon)
            self.waiting = False
            return False
        self.pending_position = (lat, lon)
        self.state = PlacementState.AWAITING_COMMIT
        self.waiting = False
        if self.on_capture is not None:
            self.on_capture(lat, lon)
        return True

    def commit(self, draft: PlacementDraft) -> Annotation:
        """Create the annotation at the captured position.

        On failure the session stays in AWAITING_COMMIT with its position, so the
        operator can fix the form and retry without clicking again.

        Raises:
            RuntimeError: No position has been captured.
            ValidationError: The store rejected the draft.
            TransportError: Upload or create failed.
        """

        if self.state is not PlacementState.AWAITING_COMMIT or self.pending_position is None:
            raise RuntimeError("No captured position to commit")
        lat, lon = self.pending_position

        try:
            attachment_ref = self._upload(draft)
            created = self.store.create(
                AnnotationDraft(
                    lat=lat,
                    lon=lon,
                    comment=draft.comment,
                    marker_type_id=draft.marker_type_id,
                    tag_ids=draft.tag_ids,
                    attachment_ref=attachment_ref,
                )
            )
        except (ValidationError, TransportError):
            logger.info("Placement commit failed; keeping captured position")
            raise

        self._reset()
        return created

    def _upload(self, draft: PlacementDraft) -> str | None:
        """Upload the attachment once; a retry with the same file reuses the reference."""

        if draft.attachment is None:
            return None
        name = draft.attachment_name or "attachment"
        key = (name, hashlib.sha256(draft.attachment).hexdigest())
        if self._attachment_ref is None or self._attachment_key != key:
            self._attachment_ref = self.store.upload_attachment(draft.attachment, name)
            self._attachment_key = key
        return self._attachment_ref

    def cancel(self) -> None:
        self._reset()

    def teardown(self) -> None:
        """Called when the hosting view goes away; never leaves the session armed."""

        if self.active:
            logger.debug("Tearing down placement session in state %s", self.state.value)
        self._reset()

    def _reset(self) -> None:
        self.state = PlacementState.IDLE
        self.pending_position = None
        self.pointer_position = None
        self.waiting = False
        self._attachment_ref = None
        self._attachment_key = None
