"""In-memory mirror of persisted annotations.

The store is the single validation point for annotation drafts. Every mutation
goes through the persistence boundary first; the mirror only changes after the
boundary acknowledged it, so a failed request leaves the store untouched.
"""

from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator, Sequence

from track_review.backend import PersistenceBackend
from track_review.errors import AnnotationBusyError, ConflictError, TrackReviewError, TransportError, ValidationError
from track_review.geo import haversine_m
from track_review.models import Annotation, AnnotationDraft, AnnotationPatch, MarkerType, Tag

logger = logging.getLogger(__name__)


class ChildPolicy(str, Enum):
    """What ``remove`` does with replies of the removed annotation."""

    ABORT = "abort"
    DETACH = "detach"
    CASCADE = "cascade"


@dataclass(frozen=True, slots=True)
class AnnotationFilter:
    """Selection criteria for ``AnnotationStore.list``.

    ``marker_type_ids=None`` disables the marker-type filter, while an empty set
    selects nothing. Annotations without a marker type match group id 0.
    """

    marker_type_ids: frozenset[int] | None = None
    tag_ids: frozenset[int] | None = None
    ids: frozenset[int] | None = None
    parent_id: int | None = None
    roots_only: bool = False
    text: str = ""

    def matches(self, annotation: Annotation) -> bool:
        if self.marker_type_ids is not None and annotation.group_id not in self.marker_type_ids:
            return False
        if self.tag_ids is not None and not (annotation.tag_ids & self.tag_ids):
            return False
        if self.ids is not None and annotation.id not in self.ids:
            return False
        if self.parent_id is not None and annotation.parent_id != self.parent_id:
            return False
        if self.roots_only and annotation.parent_id is not None:
            return False
        if self.text and self.text.strip().lower() not in annotation.comment.lower():
            return False
        return True


def parse_coordinate(value: Any, name: str) -> float | None:
    """Parse a form/import coordinate.

    Returns:
        The float value, or None when the field is empty.

    Raises:
        ValidationError: If the value is not a finite number.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number, got {value!r}", field=name)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            parsed = float(s)
        except ValueError as exc:
            raise ValidationError(f"{name} must be a number, got {value!r}", field=name) from exc
    elif isinstance(value, (int, float)):
        parsed = float(value)
    else:
        raise ValidationError(f"{name} must be a number, got {value!r}", field=name)
    if not math.isfinite(parsed):
        raise ValidationError(f"{name} must be finite, got {value!r}", field=name)
    return parsed


class AnnotationStore:
    """Annotation mirror for one project.

    Args:
        backend: Persistence boundary.
        project_id: Project the annotations belong to (sent with new records).
        user_id: Current user, recorded as author of new annotations.
        is_privileged: Session flag, exposed for callers deciding what to offer.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        *,
        project_id: int | None = None,
        user_id: int | None = None,
        is_privileged: bool = False,
    ) -> None:
        self._backend = backend
        self.project_id = project_id
        self.user_id = user_id
        self.is_privileged = is_privileged
        self._lock = threading.RLock()
        self._annotations: dict[int, Annotation] = {}
        self._tags: dict[int, Tag] = {}
        self._marker_types: dict[int, MarkerType] = {}
        self._in_flight: set[int] = set()

    # ------------------------------------------------------------------ loading

    def load(self) -> None:
        """Fetch catalogs and annotations, replacing the mirror."""

        self.refresh_catalogs()
        items = self._backend.fetch_annotations(self.project_id)
        with self._lock:
            self._annotations = {a.id: a for a in items}
        logger.info("Loaded %s annotations", len(items))

    def refresh_catalogs(self) -> None:
        tags = self._backend.fetch_tags()
        marker_types = self._backend.fetch_marker_types()
        with self._lock:
            self._tags = {t.id: t for t in tags}
            self._marker_types = {m.id: m for m in marker_types}

    @property
    def tags(self) -> dict[int, Tag]:
        return dict(self._tags)

    @property
    def marker_types(self) -> dict[int, MarkerType]:
        return dict(self._marker_types)

    @property
    def backend(self) -> PersistenceBackend:
        return self._backend

    # ------------------------------------------------------------------ queries

    def __len__(self) -> int:
        return len(self._annotations)

    def __contains__(self, annotation_id: object) -> bool:
        return annotation_id in self._annotations

    def get(self, annotation_id: int) -> Annotation | None:
        return self._annotations.get(annotation_id)

    def list(self, annotation_filter: AnnotationFilter | None = None) -> list[Annotation]:
        with self._lock:
            items = sorted(self._annotations.values(), key=lambda a: a.id)
        if annotation_filter is None:
            return items
        return [a for a in items if annotation_filter.matches(a)]

    def children(self, annotation_id: int) -> list[Annotation]:
        return self.list(AnnotationFilter(parent_id=annotation_id))

    def thread(self, annotation_id: int) -> list[Annotation]:
        """Return the annotation followed by its replies, depth first."""

        root = self.get(annotation_id)
        if root is None:
            return []
        out: list[Annotation] = []
        seen: set[int] = set()

        def walk(node: Annotation) -> None:
            if node.id in seen:
                return
            seen.add(node.id)
            out.append(node)
            for child in self.children(node.id):
                walk(child)

        walk(root)
        return out

    def ancestors(self, annotation_id: int) -> list[int]:
        """Parent chain of an annotation, nearest first. Stops at a repeated id."""

        chain: list[int] = []
        seen = {annotation_id}
        current = self.get(annotation_id)
        while current is not None and current.parent_id is not None:
            pid = current.parent_id
            if pid in seen:
                break
            chain.append(pid)
            seen.add(pid)
            current = self.get(pid)
        return chain

    def near(self, lat: float, lon: float, radius_m: float) -> list[Annotation]:
        """Annotations within ``radius_m`` of a position, nearest first."""

        hits: list[tuple[float, int, Annotation]] = []
        for a in self.list():
            if not a.has_position:
                continue
            d = haversine_m(lat, lon, a.lat, a.lon)  # type: ignore[arg-type]
            if d <= radius_m:
                hits.append((d, a.id, a))
        hits.sort(key=lambda h: (h[0], h[1]))
        return [h[2] for h in hits]

    def tag_names(self, annotation: Annotation) -> list[str]:
        return [self._tags[t].name for t in sorted(annotation.tag_ids) if t in self._tags]

    # ---------------------------------------------------------------- mutations

    def create(self, draft: AnnotationDraft) -> Annotation:
        """Validate a draft and persist it as a new annotation.

        Raises:
            ValidationError: Bad coordinates, unknown marker type or parent.
            TransportError: The persistence boundary failed.
        """

        fields = self._validate(
            {
                "lat": draft.lat,
                "lon": draft.lon,
                "comment": draft.comment,
                "marker_type_id": draft.marker_type_id,
                "parent_id": draft.parent_id,
                "tag_ids": draft.tag_ids,
                "attachment_ref": draft.attachment_ref,
            },
            annotation_id=None,
        )
        record = self._to_record(fields, created_by_id=self.user_id)
        created = self._call("create", lambda: self._backend.create_annotation(record))
        with self._lock:
            self._annotations[created.id] = created
        logger.debug("Created annotation %s", created.id)
        return created

    def update(self, annotation_id: int, patch: AnnotationPatch) -> Annotation:
        """Apply a partial update to an existing annotation."""

        with self._mutating(annotation_id):
            current = self.get(annotation_id)
            if current is None:
                raise ValidationError(f"Annotation {annotation_id} does not exist", field="id")
            merged: dict[str, Any] = {
                "lat": current.lat,
                "lon": current.lon,
                "comment": current.comment,
                "marker_type_id": current.marker_type_id,
                "parent_id": current.parent_id,
                "tag_ids": current.tag_ids,
                "attachment_ref": current.attachment_ref,
            }
            changes = patch.changed_fields()
            merged.update(changes)
            fields = self._validate(merged, annotation_id=annotation_id, check_parent="parent_id" in changes)
            record = self._to_record(fields, created_by_id=current.created_by_id)
            updated = self._call("update", lambda: self._backend.update_annotation(annotation_id, record))
            with self._lock:
                self._annotations[updated.id] = updated
        return updated

    def reply(
        self,
        parent_id: int,
        comment: str,
        tag_ids: Sequence[int] = (),
        attachment_ref: str | None = None,
    ) -> Annotation:
        """Create a reply anchored at the parent's position and marker type."""

        parent = self.get(parent_id)
        if parent is None:
            raise ValidationError(f"Annotation {parent_id} does not exist", field="parentId")
        return self.create(
            AnnotationDraft(
                lat=parent.lat,
                lon=parent.lon,
                comment=comment,
                marker_type_id=parent.marker_type_id,
                parent_id=parent_id,
                tag_ids=tag_ids,
                attachment_ref=attachment_ref,
            )
        )

    def upload_attachment(self, data: bytes, name: str) -> str:
        return self._call("upload", lambda: self._backend.upload_attachment(data, name))

    def remove(self, annotation_id: int, children: ChildPolicy = ChildPolicy.ABORT) -> list[int]:
        """Delete an annotation.

        Args:
            annotation_id: Annotation to delete.
            children: What to do when replies reference it. ``ABORT`` raises
                ConflictError, ``DETACH`` clears their parent, ``CASCADE`` deletes
                the whole reply tree. Each detach is acknowledged on its own, so a
                failure partway keeps the parent and the replies detached so far;
                calling ``remove`` again finishes the job.

        Returns:
            Ids that were deleted, in deletion order.
        """

        policy = ChildPolicy(children)
        with self._mutating(annotation_id):
            if annotation_id not in self._annotations:
                raise ValidationError(f"Annotation {annotation_id} does not exist", field="id")
            kids = self.children(annotation_id)
            if kids and policy is ChildPolicy.ABORT:
                raise ConflictError(
                    f"Annotation {annotation_id} has {len(kids)} replies; detach or cascade explicitly",
                    child_ids=[k.id for k in kids],
                )

            deleted: list[int] = []
            if policy is ChildPolicy.DETACH:
                detached: list[int] = []
                try:
                    for kid in kids:
                        self.update(kid.id, AnnotationPatch(parent_id=None))
                        detached.append(kid.id)
                except TrackReviewError:
                    logger.warning(
                        "Detach of replies to %s stopped after %s; parent kept",
                        annotation_id,
                        detached or "none",
                    )
                    raise
            elif policy is ChildPolicy.CASCADE:
                # leaves first, so the boundary never sees a parent with replies
                for node in reversed(self.thread(annotation_id)[1:]):
                    with self._mutating(node.id):
                        self._delete_one(node.id)
                    deleted.append(node.id)

            self._delete_one(annotation_id)
            deleted.append(annotation_id)
        return deleted

    # ---------------------------------------------------------------- internals

    def _delete_one(self, annotation_id: int) -> None:
        self._call("delete", lambda: self._backend.delete_annotation(annotation_id))
        with self._lock:
            self._annotations.pop(annotation_id, None)
        logger.debug("Deleted annotation %s", annotation_id)

    @contextmanager
    def _mutating(self, annotation_id: int) -> Iterator[None]:
        with self._lock:
            if annotation_id in self._in_flight:
                raise AnnotationBusyError(f"Annotation {annotation_id} has a pending change")
            self._in_flight.add(annotation_id)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(annotation_id)

    def _call(self, what: str, fn: Any) -> Any:
        try:
            return fn()
        except ValidationError as exc:
            logger.debug("%s rejected: %s", what, exc)
            raise
        except TransportError as exc:
            logger.warning("%s failed: %s", what, exc)
            raise

    def _validate(
        self,
        fields: dict[str, Any],
        annotation_id: int | None,
        check_parent: bool = True,
    ) -> dict[str, Any]:
        lat = parse_coordinate(fields.get("lat"), "lat")
        lon = parse_coordinate(fields.get("lon"), "lon")

        marker_type_id = fields.get("marker_type_id") or None
        if marker_type_id is not None:
            try:
                marker_type_id = int(marker_type_id)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid marker type {marker_type_id!r}", field="markerId") from exc
            if marker_type_id not in self._marker_types:
                raise ValidationError(f"Unknown marker type {marker_type_id}", field="markerId")

        parent_id = fields.get("parent_id")
        if parent_id is not None:
            try:
                parent_id = int(parent_id)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid parent id {parent_id!r}", field="parentId") from exc
        if parent_id is not None and check_parent:
            if parent_id not in self._annotations:
                raise ValidationError(f"Parent annotation {parent_id} does not exist", field="parentId")
            if annotation_id is not None:
                if parent_id == annotation_id:
                    raise ValidationError("An annotation cannot reply to itself", field="parentId")
                if annotation_id in self.ancestors(parent_id):
                    raise ValidationError(
                        f"Parent {parent_id} is a reply of {annotation_id}; that would create a cycle",
                        field="parentId",
                    )

        return {
            "lat": lat,
            "lon": lon,
            "comment": str(fields.get("comment") or ""),
            "marker_type_id": marker_type_id,
            "parent_id": parent_id,
            "tag_ids": self._known_tag_ids(fields.get("tag_ids") or ()),
            "attachment_ref": fields.get("attachment_ref") or None,
        }

    def _known_tag_ids(self, tag_ids: Iterable[Any]) -> list[int]:
        known: set[int] = set()
        for raw in tag_ids:
            try:
                tid = int(raw)
            except (TypeError, ValueError):
                continue
            if tid in self._tags:
                known.add(tid)
        return sorted(known)

    def _to_record(self, fields: dict[str, Any], created_by_id: int | None) -> dict[str, Any]:
        return {
            "lat": fields["lat"],
            "lon": fields["lon"],
            "comment": fields["comment"],
            "markerId": fields["marker_type_id"],
            "parentId": fields["parent_id"],
            "tags": fields["tag_ids"],
            "urlFile": fields["attachment_ref"],
            "projectId": self.project_id,
            "createdById": created_by_id,
        }
