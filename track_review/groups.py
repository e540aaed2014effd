"""Legend groups (one per marker type) and their show/hide state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from track_review.models import NO_GROUP_ID, Annotation, MarkerType


@dataclass(frozen=True, slots=True)
class Group:
    """Annotations sharing a marker type. ``group_id`` 0 collects untyped ones."""

    group_id: int
    marker_type: MarkerType | None
    annotations: tuple[Annotation, ...]

    @property
    def name(self) -> str:
        if self.marker_type is not None:
            return self.marker_type.name
        return "Unassigned" if self.group_id == NO_GROUP_ID else f"Marker {self.group_id}"

    @property
    def count(self) -> int:
        return len(self.annotations)


def derive_groups(
    annotations: Iterable[Annotation],
    marker_types: Mapping[int, MarkerType] | None = None,
) -> list[Group]:
    """Group annotations by marker type, in order of first appearance."""

    buckets: dict[int, list[Annotation]] = {}
    for a in annotations:
        buckets.setdefault(a.group_id, []).append(a)
    types = marker_types or {}
    return [Group(group_id=gid, marker_type=types.get(gid), annotations=tuple(items)) for gid, items in buckets.items()]


class GroupVisibility:
    """Per-group visibility with a one-shot "everything visible" initialization.

    The visibility map starts empty. The first ``observe`` that derives at least
    one group while the map is still empty marks every group visible. That happens
    once; later groups are visible until toggled and earlier choices are kept.
    ``clear`` re-arms the initialization.
    """

    def __init__(self) -> None:
        self._visible: dict[int, bool] = {}
        self._groups: list[Group] = []
        self._initialized = False

    @property
    def groups(self) -> list[Group]:
        return list(self._groups)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def observe(
        self,
        annotations: Iterable[Annotation],
        marker_types: Mapping[int, MarkerType] | None = None,
    ) -> list[Group]:
        self._groups = derive_groups(annotations, marker_types)
        if self._groups and not self._visible and not self._initialized:
            self._visible = {g.group_id: True for g in self._groups}
            self._initialized = True
        return self.groups

    def is_visible(self, group_id: int) -> bool:
        return self._visible.get(group_id, True)

    def set_visible(self, group_id: int, visible: bool) -> None:
        self._visible[group_id] = bool(visible)

    def toggle_group(self, group_id: int) -> bool:
        """Flip one group. Returns its new visibility."""

        new_state = not self.is_visible(group_id)
        self._visible[group_id] = new_state
        return new_state

    @property
    def all_visible(self) -> bool:
        return bool(self._groups) and all(self.is_visible(g.group_id) for g in self._groups)

    def toggle_all(self) -> bool:
        """Hide every group if all are visible, otherwise show every group."""

        new_state = not self.all_visible
        for g in self._groups:
            self._visible[g.group_id] = new_state
        return new_state

    def visible_annotations(self, annotations: Iterable[Annotation]) -> list[Annotation]:
        return [a for a in annotations if self.is_visible(a.group_id)]

    def snapshot(self) -> dict[int, bool]:
        return dict(self._visible)

    def clear(self) -> None:
        self._visible = {}
        self._initialized = False
