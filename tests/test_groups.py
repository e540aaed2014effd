from __future__ import annotations

from track_review.groups import GroupVisibility, derive_groups
from track_review.models import Annotation, MarkerType

TYPES = {1: MarkerType(1, "Pothole"), 2: MarkerType(2, "Sign")}


def _a(aid: int, marker: int | None) -> Annotation:
    return Annotation(id=aid, lat=45.0, lon=9.0, marker_type_id=marker)


def test_derive_groups_in_first_appearance_order() -> None:
    groups = derive_groups([_a(1, 2), _a(2, None), _a(3, 2), _a(4, 1)], TYPES)
    assert [g.group_id for g in groups] == [2, 0, 1]
    assert [g.name for g in groups] == ["Sign", "Unassigned", "Pothole"]
    assert [g.count for g in groups] == [2, 1, 1]


def test_unknown_marker_type_gets_placeholder_name() -> None:
    (group,) = derive_groups([_a(1, 9)], TYPES)
    assert group.name == "Marker 9"


def test_first_non_empty_observation_shows_everything_once() -> None:
    vis = GroupVisibility()
    vis.observe([], TYPES)
    assert vis.initialized is False
    assert vis.snapshot() == {}

    vis.observe([_a(1, 1), _a(2, None)], TYPES)
    assert vis.initialized is True
    assert vis.snapshot() == {1: True, 0: True}

    vis.set_visible(1, False)
    vis.observe([_a(1, 1), _a(2, None), _a(3, 2)], TYPES)
    assert vis.is_visible(1) is False
    assert vis.is_visible(2) is True
    assert vis.snapshot() == {1: False, 0: True}


def test_hidden_everything_is_not_reinitialized() -> None:
    vis = GroupVisibility()
    vis.observe([_a(1, 1)], TYPES)
    vis.toggle_all()
    vis.observe([_a(1, 1)], TYPES)
    assert vis.is_visible(1) is False


def test_clear_rearms_initialization() -> None:
    vis = GroupVisibility()
    vis.observe([_a(1, 1)], TYPES)
    vis.set_visible(1, False)
    vis.clear()
    vis.observe([_a(1, 1)], TYPES)
    assert vis.is_visible(1) is True


def test_toggle_group_and_all() -> None:
    vis = GroupVisibility()
    items = [_a(1, 1), _a(2, 2), _a(3, None)]
    vis.observe(items, TYPES)
    assert vis.all_visible is True

    assert vis.toggle_all() is False
    assert vis.visible_annotations(items) == []
    assert vis.toggle_all() is True
    assert vis.visible_annotations(items) == items

    assert vis.toggle_group(2) is False
    assert vis.all_visible is False
    assert [a.id for a in vis.visible_annotations(items)] == [1, 3]
    # mixed state: toggle all shows everything
    assert vis.toggle_all() is True
    assert vis.all_visible is True
