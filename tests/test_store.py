from __future__ import annotations

import math
from typing import Any, Mapping

import pytest

from conftest import FlakyBackend

from track_review.errors import AnnotationBusyError, ConflictError, TransportError, ValidationError
from track_review.models import AnnotationDraft, AnnotationPatch
from track_review.store import AnnotationFilter, AnnotationStore, ChildPolicy, parse_coordinate


def _draft(**kwargs: Any) -> AnnotationDraft:
    base: dict[str, Any] = {"lat": 45.0, "lon": 9.0, "comment": "crack"}
    base.update(kwargs)
    return AnnotationDraft(**base)


def test_create_assigns_id_and_records_author(store: AnnotationStore) -> None:
    a = store.create(_draft(marker_type_id=1, tag_ids=[1, 2]))
    assert a.id in store
    assert store.get(a.id) == a
    assert a.project_id == 7
    assert a.created_by_id == 3
    assert a.tag_ids == frozenset({1, 2})
    assert store.tag_names(a) == ["urgent", "pavement"]


def test_create_accepts_numeric_strings(store: AnnotationStore) -> None:
    a = store.create(_draft(lat=" 45.5 ", lon="9.25"))
    assert (a.lat, a.lon) == (45.5, 9.25)


@pytest.mark.parametrize(
    ("lat", "lon", "field"),
    [("abc", 9.0, "lat"), (45.0, "x9", "lon"), (math.inf, 9.0, "lat"), (45.0, math.nan, "lon"), (True, 9.0, "lat")],
)
def test_create_rejects_bad_coordinates_before_any_request(
    store: AnnotationStore, backend: FlakyBackend, lat: Any, lon: Any, field: str
) -> None:
    with pytest.raises(ValidationError) as excinfo:
        store.create(_draft(lat=lat, lon=lon))
    assert excinfo.value.field == field
    assert backend.calls == []
    assert len(store) == 0


def test_empty_coordinates_are_absent(store: AnnotationStore) -> None:
    a = store.create(_draft(lat="", lon=None))
    assert a.has_position is False
    assert parse_coordinate("  ", "lat") is None


def test_marker_type_rules(store: AnnotationStore) -> None:
    with pytest.raises(ValidationError) as excinfo:
        store.create(_draft(marker_type_id=99))
    assert excinfo.value.field == "markerId"
    assert store.create(_draft(marker_type_id=0)).marker_type_id is None


def test_unknown_tags_are_dropped(store: AnnotationStore) -> None:
    a = store.create(_draft(tag_ids=[1, 42, "x"]))
    assert a.tag_ids == frozenset({1})


def test_unknown_parent_is_rejected(store: AnnotationStore) -> None:
    with pytest.raises(ValidationError) as excinfo:
        store.create(_draft(parent_id=1234))
    assert excinfo.value.field == "parentId"


def test_non_numeric_parent_is_a_validation_error(store: AnnotationStore) -> None:
    with pytest.raises(ValidationError) as excinfo:
        store.create(_draft(parent_id="abc"))
    assert excinfo.value.field == "parentId"


def test_transport_failure_leaves_store_unchanged(store: AnnotationStore, backend: FlakyBackend) -> None:
    backend.fail_with = TransportError("connection reset")
    with pytest.raises(TransportError):
        store.create(_draft())
    assert len(store) == 0

    a = store.create(_draft())
    backend.fail_with = TransportError("timeout")
    with pytest.raises(TransportError):
        store.update(a.id, AnnotationPatch(comment="changed"))
    assert store.get(a.id).comment == "crack"

    backend.fail_with = TransportError("timeout")
    with pytest.raises(TransportError):
        store.remove(a.id)
    assert a.id in store


def test_update_applies_only_given_fields(store: AnnotationStore) -> None:
    a = store.create(_draft(marker_type_id=1, tag_ids=[1]))
    b = store.update(a.id, AnnotationPatch(comment="deep crack"))
    assert b.comment == "deep crack"
    assert (b.lat, b.lon, b.marker_type_id, b.tag_ids) == (a.lat, a.lon, 1, frozenset({1}))
    c = store.update(a.id, AnnotationPatch(marker_type_id=None))
    assert c.marker_type_id is None


def test_update_missing_annotation(store: AnnotationStore) -> None:
    with pytest.raises(ValidationError):
        store.update(404, AnnotationPatch(comment="x"))


def test_parent_cycles_are_rejected(store: AnnotationStore) -> None:
    a = store.create(_draft())
    b = store.create(_draft(parent_id=a.id))
    c = store.create(_draft(parent_id=b.id))
    with pytest.raises(ValidationError):
        store.update(a.id, AnnotationPatch(parent_id=c.id))
    with pytest.raises(ValidationError):
        store.update(a.id, AnnotationPatch(parent_id=a.id))
    assert store.ancestors(c.id) == [b.id, a.id]
    assert [x.id for x in store.thread(a.id)] == [a.id, b.id, c.id]


def test_remove_aborts_when_replies_exist(store: AnnotationStore) -> None:
    a = store.create(_draft())
    b = store.create(_draft(parent_id=a.id))
    with pytest.raises(ConflictError) as excinfo:
        store.remove(a.id)
    assert excinfo.value.child_ids == (b.id,)
    assert a.id in store and b.id in store


def test_remove_detach_clears_parent(store: AnnotationStore) -> None:
    a = store.create(_draft())
    b = store.create(_draft(parent_id=a.id))
    assert store.remove(a.id, ChildPolicy.DETACH) == [a.id]
    assert a.id not in store
    assert store.get(b.id).parent_id is None


def test_remove_cascade_deletes_leaves_first(store: AnnotationStore) -> None:
    a = store.create(_draft())
    b = store.create(_draft(parent_id=a.id))
    c = store.create(_draft(parent_id=b.id))
    other = store.create(_draft())
    assert store.remove(a.id, "cascade") == [c.id, b.id, a.id]
    assert [x.id for x in store.list()] == [other.id]


def test_remove_detach_failure_keeps_parent_and_can_be_resumed(store: AnnotationStore, backend: FlakyBackend) -> None:
    a = store.create(_draft())
    b = store.create(_draft(parent_id=a.id))
    c = store.create(_draft(parent_id=a.id))

    def hook(what, record):
        if what == "update" and backend.calls.count("update") == 2:
            raise TransportError("connection reset")

    backend.hook = hook
    with pytest.raises(TransportError):
        store.remove(a.id, ChildPolicy.DETACH)
    assert a.id in store
    assert store.get(b.id).parent_id is None
    assert store.get(c.id).parent_id == a.id

    assert store.remove(a.id, ChildPolicy.DETACH) == [a.id]
    assert store.get(c.id).parent_id is None


def test_second_mutation_of_same_annotation_is_refused_while_pending(
    store: AnnotationStore, backend: FlakyBackend
) -> None:
    a = store.create(_draft())
    refused: list[type[Exception]] = []

    def hook(what: str, record: Mapping[str, Any] | None) -> None:
        if what == "update":
            with pytest.raises(AnnotationBusyError) as excinfo:
                store.update(a.id, AnnotationPatch(comment="second"))
            refused.append(type(excinfo.value))

    backend.hook = hook
    store.update(a.id, AnnotationPatch(comment="first"))
    assert refused == [AnnotationBusyError]
    assert store.get(a.id).comment == "first"
    assert backend.calls.count("update") == 1


def test_reply_inherits_position_and_marker(store: AnnotationStore) -> None:
    a = store.create(_draft(lat=45.1, lon=9.1, marker_type_id=2))
    r = store.reply(a.id, "fixed on monday", tag_ids=[3])
    assert (r.lat, r.lon, r.marker_type_id, r.parent_id) == (45.1, 9.1, 2, a.id)
    assert store.children(a.id) == [r]


def test_list_filters(store: AnnotationStore) -> None:
    a = store.create(_draft(marker_type_id=1, tag_ids=[1], comment="Pothole near exit"))
    b = store.create(_draft(tag_ids=[2]))
    c = store.create(_draft(marker_type_id=2, parent_id=a.id))
    assert store.list(AnnotationFilter(marker_type_ids=frozenset({0}))) == [b]
    assert store.list(AnnotationFilter(marker_type_ids=frozenset())) == []
    assert store.list(AnnotationFilter(tag_ids=frozenset({1, 2}))) == [a, b]
    assert store.list(AnnotationFilter(roots_only=True)) == [a, b]
    assert store.list(AnnotationFilter(parent_id=a.id)) == [c]
    assert store.list(AnnotationFilter(text="EXIT")) == [a]


def test_near_orders_by_distance(store: AnnotationStore) -> None:
    far = store.create(_draft(lat=45.001, lon=9.0))
    close = store.create(_draft(lat=45.0001, lon=9.0))
    store.create(_draft(lat=None, lon=None))
    assert store.near(45.0, 9.0, 25.0) == [close]
    assert store.near(45.0, 9.0, 200.0) == [close, far]


def test_load_replaces_mirror(backend: FlakyBackend) -> None:
    first = AnnotationStore(backend, project_id=7)
    first.load()
    first.create(_draft())
    second = AnnotationStore(backend, project_id=7)
    second.load()
    assert len(second) == 1
    assert second.marker_types[1].name == "Pothole"
    assert second.tags[3].color == "2ca02c"
