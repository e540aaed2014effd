from __future__ import annotations

import pytest

from conftest import FlakyBackend

from track_review.errors import TransportError, ValidationError
from track_review.placement import PlacementDraft, PlacementSession, PlacementState
from track_review.store import AnnotationStore


def _armed(store: AnnotationStore, **kwargs) -> tuple[PlacementSession, list[tuple[float, float]]]:
    captured: list[tuple[float, float]] = []
    session = PlacementSession(store, on_capture=lambda lat, lon: captured.append((lat, lon)), **kwargs)
    assert session.arm() is True
    return session, captured


def test_arm_only_from_idle(store: AnnotationStore) -> None:
    session = PlacementSession(store)
    assert session.cursor == "grab"
    assert session.arm() is True
    assert session.cursor == "crosshair"
    assert session.arm() is False
    assert session.state is PlacementState.ARMED


def test_click_when_idle_is_ignored(store: AnnotationStore) -> None:
    session = PlacementSession(store)
    assert session.click(45.0, 9.0) is False
    assert session.pending_position is None


def test_two_rapid_clicks_capture_once(store: AnnotationStore) -> None:
    session, captured = _armed(store)
    assert session.click(45.0, 9.0) is True
    assert session.click(45.5, 9.5) is False
    assert captured == [(45.0, 9.0)]
    assert session.pending_position == (45.0, 9.0)
    assert session.state is PlacementState.AWAITING_COMMIT


def test_rejected_position_stays_armed(store: AnnotationStore) -> None:
    session, captured = _armed(store, can_place=lambda lat, lon: lat < 50.0)
    assert session.click(51.0, 9.0) is False
    assert session.state is PlacementState.ARMED
    assert session.waiting is False
    assert captured == []
    assert session.click(45.0, 9.0) is True


def test_hover_updates_pointer_label(store: AnnotationStore) -> None:
    session, _ = _armed(store)
    session.hover(45.123456, 9.654321)
    assert session.pointer_label == "Lat: 45.12346, Lng: 9.65432"


def test_commit_creates_at_captured_position(store: AnnotationStore) -> None:
    session, _ = _armed(store)
    session.click(45.2, 9.3)
    created = session.commit(PlacementDraft(comment="bent sign", marker_type_id=2, tag_ids=[3]))
    assert (created.lat, created.lon, created.marker_type_id) == (45.2, 9.3, 2)
    assert created.id in store
    assert session.state is PlacementState.IDLE
    assert session.pending_position is None


def test_failed_commit_keeps_position_for_retry(store: AnnotationStore) -> None:
    session, captured = _armed(store)
    session.click(45.2, 9.3)
    with pytest.raises(ValidationError):
        session.commit(PlacementDraft(marker_type_id=99))
    assert session.state is PlacementState.AWAITING_COMMIT
    assert session.pending_position == (45.2, 9.3)
    assert len(store) == 0

    created = session.commit(PlacementDraft(marker_type_id=1))
    assert (created.lat, created.lon) == (45.2, 9.3)
    assert captured == [(45.2, 9.3)]


def test_retry_reuses_uploaded_attachment(store: AnnotationStore, backend: FlakyBackend) -> None:
    session, _ = _armed(store)
    session.click(45.0, 9.0)
    draft = PlacementDraft(comment="photo", attachment=b"\x89PNG", attachment_name="crack.png")

    def hook(what, record):
        if what == "create" and backend.calls.count("create") == 1:
            raise TransportError("gateway timeout")

    backend.hook = hook
    with pytest.raises(TransportError):
        session.commit(draft)
    assert session.state is PlacementState.AWAITING_COMMIT

    created = session.commit(draft)
    assert backend.calls.count("upload") == 1
    assert backend.calls.count("create") == 2
    assert created.attachment_ref is not None
    assert created.attachment_ref.endswith("crack.png")


def test_retry_with_a_different_attachment_uploads_again(store: AnnotationStore, backend: FlakyBackend) -> None:
    session, _ = _armed(store)
    session.click(45.0, 9.0)

    def hook(what, record):
        if what == "create" and backend.calls.count("create") == 1:
            raise TransportError("gateway timeout")

    backend.hook = hook
    with pytest.raises(TransportError):
        session.commit(PlacementDraft(attachment=b"first", attachment_name="a.png"))

    created = session.commit(PlacementDraft(attachment=b"second", attachment_name="b.png"))
    assert backend.calls.count("upload") == 2
    assert created.attachment_ref is not None
    assert created.attachment_ref.endswith("b.png")


def test_retry_without_attachment_drops_the_earlier_upload(store: AnnotationStore, backend: FlakyBackend) -> None:
    session, _ = _armed(store)
    session.click(45.0, 9.0)
    def hook(what, record):
        if what == "create" and backend.calls.count("create") == 1:
            raise TransportError("down")

    backend.hook = hook
    with pytest.raises(TransportError):
        session.commit(PlacementDraft(attachment=b"x", attachment_name="a.png"))

    created = session.commit(PlacementDraft(comment="no photo after all"))
    assert created.attachment_ref is None


def test_commit_without_capture_raises(store: AnnotationStore) -> None:
    session, _ = _armed(store)
    with pytest.raises(RuntimeError):
        session.commit(PlacementDraft())


def test_teardown_never_leaves_session_armed(store: AnnotationStore) -> None:
    session, _ = _armed(store)
    session.click(45.0, 9.0)
    session.teardown()
    assert session.state is PlacementState.IDLE
    assert session.active is False
    assert session.arm() is True
