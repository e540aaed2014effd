from __future__ import annotations

from typing import Any, Callable, Mapping

import pytest

from track_review.backend import MemoryBackend
from track_review.models import Annotation, GpsFix, MarkerType, Tag, Track
from track_review.store import AnnotationStore

TAGS = [Tag(1, "urgent", "d62728"), Tag(2, "pavement", "8c564b"), Tag(3, "signage", "2ca02c")]
MARKER_TYPES = [MarkerType(1, "Pothole", "pothole.png"), MarkerType(2, "Sign", "sign.png")]


class FlakyBackend(MemoryBackend):
    """MemoryBackend that records calls and can fail the next one on demand."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.calls: list[str] = []
        self.fail_with: Exception | None = None
        self.hook: Callable[[str, Mapping[str, Any] | None], None] | None = None

    def _enter(self, what: str, record: Mapping[str, Any] | None = None) -> None:
        self.calls.append(what)
        if self.hook is not None:
            self.hook(what, record)
        if self.fail_with is not None:
            exc, self.fail_with = self.fail_with, None
            raise exc

    def create_annotation(self, record: Mapping[str, Any]) -> Annotation:
        self._enter("create", record)
        return super().create_annotation(record)

    def update_annotation(self, annotation_id: int, record: Mapping[str, Any]) -> Annotation:
        self._enter("update", record)
        return super().update_annotation(annotation_id, record)

    def delete_annotation(self, annotation_id: int) -> None:
        self._enter("delete")
        super().delete_annotation(annotation_id)

    def upload_attachment(self, data: bytes, name: str) -> str:
        self._enter("upload")
        return super().upload_attachment(data, name)


def make_track(n: int = 4, step_m: float = 100.0, start_offset_km: float = 0.0) -> Track:
    """Fixes every 10 seconds, 0.001 degrees apart."""

    return Track.from_fixes(
        [GpsFix(float(i * 10), 45.0 + i * 0.001, 9.0 + i * 0.001, i * step_m) for i in range(n)],
        start_offset_km,
    )


@pytest.fixture
def backend() -> FlakyBackend:
    return FlakyBackend(tags=TAGS, marker_types=MARKER_TYPES)


@pytest.fixture
def store(backend: FlakyBackend) -> AnnotationStore:
    s = AnnotationStore(backend, project_id=7, user_id=3)
    s.load()
    return s


@pytest.fixture
def track() -> Track:
    return make_track()
