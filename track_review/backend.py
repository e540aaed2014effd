"""Persistence boundary: the request/response API the annotation core talks to.

Three implementations share one protocol:

* ``MemoryBackend`` keeps everything in process (tests, demos).
* ``JsonFileBackend`` persists to a JSON snapshot plus an append-only journal,
  so a crash between flushes loses nothing that was acknowledged.
* ``HttpBackend`` talks JSON to the web application's REST endpoints using only
  the standard library.

Every failure is mapped onto the error taxonomy in ``track_review.errors``.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import urllib.error
import urllib.parse
import urllib.request
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Protocol

from track_review.config import HttpConfig
from track_review.errors import ConflictError, TransportError, ValidationError
from track_review.models import Annotation, GpsFix, MarkerType, Tag, Track

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TrackPayload:
    """Fixes of one recorded file plus its display start offset."""

    fixes: tuple[GpsFix, ...]
    start_offset_km: float = 0.0

    def to_track(self) -> Track:
        return Track.from_fixes(self.fixes, self.start_offset_km)


class PersistenceBackend(Protocol):
    def fetch_track(self, file_id: int) -> TrackPayload: ...

    def fetch_annotations(self, project_id: int | None = None) -> list[Annotation]: ...

    def create_annotation(self, record: Mapping[str, Any]) -> Annotation: ...

    def update_annotation(self, annotation_id: int, record: Mapping[str, Any]) -> Annotation: ...

    def delete_annotation(self, annotation_id: int) -> None: ...

    def fetch_tags(self) -> list[Tag]: ...

    def fetch_marker_types(self) -> list[MarkerType]: ...

    def upload_attachment(self, data: bytes, name: str) -> str: ...


def _check_coordinate(record: Mapping[str, Any], name: str) -> None:
    value = record.get(name)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number, got {value!r}", field=name)


class MemoryBackend:
    """In-process persistence boundary.

    Applies the same server-side rules as the web application: coordinates must be
    numbers (or absent) and an annotation that still has replies cannot be deleted.
    """

    def __init__(
        self,
        *,
        tags: Iterable[Tag] = (),
        marker_types: Iterable[MarkerType] = (),
        annotations: Iterable[Annotation] = (),
    ) -> None:
        self._lock = threading.RLock()
        self._tags: dict[int, Tag] = {t.id: t for t in tags}
        self._marker_types: dict[int, MarkerType] = {m.id: m for m in marker_types}
        self._annotations: dict[int, Annotation] = {a.id: a for a in annotations}
        self._tracks: dict[int, TrackPayload] = {}
        self._attachments: dict[str, bytes] = {}
        self._next_id = max(self._annotations, default=0) + 1

    def put_track(self, file_id: int, track: Track) -> None:
        with self._lock:
            self._tracks[int(file_id)] = TrackPayload(fixes=track.fixes, start_offset_km=track.start_offset_km)

    def fetch_track(self, file_id: int) -> TrackPayload:
        with self._lock:
            payload = self._tracks.get(int(file_id))
        if payload is None:
            raise TransportError(f"File {file_id} not found")
        return payload

    def fetch_annotations(self, project_id: int | None = None) -> list[Annotation]:
        with self._lock:
            items = sorted(self._annotations.values(), key=lambda a: a.id)
        if project_id is None:
            return items
        return [a for a in items if a.project_id in (None, project_id)]

    def create_annotation(self, record: Mapping[str, Any]) -> Annotation:
        _check_coordinate(record, "lat")
        _check_coordinate(record, "lon")
        with self._lock:
            new_id = self._next_id
            annotation = Annotation.from_record({**record, "id": new_id})
            self._store(annotation)
            self._next_id = new_id + 1
        return annotation

    def update_annotation(self, annotation_id: int, record: Mapping[str, Any]) -> Annotation:
        _check_coordinate(record, "lat")
        _check_coordinate(record, "lon")
        with self._lock:
            if annotation_id not in self._annotations:
                raise ValidationError(f"Annotation {annotation_id} does not exist", field="id")
            annotation = Annotation.from_record({**record, "id": annotation_id})
            self._store(annotation)
        return annotation

    def delete_annotation(self, annotation_id: int) -> None:
        with self._lock:
            children = [a.id for a in self._annotations.values() if a.parent_id == annotation_id]
            if children:
                raise ConflictError(f"Annotation {annotation_id} still has replies", child_ids=children)
            if annotation_id in self._annotations:
                self._drop(annotation_id)

    def fetch_tags(self) -> list[Tag]:
        with self._lock:
            return sorted(self._tags.values(), key=lambda t: t.id)

    def fetch_marker_types(self) -> list[MarkerType]:
        with self._lock:
            return sorted(self._marker_types.values(), key=lambda m: m.id)

    def upload_attachment(self, data: bytes, name: str) -> str:
        with self._lock:
            ref = f"memory://attachments/{len(self._attachments) + 1}/{Path(name).name}"
            self._attachments[ref] = bytes(data)
        return ref

    def _store(self, annotation: Annotation) -> None:
        self._annotations[annotation.id] = annotation

    def _drop(self, annotation_id: int) -> None:
        del self._annotations[annotation_id]


class JsonFileBackend(MemoryBackend):
    """A small JSON database persisted on disk.

    Layout:
        <name>.json                 snapshot (catalogs, annotations, tracks)
        <name>.journal.jsonl        write-ahead journal of annotation changes
        <name>_attachments/         uploaded attachment files
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        # Example: annotations.json -> annotations.journal.jsonl
        self._journal_path = self._path.with_name(f"{self._path.stem}.journal.jsonl")
        self._attachments_dir = self._path.with_name(f"{self._path.stem}_attachments")
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def set_catalogs(self, *, tags: Iterable[Tag] | None = None, marker_types: Iterable[MarkerType] | None = None) -> None:
        """Replace tag and/or marker-type catalogs and persist the snapshot."""

        with self._lock:
            if tags is not None:
                self._tags = {t.id: t for t in tags}
            if marker_types is not None:
                self._marker_types = {m.id: m for m in marker_types}
        self.flush()

    def put_track(self, file_id: int, track: Track) -> None:
        super().put_track(file_id, track)
        self.flush()

    def upload_attachment(self, data: bytes, name: str) -> str:
        with self._lock:
            safe_name = Path(name).name or "attachment"
            target = self._attachments_dir / f"{uuid.uuid4().hex[:12]}_{safe_name}"
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(bytes(data))
            except OSError as exc:
                raise TransportError(f"Could not store attachment {name!r}: {exc}") from exc
        return target.relative_to(self._path.parent).as_posix()

    def flush(self) -> None:
        """Persist the full snapshot (atomic-ish) and clear the journal."""

        with self._lock:
            snapshot = {
                "nextId": self._next_id,
                "tags": [t.to_record() for t in self._tags.values()],
                "markerTypes": [m.to_record() for m in self._marker_types.values()],
                "annotations": [a.to_record() for a in sorted(self._annotations.values(), key=lambda a: a.id)],
                "tracks": {
                    str(fid): {
                        "startOffsetKm": payload.start_offset_km,
                        "fixes": [f.to_record() for f in payload.fixes],
                    }
                    for fid, payload in self._tracks.items()
                },
            }
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(json.dumps(snapshot, ensure_ascii=False, indent=2), encoding="utf-8")
                tmp.replace(self._path)
            except OSError as exc:
                raise TransportError(f"Could not write {self._path}: {exc}") from exc
            # The snapshot now contains every journaled change.
            self._clear_journal()

    def _store(self, annotation: Annotation) -> None:
        self._append_journal({"op": "put", "v": annotation.to_record()})
        super()._store(annotation)

    def _drop(self, annotation_id: int) -> None:
        self._append_journal({"op": "del", "id": annotation_id})
        super()._drop(annotation_id)

    def _load(self) -> None:
        if self._path.exists():
            text = self._path.read_text(encoding="utf-8").strip()
            if text:
                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    # Snapshot corrupted: keep a backup and start fresh
                    backup = self._path.with_suffix(self._path.suffix + ".broken")
                    backup.write_text(text, encoding="utf-8")
                    logger.warning("Corrupted snapshot %s moved to %s", self._path, backup)
                    data = {}
                self._apply_snapshot(data)

        # Replay journal so that changes acknowledged before a crash survive.
        self._replay_journal()

    def _apply_snapshot(self, data: Mapping[str, Any]) -> None:
        self._tags = {t.id: t for t in (Tag.from_record(r) for r in data.get("tags", []))}
        self._marker_types = {m.id: m for m in (MarkerType.from_record(r) for r in data.get("markerTypes", []))}
        self._annotations = {a.id: a for a in (Annotation.from_record(r) for r in data.get("annotations", []))}
        self._tracks = {
            int(fid): TrackPayload(
                fixes=tuple(GpsFix.from_record(r) for r in payload.get("fixes", [])),
                start_offset_km=float(payload.get("startOffsetKm", 0.0) or 0.0),
            )
            for fid, payload in data.get("tracks", {}).items()
        }
        self._next_id = max(int(data.get("nextId", 1) or 1), max(self._annotations, default=0) + 1)

    def _append_journal(self, record: dict[str, Any]) -> None:
        """Append a single change to the journal before it is applied in memory."""

        try:
            self._journal_path.parent.mkdir(parents=True, exist_ok=True)
            with self._journal_path.open("a", encoding="utf-8", newline="\n") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise TransportError(f"Could not write journal {self._journal_path}: {exc}") from exc

    def _replay_journal(self) -> None:
        """Replay journal entries into memory (best-effort)."""

        if not self._journal_path.exists():
            return
        try:
            with self._journal_path.open("r", encoding="utf-8") as f:
                for line in f:
                    s = line.strip()
                    if not s:
                        continue
                    try:
                        rec = json.loads(s)
                    except json.JSONDecodeError:
                        # ignore broken tail lines
                        continue
                    if rec.get("op") == "put" and isinstance(rec.get("v"), dict):
                        annotation = Annotation.from_record(rec["v"])
                        self._annotations[annotation.id] = annotation
                        self._next_id = max(self._next_id, annotation.id + 1)
                    elif rec.get("op") == "del":
                        self._annotations.pop(int(rec.get("id", 0)), None)
        except OSError:
            logger.warning("Could not read journal %s", self._journal_path)

    def _clear_journal(self) -> None:
        try:
            if self._journal_path.exists():
                self._journal_path.unlink()
        except OSError:
            logger.warning("Could not clear journal %s", self._journal_path)


class HttpBackend:
    """JSON client for the web application's REST API."""

    def __init__(self, config: HttpConfig) -> None:
        self._cfg = config

    def fetch_track(self, file_id: int) -> TrackPayload:
        path = f"/api/file/{int(file_id)}"
        data = self._request("GET", path)
        with _decoding("GET", path):
            fixes = tuple(GpsFix.from_record(r) for r in data.get("gpsPoints", []) or [])
            raw_start = data.get("startPlace")
        try:
            start = float(raw_start or 0.0)
        except (TypeError, ValueError):
            start = 0.0
        return TrackPayload(fixes=fixes, start_offset_km=start)

    def fetch_annotations(self, project_id: int | None = None) -> list[Annotation]:
        query = {"projectId": str(project_id)} if project_id is not None else None
        data = self._request("GET", "/api/point-marker", query=query)
        with _decoding("GET", "/api/point-marker"):
            return [Annotation.from_record(r) for r in data or []]

    def create_annotation(self, record: Mapping[str, Any]) -> Annotation:
        data = self._request("POST", "/api/point-marker", payload=dict(record))
        with _decoding("POST", "/api/point-marker"):
            return Annotation.from_record(data)

    def update_annotation(self, annotation_id: int, record: Mapping[str, Any]) -> Annotation:
        data = self._request("PUT", "/api/point-marker", payload={**record, "id": annotation_id})
        with _decoding("PUT", "/api/point-marker"):
            return Annotation.from_record(data)

    def delete_annotation(self, annotation_id: int) -> None:
        self._request("DELETE", "/api/point-marker", query={"id": str(annotation_id)})

    def fetch_tags(self) -> list[Tag]:
        data = self._request("GET", "/api/tag")
        with _decoding("GET", "/api/tag"):
            return [Tag.from_record(r) for r in data or []]

    def fetch_marker_types(self) -> list[MarkerType]:
        data = self._request("GET", "/api/marker")
        with _decoding("GET", "/api/marker"):
            return [MarkerType.from_record(r) for r in data or []]

    def upload_attachment(self, data: bytes, name: str) -> str:
        res = self._request(
            "POST",
            "/api/upload",
            query={"name": Path(name).name},
            body=bytes(data),
            content_type="application/octet-stream",
        )
        url = res.get("url") if isinstance(res, dict) else None
        if not url:
            raise TransportError(f"Upload of {name!r} returned no url")
        return str(url)

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: Mapping[str, str] | None = None,
        payload: Any = None,
        body: bytes | None = None,
        content_type: str = "application/json",
    ) -> Any:
        url = self._cfg.base_url.rstrip("/") + path
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        if payload is not None:
            body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        headers = {"User-Agent": self._cfg.user_agent, "Accept": "application/json"}
        if body is not None:
            headers["Content-Type"] = content_type
        if self._cfg.auth_token:
            headers["Authorization"] = f"Bearer {self._cfg.auth_token}"
        req = urllib.request.Request(url, data=body, headers=headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self._cfg.timeout_seconds) as resp:  # noqa: S310
                text = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            message = _error_message(exc)
            if exc.code in (400, 422):
                raise ValidationError(message) from exc
            if exc.code == 409:
                raise ConflictError(message) from exc
            raise TransportError(f"{method} {path} failed with HTTP {exc.code}: {message}") from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            # no response is handled exactly like an explicit transport failure
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise TransportError(f"{method} {path} returned invalid JSON") from exc


def _error_message(exc: urllib.error.HTTPError) -> str:
    try:
        raw = exc.read().decode("utf-8", errors="replace")
    except OSError:
        return exc.reason or str(exc.code)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return raw or str(exc.reason)
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return raw


@contextmanager
def _decoding(method: str, path: str) -> Iterator[None]:
    """Turn a malformed 2xx body into a TransportError."""

    try:
        yield
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise TransportError(f"{method} {path} returned an unexpected payload") from exc
