"""CSV export/import of annotations.

Export writes the header ``id,lat,lon,comment,markerId,marker,parentId,tags``
where ``marker`` is the marker-type name and ``tags`` the ``;``-joined tag names.
Import is best-effort: every row is an independent create and a failing row is
recorded in the summary without stopping the run.
"""

from __future__ import annotations

import csv
import io
import logging
import math
import warnings
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import reduce
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from track_review.config import EXPORT_FIELDNAMES, TAG_SEPARATOR, ImportPolicy
from track_review.errors import TrackReviewError
from track_review.models import Annotation, AnnotationDraft, MarkerType, Tag
from track_review.store import AnnotationStore

logger = logging.getLogger(__name__)


class EmptyExportWarning(UserWarning):
    """Raised via ``warnings.warn`` when there is nothing to export."""


def export_selection(selected: Sequence[Annotation], filtered: Sequence[Annotation]) -> list[Annotation]:
    """Rows to export: the explicit selection if any, else the filtered view."""

    return list(selected) if selected else list(filtered)


def export_rows(
    annotations: Iterable[Annotation],
    tags: Mapping[int, Tag],
    marker_types: Mapping[int, MarkerType],
) -> list[dict[str, object]]:
    rows: list[dict[str, object]] = []
    for a in annotations:
        marker = marker_types.get(a.marker_type_id) if a.marker_type_id is not None else None
        rows.append(
            {
                "id": a.id,
                "lat": a.lat,
                "lon": a.lon,
                "comment": a.comment,
                "markerId": a.marker_type_id,
                "marker": marker.name if marker is not None else "",
                "parentId": a.parent_id,
                "tags": TAG_SEPARATOR.join(tags[t].name for t in sorted(a.tag_ids) if t in tags),
            }
        )
    return rows


def export_annotations(
    annotations: Sequence[Annotation],
    tags: Mapping[int, Tag],
    marker_types: Mapping[int, MarkerType],
) -> str | None:
    """Serialize annotations to CSV text (LF line endings).

    Returns:
        The CSV text, or None (with an EmptyExportWarning) for an empty selection.
    """

    if not annotations:
        warnings.warn("No annotations to export", EmptyExportWarning, stacklevel=2)
        return None
    buf = io.StringIO()
    w = csv.DictWriter(buf, fieldnames=list(EXPORT_FIELDNAMES), lineterminator="\n")
    w.writeheader()
    w.writerows(export_rows(annotations, tags, marker_types))
    return buf.getvalue()


def write_export(
    out_path: str | Path,
    annotations: Sequence[Annotation],
    tags: Mapping[int, Tag],
    marker_types: Mapping[int, MarkerType],
) -> bool:
    """Write an export file. Returns False (no file written) for an empty selection."""

    text = export_annotations(annotations, tags, marker_types)
    if text is None:
        return False
    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        f.write(text)
    return True


@dataclass(frozen=True, slots=True)
class ImportRow:
    """One parsed CSV row, ready to be created.

    Attributes:
        line: Line number in the source file (header is line 1).
        source_id: The ``id`` column; only used to remap parents within the file.
        source_parent_id: The ``parentId`` column as written in the file.
        draft: Draft without the parent (resolved at create time).
        error: Parse error under a strict policy; such rows are not submitted.
    """

    line: int
    source_id: int | None
    source_parent_id: int | None
    draft: AnnotationDraft
    error: str | None = None


@dataclass(slots=True)
class ImportSummary:
    """Accumulator of an import run."""

    succeeded: int = 0
    failed: int = 0
    created: list[Annotation] = field(default_factory=list)
    errors: list[tuple[int, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed


def _parse_float(value: str | None) -> float | None:
    s = (value or "").strip()
    if not s:
        return None
    try:
        parsed = float(s)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def _parse_int(value: str | None) -> int | None:
    s = (value or "").strip()
    if not s:
        return None
    try:
        parsed = float(s)
    except ValueError:
        return None
    return int(parsed) if math.isfinite(parsed) else None


def parse_import(
    text: str,
    tags: Mapping[int, Tag],
    marker_types: Mapping[int, MarkerType],
    policy: ImportPolicy = ImportPolicy(),
) -> list[ImportRow]:
    """Parse CSV text (CRLF or LF) into import rows.

    Tag names are matched exactly against the catalog. Under the tolerant policy
    unknown tags are dropped and unparseable or non-finite numbers become None; under the strict
    policy such rows carry an ``error`` instead.
    """

    tag_id_by_name = {t.name: t.id for t in tags.values()}
    marker_id_by_name = {m.name: m.id for m in marker_types.values()}

    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff"), newline=""))
    if reader.fieldnames is None:
        return []

    rows: list[ImportRow] = []
    for raw in reader:
        problems: list[str] = []
        lat = _parse_float(raw.get("lat"))
        lon = _parse_float(raw.get("lon"))
        marker_id = _parse_int(raw.get("markerId")) or None
        parent_id = _parse_int(raw.get("parentId"))
        source_id = _parse_int(raw.get("id"))
        for name, parsed in (("lat", lat), ("lon", lon), ("markerId", marker_id), ("parentId", parent_id)):
            value = (raw.get(name) or "").strip()
            if parsed is None and value and value != "0":
                problems.append(f"{name}={value!r} is not a number")

        marker_name = (raw.get("marker") or "").strip()
        if marker_id is not None and marker_id not in marker_types:
            problems.append(f"unknown markerId {marker_id}")
            marker_id = None
        if marker_id is None and marker_name:
            marker_id = marker_id_by_name.get(marker_name)

        tag_names = [t.strip() for t in (raw.get("tags") or "").split(TAG_SEPARATOR) if t.strip()]
        tag_ids = []
        for name in tag_names:
            if name in tag_id_by_name:
                tag_ids.append(tag_id_by_name[name])
            else:
                problems.append(f"unknown tag {name!r}")

        if problems and not policy.strict:
            logger.debug("Line %s imported leniently: %s", reader.line_num, "; ".join(problems))

        rows.append(
            ImportRow(
                line=reader.line_num,
                source_id=source_id,
                source_parent_id=parent_id,
                draft=AnnotationDraft(
                    lat=lat,
                    lon=lon,
                    comment=raw.get("comment") or "",
                    marker_type_id=marker_id,
                    tag_ids=tuple(tag_ids),
                ),
                error="; ".join(problems) if problems and policy.strict else None,
            )
        )
    return rows


class _ParentResolver:
    """Maps parent ids written in the file to ids that exist in the store."""

    def __init__(self, store: AnnotationStore, rows: Sequence[ImportRow], policy: ImportPolicy) -> None:
        self._store = store
        self._policy = policy
        self._file_ids = {r.source_id for r in rows if r.source_id is not None}
        self.id_map: dict[int, int] = {}

    def resolve(self, row: ImportRow) -> int | None:
        pid = row.source_parent_id
        if pid is None:
            return None
        if self._policy.remap_parents:
            if pid in self.id_map:
                return self.id_map[pid]
            if pid in self._file_ids:
                # parent row failed or comes later in the file
                return None
        return pid if pid in self._store else None

    def in_file(self, pid: int | None) -> bool:
        return self._policy.remap_parents and pid is not None and pid in self._file_ids


def _with_parent(row: ImportRow, parent_id: int | None) -> AnnotationDraft:
    d = row.draft
    return AnnotationDraft(
        lat=d.lat,
        lon=d.lon,
        comment=d.comment,
        marker_type_id=d.marker_type_id,
        parent_id=parent_id,
        tag_ids=d.tag_ids,
        attachment_ref=d.attachment_ref,
    )


def _record(
    summary: ImportSummary,
    parents: _ParentResolver,
    row: ImportRow,
    created: Annotation | None,
    error: str | None,
) -> ImportSummary:
    if created is not None:
        summary.succeeded += 1
        summary.created.append(created)
        if row.source_id is not None:
            parents.id_map[row.source_id] = created.id
    else:
        summary.failed += 1
        summary.errors.append((row.line, error or "unknown error"))
        logger.warning("Import line %s failed: %s", row.line, error)
    return summary


def import_annotations(
    store: AnnotationStore,
    text: str,
    policy: ImportPolicy = ImportPolicy(),
    workers: int = 1,
) -> ImportSummary:
    """Create one annotation per CSV row.

    Args:
        store: Target store (catalogs must be loaded for tag/marker resolution).
        text: CSV text.
        policy: Tolerant (default) or strict parsing.
        workers: 1 creates rows one at a time in file order; >1 uses a bounded
            thread pool, still creating a parent row before its replies.

    Returns:
        ImportSummary with succeeded/failed counts and per-line errors.
    """

    rows = parse_import(text, store.tags, store.marker_types, policy)
    parents = _ParentResolver(store, rows, policy)

    if workers <= 1:

        def step(acc: ImportSummary, row: ImportRow) -> ImportSummary:
            if row.error is not None:
                return _record(acc, parents, row, None, row.error)
            try:
                created = store.create(_with_parent(row, parents.resolve(row)))
            except TrackReviewError as exc:
                return _record(acc, parents, row, None, str(exc))
            return _record(acc, parents, row, created, None)

        summary = reduce(step, rows, ImportSummary())
    else:
        summary = _import_parallel(store, rows, parents, workers)

    logger.info("Import finished: %s succeeded, %s failed", summary.succeeded, summary.failed)
    return summary


def _import_parallel(
    store: AnnotationStore,
    rows: Sequence[ImportRow],
    parents: _ParentResolver,
    workers: int,
) -> ImportSummary:
    summary = ImportSummary()
    pending = list(rows)
    done_ids: set[int] = set()

    with ThreadPoolExecutor(max_workers=workers) as executor:
        while pending:
            # a row waits while its parent row from the same file is still pending
            ready = [
                r
                for r in pending
                if not parents.in_file(r.source_parent_id)
                or r.source_parent_id in done_ids
                or r.source_parent_id == r.source_id
            ]
            if not ready:
                ready = pending  # parent loop inside the file: those parents resolve to None
            ready_ids = {id(r) for r in ready}
            pending = [r for r in pending if id(r) not in ready_ids]

            futures: list[tuple[ImportRow, Future[Annotation] | None]] = []
            for row in ready:
                if row.error is not None:
                    futures.append((row, None))
                else:
                    futures.append((row, executor.submit(store.create, _with_parent(row, parents.resolve(row)))))

            for row, fut in futures:
                if fut is None:
                    _record(summary, parents, row, None, row.error)
                else:
                    try:
                        _record(summary, parents, row, fut.result(), None)
                    except TrackReviewError as exc:
                        _record(summary, parents, row, None, str(exc))
                if row.source_id is not None:
                    done_ids.add(row.source_id)
    return summary
