"""Command-line interface for track_review.

Run:
    python -m track_review locate --track track.csv --time 42.5
    python -m track_review import --store annotations.json --csv markers.csv
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import warnings
from pathlib import Path

from track_review.backend import HttpBackend, JsonFileBackend, PersistenceBackend
from track_review.config import SEARCH_LIMIT, HttpConfig, ImportPolicy
from track_review.csv_io import load_track
from track_review.distance import distance_label, search_fixes
from track_review.errors import ConflictError, TransportError, ValidationError
from track_review.groups import GroupVisibility
from track_review.models import MarkerType, Tag
from track_review.store import AnnotationFilter, AnnotationStore, ChildPolicy
from track_review.track import resolve_fix
from track_review.transfer import EmptyExportWarning, export_selection, import_annotations, write_export


def _backend(args: argparse.Namespace) -> PersistenceBackend:
    if args.api:
        return HttpBackend(HttpConfig(base_url=args.api, timeout_seconds=args.timeout, auth_token=args.token))
    return JsonFileBackend(args.store)


def _store(args: argparse.Namespace) -> AnnotationStore:
    store = AnnotationStore(_backend(args), project_id=args.project_id, user_id=args.user_id)
    store.load()
    return store


def _id_set(values: list[int] | None) -> frozenset[int] | None:
    return frozenset(values) if values is not None else None


def _cmd_locate(args: argparse.Namespace) -> int:
    track, summary = load_track(args.track, args.start_km)
    fix = resolve_fix(track, args.time)
    if fix is None:
        print("No position: the track has no fixes")
        return 1
    print(f"second={fix.second}, lat={fix.lat:.5f}, lon={fix.lon:.5f}")
    print(f"distance={distance_label(track, fix)}")
    if summary.rows_skipped:
        print(f"(skipped {summary.rows_skipped} unparseable rows)", file=sys.stderr)
    return 0


def _cmd_search(args: argparse.Namespace) -> int:
    track, _ = load_track(args.track, args.start_km)
    matches = search_fixes(track, args.query, args.limit)
    for fix in matches:
        print(f"{distance_label(track, fix)}\tsecond={fix.second}\tlat={fix.lat:.5f}\tlon={fix.lon:.5f}")
    if not matches:
        print("No matching distance", file=sys.stderr)
    return 0


def _cmd_load_track(args: argparse.Namespace) -> int:
    track, summary = load_track(args.track, args.start_km)
    backend = JsonFileBackend(args.store)
    backend.put_track(args.file_id, track)
    print(f"Stored file {args.file_id}: fixes={len(track)}, skipped={summary.rows_skipped}")
    if summary.distance_computed:
        print("totalDistance was missing and has been computed from coordinates")
    return 0


def _cmd_catalog(args: argparse.Namespace) -> int:
    backend = JsonFileBackend(args.store)
    tags = None
    marker_types = None
    if args.tags:
        tags = [Tag.from_record(r) for r in json.loads(Path(args.tags).read_text(encoding="utf-8"))]
    if args.markers:
        marker_types = [MarkerType.from_record(r) for r in json.loads(Path(args.markers).read_text(encoding="utf-8"))]
    backend.set_catalogs(tags=tags, marker_types=marker_types)
    print(f"Catalogs: tags={len(backend.fetch_tags())}, marker types={len(backend.fetch_marker_types())}")
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    store = _store(args)
    items = store.list(AnnotationFilter(marker_type_ids=_id_set(args.marker_type), tag_ids=_id_set(args.tag), text=args.text))
    for a in items:
        marker = store.marker_types.get(a.marker_type_id or 0)
        print(
            f"{a.id}\t{a.lat}\t{a.lon}\t{marker.name if marker else '-'}\t"
            f"parent={a.parent_id or '-'}\ttags={','.join(store.tag_names(a))}\t{a.comment}"
        )
    print(f"### {len(items)} annotations")
    return 0


def _cmd_legend(args: argparse.Namespace) -> int:
    store = _store(args)
    groups = GroupVisibility()
    for g in groups.observe(store.list(), store.marker_types):
        mark = "x" if groups.is_visible(g.group_id) else " "
        print(f"[{mark}] {g.group_id}\t{g.name}\t{g.count}")
    return 0


def _cmd_export(args: argparse.Namespace) -> int:
    store = _store(args)
    filtered = store.list(AnnotationFilter(marker_type_ids=_id_set(args.marker_type), tag_ids=_id_set(args.tag)))
    selected = store.list(AnnotationFilter(ids=_id_set(args.ids))) if args.ids else []
    rows = export_selection(selected, filtered)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", EmptyExportWarning)
        written = write_export(args.out, rows, store.tags, store.marker_types)
    for w in caught:
        print(f"Warning: {w.message}", file=sys.stderr)
    if written:
        print(f"Exported {len(rows)} annotations to {args.out}")
    return 0


def _cmd_import(args: argparse.Namespace) -> int:
    store = _store(args)
    text = Path(args.csv).read_text(encoding="utf-8")
    summary = import_annotations(
        store,
        text,
        ImportPolicy(strict=args.strict, remap_parents=not args.keep_parent_ids),
        workers=args.workers,
    )
    print(f"Imported: succeeded={summary.succeeded}, failed={summary.failed}")
    for line, error in summary.errors:
        print(f"  line {line}: {error}", file=sys.stderr)
    return 0 if summary.failed == 0 else 1


def _cmd_delete(args: argparse.Namespace) -> int:
    store = _store(args)
    deleted = store.remove(args.id, ChildPolicy(args.children))
    print(f"Deleted: {', '.join(str(i) for i in deleted)}")
    return 0


def _add_backend_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--store", type=str, default="annotations.json", help="JSON store file (local backend)")
    p.add_argument("--api", type=str, default=None, help="Base URL of the web application (HTTP backend)")
    p.add_argument("--token", type=str, default=None, help="Bearer token for the HTTP backend")
    p.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout in seconds")
    p.add_argument("--project-id", type=int, default=None, help="Project whose annotations are used")
    p.add_argument("--user-id", type=int, default=None, help="Author id recorded on new annotations")


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    p = argparse.ArgumentParser(prog="track_review")
    p.add_argument("--log-level", type=str, default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_loc = sub.add_parser("locate", help="Resolve a playback time to the nearest GPS fix")
    p_loc.add_argument("--track", type=str, required=True, help="Track CSV (second,lat,lon[,totalDistance])")
    p_loc.add_argument("--time", type=float, required=True, help="Playback time in seconds")
    p_loc.add_argument("--start-km", type=float, default=0.0, help="Kilometer mark of the track start")
    p_loc.set_defaults(func=_cmd_locate)

    p_srch = sub.add_parser("search", help="Find fixes by formatted distance, e.g. '12k + 3'")
    p_srch.add_argument("--track", type=str, required=True, help="Track CSV")
    p_srch.add_argument("--query", type=str, required=True, help="Substring of the distance label")
    p_srch.add_argument("--start-km", type=float, default=0.0, help="Kilometer mark of the track start")
    p_srch.add_argument("--limit", type=int, default=SEARCH_LIMIT, help="Maximum number of matches")
    p_srch.set_defaults(func=_cmd_search)

    p_lt = sub.add_parser("load-track", help="Store a track CSV in the local JSON store")
    p_lt.add_argument("--store", type=str, default="annotations.json", help="JSON store file")
    p_lt.add_argument("--track", type=str, required=True, help="Track CSV")
    p_lt.add_argument("--file-id", type=int, required=True, help="File id the track belongs to")
    p_lt.add_argument("--start-km", type=float, default=0.0, help="Kilometer mark of the track start")
    p_lt.set_defaults(func=_cmd_load_track)

    p_cat = sub.add_parser("catalog", help="Replace tag / marker-type catalogs of the local JSON store")
    p_cat.add_argument("--store", type=str, default="annotations.json", help="JSON store file")
    p_cat.add_argument("--tags", type=str, default=None, help="JSON list of {id,name,color}")
    p_cat.add_argument("--markers", type=str, default=None, help="JSON list of {id,name,icon}")
    p_cat.set_defaults(func=_cmd_catalog)

    p_ls = sub.add_parser("list", help="List annotations")
    _add_backend_args(p_ls)
    p_ls.add_argument("--marker-type", type=int, action="append", default=None, help="Marker type id (repeatable, 0 = none)")
    p_ls.add_argument("--tag", type=int, action="append", default=None, help="Tag id (repeatable)")
    p_ls.add_argument("--text", type=str, default="", help="Substring of the comment")
    p_ls.set_defaults(func=_cmd_list)

    p_lg = sub.add_parser("legend", help="Show legend groups (annotations per marker type)")
    _add_backend_args(p_lg)
    p_lg.set_defaults(func=_cmd_legend)

    p_exp = sub.add_parser("export", help="Export annotations to CSV")
    _add_backend_args(p_exp)
    p_exp.add_argument("--out", type=str, default="annotations.csv", help="Output CSV path")
    p_exp.add_argument("--marker-type", type=int, action="append", default=None, help="Marker type filter (repeatable)")
    p_exp.add_argument("--tag", type=int, action="append", default=None, help="Tag filter (repeatable)")
    p_exp.add_argument("--ids", type=int, nargs="+", default=None, help="Explicit selection of annotation ids")
    p_exp.set_defaults(func=_cmd_export)

    p_imp = sub.add_parser("import", help="Import annotations from CSV (one create per row)")
    _add_backend_args(p_imp)
    p_imp.add_argument("--csv", type=str, required=True, help="CSV with id,lat,lon,comment,markerId,marker,parentId,tags")
    p_imp.add_argument("--strict", action="store_true", help="Fail rows with unparseable numbers or unknown tags")
    p_imp.add_argument(
        "--keep-parent-ids",
        action="store_true",
        help="Do not remap parentId to rows of the same file (keep ids that exist in the store)",
    )
    p_imp.add_argument("--workers", type=int, default=1, help="Concurrent create requests (1 = sequential)")
    p_imp.set_defaults(func=_cmd_import)

    p_del = sub.add_parser("delete", help="Delete an annotation")
    _add_backend_args(p_del)
    p_del.add_argument("--id", type=int, required=True, help="Annotation id")
    p_del.add_argument(
        "--children",
        type=str,
        default=ChildPolicy.ABORT.value,
        choices=[c.value for c in ChildPolicy],
        help="What to do with replies: abort (default), detach or cascade",
    )
    p_del.set_defaults(func=_cmd_delete)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    try:
        return int(args.func(args))
    except ValidationError as exc:
        where = f" ({exc.field})" if exc.field else ""
        print(f"Invalid input{where}: {exc}", file=sys.stderr)
        return 2
    except ConflictError as exc:
        print(f"Conflict: {exc}", file=sys.stderr)
        if exc.child_ids:
            print("Re-run with --children detach or --children cascade", file=sys.stderr)
        return 3
    except TransportError as exc:
        print(f"Persistence failed (retry later): {exc}", file=sys.stderr)
        return 4


if __name__ == "__main__":
    raise SystemExit(main())
