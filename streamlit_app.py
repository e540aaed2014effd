from __future__ import annotations

import streamlit as st

from track_review.backend import HttpBackend, JsonFileBackend, PersistenceBackend
from track_review.config import HttpConfig, ImportPolicy
from track_review.errors import ConflictError, TrackReviewError, TransportError, ValidationError
from track_review.models import Annotation
from track_review.placement import PlacementDraft, PlacementState
from track_review.store import ChildPolicy
from track_review.transfer import export_annotations, import_annotations
from track_review.viewer import ReviewSession


TRACK_COLOR = "#1f77b4"
CURSOR_COLOR = "#d62728"
DEFAULT_MARKER_COLOR = "#ff7f0e"


def _hhmmss(seconds: float) -> str:
    s = int(round(max(0.0, seconds)))
    h = s // 3600
    m = (s % 3600) // 60
    sec = s % 60
    return f"{h:02d}:{m:02d}:{sec:02d}"


def _backend(store_path: str, api_url: str, token: str) -> PersistenceBackend:
    if api_url.strip():
        return HttpBackend(HttpConfig(base_url=api_url.strip(), auth_token=token or None))
    return JsonFileBackend(store_path)


def _open_session(store_path: str, api_url: str, token: str, file_id: int, project_id: int | None) -> ReviewSession | None:
    """Return the session for the selected file, reopening it when the selection changed."""

    key = (store_path, api_url, int(file_id), project_id)
    current: ReviewSession | None = st.session_state.get("review")
    if current is not None and st.session_state.get("review_key") == key:
        return current
    if current is not None:
        current.close()
    try:
        session = ReviewSession.open(_backend(store_path, api_url, token), int(file_id), project_id=project_id)
    except TrackReviewError as exc:
        st.session_state.pop("review", None)
        st.error(f"Could not open file {file_id}: {exc}")
        return None
    st.session_state["review"] = session
    st.session_state["review_key"] = key
    st.session_state.pop("cursor", None)
    for k in [k for k in st.session_state if str(k).startswith("group_")]:
        del st.session_state[k]
    return session


def _toggle_all(session: ReviewSession) -> None:
    new_state = session.groups.toggle_all()
    for g in session.groups.groups:
        st.session_state[f"group_{g.group_id}"] = new_state


def _annotation_label(session: ReviewSession, a: Annotation) -> str:
    marker = session.store.marker_types.get(a.marker_type_id or 0)
    head = a.comment.splitlines()[0] if a.comment else "(no comment)"
    return f"#{a.id} {marker.name if marker else '-'}: {head[:40]}"


def _map_data(session: ReviewSession, cursor_fix_lat: float | None, cursor_fix_lon: float | None) -> dict[str, list]:
    data: dict[str, list] = {"lat": [], "lon": [], "color": [], "size": []}
    for fix in session.track.fixes:
        data["lat"].append(fix.lat)
        data["lon"].append(fix.lon)
        data["color"].append(TRACK_COLOR)
        data["size"].append(2)
    tags = session.store.tags
    for a in session.visible_annotations():
        if not a.has_position:
            continue
        color = DEFAULT_MARKER_COLOR
        for tid in sorted(a.tag_ids):
            if tid in tags and tags[tid].color:
                color = f"#{tags[tid].color.lstrip('#')}"
                break
        data["lat"].append(a.lat)
        data["lon"].append(a.lon)
        data["color"].append(color)
        data["size"].append(8)
    if cursor_fix_lat is not None and cursor_fix_lon is not None:
        data["lat"].append(cursor_fix_lat)
        data["lon"].append(cursor_fix_lon)
        data["color"].append(CURSOR_COLOR)
        data["size"].append(12)
    return data


def _legend(session: ReviewSession) -> None:
    st.subheader("Legend")
    groups = session.refresh_groups()
    if not groups:
        st.caption("No annotations yet.")
        return
    label = "Hide all" if session.groups.all_visible else "Show all"
    st.button(label, on_click=_toggle_all, args=(session,), use_container_width=True)
    for g in groups:
        key = f"group_{g.group_id}"
        st.session_state.setdefault(key, session.groups.is_visible(g.group_id))
        visible = st.checkbox(f"{g.name} ({g.count})", key=key)
        session.groups.set_visible(g.group_id, visible)


def _placement(session: ReviewSession, lat_default: float, lon_default: float) -> None:
    placement = session.placement
    st.subheader("Add annotation")
    if placement.state is PlacementState.IDLE:
        if st.button("Add annotation", type="primary"):
            placement.arm()
            st.rerun()
        return

    if placement.state is PlacementState.ARMED:
        st.caption("Pick the position (defaults to the current track position).")
        c1, c2 = st.columns(2)
        lat = c1.number_input("Lat", value=lat_default, format="%.6f")
        lon = c2.number_input("Lon", value=lon_default, format="%.6f")
        placement.hover(float(lat), float(lon))
        st.caption(placement.pointer_label)
        c3, c4 = st.columns(2)
        if c3.button("Place here", type="primary"):
            if not placement.click(float(lat), float(lon)):
                st.warning("Position rejected.")
            st.rerun()
        if c4.button("Cancel"):
            placement.cancel()
            st.rerun()
        return

    lat, lon = placement.pending_position or (lat_default, lon_default)
    st.caption(f"Position: {lat:.5f}, {lon:.5f}")
    marker_types = session.store.marker_types
    tags = session.store.tags
    with st.form("placement_form"):
        comment = st.text_area("Comment")
        marker_id = st.selectbox(
            "Marker type",
            options=[0, *marker_types],
            format_func=lambda mid: marker_types[mid].name if mid in marker_types else "(none)",
        )
        tag_ids = st.multiselect("Tags", options=list(tags), format_func=lambda tid: tags[tid].name)
        upload = st.file_uploader("Attachment", type=None)
        submitted = st.form_submit_button("Save", type="primary")
    if submitted:
        draft = PlacementDraft(
            comment=comment,
            tag_ids=tag_ids,
            marker_type_id=marker_id or None,
            attachment=upload.getvalue() if upload is not None else None,
            attachment_name=upload.name if upload is not None else "",
        )
        try:
            created = session.commit_placement(draft)
        except ValidationError as exc:
            st.error(f"{exc.field or 'Input'}: {exc}")
        except TransportError as exc:
            st.error(f"Saving failed, please retry: {exc}")
        else:
            st.success(f"Annotation #{created.id} created")
            st.rerun()
    if st.button("Cancel placement"):
        placement.cancel()
        st.rerun()


def _annotations(session: ReviewSession) -> None:
    store = session.store
    items = session.visible_annotations()
    st.subheader("Annotations")
    if not items:
        st.caption("Nothing visible.")
        return
    by_id = {a.id: a for a in items}
    selected = st.selectbox("Annotation", options=list(by_id), format_func=lambda aid: _annotation_label(session, by_id[aid]))
    c1, c2 = st.columns(2)
    if c1.button("Show on map"):
        session.select_annotation(int(selected))
        st.rerun()
    policy = c2.radio("Replies", options=[p.value for p in ChildPolicy], horizontal=True)
    if c2.button("Delete"):
        try:
            deleted = store.remove(int(selected), ChildPolicy(policy))
        except ConflictError as exc:
            st.warning(f"{exc} (replies: {', '.join(str(i) for i in exc.child_ids)})")
        except TrackReviewError as exc:
            st.error(str(exc))
        else:
            st.success(f"Deleted {', '.join(str(i) for i in deleted)}")
            st.rerun()

    rows = [
        {
            "id": a.id,
            "lat": a.lat,
            "lon": a.lon,
            "comment": a.comment,
            "parentId": a.parent_id,
            "tags": ", ".join(store.tag_names(a)),
        }
        for a in items
    ]
    st.dataframe(rows, use_container_width=True, height=320)


def _transfer(session: ReviewSession) -> None:
    store = session.store
    st.subheader("CSV")
    visible = session.visible_annotations()
    if visible:
        text = export_annotations(visible, store.tags, store.marker_types)
        st.download_button("Export visible annotations", data=text or "", file_name="annotations.csv", mime="text/csv")
    else:
        st.info("No annotations to export.")

    upload = st.file_uploader("Import CSV", type=["csv"], key="import_csv")
    strict = st.checkbox("Strict import", value=False)
    if upload is not None and st.button("Import"):
        with st.spinner("Importing ..."):
            summary = import_annotations(store, upload.getvalue().decode("utf-8-sig"), ImportPolicy(strict=strict))
        session.refresh_groups()
        st.success(f"Imported {summary.succeeded} of {summary.total} rows")
        if summary.errors:
            st.dataframe([{"line": line, "error": err} for line, err in summary.errors], use_container_width=True)


def main() -> None:
    st.set_page_config(page_title="Track review", layout="wide")
    st.title("Track review: video, GPS track and annotations")

    with st.sidebar:
        st.subheader("Data")
        store_path = st.text_input("JSON store path", value="annotations.json")
        api_url = st.text_input("Web API URL (optional, overrides the JSON store)", value="")
        token = st.text_input("API token", value="", type="password")
        file_id = st.number_input("File id", value=1, step=1, min_value=0)
        project_raw = st.number_input("Project id (0 = all)", value=0, step=1, min_value=0)

    session = _open_session(store_path, api_url, token, int(file_id), int(project_raw) or None)
    if session is None:
        return

    with st.sidebar:
        session.start_offset_km = st.number_input(
            "Start kilometer", value=float(session.start_offset_km), step=0.1, format="%.3f"
        )
        _legend(session)

    track = session.track
    if not track:
        st.warning("This file has no GPS points.")
        return

    first, last = track.fixes[0].second, track.fixes[-1].second
    query = st.text_input("Search distance (e.g. 12k + 3)", value="")
    if query.strip():
        hits = session.search(query)
        if hits:
            labels = {f"{label} @ {_hhmmss(fix.second)}": fix for fix, label in hits}
            pick = st.selectbox("Matches", options=list(labels))
            if st.button("Jump"):
                st.session_state["cursor"] = float(labels[pick].second)
        else:
            st.caption("No matching distance.")

    st.session_state.setdefault("cursor", float(first))
    cursor = st.slider("Playback time (s)", min_value=float(first), max_value=float(max(last, first + 1)), key="cursor")
    readout = session.seek(float(cursor))

    c1, c2, c3 = st.columns(3)
    c1.metric("Time", _hhmmss(readout.cursor))
    c2.metric("Distance", readout.distance)
    c3.metric("Annotations", str(len(session.store)))
    if readout.fix is not None:
        st.caption(" | ".join(readout.lines))
    if readout.nearby:
        st.info("Nearby: " + "; ".join(_annotation_label(session, a) for a in readout.nearby))

    fix = readout.fix
    st.map(
        _map_data(session, fix.lat if fix else None, fix.lon if fix else None),
        latitude="lat",
        longitude="lon",
        color="color",
        size="size",
        zoom=session.viewport.zoom,
    )
    if session.viewport.center is not None:
        st.caption(f"Map center: {session.viewport.center[0]:.5f}, {session.viewport.center[1]:.5f}")

    left, right = st.columns(2)
    with left:
        _placement(session, fix.lat if fix else 0.0, fix.lon if fix else 0.0)
    with right:
        _annotations(session)
    _transfer(session)


if __name__ == "__main__":
    main()
