from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import MARKER_TYPES, TAGS, make_track

from track_review.cli import main
from track_review.csv_io import write_track


@pytest.fixture
def track_csv(tmp_path: Path) -> Path:
    p = tmp_path / "track.csv"
    write_track(make_track(n=30), p)
    return p


@pytest.fixture
def db(tmp_path: Path) -> Path:
    tags = tmp_path / "tags.json"
    markers = tmp_path / "markers.json"
    tags.write_text(json.dumps([t.to_record() for t in TAGS]), encoding="utf-8")
    markers.write_text(json.dumps([m.to_record() for m in MARKER_TYPES]), encoding="utf-8")
    path = tmp_path / "db.json"
    assert main(["catalog", "--store", str(path), "--tags", str(tags), "--markers", str(markers)]) == 0
    return path


def test_locate(track_csv: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["locate", "--track", str(track_csv), "--time", "24", "--start-km", "1"]) == 0
    out = capsys.readouterr().out
    assert "second=20.0" in out
    assert "distance=1k + 200.00m" in out


def test_search(track_csv: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["search", "--track", str(track_csv), "--query", "2k + 5"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 1
    assert lines[0].startswith("2k + 500.00m\tsecond=250.0")


def test_import_list_export(db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    src = tmp_path / "in.csv"
    src.write_text(
        "id,lat,lon,comment,markerId,marker,parentId,tags\n"
        "1,45.0,9.0,pothole,1,,,urgent\n"
        "2,45.0,9.0,reply,1,,1,\n",
        encoding="utf-8",
    )
    assert main(["import", "--store", str(db), "--csv", str(src)]) == 0
    assert "succeeded=2, failed=0" in capsys.readouterr().out

    assert main(["list", "--store", str(db), "--tag", "1"]) == 0
    out = capsys.readouterr().out
    assert "pothole" in out
    assert "### 1 annotations" in out

    assert main(["legend", "--store", str(db)]) == 0
    assert "[x] 1\tPothole\t2" in capsys.readouterr().out

    dst = tmp_path / "out.csv"
    assert main(["export", "--store", str(db), "--out", str(dst)]) == 0
    assert dst.read_text(encoding="utf-8").splitlines()[0] == "id,lat,lon,comment,markerId,marker,parentId,tags"


def test_delete_with_replies_needs_policy(db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    src = tmp_path / "in.csv"
    src.write_text("id,lat,lon,comment,markerId,marker,parentId,tags\n1,45,9,a,,,,\n2,45,9,b,,,1,\n", encoding="utf-8")
    main(["import", "--store", str(db), "--csv", str(src)])
    capsys.readouterr()

    assert main(["delete", "--store", str(db), "--id", "1"]) == 3
    assert "--children" in capsys.readouterr().err
    assert main(["delete", "--store", str(db), "--id", "1", "--children", "cascade"]) == 0
    assert "Deleted: 2, 1" in capsys.readouterr().out


def test_empty_export_writes_no_file(db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    dst = tmp_path / "out.csv"
    assert main(["export", "--store", str(db), "--out", str(dst)]) == 0
    assert "No annotations to export" in capsys.readouterr().err
    assert not dst.exists()


def test_strict_import_reports_failed_lines(db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    src = tmp_path / "in.csv"
    src.write_text("id,lat,lon,comment,markerId,marker,parentId,tags\n1,north,9,a,,,,\n", encoding="utf-8")
    assert main(["import", "--store", str(db), "--csv", str(src), "--strict"]) == 1
    assert "line 2" in capsys.readouterr().err


def test_load_track_then_open(db: Path, track_csv: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["load-track", "--store", str(db), "--track", str(track_csv), "--file-id", "9"]) == 0
    assert "fixes=30" in capsys.readouterr().out
