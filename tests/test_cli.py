"""Test the command line front end against a prepared workspace."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from PIL import Image

from balloon_engine.cli import main
from balloon_engine.index_store import BalloonIndex, BalloonIndexStore
from balloon_engine.types import Balloon, PageBalloons, Rect
from balloon_engine.workspace import create_workspace_dirs


def _page(page_number: int, rects: list[Rect], width: int = 400, height: int = 600) -> PageBalloons:
    balloons = tuple(
        Balloon(index=i, rect=r.scaled(width, height), normalized_rect=r, confidence=0.9) for i, r in enumerate(rects)
    )
    return PageBalloons(page_index=page_number, balloons=balloons, page_width=width, page_height=height)


@pytest.fixture
def stored_book(workspace_dir: Path) -> BalloonIndexStore:
    store = BalloonIndexStore(create_workspace_dirs(workspace_dir))
    index = BalloonIndex(
        book_id="vol-1",
        pages={
            1: _page(1, [Rect(0.1, 0.1, 0.3, 0.2), Rect(0.6, 0.1, 0.8, 0.2)]),
            2: _page(2, []),
        },
    )
    store.save("vol-1", index)
    return store


@pytest.fixture
def images_dir(tmp_path: Path) -> Path:
    folder = tmp_path / "pages"
    folder.mkdir()
    for name in ("001.png", "002.png"):
        Image.new("RGB", (400, 600), color=(255, 255, 255)).save(folder / name)
    (folder / "notes.txt").write_text("ignored", encoding="utf-8")
    return folder


# ═══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

class TestCli:
    def test_show(self, stored_book, workspace_dir, capsys):
        assert main(["show", "--workspace", str(workspace_dir), "--book-id", "vol-1", "--page", "1"]) == 0
        out = capsys.readouterr().out.splitlines()
        assert out[0] == "page=1 size=400x600 balloons=2"
        assert out[1].startswith("0\t0.900\t40,60,120,120")

    def test_show_missing_page(self, stored_book, workspace_dir, capsys):
        assert main(["show", "--workspace", str(workspace_dir), "--book-id", "vol-1", "--page", "9"]) == 1
        assert "page_not_indexed" in capsys.readouterr().out

    def test_validate_ok(self, stored_book, workspace_dir, capsys):
        assert main(["validate", "--workspace", str(workspace_dir), "--book-id", "vol-1"]) == 0
        assert capsys.readouterr().out.splitlines()[-1] == "OK"

    def test_validate_reports_violations(self, stored_book, workspace_dir, capsys):
        path = stored_book.path_for("vol-1")
        data = json.loads(path.read_text(encoding="utf-8"))
        data["pages"].append(data["pages"][0])
        data["pages"][0]["balloons"][0]["index"] = 5
        path.write_text(json.dumps(data), encoding="utf-8")

        assert main(["validate", "--workspace", str(workspace_dir), "--book-id", "vol-1"]) == 1
        out = capsys.readouterr().out
        assert "page 1: 2 records" in out
        assert "violations=" in out

    def test_validate_missing(self, workspace_dir, capsys):
        assert main(["validate", "--workspace", str(workspace_dir), "--book-id", "nope"]) == 1
        assert "missing" in capsys.readouterr().out

    def test_clear(self, stored_book, workspace_dir, capsys):
        assert main(["clear", "--workspace", str(workspace_dir), "--book-id", "vol-1"]) == 0
        assert capsys.readouterr().out.strip() == "cleared=true"
        assert stored_book.load("vol-1") is None

    def test_crop_writes_pngs(self, stored_book, workspace_dir, images_dir, tmp_path, capsys):
        out_dir = tmp_path / "crops"
        rc = main(
            [
                "crop",
                "--input", str(images_dir),
                "--type", "images",
                "--workspace", str(workspace_dir),
                "--book-id", "vol-1",
                "--page", "1",
                "--out", str(out_dir),
            ]
        )
        assert rc == 0
        assert sorted(p.name for p in out_dir.iterdir()) == ["page_001_balloon_000.png", "page_001_balloon_001.png"]
        assert "crops_written=2" in capsys.readouterr().out

    def test_crop_defaults_to_workspace_crops(self, stored_book, workspace_dir, images_dir):
        rc = main(
            [
                "crop",
                "--input", str(images_dir),
                "--type", "images",
                "--workspace", str(workspace_dir),
                "--book-id", "vol-1",
                "--page", "1",
            ]
        )
        assert rc == 0
        assert len(list((workspace_dir / "crops").glob("page_001_balloon_*.png"))) == 2

    def test_index_without_model_fails_softly(self, workspace_dir, images_dir, tmp_path, capsys):
        rc = main(
            [
                "index",
                "--input", str(images_dir),
                "--type", "images",
                "--workspace", str(workspace_dir),
                "--book-id", "vol-2",
                "--model", str(tmp_path / "missing.onnx"),
            ]
        )
        assert rc == 1
        assert "detector_unavailable" in capsys.readouterr().out

    def test_describe_without_model(self, tmp_path, capsys):
        assert main(["describe", "--model", str(tmp_path / "missing.onnx")]) == 1
        assert "detector_unavailable" in capsys.readouterr().out
