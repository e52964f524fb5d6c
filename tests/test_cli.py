import json
import zipfile
from pathlib import Path

from cbzkit.testing import make_cbz, make_image_bytes, make_image_file, make_mobi, make_pdf


def entries(path: Path):
    with zipfile.ZipFile(path) as z:
        return z.namelist()


def test_pack_creates_named_archive(run_cbzkit, scans_dir: Path, tmp_path: Path):
    out = tmp_path / "out"
    res = run_cbzkit(["pack", scans_dir, "-o", out, "-n", "My: Book"], cwd=tmp_path)
    assert res.returncode == 0, res.stderr
    assert entries(out / "My Book.cbz") == ["0001.png", "0002.png", "0003.png"]
    assert "✅ INFO:" in res.stderr


def test_pack_autosplit_flag(run_cbzkit, tmp_path: Path):
    src = tmp_path / "src"
    src.mkdir()
    make_image_file(src, "spread.png", size=(120, 60))
    res = run_cbzkit(["pack", src, "-o", tmp_path, "-n", "split", "--autosplit", "--reading-order", "ltr"], cwd=tmp_path)
    assert res.returncode == 0, res.stderr
    assert len(entries(tmp_path / "split.cbz")) == 2


def test_pack_no_match_exit_code(run_cbzkit, tmp_path: Path):
    res = run_cbzkit(["pack", tmp_path / "*.png", "-o", tmp_path / "out", "-n", "none"], cwd=tmp_path)
    assert res.returncode == 3
    assert "❌ ERROR:" in res.stderr
    assert not (tmp_path / "out" / "none.cbz").exists()


def test_invalid_transform_is_usage_error(run_cbzkit, scans_dir: Path, tmp_path: Path):
    res = run_cbzkit(["pack", scans_dir, "-o", tmp_path, "-n", "x", "--contrast", "0"], cwd=tmp_path)
    assert res.returncode == 2
    assert "contrast" in res.stderr


def test_convert_mobi(run_cbzkit, tmp_path: Path):
    src = make_mobi(tmp_path, "book.mobi", [make_image_bytes(fmt="JPEG"), make_image_bytes()])
    res = run_cbzkit(["convert", src, "-o", tmp_path / "out", "-n", "book"], cwd=tmp_path)
    assert res.returncode == 0, res.stderr
    assert entries(tmp_path / "out" / "book.cbz") == ["0001.jpg", "0002.png"]


def test_convert_drm_mobi_exit_code(run_cbzkit, tmp_path: Path):
    src = make_mobi(tmp_path, "locked.azw3", [make_image_bytes()], encryption=2, version=8)
    res = run_cbzkit(["convert", src, "-o", tmp_path / "out", "-n", "locked"], cwd=tmp_path)
    assert res.returncode == 4
    assert not (tmp_path / "out" / "locked.cbz").exists()


def test_convert_encrypted_pdf_exit_code(run_cbzkit, tmp_path: Path):
    src = make_pdf(tmp_path, "locked.pdf", password="pw")
    res = run_cbzkit(["convert", src, "-o", tmp_path, "-n", "locked"], cwd=tmp_path)
    assert res.returncode == 4


def test_merge_archives_in_argument_order(run_cbzkit, tmp_path: Path):
    a = make_cbz(tmp_path, "a.cbz", count=2)
    b = make_cbz(tmp_path, "b.cbz", count=3)
    res = run_cbzkit(["merge", b, a, "-o", tmp_path / "out", "-n", "all"], cwd=tmp_path)
    assert res.returncode == 0, res.stderr
    assert len(entries(tmp_path / "out" / "all.cbz")) == 5
    assert "5 pages" in res.stderr


def test_merge_glob(run_cbzkit, tmp_path: Path):
    src = tmp_path / "vols"
    src.mkdir()
    make_cbz(src, "v1.cbz", count=1)
    make_cbz(src, "v2.cbz", count=2)
    res = run_cbzkit(["merge", "--archives-glob", src / "*.cbz", "--sort-by-hint", "-o", tmp_path, "-n", "vols"], cwd=tmp_path)
    assert res.returncode == 0, res.stderr
    assert len(entries(tmp_path / "vols.cbz")) == 3


def test_merge_plan_file(run_cbzkit, tmp_path: Path):
    make_cbz(tmp_path, "one.cbz", count=1)
    make_cbz(tmp_path, "two.cbz", count=1)
    plan = tmp_path / "plan.yaml"
    plan.write_text("sources:\n  - two.cbz\n  - path: one.cbz\n    kind: cbz\n")
    res = run_cbzkit(["merge", "--plan", plan, "-o", tmp_path / "out", "-n", "planned"], cwd=tmp_path)
    assert res.returncode == 0, res.stderr
    assert entries(tmp_path / "out" / "planned.cbz") == ["0001.png", "0002.png"]


def test_merge_without_sources_is_empty_plan(run_cbzkit, tmp_path: Path):
    res = run_cbzkit(["merge", "-o", tmp_path / "out", "-n", "nothing"], cwd=tmp_path)
    assert res.returncode == 7
    assert "merge plan is empty" in res.stderr
    assert not (tmp_path / "out" / "nothing.cbz").exists()


def test_merge_conflicting_sources_is_usage_error(run_cbzkit, tmp_path: Path):
    a = make_cbz(tmp_path, "a.cbz")
    res = run_cbzkit(["merge", a, "--archives-glob", "*.cbz", "-o", tmp_path, "-n", "x"], cwd=tmp_path)
    assert res.returncode == 2


def test_merge_corrupt_archive_exit_code(run_cbzkit, tmp_path: Path):
    bad = tmp_path / "bad.cbz"
    bad.write_bytes(b"nope")
    res = run_cbzkit(["merge", bad, "-o", tmp_path / "out", "-n", "bad"], cwd=tmp_path)
    assert res.returncode == 5
    assert not (tmp_path / "out" / "bad.cbz").exists()


def test_reindex_defaults_to_source_name(run_cbzkit, tmp_path: Path):
    src = make_cbz(tmp_path, "messy.cbz", entries={"x/b.png": make_image_bytes(), "x/a.png": make_image_bytes()})
    res = run_cbzkit(["reindex", src, "-o", tmp_path / "out"], cwd=tmp_path)
    assert res.returncode == 0, res.stderr
    assert entries(tmp_path / "out" / "messy.cbz") == ["0001.png", "0002.png"]


def test_config_file_supplies_defaults(run_cbzkit, tmp_path: Path):
    src = tmp_path / "src"
    src.mkdir()
    make_image_file(src, "spread.png", size=(120, 60))
    (tmp_path / "cbzkit.json").write_text(json.dumps({"autosplit": True, "nb_worker": 2}))
    res = run_cbzkit(["pack", src, "-o", tmp_path / "out", "-n", "cfg"], cwd=tmp_path)
    assert res.returncode == 0, res.stderr
    assert len(entries(tmp_path / "out" / "cfg.cbz")) == 2


def test_config_dir_option(run_cbzkit, tmp_path: Path, scans_dir: Path):
    cfg_dir = tmp_path / "settings"
    cfg_dir.mkdir()
    (cfg_dir / "cbzkit.json").write_text(json.dumps({"brightness": 999}))
    res = run_cbzkit(["--config-dir", cfg_dir, "pack", scans_dir, "-o", tmp_path, "-n", "x"], cwd=tmp_path)
    assert res.returncode == 2
    assert "brightness" in res.stderr


def test_invalid_config_file_is_usage_error(run_cbzkit, tmp_path: Path, scans_dir: Path):
    (tmp_path / "cbzkit.json").write_text("{ not: valid, }")
    res = run_cbzkit(["pack", scans_dir, "-o", tmp_path, "-n", "x"], cwd=tmp_path)
    assert res.returncode == 2
    assert "Invalid cbzkit.json" in res.stderr
    assert str(tmp_path / "cbzkit.json") in res.stderr


def test_missing_command_is_usage_error(run_cbzkit, tmp_path: Path):
    res = run_cbzkit([], cwd=tmp_path)
    assert res.returncode == 2
