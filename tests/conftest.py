import pytest
from pathlib import Path

from cbzkit import testing


@pytest.fixture
def run_cbzkit():
    return testing.run_cbzkit


@pytest.fixture
def scans_dir(tmp_path: Path):
    """Directory holding p1.png, p2.png and p10.png (colours 0, 1, 2) plus a stray text file."""
    d = tmp_path / "scans"
    d.mkdir()
    for index, name in enumerate(["p1.png", "p2.png", "p10.png"]):
        testing.make_image_file(d, name, color=testing.color_for(index))
    (d / "notes.txt").write_text("not a page")
    return d
