from pathlib import Path

import pytest

from ipeds_files import ARCHIVE_CLASSES, Layout, read_selection, resolve_files

BASE = "https://nces.example.test/data/"


def test_resolve_builds_urls_and_paths(tmp_path: Path) -> None:
    layout = Layout(tmp_path)
    [entry] = resolve_files(["HD2023"], layout, BASE)

    assert entry.artifact_path == tmp_path / "data" / "HD2023.dta"
    assert entry.urls == {
        "data": f"{BASE}HD2023_Data_Stata.zip",
        "do-files": f"{BASE}HD2023_Stata.zip",
        "dictionaries": f"{BASE}HD2023_Dict.zip",
    }
    assert entry.archive_paths["do-files"] == tmp_path / "zip-do-files" / "HD2023.zip"
    assert entry.stem == "hd2023"


def test_resolve_keeps_order_and_collapses_repeats(tmp_path: Path) -> None:
    files = resolve_files(["IC2023", "HD2023", "ic2023", " EF2023A "], Layout(tmp_path), BASE)
    assert [f.identifier for f in files] == ["IC2023", "HD2023", "EF2023A"]


def test_resolve_rejects_malformed_names(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        resolve_files(["HD2023/../x"], Layout(tmp_path), BASE)


def test_layout_ensure_is_idempotent(tmp_path: Path) -> None:
    layout = Layout(tmp_path)
    layout.ensure()
    layout.ensure()

    for archive in ARCHIVE_CLASSES:
        assert layout.zip_dir(archive).is_dir()
        assert layout.unzip_dir(archive).is_dir()
    assert layout.data_dir.is_dir()
    assert layout.dictionaries_dir.is_dir()
    assert layout.data_dir not in layout.staging_dirs()
    assert layout.dictionaries_dir not in layout.staging_dirs()


def test_read_selection_accepts_pasted_lists(tmp_path: Path) -> None:
    selection = tmp_path / "selection.txt"
    selection.write_text(
        '# 2023\n'
        '"HD2023",\n'
        '"IC2023", # institutional characteristics\n'
        '\n'
        'EF2023A\n'
        '#   "C2023_A",\n',
        encoding='utf-8',
    )
    assert read_selection(selection) == ["HD2023", "IC2023", "EF2023A"]
