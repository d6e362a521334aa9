"""Tests for destination resolution and archive naming."""

import zipfile
from pathlib import Path

import pytest

from logarchive import ARCHIVE_DIR_NAME, archive_path_for, resolve_destination


def test_resolve_destination_sibling_archive(tmp_path: Path) -> None:
    """Without a global destination, the archive directory sits beside the file."""
    root = tmp_path / "R"
    file = root / "a" / "b" / "c.log"
    file.parent.mkdir(parents=True)

    destination = resolve_destination(file, root)

    assert destination == root / "a" / "b" / ARCHIVE_DIR_NAME
    assert destination.is_dir()
    assert archive_path_for(file, destination) == root / "a" / "b" / "Archive" / "c.zip"


def test_resolve_destination_mirrors_source_tree(tmp_path: Path) -> None:
    """With a global destination, the relative directory of the file is mirrored below it."""
    root = tmp_path / "R"
    global_destination = tmp_path / "D"
    file = root / "a" / "b" / "c.log"

    destination = resolve_destination(file, root, global_destination)

    assert destination == global_destination / "a" / "b"
    assert destination.is_dir()
    assert archive_path_for(file, destination) == global_destination / "a" / "b" / "c.zip"


def test_resolve_destination_file_in_root(tmp_path: Path) -> None:
    """Files directly in the source root map onto the destination root itself."""
    root = tmp_path / "R"
    assert resolve_destination(root / "c.log", root, tmp_path / "D") == tmp_path / "D"


def test_resolve_destination_is_idempotent(tmp_path: Path) -> None:
    """Resolving twice yields the same directory and does not fail on existing directories."""
    root = tmp_path / "R"
    file = root / "x" / "c.log"

    first = resolve_destination(file, root, tmp_path / "D")
    second = resolve_destination(file, root, tmp_path / "D")

    assert first == second
    assert second.is_dir()


def test_resolve_destination_without_creation(tmp_path: Path) -> None:
    """With create=False, only the path is computed."""
    root = tmp_path / "R"
    destination = resolve_destination(root / "x" / "c.log", root, tmp_path / "D", create=False)
    assert destination == tmp_path / "D" / "x"
    assert not destination.exists()


def test_resolve_destination_outside_source_root(tmp_path: Path) -> None:
    """Files outside the source root cannot be mirrored."""
    with pytest.raises(ValueError):
        resolve_destination(tmp_path / "other" / "c.log", tmp_path / "R", tmp_path / "D")


def test_archive_path_for_name_collision(tmp_path: Path) -> None:
    """Two sources with the same stem in one directory get distinct archives."""
    taken = {tmp_path / "app.zip"}
    assert archive_path_for(tmp_path / "app.txt", tmp_path, taken) == tmp_path / "app.txt.zip"
    assert archive_path_for(tmp_path / "other.txt", tmp_path, taken) == tmp_path / "other.zip"


def _write_archive(path: Path, entry_name: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr(entry_name, "content")


def test_archive_path_for_reuses_archive_of_same_file(tmp_path: Path) -> None:
    """An existing archive holding the same file name is overwritten in place."""
    _write_archive(tmp_path / "app.zip", "app.log")
    assert archive_path_for(tmp_path / "app.log", tmp_path) == tmp_path / "app.zip"


def test_archive_path_for_never_takes_over_archive_of_another_file(tmp_path: Path) -> None:
    """An archive from an earlier run holding a different file keeps its name."""
    _write_archive(tmp_path / "app.zip", "app.log")
    assert archive_path_for(tmp_path / "app.txt", tmp_path) == tmp_path / "app.txt.zip"


def test_archive_path_for_foreign_zip_file(tmp_path: Path) -> None:
    """An unreadable zip at the preferred name is not overwritten."""
    (tmp_path / "app.zip").write_text("not a zip")
    assert archive_path_for(tmp_path / "app.log", tmp_path) == tmp_path / "app.log.zip"


def test_archive_path_for_numbered_fallback(tmp_path: Path) -> None:
    """If both names are occupied by other files, a numbered name is used."""
    _write_archive(tmp_path / "app.txt.zip", "app.txt.log")  # stem of 'app.txt.log' is 'app.txt'
    taken = {tmp_path / "app.zip"}
    assert archive_path_for(tmp_path / "app.txt", tmp_path, taken) == tmp_path / "app.txt.1.zip"
