# === NAVMAP v1 ===
# {
#   "module": "tests.mounts.test_filesystem",
#   "purpose": "Tests for cache slots, atomic moves, and staged libarchive extraction",
#   "sections": [
#     {"id": "moves", "name": "Slots & Moves", "anchor": "MOV", "kind": "tests"},
#     {"id": "happy_paths", "name": "Happy Path Extraction", "anchor": "HPT", "kind": "tests"},
#     {"id": "security", "name": "Unsafe Archive Tests", "anchor": "SEC", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Tests for :mod:`GenericWorker.Mounts.io.filesystem`.

Covers:
- Slot allocation, directory reset, and rename-only moves
- Extraction of zip, tar.gz, and tar.bz2 archives into new and existing directories
- Rejection of unknown formats, corrupt archives, and members escaping the target
"""

from __future__ import annotations

import io
import os
import tarfile
from pathlib import Path

import pytest

from GenericWorker.Mounts.errors import (
    ExtractionError,
    MountError,
    MoveError,
    UnsupportedArchiveFormat,
)
from GenericWorker.Mounts.io import filesystem as fs_mod
from tests.mounts.helpers import make_tar, make_zip


def _snapshot(root: Path):
    return sorted(str(path.relative_to(root)) for path in root.rglob("*"))


# ============================================================================
# SLOTS & MOVES
# ============================================================================


def test_random_slot_is_fresh_child(tmp_path: Path) -> None:
    first = fs_mod.random_slot(tmp_path)
    second = fs_mod.random_slot(tmp_path)

    assert first.parent == tmp_path
    assert first != second
    assert not first.exists()


def test_ensure_empty_dir_removes_contents(tmp_path: Path) -> None:
    target = tmp_path / "caches"
    (target / "nested" / "deep").mkdir(parents=True)
    (target / "nested" / "deep" / "file").write_text("x")
    (target / "loose").write_text("y")
    (target / "link").symlink_to(tmp_path)

    fs_mod.ensure_empty_dir(target)

    assert target.is_dir()
    assert list(target.iterdir()) == []
    assert tmp_path.exists()


def test_ensure_empty_dir_creates_missing(tmp_path: Path) -> None:
    target = tmp_path / "a" / "b"
    fs_mod.ensure_empty_dir(target)
    assert target.is_dir()


def test_move_path_renames_and_creates_parents(tmp_path: Path) -> None:
    source = tmp_path / "source"
    source.mkdir()
    (source / "state").write_text("kept")
    inode = source.stat().st_ino

    destination = tmp_path / "home" / "deep" / "cache"
    fs_mod.move_path(source, destination)

    assert not source.exists()
    assert (destination / "state").read_text() == "kept"
    assert destination.stat().st_ino == inode


def test_move_path_missing_source_reports_both_paths(tmp_path: Path) -> None:
    source = tmp_path / "missing"
    destination = tmp_path / "target"

    with pytest.raises(MoveError) as excinfo:
        fs_mod.move_path(source, destination)

    assert excinfo.value.source == source
    assert excinfo.value.destination == destination
    assert str(source) in str(excinfo.value)
    assert str(destination) in str(excinfo.value)
    assert isinstance(excinfo.value, MountError)


# ============================================================================
# HAPPY PATH EXTRACTION
# ============================================================================


def test_extract_zip_creates_nested_destination(tmp_path: Path) -> None:
    archive = make_zip(
        tmp_path / "bundle.zip",
        {"file1.txt": b"content1", "dir/file2.txt": b"content2", "dir/sub/file3.txt": b"3"},
    )
    output = tmp_path / "home" / "tools" / "bundle"

    extracted = fs_mod.extract_archive(archive, "zip", output)

    assert (output / "file1.txt").read_bytes() == b"content1"
    assert (output / "dir" / "file2.txt").read_bytes() == b"content2"
    assert (output / "dir" / "sub" / "file3.txt").read_bytes() == b"3"
    assert [path.name for path in extracted] == ["file1.txt", "file2.txt", "file3.txt"]
    assert all(path.is_relative_to(output) for path in extracted)


@pytest.mark.parametrize("format_name, mode", [("tar.gz", "w:gz"), ("tar.bz2", "w:bz2")])
def test_extract_compressed_tarballs(tmp_path: Path, format_name: str, mode: str) -> None:
    archive = make_tar(tmp_path / "bundle.tar", {"bin/tool": b"#!/bin/sh\n"}, mode=mode)
    output = tmp_path / "out"

    fs_mod.extract_archive(archive, format_name, output)

    assert (output / "bin" / "tool").read_bytes() == b"#!/bin/sh\n"


def test_extract_preserves_executable_bit(tmp_path: Path) -> None:
    archive = tmp_path / "exec.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        info = tarfile.TarInfo("run.sh")
        data = b"echo hi\n"
        info.size = len(data)
        info.mode = 0o755
        tar.addfile(info, io.BytesIO(data))

    output = tmp_path / "out"
    fs_mod.extract_archive(archive, "tar.gz", output)

    assert os.access(output / "run.sh", os.X_OK)


def test_extract_into_existing_directory_overwrites_members(tmp_path: Path) -> None:
    output = tmp_path / "out"
    (output / "dir").mkdir(parents=True)
    (output / "keep.txt").write_text("untouched")
    (output / "dir" / "file.txt").write_text("old")
    archive = make_zip(tmp_path / "a.zip", {"dir/file.txt": b"new", "extra.txt": b"e"})

    fs_mod.extract_archive(archive, "zip", output)

    assert (output / "keep.txt").read_text() == "untouched"
    assert (output / "dir" / "file.txt").read_text() == "new"
    assert (output / "extra.txt").read_text() == "e"


def test_extract_leaves_no_staging_directory(tmp_path: Path) -> None:
    archive = make_zip(tmp_path / "archives" / "a.zip", {"a.txt": b"a"})
    home = tmp_path / "home"

    fs_mod.extract_archive(archive, "zip", home / "target")

    assert _snapshot(home) == ["target", "target/a.txt"]


def test_extract_allows_contained_symlink(tmp_path: Path) -> None:
    archive = tmp_path / "links.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        data = b"payload"
        info = tarfile.TarInfo("lib/real.so")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
        link = tarfile.TarInfo("lib/alias.so")
        link.type = tarfile.SYMTYPE
        link.linkname = "real.so"
        tar.addfile(link)

    output = tmp_path / "out"
    fs_mod.extract_archive(archive, "tar.gz", output)

    assert (output / "lib" / "alias.so").is_symlink()
    assert (output / "lib" / "alias.so").read_bytes() == b"payload"


# ============================================================================
# UNSAFE ARCHIVE TESTS
# ============================================================================


def test_unknown_format_rejected_before_touching_filesystem(tmp_path: Path) -> None:
    archive = make_zip(tmp_path / "a.zip", {"a.txt": b"a"})
    output = tmp_path / "home" / "out"

    with pytest.raises(UnsupportedArchiveFormat) as excinfo:
        fs_mod.extract_archive(archive, "7z", output)

    assert excinfo.value.format_name == "7z"
    assert isinstance(excinfo.value, ExtractionError)
    assert not (tmp_path / "home").exists()


def test_missing_archive_raises(tmp_path: Path) -> None:
    with pytest.raises(ExtractionError, match="not found"):
        fs_mod.extract_archive(tmp_path / "nope.zip", "zip", tmp_path / "out")


def test_corrupt_archive_raises_and_cleans_up(tmp_path: Path) -> None:
    archive = tmp_path / "corrupt.zip"
    archive.write_bytes(b"this is not an archive at all" * 20)
    home = tmp_path / "home"
    home.mkdir()

    with pytest.raises(ExtractionError):
        fs_mod.extract_archive(archive, "tar.gz", home / "out")

    assert list(home.iterdir()) == []


def test_path_traversal_rejected_and_destination_untouched(tmp_path: Path) -> None:
    archive = make_zip(tmp_path / "evil.zip", {"ok.txt": b"fine", "../evil.txt": b"escape"})
    output = tmp_path / "home" / "out"
    output.mkdir(parents=True)
    (output / "existing.txt").write_text("before")

    with pytest.raises(ExtractionError, match="Unsafe path"):
        fs_mod.extract_archive(archive, "zip", output)

    assert _snapshot(tmp_path / "home") == ["out", "out/existing.txt"]
    assert not (tmp_path / "home" / "evil.txt").exists()


def test_absolute_member_rejected(tmp_path: Path) -> None:
    archive = make_tar(tmp_path / "abs.tar.gz", {"/etc/passwd": b"root"})

    with pytest.raises(ExtractionError, match="absolute"):
        fs_mod.extract_archive(archive, "tar.gz", tmp_path / "out")

    assert not (tmp_path / "out").exists()


def test_escaping_symlink_rejected(tmp_path: Path) -> None:
    archive = tmp_path / "escape.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        link = tarfile.TarInfo("link")
        link.type = tarfile.SYMTYPE
        link.linkname = "../../outside"
        tar.addfile(link)

    with pytest.raises(ExtractionError, match="escapes"):
        fs_mod.extract_archive(archive, "tar.gz", tmp_path / "out")


def _add_symlink(tar: tarfile.TarFile, name: str, target: str) -> None:
    link = tarfile.TarInfo(name)
    link.type = tarfile.SYMTYPE
    link.linkname = target
    tar.addfile(link)


def test_chained_symlinks_cannot_climb_out(tmp_path: Path) -> None:
    archive = tmp_path / "chain.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        _add_symlink(tar, "s", ".")
        _add_symlink(tar, "t", "s/..")
        data = b"escaped"
        info = tarfile.TarInfo("t/evil")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    home = tmp_path / "home"
    home.mkdir()

    with pytest.raises(ExtractionError, match="outside the extraction root"):
        fs_mod.extract_archive(archive, "tar.gz", home / "ro")

    assert list(home.iterdir()) == []
    assert not (tmp_path / "evil").exists()


def test_fifo_member_rejected(tmp_path: Path) -> None:
    archive = tmp_path / "fifo.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        fifo = tarfile.TarInfo("pipe")
        fifo.type = tarfile.FIFOTYPE
        tar.addfile(fifo)

    with pytest.raises(ExtractionError, match="Unsupported entry type"):
        fs_mod.extract_archive(archive, "tar.gz", tmp_path / "out")
