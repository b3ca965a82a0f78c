"""Tests for verbatim file persistence and stored file lookup."""

from __future__ import annotations

import errno
import os
from pathlib import Path

import pytest
from fastapi import HTTPException

import intake.storage as storage_module
from intake.config import SourceOptions
from intake.errors import OverwriteNotAllowedError, UploadError
from intake.storage import FileSource, FileStore


def test_save_copies_source(make_image, out_dir):
    path = make_image("photo.png")

    target = FileSource(path, SourceOptions(directory=str(out_dir))).save()

    assert target == out_dir.resolve() / "photo.png"
    assert target.read_bytes() == path.read_bytes()
    assert path.exists()


def test_save_applies_mode(make_image, out_dir):
    target = FileSource(make_image("photo.png"), SourceOptions(directory=str(out_dir), mode=0o600)).save()

    assert target.stat().st_mode & 0o777 == 0o600


def test_save_refuses_overwrite_and_keeps_existing(make_image, out_dir):
    out_dir.mkdir()
    existing = out_dir / "photo.png"
    existing.write_bytes(b"keep me")

    with pytest.raises(OverwriteNotAllowedError):
        FileSource(make_image("photo.png"), SourceOptions(directory=str(out_dir))).save()

    assert existing.read_bytes() == b"keep me"


def test_save_overwrites_when_allowed(make_image, out_dir):
    out_dir.mkdir()
    (out_dir / "photo.png").write_bytes(b"old")
    path = make_image("photo.png")

    target = FileSource(path, SourceOptions(directory=str(out_dir), overwrite=True)).save()

    assert target.read_bytes() == path.read_bytes()


def test_move_removes_source(make_image, out_dir):
    path = make_image("photo.png")
    content = path.read_bytes()

    target = FileSource(path, SourceOptions(directory=str(out_dir))).move(appendix="final")

    assert target.name == "photo-final.png"
    assert target.read_bytes() == content
    assert not path.exists()


def test_move_across_filesystems_copies_then_deletes(make_image, out_dir, monkeypatch):
    path = make_image("photo.png")
    content = path.read_bytes()
    real_replace = os.replace

    def cross_device_replace(src, dst):
        if Path(src).resolve() == path.resolve():
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        return real_replace(src, dst)

    monkeypatch.setattr(storage_module.os, "replace", cross_device_replace)

    target = FileSource(path, SourceOptions(directory=str(out_dir), clear_source=True)).move()

    assert target.read_bytes() == content
    assert not path.exists()
    assert sorted(p.name for p in out_dir.iterdir()) == ["photo.png"]


def test_failed_move_leaves_source_intact(make_image, out_dir, monkeypatch):
    path = make_image("photo.png")
    content = path.read_bytes()

    def cross_device_replace(src, dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    def broken_copy(src, dst):
        with open(dst, "wb") as handle:
            handle.write(b"partial")
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(storage_module.os, "replace", cross_device_replace)
    monkeypatch.setattr(storage_module.shutil, "copyfile", broken_copy)

    with pytest.raises(UploadError):
        FileSource(path, SourceOptions(directory=str(out_dir), clear_source=True)).move()

    assert path.read_bytes() == content
    assert list(out_dir.iterdir()) == []


def test_clear_policy(make_image):
    kept = make_image("kept.png")
    FileSource(kept).clear()
    assert kept.exists()

    FileSource(kept).clear(force=True)
    assert not kept.exists()

    removed = make_image("removed.png")
    with FileSource(removed, SourceOptions(clear_source=True)):
        pass
    assert not removed.exists()


def test_clear_is_idempotent(make_image):
    source = FileSource(make_image("photo.png"), SourceOptions(clear_source=True))

    source.clear()
    source.clear()


def test_file_store_resolves_inside_base_dir(tmp_path):
    store = FileStore(tmp_path / "files")
    stored = store.base_dir / "photo.png"
    stored.write_bytes(b"data")

    assert store.resolve_path("photo.png") == stored.resolve()
    assert store.url_for(stored) == "/api/files/photo.png"
    assert store.guess_media_type(stored) == "image/png"
    assert store.guess_media_type(store.base_dir / "archive.unknownext") == "application/octet-stream"


@pytest.mark.parametrize(("filename", "status_code"), [("../secret.txt", 400), ("missing.png", 404)])
def test_file_store_rejects(tmp_path, filename, status_code):
    (tmp_path / "secret.txt").write_text("secret")
    store = FileStore(tmp_path / "files")

    with pytest.raises(HTTPException) as exc_info:
        store.resolve_path(filename)

    assert exc_info.value.status_code == status_code
