"""Persisting prepared sources and retrieving stored files."""

from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Union

from fastapi import HTTPException, status

from .config import SourceOptions
from .errors import UploadError
from .mime import OCTET_STREAM, mime_for
from .source import DescriptorInput, Source, SourceInfo

logger = logging.getLogger(__name__)

Destination = Optional[Union[str, os.PathLike]]


def move_file(source: Path, target: Path) -> None:
    """
    Move ``source`` to ``target``.

    A plain rename is tried first. Across filesystems the content is copied
    into a temp file next to the target, renamed into place, and only then
    is the source deleted; a failed copy removes the temp file and leaves
    the source untouched.
    """
    try:
        os.replace(source, target)
        return
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise

    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".part", dir=target.parent)
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        shutil.copyfile(source, temp_path)
        os.replace(temp_path, target)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise
    source.unlink()


class FileSource:
    """Stores a prepared source verbatim, without transcoding."""

    def __init__(self, descriptor: DescriptorInput, options: Optional[SourceOptions] = None) -> None:
        self.source = Source(descriptor, options)
        self.options = self.source.options

    @classmethod
    def prepare(cls, descriptor: DescriptorInput, options: Optional[SourceOptions] = None) -> "FileSource":
        return cls(descriptor, options)

    @property
    def info(self) -> SourceInfo:
        return self.source.info

    @property
    def target(self) -> Optional[Path]:
        return self.source.target

    def save(self, destination: Destination = None, appendix: Optional[str] = None) -> Path:
        """Copy the source to its target and return the target path."""
        target = self.source.prepare_target(destination, appendix)
        self.source.overwrite_check(target)

        try:
            shutil.copyfile(self.source.path, target)
        except OSError as exc:
            raise UploadError(
                f"Failed saving file '{target}': {exc.strerror or exc}", target=str(target)
            ) from exc

        self.source.apply_mode(target)
        logger.info("Saved file", extra={"source": str(self.source.path), "target": str(target)})
        return target

    def move(self, destination: Destination = None, appendix: Optional[str] = None) -> Path:
        """Move the source to its target and return the target path."""
        target = self.source.prepare_target(destination, appendix)
        self.source.overwrite_check(target)

        try:
            move_file(self.source.path, target)
        except OSError as exc:
            raise UploadError(
                f"Failed moving file '{target}': {exc.strerror or exc}", target=str(target)
            ) from exc

        self.source.apply_mode(target)
        logger.info("Moved file", extra={"source": str(self.source.path), "target": str(target)})
        return target

    def clear(self, force: bool = False) -> None:
        """Delete the source file when forced or when the ``clear_source`` option is set."""
        if force or self.options.clear_source:
            self.source.remove_source()

    def __enter__(self) -> "FileSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.clear()


class FileStore:
    """Read access to files persisted under a storage directory."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def resolve_path(self, filename: str) -> Path:
        """
        Resolve filename within the storage directory, preventing path traversal.

        Raises HTTPException with 404 if the file does not exist.
        """
        candidate = (self.base_dir / filename).resolve()

        try:
            candidate.relative_to(self.base_dir.resolve())
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid file path supplied.",
            ) from exc

        if not candidate.is_file():
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="File not found.",
            )

        return candidate

    @staticmethod
    def url_for(path: Path) -> str:
        return f"/api/files/{path.name}"

    @staticmethod
    def guess_media_type(file_path: Path) -> str:
        """Infer MIME type based on file suffix."""
        return mime_for(file_path.suffix) or OCTET_STREAM
