"""Source preparation: descriptor parsing, security checks and target resolution."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .config import SourceOptions, allow_pattern
from .errors import (
    DirectoryError,
    ExtensionNotAllowedError,
    InternalUploadError,
    MaxSizeExceededError,
    MimeNotAllowedError,
    NoValidSourceError,
    OverwriteNotAllowedError,
)
from .mime import detect_mime, extension_for
from .naming import NamingPolicy

logger = logging.getLogger(__name__)

TMP_DIRECTORY_TOKEN = "@tmp"

_NAME_EXTENSION_PATTERN = re.compile(r"^(.+)\.(\w+)$")

DescriptorInput = Union["SourceDescriptor", Mapping[str, Any], str, os.PathLike]


class SourceDescriptor(BaseModel):
    """Input describing a file to prepare: an upload record or a plain path."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    file: Optional[str] = Field(default=None, description="Path of a regular file.")
    tmp_name: Optional[str] = Field(default=None, description="Path of an uploaded temp file.")
    name: Optional[str] = Field(default=None, description="Declared (client) file name.")
    size: Optional[int] = Field(default=None, ge=0)
    mime: Optional[str] = Field(default=None, validation_alias=AliasChoices("mime", "type"))
    extension: Optional[str] = None
    error: Optional[int] = Field(default=None, description="Upload status code, 0 means OK.")
    directory: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _nullify_empty_fields(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            return {key: (None if value == "" else value) for key, value in data.items()}
        return data

    @classmethod
    def coerce(cls, value: DescriptorInput) -> "SourceDescriptor":
        """Accept a descriptor, a mapping or a bare path."""
        if isinstance(value, cls):
            return value
        if isinstance(value, (str, os.PathLike)):
            return cls(file=os.fspath(value))
        return cls.model_validate(value)

    @property
    def path(self) -> Optional[str]:
        return self.file or self.tmp_name


class SourceInfo(BaseModel):
    """Resolved, immutable metadata of a prepared source."""

    model_config = ConfigDict(frozen=True)

    name: str
    size: int = Field(ge=0)
    mime: str
    extension: str = ""
    original_name: Optional[str] = None


def is_allowed(value: str, rule: str) -> bool:
    """
    Check ``value`` against an allow rule.

    Rules are ``*`` (everything), a ``~pattern~flags`` regular expression or
    a comma separated list compared case-insensitively.
    """
    rule = rule.strip()
    if rule == "*":
        return True

    pattern = allow_pattern(rule)
    if pattern is not None:
        return pattern.search(value) is not None

    allowed = {item.strip().lower() for item in rule.split(",") if item.strip()}
    return value.lower() in allowed


def resolve_directory(directory: str) -> Path:
    """Expand the ``@tmp`` token and user home in a directory option."""
    if directory == TMP_DIRECTORY_TOKEN or directory.startswith(TMP_DIRECTORY_TOKEN + "/"):
        directory = tempfile.gettempdir() + directory[len(TMP_DIRECTORY_TOKEN) :]
    return Path(directory).expanduser()


class Source:
    """
    A validated input file plus its security-checked metadata.

    Construction runs the whole preparation: upload status, path validation,
    metadata detection, size/MIME/extension checks and naming. Nothing is
    copied or moved until a persisting component asks for a target.
    """

    def __init__(self, descriptor: DescriptorInput, options: Optional[SourceOptions] = None) -> None:
        self.options = options or SourceOptions()
        self.naming = NamingPolicy(self.options)
        self.target: Optional[Path] = None

        descriptor = SourceDescriptor.coerce(descriptor)

        if descriptor.error:
            raise InternalUploadError(descriptor.error)

        self.path = self._resolve_path(descriptor.path)
        self.directory = descriptor.directory or self.options.directory

        raw_name = descriptor.name
        extension = descriptor.extension
        if raw_name is None and descriptor.file:
            raw_name = self.path.name

        if raw_name:
            match = _NAME_EXTENSION_PATTERN.match(raw_name)
            if match:
                raw_name, extension = match.groups()

        size = descriptor.size if descriptor.size is not None else self.path.stat().st_size
        mime = descriptor.mime or detect_mime(self.path)
        if extension is None and descriptor.file:
            extension = self.path.suffix
        extension = (extension or extension_for(mime)).lstrip(".").lower()

        self.check_security(size, mime, extension)

        name = ""
        if raw_name:
            name = self.naming.prepare(raw_name, source=self.path)
        name = name or self.naming.generate(source=self.path)

        self.info = SourceInfo(
            name=name,
            size=size,
            mime=mime,
            extension=extension,
            original_name=descriptor.name or (self.path.name if descriptor.file else None),
        )
        logger.info(
            "Prepared source",
            extra={"source": str(self.path), "target_name": name, "mime": mime, "size": size},
        )

    @classmethod
    def prepare(cls, descriptor: DescriptorInput, options: Optional[SourceOptions] = None) -> "Source":
        return cls(descriptor, options)

    @staticmethod
    def _resolve_path(raw_path: Optional[str]) -> Path:
        if not raw_path or not raw_path.strip():
            raise NoValidSourceError(
                "No source file given, 'file' or 'tmp_name' field cannot be empty"
            )
        if "\x00" in raw_path:
            raise NoValidSourceError("No valid source given, path contains a NUL byte", path=raw_path)

        path = Path(raw_path).expanduser()
        if not path.is_file():
            raise NoValidSourceError(f"No valid source file '{raw_path}' given", path=raw_path)

        try:
            with path.open("rb"):
                pass
        except OSError as exc:
            raise NoValidSourceError(
                f"No valid source file '{raw_path}' given: {exc.strerror or exc}", path=raw_path
            ) from exc

        return path.resolve()

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def size(self) -> int:
        return self.info.size

    @property
    def mime(self) -> str:
        return self.info.mime

    @property
    def extension(self) -> str:
        return self.info.extension

    def is_allowed_size(self, size: int) -> bool:
        max_bytes = self.options.max_file_size_bytes
        return max_bytes is None or size <= max_bytes

    def is_allowed_mime(self, mime: str) -> bool:
        return is_allowed(mime, self.options.allowed_mimes)

    def is_allowed_extension(self, extension: str) -> bool:
        if not extension:
            return self.options.allow_empty_extension
        return is_allowed(extension, self.options.allowed_extensions)

    def check_security(self, size: int, mime: str, extension: str) -> None:
        """Validate size, MIME and extension in that order; the first violation wins."""
        if not self.is_allowed_size(size):
            raise MaxSizeExceededError(
                str(self.options.max_file_size), self.options.max_file_size_bytes or 0, size
            )
        if not self.is_allowed_mime(mime):
            raise MimeNotAllowedError(mime, self.options.allowed_mimes)
        if not self.is_allowed_extension(extension):
            raise ExtensionNotAllowedError(extension, self.options.allowed_extensions)

    def prepare_target(
        self,
        destination: Optional[Union[str, os.PathLike]] = None,
        appendix: Optional[str] = None,
    ) -> Path:
        """
        Resolve the absolute target path for a save or move.

        ``destination`` may be a directory (trailing separator), a file name,
        or a path with directory, name and extension. Missing parts fall back
        to the ``directory`` option and the prepared source info.
        """
        info = self.info
        directory = self.directory
        prepared = True
        name, extension = info.name, info.extension

        destination_str = os.fspath(destination) if destination is not None else ""
        if destination_str.endswith(("/", os.sep)):
            directory = destination_str.rstrip("/" + os.sep) or os.sep
        elif destination_str:
            head, base = os.path.split(destination_str)
            directory = head or directory
            stem, dot, suffix = base.rpartition(".")
            if dot and stem:
                while stem.lower().endswith("." + suffix.lower()):
                    stem = stem[: -(len(suffix) + 1)]
                name, extension = stem, suffix.lower()
            else:
                name = base
            prepared = False

        if not self.is_allowed_extension(extension):
            raise ExtensionNotAllowedError(extension, self.options.allowed_extensions)

        if not directory:
            raise DirectoryError(
                "No directory given, 'directory' option or a destination directory is required",
                directory=None,
            )

        target_dir = resolve_directory(directory)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DirectoryError(
                f"Cannot create target directory '{target_dir}': {exc.strerror or exc}",
                directory=str(target_dir),
            ) from exc

        if prepared:
            base_name = self.naming.append(name, appendix)
        else:
            base_name = self.naming.prepare(name, appendix, source=self.path)
            base_name = base_name or self.naming.append(info.name, appendix)

        file_name = f"{base_name}.{extension}" if extension else base_name
        self.target = target_dir.resolve() / file_name
        return self.target

    def overwrite_check(self, target: Path) -> None:
        """Refuse to replace an existing file unless the ``overwrite`` option is set."""
        if not self.options.overwrite and target.exists():
            raise OverwriteNotAllowedError(str(target))

    def apply_mode(self, target: Path) -> None:
        if self.options.mode is not None:
            os.chmod(target, self.options.mode)

    def remove_source(self) -> bool:
        """Delete the source file if it still exists."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Removed source file", extra={"source": str(self.path)})
        return True
