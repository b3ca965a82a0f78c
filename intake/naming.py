"""Target name sanitizing, hashing and unique id generation."""

from __future__ import annotations

import hashlib
import re
import secrets
import time
import unicodedata
import uuid
from pathlib import Path
from typing import Optional

from .config import SourceOptions

MAX_NAME_LENGTH = 255

_SLUG_PATTERN = re.compile(r"[^A-Za-z0-9]+")
_UNSAFE_PATTERN = re.compile(r"[/\\\x00]")
_CHUNK_SIZE = 1024 * 1024


def slugify(value: str, lower: bool = True) -> str:
    """Transliterate to ASCII letters, digits and single hyphens."""
    ascii_value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = _SLUG_PATTERN.sub("-", ascii_value).strip("-")
    return slug.lower() if lower else slug


def generate_id() -> str:
    """
    Return a time-ordered random identifier (UUID version 7 layout).

    The leading 48 bits are the Unix time in milliseconds, the remaining
    bits come from ``secrets`` so ids sort by creation time but stay
    unpredictable.
    """
    timestamp_ms = time.time_ns() // 1_000_000
    value = ((timestamp_ms & ((1 << 48) - 1)) << 80) | int.from_bytes(secrets.token_bytes(10), "big")
    value = (value & ~(0xF << 76)) | (0x7 << 76)
    value = (value & ~(0x3 << 62)) | (0x2 << 62)
    return uuid.UUID(int=value).hex


def _new_hasher(length: int):
    if length == 8:
        return hashlib.blake2b(digest_size=4)
    if length == 16:
        return hashlib.blake2b(digest_size=8)
    if length == 32:
        return hashlib.md5(usedforsecurity=False)
    if length == 40:
        return hashlib.sha1(usedforsecurity=False)
    raise ValueError(f"Invalid hash length {length}, valid lengths: 8, 16, 32, 40")


class NamingPolicy:
    """Turns raw candidate names into filesystem-safe base names."""

    def __init__(self, options: SourceOptions) -> None:
        self.options = options

    def prepare(
        self,
        name: str,
        appendix: Optional[str] = None,
        *,
        source: Optional[Path] = None,
    ) -> str:
        """
        Sanitize ``name`` and join ``appendix`` with a hyphen.

        The name is truncated to 255 characters before the appendix is added.
        When a hash mode is configured the sanitized name is replaced by its
        hash (``file`` mode hashes the content of ``source``).
        """
        name = self._sanitize(name.strip())
        if len(name) > MAX_NAME_LENGTH:
            name = name[:MAX_NAME_LENGTH].rstrip("-")

        if name and self.options.hash_mode:
            name = self.hash(name, source=source)

        return self.append(name, appendix)

    def append(self, name: str, appendix: Optional[str]) -> str:
        """Join an already prepared name with a sanitized appendix."""
        appendix_value = self._sanitize((appendix or "").strip())
        if appendix_value:
            name = f"{name}-{appendix_value}"
        return name.strip("-")

    def generate(self, *, source: Optional[Path] = None) -> str:
        """Return a unique name for sources that came without one."""
        name = generate_id()
        if self.options.hash_mode:
            name = self.hash(name, source=source)
        return name

    def hash(self, name: str, *, source: Optional[Path] = None) -> str:
        hasher = _new_hasher(self.options.hash_length)
        mode = self.options.hash_mode

        if mode == "rand":
            hasher.update(secrets.token_bytes(16))
        elif mode == "name":
            hasher.update(name.encode("utf-8"))
        elif mode == "file":
            if source is None:
                raise ValueError("Hash mode 'file' requires a source file.")
            with Path(source).open("rb") as handle:
                for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
                    hasher.update(chunk)
        else:
            raise ValueError(f"Invalid hash mode '{mode}', valid modes: rand, name, file")

        return hasher.hexdigest()

    def _sanitize(self, value: str) -> str:
        if not value:
            return ""
        if self.options.slug:
            return slugify(value, lower=self.options.slug_lower)
        return _UNSAFE_PATTERN.sub("", value)
