"""MIME detection from file signatures and MIME/extension mapping."""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Final, Optional

OCTET_STREAM: Final = "application/octet-stream"
EMPTY: Final = "application/x-empty"

_HEADER_SIZE: Final = 512

# Checked in order; longer signatures first where prefixes overlap.
_SIGNATURES: Final[tuple[tuple[bytes, str], ...]] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
    (b"BM", "image/bmp"),
    (b"\x00\x00\x01\x00", "image/vnd.microsoft.icon"),
    (b"%PDF", "application/pdf"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b", "application/gzip"),
    (b"Rar!\x1a\x07", "application/vnd.rar"),
    (b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", "application/x-ole-storage"),
    (b"MZ", "application/x-msdownload"),
    (b"\x7fELF", "application/x-executable"),
    (b"#!", "text/x-shellscript"),
    (b"ID3", "audio/mpeg"),
    (b"OggS", "audio/ogg"),
    (b"fLaC", "audio/flac"),
)

_RIFF_FORMATS: Final[dict[bytes, str]] = {
    b"WEBP": "image/webp",
    b"WAVE": "audio/wav",
    b"AVI ": "video/x-msvideo",
}

_FTYP_BRANDS: Final[dict[bytes, str]] = {
    b"avif": "image/avif",
    b"heic": "image/heic",
    b"heix": "image/heic",
    b"mif1": "image/heif",
    b"qt  ": "video/quicktime",
}

# Preferred extensions where mimetypes would return an unusual first choice.
_EXTENSIONS: Final[dict[str, str]] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/tiff": "tif",
    "image/avif": "avif",
    "image/heic": "heic",
    "image/vnd.microsoft.icon": "ico",
    "application/pdf": "pdf",
    "application/zip": "zip",
    "application/gzip": "gz",
    "application/x-msdownload": "exe",
    "text/plain": "txt",
    "audio/mpeg": "mp3",
    "video/mp4": "mp4",
}


def sniff_mime(data: bytes) -> Optional[str]:
    """Return the MIME type for a known binary signature, or None."""
    if data[:4] == b"RIFF" and len(data) >= 12:
        return _RIFF_FORMATS.get(data[8:12], OCTET_STREAM)
    if data[4:8] == b"ftyp":
        return _FTYP_BRANDS.get(data[8:12], "video/mp4")

    for signature, mime in _SIGNATURES:
        if data.startswith(signature):
            return mime
    return None


def _looks_like_text(data: bytes) -> bool:
    if b"\x00" in data:
        return False
    try:
        data.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte sequence may be cut at the header boundary.
        return exc.start >= len(data) - 3
    return True


def detect_mime(path: str | Path) -> str:
    """Detect the MIME type of a file from its content."""
    file_path = Path(path)
    with file_path.open("rb") as handle:
        header = handle.read(_HEADER_SIZE)

    if not header:
        return EMPTY

    mime = sniff_mime(header)
    if mime is not None:
        return mime

    if _looks_like_text(header):
        guessed, _ = mimetypes.guess_type(file_path.name)
        if guessed and (guessed.startswith("text/") or guessed.endswith(("+xml", "/json", "/xml"))):
            return guessed
        return "text/plain"

    return OCTET_STREAM


def extension_for(mime: str) -> str:
    """Return a file extension (without dot) for a MIME type, or an empty string."""
    mime = mime.lower()
    if mime in _EXTENSIONS:
        return _EXTENSIONS[mime]
    guessed = mimetypes.guess_extension(mime)
    return guessed.lstrip(".") if guessed else ""


def mime_for(extension: str) -> Optional[str]:
    """Return the MIME type registered for an extension."""
    extension = extension.lower().lstrip(".")
    for mime, known in _EXTENSIONS.items():
        if known == extension:
            return mime
    guessed, _ = mimetypes.guess_type(f"file.{extension}")
    return guessed
