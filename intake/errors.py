"""Exception hierarchy for source intake and image processing."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any


class UploadErrorCode(IntEnum):
    """Upload status codes reported by the multipart layer."""

    OK = 0
    INI_SIZE = 1
    FORM_SIZE = 2
    PARTIAL = 3
    NO_FILE = 4
    NO_TMP_DIR = 6
    CANT_WRITE = 7
    EXTENSION = 8

    @property
    def message(self) -> str:
        return _UPLOAD_ERROR_MESSAGES[self]

    @classmethod
    def to_message(cls, code: int) -> str:
        """Return the fixed human message for a raw code."""
        try:
            return cls(code).message
        except ValueError:
            return "Unknown upload error"


_UPLOAD_ERROR_MESSAGES = {
    UploadErrorCode.OK: "",
    UploadErrorCode.INI_SIZE: "Uploaded file exceeds the server upload size limit",
    UploadErrorCode.FORM_SIZE: "Uploaded file exceeds the size limit declared by the form",
    UploadErrorCode.PARTIAL: "Uploaded file was only partially uploaded",
    UploadErrorCode.NO_FILE: "No file was uploaded",
    UploadErrorCode.NO_TMP_DIR: "Missing a temporary folder",
    UploadErrorCode.CANT_WRITE: "Failed to write file to disk",
    UploadErrorCode.EXTENSION: "An extension stopped the file upload",
}


class ErrorKind(str, Enum):
    """Stable error kinds exposed to callers."""

    INTERNAL = "internal"
    NO_VALID_SOURCE = "no_valid_source"
    MAX_SIZE_EXCEEDED = "max_size_exceeded"
    MIME_NOT_ALLOWED = "mime_not_allowed"
    EXTENSION_NOT_ALLOWED = "extension_not_allowed"
    DIRECTORY_ERROR = "directory_error"
    OVERWRITE_NOT_ALLOWED = "overwrite_not_allowed"
    IMAGE_ERROR = "image_error"
    INVALID_IMAGE_TYPE = "invalid_image_type"
    NO_DESTINATION_IMAGE = "no_destination_image"
    BACKEND_OPERATION = "backend_operation"


class UploadError(RuntimeError):
    """Base exception for recoverable intake failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "detail": self.message, "details": self.details}


class InternalUploadError(UploadError):
    """Raised when the upload layer reported a failure before intake."""

    kind = ErrorKind.INTERNAL

    def __init__(self, code: int) -> None:
        super().__init__(UploadErrorCode.to_message(code), code=int(code))
        self.code = int(code)


class NoValidSourceError(UploadError):
    """Raised when no usable input file could be located."""

    kind = ErrorKind.NO_VALID_SOURCE


class MaxSizeExceededError(UploadError):
    """Raised when the source is larger than the ``max_file_size`` option."""

    kind = ErrorKind.MAX_SIZE_EXCEEDED

    def __init__(self, option: str, max_bytes: int, size: int) -> None:
        super().__init__(
            f"File size exceeded, 'max_file_size' option: {option} ({max_bytes} bytes)",
            option=option,
            max_bytes=max_bytes,
            size=size,
        )


class MimeNotAllowedError(UploadError):
    """Raised when the detected MIME type is outside the allow-list."""

    kind = ErrorKind.MIME_NOT_ALLOWED

    def __init__(self, mime: str, allowed: str) -> None:
        super().__init__(
            f"Mime '{mime}' not allowed by 'allowed_mimes' option, allowed mimes: {allowed}",
            mime=mime,
            allowed=allowed,
        )


class ExtensionNotAllowedError(UploadError):
    """Raised when the source or target extension is outside the allow-list."""

    kind = ErrorKind.EXTENSION_NOT_ALLOWED

    def __init__(self, extension: str, allowed: str) -> None:
        super().__init__(
            f"Extension '{extension}' not allowed by 'allowed_extensions' option, "
            f"allowed extensions: {allowed}",
            extension=extension,
            allowed=allowed,
        )


class DirectoryError(UploadError):
    """Raised when the target directory is missing and cannot be created."""

    kind = ErrorKind.DIRECTORY_ERROR


class OverwriteNotAllowedError(UploadError):
    """Raised when the target exists and the ``overwrite`` option is off."""

    kind = ErrorKind.OVERWRITE_NOT_ALLOWED

    def __init__(self, target: str) -> None:
        super().__init__(
            f"Cannot overwrite existing file '{target}', use 'overwrite' option as true",
            target=target,
        )


class ImageError(UploadError):
    """Base exception for image decoding, transforming and encoding."""

    kind = ErrorKind.IMAGE_ERROR


class InvalidImageTypeError(ImageError):
    """Raised when the image is not one of the supported types."""

    kind = ErrorKind.INVALID_IMAGE_TYPE


class NoDestinationImageError(ImageError):
    """Raised when output is requested before any transformation."""

    kind = ErrorKind.NO_DESTINATION_IMAGE

    def __init__(self) -> None:
        super().__init__(
            "No target image created yet, call one of resample(), resize(), "
            "resize_thumbnail(), crop(), crop_thumbnail(), chop() or rotate() first"
        )


class BackendOperationError(ImageError):
    """Raised when a backend call fails; wraps the native error."""

    kind = ErrorKind.BACKEND_OPERATION

    def __init__(self, operation: str, backend: str, error: BaseException | str) -> None:
        super().__init__(
            f"Failed {operation} with {backend} backend: {error}",
            operation=operation,
            backend=backend,
        )
        self.operation = operation
        self.backend = backend


class InvalidDimensionsError(ValueError):
    """Raised for invalid geometry arguments; a programming error."""
