"""HTTP route definitions for the intake service."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import FileResponse

from .config import Settings, get_settings
from .errors import (
    ExtensionNotAllowedError,
    ImageError,
    InternalUploadError,
    MaxSizeExceededError,
    MimeNotAllowedError,
    NoValidSourceError,
    OverwriteNotAllowedError,
    UploadError,
    UploadErrorCode,
)
from .imaging import ImageSource
from .models import ErrorResponse, ImageMode, StoredFileResponse, StoredImageResponse
from .storage import FileSource, FileStore

logger = logging.getLogger(__name__)
router = APIRouter()

HTTP_413_CONTENT_TOO_LARGE = 413
HTTP_422_UNPROCESSABLE_CONTENT = 422

_ERROR_RESPONSES = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
}

_IMAGE_MODES: dict[str, Callable[[ImageSource, int, int], ImageSource]] = {
    "resize": lambda image, width, height: image.resize(width, height),
    "resize_thumbnail": lambda image, width, height: image.resize_thumbnail(width, height or None),
    "crop": lambda image, width, height: image.crop(width, height or None),
    "crop_thumbnail": lambda image, width, height: image.crop_thumbnail(width, height or None),
}


def error_status(exc: UploadError) -> int:
    """Map an intake error to an HTTP status code."""
    if isinstance(exc, ImageError):
        return HTTP_422_UNPROCESSABLE_CONTENT
    if isinstance(exc, MaxSizeExceededError):
        return HTTP_413_CONTENT_TOO_LARGE
    if isinstance(exc, (MimeNotAllowedError, ExtensionNotAllowedError)):
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if isinstance(exc, OverwriteNotAllowedError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (InternalUploadError, NoValidSourceError)):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> dict:
    """Health check endpoint for container orchestration."""
    return {"status": "healthy", "service": "intake"}


def get_store(settings: Settings = Depends(get_settings)) -> FileStore:
    """Dependency provider for FileStore."""
    return FileStore(settings.intake_storage_dir)


def _spool_upload(upload: UploadFile) -> Path:
    """Copy the multipart body into a temp file the intake pipeline can stat and read."""
    fd, temp_name = tempfile.mkstemp(prefix="intake-", suffix=".upload")
    with os.fdopen(fd, "wb") as handle:
        shutil.copyfileobj(upload.file, handle)
    return Path(temp_name)


def _descriptor(upload: UploadFile, temp_path: Path, name: Optional[str]) -> dict:
    error = UploadErrorCode.OK if upload.filename else UploadErrorCode.NO_FILE
    return {"tmp_name": str(temp_path), "name": name or upload.filename, "error": int(error)}


@router.post(
    "/files",
    response_model=StoredFileResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
def upload_file(
    file: UploadFile = File(...),
    name: Optional[str] = Form(default=None),
    settings: Settings = Depends(get_settings),
    store: FileStore = Depends(get_store),
) -> StoredFileResponse:
    """Validate an uploaded file and store it unchanged."""
    temp_path = _spool_upload(file)
    try:
        with FileSource(_descriptor(file, temp_path, name), settings.source_options()) as source:
            target = source.move()
            info = source.info
    finally:
        temp_path.unlink(missing_ok=True)

    logger.info(
        "Stored upload",
        extra={"target": str(target), "mime": info.mime, "size": info.size},
    )
    return StoredFileResponse(
        filename=target.name,
        url=store.url_for(target),
        size=info.size,
        mime=info.mime,
        extension=info.extension,
        original_name=info.original_name,
    )


@router.post(
    "/images",
    response_model=StoredImageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**_ERROR_RESPONSES, HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse}},
)
def upload_image(
    file: UploadFile = File(...),
    name: Optional[str] = Form(default=None),
    width: int = Form(default=0, ge=0),
    height: int = Form(default=0, ge=0),
    mode: ImageMode = Form(default="resize"),
    rotate: float = Form(default=0.0),
    append_dimensions: bool = Form(default=False),
    settings: Settings = Depends(get_settings),
    store: FileStore = Depends(get_store),
) -> StoredImageResponse:
    """Validate an uploaded image, transform it and store the result."""
    temp_path = _spool_upload(file)
    try:
        with ImageSource(_descriptor(file, temp_path, name), settings.image_options()) as image:
            if width or height:
                _IMAGE_MODES[mode](image, width, height)
            else:
                image.resample()
            if rotate:
                image.rotate(rotate)

            target = image.save(append_dimensions=append_dimensions)
            info = image.info
            source_info = image.source_info
            backend = image.backend_name
    finally:
        temp_path.unlink(missing_ok=True)

    logger.info(
        "Stored image",
        extra={
            "target": str(target),
            "mode": mode,
            "size": f"{info.width}x{info.height}",
            "backend": backend,
        },
    )
    return StoredImageResponse(
        filename=target.name,
        url=store.url_for(target),
        size=target.stat().st_size,
        mime=info.type.mime,
        extension=target.suffix.lstrip("."),
        original_name=source_info.original_name,
        width=info.width,
        height=info.height,
        type=info.type.value,
        backend=backend,
    )


@router.get("/api/files/{filename}")
async def fetch_file(
    filename: str,
    store: FileStore = Depends(get_store),
) -> FileResponse:
    """Serve binary data for the requested stored file."""
    file_path = store.resolve_path(filename)
    media_type = store.guess_media_type(file_path)
    return FileResponse(path=file_path, media_type=media_type)
