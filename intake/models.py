"""Pydantic models for the intake service API."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

ImageMode = Literal["resize", "resize_thumbnail", "crop", "crop_thumbnail"]


class StoredFileResponse(BaseModel):
    """Response body returned after a file was validated and stored."""

    filename: str = Field(description="Name of the stored file inside the storage directory.")
    url: str = Field(description="Relative HTTP path that can be used to download the file.")
    size: int = Field(ge=0, description="Size of the accepted upload in bytes.")
    mime: str = Field(description="MIME type detected from the file content.")
    extension: str = Field(description="Lower-case extension of the stored file, may be empty.")
    original_name: Optional[str] = Field(
        default=None,
        description="File name as sent by the client.",
    )


class StoredImageResponse(StoredFileResponse):
    """Response body returned after an image was transformed and stored."""

    width: int = Field(ge=1, description="Width of the stored image in pixels.")
    height: int = Field(ge=1, description="Height of the stored image in pixels.")
    type: str = Field(description='Image type, one of "JPEG", "PNG", "GIF" or "WEBP".')
    backend: str = Field(description="Image backend that produced the file.")


class ErrorResponse(BaseModel):
    """Error body returned for rejected uploads."""

    kind: str = Field(description="Stable machine readable error kind.")
    detail: str
    details: dict[str, Any] = Field(default_factory=dict)
