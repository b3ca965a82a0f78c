"""Image backend interface, supported types and backend selection."""

from __future__ import annotations

import importlib.util
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from PIL import ImageColor

from .config import ImageOptions
from .errors import ImageError
from .geometry import Dimensions

logger = logging.getLogger(__name__)

RGBA = Tuple[int, int, int, int]
BackgroundValue = Union[str, int, Tuple[int, ...], None]

_TRANSPARENT_NAMES = {"", "none", "transparent"}
# Pillow reports JPEGs carrying an MPF segment (camera and phone shots) as MPO.
_FORMAT_ALIASES = {"MPO": "JPEG", "JPG": "JPEG"}


class ImageType(str, Enum):
    """Image types the engine can decode and encode."""

    JPEG = "JPEG"
    PNG = "PNG"
    GIF = "GIF"
    WEBP = "WEBP"

    @property
    def mime(self) -> str:
        return f"image/{self.value.lower()}"

    @property
    def extension(self) -> str:
        return "jpg" if self is ImageType.JPEG else self.value.lower()

    @property
    def supports_alpha(self) -> bool:
        return self is not ImageType.JPEG

    @classmethod
    def from_format(cls, image_format: Optional[str]) -> Optional["ImageType"]:
        """Map a Pillow format name to a supported type, or None."""
        image_format = (image_format or "").upper()
        try:
            return cls(_FORMAT_ALIASES.get(image_format, image_format))
        except ValueError:
            return None


def resolve_background(value: BackgroundValue, image_type: ImageType) -> RGBA:
    """
    Resolve a background option to an RGBA color.

    ``none`` (or no value) means transparent where the type supports alpha
    and black otherwise. Names and hex strings go through ``PIL.ImageColor``;
    integers are read as ``0xRRGGBB``.
    """
    if value is None or (isinstance(value, str) and value.strip().lower() in _TRANSPARENT_NAMES):
        return (0, 0, 0, 0) if image_type.supports_alpha else (0, 0, 0, 255)

    if isinstance(value, bool):
        raise ValueError(f"Invalid background color {value!r}.")
    if isinstance(value, int):
        rgba: Tuple[int, ...] = ((value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF, 255)
    elif isinstance(value, tuple):
        rgba = tuple(value) + (255,) * (4 - len(value))
    else:
        try:
            rgba = ImageColor.getrgb(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid background color '{value}'.") from exc
        if len(rgba) == 3:
            rgba = (*rgba, 255)

    if not image_type.supports_alpha:
        rgba = (*rgba[:3], 255)
    return (int(rgba[0]), int(rgba[1]), int(rgba[2]), int(rgba[3]))


class ImageBackend(ABC):
    """
    Pixel operations behind the transformation engine.

    Handles are opaque to the engine: each backend decodes into its own
    native type and only ever receives handles it produced. Drawing calls
    (``scale``, ``crop_region``) write into a destination canvas in place.
    """

    name: str = "abstract"

    @abstractmethod
    def decode(self, data: bytes) -> Any:
        """Decode encoded image bytes into a native handle."""

    @abstractmethod
    def canvas(self, width: int, height: int, image_type: ImageType, background: RGBA) -> Any:
        """Allocate a canvas filled with ``background``."""

    @abstractmethod
    def scale(self, dst: Any, src: Any, width: int, height: int) -> None:
        """Resample all of ``src`` to ``width`` x ``height`` and draw it at the canvas origin."""

    @abstractmethod
    def crop_region(self, dst: Any, src: Any, x: int, y: int, width: int, height: int) -> None:
        """Copy the ``src`` region at ``(x, y)`` 1:1 onto the canvas origin."""

    @abstractmethod
    def rotate(self, handle: Any, degree: float, background: RGBA) -> Any:
        """Return a new handle rotated counter-clockwise by ``degree``, expanding the canvas."""

    @abstractmethod
    def encode(
        self,
        handle: Any,
        image_type: ImageType,
        options: ImageOptions,
        metadata: Optional[Dict[str, bytes]] = None,
    ) -> bytes:
        """Encode a handle to bytes of the given type."""

    @abstractmethod
    def size(self, handle: Any) -> Dimensions:
        """Return the pixel size of a handle."""

    def metadata(self, handle: Any) -> Dict[str, bytes]:
        """Return metadata blocks (``exif``, ``icc_profile``) carried by a decoded handle."""
        return {}

    def free(self, handle: Any) -> None:
        """Release a handle; the handle must not be used afterwards."""


def opencv_available() -> bool:
    return importlib.util.find_spec("cv2") is not None


def select_backend(name: str = "auto") -> ImageBackend:
    """Instantiate a backend by name; ``auto`` prefers OpenCV when it is installed."""
    backend_name = name.strip().lower()
    if backend_name == "auto":
        backend_name = "opencv" if opencv_available() else "pillow"

    if backend_name == "opencv":
        from .opencv_backend import OpenCVBackend

        backend: ImageBackend = OpenCVBackend()
    elif backend_name == "pillow":
        from .pillow_backend import PillowBackend

        backend = PillowBackend()
    else:
        raise ImageError(f"Unknown image backend '{name}', valid backends: auto, opencv, pillow")

    logger.info("Selected image backend", extra={"backend": backend.name, "requested": name})
    return backend
