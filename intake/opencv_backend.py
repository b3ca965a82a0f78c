"""OpenCV backend: raster-buffer image operations on numpy BGR/BGRA arrays."""

from __future__ import annotations

from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .backend import RGBA, ImageBackend, ImageType
from .config import ImageOptions
from .errors import BackendOperationError, ImageError
from .geometry import CropBox, Dimensions, clip_region, rotated_dimensions
from .pillow_backend import to_gif_palette


_GIF_SIGNATURES = (b"GIF87a", b"GIF89a")
_ENCODE_SUFFIXES = {
    ImageType.JPEG: ".jpg",
    ImageType.PNG: ".png",
    ImageType.WEBP: ".webp",
}


class OpenCVBackend(ImageBackend):
    """
    Operates on ``uint8`` numpy arrays in OpenCV channel order.

    Canvases for alpha-capable types are BGRA, JPEG canvases are BGR. Layers
    without alpha are copied onto a canvas, layers with alpha are blended
    with the "over" operator. OpenCV reads and writes no GIF, so GIF frames
    go through Pillow and are quantized with a transparent color key.
    """

    name = "opencv"

    def __init__(self) -> None:
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - depends on runtime
            raise ImageError("OpenCV is required for the 'opencv' image backend.") from exc
        self._cv2 = cv2

    def decode(self, data: bytes) -> np.ndarray:
        cv2 = self._cv2
        if data[:6] in _GIF_SIGNATURES:
            return self._decode_gif(data)

        try:
            image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
        except cv2.error as exc:
            raise BackendOperationError("decoding image", self.name, exc) from exc
        if image is None:
            raise BackendOperationError("decoding image", self.name, "unsupported or corrupt data")
        return self._normalize(image)

    def canvas(self, width: int, height: int, image_type: ImageType, background: RGBA) -> np.ndarray:
        channels = 4 if image_type.supports_alpha else 3
        try:
            return np.full((height, width, channels), self._color(background, channels), dtype=np.uint8)
        except (ValueError, MemoryError) as exc:
            raise BackendOperationError("creating canvas", self.name, exc) from exc

    def scale(self, dst: np.ndarray, src: np.ndarray, width: int, height: int) -> None:
        cv2 = self._cv2
        src_height, src_width = src.shape[:2]
        shrinking = width * height < src_width * src_height
        interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_CUBIC
        try:
            scaled = cv2.resize(src, (width, height), interpolation=interpolation)
        except cv2.error as exc:
            raise BackendOperationError("scaling image", self.name, exc) from exc
        self._draw(dst, scaled, (0, 0))

    def crop_region(self, dst: np.ndarray, src: np.ndarray, x: int, y: int, width: int, height: int) -> None:
        src_height, src_width = src.shape[:2]
        visible, offset = clip_region(CropBox(x, y, width, height), src_width, src_height)
        if visible.width == 0 or visible.height == 0:
            return
        region = src[visible.y : visible.y + visible.height, visible.x : visible.x + visible.width]
        self._draw(dst, region, offset)

    def rotate(self, handle: np.ndarray, degree: float, background: RGBA) -> np.ndarray:
        cv2 = self._cv2
        normalized = degree % 360
        try:
            if normalized == 0:
                return handle.copy()
            if normalized == 90:
                return cv2.rotate(handle, cv2.ROTATE_90_COUNTERCLOCKWISE)
            if normalized == 180:
                return cv2.rotate(handle, cv2.ROTATE_180)
            if normalized == 270:
                return cv2.rotate(handle, cv2.ROTATE_90_CLOCKWISE)

            height, width = handle.shape[:2]
            center = (width / 2, height / 2)
            matrix = cv2.getRotationMatrix2D(center, degree, 1.0)
            bounds = rotated_dimensions(Dimensions(width, height), matrix[0, 0], matrix[0, 1])
            # Shift so the rotated image is centered on the expanded canvas.
            matrix[0, 2] += bounds.width / 2 - center[0]
            matrix[1, 2] += bounds.height / 2 - center[1]
            return cv2.warpAffine(
                handle,
                matrix,
                (bounds.width, bounds.height),
                flags=cv2.INTER_CUBIC,
                borderMode=cv2.BORDER_CONSTANT,
                borderValue=self._color(background, 4),
            )
        except cv2.error as exc:
            raise BackendOperationError("rotating image", self.name, exc) from exc

    def encode(
        self,
        handle: np.ndarray,
        image_type: ImageType,
        options: ImageOptions,
        metadata: Optional[Dict[str, bytes]] = None,
    ) -> bytes:
        if image_type is ImageType.GIF:
            return self._encode_gif(handle)

        cv2 = self._cv2
        image = handle
        params: List[int] = []
        if image_type is ImageType.JPEG:
            if handle.shape[2] == 4:
                image = cv2.cvtColor(handle, cv2.COLOR_BGRA2BGR)
            if options.jpeg_quality > 0:
                params += [cv2.IMWRITE_JPEG_QUALITY, options.jpeg_quality]
        elif image_type is ImageType.WEBP:
            if options.webp_quality > 0:
                params += [cv2.IMWRITE_WEBP_QUALITY, options.webp_quality]
        elif image_type is ImageType.PNG:
            if options.png_compression >= 0:
                params += [cv2.IMWRITE_PNG_COMPRESSION, options.png_compression]
            if options.png_filters >= 0:
                params += [cv2.IMWRITE_PNG_STRATEGY, options.png_filters]

        try:
            success, buffer = cv2.imencode(_ENCODE_SUFFIXES[image_type], image, params)
        except cv2.error as exc:
            raise BackendOperationError(f"encoding {image_type.value}", self.name, exc) from exc
        if not success:
            raise BackendOperationError(f"encoding {image_type.value}", self.name, "encoder returned no data")
        return buffer.tobytes()

    def size(self, handle: np.ndarray) -> Dimensions:
        height, width = handle.shape[:2]
        return Dimensions(width, height)

    def free(self, handle: np.ndarray) -> None:
        # numpy frees the buffer with the last reference; freed handles become read-only.
        handle.setflags(write=False)

    def _decode_gif(self, data: bytes) -> np.ndarray:
        try:
            with Image.open(BytesIO(data)) as frame:
                rgba = np.asarray(frame.convert("RGBA"))
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise BackendOperationError("decoding GIF", self.name, exc) from exc
        return self._cv2.cvtColor(rgba, self._cv2.COLOR_RGBA2BGRA)

    def _encode_gif(self, handle: np.ndarray) -> bytes:
        cv2 = self._cv2
        if handle.shape[2] == 4:
            image = Image.fromarray(cv2.cvtColor(handle, cv2.COLOR_BGRA2RGBA), mode="RGBA")
        else:
            image = Image.fromarray(cv2.cvtColor(handle, cv2.COLOR_BGR2RGB), mode="RGB")

        palette, transparency = to_gif_palette(image)
        params: Dict[str, Any] = {}
        if transparency is not None:
            params["transparency"] = transparency
        try:
            buffer = BytesIO()
            palette.save(buffer, format="GIF", **params)
            return buffer.getvalue()
        except (OSError, ValueError) as exc:
            raise BackendOperationError("encoding GIF", self.name, exc) from exc
        finally:
            palette.close()
            image.close()

    def _normalize(self, image: np.ndarray) -> np.ndarray:
        cv2 = self._cv2
        if image.dtype == np.uint16:
            image = (image / 257).astype(np.uint8)
        elif image.dtype != np.uint8:
            image = cv2.normalize(image, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)

        if image.ndim == 2 or image.shape[2] == 1:
            return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        return image

    @staticmethod
    def _color(background: RGBA, channels: int) -> Tuple[int, ...]:
        red, green, blue, alpha = background
        return (blue, green, red, alpha)[:channels]

    @staticmethod
    def _draw(dst: np.ndarray, layer: np.ndarray, offset: Tuple[int, int]) -> None:
        x, y = offset
        height, width = layer.shape[:2]
        area = dst[y : y + height, x : x + width]

        if layer.shape[2] == 3:
            area[..., :3] = layer
            if dst.shape[2] == 4:
                area[..., 3] = 255
            return

        src_alpha = layer[..., 3:4].astype(np.float32) / 255.0
        src_color = layer[..., :3].astype(np.float32)
        dst_color = area[..., :3].astype(np.float32)

        if dst.shape[2] == 3:
            area[...] = np.rint(src_color * src_alpha + dst_color * (1.0 - src_alpha)).astype(np.uint8)
            return

        dst_alpha = area[..., 3:4].astype(np.float32) / 255.0
        out_alpha = src_alpha + dst_alpha * (1.0 - src_alpha)
        weighted = src_color * src_alpha + dst_color * dst_alpha * (1.0 - src_alpha)
        out_color = np.divide(weighted, out_alpha, out=np.zeros_like(weighted), where=out_alpha > 0)
        area[..., :3] = np.rint(out_color).astype(np.uint8)
        area[..., 3:4] = np.rint(out_alpha * 255.0).astype(np.uint8)
