"""Pillow backend: object-style image operations."""

from __future__ import annotations

import logging
from io import BytesIO
from typing import Any, Dict, Optional

from PIL import Image, UnidentifiedImageError

from .backend import RGBA, ImageBackend, ImageType
from .config import ImageOptions
from .errors import BackendOperationError
from .geometry import CropBox, Dimensions, clip_region

logger = logging.getLogger(__name__)

_GIF_TRANSPARENT_INDEX = 255
_GIF_ALPHA_THRESHOLD = 128


class PillowBackend(ImageBackend):
    """Operates on ``PIL.Image.Image`` objects (RGB or RGBA working canvases)."""

    name = "pillow"

    def decode(self, data: bytes) -> Image.Image:
        try:
            image = Image.open(BytesIO(data))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise BackendOperationError("decoding image", self.name, exc) from exc
        return image

    def canvas(self, width: int, height: int, image_type: ImageType, background: RGBA) -> Image.Image:
        try:
            if image_type.supports_alpha:
                return Image.new("RGBA", (width, height), background)
            return Image.new("RGB", (width, height), background[:3])
        except (ValueError, MemoryError) as exc:
            raise BackendOperationError("creating canvas", self.name, exc) from exc

    def scale(self, dst: Image.Image, src: Image.Image, width: int, height: int) -> None:
        layer = self._rgba(src)
        try:
            scaled = layer.resize((width, height), Image.Resampling.LANCZOS)
        except (ValueError, OSError) as exc:
            raise BackendOperationError("scaling image", self.name, exc) from exc
        finally:
            if layer is not src:
                layer.close()
        self._draw(dst, scaled, (0, 0))
        scaled.close()

    def crop_region(self, dst: Image.Image, src: Image.Image, x: int, y: int, width: int, height: int) -> None:
        visible, offset = clip_region(CropBox(x, y, width, height), *src.size)
        if visible.width == 0 or visible.height == 0:
            return

        try:
            region = src.crop(
                (visible.x, visible.y, visible.x + visible.width, visible.y + visible.height)
            )
        except (ValueError, OSError) as exc:
            raise BackendOperationError("cropping image", self.name, exc) from exc

        layer = self._rgba(region)
        self._draw(dst, layer, offset)
        if layer is not region:
            layer.close()
        region.close()

    def rotate(self, handle: Image.Image, degree: float, background: RGBA) -> Image.Image:
        layer = self._rgba(handle)
        try:
            rotated = layer.rotate(
                degree,
                resample=Image.Resampling.BICUBIC,
                expand=True,
                fillcolor=background,
            )
        except (ValueError, OSError) as exc:
            raise BackendOperationError("rotating image", self.name, exc) from exc
        finally:
            if layer is not handle:
                layer.close()

        if handle.mode == "RGBA":
            return rotated

        # Flatten onto a single opaque layer for alpha-less canvases.
        flat = Image.new("RGB", rotated.size, background[:3])
        flat.paste(rotated, (0, 0), mask=rotated)
        rotated.close()
        return flat

    def encode(
        self,
        handle: Image.Image,
        image_type: ImageType,
        options: ImageOptions,
        metadata: Optional[Dict[str, bytes]] = None,
    ) -> bytes:
        params: Dict[str, Any] = {}
        image = handle

        try:
            if image_type is ImageType.JPEG:
                image = handle if handle.mode == "RGB" else handle.convert("RGB")
                if options.jpeg_quality > 0:
                    params["quality"] = options.jpeg_quality
            elif image_type is ImageType.WEBP:
                if options.webp_quality > 0:
                    params["quality"] = options.webp_quality
            elif image_type is ImageType.PNG:
                if options.png_compression >= 0:
                    params["compress_level"] = options.png_compression
            elif image_type is ImageType.GIF:
                image, transparency = to_gif_palette(handle)
                if transparency is not None:
                    params["transparency"] = transparency

            if image_type is not ImageType.GIF:
                params.update(self._metadata_params(metadata or {}, options))

            buffer = BytesIO()
            image.save(buffer, format=image_type.value, **params)
            return buffer.getvalue()
        except (OSError, ValueError, KeyError) as exc:
            raise BackendOperationError(f"encoding {image_type.value}", self.name, exc) from exc
        finally:
            if image is not handle:
                image.close()

    def size(self, handle: Image.Image) -> Dimensions:
        return Dimensions(*handle.size)

    def metadata(self, handle: Image.Image) -> Dict[str, bytes]:
        info = handle.info
        return {key: info[key] for key in ("exif", "icc_profile") if isinstance(info.get(key), bytes)}

    def free(self, handle: Image.Image) -> None:
        handle.close()

    @staticmethod
    def _metadata_params(metadata: Dict[str, bytes], options: ImageOptions) -> Dict[str, bytes]:
        if not options.strip_metadata:
            return dict(metadata)
        # Profile-preserving strip: drop everything but the ICC profile.
        if options.keep_icc_profile and metadata.get("icc_profile"):
            return {"icc_profile": metadata["icc_profile"]}
        return {}

    @staticmethod
    def _rgba(image: Image.Image) -> Image.Image:
        return image if image.mode == "RGBA" else image.convert("RGBA")

    @staticmethod
    def _draw(dst: Image.Image, layer: Image.Image, offset: tuple[int, int]) -> None:
        if dst.mode == "RGBA":
            dst.alpha_composite(layer, dest=offset)
        else:
            dst.paste(layer, offset, mask=layer)


def to_gif_palette(image: Image.Image) -> tuple[Image.Image, Optional[int]]:
    """
    Quantize an image for GIF output.

    Pixels with alpha below the threshold are mapped to a reserved color key
    index, which is returned as the ``transparency`` value (None when the
    image has no transparent pixels).
    """
    rgba = image if image.mode == "RGBA" else image.convert("RGBA")
    rgb = rgba.convert("RGB")
    palette = rgb.quantize(colors=_GIF_TRANSPARENT_INDEX)
    rgb.close()
    # Pad to 256 entries so the color key index exists in the palette.
    colors = palette.getpalette() or []
    palette.putpalette(colors + [0] * (768 - len(colors)))

    mask = rgba.getchannel("A").point(lambda value: 255 if value < _GIF_ALPHA_THRESHOLD else 0)
    transparency = None
    if mask.getbbox() is not None:
        palette.paste(_GIF_TRANSPARENT_INDEX, mask=mask)
        transparency = _GIF_TRANSPARENT_INDEX

    if rgba is not image:
        rgba.close()
    return palette, transparency
