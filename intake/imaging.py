"""Image transformation engine: resize, crop, rotate and re-encode prepared sources."""

from __future__ import annotations

import base64
import logging
import os
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Mapping, NamedTuple, Optional, Union

from PIL import Image, UnidentifiedImageError

from .backend import RGBA, BackgroundValue, ImageBackend, ImageType, resolve_background, select_backend
from .config import ImageOptions, SourceOptions
from .errors import ImageError, InvalidImageTypeError, NoDestinationImageError, UploadError
from .geometry import (
    Dimensions,
    centered_crop_origin,
    cover_crop_box,
    fit_dimensions,
    margin_crop_origin,
    validate_dimensions,
)
from .source import DescriptorInput, Source, SourceInfo
from .storage import Destination, move_file

logger = logging.getLogger(__name__)

OptionsInput = Union[ImageOptions, SourceOptions, Mapping[str, Any], None]


class ImageInfo(NamedTuple):
    """Size and type of the current working image."""

    width: int
    height: int
    type: ImageType

    @property
    def dimensions(self) -> Dimensions:
        return Dimensions(self.width, self.height)


def coerce_image_options(options: OptionsInput) -> ImageOptions:
    if options is None:
        return ImageOptions()
    if isinstance(options, ImageOptions):
        return options
    if isinstance(options, SourceOptions):
        return ImageOptions.model_validate(options.model_dump())
    return ImageOptions.model_validate(dict(options))


def probe_image(source: Union[Path, BytesIO]) -> ImageInfo:
    """Read width, height and type without decoding pixel data."""
    try:
        with Image.open(source) as probe:
            image_format, (width, height) = probe.format, probe.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ImageError(f"Failed getting source info: {exc}") from exc

    image_type = ImageType.from_format(image_format)
    if image_type is None:
        raise InvalidImageTypeError(
            f"Invalid image type '{image_format}', valid types: JPEG, PNG, GIF, WEBP",
            type=image_format,
        )
    return ImageInfo(width, height, image_type)


class ImageSource:
    """
    A prepared source that can be transformed and written as an image.

    Operations are chainable: each one reads the current working image
    (the source file at first, then the re-encoded result of the previous
    operation) and produces a new target image::

        with ImageSource(descriptor, {"directory": "@tmp"}) as image:
            image.resize(800, 0).crop(400).save()

    Handles are released by ``close()``, by ``clear()`` when the ``clear``
    option is set, and on context manager exit.
    """

    def __init__(self, descriptor: DescriptorInput, options: OptionsInput = None) -> None:
        self.options = coerce_image_options(options)
        self.source = Source(descriptor, self.options)
        self._backend = select_backend(self.options.backend)

        self._info: Optional[ImageInfo] = None
        self._data: Optional[bytes] = None
        self._dirty = True
        self._chained = False
        self._metadata: dict[str, bytes] = {}
        self._source_image: Any = None
        self._target_image: Any = None

        self.resized = False
        self.new_dimensions: Optional[Dimensions] = None

    @classmethod
    def prepare(cls, descriptor: DescriptorInput, options: OptionsInput = None) -> "ImageSource":
        return cls(descriptor, options)

    @property
    def backend(self) -> ImageBackend:
        return self._backend

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def source_info(self) -> SourceInfo:
        return self.source.info

    @property
    def info(self) -> ImageInfo:
        return self.fill_info()

    @property
    def dimensions(self) -> Dimensions:
        return self.fill_info().dimensions

    @property
    def source_image(self) -> Any:
        return self._source_image

    @property
    def target_image(self) -> Any:
        return self._target_image

    def fill_info(self) -> ImageInfo:
        """
        Probe the current working image.

        Before any operation this reads the source file; afterwards the
        target image is encoded and the result becomes the working bytes
        the next operation decodes. Repeated calls without a change in
        between return the cached info.
        """
        if self._info is not None and not self._dirty:
            return self._info

        if self._target_image is not None and self._info is not None:
            self._data = self._encode(self._target_image, self._info.type)
            self._info = probe_image(BytesIO(self._data))
        else:
            self._info = probe_image(self.source.path)

        self._dirty = False
        return self._info

    def resample(self) -> "ImageSource":
        """Redraw the working image at its current size."""
        return self.resize(0, 0, resample=True)

    def resize(
        self,
        width: int,
        height: int = 0,
        *,
        adjust: bool = False,
        proportion: bool = True,
        resample: bool = False,
    ) -> "ImageSource":
        validate_dimensions(width, height, allow_zero=resample)

        info, source = self._load()
        size = fit_dimensions(
            info.width,
            info.height,
            width,
            height,
            adjust=adjust and not resample,
            proportion=proportion,
        )
        self._render(info, size, lambda canvas: self._backend.scale(canvas, source, *size))

        self.resized = True
        logger.debug("Resized image", extra={"from_size": str(info.dimensions), "to_size": str(size)})
        return self

    def resize_thumbnail(self, width: int, height: Optional[int] = None) -> "ImageSource":
        return self.resize(width, width if height is None else height)

    def crop(
        self,
        width: int,
        height: Optional[int] = None,
        *,
        x: Optional[int] = None,
        y: Optional[int] = None,
        proportion: bool = False,
    ) -> "ImageSource":
        """
        Extract a ``width`` x ``height`` region (square when ``height`` is omitted).

        Without an explicit origin the region is centered, or placed by the
        margin rule when ``proportion`` is set. Parts of the region outside
        the image keep the canvas background.
        """
        validate_dimensions(width, height or 0)
        height = height or width
        width = width or height

        info, source = self._load()
        if x is None or y is None:
            place = margin_crop_origin if proportion else centered_crop_origin
            origin_x, origin_y = place(info.width, info.height, width, height)
            x = origin_x if x is None else x
            y = origin_y if y is None else y

        size = Dimensions(width, height)
        self._render(
            info,
            size,
            lambda canvas: self._backend.crop_region(canvas, source, x, y, width, height),
        )
        logger.debug("Cropped image", extra={"to_size": str(size), "x": x, "y": y})
        return self

    def crop_thumbnail(self, width: int, height: Optional[int] = None) -> "ImageSource":
        """Cover thumbnail: crop to the target aspect ratio, then scale to exactly ``width`` x ``height``."""
        validate_dimensions(width, height or 0)
        height = height or width
        width = width or height

        info = self.fill_info()
        box = cover_crop_box(info.width, info.height, width, height)
        self.crop(box.width, box.height, x=box.x, y=box.y)
        self.resized = True
        return self.resize(width, height, proportion=False)

    def chop(self, width: int, height: int, x: int, y: int) -> "ImageSource":
        return self.crop(width, height, x=x, y=y, proportion=False)

    def rotate(self, degree: float, background: BackgroundValue = None) -> "ImageSource":
        """Rotate clockwise by ``degree``, expanding the canvas to fit."""
        if self._target_image is None:
            self.resample()

        info = self._info if self._info is not None else self.fill_info()
        color = self._background(self.options.background if background is None else background, info.type)

        # Backends rotate counter-clockwise.
        rotated = self._backend.rotate(self._target_image, -degree, color)
        self._set_target(rotated)
        logger.debug("Rotated image", extra={"degree": degree, "to_size": str(self.new_dimensions)})
        return self

    def output(self) -> bytes:
        """Return the encoded target image."""
        if self._target_image is None:
            raise NoDestinationImageError()
        self.fill_info()
        if self._data is None:
            raise NoDestinationImageError()
        return self._data

    def output_to(self, path: Union[str, os.PathLike]) -> Path:
        """Write the encoded target image to ``path`` and return it."""
        target = Path(path)
        data = self.output()
        try:
            target.write_bytes(data)
        except OSError as exc:
            raise ImageError(f"Failed writing image '{target}': {exc.strerror or exc}", target=str(target)) from exc
        return target

    def to_base64(self) -> str:
        return base64.b64encode(self.output()).decode("ascii")

    def to_data_url(self) -> str:
        data = self.to_base64()
        return f"data:{self.fill_info().type.mime};base64,{data}"

    def save(
        self,
        destination: Destination = None,
        appendix: Optional[str] = None,
        append_dimensions: bool = False,
    ) -> Path:
        """
        Encode the target image into its resolved target path.

        With ``append_dimensions`` the new size is added to the appendix,
        giving names such as ``photo-800x600`` or ``photo-800x600-thumb``.
        """
        if self._target_image is None:
            raise NoDestinationImageError()

        if append_dimensions and self.new_dimensions is not None:
            size = str(self.new_dimensions)
            appendix = size if appendix is None else f"{size}-{appendix}"

        target = self.source.prepare_target(destination, appendix)
        self.source.overwrite_check(target)
        self.output_to(target)
        self.source.apply_mode(target)
        logger.info("Saved image", extra={"source": str(self.source.path), "target": str(target)})
        return target

    def move(self, destination: Destination = None, appendix: Optional[str] = None) -> Path:
        """
        Persist and remove the source.

        A transformed image is encoded into the target and the source file is
        deleted afterwards; an untouched source is moved as is.
        """
        if self._target_image is not None:
            target = self.save(destination, appendix)
            self.source.remove_source()
            return target

        target = self.source.prepare_target(destination, appendix)
        self.source.overwrite_check(target)
        try:
            move_file(self.source.path, target)
        except OSError as exc:
            raise UploadError(
                f"Failed moving image '{target}': {exc.strerror or exc}", target=str(target)
            ) from exc
        self.source.apply_mode(target)
        logger.info("Moved image", extra={"source": str(self.source.path), "target": str(target)})
        return target

    def clear(self, force: bool = False) -> None:
        """Delete the source per policy and free image handles when the ``clear`` option is set."""
        if force or self.options.clear_source:
            self.source.remove_source()
        if self.options.clear:
            self.close()

    def close(self) -> None:
        """Free image handles; a later operation starts again from the source file."""
        self._release_source()
        if self._target_image is not None:
            self._backend.free(self._target_image)
            self._target_image = None
        self._info = None
        self._data = None
        self._dirty = True
        self._chained = False
        self._metadata = {}

    def __enter__(self) -> "ImageSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _load(self) -> tuple[ImageInfo, Any]:
        """Return the current info and a decoded handle of the working image."""
        info = self.fill_info()

        if self._chained and self._data is not None:
            self._release_source()
            self._source_image = self._backend.decode(self._data)
            self._chained = False
        elif self._source_image is None:
            try:
                data = self.source.path.read_bytes()
            except OSError as exc:
                raise ImageError(f"Failed reading source image: {exc.strerror or exc}") from exc
            self._source_image = self._backend.decode(data)
            self._metadata = self._backend.metadata(self._source_image)

        return info, self._source_image

    def _render(self, info: ImageInfo, size: Dimensions, draw: Callable[[Any], None]) -> None:
        color = self._background(self.options.background, info.type)
        canvas = self._backend.canvas(size.width, size.height, info.type, color)
        try:
            draw(canvas)
        except Exception:
            self._backend.free(canvas)
            raise
        self._set_target(canvas)

    def _set_target(self, handle: Any) -> None:
        if self._target_image is not None and self._target_image is not handle:
            self._backend.free(self._target_image)
        self._target_image = handle
        self.new_dimensions = self._backend.size(handle)
        self._dirty = True
        self._chained = True

    def _release_source(self) -> None:
        if self._source_image is not None:
            self._backend.free(self._source_image)
            self._source_image = None

    def _encode(self, handle: Any, image_type: ImageType) -> bytes:
        return self._backend.encode(handle, image_type, self.options, self._metadata)

    @staticmethod
    def _background(value: BackgroundValue, image_type: ImageType) -> RGBA:
        try:
            return resolve_background(value, image_type)
        except ValueError as exc:
            raise ImageError(str(exc), background=str(value)) from exc
