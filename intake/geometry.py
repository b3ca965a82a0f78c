"""Pure geometry for resize, crop and cover thumbnails."""

from __future__ import annotations

from typing import NamedTuple, Tuple

from .errors import InvalidDimensionsError


class Dimensions(NamedTuple):
    """A (width, height) pair in pixels."""

    width: int
    height: int

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


class CropBox(NamedTuple):
    """Source region to copy: origin plus size."""

    x: int
    y: int
    width: int
    height: int


def validate_dimensions(width: int, height: int, *, allow_zero: bool = False) -> None:
    """Reject negative sizes, and both sizes being zero unless allowed."""
    if width < 0 or height < 0:
        raise InvalidDimensionsError("Both width and height must be greater than -1.")
    if width == 0 and height == 0 and not allow_zero:
        raise InvalidDimensionsError("Either width or height must be greater than 0.")


def fit_dimensions(
    orig_width: int,
    orig_height: int,
    width: int,
    height: int,
    *,
    adjust: bool = False,
    proportion: bool = True,
) -> Dimensions:
    """
    Compute the size of a resized image.

    With ``proportion`` a single scale factor is used: the requested axis
    alone when the other is 0, else ``min(width / orig_width, height /
    orig_height)`` so the result fits inside the box. Sizes are truncated,
    and integer arithmetic keeps the binding axis equal to the request.
    Without ``proportion`` each axis takes its requested value or the
    original when 0. ``adjust`` clamps requests to the original size first.
    """
    if adjust:
        width = min(width, orig_width)
        height = min(height, orig_height)

    if width == 0 and height == 0:
        return Dimensions(orig_width, orig_height)

    if not proportion:
        return Dimensions(width or orig_width, height or orig_height)

    if width == 0:
        new_width, new_height = orig_width * height // orig_height, height
    elif height == 0:
        new_width, new_height = width, orig_height * width // orig_width
    elif width * orig_height <= height * orig_width:
        new_width, new_height = width, orig_height * width // orig_width
    else:
        new_width, new_height = orig_width * height // orig_height, height

    return Dimensions(max(1, new_width), max(1, new_height))


def centered_crop_origin(orig_width: int, orig_height: int, width: int, height: int) -> Tuple[int, int]:
    """Origin that centers a ``width`` x ``height`` box on the image."""
    return int((orig_width - width) / 2), int((orig_height - height) / 2)


def margin_crop_origin(orig_width: int, orig_height: int, width: int, height: int) -> Tuple[int, int]:
    """
    Origin for a proportional crop.

    The reference box is a square of half the larger requested side and the
    offset divides the remaining space by 4 instead of 2, leaving a wider
    margin toward the bottom/right edges.
    """
    box = int(0.5 * max(width, height))
    return int((orig_width - box) / 4), int((orig_height - box) / 4)


def cover_crop_box(orig_width: int, orig_height: int, width: int, height: int) -> CropBox:
    """
    Region to crop so that scaling it to ``width`` x ``height`` needs no padding.

    When ``orig_width / width < orig_height / height`` the full width is kept
    and the height is cut to ``floor(height * orig_width / width)``,
    vertically centered; otherwise the full height is kept and the width is
    cut to ``ceil(width * orig_height / height)``, horizontally centered.
    """
    if orig_width * height < orig_height * width:
        crop_height = height * orig_width // width
        y = int((orig_height - height * orig_width / width) / 2)
        return CropBox(0, y, orig_width, crop_height)

    crop_width = -(-(width * orig_height) // height)
    x = int((orig_width - width * orig_height / height) / 2)
    return CropBox(x, 0, crop_width, orig_height)


def clip_region(box: CropBox, src_width: int, src_height: int) -> Tuple[CropBox, Tuple[int, int]]:
    """
    Clip a crop region to the source bounds.

    Returns the visible source region and the offset at which it lands on a
    canvas of the unclipped box size.
    """
    left = max(box.x, 0)
    top = max(box.y, 0)
    right = min(box.x + box.width, src_width)
    bottom = min(box.y + box.height, src_height)
    visible = CropBox(left, top, max(0, right - left), max(0, bottom - top))
    return visible, (left - box.x, top - box.y)


def rotated_dimensions(dims: Dimensions, cos_value: float, sin_value: float) -> Dimensions:
    """Bounding box of a rotated ``dims`` rectangle."""
    width = int(round(dims.height * abs(sin_value) + dims.width * abs(cos_value)))
    height = int(round(dims.height * abs(cos_value) + dims.width * abs(sin_value)))
    return Dimensions(max(1, width), max(1, height))
