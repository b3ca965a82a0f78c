"""Shared fixtures for intake tests."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Callable

import pytest
from PIL import Image

from intake.backend import opencv_available

BACKENDS = [
    "pillow",
    pytest.param(
        "opencv",
        marks=pytest.mark.skipif(not opencv_available(), reason="OpenCV is not installed"),
    ),
]


def image_bytes(
    size: tuple[int, int],
    image_format: str = "PNG",
    mode: str = "RGB",
    color: tuple[int, ...] = (200, 40, 40),
) -> bytes:
    """Encode a solid image in memory."""
    buffer = BytesIO()
    with Image.new(mode, size, color) as image:
        image.save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., Path]:
    """Write a solid image below tmp_path and return its path."""

    def _make(
        name: str = "photo.png",
        size: tuple[int, int] = (400, 300),
        image_format: str = "PNG",
        mode: str = "RGB",
        color: tuple[int, ...] = (200, 40, 40),
    ) -> Path:
        path = tmp_path / "input" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(image_bytes(size, image_format, mode, color))
        return path

    return _make


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    return tmp_path / "out"
