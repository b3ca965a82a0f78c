"""Tests for the image transformation engine under every available backend."""

from __future__ import annotations

from io import BytesIO

import pytest
from PIL import Image

from conftest import BACKENDS
from intake.backend import opencv_available
from intake.config import ImageOptions, SourceOptions
from intake.errors import (
    ImageError,
    InvalidDimensionsError,
    InvalidImageTypeError,
    NoDestinationImageError,
)
from intake.geometry import Dimensions
from intake.imaging import ImageSource, coerce_image_options

RED = (220, 30, 30)
BLUE = (30, 30, 220)


@pytest.fixture(params=BACKENDS)
def backend(request) -> str:
    return request.param


def decode(data: bytes) -> Image.Image:
    image = Image.open(BytesIO(data))
    image.load()
    return image


def is_red(pixel) -> bool:
    return pixel[0] > 150 and pixel[2] < 90


def is_blue(pixel) -> bool:
    return pixel[2] > 150 and pixel[0] < 90


def test_resize_jpeg_upload(make_image, out_dir, backend):
    path = make_image("wide.jpg", size=(1000, 500), image_format="JPEG")
    options = ImageOptions(
        allowed_mimes="image/jpeg",
        allowed_extensions="jpg,jpeg",
        directory=str(out_dir),
        backend=backend,
    )

    with ImageSource(path, options) as image:
        image.resize(500, 0)
        target = image.save()

        assert image.new_dimensions == Dimensions(500, 250)

    saved = decode(target.read_bytes())
    assert saved.size == (500, 250)
    assert saved.format == "JPEG"
    assert target.name == "wide.jpg"


def test_crop_thumbnail_is_exact_and_centered(make_image, backend):
    path = make_image("frame.png", size=(400, 300), color=RED)
    with Image.open(path) as striped:
        striped = striped.copy()
    striped.paste(BLUE, (0, 0, 50, 300))
    striped.paste(BLUE, (350, 0, 400, 300))
    striped.save(path)

    with ImageSource(path, {"backend": backend}) as image:
        image.crop_thumbnail(200, 200)
        output = decode(image.output()).convert("RGB")

        assert image.new_dimensions == Dimensions(200, 200)
        assert image.resized is True

    assert output.size == (200, 200)
    for point in [(0, 0), (199, 0), (0, 199), (199, 199), (100, 100)]:
        assert is_red(output.getpixel(point))


def test_crop_thumbnail_tall_source(make_image, backend):
    path = make_image("tall.png", size=(300, 600))

    with ImageSource(path, {"backend": backend}) as image:
        image.crop_thumbnail(120, 80)

        assert image.new_dimensions == Dimensions(120, 80)
        assert decode(image.output()).size == (120, 80)


def test_resize_keeps_transparency(make_image, backend):
    path = make_image("logo.png", size=(100, 100), mode="RGBA", color=(0, 0, 0, 0))
    with Image.open(path) as logo:
        logo = logo.copy()
    logo.paste((10, 200, 10, 255), (25, 25, 75, 75))
    logo.save(path)

    with ImageSource(path, {"backend": backend}) as image:
        output = decode(image.resize(50, 0).output()).convert("RGBA")

    assert output.size == (50, 50)
    assert output.getpixel((0, 0))[3] == 0
    assert output.getpixel((25, 25))[3] == 255


def test_rotate_positive_degree_is_clockwise(make_image, backend):
    path = make_image("halves.png", size=(400, 200), color=RED)
    with Image.open(path) as halves:
        halves = halves.copy()
    halves.paste(BLUE, (200, 0, 400, 200))
    halves.save(path)

    with ImageSource(path, {"backend": backend}) as image:
        image.rotate(90)
        output = decode(image.output()).convert("RGB")

        assert image.new_dimensions == Dimensions(200, 400)

    # The left half ends up on top after a clockwise quarter turn.
    assert is_red(output.getpixel((100, 50)))
    assert is_blue(output.getpixel((100, 350)))


def test_rotate_negative_degree_is_counter_clockwise(make_image, backend):
    path = make_image("halves.png", size=(400, 200), color=RED)
    with Image.open(path) as halves:
        halves = halves.copy()
    halves.paste(BLUE, (200, 0, 400, 200))
    halves.save(path)

    with ImageSource(path, {"backend": backend}) as image:
        output = decode(image.rotate(-90).output()).convert("RGB")

    assert is_blue(output.getpixel((100, 50)))
    assert is_red(output.getpixel((100, 350)))


def test_rotate_expands_canvas_with_transparent_corners(make_image, backend):
    path = make_image("square.png", size=(100, 100))

    with ImageSource(path, {"backend": backend}) as image:
        image.rotate(45)
        width, height = image.new_dimensions
        output = decode(image.output()).convert("RGBA")

    assert 140 <= width <= 143
    assert 140 <= height <= 143
    assert output.size == (width, height)
    assert output.getpixel((0, 0))[3] == 0
    assert output.getpixel((width // 2, height // 2))[3] == 255


def test_rotate_jpeg_fills_background(make_image, backend):
    path = make_image("square.jpg", size=(100, 100), image_format="JPEG", color=BLUE)

    with ImageSource(path, {"backend": backend}) as image:
        output = decode(image.rotate(45, "white").output()).convert("RGB")

    assert all(channel > 220 for channel in output.getpixel((1, 1)))


def test_chained_operations_use_previous_result(make_image, backend):
    path = make_image("photo.png", size=(400, 300))

    with ImageSource(path, {"backend": backend}) as image:
        image.resize(200, 0).crop(100)

        assert image.new_dimensions == Dimensions(100, 100)
        assert image.info.dimensions == Dimensions(100, 100)
        assert decode(image.output()).size == (100, 100)


def test_crop_region_outside_keeps_background(make_image, backend):
    path = make_image("photo.png", size=(100, 100))

    with ImageSource(path, {"backend": backend}) as image:
        output = decode(image.chop(150, 100, -50, 0).output()).convert("RGBA")

    assert output.size == (150, 100)
    assert output.getpixel((10, 50))[3] == 0
    assert output.getpixel((100, 50)) == (200, 40, 40, 255)


def test_gif_output_keeps_transparent_color_key(make_image, backend):
    path = make_image("anim.gif", size=(100, 100), image_format="GIF")

    with ImageSource(path, {"backend": backend}) as image:
        output = decode(image.chop(200, 200, -100, 0).output())

    assert output.format == "GIF"
    assert output.size == (200, 200)
    transparency = output.info.get("transparency")
    assert transparency is not None
    assert output.getpixel((0, 0)) == transparency
    assert output.getpixel((150, 50)) != transparency


@pytest.mark.parametrize("image_format", ["PNG", "JPEG", "GIF", "WEBP"])
def test_output_keeps_image_type(make_image, backend, image_format):
    path = make_image(f"photo.{image_format.lower()}", size=(64, 48), image_format=image_format)

    with ImageSource(path, {"backend": backend}) as image:
        image.resize_thumbnail(32)
        output = decode(image.output())

    assert output.format == image_format
    assert output.size == (32, 24)


def test_resample_keeps_size(make_image, backend):
    with ImageSource(make_image(size=(400, 300)), {"backend": backend}) as image:
        image.resample()

        assert image.new_dimensions == Dimensions(400, 300)


def test_crop_is_centered(make_image, backend):
    path = make_image("photo.png", size=(400, 300), color=BLUE)
    with Image.open(path) as photo:
        photo = photo.copy()
    photo.paste(RED, (100, 100, 300, 200))
    photo.save(path)

    with ImageSource(path, {"backend": backend}) as image:
        output = decode(image.crop(200, 100).output()).convert("RGB")

    assert output.size == (200, 100)
    for point in [(0, 0), (199, 99), (100, 50)]:
        assert is_red(output.getpixel(point))


def test_output_before_transform(make_image):
    with ImageSource(make_image(), {"backend": "pillow"}) as image:
        with pytest.raises(NoDestinationImageError):
            image.output()
        with pytest.raises(NoDestinationImageError):
            image.save("/tmp/never-written.png")


@pytest.mark.parametrize(("width", "height"), [(-1, 10), (10, -1), (0, 0)])
def test_invalid_dimensions(make_image, width, height):
    with ImageSource(make_image(), {"backend": "pillow"}) as image:
        with pytest.raises(InvalidDimensionsError):
            image.resize(width, height)
        with pytest.raises(InvalidDimensionsError):
            image.crop(width, height)


def test_fill_info_is_idempotent(make_image):
    with ImageSource(make_image(size=(40, 30)), {"backend": "pillow"}) as image:
        first = image.fill_info()

        assert image.fill_info() is first
        assert (first.width, first.height, first.type.value) == (40, 30, "PNG")


def test_unsupported_image_type(make_image):
    path = make_image("legacy.bmp", image_format="BMP")

    with ImageSource(path, {"backend": "pillow"}) as image:
        with pytest.raises(InvalidImageTypeError):
            image.fill_info()


def test_non_image_source(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("not an image")

    with ImageSource(path, {"backend": "pillow"}) as image:
        with pytest.raises(ImageError):
            image.resize(10, 10)


def test_invalid_background(make_image):
    with ImageSource(make_image(), {"backend": "pillow", "background": "not-a-color"}) as image:
        with pytest.raises(ImageError):
            image.resize(10)


def test_strip_metadata_keeps_icc_profile(tmp_path):
    path = tmp_path / "camera.jpg"
    exif = Image.Exif()
    exif[0x010F] = "Intake Camera"
    with Image.new("RGB", (400, 300), RED) as photo:
        photo.save(path, format="JPEG", exif=exif.tobytes(), icc_profile=b"fake-icc-profile")

    with ImageSource(path, {"backend": "pillow", "strip_metadata": True}) as image:
        stripped = decode(image.resize(100).output())
    with ImageSource(path, {"backend": "pillow"}) as image:
        kept = decode(image.resize(100).output())

    assert stripped.info.get("icc_profile") == b"fake-icc-profile"
    assert "exif" not in stripped.info
    assert "exif" in kept.info


def test_resize_multi_picture_jpeg(tmp_path, out_dir, backend):
    path = tmp_path / "phone.jpg"
    with Image.new("RGB", (200, 100), RED) as first, Image.new("RGB", (200, 100), BLUE) as second:
        first.save(path, format="MPO", save_all=True, append_images=[second])
    options = {"backend": backend, "allowed_mimes": "image/jpeg", "directory": str(out_dir)}

    with ImageSource(path, options) as image:
        assert image.fill_info().type.value == "JPEG"

        image.resize(100, 0)
        target = image.save()

    saved = decode(target.read_bytes())
    assert saved.format == "JPEG"
    assert saved.size == (100, 50)
    assert is_red(saved.convert("RGB").getpixel((50, 25)))


def test_oversized_image_is_rejected(make_image, backend, monkeypatch):
    path = make_image(size=(100, 100))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

    with ImageSource(path, {"backend": backend}) as image:
        with pytest.raises(ImageError):
            image.resize(50, 0)


def test_save_appends_dimensions(make_image, out_dir):
    path = make_image("photo.png", size=(400, 300))

    with ImageSource(path, {"backend": "pillow", "directory": str(out_dir)}) as image:
        image.resize(200)
        plain = image.save(append_dimensions=True)
        named = image.save(appendix="thumb", append_dimensions=True)

    assert plain.name == "photo-200x150.png"
    assert named.name == "photo-200x150-thumb.png"
    assert decode(plain.read_bytes()).size == (200, 150)


def test_move_transformed_image_removes_source(make_image, out_dir):
    path = make_image("photo.png", size=(400, 300))

    with ImageSource(path, {"backend": "pillow", "directory": str(out_dir)}) as image:
        target = image.resize(100).move()

    assert decode(target.read_bytes()).size == (100, 75)
    assert not path.exists()


def test_move_untouched_image_moves_file(make_image, out_dir):
    path = make_image("photo.png")
    content = path.read_bytes()

    with ImageSource(path, {"backend": "pillow", "directory": str(out_dir)}) as image:
        target = image.move()

    assert target.read_bytes() == content
    assert not path.exists()


def test_data_url(make_image):
    with ImageSource(make_image(size=(8, 8)), {"backend": "pillow"}) as image:
        image.resample()

        assert image.to_data_url().startswith("data:image/png;base64,")
        assert image.to_data_url().endswith(image.to_base64())


def test_clear_releases_handles_and_source(make_image):
    path = make_image()
    image = ImageSource(path, {"backend": "pillow", "clear_source": True})
    image.resize(10)

    image.clear()

    assert image.target_image is None
    assert image.source_image is None
    assert not path.exists()


def test_clear_keeps_handles_when_disabled(make_image):
    image = ImageSource(make_image(), {"backend": "pillow", "clear": False})
    image.resize(10)

    image.clear()

    assert image.target_image is not None
    image.close()
    assert image.target_image is None


def test_operations_after_clear_start_from_source(make_image, backend):
    image = ImageSource(make_image(size=(400, 300)), {"backend": backend})
    image.resize(50, 0)

    image.clear()

    with pytest.raises(NoDestinationImageError):
        image.output()

    image.resize(200, 0).rotate(90)
    output = decode(image.output())
    image.close()

    assert output.size == (150, 200)
    assert image.new_dimensions == Dimensions(150, 200)


def test_backend_is_fixed_at_construction(make_image, backend, caplog):
    with caplog.at_level("INFO", logger="intake.backend"):
        image = ImageSource(make_image(), {"backend": backend})

    assert image.backend_name == backend
    assert any(record.getMessage() == "Selected image backend" for record in caplog.records)
    with pytest.raises(AttributeError):
        image.backend = None
    image.close()


def test_coerce_image_options():
    options = coerce_image_options(SourceOptions(overwrite=True, hash_mode="name"))

    assert isinstance(options, ImageOptions)
    assert options.overwrite is True
    assert options.hash_mode == "name"
    assert coerce_image_options({"jpegQuality": 70}).jpeg_quality == 70
    assert coerce_image_options(None) == ImageOptions()


@pytest.mark.skipif(not opencv_available(), reason="OpenCV is not installed")
def test_opencv_free_releases_writable_buffer(make_image):
    image = ImageSource(make_image(size=(20, 10)), {"backend": "opencv"})
    image.resize(10, 0)
    target = image.target_image

    image.close()

    assert image.target_image is None
    assert not target.flags.writeable
