from __future__ import annotations

import io

import pytest
from PIL import Image

from webp_converter.conversion.codec import DecodeError, decode, is_webp, webp_name


def _encoded(img: Image.Image, fmt: str) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def test_decode_png_with_alpha_keeps_alpha() -> None:
    raster = decode(_encoded(Image.new("RGBA", (40, 30), (1, 2, 3, 128)), "PNG"))

    assert (raster.width, raster.height) == (40, 30)
    assert raster.image.mode == "RGBA"


def test_decode_grayscale_jpeg_normalised_to_rgb() -> None:
    raster = decode(_encoded(Image.new("L", (20, 10), 128), "JPEG"))

    assert raster.image.mode == "RGB"


def test_decode_rejects_garbage() -> None:
    with pytest.raises(DecodeError):
        decode(b"definitely not an image")


def test_decode_rejects_non_source_formats() -> None:
    with pytest.raises(DecodeError):
        decode(_encoded(Image.new("RGB", (10, 10)), "GIF"))


def test_scale_to_width_keeps_aspect_ratio() -> None:
    raster = decode(_encoded(Image.new("RGB", (1000, 333)), "PNG"))

    scaled = raster.scale_to_width(500)

    # 333 * 0.5 = 166.5 rounds half up
    assert (scaled.width, scaled.height) == (500, 167)
    assert raster.scale_to_width(2000) is raster


def test_encode_webp_produces_webp_container() -> None:
    raster = decode(_encoded(Image.new("RGB", (64, 64), (0, 90, 0)), "JPEG"))

    assert is_webp(raster.encode_webp(80))


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("a.jpg", "a.webp"),
        ("a.JPEG", "a.webp"),
        ("dir.png/b.Png", "dir.png/b.webp"),
        ("a.gif", "a.gif"),
        ("a.jpg.bak", "a.jpg.bak"),
    ],
)
def test_webp_name(name: str, expected: str) -> None:
    assert webp_name(name) == expected
