"""Pillow-backed codec: decode JPEG/PNG, scale, encode WebP."""
import io
import re
from decimal import ROUND_HALF_UP, Decimal

from PIL import Image, ImageOps, UnidentifiedImageError

WEBP_METHOD = 4


class DecodeError(RuntimeError):
    """Raised when the source bytes cannot be parsed as a JPEG or PNG image."""


def round_half_up(value: float) -> int:
    """Round half away from zero (Python's round() rounds half to even)."""
    return int(Decimal(repr(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class Raster:
    """In-memory image ready for WebP encoding."""

    def __init__(self, image: Image.Image):
        self.image = image

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    def scale(self, width: int, height: int) -> "Raster":
        if (width, height) == self.image.size:
            return self
        return Raster(self.image.resize((width, height), Image.Resampling.LANCZOS))

    def scale_to_width(self, max_width: int) -> "Raster":
        """Scale down to max_width keeping aspect ratio. No-op when already narrower."""
        w, h = self.image.size
        if w <= max_width:
            return self
        new_h = max(1, round_half_up(h * max_width / w))
        return self.scale(max_width, new_h)

    def encode_webp(self, quality: int) -> bytes:
        buf = io.BytesIO()
        self.image.save(buf, format="WEBP", quality=quality, method=WEBP_METHOD)
        return buf.getvalue()


def _normalise_mode(img: Image.Image) -> Image.Image:
    has_alpha = img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)
    if has_alpha:
        return img if img.mode == "RGBA" else img.convert("RGBA")
    return img if img.mode == "RGB" else img.convert("RGB")


def decode(data: bytes) -> Raster:
    """Decode JPEG or PNG bytes. Raises DecodeError for anything else or corrupt input."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format not in ("JPEG", "PNG"):
                raise DecodeError(f"Unsupported image format: {img.format}")
            img.load()
            oriented = ImageOps.exif_transpose(img)
            return Raster(_normalise_mode(oriented))
    except Image.DecompressionBombError as e:
        raise DecodeError(str(e)) from e
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise DecodeError(f"Cannot decode image: {e}") from e


def is_webp(data: bytes) -> bool:
    """Cheap container check: RIFF....WEBP header."""
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP"


_SOURCE_EXT_RE = re.compile(r"\.(jpe?g|png)$", re.IGNORECASE)


def has_source_extension(name: str) -> bool:
    return bool(_SOURCE_EXT_RE.search(name))


def webp_name(name: str) -> str:
    """Swap a trailing .jpg/.jpeg/.png (any case) for .webp. Other names are returned unchanged."""
    return _SOURCE_EXT_RE.sub(".webp", name)
