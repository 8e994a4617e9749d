"""Size-constrained WebP encoding.

Searches quality first, then dimensions, for an encoding that fits a byte budget:

1. Encode at the start quality and full size.
2. Over budget: lower quality by 5, down to a floor of 40.
3. Still over budget at 40: shrink width and height by 10% and go back to the
   start quality.
4. Stop when the budget is met, when a shrink would take either side below
   200px, or after 50 attempts. Whatever was tried last is written.

Missing the budget is not an error; the caller gets the best-effort file.
"""
import logging
import os
import tempfile
from pathlib import Path

from webp_converter.conversion.codec import Raster, round_half_up
from webp_converter.conversion.models import EncodingAttempt

logger = logging.getLogger("webp_converter.encoder")

MIN_QUALITY = 40
QUALITY_STEP = 5
RESIZE_FACTOR = 0.9
MIN_DIMENSION = 200
MAX_ATTEMPTS = 50


class WriteError(RuntimeError):
    """Raised when the encoded output cannot be written to disk."""


def write_atomic(target_path: Path, data: bytes) -> None:
    """Write data next to target_path and rename into place."""
    target_path = Path(target_path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target_path.stem}.", suffix=".tmp", dir=target_path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, target_path)
    except OSError as e:
        Path(tmp_name).unlink(missing_ok=True)
        raise WriteError(f"Could not write {target_path}: {e}") from e


def encode_to_budget(
    raster: Raster,
    target_path: Path,
    start_quality: int,
    max_bytes: int,
    width: int,
    height: int,
) -> list[EncodingAttempt]:
    """Encode raster to target_path within max_bytes where possible. Returns the attempt trajectory."""
    quality = start_quality
    w, h = width, height
    attempts: list[EncodingAttempt] = []
    rendered = raster.scale(w, h)
    data = b""

    while len(attempts) < MAX_ATTEMPTS:
        if rendered.width != w or rendered.height != h:
            rendered = raster.scale(w, h)
        data = rendered.encode_webp(quality)
        attempts.append(EncodingAttempt(quality=quality, width=w, height=h, size=len(data)))

        if len(data) <= max_bytes:
            break

        if quality > MIN_QUALITY:
            quality = max(MIN_QUALITY, quality - QUALITY_STEP)
            continue

        new_w = round_half_up(w * RESIZE_FACTOR)
        new_h = round_half_up(h * RESIZE_FACTOR)
        if new_w < MIN_DIMENSION or new_h < MIN_DIMENSION:
            break
        w, h = new_w, new_h
        quality = start_quality

    write_atomic(target_path, data)

    last = attempts[-1]
    if last.size > max_bytes:
        logger.info(
            "Budget not met for %s after %d attempts: %d bytes > %d (q=%d, %dx%d)",
            Path(target_path).name, len(attempts), last.size, max_bytes, last.quality, last.width, last.height,
        )
    else:
        logger.debug(
            "Encoded %s in %d attempts: %d bytes (q=%d, %dx%d)",
            Path(target_path).name, len(attempts), last.size, last.quality, last.width, last.height,
        )
    return attempts
