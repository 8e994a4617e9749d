"""WebP conversion service: per-file and per-asset conversion policy."""
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Optional, Union

from PIL import Image

from webp_converter.config import (
    CONVERSION_MAX_IMAGE_PIXELS,
    MAX_SOURCE_WIDTH,
    SOURCE_MIME_TYPES,
    WEBP_MIME_TYPE,
)
from webp_converter.conversion.cleanup import CleanupQueue
from webp_converter.conversion.codec import DecodeError, decode, has_source_extension, is_webp, webp_name
from webp_converter.conversion.encoder import WriteError, encode_to_budget
from webp_converter.conversion.models import AssetConversion, ConversionResult, SourceAsset
from webp_converter.conversion.settings import ConversionSettings, clamp_quality

logger = logging.getLogger("webp_converter.service")

PathLike = Union[str, Path]

_pixel_limit_lock = threading.Lock()
_pixel_limit_users = 0
_pixel_limit_saved: Optional[int] = None


@contextmanager
def raised_pixel_limit(limit: Optional[int]):
    """
    Raise Pillow's decompression-bomb ceiling while at least one conversion is
    running. The ceiling is process-wide, so overlapping conversions share one
    raise and the last one out restores the value seen by the first one in.
    """
    global _pixel_limit_users, _pixel_limit_saved
    with _pixel_limit_lock:
        if _pixel_limit_users == 0:
            _pixel_limit_saved = Image.MAX_IMAGE_PIXELS
        current = Image.MAX_IMAGE_PIXELS
        if current is not None and (limit is None or current < limit):
            Image.MAX_IMAGE_PIXELS = limit
        _pixel_limit_users += 1
    try:
        yield
    finally:
        with _pixel_limit_lock:
            _pixel_limit_users -= 1
            if _pixel_limit_users == 0:
                Image.MAX_IMAGE_PIXELS = _pixel_limit_saved


def webp_path_for(path: PathLike) -> Optional[Path]:
    """Same directory, .webp extension. None when the path is not a JPEG/PNG."""
    path = Path(path)
    if not has_source_extension(path.name):
        return None
    return path.with_name(webp_name(path.name))


def apply_removals(asset: SourceAsset, removed_paths: Iterable[PathLike]) -> SourceAsset:
    """Point the asset's primary file and derivatives at their WebP versions where the source was removed."""
    removed = {Path(p) for p in removed_paths}
    if not removed:
        return asset
    file_path, mime_type = asset.file_path, asset.mime_type
    if Path(file_path) in removed:
        file_path, mime_type = str(webp_path_for(file_path)), WEBP_MIME_TYPE
    derivatives = tuple(
        replace(d, file_path=str(webp_path_for(d.file_path)), mime_type=WEBP_MIME_TYPE)
        if Path(d.file_path) in removed else d
        for d in asset.derivatives
    )
    return replace(asset, file_path=file_path, mime_type=mime_type, derivatives=derivatives)


class ConversionService:
    """Converts JPEG/PNG files to size-limited WebP and decides when sources may be removed."""

    def __init__(
        self,
        options=None,
        max_source_width: int = MAX_SOURCE_WIDTH,
        max_image_pixels: Optional[int] = CONVERSION_MAX_IMAGE_PIXELS,
    ):
        self._options = options
        self.max_source_width = max_source_width
        self.max_image_pixels = max_image_pixels
        logger.info("ConversionService initialized with max_source_width=%s", max_source_width)

    def load_settings(self) -> ConversionSettings:
        if self._options is None:
            return ConversionSettings()
        return ConversionSettings.load(self._options)

    def convert(
        self,
        source_path: PathLike,
        allow_delete: bool = True,
        settings: Optional[ConversionSettings] = None,
    ) -> ConversionResult:
        """Convert one file. Never raises; failures come back as success=False."""
        src = Path(source_path)
        if not src.is_file():
            logger.debug("Source not found: %s", src)
            return ConversionResult(success=False, error="Source not found")
        out = webp_path_for(src)
        if out is None:
            return ConversionResult(success=False, error=f"Unsupported file type: {src.suffix}")

        settings = settings or self.load_settings()
        with raised_pixel_limit(self.max_image_pixels):
            if out.exists():
                return self._existing_output(out)
            try:
                self._encode(src, out, settings)
            except DecodeError as e:
                logger.error("Cannot decode %s: %s", src, e)
                return ConversionResult(success=False, error=str(e))
            except WriteError as e:
                logger.error("Write failed for %s: %s", out, e)
                return ConversionResult(success=False, error=str(e))
            except MemoryError:
                logger.error("Out of memory converting %s", src)
                return ConversionResult(success=False, error="Out of memory")
            except Exception as e:
                logger.exception("Conversion failed for %s: %s", src, e)
                return ConversionResult(success=False, error=str(e))

        if not out.is_file():
            return ConversionResult(success=False, error="Output missing after encode")
        logger.info("Created %s (%.2f KB)", out.name, out.stat().st_size / 1024)

        removed = False
        if allow_delete and settings.delete_original:
            try:
                src.unlink()
                removed = True
                logger.info("Deleted original file: %s", src.name)
            except OSError as e:
                logger.warning("Could not delete original file %s: %s", src, e)
        return ConversionResult(success=True, output_path=str(out), source_removed=removed)

    def _existing_output(self, out: Path) -> ConversionResult:
        try:
            with open(out, "rb") as f:
                header = f.read(12)
        except OSError as e:
            logger.error("Cannot read existing output %s: %s", out, e)
            return ConversionResult(success=False, error=str(e))
        if not is_webp(header):
            logger.warning("Refusing to overwrite %s: existing file is not a WebP image", out)
            return ConversionResult(success=False, error="Output path holds a non-WebP file")
        logger.debug("Already converted: %s", out.name)
        return ConversionResult(success=True, output_path=str(out))

    def _encode(self, src: Path, out: Path, settings: ConversionSettings) -> None:
        data = src.read_bytes()
        raster = decode(data)
        logger.info(
            "Processing %s (%dx%d, %.2f MB)",
            src.name, raster.width, raster.height, len(data) / 1024 / 1024,
        )
        if raster.width > self.max_source_width:
            original = (raster.width, raster.height)
            raster = raster.scale_to_width(self.max_source_width)
            logger.info(
                "Resizing %s from %dx%d to %dx%d",
                src.name, original[0], original[1], raster.width, raster.height,
            )
        encode_to_budget(
            raster,
            out,
            clamp_quality(settings.default_quality),
            settings.max_bytes,
            raster.width,
            raster.height,
        )

    def convert_asset(
        self,
        asset: SourceAsset,
        allow_delete: bool = True,
        settings: Optional[ConversionSettings] = None,
    ) -> AssetConversion:
        """Convert the primary file, then every derivative independently."""
        settings = settings or self.load_settings()
        if asset.mime_type == WEBP_MIME_TYPE:
            primary = ConversionResult(success=True, output_path=asset.file_path)
        else:
            primary = self.convert(asset.file_path, allow_delete, settings)
        results: dict[str, ConversionResult] = {}
        for derivative in asset.derivatives:
            if derivative.mime_type == WEBP_MIME_TYPE:
                results[derivative.name] = ConversionResult(success=True, output_path=derivative.file_path)
                continue
            results[derivative.name] = self.convert(derivative.file_path, allow_delete, settings)
            if not results[derivative.name].success:
                logger.warning(
                    "Derivative %s of asset %s failed: %s",
                    derivative.name, asset.asset_id, results[derivative.name].error,
                )

        removed = [asset.file_path] if primary.source_removed else []
        removed += [d.file_path for d in asset.derivatives if results[d.name].source_removed]
        return AssetConversion(asset=apply_removals(asset, removed), primary=primary, derivatives=results)

    def handle_upload(
        self,
        asset: SourceAsset,
        queue: CleanupQueue,
        settings: Optional[ConversionSettings] = None,
    ) -> Optional[AssetConversion]:
        """
        Upload event: convert without deleting, then stage sources for removal.
        The host may still read the sources (derivative generation), so the
        caller flushes the queue only once the request is finished.
        """
        settings = settings or self.load_settings()
        if not settings.auto_convert:
            logger.debug("Auto convert disabled; skipping asset %s", asset.asset_id)
            return None
        if asset.mime_type not in SOURCE_MIME_TYPES:
            return None
        conversion = self.convert_asset(asset, allow_delete=False, settings=settings)
        self.schedule_deletion(conversion, queue, settings)
        return conversion

    def schedule_deletion(
        self,
        conversion: AssetConversion,
        queue: CleanupQueue,
        settings: ConversionSettings,
    ) -> int:
        """Queue every source whose conversion succeeded and whose WebP file is present. Returns the number queued."""
        asset = conversion.asset
        if not settings.delete_original or asset.mime_type not in SOURCE_MIME_TYPES:
            return 0
        entries = [(asset.file_path, conversion.primary)]
        entries += [(d.file_path, conversion.derivatives.get(d.name)) for d in asset.derivatives]
        queued = 0
        for path, result in entries:
            out = webp_path_for(path)
            if result is None or not result.success or out is None:
                continue
            if Path(result.output_path) != out or not out.is_file():
                continue
            queue.enqueue(path)
            queued += 1
        return queued
