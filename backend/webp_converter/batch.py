"""Sequential batch conversion of stored assets with progress tracking."""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from webp_converter.conversion.models import AssetConversion
from webp_converter.conversion.service import ConversionService
from webp_converter.db import get_asset, update_asset

logger = logging.getLogger("webp_converter.batch")


@dataclass
class BatchProgress:
    processed: int = 0
    total: int = 0
    running: bool = False

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 100 if not self.running else 0
        return round(self.processed / self.total * 100)


def convert_stored_asset(service: ConversionService, asset_id: int) -> Optional[AssetConversion]:
    """Convert one stored asset and persist path/MIME changes. None when the id is unknown."""
    asset = get_asset(asset_id)
    if asset is None:
        return None
    conversion = service.convert_asset(asset, allow_delete=True)
    if conversion.changed:
        update_asset(conversion.asset)
        logger.info("Updated metadata for asset %s -> %s", asset_id, conversion.asset.file_path)
    return conversion


class BatchDriver:
    """
    Runs items one at a time. A failing item never stops the batch; progress is
    reported after each item and the driver resets itself once every item is processed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._progress = BatchProgress()
        self._claim: Optional[object] = None
        self.last_result: Optional[BatchProgress] = None

    @property
    def progress(self) -> BatchProgress:
        return BatchProgress(self._progress.processed, self._progress.total, self._progress.running)

    def start(self, total: int) -> Optional[object]:
        """Claim the driver for a new batch. Returns the claim to pass to run(), or None if one is already running."""
        with self._lock:
            if self._progress.running:
                return None
            self._progress = BatchProgress(processed=0, total=total, running=True)
            self._claim = object()
            return self._claim

    def run(
        self,
        asset_ids: Iterable[int],
        convert_one: Callable[[int], Optional[AssetConversion]],
        on_progress: Optional[Callable[[int, int], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        claim: Optional[object] = None,
    ) -> int:
        """Process every id in order. Returns the processed count."""
        ids = list(asset_ids)
        if claim is None:
            claim = self.start(len(ids))
        with self._lock:
            if claim is None or claim is not self._claim:
                raise RuntimeError("Batch already running")
        total = len(ids)
        self._progress.total = total
        failed = 0
        try:
            for asset_id in ids:
                if should_stop is not None and should_stop():
                    logger.info("Batch stopped at %d/%d", self._progress.processed, total)
                    break
                try:
                    conversion = convert_one(asset_id)
                    if conversion is None or not conversion.primary.success:
                        failed += 1
                except Exception as e:
                    failed += 1
                    logger.exception("Batch item %s failed: %s", asset_id, e)
                self._progress.processed += 1
                if on_progress:
                    on_progress(self._progress.processed, total)
            processed = self._progress.processed
            if processed == total:
                logger.info("Batch conversion complete! Processed %d images (%d failed).", total, failed)
        finally:
            self.last_result = BatchProgress(self._progress.processed, self._progress.total, running=False)
            self._progress = BatchProgress()
            self._claim = None
        return processed
