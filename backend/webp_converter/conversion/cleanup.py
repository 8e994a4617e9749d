"""Deferred removal of source files after a processing pass."""
import logging
from pathlib import Path
from typing import Union

logger = logging.getLogger("webp_converter.cleanup")


class CleanupQueue:
    """
    Paths staged for deletion during one request/pass.
    Flushed once by the owner after all downstream processing has finished.
    """

    def __init__(self):
        self._paths: list[Path] = []

    def __len__(self) -> int:
        return len(self._paths)

    @property
    def paths(self) -> list[Path]:
        return list(self._paths)

    def enqueue(self, path: Union[str, Path]) -> None:
        self._paths.append(Path(path))
        logger.info("Queued for deletion: %s", Path(path).name)

    def flush(self) -> list[Path]:
        """Remove every queued file that still exists. Returns the paths actually removed."""
        removed: list[Path] = []
        errors = 0
        try:
            for path in self._paths:
                if not path.exists():
                    continue
                try:
                    path.unlink()
                except OSError as e:
                    errors += 1
                    logger.warning("Failed to delete %s: %s", path.name, e)
                    continue
                removed.append(path)
                logger.info("Deleted (deferred) %s", path.name)
        finally:
            self._paths = []
        if removed or errors:
            logger.info("Deferred deletion complete. Deleted: %d, Errors: %d", len(removed), errors)
        return removed
