"""Typed snapshot of the host's key-value conversion options."""
import logging
from dataclasses import dataclass
from typing import Any

from webp_converter.config import OPTION_DEFAULTS

logger = logging.getLogger("webp_converter.settings")

MIN_QUALITY = 40
MAX_QUALITY = 100

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"", "0", "false", "no", "off"}


def parse_bool(value: Any, default: bool) -> bool:
    """Parse option values stored as strings ("1" / "") or real booleans."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    s = str(value).strip().lower()
    if s in _TRUE_VALUES:
        return True
    if s in _FALSE_VALUES:
        return False
    logger.warning("Unrecognised boolean option value %r, using %s", value, default)
    return default


def parse_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return int(value)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        logger.warning("Unrecognised integer option value %r, using %s", value, default)
        return default


def clamp_quality(quality: int) -> int:
    return max(MIN_QUALITY, min(MAX_QUALITY, quality))


@dataclass(frozen=True)
class ConversionSettings:
    """Options read once at the start of a conversion and not re-read while it runs."""

    default_quality: int = 80
    max_bytes: int = 200 * 1024
    delete_original: bool = False
    auto_convert: bool = True

    @classmethod
    def load(cls, store) -> "ConversionSettings":
        """Build a snapshot from any store exposing get(key, default)."""
        quality = parse_int(store.get("default_quality", OPTION_DEFAULTS["default_quality"]), 80)
        max_kb = parse_int(store.get("max_file_size", OPTION_DEFAULTS["max_file_size"]), 200)
        return cls(
            default_quality=clamp_quality(quality),
            max_bytes=max(0, max_kb) * 1024,
            delete_original=parse_bool(store.get("delete_original", OPTION_DEFAULTS["delete_original"]), False),
            auto_convert=parse_bool(store.get("enable_auto_convert", OPTION_DEFAULTS["enable_auto_convert"]), True),
        )

    def to_options(self) -> dict[str, str]:
        """Serialise back into the string form the option store persists."""
        return {
            "enable_auto_convert": "1" if self.auto_convert else "",
            "default_quality": str(self.default_quality),
            "max_file_size": str(self.max_bytes // 1024),
            "delete_original": "1" if self.delete_original else "",
        }
