"""Asset and conversion result models."""
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class Derivative:
    """A named size variant (e.g. "thumbnail") stored next to its source asset."""

    name: str
    file_path: str
    mime_type: str


@dataclass(frozen=True)
class SourceAsset:
    asset_id: int
    file_path: str
    mime_type: str
    derivatives: tuple[Derivative, ...] = ()


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of converting one file (a primary image or one derivative)."""

    success: bool
    output_path: str = ""
    source_removed: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class EncodingAttempt:
    quality: int
    width: int
    height: int
    size: int  # bytes


@dataclass
class AssetConversion:
    """Primary and per-derivative results for one asset; `asset` reflects removed sources."""

    asset: SourceAsset
    primary: ConversionResult
    derivatives: dict[str, ConversionResult] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.primary.source_removed or any(r.source_removed for r in self.derivatives.values())
