from .cleanup import CleanupQueue
from .models import AssetConversion, ConversionResult, Derivative, SourceAsset
from .service import ConversionService
from .settings import ConversionSettings

__all__ = [
    "CleanupQueue",
    "ConversionService",
    "ConversionSettings",
    "AssetConversion",
    "ConversionResult",
    "Derivative",
    "SourceAsset",
]
