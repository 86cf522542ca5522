from .service import ConversionService, get_conversion_service
from .models import ConversionItem, ConversionSettings, ItemStatus, MediaKind, ResizeSettings, VideoSettings

__all__ = [
    "ConversionService",
    "get_conversion_service",
    "ConversionItem",
    "ConversionSettings",
    "ItemStatus",
    "MediaKind",
    "ResizeSettings",
    "VideoSettings",
]
