"""
Image processing: validation, size variants, analysis and hashing.
"""

from collector.processing.analysis import ImageProperties, analyze_image, analyze_image_bytes
from collector.processing.image_processor import (
    ColorStats,
    ImageProcessor,
    ProcessedImage,
    ProcessorConfig,
    hashes_match,
)

__all__ = [
    "ColorStats",
    "ImageProcessor",
    "ImageProperties",
    "ProcessedImage",
    "ProcessorConfig",
    "analyze_image",
    "analyze_image_bytes",
    "hashes_match",
]
