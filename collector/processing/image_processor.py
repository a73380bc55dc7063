"""
Image Processor for downloaded candidates.

Decodes and validates raw bytes, produces the named size variants for
storage, and derives the properties and perceptual hash used downstream
by quality assessment and duplicate detection.

Validation:
- inputs above max_input_bytes are rejected before decoding
- undecodable or truncated data is rejected
- images below min_dimension on either side are rejected

Variant policy: fit inside a square box of the configured size, never
upscale, re-encode to the output format.
"""

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import imagehash
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from collector.errors import ValidationError
from collector.models import ImageMetadata, ProcessedVariant
from collector.processing.analysis import ImageProperties, analyze_image

logger = logging.getLogger(__name__)

DEFAULT_VARIANT_SIZES = {
    "thumbnail": 150,
    "small": 400,
    "medium": 800,
    "large": 1200,
}

COLOR_SAMPLE_SIZE = 64

GRAYSCALE_MODES = ("1", "L", "LA", "I", "I;16", "F")


@dataclass
class ProcessorConfig:
    """Processing options, defaults matching the configured settings."""
    variant_sizes: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_VARIANT_SIZES))
    output_format: str = "WEBP"
    quality: int = 85
    webp_method: int = 4
    progressive: bool = True
    max_input_bytes: int = 50 * 1024 * 1024
    min_dimension: int = 100
    primary_variant: str = "large"

    @classmethod
    def from_settings(cls, settings_module=None) -> "ProcessorConfig":
        if settings_module is None:
            from config import settings as settings_module

        return cls(
            variant_sizes=dict(getattr(settings_module, "IMAGE_VARIANT_SIZES", DEFAULT_VARIANT_SIZES)),
            output_format=getattr(settings_module, "IMAGE_OUTPUT_FORMAT", "WEBP").upper(),
            quality=getattr(settings_module, "IMAGE_OUTPUT_QUALITY", 85),
            max_input_bytes=getattr(settings_module, "IMAGE_MAX_INPUT_BYTES", 50 * 1024 * 1024),
            min_dimension=getattr(settings_module, "IMAGE_MIN_DIMENSION", 100),
        )


@dataclass
class ColorStats:
    """Average colour of a small sample of the image."""
    average: Tuple[int, int, int]
    brightness: float

    @property
    def hex(self) -> str:
        return "#{:02X}{:02X}{:02X}".format(*self.average)


@dataclass
class ProcessedImage:
    """Output of ImageProcessor.process."""
    metadata: ImageMetadata
    variants: List[ProcessedVariant]
    properties: ImageProperties
    perceptual_hash: str
    colors: Optional[ColorStats] = None
    primary_name: str = "large"

    @property
    def primary_variant(self) -> Optional[ProcessedVariant]:
        """The configured primary variant, else the largest one produced."""
        for variant in self.variants:
            if variant.name == self.primary_name:
                return variant
        return self.variants[0] if self.variants else None


def color_space_for_mode(mode: str) -> str:
    if mode in GRAYSCALE_MODES:
        return "b-w"
    if mode == "CMYK":
        return "cmyk"
    return "srgb"


def hashes_match(first: str, second: str, max_distance: int = 4) -> bool:
    """Compare two hex perceptual hashes by Hamming distance."""
    if not first or not second:
        return False
    return imagehash.hex_to_hash(first) - imagehash.hex_to_hash(second) <= max_distance


class ImageProcessor:
    """
    Validates and transforms downloaded image bytes.

    Usage:
        processor = ImageProcessor(ProcessorConfig.from_settings())
        processed = await processor.process_async(data)
        primary = processed.primary_variant
    """

    def __init__(self, config: Optional[ProcessorConfig] = None):
        self.config = config or ProcessorConfig()

    def open_image(self, data: bytes) -> Image.Image:
        """
        Decode and validate image bytes.

        Raises:
            ValidationError: If the data is empty, too large, corrupt or too small
        """
        if not data:
            raise ValidationError("Invalid image: empty data")
        if len(data) > self.config.max_input_bytes:
            raise ValidationError(
                f"Invalid image: {len(data)} bytes exceeds limit of {self.config.max_input_bytes}"
            )

        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
            raise ValidationError(f"Invalid image: {str(e)}") from e

        minimum = self.config.min_dimension
        if image.width < minimum or image.height < minimum:
            raise ValidationError(
                f"Invalid image: {image.width}x{image.height} is below minimum {minimum}x{minimum}"
            )
        return image

    def get_metadata(self, data: bytes) -> ImageMetadata:
        image = self.open_image(data)
        return self._metadata(image, len(data))

    def _metadata(self, image: Image.Image, size_bytes: int) -> ImageMetadata:
        return ImageMetadata(
            width=image.width,
            height=image.height,
            format=(image.format or "unknown").lower(),
            size_bytes=size_bytes,
            color_space=color_space_for_mode(image.mode),
            has_alpha="A" in image.getbands() or "transparency" in image.info,
        )

    def _normalize(self, image: Image.Image) -> Image.Image:
        """Apply EXIF orientation and convert to RGB or RGBA."""
        image = ImageOps.exif_transpose(image)
        has_alpha = "A" in image.getbands() or "transparency" in image.info
        target = "RGBA" if has_alpha else "RGB"
        if image.mode != target:
            image = image.convert(target)
        return image

    def _encode(self, image: Image.Image) -> bytes:
        output_format = self.config.output_format.upper()
        options = {"quality": self.config.quality}
        if output_format == "WEBP":
            options["method"] = self.config.webp_method
        elif output_format == "JPEG":
            options["progressive"] = self.config.progressive
            options["optimize"] = True
            if image.mode != "RGB":
                image = image.convert("RGB")
        elif output_format == "PNG":
            options = {"optimize": True}

        buffer = io.BytesIO()
        image.save(buffer, format=output_format, **options)
        return buffer.getvalue()

    def create_variants(self, image: Image.Image) -> List[ProcessedVariant]:
        """
        Render every configured size variant, largest first.

        Images smaller than a variant's box are re-encoded at their own size.
        """
        variants = []
        output_format = self.config.output_format.lower()
        sizes = sorted(self.config.variant_sizes.items(), key=lambda entry: entry[1], reverse=True)

        for name, size in sizes:
            resized = image.copy()
            resized.thumbnail((size, size), Image.Resampling.LANCZOS)
            encoded = self._encode(resized)
            variants.append(ProcessedVariant(
                name=name,
                width=resized.width,
                height=resized.height,
                format=output_format,
                size_bytes=len(encoded),
                data=encoded,
            ))
        return variants

    def extract_colors(self, data: bytes) -> ColorStats:
        """Average colour and brightness of a 64x64 sample."""
        image = self._normalize(self.open_image(data))
        return self._colors(image)

    def _colors(self, image: Image.Image) -> ColorStats:
        sample = image.convert("RGB").resize((COLOR_SAMPLE_SIZE, COLOR_SAMPLE_SIZE))
        mean = np.asarray(sample, dtype=np.float64).reshape(-1, 3).mean(axis=0)
        r, g, b = (int(round(channel)) for channel in mean)
        brightness = (r * 299 + g * 587 + b * 114) / 1000
        return ColorStats(average=(r, g, b), brightness=brightness)

    def perceptual_hash(self, image: Image.Image) -> str:
        return str(imagehash.phash(image.convert("RGB")))

    def process(self, data: bytes) -> ProcessedImage:
        """
        Validate and process raw image bytes.

        Args:
            data: Encoded image as downloaded

        Returns:
            ProcessedImage with metadata, variants, properties and hash

        Raises:
            ValidationError: If the image fails validation
        """
        image = self.open_image(data)
        metadata = self._metadata(image, len(data))
        properties = analyze_image(image, file_size=len(data), format=metadata.format)

        normalized = self._normalize(image)
        variants = self.create_variants(normalized)

        logger.debug(
            "Processed %dx%d %s image into %d variants",
            metadata.width,
            metadata.height,
            metadata.format,
            len(variants),
        )

        return ProcessedImage(
            metadata=metadata,
            variants=variants,
            properties=properties,
            perceptual_hash=self.perceptual_hash(normalized),
            colors=self._colors(normalized),
            primary_name=self.config.primary_variant,
        )

    async def process_async(self, data: bytes) -> ProcessedImage:
        """Run process() in a worker thread so the event loop stays free."""
        return await asyncio.to_thread(self.process, data)
