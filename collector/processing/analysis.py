"""
Image property analysis for quality scoring.

All measures are heuristics computed on a downsampled copy of the image,
not perceptual ground truth:

- average_brightness: mean luminance, 0-255
- contrast: standard deviation of luminance
- colorfulness: Hasler & Suesstrunk colourfulness metric (0 for greyscale,
  roughly 15 slightly, 33 moderately, 59 quite, 80+ highly colourful)
- dominant_colors: hex colours of 4-level-per-channel buckets covering at
  least 10% of the pixels, most populous first
- background_complexity: edge density in the outer border band, 0-1
- subject_clarity: centre sharpness relative to border sharpness, 0-1
- has_text: not detected; callers with an OCR signal may set it
"""

import io
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

from collector.errors import AssessmentError

logger = logging.getLogger(__name__)

ANALYSIS_MAX_SIDE = 256
EDGE_THRESHOLD = 30.0
BORDER_FRACTION = 0.15
COMPLEXITY_SATURATION = 0.4
DOMINANT_MIN_SHARE = 0.10
MAX_DOMINANT_COLORS = 5

MODE_BIT_DEPTH = {
    "1": 1,
    "L": 8,
    # Palette entries are full RGB colours
    "P": 24,
    "PA": 32,
    "LA": 16,
    "I;16": 16,
    "RGB": 24,
    "YCbCr": 24,
    "LAB": 24,
    "HSV": 24,
    "RGBA": 32,
    "CMYK": 32,
    "I": 32,
    "F": 32,
}


@dataclass
class ImageProperties:
    """Measured properties consumed by the quality assessment engine."""
    width: int
    height: int
    file_size: int = 0
    format: str = "unknown"
    average_brightness: float = 128.0
    contrast: float = 45.0
    colorfulness: float = 35.0
    dominant_colors: List[str] = field(default_factory=list)
    has_text: bool = False
    background_complexity: float = 0.4
    subject_clarity: float = 0.8
    has_transparency: bool = False
    color_depth: int = 24

    @property
    def aspect_ratio(self) -> float:
        if not self.height:
            return 0.0
        return self.width / self.height

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["aspect_ratio"] = self.aspect_ratio
        return data

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ImageProperties":
        """
        Build properties from a plain mapping (e.g. stored metadata).

        Raises:
            AssessmentError: If width or height is missing
        """
        if "width" not in data or "height" not in data:
            raise AssessmentError("Image properties require width and height")
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if "format" in values and values["format"]:
            values["format"] = str(values["format"]).lower()
        return cls(**values)


def _downsample(image: Image.Image) -> Image.Image:
    sample = image.copy()
    sample.thumbnail((ANALYSIS_MAX_SIDE, ANALYSIS_MAX_SIDE))
    return sample


def _has_transparency(image: Image.Image) -> bool:
    if image.mode in ("RGBA", "LA"):
        alpha = np.asarray(image.getchannel("A"))
        return bool((alpha < 255).any())
    if image.mode == "P" and "transparency" in image.info:
        return True
    return False


def _colorfulness(rgb: np.ndarray) -> float:
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    rg = r - g
    yb = 0.5 * (r + g) - b
    std_root = np.sqrt(rg.std() ** 2 + yb.std() ** 2)
    mean_root = np.sqrt(rg.mean() ** 2 + yb.mean() ** 2)
    return float(std_root + 0.3 * mean_root)


def _dominant_colors(rgb: np.ndarray) -> List[str]:
    pixels = rgb.reshape(-1, 3)
    if not len(pixels):
        return []
    buckets = (pixels // 64).astype(np.int64)
    codes = buckets[:, 0] * 16 + buckets[:, 1] * 4 + buckets[:, 2]
    counts = np.bincount(codes, minlength=64)

    colors = []
    for code in np.argsort(counts)[::-1]:
        share = counts[code] / len(pixels)
        if share < DOMINANT_MIN_SHARE or len(colors) >= MAX_DOMINANT_COLORS:
            break
        mean = pixels[codes == code].mean(axis=0)
        colors.append("#{:02X}{:02X}{:02X}".format(*(int(round(c)) for c in mean)))
    return colors


def _gradient_magnitude(luma: np.ndarray) -> np.ndarray:
    gx = np.zeros_like(luma)
    gy = np.zeros_like(luma)
    gx[:, 1:] = np.abs(np.diff(luma, axis=1))
    gy[1:, :] = np.abs(np.diff(luma, axis=0))
    return np.hypot(gx, gy)


def _border_mask(shape) -> np.ndarray:
    height, width = shape
    band_y = max(1, int(height * BORDER_FRACTION))
    band_x = max(1, int(width * BORDER_FRACTION))
    mask = np.zeros(shape, dtype=bool)
    mask[:band_y, :] = True
    mask[-band_y:, :] = True
    mask[:, :band_x] = True
    mask[:, -band_x:] = True
    return mask


def _center_mask(shape) -> np.ndarray:
    height, width = shape
    mask = np.zeros(shape, dtype=bool)
    mask[height // 4: height - height // 4, width // 4: width - width // 4] = True
    return mask


def _composition(luma: np.ndarray) -> Dict[str, float]:
    magnitude = _gradient_magnitude(luma)
    border = _border_mask(luma.shape)
    center = _center_mask(luma.shape)

    border_density = float((magnitude[border] > EDGE_THRESHOLD).mean()) if border.any() else 0.0
    complexity = min(1.0, border_density / COMPLEXITY_SATURATION)

    center_sharpness = float(magnitude[center].mean()) if center.any() else 0.0
    border_sharpness = float(magnitude[border].mean()) if border.any() else 0.0
    total = center_sharpness + border_sharpness
    clarity = center_sharpness / total if total > 0 else 0.5

    return {"background_complexity": complexity, "subject_clarity": clarity}


def analyze_image(image: Image.Image, file_size: int = 0, format: Optional[str] = None) -> ImageProperties:
    """
    Measure an already decoded image.

    Args:
        image: Decoded PIL image
        file_size: Encoded size in bytes
        format: Encoded format name (defaults to image.format)
    """
    sample = _downsample(image)
    rgb = np.asarray(sample.convert("RGB"), dtype=np.float64)
    luma = np.asarray(sample.convert("L"), dtype=np.float64)

    properties = ImageProperties(
        width=image.width,
        height=image.height,
        file_size=file_size,
        format=(format or image.format or "unknown").lower(),
        average_brightness=float(luma.mean()),
        contrast=float(luma.std()),
        colorfulness=_colorfulness(rgb),
        dominant_colors=_dominant_colors(rgb.astype(np.uint8)),
        has_transparency=_has_transparency(image),
        color_depth=MODE_BIT_DEPTH.get(image.mode, 24),
        **_composition(luma),
    )
    logger.debug(
        "Analyzed %dx%d %s: brightness=%.1f contrast=%.1f colorfulness=%.1f",
        properties.width,
        properties.height,
        properties.format,
        properties.average_brightness,
        properties.contrast,
        properties.colorfulness,
    )
    return properties


def analyze_image_bytes(data: bytes) -> ImageProperties:
    """
    Decode and measure encoded image bytes.

    Raises:
        AssessmentError: If the bytes cannot be decoded
    """
    if not data:
        raise AssessmentError("Empty image data")
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            return analyze_image(image, file_size=len(data))
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise AssessmentError(f"Cannot decode image: {str(e)}") from e
