"""
Quality Assessment Engine.

Scores an image on four dimensions, each clamped to [0, 10]:
- technical: resolution, file size, aspect ratio, format, colour depth
- relevance: title match, category context, visual heuristics and
  category-specific adjustments
- aesthetic: brightness band, contrast, colourfulness, colour variety
- usability: background complexity, subject clarity, text, display fit

The overall score is the weighted sum (QUALITY_WEIGHTS) rounded to one
decimal. Every numeric threshold lives in QualityThresholds and can be
overridden per collection strategy.

If an image cannot be measured or scored the engine returns a fixed 3.0
score with an error note instead of raising, so one unreadable image
never aborts a batch.
"""

import logging
import math
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from rapidfuzz import fuzz

from collector.errors import AssessmentError
from collector.models import QUALITY_WEIGHTS, CollectionStrategy, ImageStatus, QualityScore
from collector.processing.analysis import ImageProperties, analyze_image_bytes

logger = logging.getLogger(__name__)

FAILURE_SCORE = 3.0
FAILURE_NOTE = "Quality assessment failed due to technical error"

AUTO_APPROVAL_NOTE_THRESHOLD = 8.5
REJECTION_NOTE_THRESHOLD = 5.0

CATEGORY_HINTS = {
    "animals": ("natural", "organic", "warm"),
    "fruits": ("colorful", "natural", "round"),
    "transportation": ("metallic", "geometric", "manufactured"),
    "colors": ("vibrant", "pure", "saturated"),
}

CATEGORY_ADJUSTMENTS = {
    "animals": {"require_clear_subject"},
    "fruits": {"prefer_natural_colors"},
    "transportation": set(),
    "colors": {"require_high_saturation"},
}

ImageInput = Union[bytes, ImageProperties, Mapping[str, Any]]


@dataclass
class TechnicalThresholds:
    min_width: int = 300
    min_height: int = 300
    max_file_size: int = 5 * 1024 * 1024
    min_file_size: int = 5 * 1024
    preferred_aspect_ratio: float = 1.0
    aspect_ratio_tolerance: float = 0.3
    high_resolution: int = 1000
    low_resolution_penalty: float = 3.0


@dataclass
class RelevanceThresholds:
    title_match_weight: float = 0.4
    context_match_weight: float = 0.3
    visual_match_weight: float = 0.3
    fuzzy_word_ratio: float = 85.0


@dataclass
class AestheticThresholds:
    brightness_range: Tuple[float, float] = (50, 200)
    contrast_minimum: float = 30
    contrast_bonus: float = 60
    colorfulness_minimum: float = 20
    colorfulness_bonus: float = 50
    oversaturation: float = 80


@dataclass
class UsabilityThresholds:
    background_complexity_max: float = 0.7
    subject_clarity_min: float = 0.6
    text_overlay_penalty: float = 0.2
    min_display_size: int = 400


@dataclass
class QualityThresholds:
    """Tunable scoring constants, grouped by dimension."""
    technical: TechnicalThresholds = field(default_factory=TechnicalThresholds)
    relevance: RelevanceThresholds = field(default_factory=RelevanceThresholds)
    aesthetic: AestheticThresholds = field(default_factory=AestheticThresholds)
    usability: UsabilityThresholds = field(default_factory=UsabilityThresholds)

    def merged(self, overrides: Mapping[str, Mapping[str, Any]]) -> "QualityThresholds":
        """
        Return a copy with nested overrides applied.

        Raises:
            ValueError: For unknown sections or keys
        """
        sections = {}
        for section, values in overrides.items():
            if section not in {f.name for f in fields(self)}:
                raise ValueError(f"Unknown threshold section: {section}")
            current = getattr(self, section)
            if not isinstance(values, Mapping):
                raise ValueError(f"Threshold section {section} must be a mapping")
            unknown = set(values) - {f.name for f in fields(current)}
            if unknown:
                raise ValueError(f"Unknown {section} thresholds: {', '.join(sorted(unknown))}")
            sections[section] = replace(current, **values)
        return replace(self, **sections)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AssessmentContext:
    item_name: str = ""
    category: str = ""
    source_description: str = ""

    @classmethod
    def coerce(cls, context: Union["AssessmentContext", Mapping[str, Any], None]) -> "AssessmentContext":
        if context is None:
            return cls()
        if isinstance(context, cls):
            return context
        return cls(
            item_name=context.get("item_name") or "",
            category=context.get("category") or "",
            source_description=context.get("source_description") or "",
        )


@dataclass
class QualityAssessment:
    """One entry of a batch assessment."""
    score: QualityScore
    context: AssessmentContext
    properties: Optional[ImageProperties] = None

    @property
    def overall(self) -> float:
        return self.score.overall


def round_score(value: float) -> float:
    """Round half up to one decimal."""
    return math.floor(value * 10 + 0.5) / 10


def clamp_score(value: float) -> float:
    return max(0.0, min(10.0, value))


def classify_score(overall: float, auto_approval_threshold: float, min_quality_threshold: float) -> ImageStatus:
    """Approve at or above auto approval, review at or above minimum, else reject."""
    if overall >= auto_approval_threshold:
        return ImageStatus.APPROVED
    if overall >= min_quality_threshold:
        return ImageStatus.MANUAL_REVIEW
    return ImageStatus.REJECTED


def failure_score(message: str) -> QualityScore:
    return QualityScore(
        technical=FAILURE_SCORE,
        relevance=FAILURE_SCORE,
        aesthetic=FAILURE_SCORE,
        usability=FAILURE_SCORE,
        overall=FAILURE_SCORE,
        notes=(FAILURE_NOTE,),
        error=message,
    )


class QualityAssessmentService:
    """
    Multi-dimension image quality scoring.

    Usage:
        service = QualityAssessmentService()
        score = service.assess_image(data, {"item_name": "Apple", "category": "fruits"})
        status = service.recommendation(score, strategy)
    """

    def __init__(self, thresholds: Optional[QualityThresholds] = None):
        self.thresholds = thresholds or QualityThresholds()

    def update_thresholds(self, overrides: Mapping[str, Mapping[str, Any]]) -> None:
        self.thresholds = self.thresholds.merged(overrides)

    def with_overrides(self, overrides: Optional[Mapping[str, Mapping[str, Any]]]) -> "QualityAssessmentService":
        """A service scoring with per-strategy overrides; self when there are none."""
        if not overrides:
            return self
        return QualityAssessmentService(self.thresholds.merged(overrides))

    def extract_properties(self, image: ImageInput) -> ImageProperties:
        """
        Resolve the image input to measured properties.

        Raises:
            AssessmentError: If the input cannot be decoded or is incomplete
        """
        if isinstance(image, ImageProperties):
            return image
        if isinstance(image, (bytes, bytearray)):
            return analyze_image_bytes(bytes(image))
        if isinstance(image, Mapping):
            return ImageProperties.from_mapping(image)
        raise AssessmentError(f"Unsupported image input: {type(image).__name__}")

    def assess_image(self, image: ImageInput, context=None) -> QualityScore:
        """
        Score one image.

        Args:
            image: Encoded bytes, ImageProperties or a mapping of properties
            context: AssessmentContext or mapping with item_name, category,
                source_description

        Returns:
            QualityScore; a fixed 3.0 score with error set when the
            image cannot be measured or scored
        """
        return self.assess(image, context).score

    def assess(self, image: ImageInput, context=None) -> QualityAssessment:
        """Score one image and keep the measured properties with the score."""
        try:
            context = AssessmentContext.coerce(context)
            properties = self.extract_properties(image)
            score = self.score_properties(properties, context)
        except Exception as e:
            return self._failed_assessment(e, context)

        return QualityAssessment(score=score, context=context, properties=properties)

    def _failed_assessment(self, error: Exception, context=None) -> QualityAssessment:
        if not isinstance(context, AssessmentContext):
            context = AssessmentContext()
        logger.warning("Quality assessment failed for %s: %s", context.item_name or "image", error)
        return QualityAssessment(score=failure_score(str(error)), context=context)

    def score_properties(self, properties: ImageProperties, context: AssessmentContext) -> QualityScore:
        technical = self.assess_technical(properties)
        relevance = self.assess_relevance(properties, context)
        aesthetic = self.assess_aesthetic(properties)
        usability = self.assess_usability(properties)

        overall = (
            technical * QUALITY_WEIGHTS["technical"]
            + relevance * QUALITY_WEIGHTS["relevance"]
            + aesthetic * QUALITY_WEIGHTS["aesthetic"]
            + usability * QUALITY_WEIGHTS["usability"]
        )

        return QualityScore(
            technical=round_score(technical),
            relevance=round_score(relevance),
            aesthetic=round_score(aesthetic),
            usability=round_score(usability),
            overall=round_score(clamp_score(overall)),
            notes=tuple(self.generate_notes(technical, relevance, aesthetic, usability, context)),
        )

    def assess_technical(self, properties: ImageProperties) -> float:
        t = self.thresholds.technical
        score = 10.0

        if properties.width < t.min_width or properties.height < t.min_height:
            # Grows with the shortfall below the minimum
            shortfall = max(
                (t.min_width - properties.width) / t.min_width,
                (t.min_height - properties.height) / t.min_height,
            )
            score -= t.low_resolution_penalty + shortfall
        elif properties.width >= t.high_resolution and properties.height >= t.high_resolution:
            score += 0.5

        if properties.file_size > t.max_file_size:
            score -= 2.0
        elif properties.file_size < t.min_file_size:
            score -= 2.5

        aspect_diff = abs(properties.aspect_ratio - t.preferred_aspect_ratio)
        if aspect_diff > t.aspect_ratio_tolerance:
            score -= min(aspect_diff * 2, 2.0)

        if properties.format == "webp":
            score += 0.3
        elif properties.format == "png" and not properties.has_transparency:
            score -= 0.3

        if properties.color_depth < 24:
            score -= 1.0

        return clamp_score(score)

    def assess_relevance(self, properties: ImageProperties, context: AssessmentContext) -> float:
        r = self.thresholds.relevance
        score = 7.0

        title = self.calculate_title_relevance(context.item_name, context.source_description)
        score += (title - 0.5) * r.title_match_weight * 10

        category_context = self.calculate_context_relevance(context.category, properties)
        score += (category_context - 0.5) * r.context_match_weight * 10

        visual = self.calculate_visual_relevance(context.item_name, context.category, properties)
        score += (visual - 0.5) * r.visual_match_weight * 10

        score += self.category_adjustment(context.category, properties)

        return clamp_score(score)

    def calculate_title_relevance(self, item_name: str, description: str) -> float:
        """
        Fraction of item name words found in the description.

        A word matches when either contains the other or they are close
        by fuzzy ratio. Missing name or description is neutral (0.5).
        """
        item_words = item_name.lower().split()
        description_words = description.lower().split()
        if not item_words or not description_words:
            return 0.5

        ratio = self.thresholds.relevance.fuzzy_word_ratio
        matches = 0
        for word in item_words:
            if any(
                desc_word in word or word in desc_word or fuzz.ratio(word, desc_word) >= ratio
                for desc_word in description_words
            ):
                matches += 1
        return matches / len(item_words)

    def calculate_context_relevance(self, category: str, properties: ImageProperties) -> float:
        hints = CATEGORY_HINTS.get(category.lower(), ())
        relevance = 0.5

        if "colorful" in hints and properties.colorfulness > 40:
            relevance += 0.2
        if "natural" in hints and properties.background_complexity < 0.6:
            relevance += 0.1
        if "vibrant" in hints and properties.average_brightness > 100:
            relevance += 0.1

        return min(1.0, relevance)

    def calculate_visual_relevance(self, item_name: str, category: str, properties: ImageProperties) -> float:
        category = category.lower()
        relevance = 0.6

        if category == "animals":
            if properties.subject_clarity > 0.7:
                relevance += 0.2
            if properties.background_complexity < 0.5:
                relevance += 0.1
        elif category == "fruits":
            if properties.colorfulness > 30:
                relevance += 0.2
            if properties.average_brightness > 80:
                relevance += 0.1
        elif category == "transportation":
            if properties.contrast > 35:
                relevance += 0.1

        return min(1.0, relevance)

    def category_adjustment(self, category: str, properties: ImageProperties) -> float:
        rules = CATEGORY_ADJUSTMENTS.get(category.lower())
        if not rules:
            return 0.0

        adjustment = 0.0
        if "require_clear_subject" in rules and properties.subject_clarity < 0.6:
            adjustment -= 1.5
        if "prefer_natural_colors" in rules and properties.colorfulness < 25:
            adjustment -= 1.0
        if "require_high_saturation" in rules and properties.colorfulness < 30:
            adjustment -= 1.0
        return adjustment

    def assess_aesthetic(self, properties: ImageProperties) -> float:
        a = self.thresholds.aesthetic
        score = 7.0
        low, high = a.brightness_range

        brightness = properties.average_brightness
        if brightness < low or brightness > high:
            deviation = min(abs(brightness - low), abs(brightness - high))
            score -= min(deviation / 50, 2.0)

        if properties.contrast < a.contrast_minimum:
            score -= (a.contrast_minimum - properties.contrast) / 10
        elif properties.contrast > a.contrast_bonus:
            score += 0.5

        if properties.colorfulness < a.colorfulness_minimum:
            score -= (a.colorfulness_minimum - properties.colorfulness) / 10
        elif properties.colorfulness > a.colorfulness_bonus:
            score += 0.3

        if len(properties.dominant_colors) >= 2:
            score += 0.2

        if properties.colorfulness > a.oversaturation:
            score -= 1.0

        return clamp_score(score)

    def assess_usability(self, properties: ImageProperties) -> float:
        u = self.thresholds.usability
        score = 8.0

        if properties.background_complexity > u.background_complexity_max:
            score -= (properties.background_complexity - u.background_complexity_max) * 3

        if properties.subject_clarity < u.subject_clarity_min:
            score -= (u.subject_clarity_min - properties.subject_clarity) * 4

        if properties.has_text:
            score -= u.text_overlay_penalty * 10

        aspect_ratio = properties.aspect_ratio
        if 0.7 < aspect_ratio < 1.4:
            score += 0.5
        elif aspect_ratio < 0.5 or aspect_ratio > 2.0:
            score -= 1.0

        if properties.width >= u.min_display_size and properties.height >= u.min_display_size:
            score += 0.3

        return clamp_score(score)

    def generate_notes(
        self,
        technical: float,
        relevance: float,
        aesthetic: float,
        usability: float,
        context: AssessmentContext,
    ) -> List[str]:
        notes = []

        if technical < 5:
            notes.append("Image has technical quality issues (resolution, file size, or format)")
        elif technical > 8:
            notes.append("Excellent technical quality")

        if relevance < 5:
            notes.append(f'Image may not be relevant to "{context.item_name}" in category "{context.category}"')
        elif relevance > 8:
            notes.append("Highly relevant to the requested item")

        if aesthetic < 5:
            notes.append("Image has aesthetic issues (brightness, contrast, or color)")
        elif aesthetic > 8:
            notes.append("Visually appealing with good color and contrast")

        if usability < 5:
            notes.append("Image may be difficult to use (complex background, poor subject clarity)")
        elif usability > 8:
            notes.append("Clear, easy-to-understand image suitable for learning")

        average = (technical + relevance + aesthetic + usability) / 4
        if average >= AUTO_APPROVAL_NOTE_THRESHOLD:
            notes.append("Recommended for automatic approval")
        elif average < REJECTION_NOTE_THRESHOLD:
            notes.append("Recommended for rejection")
        else:
            notes.append("Requires manual review")

        return notes

    def assess_images(self, batch: Iterable[Any]) -> List[QualityAssessment]:
        """
        Score a batch; each entry is an (image, context) pair or a mapping
        with "image" and "context" keys. Failures stay per entry.
        """
        assessments = []
        for entry in batch:
            try:
                if isinstance(entry, Mapping):
                    image, context = entry.get("image"), entry.get("context")
                else:
                    image, context = entry
            except (TypeError, ValueError) as e:
                assessments.append(self._failed_assessment(AssessmentError(f"Malformed batch entry: {e}")))
                continue

            assessments.append(self.assess(image, context))
        return assessments

    def get_quality_statistics(self, scores: Iterable[Union[QualityScore, QualityAssessment]]) -> Dict[str, Any]:
        """
        Summarize a set of scores.

        Returns:
            Dict with count, average_overall, average_breakdown,
            distribution (excellent >= 9, good [7, 9), acceptable [5, 7),
            poor < 5) and quality_percentage (excellent + good)
        """
        scores = [s.score if isinstance(s, QualityAssessment) else s for s in scores]
        if not scores:
            return {
                "count": 0,
                "average_overall": 0,
                "average_breakdown": {},
                "distribution": {},
                "quality_percentage": 0,
            }

        count = len(scores)

        def average(values):
            return round_score(sum(values) / count)

        overall = [s.overall for s in scores]
        distribution = {
            "excellent": sum(1 for s in overall if s >= 9),
            "good": sum(1 for s in overall if 7 <= s < 9),
            "acceptable": sum(1 for s in overall if 5 <= s < 7),
            "poor": sum(1 for s in overall if s < 5),
        }

        return {
            "count": count,
            "average_overall": average(overall),
            "average_breakdown": {
                dimension: average([s.breakdown[dimension] for s in scores])
                for dimension in QUALITY_WEIGHTS
            },
            "distribution": distribution,
            "quality_percentage": round((distribution["excellent"] + distribution["good"]) / count * 100),
        }

    def recommendation(
        self,
        score: Union[QualityScore, float],
        strategy: Optional[CollectionStrategy] = None,
    ) -> ImageStatus:
        """Classify a score against the strategy's approval thresholds."""
        strategy = strategy or CollectionStrategy()
        overall = score.overall if isinstance(score, QualityScore) else float(score)
        return classify_score(overall, strategy.auto_approval_threshold, strategy.min_quality_threshold)
