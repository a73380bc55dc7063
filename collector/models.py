"""
Data model for the image collection pipeline.

Types:
- ImageCandidate: normalized search hit from any provider (transient)
- SearchResult / RankedResult: provider search responses
- QualityScore: immutable four-dimension score with weighted overall
- CollectionProgress: per-item progress value, updated only through the
  pure transitions in collector.services.progress
- StoredImage: approved-or-pending image handed to the storage collaborator
- CollectionStrategy: per-category collection settings
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class SourceName(str, Enum):
    """Supported image providers."""
    UNSPLASH = "unsplash"
    PIXABAY = "pixabay"
    PEXELS = "pexels"


ALL_SOURCES = [SourceName.UNSPLASH.value, SourceName.PIXABAY.value, SourceName.PEXELS.value]


@dataclass
class License:
    """License descriptor attached to every candidate."""
    type: str
    attribution: str
    commercial: bool = True
    url: Optional[str] = None


@dataclass
class Photographer:
    """Author metadata as reported by the provider."""
    name: str = ""
    username: Optional[str] = None
    profile_url: Optional[str] = None
    portfolio_url: Optional[str] = None


@dataclass
class ImageStats:
    """Engagement numbers; providers fill in whatever they report."""
    likes: int = 0
    downloads: int = 0
    views: int = 0
    comments: int = 0
    favorites: int = 0


@dataclass
class ImageCandidate:
    """
    A provider search hit normalized into the common shape.

    search_weight and search_strategy record which query variant produced
    the hit; source_rank is the position of its source in the active
    source list of an aggregation run.
    """
    source: str
    source_id: str
    url: str
    width: int
    height: int
    url_large: Optional[str] = None
    url_small: Optional[str] = None
    download_url: Optional[str] = None
    download_location: Optional[str] = None
    description: str = ""
    tags: List[str] = field(default_factory=list)
    license: Optional[License] = None
    photographer: Photographer = field(default_factory=Photographer)
    stats: ImageStats = field(default_factory=ImageStats)
    color: Optional[str] = None
    file_size: Optional[int] = None
    created_at: Optional[datetime] = None
    search_weight: float = 1.0
    search_strategy: Optional[str] = None
    search_query: Optional[str] = None
    source_rank: int = 0
    quality_hint: float = 0.0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source, self.source_id)

    @property
    def aspect_ratio(self) -> float:
        if not self.height:
            return 0.0
        return self.width / self.height

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def squareness(self) -> float:
        """Distance of the aspect ratio from 1:1 (0 means square)."""
        return abs(1.0 - self.aspect_ratio)


@dataclass
class SearchResult:
    """One page of provider results."""
    images: List[ImageCandidate] = field(default_factory=list)
    total: int = 0
    has_more: bool = False
    page: int = 1
    per_page: int = 0
    query: str = ""


@dataclass
class RankedResult:
    """Output of a multi-strategy search on a single provider."""
    images: List[ImageCandidate] = field(default_factory=list)
    total_found: int = 0
    strategies_used: List[str] = field(default_factory=list)
    strategy_errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class DownloadedImage:
    """Raw bytes fetched for a candidate."""
    data: bytes
    content_length: int
    content_type: Optional[str] = None
    url: Optional[str] = None


QUALITY_WEIGHTS = {
    "technical": 0.25,
    "relevance": 0.35,
    "aesthetic": 0.25,
    "usability": 0.15,
}


@dataclass(frozen=True)
class QualityScore:
    """
    Four sub-scores in [0, 10] and their weighted overall.

    Immutable once computed for a candidate and context.
    """
    technical: float
    relevance: float
    aesthetic: float
    usability: float
    overall: float
    notes: Tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def breakdown(self) -> Dict[str, float]:
        return {
            "technical": self.technical,
            "relevance": self.relevance,
            "aesthetic": self.aesthetic,
            "usability": self.usability,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "overall": self.overall,
            "breakdown": self.breakdown,
            "notes": list(self.notes),
        }
        if self.error:
            data["error"] = self.error
        return data


class CollectionStatus(str, Enum):
    """Per-item collection workflow state."""
    PENDING = "pending"
    COLLECTING = "collecting"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    VERY_HARD = "very_hard"


@dataclass(frozen=True)
class SourceProgress:
    found: int = 0
    approved: int = 0
    last_searched_at: Optional[datetime] = None


@dataclass(frozen=True)
class ProgressError:
    timestamp: datetime
    source: str
    message: str
    details: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class CollectionProgress:
    """
    Collection progress of one vocabulary item.

    Invariants:
        approved_count <= collected_count
        status == COMPLETED only when approved_count >= target_count
    """
    status: CollectionStatus = CollectionStatus.PENDING
    target_count: int = 3
    collected_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    sources: Dict[str, SourceProgress] = field(default_factory=dict)
    search_attempts: int = 0
    last_search_terms: Tuple[str, ...] = ()
    difficulty: Difficulty = Difficulty.MEDIUM
    average_quality_score: float = 0.0
    best_quality_score: float = 0.0
    errors: Tuple[ProgressError, ...] = ()
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    next_attempt: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.target_count - self.approved_count)

    @property
    def is_complete(self) -> bool:
        return self.approved_count >= self.target_count


class ImageStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    MANUAL_REVIEW = "manual_review"


@dataclass
class ImageMetadata:
    width: int
    height: int
    format: str
    size_bytes: int
    color_space: str
    has_alpha: bool = False


@dataclass
class ProcessedVariant:
    """A resized, re-encoded rendition of a processed image."""
    name: str
    width: int
    height: int
    format: str
    size_bytes: int
    data: bytes = field(default=b"", repr=False)


@dataclass
class StoredImage:
    """
    Image record handed to the storage collaborator.

    Status only ever transitions; records are not hard-deleted here.
    """
    source_url: str
    source_provider: str
    source_id: str
    file_path: str
    file_name: str
    metadata: ImageMetadata
    quality_score: QualityScore
    status: ImageStatus = ImageStatus.PENDING
    is_primary: bool = False
    license: Optional[License] = None
    processed_sizes: List[ProcessedVariant] = field(default_factory=list)
    perceptual_hash: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class CollectionStrategy:
    """
    Per-category collection settings supplied by the caller.

    quality_thresholds holds optional overrides for the quality engine's
    scoring constants (nested dict keyed like QualityThresholds).
    """
    enabled: bool = True
    priority_sources: List[str] = field(default_factory=lambda: list(ALL_SOURCES))
    exclude_sources: List[str] = field(default_factory=list)
    use_ai_generation: bool = True
    min_quality_threshold: float = 7.0
    target_images_per_item: int = 3
    auto_approval_threshold: float = 8.5
    max_search_attempts: int = 5
    retry_interval_hours: float = 24
    custom_search_terms: List[str] = field(default_factory=list)
    max_results_per_source: int = 15
    quality_thresholds: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings_module=None, **overrides) -> "CollectionStrategy":
        """
        Build a strategy from configuration defaults.

        Args:
            settings_module: Settings object (defaults to config.settings)
            **overrides: Field values taking precedence over settings
        """
        if settings_module is None:
            from config import settings as settings_module

        values = {
            "min_quality_threshold": getattr(settings_module, "MIN_QUALITY_THRESHOLD", 7.0),
            "auto_approval_threshold": getattr(settings_module, "AUTO_APPROVAL_THRESHOLD", 8.5),
            "target_images_per_item": getattr(settings_module, "TARGET_IMAGES_PER_ITEM", 3),
            "max_search_attempts": getattr(settings_module, "MAX_SEARCH_ATTEMPTS", 5),
            "retry_interval_hours": getattr(settings_module, "RETRY_INTERVAL_HOURS", 24),
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class CollectionItem:
    """A vocabulary item as seen by the orchestrator."""
    item_id: str
    name: str
    category_id: str
    category_name: str
    letter: str = ""
    progress: CollectionProgress = field(default_factory=CollectionProgress)
    images: List[StoredImage] = field(default_factory=list)

    def __post_init__(self):
        if not self.letter and self.name:
            self.letter = self.name[0].upper()
