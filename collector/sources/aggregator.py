"""
Source Aggregator - concurrent multi-provider image search.

Fans a query out to every enabled source client at once, each call wrapped
in its own timeout. A failed, timed-out or rate-limited source contributes
zero images and is reported in the per-source error map; it never fails the
other sources or raises past this module.

Merged results are deduplicated by (source, source_id) and ranked by:
1. Source priority rank
2. Search-strategy weight (when the gap exceeds 0.1)
3. Image quality heuristic (when the gap exceeds 0.1)
4. Recency (newest first, undated last)
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from collector.errors import SourceError, SourceErrorKind
from collector.models import ImageCandidate
from collector.monitoring import capture_source_error
from collector.sources.base import BaseSourceClient
from collector.sources.rate_limiter import QuotaTracker, RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class SourceStats:
    count: int = 0
    total: int = 0
    success: bool = False
    error: Optional[str] = None


@dataclass
class AggregatedResult:
    """
    Result of a multi-source search.

    success is True even when every source failed; callers inspect
    failed_sources and errors to decide whether that matters.
    """
    success: bool = True
    query: str = ""
    images: List[ImageCandidate] = field(default_factory=list)
    total_images: int = 0
    source_stats: Dict[str, SourceStats] = field(default_factory=dict)
    searched_sources: List[str] = field(default_factory=list)
    successful_sources: List[str] = field(default_factory=list)
    failed_sources: List[str] = field(default_factory=list)
    skipped_sources: List[str] = field(default_factory=list)
    errors: Dict[str, SourceError] = field(default_factory=dict)
    no_sources_available: bool = False
    duplicates_removed: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "query": self.query,
            "total_images": self.total_images,
            "searched_sources": self.searched_sources,
            "successful_sources": self.successful_sources,
            "failed_sources": self.failed_sources,
            "skipped_sources": self.skipped_sources,
            "no_sources_available": self.no_sources_available,
            "duplicates_removed": self.duplicates_removed,
            "source_stats": {
                name: {"count": s.count, "total": s.total, "success": s.success, "error": s.error}
                for name, s in self.source_stats.items()
            },
            "errors": {name: e.to_dict() for name, e in self.errors.items()},
        }


def calculate_image_quality(candidate: ImageCandidate) -> float:
    """
    Cross-source quality heuristic used for ranking.

    Resolution tier (0.3-1.0) + closeness to square (up to 0.5) +
    normalized likes (up to 0.5) and downloads (up to 0.3).
    """
    pixels = candidate.pixel_count
    if pixels >= 1920 * 1080:
        score = 1.0
    elif pixels >= 1280 * 720:
        score = 0.8
    elif pixels >= 800 * 600:
        score = 0.6
    else:
        score = 0.3

    if candidate.height:
        score += max(0.0, 1 - abs(1 - candidate.aspect_ratio)) * 0.5

    score += min(candidate.stats.likes / 1000, 0.5)
    score += min(candidate.stats.downloads / 10000, 0.3)
    return score


def _timestamp(candidate: ImageCandidate) -> Optional[float]:
    if candidate.created_at is None:
        return None
    return candidate.created_at.timestamp()


def compare_ranked(a: ImageCandidate, b: ImageCandidate) -> float:
    """Cross-source ordering; negative means a ranks first."""
    if a.source_rank != b.source_rank:
        return a.source_rank - b.source_rank

    weight_diff = b.search_weight - a.search_weight
    if abs(weight_diff) > 0.1:
        return weight_diff

    quality_diff = b.quality_hint - a.quality_hint
    if abs(quality_diff) > 0.1:
        return quality_diff

    a_time, b_time = _timestamp(a), _timestamp(b)
    if a_time is not None and b_time is not None:
        return b_time - a_time
    if a_time is not None:
        return -1
    if b_time is not None:
        return 1
    return 0


def rank_candidates(images: List[ImageCandidate]) -> List[ImageCandidate]:
    """Rank copies of the candidates; the inputs are left untouched."""
    scored = [replace(image, quality_hint=calculate_image_quality(image)) for image in images]
    return sorted(scored, key=functools.cmp_to_key(compare_ranked))


def deduplicate_candidates(images: List[ImageCandidate]) -> List[ImageCandidate]:
    """Keep the first occurrence of every (source, source_id)."""
    seen = set()
    unique = []
    for image in images:
        if image.key in seen:
            continue
        seen.add(image.key)
        unique.append(image)
    return unique


def order_sources(
    available: Sequence[str],
    exclude_sources: Optional[Sequence[str]] = None,
    priority_sources: Optional[Sequence[str]] = None,
) -> List[str]:
    """Active sources minus exclusions, priority sources first."""
    excluded = set(exclude_sources or [])
    active = [source for source in available if source not in excluded]
    if not priority_sources:
        return active

    prioritized = [source for source in priority_sources if source in active]
    remaining = [source for source in active if source not in prioritized]
    return list(dict.fromkeys(prioritized)) + remaining


class SourceAggregator:
    """
    Search every configured provider concurrently.

    The aggregator holds explicit client instances; construct one per
    process (see build_default_aggregator) and pass it to whoever needs it.

    Usage:
        aggregator = SourceAggregator([UnsplashClient(key), PexelsClient(key)])
        result = await aggregator.search_all_sources("dog", "animals")
        for image in result.images:
            ...
    """

    SEARCH_TIMEOUT = 30.0
    ENHANCED_SEARCH_TIMEOUT = 15.0
    DEFAULT_MAX_RESULTS_PER_SOURCE = 10
    DEFAULT_ENHANCED_RESULTS_PER_SOURCE = 15
    DEFAULT_MAX_TOTAL_RESULTS = 50

    def __init__(
        self,
        clients: Sequence[BaseSourceClient],
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize the aggregator.

        Args:
            clients: Source clients in default priority order
            rate_limiter: Limiter shared with the clients (used for stats)
        """
        self.clients: Dict[str, BaseSourceClient] = {client.name: client for client in clients}
        self.rate_limiter = rate_limiter
        self.quota_tracker = QuotaTracker(rate_limiter) if rate_limiter is not None else None

    def get_available_sources(self) -> List[str]:
        return list(self.clients)

    def get_client(self, source: str) -> Optional[BaseSourceClient]:
        return self.clients.get(source)

    async def _run_source(self, source: str, call, timeout: float):
        """Await one source call with its own timeout, converting failures to SourceError."""
        try:
            result = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            return SourceError(SourceErrorKind.NETWORK, f"Search timeout after {timeout}s", source=source)
        except SourceError as e:
            return e
        except Exception as e:
            logger.exception("Unexpected error searching %s", source)
            capture_source_error(e, source)
            return SourceError(SourceErrorKind.API_ERROR, f"Unexpected error: {str(e)}", source=source, retryable=False)

        if not result.ok:
            return result.error
        return result.value

    async def _fan_out(self, sources: List[str], make_call, timeout: float) -> Dict[str, Any]:
        outcomes = await asyncio.gather(
            *(self._run_source(source, make_call(self.clients[source]), timeout) for source in sources)
        )
        return dict(zip(sources, outcomes))

    def _merge(
        self,
        query: str,
        sources: List[str],
        outcomes: Dict[str, Any],
        max_total_results: Optional[int],
    ) -> AggregatedResult:
        result = AggregatedResult(query=query, searched_sources=list(sources))
        merged: List[ImageCandidate] = []

        for rank, source in enumerate(sources):
            outcome = outcomes[source]
            if isinstance(outcome, SourceError):
                result.errors[source] = outcome
                result.failed_sources.append(source)
                if outcome.kind == SourceErrorKind.RATE_LIMITED:
                    result.skipped_sources.append(source)
                result.source_stats[source] = SourceStats(success=False, error=str(outcome))
                logger.warning("Search failed for %s: %s", source, outcome)
                continue

            images = [replace(image, source_rank=rank) for image in outcome.images]
            total = getattr(outcome, "total", None)
            if total is None:
                total = getattr(outcome, "total_found", len(images))
            merged.extend(images)
            result.successful_sources.append(source)
            result.source_stats[source] = SourceStats(count=len(images), total=total, success=True)

        unique = deduplicate_candidates(merged)
        result.duplicates_removed = len(merged) - len(unique)
        ranked = rank_candidates(unique)
        if max_total_results is not None:
            ranked = ranked[:max_total_results]

        result.images = ranked
        result.total_images = len(ranked)
        return result

    def _no_sources(self, query: str) -> AggregatedResult:
        logger.warning("No image sources available for '%s'", query)
        return AggregatedResult(query=query, no_sources_available=True)

    async def search_all_sources(
        self,
        query: str,
        category: Optional[str] = None,
        max_results_per_source: int = DEFAULT_MAX_RESULTS_PER_SOURCE,
        exclude_sources: Optional[Sequence[str]] = None,
        priority_sources: Optional[Sequence[str]] = None,
        timeout: float = SEARCH_TIMEOUT,
        max_total_results: Optional[int] = None,
        **filters,
    ) -> AggregatedResult:
        """
        Search all active sources concurrently with a plain query.

        Args:
            query: Search query
            category: Vocabulary category (mapped to provider filters)
            max_results_per_source: Page size requested from each source
            exclude_sources: Sources to skip
            priority_sources: Sources moved to the front of the ranking
            timeout: Per-source timeout in seconds
            max_total_results: Truncate the ranked list
            **filters: Extra provider filters (orientation, size...)

        Returns:
            AggregatedResult; never raises for provider failures
        """
        sources = order_sources(self.get_available_sources(), exclude_sources, priority_sources)
        if not sources:
            return self._no_sources(query)

        logger.info("Searching %s for '%s'", ", ".join(sources), query)

        def make_call(client: BaseSourceClient):
            params = {**client.category_filters(category), **filters}
            return client.search(query, page=1, per_page=max_results_per_source, **params)

        outcomes = await self._fan_out(sources, make_call, timeout)
        self._check_quotas()
        return self._merge(query, sources, outcomes, max_total_results)

    async def enhanced_search_all_sources(
        self,
        item_name: str,
        category: str,
        max_results_per_source: int = DEFAULT_ENHANCED_RESULTS_PER_SOURCE,
        exclude_sources: Optional[Sequence[str]] = None,
        priority_sources: Optional[Sequence[str]] = None,
        timeout: float = ENHANCED_SEARCH_TIMEOUT,
        max_total_results: Optional[int] = DEFAULT_MAX_TOTAL_RESULTS,
        **filters,
    ) -> AggregatedResult:
        """
        Run each source's multi-strategy search concurrently and rank across sources.

        Args:
            item_name: Vocabulary item
            category: Category name
            max_results_per_source: Images kept per source
            exclude_sources: Sources to skip
            priority_sources: Sources moved to the front of the ranking
            timeout: Per-source timeout in seconds (covers all strategies)
            max_total_results: Truncate the ranked list
            **filters: Extra provider filters applied to every strategy

        Returns:
            AggregatedResult; never raises for provider failures
        """
        sources = order_sources(self.get_available_sources(), exclude_sources, priority_sources)
        if not sources:
            return self._no_sources(item_name)

        logger.info("Enhanced search on %s for '%s' (%s)", ", ".join(sources), item_name, category)

        def make_call(client: BaseSourceClient):
            return client.enhanced_search(
                item_name,
                category,
                max_results=max_results_per_source,
                per_page=min(max_results_per_source, 10),
                **filters,
            )

        outcomes = await self._fan_out(sources, make_call, timeout)
        self._check_quotas()
        result = self._merge(item_name, sources, outcomes, max_total_results)

        logger.info(
            "Enhanced search for '%s' found %d images (%d/%d sources succeeded)",
            item_name,
            result.total_images,
            len(result.successful_sources),
            len(sources),
        )
        return result

    def get_usage_stats(self) -> Dict[str, Dict[str, int]]:
        if self.quota_tracker is None:
            return {}
        return self.quota_tracker.get_usage_stats()

    def _check_quotas(self) -> List[str]:
        """Warn about sources under 10% of their hourly quota."""
        if self.quota_tracker is None:
            return []
        low = self.quota_tracker.low_quota_sources()
        for source in low:
            stats = self.quota_tracker.get_usage_stats()[source]
            logger.warning(
                "%s quota is running low (%d/%d remaining)",
                source,
                stats["remaining"],
                stats["capacity"],
            )
        return low


def build_default_aggregator(settings_module=None) -> SourceAggregator:
    """
    Construct clients for every provider with a configured key.

    Args:
        settings_module: Settings object (defaults to config.settings)
    """
    from collector.sources.pexels import PexelsClient
    from collector.sources.pixabay import PixabayClient
    from collector.sources.unsplash import UnsplashClient

    if settings_module is None:
        from config import settings as settings_module

    rate_limiter = RateLimiter.from_settings(settings_module)
    timeout = getattr(settings_module, "SOURCE_REQUEST_TIMEOUT", BaseSourceClient.DEFAULT_TIMEOUT)
    max_retries = getattr(settings_module, "SOURCE_MAX_RETRIES", BaseSourceClient.MAX_RETRIES)
    retry_delay = getattr(settings_module, "SOURCE_RETRY_BASE_DELAY", BaseSourceClient.RETRY_BASE_DELAY)

    clients = []
    for client_class, key_name in (
        (UnsplashClient, "UNSPLASH_ACCESS_KEY"),
        (PixabayClient, "PIXABAY_API_KEY"),
        (PexelsClient, "PEXELS_API_KEY"),
    ):
        api_key = getattr(settings_module, key_name, "")
        if not api_key:
            logger.warning("%s not configured, %s disabled", key_name, client_class.SOURCE)
            continue
        clients.append(
            client_class(
                api_key=api_key,
                timeout=timeout,
                max_retries=max_retries,
                rate_limiter=rate_limiter,
                retry_base_delay=retry_delay,
            )
        )

    return SourceAggregator(clients, rate_limiter=rate_limiter)
