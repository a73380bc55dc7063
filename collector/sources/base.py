"""
Base Source Client - shared HTTP plumbing for image providers.

Features:
- Async httpx client with configurable timeout
- Provider auth headers supplied by subclasses
- Error classification into SourceError (network, rate_limited,
  api_error, invalid_response)
- Retry with exponential backoff for retryable failures
- Optional shared RateLimiter consulted before every API call
- Multi-strategy enhanced search with per-source dedup and ranking

Clients never raise provider failures; every public call returns a Result.
"""

import functools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from collector.errors import SourceError, SourceErrorKind
from collector.models import DownloadedImage, ImageCandidate, RankedResult, SearchResult
from collector.sources.rate_limiter import RateLimiter
from collector.sources.retry import Result, exponential_backoff, retry_async

logger = logging.getLogger(__name__)


@dataclass
class SearchStrategy:
    """One query variant of an enhanced search."""
    name: str
    query: str
    weight: float
    params: Dict[str, Any] = field(default_factory=dict)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 provider timestamp; None when absent or invalid."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable timestamp: %s", value)
        return None


class BaseSourceClient(ABC):
    """
    Abstract image provider client.

    Subclasses define SOURCE, BASE_URL, SEARCH_PATH and MAX_PER_PAGE and
    implement the provider-specific request/response mapping.
    """

    SOURCE = ""
    BASE_URL = ""
    SEARCH_PATH = ""
    MAX_PER_PAGE = 30
    MIN_PER_PAGE = 1
    DEFAULT_PER_PAGE = 10

    DEFAULT_TIMEOUT = 30.0
    DOWNLOAD_TIMEOUT = 60.0
    MAX_RETRIES = 3
    RETRY_BASE_DELAY = 1.0  # seconds
    USER_AGENT = "ImageCollector/1.0"
    MIN_DIMENSION = 300

    def __init__(
        self,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        rate_limiter: Optional[RateLimiter] = None,
        retry_base_delay: Optional[float] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Provider API key
            timeout: Per-request timeout in seconds
            max_retries: Total attempts for retryable failures
            rate_limiter: Shared limiter; None means unlimited
            retry_base_delay: First backoff delay (defaults to RETRY_BASE_DELAY)

        Raises:
            ValueError: If no API key is configured
        """
        if not api_key:
            raise ValueError(f"{self.SOURCE} API key not configured")

        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.rate_limiter = rate_limiter
        if retry_base_delay is not None:
            self.RETRY_BASE_DELAY = retry_base_delay

    @property
    def name(self) -> str:
        return self.SOURCE

    def _get_headers(self) -> Dict[str, str]:
        """Default request headers; subclasses add provider auth."""
        return {
            "User-Agent": self.USER_AGENT,
            "Accept": "application/json",
        }

    def _download_headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.USER_AGENT,
            "Accept": "image/*",
        }

    def clamp_per_page(self, per_page: Optional[int]) -> int:
        if per_page is None:
            per_page = self.DEFAULT_PER_PAGE
        return max(self.MIN_PER_PAGE, min(int(per_page), self.MAX_PER_PAGE))

    def _error(self, kind: SourceErrorKind, message: str, status: Optional[int] = None) -> SourceError:
        return SourceError(kind, message, source=self.SOURCE, status=status)

    def _check_response(self, response: httpx.Response) -> None:
        """Raise a classified SourceError for non-success responses."""
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:200] if response.text else ""
        if status == 429:
            raise self._error(SourceErrorKind.RATE_LIMITED, f"HTTP 429: {detail}", status=429)
        raise self._error(SourceErrorKind.API_ERROR, f"HTTP {status}: {detail}", status=status)

    async def _request(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        Perform one GET request and classify failures.

        Raises:
            SourceError: On network failure or error status
        """
        timeout = timeout or self.timeout
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                response = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise self._error(SourceErrorKind.NETWORK, f"Request timeout after {timeout}s: {str(e)}")
        except httpx.TransportError as e:
            raise self._error(SourceErrorKind.NETWORK, f"Connection error: {str(e)}")

        self._check_response(response)
        return response

    async def _request_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """One rate-limited API call returning decoded JSON."""
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire(self.SOURCE)

        response = await self._request(f"{self.BASE_URL}{path}", params=params, headers=self._get_headers())
        logger.debug("%s API call %s -> %d", self.SOURCE, path, response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise self._error(SourceErrorKind.INVALID_RESPONSE, f"Invalid JSON response: {str(e)}")
        if not isinstance(data, dict):
            raise self._error(SourceErrorKind.INVALID_RESPONSE, "Unexpected response payload")
        return data

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Result[Dict[str, Any]]:
        return await retry_async(
            lambda: self._request_json(path, params),
            max_attempts=self.max_retries,
            backoff=exponential_backoff(self.RETRY_BASE_DELAY),
            description=f"{self.SOURCE} {path or '/'}",
        )

    async def search(
        self,
        query: str,
        page: int = 1,
        per_page: Optional[int] = None,
        **filters,
    ) -> Result[SearchResult]:
        """
        Search the provider and normalize the response.

        Args:
            query: Search query string
            page: 1-based page number
            per_page: Page size (clamped to the provider maximum)
            **filters: Provider filters (orientation, size, color, category...)

        Returns:
            Result wrapping a SearchResult, or the classified SourceError
        """
        per_page = self.clamp_per_page(per_page)
        params = self.build_search_params(query, page, per_page, **filters)

        result = await self._get_json(self.SEARCH_PATH, params)
        if not result.ok:
            logger.warning("%s search failed for '%s': %s", self.SOURCE, query, result.error)
            return Result.failure(result.error, attempts=result.attempts)

        try:
            search_result = self.parse_search_response(result.value, query, page, per_page)
        except (KeyError, TypeError, ValueError) as e:
            error = self._error(SourceErrorKind.INVALID_RESPONSE, f"Malformed search response: {str(e)}")
            logger.warning("%s returned malformed results for '%s': %s", self.SOURCE, query, e)
            return Result.failure(error, attempts=result.attempts)

        logger.info(
            "%s search '%s' returned %d images (total %d)",
            self.SOURCE,
            query,
            len(search_result.images),
            search_result.total,
        )
        return Result.success(search_result, attempts=result.attempts)

    async def download(self, candidate: ImageCandidate) -> Result[DownloadedImage]:
        """
        Download the image bytes for a candidate.

        Returns:
            Result wrapping DownloadedImage (bytes + content length)
        """
        url = candidate.download_url or candidate.url

        async def fetch() -> DownloadedImage:
            response = await self._request(
                url,
                headers=self._download_headers(),
                timeout=self.DOWNLOAD_TIMEOUT,
            )
            data = response.content
            return DownloadedImage(
                data=data,
                content_length=int(response.headers.get("content-length") or len(data)),
                content_type=response.headers.get("content-type"),
                url=url,
            )

        result = await retry_async(
            fetch,
            max_attempts=self.max_retries,
            backoff=exponential_backoff(self.RETRY_BASE_DELAY),
            description=f"{self.SOURCE} download {candidate.source_id}",
        )
        if not result.ok:
            logger.error("%s image download failed for %s: %s", self.SOURCE, candidate.source_id, result.error)
        return result

    async def enhanced_search(
        self,
        item_name: str,
        category: str,
        max_results: int = 20,
        per_page: Optional[int] = None,
        **filters,
    ) -> Result[RankedResult]:
        """
        Run every search strategy in sequence and rank the merged hits.

        Each hit is tagged with its strategy's weight, duplicates by
        source id keep the first (highest priority) occurrence, and the
        merged list is ranked by weight then provider heuristics.

        Args:
            item_name: Vocabulary item
            category: Category name
            max_results: Maximum images returned
            per_page: Page size per strategy
            **filters: Filters applied to every strategy

        Returns:
            Result wrapping a RankedResult; a failure only when every
            strategy failed
        """
        strategies = self.get_search_strategies(item_name, category)
        per_page = min(per_page or self.DEFAULT_PER_PAGE, 15)

        collected: List[ImageCandidate] = []
        seen = set()
        used: List[str] = []
        errors: Dict[str, str] = {}
        last_error: Optional[SourceError] = None

        for strategy in strategies:
            params = {**filters, **strategy.params}
            result = await self.search(strategy.query, page=1, per_page=per_page, **params)
            if not result.ok:
                last_error = result.error
                errors[strategy.name] = str(result.error)
                logger.warning("%s strategy failed: %s (%s)", self.SOURCE, strategy.query, result.error)
                if result.error.kind == SourceErrorKind.RATE_LIMITED:
                    break
                continue

            used.append(strategy.name)
            for image in result.value.images:
                if image.source_id in seen:
                    continue
                seen.add(image.source_id)
                image.search_weight = strategy.weight
                image.search_strategy = strategy.name
                image.search_query = strategy.query
                collected.append(image)

        if not used and last_error is not None:
            return Result.failure(last_error)

        ranked = self.rank_images(collected)
        return Result.success(
            RankedResult(
                images=ranked[:max_results],
                total_found=len(collected),
                strategies_used=used,
                strategy_errors=errors,
            )
        )

    def rank_images(self, images: List[ImageCandidate]) -> List[ImageCandidate]:
        return sorted(images, key=functools.cmp_to_key(self.compare_candidates))

    def compare_candidates(self, a: ImageCandidate, b: ImageCandidate) -> float:
        """
        Order two candidates (negative means a ranks first).

        Higher search weight wins when the gap exceeds 0.1; otherwise
        the squarer image wins.
        """
        weight_diff = b.search_weight - a.search_weight
        if abs(weight_diff) > 0.1:
            return weight_diff
        return a.squareness - b.squareness

    def category_filters(self, category: Optional[str]) -> Dict[str, Any]:
        """Search filters derived from a vocabulary category (none by default)."""
        return {}

    def validate_candidate(self, candidate: ImageCandidate) -> bool:
        """Minimum usable size and a URL to fetch from."""
        if not candidate.source_id or not candidate.url:
            return False
        return candidate.width >= self.MIN_DIMENSION and candidate.height >= self.MIN_DIMENSION

    @abstractmethod
    def build_search_params(self, query: str, page: int, per_page: int, **filters) -> Dict[str, Any]:
        """Map common search options to provider query parameters."""

    @abstractmethod
    def parse_search_response(
        self, data: Dict[str, Any], query: str, page: int, per_page: int
    ) -> SearchResult:
        """Normalize a provider response into a SearchResult."""

    @abstractmethod
    def get_search_strategies(self, item_name: str, category: str) -> List[SearchStrategy]:
        """Query variants used by enhanced_search, highest weight first."""
