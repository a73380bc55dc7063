"""
Image source clients and cross-source aggregation.

Contains:
- base: shared HTTP, retry and multi-strategy search logic
- unsplash, pixabay, pexels: provider clients
- rate_limiter: per-source token buckets
- aggregator: concurrent fan-out, deduplication and ranking
"""

from collector.sources.aggregator import AggregatedResult, SourceAggregator, build_default_aggregator
from collector.sources.base import BaseSourceClient, SearchStrategy
from collector.sources.pexels import PexelsClient
from collector.sources.pixabay import PixabayClient
from collector.sources.rate_limiter import QuotaTracker, RateLimiter, TokenBucket
from collector.sources.retry import Result, retry_async
from collector.sources.unsplash import UnsplashClient

__all__ = [
    "AggregatedResult",
    "BaseSourceClient",
    "PexelsClient",
    "PixabayClient",
    "QuotaTracker",
    "RateLimiter",
    "Result",
    "SearchStrategy",
    "SourceAggregator",
    "TokenBucket",
    "UnsplashClient",
    "build_default_aggregator",
    "retry_async",
]
