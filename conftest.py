"""
Pytest configuration and shared fixtures for the image collector test suite.
"""

import asyncio
import io
import os

os.environ.setdefault("COLLECTOR_ENV", "test")

import numpy as np
import pytest
from PIL import Image

from collector.errors import SourceError, SourceErrorKind
from collector.models import DownloadedImage, ImageCandidate, RankedResult, SearchResult
from collector.sources.retry import Result


class FakeSourceClient:
    """
    In-memory stand-in for a source client.

    behaviour: "ok" returns the given images, "error" returns a SourceError
    result, "raise" raises RuntimeError, "hang" sleeps past any timeout.
    """

    def __init__(self, name, images=None, behaviour="ok", error_kind=SourceErrorKind.API_ERROR,
                 downloads=None, rate_limiter=None):
        self.name = name
        self.SOURCE = name
        self.images = images or []
        self.behaviour = behaviour
        self.error_kind = error_kind
        self.downloads = downloads or {}
        self.rate_limiter = rate_limiter
        self.search_calls = []
        self.download_calls = []

    MIN_DIMENSION = 300

    def category_filters(self, category):
        return {}

    def validate_candidate(self, candidate):
        if not candidate.source_id or not candidate.url:
            return False
        return candidate.width >= self.MIN_DIMENSION and candidate.height >= self.MIN_DIMENSION

    async def _respond(self, result_factory):
        if self.rate_limiter is not None and not await self.rate_limiter.consume(self.name):
            return Result.failure(SourceError(
                SourceErrorKind.RATE_LIMITED, f"Rate limit exceeded for {self.name}",
                source=self.name, retryable=False,
            ))
        if self.behaviour == "raise":
            raise RuntimeError(f"{self.name} exploded")
        if self.behaviour == "hang":
            await asyncio.sleep(10)
        if self.behaviour == "error":
            return Result.failure(SourceError(self.error_kind, f"{self.name} failed", source=self.name, status=500))
        return Result.success(result_factory())

    async def search(self, query, page=1, per_page=None, **filters):
        self.search_calls.append((query, filters))
        return await self._respond(lambda: SearchResult(
            images=[self._copy(img) for img in self.images], total=len(self.images), query=query,
        ))

    async def enhanced_search(self, item_name, category, max_results=20, per_page=None, **filters):
        self.search_calls.append((item_name, category))
        return await self._respond(lambda: RankedResult(
            images=[self._copy(img) for img in self.images][:max_results], total_found=len(self.images),
        ))

    async def download(self, candidate):
        self.download_calls.append(candidate.source_id)
        data = self.downloads.get(candidate.source_id)
        if isinstance(data, SourceError):
            return Result.failure(data)
        if data is None:
            return Result.failure(SourceError(SourceErrorKind.API_ERROR, "not found", source=self.name, status=404))
        return Result.success(DownloadedImage(data=data, content_length=len(data)))

    @staticmethod
    def _copy(image):
        from dataclasses import replace
        return replace(image)


def make_candidate(source, source_id, width=1600, height=1200, **kwargs):
    return ImageCandidate(
        source=source,
        source_id=str(source_id),
        url=f"https://{source}.example.com/{source_id}.jpg",
        width=width,
        height=height,
        **kwargs,
    )


def make_image_bytes(width=800, height=800, fmt="JPEG", pattern="gradient", seed=0, alpha=False):
    """Render a synthetic test image and return its encoded bytes."""
    rng = np.random.default_rng(seed)
    if pattern == "noise":
        array = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    elif pattern == "flat":
        array = np.full((height, width, 3), 128, dtype=np.uint8)
    else:
        x = np.linspace(0, 255, width, dtype=np.float64)
        y = np.linspace(0, 255, height, dtype=np.float64)
        xx, yy = np.meshgrid(x, y)
        array = np.stack([xx, yy, 255 - xx], axis=-1).astype(np.uint8)
        # Sharp centred subject on a smooth background
        cy, cx = height // 2, width // 2
        ry, rx = max(1, height // 6), max(1, width // 6)
        array[cy - ry:cy + ry, cx - rx:cx + rx] = [220, 40, 40]
        array[cy - ry:cy + ry:4, cx - rx:cx + rx] = [20, 20, 20]

    image = Image.fromarray(array)
    if alpha:
        image.putalpha(200)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def fake_source_client():
    """Factory for FakeSourceClient instances."""
    return FakeSourceClient


@pytest.fixture
def candidate_factory():
    """Factory for ImageCandidate instances."""
    return make_candidate


@pytest.fixture
def image_bytes_factory():
    """Factory rendering synthetic images to bytes."""
    return make_image_bytes


@pytest.fixture
def sample_jpeg():
    return make_image_bytes(1200, 1200)
