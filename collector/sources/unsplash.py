"""
Unsplash Client - search and download photos from the Unsplash API.

Provider notes:
- Auth via "Authorization: Client-ID <access key>" and Accept-Version v1
- per_page 1..30, orientation limited to landscape/portrait/squarish
- Downloads must ping links.download_location first (API guideline)
"""

import logging
from typing import Any, Dict, List, Optional

from collector.errors import SourceErrorKind
from collector.models import (
    DownloadedImage,
    ImageCandidate,
    ImageStats,
    License,
    Photographer,
    SearchResult,
    SourceName,
)
from collector.sources.base import BaseSourceClient, SearchStrategy, parse_timestamp
from collector.sources.retry import Result

logger = logging.getLogger(__name__)

VALID_ORIENTATIONS = {"landscape", "portrait", "squarish"}


class UnsplashClient(BaseSourceClient):
    """
    Unsplash search client.

    Usage:
        client = UnsplashClient(api_key="...")
        result = await client.search("dog", per_page=20)
        if result.ok:
            images = result.value.images
    """

    SOURCE = SourceName.UNSPLASH.value
    BASE_URL = "https://api.unsplash.com"
    SEARCH_PATH = "/search/photos"
    MAX_PER_PAGE = 30
    DEFAULT_PER_PAGE = 20

    MIN_WIDTH = 800
    MIN_HEIGHT = 600

    def _get_headers(self) -> Dict[str, str]:
        headers = super()._get_headers()
        headers["Authorization"] = f"Client-ID {self.api_key}"
        headers["Accept-Version"] = "v1"
        return headers

    def build_search_params(self, query: str, page: int, per_page: int, **filters) -> Dict[str, Any]:
        params = {
            "query": query,
            "page": page,
            "per_page": per_page,
            "order_by": "relevant",
        }
        orientation = filters.get("orientation")
        if orientation in VALID_ORIENTATIONS:
            params["orientation"] = orientation
        return params

    def parse_search_response(
        self, data: Dict[str, Any], query: str, page: int, per_page: int
    ) -> SearchResult:
        min_width = self.MIN_WIDTH
        min_height = self.MIN_HEIGHT

        images = [
            self.format_image(photo, query)
            for photo in data["results"]
            if photo.get("width", 0) >= min_width and photo.get("height", 0) >= min_height
        ]
        total_pages = int(data.get("total_pages", 0))
        return SearchResult(
            images=images,
            total=int(data.get("total", len(images))),
            has_more=page < total_pages,
            page=page,
            per_page=per_page,
            query=query,
        )

    def format_image(self, photo: Dict[str, Any], search_term: str = "") -> ImageCandidate:
        """Map an Unsplash photo object to an ImageCandidate."""
        user = photo.get("user") or {}
        links = photo.get("links") or {}
        urls = photo["urls"]
        name = user.get("name", "")

        return ImageCandidate(
            source=self.SOURCE,
            source_id=str(photo["id"]),
            url=urls["regular"],
            url_large=urls.get("full"),
            url_small=urls.get("small"),
            download_location=links.get("download_location"),
            width=int(photo["width"]),
            height=int(photo["height"]),
            description=photo.get("description") or photo.get("alt_description") or search_term,
            tags=[tag["title"] for tag in photo.get("tags") or [] if tag.get("title")],
            license=License(
                type="unsplash",
                commercial=True,
                attribution=f"Photo by {name} on Unsplash",
                url=links.get("html"),
            ),
            photographer=Photographer(
                name=name,
                username=user.get("username"),
                profile_url=(user.get("links") or {}).get("html"),
                portfolio_url=user.get("portfolio_url"),
            ),
            stats=ImageStats(
                likes=int(photo.get("likes") or 0),
                downloads=int(photo.get("downloads") or 0),
            ),
            color=photo.get("color"),
            created_at=parse_timestamp(photo.get("created_at")),
        )

    async def get_image_details(self, image_id: str) -> Result[ImageCandidate]:
        result = await self._get_json(f"/photos/{image_id}", {})
        if not result.ok:
            return Result.failure(result.error, attempts=result.attempts)
        try:
            return Result.success(self.format_image(result.value), attempts=result.attempts)
        except (KeyError, TypeError, ValueError) as e:
            return Result.failure(
                self._error(SourceErrorKind.INVALID_RESPONSE, f"Malformed photo response: {str(e)}")
            )

    async def track_download(self, candidate: ImageCandidate) -> bool:
        """
        Ping the download tracking endpoint.

        Returns:
            True if the ping succeeded
        """
        if not candidate.download_location:
            return False

        path = candidate.download_location.replace(self.BASE_URL, "")
        result = await self._get_json(path, {})
        if not result.ok:
            logger.warning(
                "Unsplash download tracking failed for %s: %s",
                candidate.source_id,
                result.error,
            )
            return False
        return True

    async def download(self, candidate: ImageCandidate) -> Result[DownloadedImage]:
        await self.track_download(candidate)
        return await super().download(candidate)

    def get_search_strategies(self, item_name: str, category: str) -> List[SearchStrategy]:
        return [
            SearchStrategy("direct", item_name, 1.0),
            SearchStrategy("category", f"{item_name} {category}", 0.9),
            SearchStrategy("professional", f"{item_name} professional", 0.8),
            SearchStrategy("isolated", f"{item_name} isolated white background", 0.8),
            SearchStrategy("stock", f"{item_name} stock photo", 0.7),
        ]

    def compare_candidates(self, a: ImageCandidate, b: ImageCandidate) -> float:
        weight_diff = b.search_weight - a.search_weight
        if abs(weight_diff) > 0.1:
            return weight_diff

        likes_diff = b.stats.likes - a.stats.likes
        if abs(likes_diff) > 10:
            return likes_diff

        return a.squareness - b.squareness
