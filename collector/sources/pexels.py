"""
Pexels Client - search and download photos from the Pexels API.

Provider notes:
- Auth via a bare "Authorization: <key>" header
- per_page up to 80; optional orientation, size and color filters
- No tags or engagement stats in responses
"""

import logging
from typing import Any, Dict, List, Optional

from collector.errors import SourceErrorKind
from collector.models import ImageCandidate, License, Photographer, SearchResult, SourceName
from collector.sources.base import BaseSourceClient, SearchStrategy
from collector.sources.retry import Result

logger = logging.getLogger(__name__)


class PexelsClient(BaseSourceClient):
    """
    Pexels search client.

    Usage:
        client = PexelsClient(api_key="...")
        result = await client.search("bicycle", orientation="square", size="large")
    """

    SOURCE = SourceName.PEXELS.value
    BASE_URL = "https://api.pexels.com/v1"
    SEARCH_PATH = "/search"
    MAX_PER_PAGE = 80
    DEFAULT_PER_PAGE = 15
    LOCALE = "en-US"

    def _get_headers(self) -> Dict[str, str]:
        headers = super()._get_headers()
        headers["Authorization"] = self.api_key
        return headers

    def _download_headers(self) -> Dict[str, str]:
        headers = super()._download_headers()
        headers["Authorization"] = self.api_key
        return headers

    def build_search_params(self, query: str, page: int, per_page: int, **filters) -> Dict[str, Any]:
        params = {
            "query": query,
            "page": page,
            "per_page": per_page,
            "locale": filters.get("locale", self.LOCALE),
        }
        # Add optional parameters only if they have values
        for key in ("orientation", "size", "color"):
            if filters.get(key):
                params[key] = filters[key]
        return params

    def parse_search_response(
        self, data: Dict[str, Any], query: str, page: int, per_page: int
    ) -> SearchResult:
        images = [self.format_image(photo, query) for photo in data["photos"]]
        return SearchResult(
            images=images,
            total=int(data.get("total_results", len(images))),
            has_more=bool(data.get("next_page")),
            page=int(data.get("page", page)),
            per_page=int(data.get("per_page", per_page)),
            query=query,
        )

    def format_image(self, photo: Dict[str, Any], search_term: str = "") -> ImageCandidate:
        """Map a Pexels photo object to an ImageCandidate."""
        src = photo["src"]
        photographer = photo.get("photographer", "")

        return ImageCandidate(
            source=self.SOURCE,
            source_id=str(photo["id"]),
            url=src["large"],
            url_large=src.get("original"),
            url_small=src.get("medium"),
            width=int(photo["width"]),
            height=int(photo["height"]),
            description=photo.get("alt") or search_term,
            license=License(
                type="pexels",
                commercial=True,
                attribution=f"Photo by {photographer} from Pexels",
                url=photo.get("url"),
            ),
            photographer=Photographer(
                name=photographer,
                username=str(photo["photographer_id"]) if photo.get("photographer_id") is not None else None,
                profile_url=photo.get("photographer_url"),
            ),
            color=photo.get("avg_color"),
        )

    async def get_curated_photos(self, page: int = 1, per_page: Optional[int] = None) -> Result[SearchResult]:
        per_page = self.clamp_per_page(per_page or self.MAX_PER_PAGE)
        result = await self._get_json("/curated", {"page": page, "per_page": per_page})
        if not result.ok:
            return Result.failure(result.error, attempts=result.attempts)
        try:
            return Result.success(self.parse_search_response(result.value, "", page, per_page))
        except (KeyError, TypeError, ValueError) as e:
            return Result.failure(
                self._error(SourceErrorKind.INVALID_RESPONSE, f"Malformed curated response: {str(e)}")
            )

    def get_search_strategies(self, item_name: str, category: str) -> List[SearchStrategy]:
        return [
            SearchStrategy("direct", item_name, 1.0),
            SearchStrategy("category", f"{item_name} {category}", 0.9),
            SearchStrategy("professional", f"{item_name} professional", 0.8, {"size": "large"}),
            SearchStrategy("isolated", f"{item_name} isolated", 0.8, {"color": "white"}),
            SearchStrategy("square", item_name, 0.7, {"orientation": "square"}),
            SearchStrategy("landscape", item_name, 0.6, {"orientation": "landscape"}),
        ]

    def compare_candidates(self, a: ImageCandidate, b: ImageCandidate) -> float:
        weight_diff = b.search_weight - a.search_weight
        if abs(weight_diff) > 0.1:
            return weight_diff

        # Prefer larger images when the gap exceeds one megapixel
        size_diff = b.pixel_count - a.pixel_count
        if abs(size_diff) > 1_000_000:
            return size_diff

        return a.squareness - b.squareness
