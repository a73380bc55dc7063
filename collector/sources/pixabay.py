"""
Pixabay Client - search and download images from the Pixabay API.

Provider notes:
- Auth via the "key" query parameter
- per_page must be between 3 and 200
- Categories come from Pixabay's fixed list (see CATEGORY_MAP)
"""

import logging
from typing import Any, Dict, List

from collector.models import ImageCandidate, ImageStats, License, Photographer, SearchResult, SourceName
from collector.sources.base import BaseSourceClient, SearchStrategy

logger = logging.getLogger(__name__)

# Vocabulary categories mapped to Pixabay's category system
CATEGORY_MAP = {
    "animals": "animals",
    "nature": "nature",
    "food": "food",
    "fruits": "food",
    "vegetables": "food",
    "education": "education",
    "science": "science",
    "transportation": "transportation",
    "sports": "sports",
    "health": "health",
    "business": "business",
    "computer": "computer",
    "places": "places",
    "backgrounds": "backgrounds",
    "fashion": "fashion",
    "people": "people",
    "religion": "religion",
    "travel": "travel",
    "buildings": "buildings",
    "music": "music",
}


def _flag(value: Any) -> str:
    return "true" if value else "false"


class PixabayClient(BaseSourceClient):
    """
    Pixabay search client.

    Usage:
        client = PixabayClient(api_key="...")
        result = await client.search("apple", category="food")
    """

    SOURCE = SourceName.PIXABAY.value
    BASE_URL = "https://pixabay.com/api"
    SEARCH_PATH = "/"
    MAX_PER_PAGE = 200
    MIN_PER_PAGE = 3
    DEFAULT_PER_PAGE = 20

    MIN_WIDTH = 800
    MIN_HEIGHT = 600

    def map_category(self, category: str) -> str:
        return CATEGORY_MAP.get((category or "").lower(), "")

    def category_filters(self, category):
        mapped = self.map_category(category)
        return {"category": mapped} if mapped else {}

    def build_search_params(self, query: str, page: int, per_page: int, **filters) -> Dict[str, Any]:
        return {
            "key": self.api_key,
            "q": query,
            "image_type": filters.get("image_type", "photo"),
            "orientation": filters.get("orientation", "all"),
            "category": filters.get("category", ""),
            "min_width": filters.get("min_width", self.MIN_WIDTH),
            "min_height": filters.get("min_height", self.MIN_HEIGHT),
            "per_page": per_page,
            "page": page,
            "safesearch": _flag(filters.get("safesearch", True)),
            "editors_choice": _flag(filters.get("editors_choice", False)),
            "order": filters.get("order", "popular"),
        }

    def parse_search_response(
        self, data: Dict[str, Any], query: str, page: int, per_page: int
    ) -> SearchResult:
        images = [self.format_image(hit, query) for hit in data["hits"]]
        total_hits = int(data.get("totalHits", 0))
        return SearchResult(
            images=images,
            total=int(data.get("total", total_hits)),
            has_more=page * per_page < total_hits,
            page=page,
            per_page=per_page,
            query=query,
        )

    def format_image(self, hit: Dict[str, Any], search_term: str = "") -> ImageCandidate:
        """Map a Pixabay hit to an ImageCandidate."""
        user = hit.get("user", "")
        user_id = hit.get("user_id")
        tags = [tag.strip() for tag in (hit.get("tags") or "").split(",") if tag.strip()]

        return ImageCandidate(
            source=self.SOURCE,
            source_id=str(hit["id"]),
            url=hit.get("largeImageURL") or hit["webformatURL"],
            url_large=hit.get("fullHDURL") or hit.get("largeImageURL"),
            url_small=hit.get("webformatURL"),
            width=int(hit.get("imageWidth") or hit.get("webformatWidth") or 0),
            height=int(hit.get("imageHeight") or hit.get("webformatHeight") or 0),
            description=search_term,
            tags=tags,
            license=License(
                type="pixabay",
                commercial=True,
                attribution=f"Image by {user} from Pixabay",
                url=hit.get("pageURL"),
            ),
            photographer=Photographer(
                name=user,
                username=str(user_id) if user_id is not None else None,
                profile_url=f"https://pixabay.com/users/{user}-{user_id}/" if user_id is not None else None,
            ),
            stats=ImageStats(
                views=int(hit.get("views") or 0),
                downloads=int(hit.get("downloads") or 0),
                likes=int(hit.get("likes") or 0),
                comments=int(hit.get("comments") or 0),
                favorites=int(hit.get("collections") or 0),
            ),
            file_size=hit.get("imageSize"),
        )

    def get_search_strategies(self, item_name: str, category: str) -> List[SearchStrategy]:
        pixabay_category = self.map_category(category)
        return [
            SearchStrategy(
                "direct",
                item_name,
                1.0,
                {"category": pixabay_category, "editors_choice": True},
            ),
            SearchStrategy("category", f"{item_name} {category}", 0.9, {"safesearch": True}),
            SearchStrategy(
                "high_resolution",
                item_name,
                0.8,
                {"min_width": 1920, "min_height": 1080, "editors_choice": True},
            ),
            SearchStrategy(
                "illustration",
                item_name,
                0.7,
                {"image_type": "illustration", "category": pixabay_category},
            ),
        ]

    def compare_candidates(self, a: ImageCandidate, b: ImageCandidate) -> float:
        weight_diff = b.search_weight - a.search_weight
        if abs(weight_diff) > 0.1:
            return weight_diff

        views_diff = b.stats.views - a.stats.views
        if abs(views_diff) > 1000:
            return views_diff

        downloads_diff = b.stats.downloads - a.stats.downloads
        if abs(downloads_diff) > 100:
            return downloads_diff

        return a.squareness - b.squareness
