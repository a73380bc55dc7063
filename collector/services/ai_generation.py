"""
AI image generation fallback.

Consulted by the orchestrator when stock sources leave an item short of
its target. No provider is wired in; the default generator reports
itself unavailable and produces nothing.
"""

import logging
from dataclasses import dataclass
from typing import List

from collector.models import CollectionItem

logger = logging.getLogger(__name__)

AI_SOURCE = "ai-generated"


@dataclass
class GeneratedImage:
    data: bytes
    prompt: str
    provider: str = AI_SOURCE
    generation_id: str = ""


def build_prompt(item: CollectionItem) -> str:
    return (
        f"A clear, well-lit photograph of a {item.name.lower()} "
        f"({item.category_name.lower()}), centered on a plain background"
    )


class ImageGenerator:
    """
    Interface for fallback image generators.

    The orchestrator only calls generate() when is_available() is True.
    """

    def is_available(self) -> bool:
        return True

    async def generate(self, item: CollectionItem, count: int, prompt: str) -> List[GeneratedImage]:
        raise NotImplementedError


class UnavailableImageGenerator(ImageGenerator):
    """Default generator: no provider configured."""

    def is_available(self) -> bool:
        return False

    async def generate(self, item: CollectionItem, count: int, prompt: str) -> List[GeneratedImage]:
        logger.info("AI generation requested for %s (%d images) but no provider is configured", item.name, count)
        return []
