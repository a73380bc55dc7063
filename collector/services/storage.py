"""
Local filesystem storage for processed images.

Layout under the base directory:
    categories/{category_id}/{letter}/{item_id}/{item_id}-{source}-{source_id}.webp
    categories/{category_id}/{letter}/{item_id}/{item_id}-{source}-{source_id}_{variant}.webp
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Union

from collector.models import CollectionItem, StoredImage
from collector.processing.image_processor import ProcessedImage

logger = logging.getLogger(__name__)


def build_file_name(item: CollectionItem, source: str, source_id: str, extension: str = "webp") -> str:
    return f"{item.item_id}-{source}-{source_id}.{extension}"


def build_relative_path(item: CollectionItem, file_name: str) -> str:
    return f"categories/{item.category_id}/{item.letter}/{item.item_id}/{file_name}"


class LocalImageStore:
    """
    Writes the primary variant and every size variant of an image.

    Usage:
        store = LocalImageStore(settings.IMAGES_DIRECTORY)
        written = await store.save(stored_image, processed)
    """

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)

    def _write(self, stored: StoredImage, processed: ProcessedImage) -> List[Path]:
        primary_path = self.base_dir / stored.file_path
        primary_path.parent.mkdir(parents=True, exist_ok=True)

        written = []
        primary = processed.primary_variant
        if primary is not None:
            primary_path.write_bytes(primary.data)
            written.append(primary_path)

        for variant in processed.variants:
            variant_path = primary_path.with_name(f"{primary_path.stem}_{variant.name}.{variant.format}")
            variant_path.write_bytes(variant.data)
            written.append(variant_path)

        logger.debug("Stored %d files for %s", len(written), stored.file_path)
        return written

    async def save(self, stored: StoredImage, processed: ProcessedImage) -> List[Path]:
        """
        Write the image files.

        Raises:
            OSError: If the files cannot be written
        """
        return await asyncio.to_thread(self._write, stored, processed)
