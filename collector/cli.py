"""
Command line entry point for the image collector.

Usage:
    image-collector search "golden retriever" --category animals
    image-collector search dog --category animals --enhanced --json
    image-collector collect dog --category animals
    image-collector collect dog --category animals --force --target 5
"""

import argparse
import asyncio
import json
import logging
import logging.config
import re
import sys
from typing import List, Optional, TextIO

from collector.models import CollectionItem, CollectionStrategy
from collector.monitoring import init_sentry
from collector.processing import ImageProcessor, ProcessorConfig
from collector.services import CollectionOrchestrator, LocalImageStore, QualityAssessmentService
from collector.sources import SourceAggregator, build_default_aggregator

logger = logging.getLogger(__name__)


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="image-collector",
        description="Search stock image providers and collect scored images for vocabulary items",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    search = subparsers.add_parser("search", help="Search every configured source")
    search.add_argument("query", help="Search query or item name")
    search.add_argument("--category", default=None, help="Vocabulary category (e.g. animals)")
    search.add_argument(
        "--enhanced",
        action="store_true",
        help="Run the multi-strategy search (requires --category)",
    )
    search.add_argument(
        "--per-source",
        type=int,
        default=10,
        help="Results requested from each source (default: 10)",
    )
    search.add_argument("--exclude", action="append", default=[], help="Source to skip (repeatable)")
    search.add_argument("--json", action="store_true", help="Print the result as JSON")

    collect = subparsers.add_parser("collect", help="Run one collection pass for an item")
    collect.add_argument("item", help="Item name (e.g. dog)")
    collect.add_argument("--category", required=True, help="Category name (e.g. animals)")
    collect.add_argument("--letter", default="", help="Alphabet letter (defaults to the first letter)")
    collect.add_argument("--target", type=int, default=None, help="Target approved images")
    collect.add_argument("--force", action="store_true", help="Run even when the item is complete")
    collect.add_argument("--no-ai", action="store_true", help="Disable the AI generation fallback")

    return parser


async def run_search(
    args: argparse.Namespace,
    aggregator: Optional[SourceAggregator] = None,
    out: TextIO = sys.stdout,
) -> int:
    aggregator = aggregator or build_default_aggregator()

    if args.enhanced:
        if not args.category:
            out.write("--enhanced requires --category\n")
            return 2
        result = await aggregator.enhanced_search_all_sources(
            args.query,
            args.category,
            max_results_per_source=args.per_source,
            exclude_sources=args.exclude,
        )
    else:
        result = await aggregator.search_all_sources(
            args.query,
            args.category,
            max_results_per_source=args.per_source,
            exclude_sources=args.exclude,
        )

    if args.json:
        data = result.to_dict()
        data["images"] = [
            {
                "source": image.source,
                "source_id": image.source_id,
                "url": image.url,
                "width": image.width,
                "height": image.height,
                "description": image.description,
                "photographer": image.photographer.name,
                "license": image.license.type if image.license else None,
            }
            for image in result.images
        ]
        out.write(json.dumps(data, indent=2, default=str) + "\n")
        return 0

    if result.no_sources_available:
        out.write("No image sources configured\n")
        return 1

    out.write(f"Found {result.total_images} images for '{args.query}'\n")
    for image in result.images:
        out.write(f"  [{image.source}] {image.source_id} {image.width}x{image.height} {image.description}\n")
    for source, error in result.errors.items():
        out.write(f"  {source} failed: {error}\n")
    return 0


async def run_collect(
    args: argparse.Namespace,
    orchestrator: Optional[CollectionOrchestrator] = None,
    out: TextIO = sys.stdout,
) -> int:
    if orchestrator is None:
        from config import settings

        orchestrator = CollectionOrchestrator(
            aggregator=build_default_aggregator(settings),
            processor=ImageProcessor(ProcessorConfig.from_settings(settings)),
            quality_service=QualityAssessmentService(),
            image_store=LocalImageStore(settings.IMAGES_DIRECTORY),
        )

    overrides = {}
    if args.target is not None:
        overrides["target_images_per_item"] = args.target
    if args.no_ai:
        overrides["use_ai_generation"] = False
    strategy = CollectionStrategy.from_settings(**overrides)

    item = CollectionItem(
        item_id=slugify(args.item),
        name=args.item,
        category_id=slugify(args.category),
        category_name=args.category,
        letter=args.letter.upper(),
    )

    result = await orchestrator.collect_for_item(item, strategy, force_restart=args.force)
    out.write(json.dumps(result.to_dict(), indent=2, default=str) + "\n")
    return 0 if result.success else 1


def configure(settings_module=None) -> None:
    """Apply logging configuration and start error reporting."""
    if settings_module is None:
        from config import settings as settings_module

    logging.config.dictConfig(settings_module.LOGGING)
    init_sentry(settings_module)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure()
    logger.debug("Running %s", args.command)

    if args.command == "search":
        return asyncio.run(run_search(args))
    return asyncio.run(run_collect(args))


if __name__ == "__main__":
    sys.exit(main())
