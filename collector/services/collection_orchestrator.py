"""
Collection Orchestrator - drives one item (or a category of items) through
search, download, processing, scoring and classification.

One pass on an item:
1. Skip when already complete (unless forced), paused or disabled
2. Start the attempt (collecting, attempts + 1, last attempt recorded)
3. Aggregate candidates across sources using the category strategy
4. Check, download, process and score candidates until the gap is filled;
   a candidate that fails any step is noted and skipped
5. Classify: >= auto approval -> approved, >= minimum -> manual review,
   otherwise rejected
6. Fold the decisions into the item's progress
7. Completed when the target is met, failed when attempts are exhausted,
   otherwise collecting with the next attempt scheduled

A whole-item error is recorded on the item's progress and returned in the
result; it never stops sibling items in a category run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from collector.errors import OrchestrationError, ValidationError
from collector.models import (
    CollectionItem,
    CollectionProgress,
    CollectionStatus,
    CollectionStrategy,
    ImageCandidate,
    ImageStatus,
    License,
    StoredImage,
)
from collector.monitoring import add_collection_breadcrumb, capture_collection_error
from collector.processing.image_processor import ImageProcessor, ProcessedImage, hashes_match
from collector.services.ai_generation import AI_SOURCE, ImageGenerator, UnavailableImageGenerator, build_prompt
from collector.services.progress import (
    calculate_priority,
    fail_attempt,
    finish_attempt,
    needs_collection,
    record_error,
    record_image_decisions,
    record_source_result,
    start_attempt,
)
from collector.services.quality_assessment import QualityAssessmentService, classify_score
from collector.services.storage import build_file_name, build_relative_path
from collector.sources.aggregator import AggregatedResult, SourceAggregator
from collector.sources.queries import QueryBuilder, get_query_builder

logger = logging.getLogger(__name__)

AUTO_APPROVER = "auto-approval"
REJECTION_REASON = "Quality score too low"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ItemCollectionResult:
    """Outcome of one orchestration pass on an item."""
    item_id: str
    item_name: str
    progress: CollectionProgress
    images: List[StoredImage] = field(default_factory=list)
    search_terms: List[str] = field(default_factory=list)
    images_found: int = 0
    images_processed: int = 0
    images_approved: int = 0
    duplicates_skipped: int = 0
    sources: Dict[str, Dict[str, int]] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None
    error: Optional[OrchestrationError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def source_counts(self, source: str) -> Dict[str, int]:
        return self.sources.setdefault(source, {"found": 0, "approved": 0})

    def note_error(self, source: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.errors.append({"source": source, "error": message, "details": details})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "item_name": self.item_name,
            "status": self.progress.status.value,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "images_found": self.images_found,
            "images_processed": self.images_processed,
            "images_approved": self.images_approved,
            "duplicates_skipped": self.duplicates_skipped,
            "sources": self.sources,
            "errors": [{"source": e["source"], "error": e["error"]} for e in self.errors],
            "images": [
                {
                    "file_path": image.file_path,
                    "source": image.source_provider,
                    "status": image.status.value,
                    "is_primary": image.is_primary,
                    "quality": image.quality_score.to_dict(),
                }
                for image in self.images
            ],
            "error": str(self.error) if self.error else None,
        }


class CollectionOrchestrator:
    """
    Per-item collection state machine over the aggregator, processor and
    quality engine.

    Usage:
        orchestrator = CollectionOrchestrator(
            aggregator=build_default_aggregator(),
            processor=ImageProcessor(ProcessorConfig.from_settings()),
            quality_service=QualityAssessmentService(),
        )
        result = await orchestrator.collect_for_item(item, strategy)
    """

    def __init__(
        self,
        aggregator: SourceAggregator,
        processor: ImageProcessor,
        quality_service: QualityAssessmentService,
        strategy_provider: Optional[Callable[[str], Optional[CollectionStrategy]]] = None,
        ai_generator: Optional[ImageGenerator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        image_store=None,
        query_builder: Optional[QueryBuilder] = None,
    ):
        self.aggregator = aggregator
        self.processor = processor
        self.quality_service = quality_service
        self.strategy_provider = strategy_provider
        self.ai_generator = ai_generator or UnavailableImageGenerator()
        self.clock = clock or utc_now
        self.image_store = image_store
        self.query_builder = query_builder or get_query_builder()

    def resolve_strategy(self, item: CollectionItem, strategy: Optional[CollectionStrategy] = None) -> CollectionStrategy:
        if strategy is not None:
            return strategy
        if self.strategy_provider is not None:
            provided = self.strategy_provider(item.category_id)
            if provided is not None:
                return provided
        return CollectionStrategy.from_settings()

    def generate_search_terms(self, item: CollectionItem, strategy: Optional[CollectionStrategy] = None) -> List[str]:
        """Item name, name with category, custom terms and a plural variation."""
        custom = strategy.custom_search_terms if strategy else []
        return self.query_builder.build_collection_terms(item.name, item.category_name, custom)

    def get_pending_items(
        self,
        items: Iterable[CollectionItem],
        strategy: Optional[CollectionStrategy] = None,
    ) -> List[CollectionItem]:
        """Items due for collection now, highest priority first."""
        now = self.clock()
        pending = []
        for item in items:
            max_attempts = self.resolve_strategy(item, strategy).max_search_attempts
            if needs_collection(item.progress, now, max_attempts):
                pending.append(item)
        return sorted(
            pending,
            key=lambda item: calculate_priority(item.progress, image_count=len(item.images)),
            reverse=True,
        )

    def _skip(self, item: CollectionItem, reason: str) -> ItemCollectionResult:
        logger.info("Skipping %s: %s", item.name, reason)
        return ItemCollectionResult(
            item_id=item.item_id,
            item_name=item.name,
            progress=item.progress,
            skipped=True,
            skip_reason=reason,
        )

    async def collect_for_item(
        self,
        item: CollectionItem,
        strategy: Optional[CollectionStrategy] = None,
        force_restart: bool = False,
    ) -> ItemCollectionResult:
        """
        Run one collection pass on an item.

        Updates item.progress and appends new images to item.images.

        Args:
            item: Item to collect for
            strategy: Category strategy (resolved from the provider or
                settings when omitted)
            force_restart: Run even when complete, paused or disabled

        Returns:
            ItemCollectionResult; whole-item failures are reported in
            result.error rather than raised
        """
        strategy = self.resolve_strategy(item, strategy)
        progress = item.progress

        if not force_restart:
            if not strategy.enabled:
                return self._skip(item, "collection disabled for category")
            if progress.status == CollectionStatus.COMPLETED and progress.is_complete:
                return self._skip(item, "already complete")
            if progress.status == CollectionStatus.PAUSED:
                return self._skip(item, "collection paused")

        now = self.clock()
        terms = self.generate_search_terms(item, strategy)
        item.progress = start_attempt(progress, now, terms, target_count=strategy.target_images_per_item)

        result = ItemCollectionResult(
            item_id=item.item_id,
            item_name=item.name,
            progress=item.progress,
            search_terms=terms,
        )

        add_collection_breadcrumb(
            item_id=item.item_id,
            message=f"Collection attempt {item.progress.search_attempts}",
            extra_data={"category": item.category_id, "approved": item.progress.approved_count},
        )
        logger.info(
            "Collecting images for %s (attempt %d, %d/%d approved)",
            item.name,
            item.progress.search_attempts,
            item.progress.approved_count,
            item.progress.target_count,
        )

        try:
            await self._run_pass(item, strategy, result, now)
        except Exception as e:
            error = e if isinstance(e, OrchestrationError) else OrchestrationError(item.item_id, str(e))
            logger.exception("Item collection failed: %s", item.name)
            capture_collection_error(
                error=e,
                item_id=item.item_id,
                category=item.category_id,
                attempt=item.progress.search_attempts,
            )
            progress = self._apply_decisions(item, result, now)
            progress = record_error(progress, error.source, error.message, now)
            item.progress = fail_attempt(progress, now, strategy.max_search_attempts, strategy.retry_interval_hours)
            result.progress = item.progress
            result.error = error
            return result

        progress = self._apply_decisions(item, result, now)
        item.progress = finish_attempt(progress, now, strategy.max_search_attempts, strategy.retry_interval_hours)
        result.progress = item.progress

        logger.info(
            "Item collection finished: %s -> %s (%d approved this pass, %d/%d total)",
            item.name,
            item.progress.status.value,
            result.images_approved,
            item.progress.approved_count,
            item.progress.target_count,
        )
        return result

    def _apply_decisions(self, item: CollectionItem, result: ItemCollectionResult, now: datetime) -> CollectionProgress:
        progress = item.progress
        for error in result.errors:
            progress = record_error(progress, error["source"], error["error"], now, error.get("details"))
        for source, counts in result.sources.items():
            progress = record_source_result(progress, source, counts["found"], counts["approved"], now)
        return record_image_decisions(progress, result.images, item.images)

    async def _run_pass(
        self,
        item: CollectionItem,
        strategy: CollectionStrategy,
        result: ItemCollectionResult,
        now: datetime,
    ) -> None:
        gap = item.progress.target_count - item.progress.approved_count
        if gap <= 0:
            logger.info("Item already has enough images: %s", item.name)
            return

        quality = self.quality_service.with_overrides(strategy.quality_thresholds)

        candidates = await self._find_candidates(item, strategy, result)
        for candidate in candidates:
            if result.images_approved >= gap:
                break
            await self._evaluate_candidate(item, candidate, strategy, quality, result, now)

        if strategy.use_ai_generation and result.images_approved < gap:
            await self._generate_missing(item, gap - result.images_approved, strategy, quality, result, now)

    async def _find_candidates(
        self,
        item: CollectionItem,
        strategy: CollectionStrategy,
        result: ItemCollectionResult,
    ) -> List[ImageCandidate]:
        searches: List[AggregatedResult] = [
            await self.aggregator.enhanced_search_all_sources(
                item.name,
                item.category_name,
                max_results_per_source=strategy.max_results_per_source,
                exclude_sources=strategy.exclude_sources,
                priority_sources=strategy.priority_sources,
            )
        ]
        for term in strategy.custom_search_terms:
            searches.append(await self.aggregator.search_all_sources(
                term,
                item.category_name,
                max_results_per_source=strategy.max_results_per_source,
                exclude_sources=strategy.exclude_sources,
                priority_sources=strategy.priority_sources,
            ))

        seen = {(image.source_provider, image.source_id) for image in item.images}
        candidates = []
        for search in searches:
            for source, error in search.errors.items():
                result.note_error(source, str(error), error.to_dict())
            for source, stats in search.source_stats.items():
                result.source_counts(source)["found"] += stats.count
            for candidate in search.images:
                if candidate.key in seen:
                    continue
                seen.add(candidate.key)
                candidates.append(candidate)

        result.images_found = len(candidates)
        return candidates

    async def _evaluate_candidate(
        self,
        item: CollectionItem,
        candidate: ImageCandidate,
        strategy: CollectionStrategy,
        quality: QualityAssessmentService,
        result: ItemCollectionResult,
        now: datetime,
    ) -> None:
        client = self.aggregator.get_client(candidate.source)
        if client is None:
            result.note_error(candidate.source, f"No client for source {candidate.source}")
            return

        if not client.validate_candidate(candidate):
            logger.info(
                "Skipping %s/%s: %dx%d below the minimum size or missing a URL",
                candidate.source,
                candidate.source_id,
                candidate.width,
                candidate.height,
            )
            result.note_error(
                candidate.source,
                f"{candidate.source_id}: candidate failed minimum checks ({candidate.width}x{candidate.height})",
            )
            return

        downloaded = await client.download(candidate)
        if not downloaded.ok:
            logger.warning("Download failed for %s/%s: %s", candidate.source, candidate.source_id, downloaded.error)
            result.note_error(
                candidate.source,
                f"Download failed for {candidate.source_id}: {downloaded.error}",
                downloaded.error.to_dict(),
            )
            return

        processed = await self._process(downloaded.value.data, candidate.source, candidate.source_id, result)
        if processed is None:
            return

        await self._decide(
            item,
            processed,
            source=candidate.source,
            source_id=candidate.source_id,
            source_url=candidate.url,
            description=candidate.description,
            license=candidate.license,
            strategy=strategy,
            quality=quality,
            result=result,
            now=now,
        )

    async def _process(
        self,
        data: bytes,
        source: str,
        label: str,
        result: ItemCollectionResult,
    ) -> Optional[ProcessedImage]:
        """Process one image; a failure is noted and skips only that image."""
        try:
            return await self.processor.process_async(data)
        except ValidationError as e:
            logger.warning("Skipping %s/%s: %s", source, label, e)
            result.note_error(source, f"{label}: {str(e)}")
        except Exception as e:
            logger.exception("Processing failed for %s/%s", source, label)
            result.note_error(source, f"Processing failed for {label}: {str(e)}")
        return None

    async def _generate_missing(
        self,
        item: CollectionItem,
        count: int,
        strategy: CollectionStrategy,
        quality: QualityAssessmentService,
        result: ItemCollectionResult,
        now: datetime,
    ) -> None:
        if not self.ai_generator.is_available():
            logger.info("No AI generator available for %s (need %d more)", item.name, count)
            return

        prompt = build_prompt(item)
        logger.info("AI generation for %s (need %d more): %s", item.name, count, prompt)
        try:
            generated = await self.ai_generator.generate(item, count, prompt)
        except Exception as e:
            logger.exception("AI generation failed for %s", item.name)
            result.note_error(AI_SOURCE, f"AI generation failed: {str(e)}")
            return

        for index, image in enumerate(generated, start=1):
            processed = await self._process(image.data, AI_SOURCE, f"generated image {index}", result)
            if processed is None:
                continue
            await self._decide(
                item,
                processed,
                source=image.provider,
                source_id=image.generation_id or f"{item.progress.search_attempts}-{index}",
                source_url="",
                description=image.prompt,
                license=License(type="generated", attribution=image.provider, commercial=True),
                strategy=strategy,
                quality=quality,
                result=result,
                now=now,
            )

    def _is_duplicate(self, item: CollectionItem, perceptual_hash: str) -> bool:
        return any(
            hashes_match(perceptual_hash, existing.perceptual_hash)
            for existing in item.images
            if existing.perceptual_hash
        )

    async def _decide(
        self,
        item: CollectionItem,
        processed: ProcessedImage,
        source: str,
        source_id: str,
        source_url: str,
        description: str,
        license: Optional[License],
        strategy: CollectionStrategy,
        quality: QualityAssessmentService,
        result: ItemCollectionResult,
        now: datetime,
    ) -> None:
        """Score, classify, store and record one processed image."""
        if self._is_duplicate(item, processed.perceptual_hash):
            logger.info("Skipping %s/%s: duplicate of an existing image", source, source_id)
            result.duplicates_skipped += 1
            return

        score = quality.assess_image(
            processed.properties,
            {"item_name": item.name, "category": item.category_name, "source_description": description},
        )
        status = classify_score(score.overall, strategy.auto_approval_threshold, strategy.min_quality_threshold)

        primary = processed.primary_variant
        file_name = build_file_name(item, source, source_id, primary.format if primary else "webp")
        stored = StoredImage(
            source_url=source_url,
            source_provider=source,
            source_id=source_id,
            file_path=build_relative_path(item, file_name),
            file_name=file_name,
            metadata=processed.metadata,
            quality_score=score,
            status=status,
            license=license,
            processed_sizes=processed.variants,
            perceptual_hash=processed.perceptual_hash,
            created_at=now,
        )

        if status == ImageStatus.APPROVED:
            stored.approved_at = now
            stored.approved_by = AUTO_APPROVER
            stored.is_primary = not any(
                image.is_primary and image.status == ImageStatus.APPROVED for image in item.images
            )
        elif status == ImageStatus.REJECTED:
            stored.rejection_reason = REJECTION_REASON

        if self.image_store is not None and status != ImageStatus.REJECTED:
            await self.image_store.save(stored, processed)

        item.images.append(stored)
        result.images.append(stored)
        result.images_processed += 1
        if status == ImageStatus.APPROVED:
            result.images_approved += 1
            result.source_counts(source)["approved"] += 1

        logger.debug("%s/%s scored %.1f -> %s", source, source_id, score.overall, status.value)

    async def collect_for_category(
        self,
        items: Iterable[CollectionItem],
        strategy: Optional[CollectionStrategy] = None,
        force_restart: bool = False,
    ) -> Dict[str, Any]:
        """
        Collect for every pending item of a category, one item at a time.

        Returns:
            Summary dict with processed, successful, failed,
            total_images_approved, per_item_results and errors
        """
        items = list(items)
        if force_restart:
            pending = sorted(
                items,
                key=lambda item: calculate_priority(item.progress, image_count=len(item.images)),
                reverse=True,
            )
        else:
            pending = self.get_pending_items(items, strategy)

        summary = {
            "processed": 0,
            "successful": 0,
            "failed": 0,
            "total_images_approved": 0,
            "per_item_results": [],
            "errors": [],
        }

        logger.info("Category collection: %d of %d items pending", len(pending), len(items))

        for item in pending:
            result = await self.collect_for_item(item, strategy, force_restart=force_restart)
            summary["processed"] += 1
            summary["per_item_results"].append(result)
            summary["total_images_approved"] += result.images_approved
            if result.success:
                summary["successful"] += 1
            else:
                summary["failed"] += 1
                summary["errors"].append({"item_id": item.item_id, "error": str(result.error)})

        logger.info(
            "Category collection complete: %d processed, %d successful, %d failed, %d images approved",
            summary["processed"],
            summary["successful"],
            summary["failed"],
            summary["total_images_approved"],
        )
        return summary
