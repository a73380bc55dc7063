"""
Tests for the Collection Orchestrator.

Runs real aggregation, processing and classification against in-memory
source clients; only the quality scores are scripted.
"""

from datetime import datetime, timedelta, timezone

import pytest

from collector.errors import OrchestrationError
from collector.models import (
    CollectionItem,
    CollectionProgress,
    CollectionStatus,
    CollectionStrategy,
    Difficulty,
    ImageMetadata,
    ImageStatus,
    QualityScore,
    StoredImage,
)
from collector.processing.image_processor import ImageProcessor
from collector.services.ai_generation import (
    AI_SOURCE,
    GeneratedImage,
    ImageGenerator,
    UnavailableImageGenerator,
    build_prompt,
)
from collector.services.collection_orchestrator import (
    AUTO_APPROVER,
    REJECTION_REASON,
    CollectionOrchestrator,
)
from collector.services.storage import LocalImageStore
from collector.sources.aggregator import SourceAggregator

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def uniform_score(value: float) -> QualityScore:
    return QualityScore(value, value, value, value, value)


class ScriptedQualityService:
    """Returns queued overall scores in order, then the default."""

    def __init__(self, scores=(), default=9.0):
        self.scores = list(scores)
        self.default = default
        self.contexts = []
        self.overrides = []

    def with_overrides(self, overrides):
        self.overrides.append(overrides)
        return self

    def assess_image(self, image, context=None):
        self.contexts.append(context)
        value = self.scores.pop(0) if self.scores else self.default
        return uniform_score(value)


class ScriptedGenerator(ImageGenerator):
    def __init__(self, images=None, error=None):
        self.images = images or []
        self.error = error
        self.requests = []
        self.prompts = []

    async def generate(self, item, count, prompt):
        self.requests.append((item.item_id, count))
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.images


class CrashingProcessor(ImageProcessor):
    """Real processor that crashes on one specific payload."""

    def __init__(self, bad_data):
        super().__init__()
        self.bad_data = bad_data

    async def process_async(self, data):
        if data == self.bad_data:
            raise RuntimeError("encoder crashed")
        return await super().process_async(data)


class RecordingUnavailableGenerator(UnavailableImageGenerator):
    def __init__(self):
        self.calls = 0

    async def generate(self, item, count, prompt):
        self.calls += 1
        return await super().generate(item, count, prompt)


class FailingStore:
    """Image store whose writes fail for one item."""

    def __init__(self, failing_item_id):
        self.failing_item_id = failing_item_id
        self.saved = []

    async def save(self, stored, processed):
        if f"/{self.failing_item_id}/" in stored.file_path:
            raise OSError("disk full")
        self.saved.append(stored.file_path)
        return []


def make_item(item_id="dog", name="Dog", category="animals", **progress_fields) -> CollectionItem:
    return CollectionItem(
        item_id=item_id,
        name=name,
        category_id=category,
        category_name=category.capitalize(),
        progress=CollectionProgress(**progress_fields),
    )


@pytest.fixture
def noise_images(image_bytes_factory):
    """Distinct 300x300 noise images keyed by source id."""
    def build(*ids):
        return {
            str(source_id): image_bytes_factory(300, 300, fmt="PNG", pattern="noise", seed=index)
            for index, source_id in enumerate(ids, start=1)
        }
    return build


@pytest.fixture
def build_orchestrator():
    def build(clients, quality=None, **kwargs):
        return CollectionOrchestrator(
            aggregator=SourceAggregator(clients),
            processor=ImageProcessor(),
            quality_service=quality or ScriptedQualityService(),
            clock=lambda: NOW,
            **kwargs,
        )
    return build


def strategy(**overrides) -> CollectionStrategy:
    values = {"use_ai_generation": False, "target_images_per_item": 3}
    values.update(overrides)
    return CollectionStrategy(**values)


class TestCollectForItem:
    """Tests for CollectionOrchestrator.collect_for_item."""

    @pytest.mark.asyncio
    async def test_completes_when_gap_filled(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        """Two approved of three, one more approval completes the item and stops downloading."""
        client = fake_source_client(
            "unsplash",
            [candidate_factory("unsplash", i) for i in (1, 2, 3)],
            downloads=noise_images(1, 2, 3),
        )
        orchestrator = build_orchestrator([client], ScriptedQualityService([9.0]))
        item = make_item(status=CollectionStatus.COLLECTING, collected_count=2, approved_count=2, search_attempts=1)

        result = await orchestrator.collect_for_item(item, strategy())

        assert result.success
        assert client.download_calls == ["1"]
        assert item.progress.status == CollectionStatus.COMPLETED
        assert item.progress.approved_count == 3
        assert item.progress.collected_count == 3
        assert item.progress.completed_at == NOW
        assert item.progress.search_attempts == 2
        assert result.images_approved == 1
        assert result.images[0].status == ImageStatus.APPROVED
        assert result.images[0].approved_by == AUTO_APPROVER
        assert result.images[0].approved_at == NOW

    @pytest.mark.asyncio
    async def test_classification_boundaries(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        client = fake_source_client(
            "unsplash",
            [candidate_factory("unsplash", i) for i in (1, 2, 3)],
            downloads=noise_images(1, 2, 3),
        )
        orchestrator = build_orchestrator([client], ScriptedQualityService([8.5, 8.49, 6.99]))
        item = make_item()

        result = await orchestrator.collect_for_item(
            item, strategy(auto_approval_threshold=8.5, min_quality_threshold=7.0)
        )

        statuses = [image.status for image in result.images]
        assert statuses == [ImageStatus.APPROVED, ImageStatus.MANUAL_REVIEW, ImageStatus.REJECTED]
        assert result.images[0].is_primary is True
        assert result.images[1].is_primary is False
        assert result.images[2].rejection_reason == REJECTION_REASON
        assert result.images[1].rejection_reason is None

        progress = item.progress
        assert progress.approved_count == 1
        assert progress.rejected_count == 1
        assert progress.collected_count == 3
        assert progress.status == CollectionStatus.COLLECTING
        assert progress.next_attempt == NOW + timedelta(hours=24)
        assert progress.sources["unsplash"].found == 3
        assert progress.sources["unsplash"].approved == 1

    @pytest.mark.asyncio
    async def test_primary_kept_when_item_already_has_one(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        client = fake_source_client(
            "unsplash",
            [candidate_factory("unsplash", i) for i in (1, 2)],
            downloads=noise_images(1, 2),
        )
        orchestrator = build_orchestrator([client], ScriptedQualityService([9.5, 9.0]))
        item = make_item()

        result = await orchestrator.collect_for_item(item, strategy())

        assert [image.is_primary for image in result.images] == [True, False]

    @pytest.mark.asyncio
    async def test_retry_exhaustion(self, fake_source_client, build_orchestrator):
        client = fake_source_client("unsplash", [])
        orchestrator = build_orchestrator([client])
        item = make_item()
        limited = strategy(max_search_attempts=3, retry_interval_hours=1)

        statuses = []
        for _ in range(3):
            await orchestrator.collect_for_item(item, limited)
            statuses.append(item.progress.status)

        assert statuses == [CollectionStatus.COLLECTING, CollectionStatus.COLLECTING, CollectionStatus.FAILED]
        assert item.progress.search_attempts == 3
        assert item.progress.next_attempt is None
        assert orchestrator.get_pending_items([item], limited) == []

    @pytest.mark.asyncio
    async def test_completed_item_is_skipped(self, fake_source_client, build_orchestrator):
        client = fake_source_client("unsplash", [])
        orchestrator = build_orchestrator([client])
        item = make_item(status=CollectionStatus.COMPLETED, collected_count=3, approved_count=3, search_attempts=2)
        before = item.progress

        result = await orchestrator.collect_for_item(item, strategy())

        assert result.skipped is True
        assert result.skip_reason == "already complete"
        assert item.progress is before
        assert client.search_calls == []

    @pytest.mark.asyncio
    async def test_forced_run_on_complete_item_does_not_search(self, fake_source_client, build_orchestrator):
        client = fake_source_client("unsplash", [])
        orchestrator = build_orchestrator([client])
        item = make_item(status=CollectionStatus.COMPLETED, collected_count=3, approved_count=3, search_attempts=2)

        result = await orchestrator.collect_for_item(item, strategy(), force_restart=True)

        assert result.skipped is False
        assert item.progress.search_attempts == 3
        assert item.progress.status == CollectionStatus.COMPLETED
        assert client.search_calls == []

    @pytest.mark.asyncio
    async def test_paused_and_disabled_are_skipped(self, fake_source_client, build_orchestrator):
        orchestrator = build_orchestrator([fake_source_client("unsplash", [])])

        paused = await orchestrator.collect_for_item(make_item(status=CollectionStatus.PAUSED), strategy())
        disabled = await orchestrator.collect_for_item(make_item(), strategy(enabled=False))

        assert paused.skip_reason == "collection paused"
        assert disabled.skip_reason == "collection disabled for category"

    @pytest.mark.asyncio
    async def test_partial_source_failure(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        """Unsplash raises, Pixabay errors, Pexels still delivers an approval."""
        orchestrator = build_orchestrator([
            fake_source_client("unsplash", behaviour="raise"),
            fake_source_client("pixabay", behaviour="error"),
            fake_source_client("pexels", [candidate_factory("pexels", 7)], downloads=noise_images(7)),
        ])
        item = make_item()

        result = await orchestrator.collect_for_item(item, strategy())

        assert result.success
        assert result.images_approved == 1
        assert result.images[0].source_provider == "pexels"
        assert sorted(error["source"] for error in result.errors) == ["pixabay", "unsplash"]
        assert {error.source for error in item.progress.errors} == {"pixabay", "unsplash"}
        assert item.progress.sources["pexels"].approved == 1

    @pytest.mark.asyncio
    async def test_download_and_validation_failures_skip_candidate(
        self, fake_source_client, candidate_factory, image_bytes_factory, build_orchestrator
    ):
        downloads = {
            "2": image_bytes_factory(50, 50, fmt="PNG", pattern="noise", seed=2),
            "3": image_bytes_factory(300, 300, fmt="PNG", pattern="noise", seed=3),
        }
        client = fake_source_client(
            "unsplash",
            [candidate_factory("unsplash", i) for i in (1, 2, 3)],
            downloads=downloads,
        )
        orchestrator = build_orchestrator([client])
        item = make_item()

        result = await orchestrator.collect_for_item(item, strategy())

        assert client.download_calls == ["1", "2", "3"]
        assert [image.source_id for image in result.images] == ["3"]
        messages = [error["error"] for error in result.errors]
        assert messages[0].startswith("Download failed for 1")
        assert "below minimum" in messages[1]
        assert len(item.progress.errors) == 2

    @pytest.mark.asyncio
    async def test_undersized_candidate_not_downloaded(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        client = fake_source_client(
            "pexels",
            [
                candidate_factory("pexels", 1, width=200, height=900),
                candidate_factory("pexels", 2),
            ],
            downloads=noise_images(1, 2),
        )
        orchestrator = build_orchestrator([client])

        result = await orchestrator.collect_for_item(make_item(), strategy())

        assert client.download_calls == ["2"]
        assert [image.source_id for image in result.images] == ["2"]
        assert result.errors[0]["source"] == "pexels"
        assert result.errors[0]["error"] == "1: candidate failed minimum checks (200x900)"

    @pytest.mark.asyncio
    async def test_processing_crash_skips_only_that_candidate(
        self, fake_source_client, candidate_factory, noise_images
    ):
        downloads = noise_images(1, 2, 3)
        client = fake_source_client(
            "unsplash",
            [candidate_factory("unsplash", i) for i in (1, 2, 3)],
            downloads=downloads,
        )
        orchestrator = CollectionOrchestrator(
            aggregator=SourceAggregator([client]),
            processor=CrashingProcessor(downloads["1"]),
            quality_service=ScriptedQualityService(),
            clock=lambda: NOW,
        )
        item = make_item()

        result = await orchestrator.collect_for_item(item, strategy())

        assert result.success
        assert [image.source_id for image in result.images] == ["2", "3"]
        assert result.errors == [{
            "source": "unsplash",
            "error": "Processing failed for 1: encoder crashed",
            "details": None,
        }]
        assert item.progress.status == CollectionStatus.COLLECTING
        assert item.progress.approved_count == 2

    @pytest.mark.asyncio
    async def test_perceptual_duplicate_skipped(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        downloads = noise_images(1, 2)
        existing_hash = ImageProcessor().process(downloads["1"]).perceptual_hash
        client = fake_source_client(
            "pixabay",
            [candidate_factory("pixabay", i) for i in (1, 2)],
            downloads=downloads,
        )
        quality = ScriptedQualityService()
        orchestrator = build_orchestrator([client], quality)
        item = make_item()

        first = await orchestrator.collect_for_item(item, strategy(target_images_per_item=1))
        assert [image.source_id for image in first.images] == ["1"]
        assert item.images[0].perceptual_hash == existing_hash

        item.progress = CollectionProgress(target_count=2, approved_count=1, collected_count=1)
        client.images = [candidate_factory("pixabay", 11), candidate_factory("pixabay", 2)]
        client.downloads["11"] = downloads["1"]

        second = await orchestrator.collect_for_item(item, strategy(target_images_per_item=2))

        assert second.duplicates_skipped == 1
        assert [image.source_id for image in second.images] == ["2"]
        assert len(quality.contexts) == 2

    @pytest.mark.asyncio
    async def test_known_candidates_not_reprocessed(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        client = fake_source_client(
            "unsplash",
            [candidate_factory("unsplash", i) for i in (1, 2)],
            downloads=noise_images(1, 2),
        )
        orchestrator = build_orchestrator([client], ScriptedQualityService([5.0]))
        item = make_item()

        first = await orchestrator.collect_for_item(item, strategy(target_images_per_item=1))
        assert [image.status for image in first.images] == [ImageStatus.REJECTED, ImageStatus.APPROVED]
        client.download_calls.clear()

        second = await orchestrator.collect_for_item(item, strategy(target_images_per_item=2))

        assert client.download_calls == []
        assert second.images_found == 0
        assert item.progress.approved_count == 1

    @pytest.mark.asyncio
    async def test_storage_failure_fails_item(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        client = fake_source_client("unsplash", [candidate_factory("unsplash", 1)], downloads=noise_images(1))
        orchestrator = build_orchestrator([client], image_store=FailingStore("dog"))
        item = make_item()

        result = await orchestrator.collect_for_item(item, strategy())

        assert result.success is False
        assert isinstance(result.error, OrchestrationError)
        assert item.progress.status == CollectionStatus.FAILED
        assert item.progress.next_attempt == NOW + timedelta(hours=24)
        assert item.progress.errors[-1].message == "disk full"
        assert item.progress.errors[-1].source == "collection-service"

    @pytest.mark.asyncio
    async def test_stores_files_on_disk(
        self, tmp_path, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        client = fake_source_client("unsplash", [candidate_factory("unsplash", 1)], downloads=noise_images(1))
        orchestrator = build_orchestrator([client], image_store=LocalImageStore(tmp_path))
        item = make_item()

        result = await orchestrator.collect_for_item(item, strategy())

        stored = result.images[0]
        assert stored.file_path == "categories/animals/D/dog/dog-unsplash-1.webp"
        assert stored.file_name == "dog-unsplash-1.webp"
        assert (tmp_path / stored.file_path).exists()
        assert (tmp_path / "categories/animals/D/dog/dog-unsplash-1_thumbnail.webp").exists()

    @pytest.mark.asyncio
    async def test_excluded_sources_not_searched(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        unsplash = fake_source_client("unsplash", [candidate_factory("unsplash", 1)], downloads=noise_images(1))
        pexels = fake_source_client("pexels", [candidate_factory("pexels", 2)], downloads=noise_images(2))
        orchestrator = build_orchestrator([unsplash, pexels])

        result = await orchestrator.collect_for_item(make_item(), strategy(exclude_sources=["unsplash"]))

        assert unsplash.search_calls == []
        assert [image.source_provider for image in result.images] == ["pexels"]

    @pytest.mark.asyncio
    async def test_custom_terms_searched_and_overrides_passed(
        self, fake_source_client, build_orchestrator
    ):
        client = fake_source_client("unsplash", [])
        quality = ScriptedQualityService()
        orchestrator = build_orchestrator([client], quality)
        overrides = {"technical": {"min_width": 600}}

        result = await orchestrator.collect_for_item(
            make_item(), strategy(custom_search_terms=["puppy"], quality_thresholds=overrides)
        )

        assert ("puppy", {}) in client.search_calls
        assert "puppy" in result.search_terms
        assert result.progress.last_search_terms == ("Dog", "Dog animals", "puppy", "dogs")
        assert quality.overrides == [overrides]


class TestAIFallback:
    @pytest.mark.asyncio
    async def test_generated_images_fill_gap(self, fake_source_client, image_bytes_factory, build_orchestrator):
        generator = ScriptedGenerator([
            GeneratedImage(
                data=image_bytes_factory(300, 300, fmt="PNG", pattern="noise", seed=40),
                prompt="A clear photograph of a dog",
                generation_id="g1",
            )
        ])
        orchestrator = build_orchestrator([fake_source_client("unsplash", [])], ai_generator=generator)

        result = await orchestrator.collect_for_item(make_item(), strategy(use_ai_generation=True))

        assert generator.requests == [("dog", 3)]
        assert generator.prompts == [build_prompt(make_item())]
        assert len(result.images) == 1
        image = result.images[0]
        assert image.source_provider == AI_SOURCE
        assert image.file_name == "dog-ai-generated-g1.webp"
        assert image.license.type == "generated"

    @pytest.mark.asyncio
    async def test_unavailable_generator_not_called(self, fake_source_client, build_orchestrator):
        generator = RecordingUnavailableGenerator()
        orchestrator = build_orchestrator([fake_source_client("unsplash", [])], ai_generator=generator)

        result = await orchestrator.collect_for_item(make_item(), strategy(use_ai_generation=True))

        assert result.success
        assert result.images == []
        assert result.errors == []
        assert generator.calls == 0

    @pytest.mark.asyncio
    async def test_generator_failure_recorded(self, fake_source_client, build_orchestrator):
        generator = ScriptedGenerator(error=RuntimeError("provider down"))
        orchestrator = build_orchestrator([fake_source_client("unsplash", [])], ai_generator=generator)

        result = await orchestrator.collect_for_item(make_item(), strategy(use_ai_generation=True))

        assert result.success
        assert result.errors[0]["source"] == AI_SOURCE
        assert "provider down" in result.errors[0]["error"]


class TestCategoryAndPending:
    @pytest.mark.asyncio
    async def test_failing_item_does_not_stop_category(
        self, fake_source_client, candidate_factory, noise_images, build_orchestrator
    ):
        client = fake_source_client("unsplash", [candidate_factory("unsplash", 1)], downloads=noise_images(1))
        store = FailingStore("apple")
        orchestrator = build_orchestrator([client], image_store=store)
        items = [
            make_item("apple", "Apple", "fruits"),
            make_item("pear", "Pear", "fruits"),
        ]

        summary = await orchestrator.collect_for_category(items, strategy())

        assert summary["processed"] == 2
        assert summary["successful"] == 1
        assert summary["failed"] == 1
        assert summary["total_images_approved"] == 1
        assert summary["errors"] == [{"item_id": "apple", "error": "disk full"}]
        assert [r.item_id for r in summary["per_item_results"]] == ["apple", "pear"]
        assert store.saved == ["categories/fruits/P/pear/pear-unsplash-1.webp"]

    def test_pending_items_ordered_by_priority(self, build_orchestrator):
        orchestrator = build_orchestrator([])
        fresh = make_item("ant", "Ant")
        with_image = make_item("bee", "Bee", approved_count=1, collected_count=1)
        with_image.images.append(StoredImage(
            source_url="https://unsplash.example.com/9.jpg",
            source_provider="unsplash",
            source_id="9",
            file_path="categories/animals/B/bee/bee-unsplash-9.webp",
            file_name="bee-unsplash-9.webp",
            metadata=ImageMetadata(width=800, height=800, format="jpeg", size_bytes=1000, color_space="srgb"),
            quality_score=uniform_score(9.0),
            status=ImageStatus.APPROVED,
        ))
        done = make_item("cat", "Cat", status=CollectionStatus.COMPLETED, approved_count=3, collected_count=3)
        exhausted = make_item("dog", "Dog", status=CollectionStatus.FAILED, search_attempts=5)
        hard = make_item("eel", "Eel", difficulty=Difficulty.HARD)
        not_due = make_item("fox", "Fox", status=CollectionStatus.COLLECTING, next_attempt=NOW + timedelta(hours=2))

        pending = orchestrator.get_pending_items([with_image, done, exhausted, hard, fresh, not_due], strategy())

        assert [item.item_id for item in pending] == ["ant", "eel", "bee"]

    def test_strategy_provider_used_per_category(self, build_orchestrator):
        provided = strategy(target_images_per_item=5)
        orchestrator = build_orchestrator([], strategy_provider={"animals": provided}.get)

        assert orchestrator.resolve_strategy(make_item()) is provided
        assert orchestrator.resolve_strategy(make_item(category="fruits")).target_images_per_item == 3

    def test_generate_search_terms(self, build_orchestrator):
        orchestrator = build_orchestrator([])

        terms = orchestrator.generate_search_terms(make_item(), strategy(custom_search_terms=["puppy"]))

        assert terms == ["Dog", "Dog animals", "puppy", "dogs"]


class TestImageGenerators:
    def test_prompt_describes_item_and_category(self):
        prompt = build_prompt(make_item(name="Golden Retriever", category="animals"))

        assert prompt == (
            "A clear, well-lit photograph of a golden retriever (animals), centered on a plain background"
        )

    def test_default_generator_is_unavailable(self):
        assert UnavailableImageGenerator().is_available() is False
        assert ScriptedGenerator().is_available() is True
