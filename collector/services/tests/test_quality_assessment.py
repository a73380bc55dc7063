"""
Tests for the Quality Assessment Engine.
"""

import pytest

from collector.models import QUALITY_WEIGHTS, CollectionStrategy, ImageStatus, QualityScore
from collector.processing.analysis import ImageProperties
from collector.services.quality_assessment import (
    FAILURE_NOTE,
    AssessmentContext,
    QualityAssessmentService,
    QualityThresholds,
    classify_score,
    round_score,
)


def make_properties(**overrides) -> ImageProperties:
    values = {
        "width": 1200,
        "height": 1200,
        "file_size": 500_000,
        "format": "webp",
        "average_brightness": 128.0,
        "contrast": 65.0,
        "colorfulness": 55.0,
        "dominant_colors": ["#C03030", "#F0E0D0", "#305020"],
        "background_complexity": 0.3,
        "subject_clarity": 0.85,
    }
    values.update(overrides)
    return ImageProperties(**values)


def uniform_score(value: float) -> QualityScore:
    return QualityScore(value, value, value, value, value)


@pytest.fixture
def service():
    return QualityAssessmentService()


class TestAssessImage:
    """Tests for QualityAssessmentService.assess_image."""

    def test_good_image_scores(self, service):
        score = service.assess_image(
            make_properties(),
            {"item_name": "Apple", "category": "fruits", "source_description": "red apple on a table"},
        )

        assert score.technical == 10.0
        assert score.relevance == 10.0
        assert score.aesthetic == 8.0
        assert score.usability == 8.8
        assert score.overall == 9.3
        assert score.error is None
        assert score.notes == (
            "Excellent technical quality",
            "Highly relevant to the requested item",
            "Clear, easy-to-understand image suitable for learning",
            "Recommended for automatic approval",
        )

    def test_accepts_mapping(self, service):
        score = service.assess_image({"width": 1200, "height": 1200, "file_size": 500_000, "format": "WEBP"})
        assert score.error is None
        assert score.technical == 10.0

    def test_accepts_encoded_bytes(self, service, sample_jpeg):
        score = service.assess_image(sample_jpeg, {"item_name": "Dog", "category": "animals"})

        assert score.error is None
        assert 0 <= score.overall <= 10

    def test_undecodable_bytes_degrade_to_fixed_score(self, service):
        score = service.assess_image(b"definitely not an image", {"item_name": "Dog"})

        assert score.overall == 3.0
        assert score.breakdown == {"technical": 3.0, "relevance": 3.0, "aesthetic": 3.0, "usability": 3.0}
        assert score.notes == (FAILURE_NOTE,)
        assert score.error

    def test_incomplete_mapping_degrades(self, service):
        score = service.assess_image({"width": 800})
        assert score.overall == 3.0
        assert score.error

    def test_unsupported_input_degrades(self, service):
        assert service.assess_image(42).overall == 3.0

    def test_unscorable_values_degrade(self, service):
        score = service.assess_image({"width": "wide", "height": 500}, {"item_name": "Dog"})

        assert score.overall == 3.0
        assert score.notes == (FAILURE_NOTE,)
        assert score.error

    def test_irrelevant_image_note(self, service):
        score = service.assess_image(
            make_properties(subject_clarity=0.3, background_complexity=0.9, colorfulness=10),
            {"item_name": "dog", "category": "animals", "source_description": "a cat on a sofa"},
        )

        assert score.relevance < 5
        assert 'Image may not be relevant to "dog" in category "animals"' in score.notes

    @pytest.mark.parametrize("properties", [
        make_properties(),
        make_properties(width=50, height=50, file_size=100, format="png", color_depth=8),
        make_properties(width=4000, height=500, file_size=9_000_000, has_text=True),
        make_properties(average_brightness=5, contrast=0, colorfulness=0, dominant_colors=[]),
        make_properties(average_brightness=250, colorfulness=120, background_complexity=1.0, subject_clarity=0.0),
    ])
    @pytest.mark.parametrize("category", ["animals", "fruits", "colors", "transportation", "misc"])
    def test_scores_bounded_and_weighted(self, service, properties, category):
        """Sub-scores stay in [0, 10] and overall is their weighted sum within rounding."""
        score = service.assess_image(properties, {"item_name": "thing", "category": category})

        for value in score.breakdown.values():
            assert 0 <= value <= 10
        weighted = sum(score.breakdown[name] * weight for name, weight in QUALITY_WEIGHTS.items())
        assert 0 <= score.overall <= 10
        assert abs(score.overall - weighted) <= 0.1 + 1e-9


class TestTechnical:
    """Tests for the technical dimension."""

    def test_low_resolution_monotonic(self, service):
        """Below the minimum, smaller images always score lower."""
        scores = [
            service.assess_technical(make_properties(width=size, height=size, format="jpeg"))
            for size in (300, 299, 250, 200, 100, 50)
        ]

        assert scores == sorted(scores, reverse=True)
        assert len(set(scores)) == len(scores)
        assert scores[0] - scores[1] > 3

    def test_file_size_penalties(self, service):
        base = service.assess_technical(make_properties(width=800, height=800, format="jpeg"))
        tiny = service.assess_technical(make_properties(width=800, height=800, format="jpeg", file_size=1000))
        huge = service.assess_technical(
            make_properties(width=800, height=800, format="jpeg", file_size=6 * 1024 * 1024)
        )

        assert base - tiny == pytest.approx(2.5)
        assert base - huge == pytest.approx(2.0)

    def test_aspect_ratio_penalty(self, service):
        score = service.assess_technical(make_properties(width=2000, height=1000, format="jpeg"))
        # +0.5 high resolution, -2.0 capped aspect penalty
        assert score == pytest.approx(8.5)

    def test_format_and_depth(self, service):
        png = service.assess_technical(make_properties(width=800, height=800, format="png"))
        transparent_png = service.assess_technical(
            make_properties(width=800, height=800, format="png", has_transparency=True)
        )
        palette = service.assess_technical(make_properties(width=800, height=800, format="jpeg", color_depth=8))

        assert png == pytest.approx(9.7)
        assert transparent_png == pytest.approx(10.0)
        assert palette == pytest.approx(9.0)


class TestRelevance:
    """Tests for the relevance dimension."""

    @pytest.mark.parametrize("item,description,expected", [
        ("apple", "apples in a bowl", 1.0),
        ("red apple", "green apples", 0.5),
        ("dog", "a cat on a sofa", 0.0),
        ("colour", "color chart", 1.0),
        ("dog", "", 0.5),
        ("", "a dog", 0.5),
    ])
    def test_title_relevance(self, service, item, description, expected):
        assert service.calculate_title_relevance(item, description) == pytest.approx(expected)

    def test_animals_require_clear_subject(self, service):
        score = service.assess_relevance(
            make_properties(subject_clarity=0.5, background_complexity=0.3),
            _context("Dog", "animals"),
        )
        assert score == pytest.approx(6.4)

    def test_colors_require_saturation(self, service):
        score = service.assess_relevance(make_properties(colorfulness=20), _context("Red", "colors"))
        assert score == pytest.approx(6.6)

    def test_unknown_category_is_neutral(self, service):
        score = service.assess_relevance(make_properties(), _context("Widget", "gadgets"))
        # title neutral, context neutral, visual base 0.6
        assert score == pytest.approx(7.3)


class TestAestheticAndUsability:
    def test_dark_flat_image(self, service):
        score = service.assess_aesthetic(
            make_properties(average_brightness=20, contrast=10, colorfulness=5, dominant_colors=["#101010"])
        )
        assert score == pytest.approx(2.9)

    def test_oversaturation_penalty(self, service):
        score = service.assess_aesthetic(make_properties(contrast=45, colorfulness=90, dominant_colors=[]))
        assert score == pytest.approx(6.3)

    def test_usability_penalties(self, service):
        score = service.assess_usability(make_properties(
            width=300,
            height=100,
            background_complexity=0.9,
            subject_clarity=0.4,
            has_text=True,
        ))
        assert score == pytest.approx(3.6)


class TestBatchAndStatistics:
    def test_assess_images_isolates_failures(self, service):
        assessments = service.assess_images([
            (make_properties(), {"item_name": "Apple", "category": "fruits"}),
            (b"broken", {"item_name": "Pear", "category": "fruits"}),
            {"image": {"width": 600, "height": 600}, "context": {"item_name": "Plum"}},
        ])

        assert len(assessments) == 3
        assert assessments[0].score.error is None
        assert assessments[1].overall == 3.0
        assert assessments[1].score.error
        assert assessments[1].context.item_name == "Pear"
        assert assessments[2].properties.width == 600

    def test_scoring_error_does_not_abort_batch(self, service):
        context = {"item_name": "Apple", "category": "fruits"}

        assessments = service.assess_images([
            ({"width": None, "height": 500}, context),
            (make_properties(), context),
        ])

        assert len(assessments) == 2
        assert assessments[0].overall == 3.0
        assert assessments[0].context.item_name == "Apple"
        assert assessments[0].properties is None
        assert assessments[1].score.error is None

    def test_malformed_entries_become_failures(self, service):
        assessments = service.assess_images([
            (make_properties(), None, "extra"),
            42,
            (make_properties(), {"item_name": "Apple"}),
        ])

        assert [a.overall == 3.0 for a in assessments] == [True, True, False]
        assert "Malformed batch entry" in assessments[0].score.error
        assert assessments[1].context.item_name == ""

    def test_statistics(self, service):
        stats = service.get_quality_statistics([uniform_score(v) for v in (9.5, 8.0, 6.0, 4.0)])

        assert stats["count"] == 4
        assert stats["average_overall"] == 6.9
        assert stats["average_breakdown"]["technical"] == 6.9
        assert stats["distribution"] == {"excellent": 1, "good": 1, "acceptable": 1, "poor": 1}
        assert stats["quality_percentage"] == 50

    def test_statistics_bucket_edges(self, service):
        stats = service.get_quality_statistics([uniform_score(v) for v in (9.0, 7.0, 5.0, 4.9)])
        assert stats["distribution"] == {"excellent": 1, "good": 1, "acceptable": 1, "poor": 1}

    def test_empty_statistics(self, service):
        stats = service.get_quality_statistics([])

        assert stats["count"] == 0
        assert stats["average_overall"] == 0
        assert stats["average_breakdown"] == {}
        assert stats["distribution"] == {}


class TestRecommendation:
    """Classification against strategy thresholds uses inclusive lower bounds."""

    @pytest.mark.parametrize("overall,expected", [
        (8.5, ImageStatus.APPROVED),
        (8.49, ImageStatus.MANUAL_REVIEW),
        (7.0, ImageStatus.MANUAL_REVIEW),
        (6.99, ImageStatus.REJECTED),
    ])
    def test_boundaries(self, service, overall, expected):
        strategy = CollectionStrategy(auto_approval_threshold=8.5, min_quality_threshold=7.0)
        assert service.recommendation(uniform_score(overall), strategy) == expected

    def test_classify_score(self):
        assert classify_score(9.0, 9.0, 6.0) == ImageStatus.APPROVED
        assert classify_score(5.9, 9.0, 6.0) == ImageStatus.REJECTED


class TestThresholds:
    def test_update_thresholds(self, service):
        before = service.assess_technical(make_properties(format="jpeg"))
        service.update_thresholds({"technical": {"min_width": 1500, "min_height": 1500}})

        assert service.thresholds.technical.min_width == 1500
        assert service.assess_technical(make_properties(format="jpeg")) < before - 3

    def test_unknown_section_rejected(self, service):
        with pytest.raises(ValueError):
            service.update_thresholds({"bogus": {"x": 1}})

    def test_unknown_key_rejected(self, service):
        with pytest.raises(ValueError):
            service.update_thresholds({"aesthetic": {"sparkle": 1}})

    def test_with_overrides_leaves_original(self, service):
        tuned = service.with_overrides({"usability": {"min_display_size": 2000}})

        assert tuned is not service
        assert service.thresholds.usability.min_display_size == 400
        assert service.with_overrides({}) is service

    def test_defaults(self):
        thresholds = QualityThresholds()
        assert thresholds.aesthetic.brightness_range == (50, 200)
        assert thresholds.to_dict()["technical"]["max_file_size"] == 5 * 1024 * 1024

    def test_round_half_up(self):
        assert round_score(8.25) == 8.3
        assert round_score(6.875) == 6.9


def _context(item: str, category: str):
    return AssessmentContext(item_name=item, category=category)
