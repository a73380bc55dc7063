"""
Collection services.

Contains:
- quality_assessment: four-dimension image quality scoring
- progress: pure collection progress transitions
- collection_orchestrator: per-item and per-category collection runs
- storage: local filesystem image store
- ai_generation: fallback generator interface
"""

from collector.services.collection_orchestrator import CollectionOrchestrator, ItemCollectionResult
from collector.services.quality_assessment import (
    AssessmentContext,
    QualityAssessment,
    QualityAssessmentService,
    QualityThresholds,
)
from collector.services.storage import LocalImageStore

__all__ = [
    "AssessmentContext",
    "CollectionOrchestrator",
    "ItemCollectionResult",
    "LocalImageStore",
    "QualityAssessment",
    "QualityAssessmentService",
    "QualityThresholds",
]
