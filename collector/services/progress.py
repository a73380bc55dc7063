"""
Collection progress state machine.

Every function takes a CollectionProgress and returns a new one; nothing
is mutated in place. The storage collaborator persists the returned value
after each transition.

States:
    pending -> collecting -> completed
                          -> failed    (retryable after the retry interval
                                        while attempts remain)
    any -> paused -> pending
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Sequence

from collector.models import (
    CollectionProgress,
    CollectionStatus,
    Difficulty,
    ImageStatus,
    ProgressError,
    SourceProgress,
    StoredImage,
)

MAX_PROGRESS_ERRORS = 10

BASE_PRIORITY = 100
NO_IMAGES_BONUS = 50
ATTEMPT_PENALTY = 10
ATTEMPTS_BEFORE_PENALTY = 3
DIFFICULTY_PRIORITY = {
    Difficulty.EASY: 20,
    Difficulty.HARD: -20,
}

SECONDS_PER_ITEM = 30
DIFFICULTY_DURATION_MULTIPLIER = {
    Difficulty.EASY: 1.0,
    Difficulty.MEDIUM: 1.5,
    Difficulty.HARD: 2.0,
    Difficulty.VERY_HARD: 3.0,
}


def start_attempt(
    progress: CollectionProgress,
    now: datetime,
    search_terms: Sequence[str] = (),
    target_count: Optional[int] = None,
) -> CollectionProgress:
    """Enter collecting, count the attempt and clear any scheduled retry."""
    return replace(
        progress,
        status=CollectionStatus.COLLECTING,
        search_attempts=progress.search_attempts + 1,
        last_attempt=now,
        started_at=progress.started_at or now,
        last_search_terms=tuple(search_terms),
        target_count=target_count if target_count is not None else progress.target_count,
        next_attempt=None,
    )


def record_source_result(
    progress: CollectionProgress,
    source: str,
    found: int,
    approved: int,
    now: datetime,
) -> CollectionProgress:
    current = progress.sources.get(source, SourceProgress())
    sources = dict(progress.sources)
    sources[source] = SourceProgress(
        found=current.found + found,
        approved=current.approved + approved,
        last_searched_at=now,
    )
    return replace(progress, sources=sources)


def record_image_decisions(
    progress: CollectionProgress,
    new_images: Sequence[StoredImage],
    item_images: Optional[Iterable[StoredImage]] = None,
) -> CollectionProgress:
    """
    Count the images decided in this pass and refresh quality statistics.

    Args:
        progress: Current progress
        new_images: Images classified during this pass
        item_images: Every image of the item including new_images, used
            for the average and best approved scores (defaults to new_images)
    """
    approved = sum(1 for image in new_images if image.status == ImageStatus.APPROVED)
    rejected = sum(1 for image in new_images if image.status == ImageStatus.REJECTED)

    scores = [
        image.quality_score.overall
        for image in (new_images if item_images is None else item_images)
        if image.status == ImageStatus.APPROVED
    ]
    average = sum(scores) / len(scores) if scores else progress.average_quality_score
    best = max(scores) if scores else progress.best_quality_score

    return replace(
        progress,
        collected_count=progress.collected_count + len(new_images),
        approved_count=progress.approved_count + approved,
        rejected_count=progress.rejected_count + rejected,
        average_quality_score=average,
        best_quality_score=best,
    )


def record_error(
    progress: CollectionProgress,
    source: str,
    message: str,
    now: datetime,
    details: Optional[Dict[str, Any]] = None,
) -> CollectionProgress:
    """Append an error, keeping only the most recent ten."""
    error = ProgressError(timestamp=now, source=source, message=message, details=details)
    errors = (progress.errors + (error,))[-MAX_PROGRESS_ERRORS:]
    return replace(progress, errors=errors)


def finish_attempt(
    progress: CollectionProgress,
    now: datetime,
    max_search_attempts: int,
    retry_interval_hours: float,
) -> CollectionProgress:
    """
    Resolve the status at the end of a pass.

    Complete when the target is met, failed when attempts are exhausted,
    otherwise still collecting with the next attempt scheduled. The
    difficulty is re-estimated from the updated history.
    """
    if progress.approved_count >= progress.target_count:
        resolved = replace(
            progress,
            status=CollectionStatus.COMPLETED,
            completed_at=now,
            next_attempt=None,
        )
    elif progress.search_attempts >= max_search_attempts:
        resolved = replace(progress, status=CollectionStatus.FAILED, next_attempt=None)
    else:
        resolved = replace(
            progress,
            status=CollectionStatus.COLLECTING,
            next_attempt=now + timedelta(hours=retry_interval_hours),
        )
    return replace(resolved, difficulty=estimate_difficulty(resolved))


def fail_attempt(
    progress: CollectionProgress,
    now: datetime,
    max_search_attempts: int,
    retry_interval_hours: float,
) -> CollectionProgress:
    """Mark a pass aborted by a whole-item error; retryable while attempts remain."""
    next_attempt = None
    if progress.search_attempts < max_search_attempts:
        next_attempt = now + timedelta(hours=retry_interval_hours)
    return replace(
        progress,
        status=CollectionStatus.FAILED,
        next_attempt=next_attempt,
        difficulty=estimate_difficulty(progress),
    )


def pause(progress: CollectionProgress) -> CollectionProgress:
    return replace(progress, status=CollectionStatus.PAUSED, next_attempt=None)


def resume(progress: CollectionProgress) -> CollectionProgress:
    if progress.is_complete:
        return replace(progress, status=CollectionStatus.COMPLETED)
    return replace(progress, status=CollectionStatus.PENDING, next_attempt=None)


def is_retry_due(progress: CollectionProgress, now: datetime) -> bool:
    return progress.next_attempt is None or now >= progress.next_attempt


def needs_collection(progress: CollectionProgress, now: datetime, max_search_attempts: int) -> bool:
    """Whether an item should be picked up by a collection run now."""
    if progress.is_complete or progress.status in (CollectionStatus.COMPLETED, CollectionStatus.PAUSED):
        return False
    if progress.status == CollectionStatus.FAILED:
        return progress.search_attempts < max_search_attempts and is_retry_due(progress, now)
    return is_retry_due(progress, now)


def calculate_priority(progress: CollectionProgress, image_count: Optional[int] = None) -> int:
    """
    Ordering weight for pending items, higher first.

    Items without images come first, repeatedly failing items sink, and
    easy items are preferred over hard ones.
    """
    priority = BASE_PRIORITY

    has_images = image_count > 0 if image_count is not None else progress.approved_count > 0
    if not has_images:
        priority += NO_IMAGES_BONUS

    if progress.search_attempts > ATTEMPTS_BEFORE_PENALTY:
        priority -= progress.search_attempts * ATTEMPT_PENALTY

    priority += DIFFICULTY_PRIORITY.get(progress.difficulty, 0)

    return max(priority, 0)


def estimate_difficulty(progress: CollectionProgress) -> Difficulty:
    """Judge how hard an item is to collect from its attempt history."""
    attempts = progress.search_attempts
    if attempts == 0:
        return progress.difficulty
    if progress.is_complete:
        return Difficulty.EASY if attempts <= 1 else Difficulty.MEDIUM
    if progress.approved_count == 0 and attempts >= 4:
        return Difficulty.VERY_HARD
    if attempts >= 2:
        return Difficulty.HARD
    return Difficulty.MEDIUM


def estimate_duration_seconds(progress: CollectionProgress) -> float:
    multiplier = DIFFICULTY_DURATION_MULTIPLIER.get(progress.difficulty, 1.5)
    return SECONDS_PER_ITEM * multiplier
