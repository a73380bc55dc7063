"""
Error taxonomy for the image collection pipeline.

Error classes:
- SourceError: a provider call failed (network, rate limited, API error,
  invalid response). Network, 5xx and 429 failures are retryable.
- ValidationError: an image is too small, too large or cannot be decoded.
- AssessmentError: image properties could not be extracted for scoring.
- OrchestrationError: a whole item failed during a collection pass.

Source clients and the aggregator never raise SourceError past their
boundary; they return it inside a Result so callers always get a
best-effort answer.
"""

from enum import Enum
from typing import Any, Dict, Optional


class CollectorError(Exception):
    """Base error for the image collector."""
    pass


class SourceErrorKind(str, Enum):
    """Classification of a failed provider call."""
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    API_ERROR = "api_error"
    INVALID_RESPONSE = "invalid_response"


class SourceError(CollectorError):
    """
    Failure talking to an image provider.

    Attributes:
        kind: SourceErrorKind classification
        source: Provider name (unsplash, pixabay, pexels)
        status: HTTP status code for api_error failures
        retryable: Override for the default retry classification
    """

    def __init__(
        self,
        kind: SourceErrorKind,
        message: str,
        source: Optional[str] = None,
        status: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.kind = SourceErrorKind(kind)
        self.message = message
        self.source = source
        self.status = status
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        if self.kind == SourceErrorKind.NETWORK:
            return True
        if self.kind == SourceErrorKind.RATE_LIMITED:
            return True
        if self.kind == SourceErrorKind.API_ERROR:
            return self.status is not None and (self.status >= 500 or self.status == 429)
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "source": self.source,
            "status": self.status,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"SourceError(kind={self.kind.value!r}, source={self.source!r}, status={self.status!r}, message={self.message!r})"


class ValidationError(CollectorError):
    """Image rejected before processing (too small, too large, corrupt)."""
    pass


class AssessmentError(CollectorError):
    """Image properties could not be extracted for quality scoring."""
    pass


class OrchestrationError(CollectorError):
    """
    Whole-item failure during a collection pass.

    Recorded on the item's progress; never aborts sibling items.
    """

    def __init__(self, item_id: str, message: str, source: str = "collection-service"):
        super().__init__(message)
        self.item_id = item_id
        self.message = message
        self.source = source
