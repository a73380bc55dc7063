"""
Error reporting for the image collector.

Sentry error tracking with collection context and sensitive-data filtering.
"""

from .sentry_integration import (
    add_collection_breadcrumb,
    capture_collection_error,
    capture_source_error,
    init_sentry,
)

__all__ = [
    "add_collection_breadcrumb",
    "capture_collection_error",
    "capture_source_error",
    "init_sentry",
]
