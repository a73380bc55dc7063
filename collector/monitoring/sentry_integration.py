"""
Sentry error tracking for image collection.

- Initializes the SDK from settings when SENTRY_DSN is set
- Adds breadcrumbs for collection context (item, source, attempt)
- Filters sensitive data (API keys, authorization headers)
- Captures source and item failures with tags and context

Usage:
    from collector.monitoring import capture_collection_error, add_collection_breadcrumb

    try:
        result = await orchestrator.collect_for_item(item, strategy)
    except Exception as e:
        capture_collection_error(error=e, item_id=item.item_id, category=item.category_id)
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk

logger = logging.getLogger(__name__)

# Sensitive fields to filter from Sentry events
SENSITIVE_FIELDS = {
    "access_key",
    "api_key",
    "apikey",
    "api-key",
    "authorization",
    "client_id",
    "password",
    "secret",
    "token",
}


def _filter_sensitive_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Filter sensitive data from a dictionary.

    Replaces values for keys that match sensitive field names, recursing
    into nested dictionaries.
    """
    if not isinstance(data, dict):
        return data

    filtered = {}
    for key, value in data.items():
        key_lower = str(key).lower()

        if key_lower == "key" or any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
            filtered[key] = "[Filtered]"
        elif isinstance(value, dict):
            filtered[key] = _filter_sensitive_data(value)
        else:
            filtered[key] = value

    return filtered


def _before_send(event, hint):
    """Strip sensitive request data and extras before an event leaves the process."""
    request = event.get("request")
    if isinstance(request, dict):
        for section in ("headers", "query_string", "data"):
            if isinstance(request.get(section), dict):
                request[section] = _filter_sensitive_data(request[section])
    if isinstance(event.get("extra"), dict):
        event["extra"] = _filter_sensitive_data(event["extra"])
    return event


def init_sentry(settings_module=None) -> bool:
    """
    Initialize Sentry from settings.

    Returns:
        True when a DSN was configured and the SDK initialized
    """
    if settings_module is None:
        from config import settings as settings_module

    dsn = getattr(settings_module, "SENTRY_DSN", "")
    if not dsn:
        logger.debug("SENTRY_DSN not set, error reporting disabled")
        return False

    sentry_sdk.init(
        dsn=dsn,
        send_default_pii=False,
        traces_sample_rate=getattr(settings_module, "SENTRY_TRACES_SAMPLE_RATE", 0.0),
        environment=getattr(settings_module, "SENTRY_ENVIRONMENT", "development"),
        before_send=_before_send,
    )
    return True


def add_collection_breadcrumb(
    item_id: str,
    message: str = "Collection operation",
    source: Optional[str] = None,
    level: str = "info",
    extra_data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Add a breadcrumb to Sentry for collection context.

    Args:
        item_id: Item being collected
        message: Description of the operation
        source: Image provider involved, if any
        level: Log level (info, warning, error)
        extra_data: Additional context data
    """
    breadcrumb_data = {"item_id": item_id}
    if source:
        breadcrumb_data["source"] = source
    if extra_data:
        breadcrumb_data.update(_filter_sensitive_data(extra_data))

    try:
        sentry_sdk.add_breadcrumb(
            category="collection",
            message=message,
            level=level,
            data=breadcrumb_data,
        )
    except Exception as e:
        logger.warning("Failed to add Sentry breadcrumb: %s", e)


def capture_source_error(
    error: Exception,
    source: str,
    query: Optional[str] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Capture a provider failure with source context.

    Args:
        error: The SourceError (or other exception) raised for the provider
        source: Provider name
        query: Search query in flight
        extra_context: Additional context (filtered for sensitive data)
    """
    try:
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("collector.source", source)
            kind = getattr(error, "kind", None)
            if kind is not None:
                scope.set_tag("collector.error_kind", getattr(kind, "value", str(kind)))
            if query:
                scope.set_extra("query", query)
            if extra_context:
                scope.set_extra("source_context", _filter_sensitive_data(extra_context))

            sentry_sdk.capture_exception(error)

    except Exception as e:
        logger.warning("Failed to capture exception to Sentry: %s", e)


def capture_collection_error(
    error: Exception,
    item_id: str,
    category: Optional[str] = None,
    attempt: Optional[int] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Capture a whole-item collection failure.

    Args:
        error: The exception that aborted the item
        item_id: Item being collected
        category: Category id of the item
        attempt: Search attempt number
        extra_context: Additional context (filtered for sensitive data)
    """
    add_collection_breadcrumb(
        item_id=item_id,
        message=f"Error: {type(error).__name__}",
        level="error",
        extra_data=extra_context,
    )

    try:
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("collector.item", item_id)
            if category:
                scope.set_tag("collector.category", category)
            if attempt is not None:
                scope.set_extra("search_attempt", attempt)
            if extra_context:
                scope.set_extra("collection_context", _filter_sensitive_data(extra_context))

            sentry_sdk.capture_exception(error)

    except Exception as e:
        logger.warning("Failed to capture exception to Sentry: %s", e)
