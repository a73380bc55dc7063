"""
Tests for Sentry error capture.

- Sensitive field filtering
- Breadcrumbs carry item and source context
- Source and item failures are captured with tags
- Sentry failures never propagate
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch

from collector.errors import SourceError, SourceErrorKind
from collector.monitoring import sentry_integration
from collector.monitoring.sentry_integration import (
    _before_send,
    _filter_sensitive_data,
    add_collection_breadcrumb,
    capture_collection_error,
    capture_source_error,
    init_sentry,
)


def mock_sdk():
    sdk = Mock()
    scope = MagicMock()
    context = MagicMock()
    context.__enter__.return_value = scope
    sdk.new_scope.return_value = context
    return sdk, scope


class TestFilterSensitiveData:
    def test_filters_keys_and_nested_values(self):
        data = {
            "query": "dog",
            "client_id": "abc",
            "headers": {"Authorization": "Client-ID secret123", "Accept": "application/json"},
            "key": "pixabay-key",
            "monkey": "banana",
        }

        filtered = _filter_sensitive_data(data)

        assert filtered["query"] == "dog"
        assert filtered["client_id"] == "[Filtered]"
        assert filtered["headers"]["Authorization"] == "[Filtered]"
        assert filtered["headers"]["Accept"] == "application/json"
        assert filtered["key"] == "[Filtered]"
        assert filtered["monkey"] == "banana"

    def test_before_send_strips_request_query(self):
        event = {
            "request": {"query_string": {"key": "secret", "q": "dog"}},
            "extra": {"api_key": "secret"},
        }

        cleaned = _before_send(event, None)

        assert cleaned["request"]["query_string"] == {"key": "[Filtered]", "q": "dog"}
        assert cleaned["extra"]["api_key"] == "[Filtered]"


class TestInitSentry:
    def test_no_dsn_skips_init(self):
        with patch.object(sentry_integration.sentry_sdk, "init") as mock_init:
            assert init_sentry(SimpleNamespace(SENTRY_DSN="")) is False
        mock_init.assert_not_called()

    def test_dsn_initializes_sdk(self):
        settings = SimpleNamespace(
            SENTRY_DSN="https://public@sentry.example.com/1",
            SENTRY_ENVIRONMENT="test",
            SENTRY_TRACES_SAMPLE_RATE=0.5,
        )
        with patch.object(sentry_integration.sentry_sdk, "init") as mock_init:
            assert init_sentry(settings) is True

        kwargs = mock_init.call_args[1]
        assert kwargs["environment"] == "test"
        assert kwargs["traces_sample_rate"] == 0.5
        assert kwargs["send_default_pii"] is False


class TestSentryErrorCapture:
    """Test Sentry error capture with context."""

    def test_breadcrumb_filters_extra_data(self):
        sdk, _ = mock_sdk()
        with patch.object(sentry_integration, "sentry_sdk", sdk):
            add_collection_breadcrumb(
                item_id="dog",
                message="Collection attempt 1",
                source="unsplash",
                extra_data={"api_key": "secret123", "approved": 2},
            )

        data = sdk.add_breadcrumb.call_args[1]["data"]
        assert data["item_id"] == "dog"
        assert data["source"] == "unsplash"
        assert data["approved"] == 2
        assert "secret123" not in str(data)

    def test_capture_source_error_tags(self):
        sdk, scope = mock_sdk()
        error = SourceError(SourceErrorKind.RATE_LIMITED, "slow down", source="pexels")

        with patch.object(sentry_integration, "sentry_sdk", sdk):
            capture_source_error(error, "pexels", query="dog")

        scope.set_tag.assert_any_call("collector.source", "pexels")
        scope.set_tag.assert_any_call("collector.error_kind", "rate_limited")
        scope.set_extra.assert_any_call("query", "dog")
        sdk.capture_exception.assert_called_once_with(error)

    def test_capture_collection_error_tags(self):
        sdk, scope = mock_sdk()
        error = RuntimeError("boom")

        with patch.object(sentry_integration, "sentry_sdk", sdk):
            capture_collection_error(error, item_id="dog", category="animals", attempt=2)

        scope.set_tag.assert_any_call("collector.item", "dog")
        scope.set_tag.assert_any_call("collector.category", "animals")
        scope.set_extra.assert_any_call("search_attempt", 2)
        assert sdk.add_breadcrumb.call_args[1]["level"] == "error"
        sdk.capture_exception.assert_called_once_with(error)

    def test_sentry_failures_are_logged_not_raised(self, caplog):
        sdk, _ = mock_sdk()
        sdk.capture_exception.side_effect = RuntimeError("transport down")
        sdk.add_breadcrumb.side_effect = RuntimeError("transport down")

        with patch.object(sentry_integration, "sentry_sdk", sdk):
            capture_collection_error(ValueError("bad"), item_id="dog")

        assert "Failed to capture exception to Sentry" in caplog.text
        assert "Failed to add Sentry breadcrumb" in caplog.text
