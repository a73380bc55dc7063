"""
Test settings for the image collector.

Uses dummy provider keys, no Sentry and quiet logging.
"""

from .base import *

UNSPLASH_ACCESS_KEY = "test-unsplash-key"
PIXABAY_API_KEY = "test-pixabay-key"
PEXELS_API_KEY = "test-pexels-key"

SENTRY_DSN = ""

# Fast retries in tests
SOURCE_RETRY_BASE_DELAY = 0.0

IMAGES_DIRECTORY = "/tmp/image-collector-test"

# Test logging - minimal output
LOGGING["loggers"]["collector"]["level"] = "WARNING"
