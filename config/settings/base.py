"""
Base settings for the image collector.

This module contains settings common to all environments. Every value can
be overridden from the environment or a .env file.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent.parent

DEBUG = os.getenv("DEBUG", "False") == "True"


# Logging Configuration

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "collector": {
            "handlers": ["console"],
            "level": os.getenv("LOG_LEVEL", "INFO"),
        },
        "httpx": {
            "handlers": ["console"],
            "level": os.getenv("HTTPX_LOG_LEVEL", "WARNING"),
        },
    },
}


# Image Provider Configuration

UNSPLASH_ACCESS_KEY = os.getenv("UNSPLASH_ACCESS_KEY", "")
PIXABAY_API_KEY = os.getenv("PIXABAY_API_KEY", "")
PEXELS_API_KEY = os.getenv("PEXELS_API_KEY", "")

# Requests per hour allowed by each provider plan
UNSPLASH_HOURLY_QUOTA = int(os.getenv("UNSPLASH_HOURLY_QUOTA", "50"))
PIXABAY_HOURLY_QUOTA = int(os.getenv("PIXABAY_HOURLY_QUOTA", "100"))
PEXELS_HOURLY_QUOTA = int(os.getenv("PEXELS_HOURLY_QUOTA", "200"))

# Seconds a caller may wait for a rate-limit token before the source is skipped
RATE_LIMIT_BLOCK_DURATION = float(os.getenv("RATE_LIMIT_BLOCK_DURATION", "60"))
RATE_LIMIT_EVEN_DISTRIBUTION = os.getenv("RATE_LIMIT_EVEN_DISTRIBUTION", "False") == "True"

SOURCE_REQUEST_TIMEOUT = float(os.getenv("SOURCE_REQUEST_TIMEOUT", "30"))
SOURCE_MAX_RETRIES = int(os.getenv("SOURCE_MAX_RETRIES", "3"))
SOURCE_RETRY_BASE_DELAY = float(os.getenv("SOURCE_RETRY_BASE_DELAY", "1.0"))


# Collection Defaults

MIN_QUALITY_THRESHOLD = float(os.getenv("MIN_QUALITY_THRESHOLD", "7.0"))
AUTO_APPROVAL_THRESHOLD = float(os.getenv("AUTO_APPROVAL_THRESHOLD", "8.5"))
TARGET_IMAGES_PER_ITEM = int(os.getenv("TARGET_IMAGES_PER_ITEM", "3"))
MAX_SEARCH_ATTEMPTS = int(os.getenv("MAX_SEARCH_ATTEMPTS", "5"))
RETRY_INTERVAL_HOURS = float(os.getenv("RETRY_INTERVAL_HOURS", "24"))


# Image Processing

IMAGES_DIRECTORY = os.getenv("IMAGES_DIRECTORY", str(BASE_DIR / "images"))
IMAGE_OUTPUT_FORMAT = os.getenv("IMAGE_OUTPUT_FORMAT", "WEBP")
IMAGE_OUTPUT_QUALITY = int(os.getenv("IMAGE_OUTPUT_QUALITY", "85"))
IMAGE_MAX_INPUT_BYTES = int(os.getenv("IMAGE_MAX_INPUT_BYTES", str(50 * 1024 * 1024)))
IMAGE_MIN_DIMENSION = int(os.getenv("IMAGE_MIN_DIMENSION", "100"))
IMAGE_VARIANT_SIZES = {
    "thumbnail": int(os.getenv("IMAGE_SIZE_THUMBNAIL", "150")),
    "small": int(os.getenv("IMAGE_SIZE_SMALL", "400")),
    "medium": int(os.getenv("IMAGE_SIZE_MEDIUM", "800")),
    "large": int(os.getenv("IMAGE_SIZE_LARGE", "1200")),
}


# Sentry Configuration
# https://docs.sentry.io/platforms/python/

SENTRY_DSN = os.getenv("SENTRY_DSN", "")
SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0"))
