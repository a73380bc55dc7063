"""
Settings module loader.

Loads the appropriate settings module based on the COLLECTOR_ENV
environment variable. Defaults to base settings.
"""

import os

# Determine which settings to use based on COLLECTOR_ENV
env = os.getenv("COLLECTOR_ENV", "development")

if env == "test":
    from .test import *
else:
    from .base import *
