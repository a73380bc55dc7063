"""
Image collector: multi-source image search, processing and quality scoring
for vocabulary items.
"""

__version__ = "1.0.0"
