"""
Image normalization for OCR input.
"""

from .normalizer import ImageNormalizer

__all__ = ["ImageNormalizer"]
