"""
OCR adapter and engines.

Engines (in order of preference):
1. Tesseract (pytesseract) - default on-device engine
2. Any OcrEngine subclass supplied by the host application
"""

from .adapter import OcrAdapter
from .base import OcrEngine
from .tesseract_engine import TesseractEngine

__all__ = ["OcrAdapter", "OcrEngine", "TesseractEngine"]
