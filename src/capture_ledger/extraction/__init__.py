"""Extraction module: structured records from OCR text via a generative-AI endpoint.

The endpoint is treated as an opaque remote call with a contract: the
response must validate against the record schema, or it is re-prompted once
and then reported as malformed.
"""

from .engine import ExtractionEngine
from .prompts import PROMPT_VERSION, ExtractionPrompt, RepromptHint

__all__ = ["ExtractionEngine", "ExtractionPrompt", "RepromptHint", "PROMPT_VERSION"]
