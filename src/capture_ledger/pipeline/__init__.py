"""
Pipeline coordinator.

Orchestrates capture → normalize → OCR → extract → persist per capture,
with progress events, cooperative cancellation and degraded persistence
when extraction is unavailable.
"""

from .coordinator import (
    CaptureHandle,
    CaptureResult,
    PipelineCoordinator,
    ProgressEvent,
    Stage,
)

__all__ = [
    "CaptureHandle",
    "CaptureResult",
    "PipelineCoordinator",
    "ProgressEvent",
    "Stage",
]
