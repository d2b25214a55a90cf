"""
Confidence scoring and validation status determination.
"""

from .scorer import ConfidenceScorer, ConfidenceThresholds

__all__ = ["ConfidenceScorer", "ConfidenceThresholds"]
