"""
Base OCR engine interface.
"""

from abc import ABC, abstractmethod

from ..schemas.records import NormalizedImage, TextBlock


class OcrEngine(ABC):
    """
    Base class for text-recognition engines.

    Engines do one synchronous recognition pass and nothing else:
    no retries, no timeouts. Both belong to the OcrAdapter and its caller.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Engine name for logging and provenance."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check whether the engine can be used on this machine."""
        pass

    @abstractmethod
    def recognize_blocks(self, image: NormalizedImage) -> list[TextBlock]:
        """
        Recognize text in a normalized image.

        Args:
            image: Canonical PNG produced by the ImageNormalizer

        Returns:
            Text blocks in reading order

        Raises:
            OcrEngineUnavailableError: If the engine is missing or crashed
        """
        pass
