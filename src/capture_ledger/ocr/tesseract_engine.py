"""Tesseract OCR engine with line-level blocks.

Words reported by Tesseract are grouped into lines; each line becomes one
TextBlock with the union bounding box and the mean word confidence.
"""

import io
import logging

import pytesseract
from PIL import Image

from ..errors import OcrEngineUnavailableError
from ..schemas.records import BoundingBox, NormalizedImage, TextBlock
from .base import OcrEngine

logger = logging.getLogger(__name__)


class TesseractEngine(OcrEngine):
    """Wrapper around Tesseract via pytesseract.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
        language: OCR language code.
        psm: Tesseract page segmentation mode.
    """

    def __init__(
        self,
        tesseract_cmd: str | None = None,
        language: str = "eng",
        psm: int = 6,
    ) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.language = language
        self.psm = psm

    @property
    def name(self) -> str:
        return "tesseract"

    def is_available(self) -> bool:
        try:
            pytesseract.get_tesseract_version()
            return True
        except (pytesseract.TesseractNotFoundError, OSError):
            return False

    def recognize_blocks(self, image: NormalizedImage) -> list[TextBlock]:
        pil_image = Image.open(io.BytesIO(image.data))
        try:
            data = pytesseract.image_to_data(
                pil_image,
                lang=self.language,
                config=f"--psm {self.psm}",
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractNotFoundError as e:
            raise OcrEngineUnavailableError(f"Tesseract is not installed: {e}") from e
        except (pytesseract.TesseractError, OSError, RuntimeError) as e:
            raise OcrEngineUnavailableError(f"Tesseract failed: {e}") from e

        return group_words_into_lines(data)


def group_words_into_lines(data: dict[str, list]) -> list[TextBlock]:
    """Group pytesseract ``image_to_data`` words into line blocks.

    Entries with negative confidence (layout rows) or empty text are skipped.
    """
    lines: dict[tuple[int, int, int], list[int]] = {}
    for i, raw_text in enumerate(data["text"]):
        text = str(raw_text).strip()
        try:
            conf = float(data["conf"][i])
        except (TypeError, ValueError):
            conf = -1.0
        if not text or conf < 0:
            continue
        key = (int(data["block_num"][i]), int(data["par_num"][i]), int(data["line_num"][i]))
        lines.setdefault(key, []).append(i)

    blocks: list[TextBlock] = []
    for (block_num, _par_num, line_num), indices in lines.items():
        words = [str(data["text"][i]).strip() for i in indices]
        confs = [float(data["conf"][i]) / 100.0 for i in indices]
        left = min(int(data["left"][i]) for i in indices)
        top = min(int(data["top"][i]) for i in indices)
        right = max(int(data["left"][i]) + int(data["width"][i]) for i in indices)
        bottom = max(int(data["top"][i]) + int(data["height"][i]) for i in indices)

        blocks.append(
            TextBlock(
                text=" ".join(words),
                confidence=max(0.0, min(1.0, sum(confs) / len(confs))),
                bbox=BoundingBox(x=left, y=top, width=right - left, height=bottom - top),
                block_num=block_num,
                line_num=line_num,
            )
        )

    logger.debug("Grouped %d words into %d lines", sum(len(v) for v in lines.values()), len(blocks))
    return blocks
