"""
Image normalizer.

Turns a raw camera capture into the canonical buffer OCR runs on:
orientation fixed, grayscale, uniform border trimmed, long edge bounded,
contrast stretched, encoded as metadata-free PNG.

Output is deterministic for identical input bytes and orientation.
"""

import io
import logging

from PIL import Image, ImageChops, ImageOps, UnidentifiedImageError

from ..config import ImagingConfig
from ..errors import CorruptImageError, ImageTooLargeError
from ..schemas.records import CapturedImage, NormalizedImage

logger = logging.getLogger(__name__)

# EXIF orientation code -> (transpose method, clockwise degrees)
_EXIF_TRANSPOSE = {
    2: (Image.Transpose.FLIP_LEFT_RIGHT, 0),
    3: (Image.Transpose.ROTATE_180, 180),
    4: (Image.Transpose.FLIP_TOP_BOTTOM, 0),
    5: (Image.Transpose.TRANSPOSE, 90),
    6: (Image.Transpose.ROTATE_270, 90),
    7: (Image.Transpose.TRANSVERSE, 270),
    8: (Image.Transpose.ROTATE_90, 270),
}

# Clockwise device rotation -> transpose method (PIL rotates counter-clockwise)
_DEGREE_TRANSPOSE = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}

EXIF_ORIENTATION_TAG = 0x0112


class ImageNormalizer:
    """
    Normalizes captured photos for OCR.

    Errors:
    - CorruptImageError: bytes are not a decodable image
    - ImageTooLargeError: raw bytes or decoded pixels exceed limits
    """

    def __init__(self, config: ImagingConfig | None = None):
        self.config = config or ImagingConfig()

    def normalize(self, image: CapturedImage) -> NormalizedImage:
        """Produce the canonical image. Never mutates the capture."""
        size = len(image.data)
        if size == 0:
            raise CorruptImageError("Captured image is empty")
        if size > self.config.max_input_bytes:
            raise ImageTooLargeError(
                f"Captured image is {size} bytes (limit {self.config.max_input_bytes})",
                size=size,
                limit=self.config.max_input_bytes,
            )

        img = self._decode(image.data)
        img, rotation = self._orient(img, image.orientation)

        img = img.convert("L" if self.config.grayscale else "RGB")
        img = self._trim_border(img)

        if max(img.size) > self.config.max_dimension:
            img.thumbnail(
                (self.config.max_dimension, self.config.max_dimension),
                Image.Resampling.LANCZOS,
            )

        img = ImageOps.autocontrast(img)

        buf = io.BytesIO()
        img.save(buf, format="PNG", optimize=False, compress_level=6)
        data = buf.getvalue()

        logger.debug(
            "Normalized capture: %d bytes -> %dx%d PNG (%d bytes, rotation %d)",
            size,
            img.width,
            img.height,
            len(data),
            rotation,
        )
        return NormalizedImage(data=data, width=img.width, height=img.height, rotation=rotation)

    def _decode(self, data: bytes) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(data))
        except Image.DecompressionBombError as e:
            raise ImageTooLargeError(str(e), size=0, limit=self.config.max_pixels) from e
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise CorruptImageError(f"Cannot decode captured image: {e}") from e

        pixels = img.width * img.height
        if pixels > self.config.max_pixels:
            raise ImageTooLargeError(
                f"Captured image is {img.width}x{img.height} ({pixels} px, limit {self.config.max_pixels})",
                size=pixels,
                limit=self.config.max_pixels,
            )

        try:
            img.load()
        except Image.DecompressionBombError as e:
            raise ImageTooLargeError(str(e), size=pixels, limit=self.config.max_pixels) from e
        except (OSError, SyntaxError, ValueError) as e:
            raise CorruptImageError(f"Captured image is truncated or damaged: {e}") from e
        return img

    def _orient(self, img: Image.Image, orientation: int) -> tuple[Image.Image, int]:
        """Apply orientation. An EXIF tag in the file wins over device metadata."""
        exif_code = img.getexif().get(EXIF_ORIENTATION_TAG, 1)
        code = exif_code if exif_code in _EXIF_TRANSPOSE else None

        if code is not None:
            method, degrees = _EXIF_TRANSPOSE[code]
            return img.transpose(method), degrees

        if orientation in _EXIF_TRANSPOSE:
            method, degrees = _EXIF_TRANSPOSE[orientation]
            return img.transpose(method), degrees

        if orientation in _DEGREE_TRANSPOSE:
            return img.transpose(_DEGREE_TRANSPOSE[orientation]), orientation

        if orientation not in (0, 1):
            logger.warning("Ignoring unsupported orientation value %r", orientation)
        return img, 0

    def _trim_border(self, img: Image.Image) -> Image.Image:
        """Crop a uniform border matching the top-left corner colour."""
        background = Image.new(img.mode, img.size, img.getpixel((0, 0)))
        diff = ImageChops.difference(img, background)
        if diff.mode != "L":
            diff = diff.convert("L")
        tolerance = self.config.trim_tolerance
        mask = diff.point(lambda p: 255 if p > tolerance else 0)
        bbox = mask.getbbox()

        if not bbox or bbox == (0, 0, img.width, img.height):
            return img
        return img.crop(bbox)
