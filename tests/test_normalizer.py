"""Tests for the image normalizer."""

import io

import pytest
from PIL import Image

from capture_ledger.config import ImagingConfig
from capture_ledger.errors import CorruptImageError, ImageTooLargeError
from capture_ledger.imaging import ImageNormalizer
from capture_ledger.schemas.records import CapturedImage

from conftest import make_png


def open_png(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


def jpeg_with_exif_orientation(width: int, height: int, code: int) -> bytes:
    img = Image.new("RGB", (width, height), "white")
    exif = img.getexif()
    exif[0x0112] = code
    buf = io.BytesIO()
    img.save(buf, format="JPEG", exif=exif)
    return buf.getvalue()


class TestImageNormalizer:
    """Tests for ImageNormalizer.normalize."""

    @pytest.fixture
    def normalizer(self):
        return ImageNormalizer()

    def test_output_is_grayscale_png(self, normalizer, png_bytes):
        result = normalizer.normalize(CapturedImage(data=png_bytes))

        img = open_png(result.data)
        assert img.format == "PNG"
        assert img.mode == "L"
        assert (img.width, img.height) == (result.width, result.height)

    def test_uniform_border_is_trimmed(self, normalizer):
        result = normalizer.normalize(CapturedImage(data=make_png(400, 300)))

        # Only the dark box in the middle survives
        assert result.width == 201
        assert result.height == 76

    def test_deterministic(self, normalizer, png_bytes):
        first = normalizer.normalize(CapturedImage(data=png_bytes))
        second = normalizer.normalize(CapturedImage(data=png_bytes))

        assert first.data == second.data
        assert first.content_hash == second.content_hash

    def test_capture_is_not_mutated(self, normalizer, png_bytes):
        capture = CapturedImage(data=png_bytes)
        normalizer.normalize(capture)
        assert capture.data == png_bytes

    def test_long_edge_is_bounded(self):
        normalizer = ImageNormalizer(ImagingConfig(max_dimension=500))

        result = normalizer.normalize(CapturedImage(data=make_png(1500, 600, text_box=False)))

        assert result.width == 500
        assert result.height == 200

    @pytest.mark.parametrize("orientation,expected", [(90, 90), (270, 270), (6, 90), (8, 270)])
    def test_device_orientation(self, normalizer, orientation, expected):
        capture = CapturedImage(data=make_png(400, 200, text_box=False), orientation=orientation)

        result = normalizer.normalize(capture)

        assert result.rotation == expected
        assert (result.width, result.height) == (200, 400)

    def test_upside_down(self, normalizer):
        capture = CapturedImage(data=make_png(400, 200, text_box=False), orientation=180)

        result = normalizer.normalize(capture)

        assert result.rotation == 180
        assert (result.width, result.height) == (400, 200)

    def test_exif_orientation_wins_over_device(self, normalizer):
        capture = CapturedImage(data=jpeg_with_exif_orientation(400, 200, 6), orientation=180)

        result = normalizer.normalize(capture)

        assert result.rotation == 90
        assert (result.width, result.height) == (200, 400)

    def test_unsupported_orientation_is_ignored(self, normalizer):
        capture = CapturedImage(data=make_png(400, 200, text_box=False), orientation=45)

        result = normalizer.normalize(capture)

        assert result.rotation == 0
        assert (result.width, result.height) == (400, 200)


class TestNormalizerErrors:
    """Tests for rejected captures."""

    def test_empty_capture(self):
        with pytest.raises(CorruptImageError):
            ImageNormalizer().normalize(CapturedImage(data=b""))

    def test_garbage_bytes(self):
        with pytest.raises(CorruptImageError):
            ImageNormalizer().normalize(CapturedImage(data=b"definitely not an image"))

    def test_truncated_png(self, png_bytes):
        with pytest.raises(CorruptImageError):
            ImageNormalizer().normalize(CapturedImage(data=png_bytes[: len(png_bytes) // 2]))

    def test_too_many_bytes(self, png_bytes):
        normalizer = ImageNormalizer(ImagingConfig(max_input_bytes=100))

        with pytest.raises(ImageTooLargeError) as exc_info:
            normalizer.normalize(CapturedImage(data=png_bytes))

        assert exc_info.value.size == len(png_bytes)
        assert exc_info.value.limit == 100

    def test_too_many_pixels(self, png_bytes):
        normalizer = ImageNormalizer(ImagingConfig(max_pixels=1000))

        with pytest.raises(ImageTooLargeError):
            normalizer.normalize(CapturedImage(data=png_bytes))

    def test_errors_are_permanent(self):
        with pytest.raises(CorruptImageError) as exc_info:
            ImageNormalizer().normalize(CapturedImage(data=b"xx"))
        assert not exc_info.value.retryable
