"""
Tests for the image pipeline: format sniffing, resize, format policy,
thumbnails and failure kinds.
"""

import io
from unittest.mock import patch

import pytest
from PIL import Image

from retain.errors import CompressionFailed, InvalidImageData, ThumbnailGenerationFailed
from retain.images import ImageFormat, ImageProcessor, detect_format, has_alpha

from conftest import image_bytes


def _open(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


class TestDetectFormat:

    def test_png(self, rgb_png):
        assert detect_format(rgb_png) is ImageFormat.PNG

    def test_jpeg(self, jpeg_bytes):
        assert detect_format(jpeg_bytes) is ImageFormat.JPEG

    def test_heic_brand(self):
        header = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 16
        assert detect_format(header) is ImageFormat.HEIC

    def test_short_input_defaults_to_jpeg(self):
        assert detect_format(b"\x89PNG") is ImageFormat.JPEG

    def test_unknown_defaults_to_jpeg(self):
        assert detect_format(b"GIF89a" + b"\x00" * 10) is ImageFormat.JPEG

    def test_content_wins_over_filename(self, rgb_png):
        # A PNG shared as "photo.jpg" is still a PNG
        assert ImageFormat.from_filename("photo.jpg") is ImageFormat.JPEG
        assert detect_format(rgb_png) is ImageFormat.PNG

    @pytest.mark.parametrize("name,expected", [
        ("a.PNG", ImageFormat.PNG),
        ("b.heif", ImageFormat.HEIC),
        ("c.heic", ImageFormat.HEIC),
        ("d.jpeg", ImageFormat.JPEG),
        ("noext", ImageFormat.JPEG),
    ])
    def test_from_filename(self, name, expected):
        assert ImageFormat.from_filename(name) is expected


class TestFormatPolicy:

    def test_png_with_alpha_stays_png(self, rgba_png):
        result = ImageProcessor().process(rgba_png)
        assert result.format is ImageFormat.PNG
        assert _open(result.original).format == "PNG"
        assert has_alpha(_open(result.original))

    def test_png_without_alpha_becomes_jpeg(self, rgb_png):
        result = ImageProcessor().process(rgb_png)
        assert result.format is ImageFormat.JPEG
        assert _open(result.original).format == "JPEG"

    def test_jpeg_stays_jpeg(self, jpeg_bytes):
        result = ImageProcessor().process(jpeg_bytes)
        assert result.format is ImageFormat.JPEG
        assert result.source_format is ImageFormat.JPEG

    def test_heic_is_reencoded_as_jpeg(self, rgba_png):
        processor = ImageProcessor()
        img = _open(rgba_png)
        assert processor.choose_format(img, ImageFormat.HEIC) is ImageFormat.JPEG

    def test_grayscale_png_becomes_jpeg(self):
        result = ImageProcessor().process(image_bytes(mode="L", fmt="PNG"))
        assert result.format is ImageFormat.JPEG

    def test_palette_png_with_transparency_stays_png(self):
        img = Image.new("P", (20, 20), 0)
        img.info["transparency"] = 0
        buf = io.BytesIO()
        img.save(buf, format="PNG", transparency=0)
        result = ImageProcessor().process(buf.getvalue())
        assert result.format is ImageFormat.PNG


class TestResize:

    def test_small_image_keeps_size(self, rgb_png):
        result = ImageProcessor().process(rgb_png)
        assert (result.width, result.height) == (64, 48)

    def test_large_image_is_downscaled_preserving_aspect(self):
        data = image_bytes(size=(400, 100), fmt="JPEG")
        result = ImageProcessor(max_dimension=200).process(data)
        assert (result.width, result.height) == (200, 50)
        assert _open(result.original).size == (200, 50)

    def test_tall_image_is_downscaled(self):
        data = image_bytes(size=(90, 300), fmt="PNG")
        result = ImageProcessor(max_dimension=150).process(data)
        assert (result.width, result.height) == (45, 150)

    def test_default_max_dimension(self):
        assert ImageProcessor().max_dimension == 2048


class TestThumbnail:

    @pytest.mark.parametrize("size", [(64, 48), (48, 64), (300, 20), (10, 10)])
    def test_thumbnail_is_square_jpeg(self, size):
        result = ImageProcessor().process(image_bytes(size=size, fmt="PNG"))
        thumb = _open(result.thumbnail)
        assert thumb.format == "JPEG"
        assert thumb.size == (80, 80)

    def test_thumbnail_from_alpha_png_is_jpeg(self, rgba_png):
        thumb = _open(ImageProcessor().process(rgba_png).thumbnail)
        assert thumb.format == "JPEG"
        assert thumb.mode == "RGB"

    def test_thumbnail_is_baseline(self, jpeg_bytes):
        thumb = _open(ImageProcessor().process(jpeg_bytes).thumbnail)
        assert not thumb.info.get("progressive")
        assert not thumb.info.get("progression")


class TestFailures:

    def test_garbage_is_invalid(self):
        with pytest.raises(InvalidImageData):
            ImageProcessor().process(b"\xff\xd8\xff" + b"garbage" * 10)

    def test_empty_is_invalid(self):
        with pytest.raises(InvalidImageData):
            ImageProcessor().process(b"")

    def test_thumbnail_failure_has_its_own_kind(self, jpeg_bytes):
        with patch("retain.images.ImageOps.fit", side_effect=OSError("boom")):
            with pytest.raises(ThumbnailGenerationFailed):
                ImageProcessor().process(jpeg_bytes)

    def test_encode_failure_is_compression_failed(self, jpeg_bytes):
        processor = ImageProcessor()
        with patch.object(Image.Image, "save", side_effect=OSError("disk full")):
            with pytest.raises(CompressionFailed):
                processor.process(jpeg_bytes)

    def test_heic_without_plugin_is_invalid(self):
        header = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 16
        with patch.dict("sys.modules", {"pillow_heif": None}), \
                patch("retain.images._heif_registered", False):
            with pytest.raises(InvalidImageData, match="pillow-heif"):
                ImageProcessor().process(header)
