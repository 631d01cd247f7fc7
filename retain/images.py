"""
Image processing for saved images.

Turns the raw bytes handed over by a share source into a stored original
and a small square thumbnail:

- the format is sniffed from the byte signature, never from a filename
- originals larger than the maximum dimension are downscaled
- HEIC is always re-encoded to JPEG, PNG is kept only if it has alpha
- the thumbnail is a centre-cropped aspect-fill square, baseline JPEG

Any failure raises an ImageStorageError subclass and produces nothing.
"""

import io
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import CompressionFailed, InvalidImageData, ThumbnailGenerationFailed

logger = logging.getLogger(__name__)

MAX_IMAGE_DIMENSION = 2048
THUMBNAIL_SIZE = 80
ORIGINAL_QUALITY = 80
THUMBNAIL_QUALITY = 70

_PNG_SIGNATURE = b"\x89PNG"
_JPEG_SIGNATURE = b"\xff\xd8\xff"
_HEIC_BRAND = b"heic"

_heif_registered = False


class ImageFormat(str, Enum):
    """Stored image formats; the value is the file extension."""
    JPEG = "jpg"
    PNG = "png"
    HEIC = "heic"

    @classmethod
    def from_filename(cls, name: str) -> "ImageFormat":
        """Guess from an extension. Only for display; storage sniffs bytes."""
        ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
        if ext == "png":
            return cls.PNG
        if ext in ("heic", "heif"):
            return cls.HEIC
        return cls.JPEG


def detect_format(data: bytes) -> ImageFormat:
    """Detect the image format from the first 12 bytes.

    Short or unrecognized input is treated as JPEG.
    """
    if len(data) < 12:
        return ImageFormat.JPEG
    head = data[:12]
    if head.startswith(_PNG_SIGNATURE):
        return ImageFormat.PNG
    if head.startswith(_JPEG_SIGNATURE):
        return ImageFormat.JPEG
    # ISO base media: size(4) 'ftyp'(4) major brand(4)
    if head[8:12] == _HEIC_BRAND:
        return ImageFormat.HEIC
    return ImageFormat.JPEG


def has_alpha(img: Image.Image) -> bool:
    """True if the image carries an alpha channel (or palette transparency)."""
    if img.mode in ("RGBA", "LA", "PA", "RGBa", "La"):
        return True
    return img.mode == "P" and "transparency" in img.info


def _register_heif() -> None:
    global _heif_registered
    if _heif_registered:
        return
    try:
        from pillow_heif import register_heif_opener
    except ImportError:
        raise InvalidImageData(
            "HEIC images require the 'pillow-heif' library. "
            "Install with: pip install 'retain[heic]'"
        )
    register_heif_opener()
    _heif_registered = True


@dataclass
class ProcessedImage:
    """Encoded original and thumbnail, ready to be written."""
    original: bytes
    thumbnail: bytes
    format: ImageFormat
    source_format: ImageFormat
    width: int
    height: int


class ImageProcessor:
    """Decode, resize, re-encode and thumbnail images with Pillow."""

    def __init__(
        self,
        max_dimension: int = MAX_IMAGE_DIMENSION,
        thumbnail_size: int = THUMBNAIL_SIZE,
        original_quality: int = ORIGINAL_QUALITY,
        thumbnail_quality: int = THUMBNAIL_QUALITY,
    ):
        self.max_dimension = max_dimension
        self.thumbnail_size = thumbnail_size
        self.original_quality = original_quality
        self.thumbnail_quality = thumbnail_quality

    def process(self, data: bytes, requested_format: Optional[ImageFormat] = None) -> ProcessedImage:
        """
        Run the full pipeline on raw image bytes.

        Args:
            data: Image bytes as received from the share source
            requested_format: Override for the sniffed format

        Raises:
            InvalidImageData: Bytes are not a decodable image
            CompressionFailed: The original could not be encoded
            ThumbnailGenerationFailed: The thumbnail could not be produced
        """
        source_format = requested_format or detect_format(data)
        img = self.decode(data, source_format)
        img = self.downscale_if_needed(img)
        fmt = self.choose_format(img, source_format)
        original = self.encode(img, fmt, self.original_quality)
        thumbnail = self.make_thumbnail(img)
        logger.debug(
            "Processed %s image -> %s %dx%d (%d bytes, thumbnail %d bytes)",
            source_format.value, fmt.value, img.width, img.height,
            len(original), len(thumbnail),
        )
        return ProcessedImage(
            original=original,
            thumbnail=thumbnail,
            format=fmt,
            source_format=source_format,
            width=img.width,
            height=img.height,
        )

    def decode(self, data: bytes, source_format: ImageFormat) -> Image.Image:
        if source_format is ImageFormat.HEIC:
            _register_heif()
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
            # Apply EXIF orientation so stored pixels are upright
            img = ImageOps.exif_transpose(img)
        except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
            raise InvalidImageData(f"Invalid image data: {e}") from e
        return img

    def downscale_if_needed(self, img: Image.Image) -> Image.Image:
        """Shrink so neither side exceeds max_dimension, keeping aspect ratio."""
        width, height = img.size
        if width <= self.max_dimension and height <= self.max_dimension:
            return img
        ratio = min(self.max_dimension / width, self.max_dimension / height)
        new_size = (max(1, round(width * ratio)), max(1, round(height * ratio)))
        logger.debug("Downscaling %dx%d to %dx%d", width, height, *new_size)
        return img.resize(new_size, Image.Resampling.LANCZOS)

    def choose_format(self, img: Image.Image, source_format: ImageFormat) -> ImageFormat:
        """HEIC becomes JPEG; PNG stays PNG only with alpha; the rest is JPEG."""
        if source_format is ImageFormat.PNG and has_alpha(img):
            return ImageFormat.PNG
        return ImageFormat.JPEG

    def encode(self, img: Image.Image, fmt: ImageFormat, quality: int) -> bytes:
        buf = io.BytesIO()
        try:
            if fmt is ImageFormat.PNG:
                img.save(buf, format="PNG", optimize=True)
            else:
                _to_rgb(img).save(buf, format="JPEG", quality=quality, progressive=False)
        except (OSError, ValueError) as e:
            raise CompressionFailed(f"Failed to compress image: {e}") from e
        return buf.getvalue()

    def make_thumbnail(self, img: Image.Image) -> bytes:
        """Centre-cropped square thumbnail encoded as baseline JPEG."""
        size = (self.thumbnail_size, self.thumbnail_size)
        buf = io.BytesIO()
        try:
            thumb = ImageOps.fit(
                img, size,
                method=Image.Resampling.LANCZOS,
                centering=(0.5, 0.5),
            )
            _to_rgb(thumb).save(
                buf, format="JPEG",
                quality=self.thumbnail_quality, progressive=False,
            )
        except (OSError, ValueError, ZeroDivisionError) as e:
            raise ThumbnailGenerationFailed(f"Failed to generate thumbnail: {e}") from e
        return buf.getvalue()


def _to_rgb(img: Image.Image) -> Image.Image:
    """Flatten onto white for JPEG output."""
    if img.mode == "RGB":
        return img
    if has_alpha(img):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")
