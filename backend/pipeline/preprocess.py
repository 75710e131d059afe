import io
import logging
import time

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import (
    CorruptImage,
    ImageTooLarge,
    ImageTransformError,
    PayloadTooLarge,
    UnsupportedMediaType,
)

logger = logging.getLogger(__name__)

# Pixel ceilings are enforced per preprocessor from the image header instead.
Image.MAX_IMAGE_PIXELS = None

DEFAULT_ALLOWED_MIME_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_DIMENSION = 2000
DEFAULT_MAX_PIXELS = 250_000_000
DEFAULT_JPEG_QUALITY = 90

OUTPUT_MIME_TYPE = "image/jpeg"


class ImagePreprocessor:
    """Normalize an uploaded drawing into a bounded JPEG for the vision model."""

    def __init__(
        self,
        allowed_mime_types: frozenset[str] | set[str] = DEFAULT_ALLOWED_MIME_TYPES,
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_dimension: int = DEFAULT_MAX_DIMENSION,
        max_pixels: int = DEFAULT_MAX_PIXELS,
        quality: int = DEFAULT_JPEG_QUALITY,
    ):
        self.allowed_mime_types = frozenset(m.lower() for m in allowed_mime_types)
        self.max_bytes = max_bytes
        self.max_dimension = max_dimension
        self.max_pixels = max_pixels
        self.quality = quality

    def check(self, mime_type: str | None, size: int) -> None:
        """Reject inputs outside the accepted media types or size ceiling."""
        if not mime_type or mime_type.lower() not in self.allowed_mime_types:
            raise UnsupportedMediaType(
                f"Unsupported media type '{mime_type}'. Only image files (JPEG, PNG, WebP) are allowed",
                stage="validation",
            )
        if size > self.max_bytes:
            limit_mb = self.max_bytes / (1024 * 1024)
            raise PayloadTooLarge(
                f"File size must be less than {limit_mb:g}MB (got {size / (1024 * 1024):.1f}MB)",
                stage="validation",
            )

    def preprocess(self, data: bytes, mime_type: str) -> bytes:
        """Bound the longest side, flatten transparency, and re-encode as JPEG.

        Always re-encodes, even when the input is already a small JPEG, so the
        output format is predictable. Never upscales. Large scans are shrunk
        before colour conversion; JPEGs are decoded at reduced scale.
        """
        self.check(mime_type, len(data))

        t0 = time.monotonic()
        try:
            img = Image.open(io.BytesIO(data))
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise CorruptImage(f"Could not decode image: {e}", stage="preprocessing", cause=e) from e

        width, height = img.size
        if width * height > self.max_pixels:
            raise ImageTooLarge(
                f"Image is {width}x{height} ({width * height:,} pixels); "
                f"the limit is {self.max_pixels:,} pixels",
                stage="preprocessing",
            )

        try:
            if img.format == "JPEG":
                img.draft(None, (self.max_dimension * 2, self.max_dimension * 2))
            img.load()
        except (OSError, SyntaxError) as e:
            raise CorruptImage(f"Could not decode image: {e}", stage="preprocessing", cause=e) from e

        try:
            img = _shrink(img, self.max_dimension)
            img = ImageOps.exif_transpose(img)
            img = _flatten(img)
            img.thumbnail((self.max_dimension, self.max_dimension), Image.LANCZOS)

            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=self.quality, optimize=True)
        except (OSError, ValueError) as e:
            raise ImageTransformError(
                f"Image transform failed: {e}", stage="preprocessing", cause=e
            ) from e

        out = buf.getvalue()
        logger.info(
            "Preprocessed image %dx%d -> %dx%d, %d -> %d bytes in %.0fms",
            width, height, img.size[0], img.size[1],
            len(data), len(out), (time.monotonic() - t0) * 1000,
        )
        return out


def _shrink(img: Image.Image, max_dimension: int) -> Image.Image:
    """Downscale in a compact mode so a huge scan never expands to full-size RGB."""
    if img.mode == "1":
        img = img.convert("L")
    elif img.mode == "P":
        img = img.convert("RGBA")
    if img.mode in ("L", "LA", "RGB", "RGBA"):
        img.thumbnail((max_dimension, max_dimension), Image.LANCZOS)
    return img


def _flatten(img: Image.Image) -> Image.Image:
    """Convert to RGB, compositing any alpha channel onto white.

    Line drawings exported as transparent PNGs would otherwise turn black.
    """
    if img.mode == "RGB":
        return img
    if img.mode == "P":
        img = img.convert("RGBA")
    if img.mode in ("RGBA", "LA"):
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img.convert("RGBA"), mask=img.getchannel("A"))
        return background
    return img.convert("RGB")
