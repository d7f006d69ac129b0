"""
Product image transformation.

Decodes an uploaded image, scales it down to the configured width, optionally
stamps a watermark in the bottom-right corner and re-encodes everything as
WebP so stored images have a predictable size.
"""

import io
from pathlib import Path
from typing import Optional
import structlog

from PIL import Image, ImageOps, UnidentifiedImageError

from config import settings
from exceptions import ImageDecodeError

logger = structlog.get_logger(__name__)

OUTPUT_FORMAT = "WEBP"
OUTPUT_CONTENT_TYPE = "image/webp"
OUTPUT_EXTENSION = "webp"


def _decode(image_bytes: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
        return ImageOps.exif_transpose(image)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(
            "Image could not be decoded",
            details={"error": str(e), "size": len(image_bytes)}
        ) from e


def _has_alpha(image: Image.Image) -> bool:
    if image.mode in ("RGBA", "LA", "PA"):
        return True
    return image.mode == "P" and "transparency" in image.info


def _normalize_mode(image: Image.Image) -> Image.Image:
    """WebP takes RGB or RGBA only."""
    if image.mode in ("RGB", "RGBA"):
        return image
    return image.convert("RGBA" if _has_alpha(image) else "RGB")


def _scale_to_width(image: Image.Image, max_width: int) -> Image.Image:
    """Shrink to max_width keeping aspect ratio; never enlarges."""
    if image.width <= max_width:
        return image
    height = max(1, round(image.height * max_width / image.width))
    return image.resize((max_width, height), Image.LANCZOS)


def _apply_watermark(
    image: Image.Image,
    watermark_bytes: bytes,
    opacity: float,
    max_width: int,
) -> Image.Image:
    mark = Image.open(io.BytesIO(watermark_bytes))
    mark.load()
    mark = _scale_to_width(mark.convert("RGBA"), min(max_width, image.width))

    alpha = mark.getchannel("A").point(lambda a: round(a * opacity))
    mark.putalpha(alpha)

    keep_alpha = image.mode == "RGBA"
    base = image.convert("RGBA")
    anchor = (max(base.width - mark.width, 0), max(base.height - mark.height, 0))
    base.alpha_composite(mark, dest=anchor)
    return base if keep_alpha else base.convert("RGB")


def transform(
    image_bytes: bytes,
    max_width: int,
    quality: int,
    watermark: Optional[bytes] = None,
    watermark_opacity: float = 0.3,
    watermark_width: int = 150,
) -> bytes:
    """
    Decode, downscale, watermark and re-encode an image.

    A watermark that cannot be applied is logged and skipped; the image is
    still produced.

    Args:
        image_bytes: Source image (jpg, png, webp, gif)
        max_width: Wider images are scaled down to this width
        quality: WebP quality (1-100)
        watermark: Optional watermark image bytes
        watermark_opacity: Opacity multiplier for the watermark
        watermark_width: Maximum watermark width in pixels

    Returns:
        WebP-encoded bytes

    Raises:
        ImageDecodeError: If the source cannot be decoded
    """
    image = _normalize_mode(_decode(image_bytes))
    original_size = image.size
    image = _scale_to_width(image, max_width)

    if watermark:
        try:
            image = _apply_watermark(image, watermark, watermark_opacity, watermark_width)
        except Exception as e:
            logger.warning(
                "watermark_failed",
                error=str(e),
                error_type=type(e).__name__
            )

    buffer = io.BytesIO()
    image.save(buffer, format=OUTPUT_FORMAT, quality=quality)
    output = buffer.getvalue()

    logger.debug(
        "image_transformed",
        original_size=original_size,
        output_size=image.size,
        input_bytes=len(image_bytes),
        output_bytes=len(output)
    )
    return output


class ImageService:
    """
    Image transformation bound to application settings.

    Loads the configured watermark once; a missing or unreadable watermark
    file disables watermarking with a warning.
    """

    def __init__(
        self,
        max_width: Optional[int] = None,
        quality: Optional[int] = None,
        watermark: Optional[bytes] = None,
    ):
        self.max_width = max_width or settings.image_max_width
        self.quality = quality or settings.image_quality
        self.watermark = watermark if watermark is not None else self._load_watermark()

    @staticmethod
    def _load_watermark() -> Optional[bytes]:
        if not settings.watermark_path:
            return None
        try:
            return Path(settings.watermark_path).read_bytes()
        except OSError as e:
            logger.warning(
                "watermark_unavailable",
                path=settings.watermark_path,
                error=str(e)
            )
            return None

    def transform(self, image_bytes: bytes) -> bytes:
        """Transform with the configured width, quality and watermark."""
        return transform(
            image_bytes,
            max_width=self.max_width,
            quality=self.quality,
            watermark=self.watermark,
            watermark_opacity=settings.watermark_opacity,
            watermark_width=settings.watermark_width,
        )


# Singleton instance
_image_service: Optional[ImageService] = None


def get_image_service() -> ImageService:
    """Get or create ImageService instance."""
    global _image_service
    if _image_service is None:
        _image_service = ImageService()
    return _image_service
