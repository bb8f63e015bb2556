from PIL import Image
from io import BytesIO
import logging

# Configure logging
logger = logging.getLogger(__name__)

THUMBNAIL_WIDTH = 200
THUMBNAIL_FORMAT = 'JPEG'
THUMBNAIL_CONTENT_TYPE = 'image/jpeg'

# 24 megapixels, checked from the header before any pixel data is decoded
MAX_PIXELS = 24_000_000

# Vector formats carry no pixel data to resize
NON_RASTER_TYPES = frozenset({'image/svg+xml'})


def is_raster_image(mime_type: str) -> bool:
    return bool(mime_type) and mime_type.startswith('image/') and mime_type not in NON_RASTER_TYPES


def derive_thumbnail(contents: bytes, width: int = THUMBNAIL_WIDTH, max_pixels: int = MAX_PIXELS) -> bytes:
    """
    Resize an image to a fixed width, keeping its aspect ratio.

    Args:
        contents: Original image bytes
        width: Thumbnail width in pixels
        max_pixels: Largest source image, in pixels, that will be decoded

    Returns:
        bytes: JPEG encoded thumbnail

    Raises:
        PIL.Image.DecompressionBombError: if the image is larger than max_pixels
        PIL.UnidentifiedImageError, OSError: if the bytes are not a readable image
    """
    with Image.open(BytesIO(contents)) as img:
        pixels = img.width * img.height
        if pixels > max_pixels:
            raise Image.DecompressionBombError(
                f"Image has {pixels} pixels, thumbnails are limited to {max_pixels}"
            )

        # Animated images are thumbnailed from their first frame
        img.seek(0)
        height = max(1, round(img.height * width / img.width))

        # Let JPEG decode at a reduced scale when it is shrinking anyway
        img.draft('RGB', (width, height))

        # Palette and exotic modes cannot be resampled directly
        if img.mode not in ('RGB', 'RGBA', 'L', 'LA'):
            img = img.convert('RGBA' if 'transparency' in img.info else 'RGB')

        thumb = img.resize((width, height), Image.Resampling.LANCZOS, reducing_gap=3.0)
        # JPEG has no alpha channel
        if thumb.mode != 'RGB':
            thumb = thumb.convert('RGB')

        output = BytesIO()
        thumb.save(output, format=THUMBNAIL_FORMAT, quality=85)

    logger.debug(f"Derived {width}x{height} thumbnail ({output.tell()} bytes)")
    return output.getvalue()
