import io
import logging
from typing import Iterator, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import InvalidMediaError

logger = logging.getLogger(__name__)

_FORMAT_TO_MIME = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


def inspect_image(image_bytes: bytes) -> Tuple[int, int, Optional[str]]:
    """
    Decode just enough of an upload to prove it is an image.

    Returns: (width, height, mime_type or None when Pillow knows no MIME for the format)
    """
    if not image_bytes:
        raise InvalidMediaError("Empty image")
    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            im.verify()
            width, height = im.size
            fmt = im.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise InvalidMediaError(f"File is not a decodable image ({type(e).__name__})") from e
    return width, height, _FORMAT_TO_MIME.get(fmt or "")


def sniff_mime(image_bytes: bytes, default: str = "image/png") -> str:
    """MIME type of provider output when the response did not declare one."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            return _FORMAT_TO_MIME.get(im.format or "", default)
    except (UnidentifiedImageError, OSError, ValueError):
        return default


def normalize_image_bytes(
    image_bytes: bytes,
    *,
    max_dimension: int = 2048,
    jpeg_quality: int = 90,
) -> Tuple[bytes, str, int, int]:
    """
    Upright (EXIF orientation), fit inside max_dimension and re-encode.

    Alpha channels survive as PNG; everything else becomes JPEG at jpeg_quality.

    Returns: (normalized_bytes, mime_type, width, height)
    """
    if not image_bytes:
        raise InvalidMediaError("Empty image")
    try:
        with Image.open(io.BytesIO(image_bytes)) as opened:
            img = ImageOps.exif_transpose(opened)
            img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidMediaError(f"File is not a decodable image ({type(e).__name__})") from e

    img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    transparent = img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)

    buf = io.BytesIO()
    if transparent:
        img.save(buf, format="PNG", optimize=True)
        mime = "image/png"
    else:
        img.convert("RGB").save(buf, format="JPEG", quality=jpeg_quality, optimize=True, progressive=True)
        mime = "image/jpeg"
    return buf.getvalue(), mime, img.width, img.height


def _shrink_steps(
    max_dimension: int,
    min_dimension: int,
    jpeg_quality: int,
    min_jpeg_quality: int,
    limit: int = 8,
) -> Iterator[Tuple[int, int]]:
    """(dimension, quality) pairs, each about 15% smaller and 6 quality points lower than the last."""
    dimension, quality = max_dimension, jpeg_quality
    for _ in range(limit):
        yield dimension, quality
        if dimension <= min_dimension and quality <= min_jpeg_quality:
            return
        dimension = max(min_dimension, round(dimension * 0.85))
        quality = max(min_jpeg_quality, quality - 6)


def normalize_image_bytes_with_budget(
    image_bytes: bytes,
    *,
    max_bytes: int,
    max_dimension: int = 2048,
    min_dimension: int = 768,
    jpeg_quality: int = 88,
    min_jpeg_quality: int = 70,
) -> Tuple[bytes, str, int, int]:
    """
    Keep re-encoding a reference photo smaller until it fits max_bytes.

    Best-effort: when even the smallest step is over budget, that step is returned.
    """
    if max_bytes <= 0:
        raise ValueError("max_bytes must be positive")

    result: Optional[Tuple[bytes, str, int, int]] = None
    for dimension, quality in _shrink_steps(max_dimension, min_dimension, jpeg_quality, min_jpeg_quality):
        result = normalize_image_bytes(image_bytes, max_dimension=dimension, jpeg_quality=quality)
        if len(result[0]) <= max_bytes:
            return result

    logger.warning(f"Reference photo still {len(result[0])} bytes after shrinking (budget {max_bytes})")
    return result
