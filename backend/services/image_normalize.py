import io
import logging
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)


def _try_register_heif() -> bool:
    """
    Try to enable HEIC/HEIF decoding in Pillow via pillow-heif (the `heif` extra).
    Swiped photos straight from an iPhone are usually HEIC.
    """
    try:
        import pillow_heif  # type: ignore
    except ImportError:
        return False
    pillow_heif.register_heif_opener()
    return True


_HEIF_REGISTERED: Optional[bool] = None


def ensure_heif_registered() -> bool:
    global _HEIF_REGISTERED
    if _HEIF_REGISTERED is None:
        _HEIF_REGISTERED = _try_register_heif()
        if _HEIF_REGISTERED:
            logger.info("pillow-heif enabled: HEIC/HEIF decoding available")
        else:
            logger.info("pillow-heif not available: HEIC/HEIF decoding NOT available")
    return bool(_HEIF_REGISTERED)


def sniff_mime(image_bytes: bytes) -> str:
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def optimize_image_for_api(
    image_bytes: bytes,
    *,
    max_dimension: int = 768,
    jpeg_quality: int = 70,
) -> Tuple[bytes, str]:
    """
    Shrink an image before it is sent to the analysis model.

    Images already within `max_dimension` on both sides are passed through untouched.
    Larger ones get EXIF orientation applied, are downscaled (keeping aspect ratio)
    so the longest side equals `max_dimension`, and are re-encoded as JPEG.
    Undecodable bytes are passed through as-is; the model endpoint will reject them.

    Returns: (bytes, mime_type)
    """
    if not image_bytes:
        raise ValueError("Empty image")

    ensure_heif_registered()

    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            width, height = im.size
            if width <= max_dimension and height <= max_dimension and im.format in ("JPEG", "PNG", "WEBP"):
                return image_bytes, sniff_mime(image_bytes)

            im = ImageOps.exif_transpose(im)
            longest = max(im.size)
            if longest > max_dimension:
                scale = max_dimension / float(longest)
                new_size = (max(1, int(round(im.width * scale))), max(1, int(round(im.height * scale))))
                im = im.resize(new_size, Image.Resampling.LANCZOS)

            # Flatten alpha onto white; JPEG has no transparency.
            if im.mode in ("RGBA", "LA") or (im.mode == "P" and "transparency" in (im.info or {})):
                rgba = im.convert("RGBA")
                rgb = Image.new("RGB", rgba.size, (255, 255, 255))
                rgb.paste(rgba, mask=rgba.split()[-1])
            else:
                rgb = im.convert("RGB")

            out = io.BytesIO()
            rgb.save(out, format="JPEG", quality=jpeg_quality, optimize=True)
            logger.debug(f"Optimized image {width}x{height} -> {rgb.width}x{rgb.height} ({len(out.getvalue())} bytes)")
            return out.getvalue(), "image/jpeg"
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Could not decode image for optimization, sending original bytes: {e}")
        return image_bytes, sniff_mime(image_bytes)
