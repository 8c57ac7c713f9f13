from __future__ import annotations

import io

from PIL import Image, ImageOps, UnidentifiedImageError

from services.errors import InvalidImage

DEFAULT_JPEG_QUALITY = 70


def encode_jpeg(image_data: bytes, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """Decode any Pillow-readable image and re-encode it as JPEG."""
    if not image_data:
        raise InvalidImage("Image payload is empty")
    try:
        with Image.open(io.BytesIO(image_data)) as source:
            source.load()
            img = ImageOps.exif_transpose(source)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise InvalidImage(f"Failed to convert image to JPEG data: {exc}") from exc
    return out.getvalue()
