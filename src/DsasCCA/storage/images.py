"""Base64 data-URL helpers and AVIF transcoding for activity photos."""

from __future__ import annotations

import base64
import binascii
import io
import logging
from typing import NamedTuple, Optional

from PIL import Image

logger = logging.getLogger(__name__)

# (data-URL prefix, file extension, content type)
IMAGE_MARKERS = (
    ("data:image/png;base64,", "png", "image/png"),
    ("data:image/jpeg;base64,", "jpeg", "image/jpeg"),
    ("data:image/jpg;base64,", "jpg", "image/jpeg"),
    ("data:image/gif;base64,", "gif", "image/gif"),
    ("data:image/svg+xml;base64,", "svg", "image/svg+xml"),
    ("data:image/webp;base64,", "webp", "image/webp"),
)

CONTENT_TYPES = {fmt: content_type for _, fmt, content_type in IMAGE_MARKERS}

AVIF_FORMAT = "avif"
AVIF_CONTENT_TYPE = "image/avif"
AVIF_QUALITY = 80


class EmbeddedImage(NamedTuple):
    base64_content: str
    format: str

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.format]


def is_data_url(value: object) -> bool:
    return isinstance(value, str) and value.startswith("data:image")


def extract_base64_image(data_url: object) -> Optional[EmbeddedImage]:
    """Split ``data:image/<fmt>;base64,<payload>`` into payload and format.

    Returns ``None`` for non-image strings and for image formats that are not
    recognized.
    """
    if not isinstance(data_url, str) or not data_url.startswith("data:image/"):
        return None
    for prefix, fmt, _ in IMAGE_MARKERS:
        if data_url.startswith(prefix):
            logger.debug(f"Found embedded image of format {fmt}")
            return EmbeddedImage(data_url[len(prefix) :], fmt)
    logger.warning(f"No known base64 image marker in data URL {data_url[:50]}...")
    return None


def decode_base64_image(base64_content: str) -> bytes:
    """Decode a base64 payload.

    Raises:
        ValueError: If the payload is not valid base64
    """
    try:
        return base64.b64decode(base64_content, validate=False)
    except binascii.Error as exc:
        raise ValueError(f"Invalid base64 image payload: {exc}") from exc


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info


def transcode_to_avif(data: bytes, quality: int = AVIF_QUALITY) -> bytes:
    """Re-encode raster image bytes as AVIF.

    Raises:
        ValueError: If the bytes are not a decodable raster image or the
            encoder is unavailable
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            if image.mode not in ("RGB", "RGBA"):
                frame = image.convert("RGBA" if _has_alpha(image) else "RGB")
            else:
                frame = image
            buffer = io.BytesIO()
            frame.save(buffer, format="AVIF", quality=quality)
    except (OSError, KeyError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Could not transcode image to AVIF: {exc}") from exc
    logger.debug(f"Transcoded {len(data)} bytes to {buffer.tell()} bytes of AVIF")
    return buffer.getvalue()
