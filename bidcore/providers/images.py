"""Resolution of plan image references into raw bytes."""

import base64
import logging
import os
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import requests

from ..utils.errors import ImageLoadError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("png", "jpeg", "gif", "webp")


@dataclass
class ImageInput:
    """
    An image ready to be attached to a model request.

    Attributes:
        data: Raw image bytes
        format: One of SUPPORTED_FORMATS
        source: Short description of where the image came from (for logs)
    """
    data: bytes
    format: str
    source: str = ""


def detect_image_format(image_bytes: bytes) -> Optional[str]:
    """
    Detect image format from magic bytes.

    Args:
        image_bytes: Raw image bytes

    Returns:
        Format string ("jpeg", "png", "gif", "webp") or None if unknown
    """
    if image_bytes.startswith(b'\xff\xd8\xff'):
        return "jpeg"
    elif image_bytes.startswith(b'\x89PNG\r\n\x1a\n'):
        return "png"
    elif image_bytes.startswith(b'GIF87a') or image_bytes.startswith(b'GIF89a'):
        return "gif"
    elif image_bytes.startswith(b'RIFF') and b'WEBP' in image_bytes[:12]:
        return "webp"
    return None


def _to_image(data: bytes, source: str) -> ImageInput:
    if not data:
        raise ValueError("image is empty")
    fmt = detect_image_format(data)
    if fmt is None:
        logger.warning(f"Unknown image format for {source}, defaulting to JPEG")
        fmt = "jpeg"
    return ImageInput(data=data, format=fmt, source=source)


def _decode_data_url(reference: str) -> bytes:
    header, _, payload = reference.partition(",")
    if ";base64" not in header:
        raise ValueError("only base64 data URLs are supported")
    return base64.b64decode(payload, validate=True)


def _fetch_url(url: str, timeout: float) -> bytes:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    return response.content


def load_image(reference: Any, timeout: float = 30) -> ImageInput:
    """
    Resolve one image reference.

    Accepts ImageInput, raw bytes, data URLs, http(s) URLs, local file paths
    and bare base64 strings.

    Raises:
        ImageLoadError: If the reference cannot be resolved
    """
    if isinstance(reference, ImageInput):
        return reference

    source = "<bytes>" if isinstance(reference, (bytes, bytearray)) else str(reference)[:80]
    try:
        if isinstance(reference, (bytes, bytearray)):
            return _to_image(bytes(reference), source)

        if not isinstance(reference, str):
            raise TypeError(f"unsupported image reference type {type(reference).__name__}")

        ref = reference.strip()
        if ref.startswith("data:"):
            return _to_image(_decode_data_url(ref), "data-url")
        if ref.startswith(("http://", "https://")):
            logger.debug(f"Fetching image {ref[:80]}")
            return _to_image(_fetch_url(ref, timeout), ref[:80])
        if os.path.isfile(ref):
            with open(ref, "rb") as f:
                return _to_image(f.read(), ref)
        return _to_image(base64.b64decode(ref, validate=True), "base64")

    except (requests.RequestException, OSError, ValueError, TypeError) as e:
        raise ImageLoadError.from_reference(source, e)


def load_images(references: Sequence[Any], timeout: float = 30) -> List[ImageInput]:
    images = [load_image(ref, timeout=timeout) for ref in references]
    logger.debug(f"Resolved {len(images)} image(s)")
    return images
