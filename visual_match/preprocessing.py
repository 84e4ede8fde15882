"""
Image intake and preprocessing for embedding extraction.

Turns whatever the caller supplied (raw upload bytes, an http(s) URL or a
base64 data URL) into a decoded RGB array, and provides the crop-to-fill
resize used to bring every image to the same square before feature
extraction. Formats are identified from their magic bytes only; declared
content types are never trusted.
"""

import base64
import binascii
import io
import logging
from typing import Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image

from .errors import ImageDecodeError, InvalidImageSourceError

logger = logging.getLogger(__name__)

ImageSource = Union[bytes, bytearray, memoryview, str]

# Magic-byte signatures, checked in order
_SIGNATURES = (
    (b"\xff\xd8\xff", "jpeg"),
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
    (b"BM", "bmp"),
    (b"II*\x00", "tiff"),
    (b"MM\x00*", "tiff"),
)

MIME_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
}


def detect_image_format(data: bytes) -> Optional[str]:
    """Identify the raster format from leading bytes, or None if unknown."""
    if not data:
        return None
    # WebP is a RIFF container: "RIFF" <size> "WEBP"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    for signature, fmt in _SIGNATURES:
        if data.startswith(signature):
            return fmt
    return None


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 RGB format."""
    if image_np.dtype != np.uint8:
        if image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    elif image_np.shape[2] == 4:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)
    return image_np


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode raw image bytes into an RGB uint8 array.

    Every image is decoded to exactly three channels, so grayscale and
    alpha images produce embeddings of the same dimension as colour ones.
    GIF goes through Pillow since OpenCV has no GIF reader.

    Raises:
        ImageDecodeError: If the bytes are not a recognised, decodable image.
    """
    fmt = detect_image_format(data)
    if fmt is None:
        raise ImageDecodeError("Unrecognized image signature")

    if fmt == "gif":
        image = _decode_with_pillow(data)
    else:
        try:
            buffer = np.frombuffer(data, dtype=np.uint8)
            image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        except cv2.error as e:
            raise ImageDecodeError(f"Could not decode {fmt} image: {e}") from e
        if image is None:
            raise ImageDecodeError(f"Could not decode {fmt} image")
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    if image.size == 0:
        raise ImageDecodeError("Decoded image is empty")

    logger.debug(f"Decoded {fmt} image {image.shape[1]}x{image.shape[0]}")
    return image


def _decode_with_pillow(data: bytes) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.seek(0)
            return np.asarray(img.convert("RGB"), dtype=np.uint8)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(f"Could not decode image: {e}") from e


def extract_center_patch(image_np: np.ndarray,
                         aspect_ratio: float = 1.0) -> np.ndarray:
    """
    Extract the largest centred patch with the given width/height ratio.

    This is the crop half of a crop-to-fill resize: the image is trimmed
    symmetrically along its longer side instead of being letterboxed.

    Args:
        image_np: RGB uint8 image.
        aspect_ratio: Desired patch width divided by height.

    Returns:
        Cropped image patch (a view into image_np).
    """
    h, w = image_np.shape[:2]

    if w / h > aspect_ratio:
        patch_w, patch_h = max(1, int(round(h * aspect_ratio))), h
    else:
        patch_w, patch_h = w, max(1, int(round(w / aspect_ratio)))

    x1 = (w - patch_w) // 2
    y1 = (h - patch_h) // 2
    return image_np[y1:y1 + patch_h, x1:x1 + patch_w]


def resize_to_fill(image_np: np.ndarray, width: int, height: int) -> np.ndarray:
    """Crop-to-fill resize to exactly (height, width)."""
    patch = extract_center_patch(image_np, width / height)
    ph, pw = patch.shape[:2]
    # INTER_AREA for shrinking, linear when upsampling tiny images
    interpolation = cv2.INTER_AREA if pw >= width and ph >= height else cv2.INTER_LINEAR
    return cv2.resize(patch, (width, height), interpolation=interpolation)


def decode_data_url(data_url: str) -> bytes:
    """
    Decode a ``data:image/...;base64,...`` URL into raw bytes.

    The declared MIME type is ignored; the decoder sniffs the payload.
    """
    header, sep, payload = data_url.partition(",")
    if not sep or not header.startswith("data:image"):
        raise InvalidImageSourceError("Malformed image data URL")
    if not header.endswith(";base64"):
        raise InvalidImageSourceError("Only base64 image data URLs are supported")

    try:
        return base64.b64decode(payload.strip())
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError(f"Invalid base64 payload in data URL: {e}") from e


def encode_data_url(data: bytes) -> str:
    """Inline image bytes as a data URL, using the sniffed MIME type."""
    fmt = detect_image_format(data)
    if fmt is None:
        raise ImageDecodeError("Unrecognized image signature")
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{MIME_TYPES[fmt]};base64,{encoded}"


def resolve_image_source(source: ImageSource) -> Tuple[Optional[bytes], Optional[str]]:
    """
    Normalize a match request's image into bytes or a fetchable URL.

    Returns:
        Tuple of (image_bytes, url); exactly one is not None.

    Raises:
        InvalidImageSourceError: For empty input or unsupported URL schemes.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        if not data:
            raise InvalidImageSourceError("No image provided")
        return data, None

    if isinstance(source, str):
        value = source.strip()
        if value.startswith("data:image"):
            return decode_data_url(value), None
        if value.startswith("http://") or value.startswith("https://"):
            return None, value
        raise InvalidImageSourceError(
            "Invalid URL. Please provide a valid HTTP or HTTPS image URL."
        )

    raise InvalidImageSourceError(f"Unsupported image source type: {type(source).__name__}")
