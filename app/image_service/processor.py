from io import BytesIO
from typing import Dict, Tuple
from PIL import Image, UnidentifiedImageError

from app.image_service.models import ImageFormat, ImagePaths, Orientation
from app.exceptions import InvalidImageException

PIL_FORMATS = {
    "JPEG": ImageFormat.jpeg,
    "MPO": ImageFormat.jpeg,
    "PNG": ImageFormat.png,
    "GIF": ImageFormat.gif,
    "WEBP": ImageFormat.webp,
    "AVIF": ImageFormat.avif,
}

CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "avif": "image/avif",
}

EXTENSIONS = {
    "jpeg": "jpg",
    "jpg": "jpg",
    "png": "png",
    "gif": "gif",
    "webp": "webp",
    "avif": "avif",
}

SUPPORTED_FORMATS = ["jpeg", "jpg", "png", "gif", "webp", "avif"]


def image_info(data: bytes) -> Tuple[ImageFormat, int, int, Orientation]:
    """Reads format and dimensions from the image header."""
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = PIL_FORMATS.get((img.format or "").upper())
            width, height = img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError):
        raise InvalidImageException("Invalid image file")
    if fmt is None:
        raise InvalidImageException("Unsupported image format")
    return fmt, width, height, detect_orientation(width, height)

def detect_orientation(width: int, height: int) -> Orientation:
    return Orientation.landscape if width >= height else Orientation.portrait

def content_type_for(fmt: str) -> str:
    return CONTENT_TYPES.get(fmt, "application/octet-stream")

def extension_for(fmt: str) -> str:
    return EXTENSIONS.get(fmt, fmt)

def generate_paths(image_id: str, orientation: str, fmt: str) -> Dict[str, str]:
    """Storage keys for every variant; existing buckets depend on this layout."""
    return {
        "original": f"original/{orientation}/{image_id}.{fmt}",
        "webp": f"{orientation}/webp/{image_id}.webp",
        "avif": f"{orientation}/avif/{image_id}.avif",
    }

def stored_paths(image_id: str, orientation: str, fmt: str) -> ImagePaths:
    # webp/avif variants are produced by the CDN image proxy, not stored here
    paths = generate_paths(image_id, orientation, fmt)
    return ImagePaths(original=paths["original"])
