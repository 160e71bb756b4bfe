from __future__ import annotations

import base64
import io
import mimetypes
import uuid
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError
from pillow_heif import register_heif_opener

register_heif_opener()

_MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/pjpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/bmp": ".bmp",
    "image/tiff": ".tif",
    "image/heic": ".heic",
    "image/heif": ".heif",
}

_PIL_FORMAT_EXTENSIONS = {
    "JPEG": ".jpg",
    "PNG": ".png",
    "WEBP": ".webp",
    "GIF": ".gif",
    "BMP": ".bmp",
    "TIFF": ".tif",
    "HEIF": ".heic",
}

DEFAULT_EXTENSION = ".bin"
# suffixes the service writes for its own bookkeeping
RESERVED_EXTENSIONS = (".json", ".tmp", ".part")


class UploadTooLarge(Exception):
    def __init__(self, limit: int) -> None:
        super().__init__(f"image exceeds the {limit // (1024 * 1024)}MB limit")
        self.limit = limit


def _from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    mime = content_type.split(";")[0].strip().lower()
    if mime in _MIME_EXTENSIONS:
        return _MIME_EXTENSIONS[mime]
    if mime.startswith("image/"):
        return mimetypes.guess_extension(mime)
    return None


def _from_filename(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    suffix = Path(filename).suffix.lower()
    if not suffix or len(suffix) > 6 or not suffix[1:].isalnum() or suffix in RESERVED_EXTENSIONS:
        return None
    return ".jpg" if suffix == ".jpeg" else suffix


def _from_bytes(data: bytes) -> Optional[str]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    return _PIL_FORMAT_EXTENSIONS.get(fmt or "")


def guess_extension(content_type: Optional[str], filename: Optional[str], data: bytes = b"") -> str:
    """MIME type first, then the client's filename, then the bytes themselves."""
    return _from_content_type(content_type) or _from_filename(filename) or _from_bytes(data) or DEFAULT_EXTENSION


def media_type_for(path: Path) -> str:
    mime, _ = mimetypes.guess_type(path.name)
    return mime or "application/octet-stream"


def check_size(data: bytes, limit: int) -> None:
    if len(data) > limit:
        raise UploadTooLarge(limit)


def store_upload(uploads_dir: Path, data: bytes, extension: str, stem: Optional[str] = None) -> Path:
    uploads_dir.mkdir(parents=True, exist_ok=True)
    path = uploads_dir / f"{stem or uuid.uuid4()}{extension}"
    path.write_bytes(data)
    return path


def to_data_uri(path: Path) -> str:
    mime = media_type_for(path)
    payload = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{payload}"
