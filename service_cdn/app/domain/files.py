"""
File classification and presentation helpers.
"""

from typing import Dict, Iterable, List, Optional
from urllib.parse import quote

ALLOWED_TYPES: Dict[str, List[str]] = {
    "image": ["image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml", "image/bmp"],
    "document": [
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ],
    "video": ["video/mp4", "video/webm", "video/ogg"],
    "audio": ["audio/mpeg", "audio/wav", "audio/ogg", "audio/webm"],
    "archive": ["application/zip", "application/x-rar-compressed", "application/x-7z-compressed"],
    "code": ["text/html", "text/css", "application/javascript", "application/json"],
}

ALL_ALLOWED_TYPES: List[str] = [mime for types in ALLOWED_TYPES.values() for mime in types]

_SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def validate_file_type(mimetype: Optional[str], allowed_categories: Optional[Iterable[str]] = None) -> bool:
    """Return True when the MIME type is accepted for upload."""
    if not mimetype:
        return False
    if allowed_categories is not None:
        allowed = [mime for category in allowed_categories for mime in ALLOWED_TYPES.get(category, [])]
        return mimetype in allowed
    return mimetype in ALL_ALLOWED_TYPES


def get_file_category(mimetype: Optional[str]) -> str:
    for category, types in ALLOWED_TYPES.items():
        if mimetype in types:
            return category
    return "other"


def format_file_size(size: int) -> str:
    """Human readable size, e.g. ``1536 -> "1.5 KB"``."""
    if size <= 0:
        return "0 Bytes"
    exponent = 0
    while size >= 1024 ** (exponent + 1) and exponent < len(_SIZE_UNITS) - 1:
        exponent += 1
    value = f"{size / (1024 ** exponent):.2f}".rstrip("0").rstrip(".")
    return f"{value} {_SIZE_UNITS[exponent]}"


def generate_cdn_url(base_url: str, file_id: str, file_name: Optional[str] = None) -> str:
    base = base_url.rstrip("/")
    if file_name:
        return f"{base}/cdn/{quote(file_id, safe='')}/{quote(file_name, safe='')}"
    return f"{base}/cdn/{quote(file_id, safe='')}"


def content_disposition(kind: str, filename: str) -> str:
    """Build a Content-Disposition header value safe for any file name.

    Quotes and backslashes are stripped from the ASCII fallback; the exact
    name travels in the RFC 5987 ``filename*`` parameter.
    """
    fallback = filename.encode("ascii", "replace").decode("ascii")
    fallback = fallback.replace('"', "").replace("\\", "").replace("\r", "").replace("\n", "")
    return f"{kind}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
