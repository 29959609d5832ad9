"""
Local storage for images attached to posts.

Uploaded files live under ``MEDIA_UPLOAD_DIR/<user_id>/`` and posts reference
them by that relative path. Platform media ids are never stored: each publish
attempt uploads the bytes to the target platform and uses the id it hands back.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Sequence, Tuple

from config import settings
from services.errors import MediaError

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
_EXTENSION_FOR_MIME = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def media_root() -> Path:
    return Path(settings.MEDIA_UPLOAD_DIR)


def image_extension(filename: str, content_type: str) -> str:
    """Pick a stored extension from the filename, falling back to the MIME type."""
    suffix = PurePosixPath(filename or "").suffix.lower()
    if suffix in IMAGE_MIME_TYPES:
        return suffix
    extension = _EXTENSION_FOR_MIME.get((content_type or "").split(";")[0].strip().lower())
    if extension is None:
        raise MediaError("Unsupported image type. Upload a jpg, png, gif or webp file.")
    return extension


def new_media_path(user_id: str, extension: str) -> str:
    return f"{user_id}/{uuid.uuid4()}{extension}"


def validate_media_paths(user_id: str, paths: Sequence[str]) -> List[str]:
    """
    Check that every reference is a well-formed path owned by ``user_id``.

    Raises:
        MediaError: too many items, a foreign or malformed path, or an
            unsupported extension
    """
    limit = max(int(settings.MEDIA_MAX_ITEMS_PER_POST), 0)
    if len(paths) > limit:
        raise MediaError(f"A post can carry at most {limit} images")
    cleaned: List[str] = []
    for raw in paths:
        path = PurePosixPath(str(raw).strip())
        if path.is_absolute() or ".." in path.parts or len(path.parts) != 2 or path.parts[0] != user_id:
            raise MediaError(f"Unknown media reference '{raw}'")
        if path.suffix.lower() not in IMAGE_MIME_TYPES:
            raise MediaError(f"Unsupported image type for '{raw}'")
        if str(path) not in cleaned:
            cleaned.append(str(path))
    return cleaned


def load_media(user_id: str, relative_path: str) -> Tuple[bytes, str]:
    """Read a stored image, returning its bytes and MIME type."""
    (clean,) = validate_media_paths(user_id, [relative_path])
    location = media_root() / clean
    if not location.is_file():
        raise MediaError(f"Media file '{relative_path}' no longer exists")
    return location.read_bytes(), IMAGE_MIME_TYPES[location.suffix.lower()]


def discard_media(relative_paths: Iterable[str]) -> None:
    """Best-effort removal of stored images once every platform has them."""
    root = media_root()
    for relative in relative_paths:
        try:
            (root / relative).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove media file %s: %s", relative, exc)
