"""Directory-backed storage for payment receipt images.

Payments only keep the stored file name as a weak reference; the files
themselves live under the configured receipts directory.
"""

from __future__ import annotations

import base64
import binascii
import re
import secrets
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional, Tuple

from werkzeug.utils import secure_filename

from . import log
from .constants import (
    ALLOWED_RECEIPT_CONTENT_TYPES,
    ALLOWED_RECEIPT_EXTENSIONS,
    DEFAULT_RECEIPT_MAX_BYTES,
)
from .errors import MissingReferenceError, UnsupportedMedia


_EXTENSION_BY_CONTENT_TYPE = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
_DATA_URL = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)


def normalize_content_type(hint: Optional[str]) -> str:
    """Lower-case a content type and drop parameters such as ``charset``."""

    if not hint:
        return ""
    return hint.split(";", 1)[0].strip().lower()


def validate_receipt(
    data: bytes,
    content_type_hint: Optional[str],
    *,
    filename: Optional[str] = None,
    max_bytes: int = DEFAULT_RECEIPT_MAX_BYTES,
) -> str:
    """Check an upload against the receipt rules and return its content type.

    Raises:
        UnsupportedMedia: If the upload is empty, larger than ``max_bytes``,
            not a JPEG/PNG/GIF/WebP image, or carries a non-image extension.
    """

    content_type = normalize_content_type(content_type_hint)
    if content_type not in ALLOWED_RECEIPT_CONTENT_TYPES:
        raise UnsupportedMedia(
            f"Invalid file type. Only JPEG, PNG, GIF, and WebP images are allowed. Received: {content_type or 'unknown'}"
        )
    if filename:
        extension = Path(filename).suffix.lower()
        if extension and extension not in ALLOWED_RECEIPT_EXTENSIONS:
            raise UnsupportedMedia(f"Invalid file extension '{extension}' for a receipt image")
    if not data:
        raise UnsupportedMedia("Receipt image is empty")
    if len(data) > max_bytes:
        raise UnsupportedMedia(
            f"File too large. Maximum size is {max_bytes} bytes, received {len(data)}",
            too_large=True,
        )
    return content_type


def _stored_name(content_type: str, filename: Optional[str]) -> str:
    original = secure_filename(filename) if filename else ""
    extension = Path(original).suffix.lower()
    if extension not in ALLOWED_RECEIPT_EXTENSIONS:
        extension = _EXTENSION_BY_CONTENT_TYPE[content_type]
    base = Path(original).stem[:50] or "receipt"
    stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S%f")
    return f"receipt-{stamp}-{secrets.token_hex(4)}-{base}{extension}"


def store_receipt_image(
    directory: Path,
    data: bytes,
    content_type_hint: Optional[str],
    *,
    filename: Optional[str] = None,
    max_bytes: int = DEFAULT_RECEIPT_MAX_BYTES,
) -> str:
    """Validate and write a receipt image, returning its path reference.

    Args:
        directory (Path): Receipts directory; created on demand.
        data (bytes): Raw image bytes.
        content_type_hint (str | None): MIME type declared by the uploader.
        filename (str | None): Original file name, used for the extension and
            a sanitised readable part of the stored name.
        max_bytes (int): Upper size limit.

    Returns:
        str: Unique stored file name, to be kept on the payment row.

    Raises:
        UnsupportedMedia: See :func:`validate_receipt`.
    """

    content_type = validate_receipt(data, content_type_hint, filename=filename, max_bytes=max_bytes)
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    name = _stored_name(content_type, filename)
    (directory / name).write_bytes(data)
    log.info("Stored receipt image '%s' (%d bytes, %s)", name, len(data), content_type)
    return name


def decode_data_url(data_url: str) -> Tuple[str, bytes]:
    """Split a ``data:<mime>;base64,<payload>`` string into type and bytes.

    Raises:
        UnsupportedMedia: If the string is not a base64 data URL.
    """

    match = _DATA_URL.match(data_url.strip()) if data_url else None
    if match is None:
        raise UnsupportedMedia("Receipt must be a base64 data URL")
    try:
        payload = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise UnsupportedMedia("Receipt data URL is not valid base64") from exc
    return match.group(1), payload


def resolve_receipt_path(directory: Path, reference: str) -> Path:
    """Map a stored reference back to a file inside ``directory``.

    Raises:
        MissingReferenceError: If the reference tries to leave the receipts
            directory or names a file that does not exist.
    """

    name = Path(reference or "").name
    if not name or name != reference or name in {".", ".."}:
        log.warning("Rejected receipt reference '%s'", reference)
        raise MissingReferenceError(f"Invalid receipt reference: {reference!r}")

    root = Path(directory).resolve()
    candidate = (root / name).resolve()
    if candidate.parent != root or not candidate.is_file():
        raise MissingReferenceError(f"Receipt image not found: {name}")
    return candidate


def discard_receipt_image(directory: Path, reference: str) -> None:
    """Remove a stored receipt; used when the payment it belonged to failed."""

    name = Path(reference).name
    if not name or name != reference:
        return
    (Path(directory) / name).unlink(missing_ok=True)
    log.info("Discarded receipt image '%s'", name)


__all__ = [
    "normalize_content_type",
    "validate_receipt",
    "store_receipt_image",
    "decode_data_url",
    "resolve_receipt_path",
    "discard_receipt_image",
]
