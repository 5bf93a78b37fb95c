"""Content fingerprints for media loaded onto the canvas.

Payloads travel as base64 strings, optionally wrapped in a data URL
(``data:image/png;base64,...``). Hashes are always computed over the decoded
bytes so the same image hashes identically in either form.
"""

import base64
import binascii
import hashlib
from typing import Tuple


def split_data_url(payload: str, default_mime: str = "image/png") -> Tuple[str, str]:
    """Split a data URL into (mime_type, base64_body).

    Plain base64 strings are returned with ``default_mime``.
    """
    if payload.startswith("data:") and "," in payload:
        header, body = payload.split(",", 1)
        mime = header[len("data:"):].split(";", 1)[0] or default_mime
        return mime, body
    return default_mime, payload


def decode_payload(payload: str) -> bytes:
    """Decode a base64 payload (bare or data URL) to bytes.

    Raises:
        ValueError: If the payload is not valid base64
    """
    _, body = split_data_url(payload)
    try:
        return base64.b64decode(body, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


def compute_content_hash(payload: str) -> str:
    """SHA-256 hex digest of the decoded payload.

    Args:
        payload: Base64 string or data URL

    Returns:
        SHA-256 hex digest of the decoded bytes
    """
    return hashlib.sha256(decode_payload(payload)).hexdigest()


def to_data_url(payload: str, mime_type: str) -> str:
    """Wrap a bare base64 payload in a data URL (data URLs pass through)."""
    if payload.startswith("data:"):
        return payload
    return f"data:{mime_type};base64,{payload}"
