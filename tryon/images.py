"""Input image decoding for try-on requests.

Clients send images either as raw bytes, plain base64, or a
``data:image/...;base64,`` URL. Everything is normalised to bytes plus a
mime type sniffed from the file signature.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from tryon.errors import InvalidInput

# (signature, offset, mime type)
_SIGNATURES: list[tuple[bytes, int, str]] = [
    (b"\xff\xd8\xff", 0, "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", 0, "image/png"),
    (b"GIF87a", 0, "image/gif"),
    (b"GIF89a", 0, "image/gif"),
    (b"WEBP", 8, "image/webp"),
]


@dataclass(frozen=True)
class ImagePayload:
    """Decoded image bytes with their detected mime type."""

    data: bytes
    mime_type: str

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


def sniff_mime_type(data: bytes) -> str | None:
    """Detect an image mime type from its leading bytes."""
    for signature, offset, mime_type in _SIGNATURES:
        if data[offset:offset + len(signature)] == signature:
            if mime_type == "image/webp" and not data.startswith(b"RIFF"):
                continue
            return mime_type
    return None


def decode_image(value: bytes | str | None, field: str = "image") -> ImagePayload:
    """Decode and validate one input image.

    Args:
        value: Raw bytes, base64 string, or data URL.
        field: Name used in the error detail.

    Returns:
        ImagePayload

    Raises:
        InvalidInput: If the value is empty, not base64, or not a known image format.
    """
    if not value:
        raise InvalidInput(f"{field} is missing")

    if isinstance(value, str):
        # Drop a data:image/...;base64, prefix if present
        encoded = value.split(",", 1)[1] if "," in value else value
        try:
            data = base64.b64decode(encoded.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidInput(f"{field} is not valid base64") from e
    else:
        data = bytes(value)

    mime_type = sniff_mime_type(data)
    if mime_type is None:
        raise InvalidInput(f"{field} is not a decodable image")

    return ImagePayload(data=data, mime_type=mime_type)
