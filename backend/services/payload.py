"""
Convert uploaded images into the inline base64 form the provider APIs expect.
"""

import re
import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict

from .errors import InvalidInputError, InvalidMediaError

ACCEPTED_MIME_TYPES = {"image/png", "image/jpeg"}
MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg", "image/x-png": "image/png"}

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


@dataclass(frozen=True)
class UploadedImage:
    content: bytes
    mime_type: str
    origin: str

    def __repr__(self) -> str:
        return f"UploadedImage(origin={self.origin!r}, mime_type={self.mime_type!r}, size={len(self.content)})"


@dataclass(frozen=True)
class EncodedImage:
    base64_data: str
    mime_type: str
    origin: str = "friend"

    def __repr__(self) -> str:
        return f"EncodedImage(origin={self.origin!r}, mime_type={self.mime_type!r}, chars={len(self.base64_data)})"


def canonical_mime(mime_type: str) -> str:
    mime = (mime_type or "").split(";")[0].strip().lower()
    return MIME_ALIASES.get(mime, mime)


def check_upload(upload: UploadedImage) -> str:
    """
    Canonical MIME type of an acceptable upload.

    Raises:
        InvalidMediaError: the content is empty or the declared type is not PNG/JPEG.
    """
    if not upload.content:
        raise InvalidMediaError(f"{upload.origin} image is empty")
    mime = canonical_mime(upload.mime_type)
    if mime not in ACCEPTED_MIME_TYPES:
        raise InvalidMediaError(
            f"{upload.origin} image has unsupported type {upload.mime_type!r}. Allowed: image/png, image/jpeg"
        )
    return mime


def encode_image(upload: UploadedImage) -> EncodedImage:
    """Base64-encode an upload for an inline_data part."""
    mime = check_upload(upload)
    return EncodedImage(
        base64_data=base64.b64encode(upload.content).decode("ascii"),
        mime_type=mime,
        origin=upload.origin,
    )


def parse_data_url(value: Any, origin: str = "friend") -> UploadedImage:
    """
    Parse a `data:<mime>;base64,<payload>` string coming from the JSON API.
    """
    if not value:
        raise InvalidInputError("Image is required")
    if not isinstance(value, str) or not value.startswith("data:"):
        raise InvalidInputError("Invalid image data URL format")

    header, sep, data = value.partition(",")
    if not sep:
        raise InvalidInputError("Malformed image data URL")

    data = re.sub(r"\s", "", data)
    if not data or not _BASE64_RE.match(data):
        raise InvalidInputError("Image data is empty or not valid base64")
    try:
        content = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidInputError("Image data is empty or not valid base64") from None

    mime = canonical_mime(header[len("data:"):].split(";")[0]) or "image/png"
    return UploadedImage(content=content, mime_type=mime, origin=origin)


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def inline_part(image: EncodedImage) -> Dict[str, Any]:
    return {"inline_data": {"mime_type": image.mime_type, "data": image.base64_data}}
