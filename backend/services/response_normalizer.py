"""
Locate and decode the image inside a provider response.

Provider response shapes differ between models and API versions and are not
documented reliably, so extraction is a fixed, ordered list of structural
hypotheses. Each hypothesis is a pure function `raw -> Optional[Match]`; the
first one that matches decides where the image is read from.
"""

import re
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from .errors import EmptyOutputError, UnparsableResponseError
from .image_normalize import sniff_mime

logger = logging.getLogger(__name__)

ARRAY_KEYS = ("images", "predictions", "generatedImages", "generated_images", "artifacts", "outputs", "results")

# Field priority when decoding a matched candidate.
DIRECT_KEYS = ("b64_json",)
ALTERNATE_KEYS = ("bytesBase64Encoded", "imageBytes", "base64", "image_base64", "data")
WRAPPER_KEYS = ("image", "generatedImage", "generated_image", "inlineData", "inline_data")
WRAPPED_KEYS = ("imageBytes", "bytesBase64Encoded", "b64_json", "data")
BARE_KEYS = ("image",)

IMAGE_LIKE_KEYS = set(DIRECT_KEYS + ALTERNATE_KEYS + WRAPPER_KEYS + WRAPPED_KEYS)

_MAX_FIELDS_IN_ERROR = 20


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str

    def __repr__(self) -> str:
        return f"GeneratedImage(mime_type={self.mime_type!r}, size={len(self.data)})"


@dataclass(frozen=True)
class Match:
    """Where a hypothesis found the image: an array of candidates or a single object."""

    items: Optional[List[Any]] = None
    obj: Any = None
    detail: str = ""


def _field_names(value: Any) -> str:
    if isinstance(value, dict):
        keys = sorted(str(k) for k in value.keys())
        shown = keys[:_MAX_FIELDS_IN_ERROR]
        more = f", ... (+{len(keys) - len(shown)})" if len(keys) > len(shown) else ""
        return "[" + ", ".join(shown) + more + "]"
    if isinstance(value, list):
        return f"<array of {len(value)}>"
    return f"<{type(value).__name__}>"


def _carries_image_field(obj: Any) -> bool:
    if not isinstance(obj, dict):
        return False
    for key in DIRECT_KEYS + ALTERNATE_KEYS + BARE_KEYS:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return True
    return any(isinstance(obj.get(key), dict) for key in WRAPPER_KEYS)


def _candidate_parts(candidate: Any) -> List[dict]:
    """Dict parts of one generateContent candidate; any other shape yields none."""
    if not isinstance(candidate, dict):
        return []
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


# --- hypotheses, in priority order ---

def gemini_parts(raw: Any) -> Optional[Match]:
    """Gemini generateContent: candidates[*].content.parts[*].inlineData."""
    if not isinstance(raw, dict):
        return None
    candidates = raw.get("candidates")
    if not isinstance(candidates, list):
        feedback = raw.get("promptFeedback")
        if isinstance(feedback, dict) and candidates is None:
            return Match(items=[], detail=f"blockReason={feedback.get('blockReason')}")
        return None

    images = []
    finish_reasons = []
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        finish_reasons.append(candidate.get("finishReason") or candidate.get("finish_reason"))
        for part in _candidate_parts(candidate):
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and inline.get("data"):
                images.append(inline)
    reasons = ",".join(str(r) for r in finish_reasons if r)
    return Match(items=images, detail=f"finishReason={reasons}" if reasons else "")


def top_level_array(raw: Any) -> Optional[Match]:
    if not isinstance(raw, dict):
        return None
    for key in ARRAY_KEYS:
        if isinstance(raw.get(key), list):
            return Match(items=raw[key], detail=key)
    return None


def data_wrapper(raw: Any) -> Optional[Match]:
    if not isinstance(raw, dict):
        return None
    data = raw.get("data")
    if isinstance(data, list):
        return Match(items=data, detail="data")
    if isinstance(data, dict):
        for key in ARRAY_KEYS:
            if isinstance(data.get(key), list):
                return Match(items=data[key], detail=f"data.{key}")
    return None


def bare_array(raw: Any) -> Optional[Match]:
    if isinstance(raw, list):
        return Match(items=raw)
    return None


def direct_object(raw: Any) -> Optional[Match]:
    if _carries_image_field(raw):
        return Match(obj=raw)
    return None


def nested_field(raw: Any) -> Optional[Match]:
    if not isinstance(raw, dict):
        return None
    for key, value in raw.items():
        if isinstance(value, dict) and IMAGE_LIKE_KEYS.intersection(value.keys()):
            return Match(obj=value, detail=str(key))
    return None


HYPOTHESES: Tuple[Tuple[str, Callable[[Any], Optional[Match]]], ...] = (
    ("gemini_parts", gemini_parts),
    ("top_level_array", top_level_array),
    ("data_wrapper", data_wrapper),
    ("bare_array", bare_array),
    ("direct_object", direct_object),
    ("nested_field", nested_field),
)


# --- decoding a matched candidate ---

def _split_data_url(value: str, mime: Optional[str]) -> Tuple[str, Optional[str]]:
    if value.startswith("data:") and "," in value:
        header, _, data = value.partition(",")
        return data, header[len("data:"):].split(";")[0] or mime
    return value, mime


def _declared_mime(obj: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def decode_fields(item: Any) -> Optional[Tuple[str, Optional[str]]]:
    """
    First non-empty base64 string in a candidate, with its declared MIME type if any.

    Priority: direct field, alternate-name fields, nested generated-image wrapper, bare image field.
    """
    if isinstance(item, str):
        return _split_data_url(item, None) if item else None
    if not isinstance(item, dict):
        return None

    mime = _declared_mime(item, "mimeType", "mime_type", "content_type")

    for key in DIRECT_KEYS + ALTERNATE_KEYS:
        value = item.get(key)
        if isinstance(value, str) and value:
            return _split_data_url(value, mime)

    for key in WRAPPER_KEYS:
        wrapper = item.get(key)
        if not isinstance(wrapper, dict):
            continue
        wrapped_mime = _declared_mime(wrapper, "mimeType", "mime_type") or mime
        for inner in WRAPPED_KEYS:
            value = wrapper.get(inner)
            if isinstance(value, str) and value:
                return _split_data_url(value, wrapped_mime)

    for key in BARE_KEYS:
        value = item.get(key)
        if isinstance(value, str) and value:
            return _split_data_url(value, mime)
    return None


def extract_image_base64(raw: Any) -> Tuple[str, Optional[str]]:
    """
    Returns: (base64_string, declared_mime_type_or_None)

    Raises:
        EmptyOutputError: the response holds an image array, but it is empty.
        UnparsableResponseError: no hypothesis matched, or the match has no image field.
    """
    for name, hypothesis in HYPOTHESES:
        match = hypothesis(raw)
        if match is None:
            continue

        if match.items is not None:
            if not match.items:
                detail = f" ({match.detail})" if match.detail else ""
                raise EmptyOutputError(f"provider produced no output image [{name}]{detail}")
            for item in match.items:
                found = decode_fields(item)
                if found:
                    logger.debug(f"Image located via {name}")
                    return found
            raise UnparsableResponseError(
                f"matched {name} but no item carries a base64 image; first item fields: {_field_names(match.items[0])}"
            )

        found = decode_fields(match.obj)
        if found:
            logger.debug(f"Image located via {name}")
            return found
        raise UnparsableResponseError(f"matched {name} but found no base64 image; fields: {_field_names(match.obj)}")

    raise UnparsableResponseError(f"no image found in provider response; top-level fields: {_field_names(raw)}")


def decode_base64_image(data: str) -> bytes:
    cleaned = re.sub(r"\s", "", data)
    # Some providers drop the padding.
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        decoded = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError):
        try:
            decoded = base64.urlsafe_b64decode(cleaned)
        except (binascii.Error, ValueError):
            raise UnparsableResponseError("image field is not valid base64") from None
    if not decoded:
        raise UnparsableResponseError("image field decoded to zero bytes")
    return decoded


def extract_image(raw: Any) -> GeneratedImage:
    b64, mime = extract_image_base64(raw)
    data = decode_base64_image(b64)
    return GeneratedImage(data=data, mime_type=mime or sniff_mime(data))


def extract_text(raw: Any) -> str:
    """First non-empty text part of a generateContent response ("" when there is none)."""
    if not isinstance(raw, dict):
        return ""
    candidates = raw.get("candidates")
    for candidate in candidates if isinstance(candidates, list) else []:
        for part in _candidate_parts(candidate):
            if isinstance(part.get("text"), str) and part["text"].strip():
                return part["text"].strip()
    text = raw.get("text")
    return text.strip() if isinstance(text, str) else ""
