"""
Gemini / Vertex AI model calls used by the compose pipeline.

Both steps walk an ordered model list with the fallback resolver:

- describe_subject: vision model turns the reference photo into a short text description
- generate_composite: image model renders the composite (Gemini generateContent with
  responseModalities, or Imagen :predict with reference images for inpainting)
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import httpx

from .credentials import ProviderClient, get_provider_client
from .errors import (
    ModelUnavailableError,
    ProviderHTTPError,
    ProviderError,
    UnparsableResponseError,
    UpstreamFault,
)
from .fallback import Exhausted, continue_on_any_error, continue_unless_fatal, first_success
from .payload import EncodedImage, inline_part
from .prompts import VISION_PROMPT
from .response_normalizer import GeneratedImage, extract_image, extract_text
from .settings import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

VISION_STEP = "vision description"
GENERATION_STEP = "image generation"

# 400 INVALID_ARGUMENT with one of these means "this model can't do that", not "our request is broken".
_UNSUPPORTED_MODEL_HINTS = ("not supported", "does not support", "response modalit", "is not found", "unsupported")


@dataclass(frozen=True)
class VisionResult:
    text: str
    model: str
    attempts: int


@dataclass(frozen=True)
class GenerationResult:
    image: GeneratedImage
    model: str
    text: str
    attempts: int


async def _gemini_post_json(
    client: httpx.AsyncClient,
    *,
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, Any],
) -> httpx.Response:
    """
    Thin wrapper for provider HTTP calls so tests can monkeypatch the network away.
    """
    return await client.post(url, headers=headers, json=payload)


def _error_info(response: Any) -> tuple:
    """(status_name, message) from a Google API error body, falling back to raw text."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        err = body["error"]
        return str(err.get("status") or ""), str(err.get("message") or "")[:300]
    return "", (getattr(response, "text", "") or "")[:300]


def classify_http_error(model: str, response: Any, *, step: str) -> ProviderHTTPError:
    """
    Map a non-2xx provider answer onto the fallback error taxonomy.

    - 403/404: model missing or not enabled -> ModelUnavailableError (next candidate)
    - 401: credentials rejected -> UpstreamFault
    - 400 INVALID_ARGUMENT during generation -> UpstreamFault, unless the message says
      the model does not support the request
    - anything else (408, 429, 5xx, ...) -> ProviderHTTPError (next candidate)
    """
    status = response.status_code
    status_name, message = _error_info(response)
    text = f"{model} returned HTTP {status}" + (f" {status_name}" if status_name else "") + (f": {message}" if message else "")

    if status in (403, 404):
        return ModelUnavailableError(text, status=status, detail=message)
    if status == 401:
        return UpstreamFault(text, status=status, detail=message)
    if status == 400 and step == GENERATION_STEP:
        lowered = message.lower()
        if any(hint in lowered for hint in _UNSUPPORTED_MODEL_HINTS):
            return ModelUnavailableError(text, status=status, detail=message)
        return UpstreamFault(text, status=status, detail=message)
    return ProviderHTTPError(text, status=status, detail=message)


async def _call_model(
    http: httpx.AsyncClient,
    provider: ProviderClient,
    model: str,
    method: str,
    payload: Dict[str, Any],
    *,
    step: str,
) -> Any:
    headers = await provider.auth_headers()
    try:
        response = await _gemini_post_json(http, url=provider.model_url(model, method), headers=headers, payload=payload)
    except httpx.HTTPError as e:
        raise ProviderHTTPError(f"{model}: {type(e).__name__} talking to provider") from e

    if not response.is_success:
        error = classify_http_error(model, response, step=step)
        logger.error(f"{step} call to {model} failed: {error}")
        raise error

    try:
        return response.json()
    except ValueError as e:
        raise UnparsableResponseError(f"{model} returned a body that is not JSON") from e


def _parse(model: str, parse: Callable[[Any], T], data: Any) -> T:
    """Run a response parser, reporting any structural surprise as an unparsable response."""
    try:
        return parse(data)
    except ProviderError:
        raise
    except (AttributeError, TypeError, KeyError, IndexError, ValueError) as e:
        raise UnparsableResponseError(
            f"{model} returned an unexpected response structure ({type(e).__name__})"
        ) from e


def _vision_payload(image: EncodedImage) -> Dict[str, Any]:
    return {
        "contents": [{"role": "user", "parts": [{"text": VISION_PROMPT}, inline_part(image)]}],
        "generationConfig": {"temperature": 0.2, "maxOutputTokens": 400},
    }


def _gemini_image_payload(prompt: str, images: Sequence[EncodedImage], temperature: float) -> Dict[str, Any]:
    parts: List[Dict[str, Any]] = [{"text": prompt}]
    parts.extend(inline_part(image) for image in images)
    return {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {
            "temperature": temperature,
            "topP": 0.95,
            "topK": 40,
            "responseModalities": ["TEXT", "IMAGE"],
        },
    }


def _imagen_payload(prompt: str, images: Sequence[EncodedImage]) -> Dict[str, Any]:
    by_origin = {image.origin: image for image in images}
    instance: Dict[str, Any] = {"prompt": prompt}
    parameters: Dict[str, Any] = {"sampleCount": 1}
    references: List[Dict[str, Any]] = []

    base, mask = by_origin.get("base"), by_origin.get("mask")
    if base is not None and mask is not None:
        references.append({
            "referenceType": "REFERENCE_TYPE_RAW",
            "referenceId": 1,
            "referenceImage": {"bytesBase64Encoded": base.base64_data},
        })
        references.append({
            "referenceType": "REFERENCE_TYPE_MASK",
            "referenceId": 2,
            "referenceImage": {"bytesBase64Encoded": mask.base64_data},
            "maskImageConfig": {"maskMode": "MASK_MODE_USER_PROVIDED", "dilation": 0.01},
        })
        parameters["editMode"] = "EDIT_MODE_INPAINT_INSERTION"

    friend = by_origin.get("friend")
    if friend is not None:
        references.append({
            "referenceType": "REFERENCE_TYPE_SUBJECT",
            "referenceId": len(references) + 1,
            "referenceImage": {"bytesBase64Encoded": friend.base64_data},
            "subjectImageConfig": {"subjectType": "SUBJECT_TYPE_PERSON", "subjectDescription": "the reference person"},
        })

    if references:
        instance["referenceImages"] = references
    return {"instances": [instance], "parameters": parameters}


async def describe_subject(
    image: EncodedImage,
    *,
    models: Optional[Sequence[str]] = None,
    provider: Optional[ProviderClient] = None,
    deadline: Optional[float] = None,
) -> VisionResult:
    """
    Describe the reference person with the first vision model that answers with text.

    Raises:
        ProviderUnavailableError: every vision model failed or returned blank text.
    """
    settings = get_settings()
    provider = provider or get_provider_client()
    models = tuple(models or settings.vision_models)
    payload = _vision_payload(image)

    async with httpx.AsyncClient(timeout=settings.vision_call_timeout_s + 5) as http:
        async def attempt(model: str) -> str:
            data = await _call_model(http, provider, model, "generateContent", payload, step=VISION_STEP)
            return _parse(model, extract_text, data)

        outcome = await first_success(
            models,
            attempt,
            should_continue=continue_on_any_error,
            call_timeout=settings.vision_call_timeout_s,
            deadline=deadline,
        )

    if isinstance(outcome, Exhausted):
        outcome.raise_for_outcome(VISION_STEP)
    logger.info(f"Subject described by {outcome.candidate} ({len(outcome.result)} chars)")
    return VisionResult(text=outcome.result, model=outcome.candidate, attempts=outcome.attempts)


async def generate_composite(
    prompt: str,
    images: Sequence[EncodedImage],
    *,
    models: Optional[Sequence[str]] = None,
    provider: Optional[ProviderClient] = None,
    deadline: Optional[float] = None,
) -> GenerationResult:
    """
    Render the prompt (plus reference images) with the first image model that returns a decodable image.

    Raises:
        ProviderUnavailableError: every image model failed or produced no image.
        UpstreamFault / UnparsableResponseError: a model was reached but the request or
            its response is broken; raised immediately without trying further models.
    """
    settings = get_settings()
    provider = provider or get_provider_client()
    models = tuple(models or settings.image_models)

    async with httpx.AsyncClient(timeout=settings.image_call_timeout_s + 5) as http:
        async def attempt(model: str) -> tuple:
            if model.startswith("imagen"):
                data = await _call_model(
                    http, provider, model, "predict", _imagen_payload(prompt, images), step=GENERATION_STEP
                )
            else:
                payload = _gemini_image_payload(prompt, images, settings.generation_temperature)
                data = await _call_model(http, provider, model, "generateContent", payload, step=GENERATION_STEP)
            return _parse(model, extract_image, data), _parse(model, extract_text, data)

        outcome = await first_success(
            models,
            attempt,
            is_usable=lambda result: bool(result and result[0].data),
            should_continue=continue_unless_fatal,
            call_timeout=settings.image_call_timeout_s,
            deadline=deadline,
        )

    if isinstance(outcome, Exhausted):
        outcome.raise_for_outcome(GENERATION_STEP)
    image, text = outcome.result
    logger.info(f"Image generated by {outcome.candidate}: {image.mime_type}, {len(image.data)} bytes")
    return GenerationResult(image=image, model=outcome.candidate, text=text, attempts=outcome.attempts)
