"""
The compose pipeline: validate -> encode -> describe subject -> build prompt -> generate.

Input validation happens before the first provider call, and the image step is only
attempted once the vision step returned a non-empty description.
"""

import time
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from . import gemini
from .errors import ConfigurationError, InvalidInputError
from .image_normalize import inspect_image, normalize_image_bytes_with_budget, sniff_mime
from .payload import EncodedImage, UploadedImage, check_upload, encode_image
from .prompts import (
    build_composite_prompt,
    build_inpaint_instructions,
    normalize_gender,
    resolve_figure,
    resolve_scene,
    with_subject_description,
)
from .response_normalizer import GeneratedImage
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class CompositeRequest:
    friend: UploadedImage
    figure: Optional[str] = None
    gender: Optional[str] = None
    scene: Optional[str] = None
    base: Optional[UploadedImage] = None
    mask: Optional[UploadedImage] = None


@dataclass(frozen=True)
class CompositeResult:
    image: GeneratedImage
    description: str
    prompt: str
    model: Optional[str] = None
    text: str = ""


def _fit_reference(upload: UploadedImage, settings: Settings) -> UploadedImage:
    """Downscale the reference photo when it would make the provider request too large."""
    if len(upload.content) <= settings.provider_max_image_bytes:
        return upload
    data, mime, width, height = normalize_image_bytes_with_budget(
        upload.content,
        max_bytes=settings.provider_max_image_bytes,
    )
    logger.info(f"Reference photo normalized from {len(upload.content)} to {len(data)} bytes ({width}x{height})")
    return UploadedImage(content=data, mime_type=mime, origin=upload.origin)


def _validated(upload: UploadedImage) -> Tuple[int, int]:
    # Type and emptiness first, so the error names the declared type rather than a decode failure.
    check_upload(upload)
    width, height, _ = inspect_image(upload.content)
    return width, height


def _encode_reference(upload: UploadedImage, settings: Settings) -> EncodedImage:
    _validated(upload)
    return encode_image(_fit_reference(upload, settings))


def prepare_images(request: CompositeRequest, settings: Settings) -> List[EncodedImage]:
    """
    Validate and encode the uploads in the order the prompt refers to them: reference, base, mask.
    """
    if request.mask is not None and request.base is None:
        raise InvalidInputError("maskImage requires baseImage")

    encoded = [_encode_reference(request.friend, settings)]

    if request.base is not None:
        base_w, base_h = _validated(request.base)
        encoded.append(encode_image(request.base))
        if request.mask is not None:
            mask_w, mask_h = _validated(request.mask)
            encoded.append(encode_image(request.mask))
            if (mask_w, mask_h) != (base_w, base_h):
                raise InvalidInputError(
                    f"maskImage size {mask_w}x{mask_h} does not match baseImage size {base_w}x{base_h}"
                )
    return encoded


def _mock_result(settings: Settings, prompt: str) -> CompositeResult:
    path = Path(settings.mock_image_path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"COMPOSER_MOCK_IMAGE could not be read: {path.name}") from e
    logger.info(f"Mock mode: returning {path.name} instead of calling providers")
    return CompositeResult(
        image=GeneratedImage(data=data, mime_type=sniff_mime(data)),
        description="",
        prompt=prompt,
        model="mock",
    )


async def compose(request: CompositeRequest) -> CompositeResult:
    """
    Generate a photo of the reference person next to the requested figure.

    Raises:
        InvalidInputError: bad uploads or an unknown scene (no provider call is made).
        ConfigurationError: no usable provider credentials.
        ProviderUnavailableError: the vision or the image step ran out of models.
    """
    settings = get_settings()
    figure = resolve_figure(request.figure)
    gender = normalize_gender(request.gender)
    scene = resolve_scene(request.scene)
    images = prepare_images(request, settings)
    prompt = build_composite_prompt(figure, gender, scene)

    logger.info(
        f"🚀 Compose request: figure={figure.key}, gender={gender}, scene={scene.key if scene else None}, "
        f"images={[image.origin for image in images]}"
    )
    if settings.mock_image_path:
        return _mock_result(settings, prompt)

    deadline = time.monotonic() + settings.request_deadline_s
    vision = await gemini.describe_subject(images[0], deadline=deadline)

    prompt = with_subject_description(prompt, vision.text)
    if request.base is not None and request.mask is not None:
        prompt = build_inpaint_instructions(prompt)

    generated = await gemini.generate_composite(prompt, images, deadline=deadline)
    return CompositeResult(
        image=generated.image,
        description=vision.text,
        prompt=prompt,
        model=generated.model,
        text=generated.text,
    )


async def edit_image(prompt: Optional[str], image: UploadedImage) -> CompositeResult:
    """
    Free-form edit: send the caller's own prompt and image straight to the image models.
    """
    prompt = (prompt or "").strip()
    if not prompt:
        raise InvalidInputError("Prompt or figure is required")
    settings = get_settings()
    encoded = _encode_reference(image, settings)

    if settings.mock_image_path:
        return _mock_result(settings, prompt)

    deadline = time.monotonic() + settings.request_deadline_s
    generated = await gemini.generate_composite(prompt, [encoded], deadline=deadline)
    return CompositeResult(
        image=generated.image,
        description=generated.text,
        prompt=prompt,
        model=generated.model,
        text=generated.text,
    )
