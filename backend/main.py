from fastapi import FastAPI, UploadFile, File, Form, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from typing import List, Optional
import uvicorn
import os
import sys
import uuid
import logging
import time
from pathlib import Path
from dotenv import load_dotenv

# Add current directory to path to find services module
sys.path.insert(0, str(Path(__file__).parent))

load_dotenv()

from services import compose as compose_service
from services.errors import ComposerError, InvalidInputError
from services.payload import UploadedImage, parse_data_url, to_data_url
from services.prompts import DEFAULT_FIGURE_KEY, FIGURES, GENDER_LABELS, SCENES
from services.settings import get_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="Photo Composer API")

# For production, list exact origins in ALLOWED_ORIGINS (comma-separated).
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Request-Id"],
    expose_headers=["X-Request-Id", "X-Composer-Model"],
)

_rate_buckets: dict[str, tuple[int, float]] = {}
_MAX_RATE_BUCKETS = 10_000


def check_rate_limit(key: str, limit: int, window_seconds: int) -> bool:
    """
    Simple best-effort in-memory rate limiter (per-instance).
    Returns True if allowed, False if rate-limited.
    """
    now = time.time()
    if len(_rate_buckets) >= _MAX_RATE_BUCKETS:
        for stale in [k for k, (_, expires) in _rate_buckets.items() if expires <= now]:
            del _rate_buckets[stale]
    count, expires_at = _rate_buckets.get(key, (0, 0.0))
    if expires_at <= now:
        _rate_buckets[key] = (1, now + window_seconds)
        return True
    if count >= limit:
        return False
    _rate_buckets[key] = (count + 1, expires_at)
    return True


def get_client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip() or "unknown"
    if request.headers.get("x-real-ip"):
        return request.headers["x-real-ip"]
    return request.client.host if request.client else "unknown"


def error_response(status_code: int, message: str, *, envelope: bool = False) -> JSONResponse:
    content = {"success": False, "error": message} if envelope else {"error": message}
    return JSONResponse(status_code=status_code, content=content)


def require_string_fields(body: dict, names: tuple) -> None:
    for name in names:
        value = body.get(name)
        if value is not None and not isinstance(value, str):
            raise InvalidInputError(f"{name} must be a string")


class UploadTooLarge(Exception):
    pass


async def read_upload(upload: Optional[UploadFile], origin: str, budget: List[int]) -> Optional[UploadedImage]:
    """Read one multipart part, enforcing MAX_FILE_SIZE and the shared MAX_TOTAL_SIZE budget."""
    if upload is None:
        return None
    content = await upload.read()
    if len(content) > settings.max_file_size:
        raise UploadTooLarge(f"{origin} image too large. Maximum size: {settings.max_file_size / (1024*1024):.1f}MB")
    budget[0] += len(content)
    if budget[0] > settings.max_total_size:
        raise UploadTooLarge(f"Total upload size too large. Maximum: {settings.max_total_size / (1024*1024):.1f}MB")
    return UploadedImage(content=content, mime_type=upload.content_type or "", origin=origin)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({(time.perf_counter() - started) * 1000:.0f} ms, request_id={request_id})"
    )
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed form fields get the same 400 {error} payload as every other bad input."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = str((first.get("loc") or ("request",))[-1])
    message = f"Invalid {field}: {first.get('msg', 'malformed request')}"
    logger.warning(f"Rejected malformed request to {request.url.path}: {message}")
    return error_response(400, message, envelope=request.url.path == "/api/generate")


@app.get("/")
async def root():
    return {"message": "Photo Composer API is running"}


@app.get("/api/catalog")
async def catalog():
    """Figures, scenes and gender tags the compose endpoints accept."""
    return {
        "figures": [
            {"key": f.key, "name": f.name, "traits": list(f.traits)} for f in FIGURES.values()
        ],
        "default_figure": DEFAULT_FIGURE_KEY,
        "scenes": [
            {"key": s.key, "label": s.label, "description": s.description} for s in SCENES.values()
        ],
        "genders": sorted(GENDER_LABELS),
    }


@app.post("/api/image")
async def compose_image(
    request: Request,
    friend_image: Optional[UploadFile] = File(None, alias="friendImage"),
    base_image: Optional[UploadFile] = File(None, alias="baseImage"),
    mask_image: Optional[UploadFile] = File(None, alias="maskImage"),
    figure: Optional[str] = Form(None),
    gender: Optional[str] = Form(None),
    scene: Optional[str] = Form(None),
):
    """
    Multipart compose endpoint. Returns the generated image bytes.

    friendImage is the reference person (required). baseImage plus maskImage turn the
    request into an inpainting edit of the base photo.
    """
    ip = get_client_ip(request)
    if not check_rate_limit(f"image:{ip}", limit=10, window_seconds=60):
        return error_response(429, "Rate limit exceeded. Please try again shortly.")

    try:
        if friend_image is None:
            raise InvalidInputError("friendImage is required")
        budget = [0]
        compose_request = compose_service.CompositeRequest(
            friend=await read_upload(friend_image, "friend", budget),
            base=await read_upload(base_image, "base", budget),
            mask=await read_upload(mask_image, "mask", budget),
            figure=figure,
            gender=gender,
            scene=scene,
        )
        result = await compose_service.compose(compose_request)
    except UploadTooLarge as e:
        return error_response(413, str(e))
    except ComposerError as e:
        log = logger.warning if e.status_code < 500 else logger.error
        log(f"Compose request failed ({type(e).__name__}): {e.message}")
        return error_response(e.status_code, e.message)
    except Exception as e:
        logger.error(f"Unexpected error in /api/image: {type(e).__name__}: {e}", exc_info=True)
        return error_response(500, "Failed to generate image")

    headers = {"X-Composer-Model": result.model} if result.model else None
    return Response(content=result.image.data, media_type=result.image.mime_type, headers=headers)


@app.post("/api/generate")
async def generate(request: Request):
    """
    JSON compose endpoint.

    Body: {"image": "data:image/png;base64,...", "figure": ..., "gender": ..., "scene": ...}
    or, for a free-form edit, {"image": ..., "prompt": "..."}.
    Returns {"success": true, "image": <data URL>, "description": <text or null>}.
    """
    ip = get_client_ip(request)
    if not check_rate_limit(f"generate:{ip}", limit=10, window_seconds=60):
        return error_response(429, "Rate limit exceeded. Please try again shortly.", envelope=True)

    try:
        body = await request.json()
    except ValueError:
        return error_response(400, "Invalid JSON in request body", envelope=True)
    if not isinstance(body, dict):
        return error_response(400, "Invalid JSON in request body", envelope=True)

    try:
        require_string_fields(body, ("figure", "gender", "scene", "prompt"))
        image = parse_data_url(body.get("image"), origin="friend")
        if len(image.content) > settings.max_file_size:
            return error_response(
                413,
                f"Image too large. Maximum size: {settings.max_file_size / (1024*1024):.1f}MB",
                envelope=True,
            )

        if body.get("figure"):
            result = await compose_service.compose(compose_service.CompositeRequest(
                friend=image,
                figure=body.get("figure"),
                gender=body.get("gender"),
                scene=body.get("scene"),
            ))
        else:
            result = await compose_service.edit_image(body.get("prompt"), image)
    except ComposerError as e:
        log = logger.warning if e.status_code < 500 else logger.error
        log(f"Generate request failed ({type(e).__name__}): {e.message}")
        return error_response(e.status_code, e.message, envelope=True)
    except Exception as e:
        logger.error(f"Unexpected error in /api/generate: {type(e).__name__}: {e}", exc_info=True)
        return error_response(500, "Failed to generate image", envelope=True)

    return {
        "success": True,
        "image": to_data_url(result.image.data, result.image.mime_type),
        "description": result.description or None,
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("UVICORN_RELOAD", "0") == "1",
        timeout_keep_alive=300,
        timeout_graceful_shutdown=30,
    )
