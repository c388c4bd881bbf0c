"""
Pytest configuration and shared fixtures
"""
import io
import pytest
from fastapi.testclient import TestClient
from pathlib import Path
import sys
import os

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before importing app
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.pop("COMPOSER_MOCK_IMAGE", None)

from main import app
import main as main_module
from services import credentials, settings


class DummyGeminiResponse:
    def __init__(self, *, ok: bool = True, status_code: int = 200, text: str = "", data=None):
        self.is_success = ok
        self.status_code = status_code
        self.text = text
        self._data = data if data is not None else {}

    def json(self):
        return self._data


def gemini_text(text: str) -> dict:
    return {"candidates": [{"finishReason": "STOP", "content": {"parts": [{"text": text}]}}]}


def gemini_image(b64: str, mime: str = "image/png") -> dict:
    return {
        "candidates": [
            {
                "finishReason": "STOP",
                "content": {"parts": [{"text": "Here you go"}, {"inlineData": {"mimeType": mime, "data": b64}}]},
            }
        ]
    }


def make_png(size=(64, 48), color=(200, 120, 40), mode="RGB") -> bytes:
    from PIL import Image as PILImage  # type: ignore

    img = PILImage.new(mode, size, color=color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture(autouse=True)
def fresh_state():
    """Every test starts with settings/credentials read from the current environment."""
    settings.reset_settings()
    credentials.reset_provider_client()
    main_module._rate_buckets.clear()
    yield
    settings.reset_settings()
    credentials.reset_provider_client()


@pytest.fixture
def client():
    """Create a test client for the FastAPI app"""
    return TestClient(app)


@pytest.fixture
def sample_image_bytes():
    return make_png()


@pytest.fixture
def provider_calls(monkeypatch):
    """
    Replace the provider HTTP seam with a scripted fake.

    Set `provider_calls.handler = fn(url, payload) -> DummyGeminiResponse`; every call is
    recorded in `provider_calls.calls` as (url, headers, payload).
    """
    from services import gemini

    class Recorder:
        def __init__(self):
            self.calls = []
            self.handler = lambda url, payload: DummyGeminiResponse(ok=False, status_code=500, text="no handler")

        @property
        def urls(self):
            return [c[0] for c in self.calls]

    recorder = Recorder()

    async def fake_post(_client, *, url, headers, payload):
        recorder.calls.append((url, headers, payload))
        return recorder.handler(url, payload)

    monkeypatch.setattr(gemini, "_gemini_post_json", fake_post)
    return recorder
