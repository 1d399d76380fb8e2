"""
Pytest configuration and shared fixtures
"""
import pytest
from fastapi.testclient import TestClient
from pathlib import Path
import sys
import os

import httpx

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before importing app
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("GOOGLE_API_KEY", "test-key")

from main import app
from services import gemini, replicate, vertex
from services.config import Settings
from services.generation import create_services
from services.preferences import EvaluationSession


class DummyResponse:
    """Stand-in for httpx.Response with just what the clients read."""

    def __init__(self, *, status_code: int = 200, data=None, text: str = "", content: bytes = b""):
        self.status_code = status_code
        self.is_success = 200 <= status_code < 300
        self._data = data
        self.text = text
        self.content = content

    def json(self):
        if self._data is None:
            raise ValueError("No JSON body")
        return self._data


def gemini_text_response(text: str) -> DummyResponse:
    return DummyResponse(data={"candidates": [{"content": {"parts": [{"text": text}]}}]})


async def no_sleep(_seconds):
    return None


@pytest.fixture(autouse=True)
def no_network(monkeypatch):
    """Every HTTP seam fails with a connection error unless a test patches it again."""

    async def refuse(*_args, **_kwargs):
        raise httpx.ConnectError("network disabled in tests")

    monkeypatch.setattr(gemini, "_gemini_post_json", refuse)
    monkeypatch.setattr(vertex, "_vertex_post_json", refuse)
    monkeypatch.setattr(replicate, "_replicate_request", refuse)
    monkeypatch.setattr(replicate, "_download_bytes", refuse)


@pytest.fixture
def test_settings():
    """Analysis key only; both cloud image backends unconfigured."""
    return Settings(
        gemini_api_key="test-key",
        analysis_chunk_delay_s=0.0,
        backend_retry_backoff_s=0.0,
        procedural_size=128,
    )


@pytest.fixture
def client(test_settings):
    """Create a test client for the FastAPI app with fresh services and session"""
    app.state.settings = test_settings
    app.state.services = create_services(test_settings)
    app.state.session = EvaluationSession()
    return TestClient(app)


@pytest.fixture
def sample_image_bytes():
    """Create sample image bytes for testing"""
    from PIL import Image as PILImage  # type: ignore
    import io

    img = PILImage.new("RGB", (512, 512), color=(255, 255, 255))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
