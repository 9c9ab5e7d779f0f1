"""Pytest configuration for Taleweaver tests."""

from io import BytesIO
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest
from PIL import Image

from taleweaver.config import settings
from taleweaver.utils.retry import RetryPolicy


class SleepRecorder:
    """Async sleep stand-in that records requested delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_completion(content):
    """Build an object shaped like an OpenAI chat completion."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))]
    )


def make_status_error(status_code: int, headers: dict | None = None, body=None):
    """Build an OpenAI APIStatusError subclass for the given status."""
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(status_code, headers=headers or {}, request=request)
    error_class = {
        400: openai.BadRequestError,
        429: openai.RateLimitError,
        500: openai.InternalServerError,
    }.get(status_code, openai.APIStatusError)
    return error_class(f"HTTP {status_code}", response=response, body=body)


def make_openai_client(completions=None, images=None):
    """Mock AsyncOpenAI client with configurable side effects."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=completions)
    client.images.generate = AsyncMock(side_effect=images)
    return client


def png_bytes(width: int = 64, height: int = 32, color: str = "red") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def fast_policy(sleep_recorder):
    """Retry policy with recorded, zero-wait sleeps."""
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, sleep=sleep_recorder)


@pytest.fixture
def isolated_dirs(tmp_path, monkeypatch):
    """Point preview and upload directories at a temp location."""
    preview_dir = tmp_path / "previews"
    upload_dir = tmp_path / "uploads"
    monkeypatch.setattr(settings, "preview_dir", preview_dir)
    monkeypatch.setattr(settings, "upload_dir", upload_dir)
    return SimpleNamespace(preview_dir=preview_dir, upload_dir=upload_dir)


@pytest.fixture
def sample_story_data():
    return {
        "chapter1Name": "The Lighthouse",
        "chapter1": "Mara climbed the stairs.\n\nThe lamp was dark.",
        "chapter2Name": "The Storm",
        "chapter2": "Waves broke on the rocks.\n\nShe lit the lamp.\n\nShips turned home.",
    }
