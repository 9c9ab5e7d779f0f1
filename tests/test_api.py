"""Tests for the FastAPI endpoints."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from conftest import png_bytes
from taleweaver.api.main import app, get_flipbook_client, pdf_filename, run_until_disconnect
from taleweaver.config import settings
from taleweaver.models import (
    ContentTooShortError,
    FlipbookJob,
    FlipbookState,
    FlipbookTimeoutError,
    GeneratedStory,
    StoryData,
    UpstreamError,
)


@pytest.fixture
def client(isolated_dirs):
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def generated(sample_story_data):
    return GeneratedStory(
        story=StoryData.from_flat(sample_story_data),
        summary="A keeper saves ships.",
        chapter_summaries=["s1", "s2"],
        image_urls=["https://img/1.png", "https://img/2.png"],
        story_name="keeper saves ships.",
    )


@pytest.fixture
def flipbook():
    fake = MagicMock()
    fake.publish_pdf = AsyncMock()
    fake.publish_from_url = AsyncMock()
    fake.check_status = AsyncMock()
    app.dependency_overrides[get_flipbook_client] = lambda: fake
    return fake


def ready_job() -> FlipbookJob:
    return FlipbookJob(
        external_id="job-1",
        state=FlipbookState.READY,
        hash_id="h1",
        view_url="https://view.flipbooks.test/h1",
    )


class TestStoryEndpoints:
    def test_chat(self, client, generated):
        with patch(
            "taleweaver.api.main.generate_illustrated_story", new=AsyncMock(return_value=generated)
        ) as mock_generate:
            response = client.post(
                "/api/chat",
                json={"message": "Tell me a story", "numChapters": 2, "maxWordsPerChapter": 100},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["chapter1Name"] == "The Lighthouse"
        assert body["imageUrls"] == ["https://img/1.png", "https://img/2.png"]
        assert body["storyName"] == "keeper saves ships."
        request = mock_generate.call_args.args[0]
        assert request.chapter_count == 2
        assert request.max_words_per_chapter == 100

    def test_chat_missing_message(self, client):
        response = client.post("/api/chat", json={})

        assert response.status_code == 400
        assert response.json()["kind"] == "validation"

    def test_chat_rate_limited(self, client):
        error = UpstreamError("Story generation failed: 429", status_code=429)
        with patch("taleweaver.api.main.generate_illustrated_story", new=AsyncMock(side_effect=error)):
            response = client.post("/api/chat", json={"message": "Tell me a story"})

        assert response.status_code == 500
        assert response.json()["kind"] == "rate_limited"

    def test_regenerate_story(self, client):
        with patch(
            "taleweaver.api.main.regenerate_story", new=AsyncMock(return_value="Fresh story.")
        ) as mock_regenerate:
            response = client.post(
                "/api/regenerate-story", json={"story": "Old.", "regeneratePrompt": "Spookier"}
            )

        assert response.status_code == 200
        assert response.json() == {"newStory": "Fresh story."}
        mock_regenerate.assert_awaited_once_with("Old.", "Spookier")

    def test_regenerate_image_prefers_prompt(self, client):
        with patch(
            "taleweaver.api.main.generate_image", new=AsyncMock(return_value="https://img/new.png")
        ) as mock_image:
            response = client.post(
                "/api/regenerate-image", json={"summary": "A storm", "regeneratePrompt": "A calm sea"}
            )

        assert response.json() == {"newImageUrl": "https://img/new.png"}
        mock_image.assert_awaited_once_with("A calm sea")

    def test_regenerate_image_requires_input(self, client):
        response = client.post("/api/regenerate-image", json={})

        assert response.status_code == 400

    def test_describe_image(self, client, isolated_dirs):
        with patch(
            "taleweaver.api.main.describe_image", new=AsyncMock(return_value="Once.\n\nTwice.")
        ) as mock_describe:
            response = client.post(
                "/api/describe-image", files={"image": ("scene.png", png_bytes(), "image/png")}
            )

        assert response.status_code == 200
        assert response.json() == {"description": "Once.\n\nTwice."}
        assert mock_describe.call_args.args[1] == "image/png"
        # upload removed afterwards
        assert list(isolated_dirs.upload_dir.iterdir()) == []

    def test_describe_image_without_file(self, client):
        response = client.post("/api/describe-image")

        assert response.status_code == 400
        assert "No image" in response.json()["error"]

    def test_describe_image_too_short(self, client, isolated_dirs):
        error = ContentTooShortError("too short", raw="a", paragraph_count=1, required=5)
        with patch("taleweaver.api.main.describe_image", new=AsyncMock(side_effect=error)):
            response = client.post(
                "/api/describe-image", files={"image": ("scene.png", png_bytes(), "image/png")}
            )

        assert response.status_code == 500
        assert response.json()["kind"] == "malformed"
        assert list(isolated_dirs.upload_dir.iterdir()) == []

    def test_story_from_image(self, client, generated):
        with patch(
            "taleweaver.api.main.generate_story_from_image", new=AsyncMock(return_value=generated)
        ) as mock_generate:
            response = client.post(
                "/api/generate-story-from-image",
                files={"image": ("scene.png", png_bytes(), "image/png")},
                data={"numChapters": "2", "maxWordsPerChapter": "120"},
            )

        assert response.status_code == 200
        assert response.json()["summary"] == "A keeper saves ships."
        kwargs = mock_generate.call_args.kwargs
        assert kwargs["chapter_count"] == 2
        assert kwargs["max_words_per_chapter"] == 120

    def test_story_from_image_bad_count(self, client):
        response = client.post(
            "/api/generate-story-from-image",
            files={"image": ("scene.png", png_bytes(), "image/png")},
            data={"numChapters": "many"},
        )

        assert response.status_code == 400


class TestPdfEndpoints:
    def test_download_pdf(self, client, sample_story_data):
        response = client.post(
            "/api/pdf", json={"storyData": sample_story_data, "storyName": "Lighthouse Tale"}
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert 'attachment; filename="Lighthouse_Tale.pdf"' == response.headers["content-disposition"]
        assert response.content.startswith(b"%PDF")

    def test_download_pdf_without_story(self, client):
        response = client.post("/api/pdf", json={"storyName": "Empty"})

        assert response.status_code == 400
        assert response.json()["kind"] == "validation"

    def test_stream_pdf(self, client, sample_story_data):
        response = client.post("/api/generate-pdf", json={"storyData": sample_story_data})

        assert response.status_code == 200
        assert "attachment" in response.headers["content-disposition"]
        assert response.content.startswith(b"%PDF")

    def test_preview_round_trip(self, client, sample_story_data):
        response = client.post(
            "/api/generate-pdf-preview",
            json={"storyData": sample_story_data, "storyName": "Tale"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["previewUrl"].endswith(f"/api/pdf-preview/{body['previewId']}")

        preview = client.get(f"/api/pdf-preview/{body['previewId']}")
        assert preview.status_code == 200
        assert preview.content.startswith(b"%PDF")

    def test_preview_requires_name(self, client, sample_story_data):
        response = client.post("/api/generate-pdf-preview", json={"storyData": sample_story_data})

        assert response.status_code == 400

    def test_unknown_preview(self, client):
        response = client.get("/api/pdf-preview/does-not-exist")

        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    def test_pdf_filename(self):
        assert pdf_filename("A Tale: Part 2") == "A_Tale_Part_2.pdf"
        assert pdf_filename(None) == "story.pdf"


class TestFlipbookEndpoints:
    def test_from_pdf(self, client, flipbook):
        flipbook.publish_pdf.return_value = ready_job()

        response = client.post(
            "/api/create-flipbook-from-pdf",
            files={"pdf": ("story.pdf", b"%PDF-1.4 data", "application/pdf")},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "flipbookUrl": "https://view.flipbooks.test/h1"}
        assert flipbook.publish_pdf.call_args.args[0] == b"%PDF-1.4 data"

    def test_from_pdf_without_file(self, client, flipbook):
        response = client.post("/api/create-flipbook-from-pdf")

        assert response.status_code == 400
        flipbook.publish_pdf.assert_not_awaited()

    def test_from_pdf_timeout(self, client, flipbook):
        flipbook.publish_pdf.side_effect = FlipbookTimeoutError("not ready", job_id="job-1", polls=10)

        response = client.post(
            "/api/create-flipbook-from-pdf",
            files={"pdf": ("story.pdf", b"%PDF", "application/pdf")},
        )

        assert response.status_code == 500
        assert response.json()["kind"] == "timeout"

    def test_from_url(self, client, flipbook):
        flipbook.publish_from_url.return_value = ready_job()

        response = client.post("/api/create-flipbook-from-url", json={"previewUrl": "/api/pdf-preview/abc"})

        assert response.status_code == 200
        flipbook.publish_from_url.assert_awaited_once_with("/api/pdf-preview/abc")

    def test_from_url_requires_url(self, client, flipbook):
        response = client.post("/api/create-flipbook-from-url", json={})

        assert response.status_code == 400

    def test_check_status(self, client, flipbook):
        flipbook.check_status.return_value = {"status": "processing", "details": {"state": "processing"}}

        response = client.get("/api/check-flipbook-status/job-1")

        assert response.status_code == 200
        assert response.json()["status"] == "processing"
        flipbook.check_status.assert_awaited_once_with("job-1")


class TestHealth:
    def test_health_degraded_without_keys(self, client, monkeypatch):
        monkeypatch.setattr(settings, "openai_api_key", "")

        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["api_keys_configured"] is False

    def test_health_with_keys(self, client, monkeypatch):
        monkeypatch.setattr(settings, "openai_api_key", "sk-test")
        monkeypatch.setattr(settings, "flipbook_api_key", "fb-test")

        response = client.get("/api/health")

        assert response.json()["status"] == "healthy"
        assert response.json()["preview_count"] == 0


def disconnect_request(disconnected: bool) -> MagicMock:
    request = MagicMock()
    request.url.path = "/api/chat"
    request.is_disconnected = AsyncMock(return_value=disconnected)
    return request


class TestRunUntilDisconnect:
    @pytest.mark.asyncio
    async def test_cancels_pipeline_when_client_leaves(self, monkeypatch):
        monkeypatch.setattr("taleweaver.api.main.DISCONNECT_POLL_SECONDS", 0.01)
        cancelled = asyncio.Event()

        async def pipeline():
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        request = disconnect_request(disconnected=True)

        with pytest.raises(HTTPException) as exc_info:
            await run_until_disconnect(request, pipeline())

        assert exc_info.value.status_code == 499
        await asyncio.wait_for(cancelled.wait(), timeout=1)
        request.is_disconnected.assert_awaited()

    @pytest.mark.asyncio
    async def test_returns_result_while_connected(self, monkeypatch):
        monkeypatch.setattr("taleweaver.api.main.DISCONNECT_POLL_SECONDS", 0.01)

        async def pipeline():
            await asyncio.sleep(0.05)
            return "story"

        request = disconnect_request(disconnected=False)

        assert await run_until_disconnect(request, pipeline()) == "story"
        request.is_disconnected.assert_awaited()
