"""Tests for the pipeline runner."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from taleweaver.models import InvalidRequestError, StoryData, StoryRequest, UpstreamError
from taleweaver.runner import (
    assemble_chapters,
    gather_all,
    generate_illustrated_story,
    generate_story_from_image,
    generate_story_pdf,
    illustrate_story,
)


def fake_summarize():
    async def _summarize(text, client=None, policy=None):
        if "Mara" in text and "Waves" in text:
            return "The keeper saves the ships at night"
        return f"summary of {text.split('.')[0]}"

    return AsyncMock(side_effect=_summarize)


def fake_generate_image():
    async def _generate(prompt, client=None, policy=None):
        return f"https://img/{prompt.split()[-1]}.png"

    return AsyncMock(side_effect=_generate)


class TestIllustrateStory:
    @pytest.mark.asyncio
    async def test_one_image_per_chapter_in_order(self, sample_story_data):
        story = StoryData.from_flat(sample_story_data)

        with patch("taleweaver.runner.summarize", new=fake_summarize()):
            with patch("taleweaver.runner.generate_image", new=fake_generate_image()) as mock_image:
                result = await illustrate_story(story)

        assert result.summary == "The keeper saves the ships at night"
        assert result.chapter_summaries == [
            "summary of Mara climbed the stairs",
            "summary of Waves broke on the rocks",
        ]
        assert result.image_urls == ["https://img/stairs.png", "https://img/rocks.png"]
        assert result.story_name == "keeper saves ships"
        assert mock_image.await_count == 2

    @pytest.mark.asyncio
    async def test_chapter_work_overlaps(self, sample_story_data):
        """Chapters are summarized concurrently, not one after another."""
        story = StoryData.from_flat(sample_story_data)
        active = 0
        peak = 0

        async def slow_summary(text, client=None, policy=None):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "summary"

        with patch("taleweaver.runner.summarize", new=AsyncMock(side_effect=slow_summary)):
            with patch("taleweaver.runner.generate_image", new=AsyncMock(return_value="u")):
                await illustrate_story(story)

        assert peak >= 2

    @pytest.mark.asyncio
    async def test_failure_propagates(self, sample_story_data):
        story = StoryData.from_flat(sample_story_data)
        error = UpstreamError("image API down", status_code=500)

        with patch("taleweaver.runner.summarize", new=fake_summarize()):
            with patch("taleweaver.runner.generate_image", new=AsyncMock(side_effect=error)):
                with pytest.raises(UpstreamError):
                    await illustrate_story(story)


class TestPipeline:
    @pytest.mark.asyncio
    async def test_generate_illustrated_story(self, sample_story_data):
        story = StoryData.from_flat(sample_story_data)
        request = StoryRequest(prompt="Write a story", chapter_count=2)

        with patch("taleweaver.runner.generate_story", new=AsyncMock(return_value=story)) as mock_story:
            with patch("taleweaver.runner.summarize", new=fake_summarize()):
                with patch("taleweaver.runner.generate_image", new=fake_generate_image()):
                    result = await generate_illustrated_story(request)

        mock_story.assert_awaited_once()
        assert len(result.story) == 2
        assert result.to_response()["chapter2Name"] == "The Storm"

    @pytest.mark.asyncio
    async def test_story_from_image_seeds_prompt(self, sample_story_data):
        story = StoryData.from_flat(sample_story_data)

        with patch(
            "taleweaver.runner.describe_image", new=AsyncMock(return_value="A foggy harbour.")
        ):
            with patch(
                "taleweaver.runner.generate_illustrated_story", new=AsyncMock()
            ) as mock_pipeline:
                await generate_story_from_image(b"png", "image/png", chapter_count=2)

        request = mock_pipeline.call_args.args[0]
        assert "A foggy harbour." in request.prompt
        assert request.chapter_count == 2
        assert request.max_words_per_chapter == 300

    @pytest.mark.asyncio
    async def test_generate_story_pdf(self, sample_story_data, tmp_path):
        story = StoryData.from_flat(sample_story_data)
        output = tmp_path / "story.pdf"

        with patch("taleweaver.runner.generate_story", new=AsyncMock(return_value=story)):
            with patch("taleweaver.runner.summarize", new=fake_summarize()):
                with patch("taleweaver.runner.generate_image", new=AsyncMock(return_value="")):
                    result = await generate_story_pdf(StoryRequest(prompt="Write a story"), output)

        assert result["success"] is True
        assert result["chapters"] == 2
        assert output.read_bytes().startswith(b"%PDF")


class TestHelpers:
    @pytest.mark.asyncio
    async def test_gather_all_waits_then_raises(self):
        finished = []

        async def ok():
            await asyncio.sleep(0.01)
            finished.append("ok")
            return 1

        async def boom():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await gather_all(boom(), ok())
        assert finished == ["ok"]

    def test_assemble_chapters(self, sample_story_data):
        chapters = assemble_chapters(sample_story_data, ["u1"])

        assert [c.chapter.name for c in chapters] == ["The Lighthouse", "The Storm"]
        assert [c.image_url for c in chapters] == ["u1", None]

    def test_assemble_requires_story(self):
        with pytest.raises(InvalidRequestError):
            assemble_chapters(None, [])
        with pytest.raises(InvalidRequestError):
            assemble_chapters({"title": "x"}, [])
