"""Pipeline runner: prompt or image to illustrated story and PDF."""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Mapping, Sequence, TypeVar

from openai import AsyncOpenAI

from .chains.describer import describe_image
from .chains.illustrator import generate_image
from .chains.naming import generate_story_name
from .chains.summarizer import summarize
from .chains.writer import generate_story
from .config import get_config
from .models import (
    Chapter,
    GeneratedStory,
    IllustratedChapter,
    InvalidRequestError,
    StoryData,
    StoryRequest,
    pair_chapters,
)
from .tools.pdf import write_pdf
from .utils.debug_logger import debug_async_function, log_step
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

IMAGE_STORY_PROMPT = (
    "Write a story inspired by the scene described below. Keep its setting, "
    "characters and mood.\n\n{description}"
)


async def gather_all(*aws: Awaitable[T]) -> list[T]:
    """Await every awaitable; re-raise the first failure once all have settled."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)


async def illustrate_chapter(
    chapter: Chapter,
    semaphore: asyncio.Semaphore,
    client: AsyncOpenAI | None = None,
    policy: RetryPolicy | None = None,
) -> tuple[str, str]:
    """Summarize one chapter and illustrate the summary."""
    async with semaphore:
        log_step("illustrate_chapter.summary", chapter=chapter.index)
        chapter_summary = await summarize(chapter.content, client=client, policy=policy)
        log_step("illustrate_chapter.image", chapter=chapter.index)
        image_url = await generate_image(chapter_summary, client=client, policy=policy)
    return chapter_summary, image_url


@debug_async_function
async def illustrate_story(
    story: StoryData,
    client: AsyncOpenAI | None = None,
    policy: RetryPolicy | None = None,
) -> GeneratedStory:
    """Summarize and illustrate every chapter concurrently, then name the story."""
    semaphore = asyncio.Semaphore(get_config().chapter_concurrency)
    overall, *per_chapter = await gather_all(
        summarize(story.full_text(), client=client, policy=policy),
        *(illustrate_chapter(chapter, semaphore, client, policy) for chapter in story.chapters),
    )
    return GeneratedStory(
        story=story,
        summary=overall,
        chapter_summaries=[chapter_summary for chapter_summary, _ in per_chapter],
        image_urls=[image_url for _, image_url in per_chapter],
        story_name=generate_story_name(overall),
    )


async def generate_illustrated_story(
    request: StoryRequest,
    client: AsyncOpenAI | None = None,
    policy: RetryPolicy | None = None,
) -> GeneratedStory:
    """
    Run the full text pipeline for a prompt.

    Args:
        request: Prompt, chapter count and word budget
        client: OpenAI client (defaults to the shared one)
        policy: Retry policy shared by every call

    Returns:
        GeneratedStory with one image URL per chapter, in chapter order
    """
    started = time.time()
    logger.info(
        f"Generating story: {request.chapter_count} chapters, "
        f"{request.max_words_per_chapter} words max"
    )
    story = await generate_story(request, client=client, policy=policy)
    result = await illustrate_story(story, client=client, policy=policy)
    logger.info(f"Story '{result.story_name}' ready in {time.time() - started:.1f}s")
    return result


async def generate_story_from_image(
    image_bytes: bytes,
    content_type: str = "image/png",
    chapter_count: int | None = None,
    max_words_per_chapter: int | None = None,
    client: AsyncOpenAI | None = None,
    policy: RetryPolicy | None = None,
) -> GeneratedStory:
    """Describe an uploaded image, then run the story pipeline seeded with it."""
    config = get_config()
    description = await describe_image(image_bytes, content_type, client=client, policy=policy)
    request = StoryRequest(
        prompt=IMAGE_STORY_PROMPT.format(description=description),
        chapter_count=chapter_count or config.default_chapter_count,
        max_words_per_chapter=max_words_per_chapter or config.default_max_words,
    )
    return await generate_illustrated_story(request, client=client, policy=policy)


def assemble_chapters(
    story_data: Mapping[str, Any] | None,
    image_urls: Sequence[str | None] | None,
) -> list[IllustratedChapter]:
    """
    Turn the flat wire payload into chapters paired with their images.

    Raises:
        InvalidRequestError: If ``story_data`` is missing or has no chapters
    """
    if not story_data:
        raise InvalidRequestError("storyData is required")
    story = StoryData.from_flat(story_data)
    if not story.chapters:
        raise InvalidRequestError("storyData contains no chapters")
    return pair_chapters(story, list(image_urls or []))


async def generate_story_pdf(
    request: StoryRequest,
    output: Path | str,
    client: AsyncOpenAI | None = None,
) -> dict[str, Any]:
    """Run the whole pipeline and write the PDF locally."""
    started = time.time()
    result = await generate_illustrated_story(request, client=client)
    title = result.story_name or "Untitled Story"
    path = await asyncio.to_thread(write_pdf, output, title, result.illustrated_chapters())
    return {
        "success": True,
        "story_name": title,
        "pdf_path": str(path),
        "chapters": len(result.story),
        "runtime_sec": time.time() - started,
    }
