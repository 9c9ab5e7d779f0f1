"""Writer chain: chapter-structured story generation."""

import logging
import re

from openai import AsyncOpenAI, OpenAIError

from ..config import settings
from ..models import InvalidRequestError, StoryData, StoryRequest, MalformedResponseError
from ..utils.debug_logger import debug_async_function, log_api_call
from ..utils.llm_factory import get_openai_client
from ..utils.retry import RetryPolicy, call_with_retry, create_retry_policy, upstream_error_from
from ..utils.validators import message_content, parse_json_object, require_text

logger = logging.getLogger(__name__)

STORY_PROMPT_PATTERN = re.compile(r"tell me a story|write a story|create a story", re.IGNORECASE)

REWRITE_SYSTEM_PROMPT = (
    "You are a story writer. Please write a creative story based on the following "
    "prompt. Only generate a story. Do not answer other types of questions."
)


def build_story_system_prompt(chapter_count: int, max_words: int) -> str:
    """System instruction encoding the chapter count and word budget."""
    keys = ", ".join(
        f'"chapter{i}Name", "chapter{i}"' for i in range(1, chapter_count + 1)
    )
    return f"""You are a creative story writer. Write a story based on the user's prompt.

Requirements:
- Exactly {chapter_count} chapters.
- Each chapter has a short, evocative name.
- Each chapter is at most {max_words} words.
- Separate paragraphs inside a chapter with a blank line.

Reply ONLY with a flat JSON object, no markdown, using these keys in order:
{keys}
"chapterNName" holds the chapter's name and "chapterN" holds its text."""


def validate_story_prompt(prompt: str) -> None:
    """Reject prompts that do not ask for a story, when the guard is enabled."""
    if settings.enforce_story_prompt and not STORY_PROMPT_PATTERN.search(prompt):
        raise InvalidRequestError(
            "Invalid story prompt. Ask to 'tell', 'write' or 'create' a story."
        )


def parse_story(raw: str, expected_chapters: int) -> StoryData:
    """Parse a model reply into StoryData and check the chapter count."""
    payload = parse_json_object(raw)
    story = StoryData.from_flat(payload)
    if not story.chapters:
        raise MalformedResponseError("Response contained no chapterN keys", raw=raw)
    try:
        return story.ensure_chapter_count(expected_chapters)
    except MalformedResponseError as e:
        raise MalformedResponseError(e.message, raw=raw) from e


@debug_async_function
async def generate_story(
    request: StoryRequest,
    client: AsyncOpenAI | None = None,
    policy: RetryPolicy | None = None,
) -> StoryData:
    """
    Generate a chapter-structured story.

    Args:
        request: Prompt, chapter count and per-chapter word budget
        client: OpenAI client (defaults to the shared one)
        policy: Retry policy (defaults to settings)

    Returns:
        StoryData with exactly ``request.chapter_count`` chapters

    Raises:
        UpstreamError: If the completion call fails
        MalformedResponseError: If the reply is not a usable story object
    """
    validate_story_prompt(request.prompt)
    client = client or get_openai_client()
    system_prompt = build_story_system_prompt(
        request.chapter_count, request.max_words_per_chapter
    )

    async def _call():
        log_api_call("chat.completions", model=settings.story_model, purpose="story")
        return await client.chat.completions.create(
            model=settings.story_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": request.prompt},
            ],
            response_format={"type": "json_object"},
        )

    try:
        completion = await call_with_retry(_call, policy or create_retry_policy(), "generate_story")
    except OpenAIError as e:
        logger.error(f"Story generation failed: {e}")
        raise upstream_error_from(e, "Story generation failed") from e

    raw = require_text(message_content(completion), "Story generation")
    story = parse_story(raw, request.chapter_count)
    logger.info(f"Generated story with {len(story)} chapters")
    return story


async def regenerate_story(
    story: str,
    regenerate_prompt: str | None = None,
    client: AsyncOpenAI | None = None,
    policy: RetryPolicy | None = None,
) -> str:
    """Rewrite a story as plain text, steered by ``regenerate_prompt`` when given."""
    prompt = regenerate_prompt or story
    if not prompt or not prompt.strip():
        raise InvalidRequestError("story or regeneratePrompt is required")
    validate_story_prompt(prompt)
    client = client or get_openai_client()

    messages = [{"role": "system", "content": REWRITE_SYSTEM_PROMPT}]
    if regenerate_prompt and story:
        messages.append({"role": "user", "content": f"Current story:\n\n{story}"})
    messages.append({"role": "user", "content": prompt})

    async def _call():
        log_api_call("chat.completions", model=settings.story_model, purpose="regenerate")
        return await client.chat.completions.create(
            model=settings.story_model, messages=messages
        )

    try:
        completion = await call_with_retry(_call, policy or create_retry_policy(), "regenerate_story")
    except OpenAIError as e:
        logger.error(f"Story regeneration failed: {e}")
        raise upstream_error_from(e, "Story regeneration failed") from e

    return require_text(message_content(completion), "Story regeneration").strip()
