"""Vision chain: narrative description of an uploaded image."""

import base64
import logging

from openai import AsyncOpenAI, OpenAIError

from ..config import settings
from ..models import InvalidRequestError
from ..utils.debug_logger import log_api_call
from ..utils.llm_factory import get_openai_client
from ..utils.retry import RetryPolicy, call_with_retry, create_retry_policy, upstream_error_from
from ..utils.validators import message_content, require_text, validate_paragraph_count

logger = logging.getLogger(__name__)


def build_description_prompt(min_paragraphs: int) -> str:
    return (
        "Describe this image as the opening of a story. Write at least "
        f"{min_paragraphs} narrative paragraphs covering the setting, the characters, "
        "the mood and what might happen next. Separate paragraphs with a blank line."
    )


def to_data_url(image_bytes: bytes, content_type: str = "image/png") -> str:
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


async def describe_image(
    image_bytes: bytes,
    content_type: str = "image/png",
    client: AsyncOpenAI | None = None,
    policy: RetryPolicy | None = None,
    min_paragraphs: int | None = None,
) -> str:
    """
    Produce a multi-paragraph narrative description of an image.

    Args:
        image_bytes: Raw image bytes
        content_type: MIME type used in the inline data URL
        client: OpenAI client (defaults to the shared one)
        policy: Retry policy (defaults to settings)
        min_paragraphs: Required paragraph count (default from settings)

    Returns:
        Description text

    Raises:
        NoResponseError: If the model returned no message
        MalformedResponseError: If the message body is not text
        ContentTooShortError: If fewer than ``min_paragraphs`` paragraphs came back
    """
    if not image_bytes:
        raise InvalidRequestError("Uploaded image is empty")
    if min_paragraphs is None:
        min_paragraphs = settings.min_description_paragraphs
    client = client or get_openai_client()
    data_url = to_data_url(image_bytes, content_type or "image/png")

    async def _call():
        log_api_call("chat.completions", model=settings.vision_model, bytes=len(image_bytes))
        return await client.chat.completions.create(
            model=settings.vision_model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_description_prompt(min_paragraphs)},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
        )

    try:
        completion = await call_with_retry(_call, policy or create_retry_policy(), "describe_image")
    except OpenAIError as e:
        logger.error(f"Image description failed: {e}")
        raise upstream_error_from(e, "Image description failed") from e

    content = message_content(completion)
    # empty text counts as zero paragraphs
    description = require_text(content, "Image description", allow_empty=True)
    paragraphs = validate_paragraph_count(description, min_paragraphs)
    logger.info(f"Image described in {len(paragraphs)} paragraphs")
    return description.strip()
