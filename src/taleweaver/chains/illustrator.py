"""Illustration generation."""

import logging

from openai import AsyncOpenAI, OpenAIError

from ..config import settings
from ..models import InvalidRequestError, MalformedResponseError
from ..utils.debug_logger import log_api_call
from ..utils.llm_factory import get_openai_client
from ..utils.retry import RetryPolicy, call_with_retry, create_retry_policy, upstream_error_from

logger = logging.getLogger(__name__)


async def generate_image(
    prompt: str,
    client: AsyncOpenAI | None = None,
    policy: RetryPolicy | None = None,
) -> str:
    """
    Generate one illustration and return its URL.

    Raises:
        UpstreamError: If the image API call fails
        MalformedResponseError: If the response carries no URL
    """
    if not prompt or not prompt.strip():
        raise InvalidRequestError("Image prompt is empty")
    client = client or get_openai_client()

    async def _call():
        log_api_call("images.generate", model=settings.image_model, size=settings.image_size)
        return await client.images.generate(
            model=settings.image_model,
            prompt=prompt,
            n=1,
            size=settings.image_size,
            response_format="url",
        )

    try:
        response = await call_with_retry(_call, policy or create_retry_policy(), "generate_image")
    except OpenAIError as e:
        logger.error(f"Image generation failed: {e}")
        raise upstream_error_from(e, "Image generation failed") from e

    data = getattr(response, "data", None) or []
    url = getattr(data[0], "url", None) if data else None
    if not url:
        raise MalformedResponseError("Image response contained no URL", raw=str(response))
    return url
