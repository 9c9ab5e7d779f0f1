"""OpenAI client factory."""

import logging
from functools import lru_cache

from openai import AsyncOpenAI

from ..config import settings
from ..models import ConfigurationError

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_openai_client() -> AsyncOpenAI:
    """Return the shared async OpenAI client.

    SDK-level retries are disabled; retrying is done by
    ``utils.retry.call_with_retry`` so every call follows the same policy.

    Raises:
        ConfigurationError: If OPENAI_API_KEY is not configured
    """
    if not settings.openai_api_key:
        raise ConfigurationError("OpenAI API key not configured. Set OPENAI_API_KEY in .env")

    logger.info(f"Creating OpenAI client (story model: {settings.story_model})")
    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.llm_timeout,
        max_retries=0,
    )
