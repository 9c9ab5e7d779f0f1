"""Summarizer chain."""

import logging

from openai import AsyncOpenAI, OpenAIError

from ..config import settings
from ..models import InvalidRequestError
from ..utils.debug_logger import log_api_call
from ..utils.llm_factory import get_openai_client
from ..utils.retry import RetryPolicy, call_with_retry, create_retry_policy, upstream_error_from
from ..utils.validators import message_content, require_text

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = "You are a summary generator. Summarize the following story."


async def summarize(
    text: str,
    client: AsyncOpenAI | None = None,
    policy: RetryPolicy | None = None,
) -> str:
    """Summarize arbitrary text with the shared retry policy."""
    if not text or not text.strip():
        raise InvalidRequestError("Nothing to summarize")
    client = client or get_openai_client()

    async def _call():
        log_api_call("chat.completions", model=settings.summary_model, chars=len(text))
        return await client.chat.completions.create(
            model=settings.summary_model,
            messages=[
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
        )

    try:
        completion = await call_with_retry(_call, policy or create_retry_policy(), "summarize")
    except OpenAIError as e:
        logger.error(f"Summarization failed: {e}")
        raise upstream_error_from(e, "Summarization failed") from e

    return require_text(message_content(completion), "Summarization").strip()
