"""Flipbook hosting integration.

Uploads a rendered PDF to the flipbook hosting API, then polls the
conversion job until the hosted flipbook is ready.

Protocol:
- ``POST {base}/flipbooks`` (multipart ``file``) -> ``{"id": ...}``
- ``GET {base}/flipbooks/{id}`` -> ``{"state": ..., "hash": ...}``
- Public URL: ``{view_base}/{hash}``
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable

import httpx

from ...config import settings
from ...models import (
    ConfigurationError,
    FlipbookJob,
    FlipbookState,
    FlipbookTimeoutError,
    MalformedResponseError,
    PreviewNotFoundError,
    UpstreamError,
)
from ...storage import PreviewStore
from ...utils.retry import upstream_error_from

logger = logging.getLogger(__name__)

PREVIEW_PATH = re.compile(r"/api/pdf-preview/([0-9a-fA-F-]+)/?$")

READY_STATES = {"ready", "completed", "complete", "done", "published"}
FAILED_STATES = {"failed", "error", "errored", "cancelled"}


def parse_state(status: dict[str, Any]) -> FlipbookState:
    raw_state = str(status.get("state") or status.get("status") or "").strip().lower()
    if raw_state in READY_STATES:
        return FlipbookState.READY
    if raw_state in FAILED_STATES:
        return FlipbookState.FAILED
    if raw_state in {"submitted", "queued", "pending"}:
        return FlipbookState.SUBMITTED
    return FlipbookState.PROCESSING


class FlipbookClient:
    """Async client for the flipbook hosting API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        view_base_url: str | None = None,
        poll_interval: float | None = None,
        max_polls: int | None = None,
        status_retries: int | None = None,
        status_base_delay: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        http_client: httpx.AsyncClient | None = None,
        preview_store: PreviewStore | None = None,
    ):
        """Initialize the flipbook client.

        Args:
            api_key: Flipbook API key (falls back to settings.flipbook_api_key)
            base_url: API base URL
            view_base_url: Base of the public flipbook URL
            poll_interval: Seconds between status polls
            max_polls: Polls before giving up with a timeout
            status_retries: Attempts for on-demand status lookups
            status_base_delay: Delay unit for status lookup backoff
            sleep: Async sleep function, injectable for tests
            http_client: Shared httpx client
            preview_store: Store used to resolve local preview URLs
        """
        self.api_key = api_key or settings.flipbook_api_key
        if not self.api_key:
            raise ConfigurationError("Flipbook API key required. Set FLIPBOOK_API_KEY in .env")

        self.base_url = (base_url or settings.flipbook_api_url).rstrip("/")
        self.view_base_url = (view_base_url or settings.flipbook_view_url).rstrip("/")
        self.poll_interval = poll_interval if poll_interval is not None else settings.flipbook_poll_interval
        self.max_polls = max_polls if max_polls is not None else settings.flipbook_max_polls
        self.status_retries = status_retries if status_retries is not None else settings.flipbook_status_retries
        self.status_base_delay = (
            status_base_delay if status_base_delay is not None else settings.flipbook_status_base_delay
        )
        self.sleep = sleep
        self.preview_store = preview_store
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=settings.flipbook_timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "FlipbookClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def view_url(self, hash_id: str) -> str:
        return f"{self.view_base_url}/{hash_id}"

    # ------------------------------------------------------------------ requests

    async def _request(self, method: str, url: str, context: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, headers=self.headers, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.error(f"{context}: {e}")
            raise upstream_error_from(e, context) from e

    @staticmethod
    def _json(response: httpx.Response, context: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{context}: response was not JSON", raw=response.text) from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"{context}: expected a JSON object", raw=data)
        return data

    async def submit(self, pdf_bytes: bytes, filename: str = "story.pdf") -> str:
        """
        Upload a PDF and start a conversion job.

        Returns:
            External job id

        Raises:
            UpstreamError: If the upload request fails
            MalformedResponseError: If the response has no job id
        """
        response = await self._request(
            "POST",
            f"{self.base_url}/flipbooks",
            "Flipbook upload failed",
            files={"file": (filename, pdf_bytes, "application/pdf")},
        )
        data = self._json(response, "Flipbook upload")
        job_id = data.get("id") or data.get("job_id") or data.get("jobId")
        if not job_id:
            raise MalformedResponseError("Flipbook upload response has no job id", raw=data)
        logger.info(f"Flipbook job submitted: {job_id} ({len(pdf_bytes)} bytes)")
        return str(job_id)

    async def fetch_status(self, job_id: str) -> dict[str, Any]:
        response = await self._request(
            "GET", f"{self.base_url}/flipbooks/{job_id}", "Flipbook status request failed"
        )
        return self._json(response, "Flipbook status")

    # ------------------------------------------------------------------ polling

    async def wait_until_ready(self, job_id: str) -> FlipbookJob:
        """
        Poll a job every ``poll_interval`` seconds until it is ready.

        Raises:
            UpstreamError: If the job failed upstream
            FlipbookTimeoutError: If the job is not ready after ``max_polls`` polls
        """
        job = FlipbookJob(external_id=job_id)
        for poll in range(1, self.max_polls + 1):
            await self.sleep(self.poll_interval)
            status = await self.fetch_status(job_id)
            job.attempts = poll
            job.last_status = status
            job.state = parse_state(status)
            logger.debug(f"Flipbook {job_id} poll {poll}/{self.max_polls}: {job.state.value}")

            if job.state is FlipbookState.READY:
                hash_id = status.get("hash") or status.get("hashid") or status.get("hash_id")
                if not hash_id:
                    raise MalformedResponseError("Ready flipbook has no hash id", raw=status)
                job.hash_id = str(hash_id)
                job.view_url = self.view_url(job.hash_id)
                logger.info(f"Flipbook ready after {poll} polls: {job.view_url}")
                return job

            if job.state is FlipbookState.FAILED:
                raise UpstreamError(f"Flipbook conversion failed for job {job_id}", body=status)

        job.state = FlipbookState.TIMED_OUT
        logger.warning(f"Flipbook {job_id} not ready after {self.max_polls} polls")
        raise FlipbookTimeoutError(
            f"Flipbook was not ready after {self.max_polls} status checks",
            job_id=job_id,
            polls=self.max_polls,
        )

    async def publish_pdf(self, pdf_bytes: bytes, filename: str = "story.pdf") -> FlipbookJob:
        job_id = await self.submit(pdf_bytes, filename)
        return await self.wait_until_ready(job_id)

    async def load_preview(self, preview_url: str) -> bytes:
        """Fetch PDF bytes for a preview URL, resolving local previews directly."""
        match = PREVIEW_PATH.search(httpx.URL(preview_url).path)
        if match and self.preview_store is not None:
            path = self.preview_store.get(match.group(1))
            if path is not None:
                return path.read_bytes()
            if not preview_url.lower().startswith(("http://", "https://")):
                raise PreviewNotFoundError(f"Preview {match.group(1)} not found or expired")

        try:
            response = await self.client.get(preview_url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Preview download failed: {e}")
            raise upstream_error_from(e, "Preview download failed") from e
        return response.content

    async def publish_from_url(self, preview_url: str) -> FlipbookJob:
        pdf_bytes = await self.load_preview(preview_url)
        return await self.publish_pdf(pdf_bytes, filename=preview_url.rstrip("/").rsplit("/", 1)[-1] + ".pdf")

    # ------------------------------------------------------------------ status lookup

    async def check_status(self, job_id: str) -> dict[str, Any]:
        """
        Look up a job's status with its own bounded retry.

        Each failed attempt waits ``status_base_delay * attempts_remaining``
        seconds before the next one.

        Returns:
            ``{"status": <state>, "details": <upstream payload>}``
        """
        attempts = max(1, self.status_retries)
        for attempt in range(1, attempts + 1):
            try:
                status = await self.fetch_status(job_id)
            except (UpstreamError, MalformedResponseError) as e:
                remaining = attempts - attempt
                if remaining == 0:
                    raise
                delay = self.status_base_delay * remaining
                logger.warning(
                    f"Flipbook status attempt {attempt}/{attempts} failed: {e}; retrying in {delay:.1f}s"
                )
                await self.sleep(delay)
                continue

            state = parse_state(status)
            details = dict(status)
            hash_id = status.get("hash") or status.get("hashid") or status.get("hash_id")
            if state is FlipbookState.READY and hash_id:
                details["flipbookUrl"] = self.view_url(str(hash_id))
            return {"status": state.value, "details": details}
