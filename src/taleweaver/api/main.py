"""FastAPI application for the illustrated story pipeline."""

import asyncio
import logging
import re
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, TypeVar

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from ..chains.describer import describe_image
from ..chains.illustrator import generate_image
from ..chains.writer import regenerate_story
from ..config import api_keys_configured, ensure_directories, get_config, settings
from ..models import (
    ErrorKind,
    InvalidRequestError,
    PreviewNotFoundError,
    StoryPipelineError,
    StoryRequest,
)
from ..runner import assemble_chapters, generate_illustrated_story, generate_story_from_image
from ..storage import PreviewStore
from ..tools.pdf import iter_pdf_chunks, render_pdf_bytes
from ..tools.uploaders.flipbook import FlipbookClient
from ..utils.debug_logger import configure_logging

logger = logging.getLogger(__name__)

T = TypeVar("T")

DISCONNECT_POLL_SECONDS = 0.5


# Request/Response models
class RegenerateStoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    story: str = ""
    regenerate_prompt: str | None = Field(None, alias="regeneratePrompt")


class RegenerateImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    summary: str = ""
    regenerate_prompt: str | None = Field(None, alias="regeneratePrompt")


class PDFRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    story_data: dict[str, Any] | None = Field(None, alias="storyData")
    image_urls: list[str | None] = Field(default_factory=list, alias="imageUrls")
    story_name: str | None = Field(None, alias="storyName")


class FlipbookFromUrlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    preview_url: str | None = Field(None, alias="previewUrl")


class PreviewResponse(BaseModel):
    previewId: str
    previewUrl: str


class FlipbookResponse(BaseModel):
    success: bool
    flipbookUrl: str


class HealthResponse(BaseModel):
    status: str
    api_keys_configured: bool
    preview_count: int


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    ensure_directories()
    store = PreviewStore()
    store.start()
    app.state.preview_store = store
    app.state.flipbook_client = None
    try:
        yield
    finally:
        await store.stop()
        if app.state.flipbook_client is not None:
            await app.state.flipbook_client.aclose()


# Initialize FastAPI app
app = FastAPI(
    title="Taleweaver API",
    description="Illustrated story generation, PDF export and flipbook publishing",
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@app.exception_handler(StoryPipelineError)
async def pipeline_error_handler(request: Request, exc: StoryPipelineError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed [{exc.kind.value}]: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Invalid request",
            "kind": ErrorKind.VALIDATION.value,
            "details": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


# ---------------------------------------------------------------------------
# Dependencies and helpers
# ---------------------------------------------------------------------------


def get_preview_store(request: Request) -> PreviewStore:
    return request.app.state.preview_store


def get_flipbook_client(request: Request) -> FlipbookClient:
    client = getattr(request.app.state, "flipbook_client", None)
    if client is None:
        client = FlipbookClient(preview_store=get_preview_store(request))
        request.app.state.flipbook_client = client
    return client


async def run_until_disconnect(request: Request, awaitable: Awaitable[T]) -> T:
    """Run ``awaitable``, cancelling it if the client goes away first."""
    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.warning(f"Client disconnected; cancelling {request.url.path}")
                task.cancel()
                raise HTTPException(status_code=499, detail="Client disconnected")
    finally:
        if not task.done():
            task.cancel()


@asynccontextmanager
async def temporary_upload(upload: UploadFile | None, field: str) -> AsyncIterator[Path]:
    """Persist an upload to the upload directory; always removed on exit."""
    if upload is None or not upload.filename:
        raise InvalidRequestError(f"No {field} file uploaded")

    upload_dir = Path(get_config().upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = upload_dir / f"{uuid.uuid4().hex}{Path(upload.filename).suffix}"
    try:
        path.write_bytes(await upload.read())
        if path.stat().st_size == 0:
            raise InvalidRequestError(f"Uploaded {field} file is empty")
        yield path
    finally:
        path.unlink(missing_ok=True)
        await upload.close()


def pdf_filename(story_name: str | None) -> str:
    stem = re.sub(r"[^A-Za-z0-9._-]+", "_", (story_name or "").strip()).strip("_")
    return f"{stem or 'story'}.pdf"


def parse_optional_int(value: str | None, field: str) -> int | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        parsed = int(value)
    except ValueError:
        raise InvalidRequestError(f"{field} must be an integer") from None
    if parsed < 1:
        raise InvalidRequestError(f"{field} must be at least 1")
    return parsed


# ---------------------------------------------------------------------------
# Story endpoints
# ---------------------------------------------------------------------------


@app.post("/api/chat")
async def chat(request: Request, story_request: StoryRequest) -> dict[str, Any]:
    """Generate an illustrated story from a prompt."""
    result = await run_until_disconnect(request, generate_illustrated_story(story_request))
    return result.to_response()


@app.post("/api/regenerate-story")
async def regenerate_story_endpoint(body: RegenerateStoryRequest) -> dict[str, str]:
    """Rewrite a story, optionally steered by a new prompt."""
    new_story = await regenerate_story(body.story, body.regenerate_prompt)
    return {"newStory": new_story}


@app.post("/api/regenerate-image")
async def regenerate_image(body: RegenerateImageRequest) -> dict[str, str]:
    """Generate a new illustration from a summary or a custom prompt."""
    prompt = body.regenerate_prompt or body.summary
    if not prompt or not prompt.strip():
        raise InvalidRequestError("summary or regeneratePrompt is required")
    return {"newImageUrl": await generate_image(prompt)}


@app.post("/api/describe-image")
async def describe_image_endpoint(image: UploadFile | None = File(None)) -> dict[str, str]:
    """Describe an uploaded image in narrative paragraphs."""
    async with temporary_upload(image, "image") as path:
        description = await describe_image(path.read_bytes(), image.content_type or "image/png")
    return {"description": description}


@app.post("/api/generate-story-from-image")
async def generate_story_from_image_endpoint(
    request: Request,
    image: UploadFile | None = File(None),
    numChapters: str | None = Form(None),
    maxWordsPerChapter: str | None = Form(None),
) -> dict[str, Any]:
    """Generate an illustrated story seeded by an uploaded image."""
    chapter_count = parse_optional_int(numChapters, "numChapters")
    max_words = parse_optional_int(maxWordsPerChapter, "maxWordsPerChapter")
    async with temporary_upload(image, "image") as path:
        result = await run_until_disconnect(
            request,
            generate_story_from_image(
                path.read_bytes(),
                image.content_type or "image/png",
                chapter_count=chapter_count,
                max_words_per_chapter=max_words,
            ),
        )
    return result.to_response()


# ---------------------------------------------------------------------------
# PDF endpoints
# ---------------------------------------------------------------------------


@app.post("/api/pdf")
async def download_pdf(body: PDFRequest) -> Response:
    """Render the story and return it as one buffered download."""
    chapters = assemble_chapters(body.story_data, body.image_urls)
    title = body.story_name or "Untitled Story"
    pdf_bytes = await run_in_threadpool(render_pdf_bytes, title, chapters)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{pdf_filename(title)}"'},
    )


@app.post("/api/generate-pdf")
async def stream_pdf(body: PDFRequest) -> StreamingResponse:
    """Render the story, streaming bytes as they are produced."""
    chapters = assemble_chapters(body.story_data, body.image_urls)
    title = body.story_name or "Untitled Story"
    return StreamingResponse(
        iter_pdf_chunks(title, chapters),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{pdf_filename(title)}"'},
    )


@app.post("/api/generate-pdf-preview", response_model=PreviewResponse)
async def generate_pdf_preview(
    request: Request,
    body: PDFRequest,
    store: PreviewStore = Depends(get_preview_store),
) -> PreviewResponse:
    """Render the story and keep it for later retrieval."""
    if not body.story_name or not body.story_name.strip():
        raise InvalidRequestError("storyName is required")
    chapters = assemble_chapters(body.story_data, body.image_urls)
    pdf_bytes = await run_in_threadpool(render_pdf_bytes, body.story_name, chapters)
    record = store.save(pdf_bytes)
    preview_url = str(request.url_for("get_pdf_preview", preview_id=record.id))
    logger.info(f"Preview {record.id} stored for '{body.story_name}'")
    return PreviewResponse(previewId=record.id, previewUrl=preview_url)


@app.get("/api/pdf-preview/{preview_id}", name="get_pdf_preview")
async def get_pdf_preview(
    preview_id: str,
    store: PreviewStore = Depends(get_preview_store),
) -> FileResponse:
    """Serve a stored preview, or 404 once it has expired."""
    path = store.get(preview_id)
    if path is None:
        raise PreviewNotFoundError(f"Preview {preview_id} not found or expired")
    return FileResponse(path, media_type="application/pdf", filename=f"{preview_id}.pdf")


# ---------------------------------------------------------------------------
# Flipbook endpoints
# ---------------------------------------------------------------------------


@app.post("/api/create-flipbook-from-pdf", response_model=FlipbookResponse)
async def create_flipbook_from_pdf(
    pdf: UploadFile | None = File(None),
    client: FlipbookClient = Depends(get_flipbook_client),
) -> FlipbookResponse:
    """Publish an uploaded PDF as a flipbook."""
    async with temporary_upload(pdf, "pdf") as path:
        job = await client.publish_pdf(path.read_bytes(), filename=pdf.filename or "story.pdf")
    return FlipbookResponse(success=True, flipbookUrl=job.view_url)


@app.post("/api/create-flipbook-from-url", response_model=FlipbookResponse)
async def create_flipbook_from_url(
    body: FlipbookFromUrlRequest,
    client: FlipbookClient = Depends(get_flipbook_client),
) -> FlipbookResponse:
    """Publish a stored preview as a flipbook."""
    if not body.preview_url:
        raise InvalidRequestError("previewUrl is required")
    job = await client.publish_from_url(body.preview_url)
    return FlipbookResponse(success=True, flipbookUrl=job.view_url)


@app.get("/api/check-flipbook-status/{job_id}")
async def check_flipbook_status(
    job_id: str,
    client: FlipbookClient = Depends(get_flipbook_client),
) -> dict[str, Any]:
    """Look up a flipbook job's status."""
    return await client.check_status(job_id)


@app.get("/api/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Check API health and configuration."""
    api_keys_ok = api_keys_configured()
    store = getattr(request.app.state, "preview_store", None)
    return HealthResponse(
        status="healthy" if api_keys_ok else "degraded",
        api_keys_configured=api_keys_ok,
        preview_count=len(store) if store is not None else 0,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
