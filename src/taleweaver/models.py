"""Pydantic data models and error taxonomy for the story pipeline."""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

CHAPTER_KEY = re.compile(r"^chapter(\d+)$")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    """Discriminator carried by every pipeline error."""

    RATE_LIMITED = "rate_limited"
    UPSTREAM = "upstream"
    MALFORMED = "malformed"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    CONFIGURATION = "configuration"


class StoryPipelineError(Exception):
    """Base exception for pipeline failures."""

    kind: ErrorKind = ErrorKind.UPSTREAM
    http_status: int = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "kind": self.kind.value, "details": self.details}


class UpstreamError(StoryPipelineError):
    """Raised when a third-party call fails (network error or non-2xx status)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: Any = None,
    ):
        super().__init__(message, details=body)
        self.status_code = status_code
        self.body = body
        if status_code == 429:
            self.kind = ErrorKind.RATE_LIMITED


class MalformedResponseError(StoryPipelineError):
    """Raised when an upstream answered but the payload is unusable."""

    kind = ErrorKind.MALFORMED

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message, details=raw)
        self.raw = raw


class NoResponseError(MalformedResponseError):
    """Raised when a completion came back without any message."""


class ContentTooShortError(MalformedResponseError):
    """Raised when generated text has fewer paragraphs than required."""

    def __init__(self, message: str, raw: str, paragraph_count: int, required: int):
        super().__init__(message, raw=raw)
        self.paragraph_count = paragraph_count
        self.required = required


class InvalidRequestError(StoryPipelineError):
    """Raised on local validation failures (missing fields, no upload)."""

    kind = ErrorKind.VALIDATION
    http_status = 400


class FlipbookTimeoutError(StoryPipelineError):
    """Raised when a flipbook job is still not ready after the polling budget."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, job_id: str, polls: int):
        super().__init__(message, details={"jobId": job_id, "polls": polls})
        self.job_id = job_id
        self.polls = polls


class ConfigurationError(StoryPipelineError):
    """Raised when a required credential or setting is missing."""

    kind = ErrorKind.CONFIGURATION


class PreviewNotFoundError(StoryPipelineError):
    """Raised when a preview id is unknown or already swept."""

    kind = ErrorKind.NOT_FOUND
    http_status = 404


# ---------------------------------------------------------------------------
# Story data
# ---------------------------------------------------------------------------


class StoryRequest(BaseModel):
    """Input to story generation."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(..., alias="message", min_length=1)
    chapter_count: int = Field(3, alias="numChapters", ge=1, le=20)
    max_words_per_chapter: int = Field(300, alias="maxWordsPerChapter", ge=1, le=5000)


class Chapter(BaseModel):
    """A named unit of story text."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=1)
    name: str
    content: str

    @property
    def paragraphs(self) -> list[str]:
        return split_paragraphs(self.content)


class StoryData(BaseModel):
    """Ordered chapters produced by the story writer."""

    model_config = ConfigDict(frozen=True)

    chapters: tuple[Chapter, ...] = ()

    @classmethod
    def from_flat(cls, data: Mapping[str, Any]) -> "StoryData":
        """Build from the flat ``chapterN`` / ``chapterNName`` wire format."""
        chapters = []
        for key, value in data.items():
            match = CHAPTER_KEY.match(str(key))
            if not match:
                continue
            index = int(match.group(1))
            if index < 1:
                continue
            name = data.get(f"chapter{index}Name") or f"Chapter {index}"
            chapters.append(
                Chapter(index=index, name=str(name).strip(), content=str(value).strip())
            )
        chapters.sort(key=lambda chapter: chapter.index)
        return cls(chapters=tuple(chapters))

    def to_flat(self) -> dict[str, str]:
        flat: dict[str, str] = {}
        for chapter in self.chapters:
            flat[f"chapter{chapter.index}"] = chapter.content
            flat[f"chapter{chapter.index}Name"] = chapter.name
        return flat

    def full_text(self) -> str:
        return "\n\n".join(chapter.content for chapter in self.chapters)

    def ensure_chapter_count(self, expected: int) -> "StoryData":
        """Require chapters numbered exactly 1..expected."""
        if len(self.chapters) != expected:
            raise MalformedResponseError(
                f"Expected {expected} chapters, got {len(self.chapters)}",
                raw=self.to_flat(),
            )
        indices = [chapter.index for chapter in self.chapters]
        if indices != list(range(1, expected + 1)):
            raise MalformedResponseError(
                f"Expected chapters 1..{expected}, got {indices}",
                raw=self.to_flat(),
            )
        return self

    def __len__(self) -> int:
        return len(self.chapters)


class IllustratedChapter(BaseModel):
    """A chapter paired with its illustration."""

    chapter: Chapter
    image_url: str | None = None


def pair_chapters(story: StoryData, image_urls: list[str | None]) -> list[IllustratedChapter]:
    """Pair chapters with image URLs by position."""
    if len(image_urls) > len(story.chapters):
        logger.warning(
            f"Ignoring {len(image_urls) - len(story.chapters)} image URLs without a chapter"
        )
    paired = []
    for position, chapter in enumerate(story.chapters):
        url = image_urls[position] if position < len(image_urls) else None
        paired.append(IllustratedChapter(chapter=chapter, image_url=url or None))
    return paired


class GeneratedStory(BaseModel):
    """Everything the generation endpoints return."""

    story: StoryData
    summary: str
    chapter_summaries: list[str] = Field(default_factory=list)
    image_urls: list[str] = Field(default_factory=list)
    story_name: str = ""

    def illustrated_chapters(self) -> list[IllustratedChapter]:
        return pair_chapters(self.story, self.image_urls)

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = dict(self.story.to_flat())
        response.update(
            {
                "summary": self.summary,
                "imageUrls": self.image_urls,
                "storyName": self.story_name,
            }
        )
        return response


def split_paragraphs(text: str) -> list[str]:
    """Split text on blank-line boundaries, dropping empty blocks."""
    return [block.strip() for block in re.split(r"\n\s*\n", text or "") if block.strip()]


# ---------------------------------------------------------------------------
# Previews and flipbooks
# ---------------------------------------------------------------------------


@dataclass
class PreviewRecord:
    """A rendered document kept for later retrieval."""

    id: str
    file_path: Path
    created_at: float


class FlipbookState(str, Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class FlipbookJob:
    """In-process view of an external flipbook conversion job."""

    external_id: str
    state: FlipbookState = FlipbookState.SUBMITTED
    hash_id: str | None = None
    view_url: str | None = None
    attempts: int = 0
    last_status: dict[str, Any] = field(default_factory=dict)
