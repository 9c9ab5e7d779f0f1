"""Configuration management using Pydantic settings."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Retry philosophy:
    - One retry policy is shared by every OpenAI call (story, summary,
      image, vision). Only the status codes in ``retryable_status_codes``
      are retried; everything else fails fast.
    - Flipbook polling has its own budget (``flipbook_max_polls`` polls,
      ``flipbook_poll_interval`` seconds apart) and gives up with a timeout
      rather than an upstream error.
    """

    model_config = {
        "extra": "ignore",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    # API Keys
    openai_api_key: str = ""  # Required for every generation endpoint
    openai_base_url: str | None = None
    flipbook_api_key: str | None = None

    # Model configurations
    story_model: str = "gpt-4o"
    summary_model: str = "gpt-4o-mini"
    vision_model: str = "gpt-4o"
    image_model: str = "dall-e-3"
    image_size: str = "1024x1024"
    llm_timeout: float = 120.0

    # Retry settings
    llm_max_retries: int = 5
    llm_retry_base_delay: float = 1.0
    llm_retry_max_wait: float = 60.0
    retryable_status_codes: list[int] = [429]

    # Story shape
    default_chapter_count: int = 3
    default_max_words: int = 300
    min_description_paragraphs: int = 5
    enforce_story_prompt: bool = False
    chapter_concurrency: int = 4  # Chapters summarized/illustrated at once

    # Flipbook hosting
    flipbook_api_url: str = "https://api.flipbook.example.com/v1"
    flipbook_view_url: str = "https://flipbook.example.com/view"
    flipbook_poll_interval: float = 5.0
    flipbook_max_polls: int = 10
    flipbook_status_retries: int = 3
    flipbook_status_base_delay: float = 1.0
    flipbook_timeout: float = 120.0

    # Preview storage
    preview_dir: Path = Path("previews")
    preview_retention_seconds: float = 3600.0
    preview_sweep_interval: float = 3600.0
    upload_dir: Path = Path("uploads")

    # Document assembly
    image_download_timeout: float = 30.0
    pdf_stream_chunk_size: int = 64 * 1024
    pdf_spool_max_size: int = 1024 * 1024  # Larger streamed PDFs spill to disk

    # Development settings
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]


def ensure_directories(config: Settings | None = None) -> None:
    """Create the preview and upload directories."""
    config = config or settings
    for path in (config.preview_dir, config.upload_dir):
        Path(path).mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()


def get_config() -> Settings:
    """Get the global configuration instance."""
    return settings


def api_keys_configured() -> bool:
    """Whether the credentials needed by the full pipeline are present."""
    return bool(settings.openai_api_key) and bool(settings.flipbook_api_key)
