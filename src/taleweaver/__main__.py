"""CLI entry point for Taleweaver."""

import asyncio

import typer

from .chains.naming import generate_story_name
from .config import settings
from .models import StoryPipelineError, StoryRequest
from .runner import generate_story_pdf
from .utils.debug_logger import configure_logging

cli = typer.Typer()


@cli.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the HTTP API."""
    import uvicorn

    configure_logging(settings.log_level)
    uvicorn.run("taleweaver.api.main:app", host=host, port=port, reload=reload)


@cli.command()
def generate(
    prompt: str = typer.Argument(..., help="What the story should be about"),
    chapters: int = typer.Option(
        settings.default_chapter_count, "--chapters", "-c", help="Number of chapters"
    ),
    words: int = typer.Option(
        settings.default_max_words, "--words", "-w", help="Maximum words per chapter"
    ),
    output: str = typer.Option("story.pdf", "--output", "-o", help="PDF output path"),
):
    """Generate an illustrated story and write it as a PDF."""
    configure_logging(settings.log_level)
    request = StoryRequest(prompt=prompt, chapter_count=chapters, max_words_per_chapter=words)

    try:
        result = asyncio.run(generate_story_pdf(request, output))
    except StoryPipelineError as e:
        typer.echo(f"❌ Generation failed [{e.kind.value}]: {e.message}")
        raise typer.Exit(1)

    typer.echo(f"✅ Story generated: {result['story_name']}")
    typer.echo(f"📖 Chapters: {result['chapters']}")
    typer.echo(f"⏱️  Runtime: {result['runtime_sec']:.1f} seconds")
    typer.echo(f"📄 PDF: {result['pdf_path']}")


@cli.command()
def name(summary: str = typer.Argument(..., help="Story summary")):
    """Print the title derived from a summary."""
    typer.echo(generate_story_name(summary))


if __name__ == "__main__":
    cli()
