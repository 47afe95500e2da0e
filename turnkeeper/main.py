"""Command-line entry point for turnkeeper."""

import asyncio
import mimetypes
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.table import Table

from turnkeeper.agent import Agent
from turnkeeper.config import Config, set_config
from turnkeeper.context_limits import MODEL_CONTEXT_WINDOWS, get_model_limits
from turnkeeper.exceptions import ConfigurationError
from turnkeeper.llm import ImageAttachment, create_backend
from turnkeeper.logging import configure_logging, log

app = typer.Typer(help="turnkeeper - tool-calling agent runtime")
console = Console()


def _load_config(config: str, model: str, provider: str) -> Config:
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", path=config, error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    set_config(cfg)
    return cfg


def _load_image(path: str) -> ImageAttachment:
    image_path = Path(path).expanduser()
    media_type = mimetypes.guess_type(image_path.name)[0] or "image/png"
    return ImageAttachment(media_type=media_type, data=image_path.read_bytes())


async def _ask(cfg: Config, message: str, image: ImageAttachment | None) -> str:
    backend = create_backend(cfg.model)
    agent = Agent(backend=backend, config=cfg)
    try:
        with Live(console=console, refresh_per_second=8, transient=True) as live:
            reply = await agent.run_turn(
                "cli",
                message,
                on_chunk=lambda text: live.update(Markdown(text)),
                image=image,
            )
        return reply
    finally:
        await backend.close()


@app.command()
def ask(
    message: str = typer.Argument(..., help="Message to send"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override backend family"),
    image: str = typer.Option("", "-i", "--image", help="Attach an image file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one turn sequence against the configured backend."""
    cfg = _load_config(config, model, provider)
    configure_logging("DEBUG" if verbose else None)

    attachment = _load_image(image) if image else None
    try:
        reply = asyncio.run(_ask(cfg, message, attachment))
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(2)
    except KeyboardInterrupt:
        log.info("Interrupted")
        sys.exit(130)

    console.print(Markdown(reply))


@app.command()
def limits(
    model: str = typer.Argument("", help="Show limits for one model only"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Print context windows and compaction thresholds."""
    cfg = _load_config(config, "", "")
    ctx = cfg.context
    names = [model] if model else sorted({*MODEL_CONTEXT_WINDOWS, *ctx.context_windows})

    table = Table("model", "context window", "compaction threshold")
    for name in names:
        entry = get_model_limits(name, ratio=ctx.compaction_ratio, overrides=ctx.context_windows)
        table.add_row(name, f"{entry.context_window:,}", f"{entry.compaction_threshold:,}")
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
