from __future__ import annotations
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from .bootstrap import build_app
from .config_loader import ConfigError, workflow_options
from .core.errors import ProviderError, UserCancelledError
from .core.ports import DEFAULT_MODELS, CancellationToken, ImagePart, ProviderKind
from .prompts.store import PromptNotFoundError
from .workflow.pipeline import LabWorkflow, WorkflowError
from .workflow.script import ImagesNotSupportedError, extract_script, generate_validation_script

app = typer.Typer(add_completion=False, help="Generate and format challenge labs with an AI model.")
console = Console(stderr=True)

T = TypeVar("T")

DEFAULT_CONFIG = Path("config/default.yaml")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to stderr.")):
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _print_chunk(piece: str) -> None:
    print(piece, end="", flush=True)


def _print_status(message: str) -> None:
    if message:
        console.print(message, style="yellow", markup=False)


def _run_cancellable(make: Callable[[], Awaitable[T]], token: CancellationToken) -> T:
    """Run the coroutine; Ctrl+C sets the token instead of killing the loop."""
    async def runner() -> T:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, token.cancel)
        except (NotImplementedError, RuntimeError, ValueError):
            pass  # no signal handlers on this platform/thread
        return await make()

    return asyncio.run(runner())


def _fail(message: str, code: int = 1) -> None:
    console.print(message, style="red", markup=False)
    raise typer.Exit(code)


@app.command()
def run(
    input_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Topic or document to start from."),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    agent: Optional[int] = typer.Option(None, "--agent", "-a", help="Run one agent instead of the whole workflow."),
    mode: Optional[str] = typer.Option(None, help="topic or document"),
    creation_mode: Optional[str] = typer.Option(None, help="series or single"),
    provider: Optional[str] = typer.Option(None, help="gemini, openai or ollama"),
    model: Optional[str] = typer.Option(None),
    export_dir: Optional[Path] = typer.Option(None, help="Where finished labs are written."),
    stream: Optional[bool] = typer.Option(None, "--stream/--no-stream"),
):
    """Run the lab agents over INPUT_FILE."""
    try:
        ctx = build_app(config, provider=provider, model=model)
    except (ConfigError, FileNotFoundError, ProviderError, ValueError) as e:
        _fail(str(e))

    cfg = ctx["cfg"]
    opts = workflow_options(cfg)
    if mode:
        opts["mode"] = mode.lower()
    if creation_mode:
        opts["creation_mode"] = creation_mode.lower()
    use_stream = bool(cfg["runtime"]["stream"]) if stream is None else stream

    try:
        workflow = LabWorkflow(
            ctx["service"],
            ctx["prompts"],
            ctx["provider_config"].provider,
            history=ctx["history"],
            export_dir=export_dir or ctx["paths"]["export_dir"],
            source_name=input_file.stem,
            **opts,
        )
    except ValueError as e:
        _fail(str(e))

    content = input_file.read_text(encoding="utf-8")
    token = CancellationToken()
    on_chunk = _print_chunk if use_stream else None

    async def go():
        if agent is not None:
            return [await workflow.run_agent(agent, content, token, on_chunk, _print_status)]
        return await workflow.run_all(content, token, on_chunk, _print_status)

    try:
        results = _run_cancellable(go, token)
    except UserCancelledError as e:
        _fail(str(e), code=130)
    except (ProviderError, WorkflowError, PromptNotFoundError) as e:
        _fail(str(e))

    if use_stream:
        print("")
    for res in results:
        line = f"[bold]Agent {res.agent_id}[/bold] {res.status.value}"
        if res.files:
            line += f" ({len(res.files)} file(s) written)"
        console.print(line)
        if not use_stream and res.output and res.agent_id in (1, 2):
            print(res.output)
    console.print(f"Run id: {ctx['history'].run_id}")


@app.command()
def script(
    instructions_file: Path = typer.Argument(..., exists=True, dir_okay=False),
    image: List[Path] = typer.Option([], "--image", "-i", exists=True, dir_okay=False, help="Screenshot to include."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write the extracted script here."),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    provider: Optional[str] = typer.Option(None),
    model: Optional[str] = typer.Option(None),
):
    """Generate a PowerShell validation script for a lab."""
    try:
        ctx = build_app(config, provider=provider, model=model)
        prompt = ctx["prompts"].get("script", ctx["provider_config"].provider)
    except (ConfigError, FileNotFoundError, ProviderError, PromptNotFoundError, ValueError) as e:
        _fail(str(e))

    instructions = instructions_file.read_text(encoding="utf-8")
    images = [ImagePart.from_path(p) for p in image]
    token = CancellationToken()

    try:
        text = _run_cancellable(
            lambda: generate_validation_script(
                ctx["service"], prompt, instructions, images, token, _print_chunk, _print_status
            ),
            token,
        )
    except UserCancelledError as e:
        _fail(str(e), code=130)
    except (ProviderError, ImagesNotSupportedError) as e:
        _fail(str(e))

    print("")
    if out:
        out.write_text(extract_script(text) + "\n", encoding="utf-8")
        console.print(f"Script written to {out}")


@app.command()
def models():
    """Show the default model of each provider."""
    table = Table("Provider", "Default model", "API key")
    for kind in ProviderKind:
        table.add_row(kind.display_name, DEFAULT_MODELS[kind.value], "required" if kind.is_cloud else "-")
    Console().print(table)


@app.command()
def serve(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    host: str = "127.0.0.1",
    port: int = 8000,
    provider: Optional[str] = typer.Option(None),
    model: Optional[str] = typer.Option(None),
):
    """Start the web API."""
    from .web.app import run as run_web

    run_web(config=config, host=host, port=port, provider=provider, model=model)


if __name__ == "__main__":
    sys.exit(app())
