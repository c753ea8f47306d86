"""CLI entry point.

Commands:
- run:   Run a source file (or stdin) in a sandbox
- list:  List supported languages
- pull:  Pre-pull language images
- serve: Run the HTTP server
"""

import asyncio
import sys
from pathlib import Path
from typing import Annotated, List, Optional

import typer

from polyrun.config import config
from polyrun.logger import define_log_level
from polyrun.sandbox import SandboxError, SandboxRunner, default_registry

app = typer.Typer(
    name="polyrun",
    help="Run untrusted code in disposable containers",
    add_completion=False,
    no_args_is_help=True,
)


def get_runner() -> SandboxRunner:
    return SandboxRunner()


def _fail(message: str) -> None:
    typer.echo(message, err=True)
    raise typer.Exit(code=1)


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show sandbox lifecycle logs")
    ] = False,
) -> None:
    define_log_level("DEBUG" if verbose else "WARNING", config.log.file_level)


@app.command()
def run(
    file: Annotated[
        Optional[Path], typer.Argument(help="Source file; stdin when omitted")
    ] = None,
    language: Annotated[
        Optional[str], typer.Option("--type", "-t", help="Language of the source code")
    ] = None,
    timeout: Annotated[
        Optional[float], typer.Option("--timeout", help="Deadline in seconds")
    ] = None,
) -> None:
    """Run a program and pass its output through."""
    registry = default_registry()
    descriptor = None
    if language:
        descriptor = registry.find(language)
        if descriptor is None:
            _fail(f"{language!r} is not supported")

    if file is None:
        if descriptor is None:
            _fail("can't read source code from stdin without --type option")
        source = sys.stdin.read()
    else:
        if descriptor is None:
            descriptor = registry.find_by_extension(str(file))
            if descriptor is None:
                _fail(f"can't identify language for {str(file)!r} without --type option")
        try:
            source = file.read_text(encoding="utf-8")
        except OSError as e:
            _fail(str(e))

    try:
        result = asyncio.run(get_runner().run(descriptor, source, timeout=timeout))
    except SandboxError as e:
        _fail(str(e))

    typer.echo(result.stdout_text, nl=False)
    typer.echo(result.stderr_text, nl=False, err=True)
    if result.exit_status != 0:
        _fail(f"exit status {result.exit_status}")


@app.command("list")
def list_languages() -> None:
    """List supported languages."""
    for name in default_registry().names():
        typer.echo(name)


@app.command()
def pull(
    languages: Annotated[
        Optional[List[str]], typer.Argument(help="Languages to pull; all when omitted")
    ] = None,
) -> None:
    """Pull the images of the given languages."""
    runner = get_runner()
    try:
        asyncio.run(runner.prepare_images(languages or None))
    except SandboxError as e:
        _fail(str(e))


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", "-h", help="Host to bind to")] = "",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to bind to")] = 0,
) -> None:
    """Start the HTTP server."""
    import uvicorn

    from polyrun.server import create_app

    uvicorn.run(
        create_app(),
        host=host or config.server.host,
        port=port or config.server.port,
        log_level="info",
    )


if __name__ == "__main__":
    app()
