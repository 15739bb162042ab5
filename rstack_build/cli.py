"""Thin CLI wrapper for rstack_build.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from rstack_build import __version__
from rstack_build.config import Settings, get_settings, print_settings_json
from rstack_build.errors import PipelineError, SandboxExecError

app = typer.Typer(
    name="rstack-build",
    help="rstack-build - cached, sandboxed R build environments",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route library logging through rich at the given level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rstack-build version {__version__}")
        raise typer.Exit()


def _fail(error: PipelineError) -> NoReturn:
    err_console.print(f"[red]Error ({error.code}): {escape(str(error))}[/red]")
    if isinstance(error, SandboxExecError) and error.output:
        err_console.print("[dim]Command output:[/dim]")
        err_console.print(error.output, markup=False, highlight=False)
    raise typer.Exit(code=1) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """rstack-build - cached, sandboxed R build environments."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    sandbox_display = (
        str(settings.sandbox_dir) if settings.sandbox_dir else "(temporary directory)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Platform:[/bold]")
    console.print(f"  Stack:               {settings.stack or '(not set)'}")
    console.print(f"  Release version:     {settings.release_version}")
    console.print(f"  Runtime version:     {settings.runtime_version or '(stack default)'}")
    console.print(f"  Package mirror:      {settings.package_mirror}")
    console.print(f"  Artifact base URL:   {settings.base_url}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  App directory:       {settings.app_dir}")
    console.print(f"  Sandbox directory:   {sandbox_display}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Debug tracing:       {settings.debug}")
    console.print(f"  Keep artifacts:      {settings.keep_artifacts}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Fetch retries:       {settings.fetch_retries}")


@app.command("cache-key")
def cache_key(
    stack: Annotated[
        str | None,
        typer.Option("--stack", "-s", help="Stack identifier (18, 20, 22)"),
    ] = None,
    release: Annotated[
        str | None,
        typer.Option("--release", "-r", help="Release version token"),
    ] = None,
) -> None:
    """Print the cache key for the effective configuration."""
    from rstack_build.pipeline import compute_build_key

    overrides = {
        k: v for k, v in {"stack": stack, "release_version": release}.items() if v
    }
    settings = Settings(**overrides)
    try:
        build_config = settings.to_build_config(Path.cwd())
    except PipelineError as e:
        _fail(e)
    console.print(compute_build_key(build_config))


@app.command("compile")
def compile_cmd(
    build_dir: Annotated[
        Path,
        typer.Argument(help="Build output directory", file_okay=False),
    ],
    stack: Annotated[
        str | None,
        typer.Option("--stack", "-s", help="Stack identifier (18, 20, 22)"),
    ] = None,
    keep_artifacts: Annotated[
        bool,
        typer.Option("--keep-artifacts", help="Keep ephemeral artifacts (test mode)"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Stream sandbox output to the log"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output summary as JSON"),
    ] = False,
) -> None:
    """Provision the sandbox, bootstrap dependencies and refresh caches."""
    from rstack_build.pipeline import run_build

    overrides: dict[str, object] = {}
    if stack:
        overrides["stack"] = stack
    if keep_artifacts:
        overrides["keep_artifacts"] = True
    if debug:
        overrides["debug"] = True
    settings = Settings(**overrides)
    configure_logging("DEBUG" if settings.debug else settings.log_level)

    try:
        build_config = settings.to_build_config(build_dir.absolute())
        summary = run_build(build_config)
    except PipelineError as e:
        _fail(e)

    for warning in summary.warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")

    if json_output:
        console.print(json.dumps(asdict(summary), indent=2), soft_wrap=True)
        return

    console.print(f"[green]Build succeeded[/green] (cache key {summary.cache_key})")
    hits = [name for name, hit in summary.restored.items() if hit]
    console.print(f"  Restored layers:  {', '.join(hits) or 'none'}")
    console.print(f"  Strategies run:   {', '.join(summary.strategies) or 'none'}")
    console.print(f"  Persisted layers: {', '.join(summary.persisted) or 'none'}")


cache_app = typer.Typer(help="Inspect and prune local cache layers")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list() -> None:
    """List cache keys with stored layers."""
    from rstack_build.cache.output import OutputCache
    from rstack_build.pipeline import LAYERS_DIRNAME

    settings = get_settings()
    cache = OutputCache(settings.cache_dir / LAYERS_DIRNAME)
    keys = cache.list_keys()
    if not keys:
        console.print("[yellow]No cache layers found[/yellow]")
        return
    for key in keys:
        console.print(f"  [green]{key}[/green]")


@cache_app.command("prune")
def cache_prune(
    keep: Annotated[
        str | None,
        typer.Option("--keep", help="Cache key to keep"),
    ] = None,
) -> None:
    """Remove cache layers for every key except --keep."""
    from rstack_build.cache.output import OutputCache
    from rstack_build.pipeline import LAYERS_DIRNAME

    settings = get_settings()
    cache = OutputCache(settings.cache_dir / LAYERS_DIRNAME)
    try:
        removed = cache.prune(keep_key=keep)
    except PipelineError as e:
        _fail(e)
    console.print(f"Removed {len(removed)} cache key(s)")


__all__ = ["app"]
