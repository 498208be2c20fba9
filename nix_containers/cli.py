"""Thin CLI wrapper for nix_containers.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
import os
from typing import Annotated, NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from nix_containers import __version__
from nix_containers.concurrency import CancelScope
from nix_containers.config import Settings, get_settings, print_settings_json
from nix_containers.daemon.client import DockerDaemon
from nix_containers.errors import NixContainersError, describe
from nix_containers.pipeline import build_and_push
from nix_containers.registry.auth import DockerConfigKeychain
from nix_containers.registry.client import Registry
from nix_containers.types import BuildOptions

app = typer.Typer(
    name="nix-containers",
    help="Nix Containers - build flake images, load them into docker and push them",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"nix-containers version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _fail(message: str) -> NoReturn:
    err_console.print(f"[red]{escape(message)}[/red]", soft_wrap=True)
    raise typer.Exit(code=1)


def _load_settings(ctx: typer.Context, **overrides: object) -> Settings:
    try:
        settings = get_settings(**(ctx.obj or {}), **overrides)
    except ValidationError as e:
        _fail(f"Invalid configuration: {e}")
    setup_logging(settings.log_level)
    return settings


def run_build(settings: Settings) -> None:
    """Run the pipeline for the effective settings.

    Raises:
        NixContainersError: If the image reference, a platform or any
            pipeline step is invalid or fails.
    """
    ref = settings.image_reference()
    platforms = settings.platform_list()
    build_context = settings.build_context or os.getcwd()
    options = BuildOptions(
        push=settings.push_image,
        accept_flake_config=settings.accept_flake_config,
        nix_binary=settings.nix_binary,
        keychain=DockerConfigKeychain(),
    )
    logger.debug(
        "Build %s from %s for %s (push=%s)",
        ref,
        build_context,
        ", ".join(str(p) for p in platforms),
        options.push,
    )

    daemon = DockerDaemon()
    with CancelScope(timeout=settings.build_timeout) as scope, Registry(
        daemon, options.keychain
    ) as registry:
        try:
            build_and_push(
                scope, daemon, registry, build_context, ref, platforms, options
            )
        except KeyboardInterrupt:
            scope.cancel("interrupted")
            raise


def _build(settings: Settings) -> None:
    try:
        run_build(settings)
    except NixContainersError as e:
        _fail(describe(e))
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(code=130) from None


@app.callback()
def main(
    ctx: typer.Context,
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
    accept_flake_config: Annotated[
        bool | None,
        typer.Option(
            "--accept-flake-config",
            help="Accept nix flake config (also ACCEPT_FLAKE_CONFIG)",
            show_default=False,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help="Log level: debug, info, warn or error (also LOG_LEVEL)",
        ),
    ] = None,
) -> None:
    """Nix Containers - build flake images, load them into docker and push them."""
    ctx.obj = {
        "accept_flake_config": accept_flake_config or None,
        "log_level": log_level,
    }


@app.command()
def build(
    ctx: typer.Context,
    context_arg: Annotated[
        str | None,
        typer.Argument(
            metavar="BUILD_CONTEXT",
            help="Flake reference or directory (default: current directory)",
            show_default=False,
        ),
    ] = None,
    image: Annotated[
        str | None,
        typer.Option("--image", "-i", help="Image reference to build (also IMAGE)"),
    ] = None,
    platforms: Annotated[
        str | None,
        typer.Option(
            "--platforms",
            "-p",
            help="Comma-separated os/arch platforms (also PLATFORMS)",
        ),
    ] = None,
    push: Annotated[
        bool | None,
        typer.Option(
            "--push",
            help="Push to the registry (also PUSH_IMAGE)",
            show_default=False,
        ),
    ] = None,
    build_context: Annotated[
        str | None,
        typer.Option("--build-context", help="Build context (also BUILD_CONTEXT)"),
    ] = None,
) -> None:
    """Build an image for one or more platforms.

    Several platforms require --push and publish a multi-architecture index.
    """
    settings = _load_settings(
        ctx,
        image=image,
        platforms=platforms,
        push_image=push or None,
        build_context=context_arg or build_context,
    )
    _build(settings)


skaffold_app = typer.Typer(help="Skaffold custom builder integration")
app.add_typer(skaffold_app, name="skaffold")


@skaffold_app.command("build")
def skaffold_build(ctx: typer.Context) -> None:
    """Build as a Skaffold custom builder.

    Reads IMAGE, PLATFORMS, BUILD_CONTEXT and PUSH_IMAGE from the environment.
    """
    _build(_load_settings(ctx))


@app.command()
def config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _load_settings(ctx)
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Image:               {settings.image or '(unset)'}")
    console.print(f"  Platforms:           {settings.platforms or '(host)'}")
    console.print(
        f"  Build context:       {settings.build_context or '(current directory)'}"
    )
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Push image:          {settings.push_image}")
    console.print(f"  Accept flake config: {settings.accept_flake_config}")
    console.print(f"  Nix binary:          {settings.nix_binary}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Build timeout:       {settings.build_timeout or '(none)'}")


if __name__ == "__main__":
    app()
