"""
hotpatch CLI - Main entry point for the patch manager.

Commands:
    load        Load a patch module (or --all installed)
    unload      Unload a patch module (or --all resident)
    install     Install a patch binary for a kernel release
    uninstall   Remove an installed patch binary
    list        Show loaded and installed patch modules
    info        Show metadata of a patch binary
    signal      Nudge tasks blocking the current transition
    version     Show version
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

import click
import structlog
from rich.console import Console
from rich.markup import escape

from hotpatch import __version__
from hotpatch.errors import HotpatchError

if TYPE_CHECKING:
    from hotpatch.kernel.controller import PatchController

console = Console()


def _configure_logging(verbosity: int) -> None:
    level = logging.DEBUG if verbosity > 0 else logging.INFO
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


@contextmanager
def _fail_on_error() -> Iterator[None]:
    """Turn lifecycle errors into a message and exit status 1."""
    try:
        yield
    except HotpatchError as e:
        stalled = getattr(e, "stalled", None)
        if stalled:
            from hotpatch.kernel.status import show_stalled

            show_stalled(stalled)
        console.print(f"[red]error:[/red] {escape(str(e))}")
        raise SystemExit(1) from e


def _controller(ctx: click.Context) -> PatchController:
    from hotpatch.kernel.config import PatchConfig
    from hotpatch.kernel.controller import PatchController

    try:
        config = PatchConfig.load(ctx.obj["config_path"])
    except ValueError as e:
        raise click.ClickException(f"invalid configuration: {e}") from e
    factory = ctx.obj.get("controller_factory") or PatchController
    return factory(config)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=Path, help="Path to config file")
@click.option("--verbose", "-v", count=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, config: Path | None, verbose: int) -> None:
    """hotpatch - Kernel live-patch lifecycle manager"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    _configure_logging(verbose)


@main.command()
@click.option("--all", "load_all", is_flag=True, help="Load all installed patch modules")
@click.argument("module", required=False)
@click.pass_context
def load(ctx: click.Context, load_all: bool, module: str | None) -> None:
    """Load a patch module (name or path)."""
    if load_all == bool(module):
        raise click.UsageError("give either a module or --all")

    with _fail_on_error():
        controller = _controller(ctx)
        outcomes = controller.load_all() if load_all else [controller.load(module)]

    for outcome in outcomes:
        if outcome.core_activated:
            console.print("[dim]loaded core module[/dim]")
        if outcome.action == "already-enabled":
            console.print(f"module named {outcome.module} already loaded and enabled")
        elif outcome.action == "re-enabled":
            console.print(f"[green]✓[/green] re-enabled patch module {outcome.module}")
        else:
            console.print(f"[green]✓[/green] loaded patch module {outcome.module}")


@main.command()
@click.option("--all", "unload_all", is_flag=True, help="Unload all resident patch modules")
@click.argument("module", required=False)
@click.pass_context
def unload(ctx: click.Context, unload_all: bool, module: str | None) -> None:
    """Disable and remove a patch module."""
    if unload_all == bool(module):
        raise click.UsageError("give either a module or --all")

    with _fail_on_error():
        controller = _controller(ctx)
        if not unload_all:
            name, removed = controller.unload(module)
            if removed:
                console.print(f"[green]✓[/green] unloaded patch module {name}")
            else:
                console.print(f"[yellow]⚠[/yellow] {name} disabled, module stays resident")
            return

        report = controller.unload_all()

    for name in report.unloaded:
        console.print(f"[green]✓[/green] unloaded patch module {name}")
    if not report.success:
        for name in report.remaining:
            reason = report.errors.get(name, "still resident")
            console.print(f"[red]failed to unload module {name}:[/red] {escape(reason)}")
        raise SystemExit(1)


@main.command()
@click.option("--kernel-version", "-k", type=str, help="Target kernel release")
@click.argument("module", type=Path)
@click.pass_context
def install(ctx: click.Context, kernel_version: str | None, module: Path) -> None:
    """Install a patch binary."""
    from hotpatch.install.manager import InstallManager

    with _fail_on_error():
        controller = _controller(ctx)
        installer = InstallManager(controller.config, controller.finder)
        target = installer.install(module, kernel_version)
    console.print(f"[green]✓[/green] installed {target}")


@main.command()
@click.option("--kernel-version", "-k", type=str, help="Target kernel release")
@click.argument("module")
@click.pass_context
def uninstall(ctx: click.Context, kernel_version: str | None, module: str) -> None:
    """Uninstall a patch binary."""
    from hotpatch.install.manager import InstallManager

    with _fail_on_error():
        controller = _controller(ctx)
        installer = InstallManager(controller.config, controller.finder)
        target = installer.uninstall(module, kernel_version)
    console.print(f"[green]✓[/green] uninstalled {target}")


@main.command(name="list")
@click.option("--json", "as_json", is_flag=True, help="JSON output")
@click.pass_context
def list_modules(ctx: click.Context, as_json: bool) -> None:
    """List loaded and installed patch modules."""
    from hotpatch.install.manager import InstallManager
    from hotpatch.kernel.status import gather_listing, show_listing

    with _fail_on_error():
        controller = _controller(ctx)
        installer = InstallManager(controller.config, controller.finder)
        listing = gather_listing(controller, installer)
    show_listing(listing, json_output=as_json)


@main.command()
@click.argument("module")
@click.pass_context
def info(ctx: click.Context, module: str) -> None:
    """Show information about a patch module."""
    with _fail_on_error():
        details = _controller(ctx).info(module)
    console.print(f"Patch information for {escape(module)}:")
    console.print(details, markup=False, highlight=False)


@main.command()
@click.pass_context
def signal(ctx: click.Context) -> None:
    """Signal tasks stalling the current patch transition."""
    with _fail_on_error():
        name = _controller(ctx).signal()
    if name is None:
        console.print("[dim]No patch transition in progress[/dim]")
    else:
        console.print(f"signaled stalled processes of {name}")


@main.command()
def version() -> None:
    """Show version."""
    console.print(__version__)


if __name__ == "__main__":
    main()
