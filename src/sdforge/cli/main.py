"""
sdforge CLI Main Entry Point.

A thin presentation layer over the operation controller: it collects the
source, destination and confirmation, renders controller state while an
operation runs, and offers recovery choices when one fails.
"""

from __future__ import annotations

import json
import sys
import threading
from collections.abc import Callable
from contextlib import nullcontext
from pathlib import Path

import click
from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from sdforge import __version__
from sdforge.core.config import SdForgeConfig, load_config
from sdforge.core.controller import CancelOutcome, OperationController
from sdforge.core.logging import setup_logging
from sdforge.core.models import (
    IMAGE_SUFFIXES,
    Failure,
    Metrics,
    Operation,
    OperationMode,
    OperationState,
    is_image_file,
)
from sdforge.core.safety import CANCEL_WARNING, create_execution_plan, verify_confirmation
from sdforge.platform.devices import DeviceEnumerator

console = Console()

STATE_TITLES = {
    OperationState.IDLE: "Idle",
    OperationState.VALIDATING: "Validating access...",
    OperationState.UNMOUNTING: "Unmounting disk...",
    OperationState.COPYING: "Copying...",
    OperationState.SHRINKING: "Shrinking image...",
    OperationState.COMPLETED: "Complete",
    OperationState.ERRORED: "Failed",
}


def get_controller(ctx: click.Context) -> OperationController:
    """Get or create the operation controller from context."""
    if "controller" not in ctx.obj:
        config: SdForgeConfig = ctx.obj.get("config") or load_config()
        ctx.obj["controller"] = OperationController(config=config)
    return ctx.obj["controller"]


class OperationDisplay:
    """Collects controller events and renders them for rich.Live."""

    def __init__(self, controller: OperationController, quiet: bool = False) -> None:
        self.controller = controller
        self.quiet = quiet
        self.state = OperationState.IDLE
        self.metrics = Metrics()
        self._lock = threading.Lock()
        controller.add_state_callback(self._on_state)
        controller.add_metrics_callback(self._on_metrics)

    def begin(self) -> None:
        with self._lock:
            self.state = OperationState.VALIDATING
            self.metrics = Metrics()

    def _on_state(self, state: OperationState) -> None:
        with self._lock:
            self.state = state

    def _on_metrics(self, metrics: Metrics) -> None:
        with self._lock:
            self.metrics = metrics

    def render(self) -> Panel:
        with self._lock:
            state, metrics = self.state, self.metrics
        operation = self.controller.operation

        grid = Table.grid(padding=(0, 2))
        grid.add_column(style="cyan")
        grid.add_column()
        if state == OperationState.COPYING:
            grid.add_row("Written:", Text(metrics.display_text, style="yellow"))
            grid.add_row("Speed:", Text(metrics.transfer_rate_text or "-", style="green"))

        log = Text("\n".join(operation.recent_log if operation else ()), style="dim")
        title = Spinner("dots", text=Text(STATE_TITLES[state], style="bold cyan"))
        return Panel(Group(title, grid, log), title="sdforge", border_style="cyan")


def request_cancel(controller: OperationController, live: Live | None = None) -> None:
    """Turn a Ctrl-C into a cancel request, asking again while data is being written."""
    if live is not None:
        live.stop()
    if controller.cancel() == CancelOutcome.CONFIRMATION_REQUIRED:
        console.print(f"[bold red]{CANCEL_WARNING}[/bold red]")
        if click.confirm("Cancel anyway?", default=False):
            controller.cancel(confirmed=True)
    if live is not None:
        live.start()


def join_worker(
    controller: OperationController,
    thread: threading.Thread,
    live: Live | None = None,
    until: Callable[[], bool] | None = None,
) -> None:
    # The copy tools run in their own process group, so Ctrl-C lands here only
    while thread.is_alive() and not (until and until()):
        try:
            thread.join(0.25)
        except KeyboardInterrupt:
            request_cancel(controller, live)


def run_operation(
    controller: OperationController,
    display: OperationDisplay,
    start: Callable[[], threading.Thread],
) -> Operation:
    """Run an operation on a worker thread while rendering its progress."""
    display.begin()
    thread = start()

    if display.quiet:
        join_worker(controller, thread)
    else:
        # The sudo prompt needs the terminal to itself
        console.print(
            "[cyan]Validating access...[/cyan] [dim]Enter sudo password if prompted[/dim]"
        )
        join_worker(controller, thread, until=lambda: display.state != OperationState.VALIDATING)
        with Live(
            get_renderable=display.render,
            console=console,
            refresh_per_second=4,
            transient=True,
        ) as live:
            join_worker(controller, thread, live)

    final = controller.wait()
    if final is None:
        raise click.ClickException("Operation did not start")
    return final


def report_result(operation: Operation, quiet: bool = False) -> None:
    """Print the terminal result of an operation."""
    for warning in operation.warnings:
        console.print(f"[yellow]⚠ {escape(warning)}[/yellow]")

    if isinstance(operation.terminal_result, Failure):
        reason = escape(operation.terminal_result.reason)
        console.print(f"[red]✗ {operation.mode.value.title()} failed: {reason}[/red]")
        return

    if operation.mode == OperationMode.BACKUP:
        console.print(f"[green]✓ Backup saved to {operation.destination}[/green]")
    else:
        console.print(f"[green]✓ Image written to {operation.destination}[/green]")
    if operation.metrics.bytes_transferred and not quiet:
        console.print(f"Copied {operation.metrics.display_text}")


def run_with_recovery(
    controller: OperationController,
    display: OperationDisplay,
    mode: OperationMode,
    source: str,
    destination: str,
    allow_menu: bool = True,
) -> str:
    """
    Run an operation, offering retry after failures.

    Returns "done", "menu" or "exit".
    """
    operation = run_operation(
        controller, display, lambda: controller.start_async(mode, source, destination)
    )
    while True:
        report_result(operation, display.quiet)
        if operation.state == OperationState.COMPLETED:
            controller.reset()
            return "done"

        choices = ["retry", "menu", "exit"] if allow_menu else ["retry", "exit"]
        choice = click.prompt(
            "What next?",
            type=click.Choice(choices),
            default="exit",
        )
        if choice != "retry":
            controller.reset()
            return choice
        operation = run_operation(controller, display, controller.retry_async)


def show_plan(controller: OperationController, mode: OperationMode, source: str, destination: str) -> bool:
    """Show the execution plan and collect the user's confirmation."""
    plan = create_execution_plan(
        Operation(mode=mode, source=source, destination=destination),
        controller.capabilities,
        controller.config.shrink.enabled,
    )
    style = "red" if mode == OperationMode.RESTORE else "yellow"
    console.print(Panel(escape(plan.get_plan_text()), title="Confirm", border_style=style))

    if plan.confirmation_string:
        user_input = click.prompt(f"Type '{plan.confirmation_string}' to confirm", default="")
        if not verify_confirmation(destination, user_input):
            console.print("[red]Confirmation failed[/red]")
            return False
        return True

    return click.confirm("Start backup?", default=True)


def resolve_backup_destination(destination: Path, config: SdForgeConfig) -> str:
    """Backups into a directory get the default image name."""
    destination = destination.expanduser()
    if destination.is_dir():
        destination = destination / config.default_image_name
    return str(destination.resolve())


@click.group()
@click.version_option(version=__version__, prog_name="sdforge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    json_output: bool,
    quiet: bool,
) -> None:
    """
    sdforge - Back up and restore SD cards and USB drives.

    Copies whole devices to image files with dd, shrinks backups with
    pishrink when available, and writes plain or compressed images back.
    """
    ctx.ensure_object(dict)

    if config:
        ctx.obj["config"] = SdForgeConfig.load(config)
    else:
        ctx.obj["config"] = load_config()

    setup_logging(ctx.obj["config"].logging)

    ctx.obj["json_output"] = json_output
    ctx.obj["quiet"] = quiet


@cli.command("devices")
@click.pass_context
def list_devices(ctx: click.Context) -> None:
    """List removable disks that can be backed up or restored to."""
    controller = get_controller(ctx)
    enumerator = DeviceEnumerator(controller.capabilities)

    quiet = ctx.obj.get("quiet", False) or ctx.obj.get("json_output", False)
    with nullcontext() if quiet else console.status("Scanning disks..."):
        devices = enumerator.list()

    if ctx.obj.get("json_output", False):
        click.echo(json.dumps([d.to_dict() for d in devices], indent=2))
        return

    if not devices:
        console.print("[yellow]No external disks found[/yellow]")
        return

    table = Table(title="Removable Disks")
    table.add_column("Device", style="cyan")
    table.add_column("Description", style="white")

    for device in devices:
        table.add_row(device.raw_path or "-", escape(device.display_label))

    console.print(table)


@cli.command("backup")
@click.argument("source")
@click.argument("destination", type=click.Path(path_type=Path), default=Path("."))
@click.option("--no-shrink", is_flag=True, help="Skip shrinking the image")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def backup(
    ctx: click.Context,
    source: str,
    destination: Path,
    no_shrink: bool,
    yes: bool,
) -> None:
    """Back up the device SOURCE to an image file."""
    controller = get_controller(ctx)
    if no_shrink:
        controller.config.shrink.enabled = False

    source = controller.capabilities.raw_device_path(source)
    target = resolve_backup_destination(destination, controller.config)

    if not yes and not show_plan(controller, OperationMode.BACKUP, source, target):
        sys.exit(1)

    display = OperationDisplay(controller, quiet=ctx.obj.get("quiet", False))
    outcome = run_with_recovery(
        controller, display, OperationMode.BACKUP, source, target, allow_menu=False
    )
    if outcome != "done":
        sys.exit(1)


@cli.command("restore")
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("target")
@click.pass_context
def restore(ctx: click.Context, image: Path, target: str) -> None:
    """Write the image file IMAGE to the device TARGET."""
    controller = get_controller(ctx)

    if not is_image_file(image.name):
        console.print(f"[red]Not a recognized image ({', '.join(IMAGE_SUFFIXES)}): {image}[/red]")
        sys.exit(1)

    target = controller.capabilities.raw_device_path(target)
    source = str(image.expanduser().resolve())

    if not show_plan(controller, OperationMode.RESTORE, source, target):
        sys.exit(1)

    display = OperationDisplay(controller, quiet=ctx.obj.get("quiet", False))
    outcome = run_with_recovery(
        controller, display, OperationMode.RESTORE, source, target, allow_menu=False
    )
    if outcome != "done":
        sys.exit(1)


def select_device(controller: OperationController, prompt: str) -> str:
    """Pick a detected device by number, or enter a path manually."""
    devices = [d for d in DeviceEnumerator(controller.capabilities).list() if not d.is_sentinel]

    if devices:
        console.print(f"[cyan bold]{prompt}[/cyan bold]")
        for index, device in enumerate(devices, 1):
            console.print(f"  {index}. {escape(device.display_label)}")
        console.print("  m. Enter device path manually...")
        choice = click.prompt(
            "Select",
            type=click.Choice([str(i) for i in range(1, len(devices) + 1)] + ["m"]),
        )
        if choice != "m":
            return devices[int(choice) - 1].raw_path
    else:
        console.print("[yellow]No external disks found - enter the path manually[/yellow]")

    path = click.prompt("Enter device path (e.g., /dev/rdisk2 or /dev/sdb)")
    return controller.capabilities.raw_device_path(path.strip())


def prompt_image() -> str:
    """Ask for an existing image file to restore."""
    while True:
        path = Path(click.prompt("Image file to restore")).expanduser()
        if not path.is_file():
            console.print(f"[red]File not found: {path}[/red]")
        elif not is_image_file(path.name):
            console.print(f"[red]Not a recognized image ({', '.join(IMAGE_SUFFIXES)})[/red]")
        else:
            return str(path.resolve())


@cli.command("interactive")
@click.pass_context
def interactive(ctx: click.Context) -> None:
    """Guided backup and restore."""
    controller = get_controller(ctx)
    config = controller.config
    display = OperationDisplay(controller, quiet=ctx.obj.get("quiet", False))

    while True:
        action = click.prompt(
            "What would you like to do?",
            type=click.Choice(["backup", "restore", "exit"]),
            default="backup",
        )
        if action == "exit":
            return

        if action == "backup":
            mode = OperationMode.BACKUP
            source = select_device(controller, "Select source SD card:")
            default_dest = Path.home() / config.default_image_name
            destination = resolve_backup_destination(
                Path(click.prompt("Save image to", default=str(default_dest))),
                config,
            )
        else:
            mode = OperationMode.RESTORE
            source = prompt_image()
            destination = select_device(controller, "Select target SD card:")

        if not show_plan(controller, mode, source, destination):
            continue

        if run_with_recovery(controller, display, mode, source, destination) == "exit":
            return


def main() -> None:
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
