"""
Command-line interface for Marlin Link.

This module provides the CLI using Click, supporting configuration via:
1. Environment variables (highest precedence)
2. CLI arguments
3. Config file
4. Default values (lowest precedence)
"""

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
import yaml

from marlin_link.core.config import (
    DEFAULT_CONFIG_PATH,
    ENV_BAUD_RATES,
    ENV_CONFIG_FILE,
    ENV_PATH,
    ENV_USB_ID,
    Config,
)
from marlin_link.core.logging import get_logger, setup_logging
from marlin_link.core.task import JOB_FINISHED, ExecutionJob, JobStatus
from marlin_link.core.utils import MarlinLinkError
from marlin_link.device.printer import MarlinPrinter
from marlin_link.device.simulator import SimulatedPrinter

logger = get_logger()

SIMULATED_PORT = "simulated"


class CliContext:
    """State shared by the subcommands."""

    def __init__(
        self,
        config: Config,
        dry_run: bool,
        verbosity: int,
        config_file: Path | None = None,
    ):
        self.config = config
        self.config_file = config_file
        self.dry_run = dry_run
        self.verbosity = verbosity

    def make_printer(self) -> tuple[MarlinPrinter, str | None]:
        # Subcommands fetch what they need explicitly
        self.config.connection.auto_fetch = False
        if self.dry_run:
            simulator = SimulatedPrinter()
            printer = MarlinPrinter(self.config, connection_factory=simulator.connection_factory())
            return printer, SIMULATED_PORT
        return MarlinPrinter(self.config), None


def run_with_printer(
    ctx: CliContext,
    action: Callable[[MarlinPrinter], Awaitable[int | None]],
) -> None:
    """Connect, run `action`, disconnect, and exit with its status code."""

    async def runner() -> int | None:
        printer, port = ctx.make_printer()
        await printer.connect(port=port)
        try:
            return await action(printer)
        finally:
            await printer.disconnect()

    try:
        code = asyncio.run(runner())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        code = 130
    except MarlinLinkError as e:
        logger.error(f"{type(e).__name__}: {e}")
        if ctx.verbosity:
            import traceback
            traceback.print_exc()
        sys.exit(1)

    if code:
        sys.exit(code)


@click.group()
@click.option(
    "-c", "--config",
    "config_file",
    type=click.Path(exists=False, path_type=Path),
    envvar=ENV_CONFIG_FILE,
    default=None,
    help=f"Path to configuration file. [default: {DEFAULT_CONFIG_PATH}] [env: {ENV_CONFIG_FILE}]",
)
@click.option(
    "-p", "--path",
    "dev_path",
    type=str,
    default=None,
    help=f"Serial device path (e.g., /dev/ttyUSB0). [env: {ENV_PATH}]",
)
@click.option(
    "-d", "--device", "--usb-id",
    "usb_id",
    type=str,
    default=None,
    help=f"USB device ID in vendor:product format (e.g., 1a86:7523). [env: {ENV_USB_ID}]",
)
@click.option(
    "-b", "--baud-rate",
    type=str,
    default=None,
    help=f"Baud rate, or comma separated candidates. [env: {ENV_BAUD_RATES}]",
)
@click.option(
    "--comm-log-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write every line sent to or received from the printer to this file.",
)
@click.option(
    "-v", "--verbose",
    count=True,
    help="Increase verbosity (-v for DEBUG, -vv for VERBOSE serial traffic).",
)
@click.option(
    "-q", "--quiet",
    is_flag=True,
    default=False,
    help="Suppress all output except errors.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Talk to a simulated printer instead of a serial port.",
)
@click.version_option(package_name="marlin-link")
@click.pass_context
def main(
    ctx: click.Context,
    config_file: Path | None,
    dev_path: str | None,
    usb_id: str | None,
    baud_rate: str | None,
    comm_log_file: str | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
) -> None:
    """
    Marlin Link - talk to Marlin 3D printers over a serial port.

    Configuration is loaded with the following precedence (highest to lowest):

    \b
    1. Environment variables
    2. CLI arguments
    3. Configuration file
    4. Default values

    Example usage:

    \b
        # Send a few commands
        marlin-link -p /dev/ttyUSB0 send G28 "M105"

        # Stream a program
        marlin-link --device 1a86:7523 stream part.gcode

        # Try everything against the simulator
        marlin-link --dry-run settings
    """
    cli_args: dict[str, Any] = {}
    if dev_path is not None:
        cli_args["dev_path"] = dev_path
    if usb_id is not None:
        cli_args["usb_id"] = usb_id
    if baud_rate is not None:
        cli_args["baud_rate"] = baud_rate
    if comm_log_file is not None:
        cli_args["comm_log_file"] = comm_log_file

    try:
        config = Config.load(config_file=config_file, cli_args=cli_args)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    setup_logging(verbosity_level=verbose, quiet=quiet, comm_log_file=config.log.comm_log_file)

    ctx.obj = CliContext(
        config=config, dry_run=dry_run, verbosity=verbose, config_file=config_file
    )


@main.command()
@click.argument("gcode", nargs=-1, required=True)
@click.option("--timeout", type=float, default=None, help="Ack timeout per command in seconds.")
@click.pass_obj
def send(ctx: CliContext, gcode: tuple[str, ...], timeout: float | None) -> None:
    """Send G-code commands and print each result."""

    async def action(printer: MarlinPrinter) -> int:
        failed = 0
        for text in gcode:
            result = await printer.send_interactive(text, timeout=timeout)
            assert result is not None
            if result.succeeded:
                click.echo(f"{text}: {result.status}")
            else:
                failed += 1
                click.echo(f"{text}: {result.status} ({result.message})", err=True)
        return 1 if failed else 0

    run_with_printer(ctx, action)


@main.command()
@click.argument("file", type=click.File("r"))
@click.option("--pace", type=float, default=None, help="Delay after each line in milliseconds.")
@click.pass_obj
def stream(ctx: CliContext, file: Any, pace: float | None) -> None:
    """Stream a G-code program. Ctrl-C aborts the job with an emergency stop."""
    lines = file.read().splitlines()
    label = getattr(file, "name", "program")

    async def action(printer: MarlinPrinter) -> int:
        job = printer.stream_program(
            lines,
            label=label,
            pace=pace / 1000 if pace is not None else None,
        )

        def on_progress(sent: int, total: int) -> None:
            click.echo(f"\r{sent}/{total} lines", nl=False)

        job.subscribe(on_progress)
        job.subscribe(lambda j: click.echo(""), JOB_FINISHED)

        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            loop.add_signal_handler(signal.SIGINT, _abort_job, printer, job)

        try:
            await job.wait()
        finally:
            if sys.platform != "win32":
                loop.remove_signal_handler(signal.SIGINT)

        click.echo(f"Job {job.id}: {job.status} ({job.sent}/{job.total})")
        if job.status == JobStatus.ERROR:
            click.echo(f"Error: {job.result.error if job.result else 'unknown'}", err=True)
            return 1
        return 0 if job.status == JobStatus.COMPLETED else 130

    run_with_printer(ctx, action)


def _abort_job(printer: MarlinPrinter, job: ExecutionJob) -> None:
    if job.is_active:
        logger.info("Aborting job")
        printer.abort(job)


@main.command()
@click.pass_obj
def settings(ctx: CliContext) -> None:
    """Fetch the printer settings (M503) and print them as YAML."""

    async def action(printer: MarlinPrinter) -> int:
        snapshot = await printer.fetch_settings()
        click.echo(yaml.safe_dump(snapshot.to_dict(), default_flow_style=False, sort_keys=False))
        return 0

    run_with_printer(ctx, action)


@main.command()
@click.option("--level", is_flag=True, default=False, help="Probe the bed (G28 + G29) first.")
@click.pass_obj
def mesh(ctx: CliContext, level: bool) -> None:
    """Fetch the bed mesh and print it."""

    async def action(printer: MarlinPrinter) -> int:
        bed_mesh = await (printer.run_bed_leveling() if level else printer.fetch_bed_mesh())
        if not bed_mesh.is_valid:
            click.echo(f"No usable bed mesh ({bed_mesh.state})", err=True)
            return 1

        for row in reversed(bed_mesh.grid):
            click.echo(" ".join("   .   " if z is None else f"{z:+.3f}" for z in row))
        click.echo(
            f"min {bed_mesh.min:+.3f}  max {bed_mesh.max:+.3f}  range {bed_mesh.range:.3f}"
        )
        return 0

    run_with_printer(ctx, action)


@main.command()
@click.option("--count", type=int, default=10, help="Number of samples to print.")
@click.option("--interval", type=float, default=1000, help="Poll interval in milliseconds.")
@click.option("--position", is_flag=True, default=False, help="Also poll the position (M114).")
@click.pass_obj
def monitor(ctx: CliContext, count: int, interval: float, position: bool) -> None:
    """Poll and print temperatures."""

    async def action(printer: MarlinPrinter) -> int:
        for _ in range(count):
            await printer.send_interactive("M105")
            if position:
                await printer.send_interactive("M114")
            current = printer.current_telemetry()
            line = (
                f"hotend {current.hotend.current:.1f}/{current.hotend.target:.1f}  "
                f"bed {current.bed.current:.1f}/{current.bed.target:.1f}"
            )
            if position:
                p = current.position
                line += f"  X{p.x:.2f} Y{p.y:.2f} Z{p.z:.2f}"
            click.echo(line)
            await asyncio.sleep(interval / 1000)
        return 0

    run_with_printer(ctx, action)


@main.command("generate-config")
@click.pass_obj
def generate_config(ctx: CliContext) -> None:
    """Write the current configuration to the config file and exit."""
    target_path = ctx.config_file or DEFAULT_CONFIG_PATH
    try:
        ctx.config.save(target_path)
        click.echo(f"Configuration file generated: {target_path}")
    except OSError as e:
        click.echo(f"Error generating config file: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
