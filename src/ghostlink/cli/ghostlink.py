"""
ghostlink - Firmware Update and Console Command-Line Interface
==============================================================

This module implements the `ghostlink` command. It flashes application
firmware through the legacy serial DFU bootloader and talks to the
running application's text console.

Flashing
--------
The bootloader and the application share one USB CDC port. A running
device is switched to the bootloader with the console `!serialdfu`
action; the device then reboots and re-enumerates, possibly under a new
device path, so the port is closed and detected again before flashing.

Usage Examples
--------------
List available serial ports:
    $ ghostlink ports

Flash a running device (reboot it into the bootloader first):
    $ ghostlink flash app.dat app.bin --enter-dfu

Flash a device that is already in the bootloader:
    $ ghostlink -p /dev/ttyACM0 flash app.dat app.bin --yes

Read and change settings:
    $ ghostlink settings
    $ ghostlink set keyMin 3000 --save

Exit Codes
----------
0 - Success
1 - Connection, console, or transfer error
2 - Invalid arguments, configuration, or input files
3 - Unexpected internal error
"""

import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click

from ghostlink import __version__
from ghostlink.cli.errors import ExitCode, handle_cli_exception
from ghostlink.comms import (
    ACTIONS,
    VALID_BAUD_RATES,
    ConsoleClient,
    DfuResult,
    DfuTransfer,
    SerialFrameTransport,
    close_serial_port,
    find_dfu_port,
    format_port_list,
    list_serial_ports,
    open_serial_port,
)
from ghostlink.config import LinkConfig
from ghostlink.errors import CommsError, ConfigError, TransferCancelled

# Configure logging
logger = logging.getLogger(__name__)

# Width of the progress line, used to blank it before printing a log line
PROGRESS_LINE_WIDTH = 100


# =============================================================================
# CLI Context and Utilities
# =============================================================================

class Context:
    """
    Shared context for CLI commands.

    Holds the resolved link configuration and verbosity.
    """

    def __init__(self) -> None:
        self.config: LinkConfig = LinkConfig()
        self.verbose: bool = False

    def setup_logging(self) -> None:
        """Configure logging based on verbosity."""
        level = logging.DEBUG if self.verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(levelname)s: %(message)s" if self.verbose else "%(message)s",
        )

    def resolve_port(self) -> str:
        """Return the configured port, or auto-detect one."""
        port_device = self.config.port or find_dfu_port()
        if not port_device:
            click.echo("Error: No serial port specified and auto-detect failed.")
            click.echo("Use --port option or 'ghostlink ports' to find available ports.")
            raise SystemExit(ExitCode.COMMS_ERROR)
        return port_device


pass_context = click.make_pass_decorator(Context, ensure=True)


def progress_bar(percent: int, message: str) -> None:
    """Simple text progress bar for firmware transfers."""
    filled = percent // 2
    bar = "=" * filled + "-" * (50 - filled)
    line = f"\r[{bar}] {percent:3d}% {message}"
    click.echo(line.ljust(PROGRESS_LINE_WIDTH), nl=False)
    if percent >= 100:
        click.echo()  # Newline at end


class TransferDisplay:
    """Progress bar with the transfer log printed above it."""

    LEVEL_COLOURS = {"success": "green", "error": "red"}

    def __init__(self) -> None:
        self.percent: Optional[int] = None
        self.message = ""

    def progress(self, percent: int, message: str) -> None:
        self.percent = percent
        self.message = message
        progress_bar(percent, message)

    def log(self, message: str, level: str) -> None:
        if self.percent is not None:
            click.echo("\r" + " " * PROGRESS_LINE_WIDTH + "\r", nl=False)
        colour = self.LEVEL_COLOURS.get(level)
        click.echo(click.style(message, fg=colour) if colour else message)
        if self.percent is not None and self.percent < 100:
            progress_bar(self.percent, self.message)


def print_table(rows: list[tuple[str, str]]) -> None:
    """Print key/value rows with aligned values."""
    if not rows:
        return
    width = max(len(key) for key, _ in rows)
    for key, value in rows:
        click.echo(f"  {key:<{width}}  {value}")


def yes_no(value: bool) -> str:
    return "yes" if value else "no"


@contextmanager
def open_console(ctx: Context) -> Iterator[ConsoleClient]:
    """Open the device console on the resolved port and close it afterwards."""
    port_device = ctx.resolve_port()
    serial_port = open_serial_port(port_device, baud_rate=ctx.config.baud_rate)
    try:
        yield ConsoleClient(serial_port, timeout=ctx.config.console_timeout)
    finally:
        close_serial_port(serial_port)


@contextmanager
def quiet_logger(name: str) -> Iterator[None]:
    """Raise a logger to WARNING for the duration of the block."""
    target = logging.getLogger(name)
    old_level = target.level
    target.setLevel(logging.WARNING)
    try:
        yield
    finally:
        target.setLevel(old_level)


def run_transfer(transfer: DfuTransfer, init_data: bytes, firmware: bytes) -> DfuResult:
    """
    Run a transfer on a worker thread so that Ctrl+C can cancel it.

    The interrupt only requests cancellation; the worker stops before its
    next chunk and the resulting TransferCancelled is raised here.
    """
    outcome: dict = {}

    def work() -> None:
        try:
            outcome["result"] = transfer.perform(init_data, firmware)
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=work, name="dfu-transfer", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.1)
    except KeyboardInterrupt:
        click.echo("\nCancelling after the current packet...")
        transfer.cancel()
        worker.join()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option(
    "-p", "--port",
    type=str,
    default=None,
    help="Serial port device (auto-detect if not specified)",
)
@click.option(
    "-b", "--baud",
    type=click.Choice([str(b) for b in VALID_BAUD_RATES]),
    default=None,
    help="Baud rate (default: 115200, or GHOSTLINK_BAUD)",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output",
)
@click.version_option(version=__version__, prog_name="ghostlink")
@pass_context
def main(ctx: Context, port: Optional[str], baud: Optional[str], verbose: bool) -> None:
    """
    Flash firmware and manage settings on nRF52 devices over USB serial.

    To update firmware on a running device:
      ghostlink flash app.dat app.bin --enter-dfu

    Settings can also be given through the GHOSTLINK_PORT, GHOSTLINK_BAUD,
    GHOSTLINK_ACK_TIMEOUT and GHOSTLINK_REBOOT_WAIT environment variables.

    Use 'ghostlink ports' to list available serial ports.
    """
    ctx.verbose = verbose
    ctx.setup_logging()

    try:
        ctx.config = LinkConfig.from_env().with_overrides(
            port=port,
            baud_rate=int(baud) if baud else None,
        )
        ctx.config.validate()
    except ConfigError as e:
        handle_cli_exception(e, verbose)


# =============================================================================
# Ports Command
# =============================================================================

@main.command()
@click.option(
    "--detailed", "-d",
    is_flag=True,
    help="Show detailed port information",
)
@pass_context
def ports(ctx: Context, detailed: bool) -> None:
    """
    List available serial ports.

    Shows all serial ports detected on the system. Known nRF52 board
    vendors (Adafruit, Seeed, Nordic) and USB-serial bridges are marked.

    Example:
        ghostlink ports
        ghostlink ports --detailed
    """
    port_list = list_serial_ports()

    if not port_list:
        click.echo("No serial ports found.")
        click.echo("\nTips:")
        click.echo("  - Connect the device with a data-capable USB cable")
        click.echo("  - On Linux, ensure you have permission (dialout group)")
        return

    click.echo("Available serial ports:")
    click.echo(format_port_list(port_list, verbose=detailed))

    auto_port = find_dfu_port()
    if auto_port:
        click.echo(f"\nSuggested port: {auto_port}")
    else:
        click.echo("\nNo USB serial device auto-detected.")


# =============================================================================
# Flash Command
# =============================================================================

@main.command()
@click.argument("init_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("firmware_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--enter-dfu",
    is_flag=True,
    help="Reboot the running application into the serial bootloader first",
)
@click.option(
    "--yes", "-y",
    is_flag=True,
    help="Do not ask for confirmation before flashing",
)
@pass_context
def flash(ctx: Context, init_file: str, firmware_file: str, enter_dfu: bool, yes: bool) -> None:
    """
    Flash an application image through the serial DFU bootloader.

    INIT_FILE is the init packet (.dat) and FIRMWARE_FILE the application
    image (.bin), as found inside a legacy DFU package.

    The device must be in the serial bootloader, or be running an
    application that supports the !serialdfu console action (use
    --enter-dfu). Press Ctrl+C to cancel between packets.

    Example:
        ghostlink flash app.dat app.bin --enter-dfu
    """
    init_path = Path(init_file)
    firmware_path = Path(firmware_file)
    try:
        init_data = init_path.read_bytes()
        firmware = firmware_path.read_bytes()
    except IOError as e:
        click.echo(f"Error reading file: {e}")
        raise SystemExit(ExitCode.INVALID_ARGS)

    if not firmware:
        click.echo(f"Error: Firmware image is empty: {firmware_path.name}")
        raise SystemExit(ExitCode.INVALID_ARGS)

    port_device = ctx.resolve_port()
    config = ctx.config

    click.echo(f"Init packet: {init_path.name} ({len(init_data)} bytes)")
    click.echo(
        f"Firmware:    {firmware_path.name} "
        f"({len(firmware)} bytes, {len(firmware) / 1024:.1f} KB)"
    )
    click.echo(f"Port:        {port_device}")

    if not yes:
        click.confirm("Flash this firmware?", default=True, abort=True)

    try:
        if enter_dfu:
            port_device = enter_bootloader(ctx, port_device)

        serial_port = open_serial_port(port_device, baud_rate=config.baud_rate)

        with SerialFrameTransport(serial_port) as transport:
            if ctx.verbose:
                # Logging already shows every step
                transfer = DfuTransfer(transport, timing=config.dfu_timing())
                result = run_transfer(transfer, init_data, firmware)
            else:
                display = TransferDisplay()
                transfer = DfuTransfer(
                    transport,
                    progress=display.progress,
                    log=display.log,
                    timing=config.dfu_timing(),
                )
                with quiet_logger("ghostlink.comms.dfu"):
                    result = run_transfer(transfer, init_data, firmware)

        click.echo("")
        click.echo(
            f"Sent {result.chunks_sent} packets ({result.bytes_sent} bytes) "
            f"in {result.elapsed:.1f}s. The device is rebooting."
        )

    except TransferCancelled as e:
        click.echo(f"\nTransfer cancelled: {e}")
        click.echo("The bootloader keeps waiting for an image; run flash again.")
        raise SystemExit(ExitCode.COMMS_ERROR)
    except CommsError as e:
        handle_cli_exception(e, ctx.verbose, error_type="Transfer")


def enter_bootloader(ctx: Context, port_device: str) -> str:
    """
    Ask the running application to reboot into the serial bootloader.

    Returns:
        The port to flash on. Re-detected after the reboot unless the
        port was given explicitly.
    """
    config = ctx.config
    click.echo("Requesting reboot into serial bootloader...")

    serial_port = open_serial_port(port_device, baud_rate=config.baud_rate)
    try:
        ConsoleClient(serial_port, timeout=config.console_timeout).request_serial_dfu()
    finally:
        close_serial_port(serial_port)

    click.echo(f"Waiting {config.reboot_wait:.1f}s for the bootloader...")
    time.sleep(config.reboot_wait)

    if config.port:
        return config.port

    bootloader_port = find_dfu_port()
    if not bootloader_port:
        click.echo("Bootloader port not detected, retrying on the original port.")
        return port_device
    if bootloader_port != port_device:
        logger.info("Bootloader enumerated on %s", bootloader_port)
    return bootloader_port


# =============================================================================
# Console Commands
# =============================================================================

@main.command()
@pass_context
def status(ctx: Context) -> None:
    """
    Show the device's runtime status.

    Example:
        ghostlink status
    """
    try:
        with open_console(ctx) as console:
            state = console.query_status()
    except CommsError as e:
        handle_cli_exception(e, ctx.verbose)

    print_table([
        ("BLE connected", yes_no(state.connected)),
        ("USB", yes_no(state.usb)),
        ("Keyboard", "on" if state.kb else "off"),
        ("Mouse", ("on" if state.ms else "off") + f" ({state.mouse_state_name})"),
        ("Battery", f"{state.bat}% ({state.batMv} mV)"),
        ("Profile", state.profile_name),
        ("Mode", state.mode_name),
        ("Next key", state.kbNext),
        ("Uptime", f"{state.uptime // 1000}s"),
        ("Time synced", yes_no(state.timeSynced)),
        ("Schedule sleeping", yes_no(state.schedSleeping)),
    ])


@main.command()
@pass_context
def settings(ctx: Context) -> None:
    """
    Show the device's current settings.

    Example:
        ghostlink settings
    """
    try:
        with open_console(ctx) as console:
            current = console.query_settings()
    except CommsError as e:
        handle_cli_exception(e, ctx.verbose)

    print_table(list(current.as_fields().items()))


@main.command()
@click.option(
    "--decoys",
    is_flag=True,
    help="List decoy device names instead of keys",
)
@pass_context
def keys(ctx: Context, decoys: bool) -> None:
    """
    List the keys (or decoy names) the device can send.

    The index shown is the value used in the 'slots' setting.

    Example:
        ghostlink keys
        ghostlink keys --decoys
    """
    try:
        with open_console(ctx) as console:
            names = console.query_decoys() if decoys else console.query_keys()
    except CommsError as e:
        handle_cli_exception(e, ctx.verbose)

    print_table([(str(index), name) for index, name in enumerate(names)])


@main.command("set")
@click.argument("key")
@click.argument("value")
@click.option(
    "--save", "-s",
    is_flag=True,
    help="Persist the change to flash after setting it",
)
@pass_context
def set_value(ctx: Context, key: str, value: str, save: bool) -> None:
    """
    Change one device setting.

    Changes apply immediately but are lost on reboot unless saved with
    --save or 'ghostlink action save'.

    Example:
        ghostlink set keyMin 3000
        ghostlink set name MyDevice --save
    """
    try:
        with open_console(ctx) as console:
            console.set_value(key, value)
            if save:
                console.action("save")
    except CommsError as e:
        handle_cli_exception(e, ctx.verbose)

    click.echo(f"{key} = {value}" + (" (saved)" if save else ""))


@main.command()
@click.argument("name", type=click.Choice(ACTIONS))
@pass_context
def action(ctx: Context, name: str) -> None:
    """
    Run a device action.

    NAME is one of: save, defaults, reboot, dfu (BLE OTA bootloader),
    serialdfu (serial bootloader).

    Example:
        ghostlink action save
    """
    try:
        with open_console(ctx) as console:
            if name == "serialdfu":
                console.request_serial_dfu()
            else:
                console.action(name)
    except CommsError as e:
        handle_cli_exception(e, ctx.verbose)

    click.echo(f"Action '{name}' done.")


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    main()
