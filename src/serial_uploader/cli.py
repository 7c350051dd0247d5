"""
Serial Image Uploader CLI

Command-line interface for uploading firmware images over a device's
serial console.
"""

import sys
import logging
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn, DownloadColumn

from serial_uploader.core.config import (
    UploadConfig,
    ConfigError,
    DEFAULT_SPEED,
    SUPPORTED_SPEEDS,
    MIN_CHUNK_SIZE,
    MAX_CHUNK_SIZE,
)
from serial_uploader.core.parsing import parse_int
from serial_uploader.core.messages import FailureCode, FailureItem
from serial_uploader.core.results import OperationResult
from serial_uploader.core.actions import (
    upload_image as core_upload_image,
    reset_device as core_reset_device,
    set_console_echo as core_set_console_echo,
)
from serial_uploader.uploader import DEFAULT_CHUNK_SIZE

# Setup Rich console
console = Console()

# Setup logging on the shared console
_log_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    handlers=[_log_handler],
)
logger = logging.getLogger("serial_uploader")

app = typer.Typer(help="Upload firmware images to a device over its serial console")


def setup_logging(verbose: int) -> None:
    """Map the -v counter to log levels: 0 warnings, 1 progress, 2+ hex dumps."""
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    _log_handler.setLevel(level)
    logger.setLevel(level)


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_failure(result: OperationResult) -> None:
    """Print the errors of a failed result with their remediation hints."""
    code = FailureCode(result.error_code) if result.error_code else FailureCode.E_UNKNOWN
    for err in result.errors:
        item = FailureItem(code=code, title=err, remediation=result.metadata.get("remediation", ""))
        print_error(item.to_cli_string(verbose=True))


def print_warnings(result: OperationResult) -> None:
    """Print non-fatal issues collected during an operation."""
    for warn in result.warnings:
        console.print(f"⚠️  {warn}", style="yellow")


def build_config(
    device: Optional[str],
    image: Optional[str],
    chunk: Optional[str],
    speed: Optional[str],
    verbose: int,
    max_retries: Optional[int] = None,
    reset_after: bool = False,
) -> UploadConfig:
    """
    Build and validate an UploadConfig from raw option values.

    Raises:
        ValueError: If a value cannot be parsed (ConfigError if it is invalid)
    """
    chunk_val = parse_int(chunk, "chunk size")
    speed_val = parse_int(speed, "speed")
    config = UploadConfig(
        device=device,
        image_path=image,
        chunk_size=DEFAULT_CHUNK_SIZE if chunk_val is None else chunk_val,
        speed=DEFAULT_SPEED if speed_val is None else speed_val,
        verbose=verbose,
        max_retries=max_retries,
        reset_after=reset_after,
    )
    return config.validate()


def parse_speed(speed: Optional[str]) -> int:
    """Parse and check a --speed value, defaulting to 115200."""
    speed_val = parse_int(speed, "speed")
    if speed_val is None:
        return DEFAULT_SPEED
    if speed_val not in SUPPORTED_SPEEDS:
        raise ConfigError(f"Invalid serial port speed {speed_val}")
    return speed_val


def config_failure(err: ValueError) -> typer.Exit:
    """Report an invalid option and return the exit to raise."""
    print_error(str(err))
    console.print("   → Run with --help for usage.", style="cyan")
    return typer.Exit(1)


@app.command()
def upload(
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Serial console of the device"),
    file: Optional[str] = typer.Option(None, "--file", "-f", help="Image file to upload"),
    chunk: Optional[str] = typer.Option(
        None,
        "--chunk",
        "-c",
        help=f"Max image chunk size, {MIN_CHUNK_SIZE}-{MAX_CHUNK_SIZE} (default: {DEFAULT_CHUNK_SIZE})",
    ),
    speed: Optional[str] = typer.Option(
        None,
        "--speed",
        "-s",
        help=f"Serial port speed, one of {', '.join(str(s) for s in SUPPORTED_SPEEDS)} (default: {DEFAULT_SPEED})",
    ),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Verbose output (repeat for hex dumps)"),
    max_retries: Optional[int] = typer.Option(
        None, "--max-retries", help="Give up after this many retransmissions of one segment"
    ),
    reset: bool = typer.Option(False, "--reset", help="Reset the device after a successful upload"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Print the result as JSON"),
) -> None:
    """Upload an image file to the device."""
    setup_logging(verbose)
    try:
        config = build_config(device, file, chunk, speed, verbose, max_retries, reset)
    except ValueError as e:
        raise config_failure(e)
    image_size = Path(config.image_path).stat().st_size

    if not output_json:
        print_header("Image Upload")
        console.print(f"Device:  {config.device} @ {config.speed}")
        console.print(f"Image:   {config.image_path} ({image_size:,} bytes)")
        console.print(f"Chunk:   {config.chunk_size}")

    if verbose or output_json:
        result = core_upload_image(config)
    else:
        with Progress(
            TextColumn("[{task.description}]"),
            BarColumn(),
            DownloadColumn(),
            TextColumn("[{task.percentage:.0f}%]"),
            console=console,
        ) as progress:
            task = progress.add_task("Uploading", total=image_size)

            def on_ack(offset: int, total: int) -> None:
                progress.update(task, completed=offset)

            result = core_upload_image(config, progress_cb=on_ack)

    if output_json:
        console.print(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            raise typer.Exit(1)
        return

    if not result.ok:
        print_failure(result)
        raise typer.Exit(1)

    print_warnings(result)
    table = Table(title="Upload Summary")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Bytes", f"{result.bytes_len:,}")
    table.add_row("Segments", str(result.metadata.get("segments", 0)))
    table.add_row("Retransmits", str(result.metadata.get("retransmits", 0)))
    table.add_row("Effective chunk", str(result.metadata.get("effective_chunk_size", "-")))
    table.add_row("SHA-256", result.metadata.get("sha256", "")[:16] + "...")
    console.print(table)
    print_success("Upload complete")


@app.command()
def reset(
    device: str = typer.Option(..., "--device", "-d", help="Serial console of the device"),
    speed: Optional[str] = typer.Option(None, "--speed", "-s", help="Serial port speed"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Verbose output"),
) -> None:
    """Reset the device."""
    setup_logging(verbose)
    try:
        speed_val = parse_speed(speed)
    except ValueError as e:
        raise config_failure(e)

    result = core_reset_device(device, speed_val)
    if not result.ok:
        print_failure(result)
        raise typer.Exit(1)
    print_success("Device reset requested")


@app.command()
def echo(
    device: str = typer.Option(..., "--device", "-d", help="Serial console of the device"),
    enable: bool = typer.Option(True, "--on/--off", help="Turn console echo on or off"),
    speed: Optional[str] = typer.Option(None, "--speed", "-s", help="Serial port speed"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Verbose output"),
) -> None:
    """Turn the device console echo on or off."""
    setup_logging(verbose)
    try:
        speed_val = parse_speed(speed)
    except ValueError as e:
        raise config_failure(e)

    result = core_set_console_echo(device, enable, speed_val)
    if not result.ok:
        print_failure(result)
        raise typer.Exit(1)
    print_success(f"Console echo {'on' if enable else 'off'}")


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    import serial.tools.list_ports

    ports_list = list(serial.tools.list_ports.comports())

    if not ports_list:
        console.print("⚠️  No serial ports found", style="yellow")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Device", style="magenta")
    table.add_column("Description", style="green")

    for port in ports_list:
        table.add_row(port.device, port.name or "-", port.description or "-")

    console.print(table)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Upload cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
