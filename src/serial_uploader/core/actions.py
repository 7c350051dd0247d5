"""
Core workflow actions for the serial image uploader.

This module exposes the operations the CLI calls. Each one opens the
transport (unless the caller supplies one), runs the exchange and turns
any failure into an OperationResult with a stable error code.
"""

import hashlib
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from ..protocol.nmgr_link import NmgrLink
from ..protocol.serial_transport import ByteTransport, SerialTransport
from ..uploader import ImageUploader
from .config import UploadConfig, ConfigError, DEFAULT_SPEED
from .messages import failure_from_exception
from .results import OperationResult

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "serial_uploader"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


@contextmanager
def _open_transport(
    device: str,
    speed: int,
    transport: Optional[ByteTransport],
) -> Iterator[ByteTransport]:
    """Yield the caller's transport as is, or open (and later close) a serial one."""
    if transport is not None:
        yield transport
        return
    with SerialTransport(device, speed) as serial_transport:
        yield serial_transport


def _failed(operation: str, device: str, exc: BaseException, logs) -> OperationResult:
    item = failure_from_exception(exc)
    result = OperationResult.failure(
        operation=operation,
        error=item.title,
        error_code=item.code.value,
        device=device,
    )
    result.metadata["remediation"] = item.remediation
    result.logs = logs
    return result


def read_image(path: str) -> bytes:
    """
    Load the image file into memory.

    Raises:
        ConfigError: If the file is empty
        OSError: If the file cannot be read
    """
    data = Path(path).read_bytes()
    if not data:
        raise ConfigError(f"Image file is empty: {path}")
    return data


def upload_image(
    config: UploadConfig,
    transport: Optional[ByteTransport] = None,
    progress_cb: Optional[Callable[[int, int], None]] = None,
) -> OperationResult:
    """
    Upload the configured image file to the device.

    Sequence: flush the shell line, switch console echo off, run the
    segmented upload, optionally reset the device.

    Args:
        config: Upload settings (validated here)
        transport: Optional already-open transport (tests, custom links)
        progress_cb: Optional callback(acked_offset, total_bytes)

    Returns:
        OperationResult with upload statistics or the failure cause
    """
    device = config.device or ""
    warnings = []
    with _capture_logs() as logs:
        try:
            config.validate()
            image = read_image(config.image_path)
            sha256 = hashlib.sha256(image).hexdigest()

            with _open_transport(device, config.speed, transport) as link_transport:
                link = NmgrLink(link_transport)
                link_transport.flush_console()
                rsp = link.echo_ctl(0)
                if rsp.rc != 0:
                    warnings.append(f"Console echo control returned rc={rsp.rc}")
                    logger.warning(warnings[-1])

                uploader = ImageUploader(
                    link,
                    chunk_size=config.chunk_size,
                    first_segment_timeout=config.first_segment_timeout,
                    next_segment_timeout=config.next_segment_timeout,
                    max_retries=config.max_retries,
                    progress_cb=progress_cb,
                )
                session = uploader.upload(image)

                if config.reset_after:
                    link.reset()

        except Exception as e:
            return _failed("upload", device, e, logs)

        result = OperationResult.success(
            operation="upload",
            device=device,
            bytes_len=session.offset,
        )
        result.metadata.update(
            {
                "image": str(config.image_path),
                "sha256": sha256,
                "chunk_size": config.chunk_size,
                "effective_chunk_size": session.chunk_size,
                "segments": session.segments,
                "retransmits": session.retransmits,
                "reset": config.reset_after,
            }
        )
        for warn in warnings:
            result.add_warning(warn)
        result.logs = logs
        return result


def reset_device(
    device: str,
    speed: int = DEFAULT_SPEED,
    transport: Optional[ByteTransport] = None,
) -> OperationResult:
    """Send a reset request and wait for the device to acknowledge it."""
    with _capture_logs() as logs:
        try:
            with _open_transport(device, speed, transport) as link_transport:
                link_transport.flush_console()
                rsp = NmgrLink(link_transport).reset()
        except Exception as e:
            return _failed("reset", device, e, logs)

        if rsp.rc != 0:
            result = OperationResult.failure(
                operation="reset",
                error=f"Device refused reset: rc={rsp.rc}",
                error_code="E_REJECTED",
                device=device,
            )
        else:
            result = OperationResult.success(operation="reset", device=device)
        result.logs = logs
        return result


def set_console_echo(
    device: str,
    enabled: bool,
    speed: int = DEFAULT_SPEED,
    transport: Optional[ByteTransport] = None,
) -> OperationResult:
    """Switch the device console echo on or off."""
    with _capture_logs() as logs:
        try:
            with _open_transport(device, speed, transport) as link_transport:
                link_transport.flush_console()
                rsp = NmgrLink(link_transport).echo_ctl(1 if enabled else 0)
        except Exception as e:
            return _failed("echo", device, e, logs)

        if rsp.rc != 0:
            result = OperationResult.failure(
                operation="echo",
                error=f"Device refused echo control: rc={rsp.rc}",
                error_code="E_REJECTED",
                device=device,
            )
        else:
            result = OperationResult.success(operation="echo", device=device)
        result.metadata["echo"] = enabled
        result.logs = logs
        return result
