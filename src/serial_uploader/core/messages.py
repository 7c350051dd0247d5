"""
Standardized failure codes for upload workflows.

Every fatal condition maps to a stable code with a remediation hint so the
CLI can print a consistent diagnostic.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict

from ..protocol.nlip_codec import FrameIntegrityError
from ..protocol.nmgr_messages import ResponseDecodeError
from ..protocol.serial_transport import ReadTimeout, TransportError
from ..uploader import (
    DeviceRejectedError,
    OffsetOverrunError,
    RetryBudgetExhausted,
)
from .config import ConfigError


class FailureCode(Enum):
    """Stable failure codes for known conditions."""
    E_CONFIG = "E_CONFIG"
    E_FILE = "E_FILE"
    E_TIMEOUT = "E_TIMEOUT"
    E_TRANSPORT = "E_TRANSPORT"
    E_INTEGRITY = "E_INTEGRITY"
    E_DECODE = "E_DECODE"
    E_REJECTED = "E_REJECTED"
    E_OFFSET_OVERRUN = "E_OFFSET_OVERRUN"
    E_RETRIES_EXHAUSTED = "E_RETRIES_EXHAUSTED"
    E_UNKNOWN = "E_UNKNOWN"


# Default remediation hints for each failure code
FAILURE_REMEDIATIONS: Dict[FailureCode, str] = {
    FailureCode.E_CONFIG:
        "Check the command line options.",
    FailureCode.E_FILE:
        "Check that the image file exists and is readable.",
    FailureCode.E_TIMEOUT:
        "Device did not answer. Check that it runs the management shell and the speed matches.",
    FailureCode.E_TRANSPORT:
        "Check the cable and close other programs using the serial port.",
    FailureCode.E_INTEGRITY:
        "Response frame was corrupted. Try a lower speed or a smaller chunk size.",
    FailureCode.E_DECODE:
        "Device sent a response this tool cannot parse. Check device firmware version.",
    FailureCode.E_REJECTED:
        "Device refused the write. Check image slot state and image size.",
    FailureCode.E_OFFSET_OVERRUN:
        "Device reported an offset outside the image. Restart the device and retry.",
    FailureCode.E_RETRIES_EXHAUSTED:
        "Link is too unreliable. Try a lower speed or raise --max-retries.",
    FailureCode.E_UNKNOWN:
        "Check logs for more details.",
}


@dataclass
class FailureItem:
    """
    Structured failure message with stable code.

    Attributes:
        code: Stable failure code for programmatic handling
        title: Short, user-facing title
        remediation: Suggested action to resolve the issue
    """
    code: FailureCode
    title: str
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in FAILURE_REMEDIATIONS:
            self.remediation = FAILURE_REMEDIATIONS[self.code]

    def to_cli_string(self, verbose: bool = False) -> str:
        """Format for CLI output."""
        if verbose and self.remediation:
            return f"[{self.code.value}] {self.title}\n   → {self.remediation}"
        return f"[{self.code.value}] {self.title}"


def failure_code_for(exc: BaseException) -> FailureCode:
    """Map an exception raised by a workflow to its failure code."""
    # Subclasses first
    if isinstance(exc, ConfigError):
        return FailureCode.E_CONFIG
    if isinstance(exc, ReadTimeout):
        return FailureCode.E_TIMEOUT
    if isinstance(exc, TransportError):
        return FailureCode.E_TRANSPORT
    if isinstance(exc, FrameIntegrityError):
        return FailureCode.E_INTEGRITY
    if isinstance(exc, ResponseDecodeError):
        return FailureCode.E_DECODE
    if isinstance(exc, DeviceRejectedError):
        return FailureCode.E_REJECTED
    if isinstance(exc, OffsetOverrunError):
        return FailureCode.E_OFFSET_OVERRUN
    if isinstance(exc, RetryBudgetExhausted):
        return FailureCode.E_RETRIES_EXHAUSTED
    if isinstance(exc, OSError):
        return FailureCode.E_FILE
    return FailureCode.E_UNKNOWN


def failure_from_exception(exc: BaseException) -> FailureItem:
    """Build a FailureItem describing exc."""
    return FailureItem(code=failure_code_for(exc), title=str(exc) or type(exc).__name__)
