"""
Upload configuration.

A single UploadConfig is built from validated user input and passed
explicitly to the workflows; nothing reads process-wide state.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..uploader import DEFAULT_CHUNK_SIZE, FIRST_SEG_TIMEOUT, NEXT_SEG_TIMEOUT

MIN_CHUNK_SIZE = 64
MAX_CHUNK_SIZE = 2048
DEFAULT_SPEED = 115200
SUPPORTED_SPEEDS = (115200, 230400, 921600, 1000000)


class ConfigError(ValueError):
    """Invalid upload configuration."""


@dataclass
class UploadConfig:
    """
    Settings for one upload.

    Attributes:
        device: Serial device (e.g., /dev/ttyACM0, COM3)
        image_path: Image file to upload
        chunk_size: Max image chunk size before encoding overhead
        speed: Serial link speed
        verbose: Verbosity counter (0 quiet, 1 per segment, 2 hex dumps)
        first_segment_timeout: Seconds to wait for the first acknowledgement
        next_segment_timeout: Seconds to wait for later acknowledgements
        max_retries: Retransmissions allowed per segment (None = no limit)
        reset_after: Reset the device after a successful upload
    """
    device: Optional[str] = None
    image_path: Optional[str] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    speed: int = DEFAULT_SPEED
    verbose: int = 0
    first_segment_timeout: float = FIRST_SEG_TIMEOUT
    next_segment_timeout: float = NEXT_SEG_TIMEOUT
    max_retries: Optional[int] = None
    reset_after: bool = False

    def validate(self) -> "UploadConfig":
        """
        Check every field, returning self for chaining.

        Raises:
            ConfigError: On the first invalid field
        """
        if not self.device:
            raise ConfigError("Need serial device to upload to")
        if self.chunk_size < MIN_CHUNK_SIZE or self.chunk_size > MAX_CHUNK_SIZE:
            raise ConfigError(
                f"Invalid image chunk size {self.chunk_size}, "
                f"has to be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE} bytes"
            )
        if self.speed not in SUPPORTED_SPEEDS:
            raise ConfigError(
                f"Invalid serial port speed {self.speed} "
                f"(supported: {', '.join(str(s) for s in SUPPORTED_SPEEDS)})"
            )
        if not self.image_path:
            raise ConfigError("Need file to upload")
        if not Path(self.image_path).is_file():
            raise ConfigError(f"Image file not found: {self.image_path}")
        if self.first_segment_timeout <= 0 or self.next_segment_timeout <= 0:
            raise ConfigError("Timeouts must be positive")
        if self.max_retries is not None and self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        return self
