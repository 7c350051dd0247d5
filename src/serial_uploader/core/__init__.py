"""
Core module for the serial image uploader.

This module provides the single source of truth for:
- Upload configuration (config.py)
- Numeric option parsing (parsing.py)
- Result objects (results.py)
- Failure codes/messages (messages.py)
- Upload, reset and echo workflows (actions.py)

The CLI calls into this module rather than driving the protocol itself.
"""

from .config import UploadConfig, ConfigError, SUPPORTED_SPEEDS, MIN_CHUNK_SIZE, MAX_CHUNK_SIZE
from .parsing import parse_int
from .results import OperationResult
from .messages import (
    FailureCode,
    FailureItem,
    failure_code_for,
    failure_from_exception,
)
from .actions import (
    read_image,
    upload_image,
    reset_device,
    set_console_echo,
)

__all__ = [
    # Config
    "UploadConfig",
    "ConfigError",
    "SUPPORTED_SPEEDS",
    "MIN_CHUNK_SIZE",
    "MAX_CHUNK_SIZE",
    # Parsing
    "parse_int",
    # Results
    "OperationResult",
    # Messages
    "FailureCode",
    "FailureItem",
    "failure_code_for",
    "failure_from_exception",
    # Actions
    "read_image",
    "upload_image",
    "reset_device",
    "set_console_echo",
]
