"""
Serial Image Uploader - firmware image upload over a device serial console

Segmented, acknowledged image upload using newline-framed management
messages.
"""

__version__ = "0.1.0"

from serial_uploader.uploader import ImageUploader, UploadSession, UploadState
from serial_uploader.protocol import NmgrLink, SerialTransport

__all__ = [
    "ImageUploader",
    "UploadSession",
    "UploadState",
    "NmgrLink",
    "SerialTransport",
    "__version__",
]
