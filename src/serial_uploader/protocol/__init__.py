"""Device link layer - console framing, management messages, transports."""

from .nlip_codec import (
    FrameDecoder,
    FrameCodecError,
    FrameIntegrityError,
    crc16_ccitt,
    encode_frames,
    encode_message,
    MAX_FRAME,
)
from .nmgr_messages import (
    NmgrHeader,
    NmgrResponse,
    MessageCodecError,
    ResponseDecodeError,
    build_echo_ctl,
    build_reset,
    build_upload_seg0,
    build_upload_segx,
    decode_response,
    is_response,
)
from .serial_transport import (
    ByteTransport,
    SerialTransport,
    TransportError,
    ReadTimeout,
    open_serial,
)
from .nmgr_link import NmgrLink

__all__ = [
    # Frame codec
    "FrameDecoder",
    "FrameCodecError",
    "FrameIntegrityError",
    "crc16_ccitt",
    "encode_frames",
    "encode_message",
    "MAX_FRAME",
    # Messages
    "NmgrHeader",
    "NmgrResponse",
    "MessageCodecError",
    "ResponseDecodeError",
    "build_echo_ctl",
    "build_reset",
    "build_upload_seg0",
    "build_upload_segx",
    "decode_response",
    "is_response",
    # Transport
    "ByteTransport",
    "SerialTransport",
    "TransportError",
    "ReadTimeout",
    "open_serial",
    "NmgrLink",
]
