"""
Management request/response round trips over a byte transport.

Combines the frame codec and the message codec: requests are framed and
written line by line, responses are reassembled from the console stream
under an absolute deadline. Exactly one request is outstanding at a time.
"""

import logging
import time
from typing import Optional

from .nlip_codec import FrameDecoder, encode_frames
from .nmgr_messages import (
    NmgrResponse,
    build_echo_ctl,
    build_reset,
    decode_response,
    is_response,
)
from .serial_transport import ByteTransport, READ_CHUNK

logger = logging.getLogger(__name__)

ECHO_CTL_TIMEOUT = 2.0
RESET_TIMEOUT = 2.0


class NmgrLink:
    """
    Framed management channel on top of a ByteTransport.

    Example:
        link = NmgrLink(transport)
        link.echo_ctl(0)
        link.send(build_upload_segx(off, data, seq=link.next_seq()))
        rsp = decode_response(link.receive(timeout=1.0))
    """

    def __init__(self, transport: ByteTransport):
        self.transport = transport
        self._seq = 0

    def next_seq(self) -> int:
        """Return the next 8-bit request sequence number."""
        seq = self._seq
        self._seq = (self._seq + 1) & 0xFF
        return seq

    def send(self, message: bytes) -> None:
        """
        Frame and write a message, lines in order.

        Raises:
            TransportError: If any write fails
        """
        for line in encode_frames(message):
            self.transport.write_all(line)

    def receive(self, timeout: float, deadline: Optional[float] = None) -> bytes:
        """
        Wait for the next response message.

        Args:
            timeout: Seconds to wait, used when no deadline is given
            deadline: Absolute time.monotonic() value

        Returns:
            Raw response message (header + payload, CRC stripped)

        Raises:
            ReadTimeout: If no response completes before the deadline
            FrameIntegrityError: If a response frame fails validation
            TransportError: If the read fails
        """
        if deadline is None:
            deadline = time.monotonic() + timeout
        decoder = FrameDecoder(accept=is_response)
        while True:
            decoder.feed(self.transport.read_with_deadline(READ_CHUNK, deadline))
            message = decoder.next_message()
            if message is not None:
                return message

    def transact(self, message: bytes, timeout: float) -> NmgrResponse:
        """Send one request and decode its response."""
        self.send(message)
        return decode_response(self.receive(timeout))

    def echo_ctl(self, value: int, timeout: float = ECHO_CTL_TIMEOUT) -> NmgrResponse:
        """Turn the device console echo on (1) or off (0)."""
        logger.info(f"Setting console echo to {value}")
        return self.transact(build_echo_ctl(value, seq=self.next_seq()), timeout)

    def reset(self, timeout: float = RESET_TIMEOUT) -> NmgrResponse:
        """Ask the device to reset."""
        logger.info("Requesting device reset")
        return self.transact(build_reset(seq=self.next_seq()), timeout)
