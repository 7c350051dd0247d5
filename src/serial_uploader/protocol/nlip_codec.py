"""
Newline-framed packet codec for the device shell console.

Management messages travel over the same serial console as the device shell,
so each message is carried as one or more text lines:

    START:        06 09 | base64(total_len_be16 + msg[0:91]) | \\n
    CONTINUATION: 04 14 | base64(msg[off:off+93])             | \\n

The 2-byte markers are sent raw (they are control characters the shell
recognizes); everything after them is base64. The message carried is the
raw management message followed by a big-endian CRC16-CCITT of it, and
total_len counts the message plus the CRC.

This module knows nothing about the content of a message.
"""

import base64
import binascii
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

# Line markers
START_MARKER = b"\x06\x09"
CONTINUATION_MARKER = b"\x04\x14"
MARKER_LEN = 2

# Raw bytes carried per line (before base64 expansion)
START_PREFIX_LEN = 3          # 2-byte total length + first message byte
START_DATA_LEN = 90           # further message bytes on the start line
CONTINUATION_DATA_LEN = 93

MAX_FRAME = 128
CRC_LEN = 2
LENGTH_PREFIX_LEN = 2
CRC16_INITIAL_CRC = 0


class FrameCodecError(Exception):
    """Base exception for frame codec errors."""


class FrameIntegrityError(FrameCodecError):
    """Received frame failed length, encoding or checksum validation."""


def crc16_ccitt(data: bytes, init: int = CRC16_INITIAL_CRC, poly: int = 0x1021) -> int:
    """
    CRC16-CCITT (poly 0x1021, MSB first, no final xor).

    With the default initial value of 0 this is the variant also known as
    XMODEM; crc16_ccitt(b"123456789") == 0x31C3.
    """
    crc = init & 0xFFFF
    for b in data:
        crc ^= b << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ poly) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


def encode_frames(message: bytes) -> List[bytes]:
    """
    Encode a management message into console lines.

    Args:
        message: Raw message (header + payload), without checksum

    Returns:
        Lines in transmission order, each terminated by b"\\n"

    Raises:
        ValueError: If the message is empty or too long for the 16-bit length
    """
    if not message:
        raise ValueError("Cannot frame an empty message")

    crc = crc16_ccitt(message)
    buf = bytes(message) + crc.to_bytes(CRC_LEN, "big")
    total = len(buf)
    if total > 0xFFFF:
        raise ValueError(f"Message too long for framing: {total} bytes")

    logger.debug(f"TX unencoded ({total} bytes): {buf.hex()}")

    lines: List[bytes] = []
    first = total.to_bytes(LENGTH_PREFIX_LEN, "big") + buf[:1]
    end = min(1 + START_DATA_LEN, total)
    lines.append(
        START_MARKER
        + base64.b64encode(first)
        + base64.b64encode(buf[1:end])
        + b"\n"
    )

    off = end
    while off < total:
        end = min(off + CONTINUATION_DATA_LEN, total)
        lines.append(CONTINUATION_MARKER + base64.b64encode(buf[off:end]) + b"\n")
        off = end

    return lines


def encode_message(message: bytes) -> bytes:
    """Encode a message into the exact byte string written to the wire."""
    return b"".join(encode_frames(message))


class FrameDecoder:
    """
    Reassemble management messages from an unbounded console byte stream.

    Bytes from successive reads are passed to feed(); next_message() returns
    complete, checksum-validated messages (without the CRC) or None when
    more bytes are needed. Shell output, echoed input and lines with
    unknown markers are skipped.

    Example:
        decoder = FrameDecoder(accept=is_response)
        decoder.feed(chunk)
        msg = decoder.next_message()
    """

    def __init__(self, accept: Optional[Callable[[bytes], bool]] = None):
        """
        Args:
            accept: Optional predicate; reassembled messages it rejects are
                dropped and scanning continues
        """
        self.accept = accept
        self._buf = bytearray()
        self._partial: Optional[bytearray] = None
        self._declared = 0

    def feed(self, data: bytes) -> None:
        """Append received bytes to the accumulation buffer."""
        if not self._buf:
            # line discipline leftovers in front of a fresh accumulation
            data = bytes(data).lstrip(b"\r\n")
        self._buf.extend(data)

    def next_message(self) -> Optional[bytes]:
        """
        Return the next complete message, or None if more bytes are needed.

        Raises:
            FrameIntegrityError: On bad base64, declared length mismatch or
                checksum mismatch
        """
        while True:
            nl = self._buf.find(b"\n")
            if nl < 0:
                return None
            line = bytes(self._buf[:nl + 1])
            del self._buf[:nl + 1]

            if len(line) <= 2:
                continue

            marker = line[:MARKER_LEN]
            if marker == START_MARKER:
                self._start(line)
            elif marker == CONTINUATION_MARKER:
                if self._partial is None:
                    logger.debug("Continuation line without start, ignored")
                    continue
                self._partial.extend(self._b64decode(line))
            else:
                continue

            msg = self._complete()
            if msg is None:
                continue
            if self.accept is not None and not self.accept(msg):
                logger.debug(f"Dropped non-matching message ({len(msg)} bytes)")
                continue
            return msg

    def _start(self, line: bytes) -> None:
        if self._partial is not None:
            logger.debug(
                f"New start line abandons partial message "
                f"({len(self._partial)}/{self._declared} bytes)"
            )
        decoded = self._b64decode(line)
        if len(decoded) < LENGTH_PREFIX_LEN:
            self._partial = None
            raise FrameIntegrityError(f"Start frame too short ({len(decoded)} bytes)")
        self._declared = int.from_bytes(decoded[:LENGTH_PREFIX_LEN], "big")
        if self._declared < CRC_LEN + 1:
            self._partial = None
            raise FrameIntegrityError(f"Invalid declared length {self._declared}")
        self._partial = bytearray(decoded[LENGTH_PREFIX_LEN:])

    def _complete(self) -> Optional[bytes]:
        have = len(self._partial)
        if have < self._declared:
            return None
        buf = bytes(self._partial)
        self._partial = None
        if have > self._declared:
            raise FrameIntegrityError(
                f"Length mismatch: declared {self._declared}, received {have}"
            )

        logger.debug(f"RX unencoded ({have} bytes): {buf.hex()}")

        body, trailer = buf[:-CRC_LEN], buf[-CRC_LEN:]
        want = int.from_bytes(trailer, "big")
        got = crc16_ccitt(body)
        if got != want:
            raise FrameIntegrityError(f"CRC16 mismatch: got 0x{got:04X}, want 0x{want:04X}")
        return body

    def _b64decode(self, line: bytes) -> bytes:
        text = line[MARKER_LEN:].rstrip(b"\r\n")
        try:
            return base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            self._partial = None
            raise FrameIntegrityError(f"Malformed base64 in frame: {e}")
