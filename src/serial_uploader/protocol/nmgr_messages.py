"""
Management (newtmgr) message construction and response parsing.

Message format:
    [ op:3|res:5 | flags | len_be16 | group_be16 | seq | id ] + CBOR map

The header length field holds the encoded payload length (header excluded).
Requests are encoded as CBOR indefinite-length maps, the form the device
firmware itself produces; every request carries an opaque `_h` entry
echoing the header bytes.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple

import cbor2

logger = logging.getLogger(__name__)

HEADER_FORMAT = ">BBHHBB"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 8

# Operations
NMGR_OP_READ = 0
NMGR_OP_READ_RSP = 1
NMGR_OP_WRITE = 2
NMGR_OP_WRITE_RSP = 3

# Groups (first 64 are reserved for system level commands)
MGMT_GROUP_ID_DEFAULT = 0
MGMT_GROUP_ID_IMAGE = 1
MGMT_GROUP_ID_STATS = 2
MGMT_GROUP_ID_CONFIG = 3
MGMT_GROUP_ID_LOGS = 4
MGMT_GROUP_ID_CRASH = 5
MGMT_GROUP_ID_SPLIT = 6
MGMT_GROUP_ID_RUN = 7
MGMT_GROUP_ID_FS = 8
MGMT_GROUP_ID_PERUSER = 64

# Default group command ids
NMGR_ID_ECHO = 0
NMGR_ID_CONS_ECHO_CTRL = 1
NMGR_ID_TASKSTATS = 2
NMGR_ID_MPSTATS = 3
NMGR_ID_DATETIME_STR = 4
NMGR_ID_RESET = 5

# Image group command ids
IMGMGR_NMGR_ID_STATE = 0
IMGMGR_NMGR_ID_UPLOAD = 1
IMGMGR_NMGR_ID_FILE = 2
IMGMGR_NMGR_ID_CORELIST = 3
IMGMGR_NMGR_ID_CORELOAD = 4
IMGMGR_NMGR_ID_ERASE = 5
IMGMGR_NMGR_ID_ERASE_STATE = 6

RESPONSE_OPS = (NMGR_OP_READ_RSP, NMGR_OP_WRITE_RSP)

# CBOR indefinite-length map framing
_CBOR_MAP_INDEFINITE = b"\xbf"
_CBOR_BREAK = b"\xff"


class MessageCodecError(Exception):
    """Base exception for management message errors."""


class ResponseDecodeError(MessageCodecError):
    """Response payload is not a well-formed map of integer values."""


@dataclass(frozen=True)
class NmgrHeader:
    """Fixed 8-byte management message header."""

    op: int
    group: int
    id: int
    seq: int = 0
    flags: int = 0
    length: int = 0

    def pack(self) -> bytes:
        return struct.pack(
            HEADER_FORMAT,
            self.op & 0x07,
            self.flags & 0xFF,
            self.length & 0xFFFF,
            self.group & 0xFFFF,
            self.seq & 0xFF,
            self.id & 0xFF,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "NmgrHeader":
        if len(data) < HEADER_SIZE:
            raise ResponseDecodeError(
                f"Truncated header: {len(data)} bytes (need {HEADER_SIZE})"
            )
        op_byte, flags, length, group, seq, msg_id = struct.unpack(
            HEADER_FORMAT, bytes(data[:HEADER_SIZE])
        )
        return cls(op=op_byte & 0x07, group=group, id=msg_id, seq=seq, flags=flags, length=length)


@dataclass(frozen=True)
class NmgrResponse:
    """
    Decoded management response.

    Attributes:
        rc: Result code reported by the device (0 = success)
        off: Acknowledged offset, or None when the device sent none
        header: Response header
    """

    rc: int
    off: Optional[int]
    header: NmgrHeader


def _encode_map(items: Iterable[Tuple[str, Any]]) -> bytes:
    """Encode (key, value) pairs as a CBOR indefinite-length map."""
    body = b"".join(cbor2.dumps(key) + cbor2.dumps(value) for key, value in items)
    return _CBOR_MAP_INDEFINITE + body + _CBOR_BREAK


def _build_request(group: int, msg_id: int, fields: Iterable[Tuple[str, Any]], seq: int) -> bytes:
    """
    Build a WRITE request: header, `_h` echo, then the given payload fields.

    The header length is back-filled once the payload size is known.
    """
    header = NmgrHeader(op=NMGR_OP_WRITE, group=group, id=msg_id, seq=seq)
    payload = _encode_map([("_h", header.pack())] + list(fields))
    if len(payload) > 0xFFFF:
        raise MessageCodecError(f"Payload too large: {len(payload)} bytes")
    final = NmgrHeader(op=NMGR_OP_WRITE, group=group, id=msg_id, seq=seq, length=len(payload))
    return final.pack() + payload


def build_echo_ctl(value: int, seq: int = 0) -> bytes:
    """Console echo control request (echo: 0 disables echo)."""
    return _build_request(
        MGMT_GROUP_ID_DEFAULT, NMGR_ID_CONS_ECHO_CTRL, [("echo", int(value))], seq
    )


def build_reset(seq: int = 0) -> bytes:
    """Device reset request."""
    return _build_request(MGMT_GROUP_ID_DEFAULT, NMGR_ID_RESET, [], seq)


def build_upload_seg0(image_size: int, data: bytes, seq: int = 0) -> bytes:
    """
    First image upload segment.

    Declares the total image length and carries an empty `sha`.
    """
    return _build_request(
        MGMT_GROUP_ID_IMAGE,
        IMGMGR_NMGR_ID_UPLOAD,
        [
            ("sha", b""),
            ("off", 0),
            ("len", image_size),
            ("data", bytes(data)),
        ],
        seq,
    )


def build_upload_segx(offset: int, data: bytes, seq: int = 0) -> bytes:
    """Image upload segment at a non-zero offset."""
    return _build_request(
        MGMT_GROUP_ID_IMAGE,
        IMGMGR_NMGR_ID_UPLOAD,
        [("off", offset), ("data", bytes(data))],
        seq,
    )


def is_response(message: bytes) -> bool:
    """True if the message is header sized and carries a response opcode."""
    if len(message) < HEADER_SIZE:
        return False
    return (message[0] & 0x07) in RESPONSE_OPS


def decode_response(message: bytes) -> NmgrResponse:
    """
    Parse a response into result code and acknowledged offset.

    The payload must be a map; entries are read in order until the first
    non-text key and every text-keyed value must be an integer.

    Raises:
        ResponseDecodeError: If the message cannot be parsed
    """
    header = NmgrHeader.unpack(message)
    payload = bytes(message[HEADER_SIZE:])
    try:
        decoded = cbor2.loads(payload)
    except (cbor2.CBORDecodeError, ValueError, TypeError, EOFError) as e:
        raise ResponseDecodeError(f"Malformed CBOR payload: {e}")

    if not isinstance(decoded, dict):
        raise ResponseDecodeError(f"Payload is not a map ({type(decoded).__name__})")

    rc = 0
    off = None
    for key, value in decoded.items():
        if not isinstance(key, str):
            break
        if isinstance(value, bool) or not isinstance(value, int):
            raise ResponseDecodeError(
                f"Field '{key}' is not an integer ({type(value).__name__})"
            )
        if key == "rc":
            rc = value
        elif key == "off":
            off = value

    return NmgrResponse(rc=rc, off=off, header=header)
