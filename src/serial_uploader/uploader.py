"""
Segmented image upload engine.

Drives an image upload over an NmgrLink with strictly one request in
flight. Each round trip:

1. Write the current segment's frames
2. Prepare the following segment (pure computation, nothing is sent)
3. Wait for the acknowledgement under the active timeout
4. Advance, retransmit the same segment, finish, or fail

Segment 0 always carries up to 32 bytes and declares the image length; it
waits with a long timeout since the device may need to erase its image
slot first. Later segments use the effective chunk size and a short timeout.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .protocol.nmgr_link import NmgrLink
from .protocol.nmgr_messages import (
    ResponseDecodeError,
    build_upload_seg0,
    build_upload_segx,
    decode_response,
)
from .protocol.serial_transport import ReadTimeout

logger = logging.getLogger(__name__)

FIRST_SEG_LEN = 32
FIRST_SEG_TIMEOUT = 16.0
NEXT_SEG_TIMEOUT = 1.0
DEFAULT_CHUNK_SIZE = 512
# room for the non-data CBOR fields: {"_h": ..., "off": <uint>, "data": ...}
PAYLOAD_OVERHEAD = 16


class UploadError(Exception):
    """Base exception for upload engine failures."""


class DeviceRejectedError(UploadError):
    """Device answered with a non-zero result code."""

    def __init__(self, rc: int, offset: int):
        super().__init__(f"Device rejected segment at offset {offset}: rc={rc}")
        self.rc = rc
        self.offset = offset


class OffsetOverrunError(UploadError):
    """Device acknowledged an offset outside the image."""


class RetryBudgetExhausted(UploadError):
    """A segment was retransmitted more times than allowed."""


class MissingOffsetError(ResponseDecodeError):
    """Successful upload response did not carry an offset."""


class UploadState(Enum):
    """States of the upload state machine."""
    PREPARE_FIRST = "prepare_first"
    SEND_AND_PREPARE_NEXT = "send_and_prepare_next"
    AWAIT_ACK = "await_ack"
    RETRANSMIT = "retransmit"
    ADVANCE = "advance"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Segment:
    """Image slice [offset, offset + length) and its encoded request."""
    offset: int
    length: int
    message: bytes

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass
class UploadSession:
    """
    Mutable state of one image transfer.

    Attributes:
        image: Complete image bytes
        chunk_size: Effective per-segment data budget
        offset: Bytes acknowledged by the device (never decreases)
        current: Segment in flight
        next: Segment prepared to follow `current`
        timeout: Active acknowledgement timeout in seconds
        state: Current state machine state
        retransmits: Total retransmissions during the transfer
        segment_retries: Retransmissions of the current segment
        segments: Segments the device accepted
        acks: Acknowledged offsets in arrival order, stale ones included
    """
    image: bytes
    chunk_size: int
    offset: int = 0
    current: Optional[Segment] = None
    next: Optional[Segment] = None
    timeout: float = FIRST_SEG_TIMEOUT
    state: UploadState = UploadState.PREPARE_FIRST
    retransmits: int = 0
    segment_retries: int = 0
    segments: int = 0
    acks: List[int] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def size(self) -> int:
        return len(self.image)

    @property
    def done(self) -> bool:
        return self.state is UploadState.DONE


def effective_chunk_size(configured: int) -> int:
    """
    Per-segment data budget for a configured chunk size.

    Data is base64 expanded on the wire and shares the request with the
    other payload fields.
    """
    return configured * 3 // 4 - PAYLOAD_OVERHEAD


class ImageUploader:
    """
    Upload an image with the segment/acknowledge protocol.

    Example:
        uploader = ImageUploader(NmgrLink(transport), chunk_size=512)
        session = uploader.upload(image_bytes)
    """

    def __init__(
        self,
        link: NmgrLink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        first_segment_timeout: float = FIRST_SEG_TIMEOUT,
        next_segment_timeout: float = NEXT_SEG_TIMEOUT,
        max_retries: Optional[int] = None,
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ):
        """
        Args:
            link: Management channel to the device
            chunk_size: Configured maximum chunk size
            first_segment_timeout: Acknowledgement timeout while offset is 0
            next_segment_timeout: Acknowledgement timeout afterwards
            max_retries: Retransmissions allowed per segment (None = no limit)
            progress_cb: Optional callback(acked_offset, total_bytes)
        """
        if max_retries is not None and max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.link = link
        self.chunk_size = chunk_size
        self.first_segment_timeout = first_segment_timeout
        self.next_segment_timeout = next_segment_timeout
        self.max_retries = max_retries
        self.progress_cb = progress_cb

    def prepare_segment(self, session: UploadSession, offset: int) -> Segment:
        """Build the request for the segment starting at offset."""
        seq = self.link.next_seq()
        if offset == 0:
            length = min(FIRST_SEG_LEN, session.size)
            message = build_upload_seg0(session.size, session.image[:length], seq=seq)
        else:
            length = min(session.size - offset, session.chunk_size)
            message = build_upload_segx(offset, session.image[offset:offset + length], seq=seq)
        logger.info(f" {offset}-{offset + length}")
        return Segment(offset=offset, length=length, message=message)

    def upload(self, image: bytes) -> UploadSession:
        """
        Transfer the image.

        Returns:
            Finished session (state DONE)

        Raises:
            TransportError: Write or read failure
            FrameIntegrityError: Corrupt response frame
            ResponseDecodeError: Malformed response payload
            UploadError: Device rejection, offset overrun or retry budget
        """
        if not image:
            raise ValueError("Image is empty")

        chunk = effective_chunk_size(self.chunk_size)
        if chunk <= 0:
            raise ValueError(f"Chunk size {self.chunk_size} leaves no room for data")

        session = UploadSession(image=bytes(image), chunk_size=chunk)
        logger.info(f"Starting upload {session.size} bytes")
        try:
            self._run(session)
        except BaseException as e:
            session.state = UploadState.FAILED
            session.error = e
            logger.error(f"Upload failed at offset {session.offset}: {e}")
            raise
        logger.info("Upload complete")
        return session

    def _run(self, session: UploadSession) -> None:
        while session.state is not UploadState.DONE:
            state = session.state

            if state is UploadState.PREPARE_FIRST:
                session.current = self.prepare_segment(session, 0)
                session.timeout = self.first_segment_timeout
                session.state = UploadState.SEND_AND_PREPARE_NEXT

            elif state is UploadState.SEND_AND_PREPARE_NEXT:
                self.link.send(session.current.message)
                if session.current.end < session.size:
                    session.next = self.prepare_segment(session, session.current.end)
                else:
                    session.next = None
                session.state = UploadState.AWAIT_ACK

            elif state is UploadState.AWAIT_ACK:
                session.state = self._await_ack(session)

            elif state is UploadState.RETRANSMIT:
                self._retransmit(session)
                session.state = UploadState.SEND_AND_PREPARE_NEXT

            elif state is UploadState.ADVANCE:
                session.current = session.next
                session.next = None
                session.segment_retries = 0
                session.timeout = self.next_segment_timeout
                if session.offset == session.size:
                    session.state = UploadState.DONE
                else:
                    session.state = UploadState.SEND_AND_PREPARE_NEXT

    def _await_ack(self, session: UploadSession) -> UploadState:
        try:
            message = self.link.receive(session.timeout)
        except ReadTimeout:
            logger.warning(
                f"No response for offset {session.current.offset} "
                f"within {session.timeout:g}s, retransmitting"
            )
            return UploadState.RETRANSMIT

        rsp = decode_response(message)
        if rsp.rc != 0:
            raise DeviceRejectedError(rsp.rc, session.current.offset)
        if rsp.off is None:
            raise MissingOffsetError("Upload response carries no offset")

        acked = rsp.off
        session.acks.append(acked)
        logger.info(f"ack to {acked}")

        if acked < 0 or acked > session.size:
            raise OffsetOverrunError(
                f"offset {acked} outside file of {session.size} bytes"
            )
        if acked == session.size:
            session.offset = acked
            session.segments += 1
            self._report(session)
            return UploadState.DONE
        if acked != session.current.end:
            logger.warning(
                f"Device acked offset {acked}, expected {session.current.end}; "
                f"retransmitting {session.current.offset}-{session.current.end}"
            )
            return UploadState.RETRANSMIT

        session.offset = acked
        session.segments += 1
        self._report(session)
        return UploadState.ADVANCE

    def _retransmit(self, session: UploadSession) -> None:
        if self.max_retries is not None and session.segment_retries >= self.max_retries:
            raise RetryBudgetExhausted(
                f"Segment at offset {session.current.offset} not acknowledged "
                f"after {session.segment_retries} retransmissions"
            )
        session.segment_retries += 1
        session.retransmits += 1
        session.current = self.prepare_segment(session, session.current.offset)
        if session.current.offset == 0:
            session.timeout = self.first_segment_timeout
        else:
            session.timeout = self.next_segment_timeout

    def _report(self, session: UploadSession) -> None:
        if self.progress_cb:
            self.progress_cb(session.offset, session.size)
