"""Tests for the segmented upload engine against a scripted device."""

import math
import random

import cbor2
import pytest

from fake_device import FakeDevice
from serial_uploader.protocol.nlip_codec import FrameIntegrityError, MAX_FRAME
from serial_uploader.protocol.nmgr_link import NmgrLink
from serial_uploader.protocol.nmgr_messages import ResponseDecodeError
from serial_uploader.protocol.serial_transport import TransportError
from serial_uploader.uploader import (
    DeviceRejectedError,
    ImageUploader,
    MissingOffsetError,
    OffsetOverrunError,
    RetryBudgetExhausted,
    UploadState,
    effective_chunk_size,
)


def make_image(size: int, seed: int = 0) -> bytes:
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(size))


def run_upload(device: FakeDevice, image: bytes, **kwargs):
    uploader = ImageUploader(NmgrLink(device), **kwargs)
    return uploader.upload(image)


class TestEffectiveChunkSize:
    def test_default_chunk(self):
        assert effective_chunk_size(512) == 368

    def test_bounds(self):
        assert effective_chunk_size(64) == 32
        assert effective_chunk_size(2048) == 1520


class TestCleanUpload:
    """Uploads over a link with no faults."""

    def test_small_image_two_segments(self):
        """100 bytes at chunk 512: a 32 byte first segment then the remaining 68."""
        image = make_image(100)
        device = FakeDevice()

        session = run_upload(device, image, chunk_size=512)

        assert session.state is UploadState.DONE
        assert session.offset == 100
        assert session.acks == [32, 100]
        assert session.retransmits == 0
        assert [r["off"] for r in device.upload_requests] == [0, 32]
        assert [len(r["data"]) for r in device.upload_requests] == [32, 68]
        assert bytes(device.image) == image

    def test_first_segment_declares_length(self):
        image = make_image(1000)
        device = FakeDevice()

        run_upload(device, image)

        first = device.upload_requests[0]
        assert first["len"] == 1000
        assert first["sha"] == b""
        assert first["off"] == 0
        assert all("len" not in r for r in device.upload_requests[1:])

    def test_image_smaller_than_first_segment(self):
        image = b"\xAA" * 10
        device = FakeDevice()

        session = run_upload(device, image)

        assert session.acks == [10]
        assert len(device.upload_requests) == 1
        assert bytes(device.image) == image

    def test_image_exactly_first_segment(self):
        image = make_image(32)
        device = FakeDevice()

        session = run_upload(device, image)

        assert session.acks == [32]
        assert len(device.upload_requests) == 1

    def test_segments_respect_effective_chunk(self):
        image = make_image(5000)
        device = FakeDevice()

        run_upload(device, image, chunk_size=256)

        chunk = effective_chunk_size(256)
        lengths = [len(r["data"]) for r in device.upload_requests]
        assert lengths[0] == 32
        assert all(n <= chunk for n in lengths[1:])
        assert all(n == chunk for n in lengths[1:-1])
        assert sum(lengths) == 5000
        assert bytes(device.image) == image

    def test_lines_fit_console_buffer_at_max_chunk(self):
        device = FakeDevice()

        run_upload(device, make_image(4000), chunk_size=2048)

        lines = bytes(device.written).split(b"\n")[:-1]
        assert lines
        assert all(len(line) + 1 <= MAX_FRAME for line in lines)

    def test_split_reads(self):
        """Responses arriving a few bytes per read are reassembled."""
        image = make_image(800)
        device = FakeDevice(read_chunk=7)

        session = run_upload(device, image)

        assert session.offset == 800
        assert bytes(device.image) == image

    def test_console_noise_before_responses(self):
        image = make_image(600)
        device = FakeDevice(noise=b"\r\nshell> \nx\n")

        session = run_upload(device, image)

        assert session.done
        assert bytes(device.image) == image

    def test_progress_reports_each_ack(self):
        image = make_image(1000)
        seen = []

        run_upload(FakeDevice(), image, progress_cb=lambda off, total: seen.append((off, total)))

        assert seen[-1] == (1000, 1000)
        assert [off for off, _ in seen] == sorted(off for off, _ in seen)

    def test_sequence_numbers_advance(self):
        device = FakeDevice()
        link = NmgrLink(device)

        ImageUploader(link).upload(make_image(1000))

        # one sequence number per prepared segment
        assert link.next_seq() == len(device.upload_requests)

    def test_empty_image_rejected(self):
        with pytest.raises(ValueError):
            run_upload(FakeDevice(), b"")

    def test_tiny_chunk_rejected(self):
        with pytest.raises(ValueError):
            run_upload(FakeDevice(), make_image(100), chunk_size=16)

    def test_negative_retry_budget_rejected(self):
        with pytest.raises(ValueError):
            ImageUploader(NmgrLink(FakeDevice()), max_retries=-1)


class TestRetransmit:
    """Lost, late and mismatched acknowledgements."""

    def test_first_segment_dropped(self):
        """Lost first response: retransmit offset 0, still under the long timeout."""
        image = make_image(300)
        device = FakeDevice(script={0: "drop"})

        session = run_upload(device, image)

        assert session.retransmits == 1
        assert [r["off"] for r in device.upload_requests[:2]] == [0, 0]
        assert device.read_timeouts[0] > 10
        assert device.read_timeouts[1] > 10
        assert device.read_timeouts[-1] <= 1.0
        assert bytes(device.image) == image

    def test_later_segment_uses_short_timeout(self):
        image = make_image(1000)
        device = FakeDevice(script={2: "drop"})

        session = run_upload(device, image)

        assert session.retransmits == 1
        assert all(t <= 1.0 for t in device.read_timeouts[1:])
        assert bytes(device.image) == image

    def test_wrong_ack_retransmits_same_segment(self):
        """Ack of 16 for the 32 byte first segment resends bytes 0-32."""
        image = make_image(200)
        device = FakeDevice(script={0: ("ack", 16)})

        session = run_upload(device, image)

        second = device.upload_requests[1]
        assert second["off"] == 0
        assert second["data"] == image[:32]
        assert session.acks[0] == 16
        assert session.retransmits == 1
        assert bytes(device.image) == image

    def test_wrong_ack_at_later_offset_resends_sent_segment(self):
        """
        A mismatched ack for 32-400 resends 32-400, not the already prepared
        400-768, and waits with the short timeout.
        """
        image = make_image(1000)
        device = FakeDevice(script={1: ("ack", 100)})

        session = run_upload(device, image)

        resent = device.upload_requests[2]
        assert resent["off"] == 32
        assert resent["data"] == image[32:400]
        assert device.read_timeouts[2] <= 1.0
        assert session.retransmits == 1
        assert bytes(device.image) == image

    def test_late_ack_after_retransmit(self):
        """
        The response to a segment arrives after its timeout; the duplicate
        write is ignored by the device and the late ack completes the segment.
        """
        image = make_image(1200)
        device = FakeDevice(script={1: "delay"}, drop_duplicates=True)

        session = run_upload(device, image)

        assert session.done
        assert session.retransmits == 1
        offsets = [r["off"] for r in device.upload_requests]
        assert offsets[1] == offsets[2]
        assert bytes(device.image) == image

    def test_duplicate_acks_do_not_move_offset_back(self):
        image = make_image(1500)
        device = FakeDevice(script={1: "delay", 3: "delay"})
        offsets = []

        session = run_upload(device, image, chunk_size=256, progress_cb=lambda off, total: offsets.append(off))

        assert session.done
        assert offsets == sorted(offsets)
        assert bytes(device.image) == image

    def test_segment_count_ignores_stale_acks(self):
        image = make_image(1500)
        device = FakeDevice(script={1: "delay", 3: "delay"})

        session = run_upload(device, image, chunk_size=256)

        chunk = effective_chunk_size(256)
        assert session.segments == 1 + math.ceil((1500 - 32) / chunk)
        assert len(session.acks) > session.segments

    def test_randomized_loss_and_delay(self):
        """Seeded random drops and late responses still deliver the exact image."""
        rng = random.Random(20240607)
        script = {i: rng.choice([None, None, None, "drop", "delay"]) for i in range(60)}
        image = make_image(3000, seed=3)
        device = FakeDevice(script=script)
        offsets = []

        session = run_upload(device, image, chunk_size=128, progress_cb=lambda off, total: offsets.append(off))

        assert session.done
        assert session.offset == 3000
        assert offsets == sorted(offsets)
        assert offsets[-1] == 3000
        assert bytes(device.image) == image

    def test_retry_budget_exhausted(self):
        device = FakeDevice(script={i: "drop" for i in range(10)})

        with pytest.raises(RetryBudgetExhausted):
            run_upload(device, make_image(100), max_retries=2)

        assert len(device.upload_requests) == 3

    def test_zero_retry_budget(self):
        device = FakeDevice(script={0: "drop"})

        with pytest.raises(RetryBudgetExhausted):
            run_upload(device, make_image(100), max_retries=0)


class TestFailures:
    """Fatal responses abort the upload."""

    def test_device_rejects_segment(self):
        device = FakeDevice(script={1: ("rc", 3)})

        with pytest.raises(DeviceRejectedError) as exc_info:
            run_upload(device, make_image(500))

        assert exc_info.value.rc == 3
        assert exc_info.value.offset == 32

    def test_offset_past_end(self):
        device = FakeDevice(script={0: ("ack", 5000)})

        with pytest.raises(OffsetOverrunError):
            run_upload(device, make_image(100))

    def test_negative_offset(self):
        device = FakeDevice(script={1: ("ack", -1)})

        with pytest.raises(OffsetOverrunError):
            run_upload(device, make_image(500))

    def test_missing_offset(self):
        device = FakeDevice(script={0: ("fields", {"rc": 0})})

        with pytest.raises(MissingOffsetError):
            run_upload(device, make_image(100))

    def test_missing_offset_is_decode_error(self):
        assert issubclass(MissingOffsetError, ResponseDecodeError)

    def test_payload_not_a_map(self):
        device = FakeDevice(script={0: ("raw", cbor2.dumps([1, 2]))})

        with pytest.raises(ResponseDecodeError):
            run_upload(device, make_image(100))

    def test_non_integer_offset(self):
        device = FakeDevice(script={0: ("fields", {"rc": 0, "off": "32"})})

        with pytest.raises(ResponseDecodeError):
            run_upload(device, make_image(100))

    def test_corrupt_response_frame(self):
        device = FakeDevice(script={0: "corrupt"})

        with pytest.raises(FrameIntegrityError):
            run_upload(device, make_image(100))

    def test_write_failure(self):
        device = FakeDevice(fail_write=True)
        uploader = ImageUploader(NmgrLink(device))

        with pytest.raises(TransportError):
            uploader.upload(make_image(100))

    def test_failed_session_state(self):
        device = FakeDevice(script={0: ("rc", 1)})
        link = NmgrLink(device)
        uploader = ImageUploader(link)
        captured = {}

        original = uploader._run

        def run_and_capture(session):
            captured["session"] = session
            return original(session)

        uploader._run = run_and_capture
        with pytest.raises(DeviceRejectedError):
            uploader.upload(make_image(100))

        session = captured["session"]
        assert session.state is UploadState.FAILED
        assert isinstance(session.error, DeviceRejectedError)
        assert session.offset == 0
