"""Tests for protocol/codec.py - PTP/IP framing and packet encoding."""

import struct

import pytest

from ptpip_tether.protocol import codec
from ptpip_tether.protocol.constants import (
    CLIENT_GUID,
    HEADER_SIZE,
    PacketType,
    ResponseCode,
    StandardOperation,
)
from ptpip_tether.protocol.errors import ProtocolMismatchError


class BufferSource:
    """FrameSource over a fixed byte buffer."""

    def __init__(self, data: bytes, closed: bool = False):
        self.data = bytearray(data)
        self.closed = closed

    def recv_exactly(self, size, timeout):
        if len(self.data) < size:
            if self.closed:
                raise ConnectionError("peer closed")
            raise TimeoutError("no data")
        chunk = bytes(self.data[:size])
        del self.data[:size]
        return chunk


class TestFraming:
    def test_header_is_little_endian_length_then_type(self):
        frame = codec.encode_frame(PacketType.INIT_EVENT_ACK)

        assert frame == b"\x08\x00\x00\x00\x04\x00\x00\x00"
        assert codec.decode_header(frame) == (8, PacketType.INIT_EVENT_ACK)

    def test_short_header_rejected(self):
        with pytest.raises(ProtocolMismatchError):
            codec.decode_header(b"\x08\x00\x00")

    def test_length_below_header_rejected(self):
        with pytest.raises(ProtocolMismatchError) as exc:
            codec.decode_header(struct.pack("<II", 4, 7))
        assert exc.value.packet_type == 7

    def test_packet_type_of_incomplete_frame_is_none(self):
        assert codec.packet_type_of(b"\x01\x02") is None


class TestInitCommand:
    def test_request_layout(self):
        """GUID, UTF-16LE name, two-byte terminator, version 0x00010001."""
        frame = codec.encode_init_command_request(host_name="Ab")

        length, packet_type = codec.decode_header(frame)
        assert packet_type == PacketType.INIT_COMMAND_REQUEST
        assert length == len(frame) == HEADER_SIZE + 16 + 4 + 2 + 4
        assert frame[8:24] == CLIENT_GUID
        assert frame[24:28] == "Ab".encode("utf-16-le")
        assert frame[28:30] == b"\x00\x00"
        assert frame[30:34] == b"\x01\x00\x01\x00"

    def test_request_decodes_back(self):
        decoded = codec.decode_init_command_request(
            codec.encode_init_command_request(host_name="Android Device")
        )
        assert decoded.host_name == "Android Device"
        assert decoded.guid == CLIENT_GUID
        assert decoded.protocol_version == 0x00010001

    def test_bad_guid_rejected(self):
        with pytest.raises(ValueError):
            codec.encode_init_command_request(guid=b"short")

    def test_ack_connection_number_at_offset_8(self):
        frame = codec.encode_init_command_ack(0x11223344, host_name="Z 8")

        assert struct.unpack_from("<I", frame, 8)[0] == 0x11223344
        ack = codec.decode_init_command_ack(frame)
        assert ack.connection_number == 0x11223344
        assert ack.host_name == "Z 8"

    def test_minimal_ack_has_only_connection_number(self):
        frame = codec.encode_frame(PacketType.INIT_COMMAND_ACK, struct.pack("<I", 5))

        ack = codec.decode_init_command_ack(frame)

        assert ack.connection_number == 5
        assert ack.guid == b""

    def test_init_fail_is_not_an_ack(self):
        frame = codec.encode_frame(PacketType.INIT_FAIL, struct.pack("<I", 1))

        with pytest.raises(ProtocolMismatchError) as exc:
            codec.decode_init_command_ack(frame)
        assert exc.value.packet_type == PacketType.INIT_FAIL


class TestInitEvent:
    def test_request_is_twelve_bytes(self):
        frame = codec.encode_init_event_request(7)

        assert frame == struct.pack("<III", 12, PacketType.INIT_EVENT_REQUEST, 7)
        assert codec.decode_init_event_request(frame) == 7

    def test_ack_detection(self):
        assert codec.is_init_event_ack(codec.encode_init_event_ack())
        assert not codec.is_init_event_ack(codec.encode_init_event_request(1))


class TestOperations:
    def test_request_layout_with_parameter(self):
        """[len=22][6][data_phase=1][opcode][txid][param]."""
        frame = codec.encode_operation_request(StandardOperation.OPEN_SESSION, 0, 1234)

        assert len(frame) == 22
        assert struct.unpack("<IIIHII", frame) == (22, 6, 1, 0x1002, 0, 1234)

    def test_request_without_parameters_is_18_bytes(self):
        assert len(codec.encode_operation_request(StandardOperation.GET_DEVICE_INFO, 3)) == 18

    def test_more_than_five_parameters_rejected(self):
        with pytest.raises(ValueError):
            codec.encode_operation_request(0x1001, 1, 1, 2, 3, 4, 5, 6)

    def test_request_decodes_back(self):
        request = codec.decode_operation_request(
            codec.encode_operation_request(0x935A, 2, 0x2001)
        )
        assert (request.opcode, request.transaction_id, request.params) == (0x935A, 2, (0x2001,))
        assert request.data_phase == 1

    def test_response_decodes(self):
        response = codec.decode_operation_response(
            codec.encode_operation_response(ResponseCode.OK, 9, 42)
        )
        assert response == codec.OperationResponse(ResponseCode.OK, 9, (42,))

    def test_truncated_response_rejected(self):
        frame = struct.pack("<IIH", 10, PacketType.OPERATION_RESPONSE, 0x2001)
        with pytest.raises(ProtocolMismatchError):
            codec.decode_operation_response(frame)


class TestTransactionCounter:
    def test_post_increment_from_zero(self):
        counter = codec.TransactionCounter()

        ids = [counter.next_for(StandardOperation.GET_DEVICE_INFO) for _ in range(3)]

        assert ids == [0, 1, 2]

    def test_open_session_always_zero_and_does_not_advance(self):
        counter = codec.TransactionCounter()
        counter.next_for(StandardOperation.GET_DEVICE_INFO)

        assert counter.next_for(StandardOperation.OPEN_SESSION) == 0
        assert counter.peek() == 1

    def test_wraps_at_32_bits(self):
        counter = codec.TransactionCounter(0xFFFFFFFF)

        assert counter.next_for(0x1001) == 0xFFFFFFFF
        assert counter.next_for(0x1001) == 0

    def test_reset(self):
        counter = codec.TransactionCounter(10)
        counter.reset()
        assert counter.peek() == 0

    def test_peek_does_not_consume(self):
        counter = codec.TransactionCounter(5)

        assert counter.peek() == 5
        assert counter.peek() == 5
        assert counter.next_for(StandardOperation.GET_STORAGE_IDS) == 5


class TestReadingFrames:
    def test_reads_data_phase_then_response(self):
        data = (
            codec.encode_start_data(0, 4)
            + codec.encode_end_data(0, b"abcd")
            + codec.encode_operation_response(ResponseCode.OK, 0)
        )

        frames = codec.read_response_frames(BufferSource(data), timeout=0.1)

        assert [codec.packet_type_of(f) for f in frames] == [
            PacketType.START_DATA,
            PacketType.END_DATA,
            PacketType.OPERATION_RESPONSE,
        ]
        assert codec.largest_frame(frames).endswith(b"abcd")
        assert codec.last_response(frames).response_code == ResponseCode.OK

    def test_timeout_returns_partial_frames(self):
        source = BufferSource(codec.encode_start_data(0, 4))

        frames = codec.read_response_frames(source, timeout=0.1)

        assert len(frames) == 1
        assert codec.last_response(frames) is None

    def test_closed_connection_returns_collected_frames(self):
        assert codec.read_response_frames(BufferSource(b"", closed=True)) == []

    def test_header_only_frame(self):
        frame = codec.read_frame(BufferSource(codec.encode_init_event_ack()), 0.1)
        assert frame == codec.encode_init_event_ack()

    def test_largest_frame_of_nothing(self):
        assert codec.largest_frame([]) is None

    def test_hexdump_limits_output(self):
        dump = codec.hexdump(bytes(range(64)), limit=32)

        assert dump.splitlines()[0].startswith("0000: 00 01 02")
        assert len(dump.splitlines()) == 2
