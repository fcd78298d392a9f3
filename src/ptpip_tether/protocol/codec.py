"""PTP/IP wire codec.

Every PTP/IP packet is little-endian and framed as::

    [uint32 total_length][uint32 packet_type][payload ...]

where ``total_length`` includes the 8-byte header. This module builds and
parses the packets the tether client needs (init handshakes and operation
request/response) and reads frame sequences off a transport. Everything
except ``read_frame``/``read_response_frames`` is pure.

Example:
    >>> packet = encode_operation_request(StandardOperation.GET_DEVICE_INFO, 0)
    >>> decode_header(packet)
    (18, 6)
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ptpip_tether.protocol.constants import (
    CLIENT_GUID,
    DATA_PHASE_NO_DATA_OR_DATA_IN,
    DEFAULT_HOST_NAME,
    HEADER_SIZE,
    MAX_OPERATION_PARAMS,
    PROTOCOL_VERSION,
    PacketType,
    StandardOperation,
)
from ptpip_tether.protocol.errors import ProtocolMismatchError

_HEADER = struct.Struct("<II")
_OPERATION_FIXED = struct.Struct("<IHI")  # data phase, opcode, transaction id
_RESPONSE_FIXED = struct.Struct("<HI")  # response code, transaction id
_UINT32 = struct.Struct("<I")

_UINT32_MASK = 0xFFFFFFFF
_GUID_SIZE = 16


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class InitCommandRequest:
    guid: bytes
    host_name: str
    protocol_version: int


@dataclass(frozen=True)
class InitCommandAck:
    connection_number: int
    guid: bytes = b""
    host_name: str = ""


@dataclass(frozen=True)
class OperationRequest:
    opcode: int
    transaction_id: int
    params: tuple[int, ...] = ()
    data_phase: int = DATA_PHASE_NO_DATA_OR_DATA_IN


@dataclass(frozen=True)
class OperationResponse:
    response_code: int
    transaction_id: int
    params: tuple[int, ...] = ()


# =============================================================================
# Framing
# =============================================================================


def encode_frame(packet_type: int, payload: bytes = b"") -> bytes:
    """Prefix ``payload`` with the PTP/IP length/type header."""
    return _HEADER.pack(HEADER_SIZE + len(payload), int(packet_type)) + payload


def decode_header(data: bytes) -> tuple[int, int]:
    """Return ``(total_length, packet_type)`` from the first 8 bytes.

    Raises:
        ProtocolMismatchError: Fewer than 8 bytes, or a length field
            smaller than the header itself.
    """
    if len(data) < HEADER_SIZE:
        raise ProtocolMismatchError(
            f"Frame too short for header: {len(data)} bytes"
        )
    length, packet_type = _HEADER.unpack_from(data, 0)
    if length < HEADER_SIZE:
        raise ProtocolMismatchError(
            f"Invalid frame length {length}", packet_type=packet_type
        )
    return length, packet_type


def packet_type_of(frame: bytes) -> int | None:
    """Packet type of ``frame``, or None if it has no complete header."""
    if len(frame) < HEADER_SIZE:
        return None
    return _UINT32.unpack_from(frame, 4)[0]


def _expect_type(data: bytes, expected: PacketType) -> int:
    length, packet_type = decode_header(data)
    if packet_type != expected:
        raise ProtocolMismatchError(
            f"Expected {expected.name} ({int(expected)}), got packet type {packet_type}",
            packet_type=packet_type,
        )
    return length


# =============================================================================
# Init handshake
# =============================================================================


def encode_init_command_request(
    guid: bytes = CLIENT_GUID,
    host_name: str = DEFAULT_HOST_NAME,
    protocol_version: int = PROTOCOL_VERSION,
) -> bytes:
    """Build an Init Command Request.

    Payload: ``[16-byte GUID][UTF-16LE host name][0x0000][uint32 version]``.

    Raises:
        ValueError: If ``guid`` is not 16 bytes.
    """
    if len(guid) != _GUID_SIZE:
        raise ValueError(f"GUID must be {_GUID_SIZE} bytes, got {len(guid)}")
    payload = (
        bytes(guid)
        + host_name.encode("utf-16-le")
        + b"\x00\x00"
        + _UINT32.pack(protocol_version & _UINT32_MASK)
    )
    return encode_frame(PacketType.INIT_COMMAND_REQUEST, payload)


def _read_utf16z(data: bytes, offset: int, end: int) -> tuple[str, int]:
    """Decode a NUL-terminated UTF-16LE string starting at ``offset``.

    Returns the string and the offset just past the terminator. A missing
    terminator consumes everything up to ``end``.
    """
    pos = offset
    while pos + 1 < end:
        if data[pos] == 0 and data[pos + 1] == 0:
            return data[offset:pos].decode("utf-16-le", errors="replace"), pos + 2
        pos += 2
    return data[offset:end].decode("utf-16-le", errors="replace"), end


def decode_init_command_request(data: bytes) -> InitCommandRequest:
    """Parse an Init Command Request (used by the simulated camera)."""
    length = _expect_type(data, PacketType.INIT_COMMAND_REQUEST)
    end = min(length, len(data))
    if end < HEADER_SIZE + _GUID_SIZE + 2 + 4:
        raise ProtocolMismatchError(f"Init command request too short: {end} bytes")
    guid = bytes(data[HEADER_SIZE : HEADER_SIZE + _GUID_SIZE])
    name, offset = _read_utf16z(data, HEADER_SIZE + _GUID_SIZE, end - 4)
    version = _UINT32.unpack_from(data, end - 4)[0]
    if offset != end - 4:
        raise ProtocolMismatchError("Host name not terminated before version field")
    return InitCommandRequest(guid=guid, host_name=name, protocol_version=version)


def encode_init_command_ack(
    connection_number: int,
    guid: bytes = CLIENT_GUID,
    host_name: str = "",
    protocol_version: int = PROTOCOL_VERSION,
) -> bytes:
    """Build an Init Command ACK (responder side)."""
    payload = (
        _UINT32.pack(connection_number & _UINT32_MASK)
        + bytes(guid)
        + host_name.encode("utf-16-le")
        + b"\x00\x00"
        + _UINT32.pack(protocol_version)
    )
    return encode_frame(PacketType.INIT_COMMAND_ACK, payload)


def decode_init_command_ack(data: bytes) -> InitCommandAck:
    """Parse an Init Command ACK.

    The connection number is the uint32 right after the header (offset 8).
    GUID and responder name follow when the camera sends them.

    Raises:
        ProtocolMismatchError: Wrong packet type (INIT_FAIL included) or
            a payload too short to hold the connection number.
    """
    length = _expect_type(data, PacketType.INIT_COMMAND_ACK)
    end = min(length, len(data))
    if end < HEADER_SIZE + 4:
        raise ProtocolMismatchError("Init command ACK missing connection number")
    connection_number = _UINT32.unpack_from(data, HEADER_SIZE)[0]
    guid = b""
    name = ""
    guid_start = HEADER_SIZE + 4
    if end >= guid_start + _GUID_SIZE:
        guid = bytes(data[guid_start : guid_start + _GUID_SIZE])
        name, _ = _read_utf16z(data, guid_start + _GUID_SIZE, max(end - 4, guid_start + _GUID_SIZE))
    return InitCommandAck(connection_number=connection_number, guid=guid, host_name=name)


def encode_init_event_request(connection_number: int) -> bytes:
    """Build the 12-byte Init Event Request ``[12][3][connection_number]``."""
    return encode_frame(
        PacketType.INIT_EVENT_REQUEST, _UINT32.pack(connection_number & _UINT32_MASK)
    )


def decode_init_event_request(data: bytes) -> int:
    """Return the connection number carried by an Init Event Request."""
    _expect_type(data, PacketType.INIT_EVENT_REQUEST)
    if len(data) < HEADER_SIZE + 4:
        raise ProtocolMismatchError("Init event request missing connection number")
    return _UINT32.unpack_from(data, HEADER_SIZE)[0]


def encode_init_event_ack() -> bytes:
    """Build an Init Event ACK (responder side, header only)."""
    return encode_frame(PacketType.INIT_EVENT_ACK)


def is_init_event_ack(data: bytes) -> bool:
    """True when ``data`` starts with an Init Event ACK header."""
    return packet_type_of(data) == PacketType.INIT_EVENT_ACK


# =============================================================================
# Operations
# =============================================================================


def encode_operation_request(opcode: int, transaction_id: int, *params: int) -> bytes:
    """Build an Operation Request.

    Layout: ``[len=18+4n][6][uint32 data_phase=1][uint16 opcode]
    [uint32 transaction_id][uint32 params...]``.

    Args:
        opcode: PTP operation code.
        transaction_id: Transaction id; OpenSession must use 0.
        *params: Up to five uint32 parameters.

    Raises:
        ValueError: More than five parameters.

    Example:
        >>> len(encode_operation_request(0x1002, 0, 1234))
        22
    """
    if len(params) > MAX_OPERATION_PARAMS:
        raise ValueError(
            f"At most {MAX_OPERATION_PARAMS} parameters allowed, got {len(params)}"
        )
    payload = _OPERATION_FIXED.pack(
        DATA_PHASE_NO_DATA_OR_DATA_IN, opcode & 0xFFFF, transaction_id & _UINT32_MASK
    )
    payload += b"".join(_UINT32.pack(p & _UINT32_MASK) for p in params)
    return encode_frame(PacketType.OPERATION_REQUEST, payload)


def decode_operation_request(data: bytes) -> OperationRequest:
    """Parse an Operation Request (responder side)."""
    length = _expect_type(data, PacketType.OPERATION_REQUEST)
    end = min(length, len(data))
    fixed_end = HEADER_SIZE + _OPERATION_FIXED.size
    if end < fixed_end:
        raise ProtocolMismatchError(f"Operation request too short: {end} bytes")
    data_phase, opcode, transaction_id = _OPERATION_FIXED.unpack_from(data, HEADER_SIZE)
    count = (end - fixed_end) // 4
    params = tuple(_UINT32.unpack_from(data, fixed_end + 4 * i)[0] for i in range(count))
    return OperationRequest(
        opcode=opcode, transaction_id=transaction_id, params=params, data_phase=data_phase
    )


def encode_operation_response(
    response_code: int, transaction_id: int, *params: int
) -> bytes:
    """Build an Operation Response (responder side)."""
    payload = _RESPONSE_FIXED.pack(response_code & 0xFFFF, transaction_id & _UINT32_MASK)
    payload += b"".join(_UINT32.pack(p & _UINT32_MASK) for p in params)
    return encode_frame(PacketType.OPERATION_RESPONSE, payload)


def decode_operation_response(data: bytes) -> OperationResponse:
    """Parse an Operation Response.

    Raises:
        ProtocolMismatchError: Wrong packet type or truncated payload.
    """
    length = _expect_type(data, PacketType.OPERATION_RESPONSE)
    end = min(length, len(data))
    fixed_end = HEADER_SIZE + _RESPONSE_FIXED.size
    if end < fixed_end:
        raise ProtocolMismatchError(f"Operation response too short: {end} bytes")
    code, transaction_id = _RESPONSE_FIXED.unpack_from(data, HEADER_SIZE)
    count = (end - fixed_end) // 4
    params = tuple(_UINT32.unpack_from(data, fixed_end + 4 * i)[0] for i in range(count))
    return OperationResponse(response_code=code, transaction_id=transaction_id, params=params)


def encode_start_data(transaction_id: int, total_length: int) -> bytes:
    """Build a Start Data packet (responder side)."""
    payload = _UINT32.pack(transaction_id & _UINT32_MASK) + struct.pack("<Q", total_length)
    return encode_frame(PacketType.START_DATA, payload)


def encode_end_data(transaction_id: int, data: bytes) -> bytes:
    """Build an End Data packet carrying the data phase payload."""
    return encode_frame(PacketType.END_DATA, _UINT32.pack(transaction_id & _UINT32_MASK) + data)


class TransactionCounter:
    """Allocates PTP transaction ids.

    OpenSession always carries id 0 and leaves the counter untouched. Every
    other opcode takes the current value and advances the counter
    (post-increment from 0, wrapping at 2**32).

    Example:
        >>> counter = TransactionCounter()
        >>> counter.next_for(StandardOperation.GET_DEVICE_INFO)
        0
        >>> counter.next_for(StandardOperation.OPEN_SESSION)
        0
        >>> counter.next_for(StandardOperation.GET_STORAGE_IDS)
        1
    """

    __slots__ = ("_next",)

    def __init__(self, start: int = 0) -> None:
        self._next = start & _UINT32_MASK

    def next_for(self, opcode: int) -> int:
        """Transaction id for the next request carrying ``opcode``.

        Args:
            opcode: PTP operation code about to be sent.

        Returns:
            0 for OpenSession without touching the counter, otherwise the
            current value, after which the counter advances.
        """
        if opcode == StandardOperation.OPEN_SESSION:
            return 0
        value = self._next
        self._next = (self._next + 1) & _UINT32_MASK
        return value

    def peek(self) -> int:
        """The id the next non-OpenSession request would get, without consuming it."""
        return self._next

    def reset(self, start: int = 0) -> None:
        """Restart numbering, e.g. after a new session is opened."""
        self._next = start & _UINT32_MASK


# =============================================================================
# Reading frames
# =============================================================================


@runtime_checkable
class FrameSource(Protocol):  # pragma: no cover
    """The part of a transport the frame reader needs.

    ``recv_exactly`` raises ``TimeoutError`` when no data arrives within
    ``timeout`` and ``ConnectionError`` when the peer closes mid-read.
    """

    def recv_exactly(self, size: int, timeout: float | None) -> bytes: ...


def read_frame(source: FrameSource, timeout: float | None) -> bytes:
    """Read exactly one frame (header plus payload).

    Raises:
        TimeoutError: No complete frame within ``timeout`` per read.
        ConnectionError: Peer closed the connection.
        ProtocolMismatchError: Invalid length field.
    """
    header = source.recv_exactly(HEADER_SIZE, timeout)
    length, _ = decode_header(header)
    if length == HEADER_SIZE:
        return header
    return header + source.recv_exactly(length - HEADER_SIZE, timeout)


def read_response_frames(source: FrameSource, timeout: float = 2.0) -> list[bytes]:
    """Collect frames until an Operation Response arrives.

    Data-phase frames (START_DATA, DATA, END_DATA) interleave before the
    final response. Each read is bounded by ``timeout``. On timeout or a
    closed connection the frames collected so far are returned, possibly
    none, so a wedged camera can never hang the caller.

    Returns:
        Frames in arrival order; the last one is the Operation Response
        when the sequence completed.
    """
    frames: list[bytes] = []
    while True:
        try:
            frame = read_frame(source, timeout)
        except (TimeoutError, ConnectionError, ProtocolMismatchError):
            return frames
        frames.append(frame)
        if packet_type_of(frame) == PacketType.OPERATION_RESPONSE:
            return frames


def largest_frame(frames: Iterable[bytes]) -> bytes | None:
    """Return the biggest frame, or None when there are none."""
    return max(frames, key=len, default=None)


def last_response(frames: Iterable[bytes]) -> OperationResponse | None:
    """Decode the final Operation Response in ``frames``, if any."""
    response = None
    for frame in frames:
        if packet_type_of(frame) == PacketType.OPERATION_RESPONSE:
            try:
                response = decode_operation_response(frame)
            except ProtocolMismatchError:
                continue
    return response


def hexdump(data: bytes, limit: int = 256) -> str:
    """Offset/hex listing of the first ``limit`` bytes, for DEBUG logs."""
    lines = []
    for offset in range(0, min(len(data), limit), 16):
        chunk = data[offset : offset + 16]
        lines.append(f"{offset:04X}: {chunk.hex(' ').upper()}")
    return "\n".join(lines)
