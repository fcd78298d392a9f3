"""PTP/IP protocol layer.

Pure building blocks shared by the network and device layers:

- constants: packet types, opcodes, response codes, vendor tables
- codec: frame encoding/decoding and the frame reader
- device_info: heuristic GetDeviceInfo parser
- types: immutable data model (Camera, CameraInfo, NetworkState, ...)
- errors: PtpipError hierarchy

Example:
    from ptpip_tether.protocol import codec, parse_device_info

    packet = codec.encode_operation_request(0x1001, 0)
"""

from ptpip_tether.protocol import codec, constants
from ptpip_tether.protocol.device_info import (
    encode_device_info,
    extract_candidate_strings,
    parse_device_info,
    parse_device_info_strict,
)
from ptpip_tether.protocol.errors import (
    AuthenticationError,
    HandshakeTimeoutError,
    ParseFailure,
    ProtocolMismatchError,
    PtpipError,
    ReachabilityError,
)
from ptpip_tether.protocol.types import (
    UNKNOWN,
    Camera,
    CameraInfo,
    ConnectionMode,
    ConnectionState,
    NetworkState,
    ParseOutcome,
    ParseResult,
)

__all__ = [
    # Submodules
    "codec",
    "constants",
    # Parser
    "parse_device_info",
    "parse_device_info_strict",
    "extract_candidate_strings",
    "encode_device_info",
    # Data model
    "UNKNOWN",
    "Camera",
    "CameraInfo",
    "ConnectionMode",
    "ConnectionState",
    "NetworkState",
    "ParseOutcome",
    "ParseResult",
    # Errors
    "PtpipError",
    "ReachabilityError",
    "HandshakeTimeoutError",
    "ProtocolMismatchError",
    "AuthenticationError",
    "ParseFailure",
]
