"""PTP and PTP/IP protocol constants.

Values are bit-exact with the PTP/IP wire format (CIPA DC-005) and the
Nikon vendor extension. Vendor opcodes are kept even where nothing sends
them yet so that later vendor operations use the same names.
"""

from __future__ import annotations

from enum import IntEnum

# =============================================================================
# Network
# =============================================================================

DEFAULT_PORT = 15740
SERVICE_TYPE = "_ptp._tcp"
#: Fully qualified mDNS service type for zeroconf browsing.
SERVICE_TYPE_FQDN = f"{SERVICE_TYPE}.local."
DISCOVERY_TIMEOUT_S = 10.0

HEADER_SIZE = 8
PROTOCOL_VERSION = 0x00010001
MAX_OPERATION_PARAMS = 5

#: Client GUID sent in the Init Command Request.
CLIENT_GUID = bytes(
    [
        0xD5, 0xB4, 0x6B, 0xCB, 0xD6, 0x2A, 0x4D, 0xBB,
        0xB0, 0x97, 0x87, 0x20, 0xCF, 0x83, 0xE0, 0x84,
    ]
)  # fmt: skip
DEFAULT_HOST_NAME = "ptpip-tether"

#: Data phase value used for every operation request (no data / data-in).
DATA_PHASE_NO_DATA_OR_DATA_IN = 1

#: Parameter sent with the Nikon authentication confirm opcode.
NIKON_AUTH_CONFIRM_PARAM = 0x2001


class PacketType(IntEnum):
    """PTP/IP packet types."""

    INIT_COMMAND_REQUEST = 1
    INIT_COMMAND_ACK = 2
    INIT_EVENT_REQUEST = 3
    INIT_EVENT_ACK = 4
    INIT_FAIL = 5
    OPERATION_REQUEST = 6
    OPERATION_RESPONSE = 7
    EVENT = 8
    START_DATA = 9
    DATA = 10
    CANCEL = 11
    END_DATA = 12
    PROBE_REQUEST = 13
    PROBE_RESPONSE = 14


class ResponseCode(IntEnum):
    """PTP response codes seen during connection setup."""

    OK = 0x2001
    GENERAL_ERROR = 0x2002
    SESSION_NOT_OPEN = 0x2003
    INVALID_TRANSACTION_ID = 0x2004
    OPERATION_NOT_SUPPORTED = 0x2005
    PARAMETER_NOT_SUPPORTED = 0x2006
    DEVICE_BUSY = 0x2019
    SESSION_ALREADY_OPEN = 0x201E


class StandardOperation(IntEnum):
    """Standard PTP operation codes."""

    GET_DEVICE_INFO = 0x1001
    OPEN_SESSION = 0x1002
    CLOSE_SESSION = 0x1003
    GET_STORAGE_IDS = 0x1004
    GET_STORAGE_INFO = 0x1005
    GET_NUM_OBJECTS = 0x1006
    GET_OBJECT_HANDLES = 0x1007
    GET_OBJECT_INFO = 0x1008
    GET_OBJECT = 0x1009
    DELETE_OBJECT = 0x100A
    SEND_OBJECT_INFO = 0x100C
    SEND_OBJECT = 0x100D
    INITIATE_CAPTURE = 0x100E
    FORMAT_STORE = 0x100F
    RESET_DEVICE = 0x1010
    SELF_TEST = 0x1011
    SET_OBJECT_PROTECTION = 0x1012
    POWER_DOWN = 0x1013
    GET_DEVICE_PROP_DESC = 0x1014
    GET_DEVICE_PROP_VALUE = 0x1015
    SET_DEVICE_PROP_VALUE = 0x1016
    RESET_DEVICE_PROP_VALUE = 0x1017
    TERMINATE_OPEN_CAPTURE = 0x1018
    MOVE_OBJECT = 0x1019
    COPY_OBJECT = 0x101A
    GET_PARTIAL_OBJECT = 0x101B
    INITIATE_OPEN_CAPTURE = 0x101C


class NikonOperation(IntEnum):
    """Nikon vendor operation codes (0x9006-0x9504)."""

    GET_PROFILE_ALL_DATA = 0x9006
    SEND_PROFILE_DATA = 0x9007
    DELETE_PROFILE = 0x9008
    SET_PROFILE_DATA = 0x9009
    ADVANCED_TRANSFER = 0x9010
    GET_FILE_INFO_IN_BLOCK = 0x9011
    CAPTURE = 0x90C0
    AF_DRIVE = 0x90C1
    SET_CONTROL_MODE = 0x90C2
    DEL_IMAGE_SDRAM = 0x90C3
    GET_LARGE_THUMB = 0x90C4
    CURVE_DOWNLOAD = 0x90C5
    CURVE_UPLOAD = 0x90C6
    CHECK_EVENT = 0x90C7
    DEVICE_READY = 0x90C8
    SET_PRE_WB_DATA = 0x90C9
    GET_VENDOR_PROP_CODES = 0x90CA
    AF_CAPTURE_SDRAM = 0x90CB
    GET_PICT_CTRL_DATA = 0x90CC
    SET_PICT_CTRL_DATA = 0x90CD
    DEL_CST_PIC_CTRL = 0x90CE
    GET_PIC_CTRL_CAPABILITY = 0x90CF
    GET_DEVICE_PTPIP_INFO = 0x90E0
    GET_PREVIEW_IMG = 0x9200
    START_LIVE_VIEW = 0x9201
    END_LIVE_VIEW = 0x9202
    GET_LIVE_VIEW_IMG = 0x9203
    MF_DRIVE = 0x9204
    CHANGE_AF_AREA = 0x9205
    AF_DRIVE_CANCEL = 0x9206
    INITIATE_CAPTURE_REC_IN_MEDIA = 0x9207
    GET_VENDOR_STORAGE_IDS = 0x9209
    START_MOVIE_REC_IN_CARD = 0x920A
    END_MOVIE_REC = 0x920B
    TERMINATE_CAPTURE = 0x920C
    GET_PARTIAL_OBJECT_HI_SPEED = 0x9400
    GET_DEVICE_PROP_EX = 0x9504


class NikonAuthOperation(IntEnum):
    """Opcodes of the Nikon station-mode pairing exchange."""

    REQUEST = 0x952B
    CONFIRM = 0x935A


# =============================================================================
# Vendor heuristics
# =============================================================================

#: Canonical vendor names recognised in device-info strings.
KNOWN_MANUFACTURERS: tuple[str, ...] = (
    "Nikon",
    "Canon",
    "Sony",
    "Fujifilm",
    "Olympus",
    "Panasonic",
    "Leica",
)

#: SSID substrings (upper case) that identify a camera-hosted access point.
CAMERA_SSID_PATTERNS: tuple[str, ...] = (
    "CANON",
    "NIKON",
    "SONY",
    "FUJIFILM",
    "OLYMPUS",
    "PANASONIC",
    "PENTAX",
    "LEICA",
)

#: Gateway addresses camera access points commonly hand out.
COMMON_CAMERA_AP_IPS: tuple[str, ...] = (
    "192.168.1.1",
    "192.168.0.1",
    "192.168.10.1",
    "192.168.100.1",
    "10.0.0.1",
    "172.16.0.1",
)

#: Addresses tried by AP-mode discovery when the gateway is unknown or silent.
DEFAULT_AP_DISCOVERY_IPS: tuple[str, ...] = COMMON_CAMERA_AP_IPS[:4]
