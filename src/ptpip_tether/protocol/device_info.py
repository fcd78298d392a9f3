"""Best-effort decoding of PTP DeviceInfo blobs.

A DeviceInfo dataset is a fixed header followed by PTP strings (one length
byte counting UTF-16 code units including the terminator, then UTF-16LE
data) and uint16 arrays. Vendor firmware over Wi-Fi is not reliably
well-formed, with odd padding and truncated arrays, so strict offset walking
fails on real cameras often enough that it cannot be the only strategy.

``parse_device_info`` therefore:

1. tries the strict field walk and trusts it only when it yields a known
   vendor;
2. otherwise scans every byte offset for plausible PTP strings and picks
   manufacturer, model, version and serial out of the candidates with
   pattern rules.

It never raises. Failures come back as ``ParseOutcome.FALLBACK`` with the
all-"Unknown" record.
"""

from __future__ import annotations

import logging
import re
import struct

from ptpip_tether.observability import get_logger
from ptpip_tether.protocol.codec import hexdump
from ptpip_tether.protocol.constants import HEADER_SIZE, KNOWN_MANUFACTURERS, PacketType
from ptpip_tether.protocol.errors import ParseFailure
from ptpip_tether.protocol.types import UNKNOWN, CameraInfo, ParseOutcome, ParseResult

logger = get_logger(__name__)

MIN_STRING_LENGTH = 1
MAX_STRING_LENGTH = 100
MAX_CANDIDATE_CHARS = 50
#: Bytes at the tail of the blob never treated as a length prefix.
SCAN_TAIL_GUARD = 10

_MODEL_PATTERNS = (
    re.compile(r"^[A-Z]\d+[A-Z]?\d*$"),  # Z8, D850, R5
    re.compile(r"^[A-Z] \d+[A-Z]?\d*$"),  # Z 8, Z 6II
    re.compile(r"^[A-Z]{2,} [A-Z]?\d+[A-Z]?$"),  # EOS R5, ILCE 7M
)
_VERSION_PATTERN = re.compile(r"^V\d+\.\d+.*")
_SERIAL_PATTERN = re.compile(r"^\d{10,}$")
_ZERO_PADDED_SERIAL = re.compile(r"^0+\d{1,4}$")
_CORPORATION = re.compile(r"corporation", re.IGNORECASE)

_UINT32 = struct.Struct("<I")


# =============================================================================
# Resilient scan
# =============================================================================


def _is_printable_ascii(text: str) -> bool:
    return all(32 <= ord(ch) <= 126 for ch in text)


def extract_candidate_strings(data: bytes) -> list[str]:
    """Recover every plausible PTP string from ``data``.

    Each byte offset whose value is in [1, 100] is treated as a length
    prefix ``n``; the following ``n * 2`` bytes are decoded as UTF-16LE,
    NULs and surrounding whitespace are stripped, and the result is kept
    when it is non-empty, at most 50 characters, and entirely printable
    ASCII. Order is first-seen; duplicates are kept.

    Example:
        >>> blob = b"\\x06" + "Nikon".encode("utf-16-le") + b"\\x00\\x00" + bytes(12)
        >>> extract_candidate_strings(blob)[0]
        'Nikon'
    """
    candidates: list[str] = []
    for i in range(len(data) - SCAN_TAIL_GUARD):
        length = data[i]
        if not MIN_STRING_LENGTH <= length <= MAX_STRING_LENGTH:
            continue
        start = i + 1
        end = start + length * 2
        if end > len(data):
            continue
        try:
            text = data[start:end].decode("utf-16-le")
        except UnicodeDecodeError:
            continue
        text = text.replace("\x00", "").strip()
        if text and len(text) <= MAX_CANDIDATE_CHARS and _is_printable_ascii(text):
            candidates.append(text)
    return candidates


def find_manufacturer(candidates: list[str]) -> str:
    """First known vendor mentioned by any candidate, canonicalized."""
    for text in candidates:
        lowered = text.lower()
        for vendor in KNOWN_MANUFACTURERS:
            if vendor.lower() in lowered:
                return vendor
    return UNKNOWN


def find_model(candidates: list[str], manufacturer: str) -> str:
    """Pick the model string.

    A bare model code (``Z8``, ``Z 8``, ``EOS R5``) wins. Otherwise a
    candidate such as ``"Nikon Z 8"`` has the vendor name and
    ``Corporation`` removed. The vendor's own corporate name
    (``"Nikon Corporation"``) is never taken as a model.
    """
    for text in candidates:
        if any(pattern.match(text) for pattern in _MODEL_PATTERNS):
            return text

    if manufacturer != UNKNOWN:
        vendor = manufacturer.lower()
        for text in candidates:
            lowered = text.lower()
            if vendor not in lowered or len(text) <= len(manufacturer) + 1:
                continue
            if lowered == f"{vendor} corporation":
                continue
            stripped = re.sub(re.escape(manufacturer), "", text, flags=re.IGNORECASE)
            stripped = _CORPORATION.sub("", stripped).strip()
            if stripped:
                return stripped
    return UNKNOWN


def find_version(candidates: list[str]) -> str:
    """First string that looks like a firmware version.

    Args:
        candidates: Strings read from the DeviceInfo dataset, in order.

    Returns:
        The first match of ``V<major>.<minor>``, or ``UNKNOWN``.

    Example:
        >>> find_version(["Nikon", "Z 8", "V1.00", "3001234567"])
        'V1.00'
    """
    for text in candidates:
        if _VERSION_PATTERN.match(text):
            return text
    return UNKNOWN


def find_serial(candidates: list[str]) -> str:
    """First long all-digit string that is not zero padding around a tiny number."""
    for text in candidates:
        if _SERIAL_PATTERN.match(text) and not _ZERO_PADDED_SERIAL.match(text):
            return text
    return UNKNOWN


# =============================================================================
# Strict walk
# =============================================================================


def _read_ptp_string(data: bytes, offset: int) -> tuple[str, int]:
    if offset >= len(data):
        raise ParseFailure(f"String offset {offset} beyond end of data")
    count = data[offset]
    offset += 1
    if count == 0:
        return "", offset
    end = offset + count * 2
    if end > len(data):
        raise ParseFailure(f"String of {count} units overruns data at {offset}")
    text = data[offset:end].decode("utf-16-le").rstrip("\x00")
    return text, end


def _skip_uint16_array(data: bytes, offset: int) -> int:
    if offset + 4 > len(data):
        raise ParseFailure(f"Array header at {offset} beyond end of data")
    count = _UINT32.unpack_from(data, offset)[0]
    end = offset + 4 + count * 2
    if end > len(data):
        raise ParseFailure(f"Array of {count} elements overruns data at {offset}")
    return end


def _strip_ptpip_header(data: bytes) -> bytes:
    """Drop an END_DATA/DATA frame header and transaction id if present."""
    if len(data) >= HEADER_SIZE + 4:
        length, packet_type = struct.unpack_from("<II", data, 0)
        if length == len(data) and packet_type in (PacketType.DATA, PacketType.END_DATA):
            return data[HEADER_SIZE + 4 :]
    return data


def parse_device_info_strict(data: bytes) -> CameraInfo | None:
    """Walk the DeviceInfo dataset field by field.

    Layout: StandardVersion (u16), VendorExtensionID (u32),
    VendorExtensionVersion (u16), VendorExtensionDesc (string),
    FunctionalMode (u16), five uint16 arrays (operations, events, device
    properties, capture formats, image formats), then Manufacturer, Model,
    DeviceVersion and SerialNumber strings.

    Returns:
        The decoded record, or None on any structural inconsistency.
    """
    payload = _strip_ptpip_header(data)
    try:
        offset = 2 + 4 + 2
        _, offset = _read_ptp_string(payload, offset)
        offset += 2
        for _ in range(5):
            offset = _skip_uint16_array(payload, offset)
        manufacturer, offset = _read_ptp_string(payload, offset)
        model, offset = _read_ptp_string(payload, offset)
        version, offset = _read_ptp_string(payload, offset)
        serial, offset = _read_ptp_string(payload, offset)
    except (ParseFailure, UnicodeDecodeError, struct.error):
        return None

    fields = (manufacturer, model, version, serial)
    if not all(_is_printable_ascii(value) for value in fields):
        return None
    return CameraInfo(
        manufacturer=manufacturer.strip() or UNKNOWN,
        model=model.strip() or UNKNOWN,
        version=version.strip() or UNKNOWN,
        serial_number=serial.strip() or UNKNOWN,
    )


def _encode_ptp_string(text: str) -> bytes:
    if not text:
        return b"\x00"
    units = text.encode("utf-16-le") + b"\x00\x00"
    return bytes([len(units) // 2]) + units


def _encode_uint16_array(values: tuple[int, ...]) -> bytes:
    return _UINT32.pack(len(values)) + b"".join(struct.pack("<H", v) for v in values)


def encode_device_info(
    info: CameraInfo,
    vendor_extension_id: int = 0x0000000A,
    vendor_extension_desc: str = "",
    operations: tuple[int, ...] = (),
    events: tuple[int, ...] = (),
) -> bytes:
    """Build a well-formed DeviceInfo dataset (no PTP/IP header).

    Counterpart of ``parse_device_info_strict``; used by the simulated
    camera.
    """
    return b"".join(
        (
            struct.pack("<HIH", 100, vendor_extension_id, 100),
            _encode_ptp_string(vendor_extension_desc),
            struct.pack("<H", 0),
            _encode_uint16_array(operations),
            _encode_uint16_array(events),
            _encode_uint16_array(()),
            _encode_uint16_array(()),
            _encode_uint16_array(()),
            _encode_ptp_string(info.manufacturer),
            _encode_ptp_string(info.model),
            _encode_ptp_string(info.version),
            _encode_ptp_string(info.serial_number),
        )
    )


def _canonical_vendor(manufacturer: str) -> str | None:
    lowered = manufacturer.lower()
    for vendor in KNOWN_MANUFACTURERS:
        if vendor.lower() in lowered:
            return vendor
    return None


# =============================================================================
# Entry point
# =============================================================================


def _outcome_for(info: CameraInfo) -> ParseOutcome:
    recovered = info.recovered_fields
    if recovered == 4:
        return ParseOutcome.FULL
    if recovered > 0:
        return ParseOutcome.PARTIAL
    return ParseOutcome.FALLBACK


def parse_device_info(data: bytes) -> ParseResult:
    """Extract camera identity from a GetDeviceInfo response.

    Args:
        data: Raw bytes as read off the command socket, with or without the
            PTP/IP frame header.

    Returns:
        ParseResult whose outcome tells FULL, PARTIAL and FALLBACK apart.
        Never raises.

    Example:
        >>> result = parse_device_info(blob)
        >>> result.info.manufacturer, result.outcome
        ('Nikon', <ParseOutcome.PARTIAL: 'partial'>)
    """
    try:
        logger.debug("Parsing device info", size=len(data))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Device info dump\n%s", hexdump(data))

        strict = parse_device_info_strict(data)
        if strict is not None:
            vendor = _canonical_vendor(strict.manufacturer)
            if vendor is not None:
                info = CameraInfo(
                    manufacturer=vendor,
                    model=strict.model,
                    version=strict.version,
                    serial_number=strict.serial_number,
                )
                return ParseResult(info=info, outcome=_outcome_for(info))

        candidates = extract_candidate_strings(data)
        manufacturer = find_manufacturer(candidates)
        info = CameraInfo(
            manufacturer=manufacturer,
            model=find_model(candidates, manufacturer),
            version=find_version(candidates),
            serial_number=find_serial(candidates),
        )
        result = ParseResult(
            info=info, outcome=_outcome_for(info), candidates=tuple(candidates)
        )
        logger.debug(
            "Device info scan finished",
            candidates=len(candidates),
            outcome=result.outcome.value,
        )
        return result
    except Exception as e:  # noqa: BLE001 - parser must never raise
        logger.warning("Device info parsing failed", error=str(e))
        return ParseResult(
            info=CameraInfo.unknown(), outcome=ParseOutcome.FALLBACK, error=str(e)
        )
