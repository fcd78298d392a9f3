"""Digital twin drivers: an in-memory PTP/IP camera and its surroundings.

DigitalTwinCamera answers the PTP/IP wire protocol exactly as the connection
manager and authentication service speak it, so the whole stack (codec,
handshake, device-info parsing, Nikon pairing, native attach, capture) runs
without a camera or a network. DigitalTwinTransportFactory is the simulated
network the camera lives on; the other twins (capture library, network
probe, mDNS browser) look cameras up through it.

Failure injection is per camera via TwinCameraConfig flags.

Example:
    world = DigitalTwinTransportFactory([DigitalTwinCamera()])
    transport = world.create()
    transport.connect("192.168.1.20", 15740, timeout=5.0)
"""

from __future__ import annotations

import asyncio
import struct
import threading
from dataclasses import dataclass
from itertools import count

from ptpip_tether.drivers.mdns import ServiceRecord
from ptpip_tether.observability import get_logger
from ptpip_tether.protocol import codec
from ptpip_tether.protocol.constants import (
    DEFAULT_PORT,
    HEADER_SIZE,
    NIKON_AUTH_CONFIRM_PARAM,
    NikonAuthOperation,
    PacketType,
    ResponseCode,
    StandardOperation,
)
from ptpip_tether.protocol.device_info import encode_device_info
from ptpip_tether.protocol.errors import ProtocolMismatchError
from ptpip_tether.protocol.types import CameraInfo

logger = get_logger(__name__)

#: gphoto2 GP_ERROR_IO, returned by the twin capture library.
GP_ERROR_IO = -7

#: INIT_FAIL reason code "rejected initiator".
INIT_FAIL_REJECTED = 1

_SUPPORTED_OPERATIONS = (
    StandardOperation.GET_DEVICE_INFO,
    StandardOperation.OPEN_SESSION,
    StandardOperation.CLOSE_SESSION,
    StandardOperation.GET_STORAGE_IDS,
    StandardOperation.INITIATE_CAPTURE,
)
_STORAGE_ID = 0x00010001


@dataclass
class TwinCameraConfig:
    """Behaviour of a simulated camera.

    Attributes:
        ip_address: Address the camera answers on.
        port: PTP/IP port.
        manufacturer: Manufacturer string reported in DeviceInfo.
        model: Model string reported in DeviceInfo.
        version: Firmware version string.
        serial_number: Serial number string.
        service_name: mDNS instance name; None means not advertised.
        reachable: False makes every TCP connect fail.
        requires_pairing: Native station-mode attach is refused until the
            Nikon pairing exchange has been confirmed.
        accept_pairing: Whether the pairing confirm opcode succeeds.
        init_failure: Answer Init Command Request with INIT_FAIL.
        silent_init: Never answer Init Command Request.
        drop_event_ack: Never answer Init Event Request.
        native_attach: Whether the native init_* calls succeed.
        device_info_payload: Raw DeviceInfo bytes to send instead of a
            well-formed dataset (vendor quirk simulation).
    """

    ip_address: str = "192.168.1.20"
    port: int = DEFAULT_PORT
    manufacturer: str = "Nikon Corporation"
    model: str = "Z 8"
    version: str = "V1.00"
    serial_number: str = "3001234567"
    service_name: str | None = "Nikon_Z_8_3001234"
    reachable: bool = True
    requires_pairing: bool = False
    accept_pairing: bool = True
    init_failure: bool = False
    silent_init: bool = False
    drop_event_ack: bool = False
    native_attach: bool = True
    device_info_payload: bytes | None = None


class DigitalTwinCamera:
    """In-memory PTP/IP responder.

    Responses are produced synchronously inside ``handle`` and queued on the
    sending transport, so a read either finds its bytes immediately or times
    out immediately.

    Attributes:
        config: Behaviour flags.
        received: ``(opcode, transaction_id, params)`` of every operation
            request, in arrival order.
        paired: True once the Nikon pairing exchange was confirmed.
        captures: Number of photos taken through the capture library.
        close_session_count: Number of CloseSession requests served.
    """

    def __init__(self, config: TwinCameraConfig | None = None) -> None:
        self.config = config or TwinCameraConfig()
        self.received: list[tuple[int, int, tuple[int, ...]]] = []
        self.paired = False
        self.captures = 0
        self.close_session_count = 0
        self.session_id: int | None = None
        self._connection_numbers = count(1)
        self._lock = threading.Lock()

    @property
    def info(self) -> CameraInfo:
        c = self.config
        return CameraInfo(
            manufacturer=c.manufacturer,
            model=c.model,
            version=c.version,
            serial_number=c.serial_number,
        )

    @property
    def opcodes(self) -> list[int]:
        """Opcodes received so far."""
        return [opcode for opcode, _, _ in self.received]

    def device_info_dataset(self) -> bytes:
        if self.config.device_info_payload is not None:
            return self.config.device_info_payload
        return encode_device_info(
            self.info,
            vendor_extension_desc="microsoft.com: 1.0",
            operations=tuple(int(op) for op in _SUPPORTED_OPERATIONS),
        )

    def handle(self, data: bytes) -> bytes:
        """Process every frame in ``data`` and return the bytes to send back."""
        out = bytearray()
        offset = 0
        with self._lock:
            while offset + HEADER_SIZE <= len(data):
                length, _ = codec.decode_header(data[offset:])
                out += self._handle_frame(data[offset : offset + length])
                offset += length
        return bytes(out)

    def _handle_frame(self, frame: bytes) -> bytes:
        packet_type = codec.packet_type_of(frame)
        if packet_type == PacketType.INIT_COMMAND_REQUEST:
            return self._on_init_command(frame)
        if packet_type == PacketType.INIT_EVENT_REQUEST:
            if self.config.drop_event_ack:
                return b""
            codec.decode_init_event_request(frame)
            return codec.encode_init_event_ack()
        if packet_type == PacketType.OPERATION_REQUEST:
            return self._on_operation(codec.decode_operation_request(frame))
        logger.debug("Twin ignoring packet", packet_type=packet_type)
        return b""

    def _on_init_command(self, frame: bytes) -> bytes:
        request = codec.decode_init_command_request(frame)
        if self.config.silent_init:
            return b""
        if self.config.init_failure:
            return codec.encode_frame(
                PacketType.INIT_FAIL, struct.pack("<I", INIT_FAIL_REJECTED)
            )
        number = next(self._connection_numbers)
        logger.debug("Twin accepted initiator", host_name=request.host_name, connection=number)
        return codec.encode_init_command_ack(number, host_name=self.config.model)

    def _on_operation(self, request: codec.OperationRequest) -> bytes:
        self.received.append((request.opcode, request.transaction_id, request.params))
        txid = request.transaction_id
        opcode = request.opcode

        if opcode == StandardOperation.GET_DEVICE_INFO:
            dataset = self.device_info_dataset()
            return (
                codec.encode_start_data(txid, len(dataset))
                + codec.encode_end_data(txid, dataset)
                + codec.encode_operation_response(ResponseCode.OK, txid)
            )
        if opcode == StandardOperation.OPEN_SESSION:
            self.session_id = request.params[0] if request.params else 0
            return codec.encode_operation_response(ResponseCode.OK, txid)
        if opcode == StandardOperation.CLOSE_SESSION:
            self.close_session_count += 1
            self.session_id = None
            return codec.encode_operation_response(ResponseCode.OK, txid)
        if opcode == StandardOperation.GET_STORAGE_IDS:
            storage = struct.pack("<II", 1, _STORAGE_ID)
            return (
                codec.encode_start_data(txid, len(storage))
                + codec.encode_end_data(txid, storage)
                + codec.encode_operation_response(ResponseCode.OK, txid)
            )
        if opcode == NikonAuthOperation.REQUEST:
            if not self._is_nikon():
                return codec.encode_operation_response(ResponseCode.OPERATION_NOT_SUPPORTED, txid)
            return codec.encode_operation_response(ResponseCode.OK, txid)
        if opcode == NikonAuthOperation.CONFIRM:
            if not self._is_nikon():
                return codec.encode_operation_response(ResponseCode.OPERATION_NOT_SUPPORTED, txid)
            if self.config.accept_pairing and request.params[:1] == (NIKON_AUTH_CONFIRM_PARAM,):
                self.paired = True
                return codec.encode_operation_response(ResponseCode.OK, txid)
            return codec.encode_operation_response(ResponseCode.GENERAL_ERROR, txid)
        return codec.encode_operation_response(ResponseCode.OPERATION_NOT_SUPPORTED, txid)

    def _is_nikon(self) -> bool:
        return "nikon" in self.config.manufacturer.lower()


class DigitalTwinTransport:
    """Transport connected to a DigitalTwinCamera through the twin network."""

    def __init__(self, network: DigitalTwinTransportFactory) -> None:
        self._network = network
        self._camera: DigitalTwinCamera | None = None
        self._inbox = bytearray()
        self.sent: list[bytes] = []

    @property
    def is_connected(self) -> bool:
        return self._camera is not None

    @property
    def camera(self) -> DigitalTwinCamera | None:
        return self._camera

    def connect(self, host: str, port: int, timeout: float) -> None:
        camera = self._network.camera_at(host, port)
        if camera is None or not camera.config.reachable:
            raise ConnectionRefusedError(f"No simulated camera at {host}:{port}")
        self._camera = camera
        self._inbox.clear()

    def sendall(self, data: bytes) -> None:
        camera = self._camera
        if camera is None or not camera.config.reachable:
            raise ConnectionError("Simulated connection is closed")
        self.sent.append(bytes(data))
        try:
            self._inbox += camera.handle(data)
        except ProtocolMismatchError as e:
            logger.warning("Twin received malformed frame", error=str(e))

    def recv_exactly(self, size: int, timeout: float | None) -> bytes:
        if self._camera is None:
            raise ConnectionError("Simulated connection is closed")
        if len(self._inbox) < size:
            raise TimeoutError(f"Simulated camera sent nothing within {timeout}s")
        chunk = bytes(self._inbox[:size])
        del self._inbox[:size]
        return chunk

    def close(self) -> None:
        self._camera = None
        self._inbox.clear()


class DigitalTwinTransportFactory:
    """The simulated network: cameras by address, plus transport creation.

    Attributes:
        transports: Every transport created, for inspection in tests.
    """

    def __init__(self, cameras: list[DigitalTwinCamera] | None = None) -> None:
        self._cameras: dict[str, DigitalTwinCamera] = {}
        self.transports: list[DigitalTwinTransport] = []
        for camera in cameras or ():
            self.add_camera(camera)

    @property
    def cameras(self) -> list[DigitalTwinCamera]:
        return list(self._cameras.values())

    def add_camera(self, camera: DigitalTwinCamera) -> None:
        self._cameras[camera.config.ip_address] = camera

    def remove_camera(self, ip_address: str) -> None:
        self._cameras.pop(ip_address, None)

    def move_camera(self, old_ip: str, new_ip: str) -> None:
        """Simulate the camera being handed a new address."""
        camera = self._cameras.pop(old_ip)
        camera.config.ip_address = new_ip
        self._cameras[new_ip] = camera

    def camera_at(self, host: str, port: int | None = None) -> DigitalTwinCamera | None:
        camera = self._cameras.get(host)
        if camera is None or (port is not None and camera.config.port != port):
            return None
        return camera

    def create(self) -> DigitalTwinTransport:
        transport = DigitalTwinTransport(self)
        self.transports.append(transport)
        return transport

    def is_reachable(self, host: str, port: int, timeout: float) -> bool:
        camera = self.camera_at(host, port)
        return camera is not None and camera.config.reachable


class DigitalTwinCaptureLibrary:
    """NativeCaptureLibrary that attaches to simulated cameras.

    Attributes:
        calls: Method names in call order.
    """

    def __init__(self, network: DigitalTwinTransportFactory) -> None:
        self._network = network
        self._attached: DigitalTwinCamera | None = None
        self.calls: list[str] = []

    @property
    def attached(self) -> DigitalTwinCamera | None:
        return self._attached

    def _live(self, ip: str, port: int) -> DigitalTwinCamera | None:
        camera = self._network.camera_at(ip, port)
        if camera is None or not camera.config.reachable:
            return None
        return camera

    def init_for_ap_mode(self, ip: str, port: int) -> str:
        self.calls.append("init_for_ap_mode")
        camera = self._live(ip, port)
        if camera is None:
            return f"GP_ERROR_IO: no camera at {ip}:{port}"
        if not camera.config.native_attach:
            return "GP_ERROR: camera refused attach"
        self._attached = camera
        return "GP_OK"

    def init_with_ptpip(self, ip: str, port: int) -> str:
        self.calls.append("init_with_ptpip")
        camera = self._live(ip, port)
        if camera is None:
            return f"GP_ERROR_IO: no camera at {ip}:{port}"
        if not camera.config.native_attach:
            return "GP_ERROR: camera refused attach"
        if camera.config.requires_pairing and not camera.paired:
            return "GP_ERROR: camera requires pairing"
        self._attached = camera
        return "GP_OK"

    def init_with_session_maintenance(self, ip: str, port: int) -> int:
        self.calls.append("init_with_session_maintenance")
        camera = self._live(ip, port)
        if camera is None:
            return GP_ERROR_IO
        self._attached = camera
        return 0

    def maintain_session_for_sta_mode(self) -> int:
        self.calls.append("maintain_session_for_sta_mode")
        camera = self._attached
        if camera is None or not camera.config.reachable:
            return GP_ERROR_IO
        return 0

    def capture_photo(self) -> int:
        self.calls.append("capture_photo")
        camera = self._attached
        if camera is None or not camera.config.reachable:
            return GP_ERROR_IO
        camera.captures += 1
        return 0

    def close_camera(self) -> None:
        self.calls.append("close_camera")
        self._attached = None


class DigitalTwinNetworkProbe:
    """NetworkProbe with settable answers.

    Reachability is answered by the twin network so probing agrees with
    what transports can connect to.
    """

    def __init__(
        self,
        network: DigitalTwinTransportFactory,
        wifi_connected: bool = True,
        ssid: str | None = "TwinNet",
        gateway: str | None = "192.168.1.1",
        dhcp_server: str | None = None,
        local_ip: str | None = "192.168.1.100",
    ) -> None:
        self.network = network
        self.wifi_connected = wifi_connected
        self.ssid = ssid
        self.gateway = gateway
        self.dhcp_server = dhcp_server
        self.local_ip = local_ip

    def is_wifi_connected(self) -> bool:
        return self.wifi_connected

    def current_ssid(self) -> str | None:
        return self.ssid if self.wifi_connected else None

    def gateway_ip(self) -> str | None:
        return self.gateway if self.wifi_connected else None

    def dhcp_server_ip(self) -> str | None:
        return self.dhcp_server if self.wifi_connected else None

    def local_ipv4(self) -> str | None:
        return self.local_ip if self.wifi_connected else None

    def is_reachable(self, ip: str, port: int, timeout: float) -> bool:
        return self.wifi_connected and self.network.is_reachable(ip, port, timeout)


class DigitalTwinServiceBrowser:
    """ServiceBrowser listing advertised, reachable simulated cameras."""

    def __init__(self, network: DigitalTwinTransportFactory) -> None:
        self.network = network

    async def browse(self, service_type: str, timeout: float) -> list[ServiceRecord]:
        await asyncio.sleep(0)
        return [
            ServiceRecord(
                name=camera.config.service_name,
                host=camera.config.ip_address,
                port=camera.config.port,
            )
            for camera in self.network.cameras
            if camera.config.service_name and camera.config.reachable
        ]
