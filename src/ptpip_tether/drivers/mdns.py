"""mDNS service browsing for PTP/IP cameras on shared networks.

Cameras in station mode advertise ``_ptp._tcp``. The discovery service asks
a ServiceBrowser for resolved records; ZeroconfServiceBrowser does the real
multicast work with python-zeroconf.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from ptpip_tether.observability import get_logger

logger = get_logger(__name__)

#: Per-service resolution deadline.
RESOLVE_TIMEOUT_MS = 3000


@dataclass(frozen=True)
class ServiceRecord:
    """A resolved mDNS service instance.

    Attributes:
        name: Instance name without the service type suffix
            (e.g. ``"Nikon_Z_8_3001234"``).
        host: First IPv4 address of the instance.
        port: Advertised TCP port.
        properties: Decoded TXT record entries.
    """

    name: str
    host: str
    port: int
    properties: dict[str, str] = field(default_factory=dict, compare=False)


@runtime_checkable
class ServiceBrowser(Protocol):  # pragma: no cover
    """Protocol for one-shot mDNS browsing."""

    async def browse(self, service_type: str, timeout: float) -> list[ServiceRecord]:
        """Browse for ``service_type`` and return the resolved instances.

        Must return within ``timeout`` seconds with whatever was resolved by
        then. Must not raise.
        """
        ...


def instance_name(full_name: str, service_type: str) -> str:
    """Strip the service type suffix from a fully qualified instance name.

    Example:
        >>> instance_name("Nikon_Z_8_3001234._ptp._tcp.local.", "_ptp._tcp.local.")
        'Nikon_Z_8_3001234'
    """
    suffix = "." + service_type
    if full_name.endswith(suffix):
        return full_name[: -len(suffix)]
    return full_name


def _decode_properties(info: AsyncServiceInfo) -> dict[str, str]:
    decoded = {}
    for key, value in (info.properties or {}).items():
        if key is None:
            continue
        decoded[key.decode("utf-8", "replace")] = (
            value.decode("utf-8", "replace") if value is not None else ""
        )
    return decoded


class ZeroconfServiceBrowser:
    """ServiceBrowser backed by zeroconf's asyncio API.

    Browsing finishes as soon as every instance seen so far has been resolved
    (or failed to resolve), or when ``timeout`` expires, whichever comes
    first. Records resolved before the deadline are always returned.
    """

    def __init__(self, resolve_timeout_ms: int = RESOLVE_TIMEOUT_MS) -> None:
        self.resolve_timeout_ms = resolve_timeout_ms

    async def browse(self, service_type: str, timeout: float) -> list[ServiceRecord]:
        loop = asyncio.get_running_loop()
        records: dict[str, ServiceRecord] = {}
        seen: set[str] = set()
        pending: set[asyncio.Task[None]] = set()
        all_resolved = asyncio.Event()

        try:
            aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        except OSError as e:
            logger.error("Could not start mDNS", error=str(e))
            return []

        async def resolve(stype: str, name: str) -> None:
            info = AsyncServiceInfo(stype, name)
            if not await info.async_request(aiozc.zeroconf, self.resolve_timeout_ms):
                logger.warning("mDNS resolve failed", service=name)
                return
            addresses = info.parsed_addresses(IPVersion.V4Only)
            if not addresses or not info.port:
                logger.warning("mDNS record without address", service=name)
                return
            record = ServiceRecord(
                name=instance_name(name, stype),
                host=addresses[0],
                port=info.port,
                properties=_decode_properties(info),
            )
            records[name] = record
            logger.debug("mDNS service resolved", service=record.name, host=record.host)

        def on_resolved(task: asyncio.Task[None]) -> None:
            pending.discard(task)
            if not task.cancelled() and task.exception() is not None:
                logger.warning("mDNS resolve error", error=str(task.exception()))
            if not pending:
                all_resolved.set()

        def schedule(stype: str, name: str) -> None:
            if name in seen:
                return
            seen.add(name)
            all_resolved.clear()
            task = loop.create_task(resolve(stype, name))
            pending.add(task)
            task.add_done_callback(on_resolved)

        # zeroconf >= 0.132 passes handler arguments as keywords only.
        def on_state_change(**kwargs: object) -> None:
            if kwargs.get("state_change") is not ServiceStateChange.Added:
                return
            stype = str(kwargs.get("service_type") or service_type)
            name = str(kwargs.get("name", ""))
            loop.call_soon_threadsafe(schedule, stype, name)

        browser = AsyncServiceBrowser(
            aiozc.zeroconf, service_type, handlers=[on_state_change]
        )
        try:
            await asyncio.wait_for(all_resolved.wait(), timeout)
        except TimeoutError:
            logger.debug("mDNS browse window elapsed", found=len(seen), resolved=len(records))
        finally:
            for task in list(pending):
                task.cancel()
            await browser.async_cancel()
            await aiozc.async_close()

        return list(records.values())
