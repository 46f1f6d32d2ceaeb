"""
UDP-based LAN discovery service.

Broadcasts a periodic beacon and listens for beacons from other WhisperDrop
instances on the same LAN. Peers are probed over TCP to measure latency
before they are offered as transfer targets.
"""

import asyncio
import ipaddress
import json
import logging
import socket
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable

from pydantic import ValidationError

from whisperdrop.config import (
    ADDRESS_PROBE_TARGET,
    ADDRESS_RESOLUTION_TIMEOUT,
    API_PORT,
    APP_ID,
    DEVICE_ID,
    DEVICE_NAME,
    DISCOVERY_HOST,
    DISCOVERY_INTERVAL,
    DISCOVERY_PORT,
    DISCOVERY_TIMEOUT,
    PEER_TIMEOUT,
    PLATFORM,
    PROBE_TIMEOUT,
)
from whisperdrop.discovery.models import (
    BeaconKind,
    Device,
    DeviceStatus,
    DiscoveryBeacon,
    ProbeResult,
)
from whisperdrop.errors import AddressResolutionError, DiscoveryTimeout, ProbeUnreachable

logger = logging.getLogger(__name__)

Prober = Callable[[Device], Awaitable[None]]
CandidateSource = Callable[[], Awaitable[str | None]]


async def tcp_probe(device: Device) -> None:
    """One round trip: open and close a TCP connection to the peer's API port."""
    _, writer = await asyncio.open_connection(device.ip, device.api_port)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def udp_route_candidate() -> str | None:
    """Address of the interface the kernel would route LAN traffic through.

    Connecting a UDP socket sends nothing; it only selects a source address.
    """
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(
        asyncio.DatagramProtocol, remote_addr=ADDRESS_PROBE_TARGET
    )
    try:
        return transport.get_extra_info("sockname")[0]
    finally:
        transport.close()


async def hostname_candidate() -> str | None:
    """First IPv4 address the local hostname resolves to, loopback last."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(socket.gethostname(), None, family=socket.AF_INET)
    addresses = [info[4][0] for info in infos]
    addresses.sort(key=lambda ip: ip.startswith("127."))
    return addresses[0] if addresses else None


DEFAULT_CANDIDATE_SOURCES: list[CandidateSource] = [udp_route_candidate, hostname_candidate]


def _as_ipv4(candidate: str | None) -> str | None:
    if not candidate:
        return None
    try:
        address = ipaddress.IPv4Address(candidate)
    except ValueError:
        return None
    if address.is_unspecified:
        return None
    return str(address)


async def resolve_local_address(
    timeout: float = ADDRESS_RESOLUTION_TIMEOUT,
    sources: Iterable[CandidateSource] | None = None,
) -> str:
    """
    Determine this device's own IPv4 address.

    Candidate sources are tried in order; the first valid IPv4 candidate wins.

    Raises:
        AddressResolutionError: no candidate was produced within ``timeout``.
    """
    sources = list(sources if sources is not None else DEFAULT_CANDIDATE_SOURCES)

    async def first_candidate() -> str:
        for source in sources:
            try:
                address = _as_ipv4(await source())
            except OSError as e:
                logger.debug(f"Address candidate source {source.__name__} failed: {e}")
                continue
            if address:
                return address
        raise AddressResolutionError("no address candidate was produced")

    try:
        return await asyncio.wait_for(first_candidate(), timeout)
    except asyncio.TimeoutError:
        raise AddressResolutionError(
            f"no address candidate within {timeout}s", data={"timeout": timeout}
        )


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving discovery beacons."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            beacon = DiscoveryBeacon(**json.loads(data.decode("utf-8")))
        except (ValueError, TypeError, ValidationError) as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return

        # Ignore our own beacons and other applications
        if beacon.device_id == self.service.device_id or beacon.app_id != APP_ID:
            return

        if beacon.kind == BeaconKind.QUERY:
            self.service.send_beacon(BeaconKind.ANNOUNCE, addr)

        try:
            self.service.observe(beacon, addr[0])
        except ValidationError as e:
            logger.debug(f"Ignoring beacon with invalid fields from {addr}: {e}")

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryService:
    """Registry of LAN devices, fed by UDP beacons and refreshed by probes."""

    def __init__(
        self,
        host: str = DISCOVERY_HOST,
        port: int = DISCOVERY_PORT,
        api_port: int = API_PORT,
        device_id: str = DEVICE_ID,
        device_name: str = DEVICE_NAME,
        prober: Prober = tcp_probe,
        broadcast_addresses: list[str] | None = None,
        candidate_sources: list[CandidateSource] | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._api_port = api_port
        self._devices: dict[str, Device] = {}
        self._prober = prober
        self._broadcast_addresses = broadcast_addresses
        self._candidate_sources = candidate_sources
        self._broadcast_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._on_peer_change: list = []  # callbacks: async def fn(event, device)
        self._scan_listeners: list[Callable[[Device], None]] = []
        self.device_id = device_id
        self.device_name = device_name

    @property
    def port(self) -> int:
        """The bound UDP port (differs from the requested one when it was 0)."""
        if self._transport:
            return self._transport.get_extra_info("sockname")[1]
        return self._port

    def on_peer_change(self, callback) -> None:
        """Register a callback for peer discovered/lost events."""
        self._on_peer_change.append(callback)

    async def start(self) -> None:
        """Start the discovery broadcaster and listener."""
        logger.info(f"Starting discovery on UDP {self._host}:{self._port}")

        loop = asyncio.get_running_loop()

        # SO_REUSEADDR must be set before binding so several instances
        # on one host can share the port
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        sock.bind((self._host, self._port))

        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport

        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Discovery service started on UDP port {self.port}")

    async def stop(self) -> None:
        """Stop the discovery service."""
        for task in (self._broadcast_task, self._cleanup_task):
            if task:
                task.cancel()
        if self._transport:
            self._transport.close()
            self._transport = None
        logger.info("Discovery service stopped")

    def get_devices(self) -> list[Device]:
        """Every known device, reachable or not."""
        return list(self._devices.values())

    def get_device(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def available_devices(self) -> list[Device]:
        """Devices that may be offered as transfer targets."""
        return [d for d in self._devices.values() if d.is_transfer_target]

    def observe(self, beacon: DiscoveryBeacon, ip_address: str) -> Device:
        """Add or refresh a device from a received beacon."""
        existing = self._devices.get(beacon.device_id)
        # A measured latency only stays valid for the same address
        latency = None
        if existing and existing.ip == ip_address and existing.status == DeviceStatus.ONLINE:
            latency = existing.latency_ms

        device = Device(
            id=beacon.device_id,
            name=beacon.device_name,
            ip=ip_address,
            api_port=beacon.api_port,
            status=DeviceStatus.ONLINE,
            last_seen_at=datetime.now(timezone.utc),
            latency_ms=latency,
        )
        self._devices[device.id] = device

        for listener in list(self._scan_listeners):
            listener(device)

        if existing is None:
            logger.info(f"Discovered peer: {device.name} ({device.ip})")
            self._emit("peer_discovered", device)
        return device

    async def discover(
        self, timeout: float = DISCOVERY_TIMEOUT, expected: int | None = None
    ) -> list[Device]:
        """
        Run one time-bounded scan.

        Sends a query beacon and collects every device heard during the
        window. Returns early once ``expected`` devices were seen, and never
        fails because of a silent or broken peer: on timeout, whatever was
        found is returned.
        """
        if self._transport is None:
            raise RuntimeError("Discovery service is not running")

        found: dict[str, Device] = {}
        enough = asyncio.Event()

        def collect(device: Device) -> None:
            found[device.id] = device
            if expected is not None and len(found) >= expected:
                enough.set()

        self._scan_listeners.append(collect)
        try:
            self.send_beacon(BeaconKind.QUERY)
            try:
                await asyncio.wait_for(enough.wait(), timeout)
            except asyncio.TimeoutError:
                if expected is not None:
                    logger.info(
                        f"{DiscoveryTimeout(f'found {len(found)}/{expected} devices in {timeout}s')}"
                    )
        finally:
            self._scan_listeners.remove(collect)

        return list(found.values())

    async def probe(self, device_id: str, timeout: float = PROBE_TIMEOUT) -> ProbeResult:
        """Measure one round trip to a device. Never raises for network failures."""
        device = self._devices.get(device_id)
        if device is None:
            logger.debug(f"Probe requested for unknown device {device_id}")
            return ProbeResult(device_id=device_id, reachable=False)

        started = time.monotonic()
        try:
            await asyncio.wait_for(self._prober(device), timeout)
        except Exception as e:
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e) or type(e).__name__
            logger.info(f"{ProbeUnreachable(f'{device.name} ({device.ip}): {reason}')}")
            self._update(device_id, status=DeviceStatus.UNREACHABLE, latency_ms=None)
            return ProbeResult(device_id=device_id, reachable=False)

        latency_ms = max(0, round((time.monotonic() - started) * 1000))
        self._update(device_id, status=DeviceStatus.ONLINE, latency_ms=latency_ms)
        logger.debug(f"Probed {device.name} ({device.ip}): {latency_ms} ms")
        return ProbeResult(device_id=device_id, reachable=True, latency_ms=latency_ms)

    async def probe_all(
        self,
        device_ids: Iterable[str],
        timeout: float = PROBE_TIMEOUT,
        batch_timeout: float | None = None,
    ) -> list[ProbeResult]:
        """
        Probe many devices concurrently.

        One task per device; a slow or failing device affects only its own
        result. Tasks still running when ``batch_timeout`` elapses are
        cancelled and reported unreachable.
        """
        device_ids = list(device_ids)
        if not device_ids:
            return []
        if batch_timeout is None:
            batch_timeout = timeout + 0.5

        tasks = {
            device_id: asyncio.create_task(self.probe(device_id, timeout))
            for device_id in device_ids
        }
        _, pending = await asyncio.wait(tasks.values(), timeout=batch_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for device_id, task in tasks.items():
            if task.cancelled() or task.exception() is not None:
                self._update(device_id, status=DeviceStatus.UNREACHABLE, latency_ms=None)
                results.append(ProbeResult(device_id=device_id, reachable=False))
            else:
                results.append(task.result())
        return results

    async def scan(
        self,
        timeout: float = DISCOVERY_TIMEOUT,
        probe_timeout: float = PROBE_TIMEOUT,
        expected: int | None = None,
    ) -> list[Device]:
        """Discover, probe everything found, and return the reachable devices."""
        found = await self.discover(timeout, expected=expected)
        results = await self.probe_all([d.id for d in found], probe_timeout)
        reachable = []
        for result in results:
            device = self._devices.get(result.device_id)
            if result.reachable and device is not None:
                reachable.append(device)
        logger.info(f"Scan finished: {len(reachable)}/{len(found)} devices reachable")
        return reachable

    async def resolve_local_address(
        self, timeout: float = ADDRESS_RESOLUTION_TIMEOUT
    ) -> str:
        return await resolve_local_address(timeout, self._candidate_sources)

    def send_beacon(
        self, kind: BeaconKind = BeaconKind.ANNOUNCE, addr: tuple[str, int] | None = None
    ) -> None:
        """Send a beacon to ``addr``, or broadcast it when ``addr`` is None."""
        if not self._transport:
            return

        beacon = DiscoveryBeacon(
            app_id=APP_ID,
            kind=kind,
            device_id=self.device_id,
            device_name=self.device_name,
            api_port=self._api_port,
            platform=PLATFORM,
        )
        data = json.dumps(beacon.model_dump(mode="json")).encode("utf-8")

        targets = [addr] if addr else [(ip, self.port) for ip in self._collect_broadcast_addresses()]
        for target in targets:
            try:
                self._transport.sendto(data, target)
            except OSError as e:
                # Some interfaces do not support broadcast
                logger.debug(f"Beacon to {target} failed: {e}")

    def _collect_broadcast_addresses(self) -> set[str]:
        if self._broadcast_addresses is not None:
            return set(self._broadcast_addresses)

        bcast_ips = {"255.255.255.255"}
        try:
            _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        except OSError as e:
            logger.debug(f"Error resolving local IPs: {e}")
            return bcast_ips
        for ip in ips:
            if not ip.startswith("127."):
                # Assume /24 subnets
                network = ipaddress.IPv4Network(f"{ip}/24", strict=False)
                bcast_ips.add(str(network.broadcast_address))
        return bcast_ips

    def _update(self, device_id: str, **changes) -> None:
        device = self._devices.get(device_id)
        if device is not None:
            self._devices[device_id] = device.model_copy(update=changes)

    def _emit(self, event: str, device: Device) -> None:
        for cb in self._on_peer_change:
            asyncio.ensure_future(cb(event, device))

    async def _broadcast_loop(self) -> None:
        """Periodically send a discovery beacon."""
        while True:
            try:
                self.send_beacon(BeaconKind.ANNOUNCE)
            except Exception as e:
                logger.warning(f"Broadcast failed: {e}")
            await asyncio.sleep(DISCOVERY_INTERVAL)

    async def _cleanup_loop(self) -> None:
        """Remove stale peers that haven't been seen recently."""
        while True:
            await asyncio.sleep(PEER_TIMEOUT)
            now = datetime.now(timezone.utc)
            stale = [
                device for device in self._devices.values()
                if (now - device.last_seen_at).total_seconds() > PEER_TIMEOUT
            ]
            for device in stale:
                del self._devices[device.id]
                logger.info(f"Peer lost: {device.name} ({device.ip})")
                self._emit("peer_lost", device)
