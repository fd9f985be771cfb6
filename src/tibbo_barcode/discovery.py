"""Tibbo device discovery over UDP broadcast."""

from __future__ import annotations

import asyncio
import re
import socket
from typing import Dict, List, Optional, Tuple

from .config import Config
from .errors import DiscoveryTimeout
from .identifiers import DiscoveredDevice
from .logging import get_logger
from .metrics import record_discovery_error, record_discovery_response

# Replies look like "[000.036.119.087.182.061]A<TPP2W(G2)-LUA>/..." : the
# bracketed id, a one-letter status, then device details.
_REPLY = re.compile(r"^\s*(?P<id>\[[^\]]+\])(?P<status>[A-Za-z])?(?P<payload>.*)$", re.DOTALL)
_ANGLE_FIELD = re.compile(r"<([^>]*)>")
_GRACE_SECONDS = 2.0


def parse_reply(data: bytes, addr: Optional[Tuple[str, int]] = None) -> Optional[DiscoveredDevice]:
    """Parse a discovery reply datagram, or return ``None`` if it is not one."""

    try:
        message = data.decode("ascii").strip()
    except UnicodeDecodeError:
        return None
    match = _REPLY.match(message)
    if not match:
        return None
    payload = match.group("payload").strip()
    angle = _ANGLE_FIELD.search(payload)
    if angle:
        board = angle.group(1).strip()
    else:
        board = payload.split("/", 1)[0].strip()
    if not board:
        return None
    return DiscoveredDevice(
        board=board,
        raw_id=match.group("id"),
        ip=addr[0] if addr else None,
    )


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """Collect discovery replies for a single scan."""

    def __init__(self, probe: bytes) -> None:
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.logger = get_logger("tibbo.discovery.protocol")
        self._probe = probe
        self._devices: Dict[str, DiscoveredDevice] = {}

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]
        self.logger.debug(
            "Discovery transport ready",
            extra={"local": transport.get_extra_info("sockname")},
        )

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            self.logger.error(
                "Discovery transport error",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        self.transport = None

    def error_received(self, exc: Exception) -> None:
        self.logger.warning("Discovery socket error", extra={"error": str(exc)})

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        if data == self._probe:
            return
        device = parse_reply(data, addr)
        if device is None:
            record_discovery_error("unparseable")
            self.logger.debug("Ignoring unrecognised discovery reply", extra={"from": addr})
            return
        if device.raw_id in self._devices:
            self.logger.debug(
                "Ignoring duplicate discovery reply", extra={"raw_id": device.raw_id, "from": addr}
            )
            return
        self._devices[device.raw_id] = device
        record_discovery_response()
        self.logger.info(
            "Discovered device",
            extra={"raw_id": device.raw_id, "board": device.board, "ip": device.ip},
        )

    def send_probe(self, target: Tuple[str, int]) -> None:
        if not self.transport:
            self.logger.warning("Cannot send probe; transport not ready", extra={"target": target})
            return
        self.transport.sendto(self._probe, target)

    def devices(self) -> List[DiscoveredDevice]:
        return list(self._devices.values())


class TibboDiscovery:
    """Broadcast a probe and collect replies until the timeout elapses."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.logger = get_logger("tibbo.discovery")
        self._probe = config.discovery_probe_payload.encode("ascii")

    async def scan(self, timeout: Optional[float] = None) -> List[DiscoveredDevice]:
        """Return the devices that replied within ``timeout`` seconds.

        Raises :class:`DiscoveryTimeout` if the scan itself overruns its
        budget, and ``OSError`` if the socket cannot be opened.
        """

        timeout = self.config.scan_timeout if timeout is None else timeout
        if self.config.dry_run:
            self.logger.debug("Skipping discovery probes in dry-run mode")
            return []
        try:
            return await asyncio.wait_for(self._scan(timeout), timeout=timeout + _GRACE_SECONDS)
        except asyncio.TimeoutError as exc:
            raise DiscoveryTimeout(f"Discovery did not finish within {timeout + _GRACE_SECONDS}s") from exc

    async def _scan(self, timeout: float) -> List[DiscoveredDevice]:
        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(("", 0))
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self._probe),
            sock=sock,
        )
        try:
            target = (self.config.discovery_broadcast_address, self.config.discovery_port)
            self.logger.debug("Sending discovery probe", extra={"target": target})
            protocol.send_probe(target)
            await asyncio.sleep(timeout)
            devices = protocol.devices()
        finally:
            transport.close()
        self.logger.info("Discovery scan finished", extra={"devices": len(devices)})
        return devices
