"""Rendezvous service: owns the registry, router, sweeper and transport.

This is the only object the outside world needs::

    service = RendezvousService(RendezvousConfig())
    await service.start()
    ...
    await service.stop()
"""

from __future__ import annotations

import socket
import time
from typing import Any

from loguru import logger

from rendezvous.config.schema import RendezvousConfig
from rendezvous.relay.registry import DeviceRecord, SessionRegistry
from rendezvous.relay.router import Router
from rendezvous.relay.sweeper import LivenessSweeper
from rendezvous.relay.transport import RelayTransport


class RendezvousService:
    """Wires the relay components together and runs them."""

    def __init__(
        self,
        config: RendezvousConfig | None = None,
        *,
        registry: SessionRegistry | None = None,
    ):
        self.config = config or RendezvousConfig()
        self.registry = registry or SessionRegistry()
        self.transport = RelayTransport(
            host=self.config.host,
            port=self.config.port,
            max_message_size=self.config.max_message_size,
            trust_forwarded_for=self.config.trust_forwarded_for,
            status_fn=self.status,
        )
        self.router = Router(
            self.registry, self.transport, close_evicted=self.config.close_evicted,
        )
        self.transport.handler = self.router
        self.sweeper = LivenessSweeper(
            self.router,
            interval=self.config.sweep_interval,
            timeout=self.config.liveness_timeout,
        )
        self._started_at: float | None = None
        self.sessions_total = 0
        self.registry.on_event(self._on_registry_event)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Start listening, then start sweeping."""
        await self.transport.start()
        self.sweeper.start()
        self._started_at = time.time()
        port = self.transport.bound_port
        logger.info("[Relay/Service] server running at:")
        logger.info("[Relay/Service] - local:   ws://localhost:{}", port)
        logger.info("[Relay/Service] - network: ws://{}:{}", local_ip(), port)

    async def stop(self) -> None:
        # Sweeper first so it cannot evict while sockets are closing.
        self.sweeper.stop()
        try:
            await self.transport.stop()
        except Exception as exc:
            logger.error("[Relay/Service] transport stop error: {}", exc)
        self._started_at = None
        logger.info("[Relay/Service] stopped")

    @property
    def running(self) -> bool:
        return self._started_at is not None

    def _on_registry_event(self, record: DeviceRecord, event: str) -> None:
        if event == "registered":
            self.sessions_total += 1

    # -- status --------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Counts served at ``/api/status`` (no device ids).

        ``sessions`` is the number of registrations since the service was
        created.
        """
        uptime = time.time() - self._started_at if self._started_at else 0.0
        return {
            "devices": self.registry.device_count,
            "groups": self.registry.group_count,
            "connections": self.transport.connection_count,
            "sessions": self.sessions_total,
            "uptime": round(uptime, 1),
        }


def local_ip() -> str:
    """Return this host's LAN IPv4 address, or ``"localhost"``.

    Uses the UDP connect trick: no packet is sent, the kernel just picks the
    outbound interface.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return "localhost"
    finally:
        sock.close()
