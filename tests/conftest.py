from __future__ import annotations

import pytest

from rendezvous.relay.protocol import Envelope
from rendezvous.relay.registry import SessionRegistry
from rendezvous.relay.router import Router


class FakeClock:
    """Manually advanced clock for liveness tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingOutbox:
    """Outbox that records deliveries instead of touching sockets."""

    def __init__(self):
        self.sent: list[tuple[str, Envelope]] = []
        self.closed: list[str] = []
        self.offline: set[str] = set()

    def send(self, conn_id: str, envelope: Envelope) -> bool:
        if conn_id in self.offline:
            return False
        self.sent.append((conn_id, envelope))
        return True

    def close(self, conn_id: str) -> None:
        self.closed.append(conn_id)

    def to(self, conn_id: str, event: str | None = None) -> list[Envelope]:
        """Envelopes delivered to *conn_id*, optionally of one event kind."""
        return [
            env for cid, env in self.sent
            if cid == conn_id and (event is None or env.event == event)
        ]

    def events(self, event: str) -> list[tuple[str, Envelope]]:
        return [(cid, env) for cid, env in self.sent if env.event == event]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock) -> SessionRegistry:
    return SessionRegistry(clock=clock)


@pytest.fixture
def outbox() -> RecordingOutbox:
    return RecordingOutbox()


@pytest.fixture
def router(registry, outbox) -> Router:
    return Router(registry, outbox)
