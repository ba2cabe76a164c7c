"""Event routing between connected devices.

The router turns inbound transport events into registry updates and outbound
envelopes.  It keeps no state of its own: every decision is a registry lookup.

Two delivery shapes exist:

- **Direct relay**: one sender, one target id.  The payload is forwarded
  unchanged with ``fromId`` added.  Unknown targets are dropped silently.
  The target does *not* have to be in the sender's group.
- **Group broadcast**: presence notices (join, leave, profile update) go to
  the sender's group only, iterating a snapshot of the member list.

Every handler is synchronous.  Outbound delivery only enqueues on the
transport, so each inbound event is one uninterrupted step on the loop.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol

from loguru import logger

from rendezvous.relay.protocol import CHUNK_FIELD, Envelope, EventKind
from rendezvous.relay.registry import SessionRegistry


class Outbox(Protocol):
    """What the router needs from the transport."""

    def send(self, conn_id: str, envelope: Envelope) -> bool: ...

    def close(self, conn_id: str) -> None: ...


class MalformedPayload(ValueError):
    """Inbound payload is missing routing fields or has the wrong shape."""


# inbound event → (outbound event, payload fields forwarded to the target)
RELAY_EVENTS: dict[str, tuple[EventKind, tuple[str, ...]]] = {
    EventKind.SEND_MESSAGE: (EventKind.MESSAGE, ("message",)),
    EventKind.FILE_TRANSFER_REQUEST: (
        EventKind.FILE_TRANSFER_REQUEST, ("fileName", "fileSize", "transferId"),
    ),
    EventKind.FILE_TRANSFER_RESPONSE: (
        EventKind.FILE_TRANSFER_RESPONSE, ("transferId", "accepted"),
    ),
    EventKind.FILE_DATA: (
        EventKind.FILE_DATA,
        (CHUNK_FIELD, "fileName", "transferId", "offset", "totalSize"),
    ),
    EventKind.CANCEL_TRANSFER: (EventKind.CANCEL_TRANSFER, ("transferId",)),
    EventKind.SIGNAL: (EventKind.SIGNAL, ("signal",)),
    EventKind.P2P_FAILED: (EventKind.P2P_FAILED, ("transferId",)),
}

# Transfer control is logged at INFO; chat, chunks and signalling at DEBUG.
_LOUD_EVENTS = frozenset({
    EventKind.FILE_TRANSFER_REQUEST,
    EventKind.FILE_TRANSFER_RESPONSE,
    EventKind.CANCEL_TRANSFER,
    EventKind.P2P_FAILED,
})


def _chunk_size(chunk: Any) -> int | str:
    try:
        return len(chunk)
    except TypeError:
        return "unknown"


class Router:
    """Dispatches transport events against a ``SessionRegistry``.

    Parameters
    ----------
    registry:
        The session registry (shared with the sweeper).
    outbox:
        Transport used for delivery; ``send`` must not block.
    close_evicted:
        Ask the transport to close a connection after it is evicted.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        outbox: Outbox,
        *,
        close_evicted: bool = True,
    ):
        self.registry = registry
        self.outbox = outbox
        self.close_evicted = close_evicted
        self._handlers: dict[str, Callable[[str, dict[str, Any]], None]] = {
            EventKind.DEVICE_INFO: self._on_device_info,
            EventKind.HEARTBEAT: self._on_heartbeat,
        }

    # -- delivery primitives -------------------------------------------------

    def relay_to_target(
        self,
        kind: str,
        sender_id: str,
        target_id: str,
        payload: dict[str, Any],
    ) -> bool:
        """Forward *payload* to one connection, tagged with the sender's id.

        Returns ``False`` when the target is not registered.  The sender is
        never told either way.
        """
        if target_id not in self.registry:
            logger.debug(
                "[Relay/Router] dropping {} from {}: target {} not registered",
                kind, sender_id, target_id,
            )
            return False
        data = {"fromId": sender_id, **payload}
        return self.outbox.send(target_id, Envelope(event=kind, data=data))

    def broadcast_to_group(
        self,
        group_key: str,
        exclude_id: str | None,
        kind: str,
        payload: dict[str, Any],
    ) -> int:
        """Send *payload* to every member of *group_key* except *exclude_id*."""
        delivered = 0
        for member in self.registry.group_members(group_key):
            if member == exclude_id:
                continue
            if self.outbox.send(member, Envelope(event=kind, data=dict(payload))):
                delivered += 1
        return delivered

    # -- connection lifecycle ------------------------------------------------

    def handle_connect(self, conn_id: str, address: str) -> str:
        """Register a new connection, send it its roster, announce it.

        Returns the connection's group key.
        """
        reg = self.registry.register(conn_id, address)
        self.outbox.send(conn_id, Envelope(
            event=EventKind.DEVICE_INFO,
            data={
                "id": conn_id,
                "devices": [peer.to_dict() for peer in reg.existing_peers],
            },
        ))
        self.broadcast_to_group(
            reg.group_key, conn_id, EventKind.DEVICE_JOINED, {"id": conn_id},
        )
        return reg.group_key

    def handle_disconnect(self, conn_id: str) -> bool:
        """Transport reported the connection gone.  Safe to call twice."""
        removed = self._terminate(conn_id)
        if removed:
            logger.info("[Relay/Router] device {} disconnected", conn_id)
        return removed

    def evict(self, conn_id: str) -> bool:
        """Remove a connection whose heartbeat lapsed."""
        removed = self._terminate(conn_id)
        if removed:
            logger.info("[Relay/Router] device {} evicted (heartbeat timeout)", conn_id)
            if self.close_evicted:
                self.outbox.close(conn_id)
        return removed

    def _terminate(self, conn_id: str) -> bool:
        group = self.registry.deregister(conn_id)
        if group is None:
            return False
        self.broadcast_to_group(group, conn_id, EventKind.DEVICE_LEFT, {"id": conn_id})
        return True

    # -- inbound events ------------------------------------------------------

    def handle_event(self, conn_id: str, event: str, data: Any = None) -> None:
        """Dispatch one inbound event from *conn_id*.

        Events from connections that are not registered (evicted, or never
        admitted) are ignored.
        """
        if conn_id not in self.registry:
            logger.debug("[Relay/Router] ignoring {} from unregistered {}", event, conn_id)
            return

        if data is None:
            data = {}

        handler = self._handlers.get(event)
        if handler is not None:
            handler(conn_id, data)
            return

        route = RELAY_EVENTS.get(event)
        if route is None:
            logger.warning("[Relay/Router] unknown event {!r} from {}", event, conn_id)
            return

        try:
            target_id, payload = self._relay_fields(data, route[1])
        except MalformedPayload as exc:
            if event == EventKind.FILE_DATA:
                logger.error("[Relay/Router] bad file-data from {}: {}", conn_id, exc)
            else:
                logger.warning("[Relay/Router] bad {} from {}: {}", event, conn_id, exc)
            return

        self._log_relay(event, conn_id, target_id, payload)
        self.relay_to_target(route[0], conn_id, target_id, payload)

    def _on_heartbeat(self, conn_id: str, data: dict[str, Any]) -> None:
        self.registry.touch(conn_id)

    def _on_device_info(self, conn_id: str, data: dict[str, Any]) -> None:
        if not isinstance(data, dict):
            logger.warning("[Relay/Router] bad device-info from {}: not an object", conn_id)
            return
        record = self.registry.update_profile(
            conn_id, data.get("type"), data.get("icon"), data.get("name"),
        )
        if record is None:
            return
        # The sender is included: clients use the echo as confirmation.
        self.broadcast_to_group(
            record.group_key, None, EventKind.DEVICE_INFO_UPDATE,
            {"id": conn_id, **record.profile.to_dict()},
        )

    @staticmethod
    def _relay_fields(
        data: Any, fields: tuple[str, ...],
    ) -> tuple[str, dict[str, Any]]:
        if not isinstance(data, dict):
            raise MalformedPayload(f"payload must be an object, got {type(data).__name__}")
        target_id = data.get("targetId")
        if not isinstance(target_id, str) or not target_id:
            raise MalformedPayload("missing targetId")
        return target_id, {name: data[name] for name in fields if name in data}

    @staticmethod
    def _log_relay(event: str, sender: str, target: str, payload: dict[str, Any]) -> None:
        if event == EventKind.FILE_DATA:
            logger.debug(
                "[Relay/Router] file-data {} -> {}: {} offset={} size={} id={}",
                sender, target, payload.get("fileName"), payload.get("offset"),
                _chunk_size(payload.get(CHUNK_FIELD)), payload.get("transferId"),
            )
        elif event in _LOUD_EVENTS:
            logger.info(
                "[Relay/Router] {} {} -> {} id={}",
                event, sender, target, payload.get("transferId"),
            )
        else:
            logger.debug("[Relay/Router] {} {} -> {}", event, sender, target)
