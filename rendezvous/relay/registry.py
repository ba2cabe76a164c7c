"""Session registry and group index.

Tracks every live connection and which discovery group it belongs to.

Architecture
------------
- ``DeviceProfile`` is the self-description a device sends after connecting.
- ``DeviceRecord`` holds identity, group and liveness for one connection.
- ``SessionRegistry`` owns two structures that must always agree:

  - ``_devices``: connection id → ``DeviceRecord``
  - ``_groups``:  group key → ids in that group (join order)

Consistency
-----------
Every method is synchronous.  On a single asyncio loop that makes each call
one indivisible step, so no handler can observe the registry and the group
index out of sync.  Callers never get the internal containers, only copies.

Usage
-----
>>> registry = SessionRegistry()
>>> reg = registry.register("abc", "192.168.1.10")
>>> reg.group_key
'LAN-192.168'
>>> registry.touch("abc")
>>> registry.deregister("abc")
'LAN-192.168'
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from rendezvous.relay.network import group_key as classify


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class DeviceProfile:
    """What a device says about itself (all fields opaque to the server)."""
    type: Any = None
    icon: Any = None
    name: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "icon": self.icon, "name": self.name}


@dataclass
class DeviceRecord:
    """Registry entry for one live connection."""
    id: str
    group_key: str
    last_seen: float                       # Unix timestamp (seconds)
    address: str = ""                      # Observed peer address, for logs only
    profile: DeviceProfile | None = None   # Unset until the first device-info

    def to_dict(self) -> dict[str, Any]:
        """Roster representation sent to other devices."""
        d: dict[str, Any] = {
            "id": self.id,
            "lastSeen": int(self.last_seen * 1000),
            "groupKey": self.group_key,
        }
        if self.profile is not None:
            d.update(self.profile.to_dict())
        return d


@dataclass
class Registration:
    """Result of ``SessionRegistry.register``."""
    record: DeviceRecord
    existing_peers: list[DeviceRecord] = field(default_factory=list)

    @property
    def group_key(self) -> str:
        return self.record.group_key


# Callback type for registry events
RegistryEventCallback = Callable[[DeviceRecord, str], Any]
# event types: "registered", "updated", "removed"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SessionRegistry:
    """Authoritative map of live connections, partitioned into groups.

    Parameters
    ----------
    classifier:
        Maps a peer address to a group key (default: ``network.group_key``).
    clock:
        Returns the current time in seconds (default ``time.time``).
    """

    def __init__(
        self,
        classifier: Callable[[str], str] = classify,
        clock: Callable[[], float] = time.time,
    ):
        self._classify = classifier
        self._clock = clock
        self._devices: dict[str, DeviceRecord] = {}
        # dict-as-ordered-set so rosters come out in join order
        self._groups: dict[str, dict[str, None]] = {}
        self._event_callbacks: list[RegistryEventCallback] = []

    # -- event system --------------------------------------------------------

    def on_event(self, callback: RegistryEventCallback) -> None:
        """Register a callback for registry events.

        The callback receives ``(record, event_type)`` where event_type is
        one of ``"registered"``, ``"updated"``, ``"removed"``.
        """
        self._event_callbacks.append(callback)

    def _fire_event(self, record: DeviceRecord, event: str) -> None:
        for cb in self._event_callbacks:
            try:
                cb(record, event)
            except Exception as exc:
                logger.error("[Relay/Registry] event callback error: {}", exc)

    # -- mutations -----------------------------------------------------------

    def register(self, conn_id: str, address: str) -> Registration:
        """Admit a new connection.

        A stale record under the same id is dropped first.  Returns the new
        record plus the other members of its group, oldest first.
        """
        if conn_id in self._devices:
            logger.debug("[Relay/Registry] discarding stale record for {}", conn_id)
            self._remove(conn_id)

        key = self._classify(address)
        record = DeviceRecord(
            id=conn_id,
            group_key=key,
            last_seen=self._clock(),
            address=address,
        )
        members = self._groups.setdefault(key, {})
        peers = [self._devices[pid] for pid in members]
        members[conn_id] = None
        self._devices[conn_id] = record

        self._fire_event(record, "registered")
        logger.info(
            "[Relay/Registry] registered {} from {} in group {} ({} peers)",
            conn_id, address, key, len(peers),
        )
        return Registration(record=record, existing_peers=peers)

    def touch(self, conn_id: str) -> None:
        """Refresh liveness.  Unknown ids are ignored (heartbeat lost a race)."""
        record = self._devices.get(conn_id)
        if record is not None:
            record.last_seen = self._clock()

    def update_profile(
        self,
        conn_id: str,
        type: Any = None,
        icon: Any = None,
        name: Any = None,
    ) -> DeviceRecord | None:
        """Replace a device's profile.  Returns ``None`` for unknown ids."""
        record = self._devices.get(conn_id)
        if record is None:
            return None
        record.profile = DeviceProfile(type=type, icon=icon, name=name)
        self._fire_event(record, "updated")
        logger.debug("[Relay/Registry] profile for {}: {}", conn_id, record.profile)
        return record

    def deregister(self, conn_id: str) -> str | None:
        """Remove a connection.  Returns its former group key, or ``None``."""
        record = self._remove(conn_id)
        if record is None:
            return None
        self._fire_event(record, "removed")
        logger.info(
            "[Relay/Registry] removed {} from group {}", conn_id, record.group_key,
        )
        return record.group_key

    def _remove(self, conn_id: str) -> DeviceRecord | None:
        record = self._devices.pop(conn_id, None)
        if record is None:
            return None
        members = self._groups.get(record.group_key)
        if members is not None:
            members.pop(conn_id, None)
            if not members:
                del self._groups[record.group_key]
        return record

    # -- queries -------------------------------------------------------------

    def __contains__(self, conn_id: object) -> bool:
        return conn_id in self._devices

    def get_device(self, conn_id: str) -> DeviceRecord | None:
        return self._devices.get(conn_id)

    def group_of(self, conn_id: str) -> str | None:
        record = self._devices.get(conn_id)
        return record.group_key if record is not None else None

    def group_members(self, key: str) -> list[str]:
        """Snapshot of the ids in group *key* (empty list if none)."""
        return list(self._groups.get(key, ()))

    def snapshot_ids(self) -> list[str]:
        return list(self._devices)

    def stale_ids(self, timeout: float) -> list[str]:
        """Ids whose last heartbeat is more than *timeout* seconds old."""
        now = self._clock()
        return [
            conn_id for conn_id, record in list(self._devices.items())
            if now - record.last_seen > timeout
        ]

    def groups(self) -> dict[str, int]:
        """Group key → member count."""
        return {key: len(members) for key, members in self._groups.items()}

    @property
    def device_count(self) -> int:
        return len(self._devices)

    @property
    def group_count(self) -> int:
        return len(self._groups)
