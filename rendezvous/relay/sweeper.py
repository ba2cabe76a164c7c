"""Liveness sweeper: periodic eviction of silent sessions.

Devices send a ``heartbeat`` event every few seconds.  The sweeper wakes up
every ``interval`` seconds, snapshots the registered ids, and evicts every
session whose last heartbeat is older than ``timeout``.  Eviction goes
through ``Router.evict`` so the former group gets a ``device-left`` notice.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from loguru import logger

from rendezvous.relay.router import Router

DEFAULT_SWEEP_INTERVAL = 10.0
DEFAULT_LIVENESS_TIMEOUT = 30.0


class LivenessSweeper:
    """Evicts sessions whose heartbeat lapsed, on a fixed interval.

    Parameters
    ----------
    router:
        Router whose registry is swept and which broadcasts the leave notices.
    interval:
        Seconds between sweeps.
    timeout:
        Seconds of silence after which a session is evicted.
    """

    def __init__(
        self,
        router: Router,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        timeout: float = DEFAULT_LIVENESS_TIMEOUT,
    ) -> None:
        self.router = router
        self.interval = interval
        self.timeout = timeout
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self) -> list[str]:
        """Run one pass now.  Returns the evicted ids."""
        evicted: list[str] = []
        # stale_ids() is a snapshot; evict() mutates the registry
        for conn_id in self.router.registry.stale_ids(self.timeout):
            if self.router.evict(conn_id):
                evicted.append(conn_id)
        if evicted:
            logger.info(
                "[Relay/Sweeper] evicted {} stale session(s), {} remaining",
                len(evicted), self.router.registry.device_count,
            )
        return evicted

    async def _loop(self) -> None:
        logger.debug(
            "[Relay/Sweeper] started (interval={:.0f}s timeout={:.0f}s)",
            self.interval, self.timeout,
        )
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[Relay/Sweeper] sweep error: {}", exc)

    def start(self) -> None:
        """Start sweeping in a background task.  No-op if already running."""
        if not self.running:
            self._task = spawn_logged(self._loop(), name="liveness-sweeper")

    def stop(self) -> None:
        """Cancel the sweep task.  Safe to call when not running."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug("[Relay/Sweeper] stopped")
        self._task = None


def spawn_logged(coro: Awaitable[Any], *, name: str) -> asyncio.Task:
    """Run *coro* as a background task whose crash is logged with its name.

    The exception still propagates to anyone awaiting the task.
    """

    async def _run() -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.opt(exception=exc).error("[Relay] {} crashed", name)
            raise

    return asyncio.create_task(_run(), name=name)
