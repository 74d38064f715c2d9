"""Publish/subscribe channel for site settings changes.

``SettingsStore`` publishes one ``ConfigChange`` per changed key and the
sync coordinator subscribes to react (verify credentials, upload, run a
treatments sync).  Changes to the same key that arrive within the debounce
window collapse into a single delivery carrying the last value.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger("nightscout.events")


class SettingKey(str, Enum):
    enabled = "enabled"
    is_master = "is_master"
    url = "url"
    port = "port"
    api_secret = "api_secret"
    token = "token"
    use_schedule = "use_schedule"
    schedule = "schedule"
    upload_sensor_start = "upload_sensor_start"
    treatments_sync_required = "treatments_sync_required"


@dataclass(frozen=True)
class ConfigChange:
    key: SettingKey
    value: Any = None


Handler = Callable[[ConfigChange], Awaitable[None]]


class ConfigEvents:
    """Debounced async fan-out of ``ConfigChange`` events."""

    def __init__(self, debounce_ms: int = 200) -> None:
        self._debounce = debounce_ms / 1000
        self._handlers: list[Handler] = []
        self._pending: dict[SettingKey, asyncio.TimerHandle] = {}
        self._latest: dict[SettingKey, ConfigChange] = {}
        self._dispatching: set[asyncio.Task] = set()

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register ``handler``.  Returns a callable that unsubscribes it."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, change: ConfigChange) -> None:
        """Schedule delivery of ``change`` after the debounce window.

        Must be called from a running event loop; outside one the change is
        logged and not delivered.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, %s change not delivered", change.key.value)
            return

        self._latest[change.key] = change
        pending = self._pending.pop(change.key, None)
        if pending is not None:
            pending.cancel()
        self._pending[change.key] = loop.call_later(self._debounce, self._fire, change.key)

    def _fire(self, key: SettingKey) -> None:
        self._pending.pop(key, None)
        change = self._latest.pop(key, None)
        if change is None:
            return
        task = asyncio.ensure_future(self._dispatch(change))
        self._dispatching.add(task)
        task.add_done_callback(self._dispatching.discard)

    async def _dispatch(self, change: ConfigChange) -> None:
        logger.debug("Delivering settings change %s", change.key.value)
        for handler in list(self._handlers):
            try:
                await handler(change)
            except Exception:
                logger.exception("Settings change handler failed for %s", change.key.value)

    async def flush(self) -> None:
        """Deliver pending changes immediately and wait for all handlers."""
        for key in list(self._pending):
            self._pending.pop(key).cancel()
            self._fire(key)
        while self._dispatching:
            await asyncio.gather(*list(self._dispatching))
