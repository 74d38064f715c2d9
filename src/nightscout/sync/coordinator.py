"""End-to-end Nightscout sync coordination.

A sync run uploads readings, calibrations and device status and runs the
treatments pipeline, all concurrently.  Only one run is active at a time:
triggers that arrive while a run is active set its ``rerun_requested`` flag
and the run repeats once it finishes.  A run older than
``stale_run_seconds`` is considered abandoned and a new trigger replaces it.

The coordinator also reacts to settings changes published on the config
provider's event channel: credential edits are verified (with a user
message) and trigger a sync on success; enabling sync or changing the
schedule does the same silently; a treatments-sync request runs a sync.

Usage::

    coordinator = SyncCoordinator(data_access, store, gateway, message_handler=show)
    coordinator.request_sync()
    await coordinator.wait_idle()
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable

from src.nightscout.base import DataAccess, SyncOutcome, SyncRun, utc_now
from src.nightscout.config_loader import SyncConfig, get_sync_config
from src.nightscout.events import ConfigChange, SettingKey
from src.nightscout.gateway import NightscoutError, NightscoutGateway
from src.nightscout.settings import ConfigProvider
from src.nightscout.sync.calibrations import CalibrationsUploader
from src.nightscout.sync.readings import ReadingsUploader
from src.nightscout.sync.status import StatusUploader
from src.nightscout.sync.treatments import TreatmentsSyncer

logger = logging.getLogger("nightscout.sync.coordinator")

MessageHandler = Callable[[str, str], None]

VERIFICATION_SUCCESS_TITLE = "Verification Successful"
VERIFICATION_SUCCESS_MESSAGE = "Your Nightscout site was verified successfully"
VERIFICATION_ERROR_TITLE = "Verification Error"

_CREDENTIAL_KEYS = {SettingKey.url, SettingKey.api_secret, SettingKey.token, SettingKey.port}
_ACTIVATION_KEYS = {SettingKey.enabled, SettingKey.use_schedule, SettingKey.schedule}


@dataclass(frozen=True)
class Notification:
    title: str
    message: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class CredentialCheck:
    success: bool
    title: str
    message: str


class SyncCoordinator:
    """Single-flight driver of the Nightscout uploaders and treatments sync."""

    def __init__(
        self,
        data_access: DataAccess,
        config_provider: ConfigProvider,
        gateway: NightscoutGateway,
        message_handler: MessageHandler | None = None,
        sync_config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the coordinator and subscribe to settings changes.

        Args:
            data_access:     Local store.
            config_provider: Site settings and sync state.
            gateway:         HTTP gateway to the site.
            message_handler: Called with ``(title, message)`` for user-facing results.
            sync_config:     Engine config; the global one by default.
            clock:           Source of the current time (for testing).
        """
        config = sync_config or get_sync_config()
        self._provider = config_provider
        self._gateway = gateway
        self._message_handler = message_handler
        self._stale_seconds = config.coordinator.stale_run_seconds
        self._clock = clock

        self.readings = ReadingsUploader(data_access, config_provider, gateway, config, clock)
        self.calibrations = CalibrationsUploader(
            data_access, config_provider, gateway, config, clock
        )
        self.status = StatusUploader(data_access, config_provider, gateway)
        self.treatments = TreatmentsSyncer(data_access, gateway, config)

        self._run: SyncRun | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: set[asyncio.Task] = set()

        self.treatments_version = 0
        self.runs_completed = 0
        self.last_outcomes: dict[str, SyncOutcome] = {}
        self.notifications: deque[Notification] = deque(maxlen=50)

        self._unsubscribe: Callable[[], None] | None = None
        if config_provider.events is not None:
            self._unsubscribe = config_provider.events.subscribe(self._on_config_change)

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    @property
    def active_run(self) -> SyncRun | None:
        return self._run

    def request_sync(self, connection_changes: Iterable[datetime] = ()) -> asyncio.Task | None:
        """Start a sync run, or coalesce into the active one.

        Must be called from a running event loop.

        Args:
            connection_changes: Times of transmitter disconnects/reconnects
                                since the last sync, used by the readings
                                spacing filter.

        Returns:
            The task of the new run, or None if the request was coalesced
            into an active run or sync is not configured.
        """
        settings = self._provider.settings()
        if not settings.is_configured:
            logger.debug("Nightscout sync not configured, skipping")
            return None

        now = self._clock()
        active = self._run
        if active is not None:
            if active.age_seconds(now) < self._stale_seconds:
                active.rerun_requested = True
                active.connection_changes.extend(connection_changes)
                logger.info("Sync already running since %s, rerun requested", active.started_at)
                return None
            logger.warning(
                "Sync run started at %s exceeded %ss, starting a new run (state at start: %s)",
                active.started_at,
                self._stale_seconds,
                active.state,
            )
            connection_changes = [*active.connection_changes, *connection_changes]

        run = SyncRun(
            started_at=now,
            state=self._provider.state().to_json(),
            connection_changes=list(connection_changes),
        )
        self._run = run
        self._idle.clear()
        task = asyncio.create_task(self._run_loop(run))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until no run owns the coordinator."""
        await self._idle.wait()

    async def _run_loop(self, run: SyncRun) -> None:
        try:
            while True:
                connection_changes, run.connection_changes = run.connection_changes, []
                await self._run_once(connection_changes)
                self.runs_completed += 1
                if self._run is not run:
                    logger.info("Sync run from %s was superseded", run.started_at)
                    return
                if not run.rerun_requested:
                    return
                logger.info("Sync requested during run, running again")
                run.rerun_requested = False
                run.started_at = self._clock()
                run.state = self._provider.state().to_json()
        finally:
            if self._run is run:
                self._run = None
                self._idle.set()

    async def _run_once(self, connection_changes: list[datetime]) -> None:
        settings = self._provider.settings()
        jobs: dict[str, Awaitable[SyncOutcome]] = {}
        if settings.upload_allowed(self._clock()):
            jobs["readings"] = self.readings.upload(connection_changes)
            jobs["calibrations"] = self.calibrations.upload()
            jobs["status"] = self.status.upload()
        else:
            logger.debug("Uploads not allowed now (follower or outside schedule)")
        jobs["treatments"] = self.treatments.sync()

        results = await asyncio.gather(*jobs.values(), return_exceptions=True)

        for name, result in zip(jobs, results):
            if isinstance(result, BaseException):
                logger.error("Nightscout %s sync raised", name, exc_info=result)
                outcome = SyncOutcome.failed()
            else:
                outcome = result
            self.last_outcomes[name] = outcome
            logger.info("Nightscout %s sync: %s", name, outcome)

        if self.last_outcomes.get("treatments", SyncOutcome.failed()).has_local_changes:
            self.treatments_version += 1

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def verify_credentials(self, notify: bool = True) -> CredentialCheck:
        """Test the configured URL and credentials against the site.

        Args:
            notify: Send the result to the message handler.
        """
        try:
            await self._gateway.verify_credentials()
        except NightscoutError as exc:
            check = CredentialCheck(False, VERIFICATION_ERROR_TITLE, str(exc) or "unknown error")
        else:
            check = CredentialCheck(True, VERIFICATION_SUCCESS_TITLE, VERIFICATION_SUCCESS_MESSAGE)

        if notify:
            self._notify(check.title, check.message)
        return check

    def _notify(self, title: str, message: str) -> None:
        self.notifications.append(Notification(title, message))
        if self._message_handler is not None:
            self._message_handler(title, message)

    # ------------------------------------------------------------------
    # Settings changes
    # ------------------------------------------------------------------

    async def _on_config_change(self, change: ConfigChange) -> None:
        if change.key is SettingKey.treatments_sync_required:
            if self._provider.state().sync_treatments_required:
                self._provider.clear_treatments_sync_required()
                self.request_sync()
            return

        if change.key in _CREDENTIAL_KEYS:
            notify = True
        elif change.key in _ACTIVATION_KEYS:
            notify = False
        else:
            return

        settings = self._provider.settings()
        if not (settings.url and settings.is_master and (settings.api_secret or settings.token)):
            return

        check = await self.verify_credentials(notify=notify)
        if check.success:
            self.request_sync()
        else:
            logger.info("Credential check after %s change failed", change.key.value)

    def close(self) -> None:
        """Stop reacting to settings changes."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
