"""Update orchestration: the trigger handler behind ``/api/update/*``.

A check reads the installed version and asks the release comparator.  An
execute additionally claims the tracker, announces the coming restart to every
subscriber and launches the update script as a background asyncio task so the
API call returns immediately.  Tracker transitions are forwarded to the
notification hub as they happen.
"""

from __future__ import annotations

import asyncio
import logging

from .release_fetcher import GitHubReleaseClient, ReleaseInfo
from .update.errors import NoUpdateAvailable, UpdateInProgress
from .update.models import ExecuteResult, StreamErrorEvent, UpdateState
from .update.runner import UpdateScriptSupervisor
from .update.tracker import UpdateStatusTracker
from .version_store import VersionStore
from .ws_hub import NotificationHub
from .ws_models import server_shutdown_message, update_status_message

LOGGER = logging.getLogger(__name__)


class UpdateManager:
    def __init__(
        self,
        *,
        version_store: VersionStore,
        release_client: GitHubReleaseClient,
        tracker: UpdateStatusTracker,
        supervisor: UpdateScriptSupervisor,
        hub: NotificationHub,
        expected_downtime_s: float = 60,
        reconnect_interval_ms: int = 2000,
        reconnect_max_attempts: int = 10,
    ) -> None:
        self._version_store = version_store
        self._release_client = release_client
        self._tracker = tracker
        self._supervisor = supervisor
        self._hub = hub
        self._expected_downtime_s = expected_downtime_s
        self._reconnect_interval_ms = reconnect_interval_ms
        self._reconnect_max_attempts = reconnect_max_attempts
        self._task: asyncio.Task[None] | None = None
        self._tracker.add_listener(self._on_transition)

    @property
    def tracker(self) -> UpdateStatusTracker:
        return self._tracker

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict:
        return self._tracker.to_dict()

    def current_version(self) -> str:
        return self._version_store.current_version()

    def rate_limit_info(self) -> dict:
        return self._release_client.rate_limit_info()

    async def check(self) -> ReleaseInfo:
        current = self._version_store.current_version()
        return await asyncio.to_thread(self._release_client.check_for_updates, current)

    async def execute(self) -> ExecuteResult:
        """Start an update if one is available.

        Raises :class:`UpdateInProgress`, :class:`NoUpdateAvailable`,
        :class:`ScriptMissing` or any upstream error from the comparator.  On
        every rejection the tracker is left untouched.
        """
        self._tracker.reset_if_finished()
        if self._tracker.busy or self.running:
            raise UpdateInProgress()

        info = await self.check()
        if not info.update_available:
            LOGGER.info("Update requested but %s is already current", info.local_version)
            raise NoUpdateAvailable(info.local_version, info.remote_version)

        self._supervisor.check_preconditions()
        if not self._tracker.try_begin():
            raise UpdateInProgress()

        LOGGER.info(
            "Starting update %s -> %s (sandboxed=%s)",
            info.local_version,
            info.remote_version,
            self._supervisor.sandboxed,
        )
        self._hub.publish(
            server_shutdown_message(
                expected_downtime_s=self._expected_downtime_s,
                retry_interval_ms=self._reconnect_interval_ms,
                max_attempts=self._reconnect_max_attempts,
            )
        )
        self._task = asyncio.get_running_loop().create_task(self._run(), name="update-script")
        return ExecuteResult(
            current_version=info.local_version,
            latest_version=info.remote_version,
            update_info=info.update_info(),
        )

    async def _run(self) -> None:
        try:
            await self._supervisor.run(self._tracker.apply)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("Update supervisor failed unexpectedly")
            self._tracker.apply(StreamErrorEvent(f"Update supervisor failed: {exc}"))

    def _on_transition(self, state: UpdateState) -> None:
        self._hub.publish(update_status_message(state))

    async def shutdown(self) -> None:
        """Stop supervising; a launched script keeps running in its own session."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self._tracker.close()
        self._tracker.remove_listener(self._on_transition)
