"""Service wiring: config -> collaborators -> FastAPI app.

Keep this module focused on construction and lifecycle.  Update semantics live
in :mod:`spectrabox.update` and :mod:`spectrabox.update_manager`; response
shapes live in :mod:`spectrabox.api_models`.
"""

from __future__ import annotations

import argparse
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from .config import AppConfig, load_config
from .performance import PerformanceMonitor
from .release_fetcher import GitHubReleaseClient
from .routes import create_router
from .update.runner import UpdateScriptSupervisor
from .update.tracker import UpdateStatusTracker
from .update_manager import UpdateManager
from .version_store import VersionStore
from .ws_hub import NotificationHub

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RuntimeState:
    config: AppConfig
    version_store: VersionStore
    release_client: GitHubReleaseClient
    hub: NotificationHub
    update_manager: UpdateManager
    performance: PerformanceMonitor


def build_runtime(config: AppConfig) -> RuntimeState:
    update_cfg = config.update
    ws_cfg = config.websocket
    version_store = VersionStore(
        config.version.file_path,
        max_length=config.version.max_length,
        cache_seconds=config.version.cache_seconds,
    )
    release_client = GitHubReleaseClient(config.github)
    hub = NotificationHub()
    tracker = UpdateStatusTracker(success_reset_s=update_cfg.success_reset_s)
    supervisor = UpdateScriptSupervisor(
        update_cfg.script_path,
        use_sudo=update_cfg.use_sudo,
        overall_timeout_s=update_cfg.overall_timeout_s,
        stall_timeout_s=update_cfg.stall_timeout_s,
        sandboxed=update_cfg.sandboxed,
        sandbox_delay_s=update_cfg.sandbox_delay_s,
    )
    update_manager = UpdateManager(
        version_store=version_store,
        release_client=release_client,
        tracker=tracker,
        supervisor=supervisor,
        hub=hub,
        expected_downtime_s=update_cfg.expected_downtime_s,
        reconnect_interval_ms=ws_cfg.reconnect_interval_ms,
        reconnect_max_attempts=ws_cfg.reconnect_max_attempts,
    )
    return RuntimeState(
        config=config,
        version_store=version_store,
        release_client=release_client,
        hub=hub,
        update_manager=update_manager,
        performance=PerformanceMonitor(),
    )


def create_app(config_path: Path | None = None) -> FastAPI:
    config = load_config(config_path)
    runtime = build_runtime(config)

    async def start_runtime() -> None:
        LOGGER.info(
            "SpectraBox update service starting (profile=%s, version=%s)",
            config.update.profile,
            runtime.version_store.current_version(),
        )
        if config.update.sandboxed:
            LOGGER.warning(
                "Profile %r is not production; updates will be simulated",
                config.update.profile,
            )

    async def stop_runtime() -> None:
        try:
            await runtime.update_manager.shutdown()
        except Exception:
            LOGGER.warning("Error stopping update manager", exc_info=True)
        runtime.hub.close_all()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await start_runtime()
        try:
            yield
        finally:
            await stop_runtime()

    app = FastAPI(title="SpectraBox", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(create_router(runtime))
    return app


app: FastAPI | None = (
    create_app()
    if __name__ != "__main__" and os.getenv("SPECTRABOX_DISABLE_AUTO_APP", "0") != "1"
    else None
)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the SpectraBox update service")
    parser.add_argument("--config", type=Path, default=None, help="Path to config YAML")
    parser.add_argument("--log-level", default="info", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    runtime_app = create_app(config_path=args.config)
    runtime: RuntimeState = runtime_app.state.runtime
    uvicorn.run(
        runtime_app,
        host=runtime.config.server.host,
        port=runtime.config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
