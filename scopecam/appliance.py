"""Appliance runtime: owns the media server supervisor and the capture manager."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Mapping

from scopecam import events
from scopecam.capture_manager import CaptureLifecycleManager
from scopecam.config import reload_cfg
from scopecam.supervisor import MediaServerSupervisor


class Appliance:
    def __init__(
        self,
        cfg: Mapping[str, Any],
        *,
        bus: events.EventBus | None = None,
        supervisor: MediaServerSupervisor | None = None,
        capture: CaptureLifecycleManager | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.bus = bus or events.EventBus()
        self.supervisor = supervisor or MediaServerSupervisor.from_config(
            cfg, publish=self.bus.publish
        )
        self.capture = capture or CaptureLifecycleManager.from_config(
            cfg, publish=self.bus.publish
        )
        self._logger = logger or logging.getLogger("appliance")

    async def run(self, stop_event: asyncio.Event) -> None:
        events.install_event_bus(self.bus)
        try:
            try:
                await self.capture.initialize()
            except OSError as exc:
                self._logger.error("Failed to initialize capture directories: %s", exc)

            await self.supervisor.start()
            self._logger.info("scopecam appliance started")
            await stop_event.wait()
        finally:
            self._logger.info("Shutting down...")
            await self.capture.aclose()
            await self.supervisor.stop()
            events.uninstall_event_bus(self.bus)
            self._logger.info("scopecam appliance stopped")


async def _serve(cfg: Mapping[str, Any]) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:  # pragma: no cover - non-POSIX loops
            pass
    await Appliance(cfg).run(stop_event)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Telescope camera appliance core.")
    parser.add_argument("--config", type=Path, help="Path to config.yaml (overrides search paths).")
    parser.add_argument("--log-level", help="Python logging level (defaults to config).")
    args = parser.parse_args(argv)

    if args.config is not None:
        os.environ["SCOPECAM_CONFIG"] = str(args.config)
    cfg = reload_cfg()

    log_level = args.log_level or str(cfg.get("logging", {}).get("level") or "INFO")
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    try:
        asyncio.run(_serve(cfg))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
