#!/usr/bin/env python3
"""
Media server supervisor (restart-with-backoff orchestration).

Why this file exists:
- The media server ingests the camera and re-serves it; when it dies the
  appliance is blind, so it has to come back on its own.
- A crash loop must not hammer the device: each failed exit doubles the delay
  before the next attempt (capped), and after ``max_restarts`` consecutive
  failures we stop trying and report a permanent failure.
- A long healthy run forgives earlier failures: once a process has stayed up
  for ``reset_after`` seconds the restart counter and delay are reset.

Usage:
- appliance: build with ``MediaServerSupervisor.from_config(cfg)``, then
  ``await supervisor.start()`` at boot and ``await supervisor.stop()`` on
  shutdown.
- transport layer: subscribe to the event bus for ``streamStarted``,
  ``streamStopped``, ``streamRestartScheduled`` and ``streamError``; call
  ``restart()`` for manual recovery from the failed state.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from scopecam import events
from scopecam.ffmpeg_io import media_server_command

PublishFn = Callable[[str, Any], Any]
SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]


class SupervisorState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    BACKOFF = "backoff"
    FAILED = "failed"


@dataclass
class RestartState:
    count: int = 0
    delay: float = 2.0
    last_stable_time: Optional[float] = None


class MediaServerSupervisor:
    def __init__(
        self,
        command: Sequence[str],
        *,
        initial_delay: float = 2.0,
        max_delay: float = 60.0,
        max_restarts: int = 10,
        reset_after: float = 300.0,
        stop_timeout: float = 5.0,
        publish: PublishFn | None = None,
        spawn: SpawnFn | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        if initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if max_restarts < 0:
            raise ValueError("max_restarts must be >= 0")
        self._command = [str(part) for part in command]
        self._initial_delay = float(initial_delay)
        self._max_delay = float(max_delay)
        self._max_restarts = int(max_restarts)
        self._reset_after = float(reset_after)
        self._stop_timeout = float(stop_timeout)
        self._publish = publish or events.publish
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._logger = logger or logging.getLogger("supervisor")
        self._output_logger = logging.getLogger("mediamtx")

        self._state = SupervisorState.STOPPED
        self._restart = RestartState(delay=self._initial_delay)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stability_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._pump_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], **kwargs: Any) -> "MediaServerSupervisor":
        media_cfg = cfg.get("media_server", {})
        sup_cfg = cfg.get("supervisor", {})
        command = media_server_command(
            str(media_cfg.get("binary") or "mediamtx"),
            str(media_cfg.get("config_path") or "mediamtx.yml"),
        )
        return cls(
            command,
            initial_delay=float(sup_cfg.get("initial_delay_sec", 2.0)),
            max_delay=float(sup_cfg.get("max_delay_sec", 60.0)),
            max_restarts=int(sup_cfg.get("max_restarts", 10)),
            reset_after=float(sup_cfg.get("reset_after_sec", 300.0)),
            stop_timeout=float(sup_cfg.get("stop_timeout_sec", 5.0)),
            **kwargs,
        )

    # --- Introspection ---
    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def running(self) -> bool:
        proc = self._process
        return proc is not None and proc.returncode is None

    @property
    def restart_state(self) -> RestartState:
        return dataclasses.replace(self._restart)

    def status(self) -> dict:
        proc = self._process
        return {
            "state": self._state.value,
            "pid": proc.pid if proc is not None and proc.returncode is None else None,
            "restart_count": self._restart.count,
            "next_delay_sec": self._restart.delay,
            "max_restarts": self._max_restarts,
            "last_stable_time": self._restart.last_stable_time,
        }

    # --- Lifecycle ---
    async def start(self) -> None:
        if self.running:
            self._logger.debug("media server already running (pid %s)", self._process.pid)
            return
        if self._state is SupervisorState.FAILED:
            self._logger.warning("media server is in failed state; use restart() to recover")
            return
        self._cancel_restart()

        self._state = SupervisorState.STARTING
        attempt = self._restart.count + 1
        self._logger.info("Starting media server (attempt %d): %s", attempt, " ".join(self._command))
        try:
            proc = await self._spawn(
                *self._command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._logger.error("Media server failed to start: %s", exc)
            self._publish(events.STREAM_ERROR, {"error": str(exc)})
            if self._state is not SupervisorState.STARTING:
                # stop() ran while we were spawning
                return
            self._schedule_restart()
            return

        if self._state is not SupervisorState.STARTING:
            # stop() ran while we were spawning
            await self._terminate(proc)
            return

        self._process = proc
        self._state = SupervisorState.RUNNING
        started_at = time.time()
        self._restart.last_stable_time = started_at
        self._publish(events.STREAM_STARTED, {"pid": proc.pid, "attempt": attempt})

        self._watch_task = asyncio.create_task(self._watch(proc), name="media-server-watch")
        for stream, level in ((proc.stdout, logging.INFO), (proc.stderr, logging.WARNING)):
            if stream is None:
                continue
            task = asyncio.create_task(self._pump(stream, level), name="media-server-output")
            self._pump_tasks.add(task)
            task.add_done_callback(self._pump_tasks.discard)
        self._arm_stability(proc, started_at)

    async def stop(self) -> None:
        self._cancel_restart()
        self._cancel_stability()
        proc = self._process
        self._process = None
        self._state = SupervisorState.STOPPED
        if proc is None or proc.returncode is not None:
            return
        self._logger.info("Stopping media server (pid %s)", proc.pid)
        await self._terminate(proc)

    async def restart(self) -> None:
        """Manual recovery: forget previous failures and start fresh."""
        await self.stop()
        self._restart = RestartState(delay=self._initial_delay)
        await self.start()

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            self._logger.warning(
                "Media server ignored SIGTERM for %.1fs, killing", self._stop_timeout
            )
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    # --- Exit handling and backoff ---
    async def _watch(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if self._process is not proc:
            self._logger.info("Media server (pid %s) exited with code %s after stop", proc.pid, code)
            self._publish(events.STREAM_STOPPED, {"code": code})
            return

        self._process = None
        self._cancel_stability()
        if code == 0:
            self._logger.info("Media server exited with code 0")
        else:
            self._logger.warning("Media server exited with code %s", code)
        self._publish(events.STREAM_STOPPED, {"code": code})

        if code == 0:
            self._state = SupervisorState.STOPPED
            return
        self._schedule_restart()

    def _schedule_restart(self) -> Optional[float]:
        """Schedule the next start after the current backoff delay.

        Returns the scheduled delay, or ``None`` once the restart budget is
        exhausted and the supervisor has entered the failed state.
        """
        if self._state is SupervisorState.FAILED:
            return None

        self._restart.count += 1
        if self._restart.count > self._max_restarts:
            self._cancel_restart()
            self._state = SupervisorState.FAILED
            self._logger.error(
                "Media server failed %d times, giving up", self._max_restarts
            )
            self._publish(
                events.STREAM_ERROR,
                {
                    "error": f"media server failed {self._max_restarts} times, giving up",
                    "permanent": True,
                },
            )
            return None

        delay = self._restart.delay
        self._cancel_restart()
        self._state = SupervisorState.BACKOFF
        self._logger.warning(
            "Restarting media server in %.1fs (restart %d/%d)",
            delay,
            self._restart.count,
            self._max_restarts,
        )
        self._restart_task = asyncio.get_running_loop().create_task(
            self._restart_after(delay), name="media-server-restart"
        )
        self._restart.delay = min(delay * 2, self._max_delay)
        self._publish(
            events.STREAM_RESTART_SCHEDULED,
            {"attempt": self._restart.count, "delay_sec": delay},
        )
        return delay

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._restart_task = None
        await self.start()

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done():
            task.cancel()

    # --- Stability window ---
    def _arm_stability(self, proc: asyncio.subprocess.Process, started_at: float) -> None:
        self._cancel_stability()
        self._stability_task = asyncio.create_task(
            self._stability_after(proc, started_at), name="media-server-stability"
        )

    async def _stability_after(self, proc: asyncio.subprocess.Process, started_at: float) -> None:
        await asyncio.sleep(self._reset_after)
        self._stability_task = None
        # Only the exact process this timer was armed for may clear the counter.
        if self._process is not proc or proc.returncode is not None:
            self._logger.debug("ignoring stale stability timer for pid %s", proc.pid)
            return
        if self._restart.last_stable_time != started_at:
            return
        if self._restart.count:
            self._logger.info(
                "Media server stable for %.0fs, resetting restart counter", self._reset_after
            )
        self._restart = RestartState(delay=self._initial_delay)

    def _cancel_stability(self) -> None:
        task = self._stability_task
        self._stability_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _pump(self, stream: asyncio.StreamReader, level: int) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                self._output_logger.log(level, "%s", text)
