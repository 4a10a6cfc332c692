"""Photo and video capture against the live stream.

Every capture is gated on the media server reporting the stream as ready.
Recording is additionally gated on free disk space and is exclusive: one
session at a time, and a start or stop that arrives while another transition
is still running fails immediately instead of queueing behind it.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal, Mapping, Optional, Sequence

from scopecam import events
from scopecam.captures import (
    PHOTO_EXTENSION,
    PHOTO_PREFIX,
    VIDEO_EXTENSION,
    VIDEO_PREFIX,
    CaptureArtifact,
    ensure_capture_dirs,
    generate_filename,
    list_artifacts,
    resolve_capture_path,
    stat_artifact,
)
from scopecam.config import captures_paths
from scopecam.ffmpeg_io import (
    DEFAULT_FFMPEG_PATH,
    DEFAULT_RTSP_TIMEOUT_US,
    GRACEFUL_STOP_SEQUENCE,
    photo_capture_command,
    video_capture_command,
)
from scopecam.health import DiskSpace, StreamHealthProbe, check_disk_space

CaptureKind = Literal["all", "photos", "videos"]
CommandBuilder = Callable[[Path], Sequence[str]]
DiskSpaceFn = Callable[[Path, int], DiskSpace]
PublishFn = Callable[[str, Any], Any]

_CAPTURE_KINDS = ("all", "photos", "videos")


class CaptureError(Exception):
    """Base class for capture failures; ``code`` is stable for API responses."""

    code = "capture_error"


class StreamNotReadyError(CaptureError):
    code = "not_ready"

    def __init__(self, message: str = "Stream not ready - media server may be starting up") -> None:
        super().__init__(message)


class InsufficientDiskSpaceError(CaptureError):
    code = "insufficient_space"

    def __init__(self, available_mb: int, required_mb: int) -> None:
        super().__init__(
            f"Insufficient disk space: {available_mb}MB available, need {required_mb}MB"
        )
        self.available_mb = available_mb
        self.required_mb = required_mb


class RecordingConflictError(CaptureError):
    code = "conflict"


class CaptureCommandError(CaptureError):
    code = "capture_failed"

    def __init__(self, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.detail = detail


class CaptureVerificationError(CaptureError):
    code = "verification_failed"


class InvalidCaptureNameError(CaptureError):
    code = "invalid_name"


class CaptureNotFoundError(CaptureError):
    code = "not_found"


@dataclass
class RecordingSession:
    is_recording: bool = False
    file_path: Optional[Path] = None
    start_time: Optional[float] = None
    started_monotonic: Optional[float] = None
    process: Optional[asyncio.subprocess.Process] = None


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class RecordingStarted:
    filename: str
    path: Path
    start_time: float
    disk_space_available_mb: int

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "path": str(self.path),
            "start_time": _iso(self.start_time),
            "disk_space_available_mb": self.disk_space_available_mb,
        }


@dataclass(frozen=True)
class RecordingStopped:
    artifact: CaptureArtifact
    duration_sec: int
    end_time: float

    def to_dict(self) -> dict[str, object]:
        payload = self.artifact.to_dict()
        payload["duration_sec"] = self.duration_sec
        payload["end_time"] = _iso(self.end_time)
        return payload


@dataclass(frozen=True)
class RecordingStatus:
    is_recording: bool
    filename: Optional[str] = None
    elapsed_sec: Optional[int] = None
    start_time: Optional[float] = None

    def to_dict(self) -> dict[str, object]:
        if not self.is_recording:
            return {"is_recording": False}
        return {
            "is_recording": True,
            "filename": self.filename,
            "elapsed_sec": self.elapsed_sec,
            "start_time": _iso(self.start_time) if self.start_time is not None else None,
        }


class CaptureLifecycleManager:
    def __init__(
        self,
        photos_dir: Path,
        videos_dir: Path,
        *,
        health_probe: StreamHealthProbe,
        photo_command: CommandBuilder,
        video_command: CommandBuilder,
        disk_space: DiskSpaceFn = check_disk_space,
        min_disk_space_mb: int = 500,
        health_retries: int = 3,
        health_retry_delay: float = 1.0,
        photo_timeout: float = 10.0,
        graceful_stop_timeout: float = 5.0,
        termination_grace: float = 5.0,
        sync_delay: float = 0.5,
        verify_attempts: int = 3,
        verify_delay: float = 0.3,
        error_tail_chars: int = 200,
        publish: PublishFn | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._photos_dir = Path(photos_dir)
        self._videos_dir = Path(videos_dir)
        self._health_probe = health_probe
        self._photo_command = photo_command
        self._video_command = video_command
        self._disk_space = disk_space
        self._min_disk_space_mb = int(min_disk_space_mb)
        self._health_retries = max(1, int(health_retries))
        self._health_retry_delay = float(health_retry_delay)
        self._photo_timeout = float(photo_timeout)
        self._graceful_stop_timeout = float(graceful_stop_timeout)
        self._termination_grace = float(termination_grace)
        self._sync_delay = float(sync_delay)
        self._verify_attempts = max(1, int(verify_attempts))
        self._verify_delay = float(verify_delay)
        self._error_tail_chars = max(1, int(error_tail_chars))
        self._publish = publish or events.publish
        self._logger = logger or logging.getLogger("capture")

        self._session = RecordingSession()
        self._transition = asyncio.Lock()
        self._stopping: Optional[asyncio.subprocess.Process] = None
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], **kwargs: Any) -> "CaptureLifecycleManager":
        media_cfg = cfg.get("media_server", {})
        capture_cfg = cfg.get("capture", {})
        photos_dir, videos_dir = captures_paths(cfg)
        rtsp_url = str(media_cfg.get("rtsp_url") or "rtsp://localhost:8554/telescope")
        ffmpeg_path = str(capture_cfg.get("ffmpeg_path") or DEFAULT_FFMPEG_PATH)
        timeout_us = int(capture_cfg.get("rtsp_timeout_us", DEFAULT_RTSP_TIMEOUT_US))

        kwargs.setdefault(
            "health_probe",
            StreamHealthProbe(
                str(media_cfg.get("api_url") or "http://127.0.0.1:9997"),
                str(media_cfg.get("stream_path") or "telescope"),
                timeout=float(capture_cfg.get("health_timeout_sec", 3.0)),
            ),
        )
        kwargs.setdefault(
            "photo_command",
            functools.partial(
                photo_capture_command, rtsp_url, ffmpeg_path=ffmpeg_path, timeout_us=timeout_us
            ),
        )
        kwargs.setdefault(
            "video_command",
            functools.partial(
                video_capture_command, rtsp_url, ffmpeg_path=ffmpeg_path, timeout_us=timeout_us
            ),
        )
        return cls(
            photos_dir,
            videos_dir,
            min_disk_space_mb=int(capture_cfg.get("min_disk_space_mb", 500)),
            health_retries=int(capture_cfg.get("health_retries", 3)),
            health_retry_delay=float(capture_cfg.get("health_retry_delay_sec", 1.0)),
            photo_timeout=float(capture_cfg.get("photo_timeout_sec", 10.0)),
            graceful_stop_timeout=float(capture_cfg.get("graceful_stop_timeout_sec", 5.0)),
            termination_grace=float(capture_cfg.get("termination_grace_sec", 5.0)),
            sync_delay=float(capture_cfg.get("sync_delay_sec", 0.5)),
            verify_attempts=int(capture_cfg.get("verify_attempts", 3)),
            verify_delay=float(capture_cfg.get("verify_delay_sec", 0.3)),
            error_tail_chars=int(capture_cfg.get("error_tail_chars", 200)),
            **kwargs,
        )

    @property
    def photos_dir(self) -> Path:
        return self._photos_dir

    @property
    def videos_dir(self) -> Path:
        return self._videos_dir

    async def initialize(self) -> None:
        await asyncio.to_thread(ensure_capture_dirs, self._photos_dir, self._videos_dir)
        self._logger.info(
            "Capture directories ready: %s, %s", self._photos_dir, self._videos_dir
        )

    # --- Photo ---
    async def capture_photo(self) -> CaptureArtifact:
        await self._require_stream_ready()

        filename = generate_filename(PHOTO_PREFIX, PHOTO_EXTENSION)
        path = self._photos_dir / filename
        argv = list(self._photo_command(path))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            self._logger.error("Photo capture could not start: %s", exc)
            self._discard(path)
            raise CaptureCommandError(f"Photo capture failed: {exc}", detail=str(exc)) from exc

        communicate = asyncio.ensure_future(proc.communicate())
        try:
            output, _ = await asyncio.wait_for(
                asyncio.shield(communicate), timeout=self._photo_timeout
            )
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            # Killing the process closes its pipes, so communicate() returns what was read.
            output, _ = await communicate
            self._discard(path)
            message = f"Photo capture timed out after {self._photo_timeout:g}s"
            tail = self._output_tail(output)
            self._logger.error("%s: %s", message, tail)
            raise CaptureCommandError(
                f"{message}: {tail}" if tail else message, detail=tail or message
            ) from None
        except BaseException:
            communicate.cancel()
            self._discard(path)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise

        if proc.returncode != 0:
            tail = self._output_tail(output)
            self._logger.error("Photo capture error (exit %s): %s", proc.returncode, tail)
            self._discard(path)
            raise CaptureCommandError(f"Photo capture failed: {tail}", detail=tail)

        try:
            artifact = stat_artifact(path)
        except OSError:
            artifact = None
        if artifact is None or artifact.size_bytes <= 0:
            self._discard(path)
            raise CaptureVerificationError("Photo file not found or empty after capture")

        self._logger.info("Photo captured: %s (%d bytes)", filename, artifact.size_bytes)
        self._publish(
            events.PHOTO_CAPTURED, {"filename": filename, "size_bytes": artifact.size_bytes}
        )
        return artifact

    # --- Recording ---
    async def start_recording(self) -> RecordingStarted:
        if self._session.is_recording:
            raise RecordingConflictError("Already recording")
        if self._transition.locked():
            raise RecordingConflictError("Recording transition already in progress")

        async with self._transition:
            await self._require_stream_ready()

            disk = await asyncio.to_thread(
                self._disk_space, self._videos_dir, self._min_disk_space_mb
            )
            if not disk.sufficient:
                raise InsufficientDiskSpaceError(disk.available_mb, self._min_disk_space_mb)

            filename = generate_filename(VIDEO_PREFIX, VIDEO_EXTENSION)
            path = self._videos_dir / filename
            argv = list(self._video_command(path))
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                self._logger.error("Recording could not start: %s", exc)
                raise CaptureCommandError(
                    f"Recording failed to start: {exc}", detail=str(exc)
                ) from exc

            start_time = time.time()
            self._session = RecordingSession(
                is_recording=True,
                file_path=path,
                start_time=start_time,
                started_monotonic=time.monotonic(),
                process=proc,
            )
            self._spawn_task(self._watch_recording(proc, path), "recording-watch")
            if proc.stderr is not None:
                self._spawn_task(self._pump_stderr(proc.stderr), "recording-stderr")

        self._logger.info(
            "Recording started: %s (pid %s, %d MB free)", filename, proc.pid, disk.available_mb
        )
        self._publish(
            events.RECORDING_STARTED, {"filename": filename, "start_time": _iso(start_time)}
        )
        return RecordingStarted(
            filename=filename,
            path=path,
            start_time=start_time,
            disk_space_available_mb=disk.available_mb,
        )

    async def stop_recording(self) -> RecordingStopped:
        session = self._session
        if (
            not session.is_recording
            or session.process is None
            or session.file_path is None
            or session.started_monotonic is None
        ):
            raise RecordingConflictError("Not currently recording")
        if self._transition.locked():
            raise RecordingConflictError("Recording transition already in progress")

        async with self._transition:
            proc = session.process
            path = session.file_path
            duration = int(time.monotonic() - session.started_monotonic)

            self._stopping = proc
            try:
                code = await self._stop_process(proc)
            except BaseException:
                # Never leave a capture process running once the session is cleared.
                if proc.returncode is None:
                    self._logger.warning("Recording stop interrupted, killing pid %s", proc.pid)
                    with contextlib.suppress(ProcessLookupError):
                        proc.kill()
                    await asyncio.shield(proc.wait())
                raise
            finally:
                self._stopping = None
                self._session = RecordingSession()

            self._logger.info("Recording stopped: %s (code: %s)", path.name, code)
            self._publish(events.RECORDING_STOPPED, {"filename": path.name, "code": code})

            artifact = await self._verify_recording(path)

        return RecordingStopped(artifact=artifact, duration_sec=duration, end_time=time.time())

    def get_recording_status(self) -> RecordingStatus:
        session = self._session
        if not session.is_recording or session.file_path is None:
            return RecordingStatus(is_recording=False)
        elapsed = int(time.monotonic() - (session.started_monotonic or time.monotonic()))
        return RecordingStatus(
            is_recording=True,
            filename=session.file_path.name,
            elapsed_sec=elapsed,
            start_time=session.start_time,
        )

    async def _stop_process(self, proc: asyncio.subprocess.Process) -> Optional[int]:
        if proc.returncode is not None:
            return proc.returncode

        await self._request_graceful_stop(proc)
        try:
            return await asyncio.wait_for(proc.wait(), timeout=self._graceful_stop_timeout)
        except asyncio.TimeoutError:
            self._logger.warning(
                "Graceful stop timed out after %.1fs, sending SIGTERM", self._graceful_stop_timeout
            )

        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            return await asyncio.wait_for(proc.wait(), timeout=self._termination_grace)
        except asyncio.TimeoutError:
            self._logger.error(
                "Recording process ignored SIGTERM for %.1fs, killing", self._termination_grace
            )

        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        return await proc.wait()

    async def _request_graceful_stop(self, proc: asyncio.subprocess.Process) -> None:
        stdin = proc.stdin
        if stdin is None or stdin.is_closing():
            self._logger.info("stdin not writable, sending SIGTERM")
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            return
        try:
            stdin.write(GRACEFUL_STOP_SEQUENCE)
            await stdin.drain()
            stdin.close()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._logger.warning("Error stopping recording gracefully: %s", exc)
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()

    async def _verify_recording(self, path: Path) -> CaptureArtifact:
        await asyncio.sleep(self._sync_delay)
        for attempt in range(1, self._verify_attempts + 1):
            try:
                artifact = stat_artifact(path)
            except OSError:
                artifact = None
            if artifact is not None and artifact.size_bytes > 0:
                return artifact
            if attempt < self._verify_attempts:
                await asyncio.sleep(self._verify_delay)
        self._logger.error("Video file %s missing or empty after recording", path)
        raise CaptureVerificationError("Video file not found or empty after recording")

    async def _watch_recording(self, proc: asyncio.subprocess.Process, path: Path) -> None:
        code = await proc.wait()
        if proc is self._stopping or self._session.process is not proc:
            return
        self._logger.warning("Recording process exited unexpectedly with code %s", code)
        self._session = RecordingSession()
        self._publish(events.RECORDING_EXITED, {"filename": path.name, "code": code})

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            if "error" in text.lower():
                self._logger.warning("ffmpeg: %s", text)
            else:
                self._logger.debug("ffmpeg: %s", text)

    # --- Library ---
    async def list_captures(self, kind: CaptureKind = "all") -> dict[str, list[CaptureArtifact]]:
        if kind not in _CAPTURE_KINDS:
            raise ValueError(f"kind must be one of {', '.join(_CAPTURE_KINDS)}")
        result: dict[str, list[CaptureArtifact]] = {"photos": [], "videos": []}
        if kind in ("all", "photos"):
            result["photos"] = await asyncio.to_thread(
                list_artifacts, self._photos_dir, PHOTO_EXTENSION
            )
        if kind in ("all", "videos"):
            result["videos"] = await asyncio.to_thread(
                list_artifacts, self._videos_dir, VIDEO_EXTENSION
            )
        return result

    async def delete_capture(self, filename: str) -> str:
        path = resolve_capture_path(filename, self._photos_dir, self._videos_dir)
        if path is None:
            raise InvalidCaptureNameError(f"Invalid filename: {filename!r}")
        if self._session.is_recording and self._session.file_path == path:
            raise RecordingConflictError("Cannot delete the file currently being recorded")
        try:
            path.unlink()
        except FileNotFoundError:
            raise CaptureNotFoundError(f"File not found: {filename}") from None
        self._logger.info("Deleted capture %s", filename)
        self._publish(events.CAPTURE_DELETED, {"filename": filename})
        return filename

    async def aclose(self) -> None:
        if self._session.is_recording:
            self._logger.info("Stopping active recording before shutdown")
            try:
                await self.stop_recording()
            except CaptureError as exc:
                self._logger.warning("Recording did not stop cleanly: %s", exc)
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # --- Helpers ---
    async def _require_stream_ready(self) -> None:
        ready = await self._health_probe.wait_until_ready(
            self._health_retries, self._health_retry_delay
        )
        if not ready:
            raise StreamNotReadyError()

    def _output_tail(self, output: Optional[bytes]) -> str:
        text = (output or b"").decode("utf-8", errors="replace").strip()
        return text[-self._error_tail_chars:]

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            self._logger.debug("Could not remove partial file %s: %s", path, exc)

    def _spawn_task(self, coro: Any, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
