"""Shared helpers for building media server and ffmpeg command lines."""

from __future__ import annotations

from pathlib import Path

DEFAULT_FFMPEG_PATH = "ffmpeg"
DEFAULT_RTSP_TIMEOUT_US = 6_000_000

# Written to ffmpeg's stdin to request a clean stop that finalises the container.
GRACEFUL_STOP_SEQUENCE = b"q"


def media_server_command(binary: str, config_path: str | Path) -> list[str]:
    return [binary, str(config_path)]


def rtsp_input_args(rtsp_url: str, *, timeout_us: int = DEFAULT_RTSP_TIMEOUT_US) -> list[str]:
    """Return input arguments for pulling the live stream over RTSP.

    ``-timeout`` is an input option, so it must precede ``-i`` or ffmpeg
    silently applies it to the output instead.
    """

    return [
        "-rtsp_transport",
        "tcp",
        "-timeout",
        str(timeout_us),
        "-i",
        rtsp_url,
    ]


def photo_capture_command(
    rtsp_url: str,
    output: str | Path,
    *,
    ffmpeg_path: str = DEFAULT_FFMPEG_PATH,
    timeout_us: int = DEFAULT_RTSP_TIMEOUT_US,
) -> list[str]:
    return [
        ffmpeg_path,
        "-hide_banner",
        "-y",
        *rtsp_input_args(rtsp_url, timeout_us=timeout_us),
        "-frames:v",
        "1",
        "-update",
        "1",
        "-q:v",
        "2",
        str(output),
    ]


def video_capture_command(
    rtsp_url: str,
    output: str | Path,
    *,
    ffmpeg_path: str = DEFAULT_FFMPEG_PATH,
    timeout_us: int = DEFAULT_RTSP_TIMEOUT_US,
) -> list[str]:
    return [
        ffmpeg_path,
        "-hide_banner",
        *rtsp_input_args(rtsp_url, timeout_us=timeout_us),
        "-c:v",
        "copy",
        "-f",
        "mp4",
        str(output),
    ]
