from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

__all__ = [
    "PHOTO_EXTENSION",
    "VIDEO_EXTENSION",
    "CaptureArtifact",
    "ensure_capture_dirs",
    "generate_filename",
    "list_artifacts",
    "resolve_capture_path",
    "stat_artifact",
]

PHOTO_PREFIX = "photo"
VIDEO_PREFIX = "video"
PHOTO_EXTENSION = "jpg"
VIDEO_EXTENSION = "mp4"

_TIMESTAMP_SEPARATORS = re.compile(r"[:.]")


@dataclass(frozen=True, slots=True)
class CaptureArtifact:
    """A completed photo or video file on durable storage."""

    filename: str
    path: Path
    size_bytes: int
    created_at: float

    @property
    def kind(self) -> str:
        return PHOTO_PREFIX if self.filename.startswith(f"{PHOTO_PREFIX}_") else VIDEO_PREFIX

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "path": str(self.path),
            "kind": self.kind,
            "size_bytes": self.size_bytes,
            "created_at": datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat(
                timespec="seconds"
            ),
        }


def generate_filename(kind: str, extension: str, now: datetime | None = None) -> str:
    """Return ``{kind}_{timestamp}.{extension}`` with a filesystem-safe UTC timestamp.

    ``2024-05-01T21:04:33.120Z`` becomes ``2024-05-01T21-04-33`` so names sort
    lexically in capture order.
    """
    moment = datetime.now(timezone.utc) if now is None else now.astimezone(timezone.utc)
    stamp = _TIMESTAMP_SEPARATORS.sub("-", moment.isoformat(timespec="milliseconds"))[:19]
    return f"{kind}_{stamp}.{extension}"


def ensure_capture_dirs(*directories: Path) -> None:
    for directory in directories:
        Path(directory).mkdir(parents=True, exist_ok=True)


def stat_artifact(path: Path) -> CaptureArtifact:
    st = path.stat()
    # st_birthtime only exists on some platforms; Linux falls back to mtime.
    created = getattr(st, "st_birthtime", None) or st.st_mtime
    return CaptureArtifact(
        filename=path.name,
        path=path,
        size_bytes=st.st_size,
        created_at=float(created),
    )


def list_artifacts(directory: Path, extension: str) -> list[CaptureArtifact]:
    try:
        candidates = list(directory.iterdir())
    except FileNotFoundError:
        return []
    suffix = f".{extension.lstrip('.')}"
    artifacts: list[CaptureArtifact] = []
    for candidate in candidates:
        if candidate.suffix.lower() != suffix:
            continue
        try:
            if not candidate.is_file():
                continue
            artifacts.append(stat_artifact(candidate))
        except OSError:
            continue
    artifacts.sort(key=lambda item: (item.created_at, item.filename), reverse=True)
    return artifacts


def resolve_capture_path(filename: str, photos_dir: Path, videos_dir: Path) -> Path | None:
    if not filename or "/" in filename or "\\" in filename or ".." in filename:
        return None
    if filename.startswith(f"{PHOTO_PREFIX}_"):
        return photos_dir / filename
    if filename.startswith(f"{VIDEO_PREFIX}_"):
        return videos_dir / filename
    return None
