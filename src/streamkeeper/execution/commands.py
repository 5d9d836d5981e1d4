"""Encoder command construction.

The supervisor treats the command as opaque: a :class:`CommandBuilder`
turns a job and its resolved source into an argument list plus the publish
endpoint, and removes whatever transient files it created once the job
stops.

:class:`FFmpegCommandBuilder` produces ffmpeg arguments for two inputs:

- a single video, looped with ``-stream_loop -1`` when ``loop_video`` is set
- a playlist, written to ``<temp_dir>/playlist_<job_id>.txt`` and read with
  the concat demuxer (optionally shuffled)

and two output modes:

- copy mode (default): video passed through, audio re-encoded to AAC
- advanced mode: libx264 at the job's bitrate, resolution and frame rate,
  with a two-second GOP

Tags:
    streamkeeper, execution, ffmpeg, command-builder, playlist

Doc-Types:
    api-reference
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from streamkeeper.core.errors import (
    BuildError,
    EmptySourceError,
    InvalidPlaylistError,
    SourceMissingError,
)
from streamkeeper.core.logging import get_logger
from streamkeeper.core.models import Job, JobWithSource, MediaSource, SourceKind

logger = get_logger(__name__)

DEFAULT_RESOLUTION = "1280x720"
DEFAULT_BITRATE_KBPS = 2500
DEFAULT_FPS = 30

_INPUT_FLAGS = ["-nostdin", "-loglevel", "warning", "-re", "-fflags", "+genpts+igndts"]
_AUDIO_FLAGS = ["-c:a", "aac", "-b:a", "128k", "-ar", "44100"]


@dataclass(frozen=True)
class CommandSpec:
    """Arguments for the encoder (without the executable) and its target."""

    args: list[str]
    destination: str

    def render(self, executable: str) -> str:
        """Single-line form for the job log."""
        return " ".join([executable, *self.args])


@runtime_checkable
class CommandBuilder(Protocol):
    """Builds encoder arguments for a job."""

    def build(self, bundle: JobWithSource) -> CommandSpec:
        """Raises :class:`BuildError` subclasses when the source is unusable."""
        ...

    def cleanup(self, job_id: str) -> bool:
        """Remove transient artifacts of *job_id*. True if something was removed."""
        ...


class FFmpegCommandBuilder:
    """ffmpeg arguments for single-video and playlist jobs.

    Args:
        media_root: Directory media ``filepath`` values are relative to
        temp_dir: Where playlist concat files are written
        rng: Random source for playlist shuffling (seedable in tests)
    """

    def __init__(
        self,
        media_root: Path,
        temp_dir: Path,
        rng: random.Random | None = None,
    ) -> None:
        self.media_root = Path(media_root)
        self.temp_dir = Path(temp_dir)
        self._rng = rng or random.Random()

    def concat_file(self, job_id: str) -> Path:
        return self.temp_dir / f"playlist_{job_id}.txt"

    def resolve_media_path(self, filepath: str) -> Path:
        """Map a stored filepath (``/uploads/a.mp4`` or ``uploads/a.mp4``) onto disk."""
        return (self.media_root / filepath.lstrip("/")).resolve()

    def build(self, bundle: JobWithSource) -> CommandSpec:
        job = bundle.job
        if not job.rtmp_url:
            raise BuildError("Job has no destination").with_context(job_id=job.id)
        if job.source_id is None:
            raise SourceMissingError("Job has no source").with_context(job_id=job.id)

        source = bundle.source
        if source is None:
            if job.source_type == SourceKind.PLAYLIST:
                message = f"Playlist not found for playlist_id: {job.source_id}"
            else:
                message = f"Video record not found for video_id: {job.source_id}"
            raise SourceMissingError(message).with_context(job_id=job.id, source_id=job.source_id)

        if source.kind == SourceKind.PLAYLIST:
            input_args = self._playlist_input(job, source)
        else:
            input_args = self._video_input(job, source)

        args = [*_INPUT_FLAGS, *input_args, *self._output_args(job), job.destination]
        return CommandSpec(args=args, destination=job.destination)

    def cleanup(self, job_id: str) -> bool:
        path = self.concat_file(job_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("concat_file_cleanup_failed", job_id=job_id, path=str(path), error=str(e))
            return False
        logger.info("concat_file_removed", job_id=job_id, path=str(path))
        return True

    # === Inputs ===

    def _video_input(self, job: Job, source: MediaSource) -> list[str]:
        if not source.items:
            raise SourceMissingError("Video record has no file").with_context(job_id=job.id)

        video_path = self.resolve_media_path(source.items[0].filepath)
        if not video_path.is_file():
            logger.error(
                "video_file_missing",
                job_id=job.id,
                source_id=source.id,
                path=str(video_path),
                stored_path=source.items[0].filepath,
            )
            raise SourceMissingError("Video file not found on disk").with_context(
                job_id=job.id, path=str(video_path)
            )

        return ["-stream_loop", "-1" if job.loop_video else "0", "-i", str(video_path)]

    def _playlist_input(self, job: Job, source: MediaSource) -> list[str]:
        if not source.items:
            raise EmptySourceError(
                f"Playlist is empty for playlist_id: {source.id}"
            ).with_context(job_id=job.id)

        items = list(source.items)
        if source.shuffle:
            self._rng.shuffle(items)

        paths: list[Path] = []
        for item in items:
            if not item.filepath or not item.filepath.strip():
                raise InvalidPlaylistError(
                    f"Playlist item {item.id} has no file path"
                ).with_context(job_id=job.id, playlist_id=source.id)
            path = self.resolve_media_path(item.filepath)
            if not path.is_file():
                raise SourceMissingError(f"Video file not found: {path}").with_context(
                    job_id=job.id, playlist_id=source.id
                )
            paths.append(path)

        concat_file = self.concat_file(job.id)
        concat_file.parent.mkdir(parents=True, exist_ok=True)
        concat_file.write_text("".join(_concat_line(p) for p in paths), encoding="utf-8")

        args: list[str] = []
        if job.loop_video:
            args += ["-stream_loop", "-1"]
        return args + ["-f", "concat", "-safe", "0", "-i", str(concat_file)]

    # === Output ===

    @staticmethod
    def _output_args(job: Job) -> list[str]:
        if not job.use_advanced_settings:
            return ["-c:v", "copy", *_AUDIO_FLAGS, "-f", "flv"]

        resolution = job.resolution or DEFAULT_RESOLUTION
        bitrate = job.bitrate or DEFAULT_BITRATE_KBPS
        fps = job.fps or DEFAULT_FPS
        gop = str(fps * 2)
        return [
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-profile:v", "high",
            "-level", "4.1",
            "-b:v", f"{bitrate}k",
            "-maxrate", f"{round(bitrate * 1.2)}k",
            "-bufsize", f"{bitrate * 2}k",
            "-pix_fmt", "yuv420p",
            "-g", gop,
            "-keyint_min", gop,
            "-sc_threshold", "0",
            "-s", resolution,
            "-r", str(fps),
            *_AUDIO_FLAGS,
            "-ac", "2",
            "-f", "flv",
        ]


def _concat_line(path: Path) -> str:
    # concat demuxer quoting: close the quote, escape, reopen
    quoted = path.as_posix().replace("'", "'\\''")
    return f"file '{quoted}'\n"
