"""Tests for FFmpegCommandBuilder."""

from __future__ import annotations

import random

import pytest

from streamkeeper.core.errors import BuildError, EmptySourceError, InvalidPlaylistError, SourceMissingError
from streamkeeper.core.models import Job, JobWithSource, MediaItem, MediaSource, SourceKind
from streamkeeper.execution.commands import CommandBuilder, CommandSpec, FFmpegCommandBuilder


@pytest.fixture()
def media_root(tmp_path):
    root = tmp_path / "public"
    (root / "uploads").mkdir(parents=True)
    for name in ("a.mp4", "b.mp4", "c.mp4", "it's.mp4"):
        (root / "uploads" / name).write_bytes(b"\x00")
    return root


@pytest.fixture()
def ffmpeg(media_root, tmp_path):
    return FFmpegCommandBuilder(media_root, tmp_path / "temp", rng=random.Random(7))


def _job(**fields) -> Job:
    fields.setdefault("id", "j1")
    fields.setdefault("source_id", "v1")
    fields.setdefault("rtmp_url", "rtmp://live.example.com/app")
    fields.setdefault("stream_key", "secret")
    return Job(**fields)


def _video(filepath: str = "/uploads/a.mp4") -> MediaSource:
    return MediaSource(kind=SourceKind.VIDEO, id="v1", items=(MediaItem(id="v1", filepath=filepath),))


def _playlist(*names: str, shuffle: bool = False) -> MediaSource:
    items = tuple(MediaItem(id=f"m{n}", filepath=f"/uploads/{name}") for n, name in enumerate(names))
    return MediaSource(kind=SourceKind.PLAYLIST, id="p1", items=items, shuffle=shuffle)


class TestVideoCommand:
    def test_satisfies_protocol(self, ffmpeg):
        assert isinstance(ffmpeg, CommandBuilder)

    def test_copy_mode(self, ffmpeg, media_root):
        spec = ffmpeg.build(JobWithSource(_job(), _video()))
        assert isinstance(spec, CommandSpec)
        assert spec.destination == "rtmp://live.example.com/app/secret"
        assert spec.args[:6] == ["-nostdin", "-loglevel", "warning", "-re", "-fflags", "+genpts+igndts"]
        i = spec.args.index("-i")
        assert spec.args[i - 2 : i] == ["-stream_loop", "0"]
        assert spec.args[i + 1] == str((media_root / "uploads" / "a.mp4").resolve())
        assert spec.args[spec.args.index("-c:v") + 1] == "copy"
        assert spec.args[-9:] == ["-c:a", "aac", "-b:a", "128k", "-ar", "44100", "-f", "flv", spec.destination]

    def test_loop_video(self, ffmpeg):
        spec = ffmpeg.build(JobWithSource(_job(loop_video=True), _video()))
        assert spec.args[spec.args.index("-stream_loop") + 1] == "-1"

    def test_relative_filepath(self, ffmpeg, media_root):
        spec = ffmpeg.build(JobWithSource(_job(), _video("uploads/b.mp4")))
        assert str((media_root / "uploads" / "b.mp4").resolve()) in spec.args

    def test_advanced_mode(self, ffmpeg):
        job = _job(use_advanced_settings=True, resolution="1920x1080", bitrate=4000, fps=60)
        args = ffmpeg.build(JobWithSource(job, _video())).args

        def opt(name):
            return args[args.index(name) + 1]

        assert opt("-c:v") == "libx264"
        assert opt("-preset") == "veryfast"
        assert opt("-b:v") == "4000k"
        assert opt("-maxrate") == "4800k"
        assert opt("-bufsize") == "8000k"
        assert opt("-g") == "120"
        assert opt("-keyint_min") == "120"
        assert opt("-s") == "1920x1080"
        assert opt("-r") == "60"
        assert opt("-ac") == "2"
        assert opt("-f") == "flv"

    def test_advanced_defaults(self, ffmpeg):
        args = ffmpeg.build(JobWithSource(_job(use_advanced_settings=True), _video())).args
        assert args[args.index("-s") + 1] == "1280x720"
        assert args[args.index("-b:v") + 1] == "2500k"
        assert args[args.index("-g") + 1] == "60"

    def test_render(self, ffmpeg):
        spec = ffmpeg.build(JobWithSource(_job(), _video()))
        assert spec.render("/usr/bin/ffmpeg").startswith("/usr/bin/ffmpeg -nostdin ")


class TestBuildErrors:
    def test_missing_destination(self, ffmpeg):
        with pytest.raises(BuildError):
            ffmpeg.build(JobWithSource(_job(rtmp_url=""), _video()))

    def test_no_source_id(self, ffmpeg):
        with pytest.raises(SourceMissingError):
            ffmpeg.build(JobWithSource(_job(source_id=None), None))

    def test_missing_video_record(self, ffmpeg):
        with pytest.raises(SourceMissingError, match="Video record not found"):
            ffmpeg.build(JobWithSource(_job(), None))

    def test_missing_playlist_record(self, ffmpeg):
        with pytest.raises(SourceMissingError, match="Playlist not found"):
            ffmpeg.build(JobWithSource(_job(source_type=SourceKind.PLAYLIST, source_id="p1"), None))

    def test_file_not_on_disk(self, ffmpeg):
        with pytest.raises(SourceMissingError) as exc_info:
            ffmpeg.build(JobWithSource(_job(), _video("/uploads/missing.mp4")))
        assert exc_info.value.context["job_id"] == "j1"

    def test_empty_playlist(self, ffmpeg):
        job = _job(source_type=SourceKind.PLAYLIST, source_id="p1")
        with pytest.raises(EmptySourceError):
            ffmpeg.build(JobWithSource(job, _playlist()))

    def test_blank_item_path(self, ffmpeg):
        job = _job(source_type=SourceKind.PLAYLIST, source_id="p1")
        source = MediaSource(
            kind=SourceKind.PLAYLIST, id="p1", items=(MediaItem(id="m1", filepath="  "),)
        )
        with pytest.raises(InvalidPlaylistError):
            ffmpeg.build(JobWithSource(job, source))


class TestPlaylistCommand:
    def test_concat_file_written_in_order(self, ffmpeg, media_root):
        job = _job(source_type=SourceKind.PLAYLIST, source_id="p1")
        spec = ffmpeg.build(JobWithSource(job, _playlist("b.mp4", "a.mp4", "c.mp4")))

        concat = ffmpeg.concat_file("j1")
        assert concat.name == "playlist_j1.txt"
        lines = concat.read_text(encoding="utf-8").splitlines()
        uploads = (media_root / "uploads").resolve()
        assert lines == [f"file '{(uploads / n).as_posix()}'" for n in ("b.mp4", "a.mp4", "c.mp4")]

        i = spec.args.index("-i")
        assert spec.args[i - 4 : i + 2] == ["-f", "concat", "-safe", "0", "-i", str(concat)]
        assert "-stream_loop" not in spec.args

    def test_loop_playlist(self, ffmpeg):
        job = _job(source_type=SourceKind.PLAYLIST, source_id="p1", loop_video=True)
        args = ffmpeg.build(JobWithSource(job, _playlist("a.mp4"))).args
        assert args[args.index("-stream_loop") + 1] == "-1"
        assert args.index("-stream_loop") < args.index("concat")

    def test_quotes_are_escaped(self, ffmpeg):
        job = _job(source_type=SourceKind.PLAYLIST, source_id="p1")
        ffmpeg.build(JobWithSource(job, _playlist("it's.mp4")))
        assert "it'\\''s.mp4" in ffmpeg.concat_file("j1").read_text(encoding="utf-8")

    def test_shuffle_keeps_all_items(self, ffmpeg):
        job = _job(source_type=SourceKind.PLAYLIST, source_id="p1")
        ffmpeg.build(JobWithSource(job, _playlist("a.mp4", "b.mp4", "c.mp4", shuffle=True)))
        lines = ffmpeg.concat_file("j1").read_text(encoding="utf-8").splitlines()
        assert sorted(line.rsplit("/", 1)[1] for line in lines) == ["a.mp4'", "b.mp4'", "c.mp4'"]

    def test_cleanup(self, ffmpeg):
        job = _job(source_type=SourceKind.PLAYLIST, source_id="p1")
        ffmpeg.build(JobWithSource(job, _playlist("a.mp4")))
        assert ffmpeg.cleanup("j1") is True
        assert not ffmpeg.concat_file("j1").exists()
        assert ffmpeg.cleanup("j1") is False
