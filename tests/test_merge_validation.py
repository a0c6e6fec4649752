from __future__ import annotations

from pathlib import Path

import pytest

from engine.errors import MergeValidationError
from media.merge import build_merge_command, merge_video_audio


def _write(path: Path, data: bytes = b"payload") -> str:
    path.write_bytes(data)
    return str(path)


def test_merge_command_stream_copies_first_video_and_audio() -> None:
    command = build_merge_command("ffmpeg", "v.webm", "a.m4a", "out.mp4")

    assert command[0] == "ffmpeg"
    assert command[command.index("-c") + 1] == "copy"
    maps = [command[i + 1] for i, arg in enumerate(command) if arg == "-map"]
    assert maps == ["0:v:0", "1:a:0"]
    assert "-y" in command
    assert command[-1] == "out.mp4"


def test_missing_input_fails_before_running_ffmpeg(tmp_path: Path) -> None:
    calls = []
    audio = _write(tmp_path / "a.m4a")

    with pytest.raises(MergeValidationError, match="Video file missing"):
        merge_video_audio(str(tmp_path / "v.webm"), audio, str(tmp_path / "out.mp4"), runner=calls.append)

    assert calls == []


def test_empty_input_fails_before_running_ffmpeg(tmp_path: Path) -> None:
    calls = []
    video = _write(tmp_path / "v.webm")
    audio = _write(tmp_path / "a.m4a", b"")

    with pytest.raises(MergeValidationError, match="Audio file is empty"):
        merge_video_audio(video, audio, str(tmp_path / "out.mp4"), runner=calls.append)

    assert calls == []


def test_zero_exit_without_output_is_a_failure(tmp_path: Path) -> None:
    video = _write(tmp_path / "v.webm")
    audio = _write(tmp_path / "a.m4a")

    with pytest.raises(MergeValidationError, match="not created"):
        merge_video_audio(video, audio, str(tmp_path / "out.mp4"), runner=lambda command, timeout=None: "")


def test_empty_output_is_a_failure(tmp_path: Path) -> None:
    video = _write(tmp_path / "v.webm")
    audio = _write(tmp_path / "a.m4a")
    output = tmp_path / "out.mp4"

    def _runner(command, timeout=None):
        output.write_bytes(b"")

    with pytest.raises(MergeValidationError, match="empty"):
        merge_video_audio(video, audio, str(output), runner=_runner)


def test_successful_merge_returns_output_and_passes_timeout(tmp_path: Path) -> None:
    video = _write(tmp_path / "v.webm")
    audio = _write(tmp_path / "a.m4a")
    output = tmp_path / "show" / "ep" / "ep.mp4"
    seen = {}

    def _runner(command, timeout=None):
        seen["timeout"] = timeout
        seen["command"] = command
        Path(command[-1]).write_bytes(b"merged")

    result = merge_video_audio(video, audio, str(output), ffmpeg_path="/opt/ffmpeg", timeout=1800, runner=_runner)

    assert result == str(output)
    assert seen["timeout"] == 1800
    assert seen["command"][0] == "/opt/ffmpeg"
