from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from engine.errors import ProcessFailedError
from engine.governor import ResourceGovernor
from media import acquisition
from media.acquisition import (
    AcquisitionError,
    MediaAcquirer,
    SourceMetadata,
    build_ytdlp_command,
    metadata_from_info,
    select_quality_tier,
    template_outputs,
)
from media.progress import PROGRESS_TEMPLATE
from media.transcode import TIER_720, TIER_1080


def _acquirer(settings, runner, **kwargs):
    governor = ResourceGovernor(cpu_count=2, sleep=lambda seconds: None)
    return MediaAcquirer(settings, governor, runner=runner, **kwargs)


def test_quality_tier_uses_filesize_threshold() -> None:
    small = SourceMetadata(video_id="a", title="t", filesize_approx=999_999)
    large = SourceMetadata(video_id="a", title="t", filesize_approx=1_000_000)
    unknown = SourceMetadata(video_id="a", title="t")

    assert select_quality_tier(small, 1_000_000) == TIER_1080
    assert select_quality_tier(large, 1_000_000) == TIER_720
    assert select_quality_tier(unknown, 1_000_000) == TIER_720


def test_metadata_from_info_prefers_filesize_approx() -> None:
    metadata = metadata_from_info(
        {"id": "abc", "title": "Talk", "filesize_approx": 1234.0, "filesize": 99, "duration": 61}
    )

    assert metadata.filesize_approx == 1234
    assert metadata.duration == 61.0
    with pytest.raises(AcquisitionError):
        metadata_from_info({"title": "no id"})


def test_ytdlp_command_carries_fragments_plugins_cookies_and_template(settings_factory) -> None:
    settings = settings_factory(
        cookies_file="/secrets/cookies.txt",
        plugin_dirs=("/plugins/a", "/plugins/b"),
        concurrent_fragments=8,
    )

    command = build_ytdlp_command(settings, "https://youtu.be/x", "/tmp/audio_1.%(ext)s", "bestaudio", extract_audio=True)

    assert command[0] == "yt-dlp"
    assert command[command.index("-N") + 1] == "8"
    assert command[command.index("--progress-template") + 1] == PROGRESS_TEMPLATE
    assert command[command.index("--cookies") + 1] == "/secrets/cookies.txt"
    assert [command[i + 1] for i, arg in enumerate(command) if arg == "--plugin-dirs"] == ["/plugins/a", "/plugins/b"]
    assert command[command.index("--audio-format") + 1] == "mp3"
    assert "--no-part" in command
    assert command[-1] == "https://youtu.be/x"


def test_acquire_audio_returns_sanitized_reported_path(tmp_path, settings_factory) -> None:
    temp = tmp_path / "temp"
    temp.mkdir()
    reported = temp / 'audio_1_show_"ep".mp3'

    def _runner(command, timeout=None, line_callback=None):
        reported.write_bytes(b"audio")
        line_callback(f"[ExtractAudio] Destination: {reported}")
        return ""

    path = _acquirer(settings_factory(), _runner).acquire_audio("https://youtu.be/x", str(temp / "audio_1.%(ext)s"))

    assert path == str(temp / "audio_1_show_ep.mp3")
    assert Path(path).read_bytes() == b"audio"
    assert not reported.exists()


def test_acquire_video_falls_back_to_template_glob(tmp_path, settings_factory) -> None:
    template = str(tmp_path / "video_1_show_ep.%(ext)s")
    seen = {}

    def _runner(command, timeout=None, line_callback=None):
        seen["format"] = command[command.index("-f") + 1]
        seen["timeout"] = timeout
        (tmp_path / "video_1_show_ep.webm").write_bytes(b"video")
        return ""

    path = _acquirer(settings_factory(acquisition_timeout=60), _runner).acquire_video(
        "https://youtu.be/x", template, TIER_1080
    )

    assert path == str(tmp_path / "video_1_show_ep.webm")
    assert seen["format"].startswith("bestvideo[height<=1080]")
    assert seen["timeout"] == 60


def test_acquisition_is_retried_with_backoff(tmp_path, settings_factory) -> None:
    calls = {"count": 0}

    def _runner(command, timeout=None, line_callback=None):
        calls["count"] += 1
        if calls["count"] < 3:
            raise ProcessFailedError(1, command, "HTTP Error 503")
        (tmp_path / "audio_1.mp3").write_bytes(b"a")
        return ""

    path = _acquirer(settings_factory(retry_attempts=3), _runner).acquire_audio(
        "https://youtu.be/x", str(tmp_path / "audio_1.%(ext)s")
    )

    assert calls["count"] == 3
    assert path.endswith("audio_1.mp3")


def test_missing_binary_is_not_retried(tmp_path, settings_factory) -> None:
    calls = {"count": 0}

    def _runner(command, timeout=None, line_callback=None):
        calls["count"] += 1
        raise ProcessFailedError(127, command, "yt-dlp is not installed")

    with pytest.raises(ProcessFailedError):
        _acquirer(settings_factory(retry_attempts=3), _runner).acquire_audio(
            "https://youtu.be/x", str(tmp_path / "audio_1.%(ext)s")
        )

    assert calls["count"] == 1


def test_no_output_file_is_an_error(tmp_path, settings_factory) -> None:
    with pytest.raises(AcquisitionError):
        _acquirer(settings_factory(retry_attempts=1), lambda command, **kwargs: "").acquire_audio(
            "https://youtu.be/x", str(tmp_path / "audio_1.%(ext)s")
        )


def test_template_outputs_lists_partial_files(tmp_path) -> None:
    (tmp_path / "video_1_a.webm").write_bytes(b"x")
    (tmp_path / "video_1_a.webm.part").write_bytes(b"x")
    (tmp_path / "video_2_a.webm").write_bytes(b"x")

    outputs = template_outputs(str(tmp_path / "video_1_a.%(ext)s"))

    assert outputs == [str(tmp_path / "video_1_a.webm"), str(tmp_path / "video_1_a.webm.part")]


def test_fetch_metadata_uses_youtube_dl_under_network_pool(monkeypatch, settings_factory) -> None:
    opened = {}

    class _FakeYoutubeDL:
        def __init__(self, opts):
            opened["opts"] = opts

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def extract_info(self, url, download=False):
            opened["download"] = download
            return {"id": "vid", "title": "Talk", "filesize_approx": 5_000}

    monkeypatch.setattr(acquisition, "YoutubeDL", _FakeYoutubeDL)

    metadata = _acquirer(settings_factory(), lambda *a, **k: "").fetch_metadata("https://youtu.be/vid")

    assert metadata.video_id == "vid"
    assert opened["download"] is False
    assert opened["opts"]["skip_download"] is True


def test_download_thumbnail_streams_to_disk(tmp_path, settings_factory) -> None:
    class _Response:
        def raise_for_status(self):
            return None

        def iter_content(self, chunk_size):
            yield b"jpeg-"
            yield b""
            yield b"bytes"

    http = SimpleNamespace(get=lambda url, timeout, stream: _Response())
    dest = tmp_path / "temp" / "thumb.jpg"

    result = _acquirer(settings_factory(), lambda *a, **k: "", http=http).download_thumbnail(
        "https://i.ytimg.com/vi/x/hq.jpg", str(dest)
    )

    assert result == str(dest)
    assert dest.read_bytes() == b"jpeg-bytes"
