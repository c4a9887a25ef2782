from pathlib import Path

import pytest

from fanslyrecorder.config import LiveSettingsConfig
from fanslyrecorder.errors import ProcessError
from fanslyrecorder.transcoder import DEFAULT_RECORDING_OPTIONS, Transcoder, contact_sheet_path


MISSING_TOOLS = LiveSettingsConfig(
    ffmpeg_path="/nonexistent/ffmpeg",
    ffprobe_path="/nonexistent/ffprobe",
    mt_path="/nonexistent/mt",
)


def test_capture_command_uses_default_options():
    transcoder = Transcoder(LiveSettingsConfig())
    cmd = transcoder.capture_command("https://x/live.m3u8", Path("/v/a.ts"))
    assert cmd[:3] == ["ffmpeg", "-i", "https://x/live.m3u8"]
    assert cmd[3:-1] == DEFAULT_RECORDING_OPTIONS
    assert cmd[-1] == str(Path("/v/a.ts"))


def test_custom_options_are_shell_split():
    transcoder = Transcoder(LiveSettingsConfig(
        ffmpeg_recording_options='-c copy -metadata title="my stream"',
        ffmpeg_conversion_options="-c:v libx264 -crf 23",
    ))
    assert transcoder.recording_options() == ["-c", "copy", "-metadata", "title=my stream"]
    assert transcoder.conversion_options() == ["-c:v", "libx264", "-crf", "23"]


def test_contact_sheet_path():
    assert contact_sheet_path(Path("/v/alice.mp4")) == Path("/v/alice_contact_sheet.jpg")


@pytest.mark.asyncio
async def test_missing_ffmpeg_raises_process_error(tmp_path):
    with pytest.raises(ProcessError):
        await Transcoder(MISSING_TOOLS).start_capture("https://x/live.m3u8", tmp_path / "a.ts")


@pytest.mark.asyncio
async def test_failures_are_reported_not_raised(tmp_path):
    transcoder = Transcoder(MISSING_TOOLS)
    video = tmp_path / "a.ts"
    video.write_bytes(b"data")

    assert await transcoder.convert_to_mp4(video, tmp_path / "a.mp4") is False
    assert await transcoder.probe_duration(video) == 0.0
    assert await transcoder.generate_contact_sheet(video) is None
