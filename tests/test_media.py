import os
import stat

import pytest

from camrecorder.media import MediaInspector


def fake_tool(tmp_path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


async def test_metadata_is_read_from_ffprobe_json(tmp_path):
    ffprobe = fake_tool(tmp_path, "ffprobe", (
        "echo '{\"streams\": [{\"width\": 1280, \"height\": 720, \"codec_name\": \"h264\"}],"
        " \"format\": {\"duration\": \"61.5\", \"bit_rate\": \"2500000\"}}'\n"
    ))
    inspector = MediaInspector(thumbnails_dir=str(tmp_path / "thumbs"), ffprobe_path=ffprobe)

    meta = await inspector.metadata(str(tmp_path / "video.mp4"))

    assert meta == {
        'duration': 61.5, 'width': 1280, 'height': 720, 'codec': 'h264', 'bitrate': 2500000,
    }


async def test_hung_ffprobe_is_killed_on_timeout(tmp_path):
    pid_file = tmp_path / "ffprobe.pid"
    ffprobe = fake_tool(tmp_path, "ffprobe", f"echo $$ > {pid_file}\nexec sleep 30\n")
    inspector = MediaInspector(
        thumbnails_dir=str(tmp_path / "thumbs"), ffprobe_path=ffprobe, timeout=1.0
    )

    assert await inspector.metadata(str(tmp_path / "video.mp4")) == {}

    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


async def test_missing_ffmpeg_yields_no_thumbnails(tmp_path):
    inspector = MediaInspector(
        thumbnails_dir=str(tmp_path / "thumbs"),
        ffprobe_path="/nonexistent/ffprobe",
        ffmpeg_path="/nonexistent/ffmpeg",
    )

    assert await inspector.thumbnails(str(tmp_path / "video.mp4")) == []
