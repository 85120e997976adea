import shutil
import sys

import pytest

from torrentstream.errors import PackagingError
from torrentstream.packager import HlsPackager

SOURCE_URL = "http://127.0.0.1:6991/api/stream/abc_1/source"

# Stands in for ffmpeg: notes the input it was given next to the playlist it
# "produces", then optionally keeps running like a live encode.
FAKE_FFMPEG = (
    "import pathlib, sys, time\n"
    "url, out, linger = sys.argv[1], pathlib.Path(sys.argv[2]), float(sys.argv[3])\n"
    "(out / 'input.txt').write_text(url)\n"
    "(out / 'playlist.m3u8').write_text('#EXTM3U\\n')\n"
    "time.sleep(linger)\n"
)


class ScriptPackager(HlsPackager):
    def __init__(self, linger=0, **kwargs):
        super().__init__(**kwargs)
        self.linger = linger

    def build_command(self, input_url, output_dir):
        return [sys.executable, "-c", FAKE_FFMPEG, input_url, str(output_dir), str(self.linger)]


def test_build_command_reads_seekable_url_and_writes_rolling_hls(tmp_path):
    packager = HlsPackager(ffmpeg_bin="/usr/bin/ffmpeg", hls_time=4, list_size=3)
    cmd = packager.build_command(SOURCE_URL, tmp_path)

    assert cmd[0] == "/usr/bin/ffmpeg"
    assert cmd[cmd.index("-i") + 1] == SOURCE_URL
    assert cmd[cmd.index("-seekable") + 1] == "1"
    assert cmd.index("-seekable") < cmd.index("-i")
    assert "pipe:0" not in cmd
    assert cmd[cmd.index("-hls_time") + 1] == "4"
    assert cmd[cmd.index("-hls_list_size") + 1] == "3"
    assert cmd[cmd.index("-hls_flags") + 1] == "delete_segments"
    assert cmd[cmd.index("-hls_segment_filename") + 1] == str(tmp_path / "segment%03d.ts")
    assert cmd[-1] == str(tmp_path / "playlist.m3u8")


@pytest.mark.asyncio
async def test_missing_binary_is_a_packaging_error(tmp_path):
    packager = HlsPackager(ffmpeg_bin=str(tmp_path / "no-such-ffmpeg"))
    with pytest.raises(PackagingError, match="Could not start ffmpeg"):
        await packager.start(SOURCE_URL, tmp_path)


@pytest.mark.asyncio
async def test_process_dying_during_startup_is_a_packaging_error(tmp_path):
    false_bin = shutil.which("false")
    if false_bin is None:
        pytest.skip("no 'false' binary available")
    packager = HlsPackager(ffmpeg_bin=false_bin, startup_seconds=5)

    with pytest.raises(PackagingError) as excinfo:
        await packager.start(SOURCE_URL, tmp_path)
    assert excinfo.value.diagnostics["returncode"] == 1


@pytest.mark.asyncio
async def test_process_is_given_the_source_url(tmp_path):
    packager = ScriptPackager(startup_seconds=5)

    await packager.start(SOURCE_URL, tmp_path)
    await packager.process.wait()

    assert packager.returncode == 0
    assert (tmp_path / "input.txt").read_text() == SOURCE_URL
    assert (tmp_path / "playlist.m3u8").exists()
    await packager.stop()


@pytest.mark.asyncio
async def test_stop_is_safe_before_start_and_twice(tmp_path):
    packager = HlsPackager()
    await packager.stop()
    assert packager.returncode is None

    script = ScriptPackager(linger=30, startup_seconds=5)
    await script.start(SOURCE_URL, tmp_path)
    assert script.returncode is None

    await script.stop()
    await script.stop()
    assert script.returncode is not None
