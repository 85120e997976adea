import asyncio
import collections
import logging
import os

from torrentstream.config import (
    FFMPEG_BIN,
    HLS_LIST_SIZE,
    HLS_TIME,
    PACKAGER_STARTUP_SECONDS,
    PLAYLIST_NAME,
)
from torrentstream.errors import PackagingError

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50


class HlsPackager:
    """
    Runs one ffmpeg process that reads a file over HTTP and writes a rolling
    HLS playlist into an output directory. The input URL must answer Range
    requests so ffmpeg can seek, e.g. to an MP4 index stored at the end.
    """

    def __init__(
        self,
        ffmpeg_bin=FFMPEG_BIN,
        hls_time=HLS_TIME,
        list_size=HLS_LIST_SIZE,
        startup_seconds=PACKAGER_STARTUP_SECONDS,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.hls_time = hls_time
        self.list_size = list_size
        self.startup_seconds = startup_seconds
        self.process = None
        self._stderr_task = None
        self._stderr = collections.deque(maxlen=STDERR_TAIL_LINES)

    @property
    def returncode(self):
        return self.process.returncode if self.process else None

    @property
    def error_output(self):
        return "\n".join(self._stderr)

    def build_command(self, input_url, output_dir):
        return [
            self.ffmpeg_bin,
            '-hide_banner',
            '-seekable', '1',
            '-i', input_url,
            '-c:v', 'copy',
            '-c:a', 'aac',
            '-f', 'hls',
            '-hls_time', str(self.hls_time),
            '-hls_list_size', str(self.list_size),
            '-hls_flags', 'delete_segments',
            '-hls_segment_filename', os.path.join(output_dir, 'segment%03d.ts'),
            os.path.join(output_dir, PLAYLIST_NAME),
        ]

    async def start(self, input_url, output_dir):
        """
        Spawns ffmpeg. Returns once the playlist exists or ffmpeg has
        survived the startup window, whichever comes first.
        """
        ffmpeg_cmd = self.build_command(input_url, output_dir)
        logger.info(f"Starting FFmpeg: {' '.join(ffmpeg_cmd)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *ffmpeg_cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise PackagingError(f"Could not start ffmpeg: {e}") from e

        try:
            self._stderr_task = asyncio.create_task(self._monitor_stderr())
            await self._wait_for_startup(os.path.join(output_dir, PLAYLIST_NAME))
        except BaseException:
            await self.stop()
            raise

    async def _wait_for_startup(self, playlist_path):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_seconds
        while not os.path.exists(playlist_path) and loop.time() < deadline:
            if self.process.returncode is not None:
                break
            await asyncio.sleep(0.1)

        returncode = self.process.returncode
        if returncode is not None and (returncode != 0 or not os.path.exists(playlist_path)):
            # Let the monitor collect what ffmpeg printed before it died
            if self._stderr_task is not None:
                await asyncio.wait([self._stderr_task], timeout=1)
            error_msg = self.error_output or "Unknown error"
            logger.error(f"FFmpeg process failed with return code {returncode}. Error: {error_msg}")
            raise PackagingError(
                f"FFmpeg conversion failed: {error_msg[:200]}",
                diagnostics={"returncode": returncode},
            )

    async def _monitor_stderr(self):
        while True:
            line = await self.process.stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").strip()
            self._stderr.append(text)
            logger.debug(f"FFmpeg stderr: {text}")

    async def stop(self):
        """Terminates ffmpeg. Safe to call more than once."""
        process = self.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=5)
                except asyncio.TimeoutError:
                    logger.warning("FFmpeg did not exit after terminate, killing it")
                    process.kill()
                    await process.wait()
                logger.info(f"Terminated ffmpeg process {process.pid}")
            except ProcessLookupError:
                pass  # Process already dead

        task = self._stderr_task
        if task is not None:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
