"""Shared fakes for the swarm engine and the segment packager."""

import asyncio
import time

import pytest
import pytest_asyncio

from torrentstream.models import SwarmFile, SwarmStats
from torrentstream.orchestrator import StreamOrchestrator
from torrentstream.readiness import ReadinessGate

MOVIE_FILES = [
    ("a.txt", 100),
    ("movie.mp4", 5_000_000),
    ("sample.mp4", 1_000),
]


def no_data(engine):
    return SwarmStats()


def data_after(seconds, bytes_downloaded=50, peer_count=4):
    """Peers are connected from the start; data shows up after ``seconds``."""
    def stats(engine):
        if time.monotonic() - engine.created_at >= seconds:
            return SwarmStats(bytes_downloaded, peer_count, 1024.0, 128.0)
        return SwarmStats(0, peer_count, 0.0, 0.0)
    return stats


def data_on_poll(poll, bytes_downloaded=50, peer_count=2):
    """Dead swarm until the ``poll``-th call (1-based) to stats()."""
    def stats(engine):
        if engine.polls >= poll:
            return SwarmStats(bytes_downloaded, peer_count, 512.0, 0.0)
        return SwarmStats()
    return stats


def peers_without_data(engine):
    return SwarmStats(0, 3, 0.0, 0.0)


def file_bytes(start, end):
    """The content every fake torrent file has between ``start`` and ``end``."""
    return bytes(i % 251 for i in range(start, end))


class FakeEngine:
    def __init__(self, files, stats=no_data, start_delay=0, start_error=None, destroy_error=None,
                 read_error=None, chunk_size=64 * 1024):
        self._table = files
        self.files = []
        self.error = None
        self.stats_fn = stats
        self.start_delay = start_delay
        self.start_error = start_error
        self.destroy_error = destroy_error
        self.read_error = read_error
        self.chunk_size = chunk_size
        self.priorities = []
        self.polls = 0
        self.reannounces = 0
        self.destroy_calls = 0
        self.created_at = time.monotonic()

    @property
    def destroyed(self):
        return self.destroy_calls > 0

    async def start(self):
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        self.files = [SwarmFile(index=i, name=name, length=length, path=f"torrent/{name}")
                      for i, (name, length) in enumerate(self._table)]
        self.priorities = [1] * len(self.files)

    def select(self, index):
        self.priorities = [7 if i == index else 0 for i in range(len(self.files))]

    def selected_indices(self):
        return [i for i, p in enumerate(self.priorities) if p > 0]

    def stats(self):
        self.polls += 1
        return self.stats_fn(self)

    def reannounce(self):
        self.reannounces += 1

    async def read_range(self, index, start, end):
        length = self.files[index].length
        offset, end = start, min(end, length)
        while offset < end:
            chunk_end = min(end, offset + self.chunk_size)
            if self.read_error is not None and offset > start:
                raise self.read_error
            yield file_bytes(offset, chunk_end)
            offset = chunk_end

    async def destroy(self):
        self.destroy_calls += 1
        if self.destroy_error is not None:
            raise self.destroy_error


class FakePackager:
    def __init__(self, start_error=None, start_delay=0):
        self.start_error = start_error
        self.start_delay = start_delay
        self.returncode = None
        self.error_output = ""
        self.started = False
        self.stop_calls = 0
        self.output_dir = None
        self.input_url = None

    async def start(self, input_url, output_dir):
        self.input_url = input_url
        self.output_dir = output_dir
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        (output_dir / "playlist.m3u8").write_text("#EXTM3U\n#EXT-X-VERSION:3\n")
        (output_dir / "segment000.ts").write_bytes(b"\x47" * 188)
        self.started = True

    async def stop(self):
        self.stop_calls += 1


class Harness:
    """An orchestrator wired to fakes, keeping every engine and packager it created."""

    def __init__(self, hls_path, files=MOVIE_FILES, stats=no_data, engine_kwargs=None,
                 packager_kwargs=None, gate=None, idle_timeout=60, metrics_interval=0.05,
                 discovery_timeout=1.0):
        self.files = files
        self.stats = stats
        self.engine_kwargs = engine_kwargs or {}
        self.packager_kwargs = packager_kwargs or {}
        self.engines = []
        self.packagers = []
        self.hls_path = hls_path
        self.orchestrator = StreamOrchestrator(
            engine_factory=self.make_engine,
            packager_factory=self.make_packager,
            hls_path=hls_path,
            gate=gate or ReadinessGate(poll_interval=0.05, retry_budget=3, timeout=2.0),
            discovery_timeout=discovery_timeout,
            idle_timeout=idle_timeout,
            metrics_interval=metrics_interval,
        )

    def make_engine(self, descriptor):
        engine = FakeEngine(self.files, stats=self.stats, **self.engine_kwargs)
        self.engines.append(engine)
        return engine

    def make_packager(self):
        packager = FakePackager(**self.packager_kwargs)
        self.packagers.append(packager)
        return packager


@pytest_asyncio.fixture
async def make_harness(tmp_path):
    created = []

    def factory(**kwargs):
        harness = Harness(tmp_path / "hls", **kwargs)
        created.append(harness)
        return harness

    yield factory

    for harness in created:
        await harness.orchestrator.shutdown()


@pytest.fixture
def magnet():
    return "magnet:?xt=urn:btih:0123456789abcdef0123456789abcdef01234567&dn=example"
