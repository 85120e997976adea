"""
Stream session orchestration.

A session moves through these states::

    DISCOVERING -> LISTED -> AWAITING_READINESS -> ACTIVE -> DESTROYED

A failure at any step leads to a full teardown before the error reaches the
caller. Sessions are registered only once a non-empty media list is known,
so a failed discovery never leaves anything behind.

The orchestrator never keeps ``Session`` objects around. Every read is a
registry snapshot and every write is a registry mutation, so a teardown
racing with a selection is settled by whichever reaches the registry first.
"""
import asyncio
import logging
import shutil
from pathlib import Path

from torrentstream import background
from torrentstream.config import (
    DISCOVERY_TIMEOUT_SECONDS,
    HLS_PATH,
    IDLE_TIMEOUT_SECONDS,
    METRICS_INTERVAL_SECONDS,
    PLAYLIST_NAME,
    SOURCE_BASE_URL,
)
from torrentstream.errors import (
    FileNotFoundInTorrentError,
    NotFoundError,
    PackagingError,
    SelectionConflictError,
    SessionNotFoundError,
    StreamerError,
    ValidationError,
)
from torrentstream.models import SessionState, StreamInfo
from torrentstream.readiness import ReadinessGate, wait_for_discovery
from torrentstream.registry import SessionRegistry
from torrentstream.utils import (
    get_media_files,
    get_session_status,
    make_stream_id,
    parse_stream_id,
)

logger = logging.getLogger(__name__)


class StreamOrchestrator:
    def __init__(
        self,
        engine_factory,
        packager_factory,
        hls_path=HLS_PATH,
        registry=None,
        gate=None,
        discovery_timeout=DISCOVERY_TIMEOUT_SECONDS,
        idle_timeout=IDLE_TIMEOUT_SECONDS,
        metrics_interval=METRICS_INTERVAL_SECONDS,
        playlist_prefix="/api/stream",
        source_base_url=SOURCE_BASE_URL,
    ):
        self.engine_factory = engine_factory
        self.packager_factory = packager_factory
        self.hls_path = Path(hls_path)
        self.registry = registry or SessionRegistry()
        self.gate = gate or ReadinessGate()
        self.discovery_timeout = discovery_timeout
        self.idle_timeout = idle_timeout
        self.metrics_interval = metrics_interval
        self.playlist_prefix = playlist_prefix
        self.source_base_url = source_base_url

    # --- Discovery ---

    async def list_files(self, descriptor):
        """Resolves a magnet link and registers a session for its media files."""
        if not descriptor or not descriptor.strip():
            raise ValidationError("Magnet link is required")
        descriptor = descriptor.strip()

        engine = self.engine_factory(descriptor)
        try:
            await wait_for_discovery(engine, timeout=self.discovery_timeout)
            media_files = get_media_files(engine.files)
            if not media_files:
                raise FileNotFoundInTorrentError("No media files found in torrent")
        except BaseException as e:
            logger.error(f"Discovery failed: {e}")
            await self._destroy_engine(engine)
            raise

        session_id = self.registry.create(descriptor, engine, media_files)

        def arm_idle_timer(session):
            session.idle_task = asyncio.create_task(
                background.expire_unselected_session(self, session_id, self.idle_timeout)
            )
        self.registry.update(session_id, arm_idle_timer)
        return session_id, media_files

    # --- Selection and activation ---

    async def select_file(self, session_id, file_index):
        """
        Selects one file and waits until its HLS stream is running.

        Selection happens once per session. Asking again for the same file
        joins the pending activation or returns the running stream; asking
        for another file is a conflict.
        """
        def claim(session):
            if session.selected:
                if session.selected_file.index != file_index:
                    raise SelectionConflictError(
                        f"Session {session_id} is already streaming file {session.selected_file.index}"
                    )
                return session.activation_task

            media_file = next((f for f in session.files if f.index == file_index), None)
            if media_file is None:
                raise FileNotFoundInTorrentError(f"File not found in torrent: {file_index}")

            session.selected = True
            session.selected_file = media_file
            session.state = SessionState.AWAITING_READINESS
            if session.idle_task is not None:
                session.idle_task.cancel()
                session.idle_task = None
            session.activation_task = asyncio.create_task(self._activate(session_id))
            logger.info(f"Session {session_id} selected file {file_index}: {media_file.name}")
            return session.activation_task

        activation = self.registry.update(session_id, claim)
        try:
            return await asyncio.shield(activation)
        except asyncio.CancelledError:
            if activation.cancelled():
                raise SessionNotFoundError(session_id) from None
            raise

    async def _activate(self, session_id):
        session = self.registry.get(session_id)
        engine = session.engine
        media_file = session.selected_file
        try:
            engine.select(media_file.index)
            await self.gate.wait(engine, on_poll=lambda stats: self._store_metrics(session_id, stats))

            stream_id = make_stream_id(session_id, media_file.index)
            output_dir = self.hls_path / stream_id
            packager = self.packager_factory()

            def attach(s):
                if s.state is not SessionState.AWAITING_READINESS:
                    raise SessionNotFoundError(session_id)
                s.state = SessionState.ACTIVE
                s.stream_id = stream_id
                s.output_dir = output_dir
                s.packager = packager
            self.registry.update(session_id, attach)

            output_dir.mkdir(parents=True, exist_ok=True)
            await packager.start(self.source_url(stream_id), output_dir)

            def start_sampler(s):
                s.sampler_task = asyncio.create_task(
                    background.sample_metrics(self, session_id, self.metrics_interval)
                )
            self.registry.update(session_id, start_sampler)
        except asyncio.CancelledError:
            raise
        except StreamerError as e:
            e.diagnostics = {**self._diagnostics(engine), **e.diagnostics}
            logger.error(f"Activation of session {session_id} failed: {e.message}")
            await self.teardown(session_id, reason=e.message)
            raise
        except Exception as e:
            logger.error(f"Activation of session {session_id} failed: {e}", exc_info=True)
            await self.teardown(session_id, reason=str(e))
            raise PackagingError(f"Failed to start stream: {e}", diagnostics=self._diagnostics(engine)) from e

        logger.info(f"Session {session_id} is streaming as {stream_id}")
        return StreamInfo(
            stream_id=stream_id,
            playlist_url=f"{self.playlist_prefix}/{stream_id}/{PLAYLIST_NAME}",
            file_name=media_file.name,
        )

    def _store_metrics(self, session_id, stats):
        self.registry.update(session_id, lambda s: setattr(s, "metrics", stats))

    @staticmethod
    def _diagnostics(engine):
        try:
            return engine.stats().as_dict()
        except Exception:
            logger.debug("Could not read engine counters for diagnostics", exc_info=True)
            return {}

    # --- Queries ---

    def status(self, session_id):
        return get_session_status(self.registry.get(session_id))

    def list_sessions(self):
        return [get_session_status(s) for s in self.registry.sessions()]

    def _stream_session(self, stream_id):
        session = self.registry.get(parse_stream_id(stream_id))
        if session.stream_id != stream_id or session.output_dir is None:
            raise NotFoundError(f"Stream not found: {stream_id}")
        return session

    def stream_directory(self, stream_id):
        """Returns the HLS directory of an active stream."""
        return self._stream_session(stream_id).output_dir

    def stream_file(self, stream_id):
        """Returns the torrent file an active stream is packaging."""
        return self._stream_session(stream_id).selected_file

    def source_url(self, stream_id):
        return f"{self.source_base_url}{self.playlist_prefix}/{stream_id}/source"

    async def read_source(self, stream_id, start, end):
        """
        Yields a byte range of the stream's file as the swarm delivers it.
        A failed read is recorded on the session, and the metrics sampler
        then tears the stream down: ffmpeg may well treat the truncated
        input as a normal end of file.
        """
        session = self._stream_session(stream_id)
        try:
            async for chunk in session.engine.read_range(session.selected_file.index, start, end):
                yield chunk
        except Exception as e:
            logger.error(f"Reading {stream_id} at bytes {start}-{end} failed: {e}", exc_info=True)

            def record(s):
                s.source_error = str(e) or type(e).__name__
            try:
                self.registry.update(session.session_id, record)
            except SessionNotFoundError:
                pass
            raise

    # --- Teardown ---

    async def destroy_stream(self, stream_id):
        session_id = parse_stream_id(stream_id)
        if not await self.teardown(session_id, reason="stream deleted"):
            raise NotFoundError(f"Stream not found: {stream_id}")

    async def destroy_session(self, session_id):
        if not await self.teardown(session_id, reason="session deleted"):
            raise SessionNotFoundError(session_id)

    async def teardown(self, session_id, reason, only_if=None):
        """
        Removes a session and releases everything it owns. Returns False if
        the session was already gone, which makes repeated calls harmless.
        """
        session = self.registry.destroy(session_id, only_if=only_if)
        if session is None:
            return False
        logger.info(f"Tearing down session {session_id} ({reason})")
        await self._release(session)
        return True

    async def _release(self, session):
        current = asyncio.current_task()
        for task in (session.idle_task, session.activation_task, session.sampler_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        if session.packager is not None:
            try:
                await session.packager.stop()
            except Exception as e:
                logger.error(f"Error stopping packager for {session.session_id}: {e}")

        await self._destroy_engine(session.engine)

        if session.output_dir is not None and session.output_dir.exists():
            try:
                shutil.rmtree(session.output_dir)
                logger.info(f"Deleted HLS directory: {session.output_dir}")
            except Exception as e:
                logger.error(f"Error cleaning up HLS directory: {e}")

        session.state = SessionState.DESTROYED

    async def _destroy_engine(self, engine):
        try:
            await engine.destroy()
        except Exception as e:
            logger.error(f"Error destroying torrent engine: {e}")

    async def shutdown(self):
        for session_id in self.registry.session_ids():
            await self.teardown(session_id, reason="shutdown")
