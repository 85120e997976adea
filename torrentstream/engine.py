import asyncio
import logging
from pathlib import Path

import libtorrent as lt

from torrentstream.config import DOWNLOAD_PATH, MAX_CONNECTIONS, PORT
from torrentstream.errors import AcquisitionError
from torrentstream.models import SwarmFile, SwarmStats

logger = logging.getLogger(__name__)

SELECTED_PRIORITY = 7
SKIPPED_PRIORITY = 0
READAHEAD_PIECES = 8
PIECE_WAIT_SECONDS = 0.2

# --- libtorrent Session ---
# Global session object for libtorrent. Each LibtorrentEngine owns one
# torrent handle inside it.
ses = None


def get_session():
    """Returns the global libtorrent session, creating it if it doesn't exist."""
    global ses
    if ses is None:
        ses = lt.session({
            'listen_interfaces': f'0.0.0.0:{PORT + 10}',
            'alert_mask': lt.alert.category_t.error_notification | lt.alert.category_t.status_notification,
            'user_agent': 'torrentstream/1.0.0',
            'download_rate_limit': 0,
            'upload_rate_limit': 0,
            'connections_limit': MAX_CONNECTIONS * 2,
            'active_dht_limit': 88,
            'active_tracker_limit': 1600,
            'active_lsd_limit': 60,
            'active_limit': 500,
        })
    return ses


async def alert_listener():
    """Drains libtorrent alerts so the queue never fills, logging the interesting ones."""
    session = get_session()
    while True:
        for alert in session.pop_alerts():
            if isinstance(alert, lt.metadata_received_alert):
                logger.info(f"Metadata received for {alert.handle.info_hash()}")
            elif isinstance(alert, lt.torrent_finished_alert):
                logger.info(f"Torrent finished: {alert.handle.info_hash()}")
            elif isinstance(alert, lt.torrent_error_alert):
                logger.error(f"Torrent error for {alert.handle.info_hash()}: {alert.error.message()}")
        await asyncio.sleep(1)


class LibtorrentEngine:
    """A single magnet link's torrent, exposed through the swarm engine interface."""

    def __init__(self, magnet_link, download_path=DOWNLOAD_PATH, session=None):
        self.magnet_link = magnet_link
        self.download_path = Path(download_path)
        self.files = []
        self._session = session or get_session()
        self._handle = None
        self._info = None

    @property
    def error(self):
        if self._handle is None or not self._handle.is_valid():
            return None
        errc = self._handle.status().errc
        if errc.value():
            return errc.message()
        return None

    async def start(self):
        try:
            params = lt.parse_magnet_uri(self.magnet_link)
        except RuntimeError as e:
            raise AcquisitionError(f"Invalid magnet link: {e}") from e

        # libtorrent expects a string path, not Path object
        params.save_path = str(self.download_path)
        params.storage_mode = lt.storage_mode_t.storage_mode_sparse
        params.max_connections = MAX_CONNECTIONS

        logger.info(f"Adding torrent with save_path: {params.save_path}")
        try:
            self._handle = self._session.add_torrent(params)
        except RuntimeError as e:
            raise AcquisitionError(f"Failed to add torrent: {e}") from e

        while not self._handle.has_metadata():
            message = self.error
            if message:
                raise AcquisitionError(f"Torrent error: {message}")
            await asyncio.sleep(0.1)

        self._info = self._handle.torrent_file()
        fs = self._info.files()
        self.files = [
            SwarmFile(index=i, name=fs.file_name(i), length=fs.file_size(i), path=fs.file_path(i))
            for i in range(fs.num_files())
        ]
        logger.info(f"Metadata ready for {self._info.name()}: {len(self.files)} files")

    def select(self, index):
        priorities = [SKIPPED_PRIORITY] * len(self.files)
        priorities[index] = SELECTED_PRIORITY
        self._handle.prioritize_files(priorities)
        logger.info(f"Prioritized file {index}: {self.files[index].name}")

    def selected_indices(self):
        return [i for i, p in enumerate(self._handle.get_file_priorities()) if p > SKIPPED_PRIORITY]

    def stats(self):
        if self._handle is None or not self._handle.is_valid():
            return SwarmStats()
        s = self._handle.status()
        return SwarmStats(
            bytes_downloaded=s.total_wanted_done,
            peer_count=s.num_peers,
            download_rate=s.download_rate,
            upload_rate=s.upload_rate,
        )

    def reannounce(self):
        self._handle.force_reannounce()
        self._handle.force_dht_announce()

    async def read_range(self, index, start, end, readahead=READAHEAD_PIECES):
        """
        Yields bytes ``start`` to ``end`` (exclusive) of a file as their pieces
        complete. Pieces from ``start`` onwards get deadlines, so a seek by
        the reader moves libtorrent's focus to the new position.
        """
        fs = self._info.files()
        end = min(end, fs.file_size(index))
        piece_length = self._info.piece_length()
        num_pieces = self._info.num_pieces()
        file_path = self.download_path / fs.file_path(index)

        offset = start
        with_deadline = set()
        f = None
        try:
            while offset < end:
                req = self._info.map_file(index, offset, 1)
                piece = req.piece
                for i, p in enumerate(range(piece, min(piece + readahead, num_pieces))):
                    if p not in with_deadline:
                        self._handle.set_piece_deadline(p, i * 500)
                        with_deadline.add(p)

                while not self._handle.have_piece(piece) or not file_path.exists():
                    await asyncio.sleep(PIECE_WAIT_SECONDS)

                if f is None:
                    f = open(file_path, 'rb')
                chunk_end = min(end, offset + piece_length - req.start)
                f.seek(offset)
                chunk = f.read(chunk_end - offset)
                if not chunk:
                    await asyncio.sleep(PIECE_WAIT_SECONDS)
                    continue
                offset += len(chunk)
                yield chunk
        finally:
            if f is not None:
                f.close()

    async def destroy(self):
        if self._handle is None or not self._handle.is_valid():
            return
        logger.info(f"Removing torrent: {self._handle.info_hash()}")
        self._session.remove_torrent(self._handle, lt.session.delete_files)
        self._handle = None
