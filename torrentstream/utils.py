from pathlib import PurePath

from torrentstream.config import MEDIA_EXTENSIONS
from torrentstream.models import MediaFileRef, SessionStatus


def is_media_file(name):
    return PurePath(name).suffix.lower() in MEDIA_EXTENSIONS


def get_media_files(files):
    """
    Filters a torrent's file table down to playable media, largest first.
    The largest file of a multi-file torrent is usually the main feature.
    """
    media = [
        MediaFileRef(index=f.index, name=f.name, length=f.length, path=f.path)
        for f in files
        if is_media_file(f.name)
    ]
    # sorted() is stable, so equal lengths keep file-table order
    return sorted(media, key=lambda f: f.length, reverse=True)


def make_stream_id(session_id, file_index):
    return f"{session_id}_{file_index}"


def parse_stream_id(stream_id):
    """Returns the session portion of a stream id."""
    return stream_id.split("_", 1)[0]


def get_progress_percent(bytes_downloaded, length):
    if not length:
        return 0.0
    return min(100.0, bytes_downloaded / length * 100)


def get_session_status(session):
    """
    Projects a session snapshot into a status object. Reads only the last
    sampled metrics, never the engine itself.
    """
    selected = session.selected_file
    metrics = session.metrics
    return SessionStatus(
        session_id=session.session_id,
        state=session.state,
        file_name=selected.name if selected else None,
        progress_percent=get_progress_percent(metrics.bytes_downloaded, selected.length) if selected else 0.0,
        peer_count=metrics.peer_count,
        bytes_downloaded=metrics.bytes_downloaded,
        download_rate=metrics.download_rate,
        upload_rate=metrics.upload_rate,
    )
