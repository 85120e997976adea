import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, List, Optional, Protocol


class SessionState(str, enum.Enum):
    DISCOVERING = "discovering"
    LISTED = "listed"
    AWAITING_READINESS = "awaiting_readiness"
    ACTIVE = "active"
    TEARING_DOWN = "tearing_down"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class SwarmFile:
    """One entry of a torrent's file table."""
    index: int
    name: str
    length: int
    path: str


@dataclass(frozen=True)
class MediaFileRef:
    index: int
    name: str
    length: int
    path: str


@dataclass(frozen=True)
class SwarmStats:
    bytes_downloaded: int = 0
    peer_count: int = 0
    download_rate: float = 0.0
    upload_rate: float = 0.0

    def as_dict(self):
        return {
            "bytes_downloaded": self.bytes_downloaded,
            "peer_count": self.peer_count,
            "download_rate": self.download_rate,
            "upload_rate": self.upload_rate,
        }


class SwarmEngine(Protocol):
    """What the orchestrator needs from a torrent engine.

    ``files`` is only meaningful once ``start`` has returned. ``error`` is a
    message when the engine has failed for good, otherwise None.
    """

    files: List[SwarmFile]
    error: Optional[str]

    async def start(self) -> None: ...

    def select(self, index: int) -> None: ...

    def selected_indices(self) -> List[int]: ...

    def stats(self) -> SwarmStats: ...

    def reannounce(self) -> None: ...

    def read_range(self, index: int, start: int, end: int) -> AsyncIterator[bytes]: ...

    async def destroy(self) -> None: ...


class SegmentPackager(Protocol):
    """Turns a seekable input URL into an HLS directory."""

    returncode: Optional[int]
    error_output: str

    async def start(self, input_url: str, output_dir: Path) -> None: ...

    async def stop(self) -> None: ...


@dataclass
class Session:
    session_id: str
    descriptor: str
    engine: SwarmEngine
    files: List[MediaFileRef]
    state: SessionState = SessionState.LISTED
    selected: bool = False
    selected_file: Optional[MediaFileRef] = None
    metrics: SwarmStats = field(default_factory=SwarmStats)
    created_at: datetime = field(default_factory=datetime.now)
    stream_id: Optional[str] = None
    output_dir: Optional[Path] = None
    packager: Optional[SegmentPackager] = None
    source_error: Optional[str] = None
    idle_task: Optional[asyncio.Task] = None
    activation_task: Optional[asyncio.Task] = None
    sampler_task: Optional[asyncio.Task] = None


@dataclass(frozen=True)
class StreamInfo:
    stream_id: str
    playlist_url: str
    file_name: str


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    state: SessionState
    file_name: Optional[str]
    progress_percent: float
    peer_count: int
    bytes_downloaded: int
    download_rate: float
    upload_rate: float
