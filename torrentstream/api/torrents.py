import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from torrentstream.errors import StreamerError
from torrentstream.orchestrator import StreamOrchestrator
from torrentstream.state import get_orchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


# Pydantic Models for API requests and responses
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileListRequest(CamelModel):
    magnet_link: str


class MediaFile(CamelModel):
    name: str
    length: int
    path: str
    index: int


class FileListResponse(CamelModel):
    session_id: str
    files: List[MediaFile]


class SessionStatusResponse(CamelModel):
    session_id: str
    state: str
    file_name: Optional[str] = None
    progress_percent: float
    peer_count: int
    bytes_downloaded: int
    download_rate: float
    upload_rate: float


def to_status_response(status):
    return SessionStatusResponse(
        session_id=status.session_id,
        state=status.state.value,
        file_name=status.file_name,
        progress_percent=status.progress_percent,
        peer_count=status.peer_count,
        bytes_downloaded=status.bytes_downloaded,
        download_rate=status.download_rate,
        upload_rate=status.upload_rate,
    )


@router.post("/files", response_model=FileListResponse)
async def list_files(
    request: FileListRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """
    Resolves a magnet link and lists its media files, largest first.
    """
    try:
        session_id, files = await orchestrator.list_files(request.magnet_link)
    except StreamerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    except Exception as e:
        logger.error(f"Error getting files: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail={"error": "Failed to get files from torrent", "diagnostics": {}})

    return FileListResponse(
        session_id=session_id,
        files=[MediaFile(name=f.name, length=f.length, path=f.path, index=f.index) for f in files],
    )


@router.get("", response_model=List[SessionStatusResponse], include_in_schema=False)
@router.get("/", response_model=List[SessionStatusResponse])
async def get_all_sessions(orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    """Returns the status of all live sessions."""
    return [to_status_response(s) for s in orchestrator.list_sessions()]


@router.get("/{session_id}", response_model=SessionStatusResponse)
async def get_session_status(session_id: str, orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    """Returns the last sampled status of a single session."""
    try:
        status = orchestrator.status(session_id)
    except StreamerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return to_status_response(status)


@router.delete("/{session_id}", status_code=200)
async def remove_session(session_id: str, orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    """Destroys a session whether or not it has started streaming."""
    try:
        await orchestrator.destroy_session(session_id)
    except StreamerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return {"message": "Session removed successfully"}
