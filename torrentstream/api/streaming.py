import asyncio
import logging
import mimetypes
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse

from torrentstream.config import PLAYLIST_NAME, PLAYLIST_WAIT_SECONDS
from torrentstream.errors import StreamerError
from torrentstream.orchestrator import StreamOrchestrator
from torrentstream.state import get_orchestrator
from torrentstream.api.torrents import CamelModel

router = APIRouter()
logger = logging.getLogger(__name__)


class StreamRequest(CamelModel):
    session_id: str
    file_index: int


class StreamResponse(CamelModel):
    stream_id: str
    playlist_url: str
    file_name: str


@router.post("", response_model=StreamResponse, include_in_schema=False)
@router.post("/", response_model=StreamResponse)
async def start_stream(request: StreamRequest, orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    """
    Selects a file and starts HLS packaging once the swarm delivers data.
    Responds when the packager is running, with the playlist location.
    """
    try:
        info = await orchestrator.select_file(request.session_id, request.file_index)
    except StreamerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    except Exception as e:
        logger.error(f"Error starting stream: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail={"error": "Failed to start stream", "diagnostics": {}})

    return StreamResponse(stream_id=info.stream_id, playlist_url=info.playlist_url, file_name=info.file_name)


@router.delete("/{stream_id}", status_code=200)
async def destroy_stream(stream_id: str, orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    """Stops packaging, removes the torrent and deletes the HLS segments."""
    try:
        await orchestrator.destroy_stream(stream_id)
    except StreamerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return {"message": "Stream destroyed successfully"}


@router.get(f"/{{stream_id}}/{PLAYLIST_NAME}")
async def get_hls_playlist(stream_id: str, orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    """
    Serves the m3u8 playlist. ffmpeg writes it only after the first segment
    is complete, so this waits for it to appear.
    """
    try:
        output_dir = orchestrator.stream_directory(stream_id)
    except StreamerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())

    playlist_path = output_dir / PLAYLIST_NAME
    start_time = datetime.now()
    timeout = timedelta(seconds=PLAYLIST_WAIT_SECONDS)
    while not playlist_path.exists():
        try:
            orchestrator.stream_directory(stream_id)
        except StreamerError as e:
            raise HTTPException(status_code=e.status_code, detail=e.to_detail())
        if datetime.now() - start_time > timeout:
            logger.error(f"Timeout waiting for playlist creation for stream {stream_id}")
            raise HTTPException(status_code=504, detail="Timeout waiting for HLS conversion to start")
        await asyncio.sleep(1)

    return FileResponse(playlist_path, media_type='application/vnd.apple.mpegurl')


def parse_range(header, size):
    """
    Returns the inclusive (start, end) byte range a Range header asks for,
    or None when the whole file was requested. Raises ValueError when the
    range can't be satisfied.
    """
    if not header:
        return None
    unit, _, ranges = header.partition("=")
    if unit.strip().lower() != "bytes" or "," in ranges:
        raise ValueError(f"Unsupported range: {header}")
    first, _, last = ranges.strip().partition("-")
    if first == "":
        suffix = int(last)
        if suffix <= 0:
            raise ValueError(f"Unsatisfiable range: {header}")
        start, end = max(size - suffix, 0), size - 1
    else:
        start = int(first)
        end = min(int(last), size - 1) if last else size - 1
    if start < 0 or start >= size or start > end:
        raise ValueError(f"Unsatisfiable range: {header}")
    return start, end


@router.get("/{stream_id}/source")
async def get_stream_source(stream_id: str, request: Request, orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    """
    Serves the selected torrent file with Range support. This is the input
    ffmpeg reads, so it can seek wherever the container needs it to.
    """
    try:
        media_file = orchestrator.stream_file(stream_id)
    except StreamerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())

    size = media_file.length
    try:
        byte_range = parse_range(request.headers.get("range"), size)
    except ValueError:
        raise HTTPException(status_code=416, detail="Requested range not satisfiable",
                            headers={"Content-Range": f"bytes */{size}"})

    media_type = mimetypes.guess_type(media_file.name)[0] or "application/octet-stream"
    headers = {"Accept-Ranges": "bytes"}
    if byte_range is None:
        start, end, status_code = 0, size - 1, 200
    else:
        start, end = byte_range
        status_code = 206
        headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(end - start + 1)

    logger.debug(f"Serving {stream_id} bytes {start}-{end}/{size}")
    return StreamingResponse(
        orchestrator.read_source(stream_id, start, end + 1),
        status_code=status_code,
        media_type=media_type,
        headers=headers,
    )


@router.get("/{stream_id}/{segment}")
async def get_hls_segment(stream_id: str, segment: str, orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    """Serves the individual .ts segment files."""
    try:
        output_dir = orchestrator.stream_directory(stream_id)
    except StreamerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())

    segment_path = output_dir / segment
    if segment.startswith(".") or not segment_path.is_file():
        raise HTTPException(status_code=404, detail="Segment not found")
    return FileResponse(segment_path, media_type='video/MP2T')
