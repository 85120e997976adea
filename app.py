import asyncio
import logging
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from torrentstream.api import streaming, torrents
from torrentstream.config import DOWNLOAD_PATH, HLS_PATH, LOG_LEVEL, PORT
from torrentstream.state import shutdown_orchestrator

# --- Logging Setup ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# --- App Initialization ---
app = FastAPI(title="Torrent Streamer")

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

background_tasks = set()


# --- Error Handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Missing or malformed fields are client errors, reported as 400."""
    fields = [".".join(str(part) for part in err["loc"] if part != "body") for err in exc.errors()]
    # A missing body is reported at ("body",), which leaves no field name
    names = ", ".join(dict.fromkeys(f or "request body" for f in fields)) or "request body"
    return JSONResponse(
        status_code=400,
        content={"detail": f"Invalid or missing fields: {names}"},
    )


# --- Event Handlers ---
@app.on_event("startup")
async def startup_event():
    """
    On startup, create necessary directories and start background tasks.
    """
    download_path = Path(DOWNLOAD_PATH)
    hls_path = Path(HLS_PATH)

    try:
        download_path.mkdir(parents=True, exist_ok=True)
        hls_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Download path: {download_path.absolute()}")
        logger.info(f"HLS path: {hls_path.absolute()}")

        # Verify directories are writable
        for directory in (download_path, hls_path):
            test_file = directory / ".write_test"
            test_file.touch()
            test_file.unlink()
        logger.info("Download and HLS directories are writable")

    except PermissionError as e:
        logger.error(f"Permission denied creating directories: {e}")
        logger.error("Please ensure the application has write permissions to the directories")
    except OSError as e:
        logger.error(f"Error creating directories: {e}")

    try:
        from torrentstream.engine import alert_listener
        task = asyncio.create_task(alert_listener())
        background_tasks.add(task)
        task.add_done_callback(background_tasks.discard)
        logger.info("Background tasks started")
    except ImportError as e:
        logger.error(f"Error starting background tasks: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    """
    On shutdown, tear down every session so no ffmpeg process or HLS
    directory outlives the server.
    """
    logger.info("Shutting down. Tearing down sessions...")
    for task in background_tasks:
        task.cancel()
    await shutdown_orchestrator()
    logger.info("All sessions torn down")


# --- Health Check ---
@app.get("/health", include_in_schema=False)
async def health_check():
    """
    Health check endpoint for Docker and monitoring.
    """
    return {
        "status": "healthy",
        "download_path": str(Path(DOWNLOAD_PATH).absolute()),
        "hls_path": str(Path(HLS_PATH).absolute()),
        "download_exists": Path(DOWNLOAD_PATH).exists(),
        "hls_exists": Path(HLS_PATH).exists(),
    }


# --- API Routers ---
app.include_router(torrents.router, prefix="/api/torrents", tags=["torrents"])
app.include_router(streaming.router, prefix="/api/stream", tags=["streaming"])


# --- Main Entry Point ---
if __name__ == "__main__":
    logger.info(f"Starting Torrent Streamer on http://0.0.0.0:{PORT}")
    logger.info(f"API Documentation: http://0.0.0.0:{PORT}/docs")
    logger.info(f"Health Check: http://0.0.0.0:{PORT}/health")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=PORT,
        log_level="info"
    )
