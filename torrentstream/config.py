
import os
import logging
from pathlib import Path

# --- Configuration ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(levelname)s - %(message)s')

PORT = int(os.getenv("PORT", 6991))
# Always resolve to absolute paths
BASE_DIR = Path(__file__).resolve().parent.parent
DOWNLOAD_PATH = Path(os.getenv("DOWNLOAD_PATH", str(BASE_DIR / "downloads"))).resolve()
HLS_PATH = Path(os.getenv("HLS_PATH", str(BASE_DIR / "hls"))).resolve()

# --- Swarm engine ---
MAX_CONNECTIONS = int(os.getenv("MAX_CONNECTIONS", 100))
DISCOVERY_TIMEOUT_SECONDS = float(os.getenv("DISCOVERY_TIMEOUT_SECONDS", 30))

# --- Readiness gate ---
READINESS_TIMEOUT_SECONDS = float(os.getenv("READINESS_TIMEOUT_SECONDS", 45))
READINESS_POLL_SECONDS = float(os.getenv("READINESS_POLL_SECONDS", 1.0))
READINESS_RETRY_BUDGET = int(os.getenv("READINESS_RETRY_BUDGET", 3))

# --- Session lifecycle ---
IDLE_TIMEOUT_SECONDS = float(os.getenv("IDLE_TIMEOUT_SECONDS", 5 * 60))
METRICS_INTERVAL_SECONDS = float(os.getenv("METRICS_INTERVAL_SECONDS", 1.0))

# --- HLS packaging ---
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
HLS_TIME = int(os.getenv("HLS_TIME", 10))
HLS_LIST_SIZE = int(os.getenv("HLS_LIST_SIZE", 6))
PLAYLIST_NAME = "playlist.m3u8"
PACKAGER_STARTUP_SECONDS = float(os.getenv("PACKAGER_STARTUP_SECONDS", 2.0))
PLAYLIST_WAIT_SECONDS = float(os.getenv("PLAYLIST_WAIT_SECONDS", 30))
# ffmpeg reads the torrent file back from this server with Range requests
SOURCE_BASE_URL = os.getenv("SOURCE_BASE_URL", f"http://127.0.0.1:{PORT}")

MEDIA_EXTENSIONS = ('.mp4', '.mkv', '.avi', '.mov', '.wmv', '.flv', '.webm', '.m4v')

# Log the resolved paths at import time for debugging
logging.info(f"[CONFIG] DOWNLOAD_PATH: {DOWNLOAD_PATH}")
logging.info(f"[CONFIG] HLS_PATH: {HLS_PATH}")
