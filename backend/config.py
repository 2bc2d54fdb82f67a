"""Application-wide configuration constants."""

import os
import random
import string
from pathlib import Path


def generate_peer_id() -> str:
    """Return a short human-shareable id such as ``aB3x-Q9zk``."""
    alphabet = string.ascii_letters + string.digits

    def gen(length: int) -> str:
        return "".join(random.choices(alphabet, k=length))

    return f"{gen(4)}-{gen(4)}"


# --- Identity ---
APP_ID = "quickshare-v1"
# A fresh id per process, like a browser tab
LOCAL_PEER_ID = generate_peer_id()

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = 8765
# Dev server of the UI
CORS_ORIGINS = os.environ.get(
    "QUICKSHARE_CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
).split(",")
WS_SEND_TIMEOUT = 5  # seconds per UI event before the client is dropped

TRANSFER_HOST = "0.0.0.0"
TRANSFER_PORT_MIN = 50000
TRANSFER_PORT_MAX = 65000
CONNECT_TIMEOUT = 10  # seconds, dial + handshake

# --- Transfer ---
CHUNK_SIZE = 16384  # 16 KB
MAX_FRAME_SIZE = 16 * 1024 * 1024

# --- Storage ---
DEFAULT_SAVE_DIR = os.environ.get(
    "QUICKSHARE_SAVE_DIR",
    str(Path.home() / "Downloads" / "QuickShare"),
)

# --- Logging ---
LOG_LEVEL = os.environ.get("QUICKSHARE_LOG_LEVEL", "INFO").upper()
