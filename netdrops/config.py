"""Application-wide configuration constants."""

import os
from pathlib import Path

from pydantic import BaseModel


def _env(name: str, default: str) -> str:
    return os.environ.get(f"NETDROPS_{name}", default)


# --- Networking ---
API_HOST = _env("API_HOST", "0.0.0.0")
API_PORT = int(_env("API_PORT", "8080"))
COORDINATOR_URL = _env("COORDINATOR_URL", f"ws://localhost:{API_PORT}/ws")
CORS_ORIGINS = [
    origin for origin in _env(
        "CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
    ).split(",") if origin
]

# Peers sharing a network of this prefix length are considered local
LOCALITY_PREFIX_V4 = int(_env("LOCALITY_PREFIX_V4", "24"))
LOCALITY_PREFIX_V6 = int(_env("LOCALITY_PREFIX_V6", "64"))

# --- Handshake ---
REQUEST_TIMEOUT = float(_env("REQUEST_TIMEOUT", "60"))  # seconds

# --- Transfer ---
MAX_CONCURRENT_FILES = int(_env("MAX_CONCURRENT_FILES", "30"))
MAX_INFLIGHT_READS = int(_env("MAX_INFLIGHT_READS", "4"))
FILE_ID_WIDTH = 36  # textual uuid4

# --- Storage ---
DEFAULT_SAVE_DIR = _env(
    "SAVE_DIR", str(Path.home() / "Downloads" / "Netdrops")
)


class CoordinatorSettings(BaseModel):
    """Tunables consumed by the coordinator app."""
    max_concurrent_files: int = MAX_CONCURRENT_FILES
    request_timeout: float = REQUEST_TIMEOUT
    locality_prefix_v4: int = LOCALITY_PREFIX_V4
    locality_prefix_v6: int = LOCALITY_PREFIX_V6
