"""Application-wide configuration constants.

Every value can be overridden with a ``WHISPERDROP_*`` environment variable.
"""

import os
import platform
import uuid


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(f"WHISPERDROP_{name}", default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(f"WHISPERDROP_{name}", default))


# --- Identity ---
APP_ID = "whisperdrop-v1"
# Ephemeral per process unless pinned through the environment
DEVICE_ID = os.environ.get("WHISPERDROP_DEVICE_ID") or str(uuid.uuid4())
DEVICE_NAME = os.environ.get("WHISPERDROP_DEVICE_NAME") or platform.node()
PLATFORM = platform.system().lower()  # "windows" | "darwin" | "linux"

# --- Networking ---
API_HOST = os.environ.get("WHISPERDROP_API_HOST", "0.0.0.0")
API_PORT = _env_int("API_PORT", 8765)
DISCOVERY_HOST = os.environ.get("WHISPERDROP_DISCOVERY_HOST", "0.0.0.0")
DISCOVERY_PORT = _env_int("DISCOVERY_PORT", 41235)  # UDP
DISCOVERY_INTERVAL = _env_float("DISCOVERY_INTERVAL", 3)  # seconds
DISCOVERY_TIMEOUT = _env_float("DISCOVERY_TIMEOUT", 2)  # seconds per scan
PEER_TIMEOUT = _env_float("PEER_TIMEOUT", 10)  # seconds before a peer is considered offline
PROBE_TIMEOUT = _env_float("PROBE_TIMEOUT", 1)  # seconds per probe
ADDRESS_RESOLUTION_TIMEOUT = _env_float("ADDRESS_RESOLUTION_TIMEOUT", 3)
# Non-routed target used to make the kernel pick an outbound interface.
# No packet is sent.
ADDRESS_PROBE_TARGET = ("10.255.255.255", 1)

# --- Transfer planning ---
KIB = 1024
MIB = 1024 * KIB
SMALL_FILE_LIMIT = 1 * MIB
MEDIUM_FILE_LIMIT = 10 * MIB
SMALL_CHUNK_SIZE = 64 * KIB
MEDIUM_CHUNK_SIZE = 256 * KIB
LARGE_CHUNK_SIZE = 1 * MIB
DEFAULT_BANDWIDTH_MBPS = _env_float("DEFAULT_BANDWIDTH_MBPS", 100)

# --- Upload endpoint (consumed, not served) ---
UPLOAD_BASE_URL = os.environ.get("WHISPERDROP_UPLOAD_BASE_URL", "http://localhost:5000")
UPLOAD_TIMEOUT = _env_float("UPLOAD_TIMEOUT", 30)

# --- Message expiry ---
EXPIRY_TICK_INTERVAL = _env_float("EXPIRY_TICK_INTERVAL", 1.0)  # seconds
EXPIRY_CRITICAL_SECONDS = 10
EXPIRY_WARNING_SECONDS = 30
EXPIRY_HISTORY_LIMIT = _env_int("EXPIRY_HISTORY_LIMIT", 1024)  # expired ids remembered
MESSAGE_STORE_LIMIT = _env_int("MESSAGE_STORE_LIMIT", 1024)  # messages held by the API
WS_SEND_TIMEOUT = _env_float("WS_SEND_TIMEOUT", 2)  # seconds per WebSocket send

# --- Encryption ---
# Hex-encoded 32-byte key. When unset a random key is generated at startup,
# so messages never share a baked-in secret across installations.
DEFAULT_KEY_HEX = os.environ.get("WHISPERDROP_DEFAULT_KEY", "")
