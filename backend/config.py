"""Application-wide configuration constants.

Every value can be overridden through an environment variable of the same
name. Values are read once at import time.
"""

import os
from pathlib import Path

# --- Identity ---
APP_ID = "mobile-coder-relay-v1"

# --- Storage ---
DATA_DIR = Path(os.getenv("RELAY_DATA_DIR", str(Path.home() / ".mobile-coder-relay")))
OFFLINE_QUEUE_PATH = Path(os.getenv("OFFLINE_QUEUE_PATH", str(DATA_DIR / "command_queue.json")))
SECURITY_LOG_PATH = Path(os.getenv("SECURITY_LOG_PATH", str(Path.cwd() / ".security.log")))

# --- Signaling service ---
SIGNALING_HOST = os.getenv("SIGNALING_HOST", "0.0.0.0")
SIGNALING_PORT = int(os.getenv("SIGNALING_PORT", "8787"))
SIGNALING_URL = os.getenv("SIGNALING_URL", os.getenv("MCP_SIGNALING_URL", "http://127.0.0.1:8787"))
SIGNAL_TTL = float(os.getenv("SIGNAL_TTL", "300"))  # seconds (5 minutes)
SIGNAL_SWEEP_INTERVAL = float(os.getenv("SIGNAL_SWEEP_INTERVAL", "60"))  # seconds
# Consume-once reads vs. repeated polling; one policy per deployment
SIGNAL_CONSUME_ON_READ = os.getenv("SIGNAL_CONSUME_ON_READ", "false").lower() == "true"
SIGNALING_RATE_LIMIT = os.getenv("SIGNALING_RATE_LIMIT", "120/minute")
SIGNALING_RATE_LIMIT_ENABLED = os.getenv("SIGNALING_RATE_LIMIT_ENABLED", "true").lower() == "true"

# --- Peer session ---
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "2"))  # seconds
HANDSHAKE_TIMEOUT = float(os.getenv("HANDSHAKE_TIMEOUT", "120"))  # seconds, 0 = no ceiling
CONNECT_TIMEOUT = float(os.getenv("CONNECT_TIMEOUT", "15"))  # seconds per candidate
TOOL_CALL_TIMEOUT = float(os.getenv("TOOL_CALL_TIMEOUT", "10"))  # seconds
CANCEL_GRACE = float(os.getenv("CANCEL_GRACE", "5"))  # seconds to wait for a cancelled handshake
PEER_LISTEN_HOST = os.getenv("PEER_LISTEN_HOST", "0.0.0.0")
PEER_PORT_MIN = int(os.getenv("PEER_PORT_MIN", "50000"))
PEER_PORT_MAX = int(os.getenv("PEER_PORT_MAX", "65000"))
PEER_ADVERTISE_HOSTS = [
    h.strip() for h in os.getenv("PEER_ADVERTISE_HOSTS", "").split(",") if h.strip()
]

# --- Message protocol ---
MAX_TEXT_LENGTH = int(os.getenv("MAX_TEXT_LENGTH", "1000"))
MAX_FRAME_SIZE = int(os.getenv("MAX_FRAME_SIZE", str(16 * 1024 * 1024)))  # 16 MB

# --- Tool bridge ---
PROJECT_ROOT = os.getenv("PROJECT_ROOT", os.getcwd())
POLICY_FILE = os.getenv("RELAY_POLICY_FILE", "")
COMMAND_TIMEOUT = float(os.getenv("COMMAND_TIMEOUT", "120"))  # seconds
MAX_OUTPUT_SIZE = int(os.getenv("MAX_OUTPUT_SIZE", "50000"))  # 50 KB

# --- Rate limits (requests per window) ---
RATE_LIMIT_WINDOW = float(os.getenv("RATE_LIMIT_WINDOW", "60"))  # seconds
RATE_LIMIT_FILE_OPS = int(os.getenv("RATE_LIMIT_FILE_OPS", "30"))
RATE_LIMIT_COMMANDS = int(os.getenv("RATE_LIMIT_COMMANDS", "10"))
RATE_LIMIT_MESSAGES = int(os.getenv("RATE_LIMIT_MESSAGES", "60"))
RATE_LIMIT_SWEEP_INTERVAL = float(os.getenv("RATE_LIMIT_SWEEP_INTERVAL", "300"))  # seconds

# --- Local assistant (MCP) ---
MCP_SERVER_NAME = os.getenv("MCP_SERVER_NAME", "mobile-coder")
MCP_CONNECTION_CODE = os.getenv("MCP_CONNECTION_CODE", "")
# Editor MCP config files, relative to the home directory
MCP_CONFIG_FILES = {
    "cursor": Path(".cursor") / "mcp.json",
    "windsurf": Path(".codeium") / "windsurf" / "mcp_config.json",
}
