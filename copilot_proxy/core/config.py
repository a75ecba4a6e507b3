"""
Configuration & shared state for the Excel Copilot Proxy.

Environment variables, the immutable Settings object, logger setup and the
in-memory log buffer.
"""

import os
import sys
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from collections import deque
from typing import Mapping, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# ---------------------------------------------------------------------------
# Upstream API (fixed endpoint)
# ---------------------------------------------------------------------------
UPSTREAM_HOST = "api.studio.nebius.ai"
UPSTREAM_PORT = 443
UPSTREAM_PATH = "/v1/chat/completions"
MODEL_NAME = "Qwen/Qwen3-Coder-480B-A35B-Instruct"
MAX_TOKENS = 2000

# ---------------------------------------------------------------------------
# Server defaults
# ---------------------------------------------------------------------------
DEFAULT_PORT = 8080
DEFAULT_SERVICE_TOKEN = "my-super-secret-token"
MAX_BODY_BYTES = 10 * 1024 * 1024

# ---------------------------------------------------------------------------
# Forward proxy defaults
# ---------------------------------------------------------------------------
DEFAULT_PROXY_HOST = "127.0.0.1"
DEFAULT_PROXY_PORT = 8000


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read-only after startup."""

    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    upstream_api_key: str = ""
    service_token: str = DEFAULT_SERVICE_TOKEN
    proxy_host: str = DEFAULT_PROXY_HOST
    proxy_port: int = DEFAULT_PROXY_PORT
    proxy_user: str = ""
    proxy_pass: str = ""
    upstream_timeout: Optional[float] = None
    log_file: Optional[str] = None

    upstream_host: str = UPSTREAM_HOST
    upstream_port: int = UPSTREAM_PORT
    upstream_path: str = UPSTREAM_PATH
    model: str = MODEL_NAME
    max_tokens: int = MAX_TOKENS
    max_body_bytes: int = MAX_BODY_BYTES

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        Raises ValueError when a numeric variable cannot be parsed.
        """
        env = os.environ if environ is None else environ
        return cls(
            port=int(env.get("PORT", DEFAULT_PORT)),
            upstream_api_key=env.get("NEBIUS_API_KEY", ""),
            service_token=env.get("SERVICE_TOKEN", DEFAULT_SERVICE_TOKEN),
            proxy_host=env.get("UPSTREAM_PROXY_HOST", DEFAULT_PROXY_HOST),
            proxy_port=int(env.get("UPSTREAM_PROXY_PORT", DEFAULT_PROXY_PORT)),
            proxy_user=env.get("UPSTREAM_PROXY_USER", ""),
            proxy_pass=env.get("UPSTREAM_PROXY_PASS", ""),
            upstream_timeout=_optional_float(env.get("UPSTREAM_TIMEOUT")),
            log_file=env.get("EXCEL_PROXY_LOG_FILE") or None,
        )

    @property
    def upstream_target(self) -> str:
        return f"{self.upstream_host}:{self.upstream_port}"

    @property
    def proxy_address(self) -> str:
        return f"{self.proxy_host}:{self.proxy_port}"

    @property
    def timeouts(self) -> dict:
        """httpcore timeout extension: the same bound for every network operation."""
        timeout = self.upstream_timeout
        return {"connect": timeout, "read": timeout, "write": timeout, "pool": timeout}


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger("copilot_proxy")

# In-memory log buffer (last 100 entries)
log_buffer = deque(maxlen=100)
log_buffer_lock = threading.Lock()


class BufferHandler(logging.Handler):
    """Custom handler to capture logs in memory."""
    def emit(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "message": self.format(record)
        }
        with log_buffer_lock:
            log_buffer.append(log_entry)


buffer_handler = BufferHandler()
buffer_handler.setFormatter(logging.Formatter('[%(levelname)s] %(message)s'))
logger.addHandler(buffer_handler)
logger.setLevel(logging.INFO)


def configure_logging(log_file: Optional[str] = None) -> None:
    """Send log output to stdout, or append to log_file when one is given."""
    logging_config = {
        "level": logging.INFO,
        "format": '%(asctime)s - %(levelname)s - %(message)s',
    }

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        logging_config["filename"] = log_file
        logging_config["filemode"] = 'a'
    else:
        logging_config["stream"] = sys.stdout

    logging.basicConfig(**logging_config)


def recent_logs() -> list:
    with log_buffer_lock:
        return list(log_buffer)
