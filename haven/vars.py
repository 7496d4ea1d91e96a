import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> Optional[float]:
    value = os.environ.get(name, "").strip()
    return float(value) if value else None


SERVICE_NAME = os.getenv("SERVICE_NAME", "haven-gateway")

FORWARD_PATH = os.environ.get("FORWARD_PATH", "/fetch")
RELAY_PREFIX = os.environ.get("RELAY_PREFIX", "/fetchWs")
PROXY_DEBUG = _env_bool("PROXY_DEBUG")
# Unset means the upstream call may take as long as it needs
FORWARD_TIMEOUT = _env_float("FORWARD_TIMEOUT")

STATIC_DIR = os.environ.get("STATIC_DIR", "public")
BLOCKED_DIR = os.environ.get("BLOCKED_DIR", "blocked")
UNLOCK_KEY = os.environ.get("UNLOCK_KEY", "")
REQUIRE_UNLOCK = _env_bool("REQUIRE_UNLOCK")
SERVICE_WORKER_PREFIX = os.environ.get("SERVICE_WORKER_PREFIX", "")
SHOW_DIR_LISTING = _env_bool("SHOW_DIR_LISTING", "true")

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").lower()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")


@dataclass(frozen=True)
class GatewayConfig:
    """Settings shared by the route matcher, the handlers and the gate."""

    forward_path: str = "/fetch"
    relay_prefix: str = "/fetchWs"
    debug: bool = False
    forward_timeout: Optional[float] = None
    static_dir: str = "public"
    blocked_dir: str = "blocked"
    unlock_key: str = ""
    require_unlock: bool = False
    service_worker_prefix: str = ""
    show_dir_listing: bool = True
    host: str = "0.0.0.0"
    port: int = 8080

    def __post_init__(self):
        # The forward path must never also match the relay prefix
        if self.forward_path.startswith(self.relay_prefix):
            raise ValueError(
                f"Forward path {self.forward_path!r} overlaps relay prefix {self.relay_prefix!r}"
            )


def load_config() -> GatewayConfig:
    """Build the gateway configuration from the environment values above."""
    return GatewayConfig(
        forward_path=FORWARD_PATH,
        relay_prefix=RELAY_PREFIX,
        debug=PROXY_DEBUG,
        forward_timeout=FORWARD_TIMEOUT,
        static_dir=STATIC_DIR,
        blocked_dir=BLOCKED_DIR,
        unlock_key=UNLOCK_KEY,
        require_unlock=REQUIRE_UNLOCK,
        service_worker_prefix=SERVICE_WORKER_PREFIX,
        show_dir_listing=SHOW_DIR_LISTING,
        host=HOST,
        port=PORT,
    )
