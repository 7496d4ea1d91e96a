import logging

from starlette.requests import HTTPConnection
from starlette.responses import Response

from haven.utils import mask_token
from haven.vars import GatewayConfig

logger = logging.getLogger("uvicorn.error")

UNLOCK_COOKIE = "key"
UNLOCK_QUERY_PREFIX = "unlock"
# Chromebooks are let through without unlocking
CROS_MARKER = "CrOS"


def unlock_requested(connection: HTTPConnection) -> bool:
    """True when the query string starts with ``unlock`` (``/?unlock``, ``/?unlock=1``)."""
    return connection.url.query.startswith(UNLOCK_QUERY_PREFIX)


def has_unlock_cookie(connection: HTTPConnection, config: GatewayConfig) -> bool:
    if not config.unlock_key:
        return False
    return connection.cookies.get(UNLOCK_COOKIE) == config.unlock_key


def is_allowed(connection: HTTPConnection, config: GatewayConfig) -> bool:
    """Decide whether a request may reach the site and the proxy endpoints."""
    if not config.require_unlock:
        return True
    if has_unlock_cookie(connection, config):
        return True
    if unlock_requested(connection):
        logger.info(f"[Gate] Unlock requested for {connection.url.path}")
        return True
    return CROS_MARKER in connection.headers.get("user-agent", "")


def unlock_cookie(config: GatewayConfig) -> str:
    return f"{UNLOCK_COOKIE}={config.unlock_key}; SameSite=None; Secure"


def set_unlock_cookie(response: Response, config: GatewayConfig) -> Response:
    response.headers.append("set-cookie", unlock_cookie(config))
    logger.debug(
        mask_token(f"[Gate] Issued unlock cookie {unlock_cookie(config)}", config.unlock_key)
    )
    return response


def is_html(response: Response) -> bool:
    return "text/html" in response.headers.get("content-type", "")
