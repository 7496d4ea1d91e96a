import logging
from typing import Optional

from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response
from starlette.status import WS_1008_POLICY_VIOLATION

from haven.access.gate import is_allowed, is_html, set_unlock_cookie, unlock_requested
from haven.access.static_site import StaticSite
from haven.proxy.forward import ForwardHandler
from haven.proxy.relay import RelayHandler
from haven.proxy.route_matcher import RouteMatcher
from haven.vars import GatewayConfig

logger = logging.getLogger("uvicorn.error")

SERVICE_WORKER_FAILED_BODY = "Failed to start the service worker"


def build_router(
    config: GatewayConfig,
    forward_handler: Optional[ForwardHandler] = None,
    relay_handler: Optional[RelayHandler] = None,
) -> APIRouter:
    """
    Build the catch-all router of the gateway.

    HTTP requests pass the unlock gate, then go to the forward endpoint, the
    relay endpoint's fallback, or the static site, in that order. WebSocket
    requests pass the gate and are relayed when they target the relay prefix.
    """
    router = APIRouter()
    matcher = RouteMatcher(config)
    forward = forward_handler or ForwardHandler(config)
    relay = relay_handler or RelayHandler(config)
    site = StaticSite(config.static_dir, show_dir_listing=config.show_dir_listing)
    blocked_site = StaticSite(config.blocked_dir)

    @router.websocket("/{path:path}")
    async def relay_socket(websocket: WebSocket, path: str):
        if not is_allowed(websocket, config):
            # Same lookup as a GET for the upgrade path
            lookup = Request({**websocket.scope, "type": "http", "method": "GET"})
            if is_html(await blocked_site.response_for(lookup)):
                logger.info(f"[Gate] Refused WebSocket to {websocket.url.path}")
                await websocket.close(code=WS_1008_POLICY_VIOLATION)
                return
        if not matcher.is_relay_path(websocket.url.path):
            await websocket.close(code=WS_1008_POLICY_VIOLATION)
            return
        await relay.handle(websocket)

    @router.api_route(
        "/{path:path}",
        methods=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"],
    )
    async def gateway(request: Request, path: str) -> Response:
        if not is_allowed(request, config):
            blocked = await blocked_site.response_for(request)
            # Only HTML pages of the blocked tree replace the real response
            if is_html(blocked):
                return blocked

        url_path = request.url.path
        if matcher.is_forward_path(url_path):
            return await forward.handle(request)
        if matcher.is_relay_path(url_path):
            return relay.fallback_response()

        if config.service_worker_prefix and url_path.startswith(
            config.service_worker_prefix
        ):
            return PlainTextResponse(SERVICE_WORKER_FAILED_BODY, status_code=404)

        response = await site.response_for(request)
        if unlock_requested(request) and config.unlock_key:
            set_unlock_cookie(response, config)
        return response

    return router
