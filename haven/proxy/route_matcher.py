from haven.vars import GatewayConfig


class RouteMatcher:
    """Decide which proxy endpoint, if any, a request path targets."""

    def __init__(self, config: GatewayConfig):
        self.config = config

    def is_forward_path(self, path: str) -> bool:
        # Exact match only, sub-paths of the forward path are not forwarded
        return path == self.config.forward_path

    def is_relay_path(self, path: str) -> bool:
        return path.startswith(self.config.relay_prefix)
