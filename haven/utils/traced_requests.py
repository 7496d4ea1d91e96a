import logging
from typing import Optional, Dict
from contextlib import contextmanager

from opentelemetry.trace import Tracer

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    target_url: Optional[str],
    method: Optional[str],
    start_message: Optional[str] = None,
    extra_attrs: Optional[Dict] = None,
    level: int = logging.DEBUG,
):
    """Context manager to create a span, set the proxy attributes, and log a start message."""
    with tracer.start_as_current_span(operation) as span:
        if target_url:
            span.set_attribute("proxy.target_url", target_url)
        if method:
            span.set_attribute("proxy.method", method)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, v)
        if start_message:
            logger.log(level, start_message)
        yield span
