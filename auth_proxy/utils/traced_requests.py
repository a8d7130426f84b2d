import logging
from contextlib import contextmanager
from typing import Optional

from opentelemetry.trace import Tracer

from auth_proxy.utils import mask_token

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    identity: Optional[str],
    start_message: str,
    secret: Optional[str] = None,
):
    """Open a span for a login step and log its start with ``secret`` masked."""
    with tracer.start_as_current_span(operation) as span:
        if identity:
            span.set_attribute("login.identity", identity)
        logger.info(mask_token(start_message, secret))
        yield span
