from .dispatcher import (
    Dispatcher,
    build_headers,
    build_outbound_url,
    build_request_target,
    build_target,
    routing_key,
    target_locator,
)

__all__ = [
    "Dispatcher",
    "build_headers",
    "build_outbound_url",
    "build_request_target",
    "build_target",
    "routing_key",
    "target_locator",
]
