"""
Host-based request dispatch.

Resolves the backend for an inbound request by looking up the domain from its
``Host`` header in the registry, then forwards the request there and streams
the backend's response back untouched. The raw request target is reused so a
percent-encoded path such as ``/a%2Fb`` reaches the backend exactly as sent.
"""

import asyncio
import logging
from typing import AsyncIterator, Iterable, List, Optional, Tuple
from urllib.parse import quote_from_bytes

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from opentelemetry import trace

from hostproxy.errors import (
    BackendUnreachableError,
    DispatchError,
    InvalidBackendConfigError,
    MissingHostError,
    NoRouteError,
    RoutingInternalError,
    StorageError,
)
from hostproxy.registry import SCHEMES, BackendRecord, Registry
from hostproxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 9110)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Everything printable in ASCII except space; already-encoded bytes stay as they are
_RAW_TARGET_SAFE = "".join(chr(c) for c in range(0x21, 0x7F))


def routing_key(host: Optional[str]) -> str:
    """
    Derive the registry key from a Host header value.

    The port suffix is removed; nothing else is normalized. Bracketed IPv6
    literals keep their brackets and only lose a port that follows the
    closing bracket. A bare host with several colons is an unbracketed IPv6
    literal and is left alone.
    """
    if not host:
        raise MissingHostError()
    if host.startswith("["):
        end = host.find("]")
        if end != -1 and host[end + 1 : end + 2] == ":":
            key = host[: end + 1]
        else:
            key = host
    elif host.count(":") == 1:
        key = host.split(":", 1)[0]
    else:
        key = host
    if not key:
        raise MissingHostError()
    return key


def target_authority(record: BackendRecord) -> str:
    address = record.address
    if ":" in address and not address.startswith("["):
        address = f"[{address}]"
    return f"{address}:{record.port}"


def target_locator(record: BackendRecord) -> str:
    """``scheme://address:port`` for a record."""
    return f"{record.scheme}://{target_authority(record)}"


def build_target(record: BackendRecord) -> httpx.URL:
    """Turn a record into the backend base URL, or fail with InvalidBackendConfigError."""
    if record.scheme not in SCHEMES:
        raise InvalidBackendConfigError(
            f"Unsupported scheme {record.scheme!r} for {record.domain}"
        )
    if not record.address or not 1 <= record.port <= 65535:
        raise InvalidBackendConfigError(
            f"Invalid backend address {record.address!r}:{record.port} for {record.domain}"
        )
    locator = target_locator(record)
    try:
        target = httpx.URL(locator)
    except httpx.InvalidURL as exc:
        raise InvalidBackendConfigError(
            f"Failed to parse target URL {locator}: {exc}"
        ) from exc
    # an address smuggling a path, query, fragment or userinfo into the locator
    if (
        not target.host
        or target.userinfo
        or target.fragment
        or target.raw_path not in (b"", b"/")
    ):
        raise InvalidBackendConfigError(f"Target URL {locator} is not a bare host:port")
    return target


def _raw_target_bytes(raw: bytes) -> bytes:
    return quote_from_bytes(raw, safe=_RAW_TARGET_SAFE).encode("ascii")


def build_request_target(
    raw_path: Optional[bytes], query_string: Optional[bytes]
) -> bytes:
    """
    The request target exactly as the client sent it.

    Path, query and fragment come from the raw bytes in the ASGI scope and are
    not decoded or re-encoded; only bytes that cannot appear on the request
    line are percent-encoded.
    """
    raw_path = raw_path or b"/"
    # some servers leave the query on raw_path
    path, sep, embedded_query = raw_path.partition(b"?")
    query = query_string or embedded_query
    raw = path
    if query or sep:
        raw += b"?" + query
    return _raw_target_bytes(raw)


def build_outbound_url(target: httpx.URL, request_target: bytes) -> httpx.URL:
    """
    Point the backend base URL at the request target.

    httpx URLs cannot carry a fragment onto the wire, so the URL stops at
    ``#``; the complete target is sent through the request's ``target``
    extension.
    """
    return target.copy_with(raw_path=request_target.partition(b"#")[0])


def _connection_tokens(values: Iterable[str]) -> set:
    return {
        token.strip().lower()
        for value in values
        for token in value.split(",")
        if token.strip()
    }


def build_headers(request: Request, record: BackendRecord) -> List[Tuple[str, str]]:
    """
    Headers for the outbound leg.

    Every inbound header is kept, repeated ones included, except hop-by-hop
    headers and those named in ``Connection``. Host is rewritten to the
    backend and the X-Forwarded-* headers describe the inbound leg.
    """
    drop = HOP_BY_HOP_HEADERS | _connection_tokens(request.headers.getlist("connection"))
    drop |= {"host", "x-forwarded-for"}

    headers = [("host", target_authority(record))]
    headers.extend(
        (name, value) for name, value in request.headers.items() if name.lower() not in drop
    )

    client_ip = request.client.host if request.client else "unknown"
    prior_xff = ", ".join(request.headers.getlist("x-forwarded-for"))
    headers.append(
        ("x-forwarded-for", f"{prior_xff}, {client_ip}" if prior_xff else client_ip)
    )
    if "x-forwarded-host" not in request.headers:
        headers.append(("x-forwarded-host", request.headers.get("host", "")))
    if "x-forwarded-proto" not in request.headers:
        headers.append(("x-forwarded-proto", request.url.scheme))
    return headers


def filter_response_headers(raw_headers: Iterable[Tuple[bytes, bytes]]) -> List[Tuple[bytes, bytes]]:
    """Backend response headers minus hop-by-hop ones; order and repeats are kept."""
    raw_headers = [(name.lower(), value) for name, value in raw_headers]
    drop = HOP_BY_HOP_HEADERS | _connection_tokens(
        value.decode("latin-1") for name, value in raw_headers if name == b"connection"
    )
    return [
        (name, value)
        for name, value in raw_headers
        if name.decode("latin-1") not in drop
    ]


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


class Dispatcher:
    """
    Forwards each inbound request to the backend registered for its host.

    The registry is only read here. The registry lock is released before the
    backend is contacted, so slow backends never hold up other requests.
    """

    def __init__(
        self,
        registry: Registry,
        timeout: float = 300,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        debug: bool = False,
    ):
        self.registry = registry
        self.timeout = timeout
        self.debug = debug
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            trust_env=False,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def _debug_log(self, message: str) -> None:
        if self.debug:
            logger.debug(f"[Proxy] {message}")

    async def resolve(self, host: Optional[str]) -> BackendRecord:
        """Look up the backend for a Host header value."""
        key = routing_key(host)
        self._debug_log(f"Looking up domain: {key}")
        try:
            record = await asyncio.to_thread(self.registry.lookup, key)
        except StorageError as exc:
            log_exception_with_details(logger, "[Proxy] Registry lookup failed:", exc)
            raise RoutingInternalError(str(exc)) from exc
        if record is None:
            raise NoRouteError(f"No backend registered for {key}")
        self._debug_log(
            f"Found domain record: {key} -> {record.address}:{record.port} ({record.scheme})"
        )
        return record

    async def dispatch(self, request: Request) -> StreamingResponse:
        """Resolve, forward and relay one request; raises DispatchError on failure."""
        host = request.headers.get("host")
        raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
        query_string = request.scope.get("query_string", b"")
        self._debug_log(
            f"{request.method} host={host} raw_path={raw_path!r} query={query_string!r}"
        )

        with tracer.start_as_current_span("proxy_request") as span:
            span.set_attribute("proxy.method", request.method)
            try:
                record = await self.resolve(host)
                span.set_attribute("proxy.domain", record.domain)
                target = build_target(record)
                request_target = build_request_target(raw_path, query_string)
                url = build_outbound_url(target, request_target)
                span.set_attribute("proxy.target_url", str(url))
                response = await self._forward(request, record, url, request_target)
                span.set_attribute("proxy.status_code", response.status_code)
                return response
            except DispatchError as exc:
                span.set_attribute("proxy.error", type(exc).__name__)
                raise

    async def _forward(
        self,
        request: Request,
        record: BackendRecord,
        url: httpx.URL,
        request_target: bytes,
    ) -> StreamingResponse:
        # built directly, so the client timeout has to be attached by hand
        outbound = httpx.Request(
            request.method,
            url,
            headers=build_headers(request, record),
            content=request.stream() if _has_body(request) else None,
            extensions={
                "target": request_target,
                "timeout": self.client.timeout.as_dict(),
            },
        )
        self._debug_log(f"Proxying {request.method} to {url}")

        try:
            upstream = await self.client.send(outbound, stream=True)
        except httpx.TimeoutException as exc:
            logger.error(f"[Proxy] Timeout contacting {target_locator(record)}: {exc}")
            raise BackendUnreachableError(f"Timeout contacting {url}") from exc
        except httpx.TransportError as exc:
            logger.error(
                f"[Proxy] Failed to reach {target_locator(record)} for {record.domain}: "
                f"{format_exception_message(exc)}"
            )
            raise BackendUnreachableError(f"Failed to reach {url}") from exc

        response = StreamingResponse(
            self._relay(upstream), status_code=upstream.status_code
        )
        response.raw_headers = filter_response_headers(upstream.headers.raw)
        return response

    async def _relay(self, upstream: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.TransportError as exc:
            logger.warning(
                f"[Proxy] Backend stream for {upstream.request.url} broke off: {exc}"
            )
            raise
        finally:
            # runs when the body is done or the client went away
            await asyncio.shield(upstream.aclose())
