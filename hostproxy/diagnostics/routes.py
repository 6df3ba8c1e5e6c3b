import asyncio
import logging
import re
import socket
from typing import List, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """
    Parse durations such as ``500ms``, ``2s`` or ``1m30s`` into seconds.

    Raises ValueError for anything else, including a bare number.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


def local_addresses() -> List[str]:
    hostname = socket.gethostname()
    try:
        infos = socket.getaddrinfo(hostname, None)
    except OSError:
        return []
    addresses = []
    for info in infos:
        address = info[4][0]
        if address not in addresses:
            addresses.append(address)
    return addresses


@router.get("/health")
async def health():
    return JSONResponse(content={"status": "ok"})


@router.get("/whoami")
async def whoami(request: Request, wait: Optional[str] = Query(None)):
    """Echo what this instance received; useful to check routing in front of the proxy."""
    client = f"{request.client.host}:{request.client.port}" if request.client else "unknown"
    logger.debug(f"[Whoami] Called from {client}")

    if wait:
        try:
            delay = parse_duration(wait)
        except ValueError as exc:
            logger.warning(f"[Whoami] Invalid wait duration {wait}: {exc}")
        else:
            await asyncio.sleep(delay)

    lines = [f"Hostname: {socket.gethostname()}"]
    lines.extend(f"IP: {address}" for address in local_addresses())
    lines.append(f"RemoteAddr: {client}")

    raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
    target = raw_path.partition(b"?")[0]
    query = request.scope.get("query_string", b"")
    if query:
        target += b"?" + query
    http_version = request.scope.get("http_version", "1.1")
    lines.append(f"{request.method} {target.decode('latin-1')} HTTP/{http_version}")
    lines.extend(f"{name.title()}: {value}" for name, value in request.headers.items())
    return PlainTextResponse("\n".join(lines) + "\n")
