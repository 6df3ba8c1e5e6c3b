from typing import Iterable, List, Optional

import httpx
from starlette.requests import Request

API_KEY = "test-api-key"
API_DOMAIN = "admin.example.com"


class ChunkStream(httpx.AsyncByteStream):
    """Backend body that arrives in several chunks, like a real socket read."""

    def __init__(self, chunks: Iterable[bytes]):
        self.chunks = list(chunks)
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self):
        self.closed = True


class FakeBackend:
    """Records what reached the backend and answers with a canned response."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.bodies: List[bytes] = []
        self.streams: List[ChunkStream] = []
        self.status_code = 200
        self.headers = [("content-type", "text/plain"), ("x-backend", "fake")]
        self.chunks = [b"hello ", b"from ", b"backend"]
        self.error: Optional[Exception] = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(await request.aread())
        if self.error is not None:
            raise self.error
        stream = ChunkStream(self.chunks)
        self.streams.append(stream)
        return httpx.Response(self.status_code, headers=self.headers, stream=stream)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_request(
    method: str = "GET",
    headers: Optional[List[tuple]] = None,
    raw_path: bytes = b"/",
    query_string: bytes = b"",
    client: Optional[tuple] = ("192.168.1.100", 51234),
    scheme: str = "http",
) -> Request:
    """Bare ASGI request as the server would hand it to a route."""
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": scheme,
        "path": raw_path.decode("latin-1"),
        "raw_path": raw_path,
        "query_string": query_string,
        "headers": [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in (headers or [])
        ],
        "client": client,
        "server": ("proxy", 80),
    }
    return Request(scope)
