import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response

from hostproxy.errors import DispatchError, NoRouteError
from hostproxy.proxy.dispatcher import Dispatcher

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def dispatch_error_response(exc: DispatchError) -> Response:
    """Client-facing response for a routing failure; never carries internal detail."""
    return PlainTextResponse(exc.detail, status_code=exc.status_code)


# Registered last so every more specific route takes precedence
@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_all(
    request: Request, path: str, dispatcher: Dispatcher = Depends(get_dispatcher)
):
    """Catch-all route that proxies every request to the backend registered for its host."""
    try:
        return await dispatcher.dispatch(request)
    except NoRouteError as exc:
        logger.info(f"[Proxy] {exc}")
        return dispatch_error_response(exc)
    except DispatchError as exc:
        client = request.client.host if request.client else "unknown"
        logger.error(f"[Proxy] {request.method} /{path} from {client} failed: {exc}")
        return dispatch_error_response(exc)
