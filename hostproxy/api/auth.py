"""
Access stages for the management API.

Applied in order as router dependencies: the admin-host check runs first, so
other hosts are turned away before any credential is looked at, then the API
key is checked, then the handler runs.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from hostproxy.errors import MissingHostError
from hostproxy.proxy.dispatcher import routing_key
from hostproxy.utils import token_fingerprint

logger = logging.getLogger("uvicorn.error")


async def require_admin_host(request: Request) -> str:
    """Only the configured administrative host may reach the management API."""
    allowed = request.app.state.api_domain
    host = request.headers.get("host")
    try:
        domain = routing_key(host)
    except MissingHostError:
        domain = ""
    if not allowed or domain != allowed:
        logger.warning(f"[API] Rejected management request for host {host!r}")
        raise HTTPException(
            status_code=403,
            detail="Forbidden: API access restricted to specific domain",
        )
    return domain


async def require_api_key(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> str:
    """Expect ``Authorization: Bearer <PROXY_API_KEY>``."""
    api_key = request.app.state.api_key
    expected = f"Bearer {api_key}"
    if (
        not api_key
        or not authorization
        or not hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8"))
    ):
        logger.warning(
            f"[API] Unauthorized management request, credentials {token_fingerprint(authorization)}"
        )
        raise HTTPException(status_code=401, detail="Unauthorized")
    return api_key
