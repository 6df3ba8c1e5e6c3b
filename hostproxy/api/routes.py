import asyncio
import logging
from contextlib import contextmanager
from typing import List, Type, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from opentelemetry import trace
from pydantic import BaseModel, ValidationError

from hostproxy.api.auth import require_admin_host, require_api_key
from hostproxy.api.schemas import (
    BulkCreateDomainsRequest,
    CreateDomainRequest,
    UpdateDomainRequest,
)
from hostproxy.errors import DuplicateKeyError, RecordValidationError, StorageError
from hostproxy.registry import RecordRequest, Registry
from hostproxy.utils.exception_logging import log_exception_with_details
from hostproxy.utils.traced_requests import traced_request

# Stages run in list order before every handler
router = APIRouter(
    prefix="/api",
    dependencies=[Depends(require_admin_host), Depends(require_api_key)],
)
logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def get_registry(request: Request) -> Registry:
    return request.app.state.registry


@contextmanager
def registry_errors(operation: str):
    """Translate registry failures into HTTP errors without leaking storage detail."""
    try:
        yield
    except RecordValidationError as exc:
        logger.info(f"[API] {operation} rejected: {exc.message}")
        raise HTTPException(status_code=400, detail=exc.message)
    except DuplicateKeyError as exc:
        logger.info(f"[API] {operation} rejected: {exc.message}")
        raise HTTPException(status_code=409, detail=exc.message)
    except StorageError as exc:
        log_exception_with_details(logger, f"[API] {operation} failed:", exc)
        raise HTTPException(status_code=500, detail="Internal server error")


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid request body: malformed JSON")


def _describe_errors(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
        for err in exc.errors()
    )


def _parse(model: Type[ModelT], payload, where: str = "") -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid request body{where}: {_describe_errors(exc)}",
        )


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Domain not found")


# More specific routes are registered first
@router.post("/config/bulk")
async def bulk_create_domains(
    request: Request, registry: Registry = Depends(get_registry)
):
    payload = await _read_json(request)
    if isinstance(payload, list):
        domains: List[CreateDomainRequest] = [
            _parse(CreateDomainRequest, item, where=f" at index {index}")
            for index, item in enumerate(payload)
        ]
    elif isinstance(payload, dict):
        domains = _parse(BulkCreateDomainsRequest, payload).domains
    else:
        raise HTTPException(
            status_code=400,
            detail="Invalid request body: expected array of domains or object with 'domains' field",
        )

    if not domains:
        raise HTTPException(status_code=400, detail="No domains provided")

    with traced_request(
        tracer,
        operation="bulk_create_domains",
        domain=None,
        start_message=f"[API] Bulk creating {len(domains)} domains",
        extra_attrs={"registry.batch_size": len(domains)},
    ):
        with registry_errors("Bulk create"):
            created = await asyncio.to_thread(
                registry.bulk_insert,
                [
                    RecordRequest(d.domain, d.ip, d.port, d.protocol or "")
                    for d in domains
                ],
            )
    return JSONResponse(status_code=201, content=[r.to_dict() for r in created])


@router.get("/config")
async def list_domains(registry: Registry = Depends(get_registry)):
    with traced_request(
        tracer,
        operation="list_domains",
        domain=None,
        start_message="[API] Listing domains",
    ):
        with registry_errors("List"):
            records = await asyncio.to_thread(registry.list_all)
    return [r.to_dict() for r in records]


@router.post("/config")
async def create_domain(request: Request, registry: Registry = Depends(get_registry)):
    body = _parse(CreateDomainRequest, await _read_json(request))
    with traced_request(
        tracer,
        operation="create_domain",
        domain=body.domain,
        start_message=f"[API] Creating domain {body.domain}",
    ):
        with registry_errors("Create"):
            record = await asyncio.to_thread(
                registry.insert, body.domain, body.ip, body.port, body.protocol or ""
            )
    return JSONResponse(status_code=201, content=record.to_dict())


@router.get("/config/{domain}")
async def get_domain(domain: str, registry: Registry = Depends(get_registry)):
    with traced_request(
        tracer,
        operation="get_domain",
        domain=domain,
        start_message=f"[API] Fetching domain {domain}",
    ):
        with registry_errors("Get"):
            record = await asyncio.to_thread(registry.lookup, domain)
    if record is None:
        raise _not_found()
    return record.to_dict()


@router.put("/config/{domain}")
async def update_domain(
    domain: str, request: Request, registry: Registry = Depends(get_registry)
):
    body = _parse(UpdateDomainRequest, await _read_json(request))
    with traced_request(
        tracer,
        operation="update_domain",
        domain=domain,
        start_message=f"[API] Updating domain {domain}",
    ):
        with registry_errors("Update"):
            # an empty protocol keeps the stored one
            record = await asyncio.to_thread(
                registry.update, domain, body.ip, body.port, body.protocol or ""
            )
    if record is None:
        raise _not_found()
    return record.to_dict()


@router.delete("/config/{domain}")
async def delete_domain(domain: str, registry: Registry = Depends(get_registry)):
    with traced_request(
        tracer,
        operation="delete_domain",
        domain=domain,
        start_message=f"[API] Deleting domain {domain}",
    ):
        with registry_errors("Delete"):
            deleted = await asyncio.to_thread(registry.delete, domain)
    if not deleted:
        raise _not_found()
    return Response(status_code=204)
