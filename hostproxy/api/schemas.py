from typing import List, Optional

from pydantic import BaseModel


class CreateDomainRequest(BaseModel):
    domain: Optional[str] = None
    ip: Optional[str] = None
    port: Optional[int] = None
    protocol: Optional[str] = None


class UpdateDomainRequest(BaseModel):
    ip: Optional[str] = None
    port: Optional[int] = None
    protocol: Optional[str] = None


class BulkCreateDomainsRequest(BaseModel):
    domains: List[CreateDomainRequest] = []
