from .models import BackendRecord, RecordRequest, DEFAULT_SCHEME, SCHEMES
from .store import Registry, validate_record

__all__ = [
    "BackendRecord",
    "RecordRequest",
    "DEFAULT_SCHEME",
    "SCHEMES",
    "Registry",
    "validate_record",
]
