from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, NamedTuple, Optional

from hostproxy.errors import StorageError

DEFAULT_SCHEME = "http"
SCHEMES = ("http", "https")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> datetime:
    """
    Parse a stored timestamp.

    Accepts the ISO-8601 values written by the registry as well as SQLite's
    ``CURRENT_TIMESTAMP`` format (``2024-01-15 10:30:00``). Naive values are UTC.
    """
    if not value:
        raise StorageError("Stored record has an empty timestamp")
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise StorageError(f"Stored record has an invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RecordRequest(NamedTuple):
    """Fields supplied when creating a record; an empty scheme means the default."""

    domain: str
    address: str
    port: int
    scheme: str = ""


@dataclass(frozen=True)
class BackendRecord:
    """One domain-to-backend mapping as stored in the registry."""

    domain: str
    address: str
    port: int
    scheme: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Optional[tuple]) -> Optional["BackendRecord"]:
        if not row:
            return None
        domain, address, port, scheme, created_at, updated_at = row
        try:
            port = int(port)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Stored record for {domain} has an invalid port") from exc
        return cls(
            domain=domain,
            address=address,
            port=port,
            # rows written before the scheme default existed carry an empty value
            scheme=scheme or DEFAULT_SCHEME,
            created_at=parse_timestamp(created_at),
            updated_at=parse_timestamp(updated_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape used by the management API."""
        return {
            "domain": self.domain,
            "ip": self.address,
            "port": self.port,
            "protocol": self.scheme,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
