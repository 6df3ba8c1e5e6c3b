import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Union

from hostproxy.errors import DuplicateKeyError, RecordValidationError, StorageError
from hostproxy.registry.models import (
    DEFAULT_SCHEME,
    SCHEMES,
    BackendRecord,
    RecordRequest,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger("uvicorn.error")

_COLUMNS = "domain, ip, port, protocol, created_at, updated_at"


def validate_record(
    domain: str,
    address: str,
    port: int,
    scheme: Optional[str] = "",
    index: Optional[int] = None,
    required: Sequence[str] = ("domain", "ip", "port"),
) -> None:
    """
    Reject a record that could not be stored or routed to.

    ``required`` names the fields the caller supplied, as listed when one of
    them is missing.
    """
    where = f" in domain at index {index}" if index is not None else ""
    if (
        not isinstance(domain, str)
        or not domain
        or not isinstance(address, str)
        or not address
        or isinstance(port, bool)
        or not isinstance(port, int)
        or port == 0
    ):
        raise RecordValidationError(
            f"Missing required fields{where}: {', '.join(required)}", index=index
        )
    if not 1 <= port <= 65535:
        raise RecordValidationError(
            f"Invalid port{where}: {port} (expected 1-65535)", index=index
        )
    if scheme and scheme not in SCHEMES:
        raise RecordValidationError(
            f"Invalid protocol{where}: {scheme!r} (expected http or https)", index=index
        )


class Registry:
    """
    SQLite-backed domain -> backend registry.

    One connection is opened for the lifetime of the registry and shared by
    every caller. All statements run under a lock and inside a transaction, so
    mutations are serialized and a bulk insert is never observed half-applied.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:" and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to open registry at {self.db_path}: {exc}") from exc
        try:
            self._ensure_schema()
        except sqlite3.Error as exc:
            self._conn.close()
            raise StorageError(
                f"Failed to create registry schema at {self.db_path}: {exc}"
            ) from exc
        logger.info(f"[Registry] Opened registry at {self.db_path}")

    def __enter__(self) -> "Registry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.info(f"[Registry] Closed registry at {self.db_path}")

    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS domains (
                    domain TEXT PRIMARY KEY NOT NULL,
                    ip TEXT NOT NULL,
                    port INTEGER NOT NULL DEFAULT 80,
                    protocol TEXT NOT NULL DEFAULT 'http',
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as exc:
                logger.error(f"[Registry] {operation} failed: {exc}")
                raise StorageError(f"Registry {operation} failed: {exc}") from exc

    @staticmethod
    def _select(conn: sqlite3.Connection, domain: str) -> Optional[BackendRecord]:
        cur = conn.execute(
            f"SELECT {_COLUMNS} FROM domains WHERE domain = ?", (domain,)
        )
        return BackendRecord.from_row(cur.fetchone())

    def lookup(self, domain: str) -> Optional[BackendRecord]:
        with self._transaction("lookup") as conn:
            return self._select(conn, domain)

    def list_all(self) -> List[BackendRecord]:
        with self._transaction("list") as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM domains ORDER BY domain"
            ).fetchall()
        return [BackendRecord.from_row(row) for row in rows]

    def insert(
        self, domain: str, address: str, port: int, scheme: Optional[str] = ""
    ) -> BackendRecord:
        validate_record(domain, address, port, scheme)
        now = format_timestamp(utc_now())
        with self._transaction("insert") as conn:
            try:
                conn.execute(
                    f"INSERT INTO domains ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    (domain, address, port, scheme or DEFAULT_SCHEME, now, now),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateKeyError(domain) from exc
            record = self._select(conn, domain)
        logger.info(
            f"[Registry] Inserted {domain} -> {record.scheme}://{address}:{port}"
        )
        return record

    def update(
        self, domain: str, address: str, port: int, scheme: Optional[str] = ""
    ) -> Optional[BackendRecord]:
        """Replace address and port; an empty scheme keeps the stored one."""
        validate_record(domain, address, port, scheme, required=("ip", "port"))
        now = format_timestamp(utc_now())
        with self._transaction("update") as conn:
            existing = self._select(conn, domain)
            if existing is None:
                return None
            conn.execute(
                "UPDATE domains SET ip = ?, port = ?, protocol = ?, updated_at = ? "
                "WHERE domain = ?",
                (address, port, scheme or existing.scheme, now, domain),
            )
            record = self._select(conn, domain)
        logger.info(
            f"[Registry] Updated {domain} -> {record.scheme}://{address}:{port}"
        )
        return record

    def delete(self, domain: str) -> bool:
        with self._transaction("delete") as conn:
            cur = conn.execute("DELETE FROM domains WHERE domain = ?", (domain,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info(f"[Registry] Deleted {domain}")
        return deleted

    def bulk_insert(
        self, records: Iterable[Union[RecordRequest, Sequence]]
    ) -> List[BackendRecord]:
        """
        Insert every record or none of them.

        All records are validated before the transaction starts. A domain that
        already exists, or that appears twice in the batch, aborts the batch.
        """
        requests = [
            item if isinstance(item, RecordRequest) else RecordRequest(*item)
            for item in records
        ]
        if not requests:
            return []

        seen = set()
        for index, req in enumerate(requests):
            validate_record(req.domain, req.address, req.port, req.scheme, index=index)
            if req.domain in seen:
                raise DuplicateKeyError(req.domain)
            seen.add(req.domain)

        now = format_timestamp(utc_now())
        with self._transaction("bulk insert") as conn:
            for req in requests:
                try:
                    conn.execute(
                        f"INSERT INTO domains ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                        (
                            req.domain,
                            req.address,
                            req.port,
                            req.scheme or DEFAULT_SCHEME,
                            now,
                            now,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    logger.warning(
                        f"[Registry] Bulk insert rolled back, {req.domain} already exists"
                    )
                    raise DuplicateKeyError(req.domain) from exc
            created = [self._select(conn, req.domain) for req in requests]
        logger.info(f"[Registry] Bulk inserted {len(created)} domains")
        return created
