import sqlite3
import threading
from datetime import timezone

import pytest

from hostproxy.errors import DuplicateKeyError, RecordValidationError, StorageError
from hostproxy.registry import RecordRequest, Registry


@pytest.fixture
def store(tmp_path):
    registry = Registry(db_path=tmp_path / "proxy.db")
    yield registry
    registry.close()


def test_insert_and_lookup_do_not_cross_talk(store):
    store.insert("a.com", "10.0.0.1", 8080, "https")
    store.insert("b.com", "10.0.0.2", 9090)

    a = store.lookup("a.com")
    b = store.lookup("b.com")

    assert (a.domain, a.address, a.port, a.scheme) == ("a.com", "10.0.0.1", 8080, "https")
    assert (b.domain, b.address, b.port, b.scheme) == ("b.com", "10.0.0.2", 9090, "http")


def test_insert_sets_both_timestamps(store):
    record = store.insert("a.com", "10.0.0.1", 80)

    assert record.created_at == record.updated_at
    assert record.created_at.tzinfo is not None


def test_lookup_missing_domain_returns_none(store):
    assert store.lookup("missing.com") is None


def test_lookup_is_exact_match(store):
    store.insert("Example.com", "10.0.0.1", 80)

    assert store.lookup("example.com") is None
    assert store.lookup("Example.com") is not None


def test_duplicate_insert_fails_and_keeps_prior_record(store):
    original = store.insert("a.com", "10.0.0.1", 8080, "https")

    with pytest.raises(DuplicateKeyError) as exc_info:
        store.insert("a.com", "10.9.9.9", 1, "http")

    assert exc_info.value.domain == "a.com"
    assert store.lookup("a.com") == original


def test_update_without_scheme_preserves_stored_scheme(store):
    store.insert("a.com", "10.0.0.1", 8080, "https")

    updated = store.update("a.com", "10.0.0.2", 9090, "")

    assert updated.address == "10.0.0.2"
    assert updated.port == 9090
    assert updated.scheme == "https"


def test_update_with_scheme_overwrites_it(store):
    store.insert("a.com", "10.0.0.1", 8080, "https")

    updated = store.update("a.com", "10.0.0.1", 8080, "http")

    assert updated.scheme == "http"


def test_update_refreshes_updated_at_only(store):
    created = store.insert("a.com", "10.0.0.1", 8080)

    updated = store.update("a.com", "10.0.0.2", 8080)

    assert updated.created_at == created.created_at
    assert updated.updated_at >= created.updated_at


def test_update_missing_domain_returns_none(store):
    assert store.update("missing.com", "10.0.0.1", 80) is None
    assert store.list_all() == []


def test_update_reports_only_its_own_fields(store):
    store.insert("a.com", "10.0.0.1", 80)

    with pytest.raises(RecordValidationError) as exc_info:
        store.update("a.com", "", 80)

    assert exc_info.value.message == "Missing required fields: ip, port"


def test_delete_existing_domain(store):
    store.insert("a.com", "10.0.0.1", 80)

    assert store.delete("a.com") is True
    assert store.lookup("a.com") is None


def test_delete_missing_domain_has_no_effect(store):
    store.insert("a.com", "10.0.0.1", 80)
    before = store.list_all()

    assert store.delete("missing.com") is False
    assert store.list_all() == before


def test_list_all_is_ordered_by_domain(store):
    for domain in ("c.com", "a.com", "b.com"):
        store.insert(domain, "10.0.0.1", 80)

    assert [r.domain for r in store.list_all()] == ["a.com", "b.com", "c.com"]


def test_list_all_empty_registry(store):
    assert store.list_all() == []


@pytest.mark.parametrize(
    "domain,address,port,scheme",
    [
        ("", "10.0.0.1", 80, ""),
        ("a.com", "", 80, ""),
        ("a.com", "10.0.0.1", 0, ""),
        ("a.com", "10.0.0.1", 70000, ""),
        ("a.com", "10.0.0.1", True, ""),
        ("a.com", "10.0.0.1", 80, "ftp"),
    ],
)
def test_insert_rejects_invalid_records(store, domain, address, port, scheme):
    with pytest.raises(RecordValidationError):
        store.insert(domain, address, port, scheme)

    assert store.list_all() == []


def test_bulk_insert_commits_all_records(store):
    created = store.bulk_insert(
        [
            RecordRequest("a.com", "10.0.0.1", 80),
            RecordRequest("b.com", "10.0.0.2", 443, "https"),
            ("c.com", "10.0.0.3", 8080),
        ]
    )

    assert [r.domain for r in created] == ["a.com", "b.com", "c.com"]
    assert created[0].scheme == "http"
    assert created[1].scheme == "https"
    assert len(store.list_all()) == 3


def test_bulk_insert_rolls_back_on_existing_duplicate(store):
    store.insert("b.com", "10.0.0.9", 80)

    with pytest.raises(DuplicateKeyError) as exc_info:
        store.bulk_insert(
            [
                RecordRequest("a.com", "10.0.0.1", 80),
                RecordRequest("b.com", "10.0.0.2", 80),
                RecordRequest("c.com", "10.0.0.3", 80),
            ]
        )

    assert exc_info.value.domain == "b.com"
    assert store.lookup("a.com") is None
    assert store.lookup("c.com") is None
    assert store.lookup("b.com").address == "10.0.0.9"


def test_bulk_insert_rejects_duplicate_within_batch(store):
    with pytest.raises(DuplicateKeyError):
        store.bulk_insert(
            [
                RecordRequest("a.com", "10.0.0.1", 80),
                RecordRequest("a.com", "10.0.0.2", 80),
            ]
        )

    assert store.list_all() == []


def test_bulk_insert_validates_before_writing(store):
    with pytest.raises(RecordValidationError) as exc_info:
        store.bulk_insert(
            [
                RecordRequest("a.com", "10.0.0.1", 80),
                RecordRequest("b.com", "", 80),
            ]
        )

    assert exc_info.value.index == 1
    assert "index 1" in exc_info.value.message
    assert store.list_all() == []


def test_bulk_insert_empty_batch(store):
    assert store.bulk_insert([]) == []


def test_concurrent_inserts_all_succeed(store):
    errors = []

    def insert(i):
        try:
            store.insert(f"host-{i:02d}.example.com", "10.0.0.1", 8000 + i)
        except Exception as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [threading.Thread(target=insert, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    records = store.list_all()
    assert errors == []
    assert len(records) == 20
    assert [r.domain for r in records] == sorted(r.domain for r in records)


def test_empty_stored_scheme_reads_back_as_http(tmp_path):
    db_path = tmp_path / "legacy.db"
    Registry(db_path).close()
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "INSERT INTO domains (domain, ip, port, protocol, created_at, updated_at) "
            "VALUES ('old.com', '10.0.0.1', 80, '', '2024-01-15 10:30:00', '2024-01-15 10:30:00')"
        )
    conn.close()

    with Registry(db_path) as store:
        record = store.lookup("old.com")

    assert record.scheme == "http"
    assert record.created_at.year == 2024
    assert record.created_at.tzinfo == timezone.utc


def test_corrupt_timestamp_is_a_storage_error(tmp_path):
    db_path = tmp_path / "corrupt.db"
    Registry(db_path).close()
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "INSERT INTO domains (domain, ip, port, protocol, created_at, updated_at) "
            "VALUES ('bad.com', '10.0.0.1', 80, 'http', 'yesterday', 'yesterday')"
        )
    conn.close()

    with Registry(db_path) as store:
        with pytest.raises(StorageError):
            store.lookup("bad.com")


def test_schema_failure_closes_connection(tmp_path, monkeypatch):
    opened = []
    real_connect = sqlite3.connect

    def tracking_connect(*args, **kwargs):
        conn = real_connect(*args, **kwargs)
        opened.append(conn)
        return conn

    def broken_schema(self):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(sqlite3, "connect", tracking_connect)
    monkeypatch.setattr(Registry, "_ensure_schema", broken_schema)

    with pytest.raises(StorageError):
        Registry(tmp_path / "proxy.db")

    with pytest.raises(sqlite3.ProgrammingError):
        opened[0].execute("SELECT 1")


def test_closed_registry_raises_storage_error(tmp_path):
    store = Registry(tmp_path / "proxy.db")
    store.close()

    with pytest.raises(StorageError):
        store.lookup("a.com")


def test_record_to_dict_uses_api_field_names(store):
    record = store.insert("a.com", "10.0.0.1", 8080, "https")

    data = record.to_dict()

    assert data["domain"] == "a.com"
    assert data["ip"] == "10.0.0.1"
    assert data["port"] == 8080
    assert data["protocol"] == "https"
    assert data["created_at"].endswith("+00:00")
