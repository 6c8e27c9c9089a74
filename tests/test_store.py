from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tender_unifier.errors import StoreConflict, StoreError
from tender_unifier.schema import empty_tender
from tender_unifier.store import RunRecord, TenderStore, to_utc_iso


@pytest.fixture
def store(tmp_path):
    s = TenderStore(tmp_path / "data" / "tenders.db").open()
    yield s
    s.close()


def _unified(source_id="N-1", **overrides):
    tender = empty_tender()
    tender.update({"source_table": "sam_gov", "source_id": source_id, "title": "Road works"})
    tender.update(overrides)
    return tender


def test_to_utc_iso():
    assert to_utc_iso("2024-01-01T12:00:00+02:00") == "2024-01-01T10:00:00+00:00"
    assert to_utc_iso("2024-01-01 08:30:15.250") == "2024-01-01T08:30:15+00:00"
    assert to_utc_iso(datetime(2024, 1, 1, tzinfo=timezone.utc)) == "2024-01-01T00:00:00+00:00"
    assert to_utc_iso(None) is None
    assert to_utc_iso("") is None
    assert to_utc_iso("garbage") is None


def test_migrations_are_idempotent(tmp_path):
    db = tmp_path / "tenders.db"
    TenderStore(db).open().close()
    again = TenderStore(db).open()
    versions = [row[0] for row in again.conn.execute("SELECT version FROM schema_migrations ORDER BY version")]
    again.close()
    assert versions == [1, 2]


def test_closed_store_raises(tmp_path):
    with pytest.raises(StoreError):
        TenderStore(tmp_path / "x.db").fetch_raw_tenders("sam_gov")


def test_raw_freshness_taken_from_payload(store):
    row_id = store.add_raw_tender("sam_gov", {"id": "1", "last_modified": "2024-03-01T09:00:00Z"})
    [candidate] = store.fetch_raw_tenders("sam_gov")
    assert candidate.row_id == row_id
    assert candidate.updated_at == "2024-03-01T09:00:00+00:00"
    assert candidate.payload == {"id": "1", "last_modified": "2024-03-01T09:00:00Z"}


def test_fetch_raw_orders_newest_first_and_limits(store):
    store.add_raw_tender("sam_gov", {"id": "old"}, created_at="2024-01-01T00:00:00Z")
    store.add_raw_tender("sam_gov", {"id": "new"}, created_at="2024-02-01T00:00:00Z")
    store.add_raw_tender("wb", {"id": "other"})
    ids = [c.payload["id"] for c in store.fetch_raw_tenders("sam_gov")]
    assert ids == ["new", "old"]
    assert [c.payload["id"] for c in store.fetch_raw_tenders("sam_gov", limit=1)] == ["new"]


def test_processed_rows_are_excluded_until_changed(store):
    stale = store.add_raw_tender("sam_gov", {"id": "a"}, updated_at="2024-01-01T00:00:00Z")
    changed = store.add_raw_tender("sam_gov", {"id": "b"}, updated_at="2024-06-01T00:00:00Z")
    store.mark_raw_processed([stale, changed], processed_at="2024-03-01T00:00:00+00:00")

    assert [c.row_id for c in store.fetch_raw_tenders("sam_gov")] == [changed]
    assert {c.row_id for c in store.fetch_raw_tenders("sam_gov", force_reprocess=True)} == {stale, changed}

    store.mark_raw_processed([changed])
    assert store.fetch_raw_tenders("sam_gov") == []


def test_insert_and_fetch_unified(store):
    links = [{"title": "ToR", "url": "http://a/tor.pdf"}]
    store.insert_unified(_unified(document_links=links, estimated_value=1000.0, status="Open"))
    row = store.fetch_unified("sam_gov", "N-1")
    assert row["title"] == "Road works"
    assert row["document_links"] == links
    assert row["estimated_value"] == 1000.0
    assert row["created_at"] == row["updated_at"]
    assert store.count_unified() == 1
    assert store.count_unified("wb") == 0


def test_duplicate_insert_is_a_conflict(store):
    store.insert_unified(_unified())
    with pytest.raises(StoreConflict):
        store.insert_unified(_unified(title="Other"))
    assert store.fetch_unified("sam_gov", "N-1")["title"] == "Road works"


def test_status_outside_closed_set_is_rejected(store):
    with pytest.raises(StoreError) as info:
        store.insert_unified(_unified(status="Pending"))
    assert not isinstance(info.value, StoreConflict)


def test_unified_requires_key(store):
    with pytest.raises(StoreError):
        store.insert_unified(_unified(source_id=None))


def test_update_unified(store):
    assert store.update_unified(_unified()) is False
    store.insert_unified(_unified())
    assert store.update_unified(_unified(title="Bridge works", document_links=[])) is True
    assert store.fetch_unified("sam_gov", "N-1")["title"] == "Bridge works"


def test_existing_freshness(store):
    store.insert_unified(_unified("A"))
    store.insert_unified(_unified("B"))
    found = store.fetch_existing_freshness("sam_gov", ["A", "C", "A", None])
    assert set(found) == {"A"}
    assert to_utc_iso(found["A"]) == found["A"]
    assert store.fetch_existing_freshness("sam_gov", []) == {}


def test_runs_are_recorded(store):
    run_id = store.start_run(RunRecord(started_at="2024-01-01T00:00:00+00:00", sources=["sam_gov", "wb"], force_reprocess=True))
    store.finish_run(
        run_id,
        finished_at="2024-01-01T00:05:00+00:00",
        status="error",
        error="wb",
        totals={"processed": 3, "updated": 1, "skipped": 2, "errors": 0, "fallback": 1, "fastNormalization": 2},
    )
    run = store.fetch_run(run_id)
    assert run["sources"] == "sam_gov,wb"
    assert run["force_reprocess"] == 1
    assert run["status"] == "error"
    assert run["processed_count"] == 3
    assert run["fast_count"] == 2
    assert store.fetch_run(run_id + 1) is None
