from __future__ import annotations

import json
import logging

import pytest

import tender_unifier.cli as cli
from tender_unifier.store import TenderStore


@pytest.fixture
def home(monkeypatch, tmp_path):
    for name in ("OPENAI_API_KEY", "OPENAI_KEY", "TENDER_UNIFIER_DB_PATH", "TENDER_UNIFIER_DATA_DIR", "TENDER_UNIFIER_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TENDER_UNIFIER_HOME", str(tmp_path))
    monkeypatch.setenv("TENDER_UNIFIER_CONFIG", str(tmp_path / "config.yaml"))
    monkeypatch.setenv("TENDER_UNIFIER_STAGGER_S", "0")
    yield tmp_path.resolve()
    logger = logging.getLogger("tender_unifier")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _open_store(home):
    return TenderStore(home / "data" / "tenders.db").open()


def test_load_jsonl_and_ingest(home):
    records = [
        {"opportunity_id": "S-1", "title": "Road resurfacing", "response_date": "2099-01-01"},
        {"opportunity_id": "S-2", "title": "Bridge inspection", "response_date": "2000-01-01"},
    ]
    feed = home / "sam.jsonl"
    feed.write_text("\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8")

    assert cli.main(["--source", "sam_gov", "--load", str(feed), "--no-llm"]) == 0

    store = _open_store(home)
    try:
        assert store.count_unified("sam_gov") == 2
        assert store.fetch_unified("sam_gov", "S-2")["status"] == "Closed"
        run = store.fetch_run(1)
    finally:
        store.close()
    assert run["status"] == "ok"
    assert run["sources"] == "sam_gov"
    assert run["processed_count"] == 2
    assert run["fast_count"] == 2
    assert list((home / "logs").glob("run_*.log"))


def test_load_json_array_without_llm_uses_fallback(home):
    feed = home / "ungm.json"
    feed.write_text(
        json.dumps([{"notice_id": "U-1", "title": "Travaux", "description": "x" * 200, "language": "fr"}]),
        encoding="utf-8",
    )
    assert cli.main(["--source", "ungm", "--load", str(feed), "--no-llm"]) == 0

    store = _open_store(home)
    try:
        tender = store.fetch_unified("ungm", "U-1")
    finally:
        store.close()
    assert tender["normalized_method"] == "rule-based-fallback"


def test_load_requires_single_source(home):
    feed = home / "empty.jsonl"
    feed.write_text("", encoding="utf-8")
    assert cli.main(["--load", str(feed)]) == 2
    assert cli.main(["--load", str(feed), "--source", "wb", "--source", "ungm"]) == 2


def test_run_without_records_records_a_run(home):
    assert cli.main(["--no-llm", "--limit", "0"]) == 0
    store = _open_store(home)
    try:
        run = store.fetch_run(1)
    finally:
        store.close()
    assert set(run["sources"].split(",")) == {"sam_gov", "wb", "adb", "afd_tenders", "ungm", "iadb", "ted_eu"}
    assert run["finished_at"]


def test_malformed_load_file_exits_with_error(home):
    feed = home / "broken.jsonl"
    feed.write_text('{"opportunity_id": "S-1"\n', encoding="utf-8")
    assert cli.main(["--source", "sam_gov", "--load", str(feed), "--no-llm"]) == 1

    store = _open_store(home)
    try:
        assert store.count_unified("sam_gov") == 0
        assert store.fetch_run(1) is None
    finally:
        store.close()


def test_unopenable_store_exits_with_error(home, monkeypatch):
    blocker = home / "not_a_db"
    blocker.mkdir()
    monkeypatch.setenv("TENDER_UNIFIER_DB_PATH", str(blocker))
    assert cli.main(["--no-llm", "--limit", "0"]) == 1


def test_continuous_run_drains_the_source(home):
    records = [{"opportunity_id": f"S-{i}", "title": f"Road works lot {i}"} for i in range(7)]
    feed = home / "sam.jsonl"
    feed.write_text("\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8")

    assert cli.main(["--source", "sam_gov", "--load", str(feed), "--no-llm", "--continuous", "--limit", "10"]) == 0

    store = _open_store(home)
    try:
        assert store.count_unified("sam_gov") == 7
        assert store.fetch_run(1)["processed_count"] == 7
    finally:
        store.close()
