from __future__ import annotations

import threading

from tender_unifier.config import AppConfig, IngestConfig, LLMConfig, SourceConfig, build_paths
from tender_unifier.errors import CompletionServiceError
from tender_unifier.pipeline.decision import DecisionStats
from tender_unifier.pipeline.normalize import normalize_record
from tender_unifier.sources.base import GenericAdapter
from tender_unifier.sources.ungm import UngmAdapter

FRENCH_RAW = {
    "notice_id": "U-7",
    "title": "Travaux de réhabilitation des routes rurales",
    "description": (
        "Les travaux comprennent la réhabilitation de quarante kilomètres de routes rurales "
        "dans la région du nord, y compris les ouvrages de drainage et la signalisation routière."
    ),
    "amount": "abc",
}


def _config(tmp_path, **ingest_settings):
    return AppConfig(
        paths=build_paths(tmp_path, {}),
        llm=LLMConfig(api_key="test-key"),
        ingest=IngestConfig(stagger_s=0, **ingest_settings),
    )


def test_forecast_record_takes_fast_path(tmp_path):
    raw = {"notice_id": "F-1", "title": "FORECAST II -- SUPPLY OF GENERATORS", "status": "active"}
    outcome = normalize_record(raw, "ungm", adapter=UngmAdapter(), config=_config(tmp_path))
    assert outcome.method == "rule-based-fast"
    assert outcome.decision.rule == "minimal_content"
    assert outcome.tender["status"] == "Open"
    assert outcome.tender["title"] == "Supply of Generators"
    assert outcome.tender["source_id"] == "F-1"
    assert outcome.tender["normalized_method"] == "rule-based-fast"
    assert outcome.tender["normalized_at"]
    assert not outcome.used_fallback


def test_llm_result_is_tagged_and_enhanced(tmp_path):
    stats = DecisionStats()

    def fake_invoke(prompt, llm_config, logger=None):
        return {"title": "TRAVAUX ROUTIERS DANS LE NORD", "status": "ouvert", "deadline_date": "15/03/2099"}

    outcome = normalize_record(
        FRENCH_RAW, "ungm", adapter=UngmAdapter(), config=_config(tmp_path), stats=stats, invoke=fake_invoke
    )
    assert outcome.method == "llm"
    assert outcome.llm_error is None
    assert outcome.tender["title"] == "Travaux Routiers Dans Le Nord"
    assert outcome.tender["deadline_date"] == "2099-03-15"
    # Status came back unrecognized from the model and is inferred from the deadline.
    assert outcome.tender["status"] == "Open"
    assert outcome.tender["url"] == "https://www.ungm.org/Public/Notice/U-7"
    assert stats.total == 1


def test_timeout_without_shared_executor(tmp_path):
    release = threading.Event()

    def slow_invoke(prompt, llm_config, logger=None):
        release.wait(5)
        return {}

    try:
        outcome = normalize_record(
            FRENCH_RAW,
            "ungm",
            adapter=UngmAdapter(),
            config=_config(tmp_path, llm_timeout_s=0.1),
            invoke=slow_invoke,
        )
    finally:
        release.set()
    assert outcome.used_fallback
    assert isinstance(outcome.llm_error, CompletionServiceError)
    assert not outcome.quota_exhausted
    assert outcome.tender["title"] == FRENCH_RAW["title"]


def test_per_source_timeout_override(tmp_path):
    config = _config(tmp_path, llm_timeout_s=0.1)
    config.sources = [SourceConfig(name="slow_feed", llm_timeout_s=5.0)]
    release = threading.Event()

    def invoke(prompt, llm_config, logger=None):
        release.wait(0.3)
        return {"title": "Finished in time"}

    outcome = normalize_record(FRENCH_RAW, "slow_feed", adapter=GenericAdapter("slow_feed"), config=config, invoke=invoke)
    assert outcome.method == "llm"
    assert outcome.tender["title"] == "Finished in time"


def test_quota_error_sets_disabled_event(tmp_path):
    disabled = threading.Event()

    def quota_invoke(prompt, llm_config, logger=None):
        raise CompletionServiceError("billing", status_code=402, quota_exhausted=True)

    outcome = normalize_record(
        FRENCH_RAW, "ungm", adapter=UngmAdapter(), config=_config(tmp_path), llm_disabled=disabled, invoke=quota_invoke
    )
    assert outcome.used_fallback
    assert outcome.quota_exhausted
    assert disabled.is_set()


def test_field_warnings_are_collected(tmp_path):
    config = _config(tmp_path)
    config.llm.enabled = False
    outcome = normalize_record(FRENCH_RAW, "ungm", adapter=UngmAdapter(), config=config)
    assert outcome.used_fallback
    assert outcome.llm_error is None
    assert outcome.tender["estimated_value"] is None
    assert [w.field for w in outcome.warnings] == ["estimated_value"]


def test_unexpected_llm_error_falls_back_to_rules(tmp_path):
    def broken_invoke(prompt, llm_config, logger=None):
        raise RuntimeError("choices[0] was a string")

    outcome = normalize_record(FRENCH_RAW, "ungm", adapter=UngmAdapter(), config=_config(tmp_path), invoke=broken_invoke)
    assert outcome.method == "rule-based-fallback"
    assert outcome.used_fallback
    assert isinstance(outcome.llm_error, RuntimeError)
    assert not outcome.quota_exhausted
