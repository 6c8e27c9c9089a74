from __future__ import annotations

import copy
from datetime import date, datetime

import pytest

from tender_unifier.pipeline.rules import (
    extract_contacts,
    extract_document_links,
    extract_money,
    infer_sector,
    infer_status_from_deadline,
    infer_tender_type,
    normalize_status,
    normalize_without_llm,
    parse_date,
)


@pytest.mark.parametrize("value", ["2024-03-05", "05/03/2024", "05-03-2024", "2024/03/05"])
def test_parse_date_formats(value):
    assert parse_date(value) == "2024-03-05"


def test_parse_date_objects_and_timestamps():
    assert parse_date(date(2024, 3, 5)) == "2024-03-05"
    assert parse_date(datetime(2024, 3, 5, 17, 30)) == "2024-03-05"
    assert parse_date("2024-03-05T10:00:00Z") == "2024-03-05"
    assert parse_date("March 5, 2024") == "2024-03-05"


def test_parse_date_unparsable_is_null():
    warnings = []
    assert parse_date("not a date", field="deadline_date", warnings=warnings) is None
    assert parse_date("") is None
    assert warnings and warnings[0].field == "deadline_date"


def test_parse_date_numbers():
    warnings = []
    assert parse_date(1709596800) == "2024-03-05"
    assert parse_date(1709596800000) == "2024-03-05"
    assert parse_date(20240315) == "2024-03-15"
    assert parse_date(2024, field="deadline_date", warnings=warnings) is None
    assert parse_date("2024", warnings=warnings) is None
    assert [w.reason for w in warnings] == ["number is not a date", "year without month and day"]


def test_multi_candidate_mapping():
    raw = {
        "opportunity_title": "Road works",
        "summary": "Resurfacing of 12 km",
        "closing_date": "05/03/2024",
        "agency": "Department of Roads",
        "solicitation_number": "RW-2024-01",
    }
    tender = normalize_without_llm(raw, "demo")
    assert tender["title"] == "Road works"
    assert tender["description"] == "Resurfacing of 12 km"
    assert tender["deadline_date"] == "2024-03-05"
    assert tender["organization_name"] == "Department of Roads"
    assert tender["reference_number"] == "RW-2024-01"
    assert tender["source_table"] == "demo"


def test_first_non_blank_candidate_wins():
    raw = {"title": "   ", "opportunity_title": None, "name": "Bridge repair"}
    assert normalize_without_llm(raw, "demo")["title"] == "Bridge repair"


def test_whitespace_collapsed_and_first_letter_capitalized():
    raw = {"title": "  supply   of\n desks ", "buyer": "ministry of education"}
    tender = normalize_without_llm(raw, "demo")
    assert tender["title"] == "Supply of desks"
    assert tender["buyer"] == "Ministry of education"


def test_raw_record_is_not_mutated():
    raw = {"title": "x", "attachments": [{"name": "ToR", "url": "http://a"}], "value": "USD 10"}
    before = copy.deepcopy(raw)
    normalize_without_llm(raw, "demo")
    assert raw == before


def test_extract_money_variants():
    assert extract_money({"estimated_value": "USD 1,250,000.50"}) == (1250000.5, "USD")
    assert extract_money({"value": {"amount": "1000", "currency": "eur"}}) == (1000.0, "EUR")
    assert extract_money({"amount": 250}) == (250.0, None)
    assert extract_money({"amount": "$500", "currency": "CAD"}) == (500.0, "CAD")


def test_extract_money_unparsable_gives_nulls():
    warnings = []
    assert extract_money({"budget": "TBD"}, warnings) == (None, None)
    assert len(warnings) == 1


def test_extract_money_ignores_lowercase_words():
    assert extract_money({"estimated_value": "est 100"}) == (None, None)
    assert extract_money({"estimated_value": "Lot 5"}) == (None, None)


def test_status_keywords_and_aliases():
    assert normalize_status("active") == "Open"
    assert normalize_status("EXPIRED") == "Closed"
    assert normalize_status("Contract Awarded") == "Awarded"
    assert normalize_status("cancelled") == "Canceled"
    assert normalize_status("Open") == "Open"
    assert normalize_status("Ouvert", {"ouvert": "Open"}) == "Open"
    assert normalize_status("pending review") is None
    assert normalize_status(None) is None


def test_status_inferred_from_deadline():
    today = date(2024, 6, 1)
    assert infer_status_from_deadline("2024-07-01", today) == "Open"
    assert infer_status_from_deadline("2024-06-01", today) == "Open"
    assert infer_status_from_deadline("2024-05-01", today) == "Closed"
    assert infer_status_from_deadline(None, today) is None


def test_unknown_status_falls_back_to_deadline():
    warnings = []
    tender = normalize_without_llm(
        {"status": "pending review", "deadline": "2000-01-01"}, "demo", warnings=warnings
    )
    assert tender["status"] == "Closed"
    assert any(w.field == "status" for w in warnings)


def test_contacts_explicit_first_then_description():
    description = "Questions to procurement@example.org or +1 202-555-0143 before the deadline."
    found = extract_contacts({"contact_email": "buyer@example.org"}, description)
    assert found["contact_email"] == "buyer@example.org"
    assert found["contact_phone"] == "+1 202-555-0143"


def test_contacts_from_primary_sam_contact():
    raw = {
        "contacts": [
            {"contact_type": "secondary", "full_name": "Second Person", "email": "s@x.gov"},
            {"contact_type": "primary", "full_name": "Jane Doe", "email": "jane@x.gov", "phone": "555"},
        ]
    }
    found = extract_contacts(raw, None)
    assert found["contact_name"] == "Jane Doe"
    assert found["contact_email"] == "jane@x.gov"


def test_document_links_shapes():
    raw = {"attachments": [{"name": "Terms of Reference", "url": "http://a/tor.pdf"}, "http://a/b.pdf", {"title": "x"}]}
    assert extract_document_links(raw) == [
        {"title": "Terms of Reference", "url": "http://a/tor.pdf"},
        {"title": "Attachment", "url": "http://a/b.pdf"},
    ]
    assert extract_document_links({"document_url": "http://a/c.pdf"}) == [
        {"title": "Document", "url": "http://a/c.pdf"}
    ]
    assert extract_document_links({}) == []


def test_sector_scoring():
    assert infer_sector("Supply of solar power generators", None) == "Energy"
    assert infer_sector("IT support services", None) == "Information Technology"


def test_sector_ties_and_weak_scores_are_null():
    assert infer_sector(None, "hospital clinic road bridge") is None
    assert infer_sector(None, "hospital") is None
    assert infer_sector(None, None) is None


def test_acronym_keywords_are_case_sensitive():
    assert infer_sector(None, "it is what it is and it will be") is None


def test_tender_type_scoring():
    assert infer_tender_type("Request for Quotation for office chairs", None) == "Request for Quotation (RFQ)"
    assert infer_tender_type(None, "see attached RFP") is None
    assert infer_tender_type("Consultant for audit", "consultancy services") == "Consulting Services"
