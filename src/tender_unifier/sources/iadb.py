from __future__ import annotations

from typing import Any, Dict, Optional

from tender_unifier.sources.base import BaseSourceAdapter

NOTICE_URL = "https://www.iadb.org/en/projects/procurement-notices/{procurement_id}"

STATUS_ALIASES = {
    "active": "Open",
    "published": "Open",
    "signed": "Awarded",
    "cancelled": "Canceled",
    "activo": "Open",
    "abierto": "Open",
    "publicado": "Open",
    "cerrado": "Closed",
    "adjudicado": "Awarded",
    "firmado": "Awarded",
    "cancelado": "Canceled",
}

PROMPT = (
    "This record comes from the Inter-American Development Bank. Content may be in Spanish, "
    "Portuguese or English: put English versions in the *_english fields. 'borrower', "
    "'executing_agency' or 'client' is the buyer. Look for 'estimated_cost' or "
    "'contract_amount' for amounts and 'project_number' for the project reference."
)


class IadbAdapter(BaseSourceAdapter):
    source_table = "iadb"
    id_candidates = ["procurement_id", "notice_id", "id"]
    prompt = PROMPT

    def generate_url(self, raw: Dict[str, Any]) -> Optional[str]:
        url = super().generate_url(raw)
        if url:
            return url
        procurement_id = raw.get("procurement_id")
        if procurement_id in (None, ""):
            return None
        return NOTICE_URL.format(procurement_id=str(procurement_id).strip())

    def status_aliases(self) -> Dict[str, str]:
        return dict(STATUS_ALIASES)

    def map_fields(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "title": raw.get("procurement_title"),
            "description": raw.get("procurement_description"),
            "deadline_date": raw.get("closing_date"),
            "notice_id": raw.get("procurement_id") or raw.get("notice_id"),
            "reference_number": raw.get("procurement_id"),
            "buyer": raw.get("borrower") or raw.get("executing_agency") or raw.get("client"),
            "organization_name": "Inter-American Development Bank",
            "country": raw.get("country_name"),
            "project_number": raw.get("project_number"),
            "tender_type": raw.get("procurement_method") or raw.get("procurement_type") or "Tender",
            "sector": raw.get("project_sector"),
        }
