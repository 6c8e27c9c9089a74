from __future__ import annotations

from typing import Any, Dict, Optional

from tender_unifier.sources.base import BaseSourceAdapter

NOTICE_URL = "https://www.adb.org/projects/tenders/{notice_id}"

STATUS_ALIASES = {
    "active": "Open",
    "cancelled": "Canceled",
}

PROMPT = (
    "This record comes from the Asian Development Bank procurement notices. 'agency' or "
    "'borrower' is the buyer. 'procurement_type' maps to tender_type and 'sector' or "
    "'category' to sector. Look for 'estimated_value' or 'contract_value' for amounts and "
    "'project_number' for the project reference."
)


class AdbAdapter(BaseSourceAdapter):
    source_table = "adb"
    id_candidates = ["notice_id", "id"]
    prompt = PROMPT

    def generate_url(self, raw: Dict[str, Any]) -> Optional[str]:
        notice_id = raw.get("notice_id")
        if notice_id in (None, ""):
            return super().generate_url(raw)
        return NOTICE_URL.format(notice_id=str(notice_id).strip())

    def status_aliases(self) -> Dict[str, str]:
        return dict(STATUS_ALIASES)

    def map_fields(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "title": raw.get("notice_title"),
            "description": raw.get("notice_details"),
            "deadline_date": raw.get("closing_date"),
            "notice_id": raw.get("notice_id") or raw.get("reference_number"),
            "reference_number": raw.get("reference_number") or raw.get("notice_id"),
            "buyer": raw.get("borrower") or raw.get("agency"),
            "organization_name": "Asian Development Bank",
            "project_id": raw.get("project_id"),
            "project_number": raw.get("project_number"),
            "tender_type": raw.get("procurement_type") or "Tender",
            "sector": raw.get("category"),
            "currency": "USD",
        }
