from __future__ import annotations

from typing import Any, Dict, Optional

from tender_unifier.sources.base import BaseSourceAdapter

NOTICE_URL = "https://www.ungm.org/Public/Notice/{notice_id}"

PROMPT = (
    "This record comes from UNGM, the United Nations Global Marketplace. organization_name is the "
    "UN agency publishing the notice (e.g. UNDP, UNICEF, WFP). Notice types include Request for "
    "Proposal, Invitation to Bid, Request for Quotation, Expression of Interest and Request for "
    "Information. Deadlines often carry a time zone; return the calendar date only."
)


class UngmAdapter(BaseSourceAdapter):
    source_table = "ungm"
    id_candidates = ["notice_id", "tender_id", "reference", "id"]
    prompt = PROMPT

    def generate_url(self, raw: Dict[str, Any]) -> Optional[str]:
        notice_id = self.get_source_id(raw)
        if not notice_id:
            return super().generate_url(raw)
        return NOTICE_URL.format(notice_id=notice_id)

    def map_fields(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "organization_name": raw.get("agency") or raw.get("un_organization"),
            "tender_type": raw.get("notice_type") or raw.get("type"),
            "reference_number": raw.get("reference"),
            "country": raw.get("beneficiary_country") or raw.get("country"),
            "publication_date": raw.get("published") or raw.get("publish_date"),
            "deadline_date": raw.get("deadline"),
            "notice_id": self.get_source_id(raw),
        }
