from __future__ import annotations

from typing import Any, Dict, Optional

from tender_unifier.sources.base import BaseSourceAdapter

NOTICE_URL = "https://projects.worldbank.org/en/projects-operations/procurement/notice/{notice_no}"

PROMPT = (
    "This record comes from the World Bank procurement notices feed. The buyer is the "
    "borrower's implementing agency, while organization_name is the World Bank. "
    "'project_id' values look like P123456. 'procurement_method' values such as ICB, NCB, "
    "QCBS or RFQ should be spelled out. Amounts are usually in USD unless stated."
)


class WorldBankAdapter(BaseSourceAdapter):
    source_table = "wb"
    id_candidates = ["id", "notice_no", "notice_id"]
    prompt = PROMPT

    def generate_url(self, raw: Dict[str, Any]) -> Optional[str]:
        notice_no = raw.get("notice_no") or raw.get("id")
        if notice_no in (None, ""):
            return super().generate_url(raw)
        return NOTICE_URL.format(notice_no=str(notice_no).strip())

    def map_fields(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "title": raw.get("bid_description") or raw.get("project_name"),
            "organization_name": "World Bank",
            "buyer": raw.get("borrower") or raw.get("contact_organization"),
            "country": raw.get("project_ctry_name") or raw.get("country"),
            "project_id": raw.get("project_id"),
            "project_name": raw.get("project_name"),
            "procurement_method": raw.get("procurement_method_name") or raw.get("procurement_method"),
            "tender_type": raw.get("notice_type"),
            "publication_date": raw.get("noticedate") or raw.get("submission_date"),
            "deadline_date": raw.get("submission_deadline_date"),
            "notice_id": raw.get("notice_no") or raw.get("id"),
            "language": raw.get("notice_lang_name") and str(raw["notice_lang_name"])[:2].lower(),
        }
