from __future__ import annotations

from typing import Any, Dict, List, Optional

from tender_unifier.pipeline.rules import parse_date
from tender_unifier.utils.text import collapse_spaces, is_blank

ID_CANDIDATES = ["id", "tender_id", "notice_id", "reference", "reference_number"]
DATE_FIELDS = {"publication_date", "deadline_date"}


def _first_value(raw: Dict[str, Any], candidates: List[str]) -> Optional[str]:
    for key in candidates:
        value = raw.get(key)
        if is_blank(value) or isinstance(value, (dict, list, bool)):
            continue
        return collapse_spaces(str(value))
    return None


class BaseSourceAdapter:
    """Boundary between one raw feed and the canonical tender fields.

    Subclasses override ``map_fields``, ``generate_url`` and the prompt; the
    pipeline only ever calls the methods defined here.
    """

    source_table: str = ""
    id_candidates: List[str] = ID_CANDIDATES
    prompt: str = ""

    def __init__(self, source_table: Optional[str] = None) -> None:
        if source_table:
            self.source_table = source_table

    def get_source_id(self, raw: Dict[str, Any]) -> Optional[str]:
        return _first_value(raw, self.id_candidates)

    def map_fields(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def generate_url(self, raw: Dict[str, Any]) -> Optional[str]:
        value = raw.get("url") or raw.get("link")
        return value.strip() if isinstance(value, str) and value.strip() else None

    def get_source_specific_prompt(self) -> str:
        return self.prompt

    def status_aliases(self) -> Dict[str, str]:
        return {}

    def apply_defaults(self, tender: Dict[str, Any], raw: Dict[str, Any]) -> Dict[str, Any]:
        """Fill empty fields from ``map_fields`` and the generated URL. Never overwrites."""
        result = dict(tender)
        for name, value in self.map_fields(raw).items():
            if name in DATE_FIELDS:
                value = parse_date(value, field=name)
            if is_blank(result.get(name)) and not is_blank(value):
                result[name] = value
        if is_blank(result.get("url")):
            url = self.generate_url(raw)
            if url:
                result["url"] = url
        return result


class GenericAdapter(BaseSourceAdapter):
    """Adapter for sources without a dedicated mapping."""

    def __repr__(self) -> str:
        return f"GenericAdapter({self.source_table!r})"
