from __future__ import annotations

import json
import re
import time
from typing import Any, Dict, Optional

import requests

from tender_unifier.config import LLMConfig
from tender_unifier.errors import CompletionServiceError, ParseFailure
from tender_unifier.pipeline.rules import normalize_status, parse_date
from tender_unifier.schema import LLM_FIELDS, NUMERIC_FIELDS
from tender_unifier.utils.rate_limit import shared_limiter
from tender_unifier.utils.text import collapse_spaces, extract_numeric_value

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
QUOTA_MARKERS = ("insufficient_quota", "billing", "payment required")

_FIELD_HINTS = {
    "title": "The original title of the tender",
    "title_english": "The title translated to English (same as title if already English)",
    "description": "The full description of the tender",
    "description_english": "The description translated to English",
    "tender_type": "The type of procurement notice (e.g. Request for Proposal, Invitation to Bid)",
    "status": "One of: Open, Closed, Awarded, Canceled",
    "publication_date": "Publication date in YYYY-MM-DD format",
    "deadline_date": "Submission deadline in YYYY-MM-DD format",
    "estimated_value": "Estimated contract value as a plain number without currency symbols",
    "currency": "Three-letter ISO currency code",
    "document_links": "Array of document links",
}

_DATE_FIELDS = {"publication_date", "deadline_date"}

FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
FENCE_START_RE = re.compile(r"^```(?:json)?\s*")
FENCE_END_RE = re.compile(r"\s*```$")
PROPERTY_RE = re.compile(
    r'"([^"]+)"\s*:\s*(?:"(?:[^"\\]|\\.)*"|-?\d+(?:\.\d+)?|\{[^{}]*\}|\[[^\[\]]*\]|true|false|null)'
)
DOCUMENT_LINKS_RE = re.compile(r'"document_links"\s*:\s*(\[[\s\S]*?\])')


def build_prompt(raw: Dict[str, Any], source_table: str, source_prompt: str = "") -> str:
    field_lines = []
    for name in LLM_FIELDS:
        hint = _FIELD_HINTS.get(name, f"The {name.replace('_', ' ')} of the tender")
        field_lines.append(f'  "{name}": "{hint}"')
    schema = "{\n" + ",\n".join(field_lines) + "\n}"

    guidance = source_prompt.strip() if source_prompt else ""
    return (
        "You are an expert procurement data analyst. Normalize the raw tender record below "
        f"from source '{source_table}' into a single JSON object.\n\n"
        "Return ONLY a JSON object with exactly these fields:\n"
        f"{schema}\n\n"
        "Rules:\n"
        "- Use null for any field that cannot be determined. Do not invent values.\n"
        "- Dates must be YYYY-MM-DD.\n"
        "- estimated_value must be a number or null.\n"
        '- document_links must be an array of objects shaped {"title": "...", "url": "..."}.\n'
        "- Translate non-English text into the *_english fields.\n"
        + (f"\nSource-specific guidance:\n{guidance}\n" if guidance else "")
        + "\nRaw tender data:\n"
        + json.dumps(raw, indent=2, default=str, ensure_ascii=False)
    )


def _is_quota_error(status_code: int, body: str) -> bool:
    if status_code == 402:
        return True
    lowered = body.lower()
    return any(marker in lowered for marker in QUOTA_MARKERS)


def _chat_raw(prompt: str, config: LLMConfig, logger=None) -> str:
    if not config.api_key:
        raise CompletionServiceError("Missing OpenAI API key")

    url = config.api_base.rstrip("/") + "/chat/completions"
    headers = {
        "Authorization": f"Bearer {config.api_key}",
        "Content-Type": "application/json",
    }
    payload = {
        "model": config.model,
        "messages": [{"role": "user", "content": prompt}],
        "temperature": config.temperature,
        "max_tokens": config.max_tokens,
        "response_format": {"type": "json_object"},
    }
    limiter = shared_limiter(config.max_requests_per_minute)
    attempts = max(1, int(config.max_retries) + 1)

    last_err: Optional[Exception] = None
    for attempt in range(attempts):
        try:
            limiter.wait("openai")
            resp = requests.post(url, headers=headers, json=payload, timeout=config.timeout_s)
        except requests.RequestException as exc:
            last_err = exc
            if logger:
                logger.warning("LLM: attempt %s/%s failed (%s)", attempt + 1, attempts, exc)
            if attempt + 1 < attempts:
                time.sleep(1 + attempt)
            continue

        body = resp.text or ""
        if resp.status_code == 402 or (resp.status_code == 429 and _is_quota_error(429, body)):
            raise CompletionServiceError(
                f"HTTP {resp.status_code} from completion endpoint | {body[:400]}",
                status_code=resp.status_code,
                quota_exhausted=True,
            )
        if resp.status_code in RETRYABLE_STATUSES:
            retry_after = resp.headers.get("Retry-After")
            sleep_s = int(retry_after) if retry_after and retry_after.isdigit() else 1 + attempt
            last_err = CompletionServiceError(f"HTTP {resp.status_code}", status_code=resp.status_code)
            if logger:
                logger.warning(
                    "LLM: retryable HTTP %s (attempt %s/%s, sleeping %ss)",
                    resp.status_code,
                    attempt + 1,
                    attempts,
                    sleep_s,
                )
            if attempt + 1 < attempts:
                time.sleep(sleep_s)
            continue
        if resp.status_code >= 400:
            raise CompletionServiceError(
                f"HTTP {resp.status_code} from completion endpoint | {body[:400]}",
                status_code=resp.status_code,
                quota_exhausted=_is_quota_error(resp.status_code, body),
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise CompletionServiceError(f"Invalid JSON envelope from completion endpoint: {exc}") from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise CompletionServiceError("Completion endpoint returned no choices")
        first = choices[0] if isinstance(choices, list) else None
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not content:
            raise CompletionServiceError("Completion endpoint returned empty content")
        return content

    raise CompletionServiceError(f"Completion request failed after retries: {last_err}")


def _loads_object(text: str) -> Optional[dict]:
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _parse_fenced(text: str) -> Optional[dict]:
    match = FENCED_RE.search(text)
    if not match:
        return None
    return _loads_object(match.group(1))


def _parse_direct(text: str) -> Optional[dict]:
    return _loads_object(text.strip())


def _parse_stripped(text: str) -> Optional[dict]:
    stripped = FENCE_END_RE.sub("", FENCE_START_RE.sub("", text.strip()))
    return _loads_object(stripped)


def _balance_braces(text: str) -> str:
    depth = 0
    in_string = False
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
    if in_string:
        text += '"'
    return text + "}" * max(depth, 0)


def _repair_truncated(text: str) -> Optional[dict]:
    """Recover a cut-off object: close its braces, else rebuild it from complete properties."""
    text = FENCE_START_RE.sub("", text.strip())
    if not text.startswith("{"):
        return None
    balanced = _loads_object(_balance_braces(text))
    if balanced:
        return balanced

    seen: set[str] = set()
    properties = []
    for match in PROPERTY_RE.finditer(text, 1):
        if match.group(1) in seen:
            continue
        seen.add(match.group(1))
        properties.append(match.group(0))
    if not properties:
        return None
    return _loads_object("{" + ",".join(properties) + "}")


def _extract_fields(text: str) -> Optional[dict]:
    found: dict = {}
    for name in LLM_FIELDS:
        if name == "document_links":
            continue
        key = re.escape(name)
        match = re.search(rf'"{key}"\s*:\s*"((?:[^"\\]|\\.)*)"', text)
        if match:
            try:
                found[name] = json.loads(f'"{match.group(1)}"')
            except ValueError:
                found[name] = match.group(1)
            continue
        if re.search(rf'"{key}"\s*:\s*null\b', text):
            found[name] = None
            continue
        if name in NUMERIC_FIELDS:
            match = re.search(rf'"{key}"\s*:\s*(-?\d+(?:\.\d+)?)', text)
            if match:
                found[name] = float(match.group(1))
                continue
        match = re.search(rf'"{key}"\s*:\s*(true|false)\b', text)
        if match:
            found[name] = match.group(1) == "true"

    links = DOCUMENT_LINKS_RE.search(text)
    if links:
        try:
            parsed = json.loads(links.group(1))
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            found["document_links"] = parsed
    return found or None


PARSE_STAGES = (
    _parse_fenced,
    _parse_direct,
    _parse_stripped,
    _repair_truncated,
    _extract_fields,
)


def parse_llm_response(text: str) -> dict:
    """Run the recovery ladder; the first stage yielding an object wins."""
    if not isinstance(text, str) or not text.strip():
        raise ParseFailure("Empty completion")
    for stage in PARSE_STAGES:
        result = stage(text)
        if result is not None:
            return result
    raise ParseFailure(f"Could not recover any fields from completion: {text[:200]!r}")


def _coerce_links(value: Any) -> list[dict]:
    links: list[dict] = []
    if not isinstance(value, list):
        return links
    for item in value:
        if isinstance(item, str) and item.strip():
            links.append({"title": "Document", "url": item.strip()})
        elif isinstance(item, dict):
            url = item.get("url") or item.get("link")
            if isinstance(url, str) and url.strip():
                title = item.get("title") or item.get("name") or "Document"
                links.append({"title": collapse_spaces(str(title)), "url": url.strip()})
    return links


def coerce_llm_fields(data: dict, warnings: Optional[list] = None) -> dict:
    out: dict = {}
    for name in LLM_FIELDS:
        value = data.get(name)
        if name == "document_links":
            out[name] = _coerce_links(value)
        elif name in _DATE_FIELDS:
            out[name] = parse_date(value, field=name, warnings=warnings)
        elif name in NUMERIC_FIELDS:
            out[name] = extract_numeric_value(value, field=name, warnings=warnings)
        elif name == "status":
            out[name] = normalize_status(value)
        elif isinstance(value, str):
            out[name] = collapse_spaces(value) or None
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            out[name] = str(value)
        else:
            out[name] = None
    return out


def invoke_normalization(prompt: str, config: LLMConfig, logger=None) -> dict:
    text = _chat_raw(prompt, config, logger=logger)
    data = parse_llm_response(text)
    if logger:
        logger.debug("LLM: recovered %s fields", len(data))
    return data
