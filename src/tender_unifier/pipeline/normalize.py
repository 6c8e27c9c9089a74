from __future__ import annotations

import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from tender_unifier.config import AppConfig
from tender_unifier.errors import CompletionServiceError, ParseFailure
from tender_unifier.pipeline.decision import DecisionStats, NormalizationDecision, decide
from tender_unifier.pipeline.enhance import enhance
from tender_unifier.pipeline.llm import build_prompt, coerce_llm_fields, invoke_normalization
from tender_unifier.pipeline.rules import normalize_without_llm
from tender_unifier.schema import METHOD_FALLBACK, METHOD_FAST, METHOD_LLM, empty_tender
from tender_unifier.sources.base import BaseSourceAdapter


@dataclass
class NormalizationOutcome:
    tender: dict
    method: str
    decision: NormalizationDecision
    llm_error: Optional[BaseException] = None
    quota_exhausted: bool = False
    warnings: list = field(default_factory=list)
    processing_time_ms: int = 0

    @property
    def used_fallback(self) -> bool:
        return self.method == METHOD_FALLBACK


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _call_llm(
    prompt: str,
    config: AppConfig,
    source_table: str,
    executor: Optional[Executor],
    invoke: Callable,
    logger=None,
) -> dict:
    """Run the completion call under the per-source guard timeout."""
    timeout_s = config.llm_timeout_for(source_table)
    own_executor = None
    if executor is None:
        own_executor = ThreadPoolExecutor(max_workers=1)
        executor = own_executor
    future = executor.submit(invoke, prompt, config.llm, logger)
    try:
        return future.result(timeout=timeout_s)
    except FuturesTimeout as exc:
        future.cancel()
        raise CompletionServiceError(f"LLM call exceeded {timeout_s:g}s") from exc
    finally:
        if own_executor is not None:
            own_executor.shutdown(wait=False)


def normalize_record(
    raw: dict,
    source_table: str,
    *,
    adapter: BaseSourceAdapter,
    config: AppConfig,
    llm_executor: Optional[Executor] = None,
    llm_disabled: Optional[threading.Event] = None,
    stats: Optional[DecisionStats] = None,
    invoke: Optional[Callable] = None,
    logger=None,
) -> NormalizationOutcome:
    """Normalize one raw record through the LLM or rule path.

    Returns the enhanced tender together with the method that produced it.
    A failed or timed-out LLM call downgrades to the rule-based fallback;
    a quota failure also sets ``llm_disabled`` for the rest of the run.
    """
    started = time.monotonic()
    invoke = invoke or invoke_normalization
    warnings: list = []
    aliases = adapter.status_aliases()

    decision = decide(
        raw,
        source_table,
        config,
        default_language=config.ingest.default_language,
        stats=stats,
    )

    llm_error: Optional[BaseException] = None
    quota_exhausted = False
    tender: Optional[dict] = None

    if not decision.use_llm:
        method = METHOD_FAST
        tender = normalize_without_llm(
            raw, source_table, mode="fast", status_aliases=aliases, warnings=warnings, logger=logger
        )
    else:
        method = METHOD_FALLBACK
        disabled = llm_disabled is not None and llm_disabled.is_set()
        if config.llm.available and not disabled:
            prompt = build_prompt(raw, source_table, adapter.get_source_specific_prompt())
            try:
                data = _call_llm(prompt, config, source_table, llm_executor, invoke, logger)
                fields = coerce_llm_fields(data, warnings)
                tender = empty_tender()
                tender.update(fields)
                method = METHOD_LLM
            except CompletionServiceError as exc:
                llm_error = exc
                quota_exhausted = exc.quota_exhausted
                if quota_exhausted and llm_disabled is not None:
                    llm_disabled.set()
            except ParseFailure as exc:
                llm_error = exc
            except Exception as exc:
                if logger:
                    logger.exception("Unexpected LLM failure for %s", source_table)
                llm_error = exc
            if llm_error is not None and logger:
                logger.warning("LLM normalization failed for %s, using fallback: %s", source_table, llm_error)

        if tender is None:
            tender = normalize_without_llm(
                raw, source_table, mode="fallback", status_aliases=aliases, warnings=warnings, logger=logger
            )

    tender = adapter.apply_defaults(tender, raw)
    tender = enhance(tender)

    elapsed_ms = int((time.monotonic() - started) * 1000)
    tender["source_table"] = source_table
    tender["source_id"] = adapter.get_source_id(raw) or tender.get("source_id")
    tender["normalized_at"] = _now_utc_iso()
    tender["normalized_method"] = method
    tender["processing_time_ms"] = elapsed_ms

    if logger:
        for warning in warnings:
            logger.debug("Field warning %s/%s: %s", source_table, tender.get("source_id"), warning)

    return NormalizationOutcome(
        tender=tender,
        method=method,
        decision=decision,
        llm_error=llm_error,
        quota_exhausted=quota_exhausted,
        warnings=warnings,
        processing_time_ms=elapsed_ms,
    )
