# Purpose: Reconcile a treatment plan against applicable guideline evidence
# and persist the resulting validation record.
# Safety: Advisory output only; every finding carries the chunk it came from.
from __future__ import annotations
import json
import logging
import uuid
from typing import Iterable, List, Optional, Sequence

from oncocheck.ingest.text import tokenize
from oncocheck.policies.rules import PolicyRules, default_rules
from oncocheck.retrieval.guidelines import select_applicable_guidelines
from oncocheck.retrieval.providers import SearchProvider, default_providers, merge_hits, search_with_providers
from oncocheck.retrieval.schema import SearchContext, SearchHit
from oncocheck.store.db import GuidelineStore
from oncocheck.utils.clock import StageTimer, now_iso
from oncocheck.validation.types import CaseInput, ValidationResult

log = logging.getLogger("oncocheck.validation")

GUIDELINE_LIMIT = 10
PLAN_ITEM_LIMIT = 6
RECOMMENDATION_LIMIT = 15
TIMELINE_FALLBACK_EVENTS = 4
MISSING_HEAD_TOKENS = 14
MISSING_MAX = 5
MISSING_TEXT_CHARS = 220
EVIDENCE_MAX = 20
CONFLICT_TEMPLATE = "План содержит потенциально опасный пункт: {item}"
RECOMMENDATION_QUERY = "{diagnosis} рекомендуется лечение"


def _uniq(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


def normalize_plan(case: CaseInput) -> List[str]:
    """Stripped non-empty plan items; without any, the last timeline events rendered as text."""
    items = [p.strip() for p in case.current_plan if p and p.strip()]
    if items:
        return items
    return [
        f"{ev.event_type}: {json.dumps(ev.payload, ensure_ascii=False, separators=(',', ':'))}"
        for ev in case.timeline[-TIMELINE_FALLBACK_EVENTS:]
    ]


def traceability_rate(evidence_count: int, signals: int) -> float:
    if signals <= 0:
        return 0.0
    return round(max(0.0, min(1.0, evidence_count / signals)), 4)


def _shares_token(tokens: set, text_tokens: Iterable[str]) -> bool:
    return any(t in tokens for t in text_tokens)


class RuleEngine:
    """
    Holds the store handle, the search strategies and the rule tables.
    One validate() call = one persisted validation_runs row.
    """

    def __init__(
        self,
        store: GuidelineStore,
        providers: Optional[Sequence[SearchProvider]] = None,
        rules: Optional[PolicyRules] = None,
    ):
        self.store = store
        self.rules = rules or default_rules()
        self.providers = list(providers) if providers else default_providers(
            store, markers=self.rules.recommendation_markers
        )

    def _context(self, guideline_ids: List[str], limit: int) -> SearchContext:
        return SearchContext(
            guideline_ids=guideline_ids,
            section_ids=list(self.rules.treatment_sections),
            limit=limit,
        )

    def validate(self, case: CaseInput, case_id: Optional[str] = None) -> ValidationResult:
        timer = StageTimer()

        with timer.stage("select"):
            applied = select_applicable_guidelines(self.store, case.diagnosis, case.as_of_date, limit=GUIDELINE_LIMIT)
        guideline_ids = [g.id for g in applied]

        plan_items = normalize_plan(case)
        matches: List[str] = []
        mismatches: List[str] = []
        conflicts: List[str] = []
        collected: List[List[SearchHit]] = []

        with timer.stage("plan"):
            for item in plan_items:
                item_tokens = set(tokenize(item))
                hits = search_with_providers(
                    self.providers,
                    f"{case.diagnosis} {item}",
                    self._context(guideline_ids, PLAN_ITEM_LIMIT),
                )
                relevant = [h for h in hits if item_tokens and _shares_token(item_tokens, tokenize(h.chunk_text))]
                collected.append(relevant)
                (matches if relevant else mismatches).append(item)

                if self.rules.conflicts.matches(item):
                    conflicts.append(CONFLICT_TEMPLATE.format(item=item))

        with timer.stage("recommend"):
            recommended = search_with_providers(
                self.providers,
                RECOMMENDATION_QUERY.format(diagnosis=case.diagnosis),
                self._context(guideline_ids, RECOMMENDATION_LIMIT),
            )
        collected.append(recommended)

        plan_tokens = {t for item in plan_items for t in tokenize(item)}
        missing = [
            h.chunk_text[:MISSING_TEXT_CHARS]
            for h in recommended
            if not _shares_token(plan_tokens, tokenize(h.chunk_text)[:MISSING_HEAD_TOKENS])
        ][:MISSING_MAX]

        evidence = merge_hits(collected, limit=EVIDENCE_MAX)
        status = "compliant" if not mismatches and not conflicts else "review_required"
        latency_ms = timer.elapsed_ms()

        result = ValidationResult(
            status=status,
            matches=_uniq(matches),
            mismatches=_uniq(mismatches),
            missing_actions=_uniq(missing),
            conflicts=_uniq(conflicts),
            evidence=evidence,
            applied_guideline_versions=applied,
            source_traceability_rate=traceability_rate(len(evidence), len(plan_items) + len(missing) + 1),
            latency_ms=latency_ms,
            generated_at=now_iso(),
        )

        self.store.save_validation_run(
            run_id=str(uuid.uuid4()),
            case_id=case_id,
            as_of_date=case.as_of_date,
            result=result,
            latency_ms=latency_ms,
        )
        log.info(
            "validation status=%s guidelines=%d plan=%d mismatches=%d conflicts=%d evidence=%d latency_ms=%d stages=%s",
            status, len(applied), len(plan_items), len(result.mismatches), len(result.conflicts),
            len(evidence), latency_ms, timer.as_dict(),
        )
        return result


def validate_case(
    case_input: CaseInput,
    store: GuidelineStore,
    providers: Optional[Sequence[SearchProvider]] = None,
    rules: Optional[PolicyRules] = None,
    case_id: Optional[str] = None,
) -> ValidationResult:
    return RuleEngine(store, providers=providers, rules=rules).validate(case_input, case_id=case_id)
