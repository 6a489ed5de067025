# Purpose: Pick the guideline version(s) in force on a reference date for a diagnosis.
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from oncocheck.ingest.text import tokenize
from oncocheck.retrieval.schema import AppliedGuidelineVersion, GuidelineRecord
from oncocheck.store.db import GuidelineStore

log = logging.getLogger("oncocheck.retrieval")

NAME_TOKENS_MAX = 6


def parse_date_ms(value: Optional[str]) -> int:
    """Epoch milliseconds for an ISO-8601 date/datetime; 0 for missing or unparseable.
    Naive values are read as UTC."""
    if not value:
        return 0
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _applied(g: GuidelineRecord) -> AppliedGuidelineVersion:
    return AppliedGuidelineVersion(
        id=g.id,
        name=g.name,
        publish_date=g.publish_date,
        status=g.status,
        source_url=g.source_url,
        pdf_url=g.pdf_url,
    )


def select_applicable_guidelines(
    store: GuidelineStore,
    diagnosis: str,
    as_of_date: str,
    limit: int = 8,
) -> List[AppliedGuidelineVersion]:
    """
    One version per guideline code: the newest published on or before
    as_of_date, else the newest overall. With no name match, falls back to
    the most recently published oncology guidelines.
    """
    tokens = tokenize(diagnosis)[:NAME_TOKENS_MAX]
    patterns = [f"%{t}%" for t in tokens] if tokens else [f"%{(diagnosis or '').lower()}%"]

    candidates = store.find_guidelines_by_name(patterns)
    if not candidates:
        fallback = store.recent_oncology_guidelines(limit)
        log.debug("no guideline name matched %d token(s); %d recent fallback(s)", len(tokens), len(fallback))
        return [_applied(g) for g in fallback]

    as_of_ms = parse_date_ms(as_of_date)
    groups: Dict[Optional[int], List[GuidelineRecord]] = {}
    for g in candidates:
        groups.setdefault(g.code, []).append(g)

    selected: List[GuidelineRecord] = []
    for versions in groups.values():
        versions.sort(key=lambda g: parse_date_ms(g.publish_date), reverse=True)
        in_force = next((g for g in versions if parse_date_ms(g.publish_date) <= as_of_ms), versions[0])
        selected.append(in_force)

    selected.sort(key=lambda g: parse_date_ms(g.publish_date), reverse=True)
    return [_applied(g) for g in selected[:limit]]
