# Purpose: clinicaltrials.gov lookup (API v2) with a TTL cache in the guideline store.
from __future__ import annotations
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel, Field

from oncocheck.store.db import GuidelineStore
from oncocheck.utils.clock import now_iso

log = logging.getLogger("oncocheck.trials")

API_URL = "https://clinicaltrials.gov/api/v2/studies"
USER_AGENT = "Oncology-MVP/1.0"
RECRUITING_STATUSES = {"RECRUITING", "NOT_YET_RECRUITING", "ACTIVE_NOT_RECRUITING"}
PAGE_SIZE_MAX = 25
DEFAULT_TTL_HOURS = 24.0


class TrialsError(RuntimeError):
    """clinicaltrials.gov could not be reached or answered with an error."""


class TrialItem(BaseModel):
    nctId: str
    briefTitle: str
    overallStatus: str = "UNKNOWN"
    lastUpdateSubmitDate: Optional[str] = None
    conditions: List[str] = Field(default_factory=list)
    interventions: List[str] = Field(default_factory=list)


class TrialSearchResult(BaseModel):
    query: str
    recruiting: bool
    source: str
    fetched_at: str
    items: List[TrialItem] = Field(default_factory=list)


def normalize_studies(payload: Any) -> List[TrialItem]:
    studies = payload.get("studies") if isinstance(payload, dict) else None
    if not isinstance(studies, list):
        return []
    items: List[TrialItem] = []
    for study in studies:
        proto = (study or {}).get("protocolSection") or {}
        ident = proto.get("identificationModule") or {}
        status = proto.get("statusModule") or {}
        conds = (proto.get("conditionsModule") or {}).get("conditions")
        interventions = (proto.get("armsInterventionsModule") or {}).get("interventions")
        item = TrialItem(
            nctId=str(ident.get("nctId") or ""),
            briefTitle=str(ident.get("briefTitle") or ""),
            overallStatus=str(status.get("overallStatus") or "UNKNOWN"),
            lastUpdateSubmitDate=str(status["lastUpdateSubmitDate"]) if status.get("lastUpdateSubmitDate") else None,
            conditions=[str(c) for c in conds][:4] if isinstance(conds, list) else [],
            interventions=[
                name for name in (str(i.get("interventionName") or "").strip()
                                  for i in interventions if isinstance(i, dict)) if name
            ][:5] if isinstance(interventions, list) else [],
        )
        if item.nctId and item.briefTitle:
            items.append(item)
    return items


def _fresh(fetched_at: str, ttl_hours: float) -> bool:
    try:
        ts = datetime.fromisoformat(fetched_at.replace("Z", "+00:00"))
    except ValueError:
        return False
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - ts <= timedelta(hours=ttl_hours)


def search_trials(
    store: GuidelineStore,
    query: str,
    recruiting: bool,
    page_size: int = 15,
    session: Optional[requests.Session] = None,
    ttl_hours: float = DEFAULT_TTL_HOURS,
) -> TrialSearchResult:
    q = (query or "").strip()
    key = f"{q}|{'1' if recruiting else '0'}|{page_size}"

    cached = store.read_trials_cache(key)
    if cached and _fresh(cached["fetched_at"], ttl_hours):
        try:
            payload = json.loads(cached["payload_json"])
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return TrialSearchResult(query=q, recruiting=recruiting, source="cache",
                                     fetched_at=payload.get("fetched_at") or cached["fetched_at"],
                                     items=payload.get("items") or [])

    http = session or requests.Session()
    params = {"query.cond": q, "pageSize": max(1, min(page_size, PAGE_SIZE_MAX)), "format": "json"}
    try:
        r = http.get(API_URL, params=params, headers={"User-Agent": USER_AGENT}, timeout=20)
        r.raise_for_status()
        data = r.json()
    except (requests.RequestException, ValueError) as e:
        raise TrialsError(f"clinicaltrials.gov request failed: {e}") from e

    items = normalize_studies(data)
    if recruiting:
        items = [i for i in items if i.overallStatus in RECRUITING_STATUSES]

    fetched_at = now_iso()
    store.upsert_trials_cache(key, {"fetched_at": fetched_at, "items": [i.model_dump() for i in items]})
    log.info("trials live fetch: %d item(s) recruiting=%s", len(items), recruiting)
    return TrialSearchResult(query=q, recruiting=recruiting, source="live", fetched_at=fetched_at, items=items)
