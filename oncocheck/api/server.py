# oncocheck/api/server.py: guideline search, plan validation (+ doctor LLM review),
# patient explanation, case parsing, benchmark and clinical-trials endpoints
from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from oncocheck.config import Settings, configure_logging, load_settings
from oncocheck.eval.benchmark import latest_benchmark, run_benchmark
from oncocheck.explain.doctor import ExplanationError, LLMNotConfigured, build_doctor_review
from oncocheck.explain.patient import build_patient_explanation
from oncocheck.ingest.case_parser import CaseTextError, parse_case_payload
from oncocheck.llm.openai_client import LLMClient
from oncocheck.policies.rules import load_rules
from oncocheck.retrieval.providers import default_providers, search_with_providers
from oncocheck.retrieval.schema import GuidelineSearchRequest, SearchContext
from oncocheck.store.db import GuidelineStore, open_store
from oncocheck.trials import TrialsError, search_trials
from oncocheck.utils.clock import now_iso
from oncocheck.validation.rule_engine import RuleEngine
from oncocheck.validation.types import CaseInput, PatientExplainRequest

log = logging.getLogger("oncocheck.server")

TRIALS_PAGE_SIZE = 20

_store: Optional[GuidelineStore] = None
_store_lock = threading.Lock()


def get_settings() -> Settings:
    return load_settings()


def get_store(settings: Settings = Depends(get_settings)) -> GuidelineStore:
    global _store
    with _store_lock:
        if _store is None:
            _store = open_store(settings)
        return _store


def get_llm_client() -> Optional[LLMClient]:
    """None = build one from settings on demand."""
    return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(load_settings())
    log.info("Server starting...")
    yield
    log.info("Server stopping...")
    with _store_lock:
        if _store is not None:
            _store.close()


app = FastAPI(title="OncoCheck", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False, allow_methods=["*"], allow_headers=["*"],
)


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": str(e.get("msg", ""))} for e in exc.errors()]


@app.exception_handler(RequestValidationError)
async def _bad_request(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Некорректный запрос", "details": jsonable_errors(exc)},
    )


def _engine(store: GuidelineStore, settings: Settings) -> RuleEngine:
    return RuleEngine(store, rules=load_rules(settings.rules_path))


class BenchmarkRunIn(BaseModel):
    dataset_version: str = "v1"


class CaseParseIn(BaseModel):
    text: str


@app.get("/health")
def health(store: GuidelineStore = Depends(get_store), settings: Settings = Depends(get_settings)):
    return {
        "ok": True,
        "service": "oncocheck",
        "timestamp": now_iso(),
        "counts": store.guideline_counts(),
        "llm_enabled": settings.llm_enabled,
        "llm_model": settings.openai_model,
    }


@app.post("/guidelines/search")
def guidelines_search(req: GuidelineSearchRequest, store: GuidelineStore = Depends(get_store),
                      settings: Settings = Depends(get_settings)):
    rules = load_rules(settings.rules_path)
    hits = search_with_providers(
        default_providers(store, markers=rules.recommendation_markers),
        req.query,
        SearchContext(guideline_ids=req.guideline_ids, limit=req.limit),
    )
    return {"query": req.query, "total": len(hits), "hits": [h.model_dump() for h in hits]}


@app.get("/guidelines/sources")
def guidelines_sources(limit: int = Query(500, ge=1, le=5000), store: GuidelineStore = Depends(get_store)):
    items = store.list_guideline_sources(limit)
    return {"total": len(items), "items": items}


@app.post("/doctor/validate")
def doctor_validate(case: CaseInput, store: GuidelineStore = Depends(get_store),
                    settings: Settings = Depends(get_settings),
                    client: Optional[LLMClient] = Depends(get_llm_client)):
    case_id = store.save_case(case)
    result = _engine(store, settings).validate(case, case_id=case_id)
    payload: Dict[str, Any] = result.model_dump()
    try:
        review = build_doctor_review(case, result, client=client, settings=settings)
    except ExplanationError as e:
        status = 503 if isinstance(e, LLMNotConfigured) else 502
        log.warning("doctor review failed (%s): %s", status, e)
        return JSONResponse(
            status_code=status,
            content={"error": "Не удалось выполнить LLM-проверку врача", "details": str(e), "validation": payload},
        )
    payload["llm_review"] = review.model_dump()
    return payload


@app.post("/patient/explain")
def patient_explain(req: PatientExplainRequest, force_fallback: bool = Query(False),
                    store: GuidelineStore = Depends(get_store),
                    settings: Settings = Depends(get_settings),
                    client: Optional[LLMClient] = Depends(get_llm_client)):
    validation = req.validation or _engine(store, settings).validate(req.case_input)
    explanation = build_patient_explanation(req.case_input, validation, client=client,
                                            force_fallback=force_fallback, settings=settings)
    return {"validation": validation.model_dump(), "explanation": explanation.model_dump()}


@app.post("/case/parse")
def case_parse(req: CaseParseIn):
    try:
        parsed = parse_case_payload(req.text)
    except CaseTextError as e:
        raise HTTPException(status_code=422, detail=str(e))
    parsed["case_input"] = parsed["case_input"].model_dump()
    return parsed


@app.post("/benchmark/run")
def benchmark_run(req: Optional[BenchmarkRunIn] = None,
                  store: GuidelineStore = Depends(get_store), settings: Settings = Depends(get_settings)):
    report = run_benchmark(store, dataset_version=req.dataset_version if req else "v1", data_dir=settings.benchmark_dir,
                           rules=load_rules(settings.rules_path))
    return report.model_dump()


@app.get("/benchmark/latest")
def benchmark_latest(store: GuidelineStore = Depends(get_store)):
    report = latest_benchmark(store)
    if report is None:
        raise HTTPException(status_code=404, detail="Отчётов бенчмарка пока нет")
    return report.model_dump()


@app.get("/trials/search")
def trials_search(query: str = Query(""), recruiting: bool = Query(False),
                  store: GuidelineStore = Depends(get_store), settings: Settings = Depends(get_settings)):
    if not query.strip():
        raise HTTPException(status_code=400, detail="Параметр query обязателен")
    try:
        result = search_trials(store, query, recruiting, page_size=TRIALS_PAGE_SIZE, ttl_hours=settings.trials_ttl_hours)
    except TrialsError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.model_dump()
