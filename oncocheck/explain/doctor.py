# Purpose: LLM second opinion on a finished validation run, for the clinician.
# Safety: The review audits guideline conformance only; it never prescribes.
from __future__ import annotations
import json
import logging
from typing import Any, Dict, List, Literal, Optional

from openai import OpenAIError
from pydantic import BaseModel, Field

from oncocheck.config import Settings, load_settings
from oncocheck.llm.openai_client import LLMClient
from oncocheck.validation.types import CaseInput, ValidationResult

log = logging.getLogger("oncocheck.explain")

LIST_MAX = 8

SYSTEM_PROMPT = "Ты эксперт по клиническому аудиту. Возвращай только валидный JSON без пояснений вне JSON."

USER_PROMPT = """Ты медицинский ассистент для врача. Оцени результат rule-based проверки и верни JSON:
{{
  "verdict": "confirmed" | "needs_attention",
  "clinical_rationale": "короткое техническое обоснование",
  "critical_risks": ["..."],
  "additional_checks": ["..."],
  "evidence_citations": ["chunk_id из evidence"]
}}

Ограничения:
- не назначай лечение,
- анализируй только соответствие рекомендациям и риски несоответствий,
- ссылайся только на chunk_id из evidence,
- не используй markdown.

Кейс:
{case}

Результат rule-based:
{validation}"""


class ExplanationError(RuntimeError):
    """The explanation collaborator failed; the validation result itself is unaffected."""


class LLMNotConfigured(ExplanationError):
    pass


class DoctorReview(BaseModel):
    provider: str = "openai"
    model: str
    response_id: Optional[str] = None
    verdict: Literal["confirmed", "needs_attention"]
    clinical_rationale: str = Field(..., min_length=1)
    critical_risks: List[str] = Field(default_factory=list)
    additional_checks: List[str] = Field(default_factory=list)
    evidence_citations: List[str] = Field(default_factory=list)


def extract_json_object(raw: str) -> Dict[str, Any]:
    """Outermost {...} of an LLM reply, parsed."""
    text = (raw or "").strip()
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise ExplanationError("LLM вернула ответ не в JSON-формате")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise ExplanationError(f"LLM вернула некорректный JSON: {e}") from e
    if not isinstance(data, dict):
        raise ExplanationError("LLM вернула ответ не в JSON-формате")
    return data


def _str_list(value: Any, limit: int = LIST_MAX) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value][:limit]


def normalize_review(
    parsed: Dict[str, Any],
    model: str,
    response_id: Optional[str],
    evidence_ids: List[str],
) -> DoctorReview:
    rationale = str(parsed.get("clinical_rationale") or "").strip()
    if not rationale:
        raise ExplanationError("LLM не вернула clinical_rationale")
    allowed = set(evidence_ids)
    raw_citations = parsed.get("evidence_citations")
    citations = [str(c) for c in raw_citations if str(c) in allowed] if isinstance(raw_citations, list) else []
    return DoctorReview(
        model=model,
        response_id=response_id,
        verdict="confirmed" if parsed.get("verdict") == "confirmed" else "needs_attention",
        clinical_rationale=rationale,
        critical_risks=_str_list(parsed.get("critical_risks")),
        additional_checks=_str_list(parsed.get("additional_checks")),
        evidence_citations=list(dict.fromkeys(citations)),
    )


def build_doctor_review(
    case: CaseInput,
    validation: ValidationResult,
    client: Optional[LLMClient] = None,
    settings: Optional[Settings] = None,
) -> DoctorReview:
    if client is None:
        settings = settings or load_settings()
        if not settings.llm_enabled:
            raise LLMNotConfigured("OPENAI_API_KEY не задан. Проверка врача требует LLM.")
        client = LLMClient(model=settings.openai_model, api_key=settings.openai_api_key, temperature=0.1)

    prompt = USER_PROMPT.format(
        case=case.model_dump_json(indent=2),
        validation=validation.model_dump_json(indent=2),
    )
    try:
        content, meta = client.chat_json(SYSTEM_PROMPT, prompt, temperature=0.1)
    except OpenAIError as e:
        raise ExplanationError(f"OpenAI API error: {e}") from e
    if not content:
        raise ExplanationError("OpenAI не вернул content в ответе")

    review = normalize_review(
        extract_json_object(content),
        model=str(meta.get("model") or client.model),
        response_id=meta.get("response_id"),
        evidence_ids=[h.chunk_id for h in validation.evidence],
    )
    log.info("doctor review verdict=%s risks=%d citations=%d",
             review.verdict, len(review.critical_risks), len(review.evidence_citations))
    return review
