# Purpose: Plain-language explanation of a validation result for the patient.
# Safety: Never prescribes; any LLM failure falls back to a fixed template.
from __future__ import annotations
import logging
from typing import List, Optional

from openai import OpenAIError
from pydantic import BaseModel, Field

from oncocheck.config import Settings, load_settings
from oncocheck.explain.doctor import ExplanationError, extract_json_object
from oncocheck.llm.openai_client import LLMClient
from oncocheck.validation.types import CaseInput, ValidationResult

log = logging.getLogger("oncocheck.explain")

SYSTEM_PROMPT = "Ты помогаешь пациенту понять рекомендации. Не назначай лечение, а объясняй риски и вопросы врачу."

USER_PROMPT = """Ты медицинский AI-ассистент для пациента. Объясняй просто, но без назначения лечения.
Сформируй JSON с полями:
plain_summary, why_this_is_recommended, questions_for_doctor (array), sources (array).

Диагноз: {diagnosis}
Стадия: {stage}
Биомаркеры: {biomarkers}
Дата проверки: {as_of_date}

Результат валидации:
{validation}"""

DEFAULT_QUESTIONS = [
    "Какие пункты моего текущего плана являются приоритетными прямо сейчас?",
    "Есть ли обследования или анализы, которые нужно добавить на этом этапе?",
    "Какие риски и побочные эффекты наиболее важны именно в моей ситуации?",
]


class PatientSource(BaseModel):
    guideline_id: str
    guideline_name: str
    source_url: str
    pdf_url: str


class PatientExplanation(BaseModel):
    plain_summary: str
    why_this_is_recommended: str
    questions_for_doctor: List[str] = Field(default_factory=list)
    sources: List[PatientSource] = Field(default_factory=list)
    generated_by: str = "template"


def _sources(validation: ValidationResult) -> List[PatientSource]:
    return [
        PatientSource(guideline_id=g.id, guideline_name=g.name, source_url=g.source_url, pdf_url=g.pdf_url)
        for g in validation.applied_guideline_versions
    ]


def fallback_explanation(case: CaseInput, validation: ValidationResult) -> PatientExplanation:
    if validation.status == "compliant":
        status_text = "Текущий план в целом совпадает с рекомендациями, но финальное решение принимает лечащий врач."
    else:
        status_text = "Есть пункты, которые требуют дополнительной проверки врачом по клиническим рекомендациям."

    if validation.mismatches:
        mismatch_text = f"Пункты для уточнения: {', '.join(validation.mismatches)}."
    else:
        mismatch_text = "Критичных несовпадений в переданном плане не найдено."

    if validation.missing_actions:
        missing_text = f"В рекомендациях дополнительно встречаются шаги: {'; '.join(validation.missing_actions[:3])}."
    else:
        missing_text = "Дополнительные обязательные шаги не выделены автоматически."

    return PatientExplanation(
        plain_summary=f"Диагноз: {case.diagnosis}. {status_text} {mismatch_text}",
        why_this_is_recommended=(
            f"{missing_text} Проверка выполнена по версиям клинических рекомендаций, "
            f"действовавшим на дату {case.as_of_date}."
        ),
        questions_for_doctor=list(DEFAULT_QUESTIONS),
        sources=_sources(validation),
    )


def _from_llm(case: CaseInput, validation: ValidationResult, client: LLMClient) -> PatientExplanation:
    prompt = USER_PROMPT.format(
        diagnosis=case.diagnosis,
        stage=case.stage or "не указана",
        biomarkers=", ".join(case.biomarkers) or "не указаны",
        as_of_date=case.as_of_date,
        validation=validation.model_dump_json(indent=2),
    )
    content, _ = client.chat_json(SYSTEM_PROMPT, prompt)
    data = extract_json_object(content)
    if not data.get("plain_summary") or not data.get("why_this_is_recommended"):
        raise ExplanationError("LLM response lacks plain_summary / why_this_is_recommended")

    questions = data.get("questions_for_doctor")
    sources = _sources(validation)
    # LLM-supplied sources are kept only when they name an applied guideline.
    by_id = {s.guideline_id: s for s in sources}
    if isinstance(data.get("sources"), list):
        named = [by_id[str(s.get("guideline_id"))] for s in data["sources"]
                 if isinstance(s, dict) and str(s.get("guideline_id")) in by_id]
        sources = named or sources

    return PatientExplanation(
        plain_summary=str(data["plain_summary"]),
        why_this_is_recommended=str(data["why_this_is_recommended"]),
        questions_for_doctor=[str(q) for q in questions] if isinstance(questions, list) else [],
        sources=sources,
        generated_by="llm",
    )


def build_patient_explanation(
    case: CaseInput,
    validation: ValidationResult,
    client: Optional[LLMClient] = None,
    force_fallback: bool = False,
    settings: Optional[Settings] = None,
) -> PatientExplanation:
    if force_fallback:
        return fallback_explanation(case, validation)
    if client is None:
        settings = settings or load_settings()
        if not settings.llm_enabled:
            return fallback_explanation(case, validation)
        client = LLMClient(model=settings.openai_model, api_key=settings.openai_api_key)

    try:
        return _from_llm(case, validation, client)
    except (OpenAIError, ExplanationError, ValueError) as e:
        log.warning("patient explanation via LLM failed (%s); using template", type(e).__name__)
        return fallback_explanation(case, validation)
