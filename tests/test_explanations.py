import json

import pytest
from openai import OpenAIError

from oncocheck.config import Settings
from oncocheck.explain.doctor import ExplanationError, LLMNotConfigured, build_doctor_review
from oncocheck.explain.patient import DEFAULT_QUESTIONS, build_patient_explanation
from oncocheck.retrieval.schema import AppliedGuidelineVersion, SearchHit
from oncocheck.validation.types import CaseInput, ValidationResult

CASE = CaseInput(diagnosis="Рак желудка", as_of_date="2021-03-01", current_plan=["FLOT", "Гомеопатия"])
VALIDATION = ValidationResult(
    status="review_required",
    matches=["FLOT"],
    mismatches=["Гомеопатия"],
    missing_actions=["Рекомендуется гастрэктомия"],
    evidence=[SearchHit(chunk_id="574_1:doc_3:1", guideline_id="574_1", guideline_name="Рак желудка",
                        section_id="doc_3", chunk_text="Рекомендуется FLOT", score=-1.0)],
    applied_guideline_versions=[AppliedGuidelineVersion(id="574_1", name="Рак желудка", publish_date="2020-04-09",
                                                        status=0, source_url="s", pdf_url="p")],
    source_traceability_rate=0.3333,
    generated_at="2021-03-01T00:00:00.000Z",
)
NO_KEY = Settings(openai_api_key=None)


class FakeLLM:
    model = "fake-model"

    def __init__(self, reply=None, exc=None):
        self.reply, self.exc, self.calls = reply, exc, []

    def chat_json(self, system_prompt, user_text, temperature=None):
        self.calls.append((system_prompt, user_text))
        if self.exc:
            raise self.exc
        content = self.reply if isinstance(self.reply, str) else json.dumps(self.reply, ensure_ascii=False)
        return content, {"response_id": "resp-1", "model": "fake-model"}


def test_doctor_review_normalized_and_citations_filtered():
    client = FakeLLM({
        "verdict": "CONFIRMED?",
        "clinical_rationale": "Гомеопатия не подтверждена рекомендациями.",
        "critical_risks": [f"r{i}" for i in range(12)],
        "additional_checks": ["HER2"],
        "evidence_citations": ["574_1:doc_3:1", "made:up:1", "574_1:doc_3:1"],
    })
    review = build_doctor_review(CASE, VALIDATION, client=client)
    assert (review.provider, review.model, review.response_id) == ("openai", "fake-model", "resp-1")
    assert review.verdict == "needs_attention"
    assert len(review.critical_risks) == 8
    assert review.evidence_citations == ["574_1:doc_3:1"]
    assert "574_1:doc_3:1" in client.calls[0][1]


def test_doctor_review_json_wrapped_in_prose():
    client = FakeLLM('Вот ответ: {"verdict": "confirmed", "clinical_rationale": "ok"} конец')
    assert build_doctor_review(CASE, VALIDATION, client=client).verdict == "confirmed"


@pytest.mark.parametrize("reply", ["not json at all", {"verdict": "confirmed"}, "{broken json}"])
def test_doctor_review_bad_output_raises(reply):
    with pytest.raises(ExplanationError):
        build_doctor_review(CASE, VALIDATION, client=FakeLLM(reply))


def test_doctor_review_requires_key():
    with pytest.raises(LLMNotConfigured):
        build_doctor_review(CASE, VALIDATION, settings=NO_KEY)


def test_doctor_review_wraps_api_errors():
    with pytest.raises(ExplanationError):
        build_doctor_review(CASE, VALIDATION, client=FakeLLM(exc=OpenAIError("down")))


def test_patient_template_without_key():
    exp = build_patient_explanation(CASE, VALIDATION, settings=NO_KEY)
    assert exp.generated_by == "template"
    assert exp.plain_summary.startswith("Диагноз: Рак желудка. Есть пункты")
    assert "Пункты для уточнения: Гомеопатия." in exp.plain_summary
    assert "Рекомендуется гастрэктомия" in exp.why_this_is_recommended
    assert "2021-03-01" in exp.why_this_is_recommended
    assert exp.questions_for_doctor == DEFAULT_QUESTIONS
    assert [s.guideline_id for s in exp.sources] == ["574_1"]


def test_patient_force_fallback_skips_llm():
    client = FakeLLM({"plain_summary": "a", "why_this_is_recommended": "b"})
    exp = build_patient_explanation(CASE, VALIDATION, client=client, force_fallback=True)
    assert exp.generated_by == "template" and client.calls == []


def test_patient_llm_answer_used():
    client = FakeLLM({"plain_summary": "Коротко", "why_this_is_recommended": "Потому что",
                      "questions_for_doctor": ["Что дальше?"], "sources": [{"guideline_id": "nope"}]})
    exp = build_patient_explanation(CASE, VALIDATION, client=client)
    assert (exp.generated_by, exp.plain_summary, exp.questions_for_doctor) == ("llm", "Коротко", ["Что дальше?"])
    assert [s.guideline_id for s in exp.sources] == ["574_1"]


@pytest.mark.parametrize("client", [FakeLLM(exc=OpenAIError("down")), FakeLLM("мусор"), FakeLLM({"plain_summary": "x"})])
def test_patient_llm_failure_falls_back(client):
    exp = build_patient_explanation(CASE, VALIDATION, client=client)
    assert exp.generated_by == "template"
