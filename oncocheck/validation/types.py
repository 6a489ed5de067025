# Purpose: Case input, validation result and benchmark report models.
from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from oncocheck.retrieval.schema import AppliedGuidelineVersion, SearchHit

Status = Literal["compliant", "review_required"]
Dataset = Literal["retrospective", "synthetic", "literature"]


class CaseEvent(BaseModel):
    event_date: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class CaseInput(BaseModel):
    diagnosis: str = Field(..., min_length=2)
    stage: str = ""
    biomarkers: List[str] = Field(default_factory=list)
    timeline: List[CaseEvent] = Field(default_factory=list)
    current_plan: List[str] = Field(default_factory=list)
    as_of_date: str = Field(..., min_length=1)


class ValidationResult(BaseModel):
    status: Status
    matches: List[str] = Field(default_factory=list)
    mismatches: List[str] = Field(default_factory=list)
    missing_actions: List[str] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)
    evidence: List[SearchHit] = Field(default_factory=list)
    applied_guideline_versions: List[AppliedGuidelineVersion] = Field(default_factory=list)
    source_traceability_rate: float = Field(0.0, ge=0.0, le=1.0)
    latency_ms: int = 0
    generated_at: str


class BenchmarkScenario(BaseModel):
    id: str
    title: str
    dataset: Dataset
    expected_status: Status
    expected_mismatch: bool
    case_input: CaseInput


class ScenarioOutcome(BaseModel):
    id: str
    title: str
    expected_status: Status
    actual_status: Status
    latency_ms: int
    evidence_count: int


class BenchmarkMetrics(BaseModel):
    protocol_match_accuracy: float
    mismatch_detection_precision: float
    mismatch_detection_recall: float
    median_validation_time: float
    case_coverage: float
    source_traceability_rate: float


class BenchmarkReport(BaseModel):
    dataset_version: str
    scenarios_total: int
    scenarios: List[ScenarioOutcome] = Field(default_factory=list)
    metrics: BenchmarkMetrics
    notes: List[str] = Field(default_factory=list)
    created_at: str


class PatientExplainRequest(BaseModel):
    case_input: CaseInput
    validation: Optional[ValidationResult] = None
