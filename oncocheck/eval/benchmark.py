# Purpose: Score the validation engine against labelled scenario files
# (retrospective / synthetic / literature) and keep the report history.
from __future__ import annotations
import json
import logging
import statistics
import uuid
from pathlib import Path
from typing import List, Optional, Sequence

from oncocheck.policies.rules import PolicyRules
from oncocheck.retrieval.providers import SearchProvider
from oncocheck.store.db import GuidelineStore
from oncocheck.utils.clock import monotonic_ms, now_iso
from oncocheck.validation.rule_engine import RuleEngine
from oncocheck.validation.types import BenchmarkMetrics, BenchmarkReport, BenchmarkScenario, ScenarioOutcome

log = logging.getLogger("oncocheck.eval")

DEFAULT_DATA_DIR = "data/benchmark"
DATASET_FILES = ("retrospective.json", "synthetic.json", "literature.json")

NOTES = [
    "Ретроспективные, синтетические и литературные сценарии выполнены текущим rule engine.",
    "Patient-mode использует LLM-объяснение поверх результатов проверки.",
    "Метрики предназначены для итераций MVP и не являются клиническими claims.",
]


def load_scenarios(data_dir: str | Path | None = None) -> List[BenchmarkScenario]:
    """All scenarios from the three dataset files, in file order; absent files are skipped."""
    root = Path(data_dir or DEFAULT_DATA_DIR)
    scenarios: List[BenchmarkScenario] = []
    for name in DATASET_FILES:
        path = root / name
        if not path.exists():
            log.debug("benchmark file %s missing, skipped", path)
            continue
        with path.open("r", encoding="utf-8") as f:
            rows = json.load(f)
        if not isinstance(rows, list):
            raise ValueError(f"{path}: expected a JSON list of scenarios")
        scenarios.extend(BenchmarkScenario.model_validate(r) for r in rows)
    return scenarios


def safe_ratio(num: float, den: float) -> float:
    """num/den with the 'nothing to judge counts as perfect' convention (den == 0 -> 1.0)."""
    return 1.0 if den == 0 else num / den


def score_scenarios(
    store: GuidelineStore,
    scenarios: Sequence[BenchmarkScenario],
    dataset_version: str = "v1",
    providers: Optional[Sequence[SearchProvider]] = None,
    rules: Optional[PolicyRules] = None,
) -> BenchmarkReport:
    engine = RuleEngine(store, providers=providers, rules=rules)

    correct = tp = fp = fn = covered = 0
    trace_sum = 0.0
    latencies: List[int] = []
    outcomes: List[ScenarioOutcome] = []

    for sc in scenarios:
        t0 = monotonic_ms()
        result = engine.validate(sc.case_input)
        wall = monotonic_ms() - t0

        if result.status == sc.expected_status:
            correct += 1
        predicted = bool(result.mismatches or result.conflicts)
        if predicted and sc.expected_mismatch:
            tp += 1
        elif predicted:
            fp += 1
        elif sc.expected_mismatch:
            fn += 1
        if result.evidence:
            covered += 1
        trace_sum += result.source_traceability_rate

        latency = max(wall, result.latency_ms)
        latencies.append(latency)
        outcomes.append(ScenarioOutcome(
            id=sc.id,
            title=sc.title,
            expected_status=sc.expected_status,
            actual_status=result.status,
            latency_ms=latency,
            evidence_count=len(result.evidence),
        ))

    total = len(scenarios) or 1
    metrics = BenchmarkMetrics(
        protocol_match_accuracy=round(correct / total, 4),
        mismatch_detection_precision=round(safe_ratio(tp, tp + fp), 4),
        mismatch_detection_recall=round(safe_ratio(tp, tp + fn), 4),
        median_validation_time=round(float(statistics.median(latencies)) if latencies else 0.0, 4),
        case_coverage=round(covered / total, 4),
        source_traceability_rate=round(trace_sum / total, 4),
    )
    return BenchmarkReport(
        dataset_version=dataset_version,
        scenarios_total=len(scenarios),
        scenarios=outcomes,
        metrics=metrics,
        notes=list(NOTES),
        created_at=now_iso(),
    )


def run_benchmark(
    store: GuidelineStore,
    dataset_version: str = "v1",
    data_dir: str | Path | None = None,
    providers: Optional[Sequence[SearchProvider]] = None,
    rules: Optional[PolicyRules] = None,
) -> BenchmarkReport:
    scenarios = load_scenarios(data_dir)
    report = score_scenarios(store, scenarios, dataset_version, providers=providers, rules=rules)
    store.save_benchmark_run(bench_id=str(uuid.uuid4()), dataset_version=dataset_version, report=report)
    m = report.metrics
    log.info(
        "benchmark %s: scenarios=%d accuracy=%.4f precision=%.4f recall=%.4f median_ms=%.1f coverage=%.4f",
        dataset_version, report.scenarios_total, m.protocol_match_accuracy, m.mismatch_detection_precision,
        m.mismatch_detection_recall, m.median_validation_time, m.case_coverage,
    )
    return report


def latest_benchmark(store: GuidelineStore) -> Optional[BenchmarkReport]:
    return store.latest_benchmark_run()
