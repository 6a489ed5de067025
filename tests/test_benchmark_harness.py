import json
from pathlib import Path

from jsonschema import validate

from oncocheck.eval.benchmark import NOTES, latest_benchmark, load_scenarios, run_benchmark, safe_ratio
from schema import BENCHMARK_FILE_SCHEMA  # requires schema.py at repo root

REPO = Path(__file__).resolve().parents[1]


def _scenario(sid, plan, expected_status, expected_mismatch, dataset="synthetic"):
    return {
        "id": sid,
        "title": sid,
        "dataset": dataset,
        "expected_status": expected_status,
        "expected_mismatch": expected_mismatch,
        "case_input": {"diagnosis": "Рак желудка", "as_of_date": "2021-03-01", "current_plan": plan},
    }


def _write(dir_: Path, name: str, rows) -> None:
    (dir_ / name).write_text(json.dumps(rows, ensure_ascii=False), encoding="utf-8")


def test_perfect_run_metrics(gastric_store, tmp_path):
    _write(tmp_path, "retrospective.json", [
        _scenario("ok", ["Периоперационная химиотерапия FLOT"], "compliant", False, "retrospective"),
    ])
    _write(tmp_path, "synthetic.json", [_scenario("bad", ["Гомеопатия"], "review_required", True)])

    report = run_benchmark(gastric_store, dataset_version="t1", data_dir=tmp_path)
    m = report.metrics
    assert report.scenarios_total == 2
    assert [s.id for s in report.scenarios] == ["ok", "bad"]
    assert [s.actual_status for s in report.scenarios] == ["compliant", "review_required"]
    assert (m.protocol_match_accuracy, m.mismatch_detection_precision, m.mismatch_detection_recall) == (1.0, 1.0, 1.0)
    assert m.case_coverage == 1.0
    assert 0.0 < m.source_traceability_rate <= 1.0
    assert all(s.latency_ms >= 0 for s in report.scenarios)
    assert report.notes == NOTES


def test_false_positive_gives_zero_precision_full_recall(gastric_store, tmp_path):
    _write(tmp_path, "literature.json", [_scenario("fp", ["Гомеопатия"], "compliant", False, "literature")])
    m = run_benchmark(gastric_store, data_dir=tmp_path).metrics
    assert m.protocol_match_accuracy == 0.0
    assert m.mismatch_detection_precision == 0.0
    assert m.mismatch_detection_recall == 1.0


def test_empty_dataset_conventions(store, tmp_path):
    report = run_benchmark(store, data_dir=tmp_path)
    m = report.metrics
    assert report.scenarios_total == 0
    assert (m.mismatch_detection_precision, m.mismatch_detection_recall) == (1.0, 1.0)
    assert (m.protocol_match_accuracy, m.median_validation_time, m.case_coverage) == (0.0, 0.0, 0.0)


def test_safe_ratio():
    assert safe_ratio(0, 0) == 1.0
    assert safe_ratio(1, 4) == 0.25


def test_latest_report_is_most_recent(gastric_store, tmp_path):
    assert latest_benchmark(gastric_store) is None
    run_benchmark(gastric_store, dataset_version="first", data_dir=tmp_path)
    run_benchmark(gastric_store, dataset_version="second", data_dir=tmp_path)
    assert latest_benchmark(gastric_store).dataset_version == "second"


def test_shipped_benchmark_files_are_valid():
    files = sorted((REPO / "data" / "benchmark").glob("*.json"))
    assert {p.name for p in files} == {"retrospective.json", "synthetic.json", "literature.json"}
    for p in files:
        rows = json.loads(p.read_text(encoding="utf-8"))
        validate(instance=rows, schema=BENCHMARK_FILE_SCHEMA)
        assert all(r["dataset"] == p.stem for r in rows)
    scenarios = load_scenarios(REPO / "data" / "benchmark")
    assert len({s.id for s in scenarios}) == len(scenarios) >= 3
