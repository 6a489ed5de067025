import pytest

from oncocheck.retrieval.schema import GuidelineRecord
from oncocheck.store.db import GuidelineStore, StoreError
from oncocheck.validation.types import CaseInput


def test_schema_has_all_tables_and_init_is_idempotent(store):
    store.init_schema()
    store.init_schema()
    names = set(store.table_names())
    for t in ("guidelines", "guideline_sections", "recommendation_chunks", "recommendation_chunks_fts",
              "cases", "case_events", "validation_runs", "benchmark_runs", "trials_cache"):
        assert t in names


def test_unopenable_path_raises_store_error(tmp_path):
    with pytest.raises(StoreError):
        GuidelineStore(str(tmp_path)).init_schema()


def test_name_lookup_folds_cyrillic_case(store, add_guideline):
    add_guideline("1_1", "Рак желудка", "2020-01-01", code=1)
    add_guideline("2_1", "Меланома кожи", "2021-01-01", code=2)
    assert [g.id for g in store.find_guidelines_by_name(["%рак%"])] == ["1_1"]
    assert [g.id for g in store.find_guidelines_by_name(["%РАК%", "%меланома%"])] == ["2_1", "1_1"]
    assert store.find_guidelines_by_name([]) == []


def test_replace_chunks_replaces_fulltext_rows(store, add_guideline):
    add_guideline("1_1", "Рак желудка", "2020-01-01", sections={"doc_3": ["Старый текст про гастрэктомию."]})
    assert len(store.fts_search("гастрэктомию*")) == 1

    add_guideline("1_1", "Рак желудка", "2020-01-01", sections={"doc_3": ["Новый текст про химиотерапию."]})
    assert store.fts_search("гастрэктомию*") == []
    hits = store.fts_search("химиотерапию*")
    assert [h.chunk_id for h in hits] == ["1_1:doc_3:1"]
    assert store.guideline_counts() == {"guidelines": 1, "chunks": 1}


def test_transaction_rolls_back_on_error(store):
    rec = GuidelineRecord(id="9_1", name="Рак почки", source_url="u", pdf_url="p")
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.upsert_guideline(rec)
            raise RuntimeError("boom")
    assert store.guideline_counts()["guidelines"] == 0


def test_sources_carry_section_counts(store, add_guideline):
    add_guideline("1_1", "Рак желудка", "2020-01-01", sections={"doc_3": ["a b c"], "doc_diag_2": ["d e f"]})
    add_guideline("2_1", "Рак почки", "2022-01-01")
    rows = store.list_guideline_sources()
    assert [(r["id"], r["section_count"]) for r in rows] == [("2_1", 0), ("1_1", 2)]
    assert len(store.list_guideline_sources(limit=1)) == 1


def test_substring_search_boosts_marker_and_filters(store, add_guideline):
    add_guideline("1_1", "Рак желудка", "2020-01-01", sections={
        "doc_3": ["Химиотерапия FLOT проводится 4 курса.", "Рекомендуется химиотерапия FLOT."],
        "doc_6": ["Химиотерапия FLOT в реабилитации."],
    })
    hits = store.substring_search("химиотерапия flot", markers=["рекомендуется"], section_ids=["doc_3"])
    assert [h.chunk_id for h in hits] == ["1_1:doc_3:2", "1_1:doc_3:1"]
    assert [h.score for h in hits] == [0.5, 1.0]


def test_case_and_run_history_append_only(store):
    case = CaseInput(diagnosis="Рак желудка", as_of_date="2021-03-01",
                     timeline=[{"event_date": "2021-01-01", "event_type": "biopsy"}])
    cid = store.save_case(case)
    assert cid and store.case_event_count(cid) == 1
    assert store.recent_validation_runs() == []
    assert store.latest_benchmark_run() is None


def test_trials_cache_roundtrip(store):
    assert store.read_trials_cache("k") is None
    store.upsert_trials_cache("k", {"items": [1]})
    store.upsert_trials_cache("k", {"items": [2]})
    row = store.read_trials_cache("k")
    assert row["payload_json"] == '{"items": [2]}'
    assert row["fetched_at"].endswith("Z")


def test_nested_transaction_failure_keeps_outer_writes(store):
    with store.transaction():
        store.upsert_guideline(GuidelineRecord(id="1_1", name="Рак желудка", source_url="u", pdf_url="p"))
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.upsert_guideline(GuidelineRecord(id="2_1", name="Рак почки", source_url="u", pdf_url="p"))
                raise RuntimeError("inner")
    assert [g.id for g in store.find_guidelines_by_name(["%рак%"])] == ["1_1"]


def test_in_memory_store_roundtrip():
    s = GuidelineStore(":memory:").init_schema()
    s.upsert_trials_cache("k", [1])
    assert s.read_trials_cache("k")["payload_json"] == "[1]"
    assert "recommendation_chunks_fts" in s.table_names()
    s.close()
