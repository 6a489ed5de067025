from pathlib import Path

import pytest

from oncocheck.policies.rules import DEFAULT_CONFLICTS, DEFAULT_SECTIONS, RuleTable, default_rules, load_rules

REPO = Path(__file__).resolve().parents[1]


def test_rule_table_labels_and_hits():
    t = RuleTable.from_mapping({"a": ["Самолеч", " "], "b": ["без врача"], "empty": []})
    assert list(t.rules) == ["a", "b"]
    assert t.labels("САМОЛЕЧЕНИЕ без врача") == ["a", "b"]
    assert t.hits("самолечение") == ["самолеч"]
    assert not t.matches("плановая химиотерапия")


def test_default_conflicts_cover_red_flags():
    rules = default_rules()
    for phrase in ("Самолечение", "лечиться без врача", "Отменить всё", "игнорировать КТ"):
        assert rules.conflicts.matches(phrase), phrase
    assert rules.treatment_sections == tuple(DEFAULT_SECTIONS)
    assert rules.recommendation_markers == ("рекомендуется",)


def test_load_rules_missing_file_gives_defaults(tmp_path):
    rules = load_rules(tmp_path / "nope.yaml")
    assert rules.conflicts.rules == default_rules().conflicts.rules


def test_load_rules_partial_override(tmp_path):
    p = tmp_path / "rules.yaml"
    p.write_text("conflicts:\n  quit: ['бросить']\ntreatment_sections: [doc_x]\n", encoding="utf-8")
    rules = load_rules(p)
    assert rules.conflicts.labels("Бросить лечение") == ["quit"]
    assert rules.treatment_sections == ("doc_x",)
    assert rules.tags.rules == default_rules().tags.rules


def test_load_rules_rejects_non_mapping(tmp_path):
    p = tmp_path / "rules.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_rules(p)


def test_shipped_rules_match_builtin_defaults():
    rules = load_rules(REPO / "configs" / "rules.yaml")
    assert rules.conflicts.rules == RuleTable.from_mapping(DEFAULT_CONFLICTS).rules
    assert rules.tags.rules == default_rules().tags.rules
    assert rules.treatment_sections == tuple(DEFAULT_SECTIONS)
