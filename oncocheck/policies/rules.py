# oncocheck/policies/rules.py
# Purpose: Pluggable phrase-set -> label rule tables (chunk tags, red-flag plan items).
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

import yaml

log = logging.getLogger("oncocheck.rules")

DEFAULT_TAGS: Dict[str, List[str]] = {
    "surgery": ["хирург", "операц", "резекц", "лимфодиссекц"],
    "chemotherapy": ["химио", "flox", "f lot", "капецитаб", "паклитаксел", "карбоплатин", "цисплатин"],
    "radiation": ["лучев", "радиотерап"],
    "diagnostics": ["диагност", "кт", "мрт", "пэт", "биопс"],
    "immunotherapy": ["иммуно", "атезолизумаб", "пембролизумаб", "nivolumab", "чекпоинт"],
    "contraindication": ["противопоказ", "не рекоменду", "запрещ"],
    "recommendation": ["рекомендуется", "показано", "следует"],
}

DEFAULT_CONFLICTS: Dict[str, List[str]] = {
    "self_medication": ["самолеч"],
    "no_physician": ["без врача"],
    "cancel_all": ["отменить всё"],
    "ignore": ["игнор"],
}

DEFAULT_MARKERS: List[str] = ["рекомендуется"]
DEFAULT_SECTIONS: List[str] = ["doc_3", "doc_diag_2", "doc_criteria"]


@dataclass
class RuleTable:
    """
    Ordered label -> phrases table. A label applies when any of its phrases
    occurs as a substring of the lowercased text.
    """
    rules: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, List[str]]) -> "RuleTable":
        rules: Dict[str, Tuple[str, ...]] = {}
        for label, phrases in (mapping or {}).items():
            cleaned = tuple(p.strip().lower() for p in phrases or [] if isinstance(p, str) and p.strip())
            if cleaned:
                rules[str(label)] = cleaned
        return cls(rules=rules)

    def labels(self, text: str) -> List[str]:
        low = (text or "").lower()
        return [label for label, phrases in self.rules.items() if any(p in low for p in phrases)]

    def hits(self, text: str) -> List[str]:
        """Matched phrases (not labels), in table order."""
        low = (text or "").lower()
        return [p for phrases in self.rules.values() for p in phrases if p in low]

    def matches(self, text: str) -> bool:
        return bool(self.hits(text))


@dataclass
class PolicyRules:
    tags: RuleTable
    conflicts: RuleTable
    recommendation_markers: Tuple[str, ...]
    treatment_sections: Tuple[str, ...]


def default_rules() -> PolicyRules:
    return PolicyRules(
        tags=RuleTable.from_mapping(DEFAULT_TAGS),
        conflicts=RuleTable.from_mapping(DEFAULT_CONFLICTS),
        recommendation_markers=tuple(DEFAULT_MARKERS),
        treatment_sections=tuple(DEFAULT_SECTIONS),
    )


def load_rules(path: str | Path | None = "configs/rules.yaml") -> PolicyRules:
    """Load rule tables from YAML; any missing table keeps its built-in default."""
    base = default_rules()
    if not path or not Path(path).exists():
        return base
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: rule file must be a mapping")

    rules = PolicyRules(
        tags=RuleTable.from_mapping(data["tags"]) if data.get("tags") else base.tags,
        conflicts=RuleTable.from_mapping(data["conflicts"]) if data.get("conflicts") else base.conflicts,
        recommendation_markers=tuple(
            m.strip().lower() for m in data.get("recommendation_markers") or [] if isinstance(m, str) and m.strip()
        ) or base.recommendation_markers,
        treatment_sections=tuple(
            str(s) for s in data.get("treatment_sections") or [] if str(s).strip()
        ) or base.treatment_sections,
    )
    log.debug("rules loaded from %s: %d tag labels, %d conflict labels",
              path, len(rules.tags.rules), len(rules.conflicts.rules))
    return rules
