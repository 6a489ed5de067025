# Purpose: Heuristic extraction of a structured case (diagnosis, stage, biomarkers,
# plan, dated timeline) from free clinical text. Plain text and JSON only.
# Safety: Output is a suggestion for the clinician to review before validation.
from __future__ import annotations
import json
import re
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from oncocheck.validation.types import CaseEvent, CaseInput

MIN_TEXT_CHARS = 10
BIOMARKERS_MAX = 20
PLAN_MAX = 12
PLAN_FALLBACK_LINES = 6
TIMELINE_MAX = 60
NOTE_MAX_CHARS = 700
UNKNOWN_DIAGNOSIS = "Не удалось автоматически определить диагноз"

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_RU_DATE_RE = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{2,4})$")
_DATE_SCAN_RES = (
    re.compile(r"\b(\d{4}-\d{2}-\d{2})\b"),
    re.compile(r"\b(\d{1,2}[./-]\d{1,2}[./-]\d{2,4})\b"),
)
_LINE_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2}|\d{1,2}[./-]\d{1,2}[./-]\d{2,4})")

_DIAGNOSIS_RE = re.compile(r"(?:диагноз|diagnosis)\s*[:\-]\s*([^\n\r]+)", re.IGNORECASE)
_CANCER_LINE_RE = re.compile(r"рак|опухол|carcinoma|cancer|сарком|лимфом", re.IGNORECASE)
_STAGE_RE = re.compile(r"(?<![а-яёa-z])(?:стадия|ст\.|ст(?![а-яё])|stage(?![a-z]))\s*[:\-]?\s*([^\n\r]+)", re.IGNORECASE)
_BIOMARKER_RE = re.compile(
    r"(?:ER\s*[-=]?\s*\d+|PR\s*[-=]?\s*\d+|HER2\s*[-+]?\s*\d*\+?|PD-?L1\s*[^\n,;]*|BRCA1/2|BRCA1|BRCA2"
    r"|KI-?67\s*[-=]?\s*\d+%?|TMB\s*[-=]?\s*[0-9.]+)",
    re.IGNORECASE,
)
_BULLET_RE = re.compile(r"^[-•\d.)\s]+")

PLAN_KEYWORDS = (
    "рекоменду", "схема", "хт", "пхт", "мхт", "терап", "операц", "химио",
    "доксорубицин", "паклитаксел", "карбоплатин", "цисплатин", "иринотекан",
    "винорельбин", "капецитабин", "атезолизумаб", "лучев", "flot", "folfox",
)

# first match wins
EVENT_TYPES = (
    ("progression", ("прогресс",)),
    ("tumor_board", ("консилиум",)),
    ("biopsy", ("биопс",)),
    ("imaging", ("пэт", "кт", "мрт")),
    ("therapy", ("курс", "терап")),
)


class CaseTextError(ValueError):
    """Input carries no usable text."""


def normalize_date(value: str) -> Optional[str]:
    """YYYY-MM-DD for ISO or day.month.year input (2-digit years read as 20YY)."""
    v = value.strip()
    m = _ISO_DATE_RE.match(v)
    if m:
        return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"
    m = _RU_DATE_RE.match(v)
    if m:
        dd, mm, yy = m.groups()
        yyyy = f"20{yy}" if len(yy) == 2 else yy
        return f"{yyyy}-{mm.zfill(2)}-{dd.zfill(2)}"
    return None


def extract_dates(text: str) -> List[str]:
    found = set()
    for rx in _DATE_SCAN_RES:
        for m in rx.finditer(text):
            d = normalize_date(m.group(1))
            if d:
                found.add(d)
    return sorted(found)


def _lines(text: str) -> List[str]:
    return [ln.strip() for ln in re.split(r"\n+", text) if ln.strip()]


def detect_diagnosis(text: str) -> str:
    m = _DIAGNOSIS_RE.search(text)
    if m and m.group(1).strip():
        return m.group(1).strip()
    for line in _lines(text):
        if len(line) > 7 and _CANCER_LINE_RE.search(line):
            return line
    return UNKNOWN_DIAGNOSIS


def detect_stage(text: str) -> str:
    m = _STAGE_RE.search(text)
    return m.group(1).strip() if m else ""


def detect_biomarkers(text: str) -> List[str]:
    markers = dict.fromkeys(re.sub(r"\s+", " ", m.group(0)).strip() for m in _BIOMARKER_RE.finditer(text))
    return list(markers)[:BIOMARKERS_MAX]


def detect_current_plan(text: str) -> List[str]:
    lines = [_BULLET_RE.sub("", ln).strip() for ln in re.split(r"\n+", text)]
    lines = [ln for ln in lines if len(ln) > 8]
    selected = [ln for ln in lines if any(k in ln.lower() for k in PLAN_KEYWORDS)]
    return selected[:PLAN_MAX] if selected else lines[:PLAN_FALLBACK_LINES]


def _event_type(line: str) -> str:
    low = line.lower()
    for name, stems in EVENT_TYPES:
        if any(s in low for s in stems):
            return name
    return "clinical_event"


def detect_timeline(text: str) -> List[CaseEvent]:
    events: List[CaseEvent] = []
    for line in _lines(text):
        m = _LINE_DATE_RE.search(line)
        d = normalize_date(m.group(1)) if m else None
        if not d:
            continue
        events.append(CaseEvent(event_date=d, event_type=_event_type(line), payload={"note": line[:NOTE_MAX_CHARS]}))
    return events[:TIMELINE_MAX]


def suggest_case_from_text(text: str, today: Optional[date] = None) -> CaseInput:
    dates = extract_dates(text)
    as_of = dates[-1] if dates else (today or date.today()).isoformat()
    return CaseInput(
        diagnosis=detect_diagnosis(text),
        stage=detect_stage(text),
        biomarkers=detect_biomarkers(text),
        timeline=detect_timeline(text),
        current_plan=detect_current_plan(text),
        as_of_date=as_of,
    )


def parse_case_payload(text: str, today: Optional[date] = None) -> Dict[str, Any]:
    """
    A JSON document that already is a valid case is taken as-is; anything
    else goes through the text heuristics.
    Raises CaseTextError when the input is shorter than 10 characters.
    """
    body = (text or "").strip()
    if len(body) < MIN_TEXT_CHARS:
        raise CaseTextError("Не удалось извлечь содержательный текст из входа")

    if body[:1] in ("{", "["):
        try:
            case = CaseInput.model_validate(json.loads(body))
        except (json.JSONDecodeError, ValidationError):
            case = None
        if case is not None:
            return {
                "detected_format": "json_case_input",
                "text_length": len(body),
                "preview": body[:2000],
                "case_input": case,
            }

    return {
        "detected_format": "text",
        "text_length": len(body),
        "preview": body[:3000],
        "case_input": suggest_case_from_text(body, today=today),
    }
