# schema.py
CASE_EVENT_SCHEMA = {
    "type": "object",
    "required": ["event_date", "event_type"],
    "properties": {
        "event_date": {"type": "string", "minLength": 1},
        "event_type": {"type": "string", "minLength": 1},
        "payload": {"type": "object"}
    },
    "additionalProperties": False
}

CASE_INPUT_SCHEMA = {
    "type": "object",
    "required": ["diagnosis", "as_of_date"],
    "properties": {
        "diagnosis": {"type": "string", "minLength": 2},
        "stage": {"type": "string"},
        "biomarkers": {"type": "array", "items": {"type": "string"}},
        "timeline": {"type": "array", "items": CASE_EVENT_SCHEMA},
        "current_plan": {"type": "array", "items": {"type": "string"}},
        "as_of_date": {"type": "string", "minLength": 1}
    },
    "additionalProperties": False
}

SCENARIO_SCHEMA = {
    "type": "object",
    "required": ["id", "title", "dataset", "expected_status", "expected_mismatch", "case_input"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "title": {"type": "string", "minLength": 1},
        "dataset": {"enum": ["retrospective", "synthetic", "literature"]},
        "expected_status": {"enum": ["compliant", "review_required"]},
        "expected_mismatch": {"type": "boolean"},
        "case_input": CASE_INPUT_SCHEMA
    },
    "additionalProperties": False
}

BENCHMARK_FILE_SCHEMA = {"type": "array", "items": SCENARIO_SCHEMA}
