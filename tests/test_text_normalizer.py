# tests/test_text_normalizer.py
from oncocheck.ingest.text import (
    build_tags,
    extract_evidence_level,
    fts_query_from_text,
    sentence_chunks,
    to_plain_text,
    tokenize,
)
from oncocheck.policies.rules import RuleTable


def test_tokenize_cyrillic_and_latin():
    assert tokenize("Рак желудка, стадия II (FLOT-4)!") == ["рак", "желудка", "стадия", "flot"]


def test_tokenize_keeps_duplicates_drops_short():
    assert tokenize("КТ и МРТ, МРТ") == ["мрт", "мрт"]
    assert tokenize("") == []


def test_fts_query_unique_prefix_terms():
    assert fts_query_from_text("рак рак желудка") == "рак* OR желудка*"
    assert fts_query_from_text("a b, c") == ""


def test_fts_query_caps_at_twelve_terms():
    text = " ".join(f"term{i:02d}" for i in range(20))
    q = fts_query_from_text(text)
    assert q.count("*") == 12
    assert q.startswith("term00* OR term01*")


def test_to_plain_text_strips_markup():
    html = "<style>p{}</style><p>Рак&nbsp;желудка</p><script>alert(1)</script><p>FLOT &amp; D2</p>"
    assert to_plain_text(html) == "Рак желудка FLOT & D2"
    assert to_plain_text("  plain\n text ") == "plain text"
    assert to_plain_text("") == ""


def test_sentence_chunks_packs_and_splits():
    assert sentence_chunks("Aaa. Bbb.", max_length=5) == ["Aaa.", "Bbb."]
    assert sentence_chunks("Aaa. Bbb.", max_length=50) == ["Aaa. Bbb."]
    assert sentence_chunks("   ") == []


def test_sentence_chunks_oversized_sentence_wrapped_to_cap():
    long = " ".join(["доза"] * 10) + "."
    text = f"Hi. {long} Yo."
    chunks = sentence_chunks(text, max_length=20)
    assert chunks == ["Hi.", "доза доза доза доза", "доза доза доза доза", "доза доза. Yo."]
    assert " ".join(chunks) == text


def test_sentence_chunks_cuts_single_long_word():
    chunks = sentence_chunks("x" * 25, max_length=10)
    assert chunks == ["x" * 10, "x" * 10, "x" * 5]


def test_extract_evidence_level():
    assert extract_evidence_level("Текст. Уровень убедительности рекомендаций - A (уровень 1)") == "A"
    assert extract_evidence_level("уровень убедительности рекомендаций: C") == "C"
    assert extract_evidence_level("без уровня") is None


def test_build_tags_default_and_custom_table():
    assert build_tags("Рекомендуется химиотерапия FLOT") == ["chemotherapy", "recommendation"]
    table = RuleTable.from_mapping({"flot": ["flot"]})
    assert build_tags("Рекомендуется химиотерапия FLOT", table) == ["flot"]
