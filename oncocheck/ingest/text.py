# Purpose: Text normalisation for guideline ingestion and matching
# (tokens, HTML flattening, sentence chunks, tags, evidence levels).
from __future__ import annotations
import re
import textwrap
from typing import List, Optional

from bs4 import BeautifulSoup

from oncocheck.policies.rules import RuleTable, default_rules

# Latin + Cyrillic letters and digits; everything else splits tokens.
_NON_WORD_RE = re.compile(r"[^a-z0-9а-яё\s]", re.IGNORECASE)
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_WS_RE = re.compile(r"\s+")
_EVIDENCE_LEVEL_RE = re.compile(
    r"уровень\s+убедительности\s+рекомендаций\s*[-–:]\s*([A-Za-zА-Яа-я0-9]+)",
    re.IGNORECASE,
)

MIN_TOKEN_LEN = 3
FTS_MAX_TERMS = 12


def tokenize(text: str) -> List[str]:
    """Lowercased alphanumeric tokens of 3+ chars, in order, duplicates kept."""
    cleaned = _NON_WORD_RE.sub(" ", (text or "").lower())
    return [tok for tok in cleaned.split() if len(tok) >= MIN_TOKEN_LEN]


def to_plain_text(html: str) -> str:
    if not html:
        return ""
    if "<" not in html and "&" not in html:
        return _WS_RE.sub(" ", html).strip()
    soup = BeautifulSoup(html, "lxml")
    for t in soup(["script", "style"]):
        t.decompose()
    text = soup.get_text(" ").replace("\u00A0", " ")
    return _WS_RE.sub(" ", text).strip()


def sentence_chunks(text: str, max_length: int = 850) -> List[str]:
    """
    Pack sentences into chunks of at most max_length chars. A sentence longer
    than max_length is first wrapped at word boundaries (words longer than
    max_length are cut).
    """
    if not (text or "").strip():
        return []
    fragments: List[str] = []
    for f in _SENTENCE_RE.split(text):
        f = f.strip()
        if not f:
            continue
        if len(f) > max_length:
            fragments.extend(textwrap.wrap(f, max_length, break_long_words=True, break_on_hyphens=False))
        else:
            fragments.append(f)

    chunks: List[str] = []
    bucket = ""
    for fragment in fragments:
        if len((bucket + " " + fragment).strip()) > max_length:
            if bucket.strip():
                chunks.append(bucket.strip())
            bucket = fragment
        else:
            bucket = f"{bucket} {fragment}"
    if bucket.strip():
        chunks.append(bucket.strip())
    return chunks


def extract_evidence_level(text: str) -> Optional[str]:
    m = _EVIDENCE_LEVEL_RE.search(text or "")
    return m.group(1) if m else None


def build_tags(text: str, table: RuleTable | None = None) -> List[str]:
    return (table or default_rules().tags).labels(text)


def fts_query_from_text(text: str) -> str:
    """Prefix-match disjunction over the first 12 unique tokens ('' when none)."""
    seen: List[str] = []
    for tok in tokenize(text):
        if tok not in seen:
            seen.append(tok)
        if len(seen) >= FTS_MAX_TERMS:
            break
    return " OR ".join(f"{tok}*" for tok in seen)

