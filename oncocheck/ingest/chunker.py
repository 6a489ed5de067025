# Purpose: Turn a guideline detail document (ministry API shape) into sections
# and sentence-packed recommendation chunks, and write them to the store.
from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from oncocheck.ingest.text import build_tags, extract_evidence_level, sentence_chunks, to_plain_text
from oncocheck.policies.rules import RuleTable
from oncocheck.retrieval.schema import GuidelineRecord, GuidelineSectionRecord, RecommendationChunkRecord
from oncocheck.store.db import GuidelineStore

log = logging.getLogger("oncocheck.ingest")

API_BASE = "https://apicr.minzdrav.gov.ru"
WEB_BASE = "https://cr.minzdrav.gov.ru"

CHUNK_MAX_CHARS = 900
CHUNKS_PER_SECTION = 220
WHOLE_DOC_ID = "doc_whole"
WHOLE_DOC_TITLE = "Исходный документ"


def source_urls(guideline_id: str) -> Dict[str, str]:
    return {
        "source_url": f"{WEB_BASE}/preview-cr/{guideline_id}",
        "pdf_url": f"{API_BASE}/api.ashx?op=GetClinrecPdf&id={guideline_id}",
    }


def _whole_document(guideline_id: str, html: str) -> List[GuidelineSectionRecord]:
    return [GuidelineSectionRecord(
        guideline_id=guideline_id,
        section_id=WHOLE_DOC_ID,
        section_title=WHOLE_DOC_TITLE,
        section_html=html,
        section_text=to_plain_text(html),
    )]


def build_sections(detail: Dict[str, Any]) -> List[GuidelineSectionRecord]:
    gid = str(detail.get("id") or "")
    raw_sections = ((detail.get("obj") or {}).get("sections")) or []
    text_block = detail.get("textBlock") or ""

    if not raw_sections and text_block:
        return _whole_document(gid, text_block)

    sections: List[GuidelineSectionRecord] = []
    for i, s in enumerate(raw_sections):
        sid = (s.get("id") or "").strip() or f"section_{i + 1}"
        html = s.get("content") or ""
        text = to_plain_text(html)
        if len(text) <= 3 and len(html) <= 3:
            continue
        sections.append(GuidelineSectionRecord(
            guideline_id=gid,
            section_id=sid,
            section_title=(s.get("title") or "").strip() or sid,
            section_html=html,
            section_text=text,
        ))
    return sections or _whole_document(gid, text_block)


def build_chunks(
    guideline_id: str,
    sections: List[GuidelineSectionRecord],
    tag_table: Optional[RuleTable] = None,
) -> List[RecommendationChunkRecord]:
    chunks: List[RecommendationChunkRecord] = []
    for s in sections:
        for i, text in enumerate(sentence_chunks(s.section_text, CHUNK_MAX_CHARS)[:CHUNKS_PER_SECTION]):
            chunks.append(RecommendationChunkRecord(
                chunk_id=f"{guideline_id}:{s.section_id}:{i + 1}",
                guideline_id=guideline_id,
                section_id=s.section_id,
                chunk_text=text,
                tags=build_tags(text, tag_table),
                evidence_level=extract_evidence_level(text),
                source_anchor=s.section_title,
            ))
    return chunks


def guideline_record(detail: Dict[str, Any], fallback: Optional[Dict[str, Any]] = None) -> GuidelineRecord:
    """Detail fields win; list-item fields (CodeVersion, PublishDateStr, Status) fill the gaps."""
    fb = fallback or {}
    gid = str(detail.get("id") or fb.get("CodeVersion") or "")
    if not gid:
        raise ValueError("guideline detail has no id")
    status = detail.get("status")
    return GuidelineRecord(
        id=gid,
        code=detail.get("code"),
        version=detail.get("version"),
        name=str(detail.get("name") or fb.get("Name") or gid),
        publish_date=detail.get("publish_date") or fb.get("PublishDateStr"),
        status=int(status if status is not None else fb.get("Status", 0)),
        apply_status=detail.get("apply_status"),
        is_oncology=1,
        **source_urls(gid),
    )


def ingest_guideline(
    store: GuidelineStore,
    detail: Dict[str, Any],
    fallback: Optional[Dict[str, Any]] = None,
    tag_table: Optional[RuleTable] = None,
) -> Dict[str, Any]:
    """Upsert one guideline version and replace its sections and chunks atomically."""
    record = guideline_record(detail, fallback)
    sections = build_sections({**detail, "id": record.id})
    chunks = build_chunks(record.id, sections, tag_table)

    with store.transaction():
        store.upsert_guideline(record)
        store.replace_guideline_sections(record.id, sections)
        store.replace_recommendation_chunks(record.id, chunks)

    log.debug("ingested %s: %d sections, %d chunks", record.id, len(sections), len(chunks))
    return {"id": record.id, "sections": len(sections), "chunks": len(chunks)}


def load_guideline_dump(path: str | Path) -> List[Dict[str, Any]]:
    """A JSON list of guideline detail dicts (offline copy of the API responses)."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of guideline documents")
    return data


def ingest_dump(store: GuidelineStore, path: str | Path, tag_table: Optional[RuleTable] = None) -> Dict[str, Any]:
    processed, failed = 0, []
    for detail in load_guideline_dump(path):
        try:
            ingest_guideline(store, detail, tag_table=tag_table)
            processed += 1
        except (ValueError, KeyError, TypeError) as e:
            failed.append(str(detail.get("id") if isinstance(detail, dict) else detail))
            log.warning("skipping guideline %s: %s", failed[-1], e)
    log.info("ingestion done: processed=%d failed=%d", processed, len(failed))
    return {"processed": processed, "failed": failed}
