from __future__ import annotations
from typing import Dict, List, Optional

import pytest

from oncocheck.ingest.text import build_tags, extract_evidence_level
from oncocheck.retrieval.schema import GuidelineRecord, GuidelineSectionRecord, RecommendationChunkRecord
from oncocheck.store.db import GuidelineStore

FLOT_TEXT = "Рекомендуется периоперационная химиотерапия FLOT и хирургическое лечение"


@pytest.fixture
def store(tmp_path):
    s = GuidelineStore(str(tmp_path / "oncology.db")).init_schema()
    yield s
    s.close()


@pytest.fixture
def add_guideline(store):
    """add_guideline(id, name, publish_date, code=None, sections={section_id: [chunk texts]})"""

    def _add(gid: str, name: str, publish_date: Optional[str], code: Optional[int] = None,
             sections: Optional[Dict[str, List[str]]] = None, status: int = 0, is_oncology: int = 1) -> GuidelineRecord:
        rec = GuidelineRecord(id=gid, code=code, version=1, name=name, publish_date=publish_date,
                              status=status, source_url=f"https://example.org/{gid}",
                              pdf_url=f"https://example.org/{gid}.pdf", is_oncology=is_oncology)
        secs = [GuidelineSectionRecord(guideline_id=gid, section_id=sid, section_title=f"Раздел {sid}",
                                       section_text=" ".join(texts))
                for sid, texts in (sections or {}).items()]
        chunks = [RecommendationChunkRecord(chunk_id=f"{gid}:{sid}:{i + 1}", guideline_id=gid, section_id=sid,
                                            chunk_text=t, tags=build_tags(t), evidence_level=extract_evidence_level(t),
                                            source_anchor=f"Раздел {sid}")
                  for sid, texts in (sections or {}).items() for i, t in enumerate(texts)]
        with store.transaction():
            store.upsert_guideline(rec)
            store.replace_guideline_sections(gid, secs)
            store.replace_recommendation_chunks(gid, chunks)
        return rec

    return _add


@pytest.fixture
def gastric_store(store, add_guideline):
    add_guideline("574_1", "Рак желудка", "2020-04-09T00:00:00", code=574, sections={"doc_3": [FLOT_TEXT]})
    return store
