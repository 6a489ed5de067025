# Purpose: Guideline / section / chunk records and search hit shapes shared by store and retrieval.
# Safety: Public guideline text only; no patient data lives in these records.
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional, List

# status 0 = active, 4 = archived; both are valid evidence sources.
STATUS_ACTIVE = 0


class GuidelineRecord(BaseModel):
    id: str = Field(..., description="Guideline version id, e.g. '574_1' (code_version).")
    code: Optional[int] = Field(None, description="Groups versions of the same guideline across time.")
    version: Optional[int] = None
    name: str
    publish_date: Optional[str] = None
    status: int = STATUS_ACTIVE
    apply_status: Optional[str] = None
    source_url: str = ""
    pdf_url: str = ""
    is_oncology: int = 1


class GuidelineSectionRecord(BaseModel):
    guideline_id: str
    section_id: str
    section_title: str
    section_html: str = ""
    section_text: str = ""


class RecommendationChunkRecord(BaseModel):
    chunk_id: str = Field(..., description="Global unique id: {guideline_id}:{section_id}:{ordinal}.")
    guideline_id: str
    section_id: str
    chunk_text: str
    tags: List[str] = Field(default_factory=list)
    evidence_level: Optional[str] = None
    source_anchor: Optional[str] = None


class SearchHit(BaseModel):
    chunk_id: str
    guideline_id: str
    guideline_name: str
    section_id: str
    section_title: str = ""
    chunk_text: str
    tags: List[str] = Field(default_factory=list)
    evidence_level: Optional[str] = None
    source_anchor: Optional[str] = None
    score: float = Field(0.0, description="Rank score; lower is more relevant.")


class AppliedGuidelineVersion(BaseModel):
    id: str
    name: str
    publish_date: Optional[str] = None
    status: int
    source_url: str
    pdf_url: str


class SearchContext(BaseModel):
    guideline_ids: List[str] = Field(default_factory=list)
    section_ids: List[str] = Field(default_factory=list)
    limit: Optional[int] = None


class GuidelineSearchRequest(BaseModel):
    query: str = Field(..., min_length=2)
    limit: int = Field(10, gt=0, le=50)
    guideline_ids: List[str] = Field(default_factory=list)
