# Purpose: Interchangeable evidence search strategies over the guideline store
# and the merge step that combines them.
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

from oncocheck.ingest.text import fts_query_from_text
from oncocheck.policies.rules import DEFAULT_MARKERS
from oncocheck.retrieval.schema import SearchContext, SearchHit
from oncocheck.store.db import GuidelineStore

log = logging.getLogger("oncocheck.retrieval")

MERGED_LIMIT_DEFAULT = 15


class SearchProvider(ABC):
    name: str = "provider"

    def __init__(self, store: GuidelineStore):
        self.store = store

    @abstractmethod
    def search(self, query: str, context: Optional[SearchContext] = None) -> List[SearchHit]:
        """Hits ordered by ascending score. Read-only."""


class SqlFtsProvider(SearchProvider):
    """Indexed full-text search; prefix match on query tokens, BM25-ranked."""

    name = "SqlFtsProvider"
    default_limit = 12

    def search(self, query: str, context: Optional[SearchContext] = None) -> List[SearchHit]:
        ctx = context or SearchContext()
        fts_query = fts_query_from_text(query)
        if not fts_query:
            return []
        return self.store.fts_search(
            fts_query,
            guideline_ids=ctx.guideline_ids,
            section_ids=ctx.section_ids,
            limit=ctx.limit if ctx.limit is not None else self.default_limit,
        )


class RuleIndexProvider(SearchProvider):
    """
    Whole-query substring match. Chunks that carry a recommendation marker
    ('рекомендуется') score 0.5, the rest 1.0.
    """

    name = "RuleIndexProvider"
    default_limit = 8

    def __init__(self, store: GuidelineStore, markers: Sequence[str] = tuple(DEFAULT_MARKERS)):
        super().__init__(store)
        self.markers = tuple(markers)

    def search(self, query: str, context: Optional[SearchContext] = None) -> List[SearchHit]:
        ctx = context or SearchContext()
        needle = (query or "").strip().lower()
        if not needle:
            return []
        return self.store.substring_search(
            needle,
            guideline_ids=ctx.guideline_ids,
            section_ids=ctx.section_ids,
            markers=self.markers,
            limit=ctx.limit if ctx.limit is not None else self.default_limit,
        )


def default_providers(store: GuidelineStore, markers: Sequence[str] = tuple(DEFAULT_MARKERS)) -> List[SearchProvider]:
    return [SqlFtsProvider(store), RuleIndexProvider(store, markers=markers)]


def merge_hits(batches: Sequence[Sequence[SearchHit]], limit: int = MERGED_LIMIT_DEFAULT) -> List[SearchHit]:
    """Dedupe by chunk_id keeping the lowest score; ascending score, chunk_id breaks ties."""
    best: Dict[str, SearchHit] = {}
    for hits in batches:
        for hit in hits:
            cur = best.get(hit.chunk_id)
            if cur is None or hit.score < cur.score:
                best[hit.chunk_id] = hit
    merged = sorted(best.values(), key=lambda h: (h.score, h.chunk_id))
    return merged[:limit]


def search_with_providers(
    providers: Sequence[SearchProvider],
    query: str,
    context: Optional[SearchContext] = None,
    concurrent: bool = False,
) -> List[SearchHit]:
    ctx = context or SearchContext()
    if concurrent and len(providers) > 1:
        with ThreadPoolExecutor(max_workers=len(providers)) as pool:
            batches = list(pool.map(lambda p: p.search(query, ctx), providers))
    else:
        batches = [p.search(query, ctx) for p in providers]

    if log.isEnabledFor(logging.DEBUG):
        log.debug("providers %s -> %s hits",
                  [p.name for p in providers], [len(b) for b in batches])
    limit = ctx.limit if ctx.limit is not None else MERGED_LIMIT_DEFAULT
    return merge_hits(batches, limit=limit)
