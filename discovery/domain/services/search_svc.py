# discovery/domain/services/search_svc.py
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from discovery.core.config import SearchOptions, Settings, get_settings
from discovery.core.deadline import Deadline
from discovery.core.errors import InvalidArgument
from discovery.domain.models.product import Product
from discovery.domain.models.reco import RecoItem, RecoResult, SearchFilters, UserCtx
from discovery.domain.repositories.product_repo import ProductRepo
from discovery.domain.services.scoring import (
    Relevance,
    Similarity,
    product_trending_score,
    rank_key,
    search_relevance,
    token_overlap_similarity,
    tokenize,
)
from discovery.domain.services.synonyms import REVERSE, SYNONYMS

logger = logging.getLogger(__name__)

SEARCH_REASON = "search"
VOWELS = "aeiou"
# Candidates pulled from the store before relevance scoring
SEARCH_POOL = 200


@dataclass
class Expansion:
    term: str
    sources: List[str] = field(default_factory=list)


def synonyms_for(term: str) -> List[Tuple[str, str]]:
    """(variant, note) pairs from the domain table, both directions."""
    t = term.lower().strip()
    out: List[Tuple[str, str]] = []
    for syn in SYNONYMS.get(t, []):
        out.append((syn, f"synonym of '{t}'"))
    for canonical in REVERSE.get(t, []):
        out.append((canonical, f"synonym of '{t}'"))
        for sibling in SYNONYMS[canonical]:
            if sibling != t:
                out.append((sibling, f"synonym of '{canonical}'"))

    # Phrases: swap one word at a time for its synonyms
    words = t.split()
    if len(words) > 1:
        for i, w in enumerate(words):
            for syn in SYNONYMS.get(w, [])[:3]:
                out.append((" ".join(words[:i] + [syn] + words[i + 1:]), f"'{w}' as '{syn}'"))
    return out


def fuzzy_variants(term: str) -> List[Tuple[str, str]]:
    """Typo and inflection variants: plural/singular, -ing/-ed stripping, swaps, vowel insertion, deletion."""
    t = term.lower().strip()
    out: List[Tuple[str, str]] = []
    if not t or " " in t:
        return out

    if t.endswith("s"):
        out.append((t[:-1], "singular"))
    else:
        out.append((t + "s", "plural"))
    if t.endswith("ing") and len(t) > 4:
        out.append((t[:-3], "without -ing"))
        out.append((t[:-3] + "e", "without -ing, with e"))
    if t.endswith("ed") and len(t) > 3:
        out.append((t[:-2], "without -ed"))
        out.append((t[:-1], "without -d"))

    if len(t) > 3:
        for i in range(len(t) - 1):
            if t[i] != t[i + 1]:
                out.append((t[:i] + t[i + 1] + t[i] + t[i + 2:], f"swap at {i}"))
    if len(t) > 2:
        for i in range(len(t) + 1):
            for v in VOWELS:
                out.append((t[:i] + v + t[i:], f"insert '{v}' at {i}"))
    if len(t) > 3:
        for i in range(len(t)):
            out.append((t[:i] + t[i + 1:], f"delete '{t[i]}' at {i}"))
    return out


def expand_query(query: str, max_expansions: int = 40) -> List[Expansion]:
    """
    The query itself first, then domain synonyms, then fuzzy variants.
    A term reached several ways keeps every source. Bounded to `max_expansions`
    terms besides the query.
    """
    q = " ".join((query or "").lower().split())
    if not q:
        return []
    found: Dict[str, Expansion] = {q: Expansion(q, ["query"])}
    for term, note in synonyms_for(q):
        found.setdefault(term, Expansion(term)).sources.append(f"synonym: {note}")
    for term, note in fuzzy_variants(q):
        if term:
            found.setdefault(term, Expansion(term)).sources.append(f"fuzzy: {note}")
    return list(found.values())[: max_expansions + 1]


def _haystack(p: Product) -> str:
    parts = [p.name, p.tagline or "", p.category_name or "", p.description or "", " ".join(p.tags)]
    return " ".join(parts).lower()


def best_relevance(
    expansions: Sequence[Expansion],
    product: Product,
    *,
    now: datetime,
    options: SearchOptions,
    similarity: Similarity = token_overlap_similarity,
) -> Tuple[Relevance, str]:
    """
    Highest-scoring expansion for one product. The query itself is scored on
    every field; other expansions only where the term occurs in the product text.
    """
    hay = _haystack(product)
    best: Optional[Relevance] = None
    best_term = ""
    for i, exp in enumerate(expansions):
        if i > 0 and exp.term not in hay:
            continue
        rel = search_relevance(exp.term, product, now=now, options=options, similarity=similarity)
        if best is None or rel.total_score > best.total_score:
            best, best_term = rel, exp.term
    return best or Relevance(), best_term


def rank_candidates(
    query: str,
    candidates: Iterable[Product],
    *,
    now: datetime,
    options: SearchOptions,
    limit: int = 20,
    similarity: Similarity = token_overlap_similarity,
    tie_breaks: Sequence[str] = ("upvotes", "created_at", "product_id"),
) -> List[RecoItem]:
    """Score, drop non-matches and anything under min_score, sort desc, truncate."""
    expansions = expand_query(query, options.max_expansions)
    if not expansions:
        return []
    q = expansions[0].term
    rows = []
    for p in candidates:
        rel, term = best_relevance(expansions, p, now=now, options=options, similarity=similarity)
        if rel.field_score <= 0 or rel.total_score < options.min_score:
            continue
        expl = rel.top_explanations[:2]
        if term != q:
            expl = [f"'{q}' matched as '{term}'"] + expl[:1]
        rows.append((p, rel.total_score, "; ".join(expl) or None))

    rows.sort(key=lambda r: rank_key(
        r[1],
        upvotes=r[0].upvote_count,
        created_ts=r[0].created_at.timestamp(),
        product_id=r[0].product_id,
        tie_breaks=tie_breaks,
    ))
    return [
        RecoItem(
            product_id=p.product_id,
            score=score,
            reason=SEARCH_REASON,
            explanation=expl,
            trending_score=product_trending_score(p, now),
            upvotes=p.upvote_count,
            created_at_ts=p.created_at.timestamp(),
        )
        for p, score, expl in rows[:limit]
    ]


class SearchService:
    def __init__(
        self,
        repo: ProductRepo,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        similarity: Similarity = token_overlap_similarity,
    ):
        self.repo = repo
        self.settings = settings or get_settings()
        self.clock = clock
        self.similarity = similarity

    async def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        ctx: Optional[UserCtx] = None,
        deadline: Optional[Deadline] = None,
    ) -> RecoResult:
        t0 = time.perf_counter()
        filters = filters or SearchFilters()
        deadline = deadline or Deadline.never()
        q = " ".join((query or "").split())
        if not q:
            raise InvalidArgument("search query must not be empty")
        if len(q) > 200:
            raise InvalidArgument("search query too long")
        opts = self.settings.search
        logger.info("search start q=%s category_id=%s limit=%s", q, filters.category_id, filters.limit)

        expansions = expand_query(q, opts.max_expansions)
        terms = list(dict.fromkeys(tokenize(q) + [e.term for e in expansions if len(e.term) > 1]))
        candidates = await self.repo.search_candidates(
            terms, category_id=filters.category_id, limit=SEARCH_POOL, deadline=deadline,
        )
        deadline.check("search")
        items = rank_candidates(
            q, candidates,
            now=self.clock(),
            options=opts,
            limit=filters.limit,
            similarity=self.similarity,
            tie_breaks=self.settings.score.tie_breaks,
        )
        logger.info(
            "search done q=%s candidates=%s items=%s total_time=%.3fs",
            q, len(candidates), len(items), time.perf_counter() - t0,
        )
        return RecoResult(strategy=SEARCH_REASON, items=items, count=len(items))
