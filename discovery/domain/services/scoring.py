"""
Score kernel: pure, deterministic ranking functions.

Nothing in here touches storage, the cache or the clock; `now` is always an
argument. Functions never raise on bad input, they return the documented
fallback instead.
"""
from __future__ import annotations
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from discovery.core.config import SearchOptions
from discovery.domain.models.product import Product, as_utc

DEGENERATE_SCORE = 0.01
_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9.+#-]*")

# Field -> threshold family for semantic matches
_FIELD_TYPES = {
    "name": "name",
    "title": "name",
    "tags": "tags",
    "category_name": "tags",
    "tagline": "description",
    "description": "description",
}
_NAME_FIELDS = {"name", "title"}


def _num(value: Any) -> Optional[float]:
    """None -> 0. NaN, infinities, negatives and garbage -> None (degenerate)."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(f) or math.isinf(f) or f < 0:
        return None
    return f


# ---------- Trending ----------------------------------------------------------

def trending_score(
    *,
    created_at: Optional[datetime],
    upvotes: Any = 0,
    views: Any = 0,
    unique_views: Any = 0,
    bookmarks: Any = 0,
    comments: Any = 0,
    recent_views: Any = 0,
    rec_clicks: Any = 0,
    rec_impressions: Any = 0,
    now: datetime,
) -> float:
    """
    Time-decayed engagement score.

    engagement = 5*upvotes + 0.5*views + unique + 3*bookmarks + 2*comments + 1.5*recent_views
    raw        = (engagement + min(engagement / max(ageD, 1), 100)) * min(30 / (ageD + 1), 3)
    blended    = 0.7*raw + 0.3*(2*clicks + 0.1*impressions) / max(1, ageD)
    score      = blended / (max(views, 1) * (ageH + 12) ** 1.8)

    Missing inputs count as 0 (a missing created_at counts as brand new).
    NaN, infinite or negative inputs, or a non-finite result, give 0.01.
    """
    values = [_num(v) for v in (upvotes, views, unique_views, bookmarks, comments,
                                recent_views, rec_clicks, rec_impressions)]
    if any(v is None for v in values):
        return DEGENERATE_SCORE
    up, vw, uq, bm, cm, rv, clicks, imps = values

    now = as_utc(now)
    created = as_utc(created_at) if created_at is not None else now
    age_h = max(1.0, (now - created).total_seconds() / 3600.0)
    age_d = age_h / 24.0

    engagement = 5 * up + 0.5 * vw + 1 * uq + 3 * bm + 2 * cm + 1.5 * rv
    recency = min(30.0 / (age_d + 1.0), 3.0)
    velocity = min(engagement / max(age_d, 1.0), 100.0)
    raw = (engagement + velocity) * recency
    rec_adj = (2 * clicks + 0.1 * imps) / max(1.0, age_d)
    blended = 0.7 * raw + 0.3 * rec_adj

    score = blended / (max(vw, 1.0) * math.pow(age_h + 12.0, 1.8))
    if math.isnan(score) or math.isinf(score) or score < 0:
        return DEGENERATE_SCORE
    return score


def product_trending_score(product: Product, now: datetime, recent_days: int = 7) -> float:
    v = product.views
    return trending_score(
        created_at=product.created_at,
        upvotes=product.upvote_count,
        views=v.count,
        unique_views=v.unique,
        bookmarks=product.bookmark_count,
        comments=product.comment_count,
        recent_views=v.recent(now, recent_days),
        rec_clicks=v.recommendation_clicks,
        rec_impressions=v.recommendation_impressions,
        now=now,
    )


def _tie_value(key: str, upvotes: float, created_ts: float, product_id: str):
    if key == "upvotes":
        return -upvotes
    if key == "created_at":
        return -created_ts
    return product_id


def rank_key(
    score: float,
    *,
    upvotes: float,
    created_ts: float,
    product_id: str,
    tie_breaks: Sequence[str] = ("upvotes", "created_at", "product_id"),
) -> Tuple:
    """
    Sort key (ascending sort = best first): higher score, then the configured
    tie-breaks. The product id always closes the tuple so distinct products
    never compare equal.
    """
    parts: List[Any] = [-score]
    for key in tie_breaks:
        parts.append(_tie_value(key, upvotes, created_ts, product_id))
    if "product_id" not in tie_breaks:
        parts.append(product_id)
    return tuple(parts)


def rank_products(
    scored: Iterable[Tuple[Product, float]],
    tie_breaks: Sequence[str] = ("upvotes", "created_at", "product_id"),
) -> List[Tuple[Product, float]]:
    return sorted(
        scored,
        key=lambda ps: rank_key(
            ps[1],
            upvotes=ps[0].upvote_count,
            created_ts=ps[0].created_at.timestamp(),
            product_id=ps[0].product_id,
            tie_breaks=tie_breaks,
        ),
    )


# ---------- Similarity --------------------------------------------------------

def edit_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost)
        prev = cur
    return prev[-1]


def word_similarity(a: Optional[str], b: Optional[str]) -> float:
    """1.0 on exact match, 0.8 on containment, else 1 - levenshtein / max_len. Case-insensitive."""
    if not a or not b:
        return 0.0
    s1, s2 = a.lower(), b.lower()
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8
    return 1.0 - edit_distance(s1, s2) / max(len(s1), len(s2))


def tokenize(text: Optional[str]) -> List[str]:
    return _TOKEN_RE.findall((text or "").lower())


def token_overlap_similarity(a: str, b: str) -> float:
    """
    Default semantic similarity: for each token of `a`, the best word similarity
    against the tokens of `b`, averaged. Range [0, 1].
    """
    ta, tb = tokenize(a), tokenize(b)
    if not ta or not tb:
        return 0.0
    total = 0.0
    for tok in ta:
        total += max(word_similarity(tok, other) for other in tb)
    return total / len(ta)


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    sa, sb = set(a), set(b)
    if not sa and not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


# ---------- Search relevance --------------------------------------------------

Similarity = Callable[[str, str], float]


@dataclass
class Relevance:
    total_score: float = 0.0
    field_score: float = 0.0
    boost_score: float = 0.0
    field_scores: Dict[str, float] = field(default_factory=dict)
    explanations: List[str] = field(default_factory=list)

    @property
    def top_explanations(self) -> List[str]:
        return self.explanations[:3]


def _short(value: str, n: int = 30) -> str:
    return value if len(value) <= n else value[:n] + "..."


def _score_string_field(
    field_name: str,
    value: str,
    query: str,
    weight: float,
    thresholds: Dict[str, float],
    similarity: Similarity,
) -> Tuple[float, Optional[str]]:
    v = value.lower().strip()
    if not v:
        return 0.0, None
    if v == query:
        return weight, f"Exact match in {field_name}: '{_short(value)}'"
    if query in v:
        return weight * 0.8, f"Contains '{query}' in {field_name}"
    if v in query:
        return weight * 0.7, f"{field_name} '{_short(value)}' is part of your search"

    sim = similarity(query, v)
    family = _FIELD_TYPES.get(field_name, "description")
    threshold = thresholds.get(family, 0.6)
    if sim < threshold:
        return 0.0, None
    if field_name in _NAME_FIELDS and sim < 0.8:
        return 0.0, None
    return sim * weight, f"Semantically similar to {field_name}"


def _field_value(product: Product, field_name: str):
    if field_name == "tags":
        return product.tags
    return getattr(product, field_name, None)


def search_relevance(
    query: str,
    product: Product,
    *,
    now: datetime,
    options: Optional[SearchOptions] = None,
    similarity: Similarity = token_overlap_similarity,
) -> Relevance:
    """
    Weighted field matching plus engagement boosts. Per field the best of:
    exact (w), field contains query (0.8w), query contains field (0.7w),
    semantic similarity over the field-type threshold (sim*w). List fields
    are scored per element, keeping the best.
    """
    opts = options or SearchOptions()
    q = (query or "").lower().strip()
    rel = Relevance()
    if not q:
        return rel

    for field_name, weight in opts.field_weights.items():
        value = _field_value(product, field_name)
        if not value:
            continue
        best, best_expl = 0.0, None
        if isinstance(value, (list, tuple)):
            for element in value:
                if not isinstance(element, str):
                    continue
                s, expl = _score_string_field(field_name, element, q, weight, opts.thresholds, similarity)
                if s > best:
                    best, best_expl = s, expl
                if best >= weight:
                    break
        elif isinstance(value, str):
            best, best_expl = _score_string_field(field_name, value, q, weight, opts.thresholds, similarity)
        rel.field_scores[field_name] = best
        if best_expl:
            rel.explanations.append(best_expl)

    # Strongest field matches explain first
    rel.explanations.sort(key=lambda e: 0 if e.startswith("Exact") else 1)

    boost = 0.0
    upvotes = product.upvote_count
    boost += min(upvotes * opts.upvote_boost, opts.upvote_boost_cap)
    if upvotes > 10:
        rel.explanations.append(f"Popular with {upvotes} upvotes")

    views = product.views.count
    boost += min(views * opts.view_boost, opts.view_boost_cap)
    if views > 100:
        rel.explanations.append(f"Frequently viewed ({views} views)")

    age_days = (as_utc(now) - product.created_at).total_seconds() / 86400.0
    if 0 <= age_days < 30:
        boost += (30 - age_days) * opts.recency_boost / 10
        if age_days < 7:
            rel.explanations.append("Recently added")

    if product.featured:
        boost += opts.featured_boost
        rel.explanations.append("Featured item")

    rel.field_score = sum(rel.field_scores.values())
    rel.boost_score = boost
    rel.total_score = rel.field_score + boost
    return rel
