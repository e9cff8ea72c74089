# discovery/domain/services/blender.py
from __future__ import annotations
import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from discovery.core.config import BLEND_LANES, Settings, get_settings
from discovery.core.deadline import Deadline
from discovery.core.errors import DeadlineExceeded, InvalidArgument, NotFound, Unauthenticated
from discovery.domain.models.reco import RecoItem, RecoParams, StrategyResult, UserCtx
from discovery.domain.services import constants as C
from discovery.domain.services.strategies import StrategyEngines, lane_params

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "standard"

# Lane errors that fail the whole blend; any other lane error only drops the lane
_FATAL = (NotFound, Unauthenticated, InvalidArgument)


def effective_weights(
    profiles: Mapping[str, Mapping[str, float]],
    profile: str,
    authenticated: bool,
) -> Dict[str, float]:
    """
    Lane weights for a profile, summing to 1. Anonymous scopes zero the
    personalized and collaborative lanes before renormalizing.
    """
    table = profiles.get(profile)
    if table is None:
        raise InvalidArgument(f"unknown blend profile {profile!r}")
    weights = {lane: float(table.get(lane, 0.0)) for lane in BLEND_LANES}
    if not authenticated:
        for lane in C.AUTH_STRATEGIES:
            weights[lane] = 0.0
    total = sum(weights.values())
    if total <= 0:
        raise InvalidArgument(f"blend profile {profile!r} has no usable lane")
    return {lane: w / total for lane, w in weights.items()}


def min_max(result: StrategyResult) -> Dict[str, float]:
    """Scores rescaled to [0, 1] within one lane. A flat lane maps to 1.0."""
    if not result.items:
        return {}
    scores = [i.score for i in result.items]
    lo, hi = min(scores), max(scores)
    if hi - lo <= 0:
        return {i.product_id: 1.0 for i in result.items}
    return {i.product_id: (i.score - lo) / (hi - lo) for i in result.items}


@dataclass
class BlendOutcome:
    items: List[RecoItem]
    partial: bool = False
    lanes: Dict[str, int] = field(default_factory=dict)
    unavailable: List[str] = field(default_factory=list)


@dataclass
class _Acc:
    score: float = 0.0
    lanes: int = 0
    trending: float = 0.0
    best: float = -1.0
    lane: str = ""
    item: Optional[RecoItem] = None


def diversify(
    ranked: Sequence[Tuple[str, _Acc]],
    size: int,
    lanes_by_weight: Sequence[str],
    *,
    max_per_category: Optional[int] = None,
    min_sources: int = 0,
) -> List[Tuple[str, _Acc]]:
    """
    Pick `size` entries of a blended ranking, keeping rank order.

    The best entry of each of the first `min_sources` lanes is kept first. The
    rest fill in rank order with at most `max_per_category` entries per category.
    If the cap leaves the list short, skipped entries are back-filled in rank order.
    """
    chosen: Dict[str, int] = {}
    per_category: Counter = Counter()

    def take(pos: int, pid: str, acc: _Acc) -> None:
        chosen[pid] = pos
        if acc.item is not None and acc.item.category_id:
            per_category[acc.item.category_id] += 1

    for lane in lanes_by_weight[:min_sources]:
        if len(chosen) >= size:
            break
        for pos, (pid, acc) in enumerate(ranked):
            if acc.lane == lane:
                if pid not in chosen:
                    take(pos, pid, acc)
                break

    for pos, (pid, acc) in enumerate(ranked):
        if len(chosen) >= size:
            break
        if pid in chosen:
            continue
        cat = acc.item.category_id if acc.item is not None else None
        if max_per_category and cat and per_category[cat] >= max_per_category:
            continue
        take(pos, pid, acc)

    for pos, (pid, acc) in enumerate(ranked):
        if len(chosen) >= size:
            break
        if pid not in chosen:
            take(pos, pid, acc)

    return [ranked[pos] for pos in sorted(chosen.values())]


class HybridBlender:
    def __init__(self, engines: StrategyEngines, settings: Optional[Settings] = None):
        self.engines = engines
        self.settings = settings or get_settings()

    async def blend(self, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> BlendOutcome:
        profile = params.blend or DEFAULT_PROFILE
        weights = effective_weights(self.settings.blend.profiles, profile, ctx.authenticated)
        per_lane = lane_params(params, max(params.limit * 2, params.limit + params.offset))

        tasks: Dict[asyncio.Task, str] = {}
        for lane, w in weights.items():
            if w <= 0:
                continue
            if lane == C.STRATEGY_SIMILAR and not params.product_id:
                continue
            task = asyncio.ensure_future(self.engines.run(lane, ctx, per_lane, deadline))
            tasks[task] = lane
        if not tasks:
            return BlendOutcome(items=[])

        done, pending = await asyncio.wait(tasks.keys(), timeout=deadline.remaining())
        partial = bool(pending)
        for t in pending:
            t.cancel()
        if pending:
            logger.warning("blend deadline hit profile=%s pending=%s", profile, sorted(tasks[t] for t in pending))
            await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[str, StrategyResult] = {}
        dropped: List[str] = []
        fatal: Optional[BaseException] = None
        for t in done:
            lane = tasks[t]
            exc = t.exception()
            if exc is None:
                results[lane] = t.result()
            elif isinstance(exc, DeadlineExceeded):
                partial = True
            elif isinstance(exc, _FATAL):
                fatal = fatal or exc
            else:
                logger.warning("blend lane dropped profile=%s lane=%s err=%r", profile, lane, exc)
                dropped.append(lane)
        if fatal is not None:
            raise fatal
        if not results and partial:
            raise DeadlineExceeded("blend: no lane finished before the deadline")

        acc: Dict[str, _Acc] = {}
        for lane, res in results.items():
            norm = min_max(res)
            w = weights[lane]
            for item in res.items:
                a = acc.setdefault(item.product_id, _Acc())
                contrib = norm[item.product_id] * w
                a.score += contrib
                a.lanes += 1
                a.trending = max(a.trending, item.trending_score)
                if contrib > a.best:
                    a.best, a.lane, a.item = contrib, lane, item

        # Higher blended score, then more contributing lanes, then trending score
        ranked = sorted(acc.items(), key=lambda kv: (-kv[1].score, -kv[1].lanes, -kv[1].trending, kv[0]))
        by_weight = sorted(results, key=lambda lane: (-weights[lane], lane))
        picked = diversify(
            ranked,
            params.limit + params.offset,
            by_weight,
            max_per_category=self.settings.blend.max_per_category,
            min_sources=self.settings.blend.min_sources,
        )
        window = picked[params.offset:]
        items = [
            a.item.model_copy(update={"score": a.score}) for _, a in window
        ]
        lanes = {lane: len(res) for lane, res in results.items()}
        lanes.update((lane, 0) for lane in dropped)
        unavailable = sorted([lane for lane, res in results.items() if res.unavailable] + dropped)
        logger.debug("blend profile=%s lanes=%s partial=%s items=%s", profile, lanes, partial, len(items))
        return BlendOutcome(items=items, partial=partial, lanes=lanes, unavailable=unavailable)
