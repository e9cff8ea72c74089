# discovery/api/v1/routers/recommendations.py
from typing import Optional
import logging
import time

from fastapi import APIRouter, Depends, Query
from pydantic import ValidationError

from discovery.api.deps import deadline_dep, services_dep, user_ctx
from discovery.api.v1.schemas.reco import RecoResultOut
from discovery.core.deadline import Deadline
from discovery.core.errors import InvalidArgument
from discovery.core.lifespan import Services
from discovery.domain.models.reco import RecoParams, UserCtx

logger = logging.getLogger(__name__)

router = APIRouter(tags=["recommendations"])


@router.get("/recommendations/{strategy}", response_model=RecoResultOut)
async def recommendations(
    strategy: str,
    limit: int = Query(20),
    offset: int = Query(0),
    days: Optional[int] = Query(None),
    category_id: Optional[str] = Query(None),
    product_id: Optional[str] = Query(None),
    maker_id: Optional[str] = Query(None),
    tags: Optional[str] = Query(None, description="Comma separated"),
    blend: Optional[str] = Query(None, description="standard | discovery | trending"),
    new_cycle: bool = Query(False, description="Start a new render cycle for this session"),
    ctx: UserCtx = Depends(user_ctx),
    deadline: Deadline = Depends(deadline_dep),
    services: Services = Depends(services_dep),
):
    """
    Ranked products for one strategy: trending, new, similar, personalized,
    collaborative, category, tag, popular or hybrid.
    """
    logger.info(
        "Request: recommendations strategy=%s limit=%s offset=%s user_id=%s session_id=%s",
        strategy, limit, offset, ctx.user_id, ctx.session_id,
    )
    start_time = time.perf_counter()
    try:
        params = RecoParams(
            limit=limit, offset=offset, days=days, category_id=category_id,
            product_id=product_id, maker_id=maker_id, tags=tags, blend=blend,
        )
    except ValidationError as e:
        raise InvalidArgument(str(e.errors()[0].get("msg", "invalid parameters")))

    res = await services.recommendations.recommend(strategy, params, ctx, deadline, new_cycle=new_cycle)
    logger.info(
        "Response: recommendations strategy=%s count=%s elapsed_time=%.4fs",
        strategy, res.count, time.perf_counter() - start_time,
    )
    return res.model_dump()


@router.post("/recommendations/clicks/{product_id}")
async def recommendation_click(product_id: str, services: Services = Depends(services_dep)):
    """A recommended product was opened from a ranked list."""
    await services.recommendations.record_click(product_id)
    return {"ok": True, "product_id": product_id}
