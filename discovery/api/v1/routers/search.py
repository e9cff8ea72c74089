# discovery/api/v1/routers/search.py
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query

from discovery.api.deps import deadline_dep, services_dep, user_ctx
from discovery.api.v1.schemas.reco import RecoResultOut
from discovery.core.deadline import Deadline
from discovery.core.lifespan import Services
from discovery.domain.models.reco import SearchFilters, UserCtx

logger = logging.getLogger(__name__)

router = APIRouter(tags=["search"])


@router.get("/search", response_model=RecoResultOut)
async def search(
    q: str = Query("", max_length=200),
    category_id: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    ctx: UserCtx = Depends(user_ctx),
    deadline: Deadline = Depends(deadline_dep),
    services: Services = Depends(services_dep),
):
    """Text search with synonym and typo expansion, ranked by relevance."""
    res = await services.search.search(q, SearchFilters(category_id=category_id, limit=limit), ctx, deadline)
    return res.model_dump()
