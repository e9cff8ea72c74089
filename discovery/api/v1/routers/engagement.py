# discovery/api/v1/routers/engagement.py
import logging

from fastapi import APIRouter, Depends
from pydantic import ValidationError

from discovery.api.deps import services_dep
from discovery.api.v1.schemas.reco import EngagementIn, EngagementOut
from discovery.core.errors import InvalidArgument
from discovery.core.lifespan import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["engagement"])


@router.post("/engagement", response_model=EngagementOut)
async def record_engagement(body: EngagementIn, services: Services = Depends(services_dep)):
    """Record a view, upvote, bookmark, comment, dismissal or catalog change and queue cache invalidation."""
    try:
        event = body.to_event()
    except ValidationError as e:
        raise InvalidArgument(str(e.errors()[0].get("msg", "invalid event")))
    return await services.engagement.record(event)
