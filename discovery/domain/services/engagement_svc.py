# discovery/domain/services/engagement_svc.py
from __future__ import annotations
import logging
import time
from typing import Any, Dict

from discovery.core.errors import Unauthenticated
from discovery.domain.models.interaction import EngagementEvent, EventKind
from discovery.domain.repositories.engagement_repo import EngagementRepo
from discovery.domain.services.invalidation_svc import InvalidationRouter

logger = logging.getLogger(__name__)

_NEEDS_USER = {EventKind.UPVOTE, EventKind.BOOKMARK, EventKind.COMMENT, EventKind.DISMISS}


class EngagementService:
    """RecordEngagement: persist through the write path, then hand the event to the invalidation queue."""

    def __init__(self, repo: EngagementRepo, router: InvalidationRouter):
        self.repo = repo
        self.router = router

    async def record(self, event: EngagementEvent) -> Dict[str, Any]:
        t0 = time.perf_counter()
        if event.kind in _NEEDS_USER and not event.user_id:
            raise Unauthenticated(f"{event.kind.value} needs a signed-in user")

        out: Dict[str, Any] = {"ok": True, "kind": event.kind.value}
        if event.kind == EventKind.VIEW and event.product_id:
            out["unique"] = await self.repo.record_view(
                event.product_id,
                user_id=event.user_id,
                client_id=event.client_id,
                is_bot=event.is_bot,
                at=event.at,
            )
        elif event.kind == EventKind.UPVOTE:
            out["active"] = await self.repo.toggle_upvote(event.product_id, event.user_id, at=event.at)
        elif event.kind == EventKind.BOOKMARK:
            out["active"] = await self.repo.toggle_bookmark(event.product_id, event.user_id, at=event.at)
        elif event.kind == EventKind.COMMENT:
            await self.repo.record_comment(event.product_id, event.user_id, at=event.at)
        elif event.kind == EventKind.DISMISS:
            out["dismissed"] = await self.repo.dismiss(
                event.product_id, event.user_id, reason=event.reason, source=event.source, at=event.at,
            )
        elif event.kind == EventKind.PRODUCT_PUBLISHED:
            out["launched"] = await self.repo.publish_product(event.product_id, at=event.at)

        # Bot traffic never reshapes cached rankings; dismissals are filtered on read
        if event.is_bot or event.kind == EventKind.DISMISS:
            out["queued"] = False
        else:
            out["queued"] = self.router.submit(event)
        logger.info(
            "engagement kind=%s product_id=%s user_id=%s queued=%s time=%.3fs",
            event.kind.value, event.product_id, event.user_id, out["queued"], time.perf_counter() - t0,
        )
        return out
