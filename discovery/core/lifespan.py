# discovery/core/lifespan.py
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI
from pymongo.errors import PyMongoError

from discovery.core.config import Settings, get_settings
from discovery.db import mongo, redis as r
from discovery.domain.repositories.engagement_repo import EngagementRepo
from discovery.domain.repositories.product_repo import ProductRepo
from discovery.domain.repositories.reco_cache_repo import RecoCacheRepo
from discovery.domain.services.blender import HybridBlender
from discovery.domain.services.engagement_svc import EngagementService
from discovery.domain.services.invalidation_svc import InvalidationRouter
from discovery.domain.services.recommendation_svc import RecommendationService
from discovery.domain.services.search_svc import SearchService
from discovery.domain.services.strategies import StrategyEngines
from discovery.domain.services.tracker import TrackerRegistry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    recommendations: RecommendationService
    search: SearchService
    engagement: EngagementService
    invalidation: InvalidationRouter
    cache: RecoCacheRepo


def build_services(db, redis, settings: Optional[Settings] = None) -> Services:
    """Wire repositories and services around whatever Mongo/Redis handles are available (either may be None)."""
    settings = settings or get_settings()
    products = ProductRepo(db, tie_breaks=settings.score.tie_breaks)
    engagement_repo = EngagementRepo(db)
    cache = RecoCacheRepo(redis, settings.cache)
    engines = StrategyEngines(products, settings)
    router = InvalidationRouter(cache)
    return Services(
        recommendations=RecommendationService(
            engines=engines,
            blender=HybridBlender(engines, settings),
            cache=cache,
            trackers=TrackerRegistry(),
            engagement=engagement_repo if db is not None else None,
            settings=settings,
        ),
        search=SearchService(products, settings),
        engagement=EngagementService(engagement_repo, router),
        invalidation=router,
        cache=cache,
    )


def _db_or_none():
    try:
        return mongo.get_db()
    except AssertionError:
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    # --- Startup ---
    # Mongo is required when configured
    if settings.MONGO_URI:
        await mongo.connect()
    else:
        logger.warning("no MONGO_URI provided, skipping mongo connection")

    # Redis is optional
    await r.connect()

    services = build_services(_db_or_none(), r.get_redis(), settings)
    if settings.MONGO_URI:
        try:
            await services.engagement.repo.ensure_indexes()
        except PyMongoError as e:
            logger.warning("index creation skipped: %s", e)
    services.invalidation.start()
    app.state.services = services

    # Application runs
    yield

    # --- Shutdown ---
    await services.invalidation.stop()
    await services.recommendations.drain()
    await r.disconnect()
    if settings.MONGO_URI:
        await mongo.disconnect()
        logger.info("mongo disconnected")
