import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from discovery.core.deadline import Deadline
from discovery.core.errors import DeadlineExceeded, InvalidArgument, NotFound, Unauthenticated, Unavailable
from discovery.domain.models.reco import RecoItem, RecoParams, UserCtx
from discovery.domain.repositories.reco_cache_repo import RecoCacheRepo
from discovery.domain.services.blender import HybridBlender
from discovery.domain.services.recommendation_svc import RecommendationService
from discovery.domain.services.strategies import StrategyEngines
from discovery.domain.services.tracker import TrackerRegistry
from tests.fakes import NOW, make_interaction


@pytest.fixture(autouse=True)
def frozen_key_clock(monkeypatch):
    """Keeps every cache key in one time bucket for the duration of a test"""
    monkeypatch.setattr("discovery.domain.repositories.reco_cache_repo.time.time", lambda: 1_700_000_000.0)


@pytest.fixture
def make_service(store, fake_redis, settings):
    def _build(engagement=None):
        engines = StrategyEngines(store, settings, clock=lambda: NOW)
        return RecommendationService(
            engines,
            HybridBlender(engines, settings),
            RecoCacheRepo(fake_redis, settings.cache),
            TrackerRegistry(),
            engagement=engagement,
            settings=settings,
        )
    return _build


def _ids(result):
    return [i.product_id for i in result.items]


def _rec_sets(fake_redis):
    return [k for k in fake_redis.set_calls if k.startswith("rec:")]


class TestRecommend:
    """Tests for the request orchestrator"""

    async def test_concurrent_cold_requests_compute_once(self, make_service, store, fake_redis):
        """Test that 50 concurrent identical requests share one engine call and one cache write"""
        service = make_service()
        store.delay = 0.05
        params = RecoParams(limit=20, days=7)

        results = await asyncio.gather(*(
            service.recommend("trending", params, UserCtx(visitor_id="v123abcxy")) for _ in range(50)
        ))

        assert store.calls["list_published"] == 1
        assert len(_rec_sets(fake_redis)) == 1
        assert all(_ids(r) == _ids(results[0]) for r in results)
        assert len(results[0].items) == 5

    async def test_second_request_is_a_cache_hit(self, make_service, store):
        service = make_service()
        first = await service.recommend("trending", RecoParams(), UserCtx())
        second = await service.recommend("trending", RecoParams(), UserCtx())
        assert first.cache_hit is False and second.cache_hit is True
        assert _ids(first) == _ids(second)
        assert store.calls["list_published"] == 1

    async def test_users_do_not_share_cache_entries(self, make_service, store):
        service = make_service()
        await service.recommend("trending", RecoParams(), UserCtx(user_id="u1"))
        await service.recommend("trending", RecoParams(), UserCtx(user_id="u2"))
        assert store.calls["list_published"] == 2

    async def test_hybrid_blend_is_cached(self, make_service, fake_redis):
        service = make_service()
        res = await service.recommend("hybrid", RecoParams(limit=4, blend="discovery"), UserCtx(visitor_id="v1"))
        assert res.count == 4 and res.partial is False
        assert any(k.startswith("rec:feed:anon:v1:s:hybrid:b:discovery") for k in _rec_sets(fake_redis))

    async def test_cold_start_substitutes_trending_uncached(self, make_service, fake_redis):
        service = make_service()
        res = await service.recommend("personalized", RecoParams(), UserCtx(user_id="newbie"))
        trending = await service.recommend("trending", RecoParams(), UserCtx(user_id="newbie"))
        assert res.degraded_from == "personalized"
        assert _ids(res) == _ids(trending)
        assert not any(k.startswith("rec:pers") for k in fake_redis.data)

    async def test_store_outage_is_unavailable_with_retry_hint(self, make_service, store):
        store.unavailable = True
        service = make_service()
        with pytest.raises(Unavailable) as exc:
            await service.recommend("trending", RecoParams(), UserCtx())
        assert exc.value.retry_after == 30
        with pytest.raises(Unavailable):
            await service.recommend("personalized", RecoParams(), UserCtx(user_id="u1"))

    async def test_user_strategies_need_a_user(self, make_service):
        with pytest.raises(Unauthenticated):
            await make_service().recommend("collaborative", RecoParams(), UserCtx(visitor_id="v1"))

    async def test_unknown_strategy(self, make_service):
        with pytest.raises(InvalidArgument):
            await make_service().recommend("viral", RecoParams(), UserCtx())

    async def test_missing_anchor_is_not_found(self, make_service):
        with pytest.raises(NotFound):
            await make_service().recommend("similar", RecoParams(product_id="nope"), UserCtx())

    async def test_deadline(self, make_service, store):
        store.delay = 0.5
        with pytest.raises(DeadlineExceeded):
            await make_service().recommend("trending", RecoParams(), UserCtx(), Deadline.after(0.05))

    async def test_joined_callers_keep_their_own_deadlines(self, make_service, fake_redis, monkeypatch):
        """Test that a short-deadline caller does not fail a joined caller with a longer deadline"""
        real_get = fake_redis.get

        async def slow_get(key):
            await asyncio.sleep(0.2)
            return await real_get(key)

        monkeypatch.setattr(fake_redis, "get", slow_get)
        service = make_service()
        params, ctx = RecoParams(), UserCtx(visitor_id="v1")

        short, patient = await asyncio.gather(
            service.recommend("trending", params, ctx, Deadline.after(0.05)),
            service.recommend("trending", params, ctx, Deadline.after(10)),
            return_exceptions=True,
        )

        assert isinstance(short, DeadlineExceeded)
        assert not isinstance(patient, Exception)
        assert patient.count == 5

    async def test_slow_store_serves_the_patient_caller(self, make_service, store):
        service = make_service()
        store.delay = 0.2
        params, ctx = RecoParams(), UserCtx()

        short, patient = await asyncio.gather(
            service.recommend("trending", params, ctx, Deadline.after(0.05)),
            service.recommend("trending", params, ctx, Deadline.after(10)),
            return_exceptions=True,
        )

        assert isinstance(short, DeadlineExceeded)
        assert patient.count == 5
        assert store.calls["list_published"] == 1

    async def test_corrupted_entry_is_recomputed(self, make_service, fake_redis):
        service = make_service()
        params, ctx = RecoParams(), UserCtx()
        key = service.cache.key("trending", service.key_params("trending", params, ctx))
        fake_redis.data[key] = '{"not": "a list"}'

        res = await service.recommend("trending", params, ctx)

        assert res.cache_hit is False and res.count == 5
        assert (await service.cache.get(key)) is not None

    async def test_waits_for_another_replica(self, make_service, store, fake_redis):
        """Test that a held compute lock makes this replica wait for the shared result"""
        service = make_service()
        params, ctx = RecoParams(), UserCtx()
        key = service.cache.key("trending", service.key_params("trending", params, ctx))
        await fake_redis.set(f"lock:{key}", "other-replica", ex=20)

        async def other_replica_finishes():
            await asyncio.sleep(0.15)
            await service.cache.set(key, [RecoItem(product_id="p9", score=1.0, reason="trending")])
            await fake_redis.delete(f"lock:{key}")

        helper = asyncio.ensure_future(other_replica_finishes())
        res = await service.recommend("trending", params, ctx)
        await helper

        assert res.cache_hit is True and _ids(res) == ["p9"]
        assert store.calls["list_published"] == 0


class TestSessionDedup:
    """Tests for per-session de-duplication across sections"""

    async def test_sections_of_one_page_never_repeat(self, make_service):
        service = make_service()
        ctx = UserCtx(session_id="s1")
        top = await service.recommend("trending", RecoParams(limit=3), ctx)
        fresh = await service.recommend("new", RecoParams(limit=5), ctx)
        assert top.count == 3
        assert not set(_ids(top)) & set(_ids(fresh))
        assert top.count + fresh.count == 5

    async def test_new_cycle_resets(self, make_service):
        service = make_service()
        ctx = UserCtx(session_id="s1")
        first = await service.recommend("trending", RecoParams(limit=3), ctx)
        again = await service.recommend("trending", RecoParams(limit=3), ctx, new_cycle=True)
        assert _ids(first) == _ids(again)

    async def test_reset_session(self, make_service):
        service = make_service()
        ctx = UserCtx(session_id="s1")
        first = await service.recommend("trending", RecoParams(limit=3), ctx)
        await service.reset_session("s1")
        assert _ids(await service.recommend("trending", RecoParams(limit=3), ctx)) == _ids(first)
        with pytest.raises(InvalidArgument):
            await service.reset_session("")


class TestDismissed:
    """Tests for products a signed-in user dismissed"""

    async def test_dismissed_products_are_not_served(self, make_service, store):
        store.interactions.append(make_interaction("u1", "p1", "dismiss"))
        service = make_service()

        mine = await service.recommend("trending", RecoParams(), UserCtx(user_id="u1"))
        theirs = await service.recommend("trending", RecoParams(), UserCtx(user_id="u2"))

        assert "p1" not in _ids(mine) and mine.count == 4
        assert "p1" in _ids(theirs)

    async def test_dismissal_applies_to_cached_lists(self, make_service, store):
        service = make_service()
        ctx = UserCtx(user_id="u1")
        before = await service.recommend("new", RecoParams(), ctx)
        store.interactions.append(make_interaction("u1", _ids(before)[0], "dismiss"))

        after = await service.recommend("new", RecoParams(), ctx)

        assert after.cache_hit is True
        assert _ids(after) == _ids(before)[1:]

    async def test_anonymous_requests_skip_the_lookup(self, make_service, store):
        await make_service().recommend("trending", RecoParams(), UserCtx(visitor_id="v1"))
        assert store.calls["get_dismissed"] == 0

    async def test_lookup_failure_serves_unfiltered(self, make_service, store, monkeypatch):
        store.interactions.append(make_interaction("u1", "p1", "dismiss"))
        monkeypatch.setattr(store, "get_dismissed", AsyncMock(side_effect=Unavailable("events down")))
        res = await make_service().recommend("trending", RecoParams(), UserCtx(user_id="u1"))
        assert "p1" in _ids(res)

class TestImpressions:
    async def test_served_items_are_recorded(self, make_service):
        engagement = MagicMock()
        engagement.record_impressions = AsyncMock(return_value=3)
        service = make_service(engagement=engagement)

        res = await service.recommend("trending", RecoParams(limit=3), UserCtx())
        await service.drain()

        engagement.record_impressions.assert_awaited_once_with(_ids(res))

    async def test_click_is_recorded(self, make_service):
        engagement = MagicMock()
        engagement.record_click = AsyncMock()
        await make_service(engagement=engagement).record_click("p1")
        engagement.record_click.assert_awaited_once_with("p1")

    async def test_click_without_store(self, make_service):
        with pytest.raises(Unavailable):
            await make_service().record_click("p1")
        with pytest.raises(InvalidArgument):
            await make_service().record_click("")

    async def test_impression_failure_is_swallowed(self, make_service):
        engagement = MagicMock()
        engagement.record_impressions = AsyncMock(side_effect=RuntimeError("mongo down"))
        service = make_service(engagement=engagement)
        res = await service.recommend("trending", RecoParams(limit=3), UserCtx())
        await service.drain()
        assert res.count == 3
