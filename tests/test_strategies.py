import pytest

from discovery.core.deadline import Deadline
from discovery.core.errors import InvalidArgument, NotFound, Unauthenticated
from discovery.domain.models.reco import RecoParams, UserCtx
from discovery.domain.services.strategies import StrategyEngines, lane_params
from tests.fakes import NOW, make_interaction


@pytest.fixture
def engines(store, settings):
    return StrategyEngines(store, settings, clock=lambda: NOW)


def _ids(result):
    return [i.product_id for i in result.items]


class TestListingEngines:
    """Tests for trending, new, category, tag and popular"""

    async def test_trending_ranks_published_by_score(self, engines):
        res = await engines.run("trending", UserCtx(), RecoParams(limit=10), Deadline.after(1))
        assert set(_ids(res)) == {"p1", "p2", "p3", "p4", "p5"}
        scores = [i.score for i in res.items]
        assert scores == sorted(scores, reverse=True)
        assert all(i.reason == "trending" for i in res.items)
        assert "upvotes" in res.items[0].explanation

    async def test_trending_window_excludes_old_products(self, engines):
        res = await engines.run("trending", UserCtx(), RecoParams(days=2), Deadline.after(1))
        assert set(_ids(res)) == {"p1", "p2", "p4"}

    async def test_new_is_newest_first(self, engines):
        res = await engines.run("new", UserCtx(), RecoParams(limit=10), Deadline.after(1))
        assert _ids(res) == ["p4", "p1", "p2", "p3", "p5"]
        assert res.items[0].score > res.items[-1].score

    async def test_category(self, engines):
        res = await engines.run("category", UserCtx(), RecoParams(category_id="c-design"), Deadline.after(1))
        assert set(_ids(res)) == {"p3", "p5"}

    async def test_category_requires_category_id(self, engines):
        with pytest.raises(InvalidArgument):
            await engines.run("category", UserCtx(), RecoParams(), Deadline.after(1))

    async def test_tag_skips_drafts(self, engines):
        res = await engines.run("tag", UserCtx(), RecoParams(tags=["notes"]), Deadline.after(1))
        assert _ids(res) == ["p4"]
        assert res.items[0].explanation == "Tagged notes"

    async def test_popular(self, engines):
        res = await engines.run("popular", UserCtx(), RecoParams(limit=3), Deadline.after(1))
        assert len(res) == 3

    async def test_unknown_strategy(self, engines):
        with pytest.raises(InvalidArgument):
            await engines.run("viral", UserCtx(), RecoParams(), Deadline.after(1))

    async def test_store_outage_gives_empty_unavailable_result(self, engines, store):
        store.unavailable = True
        res = await engines.run("trending", UserCtx(), RecoParams(), Deadline.after(1))
        assert res.items == [] and res.reason == "unavailable"


class TestSimilar:
    """Tests for similar-to-product"""

    async def test_excludes_anchor_and_explains_shared_tags(self, engines):
        res = await engines.run("similar", UserCtx(), RecoParams(product_id="p1"), Deadline.after(1))
        assert set(_ids(res)) == {"p2", "p4", "p5"}
        by_id = {i.product_id: i for i in res.items}
        assert by_id["p2"].explanation == "Shares tags: ai"
        assert by_id["p4"].explanation == "Shares tags: productivity"
        assert all(0 <= i.score <= 1 for i in res.items)

    async def test_requires_product_id(self, engines):
        with pytest.raises(InvalidArgument):
            await engines.run("similar", UserCtx(), RecoParams(), Deadline.after(1))

    async def test_unknown_anchor(self, engines):
        with pytest.raises(NotFound):
            await engines.run("similar", UserCtx(), RecoParams(product_id="nope"), Deadline.after(1))


class TestPersonalized:
    """Tests for interest-based recommendations"""

    async def test_recommends_from_interests_excluding_owned(self, engines, store):
        store.interactions = [make_interaction("u1", "p3", "upvote")]
        res = await engines.run("personalized", UserCtx(user_id="u1"), RecoParams(), Deadline.after(1))
        assert _ids(res) == ["p5"]
        assert res.items[0].explanation == "Because you like design"
        assert res.reason is None

    async def test_cold_start_serves_trending(self, engines):
        ctx = UserCtx(user_id="newbie")
        res = await engines.run("personalized", ctx, RecoParams(), Deadline.after(1))
        trending = await engines.run("trending", ctx, RecoParams(), Deadline.after(1))
        assert res.reason == "cold_start"
        assert _ids(res) == _ids(trending)

    async def test_bot_interactions_are_ignored(self, engines, store):
        store.interactions = [make_interaction("u1", "p3", "upvote", is_bot=True)]
        res = await engines.run("personalized", UserCtx(user_id="u1"), RecoParams(), Deadline.after(1))
        assert res.reason == "cold_start"

    async def test_requires_user(self, engines):
        with pytest.raises(Unauthenticated):
            await engines.run("personalized", UserCtx(visitor_id="v1"), RecoParams(), Deadline.after(1))


class TestCollaborative:
    """Tests for user-user collaborative filtering"""

    async def test_peers_upvotes_and_bookmarks_become_candidates(self, engines, store):
        store.interactions = [
            make_interaction("u1", "p1", "upvote"),
            make_interaction("u2", "p1", "upvote"),
            make_interaction("u2", "p2", "upvote"),
            make_interaction("u3", "p1", "view"),
            make_interaction("u3", "p3", "bookmark"),
            make_interaction("u3", "p4", "view"),
        ]
        res = await engines.run("collaborative", UserCtx(user_id="u1"), RecoParams(), Deadline.after(1))
        assert _ids(res) == ["p2", "p3"]
        assert res.items[0].score == pytest.approx(1.0)
        assert res.items[1].score == pytest.approx(0.7)
        assert res.items[0].explanation == "Liked by someone with similar taste"

    async def test_no_peers_is_cold_start(self, engines, store):
        store.interactions = [make_interaction("u1", "p1", "upvote")]
        res = await engines.run("collaborative", UserCtx(user_id="u1"), RecoParams(), Deadline.after(1))
        assert res.items == [] and res.reason == "cold_start"

    async def test_requires_user(self, engines):
        with pytest.raises(Unauthenticated):
            await engines.run("collaborative", UserCtx(), RecoParams(), Deadline.after(1))


def test_lane_params_drops_offset():
    p = lane_params(RecoParams(limit=50, offset=20, days=7), 140)
    assert (p.limit, p.offset, p.days) == (140, 0, 7)
