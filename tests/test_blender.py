import asyncio

import pytest

from discovery.core.config import BlendOptions, Settings
from discovery.core.deadline import Deadline
from discovery.core.errors import DeadlineExceeded, InvalidArgument, NotFound
from discovery.domain.models.reco import RecoItem, RecoParams, StrategyResult, UserCtx
from discovery.domain.services.blender import HybridBlender, effective_weights, min_max


def _lane(name, *scored):
    items = [RecoItem(product_id=pid, score=s, reason=name) for pid, s in scored]
    return StrategyResult(strategy=name, items=items)


class StubEngines:
    """Engine table stand-in returning canned lane results"""

    def __init__(self, results=None, delays=None, errors=None):
        self.results = results or {}
        self.delays = delays or {}
        self.errors = errors or {}
        self.calls = []

    async def run(self, lane, ctx, params, deadline):
        self.calls.append((lane, params.limit, params.offset))
        if lane in self.delays:
            await asyncio.sleep(self.delays[lane])
        if lane in self.errors:
            raise self.errors[lane]
        return self.results.get(lane, StrategyResult(strategy=lane))


@pytest.fixture
def even_settings():
    return Settings(_env_file=None, blend=BlendOptions(profiles={
        "standard": {"trending": 0.30, "new": 0.15, "personalized": 0.30, "collaborative": 0.15, "similar": 0.10},
        "even": {"trending": 0.5, "new": 0.5},
    }))


class TestEffectiveWeights:
    """Tests for lane weight resolution"""

    @pytest.mark.parametrize("profile", sorted(BlendOptions().profiles))
    @pytest.mark.parametrize("authenticated", [True, False])
    def test_weights_sum_to_one(self, profile, authenticated):
        weights = effective_weights(BlendOptions().profiles, profile, authenticated)
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_anonymous_collapse_renormalizes(self):
        """Test that anonymous scopes zero the user lanes and rescale the rest"""
        weights = effective_weights(BlendOptions().profiles, "standard", authenticated=False)
        assert weights["personalized"] == 0.0
        assert weights["collaborative"] == 0.0
        assert weights["trending"] == pytest.approx(0.545, abs=1e-3)
        assert weights["new"] == pytest.approx(0.273, abs=1e-3)
        assert weights["similar"] == pytest.approx(0.182, abs=1e-3)

    def test_unknown_profile(self):
        with pytest.raises(InvalidArgument):
            effective_weights(BlendOptions().profiles, "nope", True)

    def test_profile_without_anonymous_lanes(self):
        profiles = {"mine": {"personalized": 1.0}}
        with pytest.raises(InvalidArgument):
            effective_weights(profiles, "mine", authenticated=False)


class TestMinMax:
    def test_rescales_to_unit_range(self):
        norm = min_max(_lane("t", ("a", 4.0), ("b", 2.0), ("c", 0.0)))
        assert norm == {"a": 1.0, "b": 0.5, "c": 0.0}

    def test_flat_lane_maps_to_one(self):
        assert min_max(_lane("t", ("a", 3.0), ("b", 3.0))) == {"a": 1.0, "b": 1.0}


class TestHybridBlender:
    """Tests for the hybrid fan-out and merge"""

    async def test_anonymous_blend_skips_user_lanes(self, settings):
        engines = StubEngines({
            "trending": _lane("trending", ("a", 3.0), ("b", 1.0)),
            "new": _lane("new", ("b", 5.0), ("c", 1.0)),
        })
        out = await HybridBlender(engines, settings).blend(UserCtx(), RecoParams(limit=10), Deadline.after(1))

        lanes_called = {lane for lane, _, _ in engines.calls}
        assert lanes_called == {"trending", "new"}
        assert [i.product_id for i in out.items] == ["a", "b", "c"]
        assert out.items[0].score == pytest.approx(0.30 / 0.55)
        assert out.items[0].reason == "trending"
        assert out.partial is False

    async def test_signed_in_blend_runs_user_lanes(self, settings):
        engines = StubEngines()
        params = RecoParams(limit=5, product_id="p1")
        await HybridBlender(engines, settings).blend(UserCtx(user_id="u1"), params, Deadline.after(1))
        assert {lane for lane, _, _ in engines.calls} == {"trending", "new", "personalized", "collaborative", "similar"}

    async def test_lanes_fetch_a_wider_window_without_offset(self, settings):
        engines = StubEngines()
        await HybridBlender(engines, settings).blend(UserCtx(), RecoParams(limit=10, offset=30), Deadline.after(1))
        assert all(limit == 40 and offset == 0 for _, limit, offset in engines.calls)

    async def test_ties_prefer_more_contributing_lanes(self, even_settings):
        """Test blended-score ties: more lanes first, then product id"""
        engines = StubEngines({
            "trending": _lane("trending", ("a", 1.0), ("c", 0.5), ("d", 0.0)),
            "new": _lane("new", ("b", 1.0), ("c", 0.5), ("e", 0.0)),
        })
        params = RecoParams(limit=10, blend="even")
        out = await HybridBlender(engines, even_settings).blend(UserCtx(), params, Deadline.after(1))
        assert [i.product_id for i in out.items] == ["c", "a", "b", "d", "e"]

    async def test_offset_and_limit_apply_after_merge(self, even_settings):
        engines = StubEngines({
            "trending": _lane("trending", ("a", 1.0), ("c", 0.5), ("d", 0.0)),
            "new": _lane("new", ("b", 1.0), ("c", 0.5), ("e", 0.0)),
        })
        params = RecoParams(limit=2, offset=1, blend="even")
        out = await HybridBlender(engines, even_settings).blend(UserCtx(), params, Deadline.after(1))
        assert [i.product_id for i in out.items] == ["a", "b"]

    async def test_slow_lane_gives_partial_result(self, settings):
        """Test that lanes still running at the deadline are cancelled"""
        engines = StubEngines(
            {"trending": _lane("trending", ("a", 2.0), ("b", 1.0))},
            delays={"new": 1.0},
        )
        out = await HybridBlender(engines, settings).blend(UserCtx(), RecoParams(limit=5), Deadline.after(0.1))
        assert out.partial is True
        assert [i.product_id for i in out.items] == ["a", "b"]
        assert "new" not in out.lanes

    async def test_lane_deadline_error_gives_partial(self, settings):
        engines = StubEngines(
            {"trending": _lane("trending", ("a", 2.0))},
            errors={"new": DeadlineExceeded("new")},
        )
        out = await HybridBlender(engines, settings).blend(UserCtx(), RecoParams(), Deadline.after(1))
        assert out.partial is True and [i.product_id for i in out.items] == ["a"]

    async def test_no_lane_in_time(self, settings):
        engines = StubEngines(delays={"trending": 1.0, "new": 1.0})
        with pytest.raises(DeadlineExceeded):
            await HybridBlender(engines, settings).blend(UserCtx(), RecoParams(), Deadline.after(0.05))

    async def test_fatal_lane_error_propagates(self, settings):
        engines = StubEngines(errors={"similar": NotFound("product p9 not found")})
        with pytest.raises(NotFound):
            await HybridBlender(engines, settings).blend(UserCtx(), RecoParams(product_id="p9"), Deadline.after(1))

    async def test_unavailable_lanes_are_reported(self, settings):
        engines = StubEngines({
            "trending": StrategyResult(strategy="trending", reason="unavailable"),
            "new": _lane("new", ("a", 1.0)),
        })
        out = await HybridBlender(engines, settings).blend(UserCtx(), RecoParams(), Deadline.after(1))
        assert out.unavailable == ["trending"]
        assert [i.product_id for i in out.items] == ["a"]

    async def test_failing_lane_is_dropped(self, settings):
        """Test that a non-fatal lane error drops only that lane"""
        engines = StubEngines(
            {"trending": _lane("trending", ("a", 2.0), ("b", 1.0))},
            errors={"new": RuntimeError("index missing")},
        )
        out = await HybridBlender(engines, settings).blend(UserCtx(), RecoParams(), Deadline.after(1))
        assert [i.product_id for i in out.items] == ["a", "b"]
        assert out.unavailable == ["new"]
        assert out.lanes == {"trending": 2, "new": 0}
        assert out.partial is False

    async def test_fatal_error_wins_over_dropped_lanes(self, settings):
        engines = StubEngines(errors={"new": RuntimeError("boom"), "similar": NotFound("p9")})
        with pytest.raises(NotFound):
            await HybridBlender(engines, settings).blend(UserCtx(), RecoParams(product_id="p9"), Deadline.after(1))


def _categorized(name, *rows):
    items = [RecoItem(product_id=pid, score=s, reason=name, category_id=cat) for pid, s, cat in rows]
    return StrategyResult(strategy=name, items=items)


class TestDiversity:
    """Tests for the per-category cap and lane representation after the merge"""

    @pytest.fixture
    def engines(self):
        return StubEngines({
            "trending": _categorized("trending", ("a", 5, "c1"), ("b", 4, "c1"), ("c", 3, "c1"), ("d", 2, "c1"), ("e", 1, "c2")),
            "new": _categorized("new", ("z", 1.0, "c3")),
        })

    def _settings(self, **opts):
        return Settings(_env_file=None, blend=BlendOptions(profiles={
            "standard": {"trending": 1.0},
            "even": {"trending": 0.5, "new": 0.5},
            "wide": {"trending": 0.75, "new": 0.2, "similar": 0.05},
        }, **opts))

    async def test_category_cap_skips_over_represented_items(self, engines):
        blender = HybridBlender(engines, self._settings(max_per_category=2))
        out = await blender.blend(UserCtx(), RecoParams(limit=4, blend="even"), Deadline.after(1))
        assert [i.product_id for i in out.items] == ["a", "z", "b", "e"]

    async def test_without_cap_rank_order_wins(self, engines):
        blender = HybridBlender(engines, self._settings(max_per_category=None))
        out = await blender.blend(UserCtx(), RecoParams(limit=4, blend="even"), Deadline.after(1))
        assert [i.product_id for i in out.items] == ["a", "z", "b", "c"]

    async def test_cap_backfills_a_short_list(self, engines):
        blender = HybridBlender(engines, self._settings(max_per_category=1))
        out = await blender.blend(UserCtx(), RecoParams(limit=5, blend="even"), Deadline.after(1))
        assert [i.product_id for i in out.items] == ["a", "z", "b", "c", "e"]

    async def test_top_lanes_keep_their_best_item(self):
        """Test that a low-weight lane still places its best item"""
        engines = StubEngines({
            "trending": _lane("trending", ("a", 4.0), ("b", 3.0), ("c", 2.0), ("d", 1.0)),
            "new": _lane("new", ("x", 2.0), ("y", 1.0)),
            "similar": _lane("similar", ("s", 1.0)),
        })
        params = RecoParams(limit=3, blend="wide", product_id="p1")

        seeded = await HybridBlender(engines, self._settings(min_sources=3)).blend(UserCtx(), params, Deadline.after(1))
        plain = await HybridBlender(engines, self._settings(min_sources=0)).blend(UserCtx(), params, Deadline.after(1))

        assert [i.product_id for i in seeded.items] == ["a", "x", "s"]
        assert [i.product_id for i in plain.items] == ["a", "b", "c"]
