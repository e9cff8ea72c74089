import asyncio

from discovery.domain.models.reco import RecoItem
from discovery.domain.services.tracker import SessionTracker, TrackerRegistry


def _items(*ids):
    return [RecoItem(product_id=i, score=1.0, reason="trending") for i in ids]


class TestSessionTracker:
    """Tests for in-session de-duplication"""

    async def test_filtered_results_are_disjoint(self):
        tracker = SessionTracker("s1")
        first = await tracker.filter(_items("p1", "p2", "p3"))
        second = await tracker.filter(_items("p2", "p4", "p3", "p5"))
        assert [i.product_id for i in first] == ["p1", "p2", "p3"]
        assert [i.product_id for i in second] == ["p4", "p5"]
        assert len(tracker) == 5 and "p4" in tracker

    async def test_concurrent_sections_never_share_a_product(self):
        tracker = SessionTracker("s1")
        results = await asyncio.gather(*(tracker.filter(_items("p1", "p2", "p3", f"x{n}")) for n in range(10)))
        seen = [i.product_id for r in results for i in r]
        assert len(seen) == len(set(seen))
        assert seen.count("p1") == 1

    async def test_reset_starts_a_new_cycle(self):
        tracker = SessionTracker("s1")
        await tracker.filter(["p1", "p2"])
        await tracker.reset()
        assert await tracker.filter(["p1"]) == ["p1"]

    async def test_mark_seen(self):
        tracker = SessionTracker("s1")
        await tracker.mark_seen(["p1"])
        assert await tracker.filter(["p1", "p2"]) == ["p2"]


class TestTrackerRegistry:
    """Tests for session bookkeeping"""

    def test_no_session_no_tracker(self):
        assert TrackerRegistry().get(None) is None
        assert TrackerRegistry().get("") is None

    def test_same_session_same_tracker(self):
        reg = TrackerRegistry()
        assert reg.get("s1") is reg.get("s1")
        assert reg.get("s1") is not reg.get("s2")

    def test_least_recently_used_is_evicted(self):
        reg = TrackerRegistry(max_sessions=2)
        a = reg.get("a")
        reg.get("b")
        reg.get("a")
        reg.get("c")
        assert len(reg) == 2
        assert reg.get("a") is a
        assert "b" not in reg

    def test_idle_sessions_expire(self):
        clock = [0.0]
        reg = TrackerRegistry(idle_ttl_s=60, timer=lambda: clock[0])
        first = reg.get("s1")
        clock[0] = 59
        assert reg.get("s1") is first
        clock[0] = 100
        assert reg.get("s1") is first
        clock[0] = 161
        assert reg.get("s1") is not first

    async def test_reset_by_id(self):
        reg = TrackerRegistry()
        await reg.get("s1").filter(["p1"])
        await reg.reset("s1")
        assert len(reg.get("s1")) == 0
