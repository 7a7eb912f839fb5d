from datetime import datetime, timedelta

from media_rec.cache import RecommendationCache, content_key, hybrid_key, personalized_key
from media_rec.models import MediaRef, Recommendation


def _rec(media_id, score=0.5):
    return Recommendation("book", media_id, f"Book {media_id}", score, "because", {"genre": "Drama"})


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def test_key_formats():
    ref = MediaRef("book", "42")

    assert content_key(ref, 10, 0.1) == "content_based:book:42:limit:10:min:0.1"
    assert personalized_key("u1", 5, 0.2, True) == "personalized:user:u1:limit:5:min:0.2:exclude:true"
    assert hybrid_key("u1", None, 10).startswith("hybrid:user:u1:media:none:limit:10")


def test_hybrid_key_param_order_does_not_matter():
    ref = MediaRef("video", "7")
    a = hybrid_key("u1", ref, 10, diversity_factor=0.15, exploration_rate=0.1)
    b = hybrid_key("u1", ref, 10, exploration_rate=0.1, diversity_factor=0.15)

    assert a == b
    assert "media:video:7" in a
    assert a != hybrid_key("u1", ref, 10, diversity_factor=0.2, exploration_rate=0.1)


def test_set_then_get_round_trips(fresh_db):
    cache = RecommendationCache()
    cache.set("k", [_rec("1"), _rec("2", 0.3)], "content_based", 60)

    hit = cache.get("k")

    assert [r.media_id for r in hit] == ["1", "2"]
    assert hit[0].metadata == {"genre": "Drama"}
    assert cache.get("missing") is None


def test_expired_entry_is_never_served(fresh_db):
    clock = Clock(datetime.now())
    cache = RecommendationCache(clock=clock)
    cache.set("k", [_rec("1")], "content_based", 60)

    clock.advance(seconds=61)

    assert cache.get("k") is None
    assert [r.media_id for r in cache.get_stale("k")] == ["1"]


def test_set_is_an_upsert(fresh_db):
    cache = RecommendationCache()
    cache.set("k", [_rec("1")], "content_based", 60)
    cache.set("k", [_rec("9")], "content_based", 60)

    assert [r.media_id for r in cache.get("k")] == ["9"]
    assert fresh_db.table_counts()["recommendation_cache"] == 1


def test_invalidate_user_by_column_and_key(fresh_db):
    cache = RecommendationCache()
    cache.set(personalized_key("u1", 10, 0.1, True), [_rec("1")], "personalized", 60, user_id="u1")
    cache.set("hybrid:user:u1:media:none:limit:5", [_rec("2")], "hybrid", 60)
    cache.set(personalized_key("u10", 10, 0.1, True), [_rec("3")], "personalized", 60, user_id="u10")
    cache.set(content_key(MediaRef("book", "1"), 10, 0.1), [_rec("4")], "content_based", 60)

    assert cache.invalidate_user("u1") == 2

    assert cache.get(personalized_key("u10", 10, 0.1, True)) is not None
    assert cache.get(content_key(MediaRef("book", "1"), 10, 0.1)) is not None


def test_prune_expired(fresh_db):
    clock = Clock(datetime.now())
    cache = RecommendationCache(clock=clock)
    cache.set("short", [_rec("1")], "content_based", 10)
    cache.set("long", [_rec("2")], "content_based", 3600)

    clock.advance(minutes=1)

    assert cache.prune_expired() == 1
    assert cache.get("long") is not None
    assert cache.get_stale("short") is None


def test_cached_computes_once(fresh_db):
    cache = RecommendationCache()
    calls = []

    def compute():
        calls.append(1)
        return [_rec("1")]

    first = cache.cached("k", 60, compute, "content_based")
    second = cache.cached("k", 60, compute, "content_based")

    assert len(calls) == 1
    assert first == second


def test_cached_stores_empty_lists(fresh_db):
    cache = RecommendationCache()
    calls = []

    def compute():
        calls.append(1)
        return []

    assert cache.cached("k", 60, compute, "personalized") == []
    assert cache.cached("k", 60, compute, "personalized") == []
    assert len(calls) == 1


def test_invalidate_user_treats_wildcards_literally(fresh_db):
    cache = RecommendationCache()
    other = personalized_key("userA1", 10, 0.1, True)
    own = personalized_key("user_1", 10, 0.1, True)
    cache.set(other, [_rec("1")], "personalized", 60)
    cache.set(own, [_rec("2")], "personalized", 60)
    cache.set(personalized_key("50%off", 10, 0.1, True), [_rec("3")], "personalized", 60)

    assert cache.invalidate_user("user_1") == 1
    assert cache.invalidate_user("%") == 0

    assert cache.get(other) is not None
    assert cache.get(own) is None
