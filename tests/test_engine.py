import threading
import time

import pytest

from media_rec.cache import content_key, personalized_key
from media_rec.engine import CORPUS_JOB, RebuildInProgressError, RecommendationEngine
from media_rec.models import MediaRef, Recommendation


@pytest.fixture
def engine(fresh_db, adventure_catalog):
    eng = RecommendationEngine(adventure_catalog, request_timeout=5.0)
    yield eng
    eng.close()


@pytest.fixture
def popular_adv2(seeded_interactions):
    seeded_interactions([(u, "book", "adv2", "view", 1) for u in ("a", "b", "c")])


def test_rebuild_and_precompute(engine, fresh_db):
    result = engine.rebuild_all_vectors()
    similar = engine.precompute_similar_items(top_n=5)

    assert (result.processed, result.errors) == (3, 0)
    assert similar.processed == 3
    stats = engine.stats()
    assert stats["media_vectors"] == 3
    assert stats["similar_items_cache"] >= 2


def test_rebuild_item_vector(engine):
    engine.rebuild_all_vectors()

    vector = engine.rebuild_item_vector(MediaRef("book", "adv1"))

    assert vector is not None
    assert vector.genres == ["Adventure"]
    assert engine.rebuild_item_vector(MediaRef("book", "missing")) is None


def test_content_based_adventure_scenario(engine):
    engine.rebuild_all_vectors()

    recs = engine.get_content_based(MediaRef("book", "adv1"))

    ids = [r.media_id for r in recs]
    assert ids[0] == "adv2"
    assert "adv1" not in ids
    if "rom1" in ids:
        assert ids.index("adv2") < ids.index("rom1")


def test_second_identical_request_is_cached(engine, monkeypatch):
    engine.rebuild_all_vectors()
    calls = []
    original = engine.content.get_recommendations

    def counting(*args, **kwargs):
        calls.append(1)
        return original(*args, **kwargs)

    monkeypatch.setattr(engine.content, "get_recommendations", counting)
    ref = MediaRef("book", "adv1")

    start = time.perf_counter()
    first = engine.get_content_based(ref)
    first_elapsed = time.perf_counter() - start

    start = time.perf_counter()
    second = engine.get_content_based(ref)
    second_elapsed = time.perf_counter() - start

    assert len(calls) == 1
    assert {r.ref for r in first} == {r.ref for r in second}
    assert second_elapsed <= first_elapsed


def test_timeout_serves_stale_cache(fresh_db, adventure_catalog):
    engine = RecommendationEngine(adventure_catalog, request_timeout=0.05)
    release = threading.Event()
    ref = MediaRef("book", "adv1")
    stale = [Recommendation("book", "adv2", "Adventure 2", 0.4, "old")]
    engine.cache.set(content_key(ref, 10, 0.1), stale, "content_based", ttl_seconds=0)

    def slow(*args, **kwargs):
        release.wait(2)
        raise RuntimeError("gave up")

    engine.content.get_recommendations = slow
    try:
        assert engine.get_content_based(ref) == stale
    finally:
        release.set()
        engine.close()


def test_failure_without_stale_falls_back_to_popularity(engine, popular_adv2, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("index unavailable")

    monkeypatch.setattr(engine.content, "get_recommendations", broken)

    recs = engine.get_content_based(MediaRef("book", "adv1"))

    assert [r.media_id for r in recs] == ["adv2"]
    assert recs[0].reason == "Popular with 3 users"


def test_every_strategy_failing_returns_empty_list(engine, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("down")

    monkeypatch.setattr(engine.collaborative, "get_personalized_recommendations", broken)
    monkeypatch.setattr(engine.collaborative, "get_popular_items", broken)

    assert engine.get_personalized("u1") == []


def test_new_user_hybrid_is_popularity_list(engine, popular_adv2):
    engine.rebuild_all_vectors()

    recs = engine.get_hybrid("brand-new", limit=5)

    assert recs == engine.collaborative.get_popular_items(5)
    assert 0 < len(recs) <= 5


def test_hybrid_with_anchor_string(engine, popular_adv2):
    engine.rebuild_all_vectors()

    recs = engine.get_hybrid("a", anchor="book:adv1", limit=5, exploration_rate=0.0)

    assert "adv1" not in [r.media_id for r in recs]
    assert all(0.0 <= r.score <= 1.0 for r in recs)


def test_track_interaction_invalidates_user_cache(engine, popular_adv2):
    key = personalized_key("u1", 10, 0.1, True)
    engine.get_personalized("u1")
    assert engine.cache.get(key) is not None

    value = engine.track_interaction("u1", MediaRef("book", "adv1"), "like")

    assert value == 2.0
    assert engine.cache.get(key) is None


def test_click_tracking_updates_metrics(engine, fresh_db):
    recs = [
        Recommendation("book", "adv1", "Adventure 1", 0.9),
        Recommendation("book", "adv2", "Adventure 2", 0.6),
    ]

    rec_id = engine.track_recommendation_shown("u1", recs, "hybrid")
    assert engine.track_recommendation_click(rec_id, "u1", MediaRef("book", "adv2"))
    assert not engine.track_recommendation_click("unknown", "u1", MediaRef("book", "adv2"))

    report = engine.get_metrics(days=1)
    (row,) = report["metrics"]
    assert row["shown_count"] == 2
    assert row["clicked_count"] == 1
    assert report["period_days"] == 1
    kinds = [r["kind"] for r in fresh_db.load_user_interactions("u1")]
    assert kinds == ["view", "view"]


def test_rebuild_refused_while_lock_held(engine, fresh_db):
    with engine.job_lock(CORPUS_JOB):
        with pytest.raises(RebuildInProgressError):
            engine.rebuild_all_vectors()
        with pytest.raises(RebuildInProgressError):
            engine.precompute_similar_items()

    assert fresh_db.acquire_job_lock(CORPUS_JOB, "other-process", stale_after_seconds=3600)
    with pytest.raises(RebuildInProgressError):
        engine.rebuild_all_vectors()
    fresh_db.release_job_lock(CORPUS_JOB, "other-process")

    assert engine.rebuild_all_vectors().processed == 3


def test_prune_expired_cache(engine):
    engine.cache.set("gone", [], "content_based", ttl_seconds=0)
    engine.cache.set("kept", [], "content_based", ttl_seconds=600)

    assert engine.prune_expired_cache() == 1


def test_hybrid_without_weights_uses_adaptive_weights(engine, seeded_interactions, monkeypatch):
    seeded_interactions([("u1", "book", "adv1", "view", 1)] * 6)
    captured = {}

    def fake_hybrid(user_id, anchor=None, **kwargs):
        captured.update(kwargs)
        return []

    monkeypatch.setattr(engine.hybrid, "get_hybrid_recommendations", fake_hybrid)

    engine.get_hybrid("u1", collaborative_weight=0.8)

    assert captured["content_weight"] == 0.5
    assert captured["collaborative_weight"] == 0.8
