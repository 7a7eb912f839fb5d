import pytest

from media_rec.hybrid import (
    HybridRanker,
    adaptive_weights_for,
    enforce_diversity,
    merge_recommendations,
    rerank,
)
from media_rec.models import MediaRef, Recommendation


def rec(media_id, score, genre=None, author=None, media_type="book", language=None):
    return Recommendation(
        media_type, media_id, f"Title {media_id}", score, "",
        {"genre": genre, "author": author, "language": language},
    )


class FakeContent:
    def __init__(self, recs=()):
        self.recs = list(recs)
        self.calls = []

    def get_recommendations(self, ref, **kwargs):
        self.calls.append((ref, kwargs))
        return list(self.recs)


class FakeCollaborative:
    def __init__(self, personalized=(), popular=(), interactions=10):
        self.personalized = list(personalized)
        self.popular = list(popular)
        self.interactions = interactions

    def interaction_count(self, user_id):
        return self.interactions

    def get_personalized_recommendations(self, user_id, **kwargs):
        return list(self.personalized)

    def get_popular_items(self, limit, exclude=None):
        exclude = exclude or set()
        return [r for r in self.popular if r.ref not in exclude][:limit]


def test_merge_divides_by_present_weights():
    content = [rec("a", 0.8), rec("b", 0.6)]
    collaborative = [rec("b", 0.4), rec("c", 0.5)]

    merged = merge_recommendations(content, collaborative, 0.4, 0.6)

    assert [r.media_id for r in merged] == ["a", "b", "c"]
    by_id = {r.media_id: r for r in merged}
    assert by_id["a"].score == pytest.approx(0.8)
    assert by_id["b"].score == pytest.approx(0.48)
    assert by_id["c"].score == pytest.approx(0.5)
    assert by_id["a"].reason == "Similar content"
    assert by_id["b"].reason == "Similar content • Users like you enjoyed this"
    assert by_id["c"].reason == "Users like you enjoyed this"


def test_diversity_zero_leaves_scores_untouched():
    recs = [rec(str(i), 0.9, genre="Drama") for i in range(6)]
    assert [r.score for r in enforce_diversity(recs, 0.0)] == [0.9] * 6


def test_diversity_penalizes_repeated_genre():
    recs = [rec(str(i), 1.0, genre="Drama", author=f"A{i}") for i in range(4)]

    full = enforce_diversity(recs, 1.0)
    half = enforce_diversity(recs, 0.5)

    assert [r.score for r in full[:3]] == [1.0, 1.0, 1.0]
    assert full[3].score == pytest.approx(0.9)
    assert half[3].score == pytest.approx(0.95)


def test_diversity_treats_missing_creator_as_shared():
    recs = [rec(str(i), 1.0, genre=f"G{i}") for i in range(3)]

    out = enforce_diversity(recs, 1.0)

    assert out[2].score == pytest.approx(0.85)


def test_hybrid_result_spans_genres_with_diversity():
    pool = [rec(f"d{i}", 0.70, genre="Drama", author=f"D{i}") for i in range(12)]
    pool += [rec("c1", 0.68, genre="Comedy", author="C1"), rec("c2", 0.68, genre="Comedy", author="C2")]
    pool += [rec("h1", 0.68, genre="Horror", author="H1"), rec("h2", 0.68, genre="Horror", author="H2")]
    ranker = HybridRanker(None, FakeContent(), FakeCollaborative(personalized=pool))

    recs = ranker.get_hybrid_recommendations("u1", limit=10, diversity_factor=0.2, exploration_rate=0.0)

    assert len(recs) == 10
    assert len({r.genre for r in recs}) > 1
    scores = [r.score for r in recs]
    assert scores == sorted(scores, reverse=True)


def test_new_user_without_anchor_gets_popular_list():
    popular = [rec("p1", 0.5), rec("p2", 0.3), rec("p3", 0.3)]
    ranker = HybridRanker(None, FakeContent(), FakeCollaborative(popular=popular, interactions=0))

    recs = ranker.get_hybrid_recommendations("new-user", limit=2)

    assert recs == popular[:2]


def test_empty_merge_falls_back_to_popular():
    popular = [rec("p1", 0.5)]
    ranker = HybridRanker(None, FakeContent(), FakeCollaborative(popular=popular, interactions=3))

    assert ranker.get_hybrid_recommendations("u1", limit=5) == popular


def test_anchor_never_returned_and_scores_clamped():
    anchor = MediaRef("book", "anchor")
    content = FakeContent([rec("anchor", 1.0), rec("x", 0.9), rec("y", 0.7)])
    collaborative = FakeCollaborative(personalized=[rec("x", 1.0), rec("z", 0.4)])
    ranker = HybridRanker(None, content, collaborative)

    recs = ranker.get_hybrid_recommendations("u1", anchor=anchor, limit=10, exploration_rate=0.0)

    assert anchor not in {r.ref for r in recs}
    assert {r.media_id for r in recs} == {"x", "y", "z"}
    assert all(0.0 <= r.score <= 1.0 for r in recs)
    ref, kwargs = content.calls[0]
    assert ref == anchor
    assert kwargs["same_genre_boost"] == pytest.approx(1.3)
    assert kwargs["min_score"] == pytest.approx(0.08)


def test_exploration_appends_unseen_popular_items():
    popular = [rec("a", 0.8), rec("p", 0.5)]
    ranker = HybridRanker(None, FakeContent(), FakeCollaborative(popular=popular))

    out = ranker.add_exploration([rec("a", 0.9)], exploration_rate=0.1, limit=10)

    assert [r.media_id for r in out] == ["a", "p"]
    assert out[1].score == pytest.approx(0.35)
    assert out[1].reason == "Discover something new"
    assert ranker.add_exploration([rec("a", 0.9)], 0.0, 10) == [rec("a", 0.9)]


@pytest.mark.parametrize("count,expected", [
    (0, (0.7, 0.3)),
    (4, (0.7, 0.3)),
    (5, (0.5, 0.5)),
    (19, (0.5, 0.5)),
    (20, (0.3, 0.7)),
    (500, (0.3, 0.7)),
])
def test_adaptive_weights(count, expected):
    assert adaptive_weights_for(count) == expected


def test_adaptive_weights_follow_history():
    assert HybridRanker(None, None, FakeCollaborative(interactions=2)).get_adaptive_weights("u")[0] > 0.5
    content_w, collab_w = HybridRanker(None, None, FakeCollaborative(interactions=25)).get_adaptive_weights("u")
    assert collab_w > content_w


def test_rerank_boosts_favourites_and_caps():
    recs = [rec("a", 0.5, genre="Sci-Fi"), rec("b", 0.5, genre="Drama", language="en"), rec("c", 0.95, genre="Drama")]

    out = rerank(recs, ["Drama"], ["en"])

    assert [r.media_id for r in out] == ["c", "b", "a"]
    assert out[0].score == 1.0
    assert out[1].score == pytest.approx(0.5 * 1.15 * 1.1)
    assert out[2].score == 0.5


def test_rerank_uses_stored_profile(fresh_db):
    ranker = HybridRanker(None, None, None)
    recs = [rec("a", 0.5, genre="Sci-Fi"), rec("b", 0.45, genre="Drama")]

    assert ranker.rerank("u1", recs) == recs

    fresh_db.save_preference_profile("u1", {"x": 1.0}, ["Drama"], [], 3, 0.0)
    assert [r.media_id for r in ranker.rerank("u1", recs)] == ["b", "a"]


def test_resolve_anchor_forms(adventure_catalog):
    ranker = HybridRanker(adventure_catalog, None, None)

    assert ranker.resolve_anchor("adv1") == MediaRef("book", "adv1")
    assert ranker.resolve_anchor("video:9") == MediaRef("video", "9")
    assert ranker.resolve_anchor("missing") is None
    assert ranker.resolve_anchor(None) is None


def _capture_weights(ranker, monkeypatch):
    captured = {}

    def fake_hybrid(user_id, anchor=None, **kwargs):
        captured.update(kwargs, anchor=anchor)
        return []

    monkeypatch.setattr(ranker, "get_hybrid_recommendations", fake_hybrid)
    return captured


def test_adaptive_hybrid_fills_missing_weights_from_history(monkeypatch):
    ranker = HybridRanker(None, FakeContent(), FakeCollaborative(interactions=2))
    captured = _capture_weights(ranker, monkeypatch)

    ranker.get_adaptive_hybrid_recommendations("u1", limit=5, exploration_rate=0.0)

    assert (captured["content_weight"], captured["collaborative_weight"]) == (0.7, 0.3)
    assert captured["limit"] == 5
    assert captured["exploration_rate"] == 0.0


def test_adaptive_hybrid_keeps_explicit_weight(monkeypatch):
    anchor = MediaRef("book", "a")
    ranker = HybridRanker(None, FakeContent(), FakeCollaborative(interactions=25))
    captured = _capture_weights(ranker, monkeypatch)

    ranker.get_adaptive_hybrid_recommendations("u1", anchor, content_weight=0.9)

    assert captured["anchor"] == anchor
    assert (captured["content_weight"], captured["collaborative_weight"]) == (0.9, 0.7)
