import pytest

from media_rec.content import ContentSimilarityService, generate_reason
from media_rec.models import MediaRef
from media_rec.vectorizer import VectorIndex, Vectorizer

from conftest import make_item


@pytest.fixture
def vectorized(fresh_db, adventure_catalog):
    result = Vectorizer(adventure_catalog).build_corpus_vectors()
    assert result.processed == 3
    assert result.errors == 0
    return adventure_catalog


def test_similar_adventure_ranks_first(vectorized):
    service = ContentSimilarityService(vectorized)

    recs = service.get_recommendations(MediaRef("book", "adv1"), limit=10, min_score=0.0)

    ids = [r.media_id for r in recs]
    assert ids[0] == "adv2"
    assert "adv1" not in ids
    if "rom1" in ids:
        assert ids.index("rom1") > ids.index("adv2")
    assert "Same genre: Adventure" in recs[0].reason
    assert "Same author: Jane Explorer" in recs[0].reason


def test_scores_sorted_and_bounded(vectorized):
    service = ContentSimilarityService(vectorized)

    recs = service.get_recommendations(MediaRef("book", "rom1"), limit=10, min_score=0.0)

    scores = [r.score for r in recs]
    assert scores == sorted(scores, reverse=True)
    assert all(0.0 <= s <= 1.0 for s in scores)


def test_missing_source_returns_empty(vectorized):
    service = ContentSimilarityService(vectorized)

    assert service.get_recommendations(MediaRef("book", "nope")) == []
    assert service.get_recommendations(MediaRef("book", "adv1"), limit=0) == []


def test_item_without_vector_returns_empty(vectorized):
    vectorized.add(make_item("video", "new", "Brand New Video", category="Adventure"))
    service = ContentSimilarityService(vectorized)

    assert service.get_recommendations(MediaRef("video", "new")) == []


def test_same_language_only_filters_targets(vectorized):
    vectorized.add(make_item(
        "audio", "adv-fr", "Adventure 3",
        description="A daring quest across mountains searching for treasure",
        author="Jane Explorer", genre="Adventure", language="fr",
    ))
    Vectorizer(vectorized).build_corpus_vectors()
    service = ContentSimilarityService(vectorized)

    recs = service.get_recommendations(MediaRef("book", "adv1"), min_score=0.0, same_language_only=True)

    assert recs
    assert all(r.language == "en" for r in recs)


def test_precompute_then_fast_path(vectorized, fresh_db):
    service = ContentSimilarityService(vectorized)

    result = service.precompute_similar_items(top_n=5)

    assert result.processed == 3
    assert result.errors == 0
    rows = fresh_db.load_similar_items("book", "adv1", limit=5)
    assert rows[0]["similar_id"] == "adv2"
    assert [r["rank"] for r in rows] == list(range(1, len(rows) + 1))

    def no_scan():
        raise AssertionError("corpus scan should not run when precomputed neighbours exist")

    fast = ContentSimilarityService(vectorized, index_loader=no_scan)
    recs = fast.get_recommendations(MediaRef("book", "adv1"), limit=5)
    assert recs[0].media_id == "adv2"


def test_generate_reason_fallback():
    a = make_item("book", "1", "A", genre="Drama")
    b = make_item("video", "2", "B", category="Sports")

    assert generate_reason(a, b, 0.2) == "Recommended for you"
    assert generate_reason(a, a, 0.8).endswith("Highly similar content")


class FixedIndex:
    """Index stand-in returning preset similarities for any source."""

    def __init__(self, source, neighbours):
        self.source = source
        self.neighbours = neighbours

    def __contains__(self, ref):
        return ref == self.source

    def nearest(self, ref, limit, min_score=0.0):
        return [(n, s) for n, s in self.neighbours if s >= min_score][:limit]


def test_scan_applies_genre_boost_and_near_duplicate_penalty(fresh_db, adventure_catalog):
    source = MediaRef("book", "adv1")
    index = FixedIndex(source, [(MediaRef("book", "rom1"), 0.95), (MediaRef("book", "adv2"), 0.5)])
    service = ContentSimilarityService(adventure_catalog, index_loader=lambda: index)

    recs = service.get_recommendations(source, limit=10, min_score=0.0)

    scores = {r.media_id: r.score for r in recs}
    assert scores["adv2"] == pytest.approx(0.5 * 1.2)
    assert scores["rom1"] == pytest.approx(0.95 * (1 - 0.1))
    assert [r.media_id for r in recs] == ["rom1", "adv2"]


def test_boost_can_push_same_genre_into_near_duplicate_range(fresh_db, adventure_catalog):
    source = MediaRef("book", "adv1")
    index = FixedIndex(source, [(MediaRef("book", "adv2"), 0.8)])
    service = ContentSimilarityService(adventure_catalog, index_loader=lambda: index)

    (rec,) = service.get_recommendations(source, min_score=0.0)
    assert rec.score == pytest.approx(0.8 * 1.2 * 0.9)

    (boosted,) = service.get_recommendations(source, min_score=0.0, same_genre_boost=1.0, diversity_factor=0.5)
    assert boosted.score == pytest.approx(0.8)


def test_precompute_counts_failing_item_and_continues(vectorized, fresh_db):
    class FlakyIndex(VectorIndex):
        def nearest(self, ref, limit, min_score=0.0):
            if ref.media_id == "rom1":
                raise RuntimeError("corrupt row")
            return super().nearest(ref, limit, min_score)

    service = ContentSimilarityService(vectorized, index_loader=FlakyIndex.load)

    result = service.precompute_similar_items(top_n=5)

    assert (result.processed, result.errors) == (2, 1)
    assert fresh_db.load_similar_items("book", "rom1", limit=5) == []
    assert fresh_db.load_similar_items("book", "adv1", limit=5)[0]["similar_id"] == "adv2"
