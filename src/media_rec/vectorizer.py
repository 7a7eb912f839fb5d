"""
TF-IDF vectorization of catalog metadata.

Every item's metadata is flattened into a weighted feature text, tokenized,
stemmed and turned into an L2-normalized term-weight vector. IDF is always
computed over the whole corpus, so a single-item rebuild re-derives feature
text for every item and extracts only the target vector.
"""
from dataclasses import dataclass, field
import logging
import math
import re
from typing import Iterable

from nltk.stem import PorterStemmer
from tqdm import tqdm

from .config import (
    MIN_TOKEN_LENGTH,
    STOPWORDS,
    FEATURE_REPETITIONS,
    PROGRESS_LOG_EVERY,
)
from .models import BatchResult, MediaItem, MediaRef
from . import database

logger = logging.getLogger(__name__)

_STEMMER = PorterStemmer()
_WORD_RE = re.compile(r"\b\w+\b")


def preprocess_text(text: str | None, stopwords: frozenset = STOPWORDS, stemmer=None) -> list[str]:
    """
    Lowercase, tokenize on word boundaries, drop short/non-alphabetic tokens
    and stopwords, then Porter-stem what remains.
    """
    if not text or not isinstance(text, str):
        return []
    stemmer = stemmer or _STEMMER
    tokens = _WORD_RE.findall(text.lower())
    return [
        stemmer.stem(tok)
        for tok in tokens
        if len(tok) >= MIN_TOKEN_LENGTH and tok.isalpha() and tok not in stopwords
    ]


def extract_feature_text(item: MediaItem, repetitions=FEATURE_REPETITIONS) -> str:
    """
    Build the weighted text fed to the tokenizer.

    Repeating a field N times multiplies its term frequencies by N before IDF.
    Missing fields are skipped.
    """
    parts: list[str] = []

    def repeat(value: str | None, field_name: str):
        if value:
            parts.extend([value] * repetitions[field_name])

    repeat(item.title, 'title')
    repeat(item.description, 'description')
    repeat(item.author, 'creator')
    repeat(item.narrator, 'creator')
    repeat(item.genre_label, 'genre')
    if item.tags:
        repeat(" ".join(str(t) for t in item.tags), 'tags')

    return " ".join(parts)


@dataclass
class VocabularyStatistics:
    """
    Corpus-wide document frequencies.

    IDF depends on every document, so vectors are only comparable when built
    from the same statistics.
    """
    document_count: int = 0
    document_frequencies: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_documents(cls, token_lists: Iterable[list[str]]) -> "VocabularyStatistics":
        stats = cls()
        for tokens in token_lists:
            stats.add_document(tokens)
        return stats

    def add_document(self, tokens: list[str]) -> None:
        self.document_count += 1
        for term in set(tokens):
            self.document_frequencies[term] = self.document_frequencies.get(term, 0) + 1

    def remove_document(self, tokens: list[str]) -> None:
        if self.document_count == 0:
            raise ValueError("Cannot remove a document from empty statistics")
        self.document_count -= 1
        for term in set(tokens):
            remaining = self.document_frequencies.get(term, 0) - 1
            if remaining > 0:
                self.document_frequencies[term] = remaining
            else:
                self.document_frequencies.pop(term, None)

    def idf(self, term: str) -> float:
        """1 + ln(N / (1 + df)); positive for any term seen in the corpus."""
        if self.document_count == 0:
            return 0.0
        df = self.document_frequencies.get(term, 0)
        return 1.0 + math.log(self.document_count / (1 + df))


def compute_tfidf(token_lists: list[list[str]], stats: VocabularyStatistics) -> list[dict[str, float]]:
    """Raw (unnormalized) TF-IDF vectors, TF being the per-document token count."""
    vectors = []
    for tokens in token_lists:
        tf: dict[str, int] = {}
        for tok in tokens:
            tf[tok] = tf.get(tok, 0) + 1
        vec = {}
        for term, count in tf.items():
            weight = count * stats.idf(term)
            if weight > 0:
                vec[term] = weight
        vectors.append(vec)
    return vectors


def normalize_vector(vector: dict[str, float]) -> tuple[dict[str, float], float]:
    """Return (unit vector, original magnitude); the zero vector maps to ({}, 0.0)."""
    magnitude = math.sqrt(sum(v * v for v in vector.values()))
    if magnitude == 0:
        return {}, 0.0
    return {term: weight / magnitude for term, weight in vector.items()}, magnitude


def cosine_similarity(v1: dict[str, float], v2: dict[str, float]) -> float:
    """Cosine over the union of keys; exactly 0.0 if either vector is zero."""
    if not v1 or not v2:
        return 0.0
    dot = 0.0
    for term in set(v1) | set(v2):
        dot += v1.get(term, 0.0) * v2.get(term, 0.0)
    mag1 = math.sqrt(sum(v * v for v in v1.values()))
    mag2 = math.sqrt(sum(v * v for v in v2.values()))
    if mag1 == 0 or mag2 == 0:
        return 0.0
    # Clamp float drift so cos(v, v) never leaves [-1, 1]
    return max(-1.0, min(1.0, dot / (mag1 * mag2)))


@dataclass
class FeatureVector:
    ref: MediaRef
    terms: dict[str, float]
    magnitude: float = 0.0
    feature_text: str = ""
    language: str | None = None
    genres: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "FeatureVector":
        return cls(
            ref=MediaRef(row['media_type'], row['media_id']),
            terms=row.get('vector') or {},
            magnitude=row.get('magnitude') or 0.0,
            feature_text=row.get('feature_text') or "",
            language=row.get('language'),
            genres=list(row.get('genres') or []),
            tags=list(row.get('tags') or []),
        )

    def save(self) -> None:
        database.save_media_vector(
            self.ref.media_type,
            self.ref.media_id,
            self.terms,
            self.magnitude,
            self.feature_text,
            self.language,
            self.genres,
            self.tags,
        )


def load_feature_vector(ref: MediaRef) -> FeatureVector | None:
    row = database.load_media_vector(ref.media_type, ref.media_id)
    return FeatureVector.from_row(row) if row else None


class Vectorizer:
    """Builds and stores item vectors from the catalog."""

    def __init__(self, catalog, stopwords: frozenset = STOPWORDS, stemmer=None):
        self.catalog = catalog
        self.stopwords = stopwords
        self.stemmer = stemmer or _STEMMER

    def _load_items(self, items: list[MediaItem] | None) -> list[MediaItem]:
        if items is not None:
            return items
        from .catalog import list_all_items
        return list_all_items(self.catalog)

    def _tokenize_corpus(self, items: list[MediaItem]) -> tuple[list[MediaItem], list[str], list[list[str]], int]:
        """Feature text and tokens per item; items whose metadata cannot be read are dropped."""
        kept, texts, token_lists = [], [], []
        errors = 0
        for item in items:
            try:
                text = extract_feature_text(item)
                tokens = preprocess_text(text, self.stopwords, self.stemmer)
            except Exception as e:
                errors += 1
                logger.error(f"Failed to extract features for {item.ref}: {e}")
                continue
            kept.append(item)
            texts.append(text)
            token_lists.append(tokens)
        return kept, texts, token_lists, errors

    def vectorize(self, items: list[MediaItem]) -> list[FeatureVector]:
        """Pure corpus vectorization without touching the store."""
        kept, texts, token_lists, _ = self._tokenize_corpus(items)
        stats = VocabularyStatistics.from_documents(token_lists)
        raw_vectors = compute_tfidf(token_lists, stats)
        return [
            self._feature_vector(item, text, raw)
            for item, text, raw in zip(kept, texts, raw_vectors)
        ]

    @staticmethod
    def _feature_vector(item: MediaItem, text: str, raw: dict[str, float]) -> FeatureVector:
        terms, magnitude = normalize_vector(raw)
        return FeatureVector(
            ref=item.ref,
            terms=terms,
            magnitude=magnitude,
            feature_text=text,
            language=item.language,
            genres=[item.genre_label] if item.genre_label else [],
            tags=list(item.tags),
        )

    def build_corpus_vectors(self, items: list[MediaItem] | None = None, show_progress: bool = False) -> BatchResult:
        """
        Vectorize and store every catalog item.

        A failing item is logged and counted; the rest of the batch continues.
        """
        items = self._load_items(items)
        result = BatchResult()
        if not items:
            logger.info("No catalog items to vectorize")
            return result

        logger.info(f"Building TF-IDF vectors for {len(items)} items")
        kept, texts, token_lists, result.errors = self._tokenize_corpus(items)
        stats = VocabularyStatistics.from_documents(token_lists)
        raw_vectors = compute_tfidf(token_lists, stats)
        logger.debug(f"Vocabulary: {len(stats.document_frequencies)} terms over {stats.document_count} documents")

        rows = zip(kept, texts, raw_vectors)
        for item, text, raw in tqdm(rows, total=len(kept), desc="Vectors", disable=not show_progress):
            try:
                self._feature_vector(item, text, raw).save()
                result.processed += 1
                if result.processed % PROGRESS_LOG_EVERY == 0:
                    logger.info(f"Vectorized {result.processed}/{len(kept)} items")
            except Exception as e:
                result.errors += 1
                logger.error(f"Error storing vector for {item.ref}: {e}")

        logger.info(f"TF-IDF build complete: {result.processed} processed, {result.errors} errors")
        return result

    def build_vector_for_item(self, ref: MediaRef, items: list[MediaItem] | None = None) -> FeatureVector | None:
        """
        Rebuild and store one item's vector.

        O(N): feature text is re-derived for the whole corpus so the IDF the
        vector is built from matches a full rebuild.
        """
        items = self._load_items(items)
        if not any(item.ref == ref for item in items):
            logger.warning(f"Cannot vectorize {ref}: not in catalog")
            return None

        kept, texts, token_lists, _ = self._tokenize_corpus(items)
        stats = VocabularyStatistics.from_documents(token_lists)
        for item, text, tokens in zip(kept, texts, token_lists):
            if item.ref == ref:
                raw = compute_tfidf([tokens], stats)[0]
                vector = self._feature_vector(item, text, raw)
                vector.save()
                logger.debug(f"Rebuilt vector for {ref} ({len(vector.terms)} terms)")
                return vector

        logger.warning(f"Cannot vectorize {ref}: feature extraction failed")
        return None


class VectorIndex:
    """
    In-memory sparse matrix over stored vectors for nearest-neighbour scans.

    Rows are items, columns are vocabulary terms; rows are unit length so one
    sparse matrix-vector product gives cosine similarity against the corpus.
    """

    def __init__(self, vectors: list[FeatureVector]):
        self.vectors = {v.ref: v for v in vectors}
        self._refs: list[MediaRef] = list(self.vectors)
        self._row_index = {ref: idx for idx, ref in enumerate(self._refs)}
        self._matrix = None
        self._build_matrix()

    @classmethod
    def load(cls) -> "VectorIndex":
        return cls([FeatureVector.from_row(row) for row in database.load_all_media_vectors()])

    def __len__(self) -> int:
        return len(self._refs)

    def __contains__(self, ref: MediaRef) -> bool:
        return ref in self._row_index

    def _build_matrix(self):
        from scipy.sparse import csr_matrix, diags
        import numpy as np

        term_index: dict[str, int] = {}
        row_indices, col_indices, weights = [], [], []
        for row, ref in enumerate(self._refs):
            for term, weight in self.vectors[ref].terms.items():
                col = term_index.setdefault(term, len(term_index))
                row_indices.append(row)
                col_indices.append(col)
                weights.append(weight)

        shape = (len(self._refs), max(1, len(term_index)))
        matrix = csr_matrix((weights, (row_indices, col_indices)), shape=shape, dtype=np.float64)

        # Renormalize rows so stale or hand-written vectors still give cosine
        row_norms = np.sqrt(np.asarray(matrix.power(2).sum(axis=1)).ravel())
        row_norms[row_norms == 0] = 1
        self._matrix = (diags(1.0 / row_norms) @ matrix).tocsr()
        logger.debug(f"Built vector index: {shape[0]} items x {len(term_index)} terms")

    def similarities(self, ref: MediaRef):
        """Dense array of cosine similarities between `ref` and every row."""
        import numpy as np

        idx = self._row_index[ref]
        target = self._matrix[idx]
        return np.asarray((self._matrix @ target.T).toarray()).ravel()

    def nearest(self, ref: MediaRef, limit: int, min_score: float = 0.0) -> list[tuple[MediaRef, float]]:
        """Top `limit` neighbours of `ref` with similarity >= min_score, never `ref` itself."""
        import numpy as np

        if ref not in self._row_index or limit <= 0:
            return []

        sims = self.similarities(ref)
        sims[self._row_index[ref]] = -np.inf
        candidates = np.flatnonzero((sims >= min_score) & (sims > 0))
        if candidates.size == 0:
            return []

        # Stable ordering: score desc, then ref for equal scores
        ordered = sorted(candidates, key=lambda i: (-sims[i], self._refs[i]))
        return [(self._refs[i], float(min(sims[i], 1.0))) for i in ordered[:limit]]
