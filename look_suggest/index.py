"""
Per-slot item index with cosine top-K retrieval.

Catalog entries are embedded once, L2-normalized and stored in one FAISS
inner-product index per slot, so inner product equals cosine similarity.
The whole structure is replaced on every build; nothing is mutated in
place. Query results are memoized in a bounded cache keyed by slot and the
quantized query embedding, evicted oldest-access first.

The index persists to a single JSON file and is rehydrated from it on
first use. A missing or unreadable file falls back to the built-in default
catalog instead of failing.
"""

import itertools
import json
import logging
import os
import threading
import time
from typing import Dict, List, NamedTuple, Optional, Tuple

import faiss
import numpy as np

from .catalog import DEFAULT_CATALOG, ItemMeta, text_embedding
from .config import SuggestionConfig
from .features import FeatureExtractor, PixelFeatureExtractor, l2_normalize
from .models import CandidateRef
from .templates import load_reference_image

logger = logging.getLogger(__name__)

# Decimal places kept when quantizing query embeddings for the cache key
CACHE_KEY_DECIMALS = 3


class _IndexState(NamedTuple):
    updated_at: float
    items: Dict[str, List[CandidateRef]]
    indexes: Dict[str, faiss.Index]


class _CacheEntry:
    __slots__ = ("tick", "results")

    def __init__(self, tick: int, results: List[CandidateRef]):
        self.tick = tick
        self.results = results


def _build_faiss(entries: List[CandidateRef], dim: int) -> faiss.Index:
    index = faiss.IndexFlatIP(dim)
    if entries:
        matrix = np.vstack([np.asarray(e.embedding, dtype=np.float32)
                            for e in entries])
        index.add(np.ascontiguousarray(matrix, dtype=np.float32))
    return index


class ItemIndex:
    """
    Item index service.

    Lifecycle: ``build`` replaces the index from a catalog and persists it,
    ``load`` rehydrates from disk, ``query`` retrieves, ``invalidate``
    drops the query cache. The first ``query`` on a fresh instance loads
    the persisted index or falls back to the default catalog.
    """

    def __init__(self,
                 config: SuggestionConfig,
                 extractor: Optional[FeatureExtractor] = None,
                 index_path: Optional[str] = None):
        self.config = config
        self.extractor = extractor or PixelFeatureExtractor()
        self.dim = self.extractor.dim
        self.index_path = index_path or config.index_path

        self._state: Optional[_IndexState] = None
        self._cache: Dict[Tuple, _CacheEntry] = {}
        self._clock = itertools.count()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Build / persistence
    # ------------------------------------------------------------------

    @property
    def updated_at(self) -> Optional[float]:
        return self._state.updated_at if self._state else None

    @property
    def items(self) -> Dict[str, List[CandidateRef]]:
        self.ensure_loaded()
        return self._state.items

    def _embed_meta(self, meta: ItemMeta) -> np.ndarray:
        if meta.embedding:
            vector = l2_normalize(meta.embedding)
            if len(vector) == self.dim:
                return vector
            logger.warning(
                f"Item {meta.id}: embedding length {len(vector)} != {self.dim}, "
                f"using text embedding"
            )
        elif meta.thumbnail:
            image = load_reference_image(meta.thumbnail)
            if image is not None:
                return l2_normalize(self.extractor.embed(image))
        return text_embedding(meta.label or str(meta.id), self.dim)

    def _convert(self, meta: ItemMeta, slot: str) -> CandidateRef:
        return CandidateRef(
            item_id=meta.id,
            slot=slot,
            label=meta.label,
            embedding=self._embed_meta(meta).tolist(),
            set_id=meta.set_id,
            palette=list(meta.palette),
            thumbnail=meta.thumbnail,
        )

    def _install(self, items: Dict[str, List[CandidateRef]],
                 updated_at: float) -> None:
        indexes = {slot: _build_faiss(entries, self.dim)
                   for slot, entries in items.items()}
        with self._lock:
            self._state = _IndexState(updated_at, items, indexes)
            self._cache.clear()

    def _embed_catalog(self, catalog: Dict[str, List[ItemMeta]]
                       ) -> Dict[str, List[CandidateRef]]:
        return {slot: [self._convert(meta, slot) for meta in metas or []]
                for slot, metas in catalog.items()}

    def build(self, catalog: Dict[str, List[ItemMeta]]) -> "ItemIndex":
        """
        Replace the index with embeddings of ``catalog`` and persist it.

        Args:
            catalog: Mapping of slot → catalog entries.

        Returns:
            self, for chaining.
        """
        items = self._embed_catalog(catalog)
        self._install(items, time.time())
        total = sum(len(v) for v in items.values())
        logger.info(f"Built item index: {total} items across {len(items)} slots, "
                    f"{self.dim}d embeddings")
        self.persist()
        return self

    def persist(self) -> bool:
        """Write the index to ``index_path``. I/O failures are logged only."""
        if self._state is None:
            return False
        payload = {
            "updatedAt": self._state.updated_at,
            "dim": self.dim,
            "items": {slot: [e.to_dict() for e in entries]
                      for slot, entries in self._state.items.items()},
        }
        try:
            directory = os.path.dirname(self.index_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = self.index_path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, self.index_path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to persist item index to {self.index_path}: {e}")
            return False

    def load(self) -> bool:
        """
        Rehydrate from ``index_path``.

        Returns:
            True when a valid index was loaded, False if the file is
            missing, unreadable, or built for another embedding length.
        """
        if not os.path.exists(self.index_path):
            return False
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                payload = json.load(f)

            items = {}
            for slot, entries in payload["items"].items():
                refs = [CandidateRef.from_dict(e) for e in entries]
                for ref in refs:
                    ref.embedding = l2_normalize(ref.embedding).tolist()
                    if len(ref.embedding) != self.dim:
                        raise ValueError(
                            f"item {ref.item_id} has {len(ref.embedding)}d "
                            f"embedding, expected {self.dim}d"
                        )
                items[slot] = refs
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to load item index from {self.index_path}: {e}")
            return False

        self._install(items, float(payload.get("updatedAt") or time.time()))
        logger.info(f"Loaded item index from {self.index_path}")
        return True

    def ensure_loaded(self) -> None:
        if self._state is not None:
            return
        if not self.load():
            # Held in memory only; the file on disk is left for a later load
            logger.warning("No usable persisted item index, using default catalog")
            self._install(self._embed_catalog(DEFAULT_CATALOG), time.time())

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def _cache_key(self, slot: str, query: np.ndarray) -> Tuple:
        # +0.0 folds -0.0 into 0.0 so both quantize to the same key
        quantized = np.round(query.astype(np.float64), CACHE_KEY_DECIMALS) + 0.0
        return (slot, tuple(quantized.tolist()))

    def _evict(self) -> None:
        overflow = len(self._cache) - self.config.cache_size
        if overflow <= 0:
            return
        oldest = sorted(self._cache.items(), key=lambda kv: kv[1].tick)
        for key, _ in oldest[:overflow]:
            del self._cache[key]

    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    def query(self, slot: str, embedding, k: int) -> List[CandidateRef]:
        """
        Top-``k`` catalog entries of ``slot`` by cosine similarity.

        Ties keep catalog order. The query vector is L2-normalized first; a
        zero vector scores 0 against everything.

        Raises:
            ValueError: If the embedding length doesn't match the index.
        """
        self.ensure_loaded()
        state = self._state

        query = l2_normalize(embedding)
        if len(query) != self.dim:
            raise ValueError(
                f"Query dimension {len(query)} doesn't match "
                f"index dimension {self.dim}"
            )

        entries = state.items.get(slot) or []
        if not entries or k <= 0:
            return []

        key = self._cache_key(slot, query)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                cached.tick = next(self._clock)
                return cached.results[:k]

        scores, ids = state.indexes[slot].search(query.reshape(1, -1), len(entries))
        ranked = sorted(
            ((float(s), int(i)) for s, i in zip(scores[0], ids[0]) if i >= 0),
            key=lambda pair: (-pair[0], pair[1]),
        )
        results = [entries[i] for _, i in ranked]

        with self._lock:
            # Skip the insert if a rebuild replaced the state mid-query
            if self._state is state:
                self._cache[key] = _CacheEntry(next(self._clock), results)
                self._evict()

        logger.debug(f"Index query {slot}: {len(results)} ranked, returning {min(k, len(results))}")
        return results[:k]
