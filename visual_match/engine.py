"""
Visual product match engine.

Orchestrates the match pipeline:
    1. Normalize the query (bytes, http(s) URL or data URL)
    2. Extract the query embedding
    3. Load a catalog snapshot; embed never-attempted items on the fly
    4. Score, filter and rank against the snapshot

The whole extract-then-rank pipeline runs under a timeout. Failures that
concern one catalog item only exclude that item; failures of the query
image or the catalog abort the request.
"""

import os
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .catalog import CatalogSnapshot, CatalogStore
from .errors import MatchTimeoutError, VisualMatchError
from .extractors import EmbeddingExtractor, build_extractor
from .models import CatalogItem, ItemDraft, MatchCandidate
from .preprocessing import ImageSource, encode_data_url, resolve_image_source
from .scoring import rank_matches

logger = logging.getLogger(__name__)

MATCH_TIMEOUT = float(os.environ.get("MATCH_TIMEOUT_SECONDS", "30"))
ENGINE_WORKERS = int(os.environ.get("MATCH_WORKERS", "4"))

# Number of top matches handed to the history sink
HISTORY_TOP_MATCHES = 5

HistorySink = Callable[[Any, Optional[str], List[Dict[str, Any]]], None]


@dataclass(frozen=True)
class BestEffortResult:
    """Outcome of an operation whose failure must not fail the request."""

    ok: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class MatchResult:
    matches: List[MatchCandidate]
    query_image: Optional[str]
    history: Optional[BestEffortResult] = None

    @property
    def total(self) -> int:
        return len(self.matches)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matches": [m.to_dict() for m in self.matches],
            "queryImage": self.query_image,
            "totalMatches": self.total,
        }


class MatchEngine:
    """
    Matches query images against a catalog.

    The extractor and store are injected; the engine owns only its worker
    pool. Use one engine per process so catalog writes share one store.
    """

    def __init__(self,
                 extractor: EmbeddingExtractor,
                 store: CatalogStore,
                 timeout: float = MATCH_TIMEOUT,
                 history_sink: Optional[HistorySink] = None,
                 compute_missing: bool = True,
                 max_workers: int = ENGINE_WORKERS):
        """
        Args:
            extractor: Embedding strategy used for queries and catalog items.
            store: Catalog and embedding side-store.
            timeout: Bound in seconds on each extract-then-rank call.
            history_sink: Optional callable(user, query_image, top_matches)
                that persists search history. Failures are logged only.
            compute_missing: Embed items absent from the side-store on the
                fly. Items stored as null are never recomputed here.
            max_workers: Size of the pipeline thread pool.
        """
        self.extractor = extractor
        self.store = store
        self.timeout = timeout
        self.history_sink = history_sink
        self.compute_missing = compute_missing
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="visual-match"
        )

    def _run_with_timeout(self, fn, *args, timeout: Optional[float] = None):
        timeout = self.timeout if timeout is None else timeout
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            # An in-flight fetch or inference is abandoned, not interrupted
            future.cancel()
            logger.warning(f"{fn.__name__} exceeded {timeout}s")
            raise MatchTimeoutError(
                f"Image matching timed out after {timeout}s, please retry"
            ) from e

    def resolve_entries(self, snapshot: CatalogSnapshot):
        """
        Pair every catalog item with a usable embedding or None.

        Never-attempted items are embedded from their image reference when
        compute_missing is set; any failure leaves that item as None.
        """
        entries = []
        computed = failed = 0
        for item, embedding in snapshot.entries():
            if embedding is None and self.compute_missing and item.id not in snapshot.embeddings:
                try:
                    embedding, _ = self.extractor.extract_from_source(item.image)
                    computed += 1
                except VisualMatchError as e:
                    logger.warning(f"Failed to embed product {item.id}: {e}")
                    failed += 1
            entries.append((item, embedding))

        if computed or failed:
            logger.info(f"Embedded {computed} items on the fly ({failed} failed)")
        return entries

    def _match_pipeline(self, image_bytes, url, top_n, min_score):
        if url is not None:
            query = self.extractor.extract_from_url(url)
        else:
            query = self.extractor.extract(image_bytes)

        snapshot = self.store.load()
        matches = rank_matches(query, self.resolve_entries(snapshot), top_n, min_score)

        logger.info(
            f"Match complete: {len(snapshot.items)} catalog items -> "
            f"{len(matches)} matches"
        )
        return matches

    def match(self,
              source: ImageSource,
              top_n: Optional[int] = None,
              min_score: Optional[float] = None,
              user: Any = None,
              timeout: Optional[float] = None) -> MatchResult:
        """
        Find catalog items visually similar to the query image.

        Args:
            source: Raw image bytes, an http(s) URL or a data URL.
            top_n: Maximum number of matches (default 50).
            min_score: Minimum percentage score (default 0).
            user: Optional caller identity; enables history recording.
            timeout: Override for the engine's timeout.

        Raises:
            InputError: Bad query image or source.
            FetchError: Query URL could not be fetched.
            CatalogLoadError: Catalog unreadable.
            MatchTimeoutError: Pipeline exceeded its time bound.
        """
        image_bytes, url = resolve_image_source(source)
        matches = self._run_with_timeout(
            self._match_pipeline, image_bytes, url, top_n, min_score,
            timeout=timeout,
        )

        if url is not None:
            query_image = url
        elif isinstance(source, str):
            query_image = source.strip()
        else:
            query_image = encode_data_url(image_bytes)

        history = self.record_history(user, query_image, matches)
        return MatchResult(matches=matches, query_image=query_image, history=history)

    def record_history(self,
                       user: Any,
                       query_image: Optional[str],
                       matches: List[MatchCandidate]) -> Optional[BestEffortResult]:
        """
        Hand the top matches to the history sink, best effort.

        Returns None when there is nothing to record (no sink or no user).
        """
        if self.history_sink is None or user is None:
            return None

        top = [m.to_dict() for m in matches[:HISTORY_TOP_MATCHES]]
        try:
            self.history_sink(user, query_image, top)
        except Exception as e:
            logger.error(f"Failed to save search history: {e}")
            return BestEffortResult(ok=False, error=str(e))
        return BestEffortResult(ok=True)

    def _add_pipeline(self, draft, image_bytes, url):
        if url is not None:
            embedding = self.extractor.extract_from_url(url)
        else:
            embedding = self.extractor.extract(image_bytes)
        return self.store.append(draft, embedding)

    def add_product(self,
                    source: ImageSource,
                    name: str,
                    category: Optional[str] = None,
                    price: Any = None,
                    timeout: Optional[float] = None) -> CatalogItem:
        """
        Embed an image and append it to the catalog as a new product.

        Uploaded bytes are stored inline as a data URL; URLs are stored as
        given.
        """
        image_bytes, url = resolve_image_source(source)
        if url is not None:
            image_ref = url
        elif isinstance(source, str):
            image_ref = source.strip()
        else:
            image_ref = encode_data_url(image_bytes)

        draft = ItemDraft(name=name, image=image_ref, category=category, price=price)
        return self._run_with_timeout(
            self._add_pipeline, draft, image_bytes, url, timeout=timeout,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def create_engine(strategy: Optional[str] = None,
                  catalog_path: Optional[str] = None,
                  embeddings_path: Optional[str] = None,
                  **kwargs) -> MatchEngine:
    """Build an engine from environment defaults plus explicit overrides."""
    store_kwargs = {}
    if catalog_path is not None:
        store_kwargs["catalog_path"] = catalog_path
    if embeddings_path is not None:
        store_kwargs["embeddings_path"] = embeddings_path

    return MatchEngine(build_extractor(strategy), CatalogStore(**store_kwargs), **kwargs)
