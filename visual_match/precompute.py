"""
Batch embedding precomputation for the catalog.

Embeds every catalog item from its image reference and writes the
embedding side-store, so match requests never have to embed catalog
items on the fly. Items whose image cannot be fetched or decoded are
stored as null and excluded from ranking until recomputed.

Run with:
    python -m visual_match.precompute --catalog data/products.json \
        --embeddings data/embeddings.json --strategy statistical
"""

import argparse
import logging
import time
from typing import Optional

from .catalog import CATALOG_PATH, EMBEDDINGS_PATH, CatalogStore
from .errors import VisualMatchError
from .extractors import EMBEDDING_STRATEGY, EmbeddingExtractor, build_extractor

logger = logging.getLogger(__name__)

# Progress is logged every this many items
PROGRESS_EVERY = 50


def precompute_embeddings(store: CatalogStore,
                          extractor: EmbeddingExtractor,
                          delay: float = 0.0,
                          only_missing: bool = False) -> dict:
    """
    Compute and persist embeddings for the catalog.

    Args:
        store: Catalog to read items from and write embeddings to.
        extractor: Embedding strategy; must match the one used at query time.
        delay: Seconds to sleep between items (rate-limits image hosts).
        only_missing: Keep existing vectors and only embed items that have
            none (missing or null).

    Returns:
        Dict with 'success', 'processed', 'failed', 'dimensions' counts.
    """
    snapshot = store.load()
    embeddings = dict(snapshot.embeddings) if only_missing else {}
    total = len(snapshot.items)

    logger.info(f"Precomputing embeddings for {total} items ({extractor.name} strategy)")

    processed = 0
    failed = 0
    for i, item in enumerate(snapshot.items):
        if only_missing and embeddings.get(item.id) is not None:
            continue

        try:
            embeddings[item.id], _ = extractor.extract_from_source(item.image)
            processed += 1
        except VisualMatchError as e:
            logger.warning(f"Failed to embed {item.name} (ID: {item.id}): {e}")
            embeddings[item.id] = None
            failed += 1

        if (i + 1) % PROGRESS_EVERY == 0:
            logger.info(f"Processed {i + 1}/{total} items")

        if delay > 0:
            time.sleep(delay)

    store.save_embeddings(embeddings)

    logger.info(
        f"Precompute complete: {processed} embedded, {failed} failed, "
        f"{extractor.dimension}d vectors"
    )

    return {
        "success": failed == 0,
        "processed": processed,
        "failed": failed,
        "total": total,
        "dimensions": extractor.dimension,
        "embeddings_path": store.embeddings_path,
    }


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Precompute catalog image embeddings")
    parser.add_argument("--catalog", default=CATALOG_PATH)
    parser.add_argument("--embeddings", default=EMBEDDINGS_PATH)
    parser.add_argument("--strategy", default=EMBEDDING_STRATEGY,
                        choices=["statistical", "clip"])
    parser.add_argument("--delay", type=float, default=0.1,
                        help="Seconds to wait between items")
    parser.add_argument("--only-missing", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    store = CatalogStore(args.catalog, args.embeddings)
    try:
        with build_extractor(args.strategy) as extractor:
            summary = precompute_embeddings(store, extractor, args.delay, args.only_missing)
    except VisualMatchError as e:
        logger.error(f"Precompute failed: {e}")
        return 1

    logger.info(f"Success: {summary['processed']}/{summary['total']}, "
                f"failed: {summary['failed']}/{summary['total']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
