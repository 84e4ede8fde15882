"""
Catalog and embedding side-store persistence.

Two JSON documents live side by side:
    products.json   — ordered array of catalog item records
    embeddings.json — {"<item id>": [floats] | null}

The catalog is mandatory: if it cannot be read the service cannot match
anything and CatalogLoadError is raised. The embedding side-store is an
optimisation: a missing or corrupt file degrades to an empty map and items
are embedded on demand by the engine.

In the side-store, ``null`` means embedding failed for that item and it is
excluded from ranking; a missing key means it was never attempted.
"""

import os
import json
import logging
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np

from .errors import CatalogLoadError, CatalogWriteError, InvalidItemError
from .models import CatalogItem, ItemDraft, as_embedding

logger = logging.getLogger(__name__)

CATALOG_PATH = os.environ.get("CATALOG_PATH", os.path.join("data", "products.json"))
EMBEDDINGS_PATH = os.environ.get("EMBEDDINGS_PATH", os.path.join("data", "embeddings.json"))


@dataclass(frozen=True)
class CatalogSnapshot:
    """Catalog items and their embeddings as read at one point in time."""

    items: List[CatalogItem]
    embeddings: Dict[int, Optional[np.ndarray]] = field(default_factory=dict)

    def entries(self):
        """(item, embedding) pairs; items without a stored key get None."""
        return [(item, self.embeddings.get(item.id)) for item in self.items]

    def missing_ids(self) -> List[int]:
        """Ids of items whose embedding was never attempted."""
        return [item.id for item in self.items if item.id not in self.embeddings]


def _write_json_atomic(path: str, payload) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def serialize_embeddings(embeddings: Dict[int, Optional[np.ndarray]]) -> Dict[str, Optional[list]]:
    """Side-store document: text keys, float lists or null."""
    return {
        str(item_id): (None if vector is None else [float(v) for v in vector])
        for item_id, vector in sorted(embeddings.items())
    }


def parse_embeddings(document) -> Dict[int, Optional[np.ndarray]]:
    """
    Parse a side-store document, dropping malformed entries.

    Raises:
        ValueError: If the document is not a JSON object.
    """
    if not isinstance(document, dict):
        raise ValueError("Embedding side-store must be a JSON object")

    embeddings = {}
    for key, value in document.items():
        try:
            item_id = int(key)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring side-store entry with non-integer key {key!r}")
            continue

        if value is None:
            embeddings[item_id] = None
            continue
        try:
            vector = as_embedding(value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Treating malformed embedding for item {item_id} as absent: {e}")
            embeddings[item_id] = None
            continue
        if not np.isfinite(vector).all():
            logger.warning(f"Treating non-finite embedding for item {item_id} as absent")
            embeddings[item_id] = None
            continue
        embeddings[item_id] = vector
    return embeddings


class CatalogStore:
    """
    File-backed catalog with an embedding side-store.

    Reads are lock-free snapshots. `append` serializes its
    read-compute-write sequence behind a per-store lock, so all writers
    must share one CatalogStore instance in one process.
    """

    def __init__(self,
                 catalog_path: str = CATALOG_PATH,
                 embeddings_path: str = EMBEDDINGS_PATH):
        self.catalog_path = catalog_path
        self.embeddings_path = embeddings_path
        self._write_lock = threading.Lock()

    def load_items(self, missing_ok: bool = False) -> List[CatalogItem]:
        """
        Read the catalog item list.

        Args:
            missing_ok: Treat a catalog file that does not exist yet as an
                empty catalog instead of an error.

        Raises:
            CatalogLoadError: If the file is missing, unreadable or malformed.
        """
        return self._parse_records(self._read_records(missing_ok))

    def _read_records(self, missing_ok: bool = False) -> list:
        """Raw catalog records exactly as stored."""
        if missing_ok and not os.path.exists(self.catalog_path):
            logger.info(f"No catalog at {self.catalog_path}, starting empty")
            return []

        try:
            with open(self.catalog_path, "r", encoding="utf-8") as f:
                records = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read catalog {self.catalog_path}: {e}")
            raise CatalogLoadError("Failed to load product database") from e

        if not isinstance(records, list):
            raise CatalogLoadError(
                f"Catalog {self.catalog_path} must contain a JSON array"
            )
        return records

    @staticmethod
    def _parse_records(records: list) -> List[CatalogItem]:
        try:
            return [CatalogItem.from_dict(record) for record in records]
        except InvalidItemError as e:
            raise CatalogLoadError(f"Invalid catalog record: {e}") from e

    def load_embeddings(self) -> Dict[int, Optional[np.ndarray]]:
        """Read the embedding side-store; degrades to {} on any failure."""
        if not os.path.exists(self.embeddings_path):
            logger.warning(
                f"Embeddings file {self.embeddings_path} not found. "
                "Items will be embedded on the fly (slower)."
            )
            return {}

        try:
            with open(self.embeddings_path, "r", encoding="utf-8") as f:
                return parse_embeddings(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(
                f"Could not read embeddings {self.embeddings_path}: {e}. "
                "Items will be embedded on the fly (slower)."
            )
            return {}

    def _load_embeddings_for_update(self) -> Dict[int, Optional[np.ndarray]]:
        """
        Read the side-store before rewriting it.

        Unlike `load_embeddings`, an unreadable file is an error here: the
        rewrite would otherwise replace every stored vector with nothing.
        """
        if not os.path.exists(self.embeddings_path):
            return {}

        try:
            with open(self.embeddings_path, "r", encoding="utf-8") as f:
                return parse_embeddings(json.load(f))
        except (OSError, ValueError) as e:
            logger.error(f"Refusing to rewrite unreadable embeddings {self.embeddings_path}: {e}")
            raise CatalogWriteError(
                f"Embeddings file {self.embeddings_path} is unreadable, not modified: {e}"
            ) from e

    def load(self) -> CatalogSnapshot:
        """Read items and embeddings together. No side effects."""
        items = self.load_items()
        embeddings = self.load_embeddings()
        logger.info(
            f"Loaded catalog: {len(items)} items, "
            f"{sum(v is not None for v in embeddings.values())} embeddings"
        )
        return CatalogSnapshot(items=items, embeddings=embeddings)

    def get_items(self) -> List[CatalogItem]:
        return self.load_items()

    def save_embeddings(self, embeddings: Dict[int, Optional[np.ndarray]]) -> None:
        """Rewrite the whole side-store."""
        with self._write_lock:
            try:
                _write_json_atomic(self.embeddings_path, serialize_embeddings(embeddings))
            except OSError as e:
                raise CatalogWriteError(f"Failed to write embeddings: {e}") from e
        logger.info(f"Saved {len(embeddings)} embeddings to {self.embeddings_path}")

    def append(self, draft: ItemDraft, embedding: Optional[np.ndarray]) -> CatalogItem:
        """
        Add a new item and its embedding.

        The id is one past the largest existing id (1 for an empty
        catalog). Both documents are rewritten, catalog first; existing
        catalog records are written back exactly as they were read.

        Raises:
            CatalogLoadError: If the current catalog cannot be read.
            CatalogWriteError: If the side-store exists but is unreadable
                (nothing is written), or if persisting fails. When the
                catalog was written but the side-store was not,
                ``inconsistent`` is set and an operator has to repair the
                files.
        """
        with self._write_lock:
            records = self._read_records(missing_ok=True)
            items = self._parse_records(records)
            embeddings = self._load_embeddings_for_update()

            new_id = max((item.id for item in items), default=0) + 1
            item = CatalogItem(
                id=new_id,
                name=draft.name,
                image=draft.image,
                category=draft.category,
                price=draft.price,
                added_at=datetime.now(timezone.utc).isoformat(),
            )
            embeddings[new_id] = None if embedding is None else as_embedding(embedding)

            try:
                _write_json_atomic(self.catalog_path, records + [item.to_dict()])
            except OSError as e:
                raise CatalogWriteError(f"Failed to write catalog: {e}") from e

            try:
                _write_json_atomic(self.embeddings_path, serialize_embeddings(embeddings))
            except OSError as e:
                logger.error(
                    f"Catalog written but embeddings were not for item {new_id}; "
                    "catalog and side-store are inconsistent, manual repair required"
                )
                raise CatalogWriteError(
                    f"Failed to write embeddings for item {new_id}: {e}",
                    inconsistent=True,
                ) from e

        logger.info(f"Added new product to catalog: {item.name} (ID: {new_id})")
        return item
