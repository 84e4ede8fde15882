"""
Record types shared across the matching pipeline.

Catalog records arrive as loosely-shaped JSON objects; they are converted
into explicit dataclasses at the storage boundary so the rest of the code
never has to guess which keys exist.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np

from .errors import InvalidItemError

DEFAULT_CATEGORY = "Uncategorized"


def as_embedding(values: Sequence[float]) -> np.ndarray:
    """
    Freeze a sequence of numbers into an embedding vector.

    Embeddings are 1-D float32 arrays marked read-only, so a vector handed
    out by the store or an extractor cannot be modified in place.
    """
    vector = np.array(values, dtype=np.float32)
    if vector.ndim != 1:
        raise ValueError(f"Embedding must be 1-dimensional, got shape {vector.shape}")
    vector.setflags(write=False)
    return vector


def _parse_price(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise InvalidItemError(f"Invalid price: {value!r}")
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise InvalidItemError(f"Invalid price: {value!r}")
    if math.isnan(price) or price < 0:
        raise InvalidItemError(f"Price must be a non-negative number, got {value!r}")
    return price


@dataclass(frozen=True)
class CatalogItem:
    """A product that query images are matched against."""

    id: int
    name: str
    image: str
    category: str = DEFAULT_CATEGORY
    price: float = 0.0
    added_at: Optional[str] = None

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "CatalogItem":
        """
        Build an item from a catalog JSON record.

        Older seed records carry the picture under ``image_url`` instead of
        ``image``; both are accepted.
        """
        if not isinstance(record, dict):
            raise InvalidItemError(f"Catalog record must be an object, got {type(record).__name__}")

        item_id = record.get("id")
        if isinstance(item_id, bool) or not isinstance(item_id, int) or item_id <= 0:
            raise InvalidItemError(f"Catalog record has invalid id: {item_id!r}")

        image = record.get("image") or record.get("image_url")
        if not image:
            raise InvalidItemError(f"Catalog item {item_id} has no image reference")

        return cls(
            id=item_id,
            name=str(record.get("name") or f"Product {item_id}"),
            image=str(image),
            category=str(record.get("category") or DEFAULT_CATEGORY),
            price=_parse_price(record.get("price")),
            added_at=record.get("addedAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        record = {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "price": self.price,
            "image": self.image,
        }
        if self.added_at is not None:
            record["addedAt"] = self.added_at
        return record


@dataclass(frozen=True)
class ItemDraft:
    """Fields supplied by a caller adding a new catalog item."""

    name: str
    image: str
    category: str = DEFAULT_CATEGORY
    price: float = 0.0

    def __post_init__(self):
        if not self.name or not str(self.name).strip():
            raise InvalidItemError("Product name is required")
        if not self.image:
            raise InvalidItemError("Product image is required")
        # frozen: normalize through object.__setattr__
        object.__setattr__(self, "category", self.category or DEFAULT_CATEGORY)
        object.__setattr__(self, "price", _parse_price(self.price))


@dataclass(frozen=True)
class MatchCandidate:
    """A catalog item paired with its similarity percentage."""

    item: CatalogItem
    score: float

    def to_dict(self) -> Dict[str, Any]:
        """Response shape for callers; never includes the embedding."""
        return {
            "id": self.item.id,
            "name": self.item.name,
            "category": self.item.category,
            "price": self.item.price,
            "image": self.item.image,
            "score": self.score,
        }
