"""Tests for catalog loading, the embedding side-store and catalog mutation."""

import json
import threading

import numpy as np
import pytest

from visual_match import catalog as catalog_module
from visual_match.catalog import CatalogStore, parse_embeddings, serialize_embeddings
from visual_match.errors import CatalogLoadError, CatalogWriteError, InvalidItemError
from visual_match.models import CatalogItem, ItemDraft


def write_json(path, payload):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f)


def read_json(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def draft(name="Lamp", image="https://example.com/lamp.png", **kwargs):
    return ItemDraft(name=name, image=image, **kwargs)


class TestLoad:
    """Tests for reading the catalog and side-store."""

    def test_missing_catalog_raises(self, store):
        with pytest.raises(CatalogLoadError):
            store.load()

    def test_invalid_json_raises(self, store, catalog_paths):
        with open(catalog_paths[0], "w") as f:
            f.write("{not json")
        with pytest.raises(CatalogLoadError):
            store.load()

    def test_non_array_catalog_raises(self, store, catalog_paths):
        write_json(catalog_paths[0], {"id": 1})
        with pytest.raises(CatalogLoadError):
            store.load()

    def test_invalid_record_raises(self, store, catalog_paths):
        write_json(catalog_paths[0], [{"id": 1, "name": "No image"}])
        with pytest.raises(CatalogLoadError):
            store.load()

    def test_missing_side_store_degrades_to_empty(self, seeded_store, caplog):
        snapshot = seeded_store.load()
        assert [item.id for item in snapshot.items] == [1, 2, 3]
        assert snapshot.embeddings == {}
        assert snapshot.missing_ids() == [1, 2, 3]
        assert "on the fly" in caplog.text

    def test_corrupt_side_store_degrades_to_empty(self, seeded_store, catalog_paths):
        with open(catalog_paths[1], "w") as f:
            f.write("[[[")
        assert seeded_store.load().embeddings == {}

    def test_null_and_missing_entries(self, seeded_store, catalog_paths):
        write_json(catalog_paths[1], {"1": [1.0, 0.0], "2": None})
        snapshot = seeded_store.load()
        assert np.array_equal(snapshot.embeddings[1], [1.0, 0.0])
        assert snapshot.embeddings[2] is None
        assert snapshot.missing_ids() == [3]
        entries = dict((item.id, emb) for item, emb in snapshot.entries())
        assert entries[2] is None and entries[3] is None

    def test_loaded_embeddings_are_read_only(self, seeded_store, catalog_paths):
        write_json(catalog_paths[1], {"1": [1.0, 0.0]})
        vector = seeded_store.load().embeddings[1]
        with pytest.raises(ValueError):
            vector[0] = 5.0

    def test_legacy_image_url_field(self, seeded_store):
        item = seeded_store.load().items[2]
        assert item.image.startswith("data:image/png;base64,")

    def test_record_defaults(self, store, catalog_paths):
        write_json(catalog_paths[0], [{"id": 4, "image": "https://example.com/x.png"}])
        item = store.get_items()[0]
        assert item.name == "Product 4"
        assert item.category == "Uncategorized"
        assert item.price == 0.0


class TestSideStoreFormat:
    """Tests for the side-store document format."""

    def test_keys_are_text(self):
        document = serialize_embeddings({2: np.array([0.5, 1.5]), 1: None})
        assert document == {"1": None, "2": [0.5, 1.5]}

    def test_malformed_entries(self, caplog):
        parsed = parse_embeddings({"abc": [1.0], "5": [[1.0], [2.0]], "6": [0.25]})
        assert set(parsed) == {5, 6}
        assert parsed[5] is None
        assert np.array_equal(parsed[6], [0.25])

    def test_non_finite_entries_treated_as_absent(self, caplog):
        parsed = parse_embeddings({"1": [float("nan"), 1.0],
                                   "2": [float("inf"), 0.0],
                                   "3": [0.5, 0.5]})
        assert parsed[1] is None
        assert parsed[2] is None
        assert np.array_equal(parsed[3], [0.5, 0.5])
        assert "non-finite" in caplog.text

    def test_nan_in_side_store_file_excluded(self, seeded_store, catalog_paths):
        with open(catalog_paths[1], "w") as f:
            f.write('{"1": [NaN, 0.0], "2": [Infinity, 1.0]}')
        snapshot = seeded_store.load()
        assert snapshot.embeddings[1] is None
        assert snapshot.embeddings[2] is None
        assert snapshot.missing_ids() == [3]

    def test_rejects_non_object(self):
        with pytest.raises(ValueError):
            parse_embeddings([1, 2, 3])


class TestAppend:
    """Tests for catalog mutation."""

    def test_first_id_is_one_then_two(self, store):
        first = store.append(draft("First"), np.array([1.0, 0.0]))
        second = store.append(draft("Second"), np.array([0.0, 1.0]))
        assert first.id == 1
        assert second.id == 2

    def test_id_is_max_plus_one(self, store, catalog_paths):
        write_json(catalog_paths[0], [
            {"id": 3, "name": "a", "image": "https://example.com/a.png"},
            {"id": 10, "name": "b", "image": "https://example.com/b.png"},
        ])
        assert store.append(draft(), None).id == 11

    def test_persists_item_and_embedding(self, store, catalog_paths):
        item = store.append(draft("Chair", category="Furniture", price="49.5"),
                            np.array([0.25, 0.75]))
        records = read_json(catalog_paths[0])
        assert records == [item.to_dict()]
        assert records[0]["category"] == "Furniture"
        assert records[0]["price"] == 49.5
        assert "addedAt" in records[0]
        assert read_json(catalog_paths[1]) == {"1": [0.25, 0.75]}

    def test_keeps_existing_embeddings(self, store, catalog_paths):
        store.append(draft("One"), np.array([1.0, 2.0]))
        store.append(draft("Two"), None)
        assert read_json(catalog_paths[1]) == {"1": [1.0, 2.0], "2": None}

    def test_existing_records_written_back_unchanged(self, store, catalog_paths):
        existing = [
            {"id": 1, "image_url": "https://example.com/a.png", "price": "12.50",
             "sku": "A-1", "tags": ["lamp", "desk"]},
            {"id": 2, "name": "Chair", "image": "https://example.com/b.png",
             "price": "", "category": ""},
        ]
        write_json(catalog_paths[0], existing)

        item = store.append(draft("Stool"), np.array([1.0, 0.0]))

        records = read_json(catalog_paths[0])
        assert records[:2] == existing
        assert records[2] == item.to_dict()
        assert item.id == 3

    def test_corrupt_side_store_not_overwritten(self, store, catalog_paths):
        write_json(catalog_paths[0], [
            {"id": 1, "name": "a", "image": "https://example.com/a.png"},
        ])
        with open(catalog_paths[1], "w") as f:
            f.write('{"1": [1.0, 0.0],')

        with pytest.raises(CatalogWriteError) as exc_info:
            store.append(draft(), np.array([0.0, 1.0]))
        assert not exc_info.value.inconsistent

        with open(catalog_paths[1]) as f:
            assert f.read() == '{"1": [1.0, 0.0],'
        assert [r["id"] for r in read_json(catalog_paths[0])] == [1]

    def test_missing_side_store_starts_empty(self, store, catalog_paths):
        write_json(catalog_paths[0], [
            {"id": 1, "name": "a", "image": "https://example.com/a.png"},
        ])
        store.append(draft(), np.array([0.0, 1.0]))
        assert read_json(catalog_paths[1]) == {"2": [0.0, 1.0]}

    def test_round_trips_through_load(self, store):
        added = store.append(draft("Desk"), np.array([0.1, 0.2, 0.3]))
        snapshot = store.load()
        assert snapshot.items == [added]
        assert np.allclose(snapshot.embeddings[added.id], [0.1, 0.2, 0.3])

    def test_concurrent_appends_get_unique_ids(self, store):
        ids = []
        lock = threading.Lock()

        def worker(n):
            item = store.append(draft(f"Item {n}"), np.array([float(n), 1.0]))
            with lock:
                ids.append(item.id)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(ids) == list(range(1, 11))
        assert len(store.load().items) == 10

    def test_side_store_failure_reports_inconsistency(self, store, monkeypatch):
        real_write = catalog_module._write_json_atomic
        calls = []

        def flaky_write(path, payload):
            calls.append(path)
            if path == store.embeddings_path:
                raise OSError("disk full")
            real_write(path, payload)

        monkeypatch.setattr(catalog_module, "_write_json_atomic", flaky_write)
        with pytest.raises(CatalogWriteError) as exc_info:
            store.append(draft(), np.array([1.0]))
        assert exc_info.value.inconsistent
        assert calls == [store.catalog_path, store.embeddings_path]

    def test_catalog_failure_is_consistent(self, store, monkeypatch):
        def failing_write(path, payload):
            raise OSError("read-only filesystem")

        monkeypatch.setattr(catalog_module, "_write_json_atomic", failing_write)
        with pytest.raises(CatalogWriteError) as exc_info:
            store.append(draft(), np.array([1.0]))
        assert not exc_info.value.inconsistent


class TestItemDraft:
    """Tests for item draft validation."""

    def test_name_required(self):
        with pytest.raises(InvalidItemError):
            ItemDraft(name="", image="https://example.com/x.png")
        with pytest.raises(InvalidItemError):
            ItemDraft(name="   ", image="https://example.com/x.png")

    def test_negative_price_rejected(self):
        with pytest.raises(InvalidItemError):
            draft(price=-1)

    def test_defaults(self):
        d = draft(category=None, price=None)
        assert d.category == "Uncategorized"
        assert d.price == 0.0

    def test_catalog_item_rejects_bad_id(self):
        with pytest.raises(InvalidItemError):
            CatalogItem.from_dict({"id": 0, "image": "x"})
        with pytest.raises(InvalidItemError):
            CatalogItem.from_dict({"id": True, "image": "x"})
