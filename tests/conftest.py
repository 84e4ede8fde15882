"""Shared test fixtures for visual match tests."""

import json

import cv2
import httpx
import numpy as np
import pytest

from visual_match.catalog import CatalogStore
from visual_match.extractors import StatisticalExtractor
from visual_match.preprocessing import encode_data_url


def encode_image(image_rgb, ext=".png"):
    """Encode an RGB array to image file bytes."""
    ok, buffer = cv2.imencode(ext, cv2.cvtColor(image_rgb, cv2.COLOR_RGB2BGR))
    assert ok
    return buffer.tobytes()


IMAGE_SIZE = 200
WHITE = (255, 255, 255)


def blank_canvas(colour=WHITE, size=IMAGE_SIZE):
    return np.full((size, size, 3), colour, dtype=np.uint8)


@pytest.fixture
def red_square_image():
    img = blank_canvas()
    cv2.rectangle(img, (40, 40), (159, 159), (200, 30, 30), thickness=-1)
    return img


@pytest.fixture
def blue_circle_image():
    img = blank_canvas()
    cv2.circle(img, (100, 100), 60, (30, 30, 200), thickness=-1)
    return img


@pytest.fixture
def green_rectangle_image():
    """Tall product-like shape, distinct from the square by aspect ratio."""
    img = blank_canvas()
    cv2.rectangle(img, (60, 30), (139, 169), (30, 180, 30), thickness=-1)
    return img


@pytest.fixture
def textured_image():
    """Checkerboard of 20px cells, dark on light grey."""
    rows, cols = np.indices((IMAGE_SIZE, IMAGE_SIZE)) // 20
    dark = ((rows + cols) % 2 == 0)[..., None]
    return np.where(dark, 50, 200).astype(np.uint8).repeat(3, axis=2)


@pytest.fixture
def noise_image():
    """Seeded uniform noise over the full 0-255 range."""
    rng = np.random.default_rng(42)
    return rng.integers(0, 256, (IMAGE_SIZE, IMAGE_SIZE, 3), dtype=np.uint8)


@pytest.fixture
def red_png(red_square_image):
    return encode_image(red_square_image)


@pytest.fixture
def blue_png(blue_circle_image):
    return encode_image(blue_circle_image)


@pytest.fixture
def green_png(green_rectangle_image):
    return encode_image(green_rectangle_image)


@pytest.fixture
def image_server(red_png, blue_png):
    """
    httpx client backed by a mock transport.

    Serves /red.png and /blue.png, 404 for anything else and a connection
    error for the host "down.example".
    """
    routes = {"/red.png": red_png, "/blue.png": blue_png}

    def handler(request):
        if request.url.host == "down.example":
            raise httpx.ConnectError("connection refused", request=request)
        body = routes.get(request.url.path)
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body, headers={"content-type": "image/png"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


@pytest.fixture
def extractor(image_server):
    return StatisticalExtractor(http_client=image_server)


@pytest.fixture
def catalog_paths(tmp_path):
    return str(tmp_path / "products.json"), str(tmp_path / "embeddings.json")


@pytest.fixture
def store(catalog_paths):
    return CatalogStore(*catalog_paths)


@pytest.fixture
def seeded_store(catalog_paths, red_png, blue_png, green_png):
    """Catalog of three items with inline images and no side-store."""
    catalog_path, embeddings_path = catalog_paths
    records = [
        {"id": 1, "name": "Red Square", "category": "Shapes", "price": 10,
         "image": encode_data_url(red_png), "addedAt": "2024-01-01T00:00:00+00:00"},
        {"id": 2, "name": "Blue Circle", "category": "Shapes", "price": 12.5,
         "image": encode_data_url(blue_png)},
        {"id": 3, "name": "Green Rectangle", "category": "Shapes", "price": 8,
         "image_url": encode_data_url(green_png)},
    ]
    with open(catalog_path, "w", encoding="utf-8") as f:
        json.dump(records, f)
    return CatalogStore(catalog_path, embeddings_path)
