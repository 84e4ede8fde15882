"""
Embedding extractors: image bytes in, fixed-length vector out.

Two interchangeable strategies share one contract:
    StatisticalExtractor  — colour histogram + global image statistics
                            (128 values with default settings, no model)
    ClipExtractor         — CLIP image encoder via sentence-transformers
                            (512 values for clip-ViT-B-32)

Pick one per deployment (EMBEDDING_STRATEGY) and never mix vectors from
both in one catalog; their dimensions differ.

Both fetch remote images with httpx and raise FetchError on transport
failures or non-2xx responses.
"""

import io
import os
import logging
import threading
from typing import Callable, Optional, Tuple

import httpx
import numpy as np
from PIL import Image

from .errors import FetchError, ImageDecodeError, InvalidImageSourceError
from .histograms import HIST_BINS, HIST_CHANNELS, extract_color_histogram
from .image_statistics import AUX_DIM, extract_auxiliary_features
from .models import as_embedding
from .preprocessing import (
    ImageSource, decode_image, detect_image_format, resize_to_fill,
    resolve_image_source,
)

logger = logging.getLogger(__name__)

EMBEDDING_STRATEGY = os.environ.get("EMBEDDING_STRATEGY", "statistical")
IMAGE_SIZE = int(os.environ.get("EMBED_IMAGE_SIZE", "64"))
FETCH_TIMEOUT = float(os.environ.get("FETCH_TIMEOUT_SECONDS", "10"))
CLIP_MODEL_NAME = os.environ.get("CLIP_MODEL_NAME", "clip-ViT-B-32")

# Output dimension of the CLIP checkpoints sentence-transformers ships
CLIP_DIMENSIONS = {
    "clip-ViT-B-32": 512,
    "clip-ViT-B-16": 512,
    "clip-ViT-L-14": 768,
}


class EmbeddingExtractor:
    """
    Base class for embedding strategies.

    Subclasses implement `dimension` and `_embed`; the base class handles
    fetching, source normalization and freezing the output vector.
    """

    name = "base"

    def __init__(self,
                 http_client: Optional[httpx.Client] = None,
                 fetch_timeout: float = FETCH_TIMEOUT):
        """
        Args:
            http_client: Client used for URL fetches. When omitted the
                extractor creates (and owns) one.
            fetch_timeout: Per-request timeout in seconds.
        """
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.Client(
            timeout=httpx.Timeout(fetch_timeout),
            follow_redirects=True,
        )

    @property
    def dimension(self) -> int:
        raise NotImplementedError

    def _embed(self, image_bytes: bytes) -> np.ndarray:
        raise NotImplementedError

    def extract(self, image_bytes: bytes) -> np.ndarray:
        """
        Convert raw image bytes into an embedding.

        Raises:
            ImageDecodeError: If the bytes are not a decodable image.
        """
        vector = self._embed(bytes(image_bytes))
        return as_embedding(np.asarray(vector).reshape(-1))

    def fetch_image(self, url: str) -> bytes:
        """Download an image over HTTP(S)."""
        if not (url.startswith("http://") or url.startswith("https://")):
            raise InvalidImageSourceError(f"Not an HTTP(S) URL: {url}")

        try:
            response = self._http_client.get(url)
        except httpx.InvalidURL as e:
            # Not an HTTPError subclass
            raise InvalidImageSourceError(f"Malformed URL {url}: {e}") from e
        except httpx.HTTPError as e:
            raise FetchError(url, message=str(e)) from e

        if not response.is_success:
            raise FetchError(url, response.status_code, f"HTTP {response.status_code}")

        logger.debug(f"Fetched {len(response.content)} bytes from {url}")
        return response.content

    def extract_from_url(self, url: str) -> np.ndarray:
        """Fetch an image and embed it."""
        return self.extract(self.fetch_image(url))

    def extract_from_source(self, source: ImageSource) -> Tuple[np.ndarray, bytes]:
        """
        Embed raw bytes, an http(s) URL or a data URL.

        Returns:
            Tuple of (embedding, image_bytes) so callers can keep the bytes.
        """
        image_bytes, url = resolve_image_source(source)
        if url is not None:
            image_bytes = self.fetch_image(url)
        return self.extract(image_bytes), image_bytes

    def close(self) -> None:
        if self._owns_client:
            self._http_client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class StatisticalExtractor(EmbeddingExtractor):
    """
    Model-free embedding from colour and texture statistics.

    Layout (defaults):
        [0:96]    — 32-bin R, G, B histograms, each summing to 1.0
        [96:128]  — auxiliary statistics block, zero-padded
    """

    name = "statistical"

    def __init__(self,
                 image_size: int = IMAGE_SIZE,
                 bins: int = HIST_BINS,
                 aux_features: int = AUX_DIM,
                 **kwargs):
        super().__init__(**kwargs)
        self.image_size = image_size
        self.bins = bins
        self.aux_features = aux_features

    @property
    def dimension(self) -> int:
        return self.bins * HIST_CHANNELS + self.aux_features

    def _embed(self, image_bytes: bytes) -> np.ndarray:
        image = decode_image(image_bytes)
        resized = resize_to_fill(image, self.image_size, self.image_size)

        histogram = extract_color_histogram(resized, self.bins)
        auxiliary = extract_auxiliary_features(resized, self.aux_features)
        return np.concatenate([histogram, auxiliary])


def load_sentence_transformer(model_name: str, device: Optional[str] = None):
    """Load a CLIP checkpoint through sentence-transformers."""
    from sentence_transformers import SentenceTransformer

    model = SentenceTransformer(model_name, device=device)
    model.eval()
    return model


class ClipExtractor(EmbeddingExtractor):
    """
    CLIP image-branch embedding.

    The model is loaded on first use and then reused for the lifetime of
    the extractor. Loading is guarded by a lock, so concurrent first calls
    trigger a single load. Preprocessing (resize, centre crop, channel
    normalization) is the checkpoint's own.
    """

    name = "clip"

    def __init__(self,
                 model_name: str = CLIP_MODEL_NAME,
                 device: Optional[str] = None,
                 model_factory: Optional[Callable] = None,
                 **kwargs):
        """
        Args:
            model_name: sentence-transformers CLIP checkpoint name.
            device: Torch device string; None lets the library choose.
            model_factory: Callable(model_name, device) returning an object
                with an ``encode`` method. Defaults to sentence-transformers.
        """
        super().__init__(**kwargs)
        self.model_name = model_name
        self.device = device
        self._model_factory = model_factory or load_sentence_transformer
        self._model = None
        self._model_lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _get_model(self):
        if self._model is None:
            with self._model_lock:
                if self._model is None:
                    logger.info(f"Loading CLIP model {self.model_name}")
                    self._model = self._model_factory(self.model_name, self.device)
                    logger.info(f"CLIP model {self.model_name} loaded")
        return self._model

    @property
    def dimension(self) -> int:
        if self.model_name in CLIP_DIMENSIONS:
            return CLIP_DIMENSIONS[self.model_name]
        return int(self._get_model().get_sentence_embedding_dimension())

    def _embed(self, image_bytes: bytes) -> np.ndarray:
        if detect_image_format(image_bytes) is None:
            raise ImageDecodeError("Unrecognized image signature")

        model = self._get_model()
        image = _open_rgb(image_bytes)
        try:
            vectors = model.encode([image], convert_to_numpy=True,
                                   show_progress_bar=False)
        finally:
            image.close()
        return np.asarray(vectors[0], dtype=np.float32)


def _open_rgb(image_bytes: bytes) -> Image.Image:
    """Decode bytes into a standalone RGB Pillow image (caller closes it)."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.load()
            return img.convert("RGB")
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(f"Could not decode image: {e}") from e


def build_extractor(strategy: Optional[str] = None, **kwargs) -> EmbeddingExtractor:
    """
    Construct the extractor for a deployment.

    Args:
        strategy: "statistical" or "clip"; defaults to EMBEDDING_STRATEGY.
        **kwargs: Passed to the extractor's constructor.
    """
    strategy = (strategy or EMBEDDING_STRATEGY).lower()
    if strategy == StatisticalExtractor.name:
        return StatisticalExtractor(**kwargs)
    if strategy == ClipExtractor.name:
        return ClipExtractor(**kwargs)
    raise ValueError(f"Unknown embedding strategy: {strategy!r}")
