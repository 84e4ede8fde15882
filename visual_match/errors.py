"""
Error taxonomy for the visual matching pipeline.

Errors are split by who is at fault so callers can tell "bad input" apart
from "service unavailable":
    InputError       — the query image or item draft is unusable
    FetchError       — a remote image could not be retrieved
    CatalogError     — the catalog or its side-store is unreadable/unwritable
    MatchTimeoutError — the extract-then-rank pipeline ran out of time
"""

from typing import Optional


class VisualMatchError(Exception):
    """Base class for all matching errors."""

    error_code = "VISUAL_MATCH_ERROR"
    retryable = False

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


class InputError(VisualMatchError):
    """The caller supplied something the pipeline cannot work with."""

    error_code = "INVALID_INPUT"


class ImageDecodeError(InputError):
    """Bytes are not a decodable raster image."""

    error_code = "IMAGE_DECODE_ERROR"


class InvalidImageSourceError(InputError):
    """Image source is neither bytes, an http(s) URL, nor a data URL."""

    error_code = "INVALID_IMAGE_SOURCE"


class InvalidItemError(InputError):
    """Catalog item draft is missing required fields or has bad values."""

    error_code = "INVALID_ITEM"


class FetchError(VisualMatchError):
    """Raised when an image URL cannot be fetched (network or non-2xx)."""

    error_code = "FETCH_ERROR"
    retryable = True

    def __init__(self, url: str, status_code: Optional[int] = None, message: str = ""):
        self.url = url
        self.status_code = status_code
        super().__init__(f"Failed to fetch {url}: {message}")


class DimensionMismatchError(VisualMatchError, ValueError):
    """Two embeddings of different length were compared."""

    error_code = "DIMENSION_MISMATCH"

    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(
            f"Embedding dimension {left} doesn't match dimension {right}"
        )


class CatalogError(VisualMatchError):
    """Catalog storage failure."""

    error_code = "CATALOG_ERROR"


class CatalogLoadError(CatalogError):
    """The catalog item list could not be read."""

    error_code = "CATALOG_LOAD_ERROR"


class CatalogWriteError(CatalogError):
    """Persisting the catalog or its side-store failed."""

    error_code = "CATALOG_WRITE_ERROR"

    def __init__(self, message: str = "", inconsistent: bool = False):
        self.inconsistent = inconsistent
        super().__init__(message)


class MatchTimeoutError(VisualMatchError, TimeoutError):
    """The extract-then-rank pipeline exceeded its time bound."""

    error_code = "MATCH_TIMEOUT"
    retryable = True
