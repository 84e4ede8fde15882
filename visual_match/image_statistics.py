"""
Auxiliary scalar features for the statistical embedding.

Colour histograms say nothing about contrast, texture or how saturated an
image is, so the statistical embedding appends a small block of global
statistics to the histogram:

    [0:3]   — per-channel mean (R, G, B), scaled to [0, 1]
    [3:6]   — per-channel standard deviation, scaled to [0, 1]
    [6:9]   — brightness quartiles (25th, 50th, 75th percentile)
    [9]     — edge density (mean forward-difference gradient magnitude)
    [10]    — colour dominance (max channel mean - min channel mean)
    [11]    — mean saturation, (max - min) / max per pixel

The block is zero-padded (or truncated) to AUX_DIM so its length never
depends on how many organic features exist.
"""

import os
import logging

import numpy as np

from .preprocessing import normalize_image

logger = logging.getLogger(__name__)

AUX_DIM = int(os.environ.get("EMBED_AUX_FEATURES", "32"))
ORGANIC_FEATURES = 12


def extract_auxiliary_features(image_np: np.ndarray,
                               length: int = AUX_DIM) -> np.ndarray:
    """
    Extract the fixed-length auxiliary feature block.

    Args:
        image_np: RGB uint8 image (already resized by the caller).
        length: Declared block length; features are padded or truncated.

    Returns:
        Float32 vector of exactly `length` values.
    """
    image_np = normalize_image(image_np)
    pixels = image_np.reshape(-1, 3).astype(np.float64)

    means, stds = _channel_moments(pixels)
    features = np.concatenate([
        means / 255.0,
        stds / 255.0,
        _brightness_quartiles(pixels),
        [_edge_density(image_np)],
        [(means.max() - means.min()) / 255.0],
        [_mean_saturation(pixels)],
    ])

    block = np.zeros(length, dtype=np.float32)
    n = min(length, len(features))
    block[:n] = features[:n]
    return block


def _channel_moments(pixels: np.ndarray):
    """Per-channel mean and population standard deviation (0-255 scale)."""
    return pixels.mean(axis=0), pixels.std(axis=0)


def _brightness_quartiles(pixels: np.ndarray) -> np.ndarray:
    """
    25th/50th/75th percentile of per-pixel brightness.

    Brightness is the plain RGB average. Percentiles use the lower index
    floor(n * q) of the sorted values rather than interpolation.
    """
    brightness = np.sort(pixels.mean(axis=1))
    n = len(brightness)
    indices = [min(n - 1, int(n * q)) for q in (0.25, 0.50, 0.75)]
    return brightness[indices] / 255.0


def _edge_density(image_np: np.ndarray) -> float:
    """
    Mean gradient magnitude over the image, scaled by the 8-bit range.

    Gradients are forward differences to the right and downward neighbour,
    with absolute channel differences summed before taking the magnitude.
    """
    h, w = image_np.shape[:2]
    img = image_np.astype(np.float64)

    here = img[:-1, :-1]
    grad_x = np.abs(img[:-1, 1:] - here).sum(axis=2)
    grad_y = np.abs(img[1:, :-1] - here).sum(axis=2)

    edge_sum = np.sqrt(grad_x ** 2 + grad_y ** 2).sum()
    return float(edge_sum / (w * h) / 255.0)


def _mean_saturation(pixels: np.ndarray) -> float:
    """Average of (max - min) / max across pixels; black pixels count as 0."""
    mx = pixels.max(axis=1)
    mn = pixels.min(axis=1)
    saturation = np.where(mx > 0, (mx - mn) / np.maximum(mx, 1.0), 0.0)
    return float(saturation.mean())
