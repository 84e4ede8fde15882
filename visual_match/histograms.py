"""
Per-channel colour histogram extraction.

The histogram is the dominant block of the statistical embedding: one
fixed-width histogram per RGB channel, each normalized by pixel count so
every channel's bins sum to 1.0 regardless of image size.

Bin count is configurable via the EMBED_HIST_BINS environment variable.
Changing it changes the embedding dimension, so every catalog embedding
must be recomputed afterwards.
"""

import os
import logging

import cv2
import numpy as np

from .preprocessing import normalize_image

logger = logging.getLogger(__name__)

HIST_BINS = int(os.environ.get("EMBED_HIST_BINS", "32"))
HIST_CHANNELS = 3
HIST_DIM = HIST_BINS * HIST_CHANNELS


def extract_color_histogram(image_np: np.ndarray,
                            bins: int = HIST_BINS) -> np.ndarray:
    """
    Compute a concatenated per-channel colour histogram.

    Process:
        1. Normalize to uint8 RGB
        2. Histogram each channel over [0, 256) with `bins` equal-width bins
        3. Divide every bin by the pixel count

    Args:
        image_np: RGB uint8 image (already resized by the caller).
        bins: Number of bins per channel.

    Returns:
        Float32 vector of length bins * 3, ordered R bins, G bins, B bins.
    """
    image_np = normalize_image(image_np)
    pixel_count = image_np.shape[0] * image_np.shape[1]

    channel_hists = []
    for channel in range(HIST_CHANNELS):
        hist = cv2.calcHist([image_np], [channel], None, [bins], [0, 256])
        channel_hists.append(hist.flatten())

    histogram = np.concatenate(channel_hists).astype(np.float32)
    return histogram / np.float32(pixel_count)
