"""Cheap pixel statistics used by the capture health checks."""
from __future__ import annotations

import math

import numpy as np

ANALYSIS_MAX_SIZE = (640, 360)
SAMPLE_MAX_SIZE = (64, 36)
FINGERPRINT_GRID = (8, 6)  # columns, rows
FINGERPRINT_SHIFT = 4  # 256 luma levels -> 16 buckets


def _as_rgb(frame: np.ndarray) -> np.ndarray:
    arr = np.asarray(frame)
    if arr.ndim == 2:
        return np.repeat(arr[:, :, None], 3, axis=2)
    if arr.ndim != 3 or arr.shape[2] < 3:
        raise ValueError(f"unsupported frame shape {arr.shape}")
    return arr[:, :, :3]


def downsample(frame: np.ndarray, max_width: int, max_height: int) -> np.ndarray:
    """Stride-sample ``frame`` so it fits inside ``max_width`` x ``max_height``."""

    rgb = _as_rgb(frame)
    height, width = rgb.shape[:2]
    if width == 0 or height == 0:
        raise ValueError("empty frame")
    step = max(1, math.ceil(width / max_width), math.ceil(height / max_height))
    return rgb[::step, ::step]


def sample_surface(frame: np.ndarray) -> np.ndarray:
    """Return the small sampling surface for a captured frame."""

    analysis = downsample(frame, *ANALYSIS_MAX_SIZE)
    return downsample(analysis, *SAMPLE_MAX_SIZE)


def content_ratio(sample: np.ndarray, channel_threshold: int = 24) -> float:
    """Share of pixels where any channel is brighter than ``channel_threshold``."""

    rgb = _as_rgb(sample)
    pixels = rgb.shape[0] * rgb.shape[1]
    if pixels == 0:
        return 0.0
    lit = np.any(rgb > channel_threshold, axis=2)
    return float(np.count_nonzero(lit)) / float(pixels)


def is_black_frame(
    sample: np.ndarray,
    *,
    channel_threshold: int = 24,
    min_content_ratio: float = 0.01,
) -> bool:
    return content_ratio(sample, channel_threshold) < min_content_ratio


def luma_fingerprint(sample: np.ndarray) -> bytes:
    """Quantized mean luma over an 8x6 grid, as 48 bytes."""

    rgb = _as_rgb(sample).astype(np.float32)
    luma = 0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]
    cols, rows = FINGERPRINT_GRID
    out = np.zeros((rows, cols), dtype=np.uint8)
    for r, band in enumerate(np.array_split(luma, rows, axis=0)):
        for c, cell in enumerate(np.array_split(band, cols, axis=1)):
            mean = float(cell.mean()) if cell.size else 0.0
            out[r, c] = int(mean) >> FINGERPRINT_SHIFT
    return out.tobytes()
