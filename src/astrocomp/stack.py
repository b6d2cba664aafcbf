"""
Frame integration.

Combines calibrated, aligned frames of equal size into one buffer with a
per-pixel statistic: average, median, min, max, weighted mean, sigma-clipped
mean or winsorized mean. Frames may be flat buffers or 2D images; the
result has the same layout.

Large stacks are processed in chunks of rows so that only
``n_frames x chunk_rows x width`` samples are combined at a time.
Non-finite samples never contribute.
"""

from __future__ import annotations

import logging
from typing import Callable, Literal

import numpy as np
from astropy.stats import sigma_clip

from .errors import ValidationError
from .utils import stack_frames

logger = logging.getLogger(__name__)

StackMethod = Literal["average", "median", "min", "max", "weighted", "sigma_clip", "winsorized"]

STACK_METHODS: tuple[str, ...] = (
    "average", "median", "min", "max", "weighted", "sigma_clip", "winsorized",
)

DEFAULT_CHUNK_ROWS = 64
# Chunk length, in samples, for flat (1D) frames
FLAT_CHUNK_SAMPLES = 65536


def _reduce_chunked(
    frames,
    reducer: Callable[[np.ndarray], np.ndarray],
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
    name: str = "frames",
) -> np.ndarray:
    """
    Apply ``reducer`` (n_frames, n_samples) -> (n_samples,) chunk by chunk.

    Returns an empty buffer for an empty frame list and raises
    ``ValidationError`` when the frames differ in size.
    """
    frames = list(frames)
    if len(frames) == 0:
        return np.zeros(0, dtype=np.float32)

    cube = stack_frames(frames, name)
    n_frames = cube.shape[0]
    out_shape = cube.shape[1:]
    flat = cube.reshape(n_frames, -1)
    n_samples = flat.shape[1]

    if cube.ndim == 3:
        step = max(1, int(chunk_rows)) * out_shape[-1]
    else:
        step = FLAT_CHUNK_SAMPLES
    result = np.empty(n_samples, dtype=np.float32)
    for start in range(0, n_samples, step):
        stop = min(n_samples, start + step)
        chunk = flat[:, start:stop].astype(np.float64)
        result[start:stop] = reducer(chunk)

    return result.reshape(out_shape)


def _finite_masked(chunk: np.ndarray) -> np.ma.MaskedArray:
    return np.ma.masked_invalid(chunk)


def _masked_result(values: np.ma.MaskedArray) -> np.ndarray:
    return np.ma.filled(values.astype(np.float64), 0.0)


def average_stack(frames, chunk_rows: int = DEFAULT_CHUNK_ROWS) -> np.ndarray:
    """Per-pixel mean of the finite samples."""
    return _reduce_chunked(
        frames, lambda c: _masked_result(_finite_masked(c).mean(axis=0)), chunk_rows
    )


def median_stack(frames, chunk_rows: int = DEFAULT_CHUNK_ROWS) -> np.ndarray:
    """
    Simple median stack (no sigma clipping).

    Notes
    -----
    Median is more robust to outliers than mean but less
    optimal for noise reduction.
    """
    return _reduce_chunked(
        frames, lambda c: _masked_result(np.ma.median(_finite_masked(c), axis=0)), chunk_rows
    )


def min_stack(frames, chunk_rows: int = DEFAULT_CHUNK_ROWS) -> np.ndarray:
    return _reduce_chunked(
        frames, lambda c: _masked_result(_finite_masked(c).min(axis=0)), chunk_rows
    )


def max_stack(frames, chunk_rows: int = DEFAULT_CHUNK_ROWS) -> np.ndarray:
    return _reduce_chunked(
        frames, lambda c: _masked_result(_finite_masked(c).max(axis=0)), chunk_rows
    )


def weighted_stack(frames, weights, chunk_rows: int = DEFAULT_CHUNK_ROWS) -> np.ndarray:
    """
    Compute weighted mean of image stack.

    Parameters
    ----------
    frames : list of array-like
        Frames to combine.
    weights : sequence of float
        Weight for each frame (e.g. from ``quality_to_weights``).

    Returns
    -------
    np.ndarray
        Weighted mean image. Falls back to the plain average when the
        weights sum to zero.
    """
    frames = list(frames)
    weights = np.asarray(weights, dtype=np.float64).ravel()
    if len(frames) != weights.size:
        raise ValidationError(
            f"Number of frames ({len(frames)}) must match number of weights ({weights.size})"
        )
    if len(frames) == 0 or not np.isfinite(weights).all() or weights.sum() <= 0:
        if len(frames):
            logger.warning("Stack weights sum to zero; using the plain average")
        return average_stack(frames, chunk_rows)

    column = weights.reshape(-1, 1)

    def _weighted(chunk: np.ndarray) -> np.ndarray:
        finite = np.isfinite(chunk)
        w = np.where(finite, column, 0.0)
        total = w.sum(axis=0)
        weighted = np.where(finite, chunk, 0.0) * w
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(total > 0, weighted.sum(axis=0) / total, 0.0)

    return _reduce_chunked(frames, _weighted, chunk_rows)


def sigma_clip_stack(
    frames,
    sigma: float = 2.5,
    maxiters: int = 3,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
) -> np.ndarray:
    """
    Compute sigma-clipped mean of image stack using chunked processing.

    Parameters
    ----------
    frames : list of array-like
        Frames to combine.
    sigma : float, default 2.5
        Rejection threshold in (population) standard deviations around
        the per-pixel mean.
    maxiters : int, default 3
        Maximum number of clipping iterations.
    chunk_rows : int, default 64
        Number of rows to process at a time.

    Returns
    -------
    np.ndarray
        The sigma-clipped mean.

    Notes
    -----
    Sigma clipping iteratively rejects outliers (cosmic rays, satellites,
    hot pixels) that deviate more than ``sigma`` standard deviations from
    the mean at each pixel position. A pixel whose samples would all be
    rejected keeps every sample.
    """
    frames = list(frames)
    logger.info("Stacking %d frames with sigma=%.1f, maxiters=%d", len(frames), sigma, maxiters)

    def _clipped_mean(chunk: np.ndarray) -> np.ndarray:
        clipped = sigma_clip(
            chunk,
            sigma=sigma,
            maxiters=maxiters,
            cenfunc="mean",
            stdfunc="std",
            axis=0,
            masked=True,
            copy=False,
        )
        stacked = _masked_result(clipped.mean(axis=0))
        survivors = np.sum(~np.ma.getmaskarray(clipped), axis=0)
        fallback = _masked_result(_finite_masked(chunk).mean(axis=0))
        return np.where(survivors > 0, stacked, fallback)

    return _reduce_chunked(frames, _clipped_mean, chunk_rows)


def winsorized_stack(
    frames,
    sigma: float = 2.5,
    maxiters: int = 3,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
) -> np.ndarray:
    """
    Winsorized sigma-clipped mean.

    Like ``sigma_clip_stack``, but samples outside
    ``mean +/- sigma * std`` are replaced by the violated bound instead of
    being dropped, and the statistics are recomputed on the replaced
    samples for up to ``maxiters`` iterations.
    """

    def _winsorized_mean(chunk: np.ndarray) -> np.ndarray:
        finite = np.isfinite(chunk)
        values = np.where(finite, chunk, np.nan)
        for _ in range(max(0, int(maxiters))):
            with np.errstate(invalid="ignore"):
                mean = np.nanmean(values, axis=0)
                std = np.nanstd(values, axis=0)
                low = mean - sigma * std
                high = mean + sigma * std
                clipped = np.clip(values, low, high)
            changed = finite & (clipped != values)
            values = np.where(finite, clipped, np.nan)
            if not changed.any():
                break
        with np.errstate(invalid="ignore"):
            result = np.nanmean(values, axis=0)
        return np.where(np.isfinite(result), result, 0.0)

    return _reduce_chunked(frames, _winsorized_mean, chunk_rows)


def integrate_frames(
    frames,
    method: StackMethod = "average",
    weights=None,
    sigma: float = 2.5,
    maxiters: int = 3,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
) -> np.ndarray:
    """
    Integrate frames with the named method.

    Parameters
    ----------
    frames : list of array-like
        Calibrated, aligned frames of equal size.
    method : str, default 'average'
        One of ``STACK_METHODS``.
    weights : sequence of float, optional
        Per-frame weights for the 'weighted' method (default: all ones).
    sigma, maxiters : float, int
        Rejection parameters for 'sigma_clip' and 'winsorized'.

    Returns
    -------
    np.ndarray
        Integrated frame in the layout of the inputs.
    """
    frames = list(frames)
    if method not in STACK_METHODS:
        raise ValueError(f"Unknown stacking method: {method!r}")

    if method == "average":
        result = average_stack(frames, chunk_rows)
    elif method == "median":
        result = median_stack(frames, chunk_rows)
    elif method == "min":
        result = min_stack(frames, chunk_rows)
    elif method == "max":
        result = max_stack(frames, chunk_rows)
    elif method == "weighted":
        result = weighted_stack(frames, np.ones(len(frames)) if weights is None else weights, chunk_rows)
    elif method == "sigma_clip":
        result = sigma_clip_stack(frames, sigma, maxiters, chunk_rows)
    else:
        result = winsorized_stack(frames, sigma, maxiters, chunk_rows)

    logger.info("Integrated %d frames with method=%s", len(frames), method)
    return result
