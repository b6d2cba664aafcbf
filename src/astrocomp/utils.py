"""
Utility functions for the astrocomp core.

Includes:
- Buffer shaping and size checks
- Robust statistics over finite samples
- Float to 8-bit conversion
- Version info
"""

from __future__ import annotations

import numpy as np

from .errors import ValidationError

__version__ = "0.1.0"
__version_info__ = {
    "major": 0,
    "minor": 1,
    "patch": 0,
    "status": "alpha",
    "date": "2026-10-18",
}


def get_version() -> str:
    """Return the library version string."""
    return __version__


def as_buffer(pixels) -> np.ndarray:
    """Return ``pixels`` as a float32 ndarray without copying when possible."""
    return np.asarray(pixels, dtype=np.float32)


def as_image(pixels, width: int, height: int, name: str = "pixels") -> np.ndarray:
    """
    View a flat row-major buffer (or an already shaped array) as (height, width).

    Parameters
    ----------
    pixels : array-like
        Flat buffer of length ``width*height`` or a ``(height, width)`` array.
    width, height : int
        Image dimensions.
    name : str
        Buffer name used in the error message.

    Returns
    -------
    np.ndarray
        float32 array of shape (height, width).

    Raises
    ------
    ValidationError
        If the number of samples does not match ``width*height``.
    """
    data = as_buffer(pixels)
    if data.size != width * height:
        raise ValidationError(
            f"{name} has {data.size} samples, expected {width}x{height}={width * height}"
        )
    return data.reshape(height, width)


def restore_layout(result: np.ndarray, template) -> np.ndarray:
    """Flatten ``result`` when ``template`` was given as a flat buffer."""
    if np.ndim(template) == 1:
        return np.ascontiguousarray(result, dtype=np.float32).ravel()
    return np.asarray(result, dtype=np.float32)


def check_same_size(reference: np.ndarray, other: np.ndarray, name: str) -> None:
    """Raise ``ValidationError`` when two buffers differ in size or shape."""
    if reference.size != other.size or (
        reference.ndim == other.ndim and reference.shape != other.shape
    ):
        raise ValidationError(
            f"{name} dimensions {other.shape} do not match light frame {reference.shape}"
        )


def stack_frames(frames, name: str = "frames") -> np.ndarray:
    """
    Stack a sequence of equally sized buffers into a float32 cube.

    Returns an array of shape (n_frames, n_samples) for flat inputs or
    (n_frames, height, width) for 2D inputs.
    """
    arrays = [as_buffer(frame) for frame in frames]
    first = arrays[0]
    for index, array in enumerate(arrays[1:], start=1):
        if array.shape != first.shape:
            raise ValidationError(
                f"{name}[{index}] has shape {array.shape}, expected {first.shape}"
            )
    return np.stack(arrays, axis=0)


def finite_values(data: np.ndarray, positive: bool = False) -> np.ndarray:
    """Return the finite (optionally strictly positive) samples as a 1D array."""
    values = np.asarray(data).ravel()
    keep = np.isfinite(values)
    if positive:
        keep &= values > 0
    return values[keep]


def round_half_up(value):
    """Round halves towards +inf, matching the usual display convention."""
    return np.floor(np.asarray(value, dtype=np.float64) + 0.5)


def sorted_percentile(sorted_values: np.ndarray, fraction: float) -> float:
    """
    Nearest-rank percentile of an already sorted 1D array.

    The sample at index ``round((n - 1) * fraction)`` is returned, so the
    result is always an observed value. An empty input yields 0.
    """
    n = sorted_values.size
    if n == 0:
        return 0.0
    index = int(round_half_up((n - 1) * fraction))
    index = max(0, min(n - 1, index))
    return float(sorted_values[index])


def median_absolute_deviation(data: np.ndarray) -> float:
    """
    Compute the Median Absolute Deviation (MAD).

    MAD = median(|x - median(x)|)

    Parameters
    ----------
    data : np.ndarray
        Input data array.

    Returns
    -------
    float
        MAD value.
    """
    median = np.median(data)
    return float(np.median(np.abs(data - median)))


def estimate_noise_mad(data: np.ndarray) -> float:
    """
    Estimate noise level using MAD-based robust estimator.

    For Gaussian noise: sigma ~ 1.4826 * MAD
    """
    mad = median_absolute_deviation(data)
    return 1.4826 * mad


def clamp01(data) -> np.ndarray:
    """Clamp to [0, 1], mapping non-finite samples to 0."""
    values = np.asarray(data, dtype=np.float32)
    return np.where(np.isfinite(values), np.clip(values, 0.0, 1.0), 0.0).astype(np.float32)


def to_uint8(data: np.ndarray) -> np.ndarray:
    """
    Convert normalized [0,1] float array to uint8 [0,255].

    Values are clamped to [0, 1] (non-finite samples become 0) and rounded to
    the nearest level.
    """
    return round_half_up(clamp01(data) * 255.0).astype(np.uint8)
