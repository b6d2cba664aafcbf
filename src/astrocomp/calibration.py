"""
Frame calibration: dark, bias and flat-field correction.

Master frames are combined per pixel (median for darks, normalized mean for
flats). A light frame is corrected in the fixed order

    (light - dark - bias) / normalize(flat)

with every stage skipped when its frame is absent. All functions return new
float32 buffers and keep the layout (flat or 2D) of their input.
"""

from __future__ import annotations

import logging

import numpy as np

from .config import CalibrationFrameSet
from .utils import as_buffer, check_same_size, finite_values, stack_frames

logger = logging.getLogger(__name__)

# Flat samples at or below this value are treated as dead and left undivided
FLAT_EPSILON = 0.01


def subtract_dark(light, dark) -> np.ndarray:
    """Elementwise ``light - dark``."""
    light = as_buffer(light)
    dark = as_buffer(dark)
    check_same_size(light, dark, "dark")
    return (light - dark.reshape(light.shape)).astype(np.float32)


def subtract_bias(light, bias) -> np.ndarray:
    """Elementwise ``light - bias``."""
    light = as_buffer(light)
    bias = as_buffer(bias)
    check_same_size(light, bias, "bias")
    return (light - bias.reshape(light.shape)).astype(np.float32)


def normalize_flat(flat) -> np.ndarray:
    """
    Divide a flat by the mean of its valid samples.

    Parameters
    ----------
    flat : array-like
        Flat-field buffer.

    Returns
    -------
    np.ndarray
        Normalized flat (mean of valid samples is 1).

    Notes
    -----
    Valid samples are finite and strictly positive. Invalid samples do not
    contribute to the mean but are still divided by it. A flat without any
    valid sample is returned unscaled.
    """
    flat = as_buffer(flat)
    valid = finite_values(flat, positive=True)
    mean = float(valid.mean(dtype=np.float64)) if valid.size else 1.0
    if not np.isfinite(mean) or mean <= 0:
        mean = 1.0
    logger.debug("Flat normalization mean=%.6g over %d valid samples", mean, valid.size)
    with np.errstate(invalid="ignore"):
        return (flat / np.float32(mean)).astype(np.float32)


def apply_flat(light, normalized_flat) -> np.ndarray:
    """
    Divide a light frame by a normalized flat.

    Where the flat is below ``FLAT_EPSILON`` (or not finite) the light sample
    passes through unchanged instead of being blown up by the division.
    """
    light = as_buffer(light)
    flat = as_buffer(normalized_flat)
    check_same_size(light, flat, "flat")
    flat = flat.reshape(light.shape)
    usable = np.isfinite(flat) & (flat > FLAT_EPSILON)
    safe = np.where(usable, flat, np.float32(1.0))
    return np.where(usable, light / safe, light).astype(np.float32)


def _check_calibration_sizes(light: np.ndarray, frames: CalibrationFrameSet) -> None:
    for name in ("dark", "bias", "flat"):
        frame = getattr(frames, name)
        if frame is not None:
            check_same_size(light, as_buffer(frame), name)


def calibrate(light, frames: CalibrationFrameSet) -> np.ndarray:
    """
    Calibrate a light frame with a ``CalibrationFrameSet``.

    Sizes of every provided frame are checked before any arithmetic runs.
    The order is dark subtraction, bias subtraction, then division by the
    normalized flat; if only a bias is given the result is exactly
    ``light - bias``.

    Raises
    ------
    ValidationError
        If any calibration frame does not match the light frame size.
    """
    light = as_buffer(light)
    _check_calibration_sizes(light, frames)

    result = light.astype(np.float32, copy=True)
    stages = []
    if frames.dark is not None:
        result = subtract_dark(result, frames.dark)
        stages.append("dark")
    if frames.bias is not None:
        result = subtract_bias(result, frames.bias)
        stages.append("bias")
    if frames.flat is not None:
        result = apply_flat(result, normalize_flat(frames.flat))
        stages.append("flat")

    logger.debug("Calibrated frame %s with stages: %s", light.shape, ", ".join(stages) or "none")
    return result


def calibrate_frame(light, dark=None, flat=None, bias=None) -> np.ndarray:
    """Keyword form of ``calibrate``."""
    return calibrate(light, CalibrationFrameSet(dark=dark, flat=flat, bias=bias))


def create_master_dark(frames) -> np.ndarray:
    """
    Combine dark exposures into a master dark by per-pixel median.

    The median is the ``n // 2`` order statistic of the ``n`` samples (the
    upper middle one for an even count), so every master pixel is an
    observed dark value. Zero frames give an empty buffer; a single frame is
    returned as a copy.
    """
    frames = list(frames)
    if len(frames) == 0:
        return np.zeros(0, dtype=np.float32)
    if len(frames) == 1:
        return as_buffer(frames[0]).astype(np.float32, copy=True)

    cube = stack_frames(frames, "dark frames")
    logger.info("Master dark: median of %d frames %s", len(frames), cube.shape[1:])
    middle = len(frames) // 2
    return np.partition(cube, middle, axis=0)[middle].astype(np.float32)


def create_master_flat(frames) -> np.ndarray:
    """
    Combine flat exposures into a normalized master flat.

    Frames are mean-combined per pixel, then normalized like
    ``normalize_flat`` so that a uniform input becomes all ones. Zero frames
    give an empty buffer.
    """
    frames = list(frames)
    if len(frames) == 0:
        return np.zeros(0, dtype=np.float32)

    cube = stack_frames(frames, "flat frames")
    combined = cube.mean(axis=0, dtype=np.float64).astype(np.float32)
    logger.info("Master flat: mean of %d frames %s", len(frames), cube.shape[1:])
    return normalize_flat(combined)
