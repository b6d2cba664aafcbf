"""
Robust intensity matching between buffers.

Two transforms are estimated from (optionally strided) samples:

- a linear match ``y = scale * x + offset`` anchored on the 10th and 90th
  percentiles of source and reference, used to put frames or layers on a
  common intensity scale;
- a brightness gain ``y = gain * x`` equal to the ratio of medians over
  pixels that are finite and positive in both buffers.

Aggregate statistics skip non-finite samples; degenerate inputs fall back
to the identity transform.
"""

from __future__ import annotations

import logging

import numpy as np

from .config import BrightnessBalance, BrightnessGain, LinearMatch
from .utils import as_buffer, sorted_percentile

logger = logging.getLogger(__name__)

LOW_ANCHOR = 0.1
HIGH_ANCHOR = 0.9
MIN_SPREAD = 1e-12
MIN_BALANCE_SAMPLES = 32


def _paired_samples(source, reference, sample_step: int) -> tuple[np.ndarray, np.ndarray]:
    src = as_buffer(source).ravel()
    ref = as_buffer(reference).ravel()
    step = max(1, int(round(sample_step)))
    limit = min(src.size, ref.size)
    src = src[:limit:step].astype(np.float64)
    ref = ref[:limit:step].astype(np.float64)
    return src, ref


def _finite(value: float, fallback: float) -> float:
    return float(value) if np.isfinite(value) else fallback


def estimate_linear_match(source, reference, sample_step: int = 1) -> LinearMatch:
    """
    Estimate the affine transform mapping ``source`` intensities onto ``reference``.

    Parameters
    ----------
    source, reference : array-like
        Buffers of the same geometry. Only pixels finite in both are used.
    sample_step : int, default 1
        Stride between sampled pixels.

    Returns
    -------
    LinearMatch
        ``scale`` and ``offset`` such that ``source*scale + offset`` has the
        reference's 10th/90th percentiles.

    Notes
    -----
    When the source percentile spread is ~0 the scale falls back to the
    ratio of medians. Fewer than two usable samples, or a non-finite
    result, give the identity transform.
    """
    src, ref = _paired_samples(source, reference, sample_step)
    keep = np.isfinite(src) & np.isfinite(ref)
    src = np.sort(src[keep])
    ref = np.sort(ref[keep])
    if src.size < 2:
        return LinearMatch()

    src_lo = sorted_percentile(src, LOW_ANCHOR)
    src_hi = sorted_percentile(src, HIGH_ANCHOR)
    ref_lo = sorted_percentile(ref, LOW_ANCHOR)
    ref_hi = sorted_percentile(ref, HIGH_ANCHOR)

    if abs(src_hi - src_lo) > MIN_SPREAD:
        scale = (ref_hi - ref_lo) / (src_hi - src_lo)
    else:
        src_median = float(np.median(src))
        ref_median = float(np.median(ref))
        scale = ref_median / src_median if abs(src_median) > MIN_SPREAD else 1.0

    offset = ref_lo - scale * src_lo
    match = LinearMatch(scale=_finite(scale, 1.0), offset=_finite(offset, 0.0))
    logger.debug(
        "Linear match over %d samples: scale=%.6g offset=%.6g", src.size, match.scale, match.offset
    )
    return match


def apply_linear_match(source, params: LinearMatch, clamp_to_positive: bool = False) -> np.ndarray:
    """Return ``source*scale + offset``, optionally floored at 0."""
    data = as_buffer(source)
    out = data * np.float32(params.scale) + np.float32(params.offset)
    if clamp_to_positive:
        out = np.maximum(out, 0.0)
    return out.astype(np.float32)


def linear_match_to_reference(
    source,
    reference,
    sample_step: int = 1,
    clamp_to_positive: bool = False,
) -> tuple[np.ndarray, LinearMatch]:
    """Estimate and apply a linear match in one call. Returns (matched, params)."""
    params = estimate_linear_match(source, reference, sample_step)
    return apply_linear_match(source, params, clamp_to_positive), params


def estimate_brightness_gain(layer, reference, sample_step: int = 1) -> BrightnessGain:
    """
    Estimate the gain bringing ``layer``'s median onto ``reference``'s.

    Only pixels finite and strictly positive in both buffers are sampled.
    Fewer than 32 such samples, or a near-zero layer median, give gain 1.
    """
    lay, ref = _paired_samples(layer, reference, sample_step)
    keep = np.isfinite(lay) & np.isfinite(ref) & (lay > 0) & (ref > 0)
    lay = lay[keep]
    ref = ref[keep]
    if lay.size < MIN_BALANCE_SAMPLES:
        return BrightnessGain()

    layer_median = float(np.median(lay))
    reference_median = float(np.median(ref))
    if layer_median <= MIN_SPREAD:
        return BrightnessGain(gain=1.0, reference_median=reference_median, layer_median=layer_median)

    return BrightnessGain(
        gain=_finite(reference_median / layer_median, 1.0),
        reference_median=reference_median,
        layer_median=layer_median,
    )


def apply_brightness_gain(layer, gain: float, clamp_to_positive: bool = True) -> np.ndarray:
    """Multiply by ``gain`` (non-finite gains act as 1), optionally flooring at 0."""
    data = as_buffer(layer)
    safe_gain = gain if np.isfinite(gain) else 1.0
    out = data * np.float32(safe_gain)
    if clamp_to_positive:
        out = np.maximum(out, 0.0)
    return out.astype(np.float32)


def balance_layer_brightness(
    layers,
    reference_index: int = 0,
    sample_step: int = 1,
) -> BrightnessBalance:
    """
    Scale every layer so its median matches the reference layer's.

    Parameters
    ----------
    layers : sequence of array-like
        Buffers to balance.
    reference_index : int, default 0
        Index of the reference layer (clamped to the valid range). The
        reference is returned unchanged with gain 1.
    sample_step : int, default 1
        Stride between sampled pixels.

    Returns
    -------
    BrightnessBalance
        Balanced buffers and the gain applied to each.
    """
    layers = [as_buffer(layer) for layer in layers]
    if not layers:
        return BrightnessBalance(balanced=[], gains=[])

    ref_index = max(0, min(int(reference_index), len(layers) - 1))
    reference = layers[ref_index]

    balanced: list[np.ndarray] = []
    gains: list[float] = []
    for index, layer in enumerate(layers):
        if index == ref_index:
            balanced.append(layer)
            gains.append(1.0)
            continue
        gain = estimate_brightness_gain(layer, reference, sample_step).gain
        balanced.append(apply_brightness_gain(layer, gain, clamp_to_positive=True))
        gains.append(gain)

    logger.debug("Brightness balance gains (reference=%d): %s", ref_index, gains)
    return BrightnessBalance(balanced=balanced, gains=gains)
