"""
Blend modes for RGB compositing.

Separable modes act channel by channel; the non-separable modes (hue,
saturation, color, luminosity) work on the whole triple through the
conventional Lum/Sat/ClipColor formulas with luminance weights
(0.30, 0.59, 0.11). Backdrop ``cb`` and source ``cs`` are expected in [0, 1].

All functions are vectorized: channel arguments may be scalars or arrays of
any matching shape.
"""

from __future__ import annotations

import numpy as np


NON_SEPARABLE_MODES = ("hue", "saturation", "color", "luminosity")

LUM_WEIGHTS = (0.3, 0.59, 0.11)


def clamp01(value):
    """Clamp to [0, 1]; non-finite values become 0."""
    v = np.asarray(value, dtype=np.float64)
    return np.where(np.isfinite(v), np.clip(v, 0.0, 1.0), 0.0)


def _multiply(cb, cs):
    return cb * cs


def _screen(cb, cs):
    return cb + cs - cb * cs


def _hard_light(cb, cs):
    return np.where(cs <= 0.5, _multiply(cb, 2.0 * cs), _screen(cb, 2.0 * cs - 1.0))


def _color_dodge(cb, cs):
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.minimum(1.0, cb / (1.0 - cs))
    return np.where(cb == 0, 0.0, np.where(cs >= 1, 1.0, ratio))


def _color_burn(cb, cs):
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = 1.0 - np.minimum(1.0, (1.0 - cb) / cs)
    return np.where(cb >= 1, 1.0, np.where(cs <= 0, 0.0, ratio))


def _soft_light(cb, cs):
    d = np.where(cb <= 0.25, ((16.0 * cb - 12.0) * cb + 4.0) * cb, np.sqrt(np.maximum(cb, 0.0)))
    dark = cb - (1.0 - 2.0 * cs) * cb * (1.0 - cb)
    light = cb + (2.0 * cs - 1.0) * (d - cb)
    return np.where(cs <= 0.5, dark, light)


_SEPARABLE = {
    "normal": lambda cb, cs: cs,
    "multiply": _multiply,
    "screen": _screen,
    "overlay": lambda cb, cs: _hard_light(cs, cb),
    "darken": np.minimum,
    "lighten": np.maximum,
    "color-dodge": _color_dodge,
    "color-burn": _color_burn,
    "hard-light": _hard_light,
    "soft-light": _soft_light,
    "difference": lambda cb, cs: np.abs(cb - cs),
    "exclusion": lambda cb, cs: cb + cs - 2.0 * cb * cs,
}


def blend_channel(cb, cs, mode: str):
    """Apply a separable blend mode to one channel (unclamped)."""
    cb = np.asarray(cb, dtype=np.float64)
    cs = np.asarray(cs, dtype=np.float64)
    return np.asarray(_SEPARABLE.get(mode, _SEPARABLE["normal"])(cb, cs), dtype=np.float64)


# ---------------------------------------------------------------------------
# Non-separable helpers (triples of arrays)
# ---------------------------------------------------------------------------


def lum(r, g, b):
    """Luminance used by the non-separable modes."""
    wr, wg, wb = LUM_WEIGHTS
    return wr * r + wg * g + wb * b


def sat(r, g, b):
    return np.maximum(np.maximum(r, g), b) - np.minimum(np.minimum(r, g), b)


def clip_color(r, g, b):
    """Bring an out-of-gamut triple back into [0, 1] while preserving its luminance."""
    l = lum(r, g, b)
    n = np.minimum(np.minimum(r, g), b)
    x = np.maximum(np.maximum(r, g), b)
    out = []
    with np.errstate(divide="ignore", invalid="ignore"):
        for c in (r, g, b):
            low = np.where(l - n != 0, l + (c - l) * l / (l - n), l)
            c = np.where(n < 0, low, c)
            high = np.where(x - l != 0, l + (c - l) * (1.0 - l) / (x - l), l)
            c = np.where(x > 1, high, c)
            out.append(c)
    return tuple(out)


def set_lum(r, g, b, target):
    d = target - lum(r, g, b)
    return clip_color(r + d, g + d, b + d)


def set_sat(r, g, b, s):
    """Scale a triple so its saturation becomes ``s`` (min -> 0, max -> s)."""
    c_min = np.minimum(np.minimum(r, g), b)
    spread = sat(r, g, b)
    with np.errstate(divide="ignore", invalid="ignore"):
        return tuple(np.where(spread > 0, (c - c_min) * s / spread, 0.0) for c in (r, g, b))


def _blend_non_separable(backdrop, source, mode: str):
    br, bg, bb = backdrop
    sr, sg, sb = source
    if mode == "hue":
        return set_lum(*set_sat(sr, sg, sb, sat(br, bg, bb)), lum(br, bg, bb))
    if mode == "saturation":
        return set_lum(*set_sat(br, bg, bb, sat(sr, sg, sb)), lum(br, bg, bb))
    if mode == "color":
        return set_lum(sr, sg, sb, lum(br, bg, bb))
    return set_lum(br, bg, bb, lum(sr, sg, sb))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _as_triple(rgb):
    return tuple(np.asarray(c, dtype=np.float64) for c in rgb)


def _maybe_scalar(triple, scalar: bool):
    if scalar:
        return tuple(float(c) for c in triple)
    return triple


def blend_rgb(backdrop, source, mode: str):
    """
    Blend a source triple onto a backdrop triple with ``mode``.

    Parameters
    ----------
    backdrop, source : tuple
        (r, g, b) scalars or arrays in [0, 1].
    mode : str
        One of ``BLEND_MODES``. Unknown modes behave like ``normal``.

    Returns
    -------
    tuple
        Blended (r, g, b); floats for scalar input, arrays otherwise.
        Separable results are clamped to [0, 1].
    """
    bd = _as_triple(backdrop)
    src = _as_triple(source)
    scalar = all(c.ndim == 0 for c in bd + src)
    if mode in NON_SEPARABLE_MODES:
        result = _blend_non_separable(bd, src, mode)
    else:
        result = tuple(clamp01(blend_channel(cb, cs, mode)) for cb, cs in zip(bd, src))
    return _maybe_scalar(result, scalar)


def composite_layer(backdrop, source, mode: str, opacity: float):
    """
    Alpha-blend the blend-mode result over the backdrop.

    ``out = clamp01(backdrop * (1 - opacity) + blend(backdrop, source) * opacity)``
    with ``opacity`` itself clamped to [0, 1].
    """
    bd = _as_triple(backdrop)
    src = _as_triple(source)
    scalar = all(c.ndim == 0 for c in bd + src)
    alpha = float(clamp01(opacity))
    blended = blend_rgb(bd, src, mode)
    result = tuple(
        clamp01(b * (1.0 - alpha) + np.asarray(m, dtype=np.float64) * alpha)
        for b, m in zip(bd, blended)
    )
    return _maybe_scalar(result, scalar)


def blend_scanline(
    out_r: np.ndarray,
    out_g: np.ndarray,
    out_b: np.ndarray,
    src_r: np.ndarray,
    src_g: np.ndarray,
    src_b: np.ndarray,
    mode: str,
    opacity: float,
) -> None:
    """
    Composite parallel source channel buffers into the output buffers in place.

    The ``out_*`` arrays are the backdrop on entry and receive the result.
    """
    r, g, b = composite_layer((out_r, out_g, out_b), (src_r, src_g, src_b), mode, opacity)
    out_r[...] = r
    out_g[...] = g
    out_b[...] = b


