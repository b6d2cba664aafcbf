"""
Multi-layer composite renderer.

Turns a list of mono ``CompositeLayer`` buffers into an RGBA image:

1. keep enabled layers whose buffer matches the frame size;
2. in preview mode, nearest-neighbour downsample every layer;
3. optionally linear-match and brightness-balance against the first layer;
4. normalize to [0, 1], against one shared extent or per layer;
5. tint and blend the colour layers in order;
6. integrate the luminance layer in the selected colour space;
7. optionally run a pixel-math program;
8. extract the preview view and convert to 8-bit RGBA.

The pipeline is a stage generator yielding progress; ``render_composite``
runs it synchronously and ``render_composite_async`` drives it on the event
loop with cancellation checks between stages.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Generator

import numpy as np

from .blend import blend_scanline
from .config import CompositeLayer, RenderOptions, RenderRequest, RenderResult
from .matching import apply_brightness_gain, estimate_brightness_gain, linear_match_to_reference
from .pixelmath import PixelMathInput, apply_pixel_math_program
from .runtime import CancellationToken, ProgressCallback, run_stages, run_stages_async
from .utils import as_buffer, round_half_up, to_uint8

logger = logging.getLogger(__name__)

MATCH_SAMPLE_STEP = 8
MIN_PREVIEW_SCALE = 0.1
MAX_PREVIEW_SCALE = 1.0
FULL_SCALE_THRESHOLD = 0.999

# Relative luminance weights (Rec. 709)
LUMA_WEIGHTS = (0.2126, 0.7152, 0.0722)
CURRENT_LIGHTNESS_EPS = 1e-6


@dataclass
class _WorkingLayer:
    layer: CompositeLayer
    data: np.ndarray  # Flat float32 at the output resolution


# ---------------------------------------------------------------------------
# Buffer helpers
# ---------------------------------------------------------------------------


def compute_extent(data) -> tuple[float, float]:
    """
    (min, max) over the finite samples.

    Returns (0, 1) when there is no finite sample or when min == max, so a
    flat buffer normalizes to 0 instead of dividing by zero.
    """
    values = as_buffer(data).ravel()
    values = values[np.isfinite(values)]
    if values.size == 0:
        return 0.0, 1.0
    lo, hi = float(values.min()), float(values.max())
    if hi <= lo:
        return 0.0, 1.0
    return lo, hi


def normalize_to_unit(data, extent: tuple[float, float]) -> np.ndarray:
    """Map ``extent`` onto [0, 1] and clamp; non-finite samples become 0."""
    lo, hi = extent
    span = hi - lo if hi > lo else 1.0
    values = (as_buffer(data).astype(np.float64) - lo) / span
    return np.where(np.isfinite(values), np.clip(values, 0.0, 1.0), 0.0).astype(np.float32)


def preview_size(width: int, height: int, scale: float) -> tuple[int, int]:
    """Target (width, height) for a downsample by ``scale``."""
    if scale >= FULL_SCALE_THRESHOLD:
        return width, height
    return max(1, int(math.floor(width * scale))), max(1, int(math.floor(height * scale)))


def downsample_nearest(data, width: int, height: int, scale: float) -> tuple[np.ndarray, int, int]:
    """
    Nearest-neighbour downsample of a flat buffer.

    Target pixel ``x`` samples source column ``min(w - 1, floor(x / tw * w))``
    (rows likewise). A scale of ~1 returns the buffer unchanged.

    Returns
    -------
    tuple
        (flat buffer, target width, target height)
    """
    data = as_buffer(data).ravel()
    tw, th = preview_size(width, height, scale)
    if (tw, th) == (width, height):
        return data, width, height
    xs = np.minimum(width - 1, np.floor(np.arange(tw) / tw * width).astype(np.intp))
    ys = np.minimum(height - 1, np.floor(np.arange(th) / th * height).astype(np.intp))
    image = data.reshape(height, width)
    return np.ascontiguousarray(image[np.ix_(ys, xs)]).ravel(), tw, th


def lstar_to_luminance(l) -> np.ndarray:
    """
    Relative luminance Y of a [0, 1] lightness value mapped to L* = 100 * l.

    Inverse of the CIE L* curve: ``t = (L* + 16) / 116``, ``Y = t^3`` above
    ``6/29``, linear below.
    """
    delta = 6 / 29
    delta_sq = delta ** 2
    t = (np.clip(np.asarray(l, dtype=np.float64), 0.0, 1.0) * 100.0 + 16.0) / 116.0
    return np.where(t > delta, t ** 3, 3 * delta_sq * (t - 4 / 29))


def integrate_luminance(r, g, b, luminance, color_space: str, opacity: float = 1.0):
    """
    Rescale an RGB composite so its lightness follows a luminance layer.

    Parameters
    ----------
    r, g, b : np.ndarray
        Composite channels in [0, 1].
    luminance : np.ndarray
        Normalized luminance layer.
    color_space : {'hsl', 'hsv', 'lab'}
        'hsl' compares against relative luminance, 'hsv' against the max
        channel, 'lab' against relative luminance with the target taken
        through the L* curve.
    opacity : float
        Blend between the untouched composite (0) and the full rescale (1).

    Returns
    -------
    tuple of np.ndarray
        Rescaled (r, g, b), clamped to [0, 1].
    """
    r = np.asarray(r, dtype=np.float64)
    g = np.asarray(g, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    lum = np.clip(np.asarray(luminance, dtype=np.float64), 0.0, 1.0)

    if color_space == "hsv":
        current = np.maximum(np.maximum(r, g), b)
    else:
        wr, wg, wb = LUMA_WEIGHTS
        current = wr * r + wg * g + wb * b
    target = lstar_to_luminance(lum) if color_space == "lab" else lum

    with np.errstate(divide="ignore", invalid="ignore"):
        scale = np.where(current > CURRENT_LIGHTNESS_EPS, target / current, 1.0)
    alpha = min(1.0, max(0.0, float(opacity)))
    factor = (1.0 - alpha) + alpha * scale
    return tuple(
        np.where(np.isfinite(c * factor), np.clip(c * factor, 0.0, 1.0), 0.0).astype(np.float32)
        for c in (r, g, b)
    )


def to_rgba(r, g, b) -> np.ndarray:
    """Interleave three [0, 1] channels into a flat uint8 RGBA buffer (alpha 255)."""
    channels = [to_uint8(np.ravel(c)) for c in (r, g, b)]
    alpha = np.full(channels[0].shape, 255, dtype=np.uint8)
    return np.stack(channels + [alpha], axis=-1).ravel()


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


def _select_layers(request: RenderRequest) -> list[CompositeLayer]:
    size = request.width * request.height
    selected = []
    for layer in request.layers:
        if not layer.enabled or layer.buffer is None:
            continue
        if np.size(layer.buffer) != size:
            logger.debug(
                "Skipping layer %s: %d samples, expected %d", layer.id, np.size(layer.buffer), size
            )
            continue
        layer.validate()
        selected.append(layer)
    return selected


def _match_layers(working: list[_WorkingLayer], options: RenderOptions) -> None:
    if len(working) < 2 or not (options.auto_linear_match or options.auto_brightness_balance):
        return
    reference = working[0].data
    for item in working[1:]:
        data = item.data
        if options.auto_linear_match and item.layer.use_for_linear_match:
            data, params = linear_match_to_reference(
                data, reference, sample_step=MATCH_SAMPLE_STEP, clamp_to_positive=True
            )
            logger.debug("Layer %s linear match: %s", item.layer.id, params)
        if options.auto_brightness_balance and item.layer.use_for_brightness_balance:
            gain = estimate_brightness_gain(data, reference, sample_step=MATCH_SAMPLE_STEP)
            data = apply_brightness_gain(data, gain.gain, clamp_to_positive=True)
            logger.debug("Layer %s brightness gain: %.4g", item.layer.id, gain.gain)
        item.data = data


def _normalize_layers(working: list[_WorkingLayer], linked: bool) -> None:
    shared = compute_extent(np.concatenate([item.data for item in working])) if linked else None
    for item in working:
        extent = shared if linked else compute_extent(item.data)
        item.data = normalize_to_unit(item.data, extent)


def _tinted(item: _WorkingLayer) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    return tuple((item.data * np.float32(t)).astype(np.float32) for t in item.layer.tint)


def _render_stages(request: RenderRequest) -> Generator[float, None, RenderResult]:
    options = request.options
    options.validate()
    width, height = request.width, request.height

    scale = 1.0
    if request.mode == "preview":
        scale = min(MAX_PREVIEW_SCALE, max(MIN_PREVIEW_SCALE, float(options.preview_scale)))
    out_w, out_h = preview_size(width, height, scale)
    n_pixels = out_w * out_h

    layers = _select_layers(request)
    if not layers:
        logger.info("No renderable layers; returning a blank %dx%d image", out_w, out_h)
        zeros = np.zeros(n_pixels, dtype=np.float32)
        return RenderResult(
            rgba=to_rgba(zeros, zeros, zeros), width=out_w, height=out_h,
            r=zeros, g=zeros.copy(), b=zeros.copy(),
        )

    working = [
        _WorkingLayer(layer, downsample_nearest(layer.buffer, width, height, scale)[0])
        for layer in layers
    ]
    yield 0.1  # downsample

    _match_layers(working, options)
    _normalize_layers(working, options.linked_stretch)
    yield 0.3  # match + normalize

    colour = [item for item in working if not item.layer.is_luminance]
    luminance = next((item for item in working if item.layer.is_luminance), None)

    if colour:
        r, g, b = (c.copy() for c in _tinted(colour[0]))
        for item in colour[1:]:
            src_r, src_g, src_b = _tinted(item)
            blend_scanline(r, g, b, src_r, src_g, src_b, item.layer.blend_mode, item.layer.opacity)
    else:
        # Luminance only: grey composite
        r, g, b = (luminance.data.copy() for _ in range(3))

    l_channel = luminance.data if luminance is not None else None
    if luminance is not None and colour:
        r, g, b = integrate_luminance(
            r, g, b, luminance.data, options.color_space, luminance.layer.opacity
        )
    logger.debug(
        "Composited %d colour layer(s)%s in %s space",
        len(colour), " + luminance" if luminance is not None else "", options.color_space,
    )
    yield 0.6  # compose

    pixel_math_error = None
    if options.apply_pixel_math:
        outcome = apply_pixel_math_program(
            PixelMathInput(
                width=out_w,
                height=out_h,
                r=r,
                g=g,
                b=b,
                layer_monos=[item.data for item in working],
                layer_rgbs=[None if item.layer.is_luminance else _tinted(item) for item in working],
            ),
            options.pixel_math,
        )
        r, g, b = outcome.r, outcome.g, outcome.b
        pixel_math_error = outcome.error
    yield 0.85  # pixel math

    r, g, b = _extract_preview(r, g, b, l_channel, out_w, out_h, options)
    yield 0.95  # extract

    rgba = to_rgba(r, g, b)
    logger.info("Rendered %dx%d composite from %d layer(s) (%s)", out_w, out_h, len(working), request.mode)
    return RenderResult(
        rgba=rgba,
        width=out_w,
        height=out_h,
        r=r,
        g=g,
        b=b,
        l=l_channel,
        pixel_math_error=pixel_math_error,
    )


def _extract_preview(r, g, b, l_channel, width: int, height: int, options: RenderOptions):
    mode = options.preview_mode
    if mode in ("r", "g", "b"):
        channel = {"r": r, "g": g, "b": b}[mode]
        return channel, channel.copy(), channel.copy()
    if l_channel is None or mode == "composite":
        return r, g, b
    if mode == "l":
        return l_channel, l_channel.copy(), l_channel.copy()

    # split: composite left of the split column (inclusive), luminance right
    split_x = int(round_half_up(width * options.split_position))
    columns = np.tile(np.arange(width), height)
    left = columns <= split_x
    return tuple(np.where(left, c, l_channel).astype(np.float32) for c in (r, g, b))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def render_composite(request: RenderRequest) -> RenderResult:
    """
    Render a composite synchronously.

    Parameters
    ----------
    request : RenderRequest
        Layers, frame size, options and mode ('full' or 'preview').

    Returns
    -------
    RenderResult
        RGBA bytes, the float channels and the output size. A pixel-math
        failure leaves the composite untouched and is reported in
        ``pixel_math_error``.
    """
    return run_stages(_render_stages(request))


async def render_composite_async(
    request: RenderRequest,
    on_progress: ProgressCallback | None = None,
    token: CancellationToken | None = None,
) -> RenderResult:
    """
    Render a composite on the running event loop.

    The token is checked before the first stage and between the downsample,
    match, compose, pixel-math and extract stages.

    Raises
    ------
    CancellationError
        If the token is cancelled; no partial result is returned.
    """
    return await run_stages_async(_render_stages(request), on_progress=on_progress, token=token)
