"""
Star detection for single-channel image buffers.

Pipeline:
1. Mesh background and global noise (median + robust spread per cell,
   bilinear interpolation between cell centres)
2. Optional Gaussian matched filter on the background-subtracted image
3. Thresholding at ``sigma_threshold * noise`` and connected components
4. Multi-level deblending of merged components (profiled strategies)
5. Shape measurement: centroid, flux, FWHM, ellipticity, SNR
6. Acceptance cuts, border exclusion, flux ranking and truncation

Two strategies share the pipeline. The legacy strategy (``profile=None`` or
``"legacy"``) is a plain 4-connected threshold segmentation measured with
isophotal moments. The profiled strategies add the matched filter,
deblending, Gaussian-windowed moments and shape cuts.

Both ``detect_stars`` and ``detect_stars_async`` run the same stage
generator, so they return identical detections for identical input.
"""

from __future__ import annotations

import logging
import math
from typing import Generator

import numpy as np
from astropy.stats import mad_std, sigma_clip
from scipy import ndimage
from skimage.segmentation import watershed

from .config import BackgroundEstimate, DetectedStar, StarDetectionConfig
from .runtime import CancellationToken, ProgressCallback, run_stages, run_stages_async
from .utils import as_image

logger = logging.getLogger(__name__)

FWHM_PER_SIGMA = 2.3548
EPS = 1e-8

# Legacy FWHM is measured over component pixels within this many pixels of the centroid
LEGACY_MOMENT_RADIUS = 10

# Sigma-clipped cells keep their clipped statistics only if this many samples survive
MIN_CLIPPED_SAMPLES = 8
MIN_CLIPPED_FRACTION = 0.35

DEFAULT_CHUNK_ROWS = 24
MIN_CHUNK_ROWS = 8

_STRUCTURE = {
    4: ndimage.generate_binary_structure(2, 1),
    8: ndimage.generate_binary_structure(2, 2),
}


# ---------------------------------------------------------------------------
# Background
# ---------------------------------------------------------------------------


def robust_cell_stats(values: np.ndarray, sigma_clip_iters: int = 0) -> tuple[float, float]:
    """
    Median and robust standard deviation of a block of samples.

    Parameters
    ----------
    values : np.ndarray
        Samples (any shape). Non-finite samples are ignored.
    sigma_clip_iters : int, default 0
        Number of 3-sigma clipping iterations around the median. The clipped
        set is only used if at least ``max(8, 35%)`` of the samples survive.

    Returns
    -------
    tuple[float, float]
        (median, sigma) with sigma = 1.4826 * MAD; (0, 0) for an empty block.
    """
    data = np.asarray(values, dtype=np.float64).ravel()
    data = data[np.isfinite(data)]
    if data.size == 0:
        return 0.0, 0.0

    if sigma_clip_iters > 0:
        clipped = sigma_clip(
            data,
            sigma=3.0,
            maxiters=sigma_clip_iters,
            cenfunc="median",
            stdfunc="mad_std",
            masked=False,
        )
        if clipped.size >= max(MIN_CLIPPED_SAMPLES, int(data.size * MIN_CLIPPED_FRACTION)):
            data = clipped

    median = float(np.median(data))
    sigma = float(mad_std(data))
    return median, (sigma if np.isfinite(sigma) else 0.0)


def _interpolate_mesh(cells: np.ndarray, width: int, height: int, mesh_size: int) -> np.ndarray:
    """Bilinear interpolation of per-cell values between cell centres, held at the edges."""
    ny, nx = cells.shape

    def _axis(n_pixels: int, n_cells: int):
        f = (np.arange(n_pixels) + 0.5) / mesh_size - 0.5
        i0 = np.clip(np.floor(f).astype(np.intp), 0, n_cells - 1)
        i1 = np.minimum(n_cells - 1, i0 + 1)
        t = np.clip(f - i0, 0.0, 1.0)
        return i0, i1, t

    y0, y1, ty = _axis(height, ny)
    x0, x1, tx = _axis(width, nx)
    top = cells[y0][:, x0] * (1 - tx) + cells[y0][:, x1] * tx
    bottom = cells[y1][:, x0] * (1 - tx) + cells[y1][:, x1] * tx
    return (top * (1 - ty)[:, None] + bottom * ty[:, None]).astype(np.float32)


def _background_stages(
    image: np.ndarray,
    mesh_size: int,
    sigma_clip_iters: int,
    progress: tuple[float, float] = (0.0, 1.0),
) -> Generator[float, None, BackgroundEstimate]:
    height, width = image.shape
    nx = max(1, math.ceil(width / mesh_size))
    ny = max(1, math.ceil(height / mesh_size))
    medians = np.zeros((ny, nx), dtype=np.float64)
    sigmas = np.zeros((ny, nx), dtype=np.float64)

    start, stop = progress
    for my in range(ny):
        band = image[my * mesh_size:(my + 1) * mesh_size]
        for mx in range(nx):
            cell = band[:, mx * mesh_size:(mx + 1) * mesh_size]
            medians[my, mx], sigmas[my, mx] = robust_cell_stats(cell, sigma_clip_iters)
        yield start + (stop - start) * (my + 1) / ny

    background = _interpolate_mesh(medians, width, height, mesh_size)

    good = sigmas[np.isfinite(sigmas) & (sigmas > 0)]
    noise = float(np.median(good)) if good.size else 1.0
    if not np.isfinite(noise) or noise <= 0:
        noise = 1.0

    logger.debug(
        "Background mesh %dx%d (cell=%d, clip_iters=%d): noise=%.4g",
        nx, ny, mesh_size, sigma_clip_iters, noise,
    )
    return BackgroundEstimate(background=background, noise=noise)


def estimate_background(
    pixels,
    width: int,
    height: int,
    mesh_size: int = 64,
    sigma_clip_iters: int = 2,
) -> BackgroundEstimate:
    """
    Estimate a smooth background surface and a global noise level.

    The image is divided into ``mesh_size`` cells; each cell contributes its
    median and robust sigma. The background is bilinearly interpolated
    between cell centres and the noise is the median of the positive cell
    sigmas. A flat image yields its own value as background and noise = 1.

    Returns
    -------
    BackgroundEstimate
        ``background`` has shape (height, width).
    """
    image = as_image(pixels, width, height)
    return run_stages(_background_stages(image, max(1, int(mesh_size)), int(sigma_clip_iters)))


# ---------------------------------------------------------------------------
# Shape measurement
# ---------------------------------------------------------------------------


def _shape_from_moments(sxx: float, syy: float, sxy: float) -> tuple[float, float, float, float]:
    """Return (fwhm, ellipticity, roundness, theta) from a second-moment matrix."""
    trace = sxx + syy
    det_term = max(0.0, trace * trace / 4.0 - (sxx * syy - sxy * sxy))
    root = math.sqrt(det_term)
    lambda1 = max(EPS, trace / 2.0 + root)
    lambda2 = max(EPS, trace / 2.0 - root)
    sigma_major = math.sqrt(lambda1)
    sigma_minor = math.sqrt(lambda2)
    fwhm = FWHM_PER_SIGMA * math.sqrt((lambda1 + lambda2) / 2.0)
    roundness = min(1.0, max(0.0, sigma_minor / (sigma_major + EPS)))
    theta = 0.5 * math.atan2(2.0 * sxy, sxx - syy)
    return fwhm, 1.0 - roundness, roundness, theta


def _isophotal_moments(xs: np.ndarray, ys: np.ndarray, vals: np.ndarray, flux: float):
    cx = float((xs * vals).sum() / flux)
    cy = float((ys * vals).sum() / flux)
    dx = xs - cx
    dy = ys - cy
    sxx = float((dx * dx * vals).sum() / flux)
    syy = float((dy * dy * vals).sum() / flux)
    sxy = float((dx * dy * vals).sum() / flux)
    return cx, cy, sxx, syy, sxy


def windowed_moments(
    bgsub: np.ndarray,
    x: float,
    y: float,
    window_sigma: float,
    segments: np.ndarray | None = None,
    segment_id: int = 0,
    passes: int = 2,
    max_iter: int = 16,
) -> tuple[float, float, np.ndarray] | None:
    """
    Gaussian-windowed centroid and intrinsic second moments of a source.

    The centroid is iterated with a circular Gaussian window (the windowed
    position estimator used by SExtractor/SEP). The windowed second-moment
    matrix ``Cw`` is then corrected for the window, ``C = (Cw^-1 - I/s^2)^-1``,
    which is exact for a Gaussian profile. The window is re-sized to the
    measured width and the measurement repeated ``passes`` times.

    Parameters
    ----------
    bgsub : np.ndarray
        Background-subtracted image (2D).
    x, y : float
        Starting centroid.
    window_sigma : float
        Initial window sigma in pixels.
    segments : np.ndarray, optional
        Segmentation map; pixels owned by a segment other than
        ``segment_id`` (neighbouring sources) get zero weight.
    segment_id : int
        Segment of the source being measured.
    passes : int, default 2
        Number of window re-sizing passes.
    max_iter : int, default 16
        Centroid iterations per pass.

    Returns
    -------
    tuple or None
        (x, y, covariance 2x2) or None when the window correction is not
        positive definite or the weighted flux is not positive. Non-finite
        pixels carry zero weight.
    """
    height, width = bgsub.shape
    s = max(0.5, float(window_sigma))
    cov = None

    for _ in range(passes):
        radius = int(math.ceil(4.0 * s)) + 1
        row, col = int(math.floor(y)), int(math.floor(x))
        r0, r1 = max(0, row - radius), min(height, row + radius + 1)
        c0, c1 = max(0, col - radius), min(width, col + radius + 1)
        if r1 <= r0 or c1 <= c0:
            return None
        stamp = bgsub[r0:r1, c0:c1].astype(np.float64)
        finite = np.isfinite(stamp)
        if segments is not None:
            seg = segments[r0:r1, c0:c1]
            mask = finite & ((seg == 0) | (seg == segment_id))
        else:
            mask = finite
        stamp = np.where(finite, stamp, 0.0)
        yy, xx = np.mgrid[r0:r1, c0:c1]
        inv_two_s2 = 1.0 / (2.0 * s * s)

        for _ in range(max_iter):
            dx = xx - x
            dy = yy - y
            wi = np.exp(-(dx * dx + dy * dy) * inv_two_s2) * mask * stamp
            norm = wi.sum()
            if not norm > 0:
                return None
            step_x = 2.0 * (wi * dx).sum() / norm
            step_y = 2.0 * (wi * dy).sum() / norm
            if not (math.isfinite(step_x) and math.isfinite(step_y)):
                return None
            if abs(step_x) > s or abs(step_y) > s:
                return None
            x += step_x
            y += step_y
            if step_x * step_x + step_y * step_y < 1e-8:
                break

        dx = xx - x
        dy = yy - y
        wi = np.exp(-(dx * dx + dy * dy) * inv_two_s2) * mask * stamp
        norm = wi.sum()
        if not norm > 0:
            return None
        mxx = (wi * dx * dx).sum() / norm
        myy = (wi * dy * dy).sum() / norm
        mxy = (wi * dx * dy).sum() / norm
        measured = np.array([[mxx, mxy], [mxy, myy]])
        if np.linalg.det(measured) <= EPS:
            return None
        corrected = np.linalg.inv(measured) - np.eye(2) / (s * s)
        if np.any(np.linalg.eigvalsh(corrected) <= EPS):
            return None
        cov = np.linalg.inv(corrected)
        s = max(0.5, math.sqrt(max(EPS, np.trace(cov) / 2.0)))

    if cov is None:
        return None
    return x, y, cov


# ---------------------------------------------------------------------------
# Deblending
# ---------------------------------------------------------------------------


def deblend_component(
    values: np.ndarray,
    mask: np.ndarray,
    threshold: float,
    nlevels: int,
    min_contrast: float,
    connectivity: int = 8,
) -> list[tuple[np.ndarray, bool]]:
    """
    Split one connected component into separate sources.

    The component is re-thresholded at ``nlevels - 1`` exponentially spaced
    levels between the detection threshold and its peak. At each level the
    sub-components (branches) are counted. Each branch seeds a watershed
    basin over the whole component, and a branch is significant when the
    flux of its basin is at least ``min_contrast`` of the component flux.
    The level with the most significant branches (at least two) seeds the
    final watershed that partitions every component pixel among them.

    Parameters
    ----------
    values : np.ndarray
        Detection image cut-out around the component.
    mask : np.ndarray
        Boolean component mask, same shape as ``values``.
    threshold : float
        Detection threshold (lowest level).
    nlevels : int
        Number of deblending levels; 1 disables deblending.
    min_contrast : float
        Minimum basin flux of a branch as a fraction of the component flux.
    connectivity : int, default 8
        Pixel connectivity (4 or 8).

    Returns
    -------
    list[tuple[np.ndarray, bool]]
        (part mask, deblended flag) for every resulting source.
    """
    if nlevels <= 1 or threshold <= 0:
        return [(mask, False)]

    inside = np.where(mask, values, 0.0).astype(np.float64)
    positive = np.maximum(inside, 0.0)
    total = positive.sum()
    peak = inside[mask].max() if mask.any() else 0.0
    if total <= 0 or peak <= threshold:
        return [(mask, False)]

    structure = _STRUCTURE[connectivity]
    ws_connectivity = 1 if connectivity == 4 else 2
    levels = threshold * (peak / threshold) ** (np.arange(1, nlevels) / nlevels)

    best_branches = None
    best_keep = None
    for level in levels:
        branches, count = ndimage.label(mask & (inside >= level), structure=structure)
        if count < 2:
            continue
        basins = watershed(-inside, branches, mask=mask, connectivity=ws_connectivity)
        fluxes = ndimage.sum(positive, basins, index=np.arange(1, count + 1))
        keep = np.flatnonzero(np.asarray(fluxes) >= min_contrast * total) + 1
        if keep.size >= 2 and (best_keep is None or keep.size > best_keep.size):
            best_branches, best_keep = branches, keep

    if best_keep is None:
        return [(mask, False)]

    markers = np.zeros(mask.shape, dtype=np.int32)
    for k, branch in enumerate(best_keep, start=1):
        markers[best_branches == branch] = k
    parts = watershed(-inside, markers, mask=mask, connectivity=ws_connectivity)
    return [(parts == k, True) for k in range(1, best_keep.size + 1)]


# ---------------------------------------------------------------------------
# Detection strategies
# ---------------------------------------------------------------------------


def _component_pixels(labels: np.ndarray, sl: tuple[slice, slice], label: int):
    ys, xs = np.nonzero(labels[sl] == label)
    return ys + sl[0].start, xs + sl[1].start


def _in_border(x: float, y: float, width: int, height: int, margin: int) -> bool:
    return x < margin or x >= width - margin or y < margin or y >= height - margin


def _measure_legacy(
    xs: np.ndarray,
    ys: np.ndarray,
    bgsub: np.ndarray,
    noise: float,
    cfg: StarDetectionConfig,
) -> DetectedStar | None:
    vals = bgsub[ys, xs].astype(np.float64)
    area = int(vals.size)
    if area < cfg.min_area or area > cfg.max_area:
        return None

    flux = float(vals.sum())
    if flux > 0:
        cx = float((xs * vals).sum() / flux)
        cy = float((ys * vals).sum() / flux)
    else:
        cx = cy = 0.0

    near = (
        (ys >= math.floor(cy) - LEGACY_MOMENT_RADIUS)
        & (ys <= math.ceil(cy) + LEGACY_MOMENT_RADIUS)
        & (xs >= math.floor(cx) - LEGACY_MOMENT_RADIUS)
        & (xs <= math.ceil(cx) + LEGACY_MOMENT_RADIUS)
    )
    dx = xs[near] - cx
    dy = ys[near] - cy
    wv = vals[near]
    if flux > 0:
        sigma2 = float(((dx * dx + dy * dy) * wv).sum() / flux)
        sxx = float((dx * dx * wv).sum() / flux)
        syy = float((dy * dy * wv).sum() / flux)
        sxy = float((dx * dy * wv).sum() / flux)
    else:
        sigma2, sxx, syy, sxy = 1.0, 0.5, 0.5, 0.0
    fwhm = FWHM_PER_SIGMA * math.sqrt(max(0.1, sigma2))
    if fwhm > cfg.max_fwhm:
        return None
    if _in_border(cx, cy, bgsub.shape[1], bgsub.shape[0], cfg.border_margin):
        return None

    _, ellipticity, roundness, theta = _shape_from_moments(sxx, syy, sxy)
    peak = max(0.0, float(vals.max()))
    return DetectedStar(
        x=cx,
        y=cy,
        area=area,
        flux=flux,
        fwhm=fwhm,
        ellipticity=ellipticity,
        snr=flux / (math.sqrt(area) * max(EPS, noise)),
        peak=peak,
        roundness=roundness,
        theta=theta,
        sharpness=peak / (flux / area + EPS) if flux > 0 else 0.0,
    )


def _measure_profiled(
    xs: np.ndarray,
    ys: np.ndarray,
    bgsub: np.ndarray,
    segments: np.ndarray,
    segment_id: int,
    noise: float,
    deblended: bool,
) -> DetectedStar | None:
    if xs.size == 0:
        return None
    vals = np.fmax(bgsub[ys, xs].astype(np.float64), 0.0)
    flux = float(vals.sum())
    if flux <= 0:
        return None

    cx, cy, sxx, syy, sxy = _isophotal_moments(xs, ys, vals, flux)
    iso_sigma = math.sqrt(max(EPS, (sxx + syy) / 2.0))

    refined = windowed_moments(bgsub, cx, cy, iso_sigma, segments, segment_id)
    if refined is not None:
        wx, wy, cov = refined
        if abs(wx - cx) <= 2.0 and abs(wy - cy) <= 2.0:
            cx, cy = wx, wy
            sxx, syy, sxy = float(cov[0, 0]), float(cov[1, 1]), float(cov[0, 1])

    fwhm, ellipticity, roundness, theta = _shape_from_moments(sxx, syy, sxy)
    area = int(vals.size)
    peak = float(vals.max())
    return DetectedStar(
        x=cx,
        y=cy,
        area=area,
        flux=flux,
        fwhm=fwhm,
        ellipticity=ellipticity,
        snr=flux / (math.sqrt(area) * max(EPS, noise)),
        peak=peak,
        roundness=roundness,
        theta=theta,
        sharpness=peak / (flux / area + EPS),
        deblended=deblended,
    )


def _accept(star: DetectedStar, cfg: StarDetectionConfig, width: int, height: int) -> bool:
    if star.area < cfg.min_area or star.area > cfg.max_area:
        return False
    if star.fwhm < cfg.min_fwhm or star.fwhm > cfg.max_fwhm:
        return False
    if star.ellipticity > cfg.max_ellipticity:
        return False
    if star.sharpness < cfg.min_sharpness or star.sharpness > cfg.max_sharpness:
        return False
    if cfg.peak_max is not None and star.peak > cfg.peak_max:
        return False
    if star.snr < cfg.snr_min:
        return False
    return not _in_border(star.x, star.y, width, height, cfg.border_margin)


def rank_stars(stars: list[DetectedStar], max_stars: int) -> list[DetectedStar]:
    """Sort by flux descending (ties by row, then column) and keep the top ``max_stars``."""
    ordered = sorted(stars, key=lambda s: (-s.flux, s.y, s.x))
    return ordered[:max(0, int(max_stars))]


def _row_progress(row: int, first: int, last: int, start: float, stop: float) -> float:
    span = max(1, last - first)
    return start + (stop - start) * min(1.0, max(0.0, (row - first) / span))


def _matched_filter_stages(
    bgsub: np.ndarray,
    sigma: float,
    chunk_rows: int,
    progress: tuple[float, float],
) -> Generator[float, None, np.ndarray]:
    """Separable Gaussian filter computed in row bands with halo rows."""
    height = bgsub.shape[0]
    sigma = max(0.3, sigma)
    halo = int(3.0 * sigma + 0.5)
    out = np.empty_like(bgsub)
    start, stop = progress
    for r0 in range(0, height, chunk_rows):
        r1 = min(height, r0 + chunk_rows)
        h0, h1 = max(0, r0 - halo), min(height, r1 + halo)
        filtered = ndimage.gaussian_filter(bgsub[h0:h1], sigma=sigma, mode="nearest", truncate=3.0)
        out[r0:r1] = filtered[r0 - h0:r0 - h0 + (r1 - r0)]
        yield start + (stop - start) * r1 / height
    return out


def _detection_stages(
    image: np.ndarray,
    cfg: StarDetectionConfig,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
) -> Generator[float, None, list[DetectedStar]]:
    height, width = image.shape
    if image.size == 0:
        return []

    estimate = yield from _background_stages(
        image, cfg.mesh_size, cfg.sigma_clip_iters, progress=(0.0, 0.04)
    )
    noise = estimate.noise

    bgsub = np.empty_like(image, dtype=np.float32)
    for r0 in range(0, height, chunk_rows):
        r1 = min(height, r0 + chunk_rows)
        bgsub[r0:r1] = image[r0:r1] - estimate.background[r0:r1]
        yield 0.04 + 0.16 * r1 / height

    legacy = cfg.is_legacy
    if not legacy and cfg.apply_matched_filter and cfg.filter_fwhm > 0:
        detect = yield from _matched_filter_stages(
            bgsub, cfg.filter_fwhm / FWHM_PER_SIGMA, chunk_rows, progress=(0.22, 0.38)
        )
    else:
        detect = bgsub
        yield 0.22

    margin = cfg.border_margin
    interior = np.zeros(image.shape, dtype=bool)
    interior[margin:max(margin, height - margin), margin:max(margin, width - margin)] = True

    if legacy:
        threshold = cfg.sigma_threshold * noise
        with np.errstate(invalid="ignore"):
            above = detect >= threshold
        labels, n_labels = ndimage.label(above, structure=_STRUCTURE[4])
        seeds = ndimage.find_objects(np.where(interior, labels, 0), max_label=n_labels)
    else:
        threshold = cfg.sigma_threshold * max(noise, EPS)
        with np.errstate(invalid="ignore"):
            above = (detect >= threshold) & interior
        labels, n_labels = ndimage.label(above, structure=_STRUCTURE[cfg.connectivity])
        seeds = ndimage.find_objects(labels, max_label=n_labels)
    objects = ndimage.find_objects(labels, max_label=n_labels)
    yield 0.4

    logger.debug(
        "Segmentation: threshold=%.4g noise=%.4g components=%d (%s)",
        threshold, noise, n_labels, "legacy" if legacy else cfg.profile,
    )

    # Components in scan order of their first interior row
    order = sorted(
        (seed[0].start, label)
        for label, seed in enumerate(seeds, start=1)
        if seed is not None
    )

    segments = labels.copy()
    next_segment = n_labels + 1
    stars: list[DetectedStar] = []
    first_row, last_row = margin, height - margin
    next_checkpoint = first_row + chunk_rows

    for seed_row, label in order:
        while seed_row >= next_checkpoint:
            yield _row_progress(next_checkpoint, first_row, last_row, 0.4, 0.92)
            next_checkpoint += chunk_rows

        sl = objects[label - 1]
        if legacy:
            ys, xs = _component_pixels(labels, sl, label)
            star = _measure_legacy(xs, ys, bgsub, noise, cfg)
            if star is not None:
                stars.append(star)
            continue

        component = labels[sl] == label
        parts = deblend_component(
            detect[sl],
            component,
            threshold,
            cfg.deblend_nlevels,
            cfg.deblend_min_contrast,
            cfg.connectivity,
        )
        part_ids = [label]
        if len(parts) > 1:
            part_ids = []
            for part_mask, _ in parts:
                segments[sl][part_mask] = next_segment
                part_ids.append(next_segment)
                next_segment += 1

        for (part_mask, deblended), part_id in zip(parts, part_ids):
            ys, xs = np.nonzero(part_mask)
            ys = ys + sl[0].start
            xs = xs + sl[1].start
            star = _measure_profiled(xs, ys, bgsub, segments, part_id, noise, deblended)
            if star is not None and _accept(star, cfg, width, height):
                stars.append(star)

    yield 0.92
    ranked = rank_stars(stars, cfg.max_stars)
    yield 0.94
    logger.debug("Detected %d stars (%d before truncation)", len(ranked), len(stars))
    return ranked


def detect_stars(
    pixels,
    width: int,
    height: int,
    config: StarDetectionConfig | None = None,
) -> list[DetectedStar]:
    """
    Detect point sources in a single image buffer.

    Parameters
    ----------
    pixels : array-like
        Flat row-major buffer of length ``width*height`` or a 2D array.
    width, height : int
        Image dimensions.
    config : StarDetectionConfig, optional
        Detection parameters. Defaults to the legacy strategy.

    Returns
    -------
    list[DetectedStar]
        Detections sorted by flux descending, at most ``max_stars``.
    """
    image = as_image(pixels, width, height)
    cfg = (config or StarDetectionConfig()).resolve()
    cfg.validate()
    stars = run_stages(_detection_stages(image, cfg, DEFAULT_CHUNK_ROWS))
    logger.info("Detected %d stars in %dx%d image (profile=%s)", len(stars), width, height, cfg.profile or "legacy")
    return stars


async def detect_stars_async(
    pixels,
    width: int,
    height: int,
    config: StarDetectionConfig | None = None,
    on_progress: ProgressCallback | None = None,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
    token: CancellationToken | None = None,
) -> list[DetectedStar]:
    """
    Chunked, cancellable variant of ``detect_stars``.

    The image is processed in bands of ``chunk_rows`` rows (at least 8).
    Between bands the coroutine yields to the event loop, reports progress
    and checks ``token``.

    Parameters
    ----------
    on_progress : callable, optional
        Receives non-decreasing ratios in [0, 1]; the last call on success
        is exactly 1.0.
    chunk_rows : int, default 24
        Rows per band.
    token : CancellationToken, optional
        Cancellation token.

    Returns
    -------
    list[DetectedStar]
        Same detections as ``detect_stars`` for the same input.

    Raises
    ------
    CancellationError
        If the token is cancelled before or during detection. No partial
        result is delivered.
    """
    if token is not None:
        token.raise_if_cancelled()
    image = as_image(pixels, width, height)
    cfg = (config or StarDetectionConfig()).resolve()
    cfg.validate()
    rows = max(MIN_CHUNK_ROWS, int(chunk_rows))
    stars = await run_stages_async(_detection_stages(image, cfg, rows), on_progress, token)
    logger.info("Detected %d stars in %dx%d image (profile=%s)", len(stars), width, height, cfg.profile or "legacy")
    return stars
