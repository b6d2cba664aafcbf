"""
Frame quality assessment.

Provides fast, explainable, deterministic quality metrics for frame
selection and weighting. The 0-100 score combines four sub-scores:

- FWHM: 100 at ``fwhm_best`` falling linearly to 0 at ``fwhm_worst``;
- SNR: ``20 * log10(snr)`` clipped to [0, 100];
- star count: ``count * star_count_scale`` capped at 100;
- roundness: FWHM consistency across stars, times 100.
"""

from __future__ import annotations

import logging
from typing import Generator

import numpy as np

from .config import DetectedStar, FrameQuality, QualityConfig
from .runtime import CancellationToken, ProgressCallback, run_stages, run_stages_async
from .stars import DEFAULT_CHUNK_ROWS, _detection_stages
from .utils import as_image, estimate_noise_mad, finite_values, round_half_up

logger = logging.getLogger(__name__)

# Below this many stars the FWHM spread is not meaningful
MIN_STARS_FOR_ROUNDNESS = 5
NO_FWHM_SCORE = 50.0


def fwhm_score(fwhm: float, best: float = 1.5, worst: float = 7.5) -> float:
    """Linear 100 -> 0 score between ``best`` and ``worst``; 50 when unknown."""
    if not np.isfinite(fwhm) or fwhm <= 0:
        return NO_FWHM_SCORE
    return float(np.clip(100.0 * (1.0 - (fwhm - best) / (worst - best)), 0.0, 100.0))


def snr_score(snr: float) -> float:
    if not np.isfinite(snr) or snr <= 0:
        return 0.0
    return float(np.clip(20.0 * np.log10(snr), 0.0, 100.0))


def fwhm_roundness(stars: list[DetectedStar]) -> float:
    """1 - coefficient of variation of the stars' FWHM (1 for fewer than 5 stars)."""
    if len(stars) < MIN_STARS_FOR_ROUNDNESS:
        return 1.0
    fwhm = np.array([s.fwhm for s in stars], dtype=np.float64)
    mean = fwhm.mean()
    if mean <= 0:
        return 1.0
    return float(np.clip(1.0 - fwhm.std() / mean, 0.0, 1.0))


def score_metrics(
    snr: float,
    star_count: int,
    median_fwhm: float,
    roundness: float,
    config: QualityConfig | None = None,
) -> float:
    """Weighted 0-100 composite score, rounded to an integer value."""
    cfg = config or QualityConfig()
    weights = np.array(
        [cfg.weight_fwhm, cfg.weight_snr, cfg.weight_star_count, cfg.weight_roundness],
        dtype=np.float64,
    )
    scores = np.array([
        fwhm_score(median_fwhm, cfg.fwhm_best, cfg.fwhm_worst),
        snr_score(snr),
        min(100.0, star_count * cfg.star_count_scale),
        100.0 * roundness,
    ])
    return float(round_half_up(float(np.dot(weights / weights.sum(), scores))))


def _quality_stages(
    image: np.ndarray,
    config: QualityConfig,
    stars: list[DetectedStar] | None,
    index: int,
) -> Generator[float, None, FrameQuality]:
    samples = finite_values(image)
    background_median = float(np.median(samples)) if samples.size else 0.0
    noise = estimate_noise_mad(samples) if samples.size else 0.0
    yield 0.05

    if not stars:
        detection = config.detection.resolve()
        detection.validate()
        stars = yield from _detection_stages(image, detection, DEFAULT_CHUNK_ROWS)

    star_count = len(stars)
    if star_count:
        median_fwhm = float(np.median([s.fwhm for s in stars]))
        median_peak = float(np.median([s.peak for s in stars]))
    else:
        median_fwhm = 0.0
        median_peak = 0.0
    snr = median_peak / noise if noise > 0 else 0.0
    roundness = fwhm_roundness(stars)
    score = score_metrics(snr, star_count, median_fwhm, roundness, config)

    logger.debug(
        "Frame %d: stars=%d fwhm=%.2f snr=%.1f roundness=%.2f -> score=%.0f",
        index, star_count, median_fwhm, snr, roundness, score,
    )
    return FrameQuality(
        background_median=background_median,
        noise=noise,
        snr=snr,
        star_count=star_count,
        median_fwhm=median_fwhm,
        roundness=roundness,
        score=score,
        index=index,
    )


def evaluate_frame_quality(
    pixels,
    width: int,
    height: int,
    config: QualityConfig | None = None,
    stars: list[DetectedStar] | None = None,
    index: int = 0,
) -> FrameQuality:
    """
    Compute quality metrics for a single frame.

    Parameters
    ----------
    pixels : array-like
        Flat row-major buffer or (height, width) array.
    width, height : int
        Frame size.
    config : QualityConfig, optional
        Score weights and the detector used when ``stars`` is not given.
    stars : list[DetectedStar], optional
        Precomputed detections; detection runs when absent or empty.
    index : int, default 0
        Frame index recorded in the result.

    Returns
    -------
    FrameQuality
        Metrics and the 0-100 score (higher is better).
    """
    cfg = config or QualityConfig()
    cfg.validate()
    image = as_image(pixels, width, height)
    return run_stages(_quality_stages(image, cfg, stars, index))


async def evaluate_frame_quality_async(
    pixels,
    width: int,
    height: int,
    config: QualityConfig | None = None,
    stars: list[DetectedStar] | None = None,
    index: int = 0,
    on_progress: ProgressCallback | None = None,
    token: CancellationToken | None = None,
) -> FrameQuality:
    """``evaluate_frame_quality`` with progress reporting and cancellation."""
    if token is not None:
        token.raise_if_cancelled()
    cfg = config or QualityConfig()
    cfg.validate()
    image = as_image(pixels, width, height)
    return await run_stages_async(_quality_stages(image, cfg, stars, index), on_progress, token)


def rank_frames(qualities: list[FrameQuality]) -> list[FrameQuality]:
    """
    Sort frames by score, best first.

    The sort is stable, so frames with equal scores keep their input order.
    """
    ranked = sorted(qualities, key=lambda q: q.score, reverse=True)
    if ranked:
        logger.info(
            "Ranked %d frames. Best: %.0f, Worst: %.0f",
            len(ranked), ranked[0].score, ranked[-1].score,
        )
    return ranked


def select_frames(
    qualities: list[FrameQuality],
    keep_fraction: float = 0.92,
) -> tuple[list[FrameQuality], list[FrameQuality]]:
    """
    Select top frames based on quality scores.

    Parameters
    ----------
    qualities : list[FrameQuality]
        Frame metrics in any order.
    keep_fraction : float, default 0.92
        Fraction of frames to keep; at least one frame is always kept.

    Returns
    -------
    tuple[list[FrameQuality], list[FrameQuality]]
        (kept, rejected), each ranked best first.
    """
    ranked = rank_frames(qualities)
    n_total = len(ranked)
    if n_total == 0:
        return [], []
    n_keep = max(1, int(n_total * keep_fraction))

    kept = ranked[:n_keep]
    rejected = ranked[n_keep:]

    logger.info(
        "Selected %d/%d frames (%.1f%%), rejected %d",
        n_keep,
        n_total,
        100 * n_keep / n_total,
        len(rejected),
    )
    return kept, rejected


def quality_to_weights(qualities: list[FrameQuality]) -> np.ndarray:
    """
    Stacking weights proportional to score.

    Each weight is ``score / max(score)``; when the best score is 0 every
    frame gets weight 1.
    """
    scores = np.array([q.score for q in qualities], dtype=np.float64)
    if scores.size == 0:
        return scores
    best = scores.max()
    if best <= 0:
        return np.ones_like(scores)
    return scores / best
