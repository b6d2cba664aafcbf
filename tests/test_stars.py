"""
Tests for the stars module.

Tests cover:
- Background and noise estimation
- Legacy detection, border exclusion and truncation
- Profile presets and deblending
- Async detection progress and cancellation
- Detection accuracy on a synthetic field
"""

import asyncio

import numpy as np
import pytest

from astrocomp.config import StarDetectionConfig
from astrocomp.errors import CancellationError, ValidationError
from astrocomp.runtime import CancellationToken
from astrocomp.stars import detect_stars, detect_stars_async, estimate_background, rank_stars


def _square_field(squares, size=40):
    image = np.zeros((size, size), dtype=np.float32)
    for x, y, value in squares:
        image[y - 1:y + 2, x - 1:x + 2] = value
    return image


LEGACY_SMALL = StarDetectionConfig(sigma_threshold=3, min_area=3, max_area=50, border_margin=8)


class TestBackground:
    """Tests for background estimation."""

    def test_uniform_image(self):
        """A flat image is its own background with unit noise."""
        image = np.full(16 * 16, 12, dtype=np.float32)
        estimate = estimate_background(image, 16, 16, mesh_size=8)
        assert estimate.background.shape == (16, 16)
        assert np.allclose(estimate.background, 12)
        assert estimate.noise == 1.0

    def test_noise_level(self):
        """Noise follows the Gaussian sigma of the sky."""
        np.random.seed(0)
        image = np.random.normal(50, 4, (128, 128)).astype(np.float32)
        estimate = estimate_background(image, 128, 128, mesh_size=32, sigma_clip_iters=2)
        assert abs(estimate.noise - 4) < 0.5
        assert abs(float(np.median(estimate.background)) - 50) < 0.5


class TestLegacyDetection:
    """Tests for the default (legacy) strategy."""

    def test_border_star_rejected(self):
        """Only the interior star survives the border margin."""
        image = _square_field([(20, 20, 20), (1, 20, 20)])
        stars = detect_stars(image.ravel(), 40, 40, LEGACY_SMALL)
        assert len(stars) == 1
        assert abs(stars[0].x - 20) < 1
        assert abs(stars[0].y - 20) < 1
        assert stars[0].area == 9

    def test_max_stars_keeps_brightest(self):
        """Truncation keeps the highest flux first."""
        image = _square_field([(12, 12, 20), (27, 12, 40), (20, 27, 30)])
        cfg = StarDetectionConfig(
            sigma_threshold=3, min_area=3, max_area=50, border_margin=8, max_stars=2
        )
        stars = detect_stars(image, 40, 40, cfg)
        assert len(stars) == 2
        assert stars[0].flux > stars[1].flux
        assert abs(stars[0].x - 27) < 1
        assert abs(stars[1].y - 27) < 1

    def test_empty_field(self):
        """A field without sources yields no detections."""
        assert detect_stars(np.zeros(400, dtype=np.float32), 20, 20) == []

    def test_size_mismatch(self):
        """Buffer size must match width x height."""
        with pytest.raises(ValidationError):
            detect_stars(np.zeros(10), 4, 4)

    def test_detections_are_immutable(self):
        """DetectedStar values cannot be modified."""
        stars = detect_stars(_square_field([(20, 20, 20)]), 40, 40, LEGACY_SMALL)
        with pytest.raises(AttributeError):
            stars[0].x = 3.0


class TestRanking:
    """Tests for deterministic truncation."""

    def test_ties_broken_by_position(self):
        """Equal fluxes are ordered by row, then column."""
        image = _square_field([(27, 20, 20), (12, 20, 20), (20, 12, 20)])
        stars = detect_stars(image, 40, 40, LEGACY_SMALL)
        assert [(round(s.x), round(s.y)) for s in stars] == [(20, 12), (12, 20), (27, 20)]
        assert rank_stars(stars, 1) == stars[:1]


class TestProfiles:
    """Tests for profile presets and deblending."""

    def test_resolve_fills_preset(self):
        """Unset knobs come from the profile, explicit ones win."""
        cfg = StarDetectionConfig(profile="accurate", max_stars=5).resolve()
        assert cfg.max_stars == 5
        assert cfg.sigma_threshold == 4.5
        assert cfg.deblend_nlevels == 32
        assert cfg.apply_matched_filter is True

    def test_legacy_is_default(self):
        """No profile means the legacy strategy."""
        cfg = StarDetectionConfig().resolve()
        assert cfg.is_legacy
        assert cfg.connectivity == 4

    def test_invalid_config(self):
        """Out-of-range values are rejected."""
        with pytest.raises(ValueError):
            StarDetectionConfig(sigma_threshold=-1).validate()
        with pytest.raises(ValueError):
            StarDetectionConfig(profile="bogus").validate()

    def test_deblend_close_pair(self, gaussian_star):
        """Two blended stars are split by the profiled strategy only."""
        np.random.seed(3)
        image = np.random.normal(100, 2, (64, 64)).astype(np.float32)
        gaussian_star(image, 28, 32, 1.5, 800)
        gaussian_star(image, 36, 32, 1.5, 500)

        legacy = detect_stars(image, 64, 64)
        assert len(legacy) == 1

        stars = detect_stars(image, 64, 64, StarDetectionConfig(profile="balanced"))
        assert len(stars) == 2
        xs = sorted(s.x for s in stars)
        assert abs(xs[0] - 28) < 1
        assert abs(xs[1] - 36) < 1
        assert all(s.deblended for s in stars)

    @pytest.mark.parametrize("profile", ["balanced", "accurate"])
    @pytest.mark.parametrize("faint", [400, 160])
    def test_deblend_unequal_pair(self, gaussian_star, profile, faint):
        """A companion down to a fifth of its neighbour's brightness is split off."""
        np.random.seed(3)
        image = np.random.normal(100, 2, (64, 64)).astype(np.float32)
        gaussian_star(image, 28, 32, 1.5, 800)
        gaussian_star(image, 35, 32, 1.5, faint)

        assert len(detect_stars(image, 64, 64)) == 1

        stars = detect_stars(image, 64, 64, StarDetectionConfig(profile=profile))
        assert len(stars) == 2
        bright, companion = stars
        assert abs(bright.x - 28) < 1 and abs(bright.y - 32) < 1
        assert abs(companion.x - 35) < 1 and abs(companion.y - 32) < 1
        assert bright.flux > companion.flux
        assert bright.deblended and companion.deblended

    @pytest.mark.parametrize("profile", [None, "fast", "balanced", "accurate"])
    def test_nan_pixel_near_star(self, gaussian_star, profile):
        """A NaN pixel inside a star's measurement window is ignored."""
        np.random.seed(5)
        image = np.random.normal(100, 2, (64, 64)).astype(np.float32)
        gaussian_star(image, 32, 32, 1.6, 800)
        image[32, 38] = np.nan

        stars = detect_stars(image, 64, 64, StarDetectionConfig(profile=profile))
        assert len(stars) == 1
        assert abs(stars[0].x - 32) < 1
        assert abs(stars[0].y - 32) < 1
        assert np.isfinite(stars[0].fwhm)


class TestAsyncDetection:
    """Tests for the chunked asynchronous detector."""

    def test_progress_monotonic_and_complete(self, synthetic_star_field):
        """Progress never decreases and ends at exactly 1.0."""
        image, _ = synthetic_star_field()
        progress = []
        stars = asyncio.run(
            detect_stars_async(image, 256, 256, StarDetectionConfig(profile="fast"),
                               on_progress=progress.append, chunk_rows=16)
        )
        assert len(stars) > 0
        assert len(progress) > 2
        assert all(b >= a for a, b in zip(progress, progress[1:]))
        assert progress[-1] == 1.0

    def test_matches_sync(self, synthetic_star_field):
        """Async and sync detection agree exactly."""
        image, _ = synthetic_star_field(seed=5)
        cfg = StarDetectionConfig(profile="balanced")
        assert asyncio.run(detect_stars_async(image, 256, 256, cfg)) == detect_stars(image, 256, 256, cfg)

    def test_precancelled_token(self, synthetic_star_field):
        """An already-cancelled token rejects without producing stars."""
        image, _ = synthetic_star_field()
        token = CancellationToken()
        token.cancel()
        progress = []
        with pytest.raises(CancellationError):
            asyncio.run(detect_stars_async(image, 256, 256, on_progress=progress.append, token=token))
        assert progress == []

    def test_cancel_midway(self, synthetic_star_field):
        """Cancelling from the progress callback aborts the run."""
        image, _ = synthetic_star_field()
        token = CancellationToken()

        def _on_progress(ratio):
            if ratio > 0.3:
                token.cancel()

        with pytest.raises(CancellationError):
            asyncio.run(detect_stars_async(image, 256, 256, on_progress=_on_progress, token=token))


class TestDetectionAccuracy:
    """Accuracy of the accurate profile on a synthetic field."""

    def test_synthetic_field_benchmark(self, synthetic_star_field):
        """Precision, recall, centroid and FWHM errors stay within bounds."""
        image, truth = synthetic_star_field()
        stars = detect_stars(image, 256, 256, StarDetectionConfig(profile="accurate"))

        true_xy = np.array([(x, y) for x, y, _ in truth])
        matched = []
        for star in stars:
            d = np.hypot(true_xy[:, 0] - star.x, true_xy[:, 1] - star.y)
            k = int(np.argmin(d))
            if d[k] <= 2.0:
                matched.append((k, d[k], star.fwhm))

        unique = {k for k, _, _ in matched}
        precision = len(matched) / max(1, len(stars))
        recall = len(unique) / len(truth)
        assert precision >= 0.9
        assert recall >= 0.9

        errors = np.array([d for _, d, _ in matched])
        assert np.percentile(errors, 95) <= 0.6

        fwhm_err = [abs(f - truth[k][2]) / truth[k][2] for k, _, f in matched]
        assert np.median(fwhm_err) <= 0.2
