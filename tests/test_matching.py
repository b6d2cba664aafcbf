"""
Tests for the matching module.

Tests cover:
- Linear match estimation and application
- Brightness gain estimation and layer balancing
- Degenerate inputs
"""

import numpy as np
import pytest

from astrocomp.config import LinearMatch
from astrocomp.matching import (
    apply_brightness_gain,
    apply_linear_match,
    balance_layer_brightness,
    estimate_brightness_gain,
    estimate_linear_match,
    linear_match_to_reference,
)
from astrocomp.utils import sorted_percentile


class TestLinearMatch:
    """Tests for percentile-anchored linear matching."""

    @pytest.mark.parametrize("scale,offset", [(2.0, 5.0), (0.5, -3.0), (1.7, 0.0)])
    def test_recovers_affine_relation(self, scale, offset):
        """y = a*x + b is recovered exactly."""
        np.random.seed(1)
        source = np.random.uniform(0, 1000, 5000).astype(np.float32)
        reference = (scale * source.astype(np.float64) + offset).astype(np.float32)

        params = estimate_linear_match(source, reference)
        assert params.scale == pytest.approx(scale, rel=1e-4)
        assert params.offset == pytest.approx(offset, abs=1e-2 * max(1.0, abs(offset)))

        matched = np.sort(apply_linear_match(source, params))
        ref_sorted = np.sort(reference)
        for fraction in (0.1, 0.9):
            assert sorted_percentile(matched, fraction) == pytest.approx(
                sorted_percentile(ref_sorted, fraction), rel=1e-4
            )

    def test_two_points(self):
        """Two samples are enough."""
        params = estimate_linear_match([1, 3], [12, 16])
        assert params.scale == pytest.approx(2.0)
        assert params.offset == pytest.approx(10.0)

    def test_skips_non_finite(self):
        """NaN and inf samples do not affect the estimate."""
        source = np.array([1, 2, 3, 4, np.nan, np.inf, 5, 6], dtype=np.float32)
        reference = np.array([3, 5, 7, 9, 0, 0, 11, 13], dtype=np.float32)
        params = estimate_linear_match(source, reference)
        assert params.scale == pytest.approx(2.0)
        assert params.offset == pytest.approx(1.0)

    def test_flat_source_uses_median_ratio(self):
        """A zero percentile spread falls back to the ratio of medians."""
        params = estimate_linear_match(np.full(10, 4.0), np.full(10, 8.0))
        assert params.scale == pytest.approx(2.0)
        assert params.offset == pytest.approx(0.0)

    def test_too_few_samples(self):
        """Fewer than two usable samples give the identity."""
        assert estimate_linear_match([1.0], [5.0]) == LinearMatch()

    def test_apply_clamps_when_requested(self):
        """Clamping floors the result at 0."""
        params = LinearMatch(scale=1.0, offset=-5.0)
        assert np.allclose(apply_linear_match([1, 10], params), [-4, 5])
        assert np.allclose(apply_linear_match([1, 10], params, clamp_to_positive=True), [0, 5])

    def test_match_to_reference(self):
        """Helper returns the matched buffer and the parameters."""
        matched, params = linear_match_to_reference([0, 1, 2, 3], [10, 12, 14, 16])
        assert params.scale == pytest.approx(2.0)
        assert np.allclose(matched, [10, 12, 14, 16])


class TestBrightness:
    """Tests for median-ratio brightness balance."""

    def test_gain_is_median_ratio(self):
        """Gain brings the layer median onto the reference median."""
        layer = np.linspace(1, 100, 64)
        reference = 3 * layer
        gain = estimate_brightness_gain(layer, reference)
        assert gain.gain == pytest.approx(3.0)
        assert gain.reference_median == pytest.approx(3 * gain.layer_median)

    def test_requires_enough_samples(self):
        """Fewer than 32 positive pairs give gain 1."""
        layer = np.concatenate([np.linspace(1, 10, 31), np.zeros(40)])
        assert estimate_brightness_gain(layer, 2 * layer).gain == 1.0

    def test_sample_step(self):
        """Striding still finds the gain when enough samples remain."""
        layer = np.linspace(1, 100, 1000)
        assert estimate_brightness_gain(layer, 0.5 * layer, sample_step=8).gain == pytest.approx(0.5)

    def test_apply_gain(self):
        """Gain multiplies and floors at zero by default."""
        assert np.allclose(apply_brightness_gain([-1, 2], 2.0), [0, 4])
        assert np.allclose(apply_brightness_gain([-1, 2], 2.0, clamp_to_positive=False), [-2, 4])
        assert np.allclose(apply_brightness_gain([1, 2], np.nan), [1, 2])

    def test_balance_layers(self):
        """Every layer but the reference is scaled to the reference median."""
        base = np.linspace(1, 50, 100).astype(np.float32)
        result = balance_layer_brightness([base, 2 * base, 0.25 * base], reference_index=0)
        assert result.gains[0] == 1.0
        assert result.gains[1] == pytest.approx(0.5)
        assert result.gains[2] == pytest.approx(4.0)
        for layer in result.balanced:
            assert float(np.median(layer)) == pytest.approx(float(np.median(base)), rel=1e-5)

    def test_balance_reference_unchanged(self):
        """The reference layer keeps gain 1 wherever it sits."""
        base = np.linspace(1, 50, 100).astype(np.float32)
        result = balance_layer_brightness([2 * base, base], reference_index=1)
        assert result.gains == [pytest.approx(0.5), 1.0]
        assert np.array_equal(result.balanced[1], base)
