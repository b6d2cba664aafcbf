"""
Tests for the blend module.

Tests cover:
- Separable blend modes
- Non-separable (hue/saturation/color/luminosity) modes
- Opacity compositing and in-place scanline blending
"""

import numpy as np
import pytest

from astrocomp.blend import blend_rgb, blend_scanline, composite_layer, lum
from astrocomp.config import BLEND_MODES


class TestSeparableModes:
    """Tests for channel-wise modes."""

    @pytest.mark.parametrize(
        "mode,cb,cs,expected",
        [
            ("normal", 0.2, 0.9, 0.9),
            ("multiply", 0.5, 0.5, 0.25),
            ("screen", 0.5, 0.5, 0.75),
            ("overlay", 0.25, 0.5, 0.25),
            ("darken", 0.3, 0.6, 0.3),
            ("lighten", 0.3, 0.6, 0.6),
            ("color-dodge", 0.5, 0.5, 1.0),
            ("color-dodge", 0.0, 0.7, 0.0),
            ("color-burn", 0.5, 0.5, 0.0),
            ("color-burn", 1.0, 0.2, 1.0),
            ("hard-light", 0.5, 0.25, 0.25),
            ("soft-light", 0.4, 0.5, 0.4),
            ("difference", 0.2, 0.9, 0.7),
            ("exclusion", 0.5, 0.5, 0.5),
        ],
    )
    def test_mode_values(self, mode, cb, cs, expected):
        """Known values for each separable formula."""
        r, g, b = blend_rgb((cb, cb, cb), (cs, cs, cs), mode)
        assert r == pytest.approx(expected)
        assert g == pytest.approx(expected)
        assert b == pytest.approx(expected)

    def test_scalar_input_gives_floats(self):
        """Scalar triples come back as plain floats."""
        result = blend_rgb((0.1, 0.2, 0.3), (0.4, 0.5, 0.6), "multiply")
        assert all(isinstance(c, float) for c in result)

    def test_array_input_keeps_shape(self):
        """Array channels are blended elementwise."""
        cb = np.linspace(0, 1, 12).reshape(3, 4)
        r, g, b = blend_rgb((cb, cb, cb), (cb, cb, cb), "screen")
        assert r.shape == (3, 4)
        assert np.allclose(r, 2 * cb - cb * cb)

    def test_all_modes_in_range(self):
        """Every mode stays inside [0, 1]."""
        np.random.seed(0)
        bd = tuple(np.random.uniform(0, 1, 200) for _ in range(3))
        src = tuple(np.random.uniform(0, 1, 200) for _ in range(3))
        for mode in BLEND_MODES:
            for channel in blend_rgb(bd, src, mode):
                assert np.all(channel >= -1e-9) and np.all(channel <= 1 + 1e-9), mode


class TestNonSeparableModes:
    """Tests for the HSL-style modes."""

    def test_luminosity_takes_source_luminance(self):
        """Luminosity keeps backdrop hue with source luminance."""
        result = blend_rgb((0.8, 0.2, 0.2), (0.5, 0.5, 0.5), "luminosity")
        assert lum(*result) == pytest.approx(0.5)
        assert result[0] > result[1]
        assert result[1] == pytest.approx(result[2])

    def test_color_keeps_backdrop_luminance(self):
        """Color mode clips into gamut while preserving backdrop luminance."""
        result = blend_rgb((0.5, 0.5, 0.5), (0.9, 0.1, 0.1), "color")
        assert lum(*result) == pytest.approx(0.5)
        assert result[0] == pytest.approx(1.0)
        assert all(0.0 <= c <= 1.0 for c in result)

    def test_saturation_on_grey_backdrop(self):
        """A grey backdrop has no hue to saturate and stays grey."""
        result = blend_rgb((0.4, 0.4, 0.4), (1.0, 0.0, 0.0), "saturation")
        assert result == pytest.approx((0.4, 0.4, 0.4))

    def test_hue_of_grey_source(self):
        """A grey source has no saturation, so hue mode desaturates."""
        result = blend_rgb((0.9, 0.3, 0.1), (0.5, 0.5, 0.5), "hue")
        assert result[0] == pytest.approx(result[1])
        assert result[1] == pytest.approx(result[2])
        assert lum(*result) == pytest.approx(lum(0.9, 0.3, 0.1))


class TestComposite:
    """Tests for opacity compositing."""

    def test_opacity_zero_keeps_backdrop(self):
        """Opacity 0 leaves the backdrop untouched."""
        assert composite_layer((0.2, 0.3, 0.4), (1, 1, 1), "normal", 0.0) == pytest.approx(
            (0.2, 0.3, 0.4)
        )

    def test_half_opacity(self):
        """Opacity mixes the blend result linearly with the backdrop."""
        result = composite_layer((0.2, 0.2, 0.2), (0.6, 0.6, 0.6), "normal", 0.5)
        assert result == pytest.approx((0.4, 0.4, 0.4))

    def test_opacity_clamped(self):
        """Opacity outside [0, 1] is clamped."""
        result = composite_layer((0.2, 0.2, 0.2), (0.6, 0.6, 0.6), "normal", 3.0)
        assert result == pytest.approx((0.6, 0.6, 0.6))

    def test_blend_scanline_in_place(self):
        """The output buffers receive the result; sources are untouched."""
        out_r = np.full(4, 0.5, dtype=np.float32)
        out_g = np.full(4, 0.5, dtype=np.float32)
        out_b = np.full(4, 0.5, dtype=np.float32)
        src = np.full(4, 0.5, dtype=np.float32)
        blend_scanline(out_r, out_g, out_b, src, src, src, "screen", 1.0)
        assert np.allclose(out_r, 0.75)
        assert np.allclose(out_b, 0.75)
        assert np.allclose(src, 0.5)
