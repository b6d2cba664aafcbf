"""
Pytest configuration and fixtures.
"""

import numpy as np
import pytest

FWHM_PER_SIGMA = 2.3548


def add_gaussian(image, x0, y0, sigma, amplitude):
    """Add a circular Gaussian sampled at pixel centres (integer coordinates)."""
    height, width = image.shape
    yy, xx = np.mgrid[0:height, 0:width]
    image += (amplitude * np.exp(-((xx - x0) ** 2 + (yy - y0) ** 2) / (2 * sigma ** 2))).astype(
        np.float32
    )
    return image


@pytest.fixture
def gaussian_star():
    """Return the helper adding a Gaussian star to an image in place."""
    return add_gaussian


@pytest.fixture
def synthetic_star_field():
    """
    Create a synthetic star field with Gaussian stars on a jittered grid.

    Returns (image, truth) where ``truth`` is a list of (x, y, fwhm) tuples.
    Stars are at least ~34 px apart and 20 px from every edge.
    """
    def _create(height=256, width=256, background=100.0, noise=5.0, seed=42):
        np.random.seed(seed)

        image = np.full((height, width), background, dtype=np.float32)
        image += np.random.normal(0, noise, (height, width)).astype(np.float32)

        truth = []
        for row in range(4):
            for col in range(6):
                x0 = 28 + col * (width - 56) / 5 + np.random.uniform(-3, 3)
                y0 = 38 + row * (height - 76) / 3 + np.random.uniform(-3, 3)
                sigma = np.random.uniform(1.2, 2.0)
                amplitude = np.random.uniform(200, 1000)
                add_gaussian(image, x0, y0, sigma, amplitude)
                truth.append((x0, y0, FWHM_PER_SIGMA * sigma))

        return image, truth

    return _create


@pytest.fixture
def shifted_star_field(synthetic_star_field):
    """A star field and a copy of it translated by (dx, dy) pixels."""
    def _create(dx=4, dy=-3, seed=7):
        image, truth = synthetic_star_field(seed=seed)
        shifted = np.full_like(image, np.float32(100.0))
        h, w = image.shape
        ys = slice(max(0, dy), h + min(0, dy))
        xs = slice(max(0, dx), w + min(0, dx))
        src_ys = slice(max(0, -dy), h - max(0, dy))
        src_xs = slice(max(0, -dx), w - max(0, dx))
        shifted[ys, xs] = image[src_ys, src_xs]
        return image, shifted, truth

    return _create


@pytest.fixture
def tinted_layers():
    """Two 4x4 ramps with distinct tints, as (pixels, tint) pairs."""
    ramp = np.arange(16, dtype=np.float32)
    return [
        (ramp.copy(), (1.0, 0.2, 0.1)),
        (ramp[::-1].copy(), (0.1, 0.6, 1.0)),
    ]
