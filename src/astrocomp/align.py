"""
Layer registration.

``register_layers`` aligns every layer onto the first one through an
injected ``Aligner`` and then applies a framing policy:

- ``first``: keep the reference frame;
- ``min``: crop to the bounding box of pixels valid in every layer;
- ``cog``: a crop of the ``min`` size (at least 16x16) centred on the
  centre of gravity of pixels valid in at least 60% of the layers.

A pixel is valid when it is finite and strictly positive; warped layers are
filled with 0 outside their footprint.

The default aligner, ``StarAligner``, uses astroalign asterism matching on
detected star centroids (``full``), phase cross-correlation (``translation``)
or manual control points, and scikit-image for warping. Transforms are 3x3
affine matrices mapping layer pixel coordinates (x, y) onto the reference.
"""

from __future__ import annotations

import logging
import math
from typing import Generator, Protocol

import numpy as np
from skimage.registration import phase_cross_correlation
from skimage.transform import AffineTransform, warp

try:
    import astroalign as aa
except ImportError:
    aa = None

from .config import (
    AlignmentTransform,
    ControlPoints,
    CropBox,
    RegistrationMode,
    RegistrationRequest,
    RegistrationResult,
    StarDetectionConfig,
)
from .runtime import CancellationToken, ProgressCallback, run_stages, run_stages_async
from .stars import detect_stars
from .utils import as_image, restore_layout

logger = logging.getLogger(__name__)

COG_COVERAGE_FRACTION = 0.6
COG_MIN_SIZE = 16
MIN_CONTROL_POINTS = 3


class Aligner(Protocol):
    """Geometric alignment collaborator used by ``register_layers``."""

    def find_transform(
        self, layer: np.ndarray, reference: np.ndarray, mode: RegistrationMode
    ) -> AlignmentTransform:
        """Estimate the transform mapping ``layer`` onto ``reference`` (2D arrays)."""
        ...

    def transform_from_control_points(self, points: ControlPoints) -> AlignmentTransform:
        """Build the transform implied by manual correspondences."""
        ...

    def warp(self, layer: np.ndarray, transform: AlignmentTransform) -> np.ndarray:
        """Resample ``layer`` into the reference frame."""
        ...


# ---------------------------------------------------------------------------
# Transform helpers
# ---------------------------------------------------------------------------


def translation_matrix(dx: float, dy: float) -> np.ndarray:
    matrix = np.eye(3)
    matrix[0, 2] = dx
    matrix[1, 2] = dy
    return matrix


def similarity_from_pairs(source: np.ndarray, target: np.ndarray) -> np.ndarray:
    """
    Exact similarity (rotation, uniform scale, translation) from two point pairs.

    Points are treated as complex numbers: ``t = a * s + b``.
    """
    s = source[:, 0] + 1j * source[:, 1]
    t = target[:, 0] + 1j * target[:, 1]
    if abs(s[1] - s[0]) < 1e-12:
        raise ValueError("Control points must be distinct")
    a = (t[1] - t[0]) / (s[1] - s[0])
    b = t[0] - a * s[0]
    return np.array([
        [a.real, -a.imag, b.real],
        [a.imag, a.real, b.imag],
        [0.0, 0.0, 1.0],
    ])


def affine_from_triplets(source: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Exact affine transform from three point pairs (least squares beyond three)."""
    design = np.column_stack([source[:, 0], source[:, 1], np.ones(len(source))])
    if len(source) == 3 and abs(np.linalg.det(design)) < 1e-9:
        raise ValueError("Control points must not be collinear")
    coeffs, *_ = np.linalg.lstsq(design, target, rcond=None)
    matrix = np.eye(3)
    matrix[:2, :] = coeffs.T
    return matrix


def _rms(matrix: np.ndarray, source: np.ndarray, target: np.ndarray) -> float:
    mapped = AffineTransform(matrix=matrix)(source)
    return float(np.sqrt(np.mean(np.sum((mapped - target) ** 2, axis=1))))


def _star_positions(image: np.ndarray, config: StarDetectionConfig, limit: int) -> np.ndarray:
    h, w = image.shape
    stars = detect_stars(image, w, h, config)[:limit]
    return np.array([(s.x, s.y) for s in stars], dtype=np.float64).reshape(-1, 2)


def _finite_image(image: np.ndarray) -> np.ndarray:
    return np.where(np.isfinite(image), image, 0.0)


class StarAligner:
    """
    Star-based aligner built on astroalign and scikit-image.

    Parameters
    ----------
    detection : StarDetectionConfig, optional
        Detector settings for the control-point candidates
        (default: the 'balanced' profile).
    max_control_points : int, default 50
        Brightest stars handed to the asterism matcher.
    upsample_factor : int, default 10
        Sub-pixel precision of the phase cross-correlation fallback.
    """

    def __init__(
        self,
        detection: StarDetectionConfig | None = None,
        max_control_points: int = 50,
        upsample_factor: int = 10,
    ):
        self.detection = detection or StarDetectionConfig(profile="balanced")
        self.max_control_points = max_control_points
        self.upsample_factor = upsample_factor

    def find_transform(
        self, layer: np.ndarray, reference: np.ndarray, mode: RegistrationMode
    ) -> AlignmentTransform:
        if mode == "none":
            return AlignmentTransform.identity()
        if mode == "translation":
            return self._translation(layer, reference)
        return self._asterism(layer, reference)

    def _translation(self, layer: np.ndarray, reference: np.ndarray) -> AlignmentTransform:
        transform = AlignmentTransform(success=False, method="translation")
        try:
            shift, error, _ = phase_cross_correlation(
                _finite_image(reference),
                _finite_image(layer),
                upsample_factor=self.upsample_factor,
            )
        except ValueError as e:
            transform.error_message = str(e)
            logger.warning("Phase correlation failed: %s", e)
            return transform

        dy, dx = float(shift[0]), float(shift[1])
        transform.matrix = translation_matrix(dx, dy)
        transform.rms_error = float(error)
        transform.success = True
        logger.debug("Translation shift: dx=%.2f dy=%.2f", dx, dy)
        return transform

    def _asterism(self, layer: np.ndarray, reference: np.ndarray) -> AlignmentTransform:
        if aa is None:
            raise ImportError("astroalign is required for registration")

        transform = AlignmentTransform(success=False, method="asterism")
        source_xy = _star_positions(layer, self.detection, self.max_control_points)
        target_xy = _star_positions(reference, self.detection, self.max_control_points)
        if len(source_xy) < MIN_CONTROL_POINTS or len(target_xy) < MIN_CONTROL_POINTS:
            transform.error_message = (
                f"Not enough stars ({len(source_xy)} / {len(target_xy)})"
            )
            logger.warning("Asterism alignment skipped: %s", transform.error_message)
            return self._fallback(layer, reference, transform)

        try:
            transf, (s_list, t_list) = aa.find_transform(
                source_xy, target_xy, max_control_points=self.max_control_points
            )
        except aa.MaxIterError as e:
            transform.error_message = f"MaxIterError: {e}"
            logger.warning("Asterism alignment failed (max iter)")
            return self._fallback(layer, reference, transform)
        except (ValueError, TypeError) as e:
            transform.error_message = str(e)
            logger.warning("Asterism alignment failed: %s", e)
            return self._fallback(layer, reference, transform)

        transform.matrix = np.asarray(transf.params, dtype=np.float64)
        transform.n_matches = len(s_list)
        transform.rms_error = _rms(transform.matrix, np.asarray(s_list), np.asarray(t_list))
        transform.success = True
        logger.debug(
            "Asterism transform: %d matches, rms=%.3f px", transform.n_matches, transform.rms_error
        )
        return transform

    def _fallback(
        self, layer: np.ndarray, reference: np.ndarray, failed: AlignmentTransform
    ) -> AlignmentTransform:
        transform = self._translation(layer, reference)
        if not transform.success:
            transform.error_message = f"{failed.error_message}; {transform.error_message}"
        return transform

    def transform_from_control_points(self, points: ControlPoints) -> AlignmentTransform:
        """
        Transform mapping ``points.target`` positions onto ``points.reference``.

        ``one_star`` gives a translation, ``two_star`` a similarity and
        ``three_star`` a full affine transform.
        """
        points.validate()
        needed = {"one_star": 1, "two_star": 2, "three_star": 3}[points.mode]
        source = np.asarray(points.target[:needed], dtype=np.float64).reshape(-1, 2)
        target = np.asarray(points.reference[:needed], dtype=np.float64).reshape(-1, 2)
        transform = AlignmentTransform(success=False, method=points.mode, n_matches=needed)
        try:
            if points.mode == "one_star":
                d = target[0] - source[0]
                matrix = translation_matrix(d[0], d[1])
            elif points.mode == "two_star":
                matrix = similarity_from_pairs(source, target)
            else:
                matrix = affine_from_triplets(source, target)
        except (ValueError, np.linalg.LinAlgError) as e:
            transform.error_message = str(e)
            logger.warning("Manual alignment (%s) failed: %s", points.mode, e)
            return transform
        transform.matrix = matrix
        transform.rms_error = _rms(matrix, source, target)
        transform.success = True
        return transform

    def warp(self, layer: np.ndarray, transform: AlignmentTransform) -> np.ndarray:
        # warp() needs the output -> input map, i.e. reference -> layer
        inverse_affine = AffineTransform(matrix=transform.matrix).inverse
        warped = warp(
            _finite_image(layer).astype(np.float64),
            inverse_affine,
            output_shape=layer.shape,
            preserve_range=True,
            order=1,  # Bilinear interpolation
            cval=0.0,
        )
        return warped.astype(np.float32)


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


def _valid(image: np.ndarray) -> np.ndarray:
    return np.isfinite(image) & (image > 0)


def _bounding_box(mask: np.ndarray) -> CropBox | None:
    rows = np.flatnonzero(mask.any(axis=1))
    cols = np.flatnonzero(mask.any(axis=0))
    if rows.size == 0 or cols.size == 0:
        return None
    return CropBox(
        x=int(cols[0]), y=int(rows[0]),
        width=int(cols[-1] - cols[0] + 1), height=int(rows[-1] - rows[0] + 1),
    )


def compute_framing(images: list[np.ndarray], framing: str) -> CropBox:
    """
    Crop box for a set of aligned (height, width) images.

    Parameters
    ----------
    images : list of np.ndarray
        Aligned layers, all of the same shape.
    framing : {'first', 'min', 'cog'}
        Framing policy (see module docstring).

    Returns
    -------
    CropBox
        The full frame when the policy finds no valid pixel.
    """
    height, width = images[0].shape
    full = CropBox(0, 0, width, height)
    if framing == "first":
        return full

    valid = [_valid(image) for image in images]
    common = _bounding_box(np.logical_and.reduce(valid)) or full
    if framing == "min":
        return common

    coverage = np.sum(valid, axis=0)
    threshold = max(1, math.ceil(COG_COVERAGE_FRACTION * len(images)))
    weights = np.where(coverage >= threshold, coverage, 0).astype(np.float64)
    total = weights.sum()
    if total <= 0:
        return full
    ys, xs = np.indices(weights.shape)
    cx = int(np.floor((xs * weights).sum() / total + 0.5))
    cy = int(np.floor((ys * weights).sum() / total + 0.5))

    crop_w = min(width, max(COG_MIN_SIZE, common.width))
    crop_h = min(height, max(COG_MIN_SIZE, common.height))
    x0 = min(max(0, cx - crop_w // 2), width - crop_w)
    y0 = min(max(0, cy - crop_h // 2), height - crop_h)
    return CropBox(x0, y0, crop_w, crop_h)


def crop_layer(image: np.ndarray, crop: CropBox) -> np.ndarray:
    """Copy of ``crop`` out of a (height, width) image."""
    return np.ascontiguousarray(image[crop.y:crop.y + crop.height, crop.x:crop.x + crop.width])


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def _registration_stages(
    request: RegistrationRequest, aligner: Aligner
) -> Generator[float, None, RegistrationResult]:
    request.validate()
    images = [
        as_image(layer, request.width, request.height, f"layers[{i}]")
        for i, layer in enumerate(request.layers)
    ]
    if not images:
        return RegistrationResult(
            layers=[], width=request.width, height=request.height, transforms=[],
            crop=CropBox(0, 0, request.width, request.height),
        )

    reference = images[0]
    aligned = [reference.copy()]
    transforms = [AlignmentTransform.identity()]
    n_layers = len(images)
    for index in range(1, n_layers):
        image = images[index]
        points = request.control_points[index] if index < len(request.control_points) else None
        if request.mode == "none":
            transform = AlignmentTransform.identity()
        elif points is not None:
            transform = aligner.transform_from_control_points(points)
        else:
            transform = aligner.find_transform(image, reference, request.mode)

        if transform.success and not np.allclose(transform.matrix, np.eye(3)):
            aligned.append(aligner.warp(image, transform))
        else:
            if not transform.success:
                logger.warning(
                    "Layer %d alignment failed (%s); keeping it unaligned",
                    index, transform.error_message or "unknown error",
                )
                transform = AlignmentTransform(
                    success=False, error_message=transform.error_message, method=transform.method
                )
            aligned.append(image.copy())
        transforms.append(transform)
        yield index / n_layers

    crop = compute_framing(aligned, request.framing)
    cropped = [crop_layer(image, crop) for image in aligned]
    layers = [
        restore_layout(image, template) for image, template in zip(cropped, request.layers)
    ]
    logger.info(
        "Registered %d layer(s) (mode=%s, framing=%s): %dx%d -> %dx%d",
        n_layers, request.mode, request.framing,
        request.width, request.height, crop.width, crop.height,
    )
    return RegistrationResult(
        layers=layers, width=crop.width, height=crop.height, transforms=transforms, crop=crop
    )


def register_layers(request: RegistrationRequest, aligner: Aligner | None = None) -> RegistrationResult:
    """
    Align every layer onto the first one and apply the framing policy.

    Parameters
    ----------
    request : RegistrationRequest
        Layer buffers, frame size, mode, framing and optional control points.
    aligner : Aligner, optional
        Alignment collaborator (default: ``StarAligner()``).

    Returns
    -------
    RegistrationResult
        Aligned, cropped layers (same layout as the inputs), per-layer
        transforms (identity for the reference and for failed layers) and
        the output size.
    """
    return run_stages(_registration_stages(request, aligner or StarAligner()))


async def register_layers_async(
    request: RegistrationRequest,
    aligner: Aligner | None = None,
    on_progress: ProgressCallback | None = None,
    token: CancellationToken | None = None,
) -> RegistrationResult:
    """``register_layers`` with progress and cancellation between layers."""
    return await run_stages_async(
        _registration_stages(request, aligner or StarAligner()), on_progress=on_progress, token=token
    )
