"""
Configuration and result dataclasses for the astrocomp core.

Every entity is created fresh per call and discarded once the caller has
consumed the result; nothing here is cached across calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Literal

import numpy as np

DetectionProfile = Literal["legacy", "fast", "balanced", "accurate"]
BlendMode = Literal[
    "normal",
    "multiply",
    "screen",
    "overlay",
    "darken",
    "lighten",
    "color-dodge",
    "color-burn",
    "hard-light",
    "soft-light",
    "difference",
    "exclusion",
    "hue",
    "saturation",
    "color",
    "luminosity",
]
ColorSpace = Literal["hsl", "hsv", "lab"]
PreviewMode = Literal["composite", "r", "g", "b", "l", "split"]
RenderMode = Literal["preview", "full"]
RegistrationMode = Literal["none", "translation", "full"]
FramingMode = Literal["first", "min", "cog"]
ManualMode = Literal["one_star", "two_star", "three_star"]
Channel = Literal["r", "g", "b"]
PixelMathErrorKind = Literal["validation", "compile", "execution"]

BLEND_MODES: tuple[str, ...] = (
    "normal",
    "multiply",
    "screen",
    "overlay",
    "darken",
    "lighten",
    "color-dodge",
    "color-burn",
    "hard-light",
    "soft-light",
    "difference",
    "exclusion",
    "hue",
    "saturation",
    "color",
    "luminosity",
)
COLOR_SPACES: tuple[str, ...] = ("hsl", "hsv", "lab")
PREVIEW_MODES: tuple[str, ...] = ("composite", "r", "g", "b", "l", "split")


# ---------------------------------------------------------------------------
# Star detection
# ---------------------------------------------------------------------------

PROFILE_PRESETS: dict[str, dict[str, float | int | bool]] = {
    "legacy": dict(
        sigma_threshold=5.0, max_stars=200, min_area=3, max_area=500,
        border_margin=10, mesh_size=64, sigma_clip_iters=0,
        apply_matched_filter=False, filter_fwhm=2.2,
        deblend_nlevels=1, deblend_min_contrast=0.2, connectivity=4,
        min_fwhm=0.3, max_fwhm=20.0, max_ellipticity=1.0,
        min_sharpness=0.0, max_sharpness=1e9, snr_min=0.0,
    ),
    "fast": dict(
        sigma_threshold=6.0, max_stars=160, min_area=4, max_area=550,
        border_margin=12, mesh_size=96, sigma_clip_iters=1,
        apply_matched_filter=False, filter_fwhm=2.4,
        deblend_nlevels=8, deblend_min_contrast=0.12, connectivity=8,
        min_fwhm=0.7, max_fwhm=12.0, max_ellipticity=0.7,
        min_sharpness=0.3, max_sharpness=12.0, snr_min=2.5,
    ),
    "balanced": dict(
        sigma_threshold=5.0, max_stars=220, min_area=3, max_area=600,
        border_margin=10, mesh_size=64, sigma_clip_iters=2,
        apply_matched_filter=True, filter_fwhm=2.2,
        deblend_nlevels=16, deblend_min_contrast=0.08, connectivity=8,
        min_fwhm=0.6, max_fwhm=11.0, max_ellipticity=0.65,
        min_sharpness=0.25, max_sharpness=18.0, snr_min=2.0,
    ),
    "accurate": dict(
        sigma_threshold=4.5, max_stars=320, min_area=3, max_area=800,
        border_margin=8, mesh_size=48, sigma_clip_iters=3,
        apply_matched_filter=True, filter_fwhm=2.0,
        deblend_nlevels=32, deblend_min_contrast=0.05, connectivity=8,
        min_fwhm=0.5, max_fwhm=10.0, max_ellipticity=0.55,
        min_sharpness=0.2, max_sharpness=24.0, snr_min=1.8,
    ),
}


@dataclass
class StarDetectionConfig:
    """
    Star detection parameters.

    Any field left as ``None`` is filled from the preset selected by
    ``profile``; explicitly set fields override the preset. Omitting the
    profile selects the legacy thresholding strategy.
    """

    profile: DetectionProfile | None = None
    """Preset: 'legacy' (default), 'fast', 'balanced' or 'accurate'."""

    sigma_threshold: float | None = None
    """Detection threshold in units of background noise."""

    max_stars: int | None = None
    """Keep at most this many detections (brightest first)."""

    min_area: int | None = None
    max_area: int | None = None
    """Accepted connected-component area range, in pixels."""

    border_margin: int | None = None
    """Detections whose centroid lies closer than this to an edge are dropped."""

    mesh_size: int | None = None
    """Background mesh cell size in pixels."""

    sigma_clip_iters: int | None = None
    """3-sigma clipping iterations for the per-cell background statistics."""

    apply_matched_filter: bool | None = None
    filter_fwhm: float | None = None
    """Gaussian matched filter applied to the detection image."""

    deblend_nlevels: int | None = None
    deblend_min_contrast: float | None = None
    """Multi-threshold deblending levels and minimum flux contrast per branch."""

    connectivity: Literal[4, 8] | None = None

    min_fwhm: float | None = None
    max_fwhm: float | None = None
    max_ellipticity: float | None = None
    min_sharpness: float | None = None
    max_sharpness: float | None = None
    snr_min: float | None = None

    peak_max: float | None = None
    """Optional saturation cap on the background-subtracted peak."""

    @property
    def is_legacy(self) -> bool:
        return self.profile in (None, "legacy")

    def resolve(self) -> StarDetectionConfig:
        """Return a copy with every unset knob filled from the profile preset."""
        profile = self.profile or "legacy"
        if profile not in PROFILE_PRESETS:
            raise ValueError(f"Unknown detection profile: {profile!r}")
        preset = PROFILE_PRESETS[profile]
        values = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None and f.name in preset:
                value = preset[f.name]
            values[f.name] = value
        return replace(self, **values)

    def validate(self) -> None:
        """Validate a resolved configuration."""
        cfg = self.resolve()
        if cfg.sigma_threshold <= 0:
            raise ValueError(f"sigma_threshold must be positive, got {cfg.sigma_threshold}")
        if cfg.max_stars < 0:
            raise ValueError(f"max_stars must be >= 0, got {cfg.max_stars}")
        if cfg.min_area < 1 or cfg.max_area < cfg.min_area:
            raise ValueError(
                f"area range must satisfy 1 <= min_area <= max_area, got {cfg.min_area}..{cfg.max_area}"
            )
        if cfg.border_margin < 0:
            raise ValueError(f"border_margin must be >= 0, got {cfg.border_margin}")
        if cfg.mesh_size < 1:
            raise ValueError(f"mesh_size must be >= 1, got {cfg.mesh_size}")
        if cfg.sigma_clip_iters < 0:
            raise ValueError(f"sigma_clip_iters must be >= 0, got {cfg.sigma_clip_iters}")
        if cfg.connectivity not in (4, 8):
            raise ValueError(f"connectivity must be 4 or 8, got {cfg.connectivity}")
        if cfg.deblend_nlevels < 1:
            raise ValueError(f"deblend_nlevels must be >= 1, got {cfg.deblend_nlevels}")
        if not 0.0 <= cfg.deblend_min_contrast <= 1.0:
            raise ValueError(
                f"deblend_min_contrast must be in [0, 1], got {cfg.deblend_min_contrast}"
            )


@dataclass(frozen=True)
class DetectedStar:
    """A single point-source detection. Immutable once produced."""

    x: float
    y: float
    area: int
    flux: float  # Background-subtracted sum over the component
    fwhm: float
    ellipticity: float
    snr: float
    peak: float = 0.0
    roundness: float = 1.0  # Minor/major axis ratio
    theta: float = 0.0  # Major axis angle, radians
    sharpness: float = 0.0  # Peak over mean component value
    deblended: bool = False


@dataclass
class BackgroundEstimate:
    """Smooth background surface and global noise level."""

    background: np.ndarray
    noise: float


# ---------------------------------------------------------------------------
# Calibration and matching
# ---------------------------------------------------------------------------


@dataclass
class CalibrationFrameSet:
    """Optional master calibration frames applied to a light frame."""

    dark: np.ndarray | None = None
    flat: np.ndarray | None = None
    bias: np.ndarray | None = None


@dataclass(frozen=True)
class LinearMatch:
    """Affine intensity transform ``y = scale * x + offset``."""

    scale: float = 1.0
    offset: float = 0.0


@dataclass(frozen=True)
class BrightnessGain:
    """Multiplicative gain bringing a layer's median onto a reference's."""

    gain: float = 1.0
    reference_median: float = 0.0
    layer_median: float = 0.0


@dataclass
class BrightnessBalance:
    balanced: list[np.ndarray]
    gains: list[float]


# ---------------------------------------------------------------------------
# Compositing
# ---------------------------------------------------------------------------


@dataclass
class CompositeLayer:
    """
    One input layer of a composite.

    ``aligned_pixels`` takes precedence over ``pixels`` when present.
    """

    id: str
    pixels: np.ndarray | None = None
    enabled: bool = True
    is_luminance: bool = False
    opacity: float = 1.0
    blend_mode: BlendMode = "normal"
    tint: tuple[float, float, float] = (1.0, 1.0, 1.0)
    use_for_linear_match: bool = True
    use_for_brightness_balance: bool = True
    aligned_pixels: np.ndarray | None = None

    @property
    def buffer(self) -> np.ndarray | None:
        return self.aligned_pixels if self.aligned_pixels is not None else self.pixels

    def validate(self) -> None:
        if not 0.0 <= self.opacity <= 1.0:
            raise ValueError(f"opacity must be in [0, 1], got {self.opacity}")
        if self.blend_mode not in BLEND_MODES:
            raise ValueError(f"Unknown blend mode: {self.blend_mode!r}")
        if len(self.tint) != 3:
            raise ValueError(f"tint must have 3 components, got {len(self.tint)}")


@dataclass
class PixelMathProgram:
    """One expression per output channel."""

    r: str = "R"
    g: str = "G"
    b: str = "B"

    def channels(self) -> list[tuple[Channel, str]]:
        return [("r", self.r), ("g", self.g), ("b", self.b)]


@dataclass
class PixelMathError:
    """Structured description of a rejected or failed pixel-math program."""

    kind: PixelMathErrorKind
    channel: Channel
    message: str
    expression: str
    index: int = 0
    row: int | None = None  # 1-indexed, execution errors only
    column: int | None = None


@dataclass
class RenderOptions:
    """Composite render options."""

    linked_stretch: bool = False
    """Normalize all layers against one shared extent instead of per layer."""

    auto_linear_match: bool = False
    auto_brightness_balance: bool = False

    color_space: ColorSpace = "hsl"
    """Luminance integration convention: 'hsl' (relative luminance),
    'hsv' (max channel) or 'lab' (perceptual lightness)."""

    apply_pixel_math: bool = False
    pixel_math: PixelMathProgram = field(default_factory=PixelMathProgram)

    split_position: float = 0.5
    preview_scale: float = 0.5
    preview_mode: PreviewMode = "composite"

    def validate(self) -> None:
        if self.color_space not in COLOR_SPACES:
            raise ValueError(f"Unknown color space: {self.color_space!r}")
        if self.preview_mode not in PREVIEW_MODES:
            raise ValueError(f"Unknown preview mode: {self.preview_mode!r}")
        if not 0.0 <= self.split_position <= 1.0:
            raise ValueError(f"split_position must be in [0, 1], got {self.split_position}")
        if self.preview_scale <= 0:
            raise ValueError(f"preview_scale must be positive, got {self.preview_scale}")


@dataclass
class RenderRequest:
    layers: list[CompositeLayer]
    width: int
    height: int
    options: RenderOptions = field(default_factory=RenderOptions)
    mode: RenderMode = "full"


@dataclass
class RenderResult:
    """8-bit RGBA output plus the float channels it was built from."""

    rgba: np.ndarray
    width: int
    height: int
    r: np.ndarray
    g: np.ndarray
    b: np.ndarray
    l: np.ndarray | None = None
    pixel_math_error: PixelMathError | None = None


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@dataclass
class ControlPoints:
    """
    Manual star correspondences.

    ``reference[i]`` and ``target[i]`` are (x, y) positions of the same star
    in the reference layer and in the layer being aligned.
    """

    reference: list[tuple[float, float]]
    target: list[tuple[float, float]]
    mode: ManualMode = "three_star"

    def validate(self) -> None:
        needed = {"one_star": 1, "two_star": 2, "three_star": 3}[self.mode]
        pairs = min(len(self.reference), len(self.target))
        if pairs < needed:
            raise ValueError(f"{self.mode} alignment needs {needed} point pairs, got {pairs}")


@dataclass
class AlignmentTransform:
    """Record of an alignment transformation."""

    success: bool
    # 3x3 affine matrix mapping layer pixel coordinates onto the reference
    matrix: np.ndarray = field(default_factory=lambda: np.eye(3))
    n_matches: int = 0
    rms_error: float = 0.0
    method: str = "identity"
    error_message: str = ""

    @classmethod
    def identity(cls) -> AlignmentTransform:
        return cls(success=True)


@dataclass(frozen=True)
class CropBox:
    x: int
    y: int
    width: int
    height: int


@dataclass
class RegistrationRequest:
    """
    Layers to register onto the first one.

    ``control_points[i]``, when given, holds the manual correspondences for
    layer ``i`` and takes precedence over star-based alignment for that
    layer. The entry for the reference layer is ignored.
    """

    layers: list[np.ndarray]
    width: int
    height: int
    mode: RegistrationMode = "none"
    framing: FramingMode = "first"
    control_points: list[ControlPoints | None] = field(default_factory=list)

    def validate(self) -> None:
        if self.mode not in ("none", "translation", "full"):
            raise ValueError(f"Unknown registration mode: {self.mode!r}")
        if self.framing not in ("first", "min", "cog"):
            raise ValueError(f"Unknown framing mode: {self.framing!r}")
        for points in self.control_points:
            if points is not None:
                points.validate()


@dataclass
class RegistrationResult:
    layers: list[np.ndarray]
    width: int
    height: int
    transforms: list[AlignmentTransform]
    crop: CropBox


# ---------------------------------------------------------------------------
# Frame quality
# ---------------------------------------------------------------------------


@dataclass
class QualityConfig:
    """Weights and anchors of the 0-100 frame quality score."""

    detection: StarDetectionConfig = field(
        default_factory=lambda: StarDetectionConfig(profile="balanced")
    )
    weight_fwhm: float = 0.4
    weight_snr: float = 0.3
    weight_star_count: float = 0.15
    weight_roundness: float = 0.15
    fwhm_best: float = 1.5
    fwhm_worst: float = 7.5
    star_count_scale: float = 2.0

    def validate(self) -> None:
        weights = (self.weight_fwhm, self.weight_snr, self.weight_star_count, self.weight_roundness)
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ValueError(f"quality weights must be >= 0 with a positive sum, got {weights}")
        if self.fwhm_worst <= self.fwhm_best:
            raise ValueError(
                f"fwhm_worst must exceed fwhm_best, got {self.fwhm_best}..{self.fwhm_worst}"
            )


@dataclass
class FrameQuality:
    """Quality metrics for a single frame."""

    background_median: float
    noise: float
    snr: float  # Median star peak over background noise
    star_count: int
    median_fwhm: float
    roundness: float  # 1 - coefficient of variation of FWHM
    score: float  # 0-100, higher = better
    index: int = 0
