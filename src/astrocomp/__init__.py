"""
astrocomp - Numeric core for astronomical image compositing.

Calibration, star detection, intensity matching, layer registration,
blend-mode compositing and a per-pixel expression engine, operating on
caller-owned float32 buffers. The library performs no I/O.

Example
-------
>>> from astrocomp import CompositeLayer, RenderRequest, render_composite
>>> layers = [
...     CompositeLayer(id="ha", pixels=ha, tint=(1.0, 0.2, 0.1)),
...     CompositeLayer(id="oiii", pixels=oiii, tint=(0.1, 0.6, 1.0), blend_mode="screen"),
... ]
>>> result = render_composite(RenderRequest(layers=layers, width=w, height=h))
>>> result.rgba.shape
(w * h * 4,)

Example (cancellable detection)
-------------------------------
>>> token = CancellationToken()
>>> stars = asyncio.run(detect_stars_async(pixels, w, h, token=token))
"""

from .config import (
    BLEND_MODES,
    PROFILE_PRESETS,
    AlignmentTransform,
    BackgroundEstimate,
    BrightnessBalance,
    BrightnessGain,
    CalibrationFrameSet,
    CompositeLayer,
    ControlPoints,
    CropBox,
    DetectedStar,
    FrameQuality,
    LinearMatch,
    PixelMathError,
    PixelMathProgram,
    QualityConfig,
    RegistrationRequest,
    RegistrationResult,
    RenderOptions,
    RenderRequest,
    RenderResult,
    StarDetectionConfig,
)
from .errors import (
    AstrocompError,
    CancellationError,
    CompileError,
    ExecutionError,
    ValidationError,
)
from .runtime import CancellationToken, ProgressReporter
from .utils import __version__, __version_info__, get_version

# Calibration
from .calibration import (
    apply_flat,
    calibrate,
    calibrate_frame,
    create_master_dark,
    create_master_flat,
    normalize_flat,
    subtract_bias,
    subtract_dark,
)

# Star detection
from .stars import deblend_component, detect_stars, detect_stars_async, estimate_background

# Intensity matching
from .matching import (
    apply_brightness_gain,
    apply_linear_match,
    balance_layer_brightness,
    estimate_brightness_gain,
    estimate_linear_match,
    linear_match_to_reference,
)

# Registration
from .align import (
    Aligner,
    StarAligner,
    compute_framing,
    crop_layer,
    register_layers,
    register_layers_async,
)

# Blending and rendering
from .blend import blend_rgb, blend_scanline, composite_layer
from .render import integrate_luminance, render_composite, render_composite_async, to_rgba

# Pixel math
from .pixelmath import (
    PixelMathInput,
    PixelMathResult,
    apply_pixel_math_program,
    build_allowed_variables,
    compile_expression,
    validate_pixel_math_expression,
    validate_pixel_math_program,
)

# Frame quality and integration
from .quality import (
    evaluate_frame_quality,
    evaluate_frame_quality_async,
    quality_to_weights,
    rank_frames,
    select_frames,
)
from .stack import (
    STACK_METHODS,
    average_stack,
    integrate_frames,
    max_stack,
    median_stack,
    min_stack,
    sigma_clip_stack,
    weighted_stack,
    winsorized_stack,
)

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version",
    # Config
    "BLEND_MODES",
    "PROFILE_PRESETS",
    "StarDetectionConfig",
    "DetectedStar",
    "BackgroundEstimate",
    "CalibrationFrameSet",
    "LinearMatch",
    "BrightnessGain",
    "BrightnessBalance",
    "CompositeLayer",
    "PixelMathProgram",
    "PixelMathError",
    "RenderOptions",
    "RenderRequest",
    "RenderResult",
    "ControlPoints",
    "AlignmentTransform",
    "CropBox",
    "RegistrationRequest",
    "RegistrationResult",
    "QualityConfig",
    "FrameQuality",
    # Errors
    "AstrocompError",
    "ValidationError",
    "CompileError",
    "ExecutionError",
    "CancellationError",
    # Runtime
    "CancellationToken",
    "ProgressReporter",
    # Calibration
    "subtract_dark",
    "subtract_bias",
    "normalize_flat",
    "apply_flat",
    "calibrate",
    "calibrate_frame",
    "create_master_dark",
    "create_master_flat",
    # Star detection
    "estimate_background",
    "deblend_component",
    "detect_stars",
    "detect_stars_async",
    # Matching
    "estimate_linear_match",
    "apply_linear_match",
    "linear_match_to_reference",
    "estimate_brightness_gain",
    "apply_brightness_gain",
    "balance_layer_brightness",
    # Registration
    "Aligner",
    "StarAligner",
    "compute_framing",
    "crop_layer",
    "register_layers",
    "register_layers_async",
    # Blending / rendering
    "blend_rgb",
    "composite_layer",
    "blend_scanline",
    "integrate_luminance",
    "to_rgba",
    "render_composite",
    "render_composite_async",
    # Pixel math
    "PixelMathInput",
    "PixelMathResult",
    "build_allowed_variables",
    "compile_expression",
    "validate_pixel_math_expression",
    "validate_pixel_math_program",
    "apply_pixel_math_program",
    # Quality
    "evaluate_frame_quality",
    "evaluate_frame_quality_async",
    "rank_frames",
    "select_frames",
    "quality_to_weights",
    # Stacking
    "STACK_METHODS",
    "average_stack",
    "median_stack",
    "min_stack",
    "max_stack",
    "weighted_stack",
    "sigma_clip_stack",
    "winsorized_stack",
    "integrate_frames",
]
