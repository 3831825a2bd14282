from .utils import (
    DEFAULT_CAMERA_FOV_WIDTH_DEG,
    STRIPE_BOTTOM_KICKOUT_IN,
    STRIPE_LENGTH_IN,
    STRIPE_TIP_SEPARATION_IN,
    STRIPE_WIDTH_IN,
    BlurType,
    FrameFilter,
    OrientedRect,
    StripeClass,
    StripeDetector,
    Target,
    TargetMatcher,
    TargetPipeline,
    TargetReport,
    Visualizer,
    VisionError,
    VisionImageError,
    VisionProcessingError,
)

__all__ = [
    "DEFAULT_CAMERA_FOV_WIDTH_DEG",
    "STRIPE_BOTTOM_KICKOUT_IN",
    "STRIPE_LENGTH_IN",
    "STRIPE_TIP_SEPARATION_IN",
    "STRIPE_WIDTH_IN",
    "BlurType",
    "FrameFilter",
    "OrientedRect",
    "StripeClass",
    "StripeDetector",
    "Target",
    "TargetMatcher",
    "TargetPipeline",
    "TargetReport",
    "Visualizer",
    "VisionError",
    "VisionImageError",
    "VisionProcessingError",
]
