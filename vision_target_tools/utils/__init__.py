from .targets import (
    DEFAULT_CAMERA_FOV_WIDTH_DEG,
    STRIPE_BOTTOM_KICKOUT_IN,
    STRIPE_LENGTH_IN,
    STRIPE_TIP_SEPARATION_IN,
    STRIPE_WIDTH_IN,
    OrientedRect,
    StripeClass,
    Target,
    TargetReport,
)
from .vision import (
    BlurType,
    FrameFilter,
    StripeDetector,
    TargetMatcher,
    TargetPipeline,
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
    "OrientedRect",
    "StripeClass",
    "Target",
    "TargetReport",
    "BlurType",
    "FrameFilter",
    "StripeDetector",
    "TargetMatcher",
    "TargetPipeline",
    "Visualizer",
    "VisionError",
    "VisionImageError",
    "VisionProcessingError",
]
