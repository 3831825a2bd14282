"""
Geometry of the hatch vision target and the stripes that make it up.

A hatch target is a pair of retroreflective stripes tilted
symmetrically about vertical into a "V": the inner tips are close
together at the top and the bases kick outward. This module holds the
physical dimensions of the target, the oriented rectangle type the
pipeline works with, and the derived measurements (centre, scale and
range) of a detected target.

Classes:
    OrientedRect: Rotated rectangle in OpenCV image convention
    StripeClass: Which side of a target a stripe belongs to (Enum)
    Target: A matched left/right stripe pair
    TargetReport: Plain-float snapshot of a target's measurements

Conventions:
    X increases rightward from the left edge and Y increases downward
    from the top edge of the image, so 0 degrees points right and
    positive angles rotate clockwise. A canonical OrientedRect has
    height >= width (height is the long axis of the stripe) and an
    angle in the range (-180, 0].

Usage:
    target = Target(left_rect, right_rect)
    target.center_point()            # (x, y) in pixels
    target.range_inches(320)         # range using the default FOV
    report = target.report(320)      # safe to keep across frames

Note:
    Dimensions are from the field drawings (GE-19126). Lens distortion
    is ignored throughout.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import cv2 as cv
import numpy as np


def tested(func):
    """
    Decorator that marks a function or method as tested by adding a
    'tested' attribute set to True.

    Args:
        func (callable): The function or method to mark as tested.

    Returns:
        callable: The original function with a 'tested' attribute.
    """

    func.tested = True
    return func


# -----------------------------------------------------------------------------
# Physical constants (inches)
# -----------------------------------------------------------------------------

STRIPE_LENGTH_IN = 5.5
STRIPE_WIDTH_IN = 2.0

# Distance between the inner tips of the two stripes.
STRIPE_TIP_SEPARATION_IN = 8.0

# Lateral offset of a stripe's lower end from its upper end.
STRIPE_BOTTOM_KICKOUT_IN = 1.38

STRIPE_NOMINAL_ASPECT_RATIO = STRIPE_LENGTH_IN / STRIPE_WIDTH_IN

# Horizontal distance between the centres of the two stripes.
STRIPE_CENTER_SEPARATION_IN = STRIPE_TIP_SEPARATION_IN + STRIPE_BOTTOM_KICKOUT_IN

# Tilt of each stripe away from vertical, about 14.5 degrees.
STRIPE_TILT_DEG = math.degrees(
    math.asin(STRIPE_BOTTOM_KICKOUT_IN / STRIPE_LENGTH_IN)
)

# Microsoft LifeCam HD-3000 horizontal field of view.
DEFAULT_CAMERA_FOV_WIDTH_DEG = 61.0


class StripeClass(Enum):
    """
    Side of a hatch target that a stripe was classified as.

    Attributes:
        LEFT: Long axis leans clockwise from vertical (top tip inward).
        RIGHT: Long axis leans counterclockwise from vertical.
        NEITHER: Orientation matches neither stripe.
    """

    LEFT = "left"
    RIGHT = "right"
    NEITHER = "neither"


@dataclass(frozen=True)
class OrientedRect:
    """
    Rotated rectangle, as produced by cv.minAreaRect.

    The width edge runs along `angle` and the height edge is
    perpendicular to it. Use canonical() to get the form the rest of
    the pipeline expects.

    Attributes:
        center (Tuple[float, float]): Centre (x, y) in pixels.
        size (Tuple[float, float]): (width, height) in pixels.
        angle (float): Rotation of the width edge in degrees.
    """

    center: Tuple[float, float]
    size: Tuple[float, float]
    angle: float

    @classmethod
    @tested
    def from_cv(cls, box: Tuple) -> "OrientedRect":
        """
        Build an OrientedRect from an OpenCV RotatedRect tuple.

        Args:
            box (Tuple): ((cx, cy), (width, height), angle)

        Returns:
            OrientedRect: The same rectangle with plain float fields.
        """

        (cx, cy), (width, height), angle = box
        return cls(
            (float(cx), float(cy)), (float(width), float(height)), float(angle)
        )

    @property
    def width(self) -> float:
        return self.size[0]

    @property
    def height(self) -> float:
        return self.size[1]

    @property
    def area(self) -> float:
        return self.size[0] * self.size[1]

    @property
    def aspect_ratio(self) -> float:
        """
        Ratio of height to width, infinite for a zero width rectangle.
        """

        if self.size[0] == 0:
            return math.inf
        return self.size[1] / self.size[0]

    @tested
    def canonical(self) -> "OrientedRect":
        """
        Rewrite the rectangle so the long side is the height.

        minAreaRect does not promise which side it reports as the
        width, and the angle range it reports differs between OpenCV
        releases. When the width is the longer side the two are swapped
        and the angle is rotated by -90 degrees. The angle is then
        moved by whole half turns into (-180, 0], which describes the
        same rectangle.

        Returns:
            OrientedRect: Equivalent rectangle with height >= width.
        """

        width, height = self.size
        angle = self.angle
        if height < width:
            width, height = height, width
            angle -= 90.0

        # Adding 0.0 turns -0.0 into 0.0.
        angle = -((-angle) % 180.0) + 0.0

        return OrientedRect(self.center, (width, height), angle)

    def to_cv(self) -> Tuple:
        return (self.center, self.size, self.angle)

    @tested
    def points(self) -> np.ndarray:
        """
        Corner points of the rectangle.

        Returns:
            np.ndarray: 4x2 float32 array of (x, y) corners.
        """

        return cv.boxPoints(self.to_cv())


@dataclass(frozen=True)
class TargetReport:
    """
    Measurements of one target, detached from the pipeline buffers.

    This is what a downstream consumer such as the robot drive code
    receives. Bearing and incident angle are not computed and are
    always 0.0.
    """

    center_x: float
    center_y: float
    pixels_per_inch: float
    range_in: float
    bearing_deg: float = 0.0
    incident_angle_deg: float = 0.0

    @property
    def has_finite_range(self) -> bool:
        return math.isfinite(self.range_in)

    def as_dict(self) -> dict:
        return {
            "center_x": self.center_x,
            "center_y": self.center_y,
            "pixels_per_inch": self.pixels_per_inch,
            "range_in": self.range_in,
            "bearing_deg": self.bearing_deg,
            "incident_angle_deg": self.incident_angle_deg,
        }


@dataclass(frozen=True)
class Target:
    """
    A hatch target: one left stripe paired with one right stripe.

    Every measurement is computed from the two stripes when asked for,
    nothing is cached.

    Attributes:
        left (OrientedRect): Canonical rectangle of the left stripe.
        right (OrientedRect): Canonical rectangle of the right stripe.
    """

    left: OrientedRect
    right: OrientedRect

    @tested
    def center_point(self) -> Tuple[float, float]:
        """
        Midpoint of the two stripe centres, in pixels.
        """

        return (
            (self.left.center[0] + self.right.center[0]) / 2.0,
            (self.left.center[1] + self.right.center[1]) / 2.0,
        )

    def separation_px(self) -> float:
        """
        Horizontal distance from the left to the right stripe centre.
        """

        return self.right.center[0] - self.left.center[0]

    @tested
    def pixels_per_inch(self) -> float:
        """
        Estimate the image scale at the target.

        Three dimensions of known physical size are measured in pixels
        (stripe length, stripe width, and centre separation) and the
        resulting scales are averaged.

        Returns:
            float: Mean pixels per inch of the three estimates.
        """

        y_pix_per_inch = (self.left.height + self.right.height) / (
            2.0 * STRIPE_LENGTH_IN
        )
        x_pix_per_inch = (self.left.width + self.right.width) / (
            2.0 * STRIPE_WIDTH_IN
        )
        dist_pix_per_inch = self.separation_px() / STRIPE_CENTER_SEPARATION_IN

        return (y_pix_per_inch + x_pix_per_inch + dist_pix_per_inch) / 3.0

    @tested
    def range_inches(
        self,
        image_width_px: int,
        camera_fov_width_deg: float = DEFAULT_CAMERA_FOV_WIDTH_DEG,
    ) -> float:
        """
        Distance from the camera to the target.

        The angle subtended by the two stripe centres is found from the
        camera's degrees per pixel, and the known half separation of
        the centres is divided by the sine of half that angle. Lens
        distortion and incident angle are ignored.

        Args:
            image_width_px (int): Width of the processed image.
            camera_fov_width_deg (float, optional): Horizontal field of
                view of the camera. Defaults to
                DEFAULT_CAMERA_FOV_WIDTH_DEG.

        Returns:
            float: Range in inches. math.inf when the stripe centres
                have no positive horizontal separation; check with
                math.isfinite before using the value.

        Raises:
            ValueError: If image_width_px is not a positive integer or
                camera_fov_width_deg is not a positive number.
        """

        if (
            isinstance(image_width_px, bool)
            or not isinstance(image_width_px, (int, np.integer))
            or image_width_px <= 0
        ):
            raise ValueError(
                "Target.range_inches: image_width_px must be a positive "
                "integer."
            )

        if (
            isinstance(camera_fov_width_deg, bool)
            or not isinstance(camera_fov_width_deg, (int, float))
            or camera_fov_width_deg <= 0
        ):
            raise ValueError(
                "Target.range_inches: camera_fov_width_deg must be a "
                "positive number."
            )

        degrees_per_pixel = camera_fov_width_deg / image_width_px
        angular_width_rad = math.radians(
            self.separation_px() * degrees_per_pixel
        )

        half_angle_sine = math.sin(angular_width_rad / 2.0)
        if half_angle_sine <= 0.0:
            return math.inf

        return (STRIPE_CENTER_SEPARATION_IN / 2.0) / half_angle_sine

    def bearing_degrees(self) -> float:
        """
        Not computed, always 0.0.
        """

        return 0.0

    def incident_angle_degrees(self) -> float:
        """
        Not computed, always 0.0.
        """

        return 0.0

    @tested
    def report(
        self,
        image_width_px: int,
        camera_fov_width_deg: float = DEFAULT_CAMERA_FOV_WIDTH_DEG,
    ) -> TargetReport:
        """
        Snapshot the target's measurements.

        Args:
            image_width_px (int): Width of the processed image.
            camera_fov_width_deg (float, optional): Horizontal field of
                view of the camera.

        Returns:
            TargetReport: Measurements as plain floats.
        """

        center_x, center_y = self.center_point()
        return TargetReport(
            center_x=center_x,
            center_y=center_y,
            pixels_per_inch=self.pixels_per_inch(),
            range_in=self.range_inches(image_width_px, camera_fov_width_deg),
            bearing_deg=self.bearing_degrees(),
            incident_angle_deg=self.incident_angle_degrees(),
        )
