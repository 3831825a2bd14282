"""
Hatch vision target pipeline.

Locates hatch targets (a symmetric "V" of two retroreflective stripes)
in a single BGR camera frame and measures each one. The pipeline is
stateless from frame to frame:

    1. Blur the frame to suppress single pixel noise.
    2. Threshold in HSV to isolate the illuminated tape.
    3. Extract contours of the binary mask.
    4. Filter contours on area, perimeter, bounding box, solidity,
       vertex count and bounding box aspect ratio.
    5. Fit a minimum area rotated rectangle to each contour and keep
       the ones shaped like a stripe.
    6. Classify each rectangle as a LEFT stripe, RIGHT stripe or
       neither from its angle.
    7. Greedily pair every LEFT stripe with the first compatible RIGHT
       stripe.
    8. Measure each pair (see targets.Target).

Classes:
    BlurType: Blur filter variants (Enum)
    VisionBase: Tuning constants shared by all components
    FrameFilter: Stages 1-4
    StripeDetector: Stages 5-6
    TargetMatcher: Stage 7
    Visualizer: Debug overlays of the pipeline outputs
    TargetPipeline: Runs every stage and holds the last frame's outputs
    VisionError: Base exception for the pipeline
    VisionImageError: Invalid input frame
    VisionProcessingError: An OpenCV primitive failed

Usage:
    pipeline = TargetPipeline()
    targets = pipeline.process(frame)
    for report in pipeline.reports():
        print(report.range_in)

Note:
    A TargetPipeline reuses its scratch buffers between frames, so one
    instance must not be shared between threads and outputs must be
    copied if they are needed after the next call to process().
"""

from enum import Enum
from types import TracebackType
from typing import List, Optional, Sequence, Tuple, Type

import cv2 as cv
import numpy as np

from .targets import (
    DEFAULT_CAMERA_FOV_WIDTH_DEG,
    STRIPE_CENTER_SEPARATION_IN,
    STRIPE_LENGTH_IN,
    STRIPE_NOMINAL_ASPECT_RATIO,
    STRIPE_TILT_DEG,
    STRIPE_WIDTH_IN,
    OrientedRect,
    StripeClass,
    Target,
    TargetReport,
)


def tested(func):
    """
    Decorator that marks a function or method as tested.

    Adds a 'tested' attribute set to True to indicate the function
    has been confirmed to work as expected.

    Args:
        func (callable): The function or method to mark as tested.

    Returns:
        callable: The original function with a 'tested' attribute.
    """

    func.tested = True
    return func


class BlurType(Enum):
    """
    Filter used by the blur stage, keyed by its GRIP label.
    """

    BOX = "Box Blur"
    GAUSSIAN = "Gaussian Blur"
    MEDIAN = "Median Filter"
    BILATERAL = "Bilateral Filter"

    @classmethod
    def get(cls, label: str) -> "BlurType":
        """
        Look up a blur type by label, falling back to BOX.
        """

        for blur_type in cls:
            if blur_type.value == label:
                return blur_type
        return cls.BOX

    def __str__(self) -> str:
        return self.value


class VisionBase:
    """
    Constants shared by the pipeline components.

    Every tuning value here is a default. Components take a keyword
    argument of the same name (lower case, without the DEFAULT_ prefix)
    to override it.
    """

    # -------------------------------------------------------------------------
    # Blur (tuned in GRIP)
    # -------------------------------------------------------------------------

    DEFAULT_BLUR_TYPE = BlurType.BOX
    DEFAULT_BLUR_RADIUS = 2.7027027027027026

    # -------------------------------------------------------------------------
    # HSV threshold (tuned in GRIP, OpenCV hue range 0-180)
    # -------------------------------------------------------------------------

    DEFAULT_HSV_HUE = (45.69817278554671, 93.99989504410354)
    DEFAULT_HSV_SATURATION = (91.72661870503596, 255.0)
    DEFAULT_HSV_VALUE = (57.32913669064751, 255.0)

    # -------------------------------------------------------------------------
    # Contour extraction and filtering
    # -------------------------------------------------------------------------

    DEFAULT_EXTERNAL_ONLY = False

    DEFAULT_MIN_AREA = 50.0
    DEFAULT_MIN_PERIMETER = 0.0
    DEFAULT_WIDTH_RANGE = (0.0, 1000.0)
    DEFAULT_HEIGHT_RANGE = (0.0, 1000.0)

    # Percent of the convex hull area covered by the contour.
    DEFAULT_SOLIDITY_RANGE = (90.28776978417267, 100.0)
    DEFAULT_VERTEX_RANGE = (0.0, 10000.0)

    # Bounding box width / height.
    DEFAULT_RATIO_RANGE = (0.0, 1.0)

    # -------------------------------------------------------------------------
    # Rotated rectangle filtering
    # -------------------------------------------------------------------------

    DEFAULT_RECT_MIN_AREA = 100.0
    DEFAULT_RECT_MIN_ASPECT_RATIO = STRIPE_NOMINAL_ASPECT_RATIO * 0.6
    DEFAULT_RECT_MAX_ASPECT_RATIO = STRIPE_NOMINAL_ASPECT_RATIO * 1.5

    # Fraction of the rectangle filled in by the contour.
    DEFAULT_RECT_MIN_FILL_RATIO = 0.75

    # -------------------------------------------------------------------------
    # Stripe classification
    # -------------------------------------------------------------------------

    LEFT_STRIPE_NOMINAL_ANGLE_DEG = -180.0 + STRIPE_TILT_DEG
    RIGHT_STRIPE_NOMINAL_ANGLE_DEG = 0.0 - STRIPE_TILT_DEG

    # Tolerance when the stripe rotates towards vertical / horizontal.
    ANGLE_TOLERANCE_VERTICAL_DEG = 10.0
    ANGLE_TOLERANCE_HORIZONTAL_DEG = 20.0

    DEFAULT_LEFT_ANGLE_RANGE = (
        LEFT_STRIPE_NOMINAL_ANGLE_DEG - ANGLE_TOLERANCE_VERTICAL_DEG,
        LEFT_STRIPE_NOMINAL_ANGLE_DEG + ANGLE_TOLERANCE_HORIZONTAL_DEG,
    )
    DEFAULT_RIGHT_ANGLE_RANGE = (
        RIGHT_STRIPE_NOMINAL_ANGLE_DEG - ANGLE_TOLERANCE_HORIZONTAL_DEG,
        RIGHT_STRIPE_NOMINAL_ANGLE_DEG + ANGLE_TOLERANCE_VERTICAL_DEG,
    )

    # -------------------------------------------------------------------------
    # Target pairing
    # -------------------------------------------------------------------------

    DEFAULT_VERTICAL_TOLERANCE_IN = STRIPE_LENGTH_IN * 1
    DEFAULT_HORIZONTAL_TOLERANCE_IN = STRIPE_WIDTH_IN * 3

    # -------------------------------------------------------------------------
    # Visualization Color Constants (BGR format for OpenCV)
    # -------------------------------------------------------------------------

    RED = (0, 0, 255)
    GREEN = (0, 255, 0)
    BLUE = (255, 0, 0)
    YELLOW = (0, 255, 255)
    WHITE = (255, 255, 255)

    TEXT_SIZE = 0.5
    TEXT_THICKNESS = 1
    LINE_THICKNESS = 1

    # -------------------------------------------------------------------------
    # Utility Methods
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate_range(
        owner: str, name: str, value: Sequence[float]
    ) -> Tuple[float, float]:
        """
        Check that value is a (low, high) pair of numbers with
        low <= high and return it as a tuple of floats.

        Raises:
            ValueError: If the pair is malformed or reversed.
        """

        try:
            low, high = value
            low, high = float(low), float(high)
        except (TypeError, ValueError):
            raise ValueError(
                f"{owner}: {name} must be a (low, high) pair of numbers, "
                f"got {value!r}."
            ) from None

        if low > high:
            raise ValueError(
                f"{owner}: {name} low bound {low} is above high bound "
                f"{high}."
            )

        return (low, high)

    @staticmethod
    def _validate_number(
        owner: str, name: str, value: float, minimum: float = 0.0
    ) -> float:
        """
        Check that value is a number no smaller than minimum.
        """

        if isinstance(value, bool) or not isinstance(
            value, (int, float, np.integer, np.floating)
        ):
            raise ValueError(f"{owner}: {name} must be a number.")

        if value < minimum:
            raise ValueError(
                f"{owner}: {name} must be at least {minimum}, got {value}."
            )

        return float(value)


class FrameFilter(VisionBase):
    """
    Blur, HSV threshold, contour extraction and contour filtering.

    The stage methods are pure functions of their input and the
    configured parameters.
    """

    def __init__(
        self,
        blur_type: Optional[object] = None,
        blur_radius: Optional[float] = None,
        hsv_hue: Optional[Tuple[float, float]] = None,
        hsv_saturation: Optional[Tuple[float, float]] = None,
        hsv_value: Optional[Tuple[float, float]] = None,
        external_only: Optional[bool] = None,
        min_area: Optional[float] = None,
        min_perimeter: Optional[float] = None,
        width_range: Optional[Tuple[float, float]] = None,
        height_range: Optional[Tuple[float, float]] = None,
        solidity_range: Optional[Tuple[float, float]] = None,
        vertex_range: Optional[Tuple[float, float]] = None,
        ratio_range: Optional[Tuple[float, float]] = None,
    ) -> None:
        """
        Configure the filter stages. Any argument left as None takes
        the matching VisionBase default.

        Args:
            blur_type (BlurType or str, optional): Blur filter, or its
                GRIP label such as "Box Blur".
            blur_radius (float, optional): Blur radius in pixels.
            hsv_hue (Tuple[float, float], optional): Hue range, 0-180.
            hsv_saturation (Tuple[float, float], optional): Saturation
                range, 0-255.
            hsv_value (Tuple[float, float], optional): Value range,
                0-255.
            external_only (bool, optional): Only keep outermost
                contours.
            min_area (float, optional): Minimum contour area.
            min_perimeter (float, optional): Minimum contour perimeter.
            width_range (Tuple[float, float], optional): Bounding box
                width range.
            height_range (Tuple[float, float], optional): Bounding box
                height range.
            solidity_range (Tuple[float, float], optional): Contour area
                as a percentage of its convex hull area.
            vertex_range (Tuple[float, float], optional): Number of
                contour points.
            ratio_range (Tuple[float, float], optional): Bounding box
                width / height.

        Raises:
            ValueError: If any parameter is malformed.
        """

        owner = "FrameFilter.__init__"

        if blur_type is None:
            blur_type = self.DEFAULT_BLUR_TYPE
        elif isinstance(blur_type, str):
            if blur_type not in [b.value for b in BlurType]:
                raise ValueError(
                    f"{owner}: unknown blur type label {blur_type!r}."
                )
            blur_type = BlurType.get(blur_type)
        elif not isinstance(blur_type, BlurType):
            raise ValueError(
                f"{owner}: blur_type must be a BlurType or a label string."
            )
        self.blur_type = blur_type

        self.blur_radius = self._validate_number(
            owner,
            "blur_radius",
            self.DEFAULT_BLUR_RADIUS if blur_radius is None else blur_radius,
        )

        self.hsv_hue = self._validate_range(
            owner, "hsv_hue", hsv_hue or self.DEFAULT_HSV_HUE
        )
        self.hsv_saturation = self._validate_range(
            owner,
            "hsv_saturation",
            hsv_saturation or self.DEFAULT_HSV_SATURATION,
        )
        self.hsv_value = self._validate_range(
            owner, "hsv_value", hsv_value or self.DEFAULT_HSV_VALUE
        )

        self.external_only = (
            self.DEFAULT_EXTERNAL_ONLY
            if external_only is None
            else bool(external_only)
        )

        self.min_area = self._validate_number(
            owner,
            "min_area",
            self.DEFAULT_MIN_AREA if min_area is None else min_area,
        )
        self.min_perimeter = self._validate_number(
            owner,
            "min_perimeter",
            self.DEFAULT_MIN_PERIMETER
            if min_perimeter is None
            else min_perimeter,
        )
        self.width_range = self._validate_range(
            owner, "width_range", width_range or self.DEFAULT_WIDTH_RANGE
        )
        self.height_range = self._validate_range(
            owner, "height_range", height_range or self.DEFAULT_HEIGHT_RANGE
        )
        self.solidity_range = self._validate_range(
            owner,
            "solidity_range",
            solidity_range or self.DEFAULT_SOLIDITY_RANGE,
        )
        self.vertex_range = self._validate_range(
            owner, "vertex_range", vertex_range or self.DEFAULT_VERTEX_RANGE
        )
        self.ratio_range = self._validate_range(
            owner, "ratio_range", ratio_range or self.DEFAULT_RATIO_RANGE
        )

    def __str__(self) -> str:
        return (
            f"FrameFilter(blur={self.blur_type}, "
            f"radius={self.blur_radius:.2f}, hue={self.hsv_hue}, "
            f"external_only={self.external_only})"
        )

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    @staticmethod
    @tested
    def blur_kernel_size(blur_type: BlurType, radius: float) -> int:
        """
        Kernel size the blur stage uses for a given type and radius.

        The radius is rounded to the nearest integer r. Box and median
        filters use a 2r+1 kernel, the Gaussian uses 6r+1 (three sigma
        either side). The bilateral filter sizes its own kernel and
        reports -1.
        """

        r = int(radius + 0.5)
        if blur_type is BlurType.GAUSSIAN:
            return 6 * r + 1
        if blur_type is BlurType.BILATERAL:
            return -1
        return 2 * r + 1

    @tested
    def blur(
        self, image: np.ndarray, dst: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """
        Soften the image with the configured filter.

        Args:
            image (np.ndarray): BGR image.
            dst (np.ndarray, optional): Buffer of the same shape and
                type to write into.

        Returns:
            np.ndarray: Blurred image, same shape as the input.
        """

        radius = int(self.blur_radius + 0.5)
        kernel_size = self.blur_kernel_size(self.blur_type, self.blur_radius)

        if self.blur_type is BlurType.GAUSSIAN:
            return cv.GaussianBlur(
                image, (kernel_size, kernel_size), radius, dst=dst
            )
        if self.blur_type is BlurType.MEDIAN:
            return cv.medianBlur(image, kernel_size, dst=dst)
        if self.blur_type is BlurType.BILATERAL:
            return cv.bilateralFilter(image, -1, radius, radius, dst=dst)

        return cv.blur(image, (kernel_size, kernel_size), dst=dst)

    @tested
    def hsv_threshold(
        self, image: np.ndarray, dst: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """
        Segment the image on inclusive hue, saturation and value
        ranges.

        Args:
            image (np.ndarray): BGR image.
            dst (np.ndarray, optional): Single channel uint8 buffer to
                write the mask into.

        Returns:
            np.ndarray: Mask with 255 where all three channels are in
                range and 0 elsewhere.
        """

        hsv = cv.cvtColor(image, cv.COLOR_BGR2HSV)
        lower = (self.hsv_hue[0], self.hsv_saturation[0], self.hsv_value[0])
        upper = (self.hsv_hue[1], self.hsv_saturation[1], self.hsv_value[1])

        return cv.inRange(hsv, lower, upper, dst=dst)

    @tested
    def find_contours(self, mask: np.ndarray) -> List[np.ndarray]:
        """
        Boundaries of the regions in a binary mask.

        Only outermost boundaries are returned when external_only is
        set, otherwise every nested boundary as well. Runs of points
        along horizontal, vertical and diagonal segments are compressed
        to their end points.
        """

        mode = cv.RETR_EXTERNAL if self.external_only else cv.RETR_LIST
        contours, _ = cv.findContours(mask, mode, cv.CHAIN_APPROX_SIMPLE)

        return list(contours)

    @tested
    def filter_contours(
        self, contours: Sequence[np.ndarray]
    ) -> List[np.ndarray]:
        """
        Drop contours whose shape statistics fall outside the
        configured ranges.

        Args:
            contours (Sequence[np.ndarray]): Contours to filter.

        Returns:
            List[np.ndarray]: The contours that pass every check, in
                input order.
        """

        filtered = []

        for contour in contours:
            _, _, width, height = cv.boundingRect(contour)
            if not (self.width_range[0] <= width <= self.width_range[1]):
                continue
            if not (self.height_range[0] <= height <= self.height_range[1]):
                continue

            area = cv.contourArea(contour)
            if area < self.min_area:
                continue

            if cv.arcLength(contour, True) < self.min_perimeter:
                continue

            hull_area = cv.contourArea(cv.convexHull(contour))
            if hull_area <= 0:
                continue
            solidity = 100.0 * area / hull_area
            if not (
                self.solidity_range[0] <= solidity <= self.solidity_range[1]
            ):
                continue

            if not (
                self.vertex_range[0] <= len(contour) <= self.vertex_range[1]
            ):
                continue

            # A nonzero area implies a nonzero bounding box height.
            ratio = width / float(height)
            if not (self.ratio_range[0] <= ratio <= self.ratio_range[1]):
                continue

            filtered.append(contour)

        return filtered


class StripeDetector(VisionBase):
    """
    Fits rotated rectangles to contours and sorts them into left and
    right stripes by angle.
    """

    def __init__(
        self,
        rect_min_area: Optional[float] = None,
        rect_min_aspect_ratio: Optional[float] = None,
        rect_max_aspect_ratio: Optional[float] = None,
        rect_min_fill_ratio: Optional[float] = None,
        left_angle_range: Optional[Tuple[float, float]] = None,
        right_angle_range: Optional[Tuple[float, float]] = None,
    ) -> None:
        """
        Args:
            rect_min_area (float, optional): Minimum rectangle area in
                square pixels.
            rect_min_aspect_ratio (float, optional): Minimum ratio of
                the long side to the short side.
            rect_max_aspect_ratio (float, optional): Maximum ratio of
                the long side to the short side.
            rect_min_fill_ratio (float, optional): Minimum fraction of
                the rectangle covered by the contour.
            left_angle_range (Tuple[float, float], optional): Accepted
                [low, high) angles of a left stripe.
            right_angle_range (Tuple[float, float], optional): Accepted
                [low, high) angles of a right stripe.

        Raises:
            ValueError: If any parameter is malformed.
        """

        owner = "StripeDetector.__init__"

        self.rect_min_area = self._validate_number(
            owner,
            "rect_min_area",
            self.DEFAULT_RECT_MIN_AREA
            if rect_min_area is None
            else rect_min_area,
        )
        self.aspect_ratio_range = self._validate_range(
            owner,
            "rect aspect ratio range",
            (
                self.DEFAULT_RECT_MIN_ASPECT_RATIO
                if rect_min_aspect_ratio is None
                else rect_min_aspect_ratio,
                self.DEFAULT_RECT_MAX_ASPECT_RATIO
                if rect_max_aspect_ratio is None
                else rect_max_aspect_ratio,
            ),
        )
        self.rect_min_fill_ratio = self._validate_number(
            owner,
            "rect_min_fill_ratio",
            self.DEFAULT_RECT_MIN_FILL_RATIO
            if rect_min_fill_ratio is None
            else rect_min_fill_ratio,
        )
        self.left_angle_range = self._validate_range(
            owner,
            "left_angle_range",
            left_angle_range or self.DEFAULT_LEFT_ANGLE_RANGE,
        )
        self.right_angle_range = self._validate_range(
            owner,
            "right_angle_range",
            right_angle_range or self.DEFAULT_RIGHT_ANGLE_RANGE,
        )

    @tested
    def fit_rectangle(self, contour: np.ndarray) -> Optional[OrientedRect]:
        """
        Fit the tightest rotated rectangle to a contour and check that
        it is shaped like a stripe.

        Args:
            contour (np.ndarray): Contour points.

        Returns:
            Optional[OrientedRect]: The canonical rectangle, or None if
                it is too small, has the wrong aspect ratio, or is not
                filled in enough by the contour.
        """

        contour_area = cv.contourArea(contour)
        rect = OrientedRect.from_cv(
            cv.minAreaRect(contour.astype(np.float32))
        ).canonical()

        if rect.area < self.rect_min_area:
            return None

        aspect_ratio = rect.aspect_ratio
        if not (
            self.aspect_ratio_range[0]
            <= aspect_ratio
            <= self.aspect_ratio_range[1]
        ):
            return None

        if contour_area / rect.area < self.rect_min_fill_ratio:
            return None

        return rect

    def fit_rectangles(
        self, contours: Sequence[np.ndarray]
    ) -> List[OrientedRect]:
        """
        fit_rectangle over a list, keeping only the accepted ones.
        """

        rects = []
        for contour in contours:
            rect = self.fit_rectangle(contour)
            if rect is not None:
                rects.append(rect)

        return rects

    @tested
    def classify_one(self, rect: OrientedRect) -> StripeClass:
        """
        Side of the target a canonical rectangle belongs to.

        In image coordinates a left stripe's long axis leans clockwise
        from vertical and its angle sits near -165.5 degrees, a right
        stripe's sits near -14.5 degrees. Ranges include their low
        bound and exclude their high bound.
        """

        if self.left_angle_range[0] <= rect.angle < self.left_angle_range[1]:
            return StripeClass.LEFT
        if (
            self.right_angle_range[0]
            <= rect.angle
            < self.right_angle_range[1]
        ):
            return StripeClass.RIGHT
        return StripeClass.NEITHER

    @tested
    def classify(
        self, rects: Sequence[OrientedRect]
    ) -> Tuple[List[OrientedRect], List[OrientedRect], List[OrientedRect]]:
        """
        Partition rectangles into left, right and unclassified lists.

        Args:
            rects (Sequence[OrientedRect]): Canonical rectangles.

        Returns:
            Tuple[List, List, List]: (left, right, neither), each in
                input order. Every rectangle lands in exactly one list.
        """

        left, right, neither = [], [], []
        bins = {
            StripeClass.LEFT: left,
            StripeClass.RIGHT: right,
            StripeClass.NEITHER: neither,
        }
        for rect in rects:
            bins[self.classify_one(rect)].append(rect)

        return left, right, neither


class TargetMatcher(VisionBase):
    """
    Pairs left stripes with right stripes.

    Pairing is greedy: left stripes are visited in order and each takes
    the first unused right stripe (in order) that is compatible with
    it. This is not a globally optimal assignment, but targets on the
    field are well separated so it is sufficient in practice.
    """

    def __init__(
        self,
        vertical_tolerance_in: Optional[float] = None,
        horizontal_tolerance_in: Optional[float] = None,
    ) -> None:
        owner = "TargetMatcher.__init__"

        self.vertical_tolerance_in = self._validate_number(
            owner,
            "vertical_tolerance_in",
            self.DEFAULT_VERTICAL_TOLERANCE_IN
            if vertical_tolerance_in is None
            else vertical_tolerance_in,
        )
        self.horizontal_tolerance_in = self._validate_number(
            owner,
            "horizontal_tolerance_in",
            self.DEFAULT_HORIZONTAL_TOLERANCE_IN
            if horizontal_tolerance_in is None
            else horizontal_tolerance_in,
        )

    @staticmethod
    def stripe_pixels_per_inch(stripe: OrientedRect) -> float:
        """
        Image scale estimated from a single stripe.

        The stripe is about 15 degrees off the image axes, which is
        ignored here.
        """

        y_pix_per_inch = stripe.height / STRIPE_LENGTH_IN
        x_pix_per_inch = stripe.width / STRIPE_WIDTH_IN

        return (y_pix_per_inch + x_pix_per_inch) / 2.0

    @tested
    def is_match(self, left: OrientedRect, right: OrientedRect) -> bool:
        """
        Whether a right stripe sits where the left stripe's partner
        should be.

        Using the left stripe's scale, the right stripe's centre must
        lie within one stripe length vertically of the left centre, and
        within three stripe widths horizontally of the point one centre
        separation to its right.
        """

        pix_per_inch = self.stripe_pixels_per_inch(left)
        expected_offset_px = STRIPE_CENTER_SEPARATION_IN * pix_per_inch

        vertical_match = abs(right.center[1] - left.center[1]) < (
            self.vertical_tolerance_in * pix_per_inch
        )
        horizontal_match = abs(
            right.center[0] - left.center[0] - expected_offset_px
        ) < (self.horizontal_tolerance_in * pix_per_inch)

        return vertical_match and horizontal_match

    @tested
    def find_targets(
        self,
        left_stripes: Sequence[OrientedRect],
        right_stripes: Sequence[OrientedRect],
    ) -> Tuple[List[Target], List[OrientedRect]]:
        """
        Pair stripes into targets.

        Neither input list is modified. Each right stripe is used by at
        most one target.

        Args:
            left_stripes (Sequence[OrientedRect]): Left stripes.
            right_stripes (Sequence[OrientedRect]): Right stripes.

        Returns:
            Tuple[List[Target], List[OrientedRect]]: The targets in
                left stripe order, and the right stripes no target
                used, in their original order.
        """

        available = list(range(len(right_stripes)))
        targets = []

        for left in left_stripes:
            for position, index in enumerate(available):
                if self.is_match(left, right_stripes[index]):
                    targets.append(Target(left, right_stripes[index]))
                    del available[position]
                    break

        unmatched_right = [right_stripes[index] for index in available]

        return targets, unmatched_right


class Visualizer(VisionBase):
    """
    Draws pipeline outputs onto a frame for inspection. Every public
    method returns an annotated copy and leaves its input untouched.
    """

    def _draw_text(
        self,
        frame: np.ndarray,
        text: str,
        position: Tuple[float, float],
        color: Tuple[int, int, int] = None,
    ) -> None:
        if color is None:
            color = self.WHITE

        cv.putText(
            frame,
            text,
            (int(position[0]), int(position[1])),
            cv.FONT_HERSHEY_SIMPLEX,
            self.TEXT_SIZE,
            color,
            self.TEXT_THICKNESS,
        )

    def _draw_rotated_rects(
        self,
        frame: np.ndarray,
        rects: Sequence[OrientedRect],
        color: Tuple[int, int, int],
        annotate: bool,
    ) -> None:
        boxes = [np.int32(np.round(rect.points())) for rect in rects]
        if boxes:
            cv.drawContours(frame, boxes, -1, color, self.LINE_THICKNESS)

        if annotate:
            for rect in rects:
                self._draw_text(frame, str(int(rect.angle)), rect.center, color)
                self._draw_text(
                    frame,
                    f"{rect.width:.0f}x{rect.height:.0f}",
                    (rect.center[0] - 20, rect.center[1] + 50),
                    color,
                )

    def _draw_target(
        self,
        frame: np.ndarray,
        target: Target,
        color: Tuple[int, int, int],
    ) -> None:
        self._draw_rotated_rects(
            frame, [target.left, target.right], color, False
        )

        left_center = tuple(int(round(v)) for v in target.left.center)
        right_center = tuple(int(round(v)) for v in target.right.center)
        cv.line(frame, left_center, right_center, color, self.LINE_THICKNESS)

        center_x, center_y = target.center_point()
        half_height = (target.left.height + target.right.height) / 4.0
        cv.line(
            frame,
            (int(round(center_x)), int(round(center_y - half_height))),
            (int(round(center_x)), int(round(center_y + half_height))),
            color,
            self.LINE_THICKNESS,
        )

    @tested
    def draw_rotated_rects(
        self,
        frame: np.ndarray,
        rects: Sequence[OrientedRect],
        color: Tuple[int, int, int] = None,
        annotate: bool = False,
    ) -> np.ndarray:
        """
        Outline rectangles, optionally labelled with their integer
        angle and their width x height.
        """

        vis_frame = frame.copy()
        self._draw_rotated_rects(
            vis_frame, rects, color or self.YELLOW, annotate
        )

        return vis_frame

    @tested
    def draw_target(
        self,
        frame: np.ndarray,
        target: Target,
        color: Tuple[int, int, int] = None,
    ) -> np.ndarray:
        """
        Outline both stripes of a target, join their centres, and mark
        the target centre with a vertical bar one stripe tall.
        """

        vis_frame = frame.copy()
        self._draw_target(vis_frame, target, color or self.WHITE)

        return vis_frame

    @tested
    def draw_pipeline(
        self, frame: np.ndarray, pipeline: "TargetPipeline"
    ) -> np.ndarray:
        """
        Overlay the last frame's stripes and targets from a pipeline.

        Unclassified rectangles are yellow and annotated, left stripes
        green, right stripes red, and targets white.
        """

        vis_frame = frame.copy()
        self._draw_rotated_rects(
            vis_frame, pipeline.unclassified_stripes, self.YELLOW, True
        )
        self._draw_rotated_rects(
            vis_frame, pipeline.left_stripes, self.GREEN, False
        )
        self._draw_rotated_rects(
            vis_frame, pipeline.right_stripes, self.RED, False
        )
        for target in pipeline.detected_targets:
            self._draw_target(vis_frame, target, self.WHITE)

        return vis_frame


class TargetPipeline(VisionBase):
    """
    Runs the whole hatch target pipeline on one frame at a time.

    The outputs of every stage for the last processed frame are kept
    and exposed as read-only properties. They are replaced, and the
    image buffers overwritten, on the next call to process(), so copy
    anything that must outlive it. An instance is not safe to use from
    more than one thread; give each camera stream its own.

    Usage:
        with TargetPipeline() as pipeline:
            for target in pipeline.process(frame):
                print(target.range_inches(frame.shape[1]))

    Raises:
        VisionImageError: The frame is not a non-empty BGR uint8 image.
        VisionProcessingError: An OpenCV primitive failed.
    """

    def __init__(
        self,
        frame_filter: Optional[FrameFilter] = None,
        stripe_detector: Optional[StripeDetector] = None,
        target_matcher: Optional[TargetMatcher] = None,
        camera_fov_width_deg: Optional[float] = None,
        debug: bool = False,
    ) -> None:
        """
        Args:
            frame_filter (FrameFilter, optional): Stages 1-4. Defaults
                to the tuned configuration.
            stripe_detector (StripeDetector, optional): Stages 5-6.
            target_matcher (TargetMatcher, optional): Stage 7.
            camera_fov_width_deg (float, optional): Horizontal field of
                view used by reports(). Defaults to
                DEFAULT_CAMERA_FOV_WIDTH_DEG.
            debug (bool, optional): Print stage counts for each frame.
        """

        self.frame_filter = frame_filter or FrameFilter()
        self.stripe_detector = stripe_detector or StripeDetector()
        self.target_matcher = target_matcher or TargetMatcher()
        self.camera_fov_width_deg = self._validate_number(
            "TargetPipeline.__init__",
            "camera_fov_width_deg",
            DEFAULT_CAMERA_FOV_WIDTH_DEG
            if camera_fov_width_deg is None
            else camera_fov_width_deg,
        )
        if self.camera_fov_width_deg == 0:
            raise ValueError(
                "TargetPipeline.__init__: camera_fov_width_deg must be "
                "positive."
            )
        self.debug = debug
        self.frames_processed = 0

        self._reset_outputs()

    def __enter__(self) -> "TargetPipeline":
        return self

    def __exit__(
        self,
        exception_type: Optional[Type[BaseException]],
        exception_value: Optional[BaseException],
        exception_traceback: Optional[TracebackType],
    ) -> None:
        """
        Drop the buffers and outputs of the last frame.
        """

        self._reset_outputs()

        if exception_type is not None:
            print(f"TargetPipeline.__exit__: Exception type: {exception_type}")
            print(
                f"TargetPipeline.__exit__: Exception value: {exception_value}"
            )

    def __str__(self) -> str:
        return (
            f"TargetPipeline(blur={self.frame_filter.blur_type}, "
            f"fov={self.camera_fov_width_deg:.1f}, "
            f"frames_processed={self.frames_processed})"
        )

    # -------------------------------------------------------------------------
    # Private helper functions
    # -------------------------------------------------------------------------

    def _reset_outputs(self) -> None:
        self._blur_output: Optional[np.ndarray] = None
        self._hsv_threshold_output: Optional[np.ndarray] = None
        self._find_contours_output: List[np.ndarray] = []
        self._filter_contours_output: List[np.ndarray] = []
        self._filtered_rects: List[OrientedRect] = []
        self._left_stripes: List[OrientedRect] = []
        self._right_stripes: List[OrientedRect] = []
        self._unclassified_stripes: List[OrientedRect] = []
        self._unmatched_right_stripes: List[OrientedRect] = []
        self._detected_targets: List[Target] = []
        self._frame_width: Optional[int] = None

    @staticmethod
    @tested
    def _validate_image(image: np.ndarray) -> None:
        """
        Raise VisionImageError unless image is a non-empty 8-bit BGR
        array.
        """

        if image is None:
            raise VisionImageError("image is None.")

        if not isinstance(image, np.ndarray):
            raise VisionImageError(
                f"expected a numpy.ndarray, got {type(image).__name__}."
            )

        if image.ndim != 3 or image.shape[2] != 3:
            raise VisionImageError(
                "expected a BGR image of shape (rows, cols, 3), got shape "
                f"{image.shape}."
            )

        if image.dtype != np.uint8:
            raise VisionImageError(
                f"expected an 8-bit image, got dtype {image.dtype}."
            )

        if image.shape[0] == 0 or image.shape[1] == 0:
            raise VisionImageError(f"image is empty, shape {image.shape}.")

    @staticmethod
    def _reusable(
        buffer: Optional[np.ndarray], image: np.ndarray, shape: Tuple
    ) -> Optional[np.ndarray]:
        """
        Return buffer if it can be written into for this frame.
        """

        if (
            buffer is not None
            and buffer.shape == shape
            and buffer.dtype == np.uint8
            and not np.may_share_memory(buffer, image)
        ):
            return buffer
        return None

    # -------------------------------------------------------------------------
    # Main interface
    # -------------------------------------------------------------------------

    @tested
    def process(self, image: np.ndarray) -> List[Target]:
        """
        Run every stage on one frame and store the outputs.

        An invalid frame is rejected before anything is touched, so the
        previous frame's outputs stay available. If OpenCV fails part
        way through, all outputs are cleared.

        Args:
            image (np.ndarray): BGR uint8 frame.

        Returns:
            List[Target]: Targets found, in left stripe order. This is
                the same list as detected_targets.

        Raises:
            VisionImageError: If the frame is invalid.
            VisionProcessingError: If an OpenCV primitive fails.
        """

        self._validate_image(image)

        try:
            self._blur_output = self.frame_filter.blur(
                image,
                dst=self._reusable(self._blur_output, image, image.shape),
            )
            self._hsv_threshold_output = self.frame_filter.hsv_threshold(
                self._blur_output,
                dst=self._reusable(
                    self._hsv_threshold_output, image, image.shape[:2]
                ),
            )
            self._find_contours_output = self.frame_filter.find_contours(
                self._hsv_threshold_output
            )
            self._filter_contours_output = self.frame_filter.filter_contours(
                self._find_contours_output
            )
            self._filtered_rects = self.stripe_detector.fit_rectangles(
                self._filter_contours_output
            )

        except cv.error as e:
            self._reset_outputs()
            raise VisionProcessingError(
                f"OpenCV failed while processing frame: {e}"
            ) from e

        (
            self._left_stripes,
            self._right_stripes,
            self._unclassified_stripes,
        ) = self.stripe_detector.classify(self._filtered_rects)

        (
            self._detected_targets,
            self._unmatched_right_stripes,
        ) = self.target_matcher.find_targets(
            self._left_stripes, self._right_stripes
        )

        self._frame_width = int(image.shape[1])
        self.frames_processed += 1

        if self.debug:
            print(
                f"TargetPipeline.process: {len(self._find_contours_output)} "
                f"contours, {len(self._filter_contours_output)} filtered, "
                f"{len(self._filtered_rects)} rects "
                f"(L={len(self._left_stripes)}, "
                f"R={len(self._right_stripes)}, "
                f"N={len(self._unclassified_stripes)}), "
                f"{len(self._detected_targets)} targets."
            )

        return self._detected_targets

    def reports(
        self, camera_fov_width_deg: Optional[float] = None
    ) -> List[TargetReport]:
        """
        Measurements of the last frame's targets.

        Args:
            camera_fov_width_deg (float, optional): Overrides the
                pipeline's field of view.

        Returns:
            List[TargetReport]: One report per detected target, empty if
                no frame has been processed.
        """

        if self._frame_width is None:
            return []

        fov = camera_fov_width_deg or self.camera_fov_width_deg
        return [
            target.report(self._frame_width, fov)
            for target in self._detected_targets
        ]

    # -------------------------------------------------------------------------
    # Outputs of the last frame
    # -------------------------------------------------------------------------

    @property
    def blur_output(self) -> Optional[np.ndarray]:
        return self._blur_output

    @property
    def hsv_threshold_output(self) -> Optional[np.ndarray]:
        return self._hsv_threshold_output

    @property
    def find_contours_output(self) -> List[np.ndarray]:
        return self._find_contours_output

    @property
    def filter_contours_output(self) -> List[np.ndarray]:
        return self._filter_contours_output

    @property
    def filtered_rects(self) -> List[OrientedRect]:
        return self._filtered_rects

    @property
    def left_stripes(self) -> List[OrientedRect]:
        return self._left_stripes

    @property
    def right_stripes(self) -> List[OrientedRect]:
        """
        Every rectangle classified as a right stripe, including those
        used by a target.
        """

        return self._right_stripes

    @property
    def unmatched_right_stripes(self) -> List[OrientedRect]:
        """
        Right stripes that no target used.
        """

        return self._unmatched_right_stripes

    @property
    def unclassified_stripes(self) -> List[OrientedRect]:
        return self._unclassified_stripes

    @property
    def detected_targets(self) -> List[Target]:
        return self._detected_targets

    @property
    def frame_width(self) -> Optional[int]:
        return self._frame_width


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class VisionError(Exception):
    """
    Base exception for all hatch target pipeline errors.

    Example:
        try:
            targets = pipeline.process(frame)
        except VisionError as e:
            print(f"Vision pipeline error: {e}")
    """

    @tested
    def __init__(self, message: str) -> None:
        super().__init__(message)


class VisionImageError(VisionError):
    """
    Exception raised when the input frame cannot be processed.

    Raised when:
        - The frame is None or not a numpy array
        - The frame is not 3-channel 8-bit BGR
        - The frame has zero rows or columns
    """

    @tested
    def __init__(self, message: str) -> None:
        super().__init__(f"TargetPipeline: {message}")


class VisionProcessingError(VisionError):
    """
    Exception raised when an OpenCV primitive fails during a frame.
    """

    @tested
    def __init__(self, message: str) -> None:
        super().__init__(f"TargetPipeline: {message}")
