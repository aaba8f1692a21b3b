import math
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

try:
    from .extraction_errors import InvalidBounds, OutOfImageBounds, RegionExtractionFailure
except ImportError:
    from extraction_errors import InvalidBounds, OutOfImageBounds, RegionExtractionFailure


logger = logging.getLogger(__name__)

# Grip exclusion defaults
_GRIP_HEIGHT_RATIO = 0.25     # Fraction of height trimmed for vertically held objects
_GRIP_WIDTH_RATIO = 0.20      # Fraction of width trimmed when width > height
_GRIP_Y_SHIFT = 0.3           # Share of the height reduction moved into the bound
_GRIP_X_SHIFT = 0.5           # Share of the width reduction moved into the bound

_ROI_PADDING = 20             # Padding around the bound for edge detection
_ROI_OPAQUE_ALPHA = 128       # Source alpha above which a ROI pixel counts as opaque

_EPSILON = 1e-9


@dataclass(frozen=True)
class PercentBounds:
    """Rough bounding region in percent of the image size (0-100)."""
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_dict(cls, data: dict) -> "PercentBounds":
        try:
            return cls(float(data["x"]), float(data["y"]),
                       float(data["width"]), float(data["height"]))
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidBounds(f"Malformed percentage bounds {data!r}: {e}")

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class PixelBounds:
    """Bounding region in (fractional) image pixel coordinates."""
    x: float
    y: float
    width: float
    height: float

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class PixelRect:
    """Integer rectangle used to slice pixel buffers."""
    x: int
    y: int
    width: int
    height: int

    @property
    def x2(self) -> int:
        return self.x + self.width

    @property
    def y2(self) -> int:
        return self.y + self.height

    def contains(self, px: int, py: int) -> bool:
        return self.x <= px < self.x2 and self.y <= py < self.y2

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class ResolvedBounds:
    """Everything the resolver derives from one set of percentage bounds."""
    percent: PercentBounds
    pixel: PixelBounds
    adjusted: PixelBounds
    rect: PixelRect
    image_width: int
    image_height: int


def validate_percent_bounds(bounds: PercentBounds):
    """
    Check that percentage bounds describe a non-empty region inside the image.

    Raises:
        InvalidBounds: if any coordinate is out of [0, 100], a size is not
            positive, or the region extends past 100%.
    """
    values = (bounds.x, bounds.y, bounds.width, bounds.height)
    if any(not math.isfinite(v) for v in values):
        raise InvalidBounds(f"Non-finite bounds: {bounds}")
    if bounds.x < 0 or bounds.x > 100:
        raise InvalidBounds(f"Invalid x coordinate: {bounds.x} (should be 0-100)")
    if bounds.y < 0 or bounds.y > 100:
        raise InvalidBounds(f"Invalid y coordinate: {bounds.y} (should be 0-100)")
    if bounds.width <= 0 or bounds.width > 100:
        raise InvalidBounds(f"Invalid width: {bounds.width} (should be >0 and <=100)")
    if bounds.height <= 0 or bounds.height > 100:
        raise InvalidBounds(f"Invalid height: {bounds.height} (should be >0 and <=100)")
    if bounds.x + bounds.width > 100 + _EPSILON:
        raise InvalidBounds(f"Bounds extend beyond image: x({bounds.x}) + width({bounds.width}) > 100")
    if bounds.y + bounds.height > 100 + _EPSILON:
        raise InvalidBounds(f"Bounds extend beyond image: y({bounds.y}) + height({bounds.height}) > 100")


def percentage_to_pixel(bounds: PercentBounds, image_width: int, image_height: int) -> PixelBounds:
    """Linear scaling of percentage bounds into pixel space."""
    return PixelBounds(
        x=bounds.x / 100.0 * image_width,
        y=bounds.y / 100.0 * image_height,
        width=bounds.width / 100.0 * image_width,
        height=bounds.height / 100.0 * image_height,
    )


def pixel_to_percentage(bounds: PixelBounds, image_width: int, image_height: int) -> PercentBounds:
    """Inverse of percentage_to_pixel."""
    return PercentBounds(
        x=bounds.x / image_width * 100.0,
        y=bounds.y / image_height * 100.0,
        width=bounds.width / image_width * 100.0,
        height=bounds.height / image_height * 100.0,
    )


def adjust_bounds_to_exclude_grip(bounds: PixelBounds,
                                  height_ratio: float = _GRIP_HEIGHT_RATIO,
                                  width_ratio: float = _GRIP_WIDTH_RATIO) -> PixelBounds:
    """
    Trim the part of the region assumed to hold a gripping hand.

    Vertically oriented regions lose the bottom `height_ratio` of their height,
    horizontally oriented ones (width > height) lose `width_ratio` of their
    width instead. Part of the trimmed amount is shifted into the bound so the
    result stays centred on the object body.
    """
    if bounds.width > bounds.height:
        reduction = bounds.width * width_ratio
        return PixelBounds(
            x=bounds.x + reduction * _GRIP_X_SHIFT,
            y=bounds.y,
            width=bounds.width - reduction,
            height=bounds.height,
        )

    reduction = bounds.height * height_ratio
    return PixelBounds(
        x=bounds.x,
        y=bounds.y + reduction * _GRIP_Y_SHIFT,
        width=bounds.width,
        height=bounds.height - reduction,
    )


def validate_pixel_bounds(bounds: PixelBounds, image_width: int, image_height: int):
    """
    Raises:
        OutOfImageBounds: if the bounds have no area or leave the image.
    """
    if bounds.width <= 0:
        raise OutOfImageBounds(f"Negative or zero width: {bounds.width}")
    if bounds.height <= 0:
        raise OutOfImageBounds(f"Negative or zero height: {bounds.height}")
    if bounds.x < 0:
        raise OutOfImageBounds(f"Negative x coordinate: {bounds.x}")
    if bounds.y < 0:
        raise OutOfImageBounds(f"Negative y coordinate: {bounds.y}")
    if bounds.x >= image_width:
        raise OutOfImageBounds(f"X coordinate beyond image: {bounds.x} >= {image_width}")
    if bounds.y >= image_height:
        raise OutOfImageBounds(f"Y coordinate beyond image: {bounds.y} >= {image_height}")
    if bounds.x + bounds.width > image_width + _EPSILON:
        raise OutOfImageBounds(
            f"Width extends beyond image: {bounds.x} + {bounds.width} > {image_width}")
    if bounds.y + bounds.height > image_height + _EPSILON:
        raise OutOfImageBounds(
            f"Height extends beyond image: {bounds.y} + {bounds.height} > {image_height}")


def to_pixel_rect(bounds: PixelBounds, image_width: int, image_height: int) -> PixelRect:
    """Snap fractional bounds to the integer rectangle used for buffers."""
    x = min(max(0, int(math.floor(bounds.x))), image_width - 1)
    y = min(max(0, int(math.floor(bounds.y))), image_height - 1)
    width = max(1, min(int(math.ceil(bounds.width)), image_width - x))
    height = max(1, min(int(math.ceil(bounds.height)), image_height - y))
    return PixelRect(x, y, width, height)


def padded_roi(rect: PixelRect, image_width: int, image_height: int,
               padding: int = _ROI_PADDING) -> PixelRect:
    """Expand a rectangle by `padding` on every side, clamped to the image."""
    x1 = max(0, rect.x - padding)
    y1 = max(0, rect.y - padding)
    x2 = min(image_width, rect.x2 + padding)
    y2 = min(image_height, rect.y2 + padding)
    return PixelRect(x1, y1, max(1, x2 - x1), max(1, y2 - y1))


def extract_region(image: np.ndarray, rect: PixelRect) -> np.ndarray:
    """
    Copy the pixels covered by `rect` out of an (H, W, C) image.

    Raises:
        RegionExtractionFailure: if the rectangle is not fully inside the image.
    """
    h, w = image.shape[:2]
    if rect.width <= 0 or rect.height <= 0 or rect.x < 0 or rect.y < 0 \
            or rect.x2 > w or rect.y2 > h:
        raise RegionExtractionFailure(
            f"Region {rect.width}x{rect.height} at ({rect.x}, {rect.y}) "
            f"does not fit in {w}x{h} image")
    return image[rect.y:rect.y2, rect.x:rect.x2].copy()


def roi_statistics(image: np.ndarray, rect: PixelRect) -> dict:
    """Opaque/transparent counts of the source alpha inside the region."""
    region = extract_region(image, rect)
    total = rect.width * rect.height
    if region.ndim == 3 and region.shape[2] == 4:
        opaque = int(np.count_nonzero(region[:, :, 3] > _ROI_OPAQUE_ALPHA))
    else:
        opaque = total
    return {
        "total": total,
        "opaque": opaque,
        "transparent": total - opaque,
        "opacity_ratio": opaque / total * 100.0 if total else 0.0,
    }


class BoundsResolver:
    """
    Validates percentage bounds and converts them to the pixel region that
    the rest of the pipeline works on.
    """

    def __init__(self, exclude_grip: bool = True,
                 grip_height_ratio: float = _GRIP_HEIGHT_RATIO,
                 grip_width_ratio: float = _GRIP_WIDTH_RATIO):
        self.exclude_grip = exclude_grip
        self.grip_height_ratio = grip_height_ratio
        self.grip_width_ratio = grip_width_ratio

    def resolve(self, bounds: PercentBounds, image_width: int, image_height: int) -> ResolvedBounds:
        validate_percent_bounds(bounds)
        if image_width <= 0 or image_height <= 0:
            raise OutOfImageBounds(f"Empty image: {image_width}x{image_height}")

        pixel = percentage_to_pixel(bounds, image_width, image_height)
        if self.exclude_grip:
            adjusted = adjust_bounds_to_exclude_grip(
                pixel, self.grip_height_ratio, self.grip_width_ratio)
        else:
            adjusted = pixel
        validate_pixel_bounds(adjusted, image_width, image_height)

        rect = to_pixel_rect(adjusted, image_width, image_height)
        logger.info("Resolved bounds %s -> %dx%d at (%d, %d)",
                    bounds.to_dict(), rect.width, rect.height, rect.x, rect.y)
        return ResolvedBounds(bounds, pixel, adjusted, rect, image_width, image_height)


def resolve_bounds(bounds: PercentBounds, image_width: int, image_height: int,
                   exclude_grip: bool = True,
                   grip_height_ratio: float = _GRIP_HEIGHT_RATIO,
                   grip_width_ratio: float = _GRIP_WIDTH_RATIO,
                   resolver: Optional[BoundsResolver] = None) -> ResolvedBounds:
    """Functional shortcut for BoundsResolver(...).resolve(...)."""
    if resolver is None:
        resolver = BoundsResolver(exclude_grip, grip_height_ratio, grip_width_ratio)
    return resolver.resolve(bounds, image_width, image_height)
