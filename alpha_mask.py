import math
import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

try:
    from .bounds_resolver import PixelRect
    from .contour_tracer import ContourPoint
    from .edge_detector import convolve_normalized
    from .extraction_errors import check_cancelled
except ImportError:
    from bounds_resolver import PixelRect
    from contour_tracer import ContourPoint
    from edge_detector import convolve_normalized
    from extraction_errors import check_cancelled


logger = logging.getLogger(__name__)

# Mask defaults
_FEATHER_RADIUS = 5.0
_COLOR_SAMPLE_STRIDE = 5      # Grid spacing when sampling the foreground colour
_CONFIDENT_ALPHA = 200        # Interior alpha used for colour sampling
_UNCERTAIN_ALPHA = 30         # Lower bound of the refinable edge band
_COLOR_THRESHOLD = 30.0       # Euclidean RGB distance to the foreground colour
_ALPHA_BOOST = 50


def round_half_up(values):
    """Round halves toward positive infinity (floor(x + 0.5))."""
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5)


@dataclass
class AlphaMaskResult:
    mask: np.ndarray            # uint8 (rect.height, rect.width)
    rect: PixelRect
    used_fallback: bool
    refined_pixels: int = 0


def rasterize_polygon(points: Sequence[Tuple[float, float]], width: int, height: int) -> np.ndarray:
    """
    Even-odd scanline fill of a polygon given in mask-local coordinates.

    Spans between successive sorted crossings are filled inclusively from
    floor(start) to ceil(end) and clipped to the mask, so polygons that
    extend past the mask still fill the part they cover. Fewer than 3 points
    yield a fully opaque mask.
    """
    mask = np.zeros((height, width), dtype=np.uint8)
    if len(points) < 3:
        mask.fill(255)
        return mask

    coords = np.asarray(points, dtype=np.float64)
    x1, y1 = coords[:, 0], coords[:, 1]
    x2, y2 = np.roll(x1, -1), np.roll(y1, -1)

    for y in range(height):
        crosses = ((y1 <= y) & (y2 > y)) | ((y2 <= y) & (y1 > y))
        if not crosses.any():
            continue
        ax, ay, bx, by = x1[crosses], y1[crosses], x2[crosses], y2[crosses]
        xs = ax + (y - ay) * (bx - ax) / (by - ay)
        # Pair every crossing first, then clip the span
        xs = np.sort(xs)
        for start, end in zip(xs[0::2], xs[1::2]):
            left = max(0, int(math.floor(start)))
            right = min(width - 1, int(math.ceil(end)))
            if right < left:
                continue
            mask[y, left:right + 1] = 255
    return mask


def feathering_kernel(radius: float) -> np.ndarray:
    """Normalized Gaussian disc of size ceil(radius) * 2 + 1, zero beyond `radius`."""
    size = int(math.ceil(radius)) * 2 + 1
    center = size // 2
    yy, xx = np.mgrid[0:size, 0:size].astype(np.float64)
    dist = np.sqrt((xx - center) ** 2 + (yy - center) ** 2)
    kernel = np.where(dist <= radius, np.exp(-(dist * dist) / (2.0 * radius * radius)), 0.0)
    return kernel / kernel.sum()


def apply_feathering(mask: np.ndarray, radius: float = _FEATHER_RADIUS) -> np.ndarray:
    """Blur the binary mask, renormalizing by the in-bounds kernel weight."""
    if radius <= 0:
        return mask.copy()
    feathered = convolve_normalized(mask, feathering_kernel(radius))
    return np.clip(round_half_up(feathered), 0, 255).astype(np.uint8)


def refine_with_color(mask: np.ndarray, region_rgb: np.ndarray,
                      color_threshold: float = _COLOR_THRESHOLD,
                      alpha_boost: int = _ALPHA_BOOST,
                      sample_stride: int = _COLOR_SAMPLE_STRIDE) -> Tuple[np.ndarray, int]:
    """
    Boost the alpha of uncertain edge pixels whose colour matches the object.

    Args:
        mask: Feathered alpha mask
        region_rgb: Source pixels under the mask, (H, W, 3+)
        color_threshold: Maximum RGB distance to the sampled foreground colour
        alpha_boost: Amount added to matching pixels (clamped at 255)

    Returns:
        Tuple of (refined mask, number of boosted pixels)
    """
    refined = mask.copy()
    rgb = region_rgb[:, :, :3].astype(np.float64)

    grid_mask = mask[::sample_stride, ::sample_stride]
    samples = rgb[::sample_stride, ::sample_stride][grid_mask > _CONFIDENT_ALPHA]
    if len(samples) == 0:
        logger.debug("No confident interior pixels to sample, mask left unrefined")
        return refined, 0

    foreground = samples.mean(axis=0)
    distance = np.sqrt(((rgb - foreground) ** 2).sum(axis=2))
    uncertain = (mask > _UNCERTAIN_ALPHA) & (mask < _CONFIDENT_ALPHA)
    boost = uncertain & (distance <= color_threshold)

    refined[boost] = np.minimum(255, mask[boost].astype(np.int32) + alpha_boost).astype(np.uint8)
    return refined, int(np.count_nonzero(boost))


class AlphaMaskBuilder:
    """
    Turns a traced contour into a graded alpha mask covering the pixel rect:
    polygon fill, Gaussian feathering, then colour-guided edge refinement.
    """

    def __init__(self, feather_radius: float = _FEATHER_RADIUS,
                 color_threshold: float = _COLOR_THRESHOLD,
                 alpha_boost: int = _ALPHA_BOOST):
        self.feather_radius = feather_radius
        self.color_threshold = color_threshold
        self.alpha_boost = alpha_boost

    def build(self, image: np.ndarray, contour: Sequence[ContourPoint], rect: PixelRect,
              cancel_event=None) -> AlphaMaskResult:
        """
        Args:
            image: Source image (H, W, 3|4) uint8
            contour: Contour points in global image coordinates
            rect: Pixel rect the mask must cover

        Returns:
            AlphaMaskResult whose mask is exactly rect.height x rect.width
        """
        used_fallback = len(contour) < 3
        if used_fallback:
            logger.warning("Contour has %d points, falling back to a fully opaque mask", len(contour))
            local = []
        else:
            local = [(p.x - rect.x, p.y - rect.y) for p in contour]

        base = rasterize_polygon(local, rect.width, rect.height)
        check_cancelled(cancel_event, "mask rasterization")

        feathered = apply_feathering(base, self.feather_radius)
        check_cancelled(cancel_event, "mask feathering")

        region = image[rect.y:rect.y2, rect.x:rect.x2]
        refined, boosted = refine_with_color(feathered, region,
                                             self.color_threshold, self.alpha_boost)

        logger.info("Alpha mask %dx%d at (%d, %d): %d filled, %d colour-refined pixels",
                    rect.width, rect.height, rect.x, rect.y,
                    int(np.count_nonzero(base)), boosted)
        return AlphaMaskResult(refined, rect, used_fallback, boosted)
