import math
import logging
from dataclasses import dataclass

import numpy as np
import cv2

try:
    from .bounds_resolver import PixelRect, padded_roi, extract_region
    from .extraction_errors import check_cancelled
except ImportError:
    from bounds_resolver import PixelRect, padded_roi, extract_region
    from extraction_errors import check_cancelled


logger = logging.getLogger(__name__)

# Edge raster values
EDGE_NONE = 0
EDGE_WEAK = 75        # Between the thresholds, before hysteresis tracking
EDGE_FILLED = 128     # Gap pixel promoted by contour preprocessing
EDGE_STRONG = 255

# Canny-style defaults
_BLUR_SIGMA = 1.0
_LOW_THRESHOLD = 40       # Fine detail threshold on Sobel magnitude
_HIGH_THRESHOLD = 120     # Strong edge threshold on Sobel magnitude
_ROI_PADDING = 20

_EIGHTH_PI = math.pi / 8


@dataclass
class EdgeResult:
    edges: np.ndarray           # uint8 (roi.height, roi.width), values EDGE_NONE / EDGE_STRONG
    roi: PixelRect
    edge_pixel_count: int
    low_threshold: float
    high_threshold: float

    @property
    def edge_percentage(self) -> float:
        total = self.roi.width * self.roi.height
        return self.edge_pixel_count / total * 100.0 if total else 0.0

    def to_dict(self) -> dict:
        return {
            "roi_bounds": self.roi.to_dict(),
            "edge_pixel_count": self.edge_pixel_count,
            "edge_percentage": round(self.edge_percentage, 1),
            "thresholds": {"low": self.low_threshold, "high": self.high_threshold},
        }


def gaussian_kernel(sigma: float) -> np.ndarray:
    """Normalized 2D Gaussian kernel of size ceil(3 * sigma) * 2 + 1."""
    size = int(math.ceil(sigma * 3)) * 2 + 1
    center = size // 2
    yy, xx = np.mgrid[0:size, 0:size].astype(np.float64)
    dist_sq = (xx - center) ** 2 + (yy - center) ** 2
    kernel = np.exp(-dist_sq / (2.0 * sigma * sigma))
    return kernel / kernel.sum()


def convolve_normalized(data: np.ndarray, kernel: np.ndarray) -> np.ndarray:
    """
    Convolve with a kernel, renormalizing by the weight that falls inside
    the buffer so borders are not darkened.
    """
    src = data.astype(np.float32)
    k = kernel.astype(np.float32)
    weighted = cv2.filter2D(src, -1, k, borderType=cv2.BORDER_CONSTANT)
    coverage = cv2.filter2D(np.ones(src.shape[:2], dtype=np.float32), -1, k,
                            borderType=cv2.BORDER_CONSTANT)
    coverage = np.maximum(coverage, 1e-12)
    if weighted.ndim == 3:
        coverage = coverage[:, :, np.newaxis]
    return weighted / coverage


def compute_gradients(rgb: np.ndarray):
    """
    Sobel gradients on luminance (mean of R, G, B).

    Returns:
        Tuple of (magnitude, direction) float arrays; border pixels are zero.
    """
    gray = rgb[:, :, :3].astype(np.float64).mean(axis=2)
    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)

    magnitude = np.sqrt(gx ** 2 + gy ** 2)
    direction = np.arctan2(gy, gx)

    magnitude[0, :] = magnitude[-1, :] = 0
    magnitude[:, 0] = magnitude[:, -1] = 0
    direction[0, :] = direction[-1, :] = 0
    direction[:, 0] = direction[:, -1] = 0
    return magnitude, direction


def non_maximum_suppression(magnitude: np.ndarray, direction: np.ndarray) -> np.ndarray:
    """Keep pixels that are local maxima across their gradient orientation."""
    h, w = magnitude.shape
    suppressed = np.zeros_like(magnitude)
    if h < 3 or w < 3:
        return suppressed

    mag = magnitude[1:-1, 1:-1]
    angle = direction[1:-1, 1:-1]

    # Neighbour views into the full magnitude array
    left = magnitude[1:-1, :-2]
    right = magnitude[1:-1, 2:]
    up = magnitude[:-2, 1:-1]
    down = magnitude[2:, 1:-1]
    up_left = magnitude[:-2, :-2]
    up_right = magnitude[:-2, 2:]
    down_left = magnitude[2:, :-2]
    down_right = magnitude[2:, 2:]

    horizontal = (np.abs(angle) < _EIGHTH_PI) | (np.abs(angle) >= 7 * _EIGHTH_PI)
    rising = ((angle >= _EIGHTH_PI) & (angle < 3 * _EIGHTH_PI)) | \
             ((angle >= -7 * _EIGHTH_PI) & (angle < -5 * _EIGHTH_PI))
    vertical = ((angle >= 3 * _EIGHTH_PI) & (angle < 5 * _EIGHTH_PI)) | \
               ((angle >= -5 * _EIGHTH_PI) & (angle < -3 * _EIGHTH_PI))
    n1 = np.where(horizontal, left, np.where(rising, up_right, np.where(vertical, up, up_left)))
    n2 = np.where(horizontal, right, np.where(rising, down_left, np.where(vertical, down, down_right)))

    keep = (mag >= n1) & (mag >= n2)
    suppressed[1:-1, 1:-1] = np.where(keep, mag, 0)
    return suppressed


def hysteresis_threshold(suppressed: np.ndarray, low_threshold: float,
                         high_threshold: float) -> np.ndarray:
    """
    Double threshold, then promote weak pixels 8-connected to strong ones.

    Promotion is re-scanned to a fixed point, so a chain of weak pixels
    touching a strong pixel is kept as a whole. This equals keeping every
    8-connected candidate component that holds at least one strong pixel.
    Remaining weak pixels drop to 0.
    """
    edges = np.zeros(suppressed.shape, dtype=np.uint8)
    edges[suppressed >= low_threshold] = EDGE_WEAK
    edges[suppressed >= high_threshold] = EDGE_STRONG

    candidates = (edges > 0).astype(np.uint8)
    count, labels = cv2.connectedComponents(candidates, connectivity=8)
    if count <= 1:
        return np.zeros_like(edges)

    strong_labels = np.unique(labels[edges == EDGE_STRONG])
    keep = np.isin(labels, strong_labels[strong_labels > 0])

    result = np.zeros_like(edges)
    result[keep] = EDGE_STRONG
    return result


class EdgeDetector:
    """
    Canny-style edge detector run over the padded region of interest:
    Gaussian blur, Sobel gradients, non-maximum suppression and hysteresis.
    """

    def __init__(self, sigma: float = _BLUR_SIGMA,
                 low_threshold: float = _LOW_THRESHOLD,
                 high_threshold: float = _HIGH_THRESHOLD,
                 padding: int = _ROI_PADDING):
        """
        Args:
            sigma: Gaussian blur sigma used for noise suppression
            low_threshold: Sobel magnitude marking weak edges
            high_threshold: Sobel magnitude marking strong edges
            padding: Pixels added around the bound to form the ROI
        """
        if low_threshold > high_threshold:
            raise ValueError(f"low_threshold ({low_threshold}) must not exceed "
                             f"high_threshold ({high_threshold})")
        self.sigma = sigma
        self.low_threshold = low_threshold
        self.high_threshold = high_threshold
        self.padding = padding

    def detect_edges(self, roi_pixels: np.ndarray, cancel_event=None) -> np.ndarray:
        """Run the full edge pipeline on an already extracted ROI (H, W, 3|4)."""
        blurred = convolve_normalized(roi_pixels[:, :, :3], gaussian_kernel(self.sigma))
        check_cancelled(cancel_event, "edge detection")

        magnitude, direction = compute_gradients(blurred)
        suppressed = non_maximum_suppression(magnitude, direction)
        check_cancelled(cancel_event, "edge detection")

        return hysteresis_threshold(suppressed, self.low_threshold, self.high_threshold)

    def detect(self, image: np.ndarray, rect: PixelRect, cancel_event=None) -> EdgeResult:
        """
        Detect edges around `rect` in the source image.

        Args:
            image: Source image (H, W, 3|4) uint8
            rect: Integer pixel bounds of the object

        Returns:
            EdgeResult covering the padded ROI
        """
        h, w = image.shape[:2]
        roi = padded_roi(rect, w, h, self.padding)
        roi_pixels = extract_region(image, roi)

        edges = self.detect_edges(roi_pixels, cancel_event)
        edge_count = int(np.count_nonzero(edges))

        logger.info("Edge detection on %dx%d ROI at (%d, %d): %d edge pixels (%s-%s thresholds)",
                    roi.width, roi.height, roi.x, roi.y, edge_count,
                    self.low_threshold, self.high_threshold)
        return EdgeResult(edges, roi, edge_count, self.low_threshold, self.high_threshold)
