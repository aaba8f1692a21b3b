import math
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np
from sklearn.cluster import KMeans

try:
    from .alpha_mask import round_half_up
    from .bounds_resolver import PixelRect
    from .extraction_errors import check_cancelled
except ImportError:
    from alpha_mask import round_half_up
    from bounds_resolver import PixelRect
    from extraction_errors import check_cancelled


logger = logging.getLogger(__name__)

# Inverted mask
_FULL_FILL_BELOW = 50         # Mask alpha below this is filled completely
_NO_FILL_FROM = 200           # Mask alpha at or above this is kept as is
_FILL_MIN_STRENGTH = 50       # Fill strength needed before a pixel is synthesized
_FILLED_STRENGTH = 128        # Fill strength counted as a filled pixel in statistics

# Context sampling
_CONTEXT_RADIUS = 50
_CONTEXT_STRIDE = 3
_MAX_DOMINANT_COLORS = 5
_CLUSTER_MERGE_DISTANCE = 50
_HIGH_QUALITY_SAMPLES = 1000

# Patch sampling
_PATCH_RADIUS = 15
_PATCH_STRIDE = 3
_NEUTRAL_GRAY = (128, 128, 128)

CLUSTERING_GREEDY = "greedy"
CLUSTERING_KMEANS = "kmeans"


@dataclass
class BackgroundResult:
    background: np.ndarray      # uint8 RGBA, same size as the source image
    fill_mask: np.ndarray       # uint8 fill strength over the pixel rect
    rect: PixelRect
    filled_pixels: int
    sample_count: int
    dominant_colors: List[Tuple[int, int, int]] = field(default_factory=list)

    @property
    def fill_ratio(self) -> float:
        total = self.fill_mask.size
        return self.filled_pixels / total if total else 0.0

    @property
    def context_quality(self) -> str:
        return "High" if self.sample_count > _HIGH_QUALITY_SAMPLES else "Medium"


def create_inverted_mask(mask: np.ndarray) -> np.ndarray:
    """Fill strength per pixel: 255 where the mask is clear, none where it is solid."""
    alpha = mask.astype(np.int32)
    inverted = np.where(alpha < _FULL_FILL_BELOW, 255,
                        np.where(alpha < _NO_FILL_FROM, 255 - alpha, 0))
    return inverted.astype(np.uint8)


def sample_context_colors(image: np.ndarray, rect: PixelRect,
                          radius: int = _CONTEXT_RADIUS,
                          stride: int = _CONTEXT_STRIDE) -> np.ndarray:
    """
    RGB samples on a strided grid over the window rect +/- radius, skipping
    the rect itself. Returned row-major as an (N, 3) int array.
    """
    h, w = image.shape[:2]
    x0, x1 = max(0, rect.x - radius), min(w, rect.x2 + radius)
    y0, y1 = max(0, rect.y - radius), min(h, rect.y2 + radius)

    yy, xx = np.meshgrid(np.arange(y0, y1, stride), np.arange(x0, x1, stride), indexing="ij")
    yy, xx = yy.ravel(), xx.ravel()
    outside = ~((xx >= rect.x) & (xx < rect.x2) & (yy >= rect.y) & (yy < rect.y2))
    return image[yy[outside], xx[outside], :3].astype(np.int32)


def _greedy_clusters(colors: np.ndarray, max_colors: int, merge_distance: float):
    clusters = []    # [r, g, b, count]
    for r, g, b in colors.tolist():
        closest = None
        min_distance = math.inf
        for cluster in clusters:
            distance = math.sqrt((r - cluster[0]) ** 2 + (g - cluster[1]) ** 2 + (b - cluster[2]) ** 2)
            if distance < min_distance:
                min_distance = distance
                closest = cluster

        if closest is not None and min_distance < merge_distance:
            count = closest[3] + 1
            closest[0] = math.floor((closest[0] * closest[3] + r) / count + 0.5)
            closest[1] = math.floor((closest[1] * closest[3] + g) / count + 0.5)
            closest[2] = math.floor((closest[2] * closest[3] + b) / count + 0.5)
            closest[3] = count
        elif len(clusters) < max_colors:
            clusters.append([r, g, b, 1])

    clusters.sort(key=lambda c: c[3], reverse=True)
    return [(c[0], c[1], c[2]) for c in clusters]


def _kmeans_clusters(colors: np.ndarray, max_colors: int):
    n_clusters = min(max_colors, len(np.unique(colors, axis=0)))
    kmeans = KMeans(n_clusters=n_clusters, random_state=42, n_init=5, max_iter=50)
    labels = kmeans.fit_predict(colors.astype(np.float64))
    counts = np.bincount(labels, minlength=n_clusters)
    centers = np.clip(round_half_up(kmeans.cluster_centers_), 0, 255).astype(int)
    order = np.argsort(-counts, kind="stable")
    return [tuple(int(v) for v in centers[i]) for i in order]


def find_dominant_colors(colors: np.ndarray, max_colors: int = _MAX_DOMINANT_COLORS,
                         merge_distance: float = _CLUSTER_MERGE_DISTANCE,
                         method: str = CLUSTERING_GREEDY) -> List[Tuple[int, int, int]]:
    """
    Cluster context samples into at most `max_colors` colours, most
    populated first.

    The greedy method assigns each sample to the nearest existing cluster when
    closer than `merge_distance` (updating its rounded running mean) and
    otherwise opens a new cluster while fewer than `max_colors` exist. The
    kmeans method runs scikit-learn KMeans instead.
    """
    if len(colors) == 0:
        return []
    if method == CLUSTERING_KMEANS:
        return _kmeans_clusters(colors, max_colors)
    if method != CLUSTERING_GREEDY:
        raise ValueError(f"Unknown clustering method: {method}")
    return _greedy_clusters(colors, max_colors, merge_distance)


def sample_patch_averages(image: np.ndarray, xs: np.ndarray, ys: np.ndarray,
                          radius: int = _PATCH_RADIUS, stride: int = _PATCH_STRIDE,
                          cancel_event=None) -> np.ndarray:
    """
    Rounded average RGB of the strided patch around each (x, y) position,
    counting only in-image samples. Positions without samples get neutral grey.
    """
    h, w = image.shape[:2]
    rgb = image[:, :, :3]
    totals = np.zeros((len(xs), 3), dtype=np.float64)
    counts = np.zeros(len(xs), dtype=np.float64)

    for dy in range(-radius, radius + 1, stride):
        sy = ys + dy
        row_ok = (sy >= 0) & (sy < h)
        for dx in range(-radius, radius + 1, stride):
            sx = xs + dx
            ok = row_ok & (sx >= 0) & (sx < w)
            totals[ok] += rgb[sy[ok], sx[ok]]
            counts[ok] += 1
        check_cancelled(cancel_event, "patch sampling")

    averages = np.tile(np.array(_NEUTRAL_GRAY, dtype=np.float64), (len(xs), 1))
    sampled = counts > 0
    averages[sampled] = round_half_up(totals[sampled] / counts[sampled, np.newaxis])
    return averages


def select_harmonious_colors(patch_colors: np.ndarray,
                             dominant_colors: List[Tuple[int, int, int]]) -> np.ndarray:
    """Average each patch colour with the dominant colour nearest to it."""
    if not dominant_colors:
        return patch_colors.astype(np.float64)
    palette = np.asarray(dominant_colors, dtype=np.float64)
    distances = np.linalg.norm(patch_colors[:, np.newaxis, :] - palette[np.newaxis, :, :], axis=2)
    nearest = palette[np.argmin(distances, axis=1)]
    return round_half_up((nearest + patch_colors) / 2.0)


class BackgroundInpainter:
    """
    Fills the region under the alpha mask with patch-sampled colours pulled
    towards the dominant colours of the surrounding context.
    """

    def __init__(self, context_radius: int = _CONTEXT_RADIUS,
                 patch_radius: int = _PATCH_RADIUS,
                 max_colors: int = _MAX_DOMINANT_COLORS,
                 clustering: str = CLUSTERING_GREEDY):
        """
        Args:
            context_radius: Margin around the region sampled for context colours
            patch_radius: Radius of the local patch averaged for each filled pixel
            max_colors: Maximum number of dominant context colours
            clustering: "greedy" nearest-cluster assignment or "kmeans"
        """
        if clustering not in (CLUSTERING_GREEDY, CLUSTERING_KMEANS):
            raise ValueError(f"clustering must be '{CLUSTERING_GREEDY}' or "
                             f"'{CLUSTERING_KMEANS}', got {clustering!r}")
        self.context_radius = context_radius
        self.patch_radius = patch_radius
        self.max_colors = max_colors
        self.clustering = clustering

    def complete(self, image: np.ndarray, mask: np.ndarray, rect: PixelRect,
                 cancel_event=None) -> BackgroundResult:
        """
        Args:
            image: Source image (H, W, 4) uint8 RGBA
            mask: Alpha mask with the same size as `rect`
            rect: Pixel rect the object was cut from

        Returns:
            BackgroundResult whose background matches the source outside `rect`
        """
        if mask.shape != (rect.height, rect.width):
            raise ValueError(f"Mask shape {mask.shape} does not match region "
                             f"{rect.height}x{rect.width}")

        fill = create_inverted_mask(mask)
        samples = sample_context_colors(image, rect, self.context_radius)
        dominant = find_dominant_colors(samples, self.max_colors, method=self.clustering)
        check_cancelled(cancel_event, "context analysis")

        background = image.copy()
        region = background[rect.y:rect.y2, rect.x:rect.x2]

        ly, lx = np.nonzero(fill > _FILL_MIN_STRENGTH)
        if len(ly):
            patches = sample_patch_averages(image, lx + rect.x, ly + rect.y,
                                            self.patch_radius, cancel_event=cancel_event)
            harmony = select_harmonious_colors(patches, dominant)

            strength = fill[ly, lx].astype(np.float64)[:, np.newaxis] / 255.0
            original = region[ly, lx, :3].astype(np.float64)
            blended = round_half_up(original * (1 - strength) + harmony * strength)
            region[ly, lx, :3] = np.clip(blended, 0, 255).astype(np.uint8)
            if region.shape[2] == 4:
                region[ly, lx, 3] = 255

        filled = int(np.count_nonzero(fill > _FILLED_STRENGTH))
        logger.info("Background completion over %dx%d at (%d, %d): %d pixels synthesized, "
                    "%d context samples, %d dominant colours",
                    rect.width, rect.height, rect.x, rect.y, len(ly), len(samples), len(dominant))
        return BackgroundResult(background, fill, rect, filled, len(samples), dominant)
