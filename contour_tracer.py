import math
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import cv2

try:
    from .bounds_resolver import PixelRect
    from .edge_detector import EdgeResult, EDGE_NONE, EDGE_FILLED
    from .extraction_errors import check_cancelled
except ImportError:
    from bounds_resolver import PixelRect
    from edge_detector import EdgeResult, EDGE_NONE, EDGE_FILLED
    from extraction_errors import check_cancelled


logger = logging.getLogger(__name__)

Point = Tuple[int, int]
TraceStrategy = Callable[[np.ndarray, Point], List[Point]]

# Tracing limits
_MIN_STRATEGY_POINTS = 10     # A strategy yielding fewer points hands over to the next
_MOORE_MAX_POINTS = 5000
_MOORE_CLOSURE_POINTS = 30    # Minimum trace length before returning to the start closes it
_FOLLOW_MAX_POINTS = 3000
_GAP_FILL_NEIGHBORS = 2       # Edge neighbours needed to fill a 1-pixel gap

# Simplification / classification
_DP_TOLERANCE = 2.0
_CORNER_ANGLE = math.pi / 3   # > 60 degrees of turn
_CURVE_ANGLE = math.pi / 6    # > 30 degrees of turn

# Validation
_VALID_MIN_POINTS = 8
_VALID_MAX_POINTS = 1000

POINT_ENDPOINT = "endpoint"
POINT_CORNER = "corner"
POINT_CURVE = "curve"
POINT_EDGE = "edge"

# Clockwise Moore neighbourhood as (dx, dy)
_MOORE_DIRECTIONS = [
    (-1, -1), (-1, 0), (-1, 1),
    (0, 1), (1, 1), (1, 0),
    (1, -1), (0, -1),
]


@dataclass(frozen=True)
class ContourPoint:
    x: float
    y: float
    kind: str

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "type": self.kind}


@dataclass
class ContourResult:
    points: List[ContourPoint]          # global image coordinates
    edge_pixel_count: int
    raw_point_count: int
    simplified_point_count: int
    strategy: Optional[str]
    length: float
    validation: Dict[str, bool] = field(default_factory=dict)

    @property
    def degenerate(self) -> bool:
        return len(self.points) < 3

    @property
    def reduction_ratio(self) -> float:
        if self.raw_point_count == 0:
            return 0.0
        return (self.raw_point_count - len(self.points)) / self.raw_point_count * 100.0

    def to_dict(self) -> dict:
        return {
            "total_edge_pixels": self.edge_pixel_count,
            "raw_contour_points": self.raw_point_count,
            "simplified_points": self.simplified_point_count,
            "final_points": len(self.points),
            "reduction_ratio": round(self.reduction_ratio, 1),
            "contour_length": self.length,
            "strategy": self.strategy,
            "degenerate": self.degenerate,
            "validation": dict(self.validation),
        }


def fill_edge_gaps(edges: np.ndarray) -> np.ndarray:
    """
    Promote interior non-edge pixels with at least two edge neighbours to
    EDGE_FILLED so that 1-pixel breaks do not stop the trace.
    """
    processed = edges.copy()
    h, w = edges.shape
    if h < 3 or w < 3:
        return processed

    is_edge = (edges > 0).astype(np.float32)
    ring = np.ones((3, 3), np.float32)
    ring[1, 1] = 0
    neighbors = cv2.filter2D(is_edge, -1, ring, borderType=cv2.BORDER_CONSTANT)

    gap = (edges == EDGE_NONE) & (neighbors >= _GAP_FILL_NEIGHBORS - 0.5)
    gap[0, :] = gap[-1, :] = False
    gap[:, 0] = gap[:, -1] = False
    processed[gap] = EDGE_FILLED
    return processed


def find_start_point(edges: np.ndarray) -> Optional[Point]:
    """Leftmost edge pixel of the topmost row that contains one."""
    ys, xs = np.nonzero(edges)
    if len(ys) == 0:
        return None
    top = ys.min()
    return int(xs[ys == top].min()), int(top)


def trace_moore_contour(edges: np.ndarray, start: Point) -> List[Point]:
    """
    8-connected clockwise walk. Each step scans the Moore neighbourhood from
    the last successful direction and advances to the first unvisited edge
    pixel; reaching the start again after enough points closes the contour.
    """
    h, w = edges.shape
    contour: List[Point] = []
    visited = set()
    current = start
    last_direction = 0

    while len(contour) < _MOORE_MAX_POINTS:
        if current not in visited:
            contour.append(current)
            visited.add(current)

        next_point = None
        for i in range(8):
            direction = (last_direction + i) % 8
            dx, dy = _MOORE_DIRECTIONS[direction]
            nx, ny = current[0] + dx, current[1] + dy
            if not (0 <= nx < w and 0 <= ny < h) or edges[ny, nx] == EDGE_NONE:
                continue
            if (nx, ny) not in visited:
                next_point = (nx, ny)
                last_direction = direction
                break
            if (nx, ny) == start and len(contour) > _MOORE_CLOSURE_POINTS:
                logger.debug("Moore trace closed at %d points", len(contour))
                return contour

        if next_point is None:
            break
        current = next_point

    return contour


def _edge_adjacency(edges: np.ndarray) -> Dict[Point, List[Point]]:
    h, w = edges.shape
    adjacency: Dict[Point, List[Point]] = {}
    ys, xs = np.nonzero(edges[1:h - 1, 1:w - 1])
    for y, x in zip((ys + 1).tolist(), (xs + 1).tolist()):
        neighbors = []
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dx == 0 and dy == 0:
                    continue
                if edges[y + dy, x + dx] != EDGE_NONE:
                    neighbors.append((x + dx, y + dy))
        adjacency[(x, y)] = neighbors
    return adjacency


def trace_edge_following(edges: np.ndarray, start: Point) -> List[Point]:
    """
    Walk an explicit adjacency map of edge pixels, preferring unvisited
    neighbours and stepping back through visited ones when stuck.
    """
    adjacency = _edge_adjacency(edges)
    if not adjacency:
        return []

    current = start
    if current not in adjacency:
        current = min(adjacency, key=lambda p: (p[0] - start[0]) ** 2 + (p[1] - start[1]) ** 2)

    contour: List[Point] = []
    visited = set()
    while len(contour) < _FOLLOW_MAX_POINTS:
        neighbors = adjacency.get(current, [])
        if current in visited:
            unvisited = next((n for n in neighbors if n not in visited), None)
            if unvisited is None:
                break
            current = unvisited
            continue

        contour.append(current)
        visited.add(current)
        if not neighbors:
            break
        next_point = next((n for n in neighbors if n not in visited), None)
        current = next_point if next_point is not None else neighbors[0]

    return contour


def trace_boundary_pixels(edges: np.ndarray, start: Optional[Point] = None) -> List[Point]:
    """
    Last-resort outline: every edge pixel, top half left-to-right followed by
    bottom half right-to-left. Not topologically rigorous.
    """
    h = edges.shape[0]
    ys, xs = np.nonzero(edges)
    if len(ys) == 0:
        return []

    midline = h / 2.0
    pixels = list(zip(xs.tolist(), ys.tolist()))
    top = sorted((p for p in pixels if p[1] <= midline), key=lambda p: (p[0], p[1]))
    bottom = sorted((p for p in pixels if p[1] > midline), key=lambda p: (-p[0], -p[1]))

    seen = set()
    outline = []
    for p in top + bottom:
        if p not in seen:
            seen.add(p)
            outline.append(p)
    return outline


DEFAULT_STRATEGIES: List[Tuple[str, TraceStrategy]] = [
    ("moore", trace_moore_contour),
    ("edge_following", trace_edge_following),
    ("boundary_collection", trace_boundary_pixels),
]


def _perpendicular_distances(points: np.ndarray, start: np.ndarray, end: np.ndarray) -> np.ndarray:
    """Distance from each point to the segment start-end."""
    d = end - start
    seg_len_sq = float(d[0] * d[0] + d[1] * d[1])
    if seg_len_sq == 0:
        return np.hypot(points[:, 0] - start[0], points[:, 1] - start[1])
    t = ((points[:, 0] - start[0]) * d[0] + (points[:, 1] - start[1]) * d[1]) / seg_len_sq
    t = np.clip(t, 0.0, 1.0)
    proj_x = start[0] + t * d[0]
    proj_y = start[1] + t * d[1]
    return np.hypot(points[:, 0] - proj_x, points[:, 1] - proj_y)


def douglas_peucker(points: Sequence[Tuple[float, float]], tolerance: float = _DP_TOLERANCE) -> list:
    """
    Douglas-Peucker polyline simplification.

    Keeps the first and last points and, recursively, every point farther
    than `tolerance` from the chord of its segment. Iterative so long traces
    cannot exhaust the recursion limit.
    """
    n = len(points)
    if n <= 2:
        return list(points)

    coords = np.asarray(points, dtype=np.float64)
    keep = np.zeros(n, dtype=bool)
    keep[0] = keep[-1] = True

    stack = [(0, n - 1)]
    while stack:
        first, last = stack.pop()
        if last - first < 2:
            continue
        distances = _perpendicular_distances(coords[first + 1:last], coords[first], coords[last])
        idx = int(np.argmax(distances))
        if distances[idx] > tolerance:
            split = first + 1 + idx
            keep[split] = True
            stack.append((first, split))
            stack.append((split, last))

    return [points[i] for i in np.nonzero(keep)[0]]


def classify_contour_points(points: Sequence[Tuple[float, float]]) -> List[ContourPoint]:
    """Tag each point by its turning angle; path ends are endpoints."""
    classified = []
    last = len(points) - 1
    for i, (x, y) in enumerate(points):
        if i == 0 or i == last:
            classified.append(ContourPoint(x, y, POINT_ENDPOINT))
            continue

        px, py = points[i - 1]
        nx, ny = points[i + 1]
        angle_in = math.atan2(y - py, x - px)
        angle_out = math.atan2(ny - y, nx - x)
        turn = abs(angle_out - angle_in)
        turn = min(turn, 2 * math.pi - turn)

        if turn > _CORNER_ANGLE:
            kind = POINT_CORNER
        elif turn > _CURVE_ANGLE:
            kind = POINT_CURVE
        else:
            kind = POINT_EDGE
        classified.append(ContourPoint(x, y, kind))
    return classified


def contour_length(points: Sequence) -> float:
    total = 0.0
    for a, b in zip(points, points[1:]):
        ax, ay = (a.x, a.y) if isinstance(a, ContourPoint) else a
        bx, by = (b.x, b.y) if isinstance(b, ContourPoint) else b
        total += math.hypot(bx - ax, by - ay)
    return total


def validate_contour(contour: Sequence[ContourPoint], edge_pixel_count: int) -> Dict[str, bool]:
    """Plausibility checks; failures are reported, never raised."""
    validation = {
        "min_points": len(contour) >= _VALID_MIN_POINTS,
        "max_points": len(contour) <= _VALID_MAX_POINTS,
        "has_corners": any(p.kind == POINT_CORNER for p in contour),
        "has_curves": any(p.kind == POINT_CURVE for p in contour),
        "reasonable_length": 0 < len(contour) < edge_pixel_count,
    }
    validation["overall"] = (validation["min_points"] and validation["max_points"]
                             and validation["reasonable_length"]
                             and (validation["has_corners"] or validation["has_curves"]))
    return validation


class ContourTracer:
    """
    Traces a closed boundary through an edge raster, trying each strategy in
    order until one yields enough points, then simplifies and classifies it.
    """

    def __init__(self, tolerance: float = _DP_TOLERANCE,
                 min_strategy_points: int = _MIN_STRATEGY_POINTS,
                 strategies: Optional[List[Tuple[str, TraceStrategy]]] = None):
        self.tolerance = tolerance
        self.min_strategy_points = min_strategy_points
        self.strategies = list(strategies) if strategies is not None else list(DEFAULT_STRATEGIES)

    def trace_raw(self, edges: np.ndarray, start: Point, cancel_event=None) -> Tuple[List[Point], Optional[str]]:
        """Run the strategies in order; returns the points and the strategy used."""
        contour: List[Point] = []
        used = None
        for name, strategy in self.strategies:
            check_cancelled(cancel_event, f"contour tracing ({name})")
            contour = strategy(edges, start)
            used = name
            if len(contour) >= self.min_strategy_points:
                break
            logger.warning("Contour strategy '%s' produced %d points, trying next strategy",
                           name, len(contour))
        return contour, used

    def trace(self, edge_result: EdgeResult, cancel_event=None) -> ContourResult:
        edges = edge_result.edges
        roi: PixelRect = edge_result.roi
        edge_pixel_count = int(np.count_nonzero(edges))

        start = find_start_point(edges)
        if start is None:
            logger.warning("No edge pixels in %dx%d ROI, contour is degenerate", roi.width, roi.height)
            return ContourResult([], 0, 0, 0, None, 0.0,
                                 validate_contour([], 0))

        preprocessed = fill_edge_gaps(edges)
        raw, strategy = self.trace_raw(preprocessed, start, cancel_event)

        simplified = douglas_peucker(raw, self.tolerance)
        classified = classify_contour_points(simplified)
        global_points = [ContourPoint(p.x + roi.x, p.y + roi.y, p.kind) for p in classified]

        validation = validate_contour(global_points, edge_pixel_count)
        result = ContourResult(
            points=global_points,
            edge_pixel_count=edge_pixel_count,
            raw_point_count=len(raw),
            simplified_point_count=len(simplified),
            strategy=strategy,
            length=contour_length(global_points),
            validation=validation,
        )
        logger.info("Contour traced with '%s': %d raw -> %d simplified points (start %s)",
                    strategy, len(raw), len(simplified), start)
        if not validation["overall"]:
            logger.warning("Contour failed plausibility checks: %s", validation)
        return result
