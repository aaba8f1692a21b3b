"""
Per-invocation diagnostics for the sprite extraction pipeline.

Every stage reports read-only metrics into an ExtractionDiagnostics instance
created for that call; nothing here feeds back into the pixel processing.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

try:
    from .alpha_mask import AlphaMaskResult
    from .background_inpainter import BackgroundResult
    from .bounds_resolver import ResolvedBounds
    from .contour_tracer import ContourResult
    from .edge_detector import EdgeResult
    from .sprite_compositor import SpriteResult
except ImportError:
    from alpha_mask import AlphaMaskResult
    from background_inpainter import BackgroundResult
    from bounds_resolver import ResolvedBounds
    from contour_tracer import ContourResult
    from edge_detector import EdgeResult
    from sprite_compositor import SpriteResult


# Alpha classes shared by the mask and sprite statistics
OPAQUE_ALPHA = 200
PARTIAL_ALPHA = 50

_GOOD_MASK_OPAQUE = 0.1       # Opaque share for a "Good" mask
_SPRITE_CONTENT_MIN = 0.05
_SPRITE_EDGE_MIN = 0.1
_BACKGROUND_FILL_MIN = 0.1


def _percent(part: int, total: int) -> float:
    return round(part / total * 100.0, 1) if total else 0.0


@dataclass
class MaskMetrics:
    total: int
    opaque: int
    partial: int
    transparent: int
    feather_radius: float
    used_fallback: bool = False
    refined_pixels: int = 0

    @classmethod
    def from_result(cls, result: AlphaMaskResult, feather_radius: float) -> "MaskMetrics":
        mask = result.mask
        opaque = int(np.count_nonzero(mask > OPAQUE_ALPHA))
        partial = int(np.count_nonzero((mask > PARTIAL_ALPHA) & (mask <= OPAQUE_ALPHA)))
        return cls(int(mask.size), opaque, partial, int(mask.size) - opaque - partial,
                   feather_radius, result.used_fallback, result.refined_pixels)

    @property
    def opaque_percentage(self) -> float:
        return _percent(self.opaque, self.total)

    @property
    def partial_percentage(self) -> float:
        return _percent(self.partial, self.total)

    @property
    def quality(self) -> str:
        return "Good" if self.opaque > self.total * _GOOD_MASK_OPAQUE else "Needs Review"

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "opaque": self.opaque,
            "partial": self.partial,
            "transparent": self.transparent,
            "opaque_percentage": self.opaque_percentage,
            "partial_percentage": self.partial_percentage,
            "transparent_percentage": _percent(self.transparent, self.total),
            "feather_radius": self.feather_radius,
            "used_fallback": self.used_fallback,
            "refined_pixels": self.refined_pixels,
            "quality": self.quality,
        }


@dataclass
class SpriteMetrics:
    total: int
    opaque: int
    partial: int
    transparent: int

    @classmethod
    def from_result(cls, result: SpriteResult) -> "SpriteMetrics":
        return cls(int(result.alpha.size), result.opaque, result.partial, result.transparent)

    @property
    def content_ratio(self) -> float:
        """Share of visible (opaque or partial) pixels."""
        return (self.opaque + self.partial) / self.total if self.total else 0.0

    @property
    def edge_quality(self) -> float:
        """Share of visible pixels that are partially transparent."""
        visible = self.opaque + self.partial
        return self.partial / visible if visible else 0.0

    @property
    def quality(self) -> str:
        if self.content_ratio > _SPRITE_CONTENT_MIN and self.edge_quality > _SPRITE_EDGE_MIN:
            return "Professional"
        return "Good"

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "opaque": self.opaque,
            "partial": self.partial,
            "transparent": self.transparent,
            "content_ratio": round(self.content_ratio * 100.0, 1),
            "edge_quality": round(self.edge_quality * 100.0, 1),
            "quality": self.quality,
        }


@dataclass
class BackgroundMetrics:
    total_mask_pixels: int
    filled_pixels: int
    context_samples: int
    dominant_colors: int

    @classmethod
    def from_result(cls, result: BackgroundResult) -> "BackgroundMetrics":
        return cls(int(result.fill_mask.size), result.filled_pixels,
                   result.sample_count, len(result.dominant_colors))

    @property
    def fill_ratio(self) -> float:
        return self.filled_pixels / self.total_mask_pixels if self.total_mask_pixels else 0.0

    @property
    def context_quality(self) -> str:
        return "High" if self.context_samples > 1000 else "Medium"

    def to_dict(self) -> dict:
        return {
            "total_mask_pixels": self.total_mask_pixels,
            "filled_pixels": self.filled_pixels,
            "fill_ratio": round(self.fill_ratio * 100.0, 1),
            "context_samples": self.context_samples,
            "dominant_colors": self.dominant_colors,
            "context_quality": self.context_quality,
            "fill_quality": "Professional" if self.fill_ratio > _BACKGROUND_FILL_MIN else "Good",
        }


@dataclass
class QualityScores:
    contour: float
    mask: float
    sprite: float
    background: float
    overall: int
    status: str
    stage_status: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "contour": round(self.contour, 1),
            "mask": round(self.mask, 1),
            "sprite": round(self.sprite, 1),
            "background": round(self.background, 1),
            "overall": self.overall,
            "status": self.status,
            "stage_status": dict(self.stage_status),
        }


@dataclass
class ExtractionDiagnostics:
    """Accumulates stage metrics for one pipeline invocation."""
    bounds: Optional[ResolvedBounds] = None
    roi_statistics: Optional[dict] = None
    edges: Optional[dict] = None
    contour: Optional[dict] = None
    contour_points: int = 0
    mask: Optional[MaskMetrics] = None
    sprite: Optional[SpriteMetrics] = None
    background: Optional[BackgroundMetrics] = None
    warnings: List[str] = field(default_factory=list)
    timings_ms: Dict[str, float] = field(default_factory=dict)

    def record_bounds(self, resolved: ResolvedBounds, roi_statistics: Optional[dict] = None):
        self.bounds = resolved
        self.roi_statistics = roi_statistics

    def record_edges(self, result: EdgeResult):
        self.edges = result.to_dict()
        if result.edge_pixel_count == 0:
            self.warnings.append("No edge pixels detected in the region of interest")

    def record_contour(self, result: ContourResult):
        self.contour = result.to_dict()
        self.contour_points = len(result.points)
        if result.degenerate:
            self.warnings.append(
                f"Contour degenerate ({len(result.points)} points), mask filled opaque")
        elif not result.validation.get("overall", False):
            self.warnings.append("Contour failed plausibility validation")

    def record_mask(self, result: AlphaMaskResult, feather_radius: float):
        self.mask = MaskMetrics.from_result(result, feather_radius)

    def record_sprite(self, result: SpriteResult):
        self.sprite = SpriteMetrics.from_result(result)

    def record_background(self, result: BackgroundResult):
        self.background = BackgroundMetrics.from_result(result)

    def record_timing(self, stage: str, elapsed_ms: float):
        self.timings_ms[stage] = round(elapsed_ms, 2)

    @property
    def scores(self) -> QualityScores:
        return score_extraction(self)

    def to_dict(self) -> dict:
        bounds = None
        if self.bounds is not None:
            bounds = {
                "percent": self.bounds.percent.to_dict(),
                "pixel": self.bounds.pixel.to_dict(),
                "adjusted": self.bounds.adjusted.to_dict(),
                "rect": self.bounds.rect.to_dict(),
                "image": {"width": self.bounds.image_width, "height": self.bounds.image_height},
            }
        return {
            "bounds": bounds,
            "roi_statistics": self.roi_statistics,
            "edges": self.edges,
            "contour": self.contour,
            "mask": self.mask.to_dict() if self.mask else None,
            "sprite": self.sprite.to_dict() if self.sprite else None,
            "background": self.background.to_dict() if self.background else None,
            "scores": self.scores.to_dict(),
            "warnings": list(self.warnings),
            "timings_ms": dict(self.timings_ms),
        }


def score_extraction(diagnostics: ExtractionDiagnostics) -> QualityScores:
    """
    0-100 quality score per stage plus the rounded mean.

    Stages that never ran score as if every metric were zero.
    """
    status = {}

    points = diagnostics.contour_points
    if 100 <= points <= 2000:
        contour = min(100.0, 50 + points / 20)
        status["contour"] = "Excellent" if points > 500 else "Good"
    else:
        contour = 30.0
        status["contour"] = "Poor"

    opaque = diagnostics.mask.opaque_percentage if diagnostics.mask else 0.0
    partial = diagnostics.mask.partial_percentage if diagnostics.mask else 0.0
    if opaque > 5 and partial > 20:
        mask = min(100.0, opaque * 2 + partial)
        status["mask"] = "Excellent" if partial > 40 else "Good"
    else:
        mask = 40.0
        status["mask"] = "Poor"

    content = round(diagnostics.sprite.content_ratio * 100.0, 1) if diagnostics.sprite else 0.0
    edge = round(diagnostics.sprite.edge_quality * 100.0, 1) if diagnostics.sprite else 0.0
    if content > 30 and edge > 60:
        sprite = (content + edge) / 2
        status["sprite"] = "Excellent" if sprite > 70 else "Good"
    else:
        sprite = 50.0
        status["sprite"] = "Poor"

    fill = round(diagnostics.background.fill_ratio * 100.0, 1) if diagnostics.background else 0.0
    samples = diagnostics.background.context_samples if diagnostics.background else 0
    if fill > 20 and samples > 1000:
        background = min(100.0, fill + samples / 200)
        status["background"] = "Excellent" if fill > 50 else "Good"
    else:
        background = 35.0
        status["background"] = "Poor"

    overall = int(math.floor((contour + mask + sprite + background) / 4 + 0.5))
    if overall >= 80:
        label = "Professional"
    elif overall >= 60:
        label = "Good"
    else:
        label = "Needs Improvement"
    return QualityScores(contour, mask, sprite, background, overall, label, status)
