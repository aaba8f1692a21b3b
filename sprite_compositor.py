import logging
from dataclasses import dataclass

import numpy as np

try:
    from .alpha_mask import round_half_up
    from .bounds_resolver import PixelRect, extract_region
    from .extraction_errors import check_cancelled
except ImportError:
    from alpha_mask import round_half_up
    from bounds_resolver import PixelRect, extract_region
    from extraction_errors import check_cancelled


logger = logging.getLogger(__name__)

# Alpha smoothing
_ANTIALIAS_WEIGHTS = np.array([[0.077, 0.123, 0.077],
                               [0.123, 0.195, 0.123],
                               [0.077, 0.123, 0.077]])
_ANTIALIAS_BLEND = 0.6        # Share of the smoothed value
_SHARPEN_STRENGTH = 0.3
_SMOOTH_SHARPEN_MIX = 0.7     # Smoothed share when combining with the sharpened alpha

# Colour bleed correction
_BLEED_MIN_ALPHA = 10         # Nearly invisible pixels are left alone
_METALLIC_TOLERANCE = 30      # Max pairwise channel spread for greyish colours
_SILVER_LEVEL = 150
_METALLIC_FROM_LUMA = (0.8, 0.9, 1.1)
_METALLIC_ENHANCE = (0.95, 1.0, 1.05)

# RGB unsharp mask
_EDGE_ENHANCE_ALPHA = 50      # Only visible content is sharpened
_EDGE_SAMPLE_ALPHA = 25       # Neighbours below this alpha are not averaged
_EDGE_ENHANCE_AMOUNT = 0.3

# Sprite statistics
_OPAQUE_ALPHA = 200
_PARTIAL_ALPHA = 50


@dataclass
class SpriteResult:
    sprite: np.ndarray          # uint8 RGBA (rect.height, rect.width, 4)
    rect: PixelRect
    opaque: int
    partial: int
    transparent: int

    @property
    def alpha(self) -> np.ndarray:
        return self.sprite[:, :, 3]


def _neighbor_views(a: np.ndarray):
    """Views of the 3x3 neighbourhood of every interior pixel, row-major."""
    h, w = a.shape[:2]
    return [a[1 + dy:h - 1 + dy, 1 + dx:w - 1 + dx] for dy in (-1, 0, 1) for dx in (-1, 0, 1)]


def antialias_alpha(mask: np.ndarray) -> np.ndarray:
    """
    Blend each partially transparent interior pixel with its Gaussian-weighted
    3x3 average (60% smoothed, 40% original). Values 0 and 255 and the
    one-pixel border are returned unchanged.
    """
    alpha = mask.astype(np.float64)
    result = alpha.copy()
    h, w = alpha.shape
    if h < 3 or w < 3:
        return result

    weights = _ANTIALIAS_WEIGHTS.ravel()
    smoothed = sum(wt * view for wt, view in zip(weights, _neighbor_views(alpha))) / weights.sum()
    smoothed = round_half_up(smoothed)

    center = alpha[1:-1, 1:-1]
    blended = round_half_up(center * (1 - _ANTIALIAS_BLEND) + smoothed * _ANTIALIAS_BLEND)
    partial = (center != 0) & (center != 255)
    result[1:-1, 1:-1] = np.where(partial, blended, center)
    return result


def sharpen_alpha(mask: np.ndarray, strength: float = _SHARPEN_STRENGTH) -> np.ndarray:
    """Unsharp-style 4-neighbour alpha sharpening; the border is unchanged."""
    alpha = mask.astype(np.float64)
    result = alpha.copy()
    h, w = alpha.shape
    if h < 3 or w < 3:
        return result

    center = alpha[1:-1, 1:-1]
    laplacian = center * 5 - alpha[:-2, 1:-1] - alpha[1:-1, :-2] - alpha[1:-1, 2:] - alpha[2:, 1:-1]
    result[1:-1, 1:-1] = np.clip(round_half_up(center + laplacian * strength), 0, 255)
    return result


def enhance_alpha(mask: np.ndarray) -> np.ndarray:
    """
    Final sprite alpha: 70% anti-aliased plus 30% sharpened for interior
    pixels, original alpha on the border.
    """
    combined = round_half_up(antialias_alpha(mask) * _SMOOTH_SHARPEN_MIX
                             + sharpen_alpha(mask) * (1 - _SMOOTH_SHARPEN_MIX))
    combined = np.clip(combined, 0, 255).astype(np.uint8)
    combined[0, :] = mask[0, :]
    combined[-1, :] = mask[-1, :]
    combined[:, 0] = mask[:, 0]
    combined[:, -1] = mask[:, -1]
    return combined


def is_skin_tone(r, g, b):
    """Warm r > g > b colours within flesh or brown ranges. Works elementwise on arrays."""
    warm = (r > g) & (g > b)
    flesh = (r > 120) & (g > 80) & (b < 150)
    brownish = (r > 100) & (g > 70) & (b < 120) & ((r - b) > 30)
    return warm & (flesh | brownish)


def is_metallic(r, g, b):
    """Greyish, cool-toned or bright silver colours. Works elementwise on arrays."""
    greyish = (abs(r - g) < _METALLIC_TOLERANCE) & (abs(g - b) < _METALLIC_TOLERANCE) \
        & (abs(r - b) < _METALLIC_TOLERANCE)
    cool = (b >= g) & (b >= r)
    silver = (r > _SILVER_LEVEL) & (g > _SILVER_LEVEL) & (b > _SILVER_LEVEL)
    return greyish | cool | silver


def correct_color_bleed(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """
    Replace skin-like colours picked up from a gripping hand with a cool tone
    derived from their luminance, and slightly cool already-metallic ones.
    """
    src = rgb[:, :, :3].astype(np.int32)
    r, g, b = src[:, :, 0], src[:, :, 1], src[:, :, 2]
    out = src.astype(np.float64)

    visible = alpha >= _BLEED_MIN_ALPHA
    metallic = is_metallic(r, g, b) & visible
    skin = is_skin_tone(r, g, b) & visible & ~metallic

    luminance = r * 0.299 + g * 0.587 + b * 0.114
    for c in range(3):
        out[:, :, c] = np.where(skin, luminance * _METALLIC_FROM_LUMA[c], out[:, :, c])
        out[:, :, c] = np.where(metallic, src[:, :, c] * _METALLIC_ENHANCE[c], out[:, :, c])

    return np.clip(round_half_up(out), 0, 255).astype(np.uint8)


def enhance_sprite_edges(sprite: np.ndarray, amount: float = _EDGE_ENHANCE_AMOUNT) -> np.ndarray:
    """
    Light unsharp mask on the RGB channels of visible interior pixels. The
    blur reference averages only neighbours that are themselves visible.
    """
    enhanced = sprite.copy()
    h, w = sprite.shape[:2]
    if h < 3 or w < 3:
        return enhanced

    rgba = sprite.astype(np.float64)
    alpha = rgba[:, :, 3]
    sample = (alpha > _EDGE_SAMPLE_ALPHA).astype(np.float64)

    rgb_sum = sum(view for view in _neighbor_views(rgba[:, :, :3] * sample[:, :, np.newaxis]))
    count = sum(view for view in _neighbor_views(sample))

    center = rgba[1:-1, 1:-1, :3]
    blurred = rgb_sum / np.maximum(count, 1)[:, :, np.newaxis]
    sharpened = np.clip(round_half_up(center + amount * (center - blurred)), 0, 255)

    target = (alpha[1:-1, 1:-1] > _EDGE_ENHANCE_ALPHA) & (count > 0)
    inner = enhanced[1:-1, 1:-1, :3]
    inner[target] = sharpened[target].astype(np.uint8)
    return enhanced


class SpriteCompositor:
    """Combines source pixels and the alpha mask into the cut-out sprite."""

    def __init__(self, correct_bleed: bool = True, enhance_edges: bool = True,
                 edge_amount: float = _EDGE_ENHANCE_AMOUNT):
        self.correct_bleed = correct_bleed
        self.enhance_edges = enhance_edges
        self.edge_amount = edge_amount

    def compose(self, image: np.ndarray, mask: np.ndarray, rect: PixelRect,
                cancel_event=None) -> SpriteResult:
        """
        Args:
            image: Source image (H, W, 3|4) uint8
            mask: Alpha mask with the same size as `rect`
            rect: Pixel rect the sprite is cut from

        Returns:
            SpriteResult with an RGBA sprite the size of the mask
        """
        if mask.shape != (rect.height, rect.width):
            raise ValueError(f"Mask shape {mask.shape} does not match region "
                             f"{rect.height}x{rect.width}")

        region = extract_region(image, rect)
        alpha = enhance_alpha(mask)
        check_cancelled(cancel_event, "sprite alpha")

        rgb = correct_color_bleed(region, alpha) if self.correct_bleed \
            else region[:, :, :3].copy()
        sprite = np.dstack([rgb, alpha]).astype(np.uint8)
        check_cancelled(cancel_event, "sprite colour correction")

        if self.enhance_edges:
            sprite = enhance_sprite_edges(sprite, self.edge_amount)

        opaque = int(np.count_nonzero(alpha > _OPAQUE_ALPHA))
        partial = int(np.count_nonzero((alpha > _PARTIAL_ALPHA) & (alpha <= _OPAQUE_ALPHA)))
        transparent = alpha.size - opaque - partial

        logger.info("Sprite %dx%d: %d opaque, %d partial, %d transparent pixels",
                    rect.width, rect.height, opaque, partial, transparent)
        return SpriteResult(sprite, rect, opaque, partial, transparent)
