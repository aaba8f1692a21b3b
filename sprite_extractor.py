import io
import time
import base64
import binascii
import logging
from typing import Dict, Union

import numpy as np
import cv2
from PIL import Image, UnidentifiedImageError

try:
    from .alpha_mask import AlphaMaskBuilder
    from .background_inpainter import BackgroundInpainter
    from .bounds_resolver import BoundsResolver, PercentBounds, padded_roi, roi_statistics
    from .contour_tracer import ContourTracer
    from .diagnostics import ExtractionDiagnostics
    from .edge_detector import EdgeDetector
    from .extraction_errors import ImageDecodeFailure, check_cancelled
    from .sprite_compositor import SpriteCompositor
except ImportError:
    from alpha_mask import AlphaMaskBuilder
    from background_inpainter import BackgroundInpainter
    from bounds_resolver import BoundsResolver, PercentBounds, padded_roi, roi_statistics
    from contour_tracer import ContourTracer
    from diagnostics import ExtractionDiagnostics
    from edge_detector import EdgeDetector
    from extraction_errors import ImageDecodeFailure, check_cancelled
    from sprite_compositor import SpriteCompositor


logger = logging.getLogger(__name__)

# Parameter adjustment thresholds used by auto_adjust_parameters()

# ROI contrast (grey level standard deviation)
_CONTRAST_HIGH = 60          # Busy, high contrast region - raise thresholds to skip texture
_CONTRAST_LOW = 25           # Flat region - lower thresholds to keep faint outlines

# Edge density (Canny 50/150 on the ROI)
_EDGE_DENSITY_HIGH = 0.15
_EDGE_DENSITY_LOW = 0.02

# Laplacian variance (noise estimate)
_LAPLACIAN_HIGH_NOISE = 1000

# Region size (shorter side of the pixel rect)
_REGION_SMALL = 64           # Small sprites keep crisper edges
_REGION_LARGE = 400          # Large sprites tolerate wider feathering

# Adjustment steps
_LOW_THRESHOLD_STEP = 10
_HIGH_THRESHOLD_STEP = 30
_SIGMA_STEP = 0.5
_FEATHER_STEP = 2.0

# Parameter limits
_LOW_THRESHOLD_MIN = 10
_LOW_THRESHOLD_MAX = 100
_HIGH_THRESHOLD_MIN = 60
_HIGH_THRESHOLD_MAX = 240
_SIGMA_MAX = 2.5
_FEATHER_MIN = 1.0
_FEATHER_MAX = 10.0

_DATA_URL_PREFIX = "data:"


def to_rgba(image: np.ndarray) -> np.ndarray:
    """Convert a grey, RGB or RGBA uint8 array to RGBA."""
    if image.dtype != np.uint8:
        raise ValueError(f"Expected uint8 image, got {image.dtype}")
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2RGBA)
    if image.ndim == 3 and image.shape[2] == 4:
        return image.copy()
    raise ValueError(f"Expected 2D, RGB or RGBA image, got shape {image.shape}")


def decode_image(data: Union[bytes, bytearray, str]) -> np.ndarray:
    """
    Decode PNG/JPEG/... bytes, a base64 string or a data URL into RGBA.

    Raises:
        ImageDecodeFailure: if the payload is empty or not a readable image.
    """
    if not data:
        raise ImageDecodeFailure("Empty image payload")

    try:
        if isinstance(data, str):
            payload = data.strip()
            if payload.startswith(_DATA_URL_PREFIX):
                payload = payload.split(",", 1)[1]
            raw = base64.b64decode(payload, validate=True)
        else:
            raw = bytes(data)
        with Image.open(io.BytesIO(raw)) as img:
            rgba = img.convert("RGBA")
    except (binascii.Error, IndexError, UnidentifiedImageError, Image.DecompressionBombError,
            OSError, ValueError) as e:
        raise ImageDecodeFailure(f"Could not decode source image: {e}")

    return np.array(rgba, dtype=np.uint8)


def encode_png(rgba: np.ndarray) -> bytes:
    """Encode an RGBA (or single channel) uint8 array as PNG bytes."""
    buffer = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8)).save(buffer, format="PNG")
    return buffer.getvalue()


def encode_base64_png(rgba: np.ndarray, data_url: bool = True) -> str:
    encoded = base64.b64encode(encode_png(rgba)).decode("ascii")
    return f"data:image/png;base64,{encoded}" if data_url else encoded


class SpriteExtractionProcessor:
    """
    Region sprite extraction: cuts the object inside a rough percentage
    bounding box out of an image as a transparent sprite and fills the hole
    it leaves in the background.
    """

    def __init__(self,
                 exclude_grip: bool = True,
                 grip_height_ratio: float = 0.25,
                 grip_width_ratio: float = 0.20,
                 blur_sigma: float = 1.0,
                 low_threshold: float = 40,
                 high_threshold: float = 120,
                 roi_padding: int = 20,
                 simplify_tolerance: float = 2.0,
                 feather_radius: float = 5.0,
                 color_threshold: float = 30.0,
                 alpha_boost: int = 50,
                 correct_bleed: bool = True,
                 enhance_edges: bool = True,
                 context_radius: int = 50,
                 patch_radius: int = 15,
                 max_colors: int = 5,
                 clustering: str = "greedy"):
        """
        Initialize the processor with configuration.

        Args:
            exclude_grip: Trim the part of the region assumed to be a holding hand
            grip_height_ratio: Height share trimmed for vertical regions
            grip_width_ratio: Width share trimmed for horizontal regions
            blur_sigma: Gaussian sigma before gradient computation
            low_threshold: Sobel magnitude for weak edges
            high_threshold: Sobel magnitude for strong edges
            roi_padding: Pixels added around the region for edge detection
            simplify_tolerance: Douglas-Peucker tolerance in pixels
            feather_radius: Radius of the mask feathering kernel
            color_threshold: RGB distance for colour-guided alpha boosting
            alpha_boost: Alpha added to colour-matching edge pixels
            correct_bleed: Convert skin-like colours picked up from a hand
            enhance_edges: Apply the RGB unsharp mask to the sprite
            context_radius: Margin sampled around the region for background colours
            patch_radius: Patch radius for background fill sampling
            max_colors: Maximum dominant context colours
            clustering: "greedy" or "kmeans" context colour clustering
        """
        self.exclude_grip = exclude_grip
        self.grip_height_ratio = grip_height_ratio
        self.grip_width_ratio = grip_width_ratio
        self.blur_sigma = blur_sigma
        self.low_threshold = low_threshold
        self.high_threshold = high_threshold
        self.roi_padding = roi_padding
        self.simplify_tolerance = simplify_tolerance
        self.feather_radius = feather_radius
        self.color_threshold = color_threshold
        self.alpha_boost = alpha_boost
        self.correct_bleed = correct_bleed
        self.enhance_edges = enhance_edges
        self.context_radius = context_radius
        self.patch_radius = patch_radius
        self.max_colors = max_colors
        self.clustering = clustering

    def _resolver(self) -> BoundsResolver:
        return BoundsResolver(self.exclude_grip, self.grip_height_ratio, self.grip_width_ratio)

    def auto_adjust_parameters(self, image: np.ndarray,
                               bounds: Union[PercentBounds, dict]) -> dict:
        """
        Suggest parameter changes from the contrast, edge density and noise of
        the region of interest, and from the region size.

        Args:
            image: Source image (RGB or RGBA)
            bounds: Percentage bounds of the object

        Returns:
            Dictionary of adjusted parameters (only the ones that changed)
        """
        if isinstance(bounds, dict):
            bounds = PercentBounds.from_dict(bounds)
        h, w = image.shape[:2]
        rect = self._resolver().resolve(bounds, w, h).rect
        roi = padded_roi(rect, w, h, self.roi_padding)

        region = image[roi.y:roi.y2, roi.x:roi.x2, :3]
        gray = cv2.cvtColor(np.ascontiguousarray(region), cv2.COLOR_RGB2GRAY)

        contrast = gray.std()
        edge_density = np.count_nonzero(cv2.Canny(gray, 50, 150)) / gray.size
        laplacian_var = cv2.Laplacian(gray, cv2.CV_64F).var()

        adjustments = {}

        if contrast > _CONTRAST_HIGH and edge_density > _EDGE_DENSITY_HIGH:
            # Textured region -> only keep the stronger outlines
            adjustments['low_threshold'] = min(_LOW_THRESHOLD_MAX, self.low_threshold + _LOW_THRESHOLD_STEP)
            adjustments['high_threshold'] = min(_HIGH_THRESHOLD_MAX, self.high_threshold + _HIGH_THRESHOLD_STEP)
        elif contrast < _CONTRAST_LOW or edge_density < _EDGE_DENSITY_LOW:
            # Flat region -> accept fainter outlines
            adjustments['low_threshold'] = max(_LOW_THRESHOLD_MIN, self.low_threshold - _LOW_THRESHOLD_STEP)
            adjustments['high_threshold'] = max(_HIGH_THRESHOLD_MIN, self.high_threshold - _HIGH_THRESHOLD_STEP)

        if laplacian_var > _LAPLACIAN_HIGH_NOISE:
            adjustments['blur_sigma'] = min(_SIGMA_MAX, self.blur_sigma + _SIGMA_STEP)

        short_side = min(rect.width, rect.height)
        if short_side < _REGION_SMALL:
            adjustments['feather_radius'] = max(_FEATHER_MIN, self.feather_radius - _FEATHER_STEP)
        elif short_side > _REGION_LARGE:
            adjustments['feather_radius'] = min(_FEATHER_MAX, self.feather_radius + _FEATHER_STEP)

        # Drop suggestions equal to the current values
        return {k: v for k, v in adjustments.items() if getattr(self, k) != v}

    def apply_adjustments(self, adjustments: dict):
        for name, value in adjustments.items():
            if not hasattr(self, name):
                raise ValueError(f"Unknown parameter: {name}")
            setattr(self, name, value)

    def process_region(self, image: np.ndarray, bounds: Union[PercentBounds, dict],
                       cancel_event=None) -> Dict:
        """
        Complete extraction pipeline for one image and one region.

        Args:
            image: Source image (grey, RGB or RGBA uint8)
            bounds: Percentage bounds of the object (PercentBounds or dict)
            cancel_event: Optional threading.Event that aborts the run when set

        Returns:
            Dictionary containing:
                - sprite: RGBA sprite cropped to the pixel rect
                - mask: Alpha mask of the sprite
                - background: RGBA source with the region filled in
                - bbox: Pixel rect as (x1, y1, x2, y2)
                - diagnostics: ExtractionDiagnostics for this call
                - processing_time_ms: Processing time in milliseconds
                - success: Whether processing succeeded
        """
        start_time = time.time()
        result = {
            'sprite': None,
            'mask': None,
            'background': None,
            'bbox': None,
            'diagnostics': None,
            'processing_time_ms': 0,
            'success': False
        }

        if isinstance(bounds, dict):
            bounds = PercentBounds.from_dict(bounds)
        image = to_rgba(image)
        h, w = image.shape[:2]
        diagnostics = ExtractionDiagnostics()

        # Step 1: Resolve bounds
        stage_start = time.time()
        resolved = self._resolver().resolve(bounds, w, h)
        rect = resolved.rect
        diagnostics.record_bounds(resolved, roi_statistics(image, rect))
        diagnostics.record_timing('bounds', (time.time() - stage_start) * 1000)
        check_cancelled(cancel_event, "bounds resolution")

        # Step 2: Edge detection over the padded ROI
        stage_start = time.time()
        detector = EdgeDetector(self.blur_sigma, self.low_threshold,
                                self.high_threshold, self.roi_padding)
        edges = detector.detect(image, rect, cancel_event)
        diagnostics.record_edges(edges)
        diagnostics.record_timing('edges', (time.time() - stage_start) * 1000)

        # Step 3: Contour tracing
        stage_start = time.time()
        contour = ContourTracer(self.simplify_tolerance).trace(edges, cancel_event)
        diagnostics.record_contour(contour)
        diagnostics.record_timing('contour', (time.time() - stage_start) * 1000)

        # Step 4: Alpha mask
        stage_start = time.time()
        builder = AlphaMaskBuilder(self.feather_radius, self.color_threshold, self.alpha_boost)
        mask = builder.build(image, contour.points, rect, cancel_event)
        diagnostics.record_mask(mask, self.feather_radius)
        diagnostics.record_timing('mask', (time.time() - stage_start) * 1000)

        # Step 5: Sprite
        stage_start = time.time()
        compositor = SpriteCompositor(self.correct_bleed, self.enhance_edges)
        sprite = compositor.compose(image, mask.mask, rect, cancel_event)
        diagnostics.record_sprite(sprite)
        diagnostics.record_timing('sprite', (time.time() - stage_start) * 1000)

        # Step 6: Background completion
        stage_start = time.time()
        inpainter = BackgroundInpainter(self.context_radius, self.patch_radius,
                                        self.max_colors, self.clustering)
        background = inpainter.complete(image, mask.mask, rect, cancel_event)
        diagnostics.record_background(background)
        diagnostics.record_timing('background', (time.time() - stage_start) * 1000)

        scores = diagnostics.scores
        logger.info("Extraction of %dx%d region finished: score %d (%s)",
                    rect.width, rect.height, scores.overall, scores.status)
        for warning in diagnostics.warnings:
            logger.warning(warning)

        result['sprite'] = sprite.sprite
        result['mask'] = mask.mask
        result['background'] = background.background
        result['bbox'] = (rect.x, rect.y, rect.x2, rect.y2)
        result['diagnostics'] = diagnostics
        result['success'] = True
        result['processing_time_ms'] = int((time.time() - start_time) * 1000)
        return result

    def process_encoded(self, data: Union[bytes, bytearray, str],
                        bounds: Union[PercentBounds, dict],
                        cancel_event=None, include_base64: bool = False) -> Dict:
        """
        Same as process_region for an encoded source image.

        Returns:
            Dictionary containing PNG bytes under 'sprite_png' and
            'background_png', base64 data URLs under 'sprite_base64' and
            'background_base64' when requested, the JSON-ready diagnostics
            under 'diagnostics', plus 'bbox', 'processing_time_ms' and 'success'
        """
        start_time = time.time()
        image = decode_image(data)
        processed = self.process_region(image, bounds, cancel_event)

        encoded = {
            'sprite_png': encode_png(processed['sprite']),
            'background_png': encode_png(processed['background']),
            'bbox': processed['bbox'],
            'diagnostics': processed['diagnostics'].to_dict(),
            'processing_time_ms': 0,
            'success': processed['success']
        }
        if include_base64:
            encoded['sprite_base64'] = encode_base64_png(processed['sprite'])
            encoded['background_base64'] = encode_base64_png(processed['background'])

        encoded['processing_time_ms'] = int((time.time() - start_time) * 1000)
        return encoded
