import json
import time

import numpy as np
import torch
import cv2

try:
    from .sprite_extractor import SpriteExtractionProcessor, decode_image, encode_base64_png
except ImportError:
    from sprite_extractor import SpriteExtractionProcessor, decode_image, encode_base64_png


def _percent_input(default, tooltip, minimum=0.0):
    return ("FLOAT", {
        "default": default,
        "min": minimum,
        "max": 100.0,
        "step": 0.1,
        "display": "number",
        "tooltip": tooltip
    })


def _bounds_inputs():
    return {
        "x_percent": _percent_input(40.0, "Left edge of the object region (% of image width)"),
        "y_percent": _percent_input(30.0, "Top edge of the object region (% of image height)"),
        "width_percent": _percent_input(20.0, "Width of the object region (% of image width)", 0.1),
        "height_percent": _percent_input(25.0, "Height of the object region (% of image height)", 0.1),
        "exclude_grip": ("BOOLEAN", {
            "default": True,
            "tooltip": "Trim the part of the region assumed to be a hand holding the object"
        }),
    }


def _stage_inputs():
    return {
        "low_threshold": ("INT", {
            "default": 40,
            "min": 1,
            "max": 255,
            "step": 1,
            "display": "number",
            "tooltip": "Gradient magnitude for weak edges"
        }),
        "high_threshold": ("INT", {
            "default": 120,
            "min": 1,
            "max": 255,
            "step": 1,
            "display": "number",
            "tooltip": "Gradient magnitude for strong edges (must be >= low threshold)"
        }),
        "feather_radius": ("FLOAT", {
            "default": 5.0,
            "min": 0.0,
            "max": 20.0,
            "step": 0.5,
            "display": "slider",
            "tooltip": "Radius of the Gaussian feathering applied to the mask edges"
        }),
        "simplify_tolerance": ("FLOAT", {
            "default": 2.0,
            "min": 0.0,
            "max": 10.0,
            "step": 0.1,
            "display": "number",
            "tooltip": "Maximum deviation in pixels when simplifying the traced outline"
        }),
        "correct_bleed": ("BOOLEAN", {
            "default": True,
            "tooltip": "Convert skin-coloured pixels picked up from a holding hand to a metallic tone"
        }),
        "enhance_edges": ("BOOLEAN", {
            "default": True,
            "tooltip": "Apply a light unsharp mask to visible sprite pixels"
        }),
        "clustering": (["greedy", "kmeans"], {
            "default": "greedy",
            "tooltip": "Clustering of the surrounding colours used for background completion"
        }),
        "auto_adjust": ("BOOLEAN", {
            "default": False,
            "tooltip": "Automatically adjust thresholds and feathering from the region content"
        }),
    }


def _build_processor(exclude_grip=True, low_threshold=40, high_threshold=120, feather_radius=5.0,
                     simplify_tolerance=2.0, correct_bleed=True, enhance_edges=True,
                     clustering="greedy"):
    if low_threshold > high_threshold:
        raise ValueError(f"low_threshold ({low_threshold}) must not exceed "
                         f"high_threshold ({high_threshold})")
    return SpriteExtractionProcessor(
        exclude_grip=exclude_grip,
        low_threshold=low_threshold,
        high_threshold=high_threshold,
        feather_radius=feather_radius,
        simplify_tolerance=simplify_tolerance,
        correct_bleed=correct_bleed,
        enhance_edges=enhance_edges,
        clustering=clustering
    )


def _bounds_dict(x_percent, y_percent, width_percent, height_percent):
    return {"x": x_percent, "y": y_percent, "width": width_percent, "height": height_percent}


class RegionSpriteExtractor:
    """
    ComfyUI node that cuts the object inside a percentage bounding region out
    as a transparent sprite and fills the region in the background image.
    """

    @classmethod
    def INPUT_TYPES(cls):
        return {
            "required": {
                "image": ("IMAGE",),
                **_bounds_inputs(),
            },
            "optional": _stage_inputs()
        }

    RETURN_TYPES = ("IMAGE", "MASK", "IMAGE", "STRING")
    RETURN_NAMES = ("sprite", "sprite_mask", "background", "report")
    FUNCTION = "extract_sprite"
    CATEGORY = "image/processing"

    def extract_sprite(self, image, x_percent=40.0, y_percent=30.0, width_percent=20.0,
                       height_percent=25.0, exclude_grip=True, low_threshold=40,
                       high_threshold=120, feather_radius=5.0, simplify_tolerance=2.0,
                       correct_bleed=True, enhance_edges=True, clustering="greedy",
                       auto_adjust=False):
        """
        Main processing function for sprite extraction with error handling.
        """
        try:
            # Validate input
            if image is None or image.shape[0] == 0:
                raise ValueError("No input image provided")

            if len(image.shape) != 4:
                raise ValueError(f"Expected 4D tensor (batch, height, width, channels), got {len(image.shape)}D")

            channels = image.shape[3]
            if channels not in [3, 4]:
                raise ValueError(f"Expected 3 or 4 channels (RGB or RGBA), got {channels}")

            return self._process_images(
                image=image,
                bounds=_bounds_dict(x_percent, y_percent, width_percent, height_percent),
                exclude_grip=exclude_grip,
                low_threshold=low_threshold,
                high_threshold=high_threshold,
                feather_radius=feather_radius,
                simplify_tolerance=simplify_tolerance,
                correct_bleed=correct_bleed,
                enhance_edges=enhance_edges,
                clustering=clustering,
                auto_adjust=auto_adjust
            )

        except cv2.error as e:
            raise RuntimeError(f"OpenCV processing error: {str(e)}")
        except MemoryError:
            raise RuntimeError("Insufficient memory for processing. Try reducing batch size.")

    def _process_images(self, image, bounds, auto_adjust=False, **params):
        """
        Internal method for processing images without error handling wrapper.
        Every image of the batch is a separate single-region extraction.
        """
        sprites = []
        masks = []
        backgrounds = []
        reports = []

        for i in range(image.shape[0]):
            start_time = time.time()

            # Convert single image to numpy array
            img_np = (np.clip(image[i].cpu().numpy(), 0.0, 1.0) * 255).astype(np.uint8)

            processor = _build_processor(**params)

            adjustments = {}
            if auto_adjust:
                adjustments = processor.auto_adjust_parameters(img_np, bounds)
                processor.apply_adjustments(adjustments)

            result = processor.process_region(img_np, bounds)

            sprites.append(result['sprite'])
            masks.append(result['mask'])
            backgrounds.append(result['background'])
            reports.append(self._image_report(i, result, adjustments, time.time() - start_time))

        # Convert back to ComfyUI tensor format
        sprite_tensor = torch.from_numpy(np.array(sprites)).float() / 255.0
        mask_tensor = torch.from_numpy(np.array(masks)).float() / 255.0
        background_tensor = torch.from_numpy(np.array(backgrounds)).float() / 255.0

        report = "\n".join(["=== Region Sprite Extraction Report ===", ""] + reports)
        return (sprite_tensor, mask_tensor, background_tensor, report)

    def _image_report(self, index, result, adjustments, processing_time):
        """Generate the report lines for one processed image."""
        diagnostics = result['diagnostics']
        scores = diagnostics.scores
        contour = diagnostics.contour or {}
        x1, y1, x2, y2 = result['bbox']

        lines = [
            f"Image {index + 1}:",
            f"  Region: {x2 - x1}x{y2 - y1} at ({x1}, {y1})",
            f"  Edge pixels: {diagnostics.edges['edge_pixel_count'] if diagnostics.edges else 0}",
            f"  Contour points: {contour.get('raw_contour_points', 0)} traced, "
            f"{contour.get('final_points', 0)} after simplification",
            f"  Mask: {diagnostics.mask.opaque_percentage}% opaque, "
            f"{diagnostics.mask.partial_percentage}% partial ({diagnostics.mask.quality})",
            f"  Background fill: {diagnostics.background.fill_ratio * 100:.1f}% "
            f"({diagnostics.background.context_samples} context samples)",
            f"  Quality score: {scores.overall}/100 ({scores.status})",
            f"  Processing time: {processing_time:.3f}s",
        ]
        if adjustments:
            lines.append(f"  Auto-adjusted: {adjustments}")
        for warning in diagnostics.warnings:
            lines.append(f"  Warning: {warning}")
        lines.append("")
        return "\n".join(lines)


class RegionSpriteExtractorEncoded:
    """
    Encoded variant of RegionSpriteExtractor: takes a base64 image and returns
    base64 PNG data URLs for the sprite and the completed background.
    """

    @classmethod
    def INPUT_TYPES(cls):
        return {
            "required": {
                "image_base64": ("STRING", {
                    "multiline": True,
                    "default": "",
                    "tooltip": "Source image as base64 or data URL"
                }),
                **_bounds_inputs(),
            },
            "optional": _stage_inputs()
        }

    RETURN_TYPES = ("STRING", "STRING", "STRING")
    RETURN_NAMES = ("sprite_base64", "background_base64", "report")
    FUNCTION = "extract_encoded"
    CATEGORY = "image/processing"

    def extract_encoded(self, image_base64, x_percent=40.0, y_percent=30.0, width_percent=20.0,
                        height_percent=25.0, exclude_grip=True, low_threshold=40,
                        high_threshold=120, feather_radius=5.0, simplify_tolerance=2.0,
                        correct_bleed=True, enhance_edges=True, clustering="greedy",
                        auto_adjust=False):
        bounds = _bounds_dict(x_percent, y_percent, width_percent, height_percent)
        try:
            processor = _build_processor(exclude_grip, low_threshold, high_threshold,
                                         feather_radius, simplify_tolerance, correct_bleed,
                                         enhance_edges, clustering)

            adjustments = {}
            if auto_adjust:
                image = decode_image(image_base64)
                adjustments = processor.auto_adjust_parameters(image, bounds)
                processor.apply_adjustments(adjustments)

            result = processor.process_encoded(image_base64, bounds, include_base64=True)

        except cv2.error as e:
            raise RuntimeError(f"OpenCV processing error: {str(e)}")
        except MemoryError:
            raise RuntimeError("Insufficient memory for processing.")

        report = dict(result['diagnostics'])
        report['bbox'] = list(result['bbox'])
        report['processing_time_ms'] = result['processing_time_ms']
        report['auto_adjustments'] = adjustments
        return (result['sprite_base64'], result['background_base64'], json.dumps(report, indent=2))


# Node registration
NODE_CLASS_MAPPINGS = {
    "RegionSpriteExtractor": RegionSpriteExtractor,
    "RegionSpriteExtractorEncoded": RegionSpriteExtractorEncoded,
}

NODE_DISPLAY_NAME_MAPPINGS = {
    "RegionSpriteExtractor": "Region Sprite Extractor",
    "RegionSpriteExtractorEncoded": "Region Sprite Extractor (Base64)",
}
