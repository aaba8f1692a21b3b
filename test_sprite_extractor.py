#!/usr/bin/env python3
"""
End-to-end tests for the sprite extraction processor.
"""
import sys
import os
import io
import json
import base64
import threading

import numpy as np
import pytest
from PIL import Image

# Add current directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from extraction_errors import ExtractionCancelled, ImageDecodeFailure, InvalidBounds
from sprite_extractor import (
    SpriteExtractionProcessor,
    decode_image,
    encode_base64_png,
    encode_png,
    to_rgba,
)

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
SWORD_BOUNDS = {"x": 40, "y": 15, "width": 20, "height": 75}


def create_sword_image(size=200):
    """Green backdrop with a silver blade and a skin-coloured grip"""
    image = np.zeros((size, size, 3), dtype=np.uint8)
    image[:] = (40, 90, 50)
    image[40:140, 92:108] = (200, 200, 210)
    image[140:175, 94:106] = (200, 140, 100)
    return image


def create_png_bytes(width=16, height=12):
    rgba = np.zeros((height, width, 4), dtype=np.uint8)
    rgba[:, :, 0] = np.arange(width, dtype=np.uint8) * 10
    rgba[:, :, 1] = 100
    rgba[:, :, 3] = 255
    return rgba, encode_png(rgba)


def test_sword_extraction():
    image = create_sword_image()
    processor = SpriteExtractionProcessor()
    result = processor.process_region(image, SWORD_BOUNDS)

    assert result['success']
    assert result['bbox'] == (80, 41, 120, 154)
    assert result['sprite'].shape == (113, 40, 4)
    assert result['mask'].shape == (113, 40)
    assert result['background'].shape == (200, 200, 4)
    assert result['processing_time_ms'] >= 0

    # Background matches the source outside the pixel rect
    source = to_rgba(image)
    outside = np.ones((200, 200), dtype=bool)
    outside[41:154, 80:120] = False
    assert np.array_equal(result['background'][outside], source[outside])

    diagnostics = result['diagnostics']
    assert diagnostics.edges['edge_pixel_count'] > 0
    assert set(diagnostics.timings_ms) == {'bounds', 'edges', 'contour', 'mask', 'sprite', 'background'}
    report = json.loads(json.dumps(diagnostics.to_dict()))
    assert report['bounds']['rect'] == {"x": 80, "y": 41, "width": 40, "height": 113}
    assert 0 <= report['scores']['overall'] <= 100
    print(f"✓ Sword extracted, quality {report['scores']['overall']} ({report['scores']['status']})")


def test_invalid_bounds_rejected():
    with pytest.raises(InvalidBounds):
        SpriteExtractionProcessor().process_region(create_sword_image(), {"x": 90, "y": 90, "width": 20, "height": 20})


def test_flat_image_falls_back_to_opaque_mask():
    image = np.full((120, 120, 3), 90, dtype=np.uint8)
    result = SpriteExtractionProcessor().process_region(image, {"x": 25, "y": 25, "width": 50, "height": 50})

    assert (result['mask'] == 255).all()
    diagnostics = result['diagnostics']
    assert diagnostics.background.fill_ratio == 0.0
    assert diagnostics.contour['degenerate']
    assert any("degenerate" in w for w in diagnostics.warnings)
    assert np.array_equal(result['background'], to_rgba(image))


def test_cancellation():
    event = threading.Event()
    event.set()
    with pytest.raises(ExtractionCancelled):
        SpriteExtractionProcessor().process_region(create_sword_image(), SWORD_BOUNDS, cancel_event=event)


def test_auto_adjust_flat_region():
    image = np.full((200, 200, 3), 128, dtype=np.uint8)
    processor = SpriteExtractionProcessor()
    adjustments = processor.auto_adjust_parameters(image, SWORD_BOUNDS)

    assert adjustments == {'low_threshold': 30, 'high_threshold': 90, 'feather_radius': 3.0}
    processor.apply_adjustments(adjustments)
    assert processor.low_threshold == 30

    with pytest.raises(ValueError):
        processor.apply_adjustments({'no_such_parameter': 1})


def test_decode_round_trip():
    rgba, png = create_png_bytes()
    encoded = base64.b64encode(png).decode("ascii")

    assert np.array_equal(decode_image(png), rgba)
    assert np.array_equal(decode_image(encoded), rgba)
    assert np.array_equal(decode_image("data:image/png;base64," + encoded), rgba)


def test_decode_converts_rgb():
    buffer = io.BytesIO()
    Image.new("RGB", (5, 4), (10, 20, 30)).save(buffer, format="PNG")
    decoded = decode_image(buffer.getvalue())
    assert decoded.shape == (4, 5, 4)
    assert decoded[0, 0].tolist() == [10, 20, 30, 255]


def test_decode_failures():
    for payload in [b"", "", b"definitely not an image", "!!!not base64!!!",
                    base64.b64encode(b"plain text").decode("ascii")]:
        with pytest.raises(ImageDecodeFailure):
            decode_image(payload)


def test_decode_rejects_oversized_image():
    _, png = create_png_bytes(64, 64)
    limit = Image.MAX_IMAGE_PIXELS
    Image.MAX_IMAGE_PIXELS = 100
    try:
        with pytest.raises(ImageDecodeFailure):
            decode_image(png)
    finally:
        Image.MAX_IMAGE_PIXELS = limit


def test_object_larger_than_region_stays_opaque():
    image = np.zeros((200, 200, 3), dtype=np.uint8)
    image[:] = (20, 20, 30)
    image[70:130, 70:130] = (230, 230, 220)

    result = SpriteExtractionProcessor().process_region(image, {"x": 40, "y": 40, "width": 20, "height": 20})

    assert result['success']
    mask = result['mask']
    # The traced outline runs outside the rect on every side
    assert np.mean(mask >= 128) > 0.8
    assert mask[mask.shape[0] // 2, mask.shape[1] // 2] == 255
    print(f"✓ Interior opacity {np.mean(mask >= 128):.2f} with outline outside the region")


def test_process_encoded():
    image = create_sword_image()
    data_url = encode_base64_png(to_rgba(image))
    result = SpriteExtractionProcessor().process_encoded(data_url, SWORD_BOUNDS, include_base64=True)

    assert result['success']
    assert result['sprite_png'].startswith(PNG_MAGIC)
    assert result['background_png'].startswith(PNG_MAGIC)
    assert result['sprite_base64'].startswith("data:image/png;base64,")
    assert decode_image(result['sprite_png']).shape == (113, 40, 4)
    json.dumps(result['diagnostics'])


def test_to_rgba():
    gray = np.zeros((3, 4), dtype=np.uint8)
    assert to_rgba(gray).shape == (3, 4, 4)
    with pytest.raises(ValueError):
        to_rgba(np.zeros((3, 4, 3), dtype=np.float32))


def main():
    print("🧪 Testing sprite extraction pipeline")
    print("=" * 50)

    tests = [
        test_sword_extraction,
        test_invalid_bounds_rejected,
        test_flat_image_falls_back_to_opaque_mask,
        test_cancellation,
        test_auto_adjust_flat_region,
        test_decode_round_trip,
        test_decode_converts_rgb,
        test_decode_failures,
        test_decode_rejects_oversized_image,
        test_object_larger_than_region_stays_opaque,
        test_process_encoded,
        test_to_rgba,
    ]

    passed = 0
    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"❌ {test.__name__} failed: {e}")

    print("=" * 50)
    print(f"Results: {passed}/{len(tests)} tests passed")
    return passed == len(tests)


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
