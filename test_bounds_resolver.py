#!/usr/bin/env python3
"""
Tests for percentage bounds validation, pixel conversion and grip exclusion.
"""
import sys
import os

import numpy as np
import pytest

# Add current directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from bounds_resolver import (
    BoundsResolver,
    PercentBounds,
    PixelBounds,
    PixelRect,
    adjust_bounds_to_exclude_grip,
    extract_region,
    padded_roi,
    percentage_to_pixel,
    pixel_to_percentage,
    resolve_bounds,
    roi_statistics,
    to_pixel_rect,
)
from extraction_errors import InvalidBounds, OutOfImageBounds, RegionExtractionFailure


VALID_BOUNDS = [
    PercentBounds(40, 30, 20, 25),
    PercentBounds(0, 0, 100, 100),
    PercentBounds(0, 0, 0.5, 0.5),
    PercentBounds(99, 99, 1, 1),
    PercentBounds(12.5, 70, 60, 30),
    PercentBounds(33.3, 10, 10, 80),
]
IMAGE_SIZES = [(512, 512), (1920, 1080), (64, 300), (7, 13)]


def test_percentage_round_trip():
    """Percent -> pixel -> percent reproduces the input bounds."""
    for bounds in VALID_BOUNDS:
        for w, h in IMAGE_SIZES:
            back = pixel_to_percentage(percentage_to_pixel(bounds, w, h), w, h)
            assert back.x == pytest.approx(bounds.x)
            assert back.y == pytest.approx(bounds.y)
            assert back.width == pytest.approx(bounds.width)
            assert back.height == pytest.approx(bounds.height)
    print("✓ Percentage round trip within float tolerance")


def test_vertical_grip_scenario():
    """512x512 with {40, 30, 20, 25} loses a quarter of its height."""
    resolved = BoundsResolver().resolve(PercentBounds(40, 30, 20, 25), 512, 512)

    assert resolved.pixel.x == pytest.approx(204.8)
    assert resolved.pixel.y == pytest.approx(153.6)
    assert resolved.pixel.width == pytest.approx(102.4)
    assert resolved.pixel.height == pytest.approx(128)

    assert resolved.adjusted.height == pytest.approx(96)
    assert resolved.adjusted.y - resolved.pixel.y == pytest.approx(9.6)
    assert resolved.adjusted.x == pytest.approx(204.8)
    assert resolved.adjusted.width == pytest.approx(102.4)

    assert resolved.rect == PixelRect(204, 163, 103, 96)
    print(f"✓ Vertical grip exclusion: {resolved.adjusted}")


def test_horizontal_grip_trims_width():
    pixel = PixelBounds(50, 100, 200, 40)
    adjusted = adjust_bounds_to_exclude_grip(pixel)

    assert adjusted.width == pytest.approx(160)
    assert adjusted.x == pytest.approx(70)
    assert adjusted.y == pytest.approx(100)
    assert adjusted.height == pytest.approx(40)
    print("✓ Horizontal grip exclusion trims width")


def test_grip_ratios_are_tunable():
    pixel = PixelBounds(0, 0, 100, 200)
    adjusted = adjust_bounds_to_exclude_grip(pixel, height_ratio=0.5)
    assert adjusted.height == pytest.approx(100)
    assert adjusted.y == pytest.approx(30)

    resolved = BoundsResolver(exclude_grip=False).resolve(PercentBounds(10, 10, 20, 40), 100, 100)
    assert resolved.adjusted == resolved.pixel


def test_adjusted_bounds_stay_inside_image():
    resolver = BoundsResolver()
    for bounds in VALID_BOUNDS:
        for w, h in IMAGE_SIZES:
            resolved = resolver.resolve(bounds, w, h)
            adj = resolved.adjusted
            assert adj.width > 0 and adj.height > 0
            assert 0 <= adj.x < w and 0 <= adj.y < h
            assert adj.x + adj.width <= w + 1e-6
            assert adj.y + adj.height <= h + 1e-6

            rect = resolved.rect
            assert rect.width >= 1 and rect.height >= 1
            assert rect.x >= 0 and rect.y >= 0
            assert rect.x2 <= w and rect.y2 <= h
    print("✓ Grip-adjusted bounds remain inside the image")


def test_zero_width_rejected():
    with pytest.raises(InvalidBounds):
        BoundsResolver().resolve(PercentBounds(0, 0, 0, 50), 512, 512)


def test_overflowing_bounds_rejected():
    with pytest.raises(InvalidBounds):
        BoundsResolver().resolve(PercentBounds(90, 90, 20, 20), 512, 512)


def test_out_of_range_coordinates_rejected():
    for bounds in [PercentBounds(-1, 0, 10, 10), PercentBounds(0, 101, 10, 10),
                   PercentBounds(0, 0, 10, -5), PercentBounds(0, 0, float("nan"), 10)]:
        with pytest.raises(InvalidBounds):
            resolve_bounds(bounds, 100, 100)


def test_malformed_dict_rejected():
    with pytest.raises(InvalidBounds):
        PercentBounds.from_dict({"x": 10, "y": 10, "width": 20})
    with pytest.raises(InvalidBounds):
        PercentBounds.from_dict({"x": "left", "y": 10, "width": 20, "height": 20})

    bounds = PercentBounds.from_dict({"x": "10", "y": 20, "width": 30.5, "height": 40})
    assert bounds == PercentBounds(10.0, 20.0, 30.5, 40.0)


def test_empty_image_rejected():
    with pytest.raises(OutOfImageBounds):
        BoundsResolver().resolve(PercentBounds(10, 10, 20, 20), 0, 100)


def test_errors_are_value_errors():
    with pytest.raises(ValueError):
        resolve_bounds(PercentBounds(50, 50, 60, 10), 100, 100)


def test_pixel_rect_snapping():
    rect = to_pixel_rect(PixelBounds(10.7, 5.2, 20.1, 9.0), 100, 100)
    assert rect == PixelRect(10, 5, 21, 9)

    # Clamped to the image
    rect = to_pixel_rect(PixelBounds(95.5, 0, 4.5, 100), 100, 100)
    assert rect.x2 <= 100 and rect.y2 <= 100


def test_padded_roi_clamps_to_image():
    roi = padded_roi(PixelRect(5, 5, 10, 10), 100, 50, padding=20)
    assert roi == PixelRect(0, 0, 35, 35)

    roi = padded_roi(PixelRect(80, 30, 15, 15), 100, 50, padding=20)
    assert roi == PixelRect(60, 10, 40, 40)


def test_extract_region_copies_and_checks_bounds():
    image = np.arange(10 * 12 * 3, dtype=np.uint8).reshape(10, 12, 3)
    region = extract_region(image, PixelRect(2, 3, 4, 5))
    assert region.shape == (5, 4, 3)
    region[:] = 0
    assert image[3, 2].any()

    with pytest.raises(RegionExtractionFailure):
        extract_region(image, PixelRect(10, 0, 5, 5))


def test_roi_statistics():
    image = np.zeros((20, 20, 4), dtype=np.uint8)
    image[:, :10, 3] = 255
    stats = roi_statistics(image, PixelRect(5, 0, 10, 10))
    assert stats["total"] == 100
    assert stats["opaque"] == 50
    assert stats["transparent"] == 50

    rgb = np.zeros((20, 20, 3), dtype=np.uint8)
    assert roi_statistics(rgb, PixelRect(0, 0, 4, 4))["opaque"] == 16


def main():
    print("🧪 Testing bounds resolution")
    print("=" * 50)

    tests = [
        test_percentage_round_trip,
        test_vertical_grip_scenario,
        test_horizontal_grip_trims_width,
        test_grip_ratios_are_tunable,
        test_adjusted_bounds_stay_inside_image,
        test_zero_width_rejected,
        test_overflowing_bounds_rejected,
        test_out_of_range_coordinates_rejected,
        test_malformed_dict_rejected,
        test_empty_image_rejected,
        test_errors_are_value_errors,
        test_pixel_rect_snapping,
        test_padded_roi_clamps_to_image,
        test_extract_region_copies_and_checks_bounds,
        test_roi_statistics,
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
