#!/usr/bin/env python3
"""
Tests for the Canny-style edge detector over the padded region of interest.
"""
import sys
import os

import numpy as np
import pytest

# Add current directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from bounds_resolver import PixelRect
from edge_detector import (
    EDGE_STRONG,
    EdgeDetector,
    convolve_normalized,
    gaussian_kernel,
    hysteresis_threshold,
    non_maximum_suppression,
)


def create_square_image(size=120, start=40, end=80):
    """Dark background with a bright square"""
    image = np.full((size, size, 3), 40, dtype=np.uint8)
    image[start:end, start:end] = 200
    return image


def test_gaussian_kernel_normalized():
    kernel = gaussian_kernel(1.0)
    assert kernel.shape == (7, 7)
    assert kernel.sum() == pytest.approx(1.0)
    assert kernel[3, 3] == kernel.max()
    assert np.allclose(kernel, kernel.T)


def test_convolve_normalized_keeps_flat_borders():
    flat = np.full((10, 10), 200, dtype=np.uint8)
    blurred = convolve_normalized(flat, gaussian_kernel(1.0))
    assert np.allclose(blurred, 200, atol=1e-3)


def test_edges_follow_square_outline():
    image = create_square_image()
    detector = EdgeDetector()
    result = detector.detect(image, PixelRect(40, 40, 40, 40))

    assert result.roi == PixelRect(20, 20, 80, 80)
    assert result.edges.shape == (80, 80)
    assert set(np.unique(result.edges)) <= {0, EDGE_STRONG}
    assert result.edge_pixel_count == np.count_nonzero(result.edges)
    assert result.edge_pixel_count > 0

    # Square occupies 20..60 in ROI coordinates
    ys, xs = np.nonzero(result.edges)
    assert ys.min() >= 15 and ys.max() <= 65
    assert xs.min() >= 15 and xs.max() <= 65
    assert not result.edges[26:54, 26:54].any()
    print(f"✓ {result.edge_pixel_count} edge pixels around the square")


def test_flat_image_has_no_edges():
    image = np.full((60, 60, 4), 128, dtype=np.uint8)
    result = EdgeDetector().detect(image, PixelRect(10, 10, 20, 20))
    assert result.edge_pixel_count == 0
    assert result.edge_percentage == 0.0


def test_detection_is_deterministic():
    rng = np.random.RandomState(7)
    image = rng.randint(0, 256, size=(64, 64, 3)).astype(np.uint8)
    detector = EdgeDetector()
    first = detector.detect(image, PixelRect(10, 10, 30, 30))
    second = detector.detect(image, PixelRect(10, 10, 30, 30))
    assert np.array_equal(first.edges, second.edges)


def test_invalid_thresholds_rejected():
    with pytest.raises(ValueError):
        EdgeDetector(low_threshold=150, high_threshold=100)


def test_non_maximum_suppression_thins_ridge():
    profile = np.array([0, 10, 30, 60, 30, 10, 0], dtype=np.float64)
    magnitude = np.tile(profile, (7, 1))
    direction = np.zeros_like(magnitude)

    suppressed = non_maximum_suppression(magnitude, direction)
    kept_columns = set(np.nonzero(suppressed)[1].tolist())
    assert kept_columns == {3}


def test_hysteresis_promotes_connected_weak_pixels():
    suppressed = np.zeros((10, 10))
    suppressed[2, 2] = 200          # strong
    suppressed[2, 3:8] = 50         # weak chain touching the strong pixel
    suppressed[3, 8] = 50           # diagonal continuation
    suppressed[8, 1] = 50           # isolated weak pixel

    edges = hysteresis_threshold(suppressed, 40, 120)
    assert edges[2, 2] == EDGE_STRONG
    assert (edges[2, 3:8] == EDGE_STRONG).all()
    assert edges[3, 8] == EDGE_STRONG
    assert edges[8, 1] == 0
    assert np.count_nonzero(edges) == 7


def test_hysteresis_drops_weak_only_regions():
    suppressed = np.full((5, 5), 60.0)
    assert not hysteresis_threshold(suppressed, 40, 120).any()


def main():
    print("🧪 Testing edge detection")
    print("=" * 50)

    tests = [
        test_gaussian_kernel_normalized,
        test_convolve_normalized_keeps_flat_borders,
        test_edges_follow_square_outline,
        test_flat_image_has_no_edges,
        test_detection_is_deterministic,
        test_invalid_thresholds_rejected,
        test_non_maximum_suppression_thins_ridge,
        test_hysteresis_promotes_connected_weak_pixels,
        test_hysteresis_drops_weak_only_regions,
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
