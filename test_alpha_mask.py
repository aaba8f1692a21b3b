#!/usr/bin/env python3
"""
Tests for polygon rasterization, feathering and colour-guided refinement.
"""
import sys
import os

import numpy as np
import pytest

# Add current directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from alpha_mask import (
    AlphaMaskBuilder,
    apply_feathering,
    feathering_kernel,
    rasterize_polygon,
    refine_with_color,
    round_half_up,
)
from bounds_resolver import PixelRect
from contour_tracer import POINT_CORNER, ContourPoint


def test_round_half_up():
    assert round_half_up([0.5, 1.5, 2.5, -0.5, 2.49]).tolist() == [1.0, 2.0, 3.0, 0.0, 2.0]


def test_short_contour_fills_everything():
    for points in ([], [(1, 1)], [(1, 1), (5, 5)]):
        mask = rasterize_polygon(points, 12, 7)
        assert mask.shape == (7, 12)
        assert (mask == 255).all()


def test_square_polygon_rows_and_columns():
    mask = rasterize_polygon([(2, 2), (8, 2), (8, 8), (2, 8)], 10, 10)

    ys, xs = np.nonzero(mask)
    assert set(ys.tolist()) == set(range(2, 8))
    assert set(xs.tolist()) == set(range(2, 9))
    assert (mask[2:8, 2:9] == 255).all()
    assert np.count_nonzero(mask) == 6 * 7
    print("✓ Square polygon rasterized by even-odd scanlines")


def test_triangle_is_convex_fill():
    mask = rasterize_polygon([(0, 0), (19, 0), (0, 19)], 20, 20)
    for y in range(19):
        row = np.nonzero(mask[y])[0]
        assert row.min() == 0
        assert (mask[y, :row.max() + 1] == 255).all()


def test_feathering_kernel():
    kernel = feathering_kernel(5.0)
    assert kernel.shape == (11, 11)
    assert kernel.sum() == pytest.approx(1.0)
    # Corners lie outside the disc
    assert kernel[0, 0] == 0.0
    assert kernel[5, 5] == kernel.max()


def test_feathering_keeps_full_mask_opaque():
    mask = np.full((15, 9), 255, dtype=np.uint8)
    assert (apply_feathering(mask, 5.0) == 255).all()


def test_feathering_softens_step():
    mask = np.zeros((20, 20), dtype=np.uint8)
    mask[:, 10:] = 255
    feathered = apply_feathering(mask, 3.0)
    assert feathered[10, 0] == 0
    assert feathered[10, 19] == 255
    assert 0 < feathered[10, 9] < 255
    assert (np.diff(feathered[10].astype(int)) >= 0).all()


def test_zero_radius_is_identity():
    mask = np.zeros((5, 5), dtype=np.uint8)
    mask[2, 2] = 255
    assert np.array_equal(apply_feathering(mask, 0), mask)


def test_refinement_boosts_matching_edge_pixels():
    mask = np.full((20, 20), 255, dtype=np.uint8)
    mask[:, 15:] = 100
    region = np.zeros((20, 20, 3), dtype=np.uint8)
    region[:] = (180, 180, 190)
    region[:, 18:] = (20, 200, 20)

    refined, boosted = refine_with_color(mask, region)

    assert boosted == 20 * 3
    assert (refined[:, 15:18] == 150).all()
    assert (refined[:, 18:] == 100).all()
    assert (refined[:, :15] == 255).all()


def test_refinement_without_confident_pixels():
    mask = np.full((10, 10), 100, dtype=np.uint8)
    region = np.zeros((10, 10, 4), dtype=np.uint8)
    refined, boosted = refine_with_color(mask, region)
    assert boosted == 0
    assert np.array_equal(refined, mask)


def test_builder_fallback_for_degenerate_contour():
    image = np.zeros((50, 50, 4), dtype=np.uint8)
    rect = PixelRect(5, 10, 30, 20)
    result = AlphaMaskBuilder().build(image, [ContourPoint(6, 11, POINT_CORNER)], rect)

    assert result.used_fallback
    assert result.mask.shape == (20, 30)
    assert (result.mask == 255).all()


def test_builder_uses_rect_local_coordinates():
    image = np.zeros((40, 40, 4), dtype=np.uint8)
    image[:, :, :3] = (90, 90, 100)
    rect = PixelRect(10, 10, 20, 20)
    contour = [ContourPoint(12, 12, POINT_CORNER), ContourPoint(28, 12, POINT_CORNER),
               ContourPoint(28, 28, POINT_CORNER), ContourPoint(12, 28, POINT_CORNER)]

    result = AlphaMaskBuilder().build(image, contour, rect)

    assert not result.used_fallback
    assert result.mask.shape == (20, 20)
    assert result.mask[10, 10] == 255
    assert result.mask[0, 0] < result.mask[10, 10]
    assert result.rect == rect


def test_polygon_overhanging_one_side():
    mask = rasterize_polygon([(-5, 0), (5, 0), (5, 9), (-5, 9)], 10, 10)

    assert (mask[0:9, 0:6] == 255).all()
    assert (mask[:, 6:] == 0).all()
    assert (mask[9] == 0).all()


def test_polygon_covering_whole_mask():
    mask = rasterize_polygon([(-5, -5), (15, -5), (15, 15), (-5, 15)], 10, 10)
    assert (mask == 255).all()

    # Spans entirely left of the mask are skipped
    assert (rasterize_polygon([(-9, 0), (-3, 0), (-3, 9), (-9, 9)], 10, 10) == 0).all()


def test_builder_contour_larger_than_rect():
    image = np.zeros((40, 40, 4), dtype=np.uint8)
    image[:, :, :3] = (90, 90, 100)
    rect = PixelRect(10, 10, 20, 20)
    contour = [ContourPoint(5, 5, POINT_CORNER), ContourPoint(35, 5, POINT_CORNER),
               ContourPoint(35, 35, POINT_CORNER), ContourPoint(5, 35, POINT_CORNER)]

    result = AlphaMaskBuilder().build(image, contour, rect)

    assert not result.used_fallback
    assert (result.mask == 255).all()


def main():
    print("🧪 Testing alpha mask construction")
    print("=" * 50)

    tests = [
        test_round_half_up,
        test_short_contour_fills_everything,
        test_square_polygon_rows_and_columns,
        test_triangle_is_convex_fill,
        test_feathering_kernel,
        test_feathering_keeps_full_mask_opaque,
        test_feathering_softens_step,
        test_zero_radius_is_identity,
        test_refinement_boosts_matching_edge_pixels,
        test_refinement_without_confident_pixels,
        test_builder_fallback_for_degenerate_contour,
        test_builder_uses_rect_local_coordinates,
        test_polygon_overhanging_one_side,
        test_polygon_covering_whole_mask,
        test_builder_contour_larger_than_rect,
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
