import math

import numpy as np
import pytest

from vessel_mpr.errors import DimensionMismatchError
from vessel_mpr.measurements import (
    CrossSectionImage,
    CrossSectionSegmentation,
    MeasurementConfig,
    calculate_area,
    calculate_centroid,
    calculate_diameters,
    calculate_hu_statistics,
    compute_all_measurements,
    extract_contour,
    quantify_plaque,
    validate_measurement_config,
)


def test_area_scales_with_pixel_spacing(circle_mask):
    count = int(circle_mask.sum())
    area = calculate_area(circle_mask, (0.5, 0.5))
    assert area.pixel_count == count
    assert area.value == pytest.approx(count * 0.25)
    assert count == pytest.approx(math.pi * 20 ** 2, rel=0.01)


def test_contour_excludes_interior_pixels():
    mask = np.zeros((5, 5), dtype=np.uint8)
    mask[1:4, 1:4] = 1
    contour = extract_contour(mask)
    assert contour.shape == (8, 2)
    assert not any((x, y) == (2.0, 2.0) for x, y in contour)


def test_contour_skips_image_edge_pixels():
    mask = np.ones((3, 3), dtype=np.uint8)
    assert extract_contour(mask).shape == (0, 2)

    mask = np.zeros((6, 6), dtype=np.uint8)
    mask[0:3, 2:4] = 1
    contour = extract_contour(mask)
    assert contour.shape == (4, 2)
    assert np.all(contour[:, 1] >= 1)


def test_contour_returns_xy_in_row_major_order():
    mask = np.zeros((4, 5), dtype=np.uint8)
    mask[1, 3] = 1
    mask[2, 1] = 1
    np.testing.assert_array_equal(extract_contour(mask), [[3.0, 1.0], [1.0, 2.0]])


def test_centroid_of_symmetric_contour(circle_mask):
    cx, cy = calculate_centroid(extract_contour(circle_mask))
    assert cx == pytest.approx(32.0)
    assert cy == pytest.approx(32.0)


def test_circle_diameters_bracket_true_diameter(circle_mask):
    d = calculate_diameters(CrossSectionSegmentation(lumen_mask=circle_mask))
    assert 2 * 20 - 3 <= d.min <= d.max <= 2 * 20 + 1
    assert d.min <= d.mean <= d.max
    assert d.min_endpoints is not None and d.max_endpoints is not None


def test_diameters_follow_spacing(circle_mask):
    unit = calculate_diameters(CrossSectionSegmentation(lumen_mask=circle_mask))
    half = calculate_diameters(CrossSectionSegmentation(lumen_mask=circle_mask, spacing=(0.5, 0.5)))
    assert half.max == pytest.approx(unit.max / 2)
    assert half.min == pytest.approx(unit.min / 2)


def test_degenerate_contour_gives_zero_diameters():
    mask = np.zeros((5, 5), dtype=np.uint8)
    mask[2, 2] = 1
    d = calculate_diameters(CrossSectionSegmentation(lumen_mask=mask))
    assert (d.min, d.max, d.mean) == (0.0, 0.0, 0.0)


def test_precomputed_contour_is_used(circle_mask):
    square = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=float)
    seg = CrossSectionSegmentation(lumen_mask=circle_mask, lumen_contour=square)
    d = calculate_diameters(seg, MeasurementConfig(diameter_angles=4))
    assert d.max == pytest.approx(10 * math.sqrt(2))


def test_hu_statistics():
    image = CrossSectionImage(np.arange(1, 10).reshape(3, 3))
    mask = np.array([[1, 1, 0], [1, 1, 0], [0, 0, 0]])
    stats = calculate_hu_statistics(image, mask)
    assert stats.pixel_count == 4
    assert stats.mean == pytest.approx(3.0)
    assert stats.std == pytest.approx(math.sqrt(2.5))
    assert (stats.min, stats.max) == (1.0, 5.0)
    assert stats.median == 4.0


def test_hu_statistics_empty_mask():
    image = CrossSectionImage(np.ones((3, 3)))
    stats = calculate_hu_statistics(image, np.zeros((3, 3)))
    assert stats.pixel_count == 0
    assert (stats.mean, stats.std, stats.min, stats.max, stats.median) == (0.0, 0.0, 0.0, 0.0, 0.0)


def test_hu_statistics_shape_mismatch():
    with pytest.raises(DimensionMismatchError):
        calculate_hu_statistics(CrossSectionImage(np.ones((3, 3))), np.ones((4, 4)))


def _wall_case():
    image = np.zeros((4, 4), dtype=np.int16)
    image[0, :] = [100, 130, 131, 500]
    lumen = np.zeros((4, 4), dtype=np.uint8)
    lumen[2:, 1:3] = 1
    wall = np.zeros((4, 4), dtype=np.uint8)
    wall[0, :] = 1
    return CrossSectionImage(image), CrossSectionSegmentation(lumen_mask=lumen, vessel_wall_mask=wall)


def test_plaque_threshold_is_strict():
    image, seg = _wall_case()
    plaque = quantify_plaque(image, seg)
    assert plaque.calcified_pixel_count == 2
    assert plaque.non_calcified_pixel_count == 2
    assert plaque.calcified_percentage == pytest.approx(50.0)
    assert plaque.calcified_mean_hu == pytest.approx(315.5)
    assert plaque.non_calcified_mean_hu == pytest.approx(115.0)
    assert plaque.total_area == pytest.approx(4.0)


def test_plaque_requires_wall_mask(circle_mask):
    image = CrossSectionImage(np.zeros_like(circle_mask))
    assert quantify_plaque(image, CrossSectionSegmentation(lumen_mask=circle_mask)) is None


def test_wall_shape_must_match_lumen():
    with pytest.raises(DimensionMismatchError):
        CrossSectionSegmentation(lumen_mask=np.ones((3, 3)), vessel_wall_mask=np.ones((4, 4)))


def test_compute_all_with_wall():
    image, seg = _wall_case()
    result = compute_all_measurements(image, seg, position=12.5)
    assert result.position == 12.5
    assert result.lumen_area.value == pytest.approx(4.0)
    assert result.vessel_wall_area.value == pytest.approx(4.0)
    assert result.total_vessel_area.value == pytest.approx(8.0)
    assert result.plaque_burden == pytest.approx(50.0)
    assert result.plaque_quantification is not None
    assert result.is_valid()

    row = result.to_row()
    assert row["position_mm"] == 12.5
    assert row["calcified_area_mm2"] == pytest.approx(2.0)
    assert result.to_dict()["plaque_burden"] == pytest.approx(50.0)


def test_compute_all_lumen_only(circle_mask):
    image = CrossSectionImage(np.full(circle_mask.shape, 350, dtype=np.int16), spacing=(0.5, 0.5))
    seg = CrossSectionSegmentation(lumen_mask=circle_mask, spacing=(0.5, 0.5))
    result = compute_all_measurements(image, seg, position=0.0)
    assert result.vessel_wall_area is None
    assert result.plaque_quantification is None
    assert result.plaque_burden is None
    assert result.lumen_hu_stats.mean == pytest.approx(350.0)


def test_compute_all_dimension_mismatch(circle_mask):
    with pytest.raises(DimensionMismatchError):
        compute_all_measurements(
            CrossSectionImage(np.zeros((10, 10))), CrossSectionSegmentation(lumen_mask=circle_mask), 0.0
        )


def test_tiny_lumen_is_not_valid():
    mask = np.zeros((5, 5), dtype=np.uint8)
    mask[2, 2] = 1
    image = CrossSectionImage(np.zeros((5, 5)), spacing=(0.2, 0.2))
    result = compute_all_measurements(image, CrossSectionSegmentation(mask, spacing=(0.2, 0.2)), 0.0)
    assert result.lumen_area.value == pytest.approx(0.04)
    assert not result.is_valid()


def test_validate_measurement_config():
    assert validate_measurement_config(MeasurementConfig()).valid
    report = validate_measurement_config(MeasurementConfig(calcium_threshold=-1, diameter_angles=4))
    assert len(report.errors) == 2
