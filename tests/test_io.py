import csv
import json

import nibabel as nib
import numpy as np
import pytest
import SimpleITK as sitk

from vessel_mpr.curved_mpr import CurvedMPRConfig, generate_curved_mpr, sample_volume_nearest
from vessel_mpr.io import (
    VolumeData,
    load_control_points_json,
    load_segmentation_mask,
    load_volume,
    save_measurements_csv,
    save_mpr_nifti,
)


def test_from_flat_is_x_fastest():
    volume = VolumeData.from_flat((3, 2, 2), (1, 1, 1), (0, 0, 0), list(range(12)))
    assert volume.dimensions == (3, 2, 2)
    assert volume.data[0, 0, 1] == 1
    assert volume.data[0, 1, 0] == 3
    assert volume.data[1, 0, 0] == 6
    np.testing.assert_array_equal(volume.flat(), np.arange(12))
    with pytest.raises(ValueError):
        VolumeData.from_flat((3, 2, 2), (1, 1, 1), (0, 0, 0), [0] * 5)


def test_load_nifti_volume_is_in_itk_world_frame(tmp_path):
    xyz = np.arange(4 * 5 * 6, dtype=np.float32).reshape(4, 5, 6)
    affine = np.diag([0.5, 0.75, 1.25, 1.0])
    affine[:3, 3] = [1.0, 2.0, 3.0]
    path = tmp_path / "ct.nii.gz"
    nib.save(nib.Nifti1Image(xyz, affine), str(path))

    volume = load_volume(path)
    assert volume.dimensions == (4, 5, 6)
    assert volume.data.dtype == np.int16
    assert volume.spacing == pytest.approx((0.5, 0.75, 1.25))
    # RAS affine -> LPS, then x and y flipped so indices increase along +x/+y.
    assert volume.origin == pytest.approx((-2.5, -5.0, 3.0))
    assert volume.data[5, 0, 0] == int(xyz[3, 4, 5])
    assert volume.data[0, 4, 3] == int(xyz[0, 0, 0])


def _rod_image():
    zyx = np.zeros((20, 8, 8), dtype=np.int16)
    zyx[:, 3, 3] = 500
    image = sitk.GetImageFromArray(zyx)
    image.SetOrigin((10.0, 20.0, 30.0))
    return image


def test_nifti_and_mha_load_into_the_same_frame(tmp_path):
    image = _rod_image()
    sitk.WriteImage(image, str(tmp_path / "ct.nii.gz"))
    sitk.WriteImage(image, str(tmp_path / "ct.mha"))

    from_nifti = load_volume(tmp_path / "ct.nii.gz")
    from_mha = load_volume(tmp_path / "ct.mha")
    assert from_nifti.origin == pytest.approx(from_mha.origin)
    assert from_nifti.origin == pytest.approx((10.0, 20.0, 30.0))
    np.testing.assert_array_equal(from_nifti.data, from_mha.data)

    rod = np.array([[13.0, 23.0, 40.0]])
    assert sample_volume_nearest(from_nifti, rod)[0] == 500
    assert sample_volume_nearest(from_mha, rod)[0] == 500


def test_flipped_direction_is_resolved(tmp_path):
    zyx = np.zeros((6, 5, 4), dtype=np.int16)
    zyx[4, 3, 2] = 700
    image = sitk.GetImageFromArray(zyx)
    image.SetOrigin((10.0, 20.0, 30.0))
    image.SetSpacing((1.0, 1.0, 2.0))
    image.SetDirection((-1.0, 0.0, 0.0, 0.0, -1.0, 0.0, 0.0, 0.0, 1.0))
    path = tmp_path / "flipped.mha"
    sitk.WriteImage(image, str(path))

    volume = load_volume(path)
    assert volume.origin == pytest.approx((7.0, 16.0, 30.0))
    assert volume.data[4, 1, 1] == 700
    # Index (2, 3, 4) in the file sits at origin + direction * (2, 3, 8).
    assert sample_volume_nearest(volume, np.array([[8.0, 17.0, 38.0]]))[0] == 700


def test_permuted_axes_are_reordered(tmp_path):
    zyx = np.zeros((4, 3, 2), dtype=np.int16)
    zyx[3, 2, 1] = 300
    image = sitk.GetImageFromArray(zyx)
    image.SetSpacing((1.0, 2.0, 3.0))
    # Index i runs along world y, j along world x.
    image.SetDirection((0.0, 1.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0))
    path = tmp_path / "swapped.mha"
    sitk.WriteImage(image, str(path))

    volume = load_volume(path)
    assert volume.dimensions == (3, 2, 4)
    assert volume.spacing == pytest.approx((2.0, 1.0, 3.0))
    assert sample_volume_nearest(volume, np.array([[4.0, 1.0, 9.0]]))[0] == 300


def test_oblique_direction_is_rejected(tmp_path):
    image = _rod_image()
    c, s = np.cos(np.pi / 6), np.sin(np.pi / 6)
    image.SetDirection((c, -s, 0.0, s, c, 0.0, 0.0, 0.0, 1.0))
    path = tmp_path / "oblique.mha"
    sitk.WriteImage(image, str(path))
    with pytest.raises(ValueError, match="oblique"):
        load_volume(path)


def test_load_mha_mask_with_distance_transform(tmp_path):
    zyx = np.zeros((5, 6, 7), dtype=np.uint8)
    zyx[1:4, 1:5, 1:6] = 1
    image = sitk.GetImageFromArray(zyx)
    image.SetSpacing((1.0, 1.0, 2.0))
    path = tmp_path / "mask.mha"
    sitk.WriteImage(image, str(path))

    mask = load_segmentation_mask(path)
    assert mask.dimensions == (7, 6, 5)
    assert mask.spacing == pytest.approx((1.0, 1.0, 2.0))
    assert mask.distance_transform is not None
    assert mask.distance_transform[0, 0, 0] == 0.0
    assert mask.distance_transform[2, 3, 3] > 0.0


def test_save_mpr_nifti_layout(tmp_path, small_volume, straight_centerline_points):
    config = CurvedMPRConfig(sampling_interval=1.0, plane_width=4.0, plane_height=6.0, plane_resolution=1.0)
    mpr = generate_curved_mpr(small_volume, straight_centerline_points, config)
    path = tmp_path / "out" / "mpr.nii.gz"
    save_mpr_nifti(mpr, path)

    image = nib.load(str(path))
    assert image.shape == (4, 6, 9)
    assert tuple(float(z) for z in image.header.get_zooms()[:3]) == pytest.approx((1.0, 1.0, 1.0))


def test_load_control_points_json(tmp_path):
    path = tmp_path / "points.json"
    path.write_text(
        json.dumps(
            {
                "start": [0, 0, 0],
                "end": {"x": 50, "y": 0, "z": 0},
                "intermediate": [[16, 5, 0, 2.0], [33, -5, 0]],
            }
        )
    )
    start, end, intermediate = load_control_points_json(path)
    assert (start.x, end.x) == (0.0, 50.0)
    assert intermediate[0].weight == 2.0
    assert intermediate[1].weight == 1.0

    path.write_text(json.dumps({"start": [0, 0, 0]}))
    with pytest.raises(ValueError):
        load_control_points_json(path)


def test_measurement_csv_header_is_union(tmp_path):
    path = tmp_path / "m.csv"
    save_measurements_csv(path, [{"a": 1, "b": 2}, {"a": 3, "c": 4}])
    with path.open() as fh:
        rows = list(csv.DictReader(fh))
    assert list(rows[0].keys()) == ["a", "b", "c"]
    assert rows[1]["c"] == "4"
    assert rows[1]["b"] == ""
