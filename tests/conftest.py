import numpy as np
import pytest

from vessel_mpr.centerline import CenterlinePoint, ControlPoint, SegmentationMask
from vessel_mpr.io import VolumeData


@pytest.fixture
def curved_control_points():
    """Four control points of a gently curving vessel in the z=0 plane."""
    return [
        ControlPoint(0.0, 0.0, 0.0),
        ControlPoint(16.0, 5.0, 0.0),
        ControlPoint(33.0, -5.0, 0.0),
        ControlPoint(50.0, 0.0, 0.0),
    ]


@pytest.fixture
def small_volume():
    """10x10x10 volume, 1 mm isotropic, every voxel 100 HU."""
    return VolumeData(data=np.full((10, 10, 10), 100, dtype=np.int16), spacing=(1.0, 1.0, 1.0))


@pytest.fixture
def x_ramp_volume():
    """20^3 volume whose value equals 10 * x index, 1 mm isotropic."""
    ramp = (10 * np.arange(20, dtype=np.int16))[None, None, :]
    return VolumeData(data=np.broadcast_to(ramp, (20, 20, 20)).copy(), spacing=(1.0, 1.0, 1.0))


@pytest.fixture
def straight_centerline_points():
    """Nine samples along x from 1 to 9 mm at y = z = 5 mm."""
    return [CenterlinePoint(float(x), 5.0, 5.0, distance=float(x - 1)) for x in range(1, 10)]


@pytest.fixture
def tube_mask():
    """Lumen tube of radius 3 voxels running along x at y = z = 10 in a 20^3 grid."""
    z, y, _ = np.meshgrid(np.arange(20), np.arange(20), np.arange(20), indexing="ij")
    data = ((y - 10) ** 2 + (z - 10) ** 2 <= 9).astype(np.uint8)
    return SegmentationMask(data=data, spacing=(1.0, 1.0, 1.0)).with_distance_transform()


@pytest.fixture
def circle_mask():
    """Filled circle of radius 20 px centred in a 64x64 image."""
    yy, xx = np.mgrid[0:64, 0:64]
    return ((xx - 32) ** 2 + (yy - 32) ** 2 <= 20 ** 2).astype(np.uint8)
