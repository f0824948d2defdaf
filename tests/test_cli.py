import json

import numpy as np

from vessel_mpr.cli import build_parser, main, make_demo_case


def test_demo_case_has_lumen_along_centerline():
    volume, mask, control_points = make_demo_case()
    assert volume.dimensions == (64, 64, 64)
    assert mask.distance_transform is not None
    assert len(control_points) == 4
    lumen_values = volume.data[mask.data > 0]
    assert np.all(lumen_values == 400)
    assert int(volume.data.max()) == 900


def test_parser_defaults():
    args = build_parser().parse_args(["--demo"])
    assert args.demo
    assert args.volume is None
    assert args.wall_px == 0


def test_demo_run_writes_outputs(tmp_path):
    assert main(["--demo", "--out_dir", str(tmp_path), "--vessel", "LAD"]) == 0
    for name in (
        "curved_mpr.nii.gz",
        "centerline.json",
        "measurements.json",
        "measurements.csv",
        "straightened.png",
        "straightened_mip.png",
        "cross_section_mid.png",
    ):
        assert (tmp_path / name).exists(), name

    payload = json.loads((tmp_path / "measurements.json").read_text())
    assert len(payload["slices"]) > 0
    assert payload["slices"][0]["lumen_area"]["value"] > 0
