import numpy as np

from clothsim import build_scheduler, parse_args, run_headless


def test_defaults_match_demo_constants():
    args = parse_args([])
    scheduler = build_scheduler(args)
    cloth = scheduler.cloth
    assert cloth.spring_k == 30.0
    assert cloth.damping == 1.0
    assert cloth.mass == 0.1
    assert cloth.time_step == 0.001
    np.testing.assert_allclose(cloth.gravity, [0.0, -9.80665, 0.0])
    assert cloth.mesh.n_vertices == 400
    assert np.flatnonzero(cloth.mesh.pinned).tolist() == [0, 19]


def test_headless_run():
    args = parse_args(["--headless", "--size", "4", "--frames", "30", "--pin", "0", "3", "15"])
    scheduler = build_scheduler(args)
    assert run_headless(scheduler, args.frames, args.frame_time) == 0
    assert scheduler.frames == 30
    assert scheduler.cloth.substeps == 500
    assert np.flatnonzero(scheduler.cloth.mesh.pinned).tolist() == [0, 3, 15]


def test_headless_run_reports_divergence():
    args = parse_args(["--headless", "--size", "4", "--spring", "1e6", "--timestep", "0.05"])
    scheduler = build_scheduler(args)
    assert run_headless(scheduler, 200, 0.05) == 1
    assert scheduler.diverged
