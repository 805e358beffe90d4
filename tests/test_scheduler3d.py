import numpy as np
import pytest

from cloth3d import Cloth3D, SimulationDivergedError
from mesh3d import Mesh3D
from scheduler3d import Frame, Scheduler, SimulationClock


class FakeTime:
    def __init__(self, times):
        self._times = iter(times)

    def __call__(self):
        return next(self._times)


class RecordingRenderer:
    def __init__(self, stop_after=None):
        self.frames = []
        self.scheduler = None
        self.stop_after = stop_after

    def present(self, frame):
        self.frames.append(frame)
        if self.stop_after is not None and len(self.frames) >= self.stop_after:
            self.scheduler.stop()


def make_scheduler(size=4, **kwargs):
    cloth = Cloth3D(Mesh3D.build_lattice(size))
    return Scheduler(cloth, **kwargs)


def test_clock_counts_whole_substeps():
    clock = SimulationClock(0.001)
    assert clock.consume(0.0025) == 2
    assert clock.leftover == pytest.approx(0.0005)
    assert clock.consume(0.0005) == 1
    assert clock.consume(0.0) == 0
    assert clock.substeps == 3
    assert clock.simulated_time == pytest.approx(0.003)


@pytest.mark.parametrize("split", [[1.0], [0.25] * 4, [0.1] * 10, [0.3, 0.7], [1 / 60.0] * 60])
def test_clock_total_is_independent_of_split(split):
    clock = SimulationClock(0.001)
    total = sum(clock.consume(elapsed) for elapsed in split)
    assert total == 1000


def test_clock_rejects_negative_elapsed():
    with pytest.raises(ValueError):
        SimulationClock(0.001).consume(-0.1)


def test_clock_rejects_bad_time_step():
    with pytest.raises(ValueError, match="time_step"):
        SimulationClock(0.0)


def test_frame_rate_independence():
    final = []
    for split in ([0.5], [0.125] * 4, [0.05] * 10, [0.2, 0.01, 0.29]):
        scheduler = make_scheduler()
        for elapsed in split:
            scheduler.advance(elapsed)
        assert scheduler.cloth.substeps == 500
        final.append(scheduler.cloth.mesh.positions.copy())

    for positions in final[1:]:
        np.testing.assert_array_equal(positions, final[0])


def test_advance_publishes_frame_to_renderer():
    renderer = RecordingRenderer()
    scheduler = make_scheduler(size=3, renderer=renderer)

    frame = scheduler.advance(0.0105)

    assert renderer.frames == [frame]
    assert isinstance(frame, Frame)
    assert frame.substeps == 10
    assert frame.time == pytest.approx(0.01)
    assert frame.positions.shape == (27,) and frame.normals.shape == (27,)
    assert np.all(np.isfinite(frame.positions)) and np.all(np.isfinite(frame.normals))
    np.testing.assert_allclose(np.linalg.norm(frame.normals.reshape(-1, 3), axis=1), 1.0, rtol=1e-6)


def test_frame_is_a_snapshot():
    scheduler = make_scheduler(size=3)
    frame = scheduler.advance(0.01)
    before = frame.positions.copy()
    scheduler.advance(0.05)
    np.testing.assert_array_equal(frame.positions, before)
    assert not np.array_equal(scheduler.last_frame.positions, before)


def test_normals_are_refreshed_once_per_frame():
    scheduler = make_scheduler(size=4)
    scheduler.advance(0.2)
    mesh = scheduler.cloth.mesh
    np.testing.assert_array_equal(mesh.normals, mesh.compute_vertex_normals())


def test_tick_reads_time_source():
    times = FakeTime([10.0, 10.016, 10.05])
    scheduler = make_scheduler(time_source=times)

    assert scheduler.tick().substeps == 0
    assert scheduler.tick().substeps == 16
    assert scheduler.tick().substeps == 34
    assert scheduler.cloth.substeps == 50


def test_max_substeps_drops_backlog():
    scheduler = make_scheduler(max_substeps_per_frame=20)
    frame = scheduler.advance(0.1)
    assert frame.substeps == 20
    assert scheduler.clock.substeps == 20
    assert scheduler.advance(0.005).substeps == 5


def test_invalid_max_substeps():
    with pytest.raises(ValueError, match="max_substeps_per_frame"):
        make_scheduler(max_substeps_per_frame=0)


def test_run_stops_when_requested():
    renderer = RecordingRenderer(stop_after=3)
    times = FakeTime([0.0, 0.01, 0.02, 0.03, 0.04, 0.05])
    scheduler = make_scheduler(renderer=renderer, time_source=times)
    renderer.scheduler = scheduler

    scheduler.run()

    assert len(renderer.frames) == 3
    assert not scheduler.running


def test_run_honours_frame_limit():
    times = FakeTime([0.01 * i for i in range(10)])
    scheduler = make_scheduler(time_source=times)
    scheduler.run(max_frames=4)
    assert scheduler.frames == 4
    assert scheduler.cloth.substeps == 30


def test_divergence_halts_the_run():
    renderer = RecordingRenderer()
    cloth = Cloth3D(Mesh3D.build_lattice(4), spring_k=1e6, time_step=0.05)
    times = FakeTime([0.05 * i for i in range(1000)])
    scheduler = Scheduler(cloth, renderer=renderer, time_source=times)

    with pytest.raises(SimulationDivergedError):
        scheduler.run()

    assert scheduler.diverged
    assert not scheduler.running
    for frame in renderer.frames:
        assert np.all(np.isfinite(frame.positions))


def test_reset_restarts_the_clock():
    scheduler = make_scheduler()
    scheduler.advance(0.1)
    scheduler.reset()
    assert scheduler.frames == 0
    assert scheduler.clock.substeps == 0
    assert scheduler.cloth.substeps == 0
    assert scheduler.last_frame is None


def test_positions_overflowing_the_buffers_halt_the_run():
    renderer = RecordingRenderer()
    scheduler = make_scheduler(size=3, renderer=renderer)
    # Finite as float64, infinite once written to the float32 buffer.
    scheduler.cloth.mesh.positions[5] = [1e39, 0.0, 0.0]

    with pytest.raises(SimulationDivergedError) as info:
        scheduler.advance(0.0)

    assert scheduler.diverged
    assert 5 in info.value.particles.tolist()
    assert renderer.frames == []


def test_advance_after_divergence_keeps_raising_divergence():
    cloth = Cloth3D(Mesh3D.build_lattice(4), spring_k=1e6, time_step=0.05)
    scheduler = Scheduler(cloth)

    with pytest.raises(SimulationDivergedError):
        for _ in range(1000):
            scheduler.advance(0.05)

    with pytest.raises(SimulationDivergedError):
        scheduler.advance(0.05)
