import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
sys.path.insert(0, str(SRC))

from tuner.algorithms import FullTrackerRunner, RansacSmoothedRunner  # type: ignore
from tuner.geo import create_default_camera  # type: ignore
from tuner.measurements import MeasurementRecord, TimeValue  # type: ignore
from tuner.rigid import RigidBodyPose  # type: ignore
from tuner.sim import generate_records  # type: ignore
from tuner.tracking import TrackerParams, build_tracking_system  # type: ignore


class ScriptedTarget:
    """Target whose RANSAC result per call is scripted."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def has_pose_estimate(self):
        return False

    def get_pose_estimate(self):
        raise AssertionError("not used")

    def estimate_pose_ransac(self, camera, blobs=None):
        ok = self.outcomes[self.calls]
        self.calls += 1
        if not ok:
            return False, None, None
        return True, np.array([0.0, 0.0, 0.5]), np.array([1.0, 0.0, 0.0, 0.0])


class SpySmoother:
    def __init__(self):
        self.dts = []

    def filter(self, dt, position, quaternion):
        self.dts.append(dt)

    @property
    def pose(self):
        return RigidBodyPose.from_quaternion([0.0, 0.0, 0.5], [1.0, 0.0, 0.0, 0.0])


def _record(seconds: float) -> MeasurementRecord:
    return MeasurementRecord(TimeValue.from_seconds(seconds), [0, 0, 0.5], [1, 0, 0, 0])


def test_ransac_runner_measures_dt_from_last_success():
    target = ScriptedTarget([True, False, False, True, True])
    smoother = SpySmoother()
    runner = RansacSmoothedRunner(create_default_camera(), target, smoother)

    results = [runner.step(_record(t)) for t in (10.0, 10.1, 10.2, 10.5, 10.6)]

    assert [r.has_pose for r in results] == [True, False, False, True, True]
    assert smoother.dts == pytest.approx([1.0, 0.5, 0.1])
    assert runner.last_dt == pytest.approx(0.1)
    assert runner.frames_processed == 5
    assert runner.poses_produced == 3


def test_ransac_runner_without_success_never_smooths():
    smoother = SpySmoother()
    runner = RansacSmoothedRunner(create_default_camera(), ScriptedTarget([False] * 3), smoother)
    for t in (0.0, 0.1, 0.2):
        result = runner.step(_record(t))
        assert not result.has_pose
        assert result.pose is None
    assert smoother.dts == []
    assert not runner.have_pose()


def test_pose_carries_record_timestamp():
    runner = RansacSmoothedRunner(create_default_camera(), ScriptedTarget([True]), SpySmoother())
    result = runner.step(_record(3.25))
    assert result.pose.timestamp == 3_250_000
    assert result.to_dict()["timestamp_us"] == 3_250_000


def test_full_tracker_runner_on_synthetic_recording():
    camera = create_default_camera()
    records = generate_records(frames=30, trajectory="linear", seed=3, camera=camera)
    runner = FullTrackerRunner(camera, build_tracking_system(TrackerParams()))

    results = [runner.step(r) for r in records]
    assert all(r.has_pose for r in results)
    assert [r.frame_index for r in results] == list(range(30))
    errors = [np.linalg.norm(r.pose.position - rec.position) for r, rec in zip(results, records)]
    assert max(errors) < 0.005
    assert runner.have_pose()
    assert runner.get_pose() is results[-1].pose


def test_full_tracker_runner_reports_missing_pose():
    camera = create_default_camera()
    record = generate_records(frames=1, camera=camera)[0]
    empty = MeasurementRecord(record.timestamp, record.position, record.quaternion)
    runner = FullTrackerRunner(camera, build_tracking_system(TrackerParams()))

    result = runner.step(empty)
    assert not result.has_pose
    assert result.pose is None


def test_real_ransac_runner_smooths_synthetic_poses():
    camera = create_default_camera()
    records = generate_records(frames=20, trajectory="static", noise_px=0.3, seed=8, camera=camera)
    system = build_tracking_system(TrackerParams())
    runner = RansacSmoothedRunner(camera, system.get_body(0).get_target(0))

    results = [runner.step(r) for r in records]
    assert all(r.has_pose for r in results)
    assert np.linalg.norm(results[-1].pose.position - records[-1].position) < 0.005
    assert runner.last_dt == pytest.approx(1 / 60, abs=1e-5)
