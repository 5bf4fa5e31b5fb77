import json
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
sys.path.insert(0, str(SRC))

from tuner.geo import CalibrationLoader, create_default_camera, project_points  # type: ignore
from tuner.measurements import MeasurementRecord  # type: ignore
from tuner.rigid import (  # type: ignore
    DEFAULT_PATTERN, BeaconPattern, RansacPnPEstimator, quat_to_rotation, rotation_error_deg,
)
from tuner.sim import generate_records  # type: ignore
from tuner.tracking import (  # type: ignore
    PARAMETER_NAMES, TrackerParams, build_tracking_system, make_frame_data,
    params_from_vector, vector_from_params,
)


@pytest.fixture()
def camera():
    return create_default_camera()


def _without_blobs(record: MeasurementRecord) -> MeasurementRecord:
    return MeasurementRecord(record.timestamp, record.position, record.quaternion, blobs=())


def test_ransac_recovers_synthetic_pose(camera):
    record = generate_records(frames=1, trajectory="static", seed=2, camera=camera)[0]
    result = RansacPnPEstimator().estimate(
        record.image_points(), DEFAULT_PATTERN.beacon_positions, camera
    )
    assert result is not None
    R, t, rms, inliers = result

    np.testing.assert_allclose(t, record.position, atol=1e-4)
    assert np.allclose(R, quat_to_rotation(record.quaternion).as_matrix(), atol=1e-4)
    assert rms < 0.1
    assert inliers == DEFAULT_PATTERN.num_beacons


def test_ransac_needs_four_points_and_matching_counts(camera):
    estimator = RansacPnPEstimator()
    pts3d = DEFAULT_PATTERN.beacon_positions
    assert estimator.estimate(np.zeros((3, 2)), pts3d[:3], camera) is None
    with pytest.raises(ValueError):
        estimator.estimate(np.zeros((5, 2)), pts3d[:4], camera)


def test_target_ransac_uses_given_blobs(camera):
    record = generate_records(frames=1, seed=5, camera=camera)[0]
    system = build_tracking_system(TrackerParams())
    target = system.get_body(0).get_target(0)

    success, position, quaternion = target.estimate_pose_ransac(camera, record.blobs)
    assert success
    np.testing.assert_allclose(position, record.position, atol=1e-4)
    assert rotation_error_deg(quaternion, record.quaternion) < 0.05

    success, position, quaternion = target.estimate_pose_ransac(camera, record.blobs[:3])
    assert not success
    assert position is None and quaternion is None


def test_tracker_acquires_and_follows_motion(camera):
    records = generate_records(frames=90, trajectory="linear", noise_px=0.2, seed=1, camera=camera)
    system = build_tracking_system(TrackerParams())
    target = system.get_body(0).get_target(0)

    errors = []
    for record in records:
        system.update_from_frame(make_frame_data(record, camera))
        assert target.has_pose_estimate()
        pose = target.get_pose_estimate()
        errors.append(np.linalg.norm(pose.position - record.position))

    assert float(np.mean(errors)) < 0.005
    status = system.get_tracking_status()[0][0]
    assert status["acquisitions"] == 1
    assert status["updates"] == len(records) - 1


def test_update_reports_body_ids(camera):
    records = generate_records(frames=2, camera=camera)
    system = build_tracking_system(TrackerParams())
    assert system.update_from_frame(make_frame_data(records[0], camera)) == [0]
    assert system.update_from_frame(make_frame_data(_without_blobs(records[1]), camera)) == []
    assert system.frames_processed == 2


def test_tracker_drops_estimate_after_lost_frames(camera):
    params = TrackerParams(max_lost_frames=5)
    records = generate_records(frames=20, camera=camera)
    system = build_tracking_system(params)
    target = system.get_body(0).get_target(0)

    system.update_from_frame(make_frame_data(records[0], camera))
    assert target.has_pose_estimate()
    for record in records[1:6]:
        system.update_from_frame(make_frame_data(_without_blobs(record), camera))
    assert target.has_pose_estimate()
    system.update_from_frame(make_frame_data(_without_blobs(records[6]), camera))
    assert not target.has_pose_estimate()

    # Re-acquired from the next full frame
    system.update_from_frame(make_frame_data(records[7], camera))
    assert target.has_pose_estimate()


def test_no_pose_before_any_frame():
    system = build_tracking_system(TrackerParams())
    assert not system.get_body(0).has_pose_estimate()
    with pytest.raises(KeyError):
        system.get_body(3)
    with pytest.raises(KeyError):
        system.get_body(0).get_target(1)


def test_params_from_vector_maps_noise_entries():
    params = params_from_vector(TrackerParams(), [1e-5, 2e-2, 3e-4, 0.1])
    assert params.process_noise_autocorrelation == (1e-5,) * 3 + (2e-2,) * 3
    assert params.beacon_process_noise == 3e-4
    assert params.measurement_variance_scale_factor == 0.1
    np.testing.assert_allclose(vector_from_params(params), [1e-5, 2e-2, 3e-4, 0.1])

    with pytest.raises(ValueError):
        params_from_vector(TrackerParams(), [1.0, 2.0])
    assert len(PARAMETER_NAMES) == 4


def test_negative_noise_fails_validation():
    with pytest.raises(ValueError):
        build_tracking_system(params_from_vector(TrackerParams(), [-1.0, 0.0, 0.0, 0.0]))


def test_pattern_and_calibration_from_json(tmp_path, camera):
    pattern_file = tmp_path / "pattern.json"
    pattern_file.write_text(json.dumps({
        "name": "square",
        "units": "mm",
        "beacons": [[0, 0, 0], [50, 0, 0], [0, 50, 0], [50, 50, 10]],
    }))
    pattern = BeaconPattern.from_json(str(pattern_file))
    assert pattern.name == "square"
    assert pattern.num_beacons == 4
    np.testing.assert_allclose(pattern.beacon_positions[3], [0.05, 0.05, 0.01])

    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"beacons": [[0, 0, 0]]}))
    with pytest.raises(ValueError):
        BeaconPattern.from_json(str(bad))

    calib_file = tmp_path / "camera.json"
    calib_file.write_text(json.dumps(camera.to_dict()))
    loaded = CalibrationLoader.load(str(calib_file))
    np.testing.assert_allclose(loaded.intrinsic_matrix, camera.intrinsic_matrix)
    assert loaded.resolution == camera.resolution

    with pytest.raises(FileNotFoundError):
        CalibrationLoader.load(str(tmp_path / "missing.json"))


def test_projection_matches_principal_point(camera):
    pts = project_points(camera, np.array([[0.0, 0.0, 0.0]]), np.eye(3), np.array([0.0, 0.0, 1.0]))
    np.testing.assert_allclose(pts, [[camera.cx, camera.cy]])


def test_failed_refinement_reports_no_pose(camera, monkeypatch):
    record = generate_records(frames=1, trajectory="static", seed=2, camera=camera)[0]

    def degenerate(*args, **kwargs):
        raise cv2.error("degenerate inlier set")

    monkeypatch.setattr(cv2, "solvePnP", degenerate)
    result = RansacPnPEstimator().estimate(
        record.image_points(), DEFAULT_PATTERN.beacon_positions, camera
    )
    assert result is None
