"""
Tracking system used by the study harness.

The harness only talks to a tracking system through the small interface
below (build, update from a frame, look up body and target, query pose,
RANSAC estimate), so tests can swap in a scripted double.

PoseTrackingSystem is the production variant: one body carrying one beacon
target. Per frame it associates blobs to beacons, predicts with a
constant-velocity model and corrects with an extended Kalman filter over
the 2D blob locations. Acquisition uses RANSAC PnP.
"""

import math
import numpy as np
from typing import Optional, Dict, Any, List, Tuple, Callable, Sequence, Protocol
from dataclasses import dataclass, field, replace
from scipy.spatial.distance import cdist
from scipy.optimize import linear_sum_assignment
from scipy.spatial.transform import Rotation

from .geo import CameraParams, project_points, points_in_front
from .measurements import Blob, MeasurementRecord, TimeValue
from .rigid import (
    BeaconPattern, RigidBodyPose, RansacPnPEstimator, RansacSettings,
    DEFAULT_PATTERN, rotation_to_quat
)


PARAMETER_NAMES = (
    "positional_noise",
    "rotational_noise",
    "beacon_process_noise",
    "measurement_variance_scale_factor",
)


@dataclass
class TrackerParams:
    """Noise model and association settings of the tracking system."""
    # Process noise autocorrelation: x, y, z position then x, y, z rotation
    process_noise_autocorrelation: Tuple[float, ...] = (4.14e-6,) * 3 + (1e-2,) * 3
    beacon_process_noise: float = 0.0  # m^2, projected into pixel variance
    measurement_variance_scale_factor: float = 5e-2
    base_measurement_variance: float = 3.0  # px^2 before scaling
    association_gate_px: float = 25.0
    min_update_beacons: int = 3
    max_lost_frames: int = 15
    initial_position_variance: float = 1e-4
    initial_orientation_variance: float = 2.5e-3
    initial_velocity_variance: float = 1e-2
    initial_angular_velocity_variance: float = 0.25
    ransac: RansacSettings = field(default_factory=RansacSettings)

    def validate(self) -> None:
        noise = list(self.process_noise_autocorrelation)
        if len(noise) != 6:
            raise ValueError("process_noise_autocorrelation needs 6 entries")
        values = noise + [self.beacon_process_noise, self.measurement_variance_scale_factor]
        if any(not math.isfinite(v) or v < 0 for v in values):
            raise ValueError(f"noise parameters must be finite and >= 0: {values}")
        if self.base_measurement_variance <= 0:
            raise ValueError("base_measurement_variance must be > 0")
        if self.association_gate_px <= 0:
            raise ValueError("association_gate_px must be > 0")


def params_from_vector(base: TrackerParams, vector: Sequence[float]) -> TrackerParams:
    """
    Apply an optimizer parameter vector to a tracker configuration.

    Args:
        base: Configuration supplying everything the vector does not set
        vector: [positional noise, rotational noise, beacon process noise,
                 measurement variance scale factor]
    """
    values = [float(v) for v in np.asarray(vector, dtype=np.float64).reshape(-1)]
    if len(values) != len(PARAMETER_NAMES):
        raise ValueError(f"parameter vector needs {len(PARAMETER_NAMES)} entries, got {len(values)}")
    return replace(
        base,
        process_noise_autocorrelation=(values[0],) * 3 + (values[1],) * 3,
        beacon_process_noise=values[2],
        measurement_variance_scale_factor=values[3]
    )


def vector_from_params(params: TrackerParams) -> np.ndarray:
    noise = params.process_noise_autocorrelation
    return np.array([
        noise[0], noise[3],
        params.beacon_process_noise,
        params.measurement_variance_scale_factor
    ], dtype=np.float64)


@dataclass(frozen=True)
class FrameData:
    """One video frame as seen by the tracking system."""
    timestamp: TimeValue
    blobs: Tuple[Blob, ...]
    camera: CameraParams


def make_frame_data(record: MeasurementRecord, camera: CameraParams) -> FrameData:
    return FrameData(timestamp=record.timestamp, blobs=record.blobs, camera=camera)


RansacResult = Tuple[bool, Optional[np.ndarray], Optional[np.ndarray]]


class TrackedTarget(Protocol):
    def has_pose_estimate(self) -> bool:
        ...

    def get_pose_estimate(self) -> RigidBodyPose:
        ...

    def estimate_pose_ransac(
        self,
        camera: CameraParams,
        blobs: Optional[Sequence[Blob]] = None
    ) -> RansacResult:
        ...


class TrackedBody(Protocol):
    def get_target(self, target_id: int) -> TrackedTarget:
        ...

    def has_pose_estimate(self) -> bool:
        ...


class TrackingSystem(Protocol):
    def update_from_frame(self, frame: FrameData) -> List[int]:
        ...

    def get_body(self, body_id: int) -> TrackedBody:
        ...


TrackingSystemFactory = Callable[[TrackerParams], TrackingSystem]


def _block_noise(q: float, dt: float) -> np.ndarray:
    """Continuous white-noise acceleration for one axis: [pos, vel] block."""
    return q * np.array([
        [dt ** 3 / 3.0, dt ** 2 / 2.0],
        [dt ** 2 / 2.0, dt]
    ])


class BeaconTarget:
    """
    Beacon target with an EKF pose estimate.

    Error state (12): position, orientation (rotation vector, camera frame),
    velocity, angular velocity.
    """

    STATE_SIZE = 12

    def __init__(self, target_id: int, pattern: BeaconPattern, params: TrackerParams):
        self.target_id = target_id
        self.pattern = pattern
        self.params = params
        self.ransac = RansacPnPEstimator(params.ransac)

        self._position = np.zeros(3)
        self._orientation = Rotation.identity()
        self._velocity = np.zeros(3)
        self._angular_velocity = np.zeros(3)
        self._covariance = np.eye(self.STATE_SIZE)

        self._tracking = False
        self._last_timestamp: Optional[TimeValue] = None
        self._last_blobs: Tuple[Blob, ...] = ()
        self._last_rms_error = 0.0
        self._last_used_beacons = 0

        # Tracking statistics
        self.lost_frames = 0
        self.acquisitions = 0
        self.updates = 0

    # Interface used by the harness

    def has_pose_estimate(self) -> bool:
        return self._tracking

    def get_pose_estimate(self) -> RigidBodyPose:
        pose = RigidBodyPose.from_quaternion(
            self._position,
            rotation_to_quat(self._orientation),
            timestamp=self._last_timestamp.timestamp_us if self._last_timestamp is not None else 0,
            rms_error=self._last_rms_error,
            observed_beacons=self._last_used_beacons
        )
        pose.valid = self._tracking
        return pose

    def estimate_pose_ransac(
        self,
        camera: CameraParams,
        blobs: Optional[Sequence[Blob]] = None
    ) -> RansacResult:
        """
        Pose from this frame's blobs alone, blob k matched to beacon k.

        Args:
            camera: Camera parameters
            blobs: Blob measurements (default: those of the last frame)

        Returns:
            (success, position, quaternion [w, x, y, z])
        """
        blobs = tuple(self._last_blobs if blobs is None else blobs)
        count = min(len(blobs), self.pattern.num_beacons)
        if count < 4:
            return False, None, None

        image_points = np.array([b.location for b in blobs[:count]], dtype=np.float64)
        result = self.ransac.estimate(image_points, self.pattern.beacon_positions[:count], camera)
        if result is None:
            return False, None, None

        R, t, _, _ = result
        return True, t, rotation_to_quat(Rotation.from_matrix(R))

    # Filter

    def reset(self) -> None:
        self._tracking = False
        self._velocity = np.zeros(3)
        self._angular_velocity = np.zeros(3)
        self.lost_frames = 0

    def update(self, frame: FrameData) -> bool:
        """
        Process one frame.

        Returns:
            True if the frame's blobs changed the estimate
        """
        self._last_blobs = tuple(frame.blobs)

        if not self._tracking:
            used = self._acquire(frame)
        else:
            dt = frame.timestamp - self._last_timestamp if self._last_timestamp is not None else 0.0
            if dt > 0:
                self._predict(dt)
            used = self._correct(frame)
            if not used:
                self.lost_frames += 1
                if self.lost_frames > self.params.max_lost_frames:
                    self.reset()
            else:
                self.lost_frames = 0

        if self._tracking and not self._state_is_sane():
            self.reset()
            used = False

        self._last_timestamp = frame.timestamp
        return used

    def _acquire(self, frame: FrameData) -> bool:
        success, position, quaternion = self.estimate_pose_ransac(frame.camera, frame.blobs)
        if not success:
            return False

        p = self.params
        self._position = np.asarray(position, dtype=np.float64).copy()
        self._orientation = Rotation.from_quat([quaternion[1], quaternion[2], quaternion[3], quaternion[0]])
        self._velocity = np.zeros(3)
        self._angular_velocity = np.zeros(3)
        self._covariance = np.diag(
            [p.initial_position_variance] * 3
            + [p.initial_orientation_variance] * 3
            + [p.initial_velocity_variance] * 3
            + [p.initial_angular_velocity_variance] * 3
        )
        self._tracking = True
        self.lost_frames = 0
        self.acquisitions += 1
        self._last_used_beacons = min(len(frame.blobs), self.pattern.num_beacons)
        return True

    def _predict(self, dt: float) -> None:
        self._position = self._position + self._velocity * dt
        self._orientation = Rotation.from_rotvec(self._angular_velocity * dt) * self._orientation

        F = np.eye(self.STATE_SIZE)
        F[0:3, 6:9] = np.eye(3) * dt
        F[3:6, 9:12] = np.eye(3) * dt

        Q = np.zeros((self.STATE_SIZE, self.STATE_SIZE))
        noise = self.params.process_noise_autocorrelation
        for axis in range(3):
            for offset, q in ((0, noise[axis]), (3, noise[3 + axis])):
                i = offset + axis
                j = 6 + offset + axis
                block = _block_noise(q, dt)
                Q[i, i] += block[0, 0]
                Q[i, j] += block[0, 1]
                Q[j, i] += block[1, 0]
                Q[j, j] += block[1, 1]

        self._covariance = F @ self._covariance @ F.T + Q

    def _associate(self, frame: FrameData) -> Tuple[np.ndarray, np.ndarray]:
        """Match blobs to predicted beacon projections (Hungarian assignment)."""
        if not frame.blobs:
            return np.zeros(0, dtype=int), np.zeros((0, 2))

        R = self._orientation.as_matrix()
        beacons = self.pattern.beacon_positions
        visible = np.flatnonzero(points_in_front(beacons, R, self._position))
        if len(visible) == 0:
            return np.zeros(0, dtype=int), np.zeros((0, 2))

        predicted = project_points(frame.camera, beacons[visible], R, self._position)
        observed = np.array([b.location for b in frame.blobs], dtype=np.float64)

        cost = cdist(observed, predicted)
        rows, cols = linear_sum_assignment(cost)
        keep = cost[rows, cols] <= self.params.association_gate_px

        return visible[cols[keep]], observed[rows[keep]]

    def _measurement_model(
        self,
        camera: CameraParams,
        beacon_idx: np.ndarray,
        position: np.ndarray,
        orientation: Rotation
    ) -> np.ndarray:
        return project_points(
            camera, self.pattern.beacon_positions[beacon_idx], orientation.as_matrix(), position
        ).reshape(-1)

    def _correct(self, frame: FrameData) -> bool:
        beacon_idx, observed = self._associate(frame)
        if len(beacon_idx) < self.params.min_update_beacons:
            return False

        camera = frame.camera
        predicted = self._measurement_model(camera, beacon_idx, self._position, self._orientation)

        # Numeric Jacobian over position and orientation error
        eps = 1e-6
        H = np.zeros((predicted.size, self.STATE_SIZE))
        for k in range(3):
            delta = np.zeros(3)
            delta[k] = eps
            H[:, k] = (self._measurement_model(
                camera, beacon_idx, self._position + delta, self._orientation
            ) - predicted) / eps
            H[:, 3 + k] = (self._measurement_model(
                camera, beacon_idx, self._position, Rotation.from_rotvec(delta) * self._orientation
            ) - predicted) / eps

        depths = (self._orientation.as_matrix() @ self.pattern.beacon_positions[beacon_idx].T).T[:, 2] \
            + self._position[2]
        pixel_per_meter = camera.focal_length / np.maximum(depths, 1e-3)
        variances = (
            self.params.measurement_variance_scale_factor * self.params.base_measurement_variance
            + self.params.beacon_process_noise * pixel_per_meter ** 2
        )
        # Keep the innovation covariance invertible with a zero scale factor
        variances = np.maximum(variances, 1e-9)
        R_meas = np.diag(np.repeat(variances, 2))

        residual = observed.reshape(-1) - predicted
        S = H @ self._covariance @ H.T + R_meas
        K = np.linalg.solve(S, H @ self._covariance).T
        dx = K @ residual

        I_KH = np.eye(self.STATE_SIZE) - K @ H
        self._covariance = I_KH @ self._covariance @ I_KH.T + K @ R_meas @ K.T

        self._position = self._position + dx[0:3]
        self._orientation = Rotation.from_rotvec(dx[3:6]) * self._orientation
        self._velocity = self._velocity + dx[6:9]
        self._angular_velocity = self._angular_velocity + dx[9:12]

        corrected = self._measurement_model(camera, beacon_idx, self._position, self._orientation)
        errors = np.linalg.norm((observed.reshape(-1) - corrected).reshape(-1, 2), axis=1)
        self._last_rms_error = float(np.sqrt(np.mean(errors ** 2)))
        self._last_used_beacons = int(len(beacon_idx))
        self.updates += 1
        return True

    def _state_is_sane(self) -> bool:
        return bool(
            np.all(np.isfinite(self._position))
            and np.all(np.isfinite(self._covariance))
            and self._position[2] > 0.0
        )

    def get_status(self) -> Dict[str, Any]:
        return {
            "tracking": self._tracking,
            "lost_frames": self.lost_frames,
            "acquisitions": self.acquisitions,
            "updates": self.updates,
            "rms_error": self._last_rms_error,
        }


class BeaconBody:
    """Tracked body holding its targets."""

    def __init__(self, body_id: int, targets: Dict[int, BeaconTarget]):
        self.body_id = body_id
        self.targets = targets

    def get_target(self, target_id: int) -> BeaconTarget:
        try:
            return self.targets[target_id]
        except KeyError:
            raise KeyError(f"Body {self.body_id} has no target {target_id}") from None

    def has_pose_estimate(self) -> bool:
        return any(t.has_pose_estimate() for t in self.targets.values())


class PoseTrackingSystem:
    """
    Production tracking system: bodies with beacon targets.

    Usage:
        system = build_tracking_system(params)
        body_ids = system.update_from_frame(make_frame_data(record, camera))
        target = system.get_body(0).get_target(0)
        if target.has_pose_estimate():
            pose = target.get_pose_estimate()
    """

    def __init__(self, params: TrackerParams, patterns: Optional[List[BeaconPattern]] = None):
        params.validate()
        self.params = params
        self.patterns = patterns or [DEFAULT_PATTERN]
        self.bodies: Dict[int, BeaconBody] = {
            body_id: BeaconBody(body_id, {0: BeaconTarget(0, pattern, params)})
            for body_id, pattern in enumerate(self.patterns)
        }
        self.frames_processed = 0

    def update_from_frame(self, frame: FrameData) -> List[int]:
        """
        Feed one frame to every body.

        Returns:
            IDs of bodies whose estimate used this frame's blobs
        """
        updated = []
        for body_id, body in self.bodies.items():
            used = False
            for target in body.targets.values():
                used = target.update(frame) or used
            if used:
                updated.append(body_id)
        self.frames_processed += 1
        return updated

    def get_body(self, body_id: int) -> BeaconBody:
        try:
            return self.bodies[body_id]
        except KeyError:
            raise KeyError(f"No body with id {body_id}") from None

    def get_tracking_status(self) -> Dict[int, Dict[str, Any]]:
        return {
            body_id: {target_id: t.get_status() for target_id, t in body.targets.items()}
            for body_id, body in self.bodies.items()
        }


def build_tracking_system(
    params: TrackerParams,
    pattern: Optional[BeaconPattern] = None
) -> PoseTrackingSystem:
    """Build a fresh tracking system with a single body."""
    return PoseTrackingSystem(params, patterns=[pattern or DEFAULT_PATTERN])
