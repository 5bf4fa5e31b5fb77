"""
Rigid body helpers for pose estimation from blob measurements.

Provides functionality to:
- Describe the beacon (LED) layout of a tracked body
- Represent body poses in the camera frame
- Estimate a pose from 2D-3D correspondences with RANSAC PnP
- Convert between [w, x, y, z] quaternions and rotation matrices
"""

import json
import numpy as np
import cv2 as cv
from pathlib import Path
from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass
from scipy.spatial.transform import Rotation

from .geo import CameraParams, project_points


def quat_to_rotation(quat_wxyz) -> Rotation:
    """[w, x, y, z] quaternion to scipy Rotation (normalizes)."""
    q = np.asarray(quat_wxyz, dtype=np.float64).reshape(4)
    return Rotation.from_quat([q[1], q[2], q[3], q[0]])


def rotation_to_quat(rotation: Rotation) -> np.ndarray:
    """scipy Rotation to [w, x, y, z] quaternion."""
    quat = rotation.as_quat()  # [x, y, z, w]
    return np.array([quat[3], quat[0], quat[1], quat[2]])


def normalize_quaternion(quat_wxyz) -> np.ndarray:
    q = np.asarray(quat_wxyz, dtype=np.float64).reshape(4)
    norm = np.linalg.norm(q)
    if norm <= 0.0 or not np.isfinite(norm):
        return np.array([1.0, 0.0, 0.0, 0.0])
    return q / norm


def align_hemisphere(quat_wxyz, reference_wxyz) -> np.ndarray:
    """Return ``quat`` or ``-quat``, whichever is on the reference's hemisphere."""
    q = np.asarray(quat_wxyz, dtype=np.float64).reshape(4)
    if float(np.dot(q, np.asarray(reference_wxyz, dtype=np.float64).reshape(4))) < 0.0:
        return -q
    return q.copy()


def rotation_error_deg(quat_a, quat_b) -> float:
    """Angle in degrees of the rotation taking ``quat_b`` to ``quat_a``."""
    delta = quat_to_rotation(quat_a) * quat_to_rotation(quat_b).inv()
    return float(np.degrees(delta.magnitude()))


@dataclass
class BeaconPattern:
    """Known beacon layout of a tracked body."""
    name: str
    beacon_positions: np.ndarray  # Nx3 array of beacon positions in body frame

    @property
    def num_beacons(self) -> int:
        return len(self.beacon_positions)

    @classmethod
    def from_json(cls, filepath: str) -> "BeaconPattern":
        """
        Load a pattern from JSON: {"name": ..., "beacons": [[x, y, z], ...],
        "units": "m" | "mm"}.
        """
        path = Path(filepath)
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        positions = np.array(data.get("beacons", []), dtype=np.float64)
        if positions.ndim != 2 or positions.shape[1] != 3 or positions.shape[0] < 4:
            raise ValueError(f"Pattern {filepath} needs at least 4 beacons of 3 coordinates")
        if data.get("units", "m") == "mm":
            positions = positions * 0.001

        return cls(name=data.get("name", path.stem), beacon_positions=positions)


# Default body: eight beacons on a curved faceplate.
# All positions in meters
DEFAULT_PATTERN = BeaconPattern(
    name="faceplate",
    beacon_positions=np.array([
        [-60.0, 20.0, 0.0],
        [60.0, 20.0, 0.0],
        [-60.0, -20.0, 0.0],
        [60.0, -20.0, 0.0],
        [0.0, 35.0, 15.0],
        [0.0, -35.0, 15.0],
        [-35.0, 0.0, 30.0],
        [35.0, 0.0, 30.0],
    ], dtype=np.float64) * 0.001,  # Convert mm to meters
)


@dataclass
class RigidBodyPose:
    """Estimated pose of a rigid body in the camera frame."""
    timestamp: int
    position: np.ndarray  # 3D position
    rotation: np.ndarray  # 3x3 rotation matrix
    quaternion: np.ndarray  # [w, x, y, z]
    rms_error: float = 0.0
    observed_beacons: int = 0
    valid: bool = True

    @classmethod
    def from_quaternion(
        cls,
        position,
        quaternion,
        timestamp: int = 0,
        rms_error: float = 0.0,
        observed_beacons: int = 0
    ) -> "RigidBodyPose":
        quat = normalize_quaternion(quaternion)
        return cls(
            timestamp=timestamp,
            position=np.asarray(position, dtype=np.float64).reshape(3).copy(),
            rotation=quat_to_rotation(quat).as_matrix(),
            quaternion=quat,
            rms_error=rms_error,
            observed_beacons=observed_beacons,
            valid=True
        )

    def as_matrix(self) -> np.ndarray:
        """4x4 homogeneous transform: rotation first, then translation."""
        T = np.eye(4)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.position
        return T

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "position": self.position.tolist(),
            "quaternion": self.quaternion.tolist(),
            "rms_error": self.rms_error,
            "observed_beacons": self.observed_beacons,
            "valid": self.valid
        }


@dataclass
class RansacSettings:
    """Parameters for RANSAC PnP."""
    iterations: int = 100
    reprojection_error: float = 8.0  # pixels
    confidence: float = 0.99
    min_inliers: int = 4


class RansacPnPEstimator:
    """
    Estimate pose using RANSAC PnP (Perspective-n-Point).

    Outlier correspondences are rejected by consensus; the pose is then
    refined on the inliers.
    """

    def __init__(self, settings: Optional[RansacSettings] = None):
        self.settings = settings or RansacSettings()

    def estimate(
        self,
        image_points: np.ndarray,
        object_points: np.ndarray,
        camera_params: CameraParams
    ) -> Optional[Tuple[np.ndarray, np.ndarray, float, int]]:
        """
        Estimate pose from 2D-3D correspondences.

        Args:
            image_points: Nx2 pixel coordinates
            object_points: Nx3 body-frame points, same order
            camera_params: CameraParams with intrinsics

        Returns:
            (rotation_matrix, translation_vector, rms_reprojection_error,
            inlier_count), or None when no consensus pose exists
        """
        image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
        object_points = np.asarray(object_points, dtype=np.float64).reshape(-1, 3)

        if len(image_points) != len(object_points):
            raise ValueError("Point counts must match")

        if len(image_points) < max(4, self.settings.min_inliers):
            return None

        try:
            success, rvec, tvec, inliers = cv.solvePnPRansac(
                object_points,
                image_points,
                camera_params.intrinsic_matrix,
                camera_params.distortion_coeffs,
                iterationsCount=self.settings.iterations,
                reprojectionError=self.settings.reprojection_error,
                confidence=self.settings.confidence,
                flags=cv.SOLVEPNP_EPNP
            )
        except cv.error:
            return None

        if not success or inliers is None:
            return None

        inlier_idx = inliers.reshape(-1)
        if len(inlier_idx) < self.settings.min_inliers:
            return None

        # Refine on inliers
        try:
            success, rvec, tvec = cv.solvePnP(
                object_points[inlier_idx],
                image_points[inlier_idx],
                camera_params.intrinsic_matrix,
                camera_params.distortion_coeffs,
                rvec,
                tvec,
                useExtrinsicGuess=True,
                flags=cv.SOLVEPNP_ITERATIVE
            )
        except cv.error:
            return None
        if not success:
            return None

        R, _ = cv.Rodrigues(rvec)
        t = tvec.flatten()
        if t[2] <= 0.0:
            # Behind the camera
            return None

        projected = project_points(camera_params, object_points[inlier_idx], R, t)
        errors = np.linalg.norm(image_points[inlier_idx] - projected, axis=1)
        rms_error = float(np.sqrt(np.mean(errors ** 2)))

        return R, t, rms_error, int(len(inlier_idx))
