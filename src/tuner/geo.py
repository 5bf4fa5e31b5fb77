"""
Camera model for the tracking camera.

Provides functionality to:
- Hold camera intrinsic parameters and lens distortion
- Load calibration data from JSON files
- Project body-frame points into the image (OpenCV conventions)
- Build the distortion-free variant used for pre-undistorted blob locations
"""

import json
import numpy as np
import cv2 as cv
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, replace


@dataclass
class CameraParams:
    """Camera intrinsic parameters; the camera frame is the tracking frame."""
    camera_id: str
    intrinsic_matrix: np.ndarray  # 3x3
    distortion_coeffs: np.ndarray  # 5+ coefficients
    resolution: Tuple[int, int] = (640, 480)  # width, height

    @property
    def fx(self) -> float:
        return self.intrinsic_matrix[0, 0]

    @property
    def fy(self) -> float:
        return self.intrinsic_matrix[1, 1]

    @property
    def cx(self) -> float:
        return self.intrinsic_matrix[0, 2]

    @property
    def cy(self) -> float:
        return self.intrinsic_matrix[1, 2]

    @property
    def focal_length(self) -> float:
        return 0.5 * (self.fx + self.fy)

    @property
    def is_distorted(self) -> bool:
        return bool(np.any(np.abs(self.distortion_coeffs) > 0.0))

    def undistorted_variant(self) -> "CameraParams":
        """Same intrinsics with zero distortion, for pre-undistorted blobs."""
        return replace(
            self,
            intrinsic_matrix=self.intrinsic_matrix.copy(),
            distortion_coeffs=np.zeros_like(self.distortion_coeffs)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "camera_id": self.camera_id,
            "camera_matrix": {"matrix": self.intrinsic_matrix.tolist()},
            "distortion_coefficients": {"array": self.distortion_coeffs.tolist()},
            "resolution": {"width": self.resolution[0], "height": self.resolution[1]},
        }


class CalibrationLoader:
    """
    Load camera calibration data from JSON files.

    Accepts either an explicit 3x3 ``matrix`` or ``fx``/``fy``/``cx``/``cy``
    entries, and either an ``array`` of distortion coefficients or named
    ``k1``/``k2``/``p1``/``p2``/``k3`` entries.
    """

    @staticmethod
    def load(filepath: str) -> CameraParams:
        """
        Load a single camera calibration.

        Args:
            filepath: Path to the calibration JSON

        Returns:
            CameraParams
        """
        path = Path(filepath)
        if not path.exists():
            raise FileNotFoundError(f"Calibration file not found: {filepath}")

        with open(path, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid calibration JSON in {filepath}: {e}") from e

        if isinstance(data, list):
            if not data:
                raise ValueError(f"Calibration file {filepath} holds no cameras")
            data = data[0]
        if not isinstance(data, dict):
            raise ValueError(f"Calibration file {filepath} must hold a JSON object")

        return CalibrationLoader.to_camera_params(data)

    @staticmethod
    def to_camera_params(calibration: Dict[str, Any]) -> CameraParams:
        """
        Convert calibration JSON to CameraParams object.

        Args:
            calibration: Calibration dict

        Returns:
            CameraParams with intrinsic matrix and distortion
        """
        res = calibration.get("resolution", {"width": 640, "height": 480})
        resolution = (int(res.get("width", 640)), int(res.get("height", 480)))

        cam_matrix = calibration.get("camera_matrix", {})
        if "matrix" in cam_matrix:
            K = np.array(cam_matrix["matrix"], dtype=np.float64)
            if K.shape != (3, 3):
                raise ValueError(f"camera_matrix.matrix must be 3x3, got {K.shape}")
        else:
            fx = cam_matrix.get("fx", 700.0)
            fy = cam_matrix.get("fy", fx)
            cx = cam_matrix.get("cx", resolution[0] / 2)
            cy = cam_matrix.get("cy", resolution[1] / 2)
            K = np.array([
                [fx, 0, cx],
                [0, fy, cy],
                [0, 0, 1]
            ], dtype=np.float64)

        dist_data = calibration.get("distortion_coefficients", {})
        if "array" in dist_data:
            dist = np.array(dist_data["array"], dtype=np.float64).reshape(-1)
        else:
            k1 = dist_data.get("k1", 0.0)
            k2 = dist_data.get("k2", 0.0)
            p1 = dist_data.get("p1", 0.0)
            p2 = dist_data.get("p2", 0.0)
            k3 = dist_data.get("k3", 0.0)
            dist = np.array([k1, k2, p1, p2, k3], dtype=np.float64)

        return CameraParams(
            camera_id=calibration.get("camera_id", "camera"),
            intrinsic_matrix=K,
            distortion_coeffs=dist,
            resolution=resolution
        )


def create_default_camera(
    resolution: Tuple[int, int] = (640, 480),
    focal_length: float = 700.0,
    distortion: Optional[List[float]] = None
) -> CameraParams:
    """
    Create a pinhole camera matching the recording resolution.

    Args:
        resolution: Image resolution (width, height)
        focal_length: Focal length in pixels
        distortion: Optional distortion coefficients (default none)

    Returns:
        CameraParams centered on the image
    """
    width, height = resolution
    K = np.array([
        [focal_length, 0, width / 2],
        [0, focal_length, height / 2],
        [0, 0, 1]
    ], dtype=np.float64)
    dist = np.array(distortion if distortion is not None else [0.0] * 5, dtype=np.float64)

    return CameraParams(
        camera_id="default",
        intrinsic_matrix=K,
        distortion_coeffs=dist,
        resolution=resolution
    )


def project_points(
    camera: CameraParams,
    points_body: np.ndarray,
    rotation: np.ndarray,
    translation: np.ndarray
) -> np.ndarray:
    """
    Project body-frame points given the body pose in the camera frame.

    Args:
        camera: Camera parameters
        points_body: Nx3 points in the body frame
        rotation: 3x3 body-to-camera rotation
        translation: body origin in the camera frame

    Returns:
        Nx2 pixel coordinates
    """
    points = np.asarray(points_body, dtype=np.float64).reshape(-1, 3)
    if points.shape[0] == 0:
        return np.zeros((0, 2), dtype=np.float64)

    rvec, _ = cv.Rodrigues(np.asarray(rotation, dtype=np.float64))
    projected, _ = cv.projectPoints(
        points,
        rvec,
        np.asarray(translation, dtype=np.float64).reshape(3, 1),
        camera.intrinsic_matrix,
        camera.distortion_coeffs
    )
    return projected.reshape(-1, 2)


def points_in_front(points_body: np.ndarray, rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    """Boolean mask of body points with positive depth in the camera frame."""
    points = np.asarray(points_body, dtype=np.float64).reshape(-1, 3)
    depth = (np.asarray(rotation) @ points.T).T[:, 2] + float(np.asarray(translation).reshape(3)[2])
    return depth > 0.0
