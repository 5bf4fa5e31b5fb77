"""Synthetic recordings for exercising the harness without real captures.

A simulated body moves in front of a virtual camera; each frame's beacons
are projected with OpenCV, optionally jittered and dropped, and packed into
MeasurementRecords with the true pose as ground truth.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
from scipy.spatial.transform import Rotation

from .geo import CameraParams, create_default_camera, project_points, points_in_front
from .measurements import Blob, MeasurementRecord, TimeValue
from .rigid import BeaconPattern, DEFAULT_PATTERN, rotation_to_quat


TRAJECTORIES = ("static", "linear", "circle")


def _sample_gaussian_pixel_noise(
    rng: np.random.Generator,
    noise_px: float,
    count: int,
) -> np.ndarray:
    if noise_px <= 0.0:
        return np.zeros((count, 2), dtype=np.float64)
    return rng.normal(0.0, noise_px, size=(count, 2))


class SimulatedTrajectory:
    """Deterministic body trajectory in the camera frame."""

    def __init__(self, seed: int = 0, trajectory: str = "static", fps: float = 60.0):
        self.seed = int(seed)
        self.trajectory = str(trajectory)
        self.fps = float(fps)
        self._rng = np.random.default_rng(self.seed)

        if self.fps <= 0.0:
            raise ValueError("fps must be > 0")
        if self.trajectory not in TRAJECTORIES:
            raise ValueError(
                f"Unknown trajectory {self.trajectory!r}; expected one of: {', '.join(TRAJECTORIES)}"
            )

        # Small deterministic per-seed offsets so simulations can vary by seed.
        self._base_pos = np.array(
            [
                float(self._rng.uniform(-0.02, 0.02)),
                float(self._rng.uniform(-0.02, 0.02)),
                0.6 + float(self._rng.uniform(-0.05, 0.05)),
            ],
            dtype=np.float64,
        )
        self._base_yaw = float(self._rng.uniform(-0.2, 0.2))
        self._base_pitch = float(self._rng.uniform(-0.1, 0.1))

    def pose(self, frame_index: int) -> tuple[np.ndarray, Rotation]:
        """Position and orientation of the body at a frame."""
        t_sec = float(frame_index) / self.fps

        if self.trajectory == "static":
            pos = self._base_pos.copy()
            yaw = self._base_yaw
        elif self.trajectory == "linear":
            vx = 0.05  # m/s
            pos = self._base_pos + np.array([vx * t_sec, 0.0, 0.0], dtype=np.float64)
            yaw = self._base_yaw + 0.1 * t_sec
        else:  # self.trajectory == "circle"
            radius = 0.05
            omega = 0.5  # rad/s
            pos = self._base_pos + np.array(
                [radius * np.cos(omega * t_sec) - radius, radius * np.sin(omega * t_sec), 0.0],
                dtype=np.float64,
            )
            yaw = self._base_yaw + 0.3 * np.sin(omega * t_sec)

        rotation = Rotation.from_euler("yx", [yaw, self._base_pitch])
        return pos, rotation


def generate_records(
    *,
    frames: int,
    fps: float = 60.0,
    noise_px: float = 0.0,
    frame_dropout: float = 0.0,
    trajectory: str = "static",
    seed: int = 0,
    camera: Optional[CameraParams] = None,
    pattern: Optional[BeaconPattern] = None,
    start_time: Optional[TimeValue] = None,
    blob_size: float = 4.0,
) -> list[MeasurementRecord]:
    """Build a synthetic recording.

    Blobs are listed in beacon order, so blob k is beacon k. A dropped frame
    keeps its ground truth but carries no blobs.
    """
    if frames <= 0:
        raise ValueError("frames must be > 0")
    if noise_px < 0.0:
        raise ValueError("noise_px must be >= 0")
    if not (0.0 <= frame_dropout <= 1.0):
        raise ValueError("frame_dropout must be in [0, 1]")

    camera = camera or create_default_camera()
    pattern = pattern or DEFAULT_PATTERN
    start = start_time or TimeValue(0, 0)
    body = SimulatedTrajectory(seed=seed, trajectory=trajectory, fps=fps)
    rng = np.random.default_rng(int(seed) + 1)
    dt_us = int(round(1_000_000.0 / float(fps)))

    records: list[MeasurementRecord] = []
    for i in range(int(frames)):
        timestamp = TimeValue(start.seconds, start.microseconds + i * dt_us).normalized()
        position, rotation = body.pose(i)
        R = rotation.as_matrix()

        blobs: tuple[Blob, ...] = ()
        dropped = frame_dropout > 0.0 and float(rng.random()) < frame_dropout
        if not dropped and np.all(points_in_front(pattern.beacon_positions, R, position)):
            pixels = project_points(camera, pattern.beacon_positions, R, position)
            pixels = pixels + _sample_gaussian_pixel_noise(rng, float(noise_px), len(pixels))
            blobs = tuple(
                Blob(float(x), float(y), blob_size, camera.resolution) for x, y in pixels
            )

        records.append(MeasurementRecord(
            timestamp=timestamp,
            position=position,
            quaternion=rotation_to_quat(rotation),
            blobs=blobs,
            line_number=i + 2,
        ))

    return records
