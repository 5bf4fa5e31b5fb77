"""
One-euro smoothing of tracked poses.

A one-euro filter is a first-order low-pass filter whose cutoff frequency
rises with the (itself low-passed) speed of the signal: slow motion is
smoothed hard to remove jitter, fast motion passes with little lag.

Position is filtered as a 3-vector. Orientation is filtered either on the
rotation manifold ("slerp", the default: derivative from the shortest-path
rotation difference, smoothing by slerp, so q and -q are one orientation)
or component-wise on the 4-vector ("componentwise", renormalized after each
step). Both modes bring each sample onto the hemisphere of the previous one.
"""

import math
import numpy as np
from typing import Optional
from dataclasses import dataclass
from scipy.spatial.transform import Rotation

from .rigid import (
    RigidBodyPose, quat_to_rotation, rotation_to_quat,
    normalize_quaternion, align_hemisphere
)


ORIENTATION_MODES = ("slerp", "componentwise")


@dataclass
class OneEuroParams:
    """Tuning of a one-euro filter (cutoffs in Hz)."""
    min_cutoff: float = 1.0
    beta: float = 0.5
    derivative_cutoff: float = 1.0

    def __post_init__(self):
        if self.min_cutoff <= 0 or self.derivative_cutoff <= 0:
            raise ValueError("one-euro cutoffs must be > 0")
        if self.beta < 0:
            raise ValueError("one-euro beta must be >= 0")


def clamp_dt(dt: float) -> float:
    """Non-positive time steps fall back to 1 second."""
    dt = float(dt)
    if not dt > 0.0:
        return 1.0
    return dt


def smoothing_alpha(cutoff: float, dt: float) -> float:
    tau = 1.0 / (2.0 * math.pi * cutoff)
    return 1.0 / (1.0 + tau / dt)


class OneEuroFilter:
    """One-euro filter over fixed-size vectors."""

    def __init__(self, params: Optional[OneEuroParams] = None):
        self.params = params or OneEuroParams()
        self.reset()

    def reset(self) -> None:
        self._raw: Optional[np.ndarray] = None
        self._state: Optional[np.ndarray] = None
        self._derivative: Optional[np.ndarray] = None

    @property
    def has_state(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> Optional[np.ndarray]:
        return None if self._state is None else self._state.copy()

    @property
    def raw(self) -> Optional[np.ndarray]:
        return None if self._raw is None else self._raw.copy()

    def filter(self, dt: float, value) -> np.ndarray:
        dt = clamp_dt(dt)
        x = np.array(value, dtype=np.float64)

        if self._state is None:
            self._state = x.copy()
            self._derivative = np.zeros_like(x)
            self._raw = x
            return self._state.copy()

        dx = (x - self._state) / dt
        a_d = smoothing_alpha(self.params.derivative_cutoff, dt)
        self._derivative = a_d * dx + (1.0 - a_d) * self._derivative

        cutoff = self.params.min_cutoff + self.params.beta * float(np.linalg.norm(self._derivative))
        a = smoothing_alpha(cutoff, dt)
        self._state = a * x + (1.0 - a) * self._state
        self._raw = x
        return self._state.copy()


class OneEuroQuaternionFilter:
    """One-euro filter over unit quaternions [w, x, y, z]."""

    def __init__(self, params: Optional[OneEuroParams] = None, mode: str = "slerp"):
        if mode not in ORIENTATION_MODES:
            raise ValueError(f"Unknown orientation mode {mode!r}; expected one of: {', '.join(ORIENTATION_MODES)}")
        self.params = params or OneEuroParams()
        self.mode = mode
        self.reset()

    def reset(self) -> None:
        self._raw: Optional[np.ndarray] = None
        self._state: Optional[np.ndarray] = None
        self._derivative: Optional[np.ndarray] = None

    @property
    def has_state(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> Optional[np.ndarray]:
        return None if self._state is None else self._state.copy()

    def filter(self, dt: float, quaternion) -> np.ndarray:
        dt = clamp_dt(dt)
        q = normalize_quaternion(quaternion)
        if self._raw is not None:
            q = align_hemisphere(q, self._raw)

        if self._state is None:
            self._state = q.copy()
            self._derivative = np.zeros(3 if self.mode == "slerp" else 4)
            self._raw = q
            return self._state.copy()

        if self.mode == "slerp":
            self._state = self._filter_slerp(dt, q)
        else:
            self._state = self._filter_componentwise(dt, q)
        self._raw = q
        return self._state.copy()

    def _cutoff_alpha(self, dt: float, rate: np.ndarray) -> float:
        a_d = smoothing_alpha(self.params.derivative_cutoff, dt)
        self._derivative = a_d * rate + (1.0 - a_d) * self._derivative
        cutoff = self.params.min_cutoff + self.params.beta * float(np.linalg.norm(self._derivative))
        return smoothing_alpha(cutoff, dt)

    def _filter_slerp(self, dt: float, q: np.ndarray) -> np.ndarray:
        previous = quat_to_rotation(self._state)
        # Shortest-path rotation from the filtered state to the sample
        delta = (quat_to_rotation(q) * previous.inv()).as_rotvec()
        a = self._cutoff_alpha(dt, delta / dt)
        smoothed = Rotation.from_rotvec(a * delta) * previous
        return align_hemisphere(rotation_to_quat(smoothed), q)

    def _filter_componentwise(self, dt: float, q: np.ndarray) -> np.ndarray:
        state = align_hemisphere(self._state, q)
        a = self._cutoff_alpha(dt, (q - state) / dt)
        return normalize_quaternion(a * q + (1.0 - a) * state)


class PoseSmoother:
    """
    Pair of one-euro filters over position and orientation.

    Usage:
        smoother = PoseSmoother()
        smoother.filter(dt, position, quaternion)
        pose = smoother.pose
    """

    def __init__(
        self,
        position_params: Optional[OneEuroParams] = None,
        orientation_params: Optional[OneEuroParams] = None,
        orientation_mode: str = "slerp"
    ):
        self.position_filter = OneEuroFilter(position_params)
        self.orientation_filter = OneEuroQuaternionFilter(orientation_params, mode=orientation_mode)

    def reset(self) -> None:
        self.position_filter.reset()
        self.orientation_filter.reset()

    def filter(self, dt: float, position, quaternion) -> None:
        """
        Advance both filters.

        Args:
            dt: Seconds since the previous sample; <= 0 is treated as 1
            position: 3D position
            quaternion: Orientation [w, x, y, z]
        """
        dt = clamp_dt(dt)
        self.position_filter.filter(dt, np.asarray(position, dtype=np.float64).reshape(3))
        self.orientation_filter.filter(dt, quaternion)

    @property
    def has_state(self) -> bool:
        return self.position_filter.has_state and self.orientation_filter.has_state

    @property
    def position(self) -> np.ndarray:
        state = self.position_filter.state
        return np.zeros(3) if state is None else state

    @property
    def orientation(self) -> np.ndarray:
        state = self.orientation_filter.state
        return np.array([1.0, 0.0, 0.0, 0.0]) if state is None else state

    @property
    def pose(self) -> RigidBodyPose:
        return RigidBodyPose.from_quaternion(self.position, self.orientation)

    @property
    def transform(self) -> np.ndarray:
        """4x4 transform: rotation applied first, then translation."""
        return self.pose.as_matrix()
