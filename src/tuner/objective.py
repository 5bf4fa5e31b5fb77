"""
Objective for tuning the tracker's noise parameters.

Each evaluation builds a fresh tracking system from the candidate parameter
vector, replays the whole recording through it and scores the poses against
ground truth with a pluggable cost function.

Cost function contract: ``cost(records, results) -> float``, called with
the replayed records and one FrameResult per record in the same order. It
must be deterministic, side-effect free and return a value >= 0.
"""

import math
import numpy as np
import cv2 as cv
from typing import Optional, Callable, List, Sequence
from dataclasses import dataclass

from .algorithms import FrameResult, FullTrackerRunner
from .geo import CameraParams
from .measurements import MeasurementRecord
from .optimizer import OptimizerConfig, OptimizationResult, minimize_newuoa
from .rigid import BeaconPattern, rotation_error_deg
from .tracking import (
    TrackerParams, TrackingSystemFactory, build_tracking_system,
    params_from_vector, PARAMETER_NAMES
)


# positional noise, rotational noise, beacon process noise, measurement variance scale
DEFAULT_PARAMETERS = np.array([4.14e-6, 1e-2, 0.0, 5e-2])

# Returned instead of raising when a candidate cannot be scored
FAILURE_PENALTY = 1e6

CostFunction = Callable[[Sequence[MeasurementRecord], Sequence[FrameResult]], float]


@dataclass
class PoseErrorCost:
    """
    Mean per-frame pose error against ground truth.

    Per frame: position error (m) + rotation_weight * rotation error (rad);
    frames without a pose cost missing_pose_penalty.
    """
    rotation_weight: float = 0.1  # meters per radian
    missing_pose_penalty: float = 0.1

    def __call__(self, records: Sequence[MeasurementRecord], results: Sequence[FrameResult]) -> float:
        if len(records) != len(results):
            raise ValueError(f"{len(records)} records but {len(results)} results")
        if not records:
            return 0.0

        total = 0.0
        for record, result in zip(records, results):
            if not result.has_pose or result.pose is None:
                total += self.missing_pose_penalty
                continue
            position_error = float(np.linalg.norm(result.pose.position - record.position))
            rotation_error = math.radians(rotation_error_deg(result.pose.quaternion, record.quaternion))
            total += position_error + self.rotation_weight * rotation_error

        return total / len(records)


pose_error_cost = PoseErrorCost()


def is_physical(vector: np.ndarray) -> bool:
    """All noise parameters finite and non-negative."""
    return bool(np.all(np.isfinite(vector)) and np.all(vector >= 0.0))


class ObjectiveEvaluator:
    """
    Score a noise parameter vector by replaying a recording.

    Usage:
        evaluator = ObjectiveEvaluator(records, camera)
        cost = evaluator(np.array([4.14e-6, 1e-2, 0.0, 5e-2]))
    """

    def __init__(
        self,
        records: Sequence[MeasurementRecord],
        camera: CameraParams,
        build_system: Optional[TrackingSystemFactory] = None,
        cost_function: Optional[CostFunction] = None,
        base_params: Optional[TrackerParams] = None,
        pattern: Optional[BeaconPattern] = None
    ):
        """
        Args:
            records: Recording to replay (never modified)
            camera: Camera parameters passed with every frame
            build_system: Tracking system factory (default: production system)
            cost_function: Scoring of the replay (default: pose_error_cost)
            base_params: Tracker settings the vector does not cover
            pattern: Beacon pattern for the default factory
        """
        self.records = tuple(records)
        self.camera = camera
        self.pattern = pattern
        self.build_system = build_system or self._build_default
        self.cost_function = cost_function or pose_error_cost
        self.base_params = base_params or TrackerParams()
        self.evaluations = 0
        self.failures = 0

    def _build_default(self, params: TrackerParams):
        return build_tracking_system(params, self.pattern)

    def replay(self, vector: Sequence[float]) -> List[FrameResult]:
        """Run the full tracker over the recording with these parameters."""
        params = params_from_vector(self.base_params, vector)
        system = self.build_system(params)
        runner = FullTrackerRunner(self.camera, system)
        return [runner.step(record) for record in self.records]

    def __call__(self, vector: Sequence[float]) -> float:
        self.evaluations += 1
        vector = np.asarray(vector, dtype=np.float64).reshape(-1)

        if vector.size != len(PARAMETER_NAMES) or not is_physical(vector):
            self.failures += 1
            return FAILURE_PENALTY

        try:
            results = self.replay(vector)
            cost = float(self.cost_function(self.records, results))
        except (ValueError, ArithmeticError, np.linalg.LinAlgError, cv.error):
            self.failures += 1
            return FAILURE_PENALTY

        if not math.isfinite(cost) or cost < 0.0:
            self.failures += 1
            return FAILURE_PENALTY
        return cost


def run_optimizer(
    records: Sequence[MeasurementRecord],
    camera: CameraParams,
    config: Optional[OptimizerConfig] = None,
    x0: Optional[Sequence[float]] = None,
    evaluator: Optional[ObjectiveEvaluator] = None
) -> OptimizationResult:
    """
    Tune the noise parameters against a recording.

    Args:
        records: Loaded recording
        camera: Camera parameters
        config: Optimizer settings (default npt=2n, radii 1e-4..1e-8, 10 evaluations)
        x0: Starting parameters (default DEFAULT_PARAMETERS)
        evaluator: Objective to use (default ObjectiveEvaluator(records, camera))

    Returns:
        OptimizationResult; x0 is not modified
    """
    evaluator = evaluator or ObjectiveEvaluator(records, camera)
    start = DEFAULT_PARAMETERS if x0 is None else np.asarray(x0, dtype=np.float64)
    return minimize_newuoa(evaluator, start, config or OptimizerConfig())
