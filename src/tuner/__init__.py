"""
Offline study harness for the video tracker.

Modules:
- measurements: Recorded ground truth + blob measurements (CSV)
- geo: Camera model, calibration loading, projection
- rigid: Beacon patterns, poses, RANSAC PnP
- tracking: Tracking system interface and the EKF beacon tracker
- smoothing: One-euro pose smoothing
- optimizer: Derivative-free trust-region minimization
- objective: Replay-based objective for noise parameter tuning
- algorithms: Full tracker and RANSAC+smoothing runners
- compare: Lockstep comparison driver and console printer
- metrics: Pose error statistics
- sim: Synthetic recordings
- config: JSON harness configuration
- cli: Command line entry point
"""

from .measurements import (
    TimeValue, Blob, MeasurementRecord, LoaderConfig, LoadIssue,
    MeasurementLoader, load_measurements, validate_measurement_file,
    write_measurement_csv
)
from .geo import CameraParams, CalibrationLoader, create_default_camera, project_points
from .rigid import BeaconPattern, RigidBodyPose, RansacPnPEstimator, DEFAULT_PATTERN
from .tracking import (
    TrackerParams, FrameData, PoseTrackingSystem,
    build_tracking_system, params_from_vector
)
from .smoothing import OneEuroParams, OneEuroFilter, OneEuroQuaternionFilter, PoseSmoother
from .optimizer import OptimizerConfig, OptimizationResult, minimize_newuoa
from .objective import (
    ObjectiveEvaluator, PoseErrorCost, pose_error_cost,
    run_optimizer, FAILURE_PENALTY, DEFAULT_PARAMETERS
)
from .algorithms import FrameResult, AlgorithmRunner, FullTrackerRunner, RansacSmoothedRunner
from .compare import (
    ComparisonDriver, ComparisonFrame, ConsoleComparisonPrinter,
    build_default_runners
)
from .metrics import PoseErrorCollector, format_summary
from .sim import SimulatedTrajectory, generate_records
from .config import HarnessConfig, load_config

__all__ = [
    # Measurements
    "TimeValue",
    "Blob",
    "MeasurementRecord",
    "LoaderConfig",
    "LoadIssue",
    "MeasurementLoader",
    "load_measurements",
    "validate_measurement_file",
    "write_measurement_csv",
    # Camera
    "CameraParams",
    "CalibrationLoader",
    "create_default_camera",
    "project_points",
    # Rigid body
    "BeaconPattern",
    "RigidBodyPose",
    "RansacPnPEstimator",
    "DEFAULT_PATTERN",
    # Tracking
    "TrackerParams",
    "FrameData",
    "PoseTrackingSystem",
    "build_tracking_system",
    "params_from_vector",
    # Smoothing
    "OneEuroParams",
    "OneEuroFilter",
    "OneEuroQuaternionFilter",
    "PoseSmoother",
    # Optimization
    "OptimizerConfig",
    "OptimizationResult",
    "minimize_newuoa",
    "ObjectiveEvaluator",
    "PoseErrorCost",
    "pose_error_cost",
    "run_optimizer",
    "FAILURE_PENALTY",
    "DEFAULT_PARAMETERS",
    # Comparison
    "FrameResult",
    "AlgorithmRunner",
    "FullTrackerRunner",
    "RansacSmoothedRunner",
    "ComparisonDriver",
    "ComparisonFrame",
    "ConsoleComparisonPrinter",
    "build_default_runners",
    "PoseErrorCollector",
    "format_summary",
    # Simulation and configuration
    "SimulatedTrajectory",
    "generate_records",
    "HarnessConfig",
    "load_config",
]
