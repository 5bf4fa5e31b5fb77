"""
Pose algorithms compared frame by frame.

- FullTrackerRunner: feeds each frame to the tracking system and reads back
  the body's pose estimate.
- RansacSmoothedRunner: per-frame RANSAC PnP from the frame's blobs alone,
  smoothed by a one-euro PoseSmoother.
"""

from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass

from .geo import CameraParams
from .measurements import MeasurementRecord, TimeValue
from .rigid import RigidBodyPose
from .smoothing import PoseSmoother
from .tracking import TrackingSystem, TrackedTarget, make_frame_data


@dataclass
class FrameResult:
    """Output of one runner for one frame."""
    frame_index: int
    timestamp: TimeValue
    has_pose: bool
    pose: Optional[RigidBodyPose] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_index": self.frame_index,
            "timestamp_us": self.timestamp.timestamp_us,
            "has_pose": self.has_pose,
            "pose": self.pose.to_dict() if self.pose is not None else None,
        }


class AlgorithmRunner:
    """Base class: consume records in order, produce a pose or nothing."""

    name = "runner"

    def __init__(self):
        self.frames_processed = 0
        self.poses_produced = 0
        self.last_result: Optional[FrameResult] = None

    def step(self, record: MeasurementRecord) -> FrameResult:
        has_pose, pose = self._process(record)
        if pose is not None:
            pose.timestamp = record.timestamp.timestamp_us
        result = FrameResult(
            frame_index=self.frames_processed,
            timestamp=record.timestamp,
            has_pose=has_pose,
            pose=pose if has_pose else None
        )
        self.frames_processed += 1
        if has_pose:
            self.poses_produced += 1
        self.last_result = result
        return result

    def _process(self, record: MeasurementRecord) -> Tuple[bool, Optional[RigidBodyPose]]:
        raise NotImplementedError

    def have_pose(self) -> bool:
        return self.last_result is not None and self.last_result.has_pose

    def get_pose(self) -> Optional[RigidBodyPose]:
        return self.last_result.pose if self.last_result is not None else None


class FullTrackerRunner(AlgorithmRunner):
    """Main tracker path: update the system, then query the target."""

    name = "full_tracker"

    def __init__(
        self,
        camera: CameraParams,
        system: TrackingSystem,
        body_id: int = 0,
        target_id: int = 0
    ):
        super().__init__()
        self.camera = camera
        self.system = system
        self.body_id = body_id
        self.target_id = target_id

    @property
    def target(self) -> TrackedTarget:
        return self.system.get_body(self.body_id).get_target(self.target_id)

    def _process(self, record: MeasurementRecord) -> Tuple[bool, Optional[RigidBodyPose]]:
        self.system.update_from_frame(make_frame_data(record, self.camera))
        target = self.target
        if not target.has_pose_estimate():
            return False, None
        return True, target.get_pose_estimate()


class RansacSmoothedRunner(AlgorithmRunner):
    """RANSAC pose per frame, one-euro smoothed across successful frames."""

    name = "ransac_smoothed"

    def __init__(
        self,
        camera: CameraParams,
        target: TrackedTarget,
        smoother: Optional[PoseSmoother] = None
    ):
        super().__init__()
        self.camera = camera
        self.target = target
        self.smoother = smoother or PoseSmoother()
        self._is_first = True
        self._last_timestamp: Optional[TimeValue] = None
        self.last_dt: Optional[float] = None

    def _process(self, record: MeasurementRecord) -> Tuple[bool, Optional[RigidBodyPose]]:
        success, position, quaternion = self.target.estimate_pose_ransac(self.camera, record.blobs)
        if not success:
            return False, None

        dt = 1.0
        if self._is_first:
            self._is_first = False
        else:
            # Measured from the last successful frame
            dt = record.timestamp - self._last_timestamp
        self.smoother.filter(dt, position, quaternion)
        self._last_timestamp = record.timestamp
        self.last_dt = dt

        return True, self.smoother.pose
