"""
Comparison pipeline that runs pose algorithms in lockstep.

Provides the complete processing chain:
- Recorded frame → every runner, in order → observers (printer, metrics)
"""

import sys
from typing import Optional, Dict, Any, List, Sequence, Iterable, Protocol, TextIO
from dataclasses import dataclass

from .algorithms import AlgorithmRunner, FrameResult, FullTrackerRunner, RansacSmoothedRunner
from .geo import CameraParams
from .measurements import MeasurementRecord
from .rigid import BeaconPattern, RigidBodyPose, rotation_error_deg
from .smoothing import PoseSmoother
from .tracking import TrackerParams, build_tracking_system


@dataclass
class ComparisonFrame:
    """One record and the result of every runner on it."""
    index: int
    record: MeasurementRecord
    results: Dict[str, FrameResult]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "record": self.record.to_dict(),
            "results": {name: result.to_dict() for name, result in self.results.items()},
        }


class ComparisonObserver(Protocol):
    def on_frame(self, frame: ComparisonFrame) -> None:
        ...


class ComparisonDriver:
    """
    Feed records to several runners in lockstep.

    Every record goes to every runner exactly once, in runner order,
    before the observers see the frame.

    Usage:
        driver = ComparisonDriver(build_default_runners(camera))
        driver.add_observer(ConsoleComparisonPrinter())
        driver.run(records)
    """

    def __init__(
        self,
        runners: Sequence[AlgorithmRunner],
        observers: Iterable[ComparisonObserver] = ()
    ):
        """
        Args:
            runners: Runners in stepping order; names must be unique
            observers: Notified after all runners processed a frame
        """
        names = [runner.name for runner in runners]
        if not names:
            raise ValueError("ComparisonDriver needs at least one runner")
        if len(set(names)) != len(names):
            raise ValueError(f"Runner names must be unique: {names}")

        self.runners = list(runners)
        self.observers: List[ComparisonObserver] = list(observers)
        self.frames_processed = 0

    def add_observer(self, observer: ComparisonObserver) -> None:
        self.observers.append(observer)

    def step(self, record: MeasurementRecord) -> ComparisonFrame:
        """Advance every runner by one record."""
        results = {runner.name: runner.step(record) for runner in self.runners}
        frame = ComparisonFrame(index=self.frames_processed, record=record, results=results)
        self.frames_processed += 1

        for observer in self.observers:
            observer.on_frame(frame)
        return frame

    def run(self, records: Iterable[MeasurementRecord]) -> List[ComparisonFrame]:
        return [self.step(record) for record in records]

    def get_status(self) -> Dict[str, Any]:
        return {
            "frames_processed": self.frames_processed,
            "runners": {
                runner.name: {
                    "frames_processed": runner.frames_processed,
                    "poses_produced": runner.poses_produced,
                }
                for runner in self.runners
            },
        }


def build_default_runners(
    camera: CameraParams,
    params: Optional[TrackerParams] = None,
    pattern: Optional[BeaconPattern] = None,
    smoother: Optional[PoseSmoother] = None
) -> List[AlgorithmRunner]:
    """
    Full tracker and RANSAC+smoothing sharing one tracking system.

    The full tracker is stepped first so both see the system after the
    frame's update.
    """
    system = build_tracking_system(params or TrackerParams(), pattern)
    full = FullTrackerRunner(camera, system)
    ransac = RansacSmoothedRunner(camera, full.target, smoother)
    return [full, ransac]


def format_pose_for_log(pose: Optional[RigidBodyPose]) -> str:
    """Format a pose for one-line log output."""
    if pose is None or not pose.valid:
        return "[LOST]"

    pos = pose.position
    return f"({pos[0]:.4f}, {pos[1]:.4f}, {pos[2]:.4f}) err={pose.rms_error:.2f}"


class ConsoleComparisonPrinter:
    """
    Per-frame console output of all runners against ground truth.
    """

    def __init__(self, stream: Optional[TextIO] = None, every: int = 1):
        """
        Args:
            stream: Output stream (default stdout)
            every: Print one frame out of this many
        """
        self.stream = stream or sys.stdout
        self.every = max(1, int(every))
        self.lines_written = 0

    def on_frame(self, frame: ComparisonFrame) -> None:
        if frame.index % self.every != 0:
            return

        record = frame.record
        print(
            f"[{record.timestamp.total_seconds:.6f}] Frame {frame.index} "
            f"blobs={record.blob_count}",
            file=self.stream
        )
        for name, result in frame.results.items():
            line = f"  {name}: {format_pose_for_log(result.pose)}"
            if result.has_pose and result.pose is not None:
                pos_err = float(((result.pose.position - record.position) ** 2).sum() ** 0.5)
                rot_err = rotation_error_deg(result.pose.quaternion, record.quaternion)
                line += f" dpos={pos_err * 1000.0:.1f}mm drot={rot_err:.2f}deg"
            print(line, file=self.stream)
        self.lines_written += 1
