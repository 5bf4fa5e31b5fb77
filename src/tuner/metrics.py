"""
Metrics module for comparing pose algorithms against ground truth.

Provides functionality to:
- Count frames and produced poses per algorithm
- Accumulate position error (m) and rotation error (deg) per algorithm
- Measure agreement between two algorithms on frames where both have a pose
- Format a plain-text summary
"""

import math
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

import numpy as np

from .compare import ComparisonFrame
from .rigid import rotation_error_deg


@dataclass
class ErrorStats:
    """Running error statistics."""
    count: int = 0
    total: float = 0.0
    squared_total: float = 0.0
    max_error: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.squared_total += value * value
        self.max_error = max(self.max_error, value)

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    @property
    def rms(self) -> float:
        return math.sqrt(self.squared_total / self.count) if self.count else 0.0

    def to_dict(self, digits: int = 6) -> Dict[str, Any]:
        return {
            "count": self.count,
            "mean": round(self.mean, digits),
            "max": round(self.max_error, digits),
            "rms": round(self.rms, digits),
        }


@dataclass
class RunnerMetrics:
    """Per-algorithm metrics."""
    name: str
    frame_count: int = 0
    pose_count: int = 0
    position_error: ErrorStats = field(default_factory=ErrorStats)
    rotation_error: ErrorStats = field(default_factory=ErrorStats)

    @property
    def pose_rate(self) -> float:
        return self.pose_count / self.frame_count if self.frame_count else 0.0


class PoseErrorCollector:
    """
    Comparison observer that accumulates pose errors.

    Usage:
        metrics = PoseErrorCollector()
        driver = ComparisonDriver(runners, observers=[metrics])
        driver.run(records)
        summary = metrics.get_summary()
    """

    def __init__(self, reference: Optional[str] = None, other: Optional[str] = None):
        """
        Args:
            reference: Runner compared in the agreement statistics
                (default: first runner seen)
            other: Runner it is compared with (default: second runner seen)
        """
        self._runners: Dict[str, RunnerMetrics] = {}
        self._reference = reference
        self._other = other
        self._agreement_position = ErrorStats()
        self._agreement_rotation = ErrorStats()
        self.frames_seen = 0

    def on_frame(self, frame: ComparisonFrame) -> None:
        self.frames_seen += 1
        record = frame.record

        for name, result in frame.results.items():
            if name not in self._runners:
                self._runners[name] = RunnerMetrics(name=name)
            metrics = self._runners[name]
            metrics.frame_count += 1
            if not result.has_pose or result.pose is None:
                continue
            metrics.pose_count += 1
            metrics.position_error.add(float(np.linalg.norm(result.pose.position - record.position)))
            metrics.rotation_error.add(rotation_error_deg(result.pose.quaternion, record.quaternion))

        names = list(frame.results)
        reference = self._reference or (names[0] if names else None)
        other = self._other or (names[1] if len(names) > 1 else None)
        if reference is None or other is None:
            return
        a = frame.results.get(reference)
        b = frame.results.get(other)
        if a is None or b is None or a.pose is None or b.pose is None:
            return
        self._agreement_position.add(float(np.linalg.norm(a.pose.position - b.pose.position)))
        self._agreement_rotation.add(rotation_error_deg(a.pose.quaternion, b.pose.quaternion))

    def get_runner_metrics(self, name: str) -> Optional[Dict[str, Any]]:
        """Get metrics for a specific runner."""
        if name not in self._runners:
            return None
        m = self._runners[name]
        return {
            "frames": m.frame_count,
            "poses": m.pose_count,
            "pose_rate": round(m.pose_rate, 4),
            "position_error_m": m.position_error.to_dict(),
            "rotation_error_deg": m.rotation_error.to_dict(4),
        }

    def get_summary(self) -> Dict[str, Any]:
        """
        Get a complete metrics summary.

        Returns:
            Dictionary containing all metrics
        """
        return {
            "frames": self.frames_seen,
            "runners": {name: self.get_runner_metrics(name) for name in self._runners},
            "agreement": {
                "frames": self._agreement_position.count,
                "position_difference_m": self._agreement_position.to_dict(),
                "rotation_difference_deg": self._agreement_rotation.to_dict(4),
            },
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self._runners.clear()
        self._agreement_position = ErrorStats()
        self._agreement_rotation = ErrorStats()
        self.frames_seen = 0


def format_summary(summary: Dict[str, Any]) -> str:
    """Render a PoseErrorCollector summary as text."""
    lines: List[str] = [f"Frames: {summary['frames']}"]
    for name, m in summary["runners"].items():
        lines.append(f"  {name}:")
        lines.append(f"    poses: {m['poses']}/{m['frames']} ({m['pose_rate'] * 100.0:.1f}%)")
        pos = m["position_error_m"]
        rot = m["rotation_error_deg"]
        lines.append(
            f"    position error: mean {pos['mean'] * 1000.0:.2f} mm, "
            f"rms {pos['rms'] * 1000.0:.2f} mm, max {pos['max'] * 1000.0:.2f} mm"
        )
        lines.append(
            f"    rotation error: mean {rot['mean']:.3f} deg, "
            f"rms {rot['rms']:.3f} deg, max {rot['max']:.3f} deg"
        )

    agreement = summary["agreement"]
    if agreement["frames"]:
        lines.append(
            f"  agreement over {agreement['frames']} frames: "
            f"{agreement['position_difference_m']['mean'] * 1000.0:.2f} mm, "
            f"{agreement['rotation_difference_deg']['mean']:.3f} deg"
        )
    return "\n".join(lines)
