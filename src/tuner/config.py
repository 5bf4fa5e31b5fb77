"""
Harness configuration.

Provides functionality to:
- Read a JSON configuration file
- Build the loader, camera, beacon pattern, tracker, optimizer, smoother and
  cost settings from it

Every section is optional; missing values keep the component defaults.
Example:

    {
        "image_size": [640, 480],
        "calibration_path": "calibration/camera.json",
        "undistorted": true,
        "tracker": {"association_gate_px": 20.0},
        "optimizer": {"maxfun": 40, "x0": [4.14e-6, 1e-2, 0.0, 5e-2]},
        "smoothing": {"orientation_mode": "slerp", "position": {"beta": 0.3}},
        "cost": {"rotation_weight": 0.1}
    }
"""

import json
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field, fields, replace

from .geo import CameraParams, CalibrationLoader, create_default_camera
from .measurements import LoaderConfig
from .objective import DEFAULT_PARAMETERS, PoseErrorCost
from .optimizer import OptimizerConfig
from .rigid import BeaconPattern, DEFAULT_PATTERN, RansacSettings
from .smoothing import OneEuroParams, PoseSmoother, ORIENTATION_MODES
from .tracking import TrackerParams


def _check_keys(section: str, values: Dict[str, Any], allowed) -> None:
    unknown = sorted(set(values) - set(allowed))
    if unknown:
        raise ValueError(f"Unknown key(s) in {section}: {', '.join(unknown)}")


def _dataclass_from_dict(section: str, cls, values: Optional[Dict[str, Any]], base=None):
    """Apply a dict of overrides to a dataclass instance."""
    base = base if base is not None else cls()
    if not values:
        return base
    if not isinstance(values, dict):
        raise ValueError(f"{section} must be an object")
    _check_keys(section, values, [f.name for f in fields(cls)])
    try:
        return replace(base, **values)
    except TypeError as e:
        raise ValueError(f"Invalid {section}: {e}") from None


@dataclass
class HarnessConfig:
    """Settings of one harness run."""
    image_size: Tuple[int, int] = (640, 480)
    delimiter: str = ","
    calibration_path: Optional[str] = None
    focal_length: float = 700.0  # used when no calibration is given
    undistorted: bool = True  # blobs in recordings are already undistorted
    pattern_path: Optional[str] = None
    tracker: Dict[str, Any] = field(default_factory=dict)
    optimizer: Dict[str, Any] = field(default_factory=dict)
    smoothing: Dict[str, Any] = field(default_factory=dict)
    cost: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "HarnessConfig":
        """
        Build a configuration from parsed JSON.

        Args:
            data: Parsed configuration
            base_dir: Directory relative paths are resolved against

        Raises:
            ValueError: On unknown keys or malformed values
        """
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a JSON object")
        _check_keys("configuration", data, [f.name for f in fields(cls)])

        values = dict(data)
        if "image_size" in values:
            size = values["image_size"]
            if not isinstance(size, (list, tuple)) or len(size) != 2:
                raise ValueError("image_size must be [width, height]")
            values["image_size"] = (int(size[0]), int(size[1]))

        if not isinstance(values.get("undistorted", True), bool):
            raise ValueError("undistorted must be true or false")

        for key in ("calibration_path", "pattern_path"):
            if values.get(key) and base_dir is not None:
                path = Path(values[key])
                if not path.is_absolute():
                    values[key] = str(base_dir / path)

        config = cls(**values)
        # Fail early on bad sections
        config.tracker_params()
        config.optimizer_config()
        config.build_smoother()
        config.cost_function()
        return config

    def loader_config(self) -> LoaderConfig:
        return LoaderConfig(image_size=tuple(self.image_size), delimiter=self.delimiter)

    def camera(self) -> CameraParams:
        if self.calibration_path:
            camera = CalibrationLoader.load(self.calibration_path)
        else:
            camera = create_default_camera(tuple(self.image_size), self.focal_length)
        if self.undistorted:
            return camera.undistorted_variant()
        return camera

    def pattern(self) -> BeaconPattern:
        if self.pattern_path:
            return BeaconPattern.from_json(self.pattern_path)
        return DEFAULT_PATTERN

    def tracker_params(self) -> TrackerParams:
        values = dict(self.tracker)
        ransac = _dataclass_from_dict("tracker.ransac", RansacSettings, values.pop("ransac", None))
        if "process_noise_autocorrelation" in values:
            values["process_noise_autocorrelation"] = tuple(
                float(v) for v in values["process_noise_autocorrelation"]
            )
        params = _dataclass_from_dict("tracker", TrackerParams, values, TrackerParams(ransac=ransac))
        params.validate()
        return params

    def optimizer_config(self) -> OptimizerConfig:
        values = dict(self.optimizer)
        values.pop("x0", None)
        return _dataclass_from_dict("optimizer", OptimizerConfig, values)

    def initial_parameters(self) -> List[float]:
        x0 = self.optimizer.get("x0")
        if x0 is None:
            return [float(v) for v in DEFAULT_PARAMETERS]
        if not isinstance(x0, (list, tuple)) or len(x0) != len(DEFAULT_PARAMETERS):
            raise ValueError(f"optimizer.x0 must list {len(DEFAULT_PARAMETERS)} numbers")
        return [float(v) for v in x0]

    def build_smoother(self) -> PoseSmoother:
        values = dict(self.smoothing)
        _check_keys("smoothing", values, ["position", "orientation", "orientation_mode"])
        mode = values.get("orientation_mode", "slerp")
        if mode not in ORIENTATION_MODES:
            raise ValueError(f"smoothing.orientation_mode must be one of: {', '.join(ORIENTATION_MODES)}")
        return PoseSmoother(
            position_params=_dataclass_from_dict("smoothing.position", OneEuroParams, values.get("position")),
            orientation_params=_dataclass_from_dict("smoothing.orientation", OneEuroParams, values.get("orientation")),
            orientation_mode=mode
        )

    def cost_function(self) -> PoseErrorCost:
        return _dataclass_from_dict("cost", PoseErrorCost, self.cost)


def load_config(filepath: Optional[str]) -> HarnessConfig:
    """
    Load a harness configuration file.

    Args:
        filepath: Path to a JSON file (None = defaults)

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not valid configuration
    """
    if filepath is None:
        return HarnessConfig()

    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {filepath}: {e}") from None

    return HarnessConfig.from_dict(data, base_dir=path.parent)
