import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
sys.path.insert(0, str(SRC))

from tuner.cli import main  # type: ignore
from tuner.config import HarnessConfig, load_config  # type: ignore
from tuner.geo import create_default_camera  # type: ignore
from tuner.rigid import DEFAULT_PATTERN  # type: ignore


@pytest.fixture()
def recording(tmp_path) -> str:
    path = tmp_path / "sim.csv"
    code = main(["simulate", str(path), "--frames", "30", "--noise-px", "0.2", "--seed", "1"])
    assert code == 0
    return str(path)


def test_defaults_without_file():
    config = load_config(None)
    assert config.loader_config().image_size == (640, 480)
    assert config.pattern() is DEFAULT_PATTERN
    assert config.optimizer_config().maxfun == 10
    assert config.initial_parameters() == [4.14e-6, 1e-2, 0.0, 5e-2]
    assert config.camera().focal_length == pytest.approx(700.0)


def test_sections_override_component_defaults(tmp_path):
    calib = tmp_path / "cam.json"
    calib.write_text(json.dumps(create_default_camera((800, 600), 900.0).to_dict()))
    cfg = tmp_path / "harness.json"
    cfg.write_text(json.dumps({
        "image_size": [800, 600],
        "calibration_path": "cam.json",
        "tracker": {"association_gate_px": 12.0, "ransac": {"iterations": 50}},
        "optimizer": {"maxfun": 40, "rho_begin": 1e-3, "x0": [1e-6, 1e-3, 0.0, 0.1]},
        "smoothing": {"orientation_mode": "componentwise", "position": {"beta": 0.2}},
        "cost": {"rotation_weight": 0.5},
    }))
    config = load_config(str(cfg))

    assert config.loader_config().image_size == (800, 600)
    assert config.camera().focal_length == pytest.approx(900.0)
    params = config.tracker_params()
    assert params.association_gate_px == 12.0
    assert params.ransac.iterations == 50
    assert config.optimizer_config().maxfun == 40
    assert config.initial_parameters() == [1e-6, 1e-3, 0.0, 0.1]
    smoother = config.build_smoother()
    assert smoother.orientation_filter.mode == "componentwise"
    assert smoother.position_filter.params.beta == 0.2
    assert config.cost_function().rotation_weight == 0.5


@pytest.mark.parametrize("data", [
    {"unknown": 1},
    {"tracker": {"gate": 3}},
    {"optimizer": {"npt": 2, "maxfun": 0, "extra": True}},
    {"smoothing": {"orientation_mode": "euler"}},
    {"smoothing": {"position": {"min_cutoff": -1.0}}},
    {"image_size": [640]},
])
def test_invalid_configuration_is_rejected(data):
    with pytest.raises(ValueError):
        HarnessConfig.from_dict(data)


def test_camera_defaults_to_undistorted_variant(tmp_path):
    lens = create_default_camera((640, 480), 650.0, distortion=[0.1, -0.02, 0.0, 0.0, 0.0])
    calib = tmp_path / "lens.json"
    calib.write_text(json.dumps(lens.to_dict()))

    camera = HarnessConfig.from_dict({"calibration_path": "lens.json"}, tmp_path).camera()
    assert not camera.is_distorted
    assert camera.focal_length == pytest.approx(650.0)

    raw = HarnessConfig.from_dict(
        {"calibration_path": "lens.json", "undistorted": False}, tmp_path
    ).camera()
    assert raw.is_distorted
    assert raw.distortion_coeffs[0] == pytest.approx(0.1)

    with pytest.raises(ValueError):
        HarnessConfig.from_dict({"undistorted": "yes"})


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "none.json"))


def test_validate_command(recording, capsys):
    assert main(["validate", recording, "--json"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["valid"] is True
    assert report["stats"]["total_records"] == 30


def test_compare_command_prints_summary(recording, capsys):
    assert main(["compare", recording, "--every", "10"]) == 0
    out = capsys.readouterr().out
    assert "Frame 0" in out
    assert "full_tracker" in out and "ransac_smoothed" in out


def test_compare_command_json(recording, capsys):
    assert main(["compare", recording, "--json"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["frames"] == 30
    assert set(summary["runners"]) == {"full_tracker", "ransac_smoothed"}


def test_optimize_command(recording, capsys):
    assert main(["optimize", recording, "--maxfun", "3", "--json"]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["evaluations"] == 3
    assert set(result["parameters"]) == {
        "positional_noise", "rotational_noise", "beacon_process_noise",
        "measurement_variance_scale_factor",
    }


def test_missing_recording_exits_with_usage_code(tmp_path, capsys):
    missing = str(tmp_path / "missing.csv")
    assert main(["compare", missing]) == 2
    assert main(["optimize", missing]) == 2
    assert main(["validate", missing]) == 2
    assert "error:" in capsys.readouterr().err


def test_bad_arguments_exit_with_usage_code(tmp_path):
    assert main([]) == 2
    assert main(["simulate", str(tmp_path / "x.csv"), "--frames", "0"]) == 2
    assert main(["--config", str(tmp_path / "none.json"), "validate", "x.csv"]) == 2
