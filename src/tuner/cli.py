"""Command line entry point of the tracker study harness.

Subcommands:
  simulate  write a synthetic recording
  validate  check a recording and print its statistics
  compare   run the full tracker and RANSAC+smoothing side by side
  optimize  tune the tracker noise parameters against a recording

Exit codes: 0 success, 1 runtime failure, 2 usage error or nothing loaded.
"""

from __future__ import annotations

import argparse
import json
import sys

import cv2 as cv
import numpy as np

from .compare import ComparisonDriver, ConsoleComparisonPrinter, build_default_runners
from .config import HarnessConfig, load_config
from .measurements import MeasurementLoader, validate_measurement_file, write_measurement_csv
from .metrics import PoseErrorCollector, format_summary
from .objective import ObjectiveEvaluator, run_optimizer
from .sim import TRAJECTORIES, generate_records
from .tracking import PARAMETER_NAMES


def _err(msg: str) -> int:
    print(f"error: {msg}", file=sys.stderr)
    return 2


def _load_records(path: str, config: HarnessConfig):
    loader = MeasurementLoader(path, config.loader_config())
    records = loader.load()
    for issue in loader.issues:
        print(issue, file=sys.stderr)
    return records


def _cmd_simulate(args: argparse.Namespace, config: HarnessConfig) -> int:
    if args.frames <= 0:
        return _err("--frames must be > 0")
    if args.fps <= 0:
        return _err("--fps must be > 0")
    if args.noise_px < 0.0:
        return _err("--noise-px must be >= 0")
    if not (0.0 <= args.frame_dropout <= 1.0):
        return _err("--frame-dropout must be in [0, 1]")

    records = generate_records(
        frames=int(args.frames),
        fps=float(args.fps),
        noise_px=float(args.noise_px),
        frame_dropout=float(args.frame_dropout),
        trajectory=str(args.trajectory),
        seed=int(args.seed),
        camera=config.camera(),
        pattern=config.pattern(),
    )
    count = write_measurement_csv(args.output, records, delimiter=config.delimiter)
    print(f"wrote {count} records to {args.output}")
    return 0


def _cmd_validate(args: argparse.Namespace, config: HarnessConfig) -> int:
    report = validate_measurement_file(args.recording, config.loader_config())

    if args.json:
        print(json.dumps(report, indent=2, sort_keys=True))
    else:
        for message in report["errors"]:
            print(f"error: {message}", file=sys.stderr)
        for message in report["warnings"]:
            print(f"warning: {message}", file=sys.stderr)
        for key, value in report["stats"].items():
            print(f"{key}: {value}")

    return 0 if report["valid"] else 2


def _cmd_compare(args: argparse.Namespace, config: HarnessConfig) -> int:
    records = _load_records(args.recording, config)
    if not records:
        return _err(f"no records loaded from {args.recording}")

    runners = build_default_runners(
        config.camera(),
        params=config.tracker_params(),
        pattern=config.pattern(),
        smoother=config.build_smoother(),
    )
    metrics = PoseErrorCollector()
    driver = ComparisonDriver(runners, observers=[metrics])
    if not args.quiet and not args.json:
        driver.add_observer(ConsoleComparisonPrinter(every=args.every))

    driver.run(records)

    summary = metrics.get_summary()
    if args.json:
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        print(format_summary(summary))
    return 0


def _cmd_optimize(args: argparse.Namespace, config: HarnessConfig) -> int:
    records = _load_records(args.recording, config)
    if not records:
        return _err(f"no records loaded from {args.recording}")

    optimizer_config = config.optimizer_config()
    if args.maxfun is not None:
        if args.maxfun < 1:
            return _err("--maxfun must be >= 1")
        optimizer_config.maxfun = int(args.maxfun)

    camera = config.camera()
    evaluator = ObjectiveEvaluator(
        records,
        camera,
        cost_function=config.cost_function(),
        base_params=config.tracker_params(),
        pattern=config.pattern(),
    )
    result = run_optimizer(
        records,
        camera,
        config=optimizer_config,
        x0=config.initial_parameters(),
        evaluator=evaluator,
    )

    summary = {
        "parameters": {name: float(v) for name, v in zip(PARAMETER_NAMES, result.x)},
        "cost": result.fun,
        "evaluations": result.nfev,
        "failed_evaluations": evaluator.failures,
        "message": result.message,
    }
    if args.json:
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        for name, value in summary["parameters"].items():
            print(f"{name}: {value:.6g}")
        print(f"cost: {result.fun:.6g}")
        print(f"evaluations: {result.nfev} ({evaluator.failures} failed)")
        print(f"message: {result.message}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m tuner.cli")
    parser.add_argument("--config", type=str, default=None, help="JSON configuration file")
    sub = parser.add_subparsers(dest="command", required=True)

    p_sim = sub.add_parser("simulate", help="Write a synthetic recording")
    p_sim.add_argument("output", help="Output CSV path")
    p_sim.add_argument("--frames", type=int, default=300, help="Number of frames (>0)")
    p_sim.add_argument("--fps", type=float, default=60.0, help="Frames per second (>0)")
    p_sim.add_argument("--noise-px", type=float, default=0.0, help="Pixel noise stddev")
    p_sim.add_argument("--frame-dropout", type=float, default=0.0, help="Frame dropout probability [0,1]")
    p_sim.add_argument("--trajectory", type=str, default="static", choices=list(TRAJECTORIES))
    p_sim.add_argument("--seed", type=int, default=0, help="RNG seed")

    p_val = sub.add_parser("validate", help="Check a recording")
    p_val.add_argument("recording", help="Recording CSV path")
    p_val.add_argument("--json", action="store_true", help="Print the report as JSON")

    p_cmp = sub.add_parser("compare", help="Compare full tracker and RANSAC+smoothing")
    p_cmp.add_argument("recording", help="Recording CSV path")
    p_cmp.add_argument("--every", type=int, default=1, help="Print one frame out of N")
    p_cmp.add_argument("--quiet", action="store_true", help="Only print the summary")
    p_cmp.add_argument("--json", action="store_true", help="Print the summary as JSON")

    p_opt = sub.add_parser("optimize", help="Tune tracker noise parameters")
    p_opt.add_argument("recording", help="Recording CSV path")
    p_opt.add_argument("--maxfun", type=int, default=None, help="Maximum objective evaluations")
    p_opt.add_argument("--json", action="store_true", help="Print the result as JSON")

    return parser


COMMANDS = {
    "simulate": _cmd_simulate,
    "validate": _cmd_validate,
    "compare": _cmd_compare,
    "optimize": _cmd_optimize,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        try:
            return int(e.code)
        except (TypeError, ValueError):
            return 2

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        return _err(str(e))

    try:
        return COMMANDS[args.command](args, config)
    except (FileNotFoundError, ValueError) as e:
        return _err(str(e))
    except (RuntimeError, ArithmeticError, np.linalg.LinAlgError, cv.error, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
