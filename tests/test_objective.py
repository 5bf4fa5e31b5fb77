import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
sys.path.insert(0, str(SRC))

from tuner.algorithms import FrameResult  # type: ignore
from tuner.geo import create_default_camera  # type: ignore
from tuner.objective import (  # type: ignore
    DEFAULT_PARAMETERS, FAILURE_PENALTY, ObjectiveEvaluator, PoseErrorCost, run_optimizer,
)
from tuner.optimizer import OptimizerConfig  # type: ignore
from tuner.rigid import RigidBodyPose  # type: ignore
from tuner.sim import generate_records  # type: ignore


class FixedTarget:
    def __init__(self, offset):
        self.offset = offset

    def has_pose_estimate(self):
        return True

    def get_pose_estimate(self):
        return RigidBodyPose.from_quaternion([self.offset, 0.0, 0.6], [1.0, 0.0, 0.0, 0.0])

    def estimate_pose_ransac(self, camera, blobs=None):
        return False, None, None


class FakeBody:
    def __init__(self, target):
        self.target = target

    def get_target(self, target_id):
        return self.target

    def has_pose_estimate(self):
        return True


class FakeSystem:
    """Reports a pose offset along x by the positional noise parameter."""

    def __init__(self, params):
        self.body = FakeBody(FixedTarget(params.process_noise_autocorrelation[0]))
        self.frames = 0

    def update_from_frame(self, frame):
        self.frames += 1
        return [0]

    def get_body(self, body_id):
        return self.body


class FactorySpy:
    def __init__(self):
        self.systems = []

    def __call__(self, params):
        system = FakeSystem(params)
        self.systems.append(system)
        return system


@pytest.fixture()
def camera():
    return create_default_camera()


@pytest.fixture()
def records(camera):
    return generate_records(frames=12, trajectory="static", seed=0, camera=camera)


def test_each_evaluation_uses_a_fresh_system(records, camera):
    factory = FactorySpy()
    evaluator = ObjectiveEvaluator(records, camera, build_system=factory)

    first = evaluator([0.01, 0.0, 0.0, 0.05])
    second = evaluator([0.01, 0.0, 0.0, 0.05])

    assert first == second
    assert len(factory.systems) == 2
    assert [s.frames for s in factory.systems] == [len(records), len(records)]


def test_cost_grows_with_pose_error(records, camera):
    evaluator = ObjectiveEvaluator(records, camera, build_system=FactorySpy())
    assert evaluator([0.0, 0.0, 0.0, 0.05]) < evaluator([0.05, 0.0, 0.0, 0.05])


@pytest.mark.parametrize("vector", [
    [-1e-6, 1e-2, 0.0, 5e-2],
    [4e-6, 1e-2, -0.1, 5e-2],
    [np.nan, 1e-2, 0.0, 5e-2],
    [4e-6, np.inf, 0.0, 5e-2],
    [4e-6, 1e-2, 0.0],
])
def test_unphysical_vectors_get_failure_penalty(records, camera, vector):
    factory = FactorySpy()
    evaluator = ObjectiveEvaluator(records, camera, build_system=factory)
    assert evaluator(vector) == FAILURE_PENALTY
    assert factory.systems == []
    assert evaluator.failures == 1


def test_failing_build_gets_failure_penalty(records, camera):
    def broken(params):
        raise np.linalg.LinAlgError("singular")

    evaluator = ObjectiveEvaluator(records, camera, build_system=broken)
    assert evaluator(DEFAULT_PARAMETERS) == FAILURE_PENALTY


def test_non_finite_cost_gets_failure_penalty(records, camera):
    evaluator = ObjectiveEvaluator(
        records, camera, build_system=FactorySpy(), cost_function=lambda recs, results: float("nan")
    )
    assert evaluator(DEFAULT_PARAMETERS) == FAILURE_PENALTY


def test_custom_cost_function_sees_every_frame(records, camera):
    seen = {}

    def cost(recs, results):
        seen["records"] = len(recs)
        seen["results"] = len(results)
        return 1.5

    evaluator = ObjectiveEvaluator(records, camera, build_system=FactorySpy(), cost_function=cost)
    assert evaluator(DEFAULT_PARAMETERS) == 1.5
    assert seen == {"records": len(records), "results": len(records)}


def test_pose_error_cost_charges_missing_poses(records):
    cost = PoseErrorCost(rotation_weight=0.1, missing_pose_penalty=0.2)
    perfect = [
        FrameResult(i, r.timestamp, True, RigidBodyPose.from_quaternion(r.position, r.quaternion))
        for i, r in enumerate(records)
    ]
    missing = [FrameResult(i, r.timestamp, False) for i, r in enumerate(records)]

    assert cost(records, perfect) == pytest.approx(0.0, abs=1e-9)
    assert cost(records, missing) == pytest.approx(0.2)
    assert cost([], []) == 0.0
    with pytest.raises(ValueError):
        cost(records, missing[:-1])


def test_production_objective_is_deterministic(records, camera):
    evaluator = ObjectiveEvaluator(records, camera)
    first = evaluator(DEFAULT_PARAMETERS)
    second = evaluator(DEFAULT_PARAMETERS)

    assert first == second
    assert 0.0 <= first < 0.01


def test_run_optimizer_respects_budget(records, camera):
    factory = FactorySpy()
    evaluator = ObjectiveEvaluator(records, camera, build_system=factory)
    x0 = np.array(DEFAULT_PARAMETERS)

    result = run_optimizer(records, camera, OptimizerConfig(maxfun=6), x0=x0, evaluator=evaluator)

    assert result.nfev == 6
    assert evaluator.evaluations == 6
    assert len(result.x) == 4
    np.testing.assert_array_equal(x0, DEFAULT_PARAMETERS)
    assert result.fun <= evaluator(DEFAULT_PARAMETERS)
