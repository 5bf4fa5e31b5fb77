"""
Derivative-free minimization by trust-region quadratic interpolation.

A NEWUOA-style method (after M.J.D. Powell): a quadratic model of the
objective is interpolated through ``npt`` points with the minimum-Frobenius-
norm Hessian, a truncated conjugate-gradient step minimizes the model inside
a trust region of radius ``delta``, and the lower bound ``rho`` on the radius
shrinks from ``rho_begin`` to ``rho_end`` as the model stops producing
progress. Only objective values are used.
"""

import math
import numpy as np
from typing import Optional, Callable, List, Tuple, Sequence
from dataclasses import dataclass, field


Objective = Callable[[np.ndarray], float]

MESSAGE_CONVERGED = "trust region radius reached rho_end"
MESSAGE_MAXFUN = "maximum number of function evaluations reached"


@dataclass
class OptimizerConfig:
    """Optimizer request settings."""
    npt: Optional[int] = None  # interpolation points, default 2n
    rho_begin: float = 1e-4  # initial trust region radius
    rho_end: float = 1e-8  # final trust region radius
    maxfun: int = 10  # maximum objective evaluations

    def resolve(self, n: int) -> Tuple[int, float, float, int]:
        """
        Check the settings for an n-dimensional problem.

        Returns:
            (npt, rho_begin, rho_end, maxfun), radii in decreasing order

        Raises:
            ValueError: If a setting is out of range
        """
        npt = max(2 * n, n + 2) if self.npt is None else int(self.npt)
        max_npt = (n + 1) * (n + 2) // 2
        if not (n + 2 <= npt <= max_npt):
            raise ValueError(f"npt must be in [{n + 2}, {max_npt}] for n={n}, got {npt}")

        rho_begin, rho_end = float(self.rho_begin), float(self.rho_end)
        if rho_end > rho_begin:
            rho_begin, rho_end = rho_end, rho_begin
        if not (rho_end > 0.0 and math.isfinite(rho_begin)):
            raise ValueError(f"trust region radii must be finite and > 0, got {self.rho_begin}, {self.rho_end}")

        maxfun = int(self.maxfun)
        if maxfun < 1:
            raise ValueError(f"maxfun must be >= 1, got {self.maxfun}")

        return npt, rho_begin, rho_end, maxfun


@dataclass
class OptimizationResult:
    """Optimizer response."""
    x: np.ndarray
    fun: float
    nfev: int
    message: str
    history: List[Tuple[np.ndarray, float]] = field(default_factory=list)


class _BudgetExhausted(Exception):
    pass


class _CountingObjective:
    """Wrap the objective, enforce the evaluation budget, keep history."""

    def __init__(self, objective: Objective, maxfun: int):
        self.objective = objective
        self.maxfun = maxfun
        self.nfev = 0
        self.history: List[Tuple[np.ndarray, float]] = []

    def __call__(self, x: np.ndarray) -> float:
        if self.nfev >= self.maxfun:
            raise _BudgetExhausted()
        self.nfev += 1
        value = float(self.objective(x.copy()))
        if not math.isfinite(value):
            value = math.inf
        self.history.append((x.copy(), value))
        return value

    def best(self) -> Tuple[Optional[np.ndarray], float]:
        if not self.history:
            return None, math.inf
        x, f = min(self.history, key=lambda item: item[1])
        return x.copy(), f


def _initial_points(x0: np.ndarray, npt: int, rho: float) -> List[np.ndarray]:
    """x0, then +rho and -rho steps along the coordinate axes, then pairs."""
    n = x0.size
    eye = np.eye(n)
    points = [x0.copy()]
    points += [x0 + rho * eye[i] for i in range(n)]
    points += [x0 - rho * eye[i] for i in range(n)]
    pair = 0
    while len(points) < npt:
        i, j = divmod(pair, n)
        if j > i:
            points.append(x0 + rho * (eye[i] + eye[j]))
        pair += 1
    return points[:npt]


def _model_values(values: np.ndarray) -> np.ndarray:
    """Replace infinite values by a large finite one so the model stays defined."""
    finite = np.isfinite(values)
    if finite.all():
        return values
    if not finite.any():
        return np.zeros_like(values)
    top = float(np.max(values[finite]))
    return np.where(finite, values, top + 1e3 * (1.0 + abs(top)))


def fit_quadratic_model(
    points: np.ndarray,
    values: np.ndarray,
    center: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Minimum-Frobenius-norm quadratic interpolation around ``points[center]``.

    Returns:
        (gradient, hessian) of the model at the center
    """
    Y = points - points[center]
    f = _model_values(values) - _model_values(values)[center]
    npt, n = Y.shape

    scale = float(np.max(np.linalg.norm(Y, axis=1)))
    if scale <= 0.0:
        return np.zeros(n), np.zeros((n, n))
    Ys = Y / scale

    A = 0.5 * (Ys @ Ys.T) ** 2
    X = np.hstack([np.ones((npt, 1)), Ys])
    W = np.zeros((npt + n + 1, npt + n + 1))
    W[:npt, :npt] = A
    W[:npt, npt:] = X
    W[npt:, :npt] = X.T
    rhs = np.concatenate([f, np.zeros(n + 1)])

    solution = np.linalg.lstsq(W, rhs, rcond=None)[0]
    lam = solution[:npt]
    g = solution[npt + 1:]
    H = (Ys.T * lam) @ Ys

    return g / scale, H / scale ** 2


def _to_boundary(s: np.ndarray, d: np.ndarray, delta: float) -> float:
    a = float(d @ d)
    b = 2.0 * float(s @ d)
    c = float(s @ s) - delta ** 2
    return (-b + math.sqrt(max(b * b - 4.0 * a * c, 0.0))) / (2.0 * a)


def trust_region_step(g: np.ndarray, H: np.ndarray, delta: float) -> np.ndarray:
    """Truncated conjugate gradient on g.s + s.H.s/2 subject to |s| <= delta."""
    s = np.zeros_like(g)
    g_norm = float(np.linalg.norm(g))
    if g_norm == 0.0:
        return s

    r = -g.copy()
    d = r.copy()
    for _ in range(g.size):
        Hd = H @ d
        curvature = float(d @ Hd)
        if curvature <= 0.0:
            return s + _to_boundary(s, d, delta) * d

        alpha = float(r @ r) / curvature
        s_next = s + alpha * d
        if np.linalg.norm(s_next) >= delta:
            return s + _to_boundary(s, d, delta) * d

        r_next = r - alpha * Hd
        if np.linalg.norm(r_next) <= 1e-12 * g_norm:
            return s_next
        beta = float(r_next @ r_next) / float(r @ r)
        d = r_next + beta * d
        s, r = s_next, r_next

    return s


def _reduce_rho(rho: float, rho_end: float) -> float:
    ratio = rho / rho_end
    if ratio <= 16.0:
        return rho_end
    if ratio <= 250.0:
        return math.sqrt(ratio) * rho_end
    return 0.1 * rho


def _poorly_poised(points: np.ndarray, center: int, delta: float, threshold: float = 0.1) -> bool:
    """True when the points around the center fail to span every direction."""
    others = np.delete(points, center, axis=0) - points[center]
    singular = np.linalg.svd(others / delta, compute_uv=False)
    return bool(singular[-1] < threshold)


def _geometry_point(points: np.ndarray, skip: int, center: int, g: np.ndarray, delta: float) -> np.ndarray:
    """Point at distance delta along the direction the other points span worst."""
    others = np.delete(points, skip, axis=0) - points[center]
    _, _, Vt = np.linalg.svd(others)
    direction = Vt[-1]
    if float(direction @ g) > 0.0:
        direction = -direction
    return points[center] + delta * direction


def minimize_newuoa(
    objective: Objective,
    x0: Sequence[float],
    config: Optional[OptimizerConfig] = None
) -> OptimizationResult:
    """
    Minimize ``objective`` without derivatives.

    Args:
        objective: Function of a 1-D array returning a float; treated as a
            black box. Non-finite values count as +inf.
        x0: Starting point (not modified)
        config: npt, trust region radii and evaluation budget

    Returns:
        OptimizationResult with the best point found; ``nfev`` never exceeds
        ``config.maxfun``
    """
    config = config or OptimizerConfig()
    x_start = np.array(x0, dtype=np.float64).reshape(-1)
    n = x_start.size
    if n == 0:
        raise ValueError("x0 must not be empty")
    npt, rho_begin, rho_end, maxfun = config.resolve(n)

    fun = _CountingObjective(objective, maxfun)
    rho = rho_begin
    delta = rho_begin
    message = MESSAGE_CONVERGED

    try:
        points = np.array(_initial_points(x_start, npt, rho_begin))
        values = np.array([fun(p) for p in points])

        while True:
            k_opt = int(np.argmin(values))
            x_opt = points[k_opt]
            f_opt = values[k_opt]

            g, H = fit_quadratic_model(points, values, k_opt)
            s = trust_region_step(g, H, delta)
            s_norm = float(np.linalg.norm(s))
            predicted = -(float(g @ s) + 0.5 * float(s @ H @ s))

            if s_norm < 0.5 * rho or not predicted > 0.0:
                # Model step too short to test: fix geometry or shrink rho
                distances = np.linalg.norm(points - x_opt, axis=1)
                k_far = int(np.argmax(distances))
                if distances[k_far] > 2.0 * delta or _poorly_poised(points, k_opt, delta):
                    points[k_far] = _geometry_point(points, k_far, k_opt, g, delta)
                    values[k_far] = fun(points[k_far])
                    continue
                if rho <= rho_end:
                    break
                rho_old = rho
                rho = _reduce_rho(rho, rho_end)
                delta = max(0.5 * rho_old, rho)
                continue

            x_new = x_opt + s
            f_new = fun(x_new)
            ratio = (f_opt - f_new) / predicted

            if ratio <= 0.1:
                delta = 0.5 * s_norm
            elif ratio <= 0.7:
                delta = max(0.5 * delta, s_norm)
            else:
                delta = max(0.5 * delta, 2.0 * s_norm)
            if delta <= 1.5 * rho:
                delta = rho

            if f_new < f_opt:
                distances = np.linalg.norm(points - x_new, axis=1)
            else:
                distances = np.linalg.norm(points - x_opt, axis=1)
                distances[k_opt] = -1.0
            k_replace = int(np.argmax(distances))
            points[k_replace] = x_new
            values[k_replace] = f_new

    except _BudgetExhausted:
        message = MESSAGE_MAXFUN

    best_x, best_f = fun.best()
    if best_x is None:
        best_x = x_start.copy()

    return OptimizationResult(
        x=best_x,
        fun=best_f,
        nfev=fun.nfev,
        message=message,
        history=fun.history
    )
