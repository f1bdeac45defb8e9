"""
Box-and-budget constrained mean-variance solver.

    maximize    mu'w - lambda * w'Sw
    subject to  sum(w) = budget
                lower <= w <= upper

Concentration and turnover caps both reduce to per-market bounds, so the
feasible set is a box cut by one hyperplane. Projected gradient ascent with
an exact projection (bisection on the hyperplane multiplier) is enough for
a convex problem of this shape and is fully deterministic.
"""

from dataclasses import dataclass

import numpy as np

from yield_rebalancer.core.errors import SolverNonConvergence


@dataclass
class SolveResult:
    weights: np.ndarray
    iterations: int
    objective: float


def project_box_budget(v: np.ndarray, lower: np.ndarray, upper: np.ndarray, budget: float) -> np.ndarray:
    """
    Euclidean projection of v onto {lower <= w <= upper, sum(w) = budget}.

    The projection is clip(v - nu, lower, upper) for the nu at which the
    clipped sum equals the budget; that sum is monotone in nu.
    """
    lo_nu = float(np.min(v - upper)) - 1.0
    hi_nu = float(np.max(v - lower)) + 1.0
    for _ in range(200):
        nu = 0.5 * (lo_nu + hi_nu)
        s = float(np.clip(v - nu, lower, upper).sum())
        if abs(s - budget) <= 1e-14 * max(1.0, abs(budget)):
            break
        if s > budget:
            lo_nu = nu
        else:
            hi_nu = nu
    w = np.clip(v - nu, lower, upper)

    # Spread the last rounding residue over coordinates that still have room.
    residual = budget - float(w.sum())
    if residual != 0.0:
        room = (upper - w) if residual > 0 else (w - lower)
        free = room > 1e-15
        if free.any():
            share = residual / free.sum()
            w[free] = np.clip(w[free] + share, lower[free], upper[free])
    return w


def solve_mean_variance(
    mu: np.ndarray,
    cov: np.ndarray,
    risk_aversion: float,
    budget: float,
    lower: np.ndarray,
    upper: np.ndarray,
    tolerance: float = 1e-6,
    max_iterations: int = 20_000,
    initial: np.ndarray = None,
) -> SolveResult:
    """
    Solve the constrained QP.

    Raises:
        SolverNonConvergence: bounds are infeasible for the budget, or the
            iterate has not settled within `max_iterations`
    """
    mu = np.asarray(mu, dtype=float)
    cov = np.asarray(cov, dtype=float)
    lower = np.asarray(lower, dtype=float)
    upper = np.asarray(upper, dtype=float)
    n = len(mu)

    if n == 0:
        if abs(budget) > tolerance:
            raise SolverNonConvergence("no markets to allocate a non-zero budget to")
        return SolveResult(weights=np.zeros(0), iterations=0, objective=0.0)

    if cov.shape != (n, n):
        raise SolverNonConvergence(f"covariance shape {cov.shape} does not match {n} markets")
    if not (np.all(np.isfinite(mu)) and np.all(np.isfinite(cov))):
        raise SolverNonConvergence("non-finite returns or covariance")
    if np.any(lower > upper + 1e-12):
        bad = int(np.argmax(lower - upper))
        raise SolverNonConvergence(
            f"infeasible bounds for market index {bad}: lower={lower[bad]:.6f} > upper={upper[bad]:.6f}"
        )
    if lower.sum() > budget + tolerance or upper.sum() < budget - tolerance:
        raise SolverNonConvergence(
            f"infeasible: budget {budget:.6f} outside [{lower.sum():.6f}, {upper.sum():.6f}] allowed by caps"
        )

    hessian = 2.0 * risk_aversion * cov
    eig_max = float(np.max(np.linalg.eigvalsh(0.5 * (hessian + hessian.T)))) if n else 0.0
    scale = max(1.0, float(np.max(np.abs(mu))))
    lipschitz = max(eig_max, 1e-3 * scale)
    step = 1.0 / lipschitz

    start = np.zeros(n) if initial is None else np.asarray(initial, dtype=float)
    w = project_box_budget(start, lower, upper, budget)

    # Converged when a full projected step moves no coordinate more than this.
    step_tol = tolerance * 1e-2
    for iteration in range(1, max_iterations + 1):
        grad = mu - hessian @ w
        w_next = project_box_budget(w + step * grad, lower, upper, budget)
        moved = float(np.max(np.abs(w_next - w)))
        w = w_next
        if moved <= step_tol:
            break
    else:
        raise SolverNonConvergence(
            f"no convergence after {max_iterations} iterations (last step {moved:.2e})",
            iterations=max_iterations,
        )

    if abs(float(w.sum()) - budget) > tolerance:
        raise SolverNonConvergence(
            f"budget constraint violated: sum={w.sum():.9f} vs {budget:.9f}", iterations=iteration
        )

    objective = float(mu @ w - risk_aversion * w @ cov @ w)
    return SolveResult(weights=w, iterations=iteration, objective=objective)
