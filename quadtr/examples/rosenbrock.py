# examples/rosenbrock.py
# Small runs of the derivative-free solver on Rosenbrock and Branin functions.
# Run from the repository root: python -m quadtr.examples.rosenbrock

import logging
import math

import numpy as np

from quadtr import CallbackSignal, UOAConfig, minimize

# ---------------------------
# Test problems
# ---------------------------

def rosenbrock(x: np.ndarray, a: float = 1.0, b: float = 100.0) -> float:
    """
    Chained Rosenbrock function:
        f(x) = sum_i (a - x_i)^2 + b (x_{i+1} - x_i^2)^2
    Global min at x = (a, ..., a), f = 0 (for a = 1)
    """
    return float(np.sum((a - x[:-1]) ** 2 + b * (x[1:] - x[:-1] ** 2) ** 2))


def branin(x: np.ndarray) -> float:
    """
    Branin (2D) on domain x1 in [-5, 10], x2 in [0, 15].
    Standard form (global minima ~ 0.397887 at three points).
    """
    x1, x2 = x
    a = 1.0
    b = 5.1 / (4.0 * math.pi ** 2)
    c = 5.0 / math.pi
    r = 6.0
    s = 10.0
    t = 1.0 / (8.0 * math.pi)
    return a * (x2 - b * x1 ** 2 + c * x1 - r) ** 2 + s * (1 - t) * math.cos(x1) + s


# ---------------------------
# Utility to run a single solve
# ---------------------------

def run_solve(name: str, f, x0: np.ndarray, max_evals: int = 2000, **options):
    """
    name: label for the run
    f: objective function f(x)
    x0: starting point
    options: UOAConfig fields overriding the defaults below
    """
    print("=" * 80)
    print(f"{name}: x0={x0}")
    cfg = UOAConfig(rhobeg=0.5, rhoend=1e-8, maxfun=max_evals, iprint=1)

    def progress(n, x, fx, nf, tr):
        if tr % 25 == 0:
            print(f"   iter {tr:4d}  nf={nf:5d}  f={fx:.9e}")
        return CallbackSignal.CONTINUE

    res = minimize(f, np.array(x0, dtype=float), callback=progress, config=cfg, **options)
    print(f"-> {name} DONE. x* = {res.x}, f* = {res.fun:.9f}, nf = {res.nfev}")
    print(f"   status {res.status.name}: {res.message}")
    print("-" * 80)
    return res


# ---------------------------
# Main: run a few scenarios
# ---------------------------

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    np.set_printoptions(precision=6, suppress=True)

    # 1) Rosenbrock, default and dense interpolation sets
    run_solve("Rosenbrock 2D", rosenbrock, x0=np.array([-1.2, 1.0]))
    run_solve("Rosenbrock 2D (npt=6)", rosenbrock, x0=np.array([-1.2, 1.0]), npt=6)
    run_solve("Rosenbrock 6D", rosenbrock, x0=np.zeros(6), max_evals=6000)

    # 2) Branin, multiple starts
    starts = [
        np.array([-3.0, 12.0]),
        np.array([ 3.0,  2.0]),
        np.array([ 9.0,  3.0]),
    ]
    for i, x0 in enumerate(starts, 1):
        run_solve(f"Branin #{i}", branin, x0=x0)

    # 3) Stop as soon as f <= 0.5
    run_solve("Branin with target", branin, x0=starts[0], ftarget=0.5)
