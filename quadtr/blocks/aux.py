# quadtr/blocks/aux.py
# Shared infrastructure for the quadratic-model trust-region solver:
# run configuration, exit statuses, callback signal and the result record.

from __future__ import annotations

# =========================
# Standard library
# =========================
import logging
import warnings
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

# =========================
# Third-party
# =========================
import numpy as np


# ======================================
# Enums
# ======================================
class ExitStatus(Enum):
    """Terminal conditions of a run (integer codes are stable)."""

    SMALL_TR_RADIUS = 0
    FTARGET_ACHIEVED = 1
    TRSUBP_FAILED = 2
    MAXFUN_REACHED = 3
    DAMAGING_ROUNDING = 7
    MAXTR_REACHED = 20
    CALLBACK_TERMINATE = 30
    MEMORY_ALLOCATION_FAILS = 101
    NAN_INF_X = -1
    NAN_INF_F = -2
    NAN_INF_MODEL = -3

    @property
    def message(self) -> str:
        return _EXIT_MESSAGES[self]


_EXIT_MESSAGES = {
    ExitStatus.SMALL_TR_RADIUS: "the lower bound for the trust region radius is reached",
    ExitStatus.FTARGET_ACHIEVED: "the target function value is achieved",
    ExitStatus.TRSUBP_FAILED: "a trust region step failed to reduce the quadratic model",
    ExitStatus.MAXFUN_REACHED: "the objective function has been evaluated MAXFUN times",
    ExitStatus.DAMAGING_ROUNDING: "rounding errors are becoming damaging",
    ExitStatus.MAXTR_REACHED: "the trust region iteration has been performed MAXTR times",
    ExitStatus.CALLBACK_TERMINATE: "a callback function requested termination",
    ExitStatus.MEMORY_ALLOCATION_FAILS: "memory allocation fails",
    ExitStatus.NAN_INF_X: "NaN or Inf occurs in x",
    ExitStatus.NAN_INF_F: "the objective function returns NaN or +Inf",
    ExitStatus.NAN_INF_MODEL: "NaN or Inf occurs in the model",
}


class CallbackSignal(Enum):
    """Value returned by a progress callback."""

    CONTINUE = "continue"
    STOP = "stop"


class DamagingRoundingError(ArithmeticError):
    """Raised when an update denominator is too small to be trusted."""


# ======================================
# Global configuration
# ======================================
@dataclass(frozen=True)
class UOAConfig:
    """
    Options of a single run.

    Fields left as ``None`` depend on the dimension and are filled in by
    :meth:`resolve`, which also validates everything and returns a new
    instance. The object itself is never mutated.
    """

    # ---------------- Trust region ----------------
    rhobeg: float = 1.0
    rhoend: float = 1e-6
    delta_max: float = np.inf
    eta1: float = 0.1
    eta2: float = 0.7
    gamma1: float = 0.5
    gamma2: float = 2.0

    # ---------------- Budget / stopping ----------------
    maxfun: Optional[int] = None  # 500 * n
    maxtr: Optional[int] = None  # 2 * maxfun
    ftarget: float = -np.inf

    # ---------------- Interpolation set ----------------
    npt: Optional[int] = None  # 2 * n + 1
    denom_tol: float = 1e2 * np.finfo(float).eps

    # ---------------- History ----------------
    maxhist: Optional[int] = None  # maxfun
    max_memory: int = 2**31  # bytes allowed for the history buffers
    output_xhist: bool = True  # False keeps fhist only

    # ---------------- Output ----------------
    iprint: int = 0
    debug: bool = False

    def resolve(self, n: int) -> "UOAConfig":
        """Fill dimension-dependent defaults and validate. Raises ValueError."""
        if n < 1:
            raise ValueError(f"Number of variables n must be positive, got {n}")

        rhobeg, rhoend = float(self.rhobeg), float(self.rhoend)
        if not (np.isfinite(rhobeg) and rhobeg > 0):
            raise ValueError(f"rhobeg must be positive and finite, got {self.rhobeg}")
        if not (np.isfinite(rhoend) and rhoend > 0):
            raise ValueError(f"rhoend must be positive and finite, got {self.rhoend}")
        if rhoend > rhobeg:
            raise ValueError(f"rhoend={rhoend} must not exceed rhobeg={rhobeg}")
        if not (self.delta_max >= rhobeg):
            raise ValueError(f"delta_max={self.delta_max} must not be below rhobeg={rhobeg}")

        if not (0.0 < self.eta1 <= self.eta2 < 1.0):
            raise ValueError(
                f"need 0 < eta1 <= eta2 < 1, got eta1={self.eta1}, eta2={self.eta2}"
            )
        if not (0.0 < self.gamma1 < 1.0 < self.gamma2):
            raise ValueError(
                f"need 0 < gamma1 < 1 < gamma2, got gamma1={self.gamma1}, gamma2={self.gamma2}"
            )
        if np.isnan(self.ftarget):
            raise ValueError("ftarget must not be NaN")

        maxfun = 500 * n if self.maxfun is None else _as_int(self.maxfun, "maxfun")
        if maxfun < 1:
            raise ValueError(f"maxfun must be at least 1, got {maxfun}")

        npt = 2 * n + 1 if self.npt is None else _as_int(self.npt, "npt")
        npt_max = (n + 1) * (n + 2) // 2
        if not (n + 2 <= npt <= npt_max):
            raise ValueError(f"npt must lie in [{n + 2}, {npt_max}] for n={n}, got {npt}")

        maxtr = 2 * maxfun if self.maxtr is None else _as_int(self.maxtr, "maxtr")
        if maxtr < 1:
            raise ValueError(f"maxtr must be at least 1, got {maxtr}")

        maxhist = maxfun if self.maxhist is None else _as_int(self.maxhist, "maxhist")
        if maxhist < 0:
            raise ValueError(f"maxhist must be non-negative, got {maxhist}")
        maxhist = clamp_maxhist(maxhist, n, self.max_memory, self.output_xhist)

        if not (self.denom_tol >= 0):
            raise ValueError(f"denom_tol must be non-negative, got {self.denom_tol}")

        return replace(
            self,
            rhobeg=rhobeg,
            rhoend=rhoend,
            maxfun=maxfun,
            maxtr=maxtr,
            npt=npt,
            maxhist=maxhist,
            ftarget=float(self.ftarget),
            iprint=int(self.iprint),
        )


def clamp_maxhist(maxhist: int, n: int, max_memory: int, output_xhist: bool = True) -> int:
    """Largest history length whose buffers fit in ``max_memory`` bytes."""
    doubles = n + 1 if output_xhist else 1
    bytes_per_entry = doubles * np.dtype(float).itemsize
    cap = int(max_memory) // bytes_per_entry
    if maxhist > cap:
        warnings.warn(
            f"maxhist={maxhist} exceeds the memory ceiling of {max_memory} bytes; "
            f"it is reduced to {cap}",
            RuntimeWarning,
            stacklevel=3,
        )
        logging.debug(f"[UOAConfig] maxhist clamped {maxhist} -> {cap}")
        return cap
    return maxhist


# ======================================
# Result record
# ======================================
@dataclass
class OptimizeResult:
    """Outcome of a run: best point, its value, counters and history."""

    x: np.ndarray
    fun: float
    nfev: int
    status: ExitStatus
    xhist: np.ndarray
    fhist: np.ndarray
    nit: int = 0
    rho: float = np.nan
    info: dict = field(default_factory=dict)

    @property
    def message(self) -> str:
        return self.status.message

    @property
    def success(self) -> bool:
        return self.status in (ExitStatus.SMALL_TR_RADIUS, ExitStatus.FTARGET_ACHIEVED)

    def __repr__(self) -> str:
        return (
            f"OptimizeResult(status={self.status.name}, fun={self.fun:.6g}, "
            f"nfev={self.nfev}, nit={self.nit}, x={np.array2string(self.x, precision=6)})"
        )


# ======================================
# Array helpers
# ======================================
def _as_float_array(a) -> np.ndarray:
    return np.array(a, dtype=float)


def _finite_or_zero(a: np.ndarray) -> np.ndarray:
    if np.isfinite(a).all():
        return a
    return np.nan_to_num(a, nan=0.0, posinf=0.0, neginf=0.0)


def _as_int(v, name: str) -> int:
    if isinstance(v, bool) or int(v) != v:
        raise ValueError(f"{name} must be an integer, got {v!r}")
    return int(v)
