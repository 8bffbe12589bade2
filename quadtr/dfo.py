# quadtr/dfo.py
# Driver of the derivative-free quadratic-model trust-region method:
# a small state machine around TRModel (points + model), TrustRegionManager
# (delta / rho) and History.
from __future__ import annotations

import logging
import warnings
from dataclasses import replace
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from .blocks.aux import (
    CallbackSignal,
    DamagingRoundingError,
    ExitStatus,
    OptimizeResult,
    UOAConfig,
    _as_float_array,
    _finite_or_zero,
)
from .blocks.tr import TrustRegionManager, safe_norm, trsapp
from .dfo_aux import History
from .dfo_tr import TRModel


class SolverState(Enum):
    INITIALIZING = "initializing"
    STEPPING = "stepping"
    GEOMETRY_FIXUP = "geometry_fixup"
    REDUCING_RADIUS = "reducing_radius"
    TERMINATED = "terminated"


class DFOSolver:
    """
    Minimize ``fun`` from ``x0`` with quadratic models and a trust region.

    The caller's ``x0`` is copied on entry and never modified; all run state
    belongs to this instance, so independent runs need independent solvers.
    """

    def __init__(
        self,
        fun: Callable[..., float],
        x0,
        config: Optional[UOAConfig] = None,
        *,
        args: Sequence = (),
        callback: Optional[Callable[..., Optional[CallbackSignal]]] = None,
    ):
        if not callable(fun):
            raise ValueError("Objective function fun must be callable")
        if callback is not None and not callable(callback):
            raise ValueError("callback must be callable or None")

        x = _as_float_array(x0)
        if x.ndim != 1 or x.size == 0:
            raise ValueError(f"x0 must be a non-empty 1-D array, got shape {x.shape}")
        if not np.isfinite(x).all():
            warnings.warn(
                "x0 contains NaN or infinite values; they are replaced by 0",
                RuntimeWarning,
                stacklevel=2,
            )
            x = _finite_or_zero(x)

        self.n = x.size
        self.x0 = x
        self.cfg = (config if config is not None else UOAConfig()).resolve(self.n)
        self.fun = fun
        self.args = tuple(args)
        self.callback = callback

        self.state = SolverState.INITIALIZING
        self.status: Optional[ExitStatus] = None
        self.nf = 0
        self.ntr = 0
        self.tr: Optional[TRModel] = None
        self.radius: Optional[TrustRegionManager] = None
        self.history: Optional[History] = None

        self.x_best = self.x0.copy()
        self.f_best = np.nan

        # per-iteration bookkeeping
        self._ratio = -1.0
        self._dnorm = 0.0
        self._nfsav = 0
        self._short_d: Optional[np.ndarray] = None
        self._knew_geo = -1
        self._dstep = 0.0

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def solve(self) -> OptimizeResult:
        try:
            self.history = History(self.n, self.cfg.maxhist, self.cfg.output_xhist)
            self.tr = TRModel(self.n, self.cfg.npt, self.cfg)
            self.radius = TrustRegionManager(self.cfg)
        except MemoryError:
            logging.error("[DFO] could not allocate the solver buffers")
            self.status = ExitStatus.MEMORY_ALLOCATION_FAILS
            self.tr = self.radius = None
            return self._result()

        handlers = {
            SolverState.INITIALIZING: self._initialize,
            SolverState.STEPPING: self._stepping,
            SolverState.GEOMETRY_FIXUP: self._geometry_fixup,
            SolverState.REDUCING_RADIUS: self._reducing_radius,
        }
        try:
            while self.state is not SolverState.TERMINATED:
                nxt = handlers[self.state]()
                if nxt is not self.state:
                    logging.debug(f"[DFO] {self.state.name} -> {nxt.name}")
                self.state = nxt
        except MemoryError:
            logging.error(f"[DFO] memory allocation failed in state {self.state.name}")
            self.state = self._terminate(ExitStatus.MEMORY_ALLOCATION_FAILS)

        self._log(1, f"Return from the solver because {self.status.message}.")
        self._log(1, f"Number of function values = {self.nf}   Least value of F = {self.f_best:.15g}")
        return self._result()

    # ------------------------------------------------------------------ #
    # Evaluation
    # ------------------------------------------------------------------ #
    def _log(self, level: int, msg: str) -> None:
        if self.cfg.iprint >= level:
            logging.info(msg)
        else:
            logging.debug(msg)

    def _evaluate(self, x: np.ndarray) -> Tuple[float, Optional[ExitStatus]]:
        """
        Evaluate the objective at ``x`` with the pre/post checks.

        Returns ``(f, status)``; ``f`` is NaN when no evaluation took place
        and ``status`` is the terminal condition triggered, if any.
        """
        if not np.isfinite(x).all():
            return np.nan, ExitStatus.NAN_INF_X
        if self.nf >= self.cfg.maxfun:
            return np.nan, ExitStatus.MAXFUN_REACHED

        f = float(np.squeeze(self.fun(x.copy(), *self.args)))
        self.nf += 1
        self.history.append(x, f)
        self._log(3, f"Function number {self.nf}    F = {f:.15g}")

        if not np.isfinite(f):
            return f, ExitStatus.NAN_INF_F
        if not f >= self.f_best:  # also true while f_best is NaN
            self.f_best = f
            self.x_best = x.copy()
        if f <= self.cfg.ftarget:
            return f, ExitStatus.FTARGET_ACHIEVED
        if self.nf >= self.cfg.maxfun:
            return f, ExitStatus.MAXFUN_REACHED
        return f, None

    def _terminate(self, status: ExitStatus) -> SolverState:
        self.status = status
        return SolverState.TERMINATED

    # ------------------------------------------------------------------ #
    # States
    # ------------------------------------------------------------------ #
    def _initialize(self) -> SolverState:
        status = self.tr.initialize(self.x0, self.cfg.rhobeg, self._evaluate)
        if status is not None:
            return self._terminate(status)
        if not self.tr.is_finite():
            return self._terminate(ExitStatus.NAN_INF_MODEL)
        self._nfsav = self.nf
        self._log(2, f"New RHO = {self.radius.rho:.4g}   Number of function values = {self.nf}")
        return SolverState.STEPPING

    def _checkpoint(self) -> Optional[ExitStatus]:
        """Once per outer iteration: callback and iteration cap."""
        if self.ntr > 0 and self.callback is not None:
            signal = self.callback(self.n, self.x_best.copy(), self.f_best, self.nf, self.ntr)
            if isinstance(signal, (bool, np.bool_)):
                # plain terminate flag
                signal = CallbackSignal.STOP if signal else CallbackSignal.CONTINUE
            elif signal is not None and not isinstance(signal, CallbackSignal):
                raise TypeError(
                    f"callback must return None, a bool or a CallbackSignal, got {signal!r}"
                )
            if signal is CallbackSignal.STOP:
                return ExitStatus.CALLBACK_TERMINATE
        if self.ntr >= self.cfg.maxtr:
            return ExitStatus.MAXTR_REACHED
        return None

    def _stepping(self) -> SolverState:
        status = self._checkpoint()
        if status is not None:
            return self._terminate(status)
        self.ntr += 1

        tr, radius = self.tr, self.radius
        rho = radius.rho
        d, crvmin, _ = trsapp(tr.model.gopt, tr.hess_operator(), radius.delta)
        dnorm = min(radius.delta, safe_norm(d))
        self._dnorm = dnorm

        if dnorm < 0.5 * rho:
            # too short to be worth an evaluation
            self._short_d = d
            self._ratio = -1.0
            radius.shrink_after_short_step()
            if self.nf <= self._nfsav + 2 or radius.short_step_needs_geometry(crvmin):
                return self._geometry_check()
            return SolverState.REDUCING_RADIUS
        self._short_d = None

        tr.maybe_shift_base(float(d @ d))
        vquad = tr.predicted_change(d)
        qred = -vquad
        if not qred > 0.0:
            logging.debug(f"[DFO] predicted reduction {qred:.3e} is not positive")
            return self._terminate(ExitStatus.TRSUBP_FAILED)

        vlag, beta = tr.basis.vlag_beta(d, tr.xopt, tr.xpt, tr.kopt)
        fopt = tr.fopt
        f, status = self._evaluate(tr.xbase + tr.xopt + d)
        if status is not None:
            return self._terminate(status)

        radius.record_model_error(f - fopt - vquad)
        if dnorm > rho:
            self._nfsav = self.nf
        decision = radius.decide(fopt - f, qred, dnorm)
        self._ratio = decision.ratio

        knew = tr.propose_replacement(vlag, beta, radius.delta, rho, exclude_opt=f >= fopt)
        if knew is None:
            return self._geometry_check()
        try:
            tr.replace(knew, d, f, vlag, beta)
        except DamagingRoundingError:
            return self._terminate(ExitStatus.DAMAGING_ROUNDING)
        if not tr.is_finite():
            return self._terminate(ExitStatus.NAN_INF_MODEL)
        if f <= fopt - 0.1 * qred:
            return SolverState.STEPPING
        return self._geometry_check()

    def _geometry_check(self) -> SolverState:
        radius = self.radius
        far = self.tr.farthest_point(radius.delta)
        if far is not None:
            self._knew_geo, distsq = far
            self._dstep = max(min(0.1 * np.sqrt(distsq), 0.5 * radius.delta), radius.rho)
            return SolverState.GEOMETRY_FIXUP
        if self._ratio > 0.0:
            return SolverState.STEPPING
        if max(radius.delta, self._dnorm) > radius.rho:
            return SolverState.STEPPING
        return SolverState.REDUCING_RADIUS

    def _geometry_fixup(self) -> SolverState:
        tr = self.tr
        knew, dstep = self._knew_geo, self._dstep
        if tr.maybe_shift_base(dstep * dstep):
            if not tr.is_finite():
                return self._terminate(ExitStatus.NAN_INF_MODEL)
        d, vlag, beta, ok = tr.geometry_step(knew, dstep)
        if not ok:
            logging.debug(f"[DFO] geometry step for point {knew} has an unusable denominator")
            return self._terminate(ExitStatus.DAMAGING_ROUNDING)

        vquad = tr.predicted_change(d)
        fopt = tr.fopt
        f, status = self._evaluate(tr.xbase + tr.xopt + d)
        if status is not None:
            return self._terminate(status)
        self.radius.record_model_error(f - fopt - vquad)
        try:
            tr.replace(knew, d, f, vlag, beta)
        except DamagingRoundingError:
            return self._terminate(ExitStatus.DAMAGING_ROUNDING)
        if not tr.is_finite():
            return self._terminate(ExitStatus.NAN_INF_MODEL)
        return SolverState.STEPPING

    def _reducing_radius(self) -> SolverState:
        radius = self.radius
        if radius.reduce_rho():
            self._nfsav = self.nf
            self._log(2, f"New RHO = {radius.rho:.4g}   Number of function values = {self.nf}")
            self._log(2, f"Least value of F = {self.f_best:.15g}")
            return SolverState.STEPPING

        # rho == rhoend: try the last short step once if it was never evaluated
        if self._short_d is not None and self.nf < self.cfg.maxfun:
            tr = self.tr
            self._evaluate(tr.xbase + tr.xopt + self._short_d)
            self._short_d = None
        return self._terminate(ExitStatus.SMALL_TR_RADIUS)

    # ------------------------------------------------------------------ #
    # Result
    # ------------------------------------------------------------------ #
    def _result(self) -> OptimizeResult:
        info = {}
        if self.tr is not None and self.tr.model is not None:
            info = {"delta": self.radius.delta, "npt": self.cfg.npt, "kopt": self.tr.kopt}
        if self.history is not None:
            xhist, fhist = self.history.xhist, self.history.fhist
        else:
            xhist, fhist = np.empty((0, self.n)), np.empty(0)
        return OptimizeResult(
            x=self.x_best.copy(),
            fun=float(self.f_best),
            nfev=self.nf,
            status=self.status,
            xhist=xhist,
            fhist=fhist,
            nit=self.ntr,
            rho=self.radius.rho if self.radius is not None else np.nan,
            info=info,
        )


def minimize(
    fun: Callable[..., float],
    x0,
    args: Sequence = (),
    callback: Optional[Callable[..., Optional[CallbackSignal]]] = None,
    config: Optional[UOAConfig] = None,
    **options,
) -> OptimizeResult:
    """
    Minimize a scalar function of several variables without derivatives.

    Parameters
    ----------
    fun : callable
        ``fun(x, *args) -> float``. NaN or infinite values end the run.
    x0 : array_like, shape (n,)
        Starting point; copied, never modified.
    args : tuple, optional
        Extra arguments passed to ``fun``.
    callback : callable, optional
        ``callback(n, x, f, nf, tr)`` called once per trust-region iteration
        with the best point so far; returning ``CallbackSignal.STOP`` or ``True``
        ends the run, any other value besides None raises TypeError.
    config : UOAConfig, optional
        Base configuration. Keyword ``options`` override its fields
        (``rhobeg``, ``rhoend``, ``maxfun``, ``npt``, ``ftarget``, ...).

    Returns
    -------
    OptimizeResult
    """
    cfg = config if config is not None else UOAConfig()
    if options:
        cfg = replace(cfg, **options)
    return DFOSolver(fun, x0, cfg, args=args, callback=callback).solve()
