import logging
import warnings
from typing import Callable, Optional, Tuple

import numpy as np
from numpy.linalg import norm
from scipy.linalg import LinAlgError

from .blocks.aux import ExitStatus, UOAConfig
from .blocks.tr import biglag, make_operator
from .dfo_aux import initial_displacements, kkt_inverse_blocks
from .dfo_model import LagrangeBasis, QuadraticModel


class TRModel:
    def __init__(self, n: int, npt: int, cfg: Optional[UOAConfig] = None):
        """
        Interpolation set of a quadratic trust-region model.

        Args:
            n (int): Number of variables.
            npt (int): Number of interpolation points, in [n+2, (n+1)(n+2)/2].
            cfg (UOAConfig, optional): Resolved run configuration.
        """
        self.n = n
        self.npt = npt
        self.cfg = cfg or UOAConfig().resolve(n)
        self.xbase = np.zeros(n, dtype=np.float64)
        self.xpt = np.zeros((npt, n), dtype=np.float64)
        self.fval = np.full(npt, np.inf, dtype=np.float64)
        self.kopt = 0
        self.basis: Optional[LagrangeBasis] = None
        self.model: Optional[QuadraticModel] = None

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #
    @property
    def xopt(self) -> np.ndarray:
        return self.xpt[self.kopt]

    @property
    def fopt(self) -> float:
        return float(self.fval[self.kopt])

    def _distsq_to_opt(self) -> np.ndarray:
        return np.sum((self.xpt - self.xopt[None, :]) ** 2, axis=1)

    # ------------------------------------------------------------------ #
    # Initialization
    # ------------------------------------------------------------------ #
    def initialize(
        self,
        x0: np.ndarray,
        rhobeg: float,
        evaluate: Callable[[np.ndarray], Tuple[float, Optional[ExitStatus]]],
    ) -> Optional[ExitStatus]:
        """
        Sample the initial points around ``x0`` and build basis and model.

        Args:
            x0 (np.ndarray): Starting point, becomes the base point.
            rhobeg (float): Length of the initial coordinate steps.
            evaluate (callable): Returns ``(f, status)`` for an absolute
                point; a non-None status stops the initialization.

        Returns:
            The stopping status, or None once all ``npt`` values are known.
        """
        self.xbase = np.array(x0, dtype=np.float64)
        self.xpt = initial_displacements(self.n, self.npt, rhobeg)
        self.fval = np.full(self.npt, np.inf, dtype=np.float64)
        for k in range(self.npt):
            f, status = evaluate(self.xbase + self.xpt[k])
            if np.isfinite(f):
                self.fval[k] = f
            if status is not None:
                self.kopt = int(np.argmin(self.fval))
                logging.debug(f"[TRModel] initialization stopped at point {k}: {status.name}")
                return status
        self._build(rhobeg)
        return None

    def _build(self, rhobeg: float) -> None:
        self.kopt = int(np.argmin(self.fval))
        self.basis = LagrangeBasis.initial(self.n, self.npt, rhobeg, self.cfg.denom_tol)
        model = QuadraticModel.initial(self.fval, rhobeg, self.n)
        model.gopt = model.gopt + model.hq @ self.xopt
        self.model = model
        logging.debug(f"[TRModel] built on {self.npt} points, kopt={self.kopt}, fopt={self.fopt:.6e}")

    # ------------------------------------------------------------------ #
    # Model queries
    # ------------------------------------------------------------------ #
    def hess_operator(self):
        return self.model.operator(self.xpt)

    def predicted_change(self, d: np.ndarray) -> float:
        return self.model.value_change(d, self.xpt)

    def model_values(self) -> np.ndarray:
        """Q at every interpolation point."""
        D = self.xpt - self.xopt[None, :]
        return np.array([self.fopt + self.model.value_change(d, self.xpt) for d in D])

    def interpolation_error(self) -> float:
        return float(np.max(np.abs(self.model_values() - self.fval)))

    def is_finite(self) -> bool:
        return self.model.is_finite() and self.basis.is_finite()

    # ------------------------------------------------------------------ #
    # Poisedness
    # ------------------------------------------------------------------ #
    def farthest_point(self, delta: float) -> Optional[Tuple[int, float]]:
        """Farthest point from xopt if it lies beyond 2*delta, else None."""
        distsq = self._distsq_to_opt()
        k = int(np.argmax(distsq))
        if distsq[k] > 4.0 * delta * delta:
            return k, float(distsq[k])
        return None

    def is_adequately_poised(self, delta: float) -> bool:
        return self.farthest_point(delta) is None

    def propose_replacement(
        self,
        vlag: np.ndarray,
        beta: float,
        delta: float,
        rho: float,
        exclude_opt: bool,
    ) -> Optional[int]:
        """
        Index of the point to drop for the trial point, or None.

        Each point is scored by the modulus of its update denominator, raised
        by (dist^2 / rhosq)^3 when it lies beyond max(delta/10, rho) from
        xopt. With ``exclude_opt`` (the trial value is not an improvement)
        xopt is kept and a score must exceed one. The lowest index wins ties.
        """
        score = np.abs(self.basis.denominators(vlag, beta))
        distsq = self._distsq_to_opt()
        rhosq = max(0.1 * delta, rho) ** 2
        far = distsq > rhosq
        score[far] *= (distsq[far] / rhosq) ** 3
        score = np.where(np.isfinite(score), score, -1.0)
        floor = 0.0
        if exclude_opt:
            score[self.kopt] = -1.0
            floor = 1.0
        knew = int(np.argmax(score))
        if not score[knew] > floor:
            return None
        if not self.basis.denominator_ok(knew, vlag, beta):
            logging.debug(f"[TRModel] denominator of point {knew} rejected")
            return None
        return knew

    # ------------------------------------------------------------------ #
    # Geometry step
    # ------------------------------------------------------------------ #
    def geometry_step(self, knew: int, dstep: float) -> Tuple[np.ndarray, np.ndarray, float, bool]:
        """
        Step of length ``dstep`` that makes the replacement of ``knew`` well
        conditioned, with its ``vlag``/``beta`` and whether the denominator
        can be trusted.
        """
        xopt = self.xopt
        hcol = self.basis.omega_row(knew)
        glag = self.basis.lagrange_gradient(knew, xopt, self.xpt)
        xpt = self.xpt
        hess = make_operator(lambda v: xpt.T @ (hcol * (xpt @ np.ravel(v))), self.n)
        d = biglag(glag, hess, xpt[knew] - xopt, dstep, maxiter=self.n)
        vlag, beta = self.basis.vlag_beta(d, xopt, xpt, self.kopt)

        tausq = vlag[knew] ** 2
        sigma = hcol[knew] * beta + tausq
        if not (tausq > 0.0 and abs(sigma) > 0.8 * tausq):
            d, vlag, beta = self._alternative_step(knew, dstep, d, glag, vlag, beta)
        return d, vlag, beta, self.basis.denominator_ok(knew, vlag, beta)

    def _alternative_step(self, knew, dstep, d, glag, vlag, beta):
        """
        Largest |denominator| among steps of length dstep along the lines
        through xopt and the other points and along the Lagrange gradient.
        """
        alpha = self.basis.omega_diag()[knew]
        best = (abs(alpha * beta + vlag[knew] ** 2), d, vlag, beta)
        xopt = self.xopt
        dirs = [self.xpt[k] - xopt for k in range(self.npt) if k != self.kopt]
        dirs.append(glag)
        for u in dirs:
            un = norm(u)
            if un == 0.0:
                continue
            for sgn in (1.0, -1.0):
                cand = (sgn * dstep / un) * u
                vl, bt = self.basis.vlag_beta(cand, xopt, self.xpt, self.kopt)
                sig = abs(alpha * bt + vl[knew] ** 2)
                if sig > best[0]:
                    best = (sig, cand, vl, bt)
        logging.debug(f"[TRModel] alternative geometry step, |sigma|={best[0]:.3e}")
        return best[1], best[2], best[3]

    # ------------------------------------------------------------------ #
    # Replacement / base shift
    # ------------------------------------------------------------------ #
    def replace(self, knew: int, d: np.ndarray, f: float, vlag: np.ndarray, beta: float) -> None:
        """
        Put ``xopt + d`` (value ``f``) in place of point ``knew``.

        Basis, model, points and kopt are updated together, so the model
        interpolates the new set when this returns. Raises
        DamagingRoundingError with nothing modified if the denominator is bad.
        """
        xopt = self.xopt.copy()
        fopt = self.fopt
        diff = f - fopt - self.model.value_change(d, self.xpt)
        self.basis.update(knew, vlag, beta)
        self.model.absorb_implicit(knew, self.xpt[knew])
        self.xpt[knew] = xopt + d
        self.fval[knew] = f
        self.model.update(knew, diff, self.basis, self.xpt, xopt)
        if f < fopt:
            self.kopt = knew
            self.model.move_center(d, self.xpt)
        if self.cfg.debug:
            self.check_interpolation()
            try:
                logging.debug(f"[TRModel] conditioning error {self.conditioning_error():.3e}")
            except LinAlgError as exc:
                logging.debug(f"[TRModel] reference KKT solve failed: {exc}")

    def maybe_shift_base(self, dsq: float) -> bool:
        """Shift the base to xopt when the step is tiny compared to |xopt|."""
        xoptsq = float(self.xopt @ self.xopt)
        if xoptsq > 0.0 and dsq <= 1e-3 * xoptsq:
            self.shift_base()
            return True
        return False

    def shift_base(self) -> None:
        s = self.xopt.copy()
        self.basis.shift_base(s, self.xpt)
        self.model.shift_base(s, self.xpt)
        self.xpt -= s[None, :]
        self.xbase += s
        logging.debug(f"[TRModel] base shifted by |s|={norm(s):.3e}")

    # ------------------------------------------------------------------ #
    # Debug checks
    # ------------------------------------------------------------------ #
    def conditioning_error(self) -> float:
        """Relative distance between the carried basis and a fresh KKT inverse."""
        omega, bmat = kkt_inverse_blocks(self.xpt)
        err_o = norm(self.basis.omega() - omega) / max(1.0, norm(omega))
        err_b = norm(self.basis.bmat - bmat) / max(1.0, norm(bmat))
        return float(max(err_o, err_b))

    def check_interpolation(self) -> float:
        err = self.interpolation_error()
        scale = max(1.0, float(np.max(np.abs(self.fval))))
        tol = 10.0 * np.sqrt(np.finfo(float).eps) * max(self.n, self.npt) * scale
        if err > tol:
            warnings.warn(
                f"the model error at the interpolation points is {err:.3e} (tolerance {tol:.3e})",
                RuntimeWarning,
                stacklevel=2,
            )
        return err
