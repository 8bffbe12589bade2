from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple, Union

import numpy as np
import scipy.sparse.linalg as spla

from .aux import UOAConfig

MatLike = Union[np.ndarray, spla.LinearOperator, Callable[[np.ndarray], np.ndarray]]
Vec = np.ndarray


# ---------------------------- Status ---------------------------- #
class TRStatus(Enum):
    SUCCESS = "success"
    BOUNDARY = "boundary"
    NEG_CURV = "negative_curvature"
    MAX_ITER = "max_iterations"


# ---------------------------- Utilities ---------------------------- #
def safe_norm(x: Vec) -> float:
    return float(np.linalg.norm(x)) if x.size > 0 else 0.0


def make_operator(A: MatLike, n: int) -> spla.LinearOperator:
    if isinstance(A, spla.LinearOperator):
        return A
    if callable(A):
        return spla.LinearOperator((n, n), matvec=A, dtype=float)
    return spla.aslinearoperator(np.asarray(A, dtype=float))


def _boundary_tau_euclid(p: Vec, d: Vec, Delta: float) -> float:
    """Largest tau >= 0 with ||p + tau d|| = Delta, assuming ||p|| <= Delta."""
    pTd, dTd = float(p @ d), float(d @ d)
    if dTd <= 1e-300:
        return 0.0
    slack = max(0.0, Delta * Delta - float(p @ p))
    root = np.sqrt(pTd * pTd + dTd * slack)
    if pTd > 0:
        return slack / (pTd + root)
    return (root - pTd) / dTd


def _circle_search(values: Callable[[np.ndarray], np.ndarray], iu: int = 49,
                   modulus: bool = False) -> float:
    """
    Angle in [0, 2*pi) that minimizes ``values`` (or maximizes its modulus).

    ``values`` is sampled at ``iu + 1`` equally spaced angles and the best
    sample is refined by a parabola through it and its two neighbours.
    Ties go to the smallest angle.
    """
    h = 2.0 * np.pi / (iu + 1)
    vals = np.asarray(values(h * np.arange(iu + 1)), dtype=float)
    score = np.abs(vals) if modulus else -vals
    isave = int(np.argmax(score))
    best = vals[isave]
    prev = vals[isave - 1]  # wraps to the last sample for isave == 0
    nxt = vals[(isave + 1) % (iu + 1)]
    frac = 0.0
    if prev != nxt:
        prev -= best
        nxt -= best
        if prev + nxt != 0.0:
            frac = 0.5 * (prev - nxt) / (prev + nxt)
    return h * (isave + frac)


# ---------------------------- Two-phase trust-region CG ---------------------------- #
def trsapp(
    g: Vec,
    H: MatLike,
    Delta: float,
    maxiter: Optional[int] = None,
) -> Tuple[Vec, float, TRStatus]:
    """
    Approximate minimizer of ``g'd + 0.5 d'Hd`` subject to ``||d|| <= Delta``.

    Phase one is truncated conjugate gradients from ``d = 0``. It stops at
    the boundary, on non-positive curvature, when the gradient norm has been
    reduced enough, or when the last iteration gained less than 1% of the
    total reduction. If the boundary was hit, phase two keeps ``||d|| = Delta``
    and rotates ``d`` in the plane spanned by ``d`` and the model gradient at
    ``d`` while each rotation still gains more than 1% of the total.

    Parameters
    ----------
    g : ndarray, shape (n,)
        Model gradient at the trust-region center.
    H : ndarray, LinearOperator or callable
        Model Hessian (only products are used).
    Delta : float
        Trust-region radius.
    maxiter : int, optional
        Iteration cap shared by both phases (default ``n``).

    Returns
    -------
    d : ndarray, shape (n,)
        The step, ``||d|| <= Delta`` up to rounding.
    crvmin : float
        Least Rayleigh quotient ``d'Hd / d'd`` seen by CG when the solution is
        interior, zero when the boundary was reached.
    status : TRStatus
    """
    n = g.size
    Hop = make_operator(H, n)
    itermax = n if maxiter is None else max(1, int(maxiter))
    delsq = Delta * Delta

    step = np.zeros(n)
    hs = np.zeros(n)
    d = -np.asarray(g, dtype=float)
    dd = float(d @ d)
    crvmin = 0.0
    if dd == 0.0 or not np.isfinite(dd):
        return step, crvmin, TRStatus.SUCCESS

    ds = ss = 0.0
    gg = ggbeg = dd
    qred = 0.0
    iterc = 0
    status = TRStatus.BOUNDARY

    # ---- phase one: truncated CG ----
    while True:
        iterc += 1
        bstep = _boundary_tau_euclid(step, d, Delta)
        hd = np.asarray(Hop @ d, dtype=float)
        dhd = float(d @ hd)

        alpha = bstep
        if dhd > 0.0:
            curv = dhd / dd
            crvmin = curv if iterc == 1 else min(crvmin, curv)
            alpha = min(alpha, gg / dhd)
        else:
            status = TRStatus.NEG_CURV
        qadd = alpha * (gg - 0.5 * alpha * dhd)
        qred += qadd

        ggsav = gg
        step += alpha * d
        hs += alpha * hd
        grad = g + hs
        gg = float(grad @ grad)

        if alpha < bstep:
            if qadd <= 0.01 * qred or gg <= 1e-4 * ggbeg:
                return step, crvmin, TRStatus.SUCCESS
            if iterc == itermax:
                return step, crvmin, TRStatus.MAX_ITER
            d = (gg / ggsav) * d - grad
            dd, ds, ss = float(d @ d), float(d @ step), float(step @ step)
            if ds <= 0.0:
                return step, crvmin, TRStatus.SUCCESS
            if ss < delsq:
                continue
        break

    # ---- phase two: rotations on the boundary ----
    crvmin = 0.0
    while iterc < itermax:
        grad = g + hs
        gg = float(grad @ grad)
        if gg <= 1e-4 * ggbeg:
            break
        sg = float(step @ g)
        shs = float(step @ hs)
        sgk = sg + shs
        if sgk / np.sqrt(gg * delsq) <= -0.99:
            break
        temp = delsq * gg - sgk * sgk
        if temp <= 0.0:
            break
        temp = np.sqrt(temp)
        iterc += 1
        d = (delsq / temp) * grad - (sgk / temp) * step
        hd = np.asarray(Hop @ d, dtype=float)

        dg = float(d @ g)
        dhd = float(hd @ d)
        dhs = float(hd @ step)
        cf = 0.5 * (shs - dhd)
        qbeg = sg + cf

        def q(angle):
            cth, sth = np.cos(angle), np.sin(angle)
            return (sg + cf * cth) * cth + (dg + dhs * cth) * sth

        angle = _circle_search(q)
        cth, sth = np.cos(angle), np.sin(angle)
        reduc = qbeg - q(angle)
        step = cth * step + sth * d
        hs = cth * hs + sth * hd
        qred += reduc
        if not (reduc > 0.01 * qred):
            break

    return step, crvmin, status


def biglag(
    glag: Vec,
    H: MatLike,
    d0: Vec,
    Delta: float,
    maxiter: Optional[int] = None,
) -> Vec:
    """
    Approximate maximizer of ``|glag'd + 0.5 d'Hd|`` on the sphere ``||d|| = Delta``.

    ``glag`` and ``H`` are the gradient and Hessian of a Lagrange function at
    the trust-region center, and ``d0`` (the displacement to the point that
    function belongs to) gives the starting direction. Each iteration searches
    a great circle through the current ``d`` and the Lagrange gradient at it.
    """
    n = glag.size
    Hop = make_operator(H, n)
    itermax = n if maxiter is None else max(1, int(maxiter))
    delsq = Delta * Delta

    d = np.asarray(d0, dtype=float).copy()
    dd = float(d @ d)
    if dd == 0.0:
        gn = safe_norm(glag)
        if gn == 0.0:
            d = np.zeros(n)
            d[0] = Delta
            return d
        d = glag.copy()
        dd = gn * gn
    gd = np.asarray(Hop @ d, dtype=float)

    gg = float(glag @ glag)
    sp = float(d @ glag)
    dhd = float(d @ gd)
    scale = Delta / np.sqrt(dd)
    if sp * dhd < 0.0:
        scale = -scale
    mix = 1.0 if sp * sp > 0.99 * dd * gg else 0.0
    tau = scale * (abs(sp) + 0.5 * scale * abs(dhd))
    if gg * delsq < 0.01 * tau * tau:
        mix = 1.0
    d *= scale
    gd *= scale
    s = glag + mix * gd

    for _ in range(itermax):
        dd = float(d @ d)
        sp = float(d @ s)
        ss = float(s @ s)
        temp = dd * ss - sp * sp
        if temp <= 1e-8 * dd * ss:
            break
        s = (dd * s - sp * d) / np.sqrt(temp)
        w = np.asarray(Hop @ s, dtype=float)

        cf1 = 0.5 * float(s @ w)
        cf2 = float(d @ glag)
        cf3 = float(s @ glag)
        cf4 = 0.5 * float(d @ gd) - cf1
        cf5 = float(s @ gd)

        def lag(angle):
            cth, sth = np.cos(angle), np.sin(angle)
            return cf1 + (cf2 + cf4 * cth) * cth + (cf3 + cf5 * cth) * sth

        taubeg = lag(0.0)
        angle = _circle_search(lag, modulus=True)
        cth, sth = np.cos(angle), np.sin(angle)
        tau = lag(angle)
        d = cth * d + sth * s
        gd = cth * gd + sth * w
        s = glag + gd
        if abs(tau) <= 1.1 * abs(taubeg):
            break
    return d


# ---------------------------- Radius control ---------------------------- #
@dataclass
class Decision:
    ratio: float
    accepted: bool
    delta: float
    rho: float


class TrustRegionManager:
    """
    Owns the trust-region radius ``delta`` and its floor ``rho``.

    ``delta`` moves with the reduction ratio of every trust-region step,
    ``rho`` only decreases, in discrete steps, until it equals ``rhoend``.
    The last three model errors ``|f - Q|`` are kept to judge whether a short
    step calls for geometry work or for a smaller ``rho``.
    """

    def __init__(self, cfg: UOAConfig):
        self.cfg = cfg
        self.rho = float(cfg.rhobeg)
        self.delta = float(cfg.rhobeg)
        self.model_errors: deque = deque([0.0, 0.0, 0.0], maxlen=3)

    # ---------------- ratio / delta ---------------- #
    @staticmethod
    def _compute_ratio(actual_reduction: float, predicted_reduction: float) -> float:
        if predicted_reduction <= 0.0:
            return -np.inf
        return actual_reduction / predicted_reduction

    def _snap(self) -> None:
        if self.delta <= 1.5 * self.rho:
            self.delta = self.rho

    def decide(self, actual_reduction: float, predicted_reduction: float,
               step_norm: float) -> Decision:
        """Update ``delta`` after a trust-region step and report the outcome."""
        cfg = self.cfg
        ratio = self._compute_ratio(actual_reduction, predicted_reduction)
        if ratio < cfg.eta1:
            self.delta = cfg.gamma1 * step_norm
        elif ratio < cfg.eta2:
            self.delta = max(cfg.gamma1 * self.delta, step_norm)
        else:
            self.delta = min(max(cfg.gamma1 * self.delta, cfg.gamma2 * step_norm),
                             cfg.delta_max)
        self._snap()
        logging.debug(
            f"[TR] ratio={ratio:.3e} step={step_norm:.3e} -> delta={self.delta:.3e}"
        )
        return Decision(ratio=ratio, accepted=actual_reduction > 0.0,
                        delta=self.delta, rho=self.rho)

    def shrink_after_short_step(self) -> None:
        self.delta *= 0.1
        self._snap()

    # ---------------- rho ---------------- #
    def reduce_rho(self) -> bool:
        """Lower ``rho`` toward ``rhoend``; False when it is already there."""
        rhoend = self.cfg.rhoend
        if self.rho <= rhoend:
            return False
        self.delta = 0.5 * self.rho
        ratio = self.rho / rhoend
        if ratio <= 16.0:
            self.rho = rhoend
        elif ratio <= 250.0:
            self.rho = np.sqrt(ratio) * rhoend
        else:
            self.rho *= 0.1
        self.delta = max(self.delta, self.rho)
        return True

    # ---------------- model error bookkeeping ---------------- #
    def record_model_error(self, err: float) -> None:
        self.model_errors.append(abs(float(err)))

    def short_step_needs_geometry(self, crvmin: float) -> bool:
        """A short step is blamed on the model when its recent errors are large."""
        return 0.125 * crvmin * self.rho * self.rho <= max(self.model_errors)
