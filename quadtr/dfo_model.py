# quadtr/dfo_model.py
# Quadratic interpolation model and the factored inverse of its KKT matrix.
#
# Both objects store coordinates relative to a base point xbase. The model
# Hessian is split into an explicit part hq and an implicit part
# sum_k pq[k] y_k y_k', so that a point replacement only touches O(npt^2)
# numbers. The inverse KKT matrix is kept as
#     Omega = Z S Z',  S = diag(-1, ..., -1, +1, ..., +1)  (idz minus signs)
# together with bmat = [Xi' ; Upsilon], the Lagrange gradients at xbase
# stacked over the trailing n-by-n block.

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from .blocks.aux import DamagingRoundingError
from .blocks.tr import make_operator
from .dfo_aux import pair_coordinates


# =============================================================================
# Conditioning structure (H = W^{-1})
# =============================================================================
class LagrangeBasis:
    def __init__(self, bmat: np.ndarray, zmat: np.ndarray, idz: int = 0,
                 denom_tol: float = 0.0):
        self.bmat = np.asarray(bmat, dtype=np.float64)
        self.zmat = np.asarray(zmat, dtype=np.float64)
        self.idz = int(idz)
        self.denom_tol = float(denom_tol)

    @property
    def npt(self) -> int:
        return self.zmat.shape[0]

    @classmethod
    def initial(cls, n: int, npt: int, rhobeg: float, denom_tol: float = 0.0) -> "LagrangeBasis":
        """Closed-form inverse KKT matrix for the points of ``initial_displacements``."""
        rhosq = rhobeg * rhobeg
        recip = 1.0 / rhosq
        reciq = np.sqrt(0.5) / rhosq
        bmat = np.zeros((npt + n, n))
        zmat = np.zeros((npt, npt - n - 1))
        for i in range(n):
            kp, km = i + 1, n + 1 + i
            if km < npt:
                # central differences along e_i
                bmat[kp, i] = 0.5 / rhobeg
                bmat[km, i] = -0.5 / rhobeg
                zmat[0, i] = -2.0 * reciq
                zmat[kp, i] = reciq
                zmat[km, i] = reciq
            else:
                bmat[0, i] = -1.0 / rhobeg
                bmat[kp, i] = 1.0 / rhobeg
                bmat[npt + i, i] = -0.5 * rhosq
        for k in range(2 * n + 1, npt):
            p, q = pair_coordinates(k, n)
            col = k - n - 1
            zmat[0, col] = recip
            zmat[k, col] = recip
            zmat[p + 1, col] = -recip
            zmat[q + 1, col] = -recip
        return cls(bmat, zmat, idz=0, denom_tol=denom_tol)

    # ---------------- Omega helpers ---------------- #
    def _signs(self) -> np.ndarray:
        s = np.ones(self.zmat.shape[1])
        s[: self.idz] = -1.0
        return s

    def omega(self) -> np.ndarray:
        return (self.zmat * self._signs()) @ self.zmat.T

    def omega_row(self, k: int) -> np.ndarray:
        return self.zmat @ (self._signs() * self.zmat[k])

    def omega_diag(self) -> np.ndarray:
        return (self.zmat**2) @ self._signs()

    # ---------------- Lagrange functions ---------------- #
    def lagrange_gradient(self, k: int, xopt: np.ndarray, xpt: np.ndarray) -> np.ndarray:
        """Gradient at ``xopt`` of the k-th Lagrange function."""
        hcol = self.omega_row(k)
        return self.bmat[k] + xpt.T @ (hcol * (xpt @ xopt))

    def vlag_beta(self, d: np.ndarray, xopt: np.ndarray, xpt: np.ndarray,
                  kopt: int) -> Tuple[np.ndarray, float]:
        """
        Lagrange values at ``xopt + d`` and the ``beta`` term of the update.

        ``vlag[:npt]`` are the Lagrange function values at the new point and
        ``vlag[npt:]`` the trailing components of ``H w``. The vector ``w`` is
        formed relative to ``xopt``, which keeps the arithmetic well scaled
        when ``xopt`` is far from ``xbase``.
        """
        npt = self.npt
        bpt, ups = self.bmat[:npt], self.bmat[npt:]
        suma = xpt @ d
        sumb = xpt @ xopt
        wcheck = suma * (0.5 * suma + sumb)

        zw = self.zmat.T @ wcheck
        szw = self._signs() * zw
        bw = bpt.T @ wcheck
        ud = ups @ d

        vlag = np.empty(npt + d.size)
        vlag[:npt] = bpt @ d + self.zmat @ szw
        vlag[npt:] = bw + ud
        vlag[kopt] += 1.0

        dx = float(d @ xopt)
        dsq = float(d @ d)
        xoptsq = float(xopt @ xopt)
        beta = (dx * dx + dsq * (xoptsq + 2.0 * dx + 0.5 * dsq)
                - float(zw @ szw) - 2.0 * float(bw @ d) - float(d @ ud))
        return vlag, beta

    def denominators(self, vlag: np.ndarray, beta: float) -> np.ndarray:
        """sigma_k = alpha_k beta + tau_k^2 for every candidate k."""
        return self.omega_diag() * beta + vlag[: self.npt] ** 2

    def denominator_ok(self, knew: int, vlag: np.ndarray, beta: float) -> bool:
        alpha = float(self.omega_diag()[knew])
        tausq = float(vlag[knew]) ** 2
        sigma = alpha * beta + tausq
        scale = max(tausq, abs(alpha * beta))
        return bool(np.isfinite(sigma) and abs(sigma) > self.denom_tol * scale and sigma != 0.0)

    # ---------------- updates ---------------- #
    def update(self, knew: int, vlag: np.ndarray, beta: float) -> None:
        """
        Replace point ``knew`` by the point whose ``vlag``/``beta`` are given.

        Givens rotations first leave at most two nonzeros in row ``knew`` of
        ``zmat``; then ``zmat`` and ``bmat`` receive the low-rank corrections
        of the updating formula. Raises DamagingRoundingError, leaving the
        structure untouched, when the denominator cannot be trusted.
        """
        if not self.denominator_ok(knew, vlag, beta):
            raise DamagingRoundingError(
                f"update denominator for point {knew} is too small or not finite"
            )
        npt, m = self.zmat.shape
        z = self.zmat
        vlag = np.array(vlag, dtype=np.float64)

        ztest = 1e-20 * float(np.max(np.abs(z))) if z.size else 0.0
        jl = 0
        for j in range(1, m):
            if j == self.idz:
                jl = self.idz
            elif abs(z[knew, j]) > ztest:
                r = np.hypot(z[knew, jl], z[knew, j])
                ca, cb = z[knew, jl] / r, z[knew, j] / r
                zjl = ca * z[:, jl] + cb * z[:, j]
                z[:, j] = ca * z[:, j] - cb * z[:, jl]
                z[:, jl] = zjl
                z[knew, j] = 0.0

        # knew-th column of Omega after the rotations
        tempa = -z[knew, 0] if self.idz >= 1 else z[knew, 0]
        w = tempa * z[:, 0]
        if jl > 0:
            tempb = z[knew, jl]
            w = w + tempb * z[:, jl]

        alpha = w[knew]
        tau = vlag[knew]
        tausq = tau * tau
        denom = alpha * beta + tausq
        vlag[knew] -= 1.0
        vpt = vlag[:npt]

        swap = False
        if jl == 0:
            temp = np.sqrt(abs(denom))
            z[:, 0] = (tau / temp) * z[:, 0] - (tempa / temp) * vpt
            if self.idz == 0 and denom < 0.0:
                self.idz = 1
            if self.idz >= 1 and denom >= 0.0:
                swap = True
        else:
            ja = jl if beta >= 0.0 else 0
            jb = jl - ja
            temp = z[knew, jb] / denom
            ta, tb = temp * beta, temp * tau
            zja = z[knew, ja]
            scala = 1.0 / np.sqrt(abs(beta) * zja * zja + tausq)
            scalb = scala * np.sqrt(abs(denom))
            new_ja = scala * (tau * z[:, ja] - zja * vpt)
            z[:, jb] = scalb * (z[:, jb] - ta * w - tb * vpt)
            z[:, ja] = new_ja
            if denom <= 0.0:
                if beta < 0.0:
                    self.idz += 1
                else:
                    swap = True
        if swap:
            self.idz -= 1
            z[:, [0, self.idz]] = z[:, [self.idz, 0]]

        wn = self.bmat[knew].copy()
        vn = vlag[npt:]
        ca = (alpha * vn - tau * wn) / denom
        cb = (-beta * wn - tau * vn) / denom
        self.bmat += np.outer(vlag, ca) + np.outer(np.concatenate([w, wn]), cb)

    def shift_base(self, s: np.ndarray, xpt: np.ndarray) -> None:
        """
        Re-express the structure for the base point xbase + s.

        ``xpt`` holds the points relative to the old base. Omega is invariant;
        the Lagrange gradients move by Omega diag(xpt s) xpt and the trailing
        block gains the matching symmetric terms.
        """
        npt = self.npt
        a = xpt @ s - 0.5 * float(s @ s)
        V = a[:, None] * (xpt - 0.5 * s)
        B = self.bmat[:npt]
        ztv = self.zmat.T @ V
        sztv = self._signs()[:, None] * ztv
        ups = self.bmat[npt:] + B.T @ V + V.T @ B + ztv.T @ sztv
        self.bmat[:npt] = B + self.zmat @ sztv
        self.bmat[npt:] = 0.5 * (ups + ups.T)

    def is_finite(self) -> bool:
        return bool(np.isfinite(self.bmat).all() and np.isfinite(self.zmat).all())


# =============================================================================
# Quadratic model
# =============================================================================
class QuadraticModel:
    """
    Q(xopt + d) = fopt + gopt'd + d'Hd / 2 with H = hq + sum_k pq[k] y_k y_k'.

    The constant term is the value at the best point and is held by the
    point set, not here.
    """

    def __init__(self, gopt: np.ndarray, hq: np.ndarray, pq: Optional[np.ndarray] = None):
        self.gopt = np.asarray(gopt, dtype=np.float64)
        self.hq = np.asarray(hq, dtype=np.float64)
        n = self.gopt.size
        self.pq = np.zeros(0) if pq is None else np.asarray(pq, dtype=np.float64)
        if self.hq.shape != (n, n):
            raise ValueError(f"hq must have shape ({n}, {n}), got {self.hq.shape}")

    @classmethod
    def initial(cls, fval: np.ndarray, rhobeg: float, n: int) -> "QuadraticModel":
        """
        Model through the initial points, gradient taken at xbase.

        Central (or forward, when the opposite point is missing) differences
        give the gradient and the diagonal; pair points give off-diagonals.
        """
        npt = fval.size
        fbeg = fval[0]
        g = np.zeros(n)
        hq = np.zeros((n, n))
        for i in range(n):
            fp = fval[i + 1]
            km = n + 1 + i
            if km < npt:
                fm = fval[km]
                g[i] = (fp - fm) / (2.0 * rhobeg)
                hq[i, i] = (fp + fm - 2.0 * fbeg) / (rhobeg * rhobeg)
            else:
                g[i] = (fp - fbeg) / rhobeg
        for k in range(2 * n + 1, npt):
            p, q = pair_coordinates(k, n)
            hpq = (fbeg - fval[p + 1] - fval[q + 1] + fval[k]) / (rhobeg * rhobeg)
            hq[p, q] = hq[q, p] = hpq
        return cls(g, hq, np.zeros(npt))

    # ---------------- evaluation ---------------- #
    def hess_vec(self, v: np.ndarray, xpt: np.ndarray) -> np.ndarray:
        return self.hq @ v + xpt.T @ (self.pq * (xpt @ v))

    def hessian(self, xpt: np.ndarray) -> np.ndarray:
        return self.hq + (xpt.T * self.pq) @ xpt

    def operator(self, xpt: np.ndarray):
        return make_operator(lambda v: self.hess_vec(np.ravel(v), xpt), self.gopt.size)

    def value_change(self, d: np.ndarray, xpt: np.ndarray) -> float:
        """Q(xopt + d) - Q(xopt)."""
        return float(self.gopt @ d + 0.5 * d @ self.hess_vec(d, xpt))

    # ---------------- updates ---------------- #
    def absorb_implicit(self, k: int, yk: np.ndarray) -> None:
        """Move the implicit term of point k into hq before that point changes."""
        if self.pq[k] != 0.0:
            self.hq += self.pq[k] * np.outer(yk, yk)
            self.pq[k] = 0.0

    def update(self, knew: int, diff: float, basis: LagrangeBasis,
               xpt: np.ndarray, xopt: np.ndarray) -> None:
        """
        Add ``diff`` times the new knew-th Lagrange function.

        Called after ``basis`` has been updated and ``xpt[knew]`` overwritten,
        with ``xopt`` still the center the gradient refers to. The change of
        Hessian is the least-Frobenius-norm one that restores interpolation.
        """
        self.pq += diff * basis.omega_row(knew)
        self.gopt += diff * basis.lagrange_gradient(knew, xopt, xpt)

    def move_center(self, d: np.ndarray, xpt: np.ndarray) -> None:
        self.gopt += self.hess_vec(d, xpt)

    def shift_base(self, s: np.ndarray, xpt: np.ndarray) -> None:
        """Keep H unchanged when the base moves by s (``xpt`` relative to the old base)."""
        w = xpt.T @ self.pq - 0.5 * float(np.sum(self.pq)) * s
        self.hq += np.outer(w, s) + np.outer(s, w)

    def is_finite(self) -> bool:
        return bool(np.isfinite(self.gopt).all() and np.isfinite(self.hq).all()
                    and np.isfinite(self.pq).all())

    def __repr__(self) -> str:
        return f"QuadraticModel(n={self.gopt.size}, |g|={np.linalg.norm(self.gopt):.3e})"
