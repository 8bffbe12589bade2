from collections import deque
from typing import Tuple

import numpy as np
from scipy.linalg import LinAlgError, solve


# ---------------------------------------------------------------------------
# Initial interpolation geometry
# ---------------------------------------------------------------------------
def pair_coordinates(k: int, n: int) -> Tuple[int, int]:
    """
    Coordinates (p, q) of the k-th initial point when k > 2n.

    Points beyond the 2n + 1 coordinate ones are rhobeg * (e_p + e_q); the
    pairs are enumerated by growing spread |p - q| (mod n) so that every
    unordered pair is used once before npt reaches (n+1)(n+2)/2.
    """
    spread = (k - n - 1) // n
    p = k - (1 + spread) * n - 1
    q = (p + spread) % n
    return p, q


def initial_displacements(n: int, npt: int, rhobeg: float) -> np.ndarray:
    """Rows are the initial points relative to x0: 0, +rhobeg e_i, -rhobeg e_i, pairs."""
    xpt = np.zeros((npt, n), dtype=np.float64)
    for k in range(1, npt):
        if k <= n:
            xpt[k, k - 1] = rhobeg
        elif k <= 2 * n:
            xpt[k, k - n - 1] = -rhobeg
        else:
            p, q = pair_coordinates(k, n)
            xpt[k, p] = rhobeg
            xpt[k, q] = rhobeg
    return xpt


# ---------------------------------------------------------------------------
# Reference KKT system of the least-Frobenius-norm interpolation problem
# ---------------------------------------------------------------------------
def kkt_matrix(xpt: np.ndarray) -> np.ndarray:
    """
    W = [[A, 1, Y], [1', 0, 0], [Y', 0, 0]] with A_ij = (y_i' y_j)^2 / 2.

    The rows of ``xpt`` are the points y_i relative to the base point.
    """
    npt, n = xpt.shape
    W = np.zeros((npt + n + 1, npt + n + 1), dtype=np.float64)
    W[:npt, :npt] = 0.5 * (xpt @ xpt.T) ** 2
    W[:npt, npt] = 1.0
    W[npt, :npt] = 1.0
    W[:npt, npt + 1:] = xpt
    W[npt + 1:, :npt] = xpt.T
    return W


def kkt_inverse_blocks(xpt: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Blocks of W^{-1} that are carried incrementally by the solver.

    Returns
    -------
    omega : ndarray, shape (npt, npt)
        Leading block; it defines the Hessians of the Lagrange functions.
    bmat : ndarray, shape (npt + n, n)
        Gradients of the Lagrange functions at the base point stacked over
        the trailing n-by-n block.
    """
    npt, n = xpt.shape
    W = kkt_matrix(xpt)
    try:
        H = solve(W, np.eye(W.shape[0]), assume_a="sym")
    except LinAlgError as exc:
        raise LinAlgError("interpolation points are not poised") from exc
    omega = H[:npt, :npt]
    bmat = np.vstack([H[npt + 1:, :npt].T, H[npt + 1:, npt + 1:]])
    return omega, bmat


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
class History:
    """
    Most recent ``maxhist`` evaluated points and values.

    With ``store_x=False`` only the values are kept and ``xhist`` is empty.
    """

    def __init__(self, n: int, maxhist: int, store_x: bool = True):
        self.n = n
        self.maxhist = maxhist
        self.store_x = store_x
        self._buf: deque = deque(maxlen=maxhist)

    def append(self, x: np.ndarray, f: float) -> None:
        if self.maxhist > 0:
            xs = np.array(x, dtype=np.float64) if self.store_x else None
            self._buf.append((xs, float(f)))

    def __len__(self) -> int:
        return len(self._buf)

    @property
    def xhist(self) -> np.ndarray:
        if not self._buf or not self.store_x:
            return np.empty((0, self.n), dtype=np.float64)
        return np.vstack([x for x, _ in self._buf])

    @property
    def fhist(self) -> np.ndarray:
        return np.array([f for _, f in self._buf], dtype=np.float64)
