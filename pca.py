"""
pca.py – PCA engine for vectorised patches.

Public API
----------
Basis
    Immutable result of one fit: mean (d,), eigenvectors (d, k) as columns,
    eigenvalues (k,) sorted in descending order.
compute_mean_covariance(vectors)
    Sample mean and the 1/M covariance of an ``(M, d)`` matrix.
PCAEngine(solver='eigh' | 'power', max_iter=500, tol=1e-10)
    fit(vectors) -> Basis
    project(vectors, basis=None) -> coefficients   α = Uᵀ(v − m)
    reconstruct(coeffs, basis=None) -> vectors      v̂ = m + Uα

The default solver is the symmetric eigen‑decomposition of NumPy. The
``'power'`` solver runs power iteration with deflation and is approximate:
each component stops after ``max_iter`` iterations or once successive
iterates differ by less than ``tol``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from errors import InvalidArgumentError, InvalidStateError, UnrecoverableError

__all__ = [
    "Basis",
    "PCAEngine",
    "SOLVERS",
    "compute_mean_covariance",
]

logger = logging.getLogger("pca")

SOLVERS = ("eigh", "power")

# Norm below which a power iterate is treated as the zero vector.
_TINY = 1e-12


# ---------------------------------------------------------------------------
# Basis
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, eq=False)
class Basis:
    mean: np.ndarray
    eigenvectors: np.ndarray
    eigenvalues: np.ndarray

    def __post_init__(self) -> None:
        mean = np.array(self.mean, dtype=np.float64, copy=True).ravel()
        vecs = np.array(self.eigenvectors, dtype=np.float64, copy=True)
        vals = np.array(self.eigenvalues, dtype=np.float64, copy=True).ravel()
        if vecs.ndim != 2 or vecs.shape[0] != mean.size or vecs.shape[1] != vals.size:
            raise InvalidArgumentError(
                f"inconsistent basis shapes: mean {mean.shape}, "
                f"eigenvectors {vecs.shape}, eigenvalues {vals.shape}"
            )
        for arr in (mean, vecs, vals):
            arr.flags.writeable = False
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "eigenvectors", vecs)
        object.__setattr__(self, "eigenvalues", vals)

    @property
    def dim(self) -> int:
        """Vector dimensionality ``d``."""
        return self.mean.size

    @property
    def n_components(self) -> int:
        return self.eigenvalues.size

    def explained_variance_ratio(self) -> np.ndarray:
        vals = np.clip(self.eigenvalues, 0.0, None)
        total = vals.sum()
        if total <= 0:
            return np.zeros_like(vals)
        return vals / total

    def cumulative_variance(self) -> np.ndarray:
        """Cumulative explained variance in percent, one entry per component."""
        return 100.0 * np.cumsum(self.explained_variance_ratio())

    def truncate(self, k: int) -> "Basis":
        """Keep the ``k`` leading components."""
        if not 1 <= k <= self.n_components:
            raise InvalidArgumentError(
                f"k must be in [1, {self.n_components}], got {k}"
            )
        return Basis(self.mean, self.eigenvectors[:, :k], self.eigenvalues[:k])


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def _as_matrix(vectors: np.ndarray) -> np.ndarray:
    x = np.asarray(vectors, dtype=np.float64)
    if x.ndim != 2 or x.shape[0] == 0 or x.shape[1] == 0:
        raise InvalidArgumentError(
            f"expected a non-empty (M, d) matrix of vectors, got shape {x.shape}"
        )
    if not np.all(np.isfinite(x)):
        raise InvalidArgumentError("vectors contain NaN or infinite values")
    return x


def compute_mean_covariance(vectors: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Mean and covariance of row vectors.

    Parameters
    ----------
    vectors : np.ndarray, shape = (M, d)

    Returns
    -------
    mean : np.ndarray, shape = (d,)
    cov : np.ndarray, shape = (d, d)
        ``(1/M) Σ (v − m)(v − m)ᵀ``, symmetrised.
    """
    x = _as_matrix(vectors)
    mean = x.mean(axis=0)
    centred = x - mean
    cov = centred.T @ centred / x.shape[0]
    return mean, 0.5 * (cov + cov.T)


# ---------------------------------------------------------------------------
# Eigen solvers
# ---------------------------------------------------------------------------


def _sort_desc(vals: np.ndarray, vecs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    order = np.argsort(-vals, kind="stable")
    return vals[order], vecs[:, order]


def _eigh(cov: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    vals, vecs = np.linalg.eigh(cov)
    return _sort_desc(vals, vecs)


def _orthogonalize(v: np.ndarray, q: np.ndarray) -> np.ndarray:
    """Remove the components of *v* along the orthonormal columns of *q* (twice)."""
    if q.shape[1] == 0:
        return v
    for _ in range(2):
        v = v - q @ (q.T @ v)
    return v


def _start_vector(i: int, q: np.ndarray) -> np.ndarray:
    """Canonical vector ``e_i`` made orthogonal to *q*; another ``e_j`` if it vanishes."""
    d = q.shape[0]
    resid = _orthogonalize(np.eye(d), q)
    norms = np.linalg.norm(resid, axis=0)
    j = i if norms[i] > 1e-6 else int(np.argmax(norms))
    return resid[:, j] / norms[j]


def _power_deflation(
    cov: np.ndarray, max_iter: int, tol: float
) -> Tuple[np.ndarray, np.ndarray, int]:
    d = cov.shape[0]
    work = cov.copy()
    vecs = np.zeros((d, d))
    vals = np.zeros(d)
    unconverged = 0

    for i in range(d):
        found = vecs[:, :i]
        u = _start_vector(i, found)
        converged = False
        for _ in range(max_iter):
            w = _orthogonalize(work @ u, found)
            norm = np.linalg.norm(w)
            if norm < _TINY:
                # remaining spectrum is (numerically) zero along u
                converged = True
                break
            w /= norm
            step = min(np.linalg.norm(w - u), np.linalg.norm(w + u))
            u = w
            if step < tol:
                converged = True
                break
        if not converged:
            unconverged += 1
        lam = float(u @ cov @ u)
        vecs[:, i] = u
        vals[i] = lam
        work -= lam * np.outer(u, u)

    vals, vecs = _sort_desc(vals, vecs)
    return vals, vecs, unconverged


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PCAEngine:
    """
    Fit a `Basis` to a batch of vectors and move vectors in and out of it.

    The engine remembers the last fitted basis so that `project` and
    `reconstruct` can be called without passing it explicitly; calling them
    before any fit raises `InvalidStateError`.
    """

    def __init__(self, solver: str = "eigh", max_iter: int = 500, tol: float = 1e-10):
        if solver not in SOLVERS:
            raise InvalidArgumentError(f"solver must be one of {SOLVERS}, got {solver!r}")
        if max_iter <= 0:
            raise InvalidArgumentError(f"max_iter must be > 0, got {max_iter}")
        if tol <= 0:
            raise InvalidArgumentError(f"tol must be > 0, got {tol}")
        self.solver = solver
        self.max_iter = max_iter
        self.tol = tol
        self.basis: Basis | None = None

    def fit(self, vectors: np.ndarray) -> Basis:
        mean, cov = compute_mean_covariance(vectors)
        try:
            if self.solver == "eigh":
                vals, vecs = _eigh(cov)
            else:
                vals, vecs, unconverged = _power_deflation(cov, self.max_iter, self.tol)
                if unconverged:
                    logger.warning(
                        f"power solver: {unconverged}/{cov.shape[0]} components hit "
                        f"max_iter={self.max_iter} before tol={self.tol:g}"
                    )
        except np.linalg.LinAlgError as exc:
            raise UnrecoverableError(f"eigen-decomposition failed: {exc}") from exc

        if not np.all(np.isfinite(vals)) or not np.all(np.isfinite(vecs)):
            raise UnrecoverableError("eigen-decomposition produced non-finite values")

        self.basis = Basis(mean, vecs, vals)
        logger.debug(
            f"fit {np.shape(vectors)[0]} vectors (d={mean.size}), "
            f"λ_max={vals[0]:.4g}, λ_min={vals[-1]:.4g}"
        )
        return self.basis

    def _resolve(self, basis: Basis | None) -> Basis:
        if basis is not None:
            return basis
        if self.basis is None:
            raise InvalidStateError("PCAEngine has no basis yet: call fit() first")
        return self.basis

    def project(self, vectors: np.ndarray, basis: Basis | None = None) -> np.ndarray:
        """Coefficients ``α = Uᵀ(v − m)``; accepts one vector or a stack of rows."""
        b = self._resolve(basis)
        x = np.asarray(vectors, dtype=np.float64)
        if x.shape[-1] != b.dim or x.ndim not in (1, 2):
            raise InvalidArgumentError(
                f"vectors of shape {x.shape} do not match basis dimension {b.dim}"
            )
        return (x - b.mean) @ b.eigenvectors

    def reconstruct(self, coeffs: np.ndarray, basis: Basis | None = None) -> np.ndarray:
        """Vectors ``v̂ = m + Σ α_i u_i``."""
        b = self._resolve(basis)
        a = np.asarray(coeffs, dtype=np.float64)
        if a.shape[-1] != b.n_components or a.ndim not in (1, 2):
            raise InvalidArgumentError(
                f"coefficients of shape {a.shape} do not match {b.n_components} components"
            )
        return b.mean + a @ b.eigenvectors.T
