"""
test_pca.py
===========

PCA engine: statistics, solvers, projection and reconstruction.
"""

from __future__ import annotations

import numpy as np
import pytest

from errors import InvalidArgumentError, InvalidStateError
from pca import Basis, PCAEngine, compute_mean_covariance


def _vectors(m: int = 200, d: int = 16, seed: int = 42) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.normal(100.0, 20.0, (m, d)) @ rng.normal(size=(d, d))


def _known_spectrum(seed: int = 0):
    """Samples whose covariance has eigenvalues close to 16, 8, 4, 2, 1."""
    rng = np.random.default_rng(seed)
    q, _ = np.linalg.qr(rng.normal(size=(5, 5)))
    x = rng.normal(size=(4000, 5)) * np.sqrt([16.0, 8.0, 4.0, 2.0, 1.0])
    return x @ q.T + 3.0


class TestStatistics:
    def test_mean_and_biased_covariance(self):
        x = _vectors()
        mean, cov = compute_mean_covariance(x)
        np.testing.assert_allclose(mean, x.mean(axis=0))
        np.testing.assert_allclose(cov, np.cov(x, rowvar=False, bias=True), rtol=1e-10, atol=1e-8)
        np.testing.assert_array_equal(cov, cov.T)

    def test_bad_input(self):
        with pytest.raises(InvalidArgumentError):
            compute_mean_covariance(np.zeros((0, 4)))
        with pytest.raises(InvalidArgumentError):
            compute_mean_covariance(np.array([[1.0, np.nan]]))


class TestEngine:
    """fit / project / reconstruct contract."""

    def test_round_trip(self):
        x = _vectors()
        eng = PCAEngine()
        eng.fit(x)
        np.testing.assert_allclose(eng.reconstruct(eng.project(x)), x, atol=1e-7)

    def test_single_vector_round_trip(self):
        x = _vectors()
        eng = PCAEngine()
        basis = eng.fit(x)
        coeffs = eng.project(x[0], basis)
        assert coeffs.shape == (16,)
        np.testing.assert_allclose(eng.reconstruct(coeffs, basis), x[0], atol=1e-7)

    def test_basis_orthonormal_and_sorted(self):
        basis = PCAEngine().fit(_vectors())
        u = basis.eigenvectors
        np.testing.assert_allclose(u.T @ u, np.eye(basis.dim), atol=1e-10)
        assert np.all(np.diff(basis.eigenvalues) <= 1e-9)

    def test_projection_formula(self):
        x = _vectors(m=50, d=4)
        eng = PCAEngine()
        b = eng.fit(x)
        alpha = eng.project(x)
        np.testing.assert_allclose(alpha[3], b.eigenvectors.T @ (x[3] - b.mean))

    def test_project_before_fit_raises(self):
        eng = PCAEngine()
        with pytest.raises(InvalidStateError):
            eng.project(np.zeros((2, 4)))
        with pytest.raises(InvalidStateError):
            eng.reconstruct(np.zeros((2, 4)))

    def test_explicit_basis_without_fit(self):
        basis = PCAEngine().fit(_vectors(d=4))
        fresh = PCAEngine()
        out = fresh.reconstruct(fresh.project(np.ones((1, 4)), basis), basis)
        np.testing.assert_allclose(out, np.ones((1, 4)), atol=1e-8)

    def test_fit_errors(self):
        with pytest.raises(InvalidArgumentError):
            PCAEngine().fit(np.zeros((0, 9)))
        with pytest.raises(InvalidArgumentError):
            PCAEngine(solver="svd")
        with pytest.raises(InvalidArgumentError):
            PCAEngine(solver="power", max_iter=0)

    def test_dimension_mismatch(self):
        eng = PCAEngine()
        eng.fit(_vectors(d=4))
        with pytest.raises(InvalidArgumentError):
            eng.project(np.zeros((2, 5)))


class TestPowerSolver:
    """Power iteration with deflation against the symmetric solver."""

    def test_agrees_with_eigh(self):
        x = _known_spectrum()
        exact = PCAEngine("eigh").fit(x)
        approx = PCAEngine("power", max_iter=2000, tol=1e-12).fit(x)
        np.testing.assert_allclose(approx.eigenvalues, exact.eigenvalues, rtol=1e-6)
        dots = np.abs(np.sum(approx.eigenvectors * exact.eigenvectors, axis=0))
        np.testing.assert_allclose(dots, 1.0, atol=1e-5)

    def test_power_round_trip(self):
        x = _known_spectrum(1)
        eng = PCAEngine("power")
        eng.fit(x)
        np.testing.assert_allclose(eng.reconstruct(eng.project(x)), x, atol=1e-6)

    def test_zero_covariance(self):
        x = np.tile(np.arange(9, dtype=np.float64), (20, 1))
        basis = PCAEngine("power").fit(x)
        np.testing.assert_allclose(basis.eigenvalues, 0.0, atol=1e-12)
        u = basis.eigenvectors
        np.testing.assert_allclose(u.T @ u, np.eye(9), atol=1e-10)


class TestBasis:
    def test_cumulative_variance(self):
        basis = Basis(np.zeros(3), np.eye(3), [6.0, 3.0, 1.0])
        np.testing.assert_allclose(basis.explained_variance_ratio(), [0.6, 0.3, 0.1])
        np.testing.assert_allclose(basis.cumulative_variance(), [60.0, 90.0, 100.0])

    def test_zero_spectrum(self):
        basis = Basis(np.zeros(2), np.eye(2), [0.0, 0.0])
        np.testing.assert_array_equal(basis.cumulative_variance(), [0.0, 0.0])

    def test_truncate(self):
        basis = PCAEngine().fit(_vectors(d=9))
        top = basis.truncate(3)
        assert top.n_components == 3 and top.dim == 9
        np.testing.assert_array_equal(top.eigenvalues, basis.eigenvalues[:3])
        with pytest.raises(InvalidArgumentError):
            basis.truncate(10)

    def test_immutable(self):
        basis = Basis(np.zeros(2), np.eye(2), [1.0, 0.5])
        with pytest.raises(ValueError):
            basis.eigenvalues[0] = 3.0

    def test_shape_check(self):
        with pytest.raises(InvalidArgumentError):
            Basis(np.zeros(3), np.eye(2), [1.0, 1.0])
