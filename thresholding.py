"""
thresholding.py – Threshold selection and coefficient shrinkage for the
PCA patch denoiser.

This module is totally *stateless*; it only manipulates scalars and
coefficient arrays produced by `pca.PCAEngine.project`.

Public API
----------
visu_shrink(sigma, pixel_count)
    Universal threshold σ·sqrt(2 ln L).
bayes_shrink(noise_variance, signal_std)
    σ²/σ_x, or SHRINK_ALL when the signal is indistinguishable from noise.
estimate_signal_std(observed_variance, noise_variance)
    sqrt(max(var_obs − σ², 0)).
estimate_noise_sigma(grid, wavelet='db1')
    Donoho & Johnstone MAD/0.6745 estimate on the finest diagonal band.
compute_threshold(policy, sigma, pixel_count, eigenvalues)
    Policy dispatch used by the orchestrator.
hard_threshold / soft_threshold / shrink
    Element‑wise shrinkage; inputs are never modified.
"""

from __future__ import annotations

import math
from enum import Enum

import numpy as np
import pywt
from scipy.stats import median_abs_deviation as mad

from errors import InvalidArgumentError

__all__ = [
    "SHRINK_ALL",
    "ThresholdPolicy",
    "Shrinkage",
    "visu_shrink",
    "bayes_shrink",
    "estimate_signal_std",
    "estimate_noise_sigma",
    "compute_threshold",
    "hard_threshold",
    "soft_threshold",
    "shrink",
]

# "Shrink everything" sentinel returned by BayesShrink for a zero signal.
SHRINK_ALL: float = float(np.finfo(np.float64).max)


class ThresholdPolicy(str, Enum):
    VISU_SHRINK = "visu_shrink"
    BAYES_SHRINK = "bayes_shrink"


class Shrinkage(str, Enum):
    HARD = "hard"
    SOFT = "soft"


# ---------------------------------------------------------------------------
# Threshold selection
# ---------------------------------------------------------------------------


def visu_shrink(sigma: float, pixel_count: int) -> float:
    """
    VisuShrink universal threshold ``σ·sqrt(2·ln L)``.

    Parameters
    ----------
    sigma : float
        Noise standard deviation, > 0.
    pixel_count : int
        Number of samples ``L`` (pixels of the image), > 0.
    """
    if sigma <= 0:
        raise InvalidArgumentError(f"sigma must be > 0, got {sigma}")
    if pixel_count <= 0:
        raise InvalidArgumentError(f"pixel_count must be > 0, got {pixel_count}")
    return float(sigma * math.sqrt(2.0 * math.log(pixel_count)))


def bayes_shrink(noise_variance: float, signal_std: float) -> float:
    """BayesShrink threshold ``σ²/σ_x``; `SHRINK_ALL` when ``σ_x ≤ 0``."""
    if noise_variance < 0:
        raise InvalidArgumentError(f"noise_variance must be >= 0, got {noise_variance}")
    if signal_std <= 0:
        return SHRINK_ALL
    return float(noise_variance / signal_std)


def estimate_signal_std(observed_variance: float, noise_variance: float) -> float:
    """Signal σ under additive independent noise, clamped at zero."""
    if observed_variance < 0 or noise_variance < 0:
        raise InvalidArgumentError(
            f"variances must be >= 0, got observed={observed_variance}, noise={noise_variance}"
        )
    return math.sqrt(max(observed_variance - noise_variance, 0.0))


def estimate_noise_sigma(grid: np.ndarray, wavelet: str = "db1") -> float:
    """
    Estimate Gaussian noise σ of *grid* from its finest diagonal detail band.

    Uses ``MAD(cD)/0.6745`` (``scale='normal'``), which is robust to edges
    because natural images are sparse in the diagonal band.
    """
    arr = np.asarray(grid, dtype=np.float64)
    if arr.ndim != 2 or min(arr.shape) < 2:
        raise InvalidArgumentError(f"need a 2-D grid of at least 2x2, got {arr.shape}")
    _, (_, _, cD) = pywt.dwt2(arr, wavelet)
    return float(mad(cD, axis=None, scale="normal"))


def compute_threshold(
    policy: ThresholdPolicy,
    sigma: float,
    pixel_count: int,
    eigenvalues: np.ndarray | None = None,
) -> float:
    """
    Threshold for one denoise call.

    BayesShrink takes the observed coefficient variance as the mean of the
    fitted eigenvalues (average per‑component variance of the noisy data).
    """
    policy = ThresholdPolicy(policy)
    if policy is ThresholdPolicy.VISU_SHRINK:
        return visu_shrink(sigma, pixel_count)

    if eigenvalues is None or np.size(eigenvalues) == 0:
        raise InvalidArgumentError("BayesShrink needs the fitted eigenvalues")
    if sigma <= 0:
        raise InvalidArgumentError(f"sigma must be > 0, got {sigma}")
    noise_var = sigma * sigma
    observed = float(np.mean(np.clip(eigenvalues, 0.0, None)))
    return bayes_shrink(noise_var, estimate_signal_std(observed, noise_var))


# ---------------------------------------------------------------------------
# Shrinkage
# ---------------------------------------------------------------------------


def _check_lambda(lam: float) -> None:
    if not lam >= 0:
        raise InvalidArgumentError(f"threshold must be >= 0, got {lam}")


def hard_threshold(coeffs: np.ndarray, lam: float) -> np.ndarray:
    """Zero every coefficient with ``|c| ≤ λ``; keep the rest unchanged."""
    _check_lambda(lam)
    c = np.asarray(coeffs, dtype=np.float64)
    return np.where(np.abs(c) > lam, c, 0.0)


def soft_threshold(coeffs: np.ndarray, lam: float) -> np.ndarray:
    """Zero ``|c| ≤ λ``, otherwise move ``c`` towards zero by ``λ``."""
    _check_lambda(lam)
    c = np.asarray(coeffs, dtype=np.float64)
    return np.sign(c) * np.maximum(np.abs(c) - lam, 0.0)


def shrink(coeffs: np.ndarray, lam: float, mode: Shrinkage | str = Shrinkage.HARD) -> np.ndarray:
    mode = Shrinkage(mode)
    if mode is Shrinkage.HARD:
        return hard_threshold(coeffs, lam)
    return soft_threshold(coeffs, lam)
