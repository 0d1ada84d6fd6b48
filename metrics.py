"""
metrics.py – Image quality measures and synthetic noise.

All measures take two equal‑shaped pixel grids on the 8‑bit scale.

Public API
----------
mse(a, b)
psnr(a, b, peak=255.0)         identical grids → PSNR_IDENTICAL (100 dB)
ssim(a, b, data_range=255.0)   scikit‑image structural similarity
evaluate(reference, candidate) -> QualityReport
add_gaussian_noise(grid, sigma, rng=None)
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from skimage.metrics import structural_similarity

from errors import InvalidArgumentError

__all__ = [
    "PSNR_IDENTICAL",
    "QualityReport",
    "mse",
    "psnr",
    "ssim",
    "evaluate",
    "add_gaussian_noise",
]

PSNR_IDENTICAL: float = 100.0


def _pair(a: np.ndarray, b: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    x = np.asarray(a, dtype=np.float64)
    y = np.asarray(b, dtype=np.float64)
    if x.shape != y.shape:
        raise InvalidArgumentError(f"shape mismatch: {x.shape} vs {y.shape}")
    if x.size == 0:
        raise InvalidArgumentError("cannot compare empty grids")
    return x, y


def mse(a: np.ndarray, b: np.ndarray) -> float:
    x, y = _pair(a, b)
    return float(np.mean((x - y) ** 2))


def psnr(a: np.ndarray, b: np.ndarray, peak: float = 255.0) -> float:
    """Peak signal‑to‑noise ratio in dB; `PSNR_IDENTICAL` when MSE is 0."""
    err = mse(a, b)
    if err == 0:
        return PSNR_IDENTICAL
    return float(10.0 * np.log10(peak * peak / err))


def ssim(a: np.ndarray, b: np.ndarray, data_range: float = 255.0) -> float:
    x, y = _pair(a, b)
    if x.ndim != 2:
        raise InvalidArgumentError(f"ssim expects 2-D grids, got {x.shape}")
    # skimage needs an odd window no larger than the image
    win = min(7, min(x.shape))
    if win % 2 == 0:
        win -= 1
    if win < 3:
        raise InvalidArgumentError(f"grids of shape {x.shape} are too small for SSIM")
    return float(structural_similarity(x, y, data_range=data_range, win_size=win))


@dataclass(slots=True)
class QualityReport:
    mse: float
    psnr: float
    ssim: float

    def as_line(self) -> str:
        return f"MSE={self.mse:9.3f}  PSNR={self.psnr:7.3f} dB  SSIM={self.ssim:6.4f}"


def evaluate(reference: np.ndarray, candidate: np.ndarray) -> QualityReport:
    return QualityReport(
        mse=mse(reference, candidate),
        psnr=psnr(reference, candidate),
        ssim=ssim(reference, candidate),
    )


def add_gaussian_noise(
    grid: np.ndarray,
    sigma: float,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Return ``grid + N(0, σ²)`` (not clipped; clamping happens at save time)."""
    if sigma < 0:
        raise InvalidArgumentError(f"sigma must be >= 0, got {sigma}")
    rng = rng if rng is not None else np.random.default_rng()
    arr = np.asarray(grid, dtype=np.float64)
    return arr + rng.normal(0.0, sigma, size=arr.shape)
