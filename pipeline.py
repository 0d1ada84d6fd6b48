"""
pipeline.py
===========

High‑level orchestration for the PCA patch denoiser.

A `DenoiseRun` walks one grayscale pixel grid through the stages

    IDLE → CONFIGURED → EXTRACTED → FITTED → PROJECTED → SHRUNK
         → RECONSTRUCTED → DONE

one method per transition. Skipping or repeating a stage raises
`InvalidStateError`. The convenience wrappers `denoise()` and
`denoise_local()` run every stage and, on any failure, log the error and hand
back an untouched copy of the input instead of raising.

Public API
----------
DenoiseConfig
    Immutable run configuration (patch size, coverage, edge policy,
    threshold policy, shrinkage, σ, solver, …).
DenoiseRun
    Explicit state machine; exposes the fitted basis and threshold.
run_pipeline(grid, cfg) -> DenoiseRun
    All stages, errors propagate.
denoise(grid, cfg=None) -> np.ndarray
denoise_local(grid, cfg=None, window_size=64, window_coverage=None, workers=1)
fit_basis(grid, cfg=None, n_samples=None) -> Basis
analyze_variance(grid, patch_size=8, n_samples=2000, seed=None) -> np.ndarray

The module depends only on other in‑project modules plus NumPy.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from errors import InvalidArgumentError, InvalidStateError
from io_utils import step_timer, timer
from patch_utils import (
    Coverage,
    EdgePolicy,
    ExactN,
    NoOverlap,
    OverlapFull,
    Window,
    as_grid,
    coverage_from_name,
    coverage_name,
    extract_patches,
    extract_windows,
    vectorize,
)
from pca import SOLVERS, Basis, PCAEngine
from reconstruct import reconstruct_from_vectors, reconstruct_windows
from thresholding import Shrinkage, ThresholdPolicy, compute_threshold, shrink

logger = logging.getLogger("pipeline")
logger.setLevel(logging.INFO)

# Usual noise levels for 8-bit images
NOISE_PRESETS: Dict[str, float] = {"low": 10.0, "medium": 20.0, "high": 30.0}


# --------------------------------------------------------------------------- #
# Dataclasses
# --------------------------------------------------------------------------- #
@dataclass(frozen=True, slots=True)
class DenoiseConfig:
    # Patch geometry
    patch_size: int = 8
    coverage: Coverage = field(default_factory=lambda: OverlapFull(50))
    edge_policy: EdgePolicy = EdgePolicy.CLAMP_BACK

    # Thresholding
    threshold_policy: ThresholdPolicy = ThresholdPolicy.VISU_SHRINK
    shrinkage: Shrinkage = Shrinkage.HARD
    noise_sigma: float = NOISE_PRESETS["medium"]
    keep_fraction: float = 1.0

    # Eigen solver
    solver: str = "eigh"
    power_max_iter: int = 500
    power_tol: float = 1e-10

    # Execution
    workers: int = 1
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        # accept plain strings for the enum fields (CLI / JSON)
        object.__setattr__(self, "edge_policy", EdgePolicy(self.edge_policy))
        object.__setattr__(self, "threshold_policy", ThresholdPolicy(self.threshold_policy))
        object.__setattr__(self, "shrinkage", Shrinkage(self.shrinkage))

        if not isinstance(self.patch_size, (int, np.integer)) or self.patch_size <= 0:
            raise InvalidArgumentError(f"patch_size must be a positive int, got {self.patch_size!r}")
        if not isinstance(self.coverage, (ExactN, OverlapFull, NoOverlap)):
            raise InvalidArgumentError(f"coverage must be a coverage variant, got {self.coverage!r}")
        if not self.noise_sigma > 0:
            raise InvalidArgumentError(f"noise_sigma must be > 0, got {self.noise_sigma}")
        if not 0.0 < self.keep_fraction <= 1.0:
            raise InvalidArgumentError(f"keep_fraction must be in (0, 1], got {self.keep_fraction}")
        if self.solver not in SOLVERS:
            raise InvalidArgumentError(f"solver must be one of {SOLVERS}, got {self.solver!r}")
        if self.power_max_iter <= 0 or self.power_tol <= 0:
            raise InvalidArgumentError("power_max_iter and power_tol must be > 0")
        if self.workers < 1:
            raise InvalidArgumentError(f"workers must be >= 1, got {self.workers}")

    def with_patch_size(self, patch_size: int) -> "DenoiseConfig":
        return replace(self, patch_size=patch_size)

    def to_dict(self) -> Dict[str, Any]:
        cov: Dict[str, Any] = {"mode": coverage_name(self.coverage)}
        if not isinstance(self.coverage, NoOverlap):
            cov["overlap_percent"] = self.coverage.overlap_percent
        if isinstance(self.coverage, ExactN):
            cov["n"] = self.coverage.n
        return {
            "patch_size": int(self.patch_size),
            "coverage": cov,
            "edge_policy": self.edge_policy.value,
            "threshold_policy": self.threshold_policy.value,
            "shrinkage": self.shrinkage.value,
            "noise_sigma": float(self.noise_sigma),
            "keep_fraction": float(self.keep_fraction),
            "solver": self.solver,
            "power_max_iter": int(self.power_max_iter),
            "power_tol": float(self.power_tol),
            "workers": int(self.workers),
            "seed": self.seed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DenoiseConfig":
        """Inverse of `to_dict`; missing keys take their defaults."""
        kwargs = dict(data)
        cov = kwargs.pop("coverage", None)
        if isinstance(cov, dict):
            kwargs["coverage"] = coverage_from_name(
                cov.get("mode", "overlap_full"),
                overlap_percent=int(cov.get("overlap_percent", 50)),
                n=cov.get("n"),
            )
        unknown = set(kwargs) - set(cls.__dataclass_fields__)
        if unknown:
            raise InvalidArgumentError(f"unknown config keys: {sorted(unknown)}")
        return cls(**kwargs)

    def describe(self) -> List[str]:
        """Formatted `key : value` lines for the run log."""
        return [f"{k:<17}: {v}" for k, v in self.to_dict().items()]


class Stage(Enum):
    IDLE = 0
    CONFIGURED = 1
    EXTRACTED = 2
    FITTED = 3
    PROJECTED = 4
    SHRUNK = 5
    RECONSTRUCTED = 6
    DONE = 7


# --------------------------------------------------------------------------- #
# State machine
# --------------------------------------------------------------------------- #
class DenoiseRun:
    """
    One denoise invocation over a single pixel grid.

    Everything the run produces (patches, basis, coefficients, threshold)
    lives on this object and is discarded with it.
    """

    def __init__(self, grid: np.ndarray):
        self._input = as_grid(grid).copy()
        self.stage = Stage.IDLE
        self.cfg: Optional[DenoiseConfig] = None
        self.engine: Optional[PCAEngine] = None
        self.basis: Optional[Basis] = None
        self.threshold: Optional[float] = None
        self.n_kept: Optional[int] = None

        self._fit_vectors: Optional[np.ndarray] = None
        self._vectors: Optional[np.ndarray] = None
        self._origins: Optional[np.ndarray] = None
        self._coeffs: Optional[np.ndarray] = None
        self._result: Optional[np.ndarray] = None

    @property
    def shape(self) -> tuple:
        return self._input.shape

    def _require(self, expected: Stage, action: str) -> None:
        if self.stage is not expected:
            raise InvalidStateError(
                f"cannot {action} in stage {self.stage.name} (expected {expected.name})"
            )

    def configure(self, cfg: DenoiseConfig) -> "DenoiseRun":
        if self.stage is not Stage.IDLE:
            raise InvalidStateError(f"configuration is fixed once set (stage {self.stage.name})")
        h, w = self._input.shape
        if cfg.patch_size > min(h, w):
            raise InvalidArgumentError(
                f"patch_size {cfg.patch_size} exceeds grid dimensions {h}x{w}"
            )
        self.cfg = cfg
        self.stage = Stage.CONFIGURED
        return self

    def extract(self) -> "DenoiseRun":
        self._require(Stage.CONFIGURED, "extract")
        cfg = self.cfg
        with step_timer("extract"):
            if isinstance(cfg.coverage, ExactN):
                # fit on random samples, denoise the full overlapping tiling
                rng = np.random.default_rng(cfg.seed)
                sampled = extract_patches(
                    self._input, cfg.patch_size, cfg.coverage, cfg.edge_policy, rng=rng
                )
                tiling = extract_patches(
                    self._input,
                    cfg.patch_size,
                    OverlapFull(cfg.coverage.overlap_percent),
                    cfg.edge_policy,
                    workers=cfg.workers,
                )
                self._vectors = vectorize(tiling)
                self._fit_vectors = vectorize(sampled)
            else:
                tiling = extract_patches(
                    self._input, cfg.patch_size, cfg.coverage, cfg.edge_policy,
                    workers=cfg.workers,
                )
                self._vectors = vectorize(tiling)
                self._fit_vectors = self._vectors
            self._origins = np.array([p.origin for p in tiling], dtype=np.int64)
        logger.debug(
            f"extracted {len(tiling)} patches of {cfg.patch_size}x{cfg.patch_size} "
            f"({coverage_name(cfg.coverage)}, {cfg.edge_policy.value})"
        )
        self.stage = Stage.EXTRACTED
        return self

    def fit(self) -> "DenoiseRun":
        self._require(Stage.EXTRACTED, "fit")
        cfg = self.cfg
        self.engine = PCAEngine(cfg.solver, cfg.power_max_iter, cfg.power_tol)
        with step_timer("pca_fit"):
            self.basis = self.engine.fit(self._fit_vectors)
        self.stage = Stage.FITTED
        return self

    def project(self) -> "DenoiseRun":
        self._require(Stage.FITTED, "project")
        with step_timer("pca_project"):
            self._coeffs = self.engine.project(self._vectors)
        self.stage = Stage.PROJECTED
        return self

    def shrink(self) -> "DenoiseRun":
        self._require(Stage.PROJECTED, "shrink")
        cfg = self.cfg
        h, w = self._input.shape
        self.threshold = compute_threshold(
            cfg.threshold_policy, cfg.noise_sigma, h * w, self.basis.eigenvalues
        )
        coeffs = self._coeffs.copy()
        n_comp = coeffs.shape[1]
        self.n_kept = max(1, int(round(cfg.keep_fraction * n_comp)))
        coeffs[:, self.n_kept:] = 0.0
        with step_timer("shrink"):
            self._coeffs = shrink(coeffs, self.threshold, cfg.shrinkage)
        logger.debug(
            f"threshold={self.threshold:.4g} ({cfg.threshold_policy.value}, "
            f"{cfg.shrinkage.value}), kept {self.n_kept}/{n_comp} components"
        )
        self.stage = Stage.SHRUNK
        return self

    def reconstruct(self) -> "DenoiseRun":
        self._require(Stage.SHRUNK, "reconstruct")
        cfg = self.cfg
        h, w = self._input.shape
        with step_timer("reconstruct"):
            vectors = self.engine.reconstruct(self._coeffs)
            self._result = reconstruct_from_vectors(
                vectors, self._origins, cfg.patch_size, h, w,
                fill=self._input, workers=cfg.workers,
            )
        self.stage = Stage.RECONSTRUCTED
        return self

    def finish(self) -> np.ndarray:
        self._require(Stage.RECONSTRUCTED, "finish")
        self.stage = Stage.DONE
        return self._result.copy()

    @property
    def result(self) -> np.ndarray:
        if self.stage is not Stage.DONE:
            raise InvalidStateError(f"no result before DONE (stage {self.stage.name})")
        return self._result.copy()


# --------------------------------------------------------------------------- #
# Entry points
# --------------------------------------------------------------------------- #
def run_pipeline(grid: np.ndarray, cfg: DenoiseConfig | None = None) -> DenoiseRun:
    """Run every stage on *grid*; errors propagate to the caller."""
    run = DenoiseRun(grid)
    run.configure(cfg or DenoiseConfig())
    run.extract().fit().project().shrink().reconstruct()
    run.finish()
    return run


@timer
def denoise(grid: np.ndarray, cfg: DenoiseConfig | None = None) -> np.ndarray:
    """
    Denoise a grayscale pixel grid with global patch PCA.

    Never raises for a failed run: the error is logged and an untouched copy
    of *grid* is returned.
    """
    try:
        return run_pipeline(grid, cfg).result
    except Exception:
        logger.exception("denoise failed; returning the input unchanged")
        return np.array(grid, dtype=np.float64, copy=True)


def _denoise_window(win: Window, cfg: DenoiseConfig) -> Window:
    # errors propagate so one failed window voids the whole merge
    win.replace_data(run_pipeline(win.data, cfg).result)
    return win


@timer
def denoise_local(
    grid: np.ndarray,
    cfg: DenoiseConfig | None = None,
    window_size: int = 64,
    window_coverage: Coverage | None = None,
    workers: int = 1,
) -> np.ndarray:
    """
    Two‑level denoising: split into windows, denoise each window with its own
    basis, then merge the windows with Hann weights.

    Parameters
    ----------
    grid : np.ndarray
        2‑D pixel grid.
    cfg : DenoiseConfig, optional
        Per‑window patch configuration.
    window_size : int, default 64
        Side of the (square) windows; must be >= cfg.patch_size.
    window_coverage : Coverage, optional
        Window tiling; defaults to ``OverlapFull(50)``.
    workers : int, default 1
        Windows denoised concurrently.

    If any window fails the whole grid is returned untouched; a partly
    denoised merge is never produced.
    """
    cfg = cfg or DenoiseConfig()
    window_coverage = window_coverage or OverlapFull(50)
    try:
        arr = as_grid(grid)
        if window_size < cfg.patch_size:
            raise InvalidArgumentError(
                f"window_size {window_size} is smaller than patch_size {cfg.patch_size}"
            )
        if isinstance(window_coverage, ExactN):
            raise InvalidArgumentError("windows must tile the grid; ExactN is not allowed")
        h, w = arr.shape
        size = (min(window_size, h), min(window_size, w))
        windows = extract_windows(arr, size, window_coverage, cfg.edge_policy)
        logger.info(f"local denoise over {len(windows)} windows of {size[0]}x{size[1]}")

        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                windows = list(pool.map(lambda win: _denoise_window(win, cfg), windows))
        else:
            windows = [_denoise_window(win, cfg) for win in windows]

        return reconstruct_windows(windows, h, w, fill=arr)
    except Exception:
        logger.exception("local denoise failed; returning the input unchanged")
        return np.array(grid, dtype=np.float64, copy=True)


def fit_basis(
    grid: np.ndarray,
    cfg: DenoiseConfig | None = None,
    n_samples: int | None = None,
) -> Basis:
    """
    Fit a basis on patches of *grid* (all tiling patches, or ``n_samples``
    random ones) without denoising.
    """
    cfg = cfg or DenoiseConfig()
    if n_samples is not None:
        cfg = replace(cfg, coverage=ExactN(n_samples))
    run = DenoiseRun(grid).configure(cfg).extract().fit()
    return run.basis


def analyze_variance(
    grid: np.ndarray,
    patch_size: int = 8,
    n_samples: int = 2000,
    seed: int | None = None,
) -> np.ndarray:
    """Cumulative explained variance (percent) per component of a sampled fit."""
    cfg = DenoiseConfig(patch_size=patch_size, seed=seed)
    return fit_basis(grid, cfg, n_samples=n_samples).cumulative_variance()
