"""
test_pipeline.py
================

Denoise orchestrator: configuration, state machine, end‑to‑end behaviour and
the degrade‑to‑noop boundary.
"""

from __future__ import annotations

import dataclasses

import numpy as np
import pytest

import pipeline
from errors import InvalidArgumentError, InvalidStateError, UnrecoverableError
from io_utils import load_config, save_config
from metrics import add_gaussian_noise, mse
from patch_utils import EdgePolicy, ExactN, NoOverlap, OverlapFull
from pca import PCAEngine
from pipeline import (
    DenoiseConfig,
    DenoiseRun,
    Stage,
    analyze_variance,
    denoise,
    denoise_local,
    fit_basis,
    run_pipeline,
)
from thresholding import Shrinkage, ThresholdPolicy, visu_shrink


# --------------------------------------------------------------------------- #
# Test fixtures and utilities
# --------------------------------------------------------------------------- #

def create_synthetic_test_image(height: int = 64, width: int = 64) -> np.ndarray:
    """Smooth sinusoidal background with one bright and one dark stripe."""
    yy, xx = np.mgrid[0:height, 0:width].astype(np.float64)
    img = 128 + 50 * np.sin(yy / 10) + 30 * np.cos(xx / 8)
    img[height // 6:height // 3, width // 6:5 * width // 6] = 200
    img[height // 2:height // 2 + 5, width // 6:5 * width // 6] = 50
    return img


def noisy_pair(height: int = 64, width: int = 64, sigma: float = 20.0, seed: int = 42):
    clean = create_synthetic_test_image(height, width)
    noisy = add_gaussian_noise(clean, sigma, np.random.default_rng(seed))
    return clean, noisy


class TestConfig:
    """DenoiseConfig defaults, validation and persistence."""

    def test_defaults(self):
        cfg = DenoiseConfig()
        assert cfg.patch_size == 8
        assert cfg.coverage == OverlapFull(50)
        assert cfg.edge_policy is EdgePolicy.CLAMP_BACK
        assert cfg.threshold_policy is ThresholdPolicy.VISU_SHRINK
        assert cfg.shrinkage is Shrinkage.HARD
        assert cfg.noise_sigma == 20.0
        assert cfg.keep_fraction == 1.0

    def test_string_enums_are_coerced(self):
        cfg = DenoiseConfig(edge_policy="reflect", threshold_policy="bayes_shrink", shrinkage="soft")
        assert cfg.edge_policy is EdgePolicy.REFLECT
        assert cfg.threshold_policy is ThresholdPolicy.BAYES_SHRINK
        assert cfg.shrinkage is Shrinkage.SOFT

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"patch_size": 0},
            {"noise_sigma": 0.0},
            {"keep_fraction": 0.0},
            {"keep_fraction": 1.5},
            {"solver": "qr"},
            {"workers": 0},
            {"coverage": "overlap_full"},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(InvalidArgumentError):
            DenoiseConfig(**kwargs)

    def test_bad_enum_value(self):
        with pytest.raises(ValueError):
            DenoiseConfig(shrinkage="medium")

    def test_frozen(self):
        cfg = DenoiseConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            cfg.patch_size = 4  # type: ignore[misc]
        assert cfg.with_patch_size(4).patch_size == 4
        assert cfg.patch_size == 8

    def test_json_persistence(self, tmp_path):
        cfg = DenoiseConfig(
            patch_size=6,
            coverage=ExactN(500, 75),
            edge_policy=EdgePolicy.REFLECT,
            threshold_policy=ThresholdPolicy.BAYES_SHRINK,
            shrinkage=Shrinkage.SOFT,
            noise_sigma=12.5,
            seed=9,
        )
        path = save_config(cfg.to_dict(), tmp_path / "cfg.json")
        assert DenoiseConfig.from_dict(load_config(path)) == cfg

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(InvalidArgumentError):
            DenoiseConfig.from_dict({"patch_size": 8, "wavelet": "haar"})

    def test_describe_lines(self):
        lines = DenoiseConfig(noise_sigma=15.0).describe()
        assert any(ln.startswith("noise_sigma") and "15.0" in ln for ln in lines)


class TestStateMachine:
    """Stage ordering of DenoiseRun."""

    def test_full_walk(self):
        _, noisy = noisy_pair(32, 32)
        run = DenoiseRun(noisy)
        assert run.stage is Stage.IDLE
        run.configure(DenoiseConfig(patch_size=4))
        assert run.stage is Stage.CONFIGURED
        run.extract()
        assert run.stage is Stage.EXTRACTED
        run.fit()
        assert run.stage is Stage.FITTED
        run.project()
        run.shrink()
        assert run.stage is Stage.SHRUNK
        run.reconstruct()
        out = run.finish()
        assert run.stage is Stage.DONE
        assert out.shape == (32, 32)
        assert run.threshold == pytest.approx(visu_shrink(20.0, 32 * 32))

    def test_skipping_a_stage_raises(self):
        run = DenoiseRun(np.zeros((16, 16)))
        with pytest.raises(InvalidStateError):
            run.extract()
        run.configure(DenoiseConfig(patch_size=4))
        with pytest.raises(InvalidStateError):
            run.fit()
        run.extract()
        with pytest.raises(InvalidStateError):
            run.project()
        with pytest.raises(InvalidStateError):
            run.reconstruct()
        run.fit()
        with pytest.raises(InvalidStateError):
            run.shrink()

    def test_configuration_is_fixed(self):
        run = DenoiseRun(np.zeros((16, 16))).configure(DenoiseConfig(patch_size=4))
        with pytest.raises(InvalidStateError):
            run.configure(DenoiseConfig(patch_size=2))

    def test_result_before_done(self):
        run = DenoiseRun(np.zeros((16, 16)))
        with pytest.raises(InvalidStateError):
            _ = run.result

    def test_patch_larger_than_grid(self):
        with pytest.raises(InvalidArgumentError):
            DenoiseRun(np.zeros((6, 10))).configure(DenoiseConfig(patch_size=8))

    def test_run_pipeline_propagates(self):
        with pytest.raises(InvalidArgumentError):
            run_pipeline(np.zeros((4, 4)), DenoiseConfig(patch_size=8))


class TestDenoise:
    """End‑to‑end behaviour."""

    def test_reduces_error(self):
        clean, noisy = noisy_pair()
        out = denoise(noisy, DenoiseConfig(noise_sigma=20.0))
        assert out.shape == noisy.shape
        assert mse(out, clean) < 0.5 * mse(noisy, clean)

    @pytest.mark.parametrize(
        "cfg",
        [
            DenoiseConfig(patch_size=4, coverage=NoOverlap()),
            DenoiseConfig(patch_size=6, coverage=OverlapFull(75), edge_policy=EdgePolicy.REFLECT),
            DenoiseConfig(patch_size=4, coverage=ExactN(300), seed=1),
            DenoiseConfig(threshold_policy=ThresholdPolicy.BAYES_SHRINK, shrinkage=Shrinkage.SOFT),
            DenoiseConfig(patch_size=4, solver="power"),
            DenoiseConfig(keep_fraction=0.25),
            DenoiseConfig(workers=3),
        ],
        ids=["no_overlap", "reflect_75", "exact_n", "bayes_soft", "power", "keep_quarter", "threaded"],
    )
    def test_variants_produce_finite_output(self, cfg):
        clean, noisy = noisy_pair(48, 48)
        out = denoise(noisy, cfg)
        assert out.shape == (48, 48)
        assert np.all(np.isfinite(out))
        assert mse(out, clean) < mse(noisy, clean)

    def test_constant_image_is_fixed_point(self):
        grid = np.full((24, 24), 77.0)
        np.testing.assert_allclose(denoise(grid), grid, atol=1e-9)

    def test_input_not_mutated(self):
        _, noisy = noisy_pair(32, 32)
        before = noisy.copy()
        denoise(noisy, DenoiseConfig(patch_size=4))
        np.testing.assert_array_equal(noisy, before)

    def test_exact_n_seed_reproducible(self):
        _, noisy = noisy_pair(40, 40)
        cfg = DenoiseConfig(patch_size=4, coverage=ExactN(200), seed=5)
        np.testing.assert_array_equal(denoise(noisy, cfg), denoise(noisy, cfg))

    def test_threaded_matches_serial(self):
        _, noisy = noisy_pair(40, 40)
        a = denoise(noisy, DenoiseConfig(patch_size=5))
        b = denoise(noisy, DenoiseConfig(patch_size=5, workers=4))
        np.testing.assert_allclose(a, b, atol=1e-8)


class TestDegradeToNoop:
    """Failures inside the pipeline return the input unchanged."""

    def test_invalid_geometry_returns_input(self):
        grid = np.arange(36, dtype=np.float64).reshape(6, 6)
        out = denoise(grid, DenoiseConfig(patch_size=8))
        np.testing.assert_array_equal(out, grid)
        assert out is not grid

    def test_solver_failure_returns_input(self, monkeypatch):
        def boom(self, vectors):
            raise UnrecoverableError("eigen solver exploded")

        monkeypatch.setattr(PCAEngine, "fit", boom)
        _, noisy = noisy_pair(32, 32)
        out = denoise(noisy, DenoiseConfig(patch_size=4))
        np.testing.assert_array_equal(out, noisy)

    def test_failure_is_logged(self, caplog):
        with caplog.at_level("ERROR", logger="pipeline"):
            denoise(np.zeros((4, 4)), DenoiseConfig(patch_size=8))
        assert "returning the input unchanged" in caplog.text

    def test_local_failure_returns_input(self):
        _, noisy = noisy_pair(32, 32)
        out = denoise_local(noisy, DenoiseConfig(patch_size=8), window_size=4)
        np.testing.assert_array_equal(out, noisy)

    @pytest.mark.parametrize("workers", [1, 3])
    def test_one_failing_window_returns_whole_input(self, workers, caplog):
        _, noisy = noisy_pair(48, 48)
        cfg = DenoiseConfig(patch_size=4)
        # the same grid without the bad pixel is denoised normally
        assert not np.allclose(denoise_local(noisy, cfg, window_size=16), noisy)

        grid = noisy.copy()
        grid[0, 0] = np.nan  # only the windows touching the corner fail
        with caplog.at_level("ERROR", logger="pipeline"):
            out = denoise_local(grid, cfg, window_size=16, workers=workers)
        np.testing.assert_array_equal(out, grid)
        assert out is not grid
        assert "returning the input unchanged" in caplog.text

    def test_nan_grid_global_returns_input(self):
        _, noisy = noisy_pair(32, 32)
        noisy[5, 7] = np.nan
        np.testing.assert_array_equal(denoise(noisy, DenoiseConfig(patch_size=4)), noisy)


class TestLocalAndAnalysis:
    """Window path, basis fitting and variance analysis."""

    def test_local_reduces_error(self):
        clean, noisy = noisy_pair(96, 96)
        out = denoise_local(noisy, DenoiseConfig(), window_size=48)
        assert out.shape == (96, 96)
        assert mse(out, clean) < 0.5 * mse(noisy, clean)

    def test_local_threaded_matches_serial(self):
        _, noisy = noisy_pair(64, 64)
        cfg = DenoiseConfig(patch_size=4)
        a = denoise_local(noisy, cfg, window_size=32)
        b = denoise_local(noisy, cfg, window_size=32, workers=3)
        np.testing.assert_allclose(a, b, atol=1e-8)

    def test_local_no_overlap_windows(self):
        clean, noisy = noisy_pair(64, 64)
        out = denoise_local(noisy, DenoiseConfig(), window_size=32, window_coverage=NoOverlap())
        assert mse(out, clean) < mse(noisy, clean)

    def test_fit_basis(self):
        _, noisy = noisy_pair()
        basis = fit_basis(noisy, DenoiseConfig(patch_size=5), n_samples=400)
        assert basis.dim == 25
        assert basis.eigenvalues[0] >= basis.eigenvalues[-1]

    def test_analyze_variance(self):
        _, noisy = noisy_pair()
        cum = analyze_variance(noisy, patch_size=8, n_samples=500, seed=0)
        assert cum.shape == (64,)
        assert np.all(np.diff(cum) >= -1e-9)
        assert cum[-1] == pytest.approx(100.0)
        # the smooth image concentrates variance in the leading components
        assert cum[4] > 50.0

    def test_logger_name(self):
        assert pipeline.logger.name == "pipeline"
