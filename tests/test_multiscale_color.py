"""
test_multiscale_color.py
========================

Multi‑scale fusion and per‑channel colour denoising.
"""

from __future__ import annotations

import numpy as np
import pytest

from color_denoise import ColorStrategy, color_metrics, denoise_color, supports
from errors import InvalidArgumentError, UnrecoverableError
from metrics import PSNR_IDENTICAL, add_gaussian_noise, mse, psnr
from multiscale import denoise_multiscale, normalize_weights
from pca import PCAEngine
from pipeline import DenoiseConfig, denoise


def create_synthetic_test_image(height: int = 48, width: int = 48) -> np.ndarray:
    yy, xx = np.mgrid[0:height, 0:width].astype(np.float64)
    img = 128 + 50 * np.sin(yy / 10) + 30 * np.cos(xx / 8)
    img[height // 6:height // 3, width // 6:5 * width // 6] = 200
    return img


def _noisy(seed: int = 42, sigma: float = 20.0):
    clean = create_synthetic_test_image()
    return clean, add_gaussian_noise(clean, sigma, np.random.default_rng(seed))


class TestMultiScale:
    """Weighted fusion of several patch sizes."""

    def test_normalize_weights(self):
        np.testing.assert_allclose(normalize_weights([1, 1, 2]), [0.25, 0.25, 0.5])
        with pytest.raises(InvalidArgumentError):
            normalize_weights([0, 0])
        with pytest.raises(InvalidArgumentError):
            normalize_weights([1, -1])
        with pytest.raises(InvalidArgumentError):
            normalize_weights([])

    def test_fused_is_weighted_blend(self):
        _, noisy = _noisy()
        res = denoise_multiscale(noisy, DenoiseConfig(), [4, 8], [1.0, 3.0])
        np.testing.assert_allclose(res.weights, [0.25, 0.75])
        expected = 0.25 * res.per_scale[0] + 0.75 * res.per_scale[1]
        np.testing.assert_allclose(res.fused, expected, atol=1e-9)
        assert res.psnr_per_scale is None

    def test_each_scale_is_a_plain_denoise(self):
        _, noisy = _noisy()
        cfg = DenoiseConfig()
        res = denoise_multiscale(noisy, cfg, [5])
        np.testing.assert_allclose(res.fused, denoise(noisy, cfg.with_patch_size(5)), atol=1e-9)

    def test_adaptive_weights_follow_psnr(self):
        clean, noisy = _noisy()
        res = denoise_multiscale(noisy, DenoiseConfig(), [4, 8], reference=clean)
        scores = np.array(res.psnr_per_scale)
        np.testing.assert_allclose(res.weights, scores / scores.sum())
        assert res.weights.sum() == pytest.approx(1.0)

    def test_threaded_matches_serial(self):
        _, noisy = _noisy()
        a = denoise_multiscale(noisy, DenoiseConfig(), [4, 6, 8])
        b = denoise_multiscale(noisy, DenoiseConfig(), [4, 6, 8], workers=3)
        np.testing.assert_allclose(a.fused, b.fused, atol=1e-8)

    def test_improves_on_noisy_input(self):
        clean, noisy = _noisy()
        res = denoise_multiscale(noisy, DenoiseConfig(), [4, 8])
        assert mse(res.fused, clean) < mse(noisy, clean)

    def test_length_mismatch(self):
        _, noisy = _noisy()
        with pytest.raises(InvalidArgumentError):
            denoise_multiscale(noisy, DenoiseConfig(), [4, 8], [1.0])
        with pytest.raises(InvalidArgumentError):
            denoise_multiscale(noisy, DenoiseConfig(), [])

    def test_patch_size_larger_than_grid(self):
        noisy = add_gaussian_noise(np.full((10, 10), 90.0), 10.0, np.random.default_rng(0))
        with pytest.raises(InvalidArgumentError, match="exceed grid"):
            denoise_multiscale(noisy, DenoiseConfig(), [4, 12])

    @pytest.mark.parametrize("workers", [1, 2])
    def test_failing_scale_is_not_blended(self, workers, monkeypatch):
        original_fit = PCAEngine.fit

        def fit_fails_for_8x8(self, vectors):
            if vectors.shape[1] == 64:
                raise UnrecoverableError("eigen solver exploded")
            return original_fit(self, vectors)

        monkeypatch.setattr(PCAEngine, "fit", fit_fails_for_8x8)
        _, noisy = _noisy()
        with pytest.raises(UnrecoverableError):
            denoise_multiscale(noisy, DenoiseConfig(), [4, 8], workers=workers)


class TestColor:
    """Per‑channel strategy and the unsupported vectorial one."""

    def _colour(self):
        base = create_synthetic_test_image()
        clean = np.dstack([base, 255 - base, 0.5 * base + 60])
        rng = np.random.default_rng(7)
        return clean, add_gaussian_noise(clean, 15.0, rng)

    def test_per_channel_equals_independent_runs(self):
        _, noisy = self._colour()
        cfg = DenoiseConfig(noise_sigma=15.0)
        out = denoise_color(noisy, cfg, parallel=False)
        assert out.shape == noisy.shape
        for ch in range(3):
            np.testing.assert_allclose(out[:, :, ch], denoise(noisy[:, :, ch].copy(), cfg), atol=1e-9)

    def test_parallel_matches_sequential(self):
        _, noisy = self._colour()
        cfg = DenoiseConfig(noise_sigma=15.0)
        np.testing.assert_allclose(
            denoise_color(noisy, cfg, parallel=True),
            denoise_color(noisy, cfg, parallel=False),
            atol=1e-9,
        )

    def test_vectorial_not_implemented(self):
        _, noisy = self._colour()
        assert supports(ColorStrategy.PER_CHANNEL)
        assert not supports("rgb_vectorial")
        with pytest.raises(NotImplementedError):
            denoise_color(noisy, strategy=ColorStrategy.RGB_VECTORIAL)

    @pytest.mark.parametrize("parallel", [True, False])
    def test_failing_channel_raises(self, parallel):
        _, noisy = self._colour()
        noisy[3, 3, 1] = np.nan  # only the second channel is unusable
        with pytest.raises(InvalidArgumentError):
            denoise_color(noisy, DenoiseConfig(noise_sigma=15.0), parallel=parallel)

    def test_requires_three_channels(self):
        with pytest.raises(InvalidArgumentError):
            denoise_color(np.zeros((16, 16)))

    def test_color_metrics(self):
        clean, noisy = self._colour()
        same = color_metrics(clean, clean)
        assert same.mse == 0.0
        assert same.psnr == PSNR_IDENTICAL
        assert same.ssim == pytest.approx(1.0)

        out = denoise_color(noisy, DenoiseConfig(noise_sigma=15.0))
        assert color_metrics(clean, out).psnr > color_metrics(clean, noisy).psnr
        assert color_metrics(clean, noisy).psnr == pytest.approx(
            np.mean([psnr(clean[:, :, c], noisy[:, :, c]) for c in range(3)])
        )
