#!/usr/bin/env python
"""
cli.py
======

Command‑line interface for the **pca_denoise** project.

Copy‑paste examples
-------------------
# 1) Default parameters (8x8 patches, 50 % overlap, hard VisuShrink, σ estimated)
python cli.py denoise -i input_img/lena.png

# 2) Corrupt a clean image with σ=20 first and report MSE / PSNR / SSIM
python cli.py denoise -i input_img/lena.png --add_noise 20

# 3) Soft BayesShrink, reflected borders, power solver
python cli.py denoise -i input_img/lena.png --threshold bayes_shrink --shrinkage soft --edge_policy reflect --solver power

# 4) Fit on 3000 random patches, denoise the 75 % overlap tiling
python cli.py denoise -i input_img/lena.png --coverage exact_n --samples 3000 --overlap 75

# 5) Two-level (window → patch) denoising with 64x64 windows
python cli.py local -i input_img/lena.png --window_size 64 --window_overlap 50

# 6) Multi-scale fusion with PSNR-adaptive weights
python cli.py multiscale -i input_img/lena.png --add_noise 20 --patch_sizes 5 8 12 --adaptive

# 7) Colour image, one thread per channel
python cli.py color -i input_img/peppers.png --noise_level high

# 8) Basis images + cumulative variance curve
python cli.py visualize -i input_img/lena.png --samples 5000

# 9) Side-by-side comparison of standard configurations
python cli.py compare -i input_img/lena.png --add_noise 20
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, NoReturn, Optional, Tuple

import numpy as np

from color_denoise import ColorStrategy, color_metrics, denoise_color
from errors import DenoiseError
from io_utils import (
    RESULTS_DIR,
    load_config,
    read_image,
    save_config,
    save_image,
    summary,
    write_log,
)
from metrics import QualityReport, add_gaussian_noise, evaluate
from multiscale import DEFAULT_PATCH_SIZES, denoise_multiscale
from patch_utils import EdgePolicy, NoOverlap, OverlapFull
from pca import SOLVERS
from pipeline import (
    NOISE_PRESETS,
    DenoiseConfig,
    denoise,
    denoise_local,
    fit_basis,
)
from thresholding import Shrinkage, ThresholdPolicy, estimate_noise_sigma
from visualize import save_basis_report

logger = logging.getLogger("cli")

# smallest σ handed to the denoiser when the estimate is ~0 (clean input)
_MIN_SIGMA = 1e-3


# --------------------------------------------------------------------------- #
# Shared helpers
# --------------------------------------------------------------------------- #
def _out_dir(args: argparse.Namespace) -> Path:
    return Path(args.output_dir) if args.output_dir else RESULTS_DIR


def _load_input(
    args: argparse.Namespace, as_gray: bool = True
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Return (image to denoise, clean reference or None)."""
    img = read_image(args.img, as_gray=as_gray)
    if args.add_noise is None:
        return img, None
    rng = np.random.default_rng(args.seed)
    noisy = add_gaussian_noise(img, args.add_noise, rng)
    save_image(noisy, _out_dir(args) / "noisy.png")
    return noisy, img


def build_config(args: argparse.Namespace, image: np.ndarray) -> DenoiseConfig:
    """
    Build a `DenoiseConfig` from CLI arguments.

    A ``--config`` JSON file gives the base values; every option given on the
    command line overrides it. σ comes from ``--noise_sigma``, then
    ``--noise_level``, then the JSON file, and is otherwise estimated from
    *image*. ``--samples`` without ``--coverage`` selects ``exact_n``.
    """
    base: Dict = load_config(args.config) if args.config else {}

    overrides = {
        "patch_size": args.patch_size,
        "edge_policy": args.edge_policy,
        "threshold_policy": args.threshold,
        "shrinkage": args.shrinkage,
        "keep_fraction": args.keep_fraction,
        "solver": args.solver,
        "workers": args.workers,
        "seed": args.seed,
    }
    base.update({k: v for k, v in overrides.items() if v is not None})

    if any(v is not None for v in (args.coverage, args.overlap, args.samples)):
        cov = dict(base.get("coverage", {}))
        if args.coverage is not None:
            cov["mode"] = args.coverage
        elif args.samples is not None:
            # --samples alone means random sampling
            cov["mode"] = "exact_n"
        if args.overlap is not None:
            cov["overlap_percent"] = args.overlap
        if args.samples is not None:
            cov["n"] = args.samples
        base["coverage"] = cov

    if args.noise_sigma is not None:
        base["noise_sigma"] = args.noise_sigma
    elif args.noise_level is not None:
        base["noise_sigma"] = NOISE_PRESETS[args.noise_level]
    elif "noise_sigma" not in base:
        gray = image if image.ndim == 2 else image.mean(axis=2)
        sigma = estimate_noise_sigma(gray)
        logger.info(f"estimated noise sigma: {sigma:.3f}")
        base["noise_sigma"] = max(sigma, _MIN_SIGMA)

    cfg = DenoiseConfig.from_dict(base)
    if args.save_config:
        save_config(cfg.to_dict(), args.save_config)
    return cfg


def _report(
    name: str,
    out: np.ndarray,
    clean: Optional[np.ndarray],
    metric: Callable[[np.ndarray, np.ndarray], QualityReport] = evaluate,
) -> List[str]:
    lines: List[str] = []
    if clean is not None:
        q = metric(clean, out)
        line = f"{name:<12}: {q.as_line()}"
        print(line)
        lines.append(line)
    return lines


def _finish(args: argparse.Namespace, cfg: DenoiseConfig, extra: List[str]) -> None:
    lines = [f"command          : {args.command}", f"input_img        : {args.img}"]
    if args.add_noise is not None:
        lines.append(f"add_noise        : {args.add_noise}")
    lines += cfg.describe() + extra
    log_path = write_log(lines, _out_dir(args))
    print(f"Run log: {log_path}")


# --------------------------------------------------------------------------- #
# Sub-commands
# --------------------------------------------------------------------------- #
def _cmd_denoise(args: argparse.Namespace) -> None:
    img, clean = _load_input(args)
    cfg = build_config(args, img)
    out = denoise(img, cfg)
    path = save_image(out, _out_dir(args) / "denoised.png")
    print(f"Denoised image: {path}")
    extra = _report("noisy", img, clean) + _report("denoised", out, clean)
    _finish(args, cfg, extra)


def _cmd_local(args: argparse.Namespace) -> None:
    img, clean = _load_input(args)
    cfg = build_config(args, img)
    win_cov = NoOverlap() if args.window_overlap == 0 else OverlapFull(args.window_overlap)
    out = denoise_local(img, cfg, args.window_size, win_cov, workers=args.workers or 1)
    path = save_image(out, _out_dir(args) / "denoised_local.png")
    print(f"Denoised image: {path}")
    extra = [f"window_size      : {args.window_size}", f"window_overlap   : {args.window_overlap}"]
    extra += _report("noisy", img, clean) + _report("local", out, clean)
    _finish(args, cfg, extra)


def _cmd_multiscale(args: argparse.Namespace) -> None:
    img, clean = _load_input(args)
    cfg = build_config(args, img)
    reference = clean if args.adaptive else None
    if args.adaptive and clean is None:
        logger.warning("--adaptive needs --add_noise (a clean reference); using fixed weights")
    res = denoise_multiscale(
        img, cfg, args.patch_sizes, args.weights, reference=reference,
        workers=args.workers or 1,
    )
    out_dir = _out_dir(args)
    path = save_image(res.fused, out_dir / "denoised_multiscale.png")
    for s, grid in zip(res.patch_sizes, res.per_scale):
        save_image(grid, out_dir / f"scale_{s:02d}.png")
    print(f"Fused image: {path}")
    extra = [f"patch_sizes      : {res.patch_sizes}",
             f"weights          : {np.round(res.weights, 4).tolist()}"]
    extra += _report("noisy", img, clean) + _report("fused", res.fused, clean)
    _finish(args, cfg, extra)


def _cmd_color(args: argparse.Namespace) -> None:
    img, clean = _load_input(args, as_gray=False)
    cfg = build_config(args, img)
    out = denoise_color(img, cfg, args.strategy, parallel=not args.sequential)
    path = save_image(out, _out_dir(args) / "denoised_color.png")
    print(f"Denoised image: {path}")
    extra = [f"strategy         : {args.strategy}"]
    extra += _report("noisy", img, clean, color_metrics)
    extra += _report("denoised", out, clean, color_metrics)
    _finish(args, cfg, extra)


def _cmd_visualize(args: argparse.Namespace) -> None:
    img, _ = _load_input(args)
    cfg = build_config(args, img)
    basis = fit_basis(img, cfg, n_samples=args.samples)
    s = cfg.patch_size
    h, w = img.shape
    r0, c0 = (h - s) // 2, (w - s) // 2
    centre = img[r0:r0 + s, c0:c0 + s].ravel()
    files = save_basis_report(basis, s, _out_dir(args), vector=centre)

    cum = basis.cumulative_variance()
    extra = []
    for k in (1, 5, 10, 20):
        if k <= cum.size:
            line = f"variance@{k:<3}     : {cum[k - 1]:6.2f} %"
            print(line)
            extra.append(line)
    for tag, p in files.items():
        print(f"  {tag:<16}: {p}")
    _finish(args, cfg, extra)


def _comparison_configs(cfg: DenoiseConfig) -> Dict[str, Callable[[np.ndarray], np.ndarray]]:
    hard_visu = DenoiseConfig.from_dict(
        {**cfg.to_dict(), "threshold_policy": "visu_shrink", "shrinkage": "hard"}
    )
    soft_bayes = DenoiseConfig.from_dict(
        {**cfg.to_dict(), "threshold_policy": "bayes_shrink", "shrinkage": "soft"}
    )
    return {
        "hard_visu": lambda g: denoise(g, hard_visu),
        "soft_bayes": lambda g: denoise(g, soft_bayes),
        "local_64": lambda g: denoise_local(g, cfg, 64),
        "multiscale": lambda g: denoise_multiscale(g, cfg, DEFAULT_PATCH_SIZES).fused,
    }


def _cmd_compare(args: argparse.Namespace) -> None:
    img, clean = _load_input(args)
    cfg = build_config(args, img)
    reference = clean if clean is not None else img
    if clean is None:
        logger.warning("no clean reference (--add_noise not given); scores are against the input")

    def _timed(item):
        name, fn = item
        t0 = time.perf_counter()
        out = fn(img)
        return name, out, (time.perf_counter() - t0) * 1e3

    approaches = _comparison_configs(cfg)
    with ThreadPoolExecutor(max_workers=args.workers or len(approaches)) as pool:
        results = list(pool.map(_timed, approaches.items()))

    header = f"{'approach':<12}  {'MSE':>9}  {'PSNR':>8}  {'SSIM':>7}  {'time ms':>9}"
    print(header)
    extra = [header]
    for name, out, ms in results:
        q = evaluate(reference, out)
        line = f"{name:<12}  {q.mse:9.3f}  {q.psnr:8.3f}  {q.ssim:7.4f}  {ms:9.1f}"
        print(line)
        extra.append(line)
        save_image(out, _out_dir(args) / f"compare_{name}.png")
    _finish(args, cfg, extra)


# --------------------------------------------------------------------------- #
# Argument parsing
# --------------------------------------------------------------------------- #
def _shared_options() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(add_help=False)
    p.add_argument("-i", "--img", required=True, help="Path to the input image.")
    p.add_argument("-o", "--output_dir", help="Output directory (default: results/<timestamp>).")
    p.add_argument("--config", help="JSON config file with base parameters.")
    p.add_argument("--save_config", help="Write the effective config to this JSON file.")
    p.add_argument(
        "--add_noise",
        type=float,
        help="Corrupt the input with Gaussian noise of this σ and score against the clean image.",
    )

    # Patch geometry
    p.add_argument("--patch_size", type=int, help="Patch side s (default: 8).")
    p.add_argument(
        "--coverage",
        choices=["overlap_full", "no_overlap", "exact_n"],
        help="Patch coverage mode (default: overlap_full).",
    )
    p.add_argument("--overlap", type=int, help="Overlap percent in [0, 100] (default: 50).")
    p.add_argument(
        "--samples", type=int,
        help="Random patches; implies exact_n unless --coverage is given (also used by visualize).",
    )
    p.add_argument(
        "--edge_policy",
        choices=[e.value for e in EdgePolicy],
        help="Border handling (default: clamp_back).",
    )

    # Thresholding
    p.add_argument(
        "--threshold",
        choices=[t.value for t in ThresholdPolicy],
        help="Threshold policy (default: visu_shrink).",
    )
    p.add_argument(
        "--shrinkage",
        choices=[s.value for s in Shrinkage],
        help="Shrinkage function (default: hard).",
    )
    p.add_argument("--noise_sigma", type=float, help="Noise σ; estimated from the image if omitted.")
    p.add_argument(
        "--noise_level",
        choices=sorted(NOISE_PRESETS),
        help="Preset σ (low=10, medium=20, high=30).",
    )
    p.add_argument("--keep_fraction", type=float, help="Fraction of leading components kept (default: 1.0).")

    # Solver / execution
    p.add_argument("--solver", choices=list(SOLVERS), help="Eigen solver (default: eigh).")
    p.add_argument("--workers", type=int, help="Worker threads (default: 1).")
    p.add_argument("--seed", type=int, help="RNG seed for noise and patch sampling.")
    return p


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pca_denoise",
        description="Patch-based PCA Gaussian denoising CLI",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    shared = _shared_options()

    p_den = subparsers.add_parser("denoise", parents=[shared], help="Global patch PCA denoising.")
    p_den.set_defaults(func=_cmd_denoise)

    p_loc = subparsers.add_parser("local", parents=[shared], help="Window → patch two-level denoising.")
    p_loc.add_argument("--window_size", type=int, default=64, help="Window side (default: 64).")
    p_loc.add_argument(
        "--window_overlap",
        type=int,
        default=50,
        help="Window overlap percent; 0 tiles without overlap (default: 50).",
    )
    p_loc.set_defaults(func=_cmd_local)

    p_ms = subparsers.add_parser("multiscale", parents=[shared], help="Fuse several patch sizes.")
    p_ms.add_argument(
        "--patch_sizes", nargs="+", type=int, default=list(DEFAULT_PATCH_SIZES),
        help="Patch sizes, one per scale (default: 5 8 12).",
    )
    p_ms.add_argument("--weights", nargs="+", type=float, help="Blend weights (default: uniform).")
    p_ms.add_argument(
        "--adaptive", action="store_true",
        help="PSNR-proportional weights against the clean image (needs --add_noise).",
    )
    p_ms.set_defaults(func=_cmd_multiscale)

    p_col = subparsers.add_parser("color", parents=[shared], help="Per-channel colour denoising.")
    p_col.add_argument(
        "--strategy", choices=[c.value for c in ColorStrategy],
        default=ColorStrategy.PER_CHANNEL.value,
        help="Colour strategy (default: per_channel).",
    )
    p_col.add_argument("--sequential", action="store_true", help="Process channels one after another.")
    p_col.set_defaults(func=_cmd_color)

    p_vis = subparsers.add_parser("visualize", parents=[shared], help="Render basis and variance curve.")
    p_vis.set_defaults(func=_cmd_visualize)

    p_cmp = subparsers.add_parser("compare", parents=[shared], help="Compare standard configurations.")
    p_cmp.set_defaults(func=_cmd_compare)

    return parser


def main(argv: list[str] | None = None) -> NoReturn:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)-13s %(levelname)-7s %(message)s",
    )
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        args.func(args)  # type: ignore[attr-defined]
    except (DenoiseError, NotImplementedError, OSError, ValueError) as exc:
        logger.error(f"{args.command} failed: {exc}")
        sys.exit(1)
    summary()
    sys.exit(0)


if __name__ == "__main__":  # pragma: no cover
    main()
