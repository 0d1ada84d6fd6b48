"""
visualize.py – Render a fitted `pca.Basis` as 8‑bit images.

Everything here is a read of an existing basis; nothing is refitted.

Public API
----------
basis_images(basis, patch_size, n_components=None) -> list[np.ndarray]
basis_mosaic(basis, patch_size, n_components=None, scale=4, cols=None)
progressive_reconstructions(basis, vector, patch_size, counts=PROGRESSIVE_COUNTS)
variance_curve(basis, width=500, height=300) -> BGR uint8 image
save_basis_report(basis, patch_size, out_dir, vector=None) -> dict[str, Path]
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Dict, List, Sequence

import cv2
import numpy as np

from errors import InvalidArgumentError
from io_utils import ensure_dir, save_image
from pca import Basis

__all__ = [
    "PROGRESSIVE_COUNTS",
    "to_uint8",
    "basis_images",
    "basis_mosaic",
    "progressive_reconstructions",
    "variance_curve",
    "save_basis_report",
]

PROGRESSIVE_COUNTS = (1, 2, 3, 5, 10, 15, 20, 30, 50, 75, 100)

# plot margins: left, right, top, bottom
_MARGINS = (50, 20, 30, 50)


def to_uint8(arr: np.ndarray) -> np.ndarray:
    """Min–max stretch *arr* to [0, 255] (constant input maps to 0)."""
    return cv2.normalize(
        np.asarray(arr, dtype=np.float64),
        None,
        alpha=0,
        beta=255,
        norm_type=cv2.NORM_MINMAX,
        dtype=cv2.CV_8U,
    )


def _check(basis: Basis, patch_size: int) -> None:
    if patch_size * patch_size != basis.dim:
        raise InvalidArgumentError(
            f"patch_size {patch_size} does not match basis dimension {basis.dim}"
        )


def basis_images(
    basis: Basis, patch_size: int, n_components: int | None = None
) -> List[np.ndarray]:
    """Each leading eigenvector reshaped to ``s × s`` and stretched to 8 bit."""
    _check(basis, patch_size)
    k = basis.n_components if n_components is None else min(n_components, basis.n_components)
    return [
        to_uint8(basis.eigenvectors[:, i].reshape(patch_size, patch_size))
        for i in range(k)
    ]


def basis_mosaic(
    basis: Basis,
    patch_size: int,
    n_components: int | None = None,
    scale: int = 4,
    cols: int | None = None,
    pad: int = 1,
) -> np.ndarray:
    """Tile the basis images into one grid, upscaled by *scale* (nearest)."""
    tiles = basis_images(basis, patch_size, n_components)
    cols = cols or int(math.ceil(math.sqrt(len(tiles))))
    rows = int(math.ceil(len(tiles) / cols))
    side = patch_size * scale
    mosaic = np.full(
        (rows * (side + pad) + pad, cols * (side + pad) + pad), 128, dtype=np.uint8
    )
    for idx, tile in enumerate(tiles):
        r, c = divmod(idx, cols)
        y0, x0 = pad + r * (side + pad), pad + c * (side + pad)
        mosaic[y0:y0 + side, x0:x0 + side] = cv2.resize(
            tile, (side, side), interpolation=cv2.INTER_NEAREST
        )
    return mosaic


def progressive_reconstructions(
    basis: Basis,
    vector: np.ndarray,
    patch_size: int,
    counts: Sequence[int] = PROGRESSIVE_COUNTS,
) -> Dict[int, np.ndarray]:
    """
    Rebuild one patch vector from its ``k`` leading components for every
    ``k`` in *counts* (capped at the number of components).
    """
    _check(basis, patch_size)
    v = np.asarray(vector, dtype=np.float64).ravel()
    if v.size != basis.dim:
        raise InvalidArgumentError(f"vector length {v.size} != basis dimension {basis.dim}")
    coeffs = (v - basis.mean) @ basis.eigenvectors
    out: Dict[int, np.ndarray] = {}
    for k in counts:
        k = min(int(k), basis.n_components)
        if k <= 0 or k in out:
            continue
        rec = basis.mean + basis.eigenvectors[:, :k] @ coeffs[:k]
        out[k] = rec.reshape(patch_size, patch_size)
    return out


def variance_curve(basis: Basis, width: int = 500, height: int = 300) -> np.ndarray:
    """Cumulative explained variance (0–100 %) against component index."""
    left, right, top, bottom = _MARGINS
    if width <= left + right or height <= top + bottom:
        raise InvalidArgumentError(f"plot of {width}x{height} is smaller than its margins")
    img = np.full((height, width, 3), 255, dtype=np.uint8)
    pw, ph = width - left - right, height - top - bottom

    # axes
    cv2.line(img, (left, top), (left, top + ph), (0, 0, 0), 1)
    cv2.line(img, (left, top + ph), (left + pw, top + ph), (0, 0, 0), 1)
    for pct in (0, 50, 100):
        y = top + ph - int(round(pct / 100.0 * ph))
        cv2.putText(img, f"{pct}%", (5, y + 4), cv2.FONT_HERSHEY_SIMPLEX, 0.35, (0, 0, 0), 1)

    cum = basis.cumulative_variance()
    n = cum.size
    xs = left + np.round(np.arange(n) * pw / max(n - 1, 1)).astype(np.int32)
    ys = top + ph - np.round(np.clip(cum, 0, 100) / 100.0 * ph).astype(np.int32)
    pts = np.stack([xs, ys], axis=1).reshape(-1, 1, 2)
    cv2.polylines(img, [pts], isClosed=False, color=(200, 60, 0), thickness=2)

    cv2.putText(
        img, "components", (left + pw // 2 - 35, height - 15),
        cv2.FONT_HERSHEY_SIMPLEX, 0.4, (0, 0, 0), 1,
    )
    cv2.putText(
        img, "cumulative variance", (left, top - 10),
        cv2.FONT_HERSHEY_SIMPLEX, 0.4, (0, 0, 0), 1,
    )
    return img


def save_basis_report(
    basis: Basis,
    patch_size: int,
    out_dir: str | Path,
    vector: np.ndarray | None = None,
) -> Dict[str, Path]:
    """Write mosaic, variance curve and (optionally) progressive reconstructions."""
    out = ensure_dir(Path(out_dir))
    files: Dict[str, Path] = {
        "basis_mosaic": save_image(basis_mosaic(basis, patch_size), out / "basis_mosaic.png"),
        "variance_curve": save_image(variance_curve(basis), out / "variance_curve.png"),
    }
    if vector is not None:
        for k, rec in progressive_reconstructions(basis, vector, patch_size).items():
            tag = f"progressive_{k:03d}"
            big = cv2.resize(
                np.clip(rec, 0, 255).astype(np.uint8),
                (patch_size * 8, patch_size * 8),
                interpolation=cv2.INTER_NEAREST,
            )
            files[tag] = save_image(big, out / f"{tag}.png")
    return files
