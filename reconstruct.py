"""
reconstruct.py – Merge overlapping sub‑grids back into one pixel grid.

The module stays light and purely functional:
    • reconstruct_patches(...)      – per‑cell overlap average
    • reconstruct_windows(...)      – separable Hann‑weighted merge
    • reconstruct_from_vectors(...) – devectorize + overlap average
    • hann_weights(...)             – strictly positive raised‑cosine taper

Only the in‑bounds part of a sub‑grid contributes; footprints that overhang
the border (reflect policy) are cropped. Accumulation is a commutative sum,
so the result does not depend on the order of the input list. With
``workers > 1`` each thread fills its own partial buffers which are summed
once every thread has finished.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Sequence, Tuple

import numpy as np
from scipy.signal import windows as sig_windows

from errors import InvalidArgumentError
from patch_utils import Origin, Patch, Window, devectorize

__all__ = [
    "hann_weights",
    "reconstruct_patches",
    "reconstruct_windows",
    "reconstruct_from_vectors",
]

logger = logging.getLogger("reconstruct")

WeightFn = Callable[[Tuple[int, int]], np.ndarray]


# ---------------------------------------------------------------------------
# 1. Weights
# ---------------------------------------------------------------------------


def hann_weights(height: int, width: int | None = None) -> np.ndarray:
    """
    Separable 2‑D Hann taper of shape ``(height, width)``.

    The 1‑D window is the interior of a Hann window two samples longer, so
    the weights peak in the centre but never reach zero at the rim.
    """
    width = height if width is None else width
    if height <= 0 or width <= 0:
        raise InvalidArgumentError(f"window shape must be positive, got {height}x{width}")
    wy = sig_windows.hann(height + 2, sym=True)[1:-1]
    wx = sig_windows.hann(width + 2, sym=True)[1:-1]
    return np.outer(wy, wx)


def _uniform(shape: Tuple[int, int]) -> np.ndarray:
    return np.ones(shape, dtype=np.float64)


# ---------------------------------------------------------------------------
# 2. Accumulation core
# ---------------------------------------------------------------------------


def _accumulate(
    items: Sequence[Patch | Window],
    height: int,
    width: int,
    weight_fn: WeightFn,
) -> Tuple[np.ndarray, np.ndarray]:
    acc = np.zeros((height, width), dtype=np.float64)
    wsum = np.zeros((height, width), dtype=np.float64)
    cache: dict[Tuple[int, int], np.ndarray] = {}

    for item in items:
        data = item.pixels
        sh, sw = data.shape
        r, c = item.origin
        r0, r1 = max(r, 0), min(r + sh, height)
        c0, c1 = max(c, 0), min(c + sw, width)
        if r0 >= r1 or c0 >= c1:
            continue
        wgt = cache.get((sh, sw))
        if wgt is None:
            wgt = cache[(sh, sw)] = weight_fn((sh, sw))
        w_in = wgt[r0 - r:r1 - r, c0 - c:c1 - c]
        acc[r0:r1, c0:c1] += w_in * data[r0 - r:r1 - r, c0 - c:c1 - c]
        wsum[r0:r1, c0:c1] += w_in
    return acc, wsum


def _merge(
    items: Sequence[Patch | Window],
    height: int,
    width: int,
    weight_fn: WeightFn,
    fill: np.ndarray | None,
    workers: int,
) -> np.ndarray:
    if len(items) == 0:
        raise InvalidArgumentError("cannot reconstruct from an empty list")
    if height <= 0 or width <= 0:
        raise InvalidArgumentError(f"output shape must be positive, got {height}x{width}")
    if fill is not None and np.shape(fill) != (height, width):
        raise InvalidArgumentError(
            f"fill grid shape {np.shape(fill)} differs from output {height}x{width}"
        )

    if workers > 1 and len(items) >= 2 * workers:
        step = -(-len(items) // workers)
        chunks = [items[i:i + step] for i in range(0, len(items), step)]
        with ThreadPoolExecutor(max_workers=workers) as pool:
            partials = list(
                pool.map(lambda ch: _accumulate(ch, height, width, weight_fn), chunks)
            )
        acc = np.sum([p[0] for p in partials], axis=0)
        wsum = np.sum([p[1] for p in partials], axis=0)
    else:
        acc, wsum = _accumulate(items, height, width, weight_fn)

    covered = wsum > 0
    out = np.zeros((height, width), dtype=np.float64)
    np.divide(acc, wsum, out=out, where=covered)
    n_holes = int((~covered).sum())
    if n_holes:
        logger.debug(f"{n_holes} cells not covered by any sub-grid")
        if fill is not None:
            out[~covered] = np.asarray(fill, dtype=np.float64)[~covered]
    return out


# ---------------------------------------------------------------------------
# 3. Public wrappers
# ---------------------------------------------------------------------------


def reconstruct_patches(
    patches: Sequence[Patch],
    height: int,
    width: int,
    *,
    fill: np.ndarray | None = None,
    workers: int = 1,
) -> np.ndarray:
    """
    Overlap‑average *patches* into a ``height × width`` grid.

    Parameters
    ----------
    patches : sequence[Patch]
        Sub‑grids with their origins; order is irrelevant.
    height, width : int
        Output shape.
    fill : np.ndarray, optional
        Values for cells no patch covers; 0 when omitted.
    workers : int, default 1
        Number of threads accumulating into private buffers.

    Returns
    -------
    np.ndarray
        float64 grid; every covered cell equals the mean of its contributions.
    """
    return _merge(list(patches), height, width, _uniform, fill, workers)


def reconstruct_windows(
    windows: Sequence[Window],
    height: int,
    width: int,
    *,
    fill: np.ndarray | None = None,
    workers: int = 1,
) -> np.ndarray:
    """Hann‑weighted merge of *windows*, normalised by the summed weight per cell."""
    return _merge(list(windows), height, width, lambda s: hann_weights(*s), fill, workers)


def reconstruct_from_vectors(
    vectors: np.ndarray,
    orgs: np.ndarray | Sequence[Origin],
    size: int,
    height: int,
    width: int,
    *,
    fill: np.ndarray | None = None,
    workers: int = 1,
) -> np.ndarray:
    """Rebuild ``size × size`` patches from row vectors and overlap‑average them."""
    patches: List[Patch] = devectorize(vectors, orgs, size)
    return reconstruct_patches(patches, height, width, fill=fill, workers=workers)
