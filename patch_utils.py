"""
patch_utils.py – Patch / window extraction and row‑major vectorisation.

The module is *stateless*: every function takes a pixel grid (2‑D float
ndarray) and returns new objects; nothing here mutates its input.

Public API
----------
Patch, Window
    Sub‑grids tagged with the (row, col) of their top‑left corner.
ExactN, OverlapFull, NoOverlap
    Coverage variants understood by the extractor and the orchestrator.
EdgePolicy
    REFLECT mirrors out‑of‑range indices, CLAMP_BACK shifts the covering
    origin back inside the grid (pixel overflow is zero‑filled).
origins(height, width, size, coverage, edge_policy, rng=None)
    Top‑left corners of every sub‑grid for one coverage variant.
extract_patches(grid, size, coverage, edge_policy, rng=None, workers=1)
extract_windows(grid, size, coverage, edge_policy, rng=None)
patches_at(grid, origins, size, edge_policy)
vectorize(patches) / devectorize(vectors, origins, size)
"""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence, Tuple, Union

import numpy as np

from errors import InvalidArgumentError

__all__ = [
    "Patch",
    "Window",
    "ExactN",
    "OverlapFull",
    "NoOverlap",
    "Coverage",
    "EdgePolicy",
    "as_grid",
    "stride_for",
    "coverage_from_name",
    "coverage_name",
    "origins",
    "patches_at",
    "extract_patches",
    "extract_windows",
    "vectorize",
    "devectorize",
]

Origin = Tuple[int, int]


# ---------------------------------------------------------------------------
# Sub‑grid containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, eq=False)
class Patch:
    """
    Square ``s × s`` sub‑grid with the origin of its top‑left corner.

    The pixels are copied on construction and stored read‑only; ``data`` and
    ``vector`` hand out fresh copies so callers can never alias the patch.
    """

    pixels: np.ndarray
    origin: Origin

    def __post_init__(self) -> None:
        arr = np.array(self.pixels, dtype=np.float64, copy=True)
        if arr.ndim != 2 or arr.shape[0] == 0 or arr.shape[0] != arr.shape[1]:
            raise InvalidArgumentError(
                f"patch data must be a non-empty square 2-D array, got shape {arr.shape}"
            )
        arr.flags.writeable = False
        object.__setattr__(self, "pixels", arr)
        object.__setattr__(self, "origin", (int(self.origin[0]), int(self.origin[1])))

    @property
    def size(self) -> int:
        return self.pixels.shape[0]

    @property
    def data(self) -> np.ndarray:
        return self.pixels.copy()

    @property
    def vector(self) -> np.ndarray:
        """Row‑major flattening (length ``s²``)."""
        return self.pixels.flatten()


@dataclass(slots=True, eq=False)
class Window:
    """
    Rectangular sub‑grid (imagette) used by the two‑level local path.

    Unlike `Patch` the content may be swapped wholesale through
    `replace_data`, so a denoised result can be written back before the
    weighted merge.
    """

    pixels: np.ndarray
    origin: Origin

    def __post_init__(self) -> None:
        arr = np.array(self.pixels, dtype=np.float64, copy=True)
        if arr.ndim != 2 or arr.size == 0:
            raise InvalidArgumentError(
                f"window data must be a non-empty 2-D array, got shape {arr.shape}"
            )
        self.pixels = arr
        self.origin = (int(self.origin[0]), int(self.origin[1]))

    @property
    def shape(self) -> Tuple[int, int]:
        return self.pixels.shape  # type: ignore[return-value]

    @property
    def data(self) -> np.ndarray:
        return self.pixels.copy()

    def replace_data(self, new_data: np.ndarray) -> None:
        arr = np.array(new_data, dtype=np.float64, copy=True)
        if arr.shape != self.pixels.shape:
            raise InvalidArgumentError(
                f"replacement shape {arr.shape} differs from window shape {self.pixels.shape}"
            )
        self.pixels = arr


# ---------------------------------------------------------------------------
# Coverage variants
# ---------------------------------------------------------------------------


def _check_percent(pct: int) -> None:
    if not 0 <= pct <= 100:
        raise InvalidArgumentError(f"overlap_percent must be in [0, 100], got {pct}")


@dataclass(frozen=True, slots=True)
class ExactN:
    """``n`` uniformly random origins; full tiling uses ``overlap_percent``."""

    n: int
    overlap_percent: int = 50

    def __post_init__(self) -> None:
        if self.n <= 0:
            raise InvalidArgumentError(f"ExactN needs n > 0, got {self.n}")
        _check_percent(self.overlap_percent)


@dataclass(frozen=True, slots=True)
class OverlapFull:
    overlap_percent: int = 50

    def __post_init__(self) -> None:
        _check_percent(self.overlap_percent)


@dataclass(frozen=True, slots=True)
class NoOverlap:
    pass


Coverage = Union[ExactN, OverlapFull, NoOverlap]

_COVERAGE_NAMES = ("exact_n", "overlap_full", "no_overlap")


def coverage_from_name(
    name: str, overlap_percent: int = 50, n: int | None = None
) -> Coverage:
    """Build a coverage variant from its CLI / JSON name."""
    key = name.lower().replace("-", "_")
    if key == "overlap_full":
        return OverlapFull(overlap_percent)
    if key == "no_overlap":
        return NoOverlap()
    if key == "exact_n":
        if n is None:
            raise InvalidArgumentError("exact_n coverage needs a sample count n")
        return ExactN(n, overlap_percent)
    raise InvalidArgumentError(
        f"unknown coverage mode {name!r}; expected one of {_COVERAGE_NAMES}"
    )


def coverage_name(coverage: Coverage) -> str:
    if isinstance(coverage, ExactN):
        return "exact_n"
    if isinstance(coverage, OverlapFull):
        return "overlap_full"
    if isinstance(coverage, NoOverlap):
        return "no_overlap"
    raise InvalidArgumentError(f"not a coverage variant: {coverage!r}")


class EdgePolicy(str, Enum):
    REFLECT = "reflect"
    CLAMP_BACK = "clamp_back"


# ---------------------------------------------------------------------------
# Origin computation
# ---------------------------------------------------------------------------


def as_grid(grid: np.ndarray) -> np.ndarray:
    """Return *grid* as a float64 2‑D array, validating its shape."""
    arr = np.asarray(grid, dtype=np.float64)
    if arr.ndim != 2 or arr.size == 0:
        raise InvalidArgumentError(
            f"pixel grid must be a non-empty 2-D array, got shape {arr.shape}"
        )
    return arr


def _side_pair(size: int | Sequence[int]) -> Tuple[int, int]:
    if isinstance(size, (int, np.integer)):
        sh = sw = int(size)
    else:
        sh, sw = (int(v) for v in size)
    if sh <= 0 or sw <= 0:
        raise InvalidArgumentError(f"size must be > 0, got {size}")
    return sh, sw


def stride_for(size: int, coverage: Coverage) -> int:
    """
    Step between neighbouring origins along one axis.

    ``OverlapFull(p)`` uses ``max(1, round(size·(1 − p/100)))`` with halves
    rounded up; ``NoOverlap`` steps by ``size``.
    """
    if isinstance(coverage, NoOverlap):
        return size
    pct = coverage.overlap_percent
    return max(1, int(math.floor(size * (1.0 - pct / 100.0) + 0.5)))


def _axis_offsets(length: int, size: int, stride: int, edge_policy: EdgePolicy) -> List[int]:
    """
    Offsets stepping from the far edge (``length − size``) towards 0.

    When the regular stride misses the near edge one corrective offset is
    added: exactly 0 under CLAMP_BACK, one more regular step (negative, so
    the overhang is mirrored) under REFLECT.
    """
    offs = list(range(length - size, -1, -stride))
    if offs[-1] != 0:
        if edge_policy is EdgePolicy.CLAMP_BACK:
            offs.append(0)
        else:
            offs.append(offs[-1] - stride)
    return offs


def origins(
    height: int,
    width: int,
    size: int | Sequence[int],
    coverage: Coverage,
    edge_policy: EdgePolicy = EdgePolicy.CLAMP_BACK,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """
    Top‑left corners for one coverage variant.

    Returns
    -------
    np.ndarray, shape = (N, 2), dtype=int64
        Grid variants are in scan order: rows bottom‑up, then columns
        right‑to‑left. ExactN returns its draws in draw order.
    """
    sh, sw = _side_pair(size)
    if sh > height or sw > width:
        raise InvalidArgumentError(
            f"size {sh}x{sw} exceeds grid dimensions {height}x{width}"
        )
    edge_policy = EdgePolicy(edge_policy)

    if isinstance(coverage, ExactN):
        rng = rng if rng is not None else np.random.default_rng()
        rows = rng.integers(0, height - sh + 1, size=coverage.n)
        cols = rng.integers(0, width - sw + 1, size=coverage.n)
        return np.stack([rows, cols], axis=1).astype(np.int64)

    if not isinstance(coverage, (OverlapFull, NoOverlap)):
        raise InvalidArgumentError(f"not a coverage variant: {coverage!r}")

    row_offs = _axis_offsets(height, sh, stride_for(sh, coverage), edge_policy)
    col_offs = _axis_offsets(width, sw, stride_for(sw, coverage), edge_policy)
    return np.array([(r, c) for r in row_offs for c in col_offs], dtype=np.int64)


# ---------------------------------------------------------------------------
# Pixel gathering
# ---------------------------------------------------------------------------


def _reflect_index(idx: np.ndarray, bound: int) -> np.ndarray:
    if bound == 1:
        return np.zeros_like(idx)
    out = np.where(idx < 0, -idx, idx)
    out = np.where(out >= bound, 2 * bound - out - 2, out)
    if out.min() < 0 or out.max() >= bound:
        raise InvalidArgumentError(
            f"index too far outside [0, {bound}) to be reflected once"
        )
    return out


def _gather(
    grid: np.ndarray,
    orgs: np.ndarray,
    sh: int,
    sw: int,
    edge_policy: EdgePolicy,
) -> np.ndarray:
    """Copy an ``(N, sh, sw)`` block stack out of *grid*."""
    h, w = grid.shape
    rows = orgs[:, 0:1] + np.arange(sh)
    cols = orgs[:, 1:2] + np.arange(sw)

    if edge_policy is EdgePolicy.REFLECT:
        rows = _reflect_index(rows, h)
        cols = _reflect_index(cols, w)
        return grid[rows[:, :, None], cols[:, None, :]]

    inside = ((rows >= 0) & (rows < h))[:, :, None] & ((cols >= 0) & (cols < w))[:, None, :]
    block = grid[np.clip(rows, 0, h - 1)[:, :, None], np.clip(cols, 0, w - 1)[:, None, :]]
    return np.where(inside, block, 0.0)


def _gather_parallel(
    grid: np.ndarray,
    orgs: np.ndarray,
    sh: int,
    sw: int,
    edge_policy: EdgePolicy,
    workers: int,
) -> np.ndarray:
    if workers <= 1 or len(orgs) < 2 * workers:
        return _gather(grid, orgs, sh, sw, edge_policy)
    chunks = np.array_split(orgs, workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        parts = list(pool.map(lambda c: _gather(grid, c, sh, sw, edge_policy), chunks))
    return np.concatenate(parts, axis=0)


def patches_at(
    grid: np.ndarray,
    orgs: np.ndarray | Sequence[Origin],
    size: int,
    edge_policy: EdgePolicy = EdgePolicy.CLAMP_BACK,
) -> List[Patch]:
    """Cut square patches at explicit origins (which may leave the grid)."""
    grid = as_grid(grid)
    sh, _ = _side_pair(size)
    orgs = np.asarray(orgs, dtype=np.int64).reshape(-1, 2)
    if len(orgs) == 0:
        raise InvalidArgumentError("no origins given")
    blocks = _gather(grid, orgs, sh, sh, EdgePolicy(edge_policy))
    return [Patch(b, (r, c)) for b, (r, c) in zip(blocks, orgs)]


def extract_patches(
    grid: np.ndarray,
    size: int,
    coverage: Coverage = OverlapFull(50),
    edge_policy: EdgePolicy = EdgePolicy.CLAMP_BACK,
    rng: np.random.Generator | None = None,
    workers: int = 1,
) -> List[Patch]:
    """
    Cut *grid* into ``size × size`` patches.

    Parameters
    ----------
    grid : np.ndarray
        2‑D pixel grid.
    size : int
        Patch side; must not exceed either grid dimension.
    coverage : ExactN | OverlapFull | NoOverlap
        OverlapFull and NoOverlap tile every pixel; ExactN samples.
    edge_policy : EdgePolicy
        How a footprint that crosses the border is handled.
    rng : np.random.Generator, optional
        Source of randomness for ExactN.
    workers : int, default 1
        Thread fan‑out for the pixel copies.

    Returns
    -------
    list[Patch]
        Deterministic scan order for the tiling variants.
    """
    grid = as_grid(grid)
    if not isinstance(size, (int, np.integer)):
        raise InvalidArgumentError(f"patch size must be an int, got {size!r}")
    sh, sw = _side_pair(size)
    edge_policy = EdgePolicy(edge_policy)
    orgs = origins(grid.shape[0], grid.shape[1], size, coverage, edge_policy, rng)
    blocks = _gather_parallel(grid, orgs, sh, sw, edge_policy, workers)
    return [Patch(b, (r, c)) for b, (r, c) in zip(blocks, orgs)]


def extract_windows(
    grid: np.ndarray,
    size: int | Sequence[int],
    coverage: Coverage = OverlapFull(50),
    edge_policy: EdgePolicy = EdgePolicy.CLAMP_BACK,
    rng: np.random.Generator | None = None,
) -> List[Window]:
    """Same origin logic as `extract_patches` for (possibly rectangular) windows."""
    grid = as_grid(grid)
    sh, sw = _side_pair(size)
    edge_policy = EdgePolicy(edge_policy)
    orgs = origins(grid.shape[0], grid.shape[1], (sh, sw), coverage, edge_policy, rng)
    blocks = _gather(grid, orgs, sh, sw, edge_policy)
    return [Window(b, (r, c)) for b, (r, c) in zip(blocks, orgs)]


# ---------------------------------------------------------------------------
# Vectoriser
# ---------------------------------------------------------------------------


def vectorize(patches: Sequence[Patch]) -> np.ndarray:
    """Stack the row‑major vectors of *patches* into an ``(M, s²)`` matrix."""
    if len(patches) == 0:
        raise InvalidArgumentError("cannot vectorize an empty patch list")
    size = patches[0].size
    if any(p.size != size for p in patches):
        raise InvalidArgumentError("all patches must share the same size")
    return np.stack([p.pixels.ravel() for p in patches]).astype(np.float64, copy=True)


def devectorize(
    vectors: np.ndarray,
    orgs: np.ndarray | Sequence[Origin],
    size: int,
) -> List[Patch]:
    """Inverse of `vectorize`: rebuild patches at *orgs* from row vectors."""
    vecs = np.asarray(vectors, dtype=np.float64)
    if vecs.ndim == 1:
        vecs = vecs[None, :]
    orgs = np.asarray(orgs, dtype=np.int64).reshape(-1, 2)
    if len(vecs) == 0 or len(orgs) == 0:
        raise InvalidArgumentError("cannot devectorize an empty list")
    if len(vecs) != len(orgs):
        raise InvalidArgumentError(
            f"{len(vecs)} vectors but {len(orgs)} origins"
        )
    if vecs.shape[1] != size * size:
        raise InvalidArgumentError(
            f"vector length {vecs.shape[1]} does not match patch size {size}x{size}"
        )
    return [Patch(v.reshape(size, size), (r, c)) for v, (r, c) in zip(vecs, orgs)]
