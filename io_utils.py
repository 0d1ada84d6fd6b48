"""
io_utils.py
===========

I/O utilities + lightweight timing helpers for the **pca_denoise** project.

The module centralises:

1. **Path management**
   * PROJECT_ROOT  – repository root (directory of this file).
   * RESULTS_DIR   – `<root>/results/<timestamp>`

2. **Image helpers**
   * read_image  – grayscale (or colour) image as a float64 pixel grid.
   * save_image  – clamps to [0, 255], writes 8‑bit PNG/TIFF, creates dirs.

3. **Config persistence**
   * save_config / load_config – JSON round‑trip of a plain dict.

4. **Timing**
   * @timer decorator (logs at INFO) and step_timer context‑manager (DEBUG);
     both accumulate into TIMINGS.
   * summary() / write_log() – timing table to the logger / to run_log.txt.

The design goal is *zero side‑effects at import time* – directories are created
lazily when first written to.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, TypeVar

import cv2
import numpy as np

__all__ = [
    "PROJECT_ROOT",
    "RESULTS_DIR",
    "TIMINGS",
    "ensure_dir",
    "read_image",
    "save_image",
    "save_config",
    "load_config",
    "timer",
    "step_timer",
    "summary",
    "reset_timings",
    "write_log",
]

# --------------------------------------------------------------------------- #
# Path management
# --------------------------------------------------------------------------- #

PROJECT_ROOT: Path = Path(__file__).resolve().parent

# Timestamped results directory (e.g. results/20250729_143015)
_RESULTS_STAMP: str = datetime.now().strftime("%Y%m%d_%H%M%S")
RESULTS_DIR: Path = PROJECT_ROOT / "results" / _RESULTS_STAMP

# timing tracker for run_log.txt; guarded because denoise calls may run on threads
TIMINGS: Dict[str, float] = {}
_TIMINGS_LOCK = threading.Lock()

logger = logging.getLogger("io_utils")
logger.setLevel(logging.INFO)


def ensure_dir(p: Path) -> Path:
    """Create directory *p* (and parents) if it does not exist. Return *p*."""
    p.mkdir(parents=True, exist_ok=True)
    return p


# --------------------------------------------------------------------------- #
# Image helpers
# --------------------------------------------------------------------------- #


def read_image(path: str | Path, as_gray: bool = True) -> np.ndarray:
    """
    Load image from *path* as a float64 pixel grid.

    * If *as_gray* is True, forces 1‑channel read even for RGB images
      (H×W); otherwise returns the 3‑channel BGR image (H×W×3).
    * Values keep their 8‑bit scale, i.e. lie in [0, 255].
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)

    flag = cv2.IMREAD_GRAYSCALE if as_gray else cv2.IMREAD_COLOR
    img = cv2.imread(str(p), flag)
    if img is None:
        raise IOError(f"cv2 failed to read image: {p}")

    return img.astype(np.float64)


def save_image(img: np.ndarray, path: str | Path) -> Path:
    """
    Save *img* to *path* (PNG/TIFF determined by extension).
    Creates target directory hierarchy if necessary.

    Float grids are rounded and clamped to [0, 255] before the uint8 cast;
    this is the only place pixel values get clamped.
    """
    p = Path(path)
    ensure_dir(p.parent)

    if img.dtype != np.uint8:
        img_to_save = np.clip(np.rint(img), 0, 255).astype(np.uint8)
    else:
        img_to_save = img

    success = cv2.imwrite(str(p), img_to_save)
    if not success:
        raise IOError(f"cv2 failed to write image: {p}")
    return p


# --------------------------------------------------------------------------- #
# Config persistence
# --------------------------------------------------------------------------- #


def save_config(cfg: Dict[str, Any], path: str | Path) -> Path:
    """Write a JSON‑serialisable config dict to *path*."""
    p = Path(path)
    ensure_dir(p.parent)
    with p.open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2, sort_keys=True)
    logger.info(f"config saved to {p}")
    return p


def load_config(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)
    with p.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"config file {p} does not hold a JSON object")
    return data


# --------------------------------------------------------------------------- #
# Timing decorator
# --------------------------------------------------------------------------- #

_F = TypeVar("_F", bound=Callable[..., Any])


def _record(label: str, elapsed_ms: float) -> None:
    with _TIMINGS_LOCK:
        TIMINGS[label] = TIMINGS.get(label, 0.0) + elapsed_ms


def timer(fn: _F) -> _F:
    """
    Decorator that logs wall‑clock time for *fn* at INFO level.

    Usage
    -----
    >>> @timer
    ... def heavy_func(...):
    ...     ...
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        res = fn(*args, **kwargs)
        elapsed_ms = (time.perf_counter() - start) * 1e3
        logger.info(f"{fn.__name__} finished in {elapsed_ms:.2f} ms")
        _record(fn.__name__, elapsed_ms)
        return res

    return wrapper  # type: ignore[return-value]


@contextmanager
def step_timer(label: str) -> Iterator[None]:
    """
    Context‑manager to measure the wall‑time of a processing step.

    Examples
    --------
    >>> with step_timer("pca_fit"):
    ...     basis = engine.fit(vectors)
    """
    t0 = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - t0) * 1e3
        logger.debug(f"[TIMING] {label:<20}: {elapsed_ms:8.2f} ms")
        _record(label, elapsed_ms)


def summary() -> None:
    """Log the timing table collected so far."""
    if not TIMINGS:
        logger.info("No timing data recorded.")
        return

    lines = ["=== Timing summary (ms) ==="]
    total = 0.0
    for k, v in sorted(TIMINGS.items()):
        total += v
        lines.append(f"{k:<25}: {v:10.2f}")
    lines.append(f"{'-' * 25}\n{'Total':<25}: {total:10.2f}")
    logger.info("\n".join(lines))


def reset_timings() -> None:
    """Erase all stored timing information (useful for tests)."""
    with _TIMINGS_LOCK:
        TIMINGS.clear()


def write_log(param_lines: list[str] | None = None, out_dir: Path | None = None) -> Path:
    """
    Write a text log summarising run parameters + timing to ``run_log.txt``.

    Parameters
    ----------
    param_lines : list[str] or None
        Pre‑formatted strings (e.g. ["patch_size : 8"]). Each will be
        written on its own line before the timing summary.
    out_dir : Path, optional
        Target directory; defaults to RESULTS_DIR.

    Returns
    -------
    Path
        Absolute path to the written log file.
    """
    out_dir = ensure_dir(out_dir or RESULTS_DIR)
    log_path = out_dir / "run_log.txt"
    with open(log_path, "w", encoding="utf-8") as f:
        f.write(f"run_start : {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        if param_lines:
            f.write("\n# Parameters\n")
            for ln in param_lines:
                f.write(ln + "\n")
        if TIMINGS:
            f.write("\n# Stage timings (ms)\n")
            total = 0.0
            for k, v in sorted(TIMINGS.items()):
                total += v
                f.write(f"{k:<25}: {v:10.2f}\n")
            f.write(f"{'-' * 25}\n{'Total':<25}: {total:10.2f}\n")
    return log_path
