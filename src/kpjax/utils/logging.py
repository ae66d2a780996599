from __future__ import annotations

import logging
import math
import os
from typing import Iterable, Iterator, Optional


def setup_logging(level: str = "INFO") -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s | %(levelname)s | %(message)s")


def log_jax_env() -> None:
    import jax

    logging.info("JAX backend: %s", jax.default_backend())
    logging.info("Devices: %s", jax.devices())


def _progress_enabled() -> bool:
    v = os.environ.get("KPJAX_PROGRESS", "0").lower()
    return v in ("1", "true", "yes", "on")


def progress_iter(iterable: Iterable, *, total: Optional[int] = None, desc: str = "") -> Iterator:
    """Yield elements from iterable, showing a tqdm bar if enabled.

    Enable by setting environment variable `KPJAX_PROGRESS=1` or calling CLIs with `--progress`.
    """
    if not _progress_enabled():
        for x in iterable:
            yield x
        return
    from tqdm import tqdm

    leave = os.environ.get("KPJAX_PROGRESS_LEAVE", "0").lower() in ("1", "true", "yes", "on")
    for x in tqdm(iterable, total=total, desc=desc, dynamic_ncols=True, leave=leave):
        yield x


def format_duration(seconds: float | None) -> str:
    """Render a wall-clock duration as a compact human-readable string."""
    if seconds is None:
        return "-"
    try:
        value = float(seconds)
    except (TypeError, ValueError):
        return "-"
    if not math.isfinite(value):
        return "-"
    value = max(value, 0.0)
    if value < 1e-3:
        return f"{value * 1e6:.0f}µs"
    if value < 1.0:
        return f"{value * 1e3:.0f}ms" if value < 0.1 else f"{value:.2f}s"

    minutes, seconds_rem = divmod(value, 60.0)
    hours, minutes = divmod(minutes, 60.0)
    if hours >= 1.0:
        return f"{int(hours)}h{int(minutes):02d}m{seconds_rem:04.1f}s"
    if minutes >= 1.0:
        return f"{int(minutes)}m{seconds_rem:04.1f}s"
    return f"{seconds_rem:.1f}s"
