from __future__ import annotations

from typing import Optional

import numpy as np
import jax.numpy as jnp

from .normalized import LossConfig, forward, normalized_distances


def normalized_distance_table(predicted, ground_truth, visibility, scale, *, cfg: Optional[LossConfig] = None) -> np.ndarray:
    """(N, P) normalized distances with 0 where a keypoint is not counted."""
    table, _ = normalized_distances(predicted, ground_truth, visibility, scale, cfg=cfg)
    return np.asarray(table)


def normalized_error(predicted, ground_truth, visibility, scale, *, cfg: Optional[LossConfig] = None) -> float:
    loss, _ = forward(predicted, ground_truth, visibility, scale, cfg=cfg)
    return float(loss)


def per_keypoint_error(predicted, ground_truth, visibility, scale, *, cfg: Optional[LossConfig] = None) -> np.ndarray:
    """Mean normalized distance per keypoint column; NaN where nothing is counted."""
    table, mask = normalized_distances(predicted, ground_truth, visibility, scale, cfg=cfg)
    counts = jnp.sum(mask, axis=0)
    sums = jnp.sum(table, axis=0)
    out = jnp.where(counts > 0, sums / jnp.maximum(counts, 1), jnp.nan)
    return np.asarray(out)
