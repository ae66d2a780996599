from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np


@dataclass
class SimConfig:
    batch_size: int = 2
    num_points: int = 7
    coord_scale: float = 10.0  # spread of ground-truth coordinates
    # |pred - gt| per keypoint is drawn from [min_offset, max_offset]
    min_offset: float = 0.5
    max_offset: float = 3.0
    invisible_frac: float = 0.2
    scale_range: Tuple[float, float] = (1.0, 4.0)
    seed: int = 0


def simulate_batch(cfg: SimConfig) -> Dict[str, np.ndarray]:
    """Random (predicted, ground_truth, visibility, scale) batch.

    Offsets stay at least ``min_offset`` away from zero so finite differences
    never straddle the distance kink. At least one keypoint is visible.
    """
    if cfg.batch_size < 1 or cfg.num_points < 1:
        raise ValueError("batch_size and num_points must be positive")
    if not 0.0 < cfg.min_offset <= cfg.max_offset:
        raise ValueError("require 0 < min_offset <= max_offset")
    rng = np.random.default_rng(cfg.seed)
    n, p = int(cfg.batch_size), int(cfg.num_points)

    gt = rng.normal(scale=cfg.coord_scale, size=(n, p, 2))
    angle = rng.uniform(0.0, 2.0 * np.pi, size=(n, p))
    radius = rng.uniform(cfg.min_offset, cfg.max_offset, size=(n, p))
    offset = np.stack([np.cos(angle), np.sin(angle)], axis=-1) * radius[..., None]
    pred = gt + offset

    visible = rng.uniform(size=(n, p)) >= cfg.invisible_frac
    if not visible.any():
        visible[rng.integers(n), rng.integers(p)] = True
    # invisible keypoints carry arbitrary coordinates and a sub-threshold flag
    flags = np.where(visible, 1.0, rng.choice([0.0, -1.0], size=(n, p)))

    lo, hi = cfg.scale_range
    scale = rng.uniform(lo, hi, size=(n, 1))
    return {
        "predicted": pred.reshape(n, 2 * p).astype(np.float32),
        "ground_truth": gt.reshape(n, 2 * p).astype(np.float32),
        "visibility": flags.astype(np.float32),
        "scale": scale.astype(np.float32),
    }
