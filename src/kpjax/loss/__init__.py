from .normalized import (
    DEGENERATE_POLICIES,
    LossConfig,
    LossContext,
    backward,
    forward,
    make_loss_fn,
    normalized_distances,
    validate_shapes,
)
from .metrics import normalized_distance_table, normalized_error, per_keypoint_error

__all__ = [
    "DEGENERATE_POLICIES",
    "LossConfig",
    "LossContext",
    "backward",
    "forward",
    "make_loss_fn",
    "normalized_distances",
    "validate_shapes",
    "normalized_distance_table",
    "normalized_error",
    "per_keypoint_error",
]
