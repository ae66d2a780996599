"""Host-graph adapter around the normalized loss.

A layer exposes a type name, input/output arity and which inputs accept a
gradient. State that couples forward and backward is returned to the caller as
a `LossContext` instead of being stored on the layer, so one instance can serve
interleaved steps.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence, Tuple

import jax.numpy as jnp

from ..errors import ShapeMismatch
from ..loss.normalized import LossConfig, LossContext, backward, forward, validate_shapes


_LAYERS: Dict[str, Callable[..., object]] = {}


def register_layer(name: str):
    def deco(cls):
        if name in _LAYERS:
            raise ValueError(f"Layer type already registered: {name}")
        _LAYERS[name] = cls
        return cls

    return deco


def create_layer(name: str, **kwargs):
    try:
        factory = _LAYERS[name]
    except KeyError:
        raise ValueError(f"Unknown layer type: {name} (known: {sorted(_LAYERS)})") from None
    return factory(**kwargs)


def layer_types() -> List[str]:
    return sorted(_LAYERS)


@register_layer("NormalizeLoss")
class NormalizeLossLayer:
    type_name = "NormalizeLoss"
    exact_num_bottom_blobs = 4
    exact_num_top_blobs = 1

    def __init__(self, cfg: Optional[LossConfig] = None, loss_weight: float = 1.0) -> None:
        self.cfg = cfg or LossConfig()
        self.loss_weight = float(loss_weight)
        self._bottom_shapes: Optional[Tuple[Tuple[int, ...], ...]] = None

    def allow_force_backward(self, bottom_index: int) -> bool:
        # only the predicted coordinates receive a gradient
        return bottom_index == 0

    def _check_arity(self, bottom: Sequence) -> None:
        if len(bottom) != self.exact_num_bottom_blobs:
            raise ShapeMismatch(
                f"{self.type_name} takes exactly {self.exact_num_bottom_blobs} inputs, got {len(bottom)}"
            )

    def setup(self, bottom: Sequence) -> List[Tuple[int, ...]]:
        return self.reshape(bottom)

    def reshape(self, bottom: Sequence) -> List[Tuple[int, ...]]:
        """Validate the inputs and record their shapes; returns the top shapes."""
        self._check_arity(bottom)
        validate_shapes(*bottom)
        self._bottom_shapes = tuple(tuple(jnp.shape(b)) for b in bottom)
        return [(1,)]

    def _check_bottom(self, bottom: Sequence) -> None:
        self._check_arity(bottom)
        shapes = tuple(tuple(jnp.shape(b)) for b in bottom)
        if self._bottom_shapes is None:
            self.reshape(bottom)
        elif shapes != self._bottom_shapes:
            raise ShapeMismatch(f"input shapes {shapes} differ from the shapes set up {self._bottom_shapes}; call reshape first")

    def forward(self, bottom: Sequence) -> Tuple[jnp.ndarray, LossContext]:
        self._check_bottom(bottom)
        loss, ctx = forward(*bottom, cfg=self.cfg)
        return jnp.reshape(loss * self.loss_weight, (1,)), ctx

    def backward(
        self,
        top_diff,
        ctx: LossContext,
        bottom: Sequence,
        propagate_down: Optional[Sequence[bool]] = None,
    ) -> List[Optional[jnp.ndarray]]:
        """Gradients per input slot; slots other than 0 are always None."""
        self._check_bottom(bottom)
        if propagate_down is None:
            propagate_down = [True] + [False] * (self.exact_num_bottom_blobs - 1)
        diffs: List[Optional[jnp.ndarray]] = [None] * self.exact_num_bottom_blobs
        if propagate_down[0]:
            upstream = jnp.reshape(jnp.asarray(top_diff), ()) * self.loss_weight
            diffs[0] = backward(*bottom, ctx, upstream, cfg=self.cfg)
        return diffs
