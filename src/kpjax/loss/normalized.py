"""Normalized keypoint distance loss and its analytic gradient.

Inputs are a batch of predicted and ground-truth 2D keypoints (N, 2P) with
interleaved x, y, a visibility mask (N, P) and one normalization scale per
sample (N, 1). The loss is the mean over visible keypoints of the Euclidean
distance divided by the sample scale:

    E = sum_k [v_k > t] * d_k / s_i(k)  /  sum_k [v_k > t]

`forward` returns the loss together with a `LossContext` carrying the visible
count; `backward` takes that context back explicitly. Nothing is cached on a
module or layer between the two calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import NamedTuple, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from ..errors import ContextMismatch, DegenerateInput, ShapeMismatch


DEGENERATE_POLICIES = ("zero", "raise", "nan")


@dataclass(frozen=True)
class LossConfig:
    # zero: empty batches, zero-scale samples and zero distances yield 0
    # raise: eager checks raise DegenerateInput
    # nan: unguarded arithmetic, non-finite values propagate
    on_degenerate: str = "zero"
    visibility_threshold: float = 0.5

    def __post_init__(self) -> None:
        if self.on_degenerate not in DEGENERATE_POLICIES:
            raise ValueError(
                f"Unknown degenerate policy: {self.on_degenerate} (expected one of {DEGENERATE_POLICIES})"
            )


class LossContext(NamedTuple):
    visible_count: jnp.ndarray
    batch_size: int
    num_points: int


def _per_record(shape: Tuple[int, ...]) -> int:
    return int(np.prod(shape[1:], dtype=np.int64))


def validate_shapes(predicted, ground_truth, visibility, scale) -> Tuple[int, int]:
    """Check the four inputs against each other; return (batch_size, num_points).

    Trailing axes are flattened per record, so (N, 2P, 1, 1) blobs are accepted.
    Raises ShapeMismatch before any numeric work.
    """
    named = (
        ("predicted", jnp.shape(predicted)),
        ("ground_truth", jnp.shape(ground_truth)),
        ("visibility", jnp.shape(visibility)),
        ("scale", jnp.shape(scale)),
    )
    for name, shape in named:
        if len(shape) < 1:
            raise ShapeMismatch(f"{name} must have a leading batch axis, got shape {shape}")
    n = int(named[0][1][0])
    for name, shape in named[1:]:
        if int(shape[0]) != n:
            raise ShapeMismatch(f"{name} batch size {shape[0]} does not match predicted batch size {n}")

    d_pred, d_gt, d_vis, d_scale = (_per_record(shape) for _, shape in named)
    if d_pred != d_gt:
        raise ShapeMismatch(
            f"predicted and ground_truth must have the same dimension ({d_pred} vs {d_gt})"
        )
    if d_gt != 2 * d_vis:
        raise ShapeMismatch(
            f"coordinate dimension {d_gt} must be twice the visibility dimension {d_vis}"
        )
    if d_scale != 1:
        raise ShapeMismatch(f"scale must have dimension 1 per record, got {d_scale}")
    return n, d_vis


def _compute_dtype(predicted):
    # float32, or float64 when x64 is enabled and the predictions are float64
    return jnp.promote_types(jnp.result_type(predicted), jnp.float32)


def _prepare(predicted, ground_truth, visibility, scale, n: int, p: int, cfg: LossConfig):
    dtype = _compute_dtype(predicted)
    diff = jnp.reshape(predicted, (n, p, 2)).astype(dtype) - jnp.reshape(ground_truth, (n, p, 2)).astype(dtype)
    s = jnp.reshape(scale, (n,)).astype(dtype)
    mask = jnp.reshape(visibility, (n, p)) > cfg.visibility_threshold
    if cfg.on_degenerate == "zero":
        nonzero = s != 0
        mask = mask & nonzero[:, None]
        s = jnp.where(nonzero, s, jnp.ones_like(s))
    dist = jnp.sqrt(jnp.sum(diff * diff, axis=-1))
    return diff, dist, s, mask


@partial(jax.jit, static_argnames=("n", "p", "cfg"))
def _normalized_impl(predicted, ground_truth, visibility, scale, *, n: int, p: int, cfg: LossConfig):
    _, dist, s, mask = _prepare(predicted, ground_truth, visibility, scale, n, p, cfg)
    return jnp.where(mask, dist / s[:, None], 0.0), mask


@partial(jax.jit, static_argnames=("n", "p", "cfg"))
def _forward_impl(predicted, ground_truth, visibility, scale, *, n: int, p: int, cfg: LossConfig):
    _, dist, s, mask = _prepare(predicted, ground_truth, visibility, scale, n, p, cfg)
    count = jnp.sum(mask, dtype=jnp.int32)
    total = jnp.sum(jnp.where(mask, dist / s[:, None], 0.0))
    if cfg.on_degenerate == "zero":
        loss = jnp.where(count > 0, total / jnp.maximum(count, 1), jnp.zeros_like(total))
    else:
        loss = total / count
    return loss, count


@partial(jax.jit, static_argnames=("n", "p", "cfg"))
def _backward_impl(
    predicted, ground_truth, visibility, scale, count, upstream, *, n: int, p: int, cfg: LossConfig
):
    diff, dist, s, mask = _prepare(predicted, ground_truth, visibility, scale, n, p, cfg)
    g = jnp.reshape(jnp.asarray(upstream, diff.dtype), ())
    if cfg.on_degenerate == "zero":
        # d|r|/dr is taken as 0 at r == 0
        live = mask & (dist > 0)
        k = jnp.maximum(jnp.asarray(count), 1).astype(diff.dtype) * s
        coef = jnp.where(live, 1.0 / (jnp.where(live, dist, 1.0) * k[:, None]), 0.0)
    else:
        k = jnp.asarray(count).astype(diff.dtype) * s
        coef = jnp.where(mask, 1.0 / (dist * k[:, None]), 0.0)
    grad = diff * coef[..., None] * g
    return jnp.reshape(grad, jnp.shape(predicted))


def _raise_if_degenerate_forward(predicted, visibility, scale, n: int, p: int, cfg: LossConfig) -> None:
    dtype = np.dtype(_compute_dtype(predicted))
    vis = np.asarray(visibility).reshape(n, p) > cfg.visibility_threshold
    s = np.asarray(scale).astype(dtype).reshape(n)
    if not vis.any():
        raise DegenerateInput("batch has no visible keypoints; loss is undefined")
    bad = np.flatnonzero(vis.any(axis=1) & (s == 0))
    if bad.size:
        raise DegenerateInput(f"zero normalization scale for samples with visible keypoints: {bad.tolist()}")


def _raise_if_degenerate_backward(predicted, ground_truth, visibility, n: int, p: int, cfg: LossConfig) -> None:
    dtype = np.dtype(_compute_dtype(predicted))
    vis = np.asarray(visibility).reshape(n, p) > cfg.visibility_threshold
    d = np.asarray(predicted).astype(dtype).reshape(n, p, 2) - np.asarray(ground_truth).astype(dtype).reshape(n, p, 2)
    at_zero = vis & (np.sum(d * d, axis=-1) == 0)
    if at_zero.any():
        where = [tuple(int(v) for v in ij) for ij in np.argwhere(at_zero)]
        raise DegenerateInput(f"gradient undefined at zero distance for (sample, keypoint) {where}")


def normalized_distances(
    predicted, ground_truth, visibility, scale, *, cfg: Optional[LossConfig] = None
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Per-keypoint normalized distances (N, P) and the counted mask.

    Entries that the loss does not count are 0 in the distance table.
    """
    cfg = cfg or LossConfig()
    n, p = validate_shapes(predicted, ground_truth, visibility, scale)
    return _normalized_impl(predicted, ground_truth, visibility, scale, n=n, p=p, cfg=cfg)


def forward(
    predicted, ground_truth, visibility, scale, *, cfg: Optional[LossConfig] = None
) -> Tuple[jnp.ndarray, LossContext]:
    """Mean normalized distance over visible keypoints.

    Returns (loss, ctx). Pass ``ctx`` unchanged to `backward` for the same batch.
    """
    cfg = cfg or LossConfig()
    n, p = validate_shapes(predicted, ground_truth, visibility, scale)
    if cfg.on_degenerate == "raise":
        _raise_if_degenerate_forward(predicted, visibility, scale, n, p, cfg)
    loss, count = _forward_impl(predicted, ground_truth, visibility, scale, n=n, p=p, cfg=cfg)
    return loss, LossContext(visible_count=count, batch_size=n, num_points=p)


def backward(
    predicted,
    ground_truth,
    visibility,
    scale,
    ctx: LossContext,
    upstream_grad=1.0,
    *,
    cfg: Optional[LossConfig] = None,
) -> jnp.ndarray:
    """Gradient of the loss w.r.t. `predicted`, scaled by `upstream_grad`.

    ``ctx`` must come from `forward` on the same batch. A context built for a
    different batch size or keypoint count raises ContextMismatch; a context
    from a different batch of identical shape is not detected and gives an
    undefined result.
    """
    cfg = cfg or LossConfig()
    n, p = validate_shapes(predicted, ground_truth, visibility, scale)
    if int(ctx.batch_size) != n or int(ctx.num_points) != p:
        raise ContextMismatch(
            f"context was produced for batch_size={int(ctx.batch_size)}, num_points={int(ctx.num_points)}; "
            f"backward got batch_size={n}, num_points={p}"
        )
    if cfg.on_degenerate == "raise":
        _raise_if_degenerate_backward(predicted, ground_truth, visibility, n, p, cfg)
    return _backward_impl(
        predicted, ground_truth, visibility, scale, ctx.visible_count, upstream_grad, n=n, p=p, cfg=cfg
    )


def make_loss_fn(cfg: Optional[LossConfig] = None):
    """Build ``loss(predicted, ground_truth, visibility, scale)`` for use with jax.grad.

    The VJP is the analytic `backward`; ground_truth, visibility and scale get
    zero cotangents.
    """
    cfg = cfg or LossConfig()
    if cfg.on_degenerate == "raise":
        raise ValueError("on_degenerate='raise' needs concrete values; call forward/backward directly")

    @jax.custom_vjp
    def loss_fn(predicted, ground_truth, visibility, scale):
        n, p = validate_shapes(predicted, ground_truth, visibility, scale)
        return _forward_impl(predicted, ground_truth, visibility, scale, n=n, p=p, cfg=cfg)[0]

    def loss_fwd(predicted, ground_truth, visibility, scale):
        n, p = validate_shapes(predicted, ground_truth, visibility, scale)
        loss, count = _forward_impl(predicted, ground_truth, visibility, scale, n=n, p=p, cfg=cfg)
        return loss, (predicted, ground_truth, visibility, scale, count)

    def loss_bwd(res, g):
        predicted, ground_truth, visibility, scale, count = res
        n, p = validate_shapes(predicted, ground_truth, visibility, scale)
        grad = _backward_impl(predicted, ground_truth, visibility, scale, count, g, n=n, p=p, cfg=cfg)
        return grad.astype(jnp.asarray(predicted).dtype), None, None, None

    loss_fn.defvjp(loss_fwd, loss_bwd)
    return loss_fn
