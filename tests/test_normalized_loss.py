import sys

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from kpjax.data.simulate import SimConfig, simulate_batch
from kpjax.errors import ContextMismatch, DegenerateInput, ShapeMismatch
from kpjax.loss.normalized import LossConfig, backward, forward, make_loss_fn, validate_shapes


if sys.version_info < (3, 8):
    pytest.skip("Requires Python 3.8+ for package code", allow_module_level=True)


def reference_loss(pred, gt, vis, scale):
    n = pred.shape[0]
    d = np.asarray(pred, np.float64).reshape(n, -1, 2) - np.asarray(gt, np.float64).reshape(n, -1, 2)
    dist = np.sqrt(np.sum(d * d, axis=-1)) / np.asarray(scale, np.float64).reshape(n, 1)
    mask = np.asarray(vis).reshape(n, -1) > 0.5
    return dist[mask].sum() / mask.sum(), int(mask.sum())


def reference_grad(pred, gt, vis, scale, upstream=1.0):
    n = pred.shape[0]
    d = np.asarray(pred, np.float64).reshape(n, -1, 2) - np.asarray(gt, np.float64).reshape(n, -1, 2)
    dist = np.sqrt(np.sum(d * d, axis=-1))
    mask = np.asarray(vis).reshape(n, -1) > 0.5
    k = mask.sum() * np.asarray(scale, np.float64).reshape(n, 1)
    coef = np.where(mask, 1.0 / (dist * k), 0.0)
    return (d * coef[..., None] * upstream).reshape(np.shape(pred))


def random_batch(seed=0, **kw):
    b = simulate_batch(SimConfig(seed=seed, **kw))
    return b["predicted"], b["ground_truth"], b["visibility"], b["scale"]


def test_forward_reference_example(fashion_batch):
    loss, ctx = forward(*fashion_batch)
    assert float(loss) == pytest.approx(0.3, abs=0.01)
    expected, count = reference_loss(*fashion_batch)
    assert float(loss) == pytest.approx(expected, rel=1e-4)
    assert int(ctx.visible_count) == count == 11
    assert ctx.batch_size == 2 and ctx.num_points == 7


def test_invisible_keypoints_are_ignored(fashion_batch):
    pred, gt, vis, scale = fashion_batch
    loss, ctx = forward(pred, gt, vis, scale)
    moved = pred.copy()
    invisible = np.repeat(vis.reshape(2, 7) <= 0.5, 2, axis=1).reshape(pred.shape)
    moved[invisible] += 1000.0
    loss2, ctx2 = forward(moved, gt, vis, scale)
    assert float(loss2) == pytest.approx(float(loss), rel=1e-6)
    assert int(ctx2.visible_count) == int(ctx.visible_count)
    grad = np.asarray(backward(moved, gt, vis, scale, ctx2))
    assert np.all(grad[invisible] == 0.0)
    assert np.any(grad[~invisible] != 0.0)


def test_scale_invariance():
    pred, gt, vis, scale = random_batch(seed=3, batch_size=4, num_points=5)
    loss, _ = forward(pred, gt, vis, scale)
    c = 3.7
    loss_scaled, _ = forward(pred * c, gt * c, vis, scale * c)
    assert float(loss_scaled) == pytest.approx(float(loss), rel=1e-4)


def test_backward_matches_closed_form():
    pred, gt, vis, scale = random_batch(seed=11, batch_size=3, num_points=6)
    _, ctx = forward(pred, gt, vis, scale)
    grad = backward(pred, gt, vis, scale, ctx, 0.75)
    assert grad.shape == pred.shape
    np.testing.assert_allclose(np.asarray(grad), reference_grad(pred, gt, vis, scale, 0.75), rtol=1e-4, atol=1e-7)


def test_upstream_gradient_is_a_multiplier():
    pred, gt, vis, scale = random_batch(seed=5)
    _, ctx = forward(pred, gt, vis, scale)
    g1 = np.asarray(backward(pred, gt, vis, scale, ctx))
    g3 = np.asarray(backward(pred, gt, vis, scale, ctx, jnp.array([3.0])))
    np.testing.assert_allclose(g3, 3.0 * g1, rtol=1e-6)


def test_jax_grad_uses_analytic_backward():
    pred, gt, vis, scale = random_batch(seed=7, batch_size=3, num_points=4)
    loss_fn = make_loss_fn()
    value, grads = jax.value_and_grad(loss_fn, argnums=(0, 1, 3))(pred, gt, vis, scale)
    loss, ctx = forward(pred, gt, vis, scale)
    assert float(value) == pytest.approx(float(loss), rel=1e-6)
    np.testing.assert_allclose(np.asarray(grads[0]), np.asarray(backward(pred, gt, vis, scale, ctx)), rtol=1e-6)
    # no gradient reaches ground truth or scale
    assert np.all(np.asarray(grads[1]) == 0.0)
    assert np.all(np.asarray(grads[2]) == 0.0)


def test_loss_fn_under_jit():
    pred, gt, vis, scale = random_batch(seed=2)
    loss_fn = jax.jit(make_loss_fn())
    loss, _ = forward(pred, gt, vis, scale)
    assert float(loss_fn(pred, gt, vis, scale)) == pytest.approx(float(loss), rel=1e-6)


@pytest.mark.parametrize(
    "shapes",
    [
        ((2, 14), (2, 12), (2, 7), (2, 1)),  # ground truth dimension differs
        ((2, 14), (2, 14), (2, 6), (2, 1)),  # visibility is not half the coordinates
        ((2, 14), (2, 14), (2, 7), (2, 2)),  # more than one scale per record
        ((2, 14), (3, 14), (2, 7), (2, 1)),  # batch sizes differ
        ((2, 14), (2, 14), (2, 7), ()),  # no batch axis
    ],
)
def test_shape_mismatch(shapes):
    arrays = [np.ones(s, np.float32) for s in shapes]
    with pytest.raises(ShapeMismatch):
        validate_shapes(*arrays)
    with pytest.raises(ShapeMismatch):
        forward(*arrays)


def test_blob_shapes_are_flattened(fashion_batch):
    assert validate_shapes(*fashion_batch) == (2, 7)


def test_context_from_other_shape_is_rejected():
    small = random_batch(seed=0, batch_size=2, num_points=7)
    large = random_batch(seed=1, batch_size=3, num_points=7)
    _, ctx = forward(*small)
    with pytest.raises(ContextMismatch):
        backward(*large, ctx)


def test_context_from_same_shape_batch_uses_its_count():
    # Not detected: backward trusts the count it is given.
    a = random_batch(seed=0, batch_size=2, num_points=7, invisible_frac=0.0)
    b = random_batch(seed=1, batch_size=2, num_points=7, invisible_frac=0.5)
    _, ctx_a = forward(*a)
    _, ctx_b = forward(*b)
    assert int(ctx_a.visible_count) != int(ctx_b.visible_count)
    own = np.asarray(backward(*b, ctx_b))
    foreign = np.asarray(backward(*b, ctx_a))
    ratio = int(ctx_b.visible_count) / int(ctx_a.visible_count)
    np.testing.assert_allclose(foreign, own * ratio, rtol=1e-5, atol=1e-8)


def test_unknown_policy():
    with pytest.raises(ValueError):
        LossConfig(on_degenerate="skip")
    with pytest.raises(ValueError):
        make_loss_fn(LossConfig(on_degenerate="raise"))


class TestNoVisibleKeypoints:
    def make(self):
        pred, gt, vis, scale = random_batch(seed=4)
        return pred, gt, np.zeros_like(vis), scale

    def test_zero(self):
        pred, gt, vis, scale = self.make()
        loss, ctx = forward(pred, gt, vis, scale)
        assert float(loss) == 0.0
        assert int(ctx.visible_count) == 0
        assert np.all(np.asarray(backward(pred, gt, vis, scale, ctx)) == 0.0)

    def test_raise(self):
        with pytest.raises(DegenerateInput):
            forward(*self.make(), cfg=LossConfig(on_degenerate="raise"))

    def test_nan(self):
        loss, _ = forward(*self.make(), cfg=LossConfig(on_degenerate="nan"))
        assert np.isnan(float(loss))


class TestZeroDistance:
    def make(self):
        pred, gt, vis, scale = random_batch(seed=8, invisible_frac=0.0)
        pred = pred.copy()
        pred[0, 0:2] = gt[0, 0:2]
        return pred, gt, vis, scale

    def test_zero(self):
        pred, gt, vis, scale = self.make()
        loss, ctx = forward(pred, gt, vis, scale)
        expected, count = reference_loss(pred, gt, vis, scale)
        assert float(loss) == pytest.approx(expected, rel=1e-4)
        assert int(ctx.visible_count) == count
        grad = np.asarray(backward(pred, gt, vis, scale, ctx))
        assert np.all(np.isfinite(grad))
        assert grad[0, 0] == 0.0 and grad[0, 1] == 0.0
        np.testing.assert_allclose(grad[:, 2:], reference_grad(pred, gt, vis, scale)[:, 2:], rtol=1e-4, atol=1e-7)

    def test_raise(self):
        pred, gt, vis, scale = self.make()
        cfg = LossConfig(on_degenerate="raise")
        _, ctx = forward(pred, gt, vis, scale, cfg=cfg)  # value is well defined
        with pytest.raises(DegenerateInput):
            backward(pred, gt, vis, scale, ctx, cfg=cfg)

    def test_nan(self):
        pred, gt, vis, scale = self.make()
        cfg = LossConfig(on_degenerate="nan")
        _, ctx = forward(pred, gt, vis, scale, cfg=cfg)
        grad = np.asarray(backward(pred, gt, vis, scale, ctx, cfg=cfg))
        assert np.isnan(grad[0, 0]) and np.isnan(grad[0, 1])
        assert np.all(np.isfinite(grad[:, 2:]))


class TestZeroScale:
    def make(self):
        pred, gt, vis, scale = random_batch(seed=9, batch_size=3, invisible_frac=0.0)
        scale = scale.copy()
        scale[1, 0] = 0.0
        return pred, gt, vis, scale

    def test_zero_excludes_sample(self):
        pred, gt, vis, scale = self.make()
        loss, ctx = forward(pred, gt, vis, scale)
        keep = [0, 2]
        expected, count = reference_loss(pred[keep], gt[keep], vis[keep], scale[keep])
        assert int(ctx.visible_count) == count
        assert float(loss) == pytest.approx(expected, rel=1e-4)
        grad = np.asarray(backward(pred, gt, vis, scale, ctx))
        assert np.all(grad[1] == 0.0)
        assert np.all(np.isfinite(grad))

    def test_raise(self):
        with pytest.raises(DegenerateInput):
            forward(*self.make(), cfg=LossConfig(on_degenerate="raise"))

    def test_nan(self):
        loss, _ = forward(*self.make(), cfg=LossConfig(on_degenerate="nan"))
        assert not np.isfinite(float(loss))


def test_visibility_threshold_is_configurable(fashion_batch):
    pred, gt, vis, scale = fashion_batch
    # v = 0 (occluded) counts once the threshold drops below it
    _, ctx = forward(pred, gt, vis, scale, cfg=LossConfig(visibility_threshold=-0.5))
    assert int(ctx.visible_count) == 13


@pytest.fixture
def x64():
    jax.config.update("jax_enable_x64", True)
    try:
        yield
    finally:
        jax.config.update("jax_enable_x64", False)


def test_raise_checks_follow_kernel_precision(x64):
    cfg = LossConfig(on_degenerate="raise")
    vis = np.ones((1, 1))
    gt = np.zeros((1, 2))
    # non-zero in float64 although it underflows in float32
    loss, ctx = forward(np.array([[1.0, 0.0]]), gt, vis, np.array([[1e-50]]), cfg=cfg)
    assert float(loss) == pytest.approx(1e50)

    pred = np.array([[1e-30, 0.0]])
    _, ctx = forward(pred, gt, vis, np.ones((1, 1)), cfg=cfg)
    grad = np.asarray(backward(pred, gt, vis, np.ones((1, 1)), ctx, cfg=cfg))
    assert grad.dtype == np.float64
    assert grad[0, 0] == pytest.approx(1.0) and grad[0, 1] == 0.0
