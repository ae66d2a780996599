from __future__ import annotations

import argparse
import logging
import os
import time
from typing import List, Optional

from ..core.gradcheck import check_gradient
from ..data.simulate import SimConfig, simulate_batch
from ..loss.normalized import LossConfig, backward, forward, make_loss_fn
from ..utils.logging import format_duration, log_jax_env, progress_iter, setup_logging


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Check the analytic loss gradient against finite differences on random batches")
    p.add_argument("--batch", type=int, default=2)
    p.add_argument("--points", type=int, default=7)
    p.add_argument("--seeds", type=int, nargs="*", default=[1701, 0, 1, 2])
    p.add_argument("--stepsize", type=float, default=1e-2)
    p.add_argument("--threshold", type=float, default=1e-2)
    p.add_argument("--invisible-frac", type=float, default=0.2)
    p.add_argument("--progress", action="store_true")
    p.add_argument("--log-level", default="INFO")
    args = p.parse_args(argv)

    setup_logging(args.log_level)
    log_jax_env()
    if args.progress:
        os.environ["KPJAX_PROGRESS"] = "1"

    cfg = LossConfig()
    loss_fn = make_loss_fn(cfg)

    def grad_fn(inputs, upstream):
        _, ctx = forward(*inputs, cfg=cfg)
        return backward(*inputs, ctx, upstream, cfg=cfg)

    n_failed = 0
    for seed in progress_iter(args.seeds, total=len(args.seeds), desc="gradcheck: seeds"):
        batch = simulate_batch(
            SimConfig(batch_size=args.batch, num_points=args.points, invisible_frac=args.invisible_frac, seed=seed)
        )
        inputs = (batch["predicted"], batch["ground_truth"], batch["visibility"], batch["scale"])
        start = time.perf_counter()
        rep = check_gradient(
            loss_fn, grad_fn, inputs, stepsize=args.stepsize, threshold=args.threshold, seed=seed
        )
        logging.info(
            "[seed %d] checked=%d upstream=%.3f max_abs_err=%.3e status=%s (%s)",
            seed,
            rep.checked,
            rep.upstream,
            rep.max_abs_error,
            "ok" if rep.ok else "FAIL",
            format_duration(time.perf_counter() - start),
        )
        for idx, a, n in rep.failures[:10]:
            sample, coord = divmod(idx, 2 * args.points)
            logging.warning(
                "  sample %d keypoint %d %s: analytic=%.6e numeric=%.6e", sample, coord // 2, "xy"[coord % 2], a, n
            )
        n_failed += len(rep.failures)

    if n_failed:
        logging.error("%d gradient elements outside tolerance", n_failed)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
