"""CLI: normalized error (NE) of keypoint predictions against ground truth.

Usage example:

  python -m kpjax.cli.evaluate --gt data/annotations.csv --pred runs/pred.csv --out runs/ne.json
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import time
from typing import List, Optional

from ..data.annotations import evaluation_arrays, read_keypoint_csv
from ..errors import DegenerateInput
from ..loss.metrics import per_keypoint_error
from ..loss.normalized import DEGENERATE_POLICIES, LossConfig, forward
from ..utils.config import dump_config, from_dict, load_config
from ..utils.logging import format_duration, log_jax_env, setup_logging


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Normalized error (NE) of keypoint predictions against ground truth")
    p.add_argument("--gt", required=True, help="Ground-truth CSV (image_id,image_category,x_y_v ...)")
    p.add_argument("--pred", required=True, help="Prediction CSV with the same columns")
    p.add_argument("--out", default=None, help="Optional JSON result path")
    p.add_argument("--config", default=None, help="JSON/YAML file with loss settings (on_degenerate, visibility_threshold)")
    p.add_argument("--on-degenerate", choices=list(DEGENERATE_POLICIES), default=None, help="Overrides the config file")
    p.add_argument("--per-keypoint", action="store_true", help="Also report the error of each keypoint column")
    p.add_argument("--log-level", default="INFO")
    args = p.parse_args(argv)

    setup_logging(args.log_level)
    log_jax_env()

    cfg_dict = load_config(args.config) if args.config else {}
    if args.on_degenerate is not None:
        cfg_dict["on_degenerate"] = args.on_degenerate
    cfg = from_dict(LossConfig, cfg_dict)

    start = time.perf_counter()
    gt = read_keypoint_csv(args.gt)
    pred = read_keypoint_csv(args.pred)
    arrays = evaluation_arrays(gt, pred)
    try:
        loss, ctx = forward(*arrays, cfg=cfg)
    except DegenerateInput as e:
        logging.error("Cannot score %s: %s", args.pred, e)
        return 2
    ne = float(loss)
    visible = int(ctx.visible_count)
    logging.info(
        "NE=%.2f%% over %d visible keypoints in %d images (%s)",
        ne * 100.0,
        visible,
        len(gt),
        format_duration(time.perf_counter() - start),
    )

    result = {"ne": ne, "visible_count": visible, "images": len(gt), "config": dump_config(cfg)}
    if args.per_keypoint:
        per = per_keypoint_error(*arrays, cfg=cfg)
        result["per_keypoint"] = {
            name: (float(v) if math.isfinite(float(v)) else None) for name, v in zip(gt.keypoint_names, per)
        }
        for name, v in result["per_keypoint"].items():
            logging.info("  %-24s %s", name, "-" if v is None else f"{v * 100.0:.2f}%")

    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump(result, f, indent=2)
        logging.info("Wrote %s", args.out)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
