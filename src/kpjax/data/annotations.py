"""Keypoint annotation CSVs in the FashionAI layout.

Header is ``image_id,image_category,<keypoint name>...``; every keypoint cell
is ``x_y_v`` with v = 1 (visible), 0 (occluded) or -1 (absent). Predictions use
the same layout, their v column is ignored for scoring.

Each image is normalized by a category-specific reference length: the distance
between the two armpits for upper-body garments, between the two waistband
points for trousers and skirts.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np

from ..errors import ShapeMismatch


LOG = logging.getLogger(__name__)

NORMALIZATION_ANCHORS: Dict[str, Tuple[str, str]] = {
    "blouse": ("armpit_left", "armpit_right"),
    "outwear": ("armpit_left", "armpit_right"),
    "dress": ("armpit_left", "armpit_right"),
    "trousers": ("waistband_left", "waistband_right"),
    "skirt": ("waistband_left", "waistband_right"),
}


@dataclass
class KeypointTable:
    image_ids: List[str]
    categories: List[str]
    keypoint_names: Tuple[str, ...]
    coords: np.ndarray  # (N, 2P) interleaved x, y
    visibility: np.ndarray  # (N, P) raw v flags

    def __len__(self) -> int:
        return len(self.image_ids)

    @property
    def num_points(self) -> int:
        return len(self.keypoint_names)

    def subset(self, indices: Sequence[int]) -> "KeypointTable":
        idx = np.asarray(indices, dtype=np.int64)
        return KeypointTable(
            image_ids=[self.image_ids[i] for i in idx],
            categories=[self.categories[i] for i in idx],
            keypoint_names=self.keypoint_names,
            coords=self.coords[idx],
            visibility=self.visibility[idx],
        )


def parse_keypoint_cell(cell: str) -> Tuple[float, float, float]:
    parts = cell.strip().split("_")
    if len(parts) != 3:
        raise ValueError(f"Malformed keypoint cell {cell!r}; expected x_y_v")
    x, y, v = (float(p) for p in parts)
    return x, y, v


def read_keypoint_csv(path: str) -> KeypointTable:
    with open(path, "r", newline="", encoding="utf-8-sig") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None:
            raise ValueError(f"{path}: empty annotation file")
        header = [h.strip() for h in header]
        if header[:2] != ["image_id", "image_category"]:
            raise ValueError(f"{path}: header must start with image_id,image_category, got {header[:2]}")
        names = tuple(header[2:])

        image_ids: List[str] = []
        categories: List[str] = []
        coords: List[List[float]] = []
        vis: List[List[float]] = []
        for lineno, row in enumerate(reader, start=2):
            if not row or all(not c.strip() for c in row):
                continue
            if len(row) != len(header):
                raise ShapeMismatch(f"{path}:{lineno}: expected {len(header)} columns, got {len(row)}")
            xy: List[float] = []
            vv: List[float] = []
            for cell in row[2:]:
                x, y, v = parse_keypoint_cell(cell)
                xy.extend((x, y))
                vv.append(v)
            image_ids.append(row[0].strip())
            categories.append(row[1].strip())
            coords.append(xy)
            vis.append(vv)

    n, p = len(image_ids), len(names)
    LOG.debug("Read %d rows x %d keypoints from %s", n, p, path)
    return KeypointTable(
        image_ids=image_ids,
        categories=categories,
        keypoint_names=names,
        coords=np.asarray(coords, dtype=np.float32).reshape(n, 2 * p),
        visibility=np.asarray(vis, dtype=np.float32).reshape(n, p),
    )


def normalization_scales(table: KeypointTable) -> np.ndarray:
    """Per-image reference length (N, 1); 0 where it cannot be determined."""
    index = {name: j for j, name in enumerate(table.keypoint_names)}
    out = np.zeros((len(table), 1), dtype=np.float32)
    for i, category in enumerate(table.categories):
        anchors = NORMALIZATION_ANCHORS.get(category)
        if anchors is None or any(a not in index for a in anchors):
            LOG.warning("%s: no normalization anchors for category %r", table.image_ids[i], category)
            continue
        a, b = index[anchors[0]], index[anchors[1]]
        if table.visibility[i, a] < 0 or table.visibility[i, b] < 0:
            LOG.warning("%s: normalization anchor %s/%s absent", table.image_ids[i], anchors[0], anchors[1])
            continue
        dx = float(table.coords[i, 2 * a] - table.coords[i, 2 * b])
        dy = float(table.coords[i, 2 * a + 1] - table.coords[i, 2 * b + 1])
        out[i, 0] = np.hypot(dx, dy)
    return out


def align_tables(gt: KeypointTable, pred: KeypointTable) -> KeypointTable:
    """Return ``pred`` reordered to the image order of ``gt``."""
    if gt.keypoint_names != pred.keypoint_names:
        raise ShapeMismatch(
            f"keypoint columns differ: gt {list(gt.keypoint_names)} vs pred {list(pred.keypoint_names)}"
        )
    pos = {iid: k for k, iid in enumerate(pred.image_ids)}
    missing = [iid for iid in gt.image_ids if iid not in pos]
    if missing:
        raise ValueError(f"{len(missing)} ground-truth images have no prediction, e.g. {missing[:5]}")
    return pred.subset([pos[iid] for iid in gt.image_ids])


def evaluation_arrays(gt: KeypointTable, pred: KeypointTable) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """(predicted, ground_truth, visibility, scale) for the loss, in gt order."""
    pred = align_tables(gt, pred)
    return pred.coords, gt.coords, gt.visibility, normalization_scales(gt)
