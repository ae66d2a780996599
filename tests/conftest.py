import numpy as np
import pytest


KEYPOINTS = [
    "waistband_left",
    "waistband_right",
    "crotch",
    "bottom_left_in",
    "bottom_left_out",
    "bottom_right_in",
    "bottom_right_out",
]

GT_ROWS = [
    ("0000001.jpg", "trousers", [(430, 284, 0), (713, 303, 0), (560, 537, 1), (560, 626, 1), (361, 588, 1), (573, 622, 1), (-1, -1, -1)]),
    ("0000002.jpg", "trousers", [(359, 301, 1), (464, 297, 1), (417, 403, 1), (340, 669, 1), (308, 658, 1), (456, 713, 1), (491, 714, 1)]),
]

PRED_ROWS = [
    ("0000001.jpg", "trousers", [(430, 294, 0), (713, 323, 0), (560, 567, 1), (560, 666, 1), (361, 638, 1), (573, 682, 1), (123, 345, 1)]),
    ("0000002.jpg", "trousers", [(359, 311, 1), (464, 317, 1), (417, 433, 1), (340, 709, 1), (308, 708, 1), (456, 773, 1), (491, 784, 1)]),
]

# per-image normalization used by the reference example
FASHION_SCALES = (283.64, 105.0)


def _csv_text(rows):
    lines = [",".join(["image_id", "image_category"] + KEYPOINTS)]
    for image_id, category, pts in rows:
        lines.append(",".join([image_id, category] + [f"{x}_{y}_{v}" for x, y, v in pts]))
    return "\n".join(lines) + "\n"


@pytest.fixture
def fashion_batch():
    """Two trouser images, 7 keypoints, laid out as (N, C, 1, 1) blobs."""
    predict = np.zeros((2, 14, 1, 1), np.float32)
    gt = np.zeros((2, 14, 1, 1), np.float32)
    vis = np.zeros((2, 7, 1, 1), np.float32)
    for i in range(2):
        for j in range(7):
            predict[i, 2 * j, 0, 0], predict[i, 2 * j + 1, 0, 0] = PRED_ROWS[i][2][j][:2]
            gt[i, 2 * j, 0, 0], gt[i, 2 * j + 1, 0, 0] = GT_ROWS[i][2][j][:2]
            vis[i, j, 0, 0] = GT_ROWS[i][2][j][2]
    scale = np.asarray(FASHION_SCALES, np.float32).reshape(2, 1, 1, 1)
    return predict, gt, vis, scale


@pytest.fixture
def fashion_csvs(tmp_path):
    gt_path = tmp_path / "gt.csv"
    pred_path = tmp_path / "pred.csv"
    gt_path.write_text(_csv_text(GT_ROWS), encoding="utf-8")
    pred_path.write_text(_csv_text(PRED_ROWS), encoding="utf-8")
    return str(gt_path), str(pred_path)


@pytest.fixture
def write_csv(tmp_path):
    def _write(name, rows):
        path = tmp_path / name
        path.write_text(_csv_text(rows), encoding="utf-8")
        return str(path)

    return _write
