from typing import List, Optional, Sequence

import numpy as np

from .types import Detection


def iou(a: Detection, b: Detection) -> float:
    """
    IoU of two center + extent boxes. A zero-area union gives 0.0.
    """

    ax1, ay1, ax2, ay2 = a.as_xyxy()
    bx1, by1, bx2, by2 = b.as_xyxy()

    inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
    inter = inter_w * inter_h

    union = a.width * a.height + b.width * b.height - inter
    return inter / union if union > 0 else 0.0


def nms_indices(
    boxes: np.ndarray,
    scores: np.ndarray,
    class_ids: np.ndarray,
    iou_threshold: float,
    areas: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Class-aware NumPy NMS. Expects boxes shape (N,4) in xyxy, scores and class_ids shape (N,).

    Only boxes of the same class suppress each other, and only when IoU is strictly
    greater than `iou_threshold`. Returns kept indices in descending score order.
    `areas` overrides the box areas computed from the corners.
    """

    if boxes.size == 0:
        return np.empty((0,), dtype=np.int32)

    x1 = boxes[:, 0]
    y1 = boxes[:, 1]
    x2 = boxes[:, 2]
    y2 = boxes[:, 3]
    if areas is None:
        areas = (x2 - x1) * (y2 - y1)

    order = np.argsort(-scores, kind="stable")
    keep = []

    while order.size > 0:
        i = order[0]
        keep.append(i)
        rest = order[1:]

        xx1 = np.maximum(x1[i], x1[rest])
        yy1 = np.maximum(y1[i], y1[rest])
        xx2 = np.minimum(x2[i], x2[rest])
        yy2 = np.minimum(y2[i], y2[rest])

        w = np.maximum(0.0, xx2 - xx1)
        h = np.maximum(0.0, yy2 - yy1)
        inter = w * h
        union = areas[i] + areas[rest] - inter
        with np.errstate(divide="ignore", invalid="ignore"):
            overlap = np.where(union > 0, inter / union, 0.0)

        suppressed = (overlap > iou_threshold) & (class_ids[rest] == class_ids[i])
        order = rest[~suppressed]

    return np.array(keep, dtype=np.int32)


def nms(detections: Sequence[Detection], iou_threshold: float) -> List[Detection]:
    """
    Class-aware non-maximum suppression. Survivors are returned (not copied),
    ordered by descending confidence.
    """

    if not detections:
        return []

    boxes = np.array([d.as_xyxy() for d in detections], dtype=np.float64)
    scores = np.array([d.confidence for d in detections], dtype=np.float64)
    class_ids = np.array([d.class_id for d in detections], dtype=np.int64)
    areas = np.array([d.width * d.height for d in detections], dtype=np.float64)

    keep = nms_indices(boxes, scores, class_ids, iou_threshold, areas=areas)
    return [detections[int(i)] for i in keep]
