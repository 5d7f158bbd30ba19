from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

import numpy as np

from .errors import InvalidArgumentError
from .types import Detection, GeometricTransform, ModelKind, empty_keypoints

logger = logging.getLogger(__name__)


@dataclass
class DecodeResult:
    detections: List[Detection] = field(default_factory=list)
    # Detections whose keypoint buffer could not be allocated (kept with 0 keypoints).
    keypoint_failures: int = 0


def num_classes_for(num_features: int, model_kind: ModelKind, num_keypoints: int) -> int:
    """
    Class count implied by the feature count.

    Plain detector: F - 4. Pose detector: F - 4 - 3 * K.
    Values below 1 are clamped to 1 with a warning.
    """

    if model_kind == ModelKind.YOLO_POSE and num_keypoints > 0:
        num_classes = num_features - 4 - 3 * num_keypoints
    else:
        num_classes = num_features - 4

    if num_classes < 1:
        logger.warning("Invalid class count %d (features=%d, keypoints=%d); using 1", num_classes, num_features, num_keypoints)
        num_classes = 1
    return num_classes


def _alloc_keypoints(rows: np.ndarray) -> np.ndarray:
    return np.array(rows, dtype=np.float32, copy=True)


def decode_output(
    output: np.ndarray,
    model_kind: ModelKind,
    num_keypoints: int,
    conf_threshold: float,
    transform: GeometricTransform,
    image_width: int,
    image_height: int,
) -> DecodeResult:
    """
    Decode one image's transposed output slice (features, boxes) into detections.

    Rows 0-3 are cx, cy, w, h in model-input pixels, followed by per-class scores
    and, for pose models, K triples of (x, y, visibility). Boxes and keypoints are
    mapped back to coordinates normalized to the original image.
    """

    p = np.asarray(output, dtype=np.float32)
    if p.ndim != 2:
        raise InvalidArgumentError(f"Expected output slice of shape (features, boxes), got {p.shape}")
    if transform.scale <= 0 or image_width <= 0 or image_height <= 0:
        raise InvalidArgumentError("decode requires a valid transform and image size")

    model_kind = ModelKind(model_kind)
    num_features, num_boxes = p.shape
    if num_features < 4 or num_boxes == 0:
        return DecodeResult()

    pose = model_kind == ModelKind.YOLO_POSE and num_keypoints > 0
    num_classes = num_classes_for(num_features, model_kind, num_keypoints)

    class_scores = p[4 : 4 + num_classes, :]
    if class_scores.shape[0] == 0:
        # Clamped class count points past the last feature row.
        return DecodeResult()

    # First maximum wins ties; a best score <= 0 maps to class 0 with score 0.
    best = class_scores.max(axis=0)
    class_ids = np.where(best > 0, np.argmax(class_scores, axis=0), 0)
    scores = np.where(best > 0, best, np.float32(0.0))

    keep = np.nonzero(scores >= np.float32(conf_threshold))[0]
    if keep.size == 0:
        return DecodeResult()

    scale = transform.scale
    cx, cy, w, h = p[0:4, keep]
    xs = (cx - transform.pad_left) / scale / image_width
    ys = (cy - transform.pad_top) / scale / image_height
    ws = w / scale / image_width
    hs = h / scale / image_height

    kpts = None
    if pose:
        start = 4 + num_classes
        raw = p[start : start + 3 * num_keypoints, :][:, keep]
        if raw.shape[0] == 3 * num_keypoints:
            kpts = raw.reshape(num_keypoints, 3, keep.size).transpose(2, 0, 1).copy()
            kpts[:, :, 0] = (kpts[:, :, 0] - transform.pad_left) / scale / image_width
            kpts[:, :, 1] = (kpts[:, :, 1] - transform.pad_top) / scale / image_height
        else:
            logger.warning(
                "Output has %d keypoint rows, expected %d; keypoints dropped", raw.shape[0], 3 * num_keypoints
            )

    result = DecodeResult()
    for j, box_idx in enumerate(keep):
        keypoints = empty_keypoints()
        if kpts is not None:
            try:
                keypoints = _alloc_keypoints(kpts[j])
            except MemoryError:
                result.keypoint_failures += 1
                keypoints = empty_keypoints()
        result.detections.append(
            Detection(
                class_id=int(class_ids[box_idx]),
                confidence=float(scores[box_idx]),
                x=float(xs[j]),
                y=float(ys[j]),
                width=float(ws[j]),
                height=float(hs[j]),
                keypoints=keypoints,
            )
        )

    if result.keypoint_failures:
        logger.warning("Keypoint allocation failed for %d detection(s)", result.keypoint_failures)
    return result
