from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .decode import decode_output
from .errors import (
    OK,
    AllocationError,
    ErrorCode,
    InferenceError,
    InvalidArgumentError,
    NotInitializedError,
    Outcome,
    RuntimeFailureError,
    Status,
)
from .letterbox import as_rgba, letterbox_into
from .nms import nms
from .types import BatchDetectionResult, DetectionResult, GeometricTransform, ModelDescriptor, ModelKind

logger = logging.getLogger(__name__)

InferFn = Callable[[np.ndarray], np.ndarray]
ImageSize = Tuple[int, int]


def _validate_images(images: Sequence[Any], sizes: Optional[Sequence[ImageSize]]) -> List[np.ndarray]:
    if images is None or len(images) == 0:
        raise InvalidArgumentError("image list is empty")
    if sizes is not None and len(sizes) != len(images):
        raise InvalidArgumentError(f"got {len(sizes)} sizes for {len(images)} images")

    validated = []
    for i, image in enumerate(images):
        if image is None:
            raise InvalidArgumentError(f"images[{i}] is None")
        width, height = sizes[i] if sizes is not None else (None, None)
        try:
            validated.append(as_rgba(image, width, height))
        except InvalidArgumentError as e:
            raise InvalidArgumentError(f"images[{i}]: {e}") from e
    return validated


def _validate_params(model_kind: Any, num_keypoints: int) -> ModelKind:
    try:
        kind = ModelKind(int(model_kind))
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"unknown model kind: {model_kind!r}") from e
    if num_keypoints < 0:
        raise InvalidArgumentError(f"num_keypoints must be >= 0, got {num_keypoints}")
    return kind


class Detector:
    """
    Batch detection over one loaded model: letterbox -> single inference call -> decode -> NMS.

    `infer_fn` takes a float32 blob shaped (N, 3, H, W) and returns (N, features, boxes).
    A Detector is not safe for concurrent use from several threads; use one per thread
    or serialize access.

    Every public method returns an `Outcome` and never raises.
    """

    def __init__(
        self,
        infer_fn: InferFn,
        descriptor: ModelDescriptor = ModelDescriptor(),
        *,
        backend: Optional[object] = None,
        backend_name: Optional[str] = None,
        class_names: Optional[Dict[int, str]] = None,
    ):
        self._infer_fn: Optional[InferFn] = infer_fn
        self.descriptor = descriptor
        self.backend = backend
        self.backend_name = backend_name
        self.class_names = dict(class_names) if class_names is not None else dict(descriptor.class_names)

    @property
    def closed(self) -> bool:
        return self._infer_fn is None

    def close(self) -> None:
        if self._infer_fn is None:
            return
        close = getattr(self.backend, "close", None)
        if close is not None:
            close()
        self._infer_fn = None
        self.backend = None

    def input_size(self) -> Outcome[ImageSize]:
        if self.closed:
            return Outcome.failure(NotInitializedError("model is not loaded"))
        return Outcome((self.descriptor.input_width, self.descriptor.input_height))

    def detect_batch(
        self,
        images: Sequence[Any],
        conf_threshold: float = 0.25,
        nms_threshold: float = 0.45,
        model_kind: ModelKind = ModelKind.YOLO,
        num_keypoints: int = 0,
        *,
        sizes: Optional[Sequence[ImageSize]] = None,
    ) -> Outcome[BatchDetectionResult]:
        """
        Detect objects in N images with one inference call.

        Args:
            images: RGBA uint8 arrays (H, W, 4), or flat RGBA buffers when `sizes` is given
            sizes: optional (width, height) per image
        Returns:
            Outcome holding one DetectionResult per image in input order. The caller
            owns the envelope and must release it exactly once.
        """

        try:
            batch, status = self._run_batch(images, conf_threshold, nms_threshold, model_kind, num_keypoints, sizes)
        except InferenceError as e:
            return Outcome.failure(e)
        except MemoryError as e:
            return Outcome.failure(AllocationError(f"allocation failed: {e}"))
        except Exception as e:
            logger.exception("Unexpected error in detect_batch")
            return Outcome.failure(e)
        return Outcome(batch, status)

    def detect(
        self,
        image: Any,
        conf_threshold: float = 0.25,
        nms_threshold: float = 0.45,
        model_kind: ModelKind = ModelKind.YOLO,
        num_keypoints: int = 0,
        *,
        size: Optional[ImageSize] = None,
    ) -> Outcome[DetectionResult]:
        """
        Single-image detection: a batch of one, whose only result is moved out of the
        batch envelope before that envelope is released.
        """

        if image is None:
            return Outcome.failure(InvalidArgumentError("image data is None"))

        outcome = self.detect_batch(
            [image],
            conf_threshold,
            nms_threshold,
            model_kind,
            num_keypoints,
            sizes=[size] if size is not None else None,
        )
        batch = outcome.value
        if batch is None:
            return Outcome(None, outcome.status)

        single = batch.take(0) if batch.num_images > 0 else DetectionResult()
        batch.release()
        return Outcome(single, outcome.status)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _run_batch(
        self,
        images: Sequence[Any],
        conf_threshold: float,
        nms_threshold: float,
        model_kind: Any,
        num_keypoints: int,
        sizes: Optional[Sequence[ImageSize]],
    ) -> Tuple[BatchDetectionResult, Status]:
        if self.closed:
            raise NotInitializedError("model is not loaded")

        # Everything is validated before the batch buffer exists.
        kind = _validate_params(model_kind, num_keypoints)
        rgba = _validate_images(images, sizes)

        n = len(rgba)
        w, h = self.descriptor.input_width, self.descriptor.input_height
        try:
            blob = np.empty((n, 3, h, w), dtype=np.float32)
        except MemoryError as e:
            raise AllocationError("failed to allocate input buffer") from e

        transforms: List[GeometricTransform] = []
        for i, image in enumerate(rgba):
            _, transform = letterbox_into(image, w, h, out=blob[i])
            transforms.append(transform)

        try:
            raw = self._infer_fn(blob)
        except InferenceError:
            raise
        except Exception as e:
            logger.error("Inference failed: %s", e)
            raise RuntimeFailureError(f"inference failed: {e}") from e
        finally:
            del blob

        return self._collect(raw, rgba, transforms, conf_threshold, nms_threshold, kind, num_keypoints)

    def _collect(
        self,
        raw: Any,
        images: List[np.ndarray],
        transforms: List[GeometricTransform],
        conf_threshold: float,
        nms_threshold: float,
        kind: ModelKind,
        num_keypoints: int,
    ) -> Tuple[BatchDetectionResult, Status]:
        n = len(images)
        if raw is None:
            raise RuntimeFailureError("inference returned no output")
        output = np.asarray(raw, dtype=np.float32)

        results = [DetectionResult() for _ in range(n)]
        status = OK
        degraded: List[int] = []

        if output.ndim < 3 or output.shape[1] <= 0 or output.shape[2] <= 0:
            logger.warning("Unexpected output shape %s; returning empty results", output.shape)
            return BatchDetectionResult(results), status
        if output.shape[0] < n:
            raise RuntimeFailureError(f"output batch {output.shape[0]} is smaller than input batch {n}")

        # Transposed layout per image: (features, boxes), fixed stride features * boxes.
        num_features, num_boxes = int(output.shape[1]), int(output.shape[2])
        stride = num_features * num_boxes
        flat = output.reshape(output.shape[0], -1)

        for i in range(n):
            image_h, image_w = images[i].shape[:2]
            current = flat[i, :stride].reshape(num_features, num_boxes)
            try:
                decoded = decode_output(current, kind, num_keypoints, conf_threshold, transforms[i], image_w, image_h)
                results[i] = DetectionResult(nms(decoded.detections, nms_threshold))
            except MemoryError:
                logger.warning("Allocation failed while decoding image %d; result left empty", i)
                degraded.append(i)
                continue
            if decoded.keypoint_failures:
                degraded.append(i)

        if degraded:
            status = Status(ErrorCode.ALLOCATION_FAILED, f"allocation failed for images {degraded}; results degraded")
        return BatchDetectionResult(results), status
