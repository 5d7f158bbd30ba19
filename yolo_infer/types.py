from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .errors import InvalidArgumentError, ResultReleasedError


def empty_keypoints() -> np.ndarray:
    return np.empty((0, 3), dtype=np.float32)


class ModelKind(IntEnum):
    YOLO = 0
    YOLO_POSE = 1


@dataclass
class Detection:
    """
    One detected object.

    Box is center + extent, normalized to [0, 1] of the ORIGINAL image.
    `keypoints` has shape (K, 3) as (x, y, visibility) rows, normalized like the box.
    """

    class_id: int
    confidence: float
    x: float
    y: float
    width: float
    height: float
    keypoints: np.ndarray = field(default_factory=empty_keypoints)

    @property
    def num_keypoints(self) -> int:
        return int(self.keypoints.shape[0])

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        half_w = self.width / 2
        half_h = self.height / 2
        return self.x - half_w, self.y - half_h, self.x + half_w, self.y + half_h

    def to_pixels(self, image_width: int, image_height: int) -> Tuple[float, float, float, float]:
        x1, y1, x2, y2 = self.as_xyxy()
        return x1 * image_width, y1 * image_height, x2 * image_width, y2 * image_height


@dataclass(frozen=True)
class GeometricTransform:
    """
    Letterbox parameters of one image: uniform scale and left/top padding in pixels.
    """

    scale: float
    pad_left: int
    pad_top: int
    new_width: int = 0
    new_height: int = 0


@dataclass(frozen=True)
class ModelDescriptor:
    input_width: int = 640
    input_height: int = 640
    num_outputs: int = 1
    input_name: Optional[str] = None
    output_name: Optional[str] = None
    class_names: Dict[int, str] = field(default_factory=dict)


class DetectionResult:
    """
    Detections of one image. Owns its detections and their keypoints.

    Must be released exactly once; reading it afterwards raises ResultReleasedError.
    """

    def __init__(self, detections: Optional[List[Detection]] = None):
        self._detections: List[Detection] = detections if detections is not None else []
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def detections(self) -> List[Detection]:
        if self._released:
            raise ResultReleasedError("DetectionResult was already released")
        return self._detections

    @property
    def count(self) -> int:
        return len(self.detections)

    def __len__(self) -> int:
        return self.count

    def __iter__(self) -> Iterator[Detection]:
        return iter(self.detections)

    def __getitem__(self, index: int) -> Detection:
        return self.detections[index]

    def _move_out(self) -> List[Detection]:
        moved = self.detections
        self._detections = []
        return moved

    def release(self) -> None:
        if self._released:
            raise ResultReleasedError("DetectionResult released twice")
        for det in self._detections:
            det.keypoints = empty_keypoints()
        self._detections = []
        self._released = True

    def __repr__(self) -> str:
        if self._released:
            return "DetectionResult(<released>)"
        return f"DetectionResult(count={len(self._detections)})"


class BatchDetectionResult:
    """
    One DetectionResult per input image, in input order.
    """

    def __init__(self, results: Optional[List[DetectionResult]] = None):
        self._results: List[DetectionResult] = results if results is not None else []
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def results(self) -> List[DetectionResult]:
        if self._released:
            raise ResultReleasedError("BatchDetectionResult was already released")
        return self._results

    @property
    def num_images(self) -> int:
        return len(self.results)

    def __len__(self) -> int:
        return self.num_images

    def __iter__(self) -> Iterator[DetectionResult]:
        return iter(self.results)

    def __getitem__(self, index: int) -> DetectionResult:
        return self.results[index]

    def take(self, index: int) -> DetectionResult:
        """
        Move the detections of slot `index` into a new standalone DetectionResult.

        The slot stays in place but is left empty, so releasing this batch does not
        touch the moved detections.
        """

        results = self.results
        if index < 0 or index >= len(results):
            raise InvalidArgumentError(f"result index {index} out of range (num_images={len(results)})")
        return DetectionResult(results[index]._move_out())

    def release(self) -> None:
        if self._released:
            raise ResultReleasedError("BatchDetectionResult released twice")
        for result in self._results:
            if not result.released:
                result.release()
        self._results = []
        self._released = True

    def __repr__(self) -> str:
        if self._released:
            return "BatchDetectionResult(<released>)"
        return f"BatchDetectionResult(num_images={len(self._results)})"


def free_result(result: Optional[DetectionResult]) -> None:
    if result is None:
        return
    result.release()


def free_batch_result(result: Optional[BatchDetectionResult]) -> None:
    if result is None:
        return
    result.release()
