"""
C-compatible views of detection results.

Layout matches the plugin ABI consumed by non-Python callers:

    typedef struct { int class_id; float confidence; float x, y, width, height;
                     float *keypoints; int num_keypoints; } Detection;
    typedef struct { Detection *detections; int count; int capacity; } DetectionResult;
    typedef struct { DetectionResult *results; int num_images; } BatchDetectionResult;

Every count is explicit. All buffers behind one exported envelope live in a single
arena object; releasing the arena (exactly once) frees them together.
"""

from __future__ import annotations

import ctypes
from typing import List, Optional

import numpy as np

from .errors import ResultReleasedError
from .types import BatchDetectionResult, DetectionResult


class CDetection(ctypes.Structure):
    _fields_ = [
        ("class_id", ctypes.c_int),
        ("confidence", ctypes.c_float),
        ("x", ctypes.c_float),
        ("y", ctypes.c_float),
        ("width", ctypes.c_float),
        ("height", ctypes.c_float),
        ("keypoints", ctypes.POINTER(ctypes.c_float)),
        ("num_keypoints", ctypes.c_int),
    ]


class CDetectionResult(ctypes.Structure):
    _fields_ = [
        ("detections", ctypes.POINTER(CDetection)),
        ("count", ctypes.c_int),
        ("capacity", ctypes.c_int),
    ]


class CBatchDetectionResult(ctypes.Structure):
    _fields_ = [
        ("results", ctypes.POINTER(CDetectionResult)),
        ("num_images", ctypes.c_int),
    ]


class _Arena:
    """Owns every ctypes buffer referenced by one exported envelope."""

    def __init__(self) -> None:
        self._buffers: List[object] = []
        self.released = False

    def keep(self, buf):
        self._buffers.append(buf)
        return buf

    def release(self) -> None:
        if self.released:
            raise ResultReleasedError("exported result released twice")
        self._buffers.clear()
        self.released = True


def _fill_result(arena: _Arena, target: CDetectionResult, result: DetectionResult) -> None:
    dets = result.detections
    target.count = len(dets)
    target.capacity = len(dets)
    if not dets:
        target.detections = None
        return

    array = arena.keep((CDetection * len(dets))())
    for slot, det in zip(array, dets):
        slot.class_id = det.class_id
        slot.confidence = det.confidence
        slot.x = det.x
        slot.y = det.y
        slot.width = det.width
        slot.height = det.height
        k = det.num_keypoints
        slot.num_keypoints = k
        if k:
            flat = np.ascontiguousarray(det.keypoints, dtype=np.float32).reshape(-1)
            kp = arena.keep((ctypes.c_float * flat.size)(*flat.tolist()))
            slot.keypoints = ctypes.cast(kp, ctypes.POINTER(ctypes.c_float))
        else:
            slot.keypoints = None
    target.detections = ctypes.cast(array, ctypes.POINTER(CDetection))


class ExportedResult:
    def __init__(self, result: DetectionResult):
        self._arena = _Arena()
        self._struct = self._arena.keep(CDetectionResult())
        _fill_result(self._arena, self._struct, result)

    @property
    def struct(self) -> CDetectionResult:
        if self._arena.released:
            raise ResultReleasedError("exported result was already released")
        return self._struct

    @property
    def address(self) -> int:
        return ctypes.addressof(self.struct)

    def release(self) -> None:
        self._arena.release()
        self._struct = None


class ExportedBatch:
    def __init__(self, batch: BatchDetectionResult):
        self._arena = _Arena()
        self._struct = self._arena.keep(CBatchDetectionResult())
        results = batch.results
        self._struct.num_images = len(results)
        if results:
            array = self._arena.keep((CDetectionResult * len(results))())
            for slot, result in zip(array, results):
                _fill_result(self._arena, slot, result)
            self._struct.results = ctypes.cast(array, ctypes.POINTER(CDetectionResult))
        else:
            self._struct.results = None

    @property
    def struct(self) -> CBatchDetectionResult:
        if self._arena.released:
            raise ResultReleasedError("exported batch was already released")
        return self._struct

    @property
    def address(self) -> int:
        return ctypes.addressof(self.struct)

    def release(self) -> None:
        self._arena.release()
        self._struct = None


def export_result(result: DetectionResult) -> ExportedResult:
    return ExportedResult(result)


def export_batch(batch: BatchDetectionResult) -> ExportedBatch:
    return ExportedBatch(batch)


def release_exported(exported: Optional[object]) -> None:
    if exported is None:
        return
    exported.release()
