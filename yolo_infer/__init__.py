"""
Batch YOLOv8 detection (boxes and pose keypoints) around an opaque inference call.

Letterbox preprocessing, transposed-output decoding, class-aware NMS and
single-owner result envelopes. Only NumPy is needed for the core; ONNX Runtime
backs the default inference call and OpenCV is used for drawing and the CLI.
"""

from .config import DetectorConfig, load_detector_config
from .decode import DecodeResult, decode_output
from .errors import ErrorCode, InferenceError, Outcome, Status
from .letterbox import letterbox_into
from .metadata import class_names_from_metadata, load_class_names
from .nms import iou, nms
from .pipeline import Detector
from .runtime import GpuInfo, InferenceContext, load_detector
from .types import (
    BatchDetectionResult,
    Detection,
    DetectionResult,
    GeometricTransform,
    ModelDescriptor,
    ModelKind,
    free_batch_result,
    free_result,
)

__version__ = "2.0.0"

__all__ = [
    "DetectorConfig",
    "load_detector_config",
    "DecodeResult",
    "decode_output",
    "ErrorCode",
    "InferenceError",
    "Outcome",
    "Status",
    "letterbox_into",
    "class_names_from_metadata",
    "load_class_names",
    "iou",
    "nms",
    "Detector",
    "GpuInfo",
    "InferenceContext",
    "load_detector",
    "BatchDetectionResult",
    "Detection",
    "DetectionResult",
    "GeometricTransform",
    "ModelDescriptor",
    "ModelKind",
    "free_batch_result",
    "free_result",
]
