from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Tuple, Union

from .backends.onnxruntime_backend import (
    CPU_PROVIDER,
    CUDA_PROVIDER,
    OnnxRuntimeBackend,
    OnnxRuntimeBackendConfig,
    import_onnxruntime,
)
from .config import DetectorConfig
from .errors import ErrorCode, InferenceError, InvalidArgumentError, Outcome, RuntimeUnavailableError, Status
from .metadata import load_class_names
from .pipeline import Detector

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class GpuInfo:
    cuda_available: bool = False
    tensorrt_available: bool = False
    coreml_available: bool = False
    directml_available: bool = False
    device_name: str = "unknown"
    cuda_device_count: int = 0


def gpu_info_from_providers(providers: Sequence[str]) -> GpuInfo:
    """
    Summarize accelerator support from the execution providers a runtime reports.
    """

    available = set(providers)
    cuda = CUDA_PROVIDER in available
    tensorrt = "TensorrtExecutionProvider" in available
    coreml = "CoreMLExecutionProvider" in available
    directml = "DmlExecutionProvider" in available

    if tensorrt:
        name = "NVIDIA GPU (TensorRT)"
    elif cuda:
        name = "NVIDIA GPU (CUDA)"
    elif coreml:
        name = "Apple Neural Engine (CoreML)"
    elif directml:
        name = "GPU (DirectML)"
    else:
        name = "CPU only"

    return GpuInfo(
        cuda_available=cuda,
        tensorrt_available=tensorrt,
        coreml_available=coreml,
        directml_available=directml,
        device_name=name,
        cuda_device_count=1 if cuda else 0,
    )


class InferenceContext:
    """
    Process-level inference runtime, opened and closed explicitly.

    `open()` and `close()` are lock-guarded and idempotent; `close()` is safe without
    a prior `open()`. Loaded Detectors keep their own sessions and must be unloaded
    by the caller.

        with InferenceContext() as ctx:
            detector = ctx.load_model("models/yolov8n.onnx").unwrap()
    """

    def __init__(self, importer: Callable[[], Any] = import_onnxruntime):
        self._importer = importer
        self._ort: Any = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._ort is not None

    def open(self) -> Outcome[bool]:
        with self._lock:
            if self._ort is not None:
                return Outcome(True)
            try:
                self._ort = self._importer()
            except InferenceError as e:
                return Outcome.failure(e)
            except ImportError as e:
                return Outcome.failure(RuntimeUnavailableError(str(e)))
            return Outcome(True)

    def close(self) -> None:
        with self._lock:
            self._ort = None

    def __enter__(self) -> "InferenceContext":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def load_model(
        self,
        model_path: PathLike,
        use_gpu: bool = False,
        *,
        providers: Optional[Sequence[str]] = None,
        intra_op_num_threads: int = 4,
    ) -> Outcome[Detector]:
        opened = self.open()
        if not opened.ok:
            return Outcome(None, opened.status)
        if model_path is None or not str(model_path):
            return Outcome.failure(InvalidArgumentError("model_path is empty"))

        cfg = OnnxRuntimeBackendConfig(use_gpu=use_gpu, providers=providers, intra_op_num_threads=intra_op_num_threads)
        try:
            backend = OnnxRuntimeBackend(model_path, cfg, ort=self._ort)
        except InferenceError as e:
            logger.error("Failed to load model %s: %s", model_path, e)
            return Outcome.failure(e)
        except Exception as e:
            logger.exception("Unexpected error loading model %s", model_path)
            return Outcome.failure(e)

        return Outcome(Detector(backend.infer, backend.descriptor, backend=backend, backend_name="onnxruntime"))

    def unload_model(self, detector: Optional[Detector]) -> None:
        if detector is None:
            return
        detector.close()

    def version(self) -> str:
        if not self.open().ok:
            return "unavailable"
        return str(getattr(self._ort, "__version__", "unknown"))

    def _providers(self) -> Tuple[Status, Sequence[str]]:
        opened = self.open()
        if not opened.ok:
            return opened.status, (CPU_PROVIDER,)
        try:
            return opened.status, tuple(self._ort.get_available_providers())
        except Exception as e:
            logger.warning("Could not query execution providers: %s", e)
            return Status(ErrorCode.RUNTIME_FAILURE, str(e)), (CPU_PROVIDER,)

    def available_providers(self) -> str:
        """Comma separated provider names; "CPUExecutionProvider" when the runtime is missing."""
        _, providers = self._providers()
        return ",".join(providers)

    def is_gpu_available(self) -> bool:
        status, providers = self._providers()
        return status.ok and CUDA_PROVIDER in providers

    def gpu_info(self) -> GpuInfo:
        status, providers = self._providers()
        if not status.ok:
            return GpuInfo(device_name="unavailable" if status.code == ErrorCode.RUNTIME_NOT_FOUND else "unknown")
        return gpu_info_from_providers(providers)


def load_detector(cfg: DetectorConfig, context: Optional[InferenceContext] = None) -> Outcome[Detector]:
    """
    Load the model named by a DetectorConfig, applying its class names file if set.
    """

    ctx = context if context is not None else InferenceContext()
    outcome = ctx.load_model(
        cfg.model_path,
        cfg.use_gpu,
        providers=cfg.providers,
        intra_op_num_threads=cfg.intra_op_num_threads,
    )
    if outcome.value is not None and cfg.class_names_path is not None:
        outcome.value.class_names = load_class_names(str(cfg.class_names_path))
    return outcome
