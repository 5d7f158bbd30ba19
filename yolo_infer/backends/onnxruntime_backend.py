from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import numpy as np

from ..errors import InvalidArgumentError, RuntimeFailureError, RuntimeUnavailableError
from ..metadata import class_names_from_metadata
from ..types import ModelDescriptor

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

DEFAULT_INPUT_SIZE = 640
CUDA_PROVIDER = "CUDAExecutionProvider"
CPU_PROVIDER = "CPUExecutionProvider"


@dataclass(frozen=True)
class OnnxRuntimeBackendConfig:
    """
    Configuration for ONNX Runtime inference.

    - use_gpu: prefer CUDA when the installed runtime offers it, else fall back to CPU
    - providers: explicit ORT execution providers; overrides `use_gpu`
    - intra_op_num_threads: CPU threads used inside one operator
    """

    use_gpu: bool = False
    providers: Optional[Sequence[str]] = None
    intra_op_num_threads: int = 4


def import_onnxruntime() -> Any:
    try:
        import onnxruntime as ort  # type: ignore
    except ImportError as e:
        raise RuntimeUnavailableError(
            "onnxruntime is not installed. Install it with `pip install onnxruntime` (or `onnxruntime-gpu`)."
        ) from e
    return ort


def _dim(value: Any) -> int:
    # Symbolic dims come back as strings or None.
    if isinstance(value, (int, np.integer)) and value > 0:
        return int(value)
    return 0


def _select_providers(ort: Any, cfg: OnnxRuntimeBackendConfig) -> Optional[Sequence[str]]:
    if cfg.providers is not None:
        return list(cfg.providers)
    if not cfg.use_gpu:
        return [CPU_PROVIDER]
    if CUDA_PROVIDER in ort.get_available_providers():
        return [CUDA_PROVIDER, CPU_PROVIDER]
    logger.warning("CUDA requested but not available; falling back to CPU")
    return [CPU_PROVIDER]


class OnnxRuntimeBackend:
    """
    ONNX Runtime session for one YOLO model.

    Expects an NCHW float32 blob shaped (N, 3, H, W) and returns the first output,
    typically (N, features, boxes).
    """

    def __init__(self, model_path: PathLike, cfg: OnnxRuntimeBackendConfig = OnnxRuntimeBackendConfig(), ort: Any = None):
        self._ort = ort if ort is not None else import_onnxruntime()
        ort = self._ort

        if not str(model_path):
            raise InvalidArgumentError("model_path is empty")
        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise RuntimeFailureError(f"model file not found: {self.model_path}")

        sess_opts = ort.SessionOptions()
        sess_opts.intra_op_num_threads = int(cfg.intra_op_num_threads)
        sess_opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        providers = _select_providers(ort, cfg)
        try:
            self.session = ort.InferenceSession(str(self.model_path), sess_options=sess_opts, providers=providers)
        except Exception as e:
            raise RuntimeFailureError(f"failed to load model {self.model_path}: {e}") from e

        self.descriptor = self._describe()
        logger.info(
            "Model loaded: input=%dx%d outputs=%d providers=%s",
            self.descriptor.input_width,
            self.descriptor.input_height,
            self.descriptor.num_outputs,
            ",".join(self.providers_in_use),
        )

    def _describe(self) -> ModelDescriptor:
        inputs = self.session.get_inputs()
        outputs = self.session.get_outputs()
        if not inputs or not outputs:
            raise RuntimeFailureError("model must have at least one input and one output")

        shape = list(inputs[0].shape or [])
        # NCHW: [batch, channels, height, width]
        height = _dim(shape[2]) if len(shape) >= 4 else 0
        width = _dim(shape[3]) if len(shape) >= 4 else 0

        try:
            custom = self.session.get_modelmeta().custom_metadata_map
        except Exception as e:
            logger.debug("Model metadata unavailable: %s", e)
            custom = {}

        return ModelDescriptor(
            input_width=width or DEFAULT_INPUT_SIZE,
            input_height=height or DEFAULT_INPUT_SIZE,
            num_outputs=len(outputs),
            input_name=inputs[0].name,
            output_name=outputs[0].name,
            class_names=class_names_from_metadata(custom),
        )

    @property
    def providers_in_use(self) -> Sequence[str]:
        # ORT returns providers in priority order for this session.
        return tuple(self.session.get_providers())

    def infer(self, blob: np.ndarray) -> np.ndarray:
        outputs = self.session.run([self.descriptor.output_name], {self.descriptor.input_name: blob})
        return outputs[0]

    def close(self) -> None:
        self.session = None
