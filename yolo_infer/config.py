from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .types import ModelKind

DEFAULT_POSE_KEYPOINTS = 17

_MODEL_KINDS = {
    "yolo": ModelKind.YOLO,
    "yolo_pose": ModelKind.YOLO_POSE,
}


@dataclass(frozen=True)
class DetectorConfig:
    model_path: Path
    schema_version: int = 1
    use_gpu: bool = False
    providers: Optional[Tuple[str, ...]] = None
    intra_op_num_threads: int = 4
    conf_threshold: float = 0.25
    nms_threshold: float = 0.45
    model_kind: ModelKind = ModelKind.YOLO
    num_keypoints: int = 0
    class_names_path: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.schema_version != 1:
            raise ValueError("detector config schema_version must be 1")
        if not str(self.model_path):
            raise ValueError("model_path must not be empty")
        if not 0.0 <= self.conf_threshold <= 1.0:
            raise ValueError("conf_threshold must be in [0, 1]")
        if not 0.0 <= self.nms_threshold <= 1.0:
            raise ValueError("nms_threshold must be in [0, 1]")
        if self.intra_op_num_threads < 1:
            raise ValueError("intra_op_num_threads must be >= 1")
        if self.num_keypoints < 0:
            raise ValueError("num_keypoints must be >= 0")
        if self.model_kind == ModelKind.YOLO and self.num_keypoints != 0:
            raise ValueError("num_keypoints is only valid for model_kind 'yolo_pose'")


def _require_str(payload: Dict[str, Any], key: str) -> str:
    if key not in payload:
        raise ValueError(f"Missing required key: {key}")
    value = payload[key]
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} must be a non-empty string")
    return value


def _number(payload: Dict[str, Any], key: str, default: float) -> float:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _integer(payload: Dict[str, Any], key: str, default: int) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return int(value)


def _resolve(base: Path, value: str) -> Path:
    p = Path(value)
    return p if p.is_absolute() else (base / p).resolve()


def parse_model_kind(value: Any) -> ModelKind:
    if isinstance(value, str) and value in _MODEL_KINDS:
        return _MODEL_KINDS[value]
    raise ValueError(f"model_kind must be one of {sorted(_MODEL_KINDS)}, got {value!r}")


def load_detector_config(path: Path) -> DetectorConfig:
    """
    Load a detector JSON config. Relative paths resolve against the config's directory.
    """

    if not path.exists():
        raise FileNotFoundError(f"Detector config not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid detector config JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Detector config must be a JSON object")

    allowed = {
        "schema_version",
        "model_path",
        "use_gpu",
        "providers",
        "intra_op_num_threads",
        "conf_threshold",
        "nms_threshold",
        "model_kind",
        "num_keypoints",
        "class_names_path",
    }
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown detector config keys: {unknown}")

    base = path.resolve().parent
    model_path = _resolve(base, _require_str(payload, "model_path"))

    use_gpu = payload.get("use_gpu", False)
    if not isinstance(use_gpu, bool):
        raise ValueError("use_gpu must be a boolean")

    providers = payload.get("providers")
    if providers is not None:
        if not isinstance(providers, list) or not providers or not all(isinstance(p, str) and p for p in providers):
            raise ValueError("providers must be a non-empty list of strings")
        providers = tuple(providers)

    model_kind = parse_model_kind(payload.get("model_kind", "yolo"))
    default_keypoints = DEFAULT_POSE_KEYPOINTS if model_kind == ModelKind.YOLO_POSE else 0

    class_names_path = None
    if payload.get("class_names_path") is not None:
        class_names_path = _resolve(base, _require_str(payload, "class_names_path"))
        if not class_names_path.exists():
            raise FileNotFoundError(f"Class names file not found: {class_names_path}")

    return DetectorConfig(
        schema_version=_integer(payload, "schema_version", 1),
        model_path=model_path,
        use_gpu=use_gpu,
        providers=providers,
        intra_op_num_threads=_integer(payload, "intra_op_num_threads", 4),
        conf_threshold=_number(payload, "conf_threshold", 0.25),
        nms_threshold=_number(payload, "nms_threshold", 0.45),
        model_kind=model_kind,
        num_keypoints=_integer(payload, "num_keypoints", default_keypoints),
        class_names_path=class_names_path,
    )
