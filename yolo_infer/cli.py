from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np

from .config import DEFAULT_POSE_KEYPOINTS, DetectorConfig, load_detector_config
from .errors import ErrorCode, InferenceError, Status
from .runtime import InferenceContext, load_detector
from .types import DetectionResult, ModelKind


def _read_rgba(path: str) -> np.ndarray:
    import cv2  # type: ignore

    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Could not read image at path: {path}")
    return cv2.cvtColor(img, cv2.COLOR_BGR2RGBA)


def _report_failure(status: Status) -> int:
    # INVALID_ARGUMENT exits 2, like argparse errors.
    print(f"error[{int(status.code)}]: {status.message}", file=sys.stderr)
    return 2 if status.code == ErrorCode.INVALID_ARGUMENT else 1


def _result_to_dict(path: str, result: DetectionResult, class_names: Dict[int, str]) -> Dict[str, object]:
    return {
        "image": path,
        "detections": [
            {
                "class_id": det.class_id,
                "class_name": class_names.get(det.class_id),
                "confidence": round(det.confidence, 6),
                "box": [round(v, 6) for v in (det.x, det.y, det.width, det.height)],
                "keypoints": [[round(float(v), 6) for v in row] for row in det.keypoints],
            }
            for det in result
        ],
    }


def _build_config(args: argparse.Namespace) -> DetectorConfig:
    if args.config is not None:
        cfg = load_detector_config(Path(args.config))
    elif args.model is not None:
        cfg = DetectorConfig(model_path=Path(args.model))
    else:
        raise ValueError("Pass --model or --config.")

    overrides: Dict[str, object] = {}
    if args.model is not None:
        overrides["model_path"] = Path(args.model)
    if args.conf is not None:
        overrides["conf_threshold"] = float(args.conf)
    if args.iou is not None:
        overrides["nms_threshold"] = float(args.iou)
    if args.gpu:
        overrides["use_gpu"] = True
    if args.pose:
        overrides["model_kind"] = ModelKind.YOLO_POSE
        overrides["num_keypoints"] = args.keypoints if args.keypoints is not None else DEFAULT_POSE_KEYPOINTS
    elif args.keypoints is not None:
        overrides["num_keypoints"] = int(args.keypoints)
    return replace(cfg, **overrides) if overrides else cfg


def cmd_detect(args: argparse.Namespace) -> int:
    cfg = _build_config(args)
    images: List[np.ndarray] = [_read_rgba(p) for p in args.images]

    with InferenceContext() as ctx:
        loaded = load_detector(cfg, ctx)
        if loaded.value is None:
            return _report_failure(loaded.status)
        detector = loaded.value
        try:
            outcome = detector.detect_batch(
                images,
                cfg.conf_threshold,
                cfg.nms_threshold,
                cfg.model_kind,
                cfg.num_keypoints,
            )
            batch = outcome.value
            if batch is None:
                return _report_failure(outcome.status)
            if not outcome.ok:
                print(f"warning: {outcome.status.message}", file=sys.stderr)

            try:
                report = [
                    _result_to_dict(path, result, detector.class_names) for path, result in zip(args.images, batch)
                ]
                if args.json:
                    print(json.dumps(report, indent=2))
                else:
                    for entry in report:
                        print(f"{entry['image']}: {len(entry['detections'])} detection(s)")
                        for det in entry["detections"]:
                            label = det["class_name"] or det["class_id"]
                            print(f"  {label} {det['confidence']:.3f} box={det['box']}")

                if args.save_dir is not None:
                    _save_visualizations(Path(args.save_dir), args.images, images, batch, detector.class_names)
            finally:
                batch.release()
        finally:
            ctx.unload_model(detector)
    return 0


def _save_visualizations(out_dir: Path, paths: Sequence[str], images: Sequence[np.ndarray], batch, class_names) -> None:
    import cv2  # type: ignore

    from .visualize import draw_detections

    out_dir.mkdir(parents=True, exist_ok=True)
    for path, rgba, result in zip(paths, images, batch):
        bgr = cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGR)
        vis = draw_detections(bgr, result, class_names=class_names)
        out_path = out_dir / Path(path).name
        cv2.imwrite(str(out_path), vis)
        print(f"wrote {out_path}")


def cmd_benchmark(args: argparse.Namespace) -> int:
    from .benchmark import benchmark_batch

    cfg = _build_config(args)
    images = [_read_rgba(p) for p in args.images]

    with InferenceContext() as ctx:
        loaded = load_detector(cfg, ctx)
        if loaded.value is None:
            return _report_failure(loaded.status)
        detector = loaded.value
        providers = ",".join(detector.backend.providers_in_use)
        try:
            summary = benchmark_batch(
                detector,
                images,
                runs=args.runs,
                warmup=args.warmup,
                conf_threshold=cfg.conf_threshold,
                nms_threshold=cfg.nms_threshold,
                model_kind=cfg.model_kind,
                num_keypoints=cfg.num_keypoints,
            )
        finally:
            ctx.unload_model(detector)

    print(f"batch={len(images)} runs={summary.n} providers={providers}")
    print(
        f"mean={summary.mean_ms:.2f}ms p50={summary.p50_ms:.2f}ms "
        f"p90={summary.p90_ms:.2f}ms p95={summary.p95_ms:.2f}ms "
        f"({summary.mean_ms / len(images):.2f}ms/img)"
    )
    return 0


def cmd_devices(args: argparse.Namespace) -> int:
    ctx = InferenceContext()
    try:
        info = ctx.gpu_info()
        print(f"onnxruntime: {ctx.version()}")
        print(f"providers: {ctx.available_providers()}")
        print(f"device: {info.device_name}")
        print(f"cuda={info.cuda_available} tensorrt={info.tensorrt_available} "
              f"coreml={info.coreml_available} directml={info.directml_available}")
    finally:
        ctx.close()
    return 0


def _add_model_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("images", nargs="+", help="Image files.")
    p.add_argument("--model", default=None, help="Path to .onnx model.")
    p.add_argument("--config", default=None, help="Detector JSON config.")
    p.add_argument("--conf", type=float, default=None, help="Confidence threshold.")
    p.add_argument("--iou", type=float, default=None, help="NMS IoU threshold.")
    p.add_argument("--pose", action="store_true", help="Treat the model as a pose model.")
    p.add_argument("--keypoints", type=int, default=None, help="Keypoints per detection (pose).")
    p.add_argument("--gpu", action="store_true", help="Prefer CUDA when available.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="yolo-infer", description="Batch YOLO detection with ONNX Runtime.")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    detect = sub.add_parser("detect", help="Run detection on one or more images (one batch).")
    _add_model_args(detect)
    detect.add_argument("--json", action="store_true", help="Print results as JSON.")
    detect.add_argument("--save-dir", default=None, help="Write annotated images here.")
    detect.set_defaults(func=cmd_detect)

    bench = sub.add_parser("benchmark", help="Time repeated batch calls over the given images.")
    _add_model_args(bench)
    bench.add_argument("--runs", type=int, default=50, help="Timed batch calls.")
    bench.add_argument("--warmup", type=int, default=5, help="Untimed warmup calls.")
    bench.set_defaults(func=cmd_benchmark)

    devices = sub.add_parser("devices", help="Show runtime version and accelerators.")
    devices.set_defaults(func=cmd_devices)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")
    try:
        return int(args.func(args))
    except InferenceError as e:
        return _report_failure(Status.from_exception(e))
    except (ValueError, FileNotFoundError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
