import unittest
from typing import List, Optional
from unittest import mock

import numpy as np

from yolo_infer.errors import ErrorCode, InvalidArgumentError, RuntimeFailureError
from yolo_infer.letterbox import compute_transform
from yolo_infer.nms import nms as real_nms
from yolo_infer.pipeline import Detector
from yolo_infer.types import BatchDetectionResult, DetectionResult, ModelDescriptor, ModelKind

INPUT = 64
NUM_BOXES = 6


def _rgba(width: int, height: int) -> np.ndarray:
    img = np.zeros((height, width, 4), dtype=np.uint8)
    img[:, :, 3] = 255
    return img


class FakeModel:
    """
    Stand-in for an inference session. Emits one box per image placed at a known
    original-image location, plus an overlapping lower score duplicate.
    """

    def __init__(self, boxes: List[tuple], num_classes: int = 2, fail: Optional[Exception] = None):
        # boxes[i] = (class_id, score, x, y, w, h) in normalized original coords of image i
        self.boxes = boxes
        self.num_classes = num_classes
        self.fail = fail
        self.calls: List[tuple] = []
        self.sizes: List[tuple] = []

    def __call__(self, blob: np.ndarray) -> np.ndarray:
        self.calls.append(blob.shape)
        if self.fail is not None:
            raise self.fail
        n = blob.shape[0]
        out = np.zeros((n, 4 + self.num_classes, NUM_BOXES), dtype=np.float32)
        for i in range(n):
            class_id, score, x, y, w, h = self.boxes[i]
            iw, ih = self.sizes[i]
            t = compute_transform(iw, ih, INPUT, INPUT)
            cx = x * iw * t.scale + t.pad_left
            cy = y * ih * t.scale + t.pad_top
            out[i, 0:4, 0] = [cx, cy, w * iw * t.scale, h * ih * t.scale]
            out[i, 4 + class_id, 0] = score
            out[i, 0:4, 1] = [cx + 0.5, cy + 0.5, w * iw * t.scale, h * ih * t.scale]
            out[i, 4 + class_id, 1] = score - 0.1
        return out


def _detector(model: FakeModel) -> Detector:
    return Detector(model, ModelDescriptor(input_width=INPUT, input_height=INPUT), backend_name="fake")


class TestDetectBatch(unittest.TestCase):
    def test_one_result_per_image_in_input_order(self) -> None:
        sizes = [(128, 64), (64, 128), (100, 100)]
        model = FakeModel(
            [
                (0, 0.9, 0.25, 0.5, 0.2, 0.2),
                (1, 0.8, 0.5, 0.75, 0.3, 0.1),
                (1, 0.7, 0.6, 0.4, 0.2, 0.2),
            ]
        )
        model.sizes = sizes
        det = _detector(model)

        outcome = det.detect_batch([_rgba(w, h) for w, h in sizes], 0.5, 0.45)
        self.assertTrue(outcome.ok)
        batch = outcome.value
        self.assertIsInstance(batch, BatchDetectionResult)
        self.assertEqual(batch.num_images, 3)
        self.assertEqual(model.calls, [(3, 3, INPUT, INPUT)])

        for result, expected in zip(batch, model.boxes):
            self.assertEqual(result.count, 1)
            d = result[0]
            self.assertEqual(d.class_id, expected[0])
            self.assertAlmostEqual(d.confidence, expected[1], places=5)
            self.assertAlmostEqual(d.x, expected[2], delta=1e-2)
            self.assertAlmostEqual(d.y, expected[3], delta=1e-2)
        batch.release()

    def test_invalid_image_fails_whole_batch_before_inference(self) -> None:
        model = FakeModel([(0, 0.9, 0.5, 0.5, 0.2, 0.2)] * 3)
        det = _detector(model)
        outcome = det.detect_batch([_rgba(32, 32), None, _rgba(32, 32)], 0.5, 0.45)
        self.assertIsNone(outcome.value)
        self.assertEqual(outcome.status.code, ErrorCode.INVALID_ARGUMENT)
        self.assertIn("images[1]", outcome.status.message)
        self.assertEqual(model.calls, [])

    def test_degenerate_size_fails_whole_batch(self) -> None:
        model = FakeModel([(0, 0.9, 0.5, 0.5, 0.2, 0.2)] * 2)
        det = _detector(model)
        outcome = det.detect_batch([_rgba(32, 32), _rgba(1, 32)], 0.5, 0.45)
        self.assertEqual(outcome.status.code, ErrorCode.INVALID_ARGUMENT)
        self.assertEqual(model.calls, [])

    def test_mismatched_sizes_and_empty_list(self) -> None:
        det = _detector(FakeModel([]))
        self.assertEqual(det.detect_batch([], 0.5, 0.45).status.code, ErrorCode.INVALID_ARGUMENT)
        outcome = det.detect_batch([bytes(16 * 16 * 4)], 0.5, 0.45, sizes=[(16, 16), (16, 16)])
        self.assertEqual(outcome.status.code, ErrorCode.INVALID_ARGUMENT)

    def test_flat_buffers_with_sizes(self) -> None:
        model = FakeModel([(1, 0.9, 0.5, 0.5, 0.4, 0.4)])
        model.sizes = [(20, 10)]
        det = _detector(model)
        outcome = det.detect_batch([bytes(20 * 10 * 4)], 0.5, 0.45, sizes=[(20, 10)])
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.value[0].count, 1)
        outcome.value.release()

    def test_runtime_failure_is_reported_not_raised(self) -> None:
        model = FakeModel([(0, 0.9, 0.5, 0.5, 0.2, 0.2)], fail=RuntimeError("shape mismatch"))
        det = _detector(model)
        outcome = det.detect_batch([_rgba(32, 32)], 0.5, 0.45)
        self.assertIsNone(outcome.value)
        self.assertEqual(outcome.status.code, ErrorCode.RUNTIME_FAILURE)
        self.assertIn("shape mismatch", outcome.status.message)
        self.assertEqual(len(model.calls), 1)
        with self.assertRaises(RuntimeFailureError):
            outcome.unwrap()

    def test_output_batch_smaller_than_input(self) -> None:
        det = Detector(lambda blob: np.zeros((1, 6, 4), dtype=np.float32), ModelDescriptor(INPUT, INPUT))
        outcome = det.detect_batch([_rgba(32, 32), _rgba(32, 32)], 0.5, 0.45)
        self.assertEqual(outcome.status.code, ErrorCode.RUNTIME_FAILURE)

    def test_unexpected_output_shape_gives_empty_results(self) -> None:
        det = Detector(lambda blob: np.zeros((2, 6), dtype=np.float32), ModelDescriptor(INPUT, INPUT))
        outcome = det.detect_batch([_rgba(32, 32), _rgba(32, 32)], 0.5, 0.45)
        self.assertTrue(outcome.ok)
        self.assertEqual([r.count for r in outcome.value], [0, 0])

    def test_nms_applied_per_image(self) -> None:
        model = FakeModel([(0, 0.9, 0.5, 0.5, 0.4, 0.4)])
        model.sizes = [(64, 64)]
        det = _detector(model)
        kept = det.detect_batch([_rgba(64, 64)], 0.5, 0.45).value
        self.assertEqual(kept[0].count, 1)
        no_nms = det.detect_batch([_rgba(64, 64)], 0.5, 1.0).value
        self.assertEqual(no_nms[0].count, 2)

    def test_closed_detector_reports_not_initialized(self) -> None:
        det = _detector(FakeModel([]))
        det.close()
        det.close()
        self.assertTrue(det.closed)
        outcome = det.detect_batch([_rgba(32, 32)], 0.5, 0.45)
        self.assertEqual(outcome.status.code, ErrorCode.NOT_INITIALIZED)
        self.assertEqual(det.input_size().status.code, ErrorCode.NOT_INITIALIZED)

    def test_bad_model_kind_and_keypoints(self) -> None:
        det = _detector(FakeModel([]))
        self.assertEqual(
            det.detect_batch([_rgba(32, 32)], 0.5, 0.45, model_kind=7).status.code, ErrorCode.INVALID_ARGUMENT
        )
        self.assertEqual(
            det.detect_batch([_rgba(32, 32)], 0.5, 0.45, ModelKind.YOLO_POSE, -1).status.code,
            ErrorCode.INVALID_ARGUMENT,
        )

    def test_input_size(self) -> None:
        det = Detector(lambda blob: blob, ModelDescriptor(input_width=320, input_height=256))
        self.assertEqual(det.input_size().value, (320, 256))


def _pose_output(blob: np.ndarray) -> np.ndarray:
    # One class, one keypoint: one confident box per image centered in a 64x64 input.
    out = np.zeros((blob.shape[0], 4 + 1 + 3, NUM_BOXES), dtype=np.float32)
    out[:, 0:4, 0] = [32.0, 32.0, 16.0, 16.0]
    out[:, 4, 0] = 0.9
    out[:, 5:8, 0] = [36.0, 28.0, 0.8]
    return out


def _copy_rows(rows: np.ndarray) -> np.ndarray:
    return np.array(rows, dtype=np.float32)


def _fail_on_call(n: int, real):
    calls = {"n": 0}

    def wrapper(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == n:
            raise MemoryError("out of memory")
        return real(*args, **kwargs)

    return wrapper


class TestDegradedImages(unittest.TestCase):
    def _pose_detector(self) -> Detector:
        return Detector(_pose_output, ModelDescriptor(input_width=INPUT, input_height=INPUT))

    def test_keypoint_failure_degrades_only_that_image(self) -> None:
        det = self._pose_detector()
        images = [_rgba(64, 64)] * 3
        with mock.patch("yolo_infer.decode._alloc_keypoints", side_effect=_fail_on_call(2, _copy_rows)):
            outcome = det.detect_batch(images, 0.5, 0.45, ModelKind.YOLO_POSE, 1)

        batch = outcome.value
        self.assertIsNotNone(batch)
        self.assertEqual(outcome.status.code, ErrorCode.ALLOCATION_FAILED)
        self.assertIn("[1]", outcome.status.message)
        self.assertEqual([r.count for r in batch], [1, 1, 1])
        self.assertEqual([[d.num_keypoints for d in r] for r in batch], [[1], [0], [1]])
        self.assertTrue(np.allclose(batch[0][0].keypoints, [[36 / 64, 28 / 64, 0.8]], atol=1e-6))
        batch.release()

    def test_result_allocation_failure_leaves_image_empty(self) -> None:
        sizes = [(64, 64), (96, 48), (48, 96)]
        model = FakeModel([(0, 0.9, 0.5, 0.5, 0.2, 0.2)] * 3)
        model.sizes = sizes
        det = _detector(model)
        with mock.patch("yolo_infer.pipeline.nms", side_effect=_fail_on_call(2, real_nms)):
            with self.assertLogs("yolo_infer.pipeline", level="WARNING"):
                outcome = det.detect_batch([_rgba(w, h) for w, h in sizes], 0.5, 0.45)

        self.assertEqual(outcome.status.code, ErrorCode.ALLOCATION_FAILED)
        self.assertEqual([r.count for r in outcome.value], [1, 0, 1])
        self.assertAlmostEqual(outcome.value[2][0].confidence, 0.9, places=5)
        outcome.value.release()

    def test_status_names_every_degraded_image(self) -> None:
        det = self._pose_detector()
        first = _fail_on_call(1, _copy_rows)
        third = _fail_on_call(3, first)
        with mock.patch("yolo_infer.decode._alloc_keypoints", side_effect=third):
            outcome = det.detect_batch([_rgba(64, 64)] * 3, 0.5, 0.45, ModelKind.YOLO_POSE, 1)

        self.assertEqual(outcome.status.code, ErrorCode.ALLOCATION_FAILED)
        self.assertIn("[0, 2]", outcome.status.message)
        self.assertEqual([[d.num_keypoints for d in r] for r in outcome.value], [[0], [1], [0]])
        outcome.value.release()

    def test_pose_single_matches_batch_of_one(self) -> None:
        det = self._pose_detector()
        image = _rgba(64, 64)
        batch = det.detect_batch([image], 0.5, 0.45, ModelKind.YOLO_POSE, 1).value
        single = det.detect(image, 0.5, 0.45, ModelKind.YOLO_POSE, 1).value

        self.assertEqual(single.count, batch[0].count)
        for a, b in zip(single, batch[0]):
            self.assertEqual((a.class_id, a.confidence, a.x, a.y), (b.class_id, b.confidence, b.x, b.y))
            self.assertEqual(a.num_keypoints, 1)
            self.assertTrue(np.array_equal(a.keypoints, b.keypoints))
        batch.release()
        single.release()


class TestDetectSingle(unittest.TestCase):
    def test_single_matches_batch_of_one(self) -> None:
        model = FakeModel([(1, 0.85, 0.3, 0.6, 0.2, 0.3)])
        model.sizes = [(96, 48)]
        det = _detector(model)
        image = _rgba(96, 48)

        batch = det.detect_batch([image], 0.4, 0.45).value
        single_outcome = det.detect(image, 0.4, 0.45)
        self.assertTrue(single_outcome.ok)
        single = single_outcome.value
        self.assertIsInstance(single, DetectionResult)

        self.assertEqual(single.count, batch[0].count)
        for a, b in zip(single, batch[0]):
            self.assertEqual(
                (a.class_id, a.confidence, a.x, a.y, a.width, a.height),
                (b.class_id, b.confidence, b.x, b.y, b.width, b.height),
            )
        batch.release()
        single.release()

    def test_single_none_image(self) -> None:
        model = FakeModel([])
        outcome = _detector(model).detect(None)
        self.assertEqual(outcome.status.code, ErrorCode.INVALID_ARGUMENT)
        self.assertEqual(model.calls, [])
        with self.assertRaises(InvalidArgumentError):
            outcome.unwrap()

    def test_single_propagates_runtime_failure(self) -> None:
        model = FakeModel([], fail=RuntimeError("boom"))
        outcome = _detector(model).detect(_rgba(16, 16))
        self.assertEqual(outcome.status.code, ErrorCode.RUNTIME_FAILURE)


if __name__ == "__main__":
    unittest.main()
