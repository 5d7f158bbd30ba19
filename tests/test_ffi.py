import ctypes
import unittest

import numpy as np

from yolo_infer.errors import ResultReleasedError
from yolo_infer.ffi import CBatchDetectionResult, export_batch, export_result, release_exported
from yolo_infer.types import BatchDetectionResult, Detection, DetectionResult


def _det(class_id: int, conf: float, keypoints=None) -> Detection:
    det = Detection(class_id=class_id, confidence=conf, x=0.25, y=0.5, width=0.125, height=0.25)
    if keypoints is not None:
        det.keypoints = np.asarray(keypoints, dtype=np.float32)
    return det


class TestExportResult(unittest.TestCase):
    def test_fields_and_keypoints(self) -> None:
        result = DetectionResult([_det(3, 0.75), _det(0, 0.5, [[0.1, 0.2, 0.9], [0.3, 0.4, 0.5]])])
        exported = export_result(result)
        s = exported.struct
        self.assertEqual(s.count, 2)
        self.assertEqual(s.capacity, 2)

        first = s.detections[0]
        self.assertEqual(first.class_id, 3)
        self.assertAlmostEqual(first.confidence, 0.75)
        self.assertEqual((first.x, first.y, first.width, first.height), (0.25, 0.5, 0.125, 0.25))
        self.assertEqual(first.num_keypoints, 0)
        self.assertFalse(bool(first.keypoints))

        second = s.detections[1]
        self.assertEqual(second.num_keypoints, 2)
        values = [second.keypoints[i] for i in range(6)]
        self.assertTrue(np.allclose(values, [0.1, 0.2, 0.9, 0.3, 0.4, 0.5]))
        self.assertGreater(exported.address, 0)
        exported.release()

    def test_empty_result(self) -> None:
        exported = export_result(DetectionResult())
        self.assertEqual(exported.struct.count, 0)
        self.assertFalse(bool(exported.struct.detections))
        exported.release()

    def test_release_twice_raises(self) -> None:
        exported = export_result(DetectionResult([_det(1, 0.9)]))
        release_exported(exported)
        with self.assertRaises(ResultReleasedError):
            exported.release()
        with self.assertRaises(ResultReleasedError):
            _ = exported.struct

    def test_release_none_is_noop(self) -> None:
        release_exported(None)


class TestExportBatch(unittest.TestCase):
    def test_walk_by_address(self) -> None:
        batch = BatchDetectionResult(
            [
                DetectionResult([_det(1, 0.9)]),
                DetectionResult(),
                DetectionResult([_det(2, 0.8), _det(2, 0.7, [[0.5, 0.5, 1.0]])]),
            ]
        )
        exported = export_batch(batch)
        view = CBatchDetectionResult.from_address(exported.address)
        self.assertEqual(view.num_images, 3)
        counts = [view.results[i].count for i in range(view.num_images)]
        self.assertEqual(counts, [1, 0, 2])
        self.assertEqual(view.results[2].detections[1].num_keypoints, 1)
        self.assertAlmostEqual(view.results[2].detections[1].keypoints[2], 1.0)
        self.assertIsInstance(view.results[0].detections[0].class_id, int)

        exported.release()
        with self.assertRaises(ResultReleasedError):
            exported.release()
        batch.release()

    def test_empty_batch(self) -> None:
        exported = export_batch(BatchDetectionResult())
        self.assertEqual(exported.struct.num_images, 0)
        self.assertFalse(bool(exported.struct.results))
        self.assertIsInstance(exported.address, int)
        self.assertEqual(ctypes.sizeof(exported.struct), ctypes.sizeof(CBatchDetectionResult))
        exported.release()


if __name__ == "__main__":
    unittest.main()
