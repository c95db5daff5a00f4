import unittest

import numpy as np

from .registration._compute_context import ChannelDataType, ComputeContext
from .registration._tensor_backend import NumpyBackend
from .registration_task import (
    GaussianBlurTask,
    ImageSlots,
    RegistrationTask,
    SlotStatus,
)
from .stack_generator import generate_view_pair
from .testutil import fast_registration_parameters


class CleanupCountingBackend(NumpyBackend):
    def __init__(self):
        super().__init__()
        self.cleanups = 0

    def cleanup_memory(self) -> None:
        self.cleanups += 1


class ImageSlotsTest(unittest.TestCase):
    def setUp(self) -> None:
        self.slots = ImageSlots(ComputeContext(NumpyBackend()))

    def test_ensure_image_allocated_reuses_matching_image(self) -> None:
        first = self.slots.ensure_image_allocated("out", ChannelDataType.FLOAT, (16, 8, 4))
        self.assertEqual(first.status, SlotStatus.FRESH)
        self.assertTrue(first.freshly_allocated)
        self.assertEqual(first.image.data.shape, (4, 8, 16))

        second = self.slots.ensure_image_allocated("out", ChannelDataType.FLOAT, (16, 8, 4))
        self.assertEqual(second.status, SlotStatus.REUSED)
        self.assertIs(second.image, first.image)

    def test_ensure_image_allocated_replaces_mismatched_image(self) -> None:
        first = self.slots.ensure_image_allocated("out", ChannelDataType.FLOAT, (16, 8, 4))
        resized = self.slots.ensure_image_allocated("out", ChannelDataType.FLOAT, (8, 8, 4))
        self.assertEqual(resized.status, SlotStatus.FRESH)
        self.assertTrue(first.image.released)

        retyped = self.slots.ensure_image_allocated("out", ChannelDataType.UNSIGNED_INT16, (8, 8, 4))
        self.assertEqual(retyped.status, SlotStatus.FRESH)
        self.assertEqual(retyped.image.channel_data_type, ChannelDataType.UNSIGNED_INT16)

    def test_put_get_release(self) -> None:
        image = self.slots.put("a", np.ones((4, 8, 16), dtype=np.float32))
        self.assertIs(self.slots.get("a"), image)
        self.assertIn("a", self.slots)
        self.slots.release("a", "missing")
        self.assertTrue(image.released)
        self.assertNotIn("a", self.slots)
        with self.assertRaises(KeyError):
            self.slots.get("a")

    def test_release_all_returns_device_memory(self) -> None:
        backend = CleanupCountingBackend()
        slots = ImageSlots(ComputeContext(backend))
        images = [slots.put(key, np.ones((4, 8, 16), dtype=np.float32)) for key in ("a", "b")]
        slots.release("a")
        self.assertEqual(backend.cleanups, 0)
        slots.release_all()
        self.assertEqual(slots.keys(), [])
        self.assertTrue(all(image.released for image in images))
        self.assertEqual(backend.cleanups, 1)


class GaussianBlurTaskTest(unittest.TestCase):
    def test_blur_preserves_mass(self) -> None:
        slots = ImageSlots(ComputeContext(NumpyBackend()))
        volume = np.zeros((16, 16, 16), dtype=np.float32)
        volume[8, 8, 8] = 1.0
        slots.put("raw", volume)
        allocation = GaussianBlurTask("raw", "blurred", sigma=1.0).enqueue(slots)
        self.assertTrue(allocation.freshly_allocated)

        blurred = slots.read("blurred")
        self.assertAlmostEqual(float(blurred.sum()), 1.0, places=4)
        self.assertLess(blurred.max(), 0.1)
        self.assertEqual(int(np.argmax(blurred)), int(np.argmax(volume)))


class RegistrationTaskTest(unittest.TestCase):
    def test_registers_and_transforms_original_view(self) -> None:
        dimensions = (32, 32, 16)
        reference, moving = generate_view_pair(
            dimensions, [1.5, 0.0, 0.0, 0.0, 0.0, 0.0], num_beads=60, bead_sigma=2.5, seed=1
        )
        slots = ImageSlots(ComputeContext(NumpyBackend()))
        slots.put("reference", reference)
        slots.put("moving", moving)
        GaussianBlurTask("reference", "reference-blur", 0.5).enqueue(slots)
        GaussianBlurTask("moving", "moving-blur", 0.5).enqueue(slots)

        task = RegistrationTask(
            "reference-blur",
            "moving-blur",
            "reference",
            "moving",
            "registered",
            params=fast_registration_parameters(max_evaluations=80),
        )
        outcome = task.enqueue(slots)

        self.assertFalse(outcome.registration.fallback)
        self.assertTrue(outcome.transformed.freshly_allocated)
        self.assertAlmostEqual(outcome.registration.theta[0], 1.5, delta=0.5)
        self.assertGreater(outcome.original_score, 0.95)

        registered = slots.read("registered")
        before = np.corrcoef(reference.ravel(), moving.ravel())[0, 1]
        after = np.corrcoef(reference.ravel(), registered.ravel())[0, 1]
        self.assertGreater(after, before)

        # the next frame reuses the output slot and warm starts from the result
        outcome = task.enqueue(slots)
        self.assertEqual(outcome.transformed.status, SlotStatus.REUSED)

    def test_mismatched_inputs(self) -> None:
        slots = ImageSlots(ComputeContext(NumpyBackend()))
        slots.put("a", np.zeros((4, 8, 16), dtype=np.float32))
        slots.put("b", np.zeros((4, 8, 8), dtype=np.float32))
        task = RegistrationTask("a", "a", "a", "b", "out")
        with self.assertRaises(ValueError):
            task.enqueue(slots)
