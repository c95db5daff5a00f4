import unittest

import numpy as np
import pandas as pd
import tifffile

from .register_cli import FUSED_FOLDER, RESULTS_FILENAME, StackRegistration, pair_stacks
from .testutil import temporary_stack_directory_params


class RegisterStacksTest(unittest.TestCase):
    def test_pairs_frames_in_order(self) -> None:
        with temporary_stack_directory_params(n_frames=3, dimensions=(16, 16, 8)) as params:
            pairs = pair_stacks(params)
        self.assertEqual([r.name for r, _ in pairs], [m.name for _, m in pairs])
        self.assertEqual(pairs[0][0].name, "frame_0000.tif")

    def test_mismatched_frame_counts(self) -> None:
        with temporary_stack_directory_params(n_frames=2, dimensions=(16, 16, 8)) as params:
            next(params.resolved_output_folder.parent.glob("moving/*.tif")).unlink()
            with self.assertRaises(ValueError):
                pair_stacks(params)

    def test_registers_time_series(self) -> None:
        thetas = [[1.0, -1.0, 0.0, 0.0, 0.0, 0.0]] * 2
        with temporary_stack_directory_params(
            n_frames=2, dimensions=(32, 32, 16), thetas=thetas
        ) as params:
            registration = StackRegistration(params)
            with self.assertLogs("view_fusion.register_cli", level="INFO") as logs:
                results = registration.run()

            output_folder = params.resolved_output_folder
            written = pd.read_csv(output_folder / RESULTS_FILENAME, index_col="frame")
            registered = tifffile.imread(output_folder / "frame_0001.tif")
            fused = tifffile.imread(output_folder / FUSED_FOLDER / "frame_0001.tif")
            reference = tifffile.imread(params.reference_folder + "/frame_0001.tif")

        self.assertEqual(len(results), 2)
        self.assertEqual(list(written.index), [0, 1])
        self.assertFalse(written["fallback"].any())
        np.testing.assert_allclose(written["tx"], results["tx"])
        np.testing.assert_allclose(results[["raw_tx", "raw_ty"]].iloc[-1], [1.0, -1.0], atol=0.5)
        self.assertEqual(registered.shape, reference.shape)
        self.assertGreater(np.corrcoef(registered.ravel(), reference.ravel())[0, 1], 0.95)
        self.assertEqual(fused.shape, reference.shape)
        self.assertGreater(np.corrcoef(fused.ravel(), reference.ravel())[0, 1], 0.95)
        self.assertIn("Wrote registration results of 2 frames", logs.output[-1])
        # device volumes are released once the series is done
        self.assertEqual(registration.slots.keys(), [])

    def test_mirrored_views(self) -> None:
        with temporary_stack_directory_params(
            n_frames=1, dimensions=(32, 32, 16), mirror_x=True
        ) as params:
            results = StackRegistration(params).run()

        self.assertGreater(results["original_score"].iloc[0], 0.99)
        np.testing.assert_allclose(
            results[["tx", "ty", "tz", "rx", "ry", "rz"]].iloc[0], np.zeros(6), atol=0.5
        )

    def test_average_fusion_without_fused_output(self) -> None:
        with temporary_stack_directory_params(n_frames=1, dimensions=(32, 32, 16)) as params:
            params.fusion = "average"
            params.write_fused = False
            registration = StackRegistration(params)
            row = registration.register_frame(
                tifffile.imread(params.reference_folder + "/frame_0000.tif"),
                tifffile.imread(params.moving_folder + "/frame_0000.tif"),
            )
            averaged = registration.slots.read("fused")
            expected = (registration.slots.read("reference") + registration.slots.read("moving-registered")) / 2
            registration.run()
            fused_folder = params.resolved_output_folder / FUSED_FOLDER

        self.assertFalse(row["fallback"])
        np.testing.assert_allclose(averaged, expected, rtol=1e-5, atol=1e-3)
        self.assertFalse(fused_folder.exists())

    def test_no_fusion(self) -> None:
        with temporary_stack_directory_params(n_frames=1, dimensions=(16, 16, 8)) as params:
            params.fusion = "none"
            registration = StackRegistration(params)
            self.assertEqual(registration.fusion, [])
            registration.run()
            fused_folder = params.resolved_output_folder / FUSED_FOLDER
        self.assertFalse(fused_folder.exists())
