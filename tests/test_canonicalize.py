import os
import sys
import unittest

import numpy as np

# Add the project root to sys.path
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
sys.path.insert(0, project_root)

from motionretarget.utils.canonicalize import (
    axis_conversion,
    canonicalize,
    detect_coordinate_system,
    detect_forward_axis,
    detect_scale,
    detect_up_axis,
    restore_clip,
)
from motionretarget.utils.math_utils import (
    quaternion_from_axis_angle,
    quaternion_multiply,
    rotate_vector,
)

from rig_fixtures import chain_skeleton, clip, humanoid_skeleton, rotation_track, translation_track

X = np.array([1.0, 0.0, 0.0])


def z_up_humanoid():
    skel = humanoid_skeleton(name="Scan")
    tilt = quaternion_from_axis_angle(X, np.pi / 2)
    root = skel.bones[0]
    root.position = rotate_vector(tilt, root.position)
    root.rotation = quaternion_multiply(tilt, root.rotation)
    return skel


class TestDetection(unittest.TestCase):
    def test_y_up_humanoid(self):
        detection = detect_coordinate_system(humanoid_skeleton())
        self.assertEqual(detection.up_axis, "Y")
        self.assertEqual(detection.up_confidence, 0.95)
        self.assertEqual(detection.forward_axis, "Z")
        self.assertEqual(detection.handedness, "right")
        self.assertEqual(detection.estimated_scale, 1.0)
        np.testing.assert_allclose(detection.size, [1.3, 1.85, 0.1], atol=1e-9)

    def test_z_up_humanoid(self):
        detection = detect_coordinate_system(z_up_humanoid())
        self.assertEqual(detection.up_axis, "Z")
        self.assertEqual(detection.forward_axis, "Y")
        self.assertAlmostEqual(detection.size[2], 1.85)

    def test_up_axis_from_bounds(self):
        # Root with no children: only the extents are available
        skel = chain_skeleton(names=("only",))
        self.assertEqual(detect_up_axis(skel, np.array([0.2, 0.3, 1.8])), ("Z", 0.75))
        self.assertEqual(detect_up_axis(skel, np.array([0.2, 1.8, 0.3])), ("Y", 0.85))
        self.assertEqual(detect_up_axis(skel, np.array([1.8, 0.2, 0.3])), ("X", 0.6))

    def test_name_hints(self):
        skel = chain_skeleton(name="Character_Z_UP_y_forward")
        self.assertEqual(detect_up_axis(skel, np.array([0.0, 2.0, 0.0])), ("Z", 0.95))
        self.assertEqual(detect_forward_axis(skel, "Z"), ("Y", 0.95))

    def test_scale_bands(self):
        scale, confidence = detect_scale(np.array([0.4, 1.8, 0.3]))
        self.assertAlmostEqual(scale, 1.7 / 1.8)
        self.assertEqual(confidence, 0.7)
        self.assertEqual(detect_scale(np.array([0.05, 0.05, 0.05])), (100.0, 0.6))
        self.assertEqual(detect_scale(np.array([150.0, 180.0, 150.0])), (0.01, 0.6))
        self.assertEqual(detect_scale(np.array([1.0, 1.0, 1.0])), (1.0, 0.4))
        self.assertEqual(detect_scale(np.zeros(3)), (1.0, 0.0))
        # Height is measured along the up axis
        scale, _ = detect_scale(np.array([0.4, 0.3, 1.8]), "Z")
        self.assertAlmostEqual(scale, 1.7 / 1.8)

    def test_axis_conversion(self):
        np.testing.assert_allclose(axis_conversion("Y"), [0, 0, 0, 1])
        np.testing.assert_allclose(rotate_vector(axis_conversion("Z"), [0, 0, 1.0]), [0, 1, 0], atol=1e-12)
        np.testing.assert_allclose(rotate_vector(axis_conversion("X"), [1.0, 0, 0]), [0, 1, 0], atol=1e-12)
        np.testing.assert_allclose(axis_conversion("X", "Z"), [0, 0, 0, 1])


class TestCanonicalize(unittest.TestCase):
    def test_canonical_rig_is_copied_unchanged(self):
        skel = humanoid_skeleton()
        result = canonicalize(skel)
        self.assertFalse(result.rotation_applied)
        self.assertFalse(result.scale_applied)
        self.assertIsNot(result.skeleton, skel)
        np.testing.assert_allclose(result.skeleton.world_positions(), skel.world_positions())

    def test_z_up_rig_is_rotated(self):
        skel = z_up_humanoid()
        result = canonicalize(skel)
        self.assertTrue(result.rotation_applied)
        self.assertFalse(result.scale_applied)
        np.testing.assert_allclose(
            result.skeleton.world_positions(), humanoid_skeleton().world_positions(), atol=1e-9
        )
        self.assertEqual(detect_coordinate_system(result.skeleton).up_axis, "Y")

    def test_z_up_clip_conversion(self):
        skel = z_up_humanoid()
        src = clip(
            "walk",
            [
                rotation_track("Hips", [[0, 0, 0, 1], [0, 0, 0, 1]]),
                translation_track("Hips", [[0, 0, 1], [0, 0.5, 1]]),
                translation_track("Spine", [[0, 0.2, 0], [0, 0.2, 0]]),
            ],
        )
        result = canonicalize(skel, [src])
        rot, root_pos, spine_pos = result.clips[0].tracks
        np.testing.assert_allclose(
            np.abs(np.dot(rot.keys()[0], axis_conversion("Z"))), 1.0, atol=1e-12
        )
        np.testing.assert_allclose(root_pos.keys(), [[0, 1, 0], [0, 1, -0.5]], atol=1e-12)
        np.testing.assert_allclose(spine_pos.keys(), [[0, 0.2, 0], [0, 0.2, 0]])
        # Source clip untouched
        np.testing.assert_allclose(src.tracks[1].keys()[1], [0, 0.5, 1])

    def test_centimeter_rig_is_scaled(self):
        skel = humanoid_skeleton(scale=100.0)
        skel.bone_inverses = np.linalg.inv(skel.world_matrices())
        src = clip("walk", [translation_track("Hips", [[0, 100, 0], [50, 100, 0]])])

        result = canonicalize(skel, [src])
        self.assertTrue(result.scale_applied)
        self.assertEqual(result.scale_factor, 0.01)
        np.testing.assert_allclose(
            result.skeleton.world_positions(), humanoid_skeleton().world_positions(), atol=1e-9
        )
        np.testing.assert_allclose(
            np.linalg.inv(result.skeleton.bone_inverses), result.skeleton.world_matrices(), atol=1e-9
        )
        np.testing.assert_allclose(result.clips[0].tracks[0].keys(), [[0, 1, 0], [0.5, 1, 0]])

    def test_explicit_detection(self):
        skel = humanoid_skeleton()
        detection = detect_coordinate_system(skel)
        detection.estimated_scale = 2.0
        result = canonicalize(skel, detection=detection)
        self.assertTrue(result.scale_applied)
        np.testing.assert_allclose(result.skeleton.bones[0].position, [0, 2, 0])

    def test_restore_clip_undoes_conversion(self):
        skel = z_up_humanoid()
        skel.bones[0].position = skel.bones[0].position * 100.0
        for bone in skel.bones[1:]:
            bone.position = bone.position * 100.0
        tilt = quaternion_from_axis_angle(X, 0.4)
        src = clip(
            "walk",
            [
                rotation_track("Hips", [[0, 0, 0, 1], tilt]),
                translation_track("Hips", [[0, 0, 100], [0, 50, 100]]),
                translation_track("Spine", [[0, 20, 0], [0, 25, 0]]),
            ],
        )
        result = canonicalize(skel, [src])
        self.assertTrue(result.rotation_applied)
        self.assertTrue(result.scale_applied)

        back = restore_clip(result, result.clips[0])
        for before, after in zip(src.tracks, back.tracks):
            self.assertEqual(before.name, after.name)
        self.assertGreater(abs(np.dot(back.tracks[0].keys()[1], tilt)), 1.0 - 1e-9)
        np.testing.assert_allclose(back.tracks[1].keys(), src.tracks[1].keys(), atol=1e-9)
        np.testing.assert_allclose(back.tracks[2].keys(), src.tracks[2].keys(), atol=1e-9)

    def test_restore_clip_on_canonical_rig_copies(self):
        result = canonicalize(humanoid_skeleton())
        src = clip("walk", [translation_track("Hips", [[0, 1, 0], [1, 1, 0]])])
        back = restore_clip(result, src)
        self.assertIsNot(back, src)
        np.testing.assert_allclose(back.tracks[0].keys(), src.tracks[0].keys())


if __name__ == "__main__":
    unittest.main()
