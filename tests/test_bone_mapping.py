import json
import os
import sys
import tempfile
import unittest

import numpy as np

# Add the project root to sys.path
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
sys.path.insert(0, project_root)

from motionretarget.utils.bone_mapping import (
    BoneMap,
    BoneMapper,
    BoneMapStore,
    detect_rig_type,
    find_bone,
    generate_automatic_mapping,
    load_bone_map,
    normalize_bone_name,
    save_bone_map,
)
from motionretarget.utils.errors import ErrorKind, MappingConflictError

from rig_fixtures import UE5_NAMES, humanoid_skeleton, ue5_skeleton


class TestNameMatching(unittest.TestCase):
    def test_normalize_bone_name(self):
        self.assertEqual(normalize_bone_name("mixamorig:LeftUpLeg"), "leftupleg")
        self.assertEqual(normalize_bone_name("mixamorig_Spine1"), "spine1")
        self.assertEqual(normalize_bone_name("Bip01_L-Hand"), "lhand")
        self.assertEqual(normalize_bone_name("upper arm.L"), "upperarml")

    def test_exact_match_beats_substring(self):
        names = ["Spine1", "Spine"]
        self.assertEqual(find_bone(names, ["spine"]), "Spine")

    def test_substring_never_captures_fingers(self):
        self.assertIsNone(find_bone(["LeftHandIndex1"], ["lefthand"]))
        self.assertEqual(
            find_bone(["LeftHandIndex1", "Left_Hand_Wrist"], ["lefthand"]),
            "Left_Hand_Wrist",
        )
        self.assertEqual(find_bone(["LeftHandIndex1"], ["lefthandindex1"]), "LeftHandIndex1")

    def test_detect_rig_type(self):
        self.assertEqual(detect_rig_type(humanoid_skeleton(prefix="mixamorig:").names), "mixamo")
        self.assertEqual(detect_rig_type(ue5_skeleton().names), "ue5")
        self.assertEqual(detect_rig_type(humanoid_skeleton().names), "humanoid")
        self.assertEqual(
            detect_rig_type(["Hips", "Spine", "Chest", "LeftUpperArm", "Head"]), "unity"
        )
        self.assertEqual(detect_rig_type(["a", "b"]), "custom")
        self.assertEqual(detect_rig_type([]), "custom")


class TestBoneMap(unittest.TestCase):
    def test_existing_pair_wins_on_conflict(self):
        bone_map = BoneMap({"LeftHand": "hand_l"})
        with self.assertRaises(MappingConflictError) as ctx:
            bone_map.add("LeftWrist", "hand_l")
        self.assertEqual(ctx.exception.kind, ErrorKind.MAPPING_CONFLICT)
        self.assertEqual(bone_map.mapping, {"LeftHand": "hand_l"})

    def test_both_hands_onto_one_target(self):
        with self.assertRaises(MappingConflictError) as ctx:
            BoneMap({"LeftHand": "Hand", "RightHand": "Hand"})
        self.assertEqual(ctx.exception.location.bone, "Hand")
        self.assertIn("Hand", str(ctx.exception))

    def test_remap_same_source(self):
        bone_map = BoneMap({"Hips": "pelvis"})
        bone_map.add("Hips", "root")
        self.assertEqual(bone_map["Hips"], "root")
        self.assertEqual(len(bone_map), 1)

    def test_empty_names_rejected(self):
        with self.assertRaises(ValueError):
            BoneMap().add("", "pelvis")

    def test_remove_and_clear(self):
        bone_map = BoneMap({"a": "x", "b": "y"}, confidence=0.5)
        self.assertTrue(bone_map.remove("a"))
        self.assertFalse(bone_map.remove("a"))
        self.assertEqual(list(bone_map), ["b"])
        bone_map.clear()
        self.assertEqual(len(bone_map), 0)
        self.assertEqual(bone_map.confidence, 0.0)

    def test_resolve(self):
        bone_map = BoneMap({"spine": "Spine1", "root": "Hips"})
        index_map = bone_map.resolve(["root", "spine", "tail"], ["Hips", "Spine1"])
        np.testing.assert_array_equal(index_map, [0, 1, -1])

    def test_resolve_unknown_bone(self):
        bone_map = BoneMap({"spine": "Chest"})
        with self.assertRaises(MappingConflictError) as ctx:
            bone_map.resolve(["spine"], ["Hips"])
        self.assertEqual(ctx.exception.location.bone, "Chest")

    def test_dict_round_trip_keeps_order(self):
        bone_map = BoneMap({"b": "y", "a": "x"}, source_rig_type="mixamo", confidence=0.25, name="pair")
        data = bone_map.to_dict()
        self.assertEqual(data["sourceRigType"], "mixamo")
        self.assertIn("createdAt", data)
        restored = BoneMap.from_dict(data)
        self.assertEqual(list(restored.items()), [("b", "y"), ("a", "x")])
        self.assertEqual(restored.confidence, 0.25)
        with self.assertRaises(ValueError):
            BoneMap.from_dict({"name": "broken"})


class TestAutomaticMapping(unittest.TestCase):
    def test_mixamo_to_ue5(self):
        source = humanoid_skeleton(prefix="mixamorig:")
        target = ue5_skeleton()
        bone_map = generate_automatic_mapping(source.names, target.names)

        self.assertEqual(bone_map.source_rig_type, "mixamo")
        self.assertEqual(bone_map.target_rig_type, "ue5")
        for src, trg in UE5_NAMES.items():
            if src.endswith("ToeBase"):
                continue
            self.assertEqual(bone_map.get("mixamorig:" + src), trg, src)
        # Toes use 'ball' on UE5 rigs
        self.assertNotIn("mixamorig:LeftToeBase", bone_map)
        self.assertEqual(len(bone_map), 20)
        self.assertAlmostEqual(bone_map.confidence, 20 / 22)

    def test_identical_rigs_map_fully(self):
        names = humanoid_skeleton().names
        bone_map = generate_automatic_mapping(names, names)
        self.assertEqual(bone_map.mapping, {n: n for n in names})
        self.assertEqual(bone_map.confidence, 1.0)

    def test_root_role_first(self):
        source = ue5_skeleton().names
        target = ["Armature"] + humanoid_skeleton().names
        bone_map = generate_automatic_mapping(source, target)
        self.assertEqual(bone_map["root"], "Armature")
        self.assertEqual(bone_map["pelvis"], "Hips")

    def test_fingers_are_opt_in(self):
        source = humanoid_skeleton().names + ["LeftHandIndex1", "LeftHandIndex2"]
        target = ue5_skeleton().names + ["index_01_l", "index_02_l"]
        plain = generate_automatic_mapping(source, target)
        self.assertNotIn("LeftHandIndex1", plain)
        self.assertEqual(plain["LeftHand"], "hand_l")

        with_fingers = generate_automatic_mapping(source, target, include_fingers=True)
        self.assertEqual(with_fingers["LeftHandIndex1"], "index_01_l")
        self.assertEqual(with_fingers["LeftHandIndex2"], "index_02_l")
        self.assertEqual(with_fingers["LeftHand"], "hand_l")

    def test_unrelated_rigs(self):
        bone_map = generate_automatic_mapping(["tentacle_a", "tentacle_b"], humanoid_skeleton().names)
        self.assertEqual(len(bone_map), 0)
        self.assertEqual(bone_map.confidence, 0.0)


class TestBoneMapper(unittest.TestCase):
    def test_manual_edits(self):
        mapper = BoneMapper()
        mapper.detect_rig_types(humanoid_skeleton().names, ue5_skeleton().names)
        mapper.set_mapping({"Hips": "pelvis"})
        mapper.add("Spine", "spine_01")
        self.assertEqual(mapper.get_mapping(), {"Hips": "pelvis", "Spine": "spine_01"})
        self.assertTrue(mapper.remove("Spine"))
        info = mapper.info()
        self.assertEqual(info["mapping_count"], 1)
        self.assertEqual(info["source_rig_type"], "humanoid")
        self.assertEqual(info["target_rig_type"], "ue5")
        mapper.clear()
        self.assertEqual(mapper.get_mapping(), {})

    def test_set_mapping_copies(self):
        original = BoneMap({"Hips": "pelvis"})
        mapper = BoneMapper()
        mapper.set_mapping(original)
        mapper.add("Spine", "spine_01")
        self.assertEqual(len(original), 1)

    def test_ensure_root_mapping_replaces_owner(self):
        mapper = BoneMapper()
        mapper.set_mapping({"Hips": "pelvis", "Spine": "root"})
        self.assertTrue(mapper.ensure_root_mapping("Hips", "root"))
        self.assertEqual(mapper.get_mapping(), {"Hips": "root"})
        self.assertFalse(mapper.ensure_root_mapping("Hips", "root"))
        self.assertFalse(mapper.ensure_root_mapping(None, "root"))


class TestBoneMapPersistence(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def test_save_and_load(self):
        path = os.path.join(self.tmp.name, "nested", "map.json")
        bone_map = BoneMap({"Hips": "pelvis", "Spine": "spine_01"}, confidence=0.9)
        save_bone_map(bone_map, path)
        with open(path, "r", encoding="utf-8") as f:
            self.assertEqual(json.load(f)["mapping"]["Hips"], "pelvis")
        loaded = load_bone_map(path)
        self.assertEqual(loaded.mapping, bone_map.mapping)
        self.assertEqual(loaded.created_at, bone_map.created_at)
        # No temp files left behind
        self.assertEqual(os.listdir(os.path.dirname(path)), ["map.json"])

    def test_load_missing(self):
        with self.assertRaises(FileNotFoundError):
            load_bone_map(os.path.join(self.tmp.name, "nope.json"))

    def test_load_duplicate_target_file(self):
        path = os.path.join(self.tmp.name, "dup.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"mapping": {"a": "x", "b": "x"}}, f)
        with self.assertRaises(MappingConflictError):
            load_bone_map(path)

    def test_store(self):
        store = BoneMapStore(os.path.join(self.tmp.name, "maps"))
        self.assertEqual(store.list(), [])
        store.save(BoneMap({"Hips": "pelvis"}), "mixamo_to_ue5")
        store.save(BoneMap({"Hips": "Hips"}, name="identity"))
        self.assertEqual(store.list(), ["identity", "mixamo_to_ue5"])
        self.assertTrue(store.exists("identity"))
        loaded = store.load("mixamo_to_ue5")
        self.assertEqual(loaded.name, "mixamo_to_ue5")
        self.assertEqual(loaded["Hips"], "pelvis")
        self.assertTrue(store.delete("identity"))
        self.assertFalse(store.delete("identity"))
        self.assertEqual(store.list(), ["mixamo_to_ue5"])

    def test_store_save_leaves_caller_map_alone(self):
        store = BoneMapStore(self.tmp.name)
        bone_map = BoneMap({"Hips": "pelvis"}, name="draft")
        store.save(bone_map, "final")
        self.assertEqual(bone_map.name, "draft")
        self.assertEqual(store.load("final").name, "final")
        self.assertEqual(store.list(), ["final"])

    def test_store_rejects_path_names(self):
        store = BoneMapStore(self.tmp.name)
        for name in ("", "..", "../escape", "a/b"):
            with self.assertRaises(ValueError):
                store.save(BoneMap({"a": "b"}), name)


if __name__ == "__main__":
    unittest.main()
