import argparse
import os
import sys

# Make the repository root importable when run as a script
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from motionretarget.utils.bone_mapping import detect_rig_type
from motionretarget.utils.canonicalize import detect_coordinate_system
from motionretarget.utils.clip_io import load_skeleton
from motionretarget.utils.pose_normalization import detect_pose_type


def format_hierarchy(skeleton) -> list[str]:
    lines = []

    def walk(index, depth):
        bone = skeleton.bones[index]
        x, y, z = bone.position
        lines.append(f"{'  ' * depth}{bone.name}  [{x:.3f}, {y:.3f}, {z:.3f}]")
        for child in skeleton.children_of(index):
            walk(child, depth + 1)

    for root in skeleton.root_indices():
        walk(root, 0)
    return lines


def inspect(path: str, show_hierarchy: bool = True) -> dict:
    skeleton = load_skeleton(path)
    detection = detect_coordinate_system(skeleton)
    report = {
        "name": skeleton.name,
        "rig_type": detect_rig_type(skeleton.names),
        "root": skeleton.effective_root(),
        "duplicates": skeleton.duplicate_names(),
        "structure": skeleton.analyze(),
        "up_axis": detection.up_axis,
        "forward_axis": detection.forward_axis,
        "estimated_scale": detection.estimated_scale,
        "pose": detect_pose_type(skeleton),
    }

    print(f"\n=== {skeleton.name} ({len(skeleton)} bones) ===")
    if show_hierarchy:
        for line in format_hierarchy(skeleton):
            print(line)
    print(f"Rig type:   {report['rig_type']}")
    print(f"Root:       {report['root']}")
    print(
        f"Axes:       up {detection.up_axis} ({detection.up_confidence:.0%}), "
        f"forward {detection.forward_axis} ({detection.forward_confidence:.0%})"
    )
    print(f"Scale:      x{detection.estimated_scale:.4g} ({detection.scale_confidence:.0%})")
    print(f"Rest pose:  {report['pose']}")
    structure = report["structure"]
    print(
        f"Structure:  depth {structure['max_depth']}, {structure['limb_count']} limb bones, "
        f"symmetric={structure['has_symmetry']}"
    )
    if report["duplicates"]:
        print(f"WARNING: duplicate bone names: {', '.join(report['duplicates'])}")
    return report


def main(argv=None):
    parser = argparse.ArgumentParser(description="Print what the retargeter sees in a skeleton file.")
    parser.add_argument("skeletons", nargs="+", help="Skeleton files (.json / .npz)")
    parser.add_argument("--no-hierarchy", dest="hierarchy", action="store_false")
    args = parser.parse_args(argv)

    for path in args.skeletons:
        if not os.path.exists(path):
            print(f"File not found: {path}")
            return 1
        inspect(path, show_hierarchy=args.hierarchy)
    return 0


if __name__ == "__main__":
    sys.exit(main())
