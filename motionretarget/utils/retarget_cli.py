from __future__ import annotations

import argparse
import dataclasses
import sys

from .bone_mapping import load_bone_map, save_bone_map
from .clip_io import load_clips, load_skeleton, save_clips
from .config import load_options
from .errors import NumericError, RetargetError
from .pipeline import retarget
from .retargeter import RetargetOptions

EXIT_OK = 0
EXIT_BAD_ARGS = 2
EXIT_REFUSED = 3
EXIT_NUMERIC = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="motionretarget",
        description="Retarget skeletal animation clips from a source rig onto a target rig.",
    )
    parser.add_argument("--source", "-s", required=True, help="Source skeleton (.json / .npz)")
    parser.add_argument("--target", "-t", required=True, help="Target skeleton (.json / .npz)")
    parser.add_argument("--clip", "-c", required=True, help="Source clip file (.json / .npz)")
    parser.add_argument("--out", "-o", required=True, help="Output clip file (.json / .npz)")
    parser.add_argument(
        "--map",
        "-m",
        default="",
        help="Bone map file (automatic mapping when omitted)",
    )
    parser.add_argument("--config", default="", help="YAML file with retarget options")
    parser.add_argument(
        "--apply-tpose",
        action="store_true",
        help="Normalize both rest poses to a T-pose before retargeting",
    )
    parser.add_argument(
        "--apose",
        action="store_true",
        help="Normalize both rest poses to an A-pose instead of a T-pose",
    )
    parser.add_argument(
        "--embed-transforms",
        action="store_true",
        help="Include the scene transform above each root in the rotation frame",
    )
    parser.add_argument(
        "--preserve-root-motion",
        action="store_true",
        help="Carry root translation over, scaled to the target proportions",
    )
    parser.add_argument(
        "--canonicalize",
        action="store_true",
        help="Convert both rigs to Y-up, meter scale first",
    )
    parser.add_argument("--include-fingers", action="store_true", help="Auto-map finger bones too")
    parser.add_argument("--optimal-scale", action="store_true", help="Use the median segment ratio as root scale")
    parser.add_argument("--scale", type=float, default=0.0, help="Force the root motion scale (0 = automatic)")
    parser.add_argument(
        "--world-space",
        action="store_true",
        help="Rewrite keys through full bind matrices (carries non-root translations too)",
    )
    parser.add_argument(
        "--coordinate-correction",
        action="store_true",
        help="Turn the source root -90 degrees about Y (Unreal Engine exports)",
    )
    parser.add_argument("--fps", type=float, default=0.0, help="Bake source clips to this frame rate first")
    parser.add_argument("--source-root", default=None, help="Source root-motion bone")
    parser.add_argument("--target-root", default=None, help="Target root-motion bone")
    parser.add_argument("--workers", type=int, default=0, help="Track-level worker threads")
    parser.add_argument("--save-map", default="", help="Write the bone map that was used to this file")
    return parser


def options_from_args(args, base: RetargetOptions) -> RetargetOptions:
    changes = {}
    if args.apply_tpose or args.apose:
        changes["apply_t_pose"] = True
    if args.apose:
        changes["reference_pose"] = "A"
    if args.embed_transforms:
        changes["embed_source_world"] = True
        changes["embed_target_world"] = True
    if args.preserve_root_motion:
        changes["preserve_root_motion"] = True
    if args.canonicalize:
        changes["canonicalize"] = True
    if args.include_fingers:
        changes["include_fingers"] = True
    if args.optimal_scale:
        changes["use_optimal_scale"] = True
    if args.scale > 0:
        changes["force_scale"] = args.scale
    if args.world_space:
        changes["world_space"] = True
    if args.coordinate_correction:
        changes["coordinate_correction"] = True
    if args.fps > 0:
        changes["fps"] = args.fps
    if args.workers > 0:
        changes["workers"] = args.workers
    return dataclasses.replace(base, **changes)


def main(argv=None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return EXIT_BAD_ARGS if e.code else EXIT_OK

    try:
        base = load_options(args.config) if args.config else RetargetOptions()
        options = options_from_args(args, base)
        src_skel = load_skeleton(args.source)
        tgt_skel = load_skeleton(args.target)
        clips = load_clips(args.clip)
        bone_map = load_bone_map(args.map) if args.map else None
    except RetargetError as e:
        print(f"[Retarget] ERROR: {e}", file=sys.stderr)
        return EXIT_REFUSED
    except (OSError, ValueError, KeyError, TypeError) as e:
        print(f"[Retarget] ERROR: cannot read inputs: {e}", file=sys.stderr)
        return EXIT_BAD_ARGS

    try:
        result = retarget(
            src_skel,
            clips,
            tgt_skel,
            options=options,
            bone_map=bone_map,
            source_root=args.source_root,
            target_root=args.target_root,
            progress=len(clips) > 1,
        )
    except NumericError as e:
        print(f"[Retarget] ERROR: {e}", file=sys.stderr)
        return EXIT_NUMERIC
    except RetargetError as e:
        print(f"[Retarget] ERROR: {e}", file=sys.stderr)
        return EXIT_REFUSED

    print(f"\n[Retarget] Bone Mapping Results:\n  Total: {len(result.bone_map)} bones mapped")
    if len(result.bone_map) < 15:
        print(
            f"  [WARNING] Very few bones mapped ({len(result.bone_map)}). "
            "Retargeting might be poor for full-body animations."
        )
    for warning in result.warnings:
        print(f"  [WARNING] {warning}")

    try:
        save_clips(result.clips, args.out)
        if args.save_map:
            save_bone_map(result.bone_map, args.save_map)
    except (OSError, ValueError) as e:
        print(f"[Retarget] ERROR: cannot write output: {e}", file=sys.stderr)
        return EXIT_BAD_ARGS

    print("Done!")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
