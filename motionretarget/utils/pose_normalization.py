"""
Rest-pose normalization.

Straightens limb chains and re-aims them so both skeletons share a reference
pose (T or A) before bind poses are captured. Every operation edits the local
rotations of the skeleton it is given; callers pass copies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np

from .bone_mapping import find_bone
from .errors import PoseWarning
from .math_utils import (
    angle_between,
    identity_quaternion,
    normalize_quaternion,
    quaternion_conjugate,
    quaternion_from_matrix,
    quaternion_multiply,
    solve_rotation_between_vectors,
)
from .presets import BASE_BONE_ROLES, POSE_ROLES
from .skeleton import Skeleton

MIN_ANGLE = 1e-3
DEGENERATE_EPS = 1e-6

X_AXIS = np.array([1.0, 0.0, 0.0])
Y_AXIS = np.array([0.0, 1.0, 0.0])
Z_AXIS = np.array([0.0, 0.0, 1.0])
NEG_X_AXIS = -X_AXIS
NEG_Y_AXIS = -Y_AXIS
LEFT_A_ARM_AXIS = np.array([1.0, -1.0, 0.0]) / np.sqrt(2.0)
RIGHT_A_ARM_AXIS = np.array([-1.0, -1.0, 0.0]) / np.sqrt(2.0)

BoneRef = Union[str, int]


@dataclass
class PoseNormalizationResult:
    skeleton: Skeleton
    roles: dict[str, str]
    pose: str = "T"
    warnings: list[PoseWarning] = field(default_factory=list)


@dataclass
class PoseValidation:
    valid: bool
    source_pose: str
    target_pose: str
    recommendation: str

    @property
    def source_in_t_pose(self) -> bool:
        return self.source_pose == "T-pose"

    @property
    def target_in_t_pose(self) -> bool:
        return self.target_pose == "T-pose"


def _warn(warnings: Optional[list], message: str, bone: Optional[str] = None):
    warning = PoseWarning(message, bone)
    print(f"[Pose] WARNING: {warning}")
    if warnings is not None:
        warnings.append(warning)


def _index(skeleton: Skeleton, bone: Optional[BoneRef]) -> int:
    if bone is None:
        return -1
    if isinstance(bone, (int, np.integer)):
        return int(bone) if 0 <= bone < len(skeleton) else -1
    return skeleton.find_index(bone)


def _world_rotation(world: np.ndarray, index: int) -> np.ndarray:
    if index < 0:
        return identity_quaternion()
    return quaternion_from_matrix(world[index])


def _rotate_in_world(skeleton: Skeleton, world: np.ndarray, index: int, rot: np.ndarray):
    """Pre-rotate bone `index` in world space by `rot` and store the new local rotation."""
    new_world = quaternion_multiply(rot, _world_rotation(world, index))
    parent = skeleton.bones[index].parent_index
    local = quaternion_multiply(quaternion_conjugate(_world_rotation(world, parent)), new_world)
    skeleton.bones[index].rotation = normalize_quaternion(local)


def _rotation_onto(
    current: np.ndarray, desired: np.ndarray, bone: str, warnings: Optional[list]
) -> Optional[np.ndarray]:
    """Rotation carrying `current` onto `desired`; None when already aligned or undefined."""
    if np.linalg.norm(current) < DEGENERATE_EPS or np.linalg.norm(desired) < DEGENERATE_EPS:
        _warn(warnings, "zero-length bone segment", bone)
        return None
    if angle_between(current, desired) <= MIN_ANGLE:
        return None
    rot = solve_rotation_between_vectors(current, desired, DEGENERATE_EPS)
    if rot is None:
        _warn(warnings, "antiparallel bone directions, rotation axis undefined", bone)
    return rot


# =============================================================================
# Role detection
# =============================================================================


def detect_pose_roles(skeleton: Skeleton) -> dict[str, str]:
    """Find the bones needed for pose normalization using the mapper's role patterns."""
    names = skeleton.names
    roles = {}
    for role in POSE_ROLES:
        bone = find_bone(names, BASE_BONE_ROLES[role])
        if bone:
            roles[role] = bone
    return roles


# =============================================================================
# Chain operations
# =============================================================================


def extend_chain(
    skeleton: Skeleton,
    origin: BoneRef,
    end: Optional[BoneRef] = None,
    warnings: Optional[list] = None,
):
    """
    Straighten the chain from `origin` down to `end` (default: follow first children to a leaf)
    so that every joint continues the direction of the segment above it.
    """
    base = _index(skeleton, origin)
    if base < 0:
        _warn(warnings, "extend_chain origin bone not found", str(origin))
        return
    if end is None:
        previous = base
        child = skeleton.first_child(previous)
        while child >= 0:
            previous = child
            child = skeleton.first_child(previous)
    else:
        previous = _index(skeleton, end)
    if previous < 0:
        _warn(warnings, "extend_chain end bone not found", str(end))
        return

    # end must sit below origin
    walker = previous
    while walker >= 0 and walker != base:
        walker = skeleton.bones[walker].parent_index
    if walker != base:
        _warn(warnings, "extend_chain end bone is not below origin", skeleton.bones[previous].name)
        return

    stop = skeleton.bones[base].parent_index
    current = skeleton.bones[previous].parent_index
    nxt = skeleton.bones[current].parent_index if current >= 0 else -1

    while nxt >= 0 and nxt != stop:
        world = skeleton.world_matrices()
        prev_pos = world[previous, :3, 3]
        curr_pos = world[current, :3, 3]
        next_pos = world[nxt, :3, 3]

        desired_dir = curr_pos - next_pos
        current_dir = prev_pos - curr_pos
        rot = _rotation_onto(current_dir, desired_dir, skeleton.bones[current].name, warnings)
        if rot is not None:
            _rotate_in_world(skeleton, world, current, rot)

        previous = current
        current = nxt
        nxt = skeleton.bones[nxt].parent_index


def align_bone_to_axis(
    skeleton: Skeleton,
    origin: BoneRef,
    end: Optional[BoneRef],
    axis: np.ndarray,
    warnings: Optional[list] = None,
):
    """Rotate `origin` so the direction origin -> end points along `axis`."""
    o = _index(skeleton, origin)
    if o < 0:
        _warn(warnings, "align_bone_to_axis origin bone not found", str(origin))
        return
    e = _index(skeleton, end) if end is not None else skeleton.first_child(o)
    if e < 0:
        _warn(warnings, "align_bone_to_axis end bone not found", str(end))
        return

    world = skeleton.world_matrices()
    direction = world[e, :3, 3] - world[o, :3, 3]
    rot = _rotation_onto(direction, np.asarray(axis, dtype=np.float64), skeleton.bones[o].name, warnings)
    if rot is not None:
        _rotate_in_world(skeleton, world, o, rot)


def look_bone_at_axis(
    skeleton: Skeleton,
    bone: BoneRef,
    dir_a: np.ndarray,
    dir_b: np.ndarray,
    axis: np.ndarray,
    warnings: Optional[list] = None,
):
    """Turn `bone` so the normal of the (dir_a, dir_b) plane faces `axis`."""
    index = _index(skeleton, bone)
    if index < 0:
        _warn(warnings, "look_bone_at_axis bone not found", str(bone))
        return
    rot_axis = np.cross(dir_a, dir_b)
    name = skeleton.bones[index].name
    if np.linalg.norm(rot_axis) < DEGENERATE_EPS:
        _warn(warnings, "facing directions are parallel", name)
        return
    rot = _rotation_onto(rot_axis, np.asarray(axis, dtype=np.float64), name, warnings)
    if rot is not None:
        _rotate_in_world(skeleton, skeleton.world_matrices(), index, rot)


# =============================================================================
# Reference poses
# =============================================================================


def _apply_pose(
    skeleton: Skeleton,
    roles: Optional[dict],
    left_arm_axis: np.ndarray,
    right_arm_axis: np.ndarray,
    pose: str,
) -> PoseNormalizationResult:
    roles = roles if roles is not None else detect_pose_roles(skeleton)
    warnings: list[PoseWarning] = []
    if not skeleton.bones:
        return PoseNormalizationResult(skeleton, roles, pose, warnings)

    hips, spine = roles.get("Hips"), roles.get("Spine")
    limbs = [
        (roles.get("LeftUpLeg"), roles.get("LeftFoot"), NEG_Y_AXIS),
        (roles.get("RightUpLeg"), roles.get("RightFoot"), NEG_Y_AXIS),
        (roles.get("LeftArm"), roles.get("LeftHand"), left_arm_axis),
        (roles.get("RightArm"), roles.get("RightHand"), right_arm_axis),
    ]

    if hips and spine:
        extend_chain(skeleton, hips, spine, warnings)
    for start, end, _ in limbs:
        if start and end:
            extend_chain(skeleton, start, end, warnings)

    if hips and spine:
        align_bone_to_axis(skeleton, hips, spine, Y_AXIS, warnings)
    for start, end, axis in limbs:
        if start and end:
            align_bone_to_axis(skeleton, start, end, axis, warnings)

    left_arm, right_arm = roles.get("LeftArm"), roles.get("RightArm")
    if left_arm and right_arm and spine:
        positions = skeleton.world_positions()
        arms_dir = positions[skeleton.find_index(left_arm)] - positions[skeleton.find_index(right_arm)]
        look_bone_at_axis(skeleton, 0, arms_dir, Y_AXIS, Z_AXIS, warnings)

    print(f"[Pose] '{skeleton.name}' normalized to {pose}-pose ({len(roles)} roles, {len(warnings)} warnings)")
    return PoseNormalizationResult(skeleton, roles, pose, warnings)


def apply_t_pose(skeleton: Skeleton, roles: Optional[dict] = None) -> PoseNormalizationResult:
    """Legs down, spine up, arms along +X / -X."""
    return _apply_pose(skeleton, roles, X_AXIS, NEG_X_AXIS, "T")


def apply_a_pose(skeleton: Skeleton, roles: Optional[dict] = None) -> PoseNormalizationResult:
    """Same as the T-pose, with arms 45 degrees down."""
    return _apply_pose(skeleton, roles, LEFT_A_ARM_AXIS, RIGHT_A_ARM_AXIS, "A")


def apply_reference_pose(
    skeleton: Skeleton, kind: str = "T", roles: Optional[dict] = None
) -> PoseNormalizationResult:
    kind = kind.upper()
    if kind == "T":
        return apply_t_pose(skeleton, roles)
    if kind == "A":
        return apply_a_pose(skeleton, roles)
    raise ValueError(f"Unknown reference pose '{kind}', expected 'T' or 'A'")


# =============================================================================
# Pose detection
# =============================================================================


def detect_pose_type(skeleton: Skeleton, roles: Optional[dict] = None) -> str:
    """Classify the rest pose from the upper-arm directions: 'T-pose', 'A-pose', 'other' or 'unknown'."""
    roles = roles if roles is not None else detect_pose_roles(skeleton)
    left = skeleton.find_index(roles.get("LeftArm", ""))
    right = skeleton.find_index(roles.get("RightArm", ""))
    if left < 0 or right < 0:
        return "unknown"
    left_child = skeleton.first_child(left)
    right_child = skeleton.first_child(right)
    if left_child < 0 or right_child < 0:
        return "unknown"

    positions = skeleton.world_positions()
    left_dir = positions[left_child] - positions[left]
    right_dir = positions[right_child] - positions[right]
    if np.linalg.norm(left_dir) < DEGENERATE_EPS or np.linalg.norm(right_dir) < DEGENERATE_EPS:
        return "unknown"
    left_dir = left_dir / np.linalg.norm(left_dir)
    right_dir = right_dir / np.linalg.norm(right_dir)

    left_angle = np.degrees(angle_between(left_dir, X_AXIS))
    right_angle = np.degrees(angle_between(right_dir, NEG_X_AXIS))
    left_vertical = abs(left_dir[1])
    right_vertical = abs(right_dir[1])

    if left_angle < 25 and right_angle < 25 and left_vertical < 0.3 and right_vertical < 0.3:
        return "T-pose"
    if 25 < left_angle < 75 and left_vertical > 0.3:
        return "A-pose"
    return "other"


def validate_poses(source: Skeleton, target: Skeleton) -> PoseValidation:
    source_pose = detect_pose_type(source)
    target_pose = detect_pose_type(target)
    compatible = source_pose == target_pose or {source_pose, target_pose} == {"T-pose", "A-pose"}

    if not compatible:
        recommendation = (
            f"Source is {source_pose} and target is {target_pose}. "
            "Consider applying T-pose normalization."
        )
    elif source_pose != "T-pose" and target_pose != "T-pose":
        recommendation = "Poses are compatible but T-pose normalization may improve results."
    else:
        recommendation = "Poses are compatible for retargeting."

    print(f"[Pose] Source {source_pose}, target {target_pose}: {recommendation}")
    return PoseValidation(compatible, source_pose, target_pose, recommendation)
