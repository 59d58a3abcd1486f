"""
Bring a skeleton (and its clips) into the canonical frame:
right-handed, Y-up, Z-forward, 1 unit = 1 meter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np

from .animation import AnimationClip, TrackProperty
from .math_utils import (
    AXES,
    identity_quaternion,
    normalize_quaternion,
    quaternion_from_axis_angle,
    quaternion_inverse,
    quaternion_multiply,
    quaternion_to_matrix,
    rotate_vector,
)
from .skeleton import Skeleton

CANONICAL_HANDEDNESS = "right"
CANONICAL_UP_AXIS = "Y"
CANONICAL_FORWARD_AXIS = "Z"
CANONICAL_UNIT_SCALE = 1.0

ASSUMED_HEIGHT_METERS = 1.7
SCALE_TOLERANCE = 0.01

# (from, to) -> (axis, angle)
AXIS_CONVERSIONS = {
    ("Z", "Y"): ("X", -np.pi / 2),
    ("X", "Y"): ("Z", np.pi / 2),
    ("Y", "Z"): ("X", np.pi / 2),
    ("Y", "X"): ("Z", -np.pi / 2),
}


@dataclass
class CoordinateSystem:
    up_axis: str = CANONICAL_UP_AXIS
    forward_axis: str = CANONICAL_FORWARD_AXIS
    handedness: str = CANONICAL_HANDEDNESS
    estimated_scale: float = 1.0
    up_confidence: float = 0.5
    forward_confidence: float = 0.5
    scale_confidence: float = 0.4
    size: np.ndarray = field(default_factory=lambda: np.zeros(3))


@dataclass
class CanonicalizationResult:
    skeleton: Skeleton
    clips: list[AnimationClip]
    detection: CoordinateSystem
    rotation: np.ndarray = field(default_factory=identity_quaternion)
    rotation_applied: bool = False
    scale_factor: float = 1.0
    scale_applied: bool = False


# =============================================================================
# Detection
# =============================================================================


def analyze_bone_orientation(skeleton: Skeleton) -> Optional[str]:
    """Dominant axis of the root -> first child direction, if one axis strictly dominates."""
    roots = skeleton.root_indices()
    if not roots:
        return None
    root = roots[0]
    child = skeleton.first_child(root)
    if child < 0:
        return None
    positions = skeleton.world_positions()
    direction = positions[child] - positions[root]
    if np.linalg.norm(direction) < 1e-9:
        return None
    ax, ay, az = np.abs(direction)
    if ay > ax and ay > az:
        return "Y"
    if az > ax and az > ay:
        return "Z"
    if ax > ay and ax > az:
        return "X"
    return None


def detect_up_axis(skeleton: Skeleton, size: np.ndarray) -> tuple[str, float]:
    up_axis, confidence = "Y", 0.5
    max_dim = float(np.max(size))
    if max_dim > 0:
        if size[1] == max_dim:
            up_axis, confidence = "Y", 0.85
        elif size[2] == max_dim:
            up_axis, confidence = "Z", 0.75
        else:
            up_axis, confidence = "X", 0.6

    bone_up = analyze_bone_orientation(skeleton)
    if bone_up:
        up_axis, confidence = bone_up, 0.95

    root_name = skeleton.name.lower()
    if "y_up" in root_name or "yup" in root_name:
        up_axis, confidence = "Y", 0.95
    elif "z_up" in root_name or "zup" in root_name:
        up_axis, confidence = "Z", 0.95

    return up_axis, confidence


def detect_forward_axis(skeleton: Skeleton, up_axis: str) -> tuple[str, float]:
    forward_axis, confidence = {
        "Y": ("Z", 0.7),
        "Z": ("Y", 0.7),
        "X": ("Z", 0.6),
    }.get(up_axis, ("Z", 0.5))

    root_name = skeleton.name.lower()
    if "z_forward" in root_name or "zforward" in root_name:
        forward_axis, confidence = "Z", 0.95
    elif "y_forward" in root_name or "yforward" in root_name:
        forward_axis, confidence = "Y", 0.95

    return forward_axis, confidence


def detect_scale(size: np.ndarray, up_axis: str = "Y") -> tuple[float, float]:
    """Meters per unit. Humanoid proportions assume a 1.7 m character, otherwise unit bands."""
    up = "XYZ".index(up_axis) if up_axis in ("X", "Y", "Z") else 1
    height = float(size[up])
    lateral = max(float(size[i]) for i in range(3) if i != up)
    max_dim = float(np.max(size))

    if lateral > 0 and 2.0 < height / lateral < 6.0:
        return ASSUMED_HEIGHT_METERS / height, 0.7
    if max_dim <= 0:
        return 1.0, 0.0
    if max_dim < 0.1:
        return 100.0, 0.6
    if max_dim > 100:
        return 0.01, 0.6
    return 1.0, 0.4


def detect_coordinate_system(skeleton: Skeleton) -> CoordinateSystem:
    lo, hi = skeleton.bounds()
    size = hi - lo
    up_axis, up_conf = detect_up_axis(skeleton, size)
    forward_axis, fwd_conf = detect_forward_axis(skeleton, up_axis)
    scale, scale_conf = detect_scale(size, up_axis)
    return CoordinateSystem(
        up_axis=up_axis,
        forward_axis=forward_axis,
        handedness=CANONICAL_HANDEDNESS,
        estimated_scale=scale,
        up_confidence=up_conf,
        forward_confidence=fwd_conf,
        scale_confidence=scale_conf,
        size=size,
    )


# =============================================================================
# Conversion
# =============================================================================


def axis_conversion(from_axis: str, to_axis: str = CANONICAL_UP_AXIS) -> np.ndarray:
    """Quaternion rotating a from_axis-up model to to_axis-up. Identity for unsupported pairs."""
    if from_axis == to_axis or (from_axis, to_axis) not in AXIS_CONVERSIONS:
        return identity_quaternion()
    axis, angle = AXIS_CONVERSIONS[(from_axis, to_axis)]
    return quaternion_from_axis_angle(AXES[axis], angle)


def _convert_clip(
    clip: AnimationClip, root_names: set, rotation: np.ndarray, scale: float
) -> AnimationClip:
    out = clip.copy()
    for track in out.tracks:
        if track.property is TrackProperty.ROTATION and track.bone in root_names:
            keys = quaternion_multiply(rotation, track.keys())
            track.values = normalize_quaternion(keys).reshape(-1)
        elif track.property is TrackProperty.TRANSLATION:
            keys = track.keys()
            if track.bone in root_names:
                keys = rotate_vector(rotation, keys).reshape(-1, 3)
            track.values = (keys * scale).reshape(-1)
    return out


def canonicalize(
    skeleton: Skeleton,
    clips: Iterable[AnimationClip] = (),
    detection: Optional[CoordinateSystem] = None,
) -> CanonicalizationResult:
    """Rotate root bones to Y-up, then scale every translation. Returns converted copies."""
    detection = detection or detect_coordinate_system(skeleton)
    result_skel = skeleton.copy()
    clips = list(clips)

    rotation = axis_conversion(detection.up_axis, CANONICAL_UP_AXIS)
    rotation_applied = detection.up_axis != CANONICAL_UP_AXIS and not np.allclose(
        rotation, identity_quaternion()
    )
    scale = detection.estimated_scale / CANONICAL_UNIT_SCALE
    scale_applied = abs(scale - CANONICAL_UNIT_SCALE) > SCALE_TOLERANCE
    if not np.isfinite(scale) or scale <= 0:
        scale_applied = False
    if not scale_applied:
        scale = 1.0
    if not rotation_applied:
        rotation = identity_quaternion()

    if not rotation_applied and not scale_applied:
        print(f"[Canonical] '{skeleton.name}' already canonical (up {detection.up_axis})")
        return CanonicalizationResult(
            result_skel, [c.copy() for c in clips], detection
        )

    roots = result_skel.root_indices()
    for i in roots:
        bone = result_skel.bones[i]
        bone.position = rotate_vector(rotation, bone.position)
        bone.rotation = normalize_quaternion(quaternion_multiply(rotation, bone.rotation))
    for bone in result_skel.bones:
        bone.position = bone.position * scale

    if result_skel.bone_inverses is not None:
        # world' = C @ world @ diag(1/s), with C = scale * rotation
        conv = np.eye(4)
        conv[:3, :3] = quaternion_to_matrix(rotation) * scale
        unscale = np.diag([1.0 / scale, 1.0 / scale, 1.0 / scale, 1.0])
        worlds = np.linalg.inv(result_skel.bone_inverses)
        result_skel.bone_inverses = np.linalg.inv(conv @ worlds @ unscale)

    root_names = {result_skel.bones[i].name for i in roots}
    converted = [_convert_clip(c, root_names, rotation, scale) for c in clips]

    print(
        f"[Canonical] '{skeleton.name}': up {detection.up_axis} -> {CANONICAL_UP_AXIS}"
        f"{' (rotated)' if rotation_applied else ''}, scale x{scale:.4g}"
    )
    return CanonicalizationResult(
        skeleton=result_skel,
        clips=converted,
        detection=detection,
        rotation=rotation,
        rotation_applied=rotation_applied,
        scale_factor=scale,
        scale_applied=scale_applied,
    )


def restore_clip(result: CanonicalizationResult, clip: AnimationClip) -> AnimationClip:
    """Bring a clip keyed on result.skeleton back to the frame and units of the original skeleton."""
    if not result.rotation_applied and not result.scale_applied:
        return clip.copy()
    root_names = {result.skeleton.bones[i].name for i in result.skeleton.root_indices()}
    # Rotation and uniform scale commute, so the inverse is the same conversion
    return _convert_clip(clip, root_names, quaternion_inverse(result.rotation), 1.0 / result.scale_factor)
