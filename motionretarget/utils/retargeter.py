"""
Bind-pose-relative rotation transfer.

For a source bone i mapped to target bone j, every local rotation key q is
rewritten as

    q' = left[i] * q * right[i]
    left[i]  = inv(trgWorldParent(j)) * inv(F_trg) * F_src * srcWorldParent(i)
    right[i] = inv(srcWorld(i)) * inv(F_src) * F_trg * trgWorld(j)

where the world terms come from the two bind-pose snapshots and F is the
optional embedded scene transform above each root.

With world_space the same product is taken over full 4x4 bind matrices, so
non-root translation keys are carried through the bind frames as well.
"""

from __future__ import annotations

import dataclasses
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
from tqdm import tqdm

from .animation import AnimationClip, KeyframeTrack, TrackProperty, resample_clip
from .bind_pose import BindPoseMode, BindPoseSnapshot
from .bone_mapping import BoneMap, find_bone
from .errors import (
    ErrorLocation,
    InputShapeError,
    MappingConflictError,
    MappingEmptyError,
    NoOutputTracksError,
    NumericError,
)
from .math_utils import (
    AXES,
    enforce_quaternion_continuity,
    identity_quaternion,
    quaternion_from_axis_angle,
    quaternion_from_matrix,
    quaternion_inverse,
    quaternion_multiply,
    quaternion_to_matrix,
    rotate_vector,
)
from .presets import BASE_BONE_ROLES, OPTIMAL_SCALE_ROLE_PAIRS

MIN_BONE_LENGTH = 0.001
RETARGETED_SUFFIX = "_retargeted"
COORDINATE_CORRECTION = quaternion_from_axis_angle(AXES["Y"], -np.pi / 2)


@dataclass
class RetargetOptions:
    source_pose_mode: BindPoseMode = BindPoseMode.DEFAULT
    target_pose_mode: BindPoseMode = BindPoseMode.DEFAULT
    embed_source_world: bool = False
    embed_target_world: bool = False
    apply_t_pose: bool = False
    reference_pose: str = "T"
    auto_t_pose: bool = False
    preserve_root_motion: bool = False
    canonicalize: bool = False
    include_fingers: bool = False
    use_optimal_scale: bool = False
    force_scale: float = 0.0
    # Rewrite keys through full bind matrices instead of the left/right quaternions
    world_space: bool = False
    # Unreal imports: turn the source root -90 degrees about Y
    coordinate_correction: bool = False
    # Bake source clips to this frame rate first (0 keeps the source keys)
    fps: float = 0.0
    workers: int = 1
    epsilon: float = 1e-6

    def __post_init__(self):
        self.source_pose_mode = BindPoseMode(self.source_pose_mode)
        self.target_pose_mode = BindPoseMode(self.target_pose_mode)
        self.reference_pose = str(self.reference_pose).upper()
        if self.reference_pose not in ("T", "A"):
            raise ValueError(f"reference_pose must be 'T' or 'A', got {self.reference_pose!r}")
        if int(self.workers) < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        self.workers = int(self.workers)
        if not self.epsilon > 0:
            raise ValueError(f"epsilon must be positive, got {self.epsilon}")
        self.fps = float(self.fps)
        if not np.isfinite(self.fps) or self.fps < 0:
            raise ValueError(f"fps must be >= 0, got {self.fps}")

    def effective(self) -> "RetargetOptions":
        """Normalized rest poses only exist in the current transforms, so both modes become CURRENT."""
        if not self.apply_t_pose:
            return dataclasses.replace(self)
        return dataclasses.replace(
            self,
            source_pose_mode=BindPoseMode.CURRENT,
            target_pose_mode=BindPoseMode.CURRENT,
        )


@dataclass(frozen=True)
class RetargetContext:
    source_bind: BindPoseSnapshot
    target_bind: BindPoseSnapshot
    bone_map: BoneMap
    index_map: np.ndarray
    left: tuple
    right: tuple
    proportion_ratio: float
    source_root_index: int
    target_root_index: int
    options: RetargetOptions
    # p' = target_root_rest + ratio * root_linear @ (p - source_root_rest)
    root_linear: np.ndarray
    source_root_rest: np.ndarray
    target_root_rest: np.ndarray
    # world_space: trgLocal = left_matrix @ srcLocal @ right_matrix
    left_matrix: tuple = ()
    right_matrix: tuple = ()

    @property
    def mapped_count(self) -> int:
        return int(np.count_nonzero(self.index_map >= 0))

    def target_name(self, source_index: int) -> Optional[str]:
        j = self.index_map[source_index]
        return self.target_bind.names[j] if j >= 0 else None


# =============================================================================
# Context
# =============================================================================


def _readonly(arr) -> np.ndarray:
    out = np.array(arr, dtype=np.float64, copy=True)
    out.flags.writeable = False
    return out


def compute_proportion_ratio(
    source_bind: BindPoseSnapshot, target_bind: BindPoseSnapshot, index_map: np.ndarray
) -> float:
    """Sum of target bone lengths over sum of source bone lengths, over mapped pairs."""
    src_total = 0.0
    trg_total = 0.0
    for i, j in enumerate(index_map):
        if j < 0:
            continue
        ci = source_bind.first_child(i)
        cj = target_bind.first_child(int(j))
        if ci < 0 or cj < 0:
            continue
        src_len = np.linalg.norm(source_bind.world_position(ci) - source_bind.world_position(i))
        trg_len = np.linalg.norm(target_bind.world_position(cj) - target_bind.world_position(int(j)))
        if src_len >= MIN_BONE_LENGTH and trg_len >= MIN_BONE_LENGTH:
            src_total += src_len
            trg_total += trg_len
    return trg_total / src_total if src_total > 0 else 1.0


def compute_optimal_scale(
    source_bind: BindPoseSnapshot, target_bind: BindPoseSnapshot
) -> Optional[float]:
    """Median length ratio over matching body segments, or None when no segment pair is usable."""

    def segment(bind, start_role, end_role):
        start = find_bone(bind.names, BASE_BONE_ROLES[start_role])
        end = find_bone(bind.names, BASE_BONE_ROLES[end_role])
        if not start or not end:
            return None
        a, b = bind.find_index(start), bind.find_index(end)
        return float(np.linalg.norm(bind.world_position(b) - bind.world_position(a)))

    ratios = []
    for start_role, end_role in OPTIMAL_SCALE_ROLE_PAIRS:
        src_len = segment(source_bind, start_role, end_role)
        trg_len = segment(target_bind, start_role, end_role)
        if src_len is None or trg_len is None:
            continue
        if src_len >= MIN_BONE_LENGTH and trg_len >= MIN_BONE_LENGTH:
            ratios.append(trg_len / src_len)
    if not ratios:
        return None
    return float(np.median(ratios))


def _embedded_matrices(bind: BindPoseSnapshot) -> tuple[np.ndarray, np.ndarray]:
    if bind.embedded is None:
        return np.eye(4), np.eye(4)
    return bind.embedded.forward_matrix, bind.embedded.inverse_matrix


def build_context(
    source_bind: BindPoseSnapshot,
    target_bind: BindPoseSnapshot,
    bone_map: BoneMap,
    options: Optional[RetargetOptions] = None,
    source_root: Optional[str] = None,
    target_root: Optional[str] = None,
) -> RetargetContext:
    if source_bind is None or len(source_bind) == 0:
        raise InputShapeError("Source bind pose is missing or empty")
    if target_bind is None or len(target_bind) == 0:
        raise InputShapeError("Target bind pose is missing or empty")
    if bone_map is None or len(bone_map) == 0:
        raise MappingEmptyError("Bone map is empty")
    options = dataclasses.replace(options) if options is not None else RetargetOptions()

    index_map = bone_map.resolve(list(source_bind.names), list(target_bind.names))
    if not np.any(index_map >= 0):
        raise MappingEmptyError("No bone of the source skeleton is mapped")

    src_embedded = source_bind.embedded
    trg_embedded = target_bind.embedded
    src_fwd, src_inv = _embedded_matrices(source_bind)
    trg_fwd, trg_inv = _embedded_matrices(target_bind)

    left, right = [], []
    left_mats, right_mats = [], []
    for i, j in enumerate(index_map):
        if j < 0:
            left.append(None)
            right.append(None)
            left_mats.append(None)
            right_mats.append(None)
            continue
        j = int(j)

        left_mats.append(
            _readonly(
                np.linalg.inv(target_bind.parent_world_matrix(j))
                @ trg_inv
                @ src_fwd
                @ source_bind.parent_world_matrix(i)
            )
        )
        right_mats.append(
            _readonly(np.linalg.inv(source_bind.world_matrices[i]) @ src_inv @ trg_fwd @ target_bind.world_matrices[j])
        )

        # left = invTrgWorldParent * invTrgEmbedded * srcEmbedded * srcWorldParent
        lq = identity_quaternion()
        src_parent = source_bind.parent_indices[i]
        if src_parent >= 0:
            lq = source_bind.world[src_parent].q.copy()
        if src_embedded is not None:
            lq = quaternion_multiply(src_embedded.forward.q, lq)
        if trg_embedded is not None:
            lq = quaternion_multiply(trg_embedded.inverse.q, lq)
        trg_parent = target_bind.parent_indices[j]
        if trg_parent >= 0:
            lq = quaternion_multiply(target_bind.world_inverse[trg_parent].q, lq)

        # right = invSrcWorld * invSrcEmbedded * trgEmbedded * trgWorld
        rq = target_bind.world[j].q.copy()
        if trg_embedded is not None:
            rq = quaternion_multiply(trg_embedded.forward.q, rq)
        if src_embedded is not None:
            rq = quaternion_multiply(src_embedded.inverse.q, rq)
        rq = quaternion_multiply(source_bind.world_inverse[i].q, rq)

        left.append(_readonly(lq))
        right.append(_readonly(rq))

    if options.force_scale > 0:
        ratio = float(options.force_scale)
        print(f"[Retarget] Using manual scale: {ratio:.4f}")
    else:
        ratio = compute_proportion_ratio(source_bind, target_bind, index_map)
        if options.use_optimal_scale:
            optimal = compute_optimal_scale(source_bind, target_bind)
            if optimal is not None:
                print(f"[Retarget] Optimal scale {optimal:.4f} (proportion ratio {ratio:.4f})")
                ratio = optimal
            else:
                print("[Retarget] No body segments to compare, keeping proportion ratio")
    if not np.isfinite(ratio) or ratio <= 0:
        raise NumericError(f"Proportion ratio is not usable: {ratio}")

    source_root_index = source_bind.effective_root(source_root)
    if target_root:
        target_root_index = target_bind.effective_root(target_root)
    elif index_map[source_root_index] >= 0:
        target_root_index = int(index_map[source_root_index])
    else:
        target_root_index = target_bind.effective_root()

    mapped_root = int(index_map[source_root_index])
    if options.preserve_root_motion and mapped_root >= 0 and mapped_root != target_root_index:
        raise MappingConflictError(
            f"Root motion of '{source_bind.names[source_root_index]}' would land on "
            f"'{target_bind.names[target_root_index]}', but the map sends it to "
            f"'{target_bind.names[mapped_root]}'",
            ErrorLocation(bone=target_bind.names[target_root_index]),
        )

    # Root translations live in the parent frame of each root.
    src_frame = src_fwd @ source_bind.parent_world_matrix(source_root_index)
    trg_frame_inv = np.linalg.inv(target_bind.parent_world_matrix(target_root_index)) @ trg_inv
    root_linear = trg_frame_inv[:3, :3] @ src_frame[:3, :3]

    index_map = np.array(index_map, dtype=np.int64)
    index_map.flags.writeable = False

    context = RetargetContext(
        source_bind=source_bind,
        target_bind=target_bind,
        bone_map=bone_map.copy(),
        index_map=index_map,
        left=tuple(left),
        right=tuple(right),
        proportion_ratio=float(ratio),
        source_root_index=int(source_root_index),
        target_root_index=int(target_root_index),
        options=options,
        root_linear=_readonly(root_linear),
        source_root_rest=_readonly(source_bind.locals[source_root_index].p),
        target_root_rest=_readonly(target_bind.locals[target_root_index].p),
        left_matrix=tuple(left_mats),
        right_matrix=tuple(right_mats),
    )
    print(
        f"[Retarget] Context ready: {context.mapped_count} mapped bones, "
        f"proportion ratio {context.proportion_ratio:.3f}, "
        f"root {source_bind.names[source_root_index]} -> {target_bind.names[target_root_index]}"
    )
    return context


# =============================================================================
# Rewriting
# =============================================================================


def _check_finite(keys: np.ndarray, epsilon: float, bone: str, track_index: int, unit: bool):
    bad = ~np.all(np.isfinite(keys), axis=1)
    if unit:
        bad |= np.linalg.norm(np.where(np.isfinite(keys), keys, 0.0), axis=1) < epsilon
    if np.any(bad):
        key = int(np.argmax(bad))
        raise NumericError(
            f"Degenerate keyframe value {keys[key].tolist()}",
            ErrorLocation(bone=bone, track_index=track_index, key_index=key),
        )


def retarget_quaternion(context: RetargetContext, source_index: int, q: np.ndarray) -> np.ndarray:
    """left * q * right for one key (or a (k, 4) stack) of a mapped source bone."""
    left = context.left[source_index]
    if left is None:
        raise KeyError(f"Source bone {source_index} is not mapped")
    out = quaternion_multiply(quaternion_multiply(left, q), context.right[source_index])
    return out / np.linalg.norm(out, axis=-1, keepdims=True)


def retarget_track(
    context: RetargetContext, track: KeyframeTrack, track_index: int = 0
) -> Optional[KeyframeTrack]:
    """Rewrite one source track for the target skeleton. None when the track has no target."""
    i = context.source_bind.find_index(track.bone)
    if i < 0:
        print(f"[Retarget] Skipping track '{track.name}': bone not in source skeleton")
        return None
    if context.index_map[i] < 0:
        return None

    options = context.options
    epsilon = options.epsilon
    target_name = context.target_name(i)
    times = track.times.copy()
    is_root = i == context.source_root_index

    if track.property is TrackProperty.ROTATION:
        keys = track.keys()
        _check_finite(keys, epsilon, track.bone, track_index, unit=True)
        keys = keys / np.linalg.norm(keys, axis=1, keepdims=True)
        if is_root and options.coordinate_correction:
            keys = quaternion_multiply(
                quaternion_multiply(quaternion_inverse(COORDINATE_CORRECTION), keys), COORDINATE_CORRECTION
            )
        if options.world_space:
            out = _world_space_rotations(context, i, keys)
        else:
            out = quaternion_multiply(quaternion_multiply(context.left[i], keys), context.right[i])
        _check_finite(out, epsilon, track.bone, track_index, unit=True)
        out = out / np.linalg.norm(out, axis=1, keepdims=True)
        out = enforce_quaternion_continuity(out)
        return KeyframeTrack(target_name, TrackProperty.ROTATION, times, out.reshape(-1), track.interpolation)

    if track.property is TrackProperty.TRANSLATION:
        keys = track.keys()
        _check_finite(keys, epsilon, track.bone, track_index, unit=False)
        if is_root:
            if not options.preserve_root_motion:
                return None
            delta = keys - context.source_root_rest
            if options.coordinate_correction:
                delta = rotate_vector(COORDINATE_CORRECTION, delta).reshape(-1, 3)
            out = context.target_root_rest + context.proportion_ratio * (delta @ context.root_linear.T)
            return KeyframeTrack(target_name, TrackProperty.TRANSLATION, times, out.reshape(-1), track.interpolation)
        if options.world_space:
            out = _world_space_translations(context, i, keys)
            _check_finite(out, epsilon, track.bone, track_index, unit=False)
            return KeyframeTrack(target_name, TrackProperty.TRANSLATION, times, out.reshape(-1), track.interpolation)
        return KeyframeTrack(target_name, TrackProperty.TRANSLATION, times, keys.reshape(-1).copy(), track.interpolation)

    # Scale tracks do not carry over between rigs.
    return None


def _world_space_matrices(context: RetargetContext, source_index: int, local_mats: np.ndarray) -> np.ndarray:
    return context.left_matrix[source_index] @ local_mats @ context.right_matrix[source_index]


def _world_space_rotations(context: RetargetContext, source_index: int, keys: np.ndarray) -> np.ndarray:
    rest = context.source_bind.locals[source_index]
    local_mats = np.repeat(np.eye(4)[None], len(keys), axis=0)
    local_mats[:, :3, :3] = quaternion_to_matrix(keys).reshape(-1, 3, 3) * rest.s[None, None, :]
    local_mats[:, :3, 3] = rest.p
    mats = _world_space_matrices(context, source_index, local_mats)
    return np.array([quaternion_from_matrix(m) for m in mats])


def _world_space_translations(context: RetargetContext, source_index: int, keys: np.ndarray) -> np.ndarray:
    rest = context.source_bind.locals[source_index]
    local_mats = np.repeat(rest.to_matrix()[None], len(keys), axis=0)
    local_mats[:, :3, 3] = keys
    return _world_space_matrices(context, source_index, local_mats)[:, :3, 3]


def retarget_clip(context: RetargetContext, clip: AnimationClip) -> AnimationClip:
    if clip is None:
        raise InputShapeError("Source clip is missing")
    clip.validate(context.options.epsilon)
    if context.options.fps > 0:
        clip = resample_clip(clip, context.options.fps)

    workers = context.options.workers
    if workers > 1 and len(clip.tracks) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(
                executor.map(
                    lambda item: retarget_track(context, item[1], item[0]),
                    enumerate(clip.tracks),
                )
            )
    else:
        results = [retarget_track(context, track, n) for n, track in enumerate(clip.tracks)]

    tracks = [t for t in results if t is not None]
    if not tracks:
        raise NoOutputTracksError(f"No track of clip '{clip.name}' maps onto the target skeleton")

    skipped = len(clip.tracks) - len(tracks)
    print(f"[Retarget] '{clip.name}': {len(tracks)} tracks retargeted, {skipped} skipped")
    return AnimationClip(clip.name + RETARGETED_SUFFIX, clip.duration, tracks)


def retarget_clips(
    context: RetargetContext, clips: Iterable[AnimationClip], progress: bool = False
) -> list[AnimationClip]:
    clips = list(clips)
    iterator = tqdm(clips, desc="Retargeting", unit="clip") if progress else clips
    return [retarget_clip(context, clip) for clip in iterator]
