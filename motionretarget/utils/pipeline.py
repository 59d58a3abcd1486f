from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Optional, Union

from .animation import AnimationClip
from .bind_pose import capture_bind_pose
from .bone_mapping import BoneMap, BoneMapper
from .canonicalize import CanonicalizationResult, canonicalize, restore_clip
from .errors import InputShapeError, MappingEmptyError, PoseWarning
from .pose_normalization import PoseValidation, apply_reference_pose, validate_poses
from .retargeter import RetargetContext, RetargetOptions, build_context, retarget_clips
from .skeleton import Skeleton


@dataclass
class RetargetResult:
    clips: list[AnimationClip]
    context: RetargetContext
    bone_map: BoneMap
    source_canonicalization: Optional[CanonicalizationResult] = None
    target_canonicalization: Optional[CanonicalizationResult] = None
    pose_validation: Optional[PoseValidation] = None
    warnings: list[PoseWarning] = field(default_factory=list)

    @property
    def clip(self) -> AnimationClip:
        return self.clips[0]


def prepare_context(
    source_skeleton: Skeleton,
    target_skeleton: Skeleton,
    bone_map: BoneMap,
    options: RetargetOptions,
    source_root: Optional[str] = None,
    target_root: Optional[str] = None,
) -> RetargetContext:
    """Capture both bind poses per the options and build the retargeting context."""
    source_bind = capture_bind_pose(
        source_skeleton, options.source_pose_mode, options.embed_source_world
    )
    target_bind = capture_bind_pose(
        target_skeleton, options.target_pose_mode, options.embed_target_world
    )
    return build_context(source_bind, target_bind, bone_map, options, source_root, target_root)


def retarget(
    source_skeleton: Skeleton,
    source_clips: Union[AnimationClip, list[AnimationClip]],
    target_skeleton: Skeleton,
    options: Optional[RetargetOptions] = None,
    bone_map: Optional[BoneMap] = None,
    source_root: Optional[str] = None,
    target_root: Optional[str] = None,
    progress: bool = False,
) -> RetargetResult:
    """
    Full pipeline: canonicalize -> normalize rest poses -> map bones -> retarget clips.
    Inputs are never mutated; every stage works on copies.
    """
    if source_skeleton is None or len(source_skeleton) == 0:
        raise InputShapeError("Source skeleton is missing or has no bones")
    if target_skeleton is None or len(target_skeleton) == 0:
        raise InputShapeError("Target skeleton is missing or has no bones")
    if source_clips is None:
        raise InputShapeError("Source clip is missing")
    clips = [source_clips] if isinstance(source_clips, AnimationClip) else list(source_clips)
    if not clips:
        raise InputShapeError("No source clips given")

    options = options or RetargetOptions()
    source = source_skeleton.copy()
    target = target_skeleton.copy()
    warnings: list[PoseWarning] = []
    warnings.extend(source.validate(options.epsilon))
    warnings.extend(target.validate(options.epsilon))
    for skel in (source, target):
        duplicates = skel.duplicate_names()
        if duplicates:
            print(f"[Retarget] WARNING: '{skel.name}' has duplicate bone names: {', '.join(duplicates)}")

    source_canon = target_canon = None
    if options.canonicalize:
        source_canon = canonicalize(source, clips)
        source, clips = source_canon.skeleton, source_canon.clips
        target_canon = canonicalize(target)
        target = target_canon.skeleton

    validation = validate_poses(source, target)
    normalize = options.apply_t_pose or (options.auto_t_pose and not validation.valid)
    effective = dataclasses.replace(options, apply_t_pose=normalize).effective()

    if normalize:
        for skel in (source, target):
            result = apply_reference_pose(skel, effective.reference_pose)
            warnings.extend(result.warnings)

    mapper = BoneMapper()
    mapper.detect_rig_types(source.names, target.names)
    if bone_map is None:
        mapper.auto_map(source.names, target.names, effective.include_fingers)
    else:
        mapper.set_mapping(bone_map)

    src_root = source.effective_root(source_root)
    trg_root = target.effective_root(target_root)
    if effective.preserve_root_motion:
        mapper.ensure_root_mapping(src_root, trg_root)
    if len(mapper.bone_map) == 0:
        raise MappingEmptyError(
            f"No bones could be mapped between '{source.name}' and '{target.name}'"
        )

    context = prepare_context(source, target, mapper.bone_map, effective, src_root, trg_root)
    out = retarget_clips(context, clips, progress=progress)
    if target_canon is not None:
        # Keys go back to the units and axes of the target the caller passed in
        out = [restore_clip(target_canon, c) for c in out]

    return RetargetResult(
        clips=out,
        context=context,
        bone_map=mapper.bone_map.copy(),
        source_canonicalization=source_canon,
        target_canonicalization=target_canon,
        pose_validation=validation,
        warnings=warnings,
    )
