from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

import numpy as np

from .errors import InputShapeError
from .math_utils import (
    Transform,
    align_sign,
    is_identity_matrix,
    quaternion_conjugate,
)
from .skeleton import Skeleton, find_effective_root


class BindPoseMode(IntEnum):
    DEFAULT = 0  # stored inverse bind matrices
    CURRENT = 1  # current local transforms


@dataclass(frozen=True)
class EmbeddedWorld:
    """Scene transform above the root, and its inverse."""

    forward: Transform
    inverse: Transform
    forward_matrix: np.ndarray
    inverse_matrix: np.ndarray


@dataclass(frozen=True)
class BindPoseSnapshot:
    names: tuple
    parent_indices: np.ndarray
    locals: tuple
    world: tuple
    world_inverse: tuple
    world_matrices: np.ndarray
    mode: BindPoseMode
    embedded: Optional[EmbeddedWorld] = None

    def __len__(self) -> int:
        return len(self.names)

    def find_index(self, name: str) -> int:
        for i, n in enumerate(self.names):
            if n == name:
                return i
        return -1

    def first_child(self, index: int) -> int:
        for i in range(index + 1, len(self.names)):
            if self.parent_indices[i] == index:
                return i
        return -1

    def effective_root(self, selected: Optional[str] = None) -> int:
        return find_effective_root(self.names, self.parent_indices, selected)

    def world_position(self, index: int) -> np.ndarray:
        return self.world[index].p

    def parent_world_matrix(self, index: int) -> np.ndarray:
        parent = self.parent_indices[index]
        return self.world_matrices[parent] if parent >= 0 else np.eye(4)


def _readonly(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=np.float64, copy=True)
    out.flags.writeable = False
    return out


def capture_bind_pose(
    skeleton: Skeleton,
    mode: BindPoseMode = BindPoseMode.DEFAULT,
    embed_world: bool = False,
) -> BindPoseSnapshot:
    """
    Snapshot a skeleton's rest pose.

    DEFAULT reads the stored inverse bind matrices; CURRENT composes the local
    transforms as they are now (after pose normalization, for instance).
    """
    if skeleton is None or len(skeleton) == 0:
        raise InputShapeError("Cannot capture the bind pose of an empty skeleton")
    mode = BindPoseMode(mode)
    n = len(skeleton)
    parents = skeleton.parent_indices

    if mode == BindPoseMode.DEFAULT and skeleton.bone_inverses is not None:
        if skeleton.bone_inverses.shape != (n, 4, 4):
            raise InputShapeError(
                f"bone_inverses has shape {skeleton.bone_inverses.shape}, expected ({n}, 4, 4)"
            )
        world_mats = np.linalg.inv(skeleton.bone_inverses)
        inverse_mats = np.array(skeleton.bone_inverses, dtype=np.float64)
    else:
        if mode == BindPoseMode.DEFAULT:
            print(f"[BindPose] '{skeleton.name}' has no bone inverses, using local transforms")
        world_mats = skeleton.world_matrices()
        inverse_mats = np.linalg.inv(world_mats)

    locals_, world, world_inv = [], [], []
    for i in range(n):
        parent = parents[i]
        local_mat = np.linalg.inv(world_mats[parent]) @ world_mats[i] if parent >= 0 else world_mats[i]
        locals_.append(Transform.from_matrix(local_mat).frozen())

        w = Transform.from_matrix(world_mats[i])
        inv = Transform.from_matrix(inverse_mats[i])
        inv.q = align_sign(inv.q, quaternion_conjugate(w.q))
        world.append(w.frozen())
        world_inv.append(inv.frozen())

    embedded = None
    if embed_world and not is_identity_matrix(skeleton.root_parent_matrix):
        forward = skeleton.root_parent_matrix
        inverse = np.linalg.inv(forward)
        inv_t = Transform.from_matrix(inverse)
        fwd_t = Transform.from_matrix(forward)
        inv_t.q = align_sign(inv_t.q, quaternion_conjugate(fwd_t.q))
        embedded = EmbeddedWorld(fwd_t.frozen(), inv_t.frozen(), _readonly(forward), _readonly(inverse))
        print(f"[BindPose] '{skeleton.name}' embeds its root-parent transform")

    parent_arr = np.array(parents, dtype=np.int64)
    parent_arr.flags.writeable = False
    return BindPoseSnapshot(
        names=tuple(skeleton.names),
        parent_indices=parent_arr,
        locals=tuple(locals_),
        world=tuple(world),
        world_inverse=tuple(world_inv),
        world_matrices=_readonly(world_mats),
        mode=mode,
        embedded=embedded,
    )
