from __future__ import annotations

import copy
from typing import Optional, Sequence

import numpy as np

from .errors import ErrorKind, ErrorLocation, InputShapeError, PoseWarning
from .math_utils import compose_matrix, normalize_quaternion

# =============================================================================
# Core Data Structures
# =============================================================================


class Bone:
    def __init__(
        self,
        name: str,
        position=None,
        rotation=None,
        scale=None,
        parent_index: int = -1,
    ):
        self.name = name
        self.parent_index = int(parent_index)
        self.position = np.zeros(3) if position is None else np.array(position, dtype=np.float64)
        # Local rest rotation [x, y, z, w]
        self.rotation = (
            np.array([0.0, 0.0, 0.0, 1.0])
            if rotation is None
            else np.array(rotation, dtype=np.float64)
        )
        self.scale = np.ones(3) if scale is None else np.array(scale, dtype=np.float64)

    def local_matrix(self) -> np.ndarray:
        return compose_matrix(self.position, self.rotation, self.scale)

    def __repr__(self) -> str:
        return f"Bone({self.name!r}, parent={self.parent_index})"


def find_effective_root(
    names: Sequence[str], parent_indices: Sequence[int], selected: Optional[str] = None
) -> int:
    """
    Index of the bone that carries root motion.
    A named selection wins when it exists; otherwise the single parentless
    bone, or the first parentless bone when there are several.
    """
    if selected:
        for i, name in enumerate(names):
            if name == selected:
                return i
    roots = [i for i, p in enumerate(parent_indices) if p < 0]
    if roots:
        return roots[0]
    return 0 if len(names) else -1


class Skeleton:
    """
    Flat, parent-before-child list of bones.

    bone_inverses: optional (n, 4, 4) inverse bind matrices in the skeleton root frame.
    root_parent_matrix: optional 4x4 scene transform sitting above the root bone.
    """

    def __init__(
        self,
        bones: Optional[list[Bone]] = None,
        name: str = "Skeleton",
        bone_inverses: Optional[np.ndarray] = None,
        root_parent_matrix: Optional[np.ndarray] = None,
    ):
        self.name = name
        self.bones: list[Bone] = []
        for bone in bones or []:
            self.add_bone(bone)
        self.bone_inverses = (
            None if bone_inverses is None else np.array(bone_inverses, dtype=np.float64)
        )
        self.root_parent_matrix = (
            None if root_parent_matrix is None else np.array(root_parent_matrix, dtype=np.float64)
        )

    def __len__(self) -> int:
        return len(self.bones)

    def __iter__(self):
        return iter(self.bones)

    def add_bone(self, bone: Bone) -> int:
        index = len(self.bones)
        if bone.parent_index >= index:
            raise InputShapeError(
                f"Bone '{bone.name}' lists parent {bone.parent_index}, which does not precede it",
                ErrorLocation(bone=bone.name),
            )
        self.bones.append(bone)
        return index

    @property
    def names(self) -> list[str]:
        return [b.name for b in self.bones]

    @property
    def parent_indices(self) -> np.ndarray:
        return np.array([b.parent_index for b in self.bones], dtype=np.int64)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def find_index(self, name: str) -> int:
        for i, bone in enumerate(self.bones):
            if bone.name == name:
                return i
        return -1

    def get_bone(self, name: str) -> Optional[Bone]:
        index = self.find_index(name)
        return self.bones[index] if index >= 0 else None

    def get_bone_case_insensitive(self, name: str) -> Optional[Bone]:
        if not name:
            return None
        exact = self.get_bone(name)
        if exact is not None:
            return exact

        def clean(s):
            return (
                s.lower()
                .split(":")[-1]
                .replace(".", "")
                .replace("_", "")
                .replace("-", "")
                .replace(" ", "")
            )

        query = clean(name)
        for bone in self.bones:
            if clean(bone.name) == query:
                return bone
        return None

    def root_indices(self) -> list[int]:
        return [i for i, b in enumerate(self.bones) if b.parent_index < 0]

    def children_of(self, index: int) -> list[int]:
        return [i for i, b in enumerate(self.bones) if b.parent_index == index]

    def first_child(self, index: int) -> int:
        for i in range(index + 1, len(self.bones)):
            if self.bones[i].parent_index == index:
                return i
        return -1

    def effective_root(self, selected: Optional[str] = None) -> Optional[str]:
        """Name of the root-motion bone (see find_effective_root)."""
        if selected and self.find_index(selected) < 0:
            bone = self.get_bone_case_insensitive(selected)
            if bone is not None:
                selected = bone.name
            else:
                print(f"[Retarget] WARNING: root bone '{selected}' not found in '{self.name}'")
        index = find_effective_root(self.names, self.parent_indices, selected)
        return self.bones[index].name if index >= 0 else None

    def depth_of(self, index: int) -> int:
        depth = 0
        parent = self.bones[index].parent_index
        while parent >= 0:
            depth += 1
            parent = self.bones[parent].parent_index
        return depth

    def duplicate_names(self) -> list[str]:
        counts: dict[str, int] = {}
        for bone in self.bones:
            counts[bone.name] = counts.get(bone.name, 0) + 1
        return [f"{name} (x{count})" for name, count in counts.items() if count > 1]

    # -------------------------------------------------------------------------
    # Geometry
    # -------------------------------------------------------------------------

    def local_matrices(self) -> np.ndarray:
        return np.array([b.local_matrix() for b in self.bones]).reshape(-1, 4, 4)

    def world_matrices(self) -> np.ndarray:
        """Compose local transforms top-down. Result is in the skeleton root frame."""
        locals_ = self.local_matrices()
        world = np.empty_like(locals_)
        for i, bone in enumerate(self.bones):
            if bone.parent_index >= 0:
                world[i] = world[bone.parent_index] @ locals_[i]
            else:
                world[i] = locals_[i]
        return world

    def world_positions(self) -> np.ndarray:
        return self.world_matrices()[:, :3, 3]

    def bounds(self) -> tuple[np.ndarray, np.ndarray]:
        """Axis-aligned (min, max) of the rest-pose joint positions."""
        if not self.bones:
            return np.zeros(3), np.zeros(3)
        positions = self.world_positions()
        return positions.min(axis=0), positions.max(axis=0)

    def analyze(self) -> dict:
        """Structure summary: counts, roots, depth, symmetry."""
        names = [b.name.lower() for b in self.bones]
        has_left = any("left" in n or "_l" in n for n in names)
        has_right = any("right" in n or "_r" in n for n in names)
        limb_patterns = ("arm", "leg", "thigh", "shoulder")
        return {
            "bone_count": len(self.bones),
            "root_bones": [self.bones[i].name for i in self.root_indices()],
            "max_depth": max((self.depth_of(i) for i in range(len(self.bones))), default=0),
            "has_symmetry": has_left and has_right,
            "limb_count": sum(1 for n in names if any(p in n for p in limb_patterns)),
        }

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def copy(self) -> "Skeleton":
        return copy.deepcopy(self)

    def validate(self, epsilon: float = 1e-6) -> list[PoseWarning]:
        """
        Raise InputShapeError for malformed topology or transforms. Rotations are renormalized.
        Returns the non-fatal findings (several roots without a scene transform above them).
        """
        if not self.bones:
            raise InputShapeError(f"Skeleton '{self.name}' has no bones")
        for i, bone in enumerate(self.bones):
            where = ErrorLocation(bone=bone.name)
            if bone.parent_index >= i:
                raise InputShapeError("Parent must precede child", where)
            if bone.position.shape != (3,) or bone.scale.shape != (3,) or bone.rotation.shape != (4,):
                raise InputShapeError("Bone transform has the wrong shape", where)
            values = np.concatenate([bone.position, bone.rotation, bone.scale])
            if not np.all(np.isfinite(values)):
                raise InputShapeError("Bone transform is not finite", where)
            norm = np.linalg.norm(bone.rotation)
            if norm < epsilon:
                raise InputShapeError("Bone rotation has zero length", where)
            if abs(norm - 1.0) > epsilon:
                bone.rotation = normalize_quaternion(bone.rotation)
        if self.bone_inverses is not None and self.bone_inverses.shape != (len(self.bones), 4, 4):
            raise InputShapeError(
                f"bone_inverses has shape {self.bone_inverses.shape}, expected ({len(self.bones)}, 4, 4)"
            )
        if self.root_parent_matrix is not None and self.root_parent_matrix.shape != (4, 4):
            raise InputShapeError("root_parent_matrix must be 4x4")
        warnings = []
        roots = self.root_indices()
        if len(roots) > 1 and self.root_parent_matrix is None:
            warning = PoseWarning(
                f"'{self.name}' has {len(roots)} root bones; using '{self.bones[roots[0]].name}'",
                self.bones[roots[0]].name,
                ErrorKind.INPUT_SHAPE,
            )
            print(f"[Retarget] WARNING: {warning}")
            warnings.append(warning)
        return warnings
