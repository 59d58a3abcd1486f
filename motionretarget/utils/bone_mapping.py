from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Iterable, Optional

import numpy as np

from .errors import ErrorLocation, MappingConflictError
from .presets import (
    BASE_BONE_ROLES,
    FINGER_BONE_ROLES,
    FINGER_TOKENS,
    ROOT_ROLE,
    ROOT_ROLE_PATTERNS,
)

RIG_TYPES = ("mixamo", "ue5", "unity", "humanoid", "custom")

# =============================================================================
# Name matching
# =============================================================================


def normalize_bone_name(name: str) -> str:
    """Normalize bone name by removing namespaces, prefixes and separators"""
    name_lower = name.lower()

    # Remove namespaces (mixamorig:Hips -> hips)
    if ":" in name_lower:
        name_lower = name_lower.split(":")[-1]

    prefixes = [
        "bip01_",
        "bip001_",
        "mixamorig_",
    ]
    for prefix in prefixes:
        if name_lower.startswith(prefix):
            name_lower = name_lower[len(prefix) :]

    for sep in ("_", ".", "-", " "):
        name_lower = name_lower.replace(sep, "")

    return name_lower


def is_finger_name(normalized: str) -> bool:
    return any(token in normalized for token in FINGER_TOKENS)


def find_bone(bone_names: Iterable[str], patterns: Iterable[str]) -> Optional[str]:
    """
    First bone matching any pattern: exact normalized equality first, then substring.
    A pattern that names no finger never captures a finger bone (hand -> lefthandindex1).
    """
    bones = [(name, normalize_bone_name(name)) for name in bone_names]
    cleaned = [normalize_bone_name(p) for p in patterns]

    for name, norm in bones:
        for pattern in cleaned:
            if norm == pattern:
                return name

    for name, norm in bones:
        for pattern in cleaned:
            if pattern and pattern in norm:
                if is_finger_name(norm) and not is_finger_name(pattern):
                    continue
                return name

    return None


def detect_rig_type(bone_names: Iterable[str]) -> str:
    """Classify a rig as 'mixamo', 'ue5', 'unity', 'humanoid' or 'custom'."""
    names = list(bone_names)
    if not names:
        return "custom"

    if any("mixamorig:" in n.lower() for n in names):
        return "mixamo"

    joined = "|".join(n.lower() for n in names)

    if "pelvis" in joined and "spine_01" in joined and ("clavicle_l" in joined or "clavicle_r" in joined):
        return "ue5"

    if (
        "hips" in joined
        and "spine" in joined
        and "chest" in joined
        and ("leftupperarm" in joined or "left upper arm" in joined)
    ):
        return "unity"

    has_hips = "hips" in joined or "pelvis" in joined
    has_spine = "spine" in joined
    has_head = "head" in joined or "neck" in joined
    has_arms = "arm" in joined or "shoulder" in joined
    has_legs = "leg" in joined or "thigh" in joined
    if has_hips and has_spine and has_head and has_arms and has_legs:
        return "humanoid"

    return "custom"


# =============================================================================
# Bone map
# =============================================================================


class BoneMap:
    """
    Ordered, injective {source bone name: target bone name}.
    """

    def __init__(
        self,
        mapping: Optional[dict] = None,
        source_rig_type: str = "unknown",
        target_rig_type: str = "unknown",
        confidence: float = 0.0,
        name: str = "",
        created_at: Optional[str] = None,
    ):
        self._mapping: dict[str, str] = {}
        self.source_rig_type = source_rig_type
        self.target_rig_type = target_rig_type
        self.confidence = float(confidence)
        self.name = name
        self.created_at = created_at or datetime.now(timezone.utc).isoformat()
        for source, target in (mapping or {}).items():
            self.add(source, target)

    def __len__(self) -> int:
        return len(self._mapping)

    def __contains__(self, source: str) -> bool:
        return source in self._mapping

    def __getitem__(self, source: str) -> str:
        return self._mapping[source]

    def __iter__(self):
        return iter(self._mapping)

    def items(self):
        return self._mapping.items()

    def get(self, source: str, default=None):
        return self._mapping.get(source, default)

    @property
    def mapping(self) -> dict[str, str]:
        return dict(self._mapping)

    def source_of(self, target: str) -> Optional[str]:
        for source, mapped in self._mapping.items():
            if mapped == target:
                return source
        return None

    def add(self, source: str, target: str):
        """Map source -> target. A target owned by another source raises; the existing pair stays."""
        if not source or not target:
            raise ValueError("Both source and target bones must be specified")
        owner = self.source_of(target)
        if owner is not None and owner != source:
            raise MappingConflictError(
                f"Target bone '{target}' is already mapped from '{owner}', cannot map '{source}'",
                ErrorLocation(bone=target),
            )
        self._mapping[source] = target

    def remove(self, source: str) -> bool:
        if source in self._mapping:
            del self._mapping[source]
            return True
        return False

    def clear(self):
        self._mapping.clear()
        self.confidence = 0.0

    def copy(self) -> "BoneMap":
        return BoneMap.from_dict(self.to_dict())

    def validate(self, source_names: Iterable[str], target_names: Iterable[str]):
        """Every pair must reference bones that exist on both skeletons."""
        source_set = set(source_names)
        target_set = set(target_names)
        for source, target in self._mapping.items():
            if source not in source_set:
                raise MappingConflictError(
                    f"Mapped source bone '{source}' does not exist in the source skeleton",
                    ErrorLocation(bone=source),
                )
            if target not in target_set:
                raise MappingConflictError(
                    f"Mapped target bone '{target}' does not exist in the target skeleton",
                    ErrorLocation(bone=target),
                )

    def resolve(self, source_names: list[str], target_names: list[str]) -> np.ndarray:
        """Index form: result[i] is the target index for source bone i, or -1."""
        self.validate(source_names, target_names)
        source_index = {}
        for i, name in enumerate(source_names):
            source_index.setdefault(name, i)
        target_index = {}
        for j, name in enumerate(target_names):
            target_index.setdefault(name, j)

        index_map = np.full(len(source_names), -1, dtype=np.int64)
        claimed: dict[int, str] = {}
        for source, target in self._mapping.items():
            j = target_index[target]
            if j in claimed:
                raise MappingConflictError(
                    f"Target bone '{target}' receives both '{claimed[j]}' and '{source}'",
                    ErrorLocation(bone=target),
                )
            claimed[j] = source
            index_map[source_index[source]] = j
        return index_map

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "sourceRigType": self.source_rig_type,
            "targetRigType": self.target_rig_type,
            "mapping": dict(self._mapping),
            "confidence": self.confidence,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BoneMap":
        mapping = data.get("mapping")
        if not isinstance(mapping, dict):
            raise ValueError("Bone map is missing its 'mapping' object")
        return cls(
            mapping=mapping,
            source_rig_type=data.get("sourceRigType", "unknown"),
            target_rig_type=data.get("targetRigType", "unknown"),
            confidence=data.get("confidence", 0.0),
            name=data.get("name", ""),
            created_at=data.get("createdAt"),
        )

    def __repr__(self) -> str:
        return f"BoneMap({self.name!r}, pairs={len(self)}, confidence={self.confidence:.2f})"


def generate_automatic_mapping(
    source_bones: list[str], target_bones: list[str], include_fingers: bool = False
) -> BoneMap:
    """
    Role-table mapping. Root first, then body roles, then (optionally) fingers,
    so that broad patterns cannot steal finger bones. Each target is claimed once.
    """
    roles = [(ROOT_ROLE, ROOT_ROLE_PATTERNS)] + list(BASE_BONE_ROLES.items())
    if include_fingers:
        print("[BoneMap] Including finger bones in automatic mapping")
        roles += list(FINGER_BONE_ROLES.items())

    bone_map = BoneMap(
        source_rig_type=detect_rig_type(source_bones),
        target_rig_type=detect_rig_type(target_bones),
    )
    mapped_base = 0
    for role, patterns in roles:
        source = find_bone(source_bones, patterns)
        target = find_bone(target_bones, patterns)
        if not source or not target:
            continue
        if bone_map.source_of(target) is not None:
            print(f"[BoneMap] Skipping {role}: target '{target}' already mapped")
            continue
        if source in bone_map:
            print(f"[BoneMap] Skipping {role}: source '{source}' already mapped")
            continue
        bone_map.add(source, target)
        if role in BASE_BONE_ROLES:
            mapped_base += 1

    bone_map.confidence = mapped_base / len(BASE_BONE_ROLES)
    print(
        f"[BoneMap] Auto-mapped {len(bone_map)} bones "
        f"({bone_map.source_rig_type} -> {bone_map.target_rig_type}), "
        f"confidence {bone_map.confidence:.0%}"
    )
    return bone_map


class BoneMapper:
    """Stateful editor around a BoneMap: auto-mapping, manual edits, root guarantee."""

    def __init__(self):
        self.bone_map = BoneMap()
        self.source_rig_type = "unknown"
        self.target_rig_type = "unknown"

    def detect_rig_types(self, source_bones: list[str], target_bones: list[str]):
        self.source_rig_type = detect_rig_type(source_bones)
        self.target_rig_type = detect_rig_type(target_bones)
        self.bone_map.source_rig_type = self.source_rig_type
        self.bone_map.target_rig_type = self.target_rig_type
        return self.source_rig_type, self.target_rig_type

    def auto_map(
        self, source_bones: list[str], target_bones: list[str], include_fingers: bool = False
    ) -> BoneMap:
        self.bone_map = generate_automatic_mapping(source_bones, target_bones, include_fingers)
        self.source_rig_type = self.bone_map.source_rig_type
        self.target_rig_type = self.bone_map.target_rig_type
        return self.bone_map

    def add(self, source: str, target: str):
        self.bone_map.add(source, target)

    def remove(self, source: str) -> bool:
        return self.bone_map.remove(source)

    def clear(self):
        self.bone_map.clear()

    def set_mapping(self, mapping, confidence: float = 0.0):
        """Replace the current map with a dict or a BoneMap (copied)."""
        if isinstance(mapping, BoneMap):
            self.bone_map = mapping.copy()
        else:
            self.bone_map = BoneMap(mapping, confidence=confidence)
        self.bone_map.source_rig_type = self.source_rig_type
        self.bone_map.target_rig_type = self.target_rig_type

    def get_mapping(self) -> dict[str, str]:
        return self.bone_map.mapping

    def info(self) -> dict:
        return {
            "source_rig_type": self.source_rig_type,
            "target_rig_type": self.target_rig_type,
            "mapping_count": len(self.bone_map),
            "confidence": self.bone_map.confidence,
        }

    def ensure_root_mapping(self, source_root: Optional[str], target_root: Optional[str]) -> bool:
        """
        Force source_root -> target_root so root motion has somewhere to go.
        Any other source claiming target_root loses its pair. Returns True if the map changed.
        """
        if not source_root or not target_root:
            return False
        if self.bone_map.get(source_root) == target_root:
            return False
        owner = self.bone_map.source_of(target_root)
        if owner is not None and owner != source_root:
            print(
                f"[BoneMap] WARNING: '{owner}' -> '{target_root}' replaced by root pair "
                f"'{source_root}' -> '{target_root}'"
            )
            self.bone_map.remove(owner)
        previous = self.bone_map.get(source_root)
        if previous is not None:
            print(f"[BoneMap] WARNING: root '{source_root}' remapped from '{previous}' to '{target_root}'")
        self.bone_map.add(source_root, target_root)
        print(f"[BoneMap] Root mapping: {source_root} -> {target_root}")
        return True


# =============================================================================
# Persistence
# =============================================================================


def save_bone_map(bone_map: BoneMap, filepath: str):
    directory = os.path.dirname(os.path.abspath(filepath))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".bonemap-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(bone_map.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, filepath)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def load_bone_map(filepath: str) -> BoneMap:
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Bone map not found: {filepath}")
    with open(filepath, "r", encoding="utf-8") as f:
        data = json.load(f)
    return BoneMap.from_dict(data)


class BoneMapStore:
    """Directory of named bone maps, one '<name>.json' file each."""

    def __init__(self, directory: str):
        self.directory = directory

    def _path(self, name: str) -> str:
        if not name or os.sep in name or (os.altsep and os.altsep in name) or name in (".", ".."):
            raise ValueError(f"Invalid bone map name: {name!r}")
        return os.path.join(self.directory, f"{name}.json")

    def list(self) -> list[str]:
        if not os.path.isdir(self.directory):
            return []
        return sorted(
            f[: -len(".json")]
            for f in os.listdir(self.directory)
            if f.endswith(".json") and not f.startswith(".")
        )

    def exists(self, name: str) -> bool:
        return os.path.exists(self._path(name))

    def load(self, name: str) -> BoneMap:
        return load_bone_map(self._path(name))

    def save(self, bone_map: BoneMap, name: Optional[str] = None) -> str:
        name = name or bone_map.name
        path = self._path(name)
        stored = bone_map.copy()
        stored.name = name
        save_bone_map(stored, path)
        print(f"[BoneMap] Saved '{name}' ({len(bone_map)} pairs) to {path}")
        return path

    def delete(self, name: str) -> bool:
        path = self._path(name)
        if os.path.exists(path):
            os.remove(path)
            return True
        return False
