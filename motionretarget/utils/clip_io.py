"""
JSON / NPZ interchange for skeletons and clips.

Skeleton JSON:
    {"name": ..., "bones": [{"name", "parent", "position", "rotation", "scale"}],
     "boneInverses": [[16 floats, column-major]...]?, "rootParentMatrix": [16 floats]?}
Clip JSON:
    {"name": ..., "duration": ..., "tracks": [{"name": "Bone.quaternion", "times", "values",
     "interpolation"}]}  or  {"clips": [clip, ...]}
"""

from __future__ import annotations

import json
import os
from typing import Iterable, Union

import numpy as np

from .animation import AnimationClip, Interpolation, KeyframeTrack
from .errors import InputShapeError
from .skeleton import Bone, Skeleton

SUPPORTED_EXTENSIONS = (".json", ".npz")


def _extension(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(f"Unsupported file type '{ext}' for {path} (expected .json or .npz)")
    return ext


def _matrix_from_list(values) -> np.ndarray:
    # Flat 16-value matrices are stored column-major.
    arr = np.asarray(values, dtype=np.float64)
    if arr.shape == (16,):
        return arr.reshape(4, 4).T
    return arr.reshape(4, 4)


def _write_json(data: dict, path: str):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def _read_json(path: str) -> dict:
    if not os.path.exists(path):
        raise FileNotFoundError(f"File not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# Skeleton
# =============================================================================


def skeleton_from_dict(data: dict) -> Skeleton:
    if "bones" not in data:
        raise InputShapeError("Skeleton data has no 'bones' list")
    bones = []
    for entry in data["bones"]:
        bones.append(
            Bone(
                entry["name"],
                position=entry.get("position"),
                rotation=entry.get("rotation"),
                scale=entry.get("scale"),
                parent_index=entry.get("parent", -1),
            )
        )
    inverses = data.get("boneInverses")
    root_parent = data.get("rootParentMatrix")
    return Skeleton(
        bones,
        name=data.get("name", "Skeleton"),
        bone_inverses=None if inverses is None else np.array([_matrix_from_list(m) for m in inverses]),
        root_parent_matrix=None if root_parent is None else _matrix_from_list(root_parent),
    )


def skeleton_to_dict(skeleton: Skeleton) -> dict:
    data = {
        "name": skeleton.name,
        "bones": [
            {
                "name": b.name,
                "parent": int(b.parent_index),
                "position": b.position.tolist(),
                "rotation": b.rotation.tolist(),
                "scale": b.scale.tolist(),
            }
            for b in skeleton.bones
        ],
    }
    if skeleton.bone_inverses is not None:
        data["boneInverses"] = [m.T.reshape(-1).tolist() for m in skeleton.bone_inverses]
    if skeleton.root_parent_matrix is not None:
        data["rootParentMatrix"] = skeleton.root_parent_matrix.T.reshape(-1).tolist()
    return data


def load_skeleton(path: str) -> Skeleton:
    if _extension(path) == ".json":
        skeleton = skeleton_from_dict(_read_json(path))
    else:
        with np.load(path, allow_pickle=False) as data:
            skeleton = _skeleton_from_npz(data, path)
    print(f"[IO] Loaded skeleton '{skeleton.name}' ({len(skeleton)} bones) from {path}")
    return skeleton


def _skeleton_from_npz(data, path: str) -> Skeleton:
    names = [str(n) for n in data["names"]]
    parents = data["parents"]
    bones = [
        Bone(
            names[i],
            position=data["positions"][i],
            rotation=data["rotations"][i],
            scale=data["scales"][i] if "scales" in data else None,
            parent_index=int(parents[i]),
        )
        for i in range(len(names))
    ]
    return Skeleton(
        bones,
        name=str(data["name"]) if "name" in data else os.path.splitext(os.path.basename(path))[0],
        bone_inverses=data["bone_inverses"] if "bone_inverses" in data else None,
        root_parent_matrix=data["root_parent_matrix"] if "root_parent_matrix" in data else None,
    )


def save_skeleton(skeleton: Skeleton, path: str):
    if _extension(path) == ".json":
        _write_json(skeleton_to_dict(skeleton), path)
        return
    arrays = {
        "name": np.array(skeleton.name),
        "names": np.array(skeleton.names),
        "parents": skeleton.parent_indices,
        "positions": np.array([b.position for b in skeleton.bones]),
        "rotations": np.array([b.rotation for b in skeleton.bones]),
        "scales": np.array([b.scale for b in skeleton.bones]),
    }
    if skeleton.bone_inverses is not None:
        arrays["bone_inverses"] = skeleton.bone_inverses
    if skeleton.root_parent_matrix is not None:
        arrays["root_parent_matrix"] = skeleton.root_parent_matrix
    np.savez(path, **arrays)


# =============================================================================
# Clips
# =============================================================================


def clip_from_dict(data: dict) -> AnimationClip:
    tracks = [
        KeyframeTrack.from_name(
            t["name"],
            t["times"],
            t["values"],
            t.get("interpolation", Interpolation.LINEAR.value),
        )
        for t in data.get("tracks", [])
    ]
    return AnimationClip(data.get("name", "clip"), data.get("duration"), tracks)


def clip_to_dict(clip: AnimationClip) -> dict:
    return {
        "name": clip.name,
        "duration": clip.duration,
        "tracks": [
            {
                "name": t.name,
                "times": t.times.tolist(),
                "values": t.values.tolist(),
                "interpolation": t.interpolation.value,
            }
            for t in clip.tracks
        ],
    }


def _clips_from_npz(data) -> list[AnimationClip]:
    clip_names = [str(n) for n in data["clip_names"]]
    durations = data["clip_durations"]
    clips = [AnimationClip(name, float(durations[k]), []) for k, name in enumerate(clip_names)]

    times, time_offsets = data["times"], data["time_offsets"]
    values, value_offsets = data["values"], data["value_offsets"]
    for n, track_name in enumerate(data["track_names"]):
        track = KeyframeTrack.from_name(
            str(track_name),
            times[time_offsets[n] : time_offsets[n + 1]],
            values[value_offsets[n] : value_offsets[n + 1]],
            str(data["track_interpolation"][n]),
        )
        clips[int(data["track_clip"][n])].tracks.append(track)
    return clips


def _clips_to_npz(clips: list[AnimationClip], path: str):
    tracks = [(k, t) for k, clip in enumerate(clips) for t in clip.tracks]
    time_offsets = np.cumsum([0] + [len(t.times) for _, t in tracks])
    value_offsets = np.cumsum([0] + [len(t.values) for _, t in tracks])
    np.savez(
        path,
        clip_names=np.array([c.name for c in clips]),
        clip_durations=np.array([c.duration for c in clips], dtype=np.float64),
        track_names=np.array([t.name for _, t in tracks]),
        track_interpolation=np.array([t.interpolation.value for _, t in tracks]),
        track_clip=np.array([k for k, _ in tracks], dtype=np.int64),
        times=np.concatenate([t.times for _, t in tracks]) if tracks else np.zeros(0),
        time_offsets=time_offsets,
        values=np.concatenate([t.values for _, t in tracks]) if tracks else np.zeros(0),
        value_offsets=value_offsets,
    )


def load_clips(path: str) -> list[AnimationClip]:
    if _extension(path) == ".json":
        data = _read_json(path)
        entries = data["clips"] if "clips" in data else [data]
        clips = [clip_from_dict(entry) for entry in entries]
    else:
        with np.load(path, allow_pickle=False) as data:
            clips = _clips_from_npz(data)
    print(f"[IO] Loaded {len(clips)} clip(s) from {path}")
    return clips


def load_clip(path: str) -> AnimationClip:
    clips = load_clips(path)
    if not clips:
        raise InputShapeError(f"No clip found in {path}")
    return clips[0]


def save_clips(clips: Union[AnimationClip, Iterable[AnimationClip]], path: str):
    clips = [clips] if isinstance(clips, AnimationClip) else list(clips)
    if _extension(path) == ".json":
        if len(clips) == 1:
            _write_json(clip_to_dict(clips[0]), path)
        else:
            _write_json({"clips": [clip_to_dict(c) for c in clips]}, path)
    else:
        _clips_to_npz(clips, path)
    print(f"[IO] Saved {len(clips)} clip(s) to {path}")


def save_clip(clip: AnimationClip, path: str):
    save_clips([clip], path)
