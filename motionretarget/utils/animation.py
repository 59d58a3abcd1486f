from __future__ import annotations

from enum import Enum
from typing import Optional

import numpy as np
from scipy.spatial.transform import Rotation as R
from scipy.spatial.transform import Slerp

from .errors import ErrorLocation, InputShapeError
from .math_utils import enforce_quaternion_continuity


class TrackProperty(str, Enum):
    ROTATION = "rotation"
    TRANSLATION = "translation"
    SCALE = "scale"

    @property
    def stride(self) -> int:
        return 4 if self is TrackProperty.ROTATION else 3


class Interpolation(str, Enum):
    STEP = "step"
    LINEAR = "linear"
    CUBIC = "cubic"


# Track-name suffixes, including the three.js spellings.
PROPERTY_SUFFIXES = {
    "rotation": TrackProperty.ROTATION,
    "quaternion": TrackProperty.ROTATION,
    "translation": TrackProperty.TRANSLATION,
    "position": TrackProperty.TRANSLATION,
    "scale": TrackProperty.SCALE,
}


class KeyframeTrack:
    def __init__(
        self,
        bone: str,
        property,
        times,
        values,
        interpolation=Interpolation.LINEAR,
    ):
        self.bone = bone
        self.property = TrackProperty(property)
        self.times = np.asarray(times, dtype=np.float64).reshape(-1)
        self.values = np.asarray(values, dtype=np.float64).reshape(-1)
        self.interpolation = Interpolation(interpolation)

    @staticmethod
    def parse_name(name: str) -> tuple[str, TrackProperty]:
        """Split 'Bone.quaternion' into ('Bone', ROTATION). Bone names may contain dots."""
        bone, sep, suffix = name.rpartition(".")
        if not sep or not bone:
            raise InputShapeError(f"Track name '{name}' has no property suffix")
        prop = PROPERTY_SUFFIXES.get(suffix.lower())
        if prop is None:
            raise InputShapeError(f"Track name '{name}' has unknown property '{suffix}'")
        return bone, prop

    @classmethod
    def from_name(cls, name: str, times, values, interpolation=Interpolation.LINEAR) -> "KeyframeTrack":
        bone, prop = cls.parse_name(name)
        return cls(bone, prop, times, values, interpolation)

    @property
    def name(self) -> str:
        return f"{self.bone}.{self.property.value}"

    @property
    def stride(self) -> int:
        return self.property.stride

    @property
    def key_count(self) -> int:
        return len(self.times)

    def keys(self) -> np.ndarray:
        """Values as a (key_count, stride) view."""
        return self.values.reshape(-1, self.stride)

    def validate(self, track_index: Optional[int] = None):
        where = ErrorLocation(bone=self.bone, track_index=track_index)
        if self.key_count == 0:
            raise InputShapeError(f"Track '{self.name}' has no keyframes", where)
        if len(self.values) != self.key_count * self.stride:
            raise InputShapeError(
                f"Track '{self.name}' has {len(self.values)} values for "
                f"{self.key_count} keys of stride {self.stride}",
                where,
            )
        if not np.all(np.isfinite(self.times)):
            raise InputShapeError(f"Track '{self.name}' has non-finite times", where)
        if self.times[0] < 0:
            raise InputShapeError(f"Track '{self.name}' starts at negative time {self.times[0]}", where)
        if np.any(np.diff(self.times) <= 0):
            raise InputShapeError(f"Track '{self.name}' times are not strictly increasing", where)

    def sample_many(self, times) -> np.ndarray:
        """Evaluate the track at each of `times` (clamped to the key range). Cubic falls back to linear."""
        times = np.asarray(times, dtype=np.float64).reshape(-1)
        keys = self.keys()
        if self.key_count == 1:
            return np.repeat(keys[:1], len(times), axis=0)

        if self.interpolation is Interpolation.STEP:
            index = np.searchsorted(self.times, times, side="right") - 1
            return keys[np.clip(index, 0, self.key_count - 1)].copy()

        out = np.empty((len(times), self.stride))
        before = times <= self.times[0]
        after = times >= self.times[-1]
        inner = ~(before | after)
        out[before] = keys[0]
        out[after] = keys[-1]
        if np.any(inner):
            if self.property is TrackProperty.ROTATION:
                out[inner] = Slerp(self.times, R.from_quat(keys))(times[inner]).as_quat()
            else:
                out[inner] = np.stack(
                    [np.interp(times[inner], self.times, keys[:, c]) for c in range(self.stride)], axis=1
                )
        return out

    def sample(self, t: float) -> np.ndarray:
        return self.sample_many([t])[0]

    def resample(self, times) -> "KeyframeTrack":
        times = np.asarray(times, dtype=np.float64).reshape(-1)
        values = self.sample_many(times)
        if self.property is TrackProperty.ROTATION:
            values = enforce_quaternion_continuity(values)
        return KeyframeTrack(self.bone, self.property, times, values.reshape(-1), self.interpolation)

    def copy(self) -> "KeyframeTrack":
        return KeyframeTrack(
            self.bone, self.property, self.times.copy(), self.values.copy(), self.interpolation
        )

    def __repr__(self) -> str:
        return f"KeyframeTrack({self.name!r}, keys={self.key_count})"


class AnimationClip:
    def __init__(self, name: str, duration: Optional[float] = None, tracks=None):
        self.name = name
        self.tracks: list[KeyframeTrack] = list(tracks or [])
        if duration is None:
            duration = max((float(t.times[-1]) for t in self.tracks if t.key_count), default=0.0)
        self.duration = float(duration)

    def validate(self, epsilon: float = 1e-6):
        if not self.tracks:
            raise InputShapeError(f"Clip '{self.name}' has no tracks")
        for i, track in enumerate(self.tracks):
            track.validate(track_index=i)
            if track.times[-1] > self.duration + epsilon:
                raise InputShapeError(
                    f"Track '{track.name}' runs past the clip duration {self.duration}",
                    ErrorLocation(bone=track.bone, track_index=i),
                )

    def bone_names(self) -> list[str]:
        seen = []
        for track in self.tracks:
            if track.bone not in seen:
                seen.append(track.bone)
        return seen

    def copy(self) -> "AnimationClip":
        return AnimationClip(self.name, self.duration, [t.copy() for t in self.tracks])

    def __repr__(self) -> str:
        return f"AnimationClip({self.name!r}, duration={self.duration}, tracks={len(self.tracks)})"


def frame_times(duration: float, fps: float) -> np.ndarray:
    """0, 1/fps, ... up to and including the duration."""
    if not fps > 0:
        raise ValueError(f"fps must be positive, got {fps}")
    frame_count = int(np.ceil(duration * fps - 1e-9)) + 1
    times = np.arange(frame_count, dtype=np.float64) / fps
    times[-1] = min(times[-1], duration) if frame_count > 1 else 0.0
    return times


def resample_clip(clip: AnimationClip, fps: float) -> AnimationClip:
    """Bake every track of the clip onto a shared fixed-rate frame grid."""
    clip.validate()
    times = frame_times(clip.duration, fps)
    tracks = [track.resample(times) for track in clip.tracks]
    print(f"[Animation] '{clip.name}' resampled to {len(times)} frames at {fps:g} fps")
    return AnimationClip(clip.name, clip.duration, tracks)
