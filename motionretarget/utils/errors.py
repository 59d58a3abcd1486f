from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INPUT_SHAPE = "InputShape"
    MAPPING_EMPTY = "MappingEmpty"
    MAPPING_CONFLICT = "MappingConflict"
    POSE_DEGENERATE = "PoseDegenerate"
    NUMERIC = "Numeric"
    NO_OUTPUT_TRACKS = "NoOutputTracks"


@dataclass(frozen=True)
class ErrorLocation:
    bone: Optional[str] = None
    track_index: Optional[int] = None
    key_index: Optional[int] = None

    def __str__(self) -> str:
        parts = []
        if self.bone is not None:
            parts.append(f"bone={self.bone}")
        if self.track_index is not None:
            parts.append(f"track={self.track_index}")
        if self.key_index is not None:
            parts.append(f"key={self.key_index}")
        return ", ".join(parts)


class RetargetError(Exception):
    """Base class for every refusal raised by the retargeting core."""

    kind = ErrorKind.INPUT_SHAPE

    def __init__(self, message: str, location: Optional[ErrorLocation] = None):
        super().__init__(message)
        self.message = message
        self.location = location or ErrorLocation()

    def __str__(self) -> str:
        where = str(self.location)
        if where:
            return f"{self.kind.value}: {self.message} ({where})"
        return f"{self.kind.value}: {self.message}"


class InputShapeError(RetargetError):
    kind = ErrorKind.INPUT_SHAPE


class MappingEmptyError(RetargetError):
    kind = ErrorKind.MAPPING_EMPTY


class MappingConflictError(RetargetError):
    kind = ErrorKind.MAPPING_CONFLICT


class NumericError(RetargetError):
    kind = ErrorKind.NUMERIC


class NoOutputTracksError(RetargetError):
    kind = ErrorKind.NO_OUTPUT_TRACKS


@dataclass(frozen=True)
class PoseWarning:
    """Non-fatal finding: a joint left untouched by pose normalization, or an ambiguous rig root."""

    message: str
    bone: Optional[str] = None
    kind: ErrorKind = ErrorKind.POSE_DEGENERATE

    def __str__(self) -> str:
        if self.bone:
            return f"{self.kind.value}: {self.message} (bone={self.bone})"
        return f"{self.kind.value}: {self.message}"
