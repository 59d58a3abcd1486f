from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from scipy.spatial.transform import Rotation as R

# Quaternions are stored [x, y, z, w] throughout (scipy / keyframe layout).
# quaternion_multiply(a, b) is the Hamilton product a * b: b is applied first.

EPSILON = 1e-9

AXES = {
    "X": np.array([1.0, 0.0, 0.0]),
    "Y": np.array([0.0, 1.0, 0.0]),
    "Z": np.array([0.0, 0.0, 1.0]),
}


def identity_quaternion() -> np.ndarray:
    return np.array([0.0, 0.0, 0.0, 1.0])


# =============================================================================
# Quaternions
# =============================================================================


def quaternion_multiply(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """Hamilton product of two quaternions [x, y, z, w]. Broadcasts over leading axes."""
    q1 = np.asarray(q1, dtype=np.float64)
    q2 = np.asarray(q2, dtype=np.float64)
    x1, y1, z1, w1 = q1[..., 0], q1[..., 1], q1[..., 2], q1[..., 3]
    x2, y2, z2, w2 = q2[..., 0], q2[..., 1], q2[..., 2], q2[..., 3]
    return np.stack(
        [
            w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
            w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
            w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
            w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
        ],
        axis=-1,
    )


def quaternion_conjugate(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    return q * np.array([-1.0, -1.0, -1.0, 1.0])


def quaternion_inverse(q: np.ndarray) -> np.ndarray:
    """Inverse of quaternion [x, y, z, w]."""
    q = np.asarray(q, dtype=np.float64)
    return quaternion_conjugate(q) / np.sum(q**2, axis=-1, keepdims=True)


def quaternion_norm(q: np.ndarray) -> np.ndarray:
    return np.linalg.norm(np.asarray(q, dtype=np.float64), axis=-1)


def normalize_quaternion(q: np.ndarray) -> np.ndarray:
    """Scale to unit length. Zero quaternions come back as identity."""
    q = np.asarray(q, dtype=np.float64)
    norm = np.linalg.norm(q, axis=-1, keepdims=True)
    safe = np.where(norm > EPSILON, norm, 1.0)
    out = q / safe
    if q.ndim == 1:
        return out if norm[0] > EPSILON else identity_quaternion()
    out[norm[..., 0] <= EPSILON] = identity_quaternion()
    return out


def quaternion_from_axis_angle(axis: np.ndarray, angle: float) -> np.ndarray:
    axis = np.asarray(axis, dtype=np.float64)
    length = np.linalg.norm(axis)
    if length < EPSILON:
        return identity_quaternion()
    return R.from_rotvec(axis / length * angle).as_quat()


def quaternion_from_matrix(mat: np.ndarray) -> np.ndarray:
    """Convert a 4x4 or 3x3 matrix to a [x, y, z, w] quaternion, ignoring scale."""
    m33 = np.array(mat, dtype=np.float64)[:3, :3]
    # Column vectors are the basis axes; strip their lengths before scipy sees them
    for i in range(3):
        norm = np.linalg.norm(m33[:, i])
        if norm > EPSILON:
            m33[:, i] /= norm
    if np.linalg.det(m33) < 0:
        m33[:, 0] = -m33[:, 0]
    return R.from_matrix(m33).as_quat()


def quaternion_to_matrix(q: np.ndarray) -> np.ndarray:
    return R.from_quat(np.asarray(q, dtype=np.float64)).as_matrix()


def rotate_vector(q: np.ndarray, v: np.ndarray) -> np.ndarray:
    return R.from_quat(np.asarray(q, dtype=np.float64)).apply(np.asarray(v, dtype=np.float64))


def align_sign(q: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Return q or -q, whichever lies in the same hemisphere as reference."""
    q = np.asarray(q, dtype=np.float64)
    return -q if np.dot(q, reference) < 0.0 else q


def enforce_quaternion_continuity(quats: np.ndarray) -> np.ndarray:
    """Flip signs along a (k, 4) stream so that adjacent dot products are never negative."""
    quats = np.asarray(quats, dtype=np.float64)
    if len(quats) < 2:
        return quats.copy()
    dots = np.sum(quats[1:] * quats[:-1], axis=1)
    flips = np.where(dots < 0.0, -1.0, 1.0)
    signs = np.concatenate([[1.0], np.cumprod(flips)])
    return quats * signs[:, None]


# =============================================================================
# Vectors
# =============================================================================


def angle_between(v1: np.ndarray, v2: np.ndarray) -> float:
    n1 = np.linalg.norm(v1)
    n2 = np.linalg.norm(v2)
    if n1 < EPSILON or n2 < EPSILON:
        return 0.0
    dot = np.dot(v1, v2) / (n1 * n2)
    return float(np.arccos(np.clip(dot, -1.0, 1.0)))


def solve_rotation_between_vectors(
    v1: np.ndarray, v2: np.ndarray, eps: float = 1e-6
) -> Optional[np.ndarray]:
    """
    Shortest-arc quaternion that carries direction v1 onto v2.
    Returns None when the rotation is undefined (zero-length input or
    antiparallel directions, where the cross product vanishes).
    """
    v1 = np.asarray(v1, dtype=np.float64)
    v2 = np.asarray(v2, dtype=np.float64)
    v1_norm = np.linalg.norm(v1)
    v2_norm = np.linalg.norm(v2)
    if v1_norm < eps or v2_norm < eps:
        return None
    v1 = v1 / v1_norm
    v2 = v2 / v2_norm

    angle = float(np.arccos(np.clip(np.dot(v1, v2), -1.0, 1.0)))
    axis = np.cross(v1, v2)
    axis_len = np.linalg.norm(axis)
    if axis_len < eps:
        if angle < 0.5 * np.pi:
            return identity_quaternion()
        return None
    return quaternion_from_axis_angle(axis / axis_len, angle)


# =============================================================================
# Matrices & Transforms
# =============================================================================


def compose_matrix(p: np.ndarray, q: np.ndarray, s: np.ndarray) -> np.ndarray:
    """Build a 4x4 TRS matrix (column vectors: M @ [x, y, z, 1])."""
    mat = np.eye(4)
    mat[:3, :3] = quaternion_to_matrix(q) * np.asarray(s, dtype=np.float64)[None, :]
    mat[:3, 3] = p
    return mat


def decompose_matrix(mat: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Split a 4x4 matrix into position, quaternion and scale. A mirrored basis folds into scale.x."""
    mat = np.asarray(mat, dtype=np.float64)
    p = mat[:3, 3].copy()
    m33 = mat[:3, :3]
    s = np.linalg.norm(m33, axis=0)
    if np.linalg.det(m33) < 0:
        s[0] = -s[0]
    rot = m33 / np.where(np.abs(s) > EPSILON, s, 1.0)[None, :]
    q = quaternion_from_matrix(rot)
    return p, q, s


def is_identity_matrix(mat: Optional[np.ndarray], tol: float = 1e-9) -> bool:
    if mat is None:
        return True
    return bool(np.allclose(mat, np.eye(4), atol=tol))


@dataclass
class Transform:
    """Position / rotation / scale triple."""

    p: np.ndarray = field(default_factory=lambda: np.zeros(3))
    q: np.ndarray = field(default_factory=identity_quaternion)
    s: np.ndarray = field(default_factory=lambda: np.ones(3))

    @classmethod
    def from_matrix(cls, mat: np.ndarray) -> "Transform":
        p, q, s = decompose_matrix(mat)
        return cls(p, q, s)

    def to_matrix(self) -> np.ndarray:
        return compose_matrix(self.p, self.q, self.s)

    def inverse(self) -> "Transform":
        return Transform.from_matrix(np.linalg.inv(self.to_matrix()))

    def copy(self) -> "Transform":
        return Transform(self.p.copy(), self.q.copy(), self.s.copy())

    def frozen(self) -> "Transform":
        """Copy whose arrays are read-only."""
        out = self.copy()
        for arr in (out.p, out.q, out.s):
            arr.flags.writeable = False
        return out
