"""
Rigid-body poses.

Pose is (translation, unit quaternion xyzw). Rotation math goes through
scipy.spatial.transform so composition, inversion and slerp all share one
convention (scalar-last quaternions, same as ROS).
"""

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation, Slerp

_IDENTITY_QUAT = np.array([0.0, 0.0, 0.0, 1.0])


def normalize_quaternion(q) -> np.ndarray:
    """Unit quaternion (xyzw). Zero or non-finite input becomes identity."""
    q = np.asarray(q, dtype=np.float64).reshape(4)
    norm = np.linalg.norm(q)
    if not np.isfinite(norm) or norm < 1e-12:
        return _IDENTITY_QUAT.copy()
    return q / norm


@dataclass(frozen=True, eq=False)
class Pose:
    translation: np.ndarray   # (3,) float64
    rotation: np.ndarray      # (4,) float64, xyzw, unit norm

    @classmethod
    def identity(cls) -> "Pose":
        return cls(np.zeros(3), _IDENTITY_QUAT.copy())

    @classmethod
    def from_xyz_quat(cls, xyz, quat) -> "Pose":
        return cls(np.asarray(xyz, dtype=np.float64).reshape(3), normalize_quaternion(quat))

    @property
    def rot(self) -> Rotation:
        return Rotation.from_quat(self.rotation)

    def compose(self, other: "Pose") -> "Pose":
        """self * other: apply ``other`` first, then ``self``."""
        r = self.rot
        return Pose(
            self.translation + r.apply(other.translation),
            normalize_quaternion((r * other.rot).as_quat()),
        )

    def inverse(self) -> "Pose":
        r_inv = self.rot.inv()
        return Pose(-r_inv.apply(self.translation), normalize_quaternion(r_inv.as_quat()))

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Map an (N, 3) array from this pose's child frame into its parent frame."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return points
        return self.rot.apply(points) + self.translation

    def allclose(self, other: "Pose", atol: float = 1e-9) -> bool:
        same_rot = (np.allclose(self.rotation, other.rotation, atol=atol)
                    or np.allclose(self.rotation, -other.rotation, atol=atol))
        return bool(np.allclose(self.translation, other.translation, atol=atol) and same_rot)

    def __repr__(self):
        t = ", ".join(f"{v:.4f}" for v in self.translation)
        q = ", ".join(f"{v:.4f}" for v in self.rotation)
        return f"Pose(t=[{t}], q=[{q}])"


def interpolate(a: Pose, b: Pose, alpha: float) -> Pose:
    """Linear translation, spherical rotation; alpha in [0, 1]."""
    alpha = float(min(max(alpha, 0.0), 1.0))
    translation = (1.0 - alpha) * a.translation + alpha * b.translation
    slerp = Slerp([0.0, 1.0], Rotation.from_quat(np.vstack([a.rotation, b.rotation])))
    return Pose(translation, normalize_quaternion(slerp([alpha]).as_quat()[0]))
