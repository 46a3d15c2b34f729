"""
Quaternion and frame algebra for omnigraph.

Frames are 7-vectors ``F = [tx, ty, tz, qw, qx, qy, qz]`` holding the
position of the frame in its parent and a scalar-first quaternion. The
rotation matrix is evaluated with the polynomial form

    R(q) = (a² − u·u) I + 2 u uᵀ + 2 a [u]ₓ,      q = (a, u)

which is exactly orthonormal for unit quaternions and differentiates in
closed form for any q. Every Jacobian below is the derivative of that same
expression, so analytic and numerical derivatives agree even when the
quaternion drifts slightly off the unit sphere between normalizations.

Key Functions
-------------
quat_to_rot(q)
    3×3 rotation matrix of a quaternion.

quat_mul(p, q), quat_conj(q), quat_normalize(q)
    Hamilton product, conjugate, normalization.

rotvec_to_quat(w), quat_to_rotvec(q)
    Exponential / logarithm between rotation vectors and quaternions.

to_frame(F, p, jacobians=False)
    Express a world point in frame F: ``Rᵀ (p − t)``. With ``jacobians``
    also returns the 3×7 derivative w.r.t. F and the 3×3 derivative
    w.r.t. p.

from_frame(F, p)
    Inverse of `to_frame`: ``R p + t``.

compose_frames(F, G), relative_frame(F, G)
    ``F ∘ G`` and ``F⁻¹ ∘ G``.

Utilities
---------
hat(ω)
    Converts a 3-vector to its skew-symmetric matrix.

All functions are written with `jax.numpy` and are safe to use under
`jax.jit` and `jax.jacfwd`.
"""

from __future__ import annotations

import jax.numpy as jnp

from .types import IDENTITY_FRAME


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def frame_identity() -> jnp.ndarray:
    return jnp.asarray(IDENTITY_FRAME)


def split_frame(F: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    F = jnp.asarray(F)
    return F[0:3], F[3:7]


def quat_to_rot(q: jnp.ndarray) -> jnp.ndarray:
    q = jnp.asarray(q)
    a = q[0]
    u = q[1:4]
    return (a * a - u @ u) * jnp.eye(3) + 2.0 * jnp.outer(u, u) + 2.0 * a * hat(u)


def quat_conj(q: jnp.ndarray) -> jnp.ndarray:
    q = jnp.asarray(q)
    return q * jnp.array([1.0, -1.0, -1.0, -1.0])


def quat_mul(p: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
    """Hamilton product p ⊗ q."""
    p = jnp.asarray(p)
    q = jnp.asarray(q)
    pw, pv = p[0], p[1:4]
    qw, qv = q[0], q[1:4]
    w = pw * qw - pv @ qv
    v = pw * qv + qw * pv + jnp.cross(pv, qv)
    return jnp.concatenate([jnp.reshape(w, (1,)), v])


def quat_normalize(q: jnp.ndarray) -> jnp.ndarray:
    q = jnp.asarray(q)
    return q / jnp.linalg.norm(q)


def rotvec_to_quat(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from a rotation vector to a unit quaternion.

    Uses a second-order expansion of sin(θ/2)/θ for tiny angles.
    """
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    small = theta < 1e-8
    safe_theta = jnp.where(small, 1.0, theta)
    k = jnp.where(small, 0.5 - theta * theta / 48.0, jnp.sin(0.5 * safe_theta) / safe_theta)
    return jnp.concatenate([jnp.reshape(jnp.cos(0.5 * theta), (1,)), k * w])


def quat_to_rotvec(q: jnp.ndarray) -> jnp.ndarray:
    """Logarithm map; returns the rotation vector of the shortest rotation."""
    q = jnp.asarray(q)
    q = jnp.where(q[0] < 0.0, -q, q)
    w = q[0]
    v = q[1:4]
    s = jnp.linalg.norm(v)
    small = s < 1e-8
    safe_s = jnp.where(small, 1.0, s)
    k = jnp.where(small, 2.0 / w, 2.0 * jnp.arctan2(s, w) / safe_s)
    return k * v


def rot_t_vec_by_dq(q: jnp.ndarray, v: jnp.ndarray) -> jnp.ndarray:
    """d(R(q)ᵀ v)/dq, shape (3, 4)."""
    a = q[0]
    u = q[1:4]
    d_a = 2.0 * a * v - 2.0 * jnp.cross(u, v)
    d_u = (
        -2.0 * jnp.outer(v, u)
        + 2.0 * (u @ v) * jnp.eye(3)
        + 2.0 * jnp.outer(u, v)
        + 2.0 * a * hat(v)
    )
    return jnp.concatenate([d_a[:, None], d_u], axis=1)


def to_frame(F: jnp.ndarray, p: jnp.ndarray, jacobians: bool = False):
    """
    Express point(s) p, given in the parent of F, in frame F.

    p may be a single point (3,) or stacked rows (N, 3). Jacobians are only
    defined for a single point:

        p_local = Rᵀ (p − t)
        J_f     = [ −Rᵀ | d(Rᵀ v)/dq ]      (3, 7), v = p − t
        J_p     = Rᵀ                        (3, 3)
    """
    t, q = split_frame(F)
    p = jnp.asarray(p)
    R = quat_to_rot(q)
    v = p - t
    if not jacobians:
        return v @ R

    assert p.ndim == 1, "to_frame Jacobians are defined for a single point."
    Rt = R.T
    J_f = jnp.concatenate([-Rt, rot_t_vec_by_dq(q, v)], axis=1)
    return Rt @ v, J_f, Rt


def from_frame(F: jnp.ndarray, p: jnp.ndarray) -> jnp.ndarray:
    """Inverse of `to_frame` for point(s) p: R p + t."""
    t, q = split_frame(F)
    return jnp.asarray(p) @ quat_to_rot(q).T + t


def compose_frames(F: jnp.ndarray, G: jnp.ndarray) -> jnp.ndarray:
    """F ∘ G, where G is expressed in F."""
    tf, qf = split_frame(F)
    tg, qg = split_frame(G)
    t = tf + quat_to_rot(qf) @ tg
    q = quat_mul(qf, qg)
    return jnp.concatenate([t, q])


def relative_frame(F: jnp.ndarray, G: jnp.ndarray) -> jnp.ndarray:
    """
    F⁻¹ ∘ G for two frames expressed in the same parent:

      t_rel = R_Fᵀ (t_G − t_F)
      q_rel = q_F* ⊗ q_G
    """
    tf, qf = split_frame(F)
    tg, qg = split_frame(G)
    t = quat_to_rot(qf).T @ (tg - tf)
    q = quat_mul(quat_conj(qf), qg)
    return jnp.concatenate([t, q])
