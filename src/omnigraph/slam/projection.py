# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Omnidirectional camera projection with closed-form Jacobians.

The model maps a point expressed in the sensor frame to a pixel through four
stages, each exposed as its own function returning value and Jacobian:

1. `unit_ray`        m = p / ‖p‖,   s = ‖p‖
       The depth proxy ``s`` is not measurable by the camera (it only sees
       ray directions); it is kept for inverse-depth uncertainty handling.

2. `stereographic`   q = (mx, my) / (1 + mz)
       Normalized image point on the unit-sphere model. Valid for every
       direction except straight behind the camera, so fields of view wider
       than 180° are supported.

3. `radial_polynomial`   sp = q · Σᵢ aᵢ (q·q)ⁱ
       Radial polynomial with coefficients ``a = [a0, a1, ...]`` (highest
       order last). ``a0`` carries the focal scale in pixels.

4. `affine_pixel`    u = c·spx + d·spy + xc,   v = e·spx + spy + yc
       Affine sensor-plane to pixel mapping with intrinsics
       ``k = [xc, yc, c, d, e]``.

`project_euc_into_omni_on_robot` first moves a world point into the robot
and then into the sensor (`core.math3d.to_frame`), and chains every stage
Jacobian:

    U_r = U_ls · LS_lr · LR_r
    U_s = U_ls · LS_s
    U_p = U_ls · LS_lr · LR_p

`project_ahm_into_omni_on_robot` converts the anchored point first and
applies ``U_l = U_p · P_l``.

Without Jacobians both functions accept stacked points and return stacked
pixels (N, 2) and depths (N,). Exact Jacobians are defined for one point at
a time only; asking for them with several points raises
`UnsupportedOperationError`.
"""

from __future__ import annotations
from typing import NamedTuple, Optional, Tuple

import jax
import jax.numpy as jnp

from omnigraph.core.errors import UnsupportedOperationError
from omnigraph.core.math3d import to_frame
from .ahm import ahm_to_euclidean


class Projection(NamedTuple):
    """Pixel ``u`` (2,) and depth proxy ``s``; Jacobian blocks when requested.

    U_* are derivatives of the pixel (2 rows), S_* of the depth (1 row), with
    respect to robot frame (r), sensor frame (s), intrinsics (k), distortion
    (d) and landmark state (l).
    """
    u: jnp.ndarray
    s: jnp.ndarray
    U_r: Optional[jnp.ndarray] = None
    U_s: Optional[jnp.ndarray] = None
    U_k: Optional[jnp.ndarray] = None
    U_d: Optional[jnp.ndarray] = None
    U_l: Optional[jnp.ndarray] = None
    S_r: Optional[jnp.ndarray] = None
    S_s: Optional[jnp.ndarray] = None
    S_l: Optional[jnp.ndarray] = None


# --- Model stages ---

def unit_ray(p: jnp.ndarray, jacobians: bool = False):
    n = jnp.linalg.norm(p, axis=-1)
    m = p / n[..., None]
    if not jacobians:
        return m, n
    M_p = (jnp.eye(3) - jnp.outer(m, m)) / n
    N_p = jnp.reshape(m, (1, 3))
    return m, n, M_p, N_p


def stereographic(m: jnp.ndarray, jacobians: bool = False):
    den = 1.0 + m[..., 2]
    q = m[..., 0:2] / den[..., None]
    if not jacobians:
        return q
    Q_m = jnp.array(
        [
            [1.0 / den, 0.0, -m[0] / (den * den)],
            [0.0, 1.0 / den, -m[1] / (den * den)],
        ]
    )
    return q, Q_m


def _poly_terms(r2: jnp.ndarray, n_coeffs: int) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Powers r2**i and their derivatives i * r2**(i-1), i = 0..n_coeffs-1."""
    i = jnp.arange(n_coeffs)
    powers = r2[..., None] ** i
    dpowers = i * r2[..., None] ** jnp.maximum(i - 1, 0)
    return powers, dpowers


def radial_polynomial(q: jnp.ndarray, a: jnp.ndarray, jacobians: bool = False):
    a = jnp.asarray(a)
    r2 = jnp.sum(q * q, axis=-1)
    powers, dpowers = _poly_terms(r2, a.shape[0])
    D = powers @ a
    sp = q * D[..., None]
    if not jacobians:
        return sp
    dD = dpowers @ a
    SP_q = D * jnp.eye(2) + 2.0 * dD * jnp.outer(q, q)
    SP_a = jnp.outer(q, powers)
    return sp, SP_q, SP_a


def affine_pixel(sp: jnp.ndarray, k: jnp.ndarray, jacobians: bool = False):
    k = jnp.asarray(k)
    xc, yc, c, d, e = k[0], k[1], k[2], k[3], k[4]
    u = jnp.stack(
        [c * sp[..., 0] + d * sp[..., 1] + xc, e * sp[..., 0] + sp[..., 1] + yc],
        axis=-1,
    )
    if not jacobians:
        return u
    U_sp = jnp.array([[c, d], [e, 1.0]])
    U_k = jnp.array(
        [
            [1.0, 0.0, sp[0], sp[1], 0.0],
            [0.0, 1.0, 0.0, 0.0, sp[0]],
        ]
    )
    return u, U_sp, U_k


def omni_cam(p: jnp.ndarray, k: jnp.ndarray, a: jnp.ndarray, jacobians: bool = False):
    """
    Project point(s) given in the sensor frame.

    Returns ``(u, s)`` or, with ``jacobians``, ``(u, s, U_p, S_p, U_k, U_a)``.
    """
    if not jacobians:
        m, s = unit_ray(p)
        return affine_pixel(radial_polynomial(stereographic(m), a), k), s

    m, s, M_p, S_p = unit_ray(p, jacobians=True)
    q, Q_m = stereographic(m, jacobians=True)
    sp, SP_q, SP_a = radial_polynomial(q, a, jacobians=True)
    u, U_sp, U_k = affine_pixel(sp, k, jacobians=True)

    U_q = U_sp @ SP_q
    U_p = U_q @ Q_m @ M_p
    U_a = U_sp @ SP_a
    return u, s, U_p, S_p, U_k, U_a


# --- Projection of world points from a robot-mounted camera ---

def _project_euc_single(Rf, Sf, k, a, p):
    lr, LR_r, LR_p = to_frame(Rf, p, jacobians=True)
    ls, LS_s, LS_lr = to_frame(Sf, lr, jacobians=True)
    u, s, U_ls, S_ls, U_k, U_d = omni_cam(ls, k, a, jacobians=True)

    U_lr = U_ls @ LS_lr
    S_lr = S_ls @ LS_lr
    return Projection(
        u=u,
        s=s,
        U_r=U_lr @ LR_r,
        U_s=U_ls @ LS_s,
        U_k=U_k,
        U_d=U_d,
        U_l=U_lr @ LR_p,
        S_r=S_lr @ LR_r,
        S_s=S_ls @ LS_s,
        S_l=S_lr @ LR_p,
    )


_project_euc_single_jit = jax.jit(_project_euc_single)


def _single_point(x: jnp.ndarray, dim: int, what: str) -> jnp.ndarray:
    if x.ndim == 1:
        return x
    if x.shape[0] == 1:
        return jnp.reshape(x, (dim,))
    raise UnsupportedOperationError(f"Jacobians not available for multiple {what}.")


def project_euc_into_omni_on_robot(Rf, Sf, k, a, p, jacobians: bool = False) -> Projection:
    """
    Project Euclidean world point(s) ``p`` into an omni-cam mounted on a robot.

    Rf: robot frame (7,), Sf: sensor frame in robot (7,), k: intrinsics
    ``[xc, yc, c, d, e]``, a: radial polynomial, p: (3,) or (N, 3).
    """
    p = jnp.asarray(p)
    if not jacobians:
        lr = to_frame(Rf, p)
        ls = to_frame(Sf, lr)
        u, s = omni_cam(ls, k, a)
        return Projection(u=u, s=s)

    p = _single_point(p, 3, "points")
    return _project_euc_single_jit(
        jnp.asarray(Rf), jnp.asarray(Sf), jnp.asarray(k), jnp.asarray(a), p
    )


def project_ahm_into_omni_on_robot(Rf, Sf, k, a, l, jacobians: bool = False) -> Projection:
    """
    Project anchored homogeneous point(s) ``l`` into an omni-cam on a robot.

    l: (7,) or (N, 7). ``U_l`` / ``S_l`` are derivatives w.r.t. the 7 AHM
    parameters.
    """
    l = jnp.asarray(l)
    if not jacobians:
        return project_euc_into_omni_on_robot(Rf, Sf, k, a, ahm_to_euclidean(l))

    l = _single_point(l, 7, "AHM points")
    p, P_l = ahm_to_euclidean(l, jacobians=True)
    proj = project_euc_into_omni_on_robot(Rf, Sf, k, a, p, jacobians=True)
    return proj._replace(U_l=proj.U_l @ P_l, S_l=proj.S_l @ P_l)


# --- Inverse model ---

def _back_project(pixel, k, a, iters: int):
    xc, yc, c, d, e = k[0], k[1], k[2], k[3], k[4]
    A = jnp.array([[c, d], [e, 1.0]])
    sp = jnp.linalg.solve(A, pixel - jnp.stack([xc, yc]))
    rs = jnp.linalg.norm(sp)

    def newton(_, r):
        powers, dpowers = _poly_terms(r * r, a.shape[0])
        D = powers @ a
        dD = dpowers @ a
        f = r * D - rs
        fp = D + 2.0 * r * r * dD
        return r - f / fp

    r = jax.lax.fori_loop(0, iters, newton, rs / a[0])
    powers, _ = _poly_terms(r * r, a.shape[0])
    q = sp / (powers @ a)
    qq = q @ q
    return jnp.concatenate([2.0 * q, jnp.reshape(1.0 - qq, (1,))]) / (1.0 + qq)


_back_project_jit = jax.jit(_back_project, static_argnames=("iters",))


def back_project_omni(pixel, k, a, iters: int = 20) -> jnp.ndarray:
    """
    Unit ray in the sensor frame through ``pixel``: inverse of `omni_cam`.

    Inverts the affine map, solves ``r · D(r²) = ‖sp‖`` with Newton steps
    and undoes the stereographic projection. The polynomial is assumed to
    be monotonic over the image; ``a0 = 0`` raises `ValueError`.
    """
    a = jnp.asarray(a) * 1.0
    if float(a[0]) == 0.0:
        raise ValueError("Cannot back-project through a radial polynomial with a0 = 0")
    return _back_project_jit(jnp.asarray(pixel) * 1.0, jnp.asarray(k) * 1.0, a, iters=iters)


def is_visible(u: jnp.ndarray, s, image_size: Tuple[int, int]) -> bool:
    """Pixel inside the image and positive, finite depth proxy."""
    width, height = image_size
    u = jnp.asarray(u)
    s = jnp.asarray(s)
    ok = (
        jnp.all(jnp.isfinite(u))
        & jnp.isfinite(s)
        & (s > 0.0)
        & (u[0] >= 0.0)
        & (u[0] < width)
        & (u[1] >= 0.0)
        & (u[1] < height)
    )
    return bool(ok)
