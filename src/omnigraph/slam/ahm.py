# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Anchored homogeneous points (AHM).

A landmark is stored as ``l = [x, y, z, vx, vy, vz, rho]``: an anchor
``x0 = (x, y, z)`` (the sensor position at first sight), a direction ``v``
and the inverse distance ``rho`` along it. The Euclidean point is

    p = x0 + v / rho

and its Jacobian w.r.t. the 7 parameters is

    P_l = [ I₃ | I₃ / rho | −v / rho² ]        (3, 7)

``rho`` at zero is a point at infinity; converting it to Euclidean
coordinates is undefined, so every conversion checks its inverse depth and
raises `DegenerateInverseDepthError` instead of returning inf/nan.
"""

from __future__ import annotations

import jax.numpy as jnp

from omnigraph.core.errors import DegenerateInverseDepthError, UnsupportedOperationError

RHO_EPS = 1e-12


def check_inverse_depth(l: jnp.ndarray) -> None:
    rho = jnp.asarray(l)[..., 6]
    ok = jnp.isfinite(rho) & (jnp.abs(rho) > RHO_EPS)
    if not bool(jnp.all(ok)):
        raise DegenerateInverseDepthError(
            f"Anchored point with degenerate inverse depth: rho={rho}"
        )


def ahm_to_euclidean(l: jnp.ndarray, jacobians: bool = False):
    """
    Convert AHM point(s) to Euclidean coordinates.

    l: (7,) or stacked (N, 7). With ``jacobians=True`` only a single point is
    accepted and ``(p, P_l)`` is returned.
    """
    l = jnp.asarray(l)
    check_inverse_depth(l)
    x0 = l[..., 0:3]
    v = l[..., 3:6]
    rho = l[..., 6:7]
    p = x0 + v / rho
    if not jacobians:
        return p

    if l.ndim != 1:
        raise UnsupportedOperationError("Jacobians not available for multiple AHM points.")
    rho = l[6]
    P_l = jnp.concatenate(
        [jnp.eye(3), jnp.eye(3) / rho, jnp.reshape(-v / (rho * rho), (3, 1))],
        axis=1,
    )
    return p, P_l


def ahm_from_ray(anchor: jnp.ndarray, ray: jnp.ndarray, rho: float) -> jnp.ndarray:
    rho = jnp.reshape(jnp.asarray(rho) * 1.0, (1,))
    return jnp.concatenate([jnp.asarray(anchor), jnp.asarray(ray), rho])


def euclidean_to_ahm(p: jnp.ndarray, anchor: jnp.ndarray, direction: jnp.ndarray) -> jnp.ndarray:
    """
    Re-anchor a Euclidean point at a given anchor and direction.

    The inverse depth is the least-squares solution of ``p − x0 = v / rho``:

        rho = (v·v) / (v·(p − x0))
    """
    p = jnp.asarray(p)
    x0 = jnp.asarray(anchor)
    v = jnp.asarray(direction)
    rho = (v @ v) / (v @ (p - x0))
    return ahm_from_ray(x0, v, rho)


def normalize_ahm(l: jnp.ndarray) -> jnp.ndarray:
    """Rescale the direction to unit norm; the Euclidean point is unchanged."""
    l = jnp.asarray(l)
    n = jnp.linalg.norm(l[3:6])
    return jnp.concatenate([l[0:3], l[3:6] / n, l[6:7] / n])
