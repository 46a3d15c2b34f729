# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Factor models (residuals and their linearization) for omnigraph.

Each factor kind maps to a *linearizer*:

    linearizer(blocks, params) -> (r, [J_0, J_1, ...])

where ``blocks`` are the current states of the connected variables in
``factor.var_ids`` order, ``r`` is the raw (unweighted) residual and
``J_i = dr / d block_i``. The factor graph whitens both with
``params["sqrt_info"]`` before stacking them for the solver.

1. Pose factors
---------------
    • `absolute_factor`:
        Prior on a keyframe, r = F ⊖ M (6,), used for the first keyframe of
        every robot.

    • `motion_factor`:
        Odometry between consecutive keyframes, r = (F_i⁻¹ ∘ F_j) ⊖ Δ (6,).

    ``⊖`` is `frame_error`: translation difference and a small-angle
    rotation vector ``2·vec(q_M* ⊗ q_F)``. Their Jacobians come from
    `jax.jacfwd` on jitted residuals.

2. Measurement factors
----------------------
    • `measurement_factor`:
        Pixel measurement of a landmark from a keyframe,
        r = z − h(F, l) (2,), with the closed-form Jacobians of the
        projection model: J_F = −U_r, J_l = −U_l.

3. Noise models
---------------
    • `sigma_to_sqrt_info`, `cov_to_sqrt_info` build the whitening matrix W
      (Wᵀ W = Σ⁻¹) stored as ``params["sqrt_info"]``.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, List, Sequence, Tuple

import jax
import jax.numpy as jnp

from omnigraph.core.math3d import quat_conj, quat_mul, relative_frame
from omnigraph.core.types import Factor, FactorKind
from .landmarks import get_landmark_model

Linearizer = Callable[[Sequence[jnp.ndarray], Dict[str, Any]], Tuple[jnp.ndarray, List[jnp.ndarray]]]

COV_FLOOR = 1e-12


def sigma_to_sqrt_info(sigma, dim: int) -> jnp.ndarray:
    """
    Whitening matrix for independent noise.

    For scalar sigma: W = I / sigma; for a vector: W = diag(1 / sigma).
    """
    s = jnp.broadcast_to(jnp.asarray(sigma) * 1.0, (dim,))
    return jnp.diag(1.0 / s)


def cov_to_sqrt_info(cov: jnp.ndarray) -> jnp.ndarray:
    """W with Wᵀ W = Σ⁻¹ (upper Cholesky factor of the information matrix)."""
    cov = jnp.asarray(cov)
    n = cov.shape[0]
    info = jnp.linalg.inv(cov + COV_FLOOR * jnp.eye(n))
    info = 0.5 * (info + info.T)
    return jnp.linalg.cholesky(info).T


def frame_error(F: jnp.ndarray, M: jnp.ndarray) -> jnp.ndarray:
    """Tangent-space difference F ⊖ M: [t_F − t_M, 2·vec(q_M* ⊗ q_F)]."""
    dq = quat_mul(quat_conj(M[3:7]), F[3:7])
    dq = jnp.where(dq[0] < 0.0, -dq, dq)
    return jnp.concatenate([F[0:3] - M[0:3], 2.0 * dq[1:4]])


def _absolute_residual(F, M):
    return frame_error(F, M)


def _motion_residual(F_i, F_j, M):
    return frame_error(relative_frame(F_i, F_j), M)


_absolute_jac = jax.jit(jax.jacfwd(_absolute_residual, argnums=0))
_motion_jac = jax.jit(jax.jacfwd(_motion_residual, argnums=(0, 1)))


def absolute_factor(blocks: Sequence[jnp.ndarray], params: Dict[str, Any]):
    F = jnp.asarray(blocks[0])
    M = jnp.asarray(params["measurement"])
    return _absolute_residual(F, M), [_absolute_jac(F, M)]


def motion_factor(blocks: Sequence[jnp.ndarray], params: Dict[str, Any]):
    F_i = jnp.asarray(blocks[0])
    F_j = jnp.asarray(blocks[1])
    M = jnp.asarray(params["measurement"])
    J_i, J_j = _motion_jac(F_i, F_j, M)
    return _motion_residual(F_i, F_j, M), [J_i, J_j]


def measurement_factor(blocks: Sequence[jnp.ndarray], params: Dict[str, Any]):
    F = jnp.asarray(blocks[0])
    state = jnp.asarray(blocks[1])
    model = get_landmark_model(params["lmk_kind"])
    proj = model.project(
        F,
        params["sensor_frame"],
        params["intrinsics"],
        params["distortion"],
        state,
        jacobians=True,
    )
    r = jnp.asarray(params["measurement"]) - proj.u
    return r, [-proj.U_r, -proj.U_l]


LINEARIZERS: Dict[FactorKind, Linearizer] = {
    FactorKind.ABSOLUTE: absolute_factor,
    FactorKind.MOTION: motion_factor,
    FactorKind.MEASUREMENT: measurement_factor,
}


def linearize_factor(factor: Factor, blocks: Sequence[jnp.ndarray]):
    """Evaluate a factor at ``blocks`` and store its residual and Jacobians."""
    fn = LINEARIZERS.get(factor.kind, None)
    if fn is None:
        raise ValueError(f"No linearizer registered for factor kind '{factor.kind}'")
    r, Js = fn(blocks, factor.params)
    factor.residual = r
    factor.jacobians = dict(zip(factor.var_ids, Js))
    return r, Js
