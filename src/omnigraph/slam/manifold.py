# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Manifold metadata and update rules for the graph solver.

The solver computes one flat update vector; this module decides how each
variable block absorbs its part of it:

    • ``"frame"``:     additive update on [t, q], then the quaternion is
                       renormalized.
    • ``"ahm"``:       additive update on the 7 AHM parameters, then the
                       direction is renormalized (point unchanged) and
                       ``rho`` is clamped to ``rho_min`` so that the point
                       stays in front of its anchor and finite.
    • ``"euclidean"``: plain addition.

Manifold metadata helpers:
    - `TYPE_TO_MANIFOLD`           (variable type → manifold tag)
    - `get_manifold_for_var_type`
    - `build_manifold_metadata`    (VarKey → slice, manifold tag)
    - `retract`
"""

from __future__ import annotations

from typing import Dict, Tuple

import jax.numpy as jnp

from omnigraph.core.factor_graph import FactorGraph
from omnigraph.core.math3d import quat_normalize
from omnigraph.core.types import VarKey
from .landmarks import get_landmark_model

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "frame": "frame",
    "ahmPnt": get_landmark_model("ahmPnt").manifold,
    "eucPnt": get_landmark_model("eucPnt").manifold,
}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def build_manifold_metadata(
    fg: FactorGraph,
    index: Dict[VarKey, Tuple[int, int]],
) -> Tuple[Dict[VarKey, slice], Dict[VarKey, str]]:
    """
    Build metadata for manifold-aware solvers:

      - block_slices: VarKey -> slice in the flat state vector
      - manifold_types: VarKey -> manifold tag
    """
    block_slices: Dict[VarKey, slice] = {}
    manifold_types: Dict[VarKey, str] = {}

    for key, var in fg.variables.items():
        start, length = index[key]
        block_slices[key] = slice(start, start + length)
        manifold_types[key] = get_manifold_for_var_type(var.type)

    return block_slices, manifold_types


def retract(x_i: jnp.ndarray, d_i: jnp.ndarray, manifold: str, rho_min: float) -> jnp.ndarray:
    if manifold == "frame":
        y = x_i + d_i
        return jnp.concatenate([y[0:3], quat_normalize(y[3:7])])
    if manifold == "ahm":
        return get_landmark_model("ahmPnt").retract(x_i, d_i, rho_min)
    return x_i + d_i
