# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Factor graph assembly for omnigraph.

The estimation state is spread over keyframes and landmark slots, and the
constraints live in a fixed-capacity factor pool. Before every solve this
module gathers them into a `FactorGraph`:

    - Variables: every keyframe referenced by a used factor and every used
      landmark, keyed by ``("frm", id)`` / ``("lmk", slot)``
    - Factors: the used factors of the pool
    - Linearizers: mapping factor kind -> callable returning the raw
      residual and one Jacobian block per connected variable

Primary Methods
---------------
pack_state()
    Concatenates all variable values into a single flat JAX array and
    returns it with the index ``VarKey -> (start, dim)``.

unpack_state(x, index)
    Splits a flat state vector back into per-variable blocks.

linearize(x)
    Stacks the whitened residuals ``W r`` and the dense Jacobian
    ``W J`` of every factor, evaluated at ``x``.

cost(x)
    ``0.5 * ‖W r‖²``.

Notes
-----
Residual Jacobians are assembled block by block from the per-factor
linearizers, so closed-form derivatives (projection) and autodiff ones
(pose factors) can coexist in the same system.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence, Tuple

import jax.numpy as jnp

from .types import Factor, FactorKind, Frame, Variable, VarKey, frame_key, landmark_key

Linearizer = Callable[[Sequence[jnp.ndarray], Dict[str, Any]], Tuple[jnp.ndarray, List[jnp.ndarray]]]


def _apply_weight(x: jnp.ndarray, params: dict, key: str = "sqrt_info") -> jnp.ndarray:
    """
    Optional whitening of a residual (k,) or Jacobian (k, n).

    If params[key] is:
      - missing: no change
      - scalar:  x' = w * x
      - vector:  x' = diag(w) x
      - matrix:  x' = W x
    """
    w = params.get(key, None)
    if w is None:
        return x

    w = jnp.asarray(w)
    if w.ndim == 0:
        return w * x
    if w.ndim == 1:
        return w.reshape((-1,) + (1,) * (x.ndim - 1)) * x
    return w @ x


@dataclass
class FactorGraph:
    """
    Snapshot of the estimation graph for one solve.

    - variables: mapping from VarKey -> Variable
    - factors: mapping from factor slot -> Factor
    - linearizers: mapping factor kind -> linearizer
    """
    variables: Dict[VarKey, Variable] = field(default_factory=dict)
    factors: Dict[int, Factor] = field(default_factory=dict)
    linearizers: Dict[FactorKind, Linearizer] = field(default_factory=dict)

    def add_variable(self, var: Variable) -> None:
        assert var.id not in self.variables
        self.variables[var.id] = var

    def add_factor(self, factor: Factor) -> None:
        assert factor.slot not in self.factors
        for key in factor.var_ids:
            if key not in self.variables:
                raise ValueError(f"Factor {factor.slot} references unknown variable {key}")
        self.factors[factor.slot] = factor

    def register_linearizer(self, kind: FactorKind, fn: Linearizer) -> None:
        self.linearizers[kind] = fn

    @classmethod
    def from_estimation(cls, frames: Dict[int, Frame], landmarks, factors) -> "FactorGraph":
        """Gather used factors and the frames / used landmarks they touch."""
        fg = cls()
        for fid in sorted(frames):
            fg.add_variable(Variable(id=frame_key(fid), type="frame", value=frames[fid].state))
        for lmk in landmarks:
            fg.add_variable(Variable(id=landmark_key(lmk.slot), type=lmk.kind, value=lmk.state))
        for factor in factors:
            fg.add_factor(factor)
        return fg

    # --- State packing/unpacking ---

    def _build_state_index(self) -> Dict[VarKey, Tuple[int, int]]:
        """
        Returns a mapping: VarKey -> (start_index, dim)
        """
        index: Dict[VarKey, Tuple[int, int]] = {}
        offset = 0
        for key, var in sorted(self.variables.items(), key=lambda x: x[0]):
            dim = jnp.asarray(var.value).shape[0]
            index[key] = (offset, dim)
            offset += dim
        return index

    def pack_state(self) -> Tuple[jnp.ndarray, Dict[VarKey, Tuple[int, int]]]:
        index = self._build_state_index()
        chunks = [jnp.asarray(self.variables[key].value) for key in index]
        if not chunks:
            return jnp.zeros((0,)), index
        return jnp.concatenate(chunks), index

    def unpack_state(self, x: jnp.ndarray, index: Dict[VarKey, Tuple[int, int]]) -> Dict[VarKey, jnp.ndarray]:
        result: Dict[VarKey, jnp.ndarray] = {}
        for key, (start, dim) in index.items():
            result[key] = x[start:start + dim]
        return result

    # --- Linearization ---

    def linearize(self, x: jnp.ndarray, index: Dict[VarKey, Tuple[int, int]]) -> Tuple[jnp.ndarray, jnp.ndarray]:
        """
        Returns (r, J): whitened stacked residual (m,) and Jacobian (m, n)
        at the packed state x.
        """
        values = self.unpack_state(x, index)
        n = x.shape[0]
        res_list = []
        jac_rows = []

        for factor in self.factors.values():
            fn = self.linearizers.get(factor.kind, None)
            if fn is None:
                raise ValueError(f"No linearizer registered for factor kind '{factor.kind}'")

            blocks = [values[key] for key in factor.var_ids]
            r, Js = fn(blocks, factor.params)

            row = jnp.zeros((r.shape[0], n), dtype=x.dtype)
            for key, J in zip(factor.var_ids, Js):
                start, dim = index[key]
                row = row.at[:, start:start + dim].add(_apply_weight(J, factor.params))

            res_list.append(_apply_weight(r, factor.params))
            jac_rows.append(row)

        if not res_list:
            return jnp.zeros((0,), dtype=x.dtype), jnp.zeros((0, n), dtype=x.dtype)

        return jnp.concatenate(res_list), jnp.concatenate(jac_rows, axis=0)

    def cost(self, x: jnp.ndarray, index: Dict[VarKey, Tuple[int, int]]) -> float:
        r, _ = self.linearize(x, index)
        return 0.5 * float(r @ r)
