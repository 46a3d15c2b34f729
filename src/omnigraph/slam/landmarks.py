# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Landmark kinds and landmark lifecycle.

Landmark kinds
--------------
Each kind implements the `LandmarkModel` capability interface and is looked
up by its tag with `get_landmark_model`:

    • ``"ahmPnt"``: anchored homogeneous point, 7 parameters, manifold
      ``"ahm"``. Used for landmarks initialized from a single bearing.
    • ``"eucPnt"``: plain Euclidean point, 3 parameters, manifold
      ``"euclidean"``.

Lifecycle
---------
Landmarks live in a fixed-capacity `LandmarkPool`. They are created by the
new-landmark initializer, updated in place by the solver, and retired (not
deleted) when they stop being matched: a retired landmark is flagged
``deprecated``, all factors referencing it are released, and its slot
becomes available for a future landmark.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Set

import jax.numpy as jnp

from omnigraph.core.config import LandmarkOptions
from omnigraph.core.factor_pool import FactorPool, SlotPool
from omnigraph.core.types import Frame, Landmark
from .ahm import RHO_EPS, ahm_from_ray, ahm_to_euclidean, normalize_ahm
from .projection import (
    Projection,
    project_ahm_into_omni_on_robot,
    project_euc_into_omni_on_robot,
)

logger = logging.getLogger("omnigraph.landmarks")


class LandmarkModel(Protocol):
    kind: str
    dim: int
    manifold: str

    def to_euclidean(self, state: jnp.ndarray) -> jnp.ndarray: ...

    def from_ray(self, anchor: jnp.ndarray, ray: jnp.ndarray, rho: float) -> jnp.ndarray: ...

    def is_valid(self, state: jnp.ndarray) -> bool: ...

    def retract(self, state: jnp.ndarray, delta: jnp.ndarray, rho_min: float) -> jnp.ndarray: ...

    def project(self, Rf, Sf, k, a, state, jacobians: bool = False) -> Projection: ...


class AhmPointModel:
    kind = "ahmPnt"
    dim = 7
    manifold = "ahm"

    def to_euclidean(self, state):
        return ahm_to_euclidean(state)

    def from_ray(self, anchor, ray, rho):
        return ahm_from_ray(anchor, ray, rho)

    def is_valid(self, state):
        rho = jnp.asarray(state)[6]
        return bool(jnp.all(jnp.isfinite(state)) & (rho > RHO_EPS))

    def retract(self, state, delta, rho_min):
        l = normalize_ahm(state + delta)
        return l.at[6].set(jnp.maximum(l[6], rho_min))

    def project(self, Rf, Sf, k, a, state, jacobians=False):
        return project_ahm_into_omni_on_robot(Rf, Sf, k, a, state, jacobians=jacobians)


class EucPointModel:
    kind = "eucPnt"
    dim = 3
    manifold = "euclidean"

    def to_euclidean(self, state):
        return jnp.asarray(state)

    def from_ray(self, anchor, ray, rho):
        return jnp.asarray(anchor) + jnp.asarray(ray) / rho

    def is_valid(self, state):
        return bool(jnp.all(jnp.isfinite(state)))

    def retract(self, state, delta, rho_min):
        return state + delta

    def project(self, Rf, Sf, k, a, state, jacobians=False):
        return project_euc_into_omni_on_robot(Rf, Sf, k, a, state, jacobians=jacobians)


_MODELS: Dict[str, LandmarkModel] = {m.kind: m for m in (AhmPointModel(), EucPointModel())}


def get_landmark_model(kind: str) -> LandmarkModel:
    try:
        return _MODELS[kind]
    except KeyError:
        raise ValueError(f"Unknown landmark kind '{kind}'") from None


class LandmarkPool(SlotPool[Landmark]):
    """
    Pool of landmark records.

    A retired landmark keeps its record, flagged ``deprecated``, until its
    slot is handed to a new landmark; only then is the record replaced.
    Landmarks are never removed from the pool any other way.
    """

    def __init__(self, capacity: int) -> None:
        super().__init__(capacity, lambda slot: Landmark(slot=slot))


def associated_ids(landmarks: LandmarkPool) -> Set[int]:
    """Appearance ids already owned by a used landmark."""
    return {lmk.id for lmk in landmarks}


def find_landmark(landmarks: LandmarkPool, lmk_id: int) -> Optional[Landmark]:
    for lmk in landmarks:
        if lmk.id == lmk_id:
            return lmk
    return None


def create_landmark(
    landmarks: LandmarkPool,
    lmk_id: int,
    kind: str,
    state: jnp.ndarray,
    frame_id: Optional[int] = None,
) -> Optional[Landmark]:
    """Allocate a landmark slot and fill it; None when the pool is full."""
    model = get_landmark_model(kind)
    state = jnp.asarray(state)
    if state.shape != (model.dim,):
        raise ValueError(f"{kind} landmark state must have shape ({model.dim},), got {state.shape}")
    if not model.is_valid(state):
        raise ValueError(f"Landmark {lmk_id}: {kind} state is not finite or has degenerate inverse depth")
    slot = landmarks.allocate()
    if slot is None:
        logger.debug("Landmark pool exhausted; cannot create landmark %d", lmk_id)
        return None
    lmk = landmarks[slot]
    lmk.id = int(lmk_id)
    lmk.kind = kind
    lmk.state = state
    lmk.anchor_frame = frame_id
    return lmk


def retire_landmark(
    landmark: Landmark,
    landmarks: LandmarkPool,
    frames: Dict[int, Frame],
    factors: FactorPool,
) -> None:
    """Mark a landmark deprecated and release every factor that references it."""
    for fac_slot in list(landmark.factors):
        for fid in factors[fac_slot].frame_ids:
            frame = frames[fid]
            if fac_slot in frame.factors:
                frame.factors.remove(fac_slot)
        factors.release(fac_slot)
    landmark.factors = []
    landmark.deprecated = True
    landmarks.release(landmark.slot)
    logger.debug("Retired landmark %d (slot %d)", landmark.id, landmark.slot)


def retire_stale_landmarks(
    landmarks: LandmarkPool,
    frames: Dict[int, Frame],
    factors: FactorPool,
    options: LandmarkOptions,
) -> List[int]:
    """
    Retire landmarks that keep being predicted in view but are rarely matched.

    A landmark is stale once it has been searched at least
    ``options.min_searches`` times with a match ratio under
    ``options.min_match_ratio``. Returns the retired slots.
    """
    stale = [
        lmk
        for lmk in landmarks
        if lmk.n_search >= options.min_searches
        and lmk.n_match < options.min_match_ratio * lmk.n_search
    ]
    for lmk in stale:
        retire_landmark(lmk, landmarks, frames, factors)
    if stale:
        logger.info("Retired %d stale landmarks", len(stale))
    return [lmk.slot for lmk in stale]
