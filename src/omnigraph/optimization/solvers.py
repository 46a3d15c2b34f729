# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Nonlinear least-squares solver for the estimation graph.

This module implements the batch solve run after every keyframe: all used
factors are gathered into a `core.factor_graph.FactorGraph`, linearized,
and the keyframe and landmark states are refined jointly with a damped,
manifold-aware Gauss–Newton.

Key Concepts
------------
GNConfig
    Dataclass holding configuration for Gauss–Newton:
    - max_iters: maximum number of GN iterations
    - damping: Levenberg–Marquardt-style diagonal damping (and its floor)
    - max_step_norm: clamp on update step size
    - tol: relative cost decrease below which the solve is converged
    - damping_factor / max_damping: damping schedule on rejected steps
    - rho_min: inverse-depth clamp for anchored points

gauss_newton_manifold(fg, x0, index, block_slices, manifold_types, cfg)
    Solves the normal equations

        (Jᵀ J + λ I) Δx = −Jᵀ r

    and applies Δx per block through `slam.manifold.retract`. A step is
    accepted only if it lowers the cost; otherwise the damping grows.
    Returns the best state and a `SolveReport`.

solve_graph(robots, sensors, landmarks, observations, frames, factors, cfg)
    Full graph solve: builds the graph, optimizes, writes the estimates back
    into frames, landmarks and robots, and refreshes factor residuals,
    Jacobians and the innovations of the latest observations.

Failure signaling
-----------------
Every solve returns a `SolveReport` whose ``status`` is one of
``converged``, ``max_iterations``, ``diverged`` or ``empty``; the estimation
loop reports ``skipped`` for a phase it could not run. A diverged
solve (non-finite cost, or damping pushed past ``max_damping``) keeps the
last accepted estimate and is logged as a warning; callers decide whether to
keep going.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Tuple

import jax.numpy as jnp

from omnigraph.core.config import GNConfig
from omnigraph.core.factor_graph import FactorGraph
from omnigraph.core.factor_pool import FactorPool
from omnigraph.core.types import (
    FactorKind,
    Frame,
    Observation,
    Robot,
    Sensor,
    VarKey,
    frame_key,
    landmark_key,
)
from omnigraph.slam.landmarks import LandmarkPool
from omnigraph.slam.manifold import build_manifold_metadata, retract
from omnigraph.slam.measurements import LINEARIZERS, linearize_factor

__all__ = ["GNConfig", "SolveReport", "SolveStatus", "gauss_newton_manifold", "solve_graph"]

logger = logging.getLogger("omnigraph.solver")


class SolveStatus(str, Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    DIVERGED = "diverged"
    EMPTY = "empty"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SolveReport:
    status: SolveStatus
    iterations: int
    initial_cost: float
    final_cost: float

    @property
    def converged(self) -> bool:
        return self.status in (SolveStatus.CONVERGED, SolveStatus.EMPTY)


def _retract_blocks(
    x: jnp.ndarray,
    delta: jnp.ndarray,
    block_slices: Dict[VarKey, slice],
    manifold_types: Dict[VarKey, str],
    cfg: GNConfig,
) -> jnp.ndarray:
    x_new = x
    for key, sl in block_slices.items():
        x_new = x_new.at[sl].set(retract(x[sl], delta[sl], manifold_types[key], cfg.rho_min))
    return x_new


def gauss_newton_manifold(
    fg: FactorGraph,
    x0: jnp.ndarray,
    index: Dict[VarKey, Tuple[int, int]],
    block_slices: Dict[VarKey, slice],
    manifold_types: Dict[VarKey, str],
    cfg: GNConfig,
) -> Tuple[jnp.ndarray, SolveReport]:
    """
    Manifold-aware damped Gauss-Newton on the graph's whitened residuals.

    J = dr/dx has shape (m, n), matching math convention.
    """
    x = x0
    r, J = fg.linearize(x, index)
    cost = 0.5 * float(r @ r)
    initial_cost = cost

    if r.shape[0] == 0:
        return x, SolveReport(SolveStatus.EMPTY, 0, 0.0, 0.0)
    if not math.isfinite(cost):
        return x, SolveReport(SolveStatus.DIVERGED, 0, initial_cost, cost)

    n = x.shape[0]
    lam = cfg.damping
    status = SolveStatus.MAX_ITERATIONS
    iters = 0

    for iters in range(1, cfg.max_iters + 1):
        H = J.T @ J           # (n, n)
        g = J.T @ r           # (n,)

        delta = jnp.linalg.solve(H + lam * jnp.eye(n), g)  # (n,)

        # Step size clamp
        step_norm = jnp.linalg.norm(delta)
        scale = jnp.minimum(1.0, cfg.max_step_norm / (step_norm + 1e-9))

        x_new = _retract_blocks(x, -scale * delta, block_slices, manifold_types, cfg)
        r_new, J_new = fg.linearize(x_new, index)
        cost_new = 0.5 * float(r_new @ r_new)

        if math.isfinite(cost_new) and cost_new <= cost:
            decrease = cost - cost_new
            x, r, J, cost = x_new, r_new, J_new, cost_new
            lam = max(lam / cfg.damping_factor, cfg.damping)
            if decrease <= cfg.tol * max(cost + decrease, 1e-12):
                status = SolveStatus.CONVERGED
                break
        elif math.isfinite(cost_new) and cost_new - cost <= cfg.tol * max(cost, 1e-12):
            status = SolveStatus.CONVERGED
            break
        else:
            lam *= cfg.damping_factor
            if lam > cfg.max_damping:
                status = SolveStatus.DIVERGED
                break

    return x, SolveReport(status, iters, initial_cost, cost)


def _refresh_factors(factors: FactorPool, values: Mapping[VarKey, jnp.ndarray]) -> None:
    for factor in factors:
        linearize_factor(factor, [values[key] for key in factor.var_ids])


def _refresh_observations(
    factors: FactorPool,
    frames: Dict[int, Frame],
    heads: Mapping[int, int],
    observations: Dict[Tuple[int, int], Observation],
) -> None:
    """Innovations of the observations made from each robot's latest keyframe."""
    for factor in factors:
        if factor.kind is not FactorKind.MEASUREMENT:
            continue
        fid = factor.frame_ids[0]
        if heads.get(frames[fid].robot) != fid:
            continue
        obs = observations.get((factor.params["sensor"], factor.landmark_slot))
        if obs is None:
            continue
        obs.innovation = factor.residual
        obs.predicted = jnp.asarray(factor.params["measurement"]) - factor.residual


def solve_graph(
    robots: Mapping[int, Robot],
    sensors: Mapping[int, Sensor],
    landmarks: LandmarkPool,
    observations: Dict[Tuple[int, int], Observation],
    frames: Dict[int, Frame],
    factors: FactorPool,
    cfg: GNConfig,
) -> SolveReport:
    """
    Optimize every keyframe and used landmark over all used factors.

    States are updated in place. Each robot is moved to its most recent
    keyframe (frames are append-only, so the highest id per robot).
    """
    fg = FactorGraph.from_estimation(frames, landmarks, factors)
    for kind, fn in LINEARIZERS.items():
        fg.register_linearizer(kind, fn)

    x0, index = fg.pack_state()
    block_slices, manifold_types = build_manifold_metadata(fg, index)
    x_opt, report = gauss_newton_manifold(fg, x0, index, block_slices, manifold_types, cfg)

    values = fg.unpack_state(x_opt, index)
    for fid, frame in frames.items():
        frame.state = values[frame_key(fid)]
    for lmk in landmarks:
        lmk.state = values[landmark_key(lmk.slot)]

    heads: Dict[int, int] = {}
    for fid, frame in frames.items():
        heads[frame.robot] = max(fid, heads.get(frame.robot, fid))
    for rid, robot in robots.items():
        if rid in heads:
            robot.frame = frames[heads[rid]].state

    _refresh_factors(factors, values)
    _refresh_observations(factors, frames, heads, observations)

    if report.status is SolveStatus.DIVERGED:
        logger.warning(
            "Graph solve diverged after %d iterations (cost %.6g -> %.6g); keeping best estimate",
            report.iterations, report.initial_cost, report.final_cost,
        )
    else:
        logger.debug(
            "Graph solve %s in %d iterations: cost %.6g -> %.6g over %d factors, %d sensors",
            report.status.value, report.iterations, report.initial_cost, report.final_cost,
            len(fg.factors), len(sensors),
        )
    return report
