# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Estimation context and main loop.

This module ties the estimation core together. All mutable state of a run
(robots, sensors, raw measurements, landmark and factor pools, keyframes,
trajectories, odometry accumulators and the clock) lives in one
`EstimationContext` value that every phase function receives explicitly.

Main loop
---------
Every simulated time step:

    1. `motion_step`:       integrate the control of each robot and predict
                            its pose from its last keyframe.
    2. `estimation_step`:   every ``kfrm_period`` steps only:

        a. motion keyframe per robot
        b. known-landmark measurement factors, per sensor
        c. new-landmark initialization (quota), per sensor
        d. retirement of stale landmarks
        e. graph solve
        f. reset of the odometry accumulators

    3. Optional rendering of a `GraphSnapshot` by a visualization sink.

`bootstrap` must run once before the loop: it anchors every robot with an
absolute keyframe and solves the initial graph.

Typical usage::

    ctx = create_graph_structures(robot_cfgs, sensor_cfgs, TimeConfig(), options)
    bootstrap(ctx)
    reports = run(ctx, motion_source, observation_source)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import jax.numpy as jnp
import numpy as np

from omnigraph.core.config import EstimationOptions, RobotConfig, SensorConfig, TimeConfig
from omnigraph.core.factor_pool import FactorPool
from omnigraph.core.types import (
    FactorKind,
    Frame,
    MotionAccumulator,
    Observation,
    RawObservation,
    Robot,
    Sensor,
    Trajectory,
)
from omnigraph.optimization.solvers import SolveReport, SolveStatus, solve_graph
from omnigraph.slam.keyframes import add_key_frame, integrate_motion, predict_robot, reset_motion
from omnigraph.slam.known_landmarks import add_known_lmk_factors
from omnigraph.slam.landmarks import LandmarkPool, get_landmark_model, retire_stale_landmarks
from omnigraph.slam.new_landmarks import init_new_landmarks
from .interfaces import MotionSource, ObservationSource, VisualizationSink

logger = logging.getLogger("omnigraph.world")

BOOTSTRAP_POSE_STD = 1e-3   # first keyframe prior, P = 1e-6 I


def _as_float(x) -> jnp.ndarray:
    return jnp.asarray(x) * 1.0


@dataclass
class Clock:
    t: float = 0.0
    dt: float = 0.1
    first_frame: int = 1
    last_frame: int = 100
    n_estimations: int = 0


@dataclass
class EstimationContext:
    """Complete state of one estimation run."""
    robots: Dict[int, Robot]
    sensors: Dict[int, Sensor]
    raws: Dict[int, RawObservation]
    landmarks: LandmarkPool
    observations: Dict[Tuple[int, int], Observation]
    trajectories: Dict[int, Trajectory]
    frames: Dict[int, Frame]
    factors: FactorPool
    motion: Dict[int, MotionAccumulator]
    clock: Clock
    options: EstimationOptions = field(default_factory=EstimationOptions)
    last_report: Optional[SolveReport] = None


def create_graph_structures(
    robot_cfgs: Sequence[RobotConfig],
    sensor_cfgs: Sequence[SensorConfig],
    time_cfg: TimeConfig,
    options: EstimationOptions,
) -> EstimationContext:
    """
    Build empty graph containers sized by the configuration.

    :param robot_cfgs: One config per robot; ids must be unique.
    :param sensor_cfgs: One config per sensor; each must reference a robot.
    :param time_cfg: Time step and frame range of the run.
    :param options: Pool capacities, keyframe period, init and solver options.
    :returns: A fresh `EstimationContext` with no keyframes yet.
    """
    robot_ids = [cfg.id for cfg in robot_cfgs]
    sensor_ids = [cfg.id for cfg in sensor_cfgs]
    if len(set(robot_ids)) != len(robot_ids) or len(set(sensor_ids)) != len(sensor_ids):
        raise ValueError("Robot and sensor ids must be unique")

    robots: Dict[int, Robot] = {}
    for cfg in robot_cfgs:
        robots[cfg.id] = Robot(
            id=cfg.id,
            frame=_as_float(cfg.frame),
            P=jnp.zeros((6, 6)),
            u=_as_float(cfg.u),
            u_std=_as_float(cfg.u_std),
        )

    sensors: Dict[int, Sensor] = {}
    for cfg in sensor_cfgs:
        if cfg.robot not in robots:
            raise ValueError(f"Sensor {cfg.id} is mounted on unknown robot {cfg.robot}")
        sensors[cfg.id] = Sensor(
            id=cfg.id,
            robot=cfg.robot,
            frame=_as_float(cfg.frame),
            intrinsics=_as_float(cfg.intrinsics),
            distortion=_as_float(cfg.distortion),
            image_size=tuple(cfg.image_size),
            pixel_std=float(cfg.pixel_std),
        )
        robots[cfg.robot].sensors.append(cfg.id)

    return EstimationContext(
        robots=robots,
        sensors=sensors,
        raws={sid: RawObservation.empty(sid) for sid in sensors},
        landmarks=LandmarkPool(options.map.landmark_capacity),
        observations={},
        trajectories={rid: Trajectory(robot=rid) for rid in robots},
        frames={},
        factors=FactorPool(options.map.factor_capacity),
        motion={rid: reset_motion(robot) for rid, robot in robots.items()},
        clock=Clock(
            t=0.0,
            dt=time_cfg.dt,
            first_frame=time_cfg.first_frame,
            last_frame=time_cfg.last_frame,
        ),
        options=options,
    )


def _solve(ctx: EstimationContext) -> SolveReport:
    report = solve_graph(
        ctx.robots,
        ctx.sensors,
        ctx.landmarks,
        ctx.observations,
        ctx.frames,
        ctx.factors,
        ctx.options.solver,
    )
    ctx.last_report = report
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Graph after solve:\n%s", format_graph(ctx))
    return report


def bootstrap(ctx: EstimationContext) -> SolveReport:
    """Anchor every robot with an absolute keyframe and solve once."""
    for rid, robot in ctx.robots.items():
        ctx.motion[rid] = reset_motion(robot)
        robot.P = BOOTSTRAP_POSE_STD ** 2 * jnp.eye(6)
        add_key_frame(
            robot,
            ctx.landmarks,
            ctx.trajectories[rid],
            ctx.frames,
            ctx.factors,
            ctx.motion[rid],
            FactorKind.ABSOLUTE,
        )
    logger.info("Bootstrapped %d robots", len(ctx.robots))
    return _solve(ctx)


def motion_step(ctx: EstimationContext, controls: Optional[Mapping[int, jnp.ndarray]] = None) -> None:
    for rid, robot in ctx.robots.items():
        if controls is not None and rid in controls:
            robot.u = _as_float(controls[rid])
        acc = integrate_motion(ctx.motion[rid], robot.u, robot.u_std, ctx.clock.dt)
        ctx.motion[rid] = acc
        head = ctx.trajectories[rid].head
        if head is not None:
            predict_robot(robot, ctx.frames[head], acc)
    ctx.clock.t += ctx.clock.dt


def is_keyframe_step(ctx: EstimationContext, current_frame: int) -> bool:
    return (current_frame - ctx.clock.first_frame + 1) % ctx.options.map.kfrm_period == 0


def _forget_retired(ctx: EstimationContext, slots: Sequence[int]) -> None:
    if not slots:
        return
    retired = set(slots)
    for robot in ctx.robots.values():
        robot.landmarks = [s for s in robot.landmarks if s not in retired]
    for key in [k for k in ctx.observations if k[1] in retired]:
        del ctx.observations[key]


def estimation_step(ctx: EstimationContext, current_frame: int) -> SolveReport:
    """
    One estimation phase: keyframes, landmark factors, solve.

    The larger initialization quota applies to the first phase after
    `bootstrap`.

    When the factor pool cannot hold one keyframe factor per robot the whole
    phase is skipped: no trajectory changes, the odometry accumulators keep
    running and the report status is ``skipped``.
    """
    opts = ctx.options
    if ctx.factors.n_free() < len(ctx.robots):
        logger.warning(
            "Frame %d: factor pool full (%d/%d used), skipping keyframe phase",
            current_frame,
            ctx.factors.n_used(),
            ctx.factors.capacity(),
        )
        return SolveReport(SolveStatus.SKIPPED, 0, 0.0, 0.0)

    is_first = ctx.clock.n_estimations == 0
    n_new = 0

    for rid, robot in ctx.robots.items():
        frame = add_key_frame(
            robot,
            ctx.landmarks,
            ctx.trajectories[rid],
            ctx.frames,
            ctx.factors,
            ctx.motion[rid],
            FactorKind.MOTION,
        )
        for sid in robot.sensors:
            sensor = ctx.sensors[sid]
            raw = ctx.raws.get(sid, RawObservation.empty(sid))
            add_known_lmk_factors(
                robot, sensor, raw, ctx.landmarks, ctx.observations, frame, ctx.factors, opts
            )
            n_new += len(
                init_new_landmarks(
                    robot,
                    sensor,
                    raw,
                    ctx.landmarks,
                    ctx.observations,
                    frame,
                    ctx.factors,
                    opts,
                    is_first=is_first,
                )
            )

    retired = retire_stale_landmarks(ctx.landmarks, ctx.frames, ctx.factors, opts.landmarks)
    _forget_retired(ctx, retired)

    report = _solve(ctx)

    for rid, robot in ctx.robots.items():
        ctx.motion[rid] = reset_motion(robot)
    ctx.clock.n_estimations += 1

    logger.info(
        "Frame %d: estimation %d, %d new landmarks, %d/%d factors used, solve %s",
        current_frame,
        ctx.clock.n_estimations,
        n_new,
        ctx.factors.n_used(),
        ctx.factors.capacity(),
        report.status.value,
    )
    return report


def run_step(
    ctx: EstimationContext,
    current_frame: int,
    controls: Optional[Mapping[int, jnp.ndarray]] = None,
    raws: Optional[Mapping[int, RawObservation]] = None,
    sink: Optional[VisualizationSink] = None,
) -> Optional[SolveReport]:
    """
    Advance the run by one time step.

    :param controls: Per-robot control input for this step (keeps the
        previous one for robots not listed).
    :param raws: Per-sensor measurements for this step.
    :param sink: Optional renderer; receives a snapshot after the step.
    :returns: The solve report if this step was a keyframe step, else None.
    """
    if raws:
        ctx.raws.update(raws)
    motion_step(ctx, controls)

    report = None
    if is_keyframe_step(ctx, current_frame):
        report = estimation_step(ctx, current_frame)

    if sink is not None:
        sink.render(snapshot(ctx), current_frame)
    return report


def run(
    ctx: EstimationContext,
    motion_source: MotionSource,
    observation_source: ObservationSource,
    sink: Optional[VisualizationSink] = None,
) -> List[SolveReport]:
    """Run every frame of the clock's range; returns the solve reports."""
    reports: List[SolveReport] = []
    for current_frame in range(ctx.clock.first_frame, ctx.clock.last_frame + 1):
        controls = {rid: motion_source.control(rid, ctx.clock) for rid in ctx.robots}
        raws = {sid: observation_source.observe(sid, ctx.clock) for sid in ctx.sensors}
        report = run_step(ctx, current_frame, controls, raws, sink)
        if report is not None:
            reports.append(report)
    return reports


# --- Read-only views ---

def _frozen(x) -> np.ndarray:
    arr = np.array(x, dtype=float)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class GraphSnapshot:
    """Host-side copy of the graph for renderers; arrays are read-only."""
    t: float
    robots: Dict[int, np.ndarray]
    frames: Dict[int, np.ndarray]
    trajectories: Dict[int, Tuple[int, ...]]
    landmarks: Dict[int, Tuple[int, str, np.ndarray]]   # slot -> (id, kind, xyz)
    factors: Tuple[Tuple[int, str, Tuple[Tuple[str, int], ...]], ...]
    observations: Dict[Tuple[int, int], Tuple[bool, Optional[np.ndarray], Optional[np.ndarray]]]


def snapshot(ctx: EstimationContext) -> GraphSnapshot:
    landmarks = {}
    for lmk in ctx.landmarks:
        xyz = get_landmark_model(lmk.kind).to_euclidean(lmk.state)
        landmarks[lmk.slot] = (lmk.id, lmk.kind, _frozen(xyz))

    observations = {}
    for key, obs in ctx.observations.items():
        observations[key] = (
            obs.visible,
            None if obs.measured is None else _frozen(obs.measured),
            None if obs.predicted is None else _frozen(obs.predicted),
        )

    return GraphSnapshot(
        t=float(ctx.clock.t),
        robots={rid: _frozen(r.frame) for rid, r in ctx.robots.items()},
        frames={fid: _frozen(f.state) for fid, f in ctx.frames.items()},
        trajectories={rid: tuple(int(f) for f in trj.frames) for rid, trj in ctx.trajectories.items()},
        landmarks=landmarks,
        factors=tuple((f.slot, f.kind.value, tuple(f.var_ids)) for f in ctx.factors),
        observations=observations,
    )


def format_graph(ctx: EstimationContext) -> str:
    """Human-readable summary of trajectories, landmarks and factors."""
    lines = [f"t = {ctx.clock.t:.3f}"]
    for rid, trj in ctx.trajectories.items():
        lines.append(f"Robot {rid}: head {trj.head}, frames {list(trj.frames)}")
        for fid in trj.frames:
            lines.append(f"  Frame {fid}: factors {ctx.frames[fid].factors}")
    lines.append(
        f"Landmarks: {ctx.landmarks.n_used()}/{ctx.landmarks.capacity()} used"
    )
    for lmk in ctx.landmarks:
        lines.append(
            f"  Lmk slot {lmk.slot} id {lmk.id} ({lmk.kind}): factors {lmk.factors}, "
            f"matched {lmk.n_match}/{lmk.n_search}"
        )
    counts: Dict[str, int] = {}
    for fac in ctx.factors:
        counts[fac.kind.value] = counts.get(fac.kind.value, 0) + 1
    lines.append(
        f"Factors: {ctx.factors.n_used()}/{ctx.factors.capacity()} used "
        + ", ".join(f"{k}={n}" for k, n in sorted(counts.items()))
    )
    return "\n".join(lines)
