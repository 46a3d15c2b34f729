# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Keyframes, trajectories and odometry accumulation.

Between two keyframes each robot integrates its body-velocity control into a
`MotionAccumulator`: the relative motion since the last keyframe and its
6×6 error-state covariance. When a keyframe is inserted the accumulated
motion becomes a ``motion`` factor between the previous and the new
keyframe; the very first keyframe of a robot is bound to the world by an
``absolute`` prior instead.

Error state
-----------
The covariance is expressed on ``[δt, δθ]`` where ``δt`` is the position
error in the frame of the previous keyframe and ``δθ`` a small rotation
applied on the right (local) side of the accumulated orientation. This is
the same convention used by `slam.measurements.frame_error`.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Union

import jax.numpy as jnp

from omnigraph.core.errors import FactorPoolExhaustedError
from omnigraph.core.factor_pool import FactorPool
from omnigraph.core.math3d import (
    compose_frames,
    frame_identity,
    hat,
    quat_mul,
    quat_normalize,
    quat_to_rot,
    rotvec_to_quat,
)
from omnigraph.core.types import (
    FactorKind,
    Frame,
    FrameId,
    MotionAccumulator,
    Robot,
    Trajectory,
    frame_key,
)
from .landmarks import LandmarkPool
from .measurements import cov_to_sqrt_info, linearize_factor

logger = logging.getLogger("omnigraph.keyframes")


def reset_motion(robot: Robot) -> MotionAccumulator:
    return MotionAccumulator(robot=robot.id, delta=frame_identity(), cov=jnp.zeros((6, 6)))


def integrate_motion(
    acc: MotionAccumulator,
    u: jnp.ndarray,
    u_std: jnp.ndarray,
    dt: float,
) -> MotionAccumulator:
    """
    Compose one control step onto the accumulated motion.

    The control ``u = [v, ω]`` is a body velocity; the step increment is
    ``[dp, dw] = u·dt`` and

        t' = t + R dp
        q' = q ⊗ exp(dw)

    The covariance is propagated with

        F = [[I, −R [dp]ₓ], [0, R(dw)ᵀ]],   G = [[R, 0], [0, I]]
        P' = F P Fᵀ + G Q Gᵀ,               Q = diag((u_std·dt)²)
    """
    inc = jnp.asarray(u) * dt
    dp, dw = inc[0:3], inc[3:6]
    t, q = acc.delta[0:3], acc.delta[3:7]
    R = quat_to_rot(q)
    dq = rotvec_to_quat(dw)

    delta = jnp.concatenate([t + R @ dp, quat_normalize(quat_mul(q, dq))])

    zeros = jnp.zeros((3, 3))
    F = jnp.block([[jnp.eye(3), -R @ hat(dp)], [zeros, quat_to_rot(dq).T]])
    G = jnp.block([[R, zeros], [zeros, jnp.eye(3)]])
    Q = jnp.diag((jnp.asarray(u_std) * dt) ** 2)
    cov = F @ acc.cov @ F.T + G @ Q @ G.T

    return MotionAccumulator(robot=acc.robot, delta=delta, cov=cov, n_steps=acc.n_steps + 1)


def predict_robot(robot: Robot, head: Frame, acc: MotionAccumulator) -> Robot:
    """Robot pose = head keyframe composed with the motion accumulated since."""
    robot.frame = compose_frames(head.state, acc.delta)
    return robot


def frame_to_robot(robot: Robot, frame: Frame) -> Robot:
    robot.frame = frame.state
    return robot


def add_key_frame(
    robot: Robot,
    landmarks: LandmarkPool,
    trajectory: Trajectory,
    frames: Dict[int, Frame],
    factors: FactorPool,
    motion: Optional[MotionAccumulator],
    kind: Union[FactorKind, str],
) -> Frame:
    """
    Append a keyframe at the robot's current pose and bind it to the graph.

    ``absolute``: prior on the new frame with covariance ``robot.P``.
    ``motion``:   odometry factor from the previous head with the
                  accumulated delta and covariance of ``motion``.

    The factor slot is reserved first; if the pool is full nothing is added
    and `FactorPoolExhaustedError` is raised. The robot's visible-landmark
    list is cleared for the new frame. ``landmarks`` is not modified.

    Returns the new frame (also stored in ``frames`` and appended to
    ``trajectory``).
    """
    kind = FactorKind(kind)
    prev = trajectory.head
    if kind is FactorKind.MOTION and (prev is None or motion is None):
        raise ValueError(f"Robot {robot.id}: motion keyframe needs a previous keyframe and odometry")
    if kind not in (FactorKind.ABSOLUTE, FactorKind.MOTION):
        raise ValueError(f"Keyframes are bound by absolute or motion factors, not '{kind.value}'")

    slot = factors.allocate()
    if slot is None:
        raise FactorPoolExhaustedError(
            f"Robot {robot.id}: no free factor slot for a new keyframe "
            f"(capacity {factors.capacity()})"
        )

    fid = FrameId(len(frames))
    frame = Frame(id=fid, robot=robot.id, state=jnp.asarray(robot.frame))
    frames[fid] = frame
    trajectory.frames.append(fid)

    factor = factors[slot]
    factor.kind = kind
    if kind is FactorKind.ABSOLUTE:
        factor.var_ids = (frame_key(fid),)
        factor.params = {
            "measurement": frame.state,
            "sqrt_info": cov_to_sqrt_info(robot.P),
        }
    else:
        factor.var_ids = (frame_key(prev), frame_key(fid))
        factor.params = {
            "measurement": motion.delta,
            "sqrt_info": cov_to_sqrt_info(motion.cov),
        }
        frames[prev].factors.append(slot)
    frame.factors.append(slot)

    linearize_factor(factor, [frames[key[1]].state for key in factor.var_ids])
    robot.landmarks = []

    logger.debug(
        "Robot %d: keyframe %d (%s factor %d), trajectory length %d",
        robot.id, fid, kind.value, slot, len(trajectory),
    )
    return frame
