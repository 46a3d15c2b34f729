# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.

import time

import jax

jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp  # noqa: E402

from omnigraph.core.config import EstimationOptions, GNConfig  # noqa: E402
from omnigraph.core.factor_pool import FactorPool  # noqa: E402
from omnigraph.core.types import (  # noqa: E402
    FactorKind,
    MotionAccumulator,
    RawObservation,
    Robot,
    Sensor,
    Trajectory,
)
from omnigraph.optimization.solvers import solve_graph  # noqa: E402
from omnigraph.slam.keyframes import add_key_frame  # noqa: E402
from omnigraph.slam.known_landmarks import add_known_lmk_factors  # noqa: E402
from omnigraph.slam.landmarks import LandmarkPool  # noqa: E402
from omnigraph.slam.new_landmarks import init_new_landmarks  # noqa: E402
from omnigraph.slam.projection import project_euc_into_omni_on_robot  # noqa: E402

IDENTITY = jnp.array([0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0])


def build_forward_chain(num_frames: int = 10, num_points: int = 20):
    """
    Keyframes 0.5 m apart along the optical axis, every point seen from
    every keyframe. Keyframe initial guesses are slightly off.
    """
    robot = Robot(
        id=0,
        frame=IDENTITY,
        P=1e-6 * jnp.eye(6),
        u=jnp.zeros(6),
        u_std=jnp.full((6,), 0.01),
        sensors=[0],
    )
    sensor = Sensor(
        id=0,
        robot=0,
        frame=IDENTITY,
        intrinsics=jnp.array([320.0, 240.0, 1.0, 0.0, 0.0]),
        distortion=jnp.array([200.0]),
    )
    landmarks = LandmarkPool(num_points)
    factors = FactorPool(num_frames * (num_points + 1))
    frames, observations = {}, {}
    trajectory = Trajectory(robot=0)
    options = EstimationOptions.from_dict({"nbrInits": [num_points, 0]})

    i = jnp.arange(num_points)
    points = jnp.stack(
        [jnp.sin(0.7 * i) * 2.0, jnp.cos(1.3 * i) * 1.5, 8.0 + (i % 5) * 0.5], axis=1
    )
    step = jnp.array([0.0, 0.0, 0.5, 1.0, 0.0, 0.0, 0.0])

    for k in range(num_frames):
        truth = IDENTITY.at[2].set(0.5 * k)
        robot.frame = truth.at[0].add(0.05 * jnp.sin(1.0 * k))
        if k == 0:
            frame = add_key_frame(robot, landmarks, trajectory, frames, factors, None, FactorKind.ABSOLUTE)
        else:
            motion = MotionAccumulator(robot=0, delta=step, cov=1e-4 * jnp.eye(6))
            frame = add_key_frame(robot, landmarks, trajectory, frames, factors, motion, FactorKind.MOTION)

        pixels = project_euc_into_omni_on_robot(
            truth, sensor.frame, sensor.intrinsics, sensor.distortion, points
        ).u
        raw = RawObservation(sensor=0, ids=tuple(range(num_points)), pixels=pixels)
        add_known_lmk_factors(robot, sensor, raw, landmarks, observations, frame, factors, options)
        init_new_landmarks(robot, sensor, raw, landmarks, observations, frame, factors, options, is_first=(k == 0))

    return robot, sensor, landmarks, observations, frames, factors


def run_benchmark(num_frames: int = 10, num_points: int = 20, max_iters: int = 20):
    print("=== Omni graph solve benchmark ===")
    print(f"num_frames = {num_frames}, num_points = {num_points}, max_iters = {max_iters}")

    robot, sensor, landmarks, observations, frames, factors = build_forward_chain(num_frames, num_points)
    cfg = GNConfig(max_iters=max_iters)

    t0 = time.time()
    report = solve_graph({0: robot}, {0: sensor}, landmarks, observations, frames, factors, cfg)
    t1 = time.time()

    print(f"Elapsed time: {(t1 - t0) * 1000:.3f} ms")
    print(f"Status: {report.status.value} after {report.iterations} iterations")
    print(f"Cost: {report.initial_cost:.6g} -> {report.final_cost:.6g}")
    print(f"frame0 (opt):   {frames[0].state}")
    print(f"frameN-1 (opt): {frames[num_frames - 1].state}")


if __name__ == "__main__":
    run_benchmark(num_frames=10, num_points=20, max_iters=20)
