"""
Two robots with omnidirectional cameras driving circles through a field of
point landmarks.

The simulator below plays both collaborator roles of the estimation loop:
it integrates the true robot motion, returns noisy controls, and projects
the true landmarks into each camera with pixel noise. The estimator only
ever sees the controls and the (id, pixel) pairs.
"""

from __future__ import annotations

import logging

import jax

jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp  # noqa: E402
import numpy as np  # noqa: E402

from omnigraph.core.config import EstimationOptions, RobotConfig, SensorConfig, TimeConfig  # noqa: E402
from omnigraph.core.math3d import compose_frames, rotvec_to_quat  # noqa: E402
from omnigraph.core.types import RawObservation  # noqa: E402
from omnigraph.slam.projection import is_visible, project_euc_into_omni_on_robot  # noqa: E402
from omnigraph.world.model import bootstrap, create_graph_structures, format_graph, run  # noqa: E402

# Camera looks along the robot's forward (x) axis, image y pointing down.
CAMERA_MOUNT = (0.0, 0.0, 0.2, 0.5, -0.5, 0.5, -0.5)


class CircleWorld:
    def __init__(self, robot_cfgs, sensor_cfgs, controls, n_landmarks=60, pixel_noise=0.5, seed=0):
        self.rng = np.random.default_rng(seed)
        self.truth = {cfg.id: jnp.asarray(cfg.frame) * 1.0 for cfg in robot_cfgs}
        self.u_std = {cfg.id: np.asarray(cfg.u_std) for cfg in robot_cfgs}
        self.controls = controls
        self.sensors = {cfg.id: cfg for cfg in sensor_cfgs}
        self.pixel_noise = pixel_noise

        # Landmarks on a ring wall around the workspace
        ang = self.rng.uniform(0.0, 2.0 * np.pi, n_landmarks)
        rad = self.rng.uniform(6.0, 9.0, n_landmarks)
        height = self.rng.uniform(-1.0, 2.0, n_landmarks)
        self.points = jnp.asarray(np.stack([rad * np.cos(ang), rad * np.sin(ang), height], axis=1))

    def control(self, robot_id, clock):
        u = jnp.asarray(self.controls[robot_id])
        inc = u * clock.dt
        step = jnp.concatenate([inc[0:3], rotvec_to_quat(inc[3:6])])
        self.truth[robot_id] = compose_frames(self.truth[robot_id], step)
        noise = self.rng.normal(size=6) * self.u_std[robot_id]
        return u + jnp.asarray(noise)

    def observe(self, sensor_id, clock):
        cfg = self.sensors[sensor_id]
        proj = project_euc_into_omni_on_robot(
            self.truth[cfg.robot],
            jnp.asarray(cfg.frame),
            jnp.asarray(cfg.intrinsics),
            jnp.asarray(cfg.distortion),
            self.points,
        )
        ids, pixels = [], []
        for i in range(self.points.shape[0]):
            if is_visible(proj.u[i], proj.s[i], cfg.image_size):
                ids.append(i)
                pixels.append(np.asarray(proj.u[i]) + self.rng.normal(size=2) * self.pixel_noise)
        if not ids:
            return RawObservation.empty(sensor_id)
        return RawObservation(sensor=sensor_id, ids=tuple(ids), pixels=jnp.asarray(np.stack(pixels)))


def setup():
    robots = [
        RobotConfig(id=1, frame=(0.0, -2.0, 0.0, 1.0, 0.0, 0.0, 0.0)),
        RobotConfig(id=2, frame=(0.0, 2.0, 0.0, 1.0, 0.0, 0.0, 0.0)),
    ]
    sensors = [
        SensorConfig(id=1, robot=1, frame=CAMERA_MOUNT, distortion=(150.0, -0.5)),
        SensorConfig(id=2, robot=2, frame=CAMERA_MOUNT, distortion=(150.0, -0.5)),
    ]
    controls = {
        1: (0.5, 0.0, 0.0, 0.0, 0.0, 0.1),
        2: (0.5, 0.0, 0.0, 0.0, 0.0, -0.1),
    }
    options = EstimationOptions.from_dict(
        {
            "kfrmPeriod": 5,
            "nbrInits": [10, 3],
            "landmarkCapacity": 120,
            "factorCapacity": 4000,
        }
    )
    ctx = create_graph_structures(robots, sensors, TimeConfig(dt=0.1, first_frame=1, last_frame=100), options)
    world = CircleWorld(robots, sensors, controls)
    return ctx, world


def print_errors(ctx, world, label: str):
    print(f"\n=== {label} ===")
    for rid, robot in ctx.robots.items():
        err = float(jnp.linalg.norm(robot.frame[0:3] - world.truth[rid][0:3]))
        print(f"robot {rid}: t=({', '.join(f'{float(v):.3f}' for v in robot.frame[0:3])}), position error {err:.3f} m")


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    ctx, world = setup()

    bootstrap(ctx)
    reports = run(ctx, world, world)

    print_errors(ctx, world, label="FINAL STATE")
    statuses = [r.status.value for r in reports]
    print(f"{len(reports)} solves: {', '.join(sorted(set(statuses)))}")
    print(format_graph(ctx))


if __name__ == "__main__":
    main()
