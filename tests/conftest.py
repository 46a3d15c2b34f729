from __future__ import annotations

import jax

# Finite-difference checks and the dense normal equations need double precision.
jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp  # noqa: E402
import pytest  # noqa: E402

from omnigraph.core.factor_pool import FactorPool  # noqa: E402
from omnigraph.core.math3d import frame_identity, quat_normalize  # noqa: E402
from omnigraph.core.types import Robot, Sensor, Trajectory  # noqa: E402
from omnigraph.slam.landmarks import LandmarkPool  # noqa: E402


def _make_frame(t, q=(1.0, 0.0, 0.0, 0.0)) -> jnp.ndarray:
    return jnp.concatenate([jnp.asarray(t, dtype=jnp.float64), quat_normalize(jnp.asarray(q, dtype=jnp.float64))])


def _num_jac(f, x, eps: float = 1e-6) -> jnp.ndarray:
    """Central finite-difference Jacobian of f at x (columns = entries of x)."""
    x = jnp.asarray(x, dtype=jnp.float64)
    cols = []
    for i in range(x.shape[0]):
        dx = jnp.zeros_like(x).at[i].set(eps)
        cols.append((jnp.atleast_1d(f(x + dx)) - jnp.atleast_1d(f(x - dx))) / (2.0 * eps))
    return jnp.stack(cols, axis=-1)


@pytest.fixture
def make_frame():
    return _make_frame


@pytest.fixture
def num_jac():
    return _num_jac


@pytest.fixture
def robot() -> Robot:
    return Robot(
        id=0,
        frame=frame_identity() * 1.0,
        P=1e-6 * jnp.eye(6),
        u=jnp.zeros(6),
        u_std=jnp.array([0.01, 0.01, 0.01, 0.001, 0.001, 0.001]),
        sensors=[0],
    )


@pytest.fixture
def sensor() -> Sensor:
    """Forward-looking (z) omni camera at the robot origin."""
    return Sensor(
        id=0,
        robot=0,
        frame=frame_identity() * 1.0,
        intrinsics=jnp.array([320.0, 240.0, 1.0, 0.0, 0.0]),
        distortion=jnp.array([200.0]),
        image_size=(640, 480),
        pixel_std=1.0,
    )


@pytest.fixture
def trajectory() -> Trajectory:
    return Trajectory(robot=0)


@pytest.fixture
def landmarks() -> LandmarkPool:
    return LandmarkPool(10)


@pytest.fixture
def factors() -> FactorPool:
    return FactorPool(20)
