import jax.numpy as jnp
import pytest

from omnigraph.core.config import EstimationOptions
from omnigraph.core.factor_pool import FactorPool
from omnigraph.core.types import FactorKind, RawObservation, frame_key, landmark_key
from omnigraph.slam.ahm import ahm_from_ray
from omnigraph.slam.keyframes import add_key_frame
from omnigraph.slam.known_landmarks import add_known_lmk_factors
from omnigraph.slam.landmarks import create_landmark
from omnigraph.slam.projection import project_euc_into_omni_on_robot

POINTS = [(0.0, 0.0, 5.0), (0.5, 0.0, 5.0), (0.0, 0.5, 5.0), (-0.5, -0.3, 4.0)]


def _add_points(landmarks, points, first_id=10):
    for i, p in enumerate(points):
        p = jnp.asarray(p)
        d = jnp.linalg.norm(p)
        create_landmark(landmarks, first_id + i, "ahmPnt", ahm_from_ray(jnp.zeros(3), p / d, 1.0 / d), 0)


def _raw(sensor, frame, points, ids, offset=0.5):
    pixels = project_euc_into_omni_on_robot(
        frame.state, sensor.frame, sensor.intrinsics, sensor.distortion, jnp.asarray(points)
    ).u
    return RawObservation(sensor=sensor.id, ids=tuple(ids), pixels=pixels + offset)


def test_measurements_fill_the_pool_and_extra_ones_are_skipped(robot, sensor, landmarks, trajectory):
    """Absolute keyframe takes one slot, three measurements take the rest, the fourth is skipped."""
    factors = FactorPool(4)
    frames = {}
    frame = add_key_frame(robot, landmarks, trajectory, frames, factors, None, FactorKind.ABSOLUTE)
    assert factors.n_used() == 1

    _add_points(landmarks, POINTS)
    raw = _raw(sensor, frame, POINTS, (10, 11, 12, 13))
    observations = {}

    created = add_known_lmk_factors(
        robot, sensor, raw, landmarks, observations, frame, factors, EstimationOptions()
    )

    assert created == [1, 2, 3]
    assert factors.n_used() == factors.capacity()
    assert all(observations[(sensor.id, s)].visible for s in range(4))
    assert robot.landmarks == [0, 1, 2, 3]
    assert landmarks[3].factors == []
    assert sorted(frame.factors) == [0, 1, 2, 3]

    fac = factors[1]
    assert fac.kind is FactorKind.MEASUREMENT
    assert fac.var_ids == (frame_key(frame.id), landmark_key(0))
    assert jnp.allclose(fac.residual, jnp.array([0.5, 0.5]), atol=1e-9)
    assert jnp.allclose(fac.jacobians[landmark_key(0)], -observations[(sensor.id, 0)].U_l)
    assert landmarks[0].factors == [1]


def test_small_pool_gives_no_error_when_exhausted(robot, sensor, landmarks, trajectory):
    factors = FactorPool(3)
    frame = add_key_frame(robot, landmarks, trajectory, {}, factors, None, FactorKind.ABSOLUTE)
    _add_points(landmarks, POINTS[:3])
    raw = _raw(sensor, frame, POINTS[:3], (10, 11, 12))

    created = add_known_lmk_factors(robot, sensor, raw, landmarks, {}, frame, factors, EstimationOptions())
    assert len(created) == 2
    assert factors.n_used() == 3


def test_landmark_behind_camera_is_invisible(robot, sensor, landmarks, trajectory, factors):
    frame = add_key_frame(robot, landmarks, trajectory, {}, factors, None, FactorKind.ABSOLUTE)
    create_landmark(landmarks, 1, "ahmPnt", ahm_from_ray(jnp.zeros(3), jnp.array([0.0, 0.0, -1.0]), 0.2))
    raw = RawObservation(sensor=sensor.id, ids=(1,), pixels=jnp.array([[320.0, 240.0]]))
    observations = {}

    created = add_known_lmk_factors(robot, sensor, raw, landmarks, observations, frame, factors, EstimationOptions())

    assert created == []
    assert not observations[(sensor.id, 0)].visible
    assert landmarks[0].n_search == 0
    assert factors.n_used() == 1


def test_unmatched_landmark_counts_a_search_but_no_factor(robot, sensor, landmarks, trajectory, factors):
    frame = add_key_frame(robot, landmarks, trajectory, {}, factors, None, FactorKind.ABSOLUTE)
    _add_points(landmarks, POINTS[:2])
    raw = _raw(sensor, frame, POINTS[:1], (10,))
    observations = {}

    created = add_known_lmk_factors(robot, sensor, raw, landmarks, observations, frame, factors, EstimationOptions())

    assert created == [1]
    matched, missed = observations[(sensor.id, 0)], observations[(sensor.id, 1)]
    assert matched.visible and matched.matched
    assert not missed.visible and not missed.matched
    assert missed.predicted is not None
    assert (landmarks[0].n_search, landmarks[0].n_match) == (1, 1)
    assert (landmarks[1].n_search, landmarks[1].n_match) == (1, 0)


def test_degenerate_landmark_is_skipped(robot, sensor, landmarks, trajectory, factors):
    frame = add_key_frame(robot, landmarks, trajectory, {}, factors, None, FactorKind.ABSOLUTE)
    lmk = create_landmark(landmarks, 1, "ahmPnt", ahm_from_ray(jnp.zeros(3), jnp.array([0.0, 0.0, 1.0]), 0.2))
    lmk.state = lmk.state.at[6].set(0.0)
    raw = RawObservation(sensor=sensor.id, ids=(1,), pixels=jnp.array([[320.0, 240.0]]))
    observations = {}

    assert add_known_lmk_factors(robot, sensor, raw, landmarks, observations, frame, factors, EstimationOptions()) == []
    assert not observations[(sensor.id, 0)].visible
    assert observations[(sensor.id, 0)].predicted is None


@pytest.mark.parametrize("offset", [0.0, -2.0])
def test_innovation_is_measured_minus_predicted(robot, sensor, landmarks, trajectory, factors, offset):
    frame = add_key_frame(robot, landmarks, trajectory, {}, factors, None, FactorKind.ABSOLUTE)
    _add_points(landmarks, POINTS[1:2])
    observations = {}
    add_known_lmk_factors(
        robot, sensor, _raw(sensor, frame, POINTS[1:2], (10,), offset), landmarks, observations,
        frame, factors, EstimationOptions(),
    )
    obs = observations[(sensor.id, 0)]
    assert jnp.allclose(obs.innovation, obs.measured - obs.predicted)
    assert jnp.allclose(obs.innovation, offset, atol=1e-9)
    assert obs.depth == pytest.approx(float(jnp.linalg.norm(jnp.asarray(POINTS[1]))))
