import jax.numpy as jnp
import pytest

from omnigraph.core.config import EstimationOptions
from omnigraph.core.factor_pool import FactorPool
from omnigraph.core.math3d import compose_frames, rotvec_to_quat
from omnigraph.core.types import FactorKind, Frame, RawObservation, Sensor, landmark_key
from omnigraph.slam.landmarks import LandmarkPool, get_landmark_model
from omnigraph.slam.new_landmarks import init_new_landmarks, init_new_lmk, init_quota
from omnigraph.slam.projection import project_euc_into_omni_on_robot

WORLD = jnp.array(
    [
        [1.2, 2.3, 4.0],
        [0.5, 1.5, 5.0],
        [1.8, 2.6, 3.5],
        [1.0, 1.0, 6.0],
        [0.2, 2.9, 4.5],
        [1.6, 1.4, 5.5],
    ]
)


@pytest.fixture
def rig(make_frame):
    frame = Frame(id=0, robot=0, state=make_frame([1.0, 2.0, 0.0], rotvec_to_quat(jnp.array([0.05, 0.1, 0.0]))))
    sensor = Sensor(
        id=3,
        robot=0,
        frame=make_frame([0.1, 0.0, 0.05], rotvec_to_quat(jnp.array([0.0, -0.05, 0.02]))),
        intrinsics=jnp.array([320.0, 240.0, 1.0, 0.0, 0.0]),
        distortion=jnp.array([200.0, -5.0]),
    )
    pixels = project_euc_into_omni_on_robot(
        frame.state, sensor.frame, sensor.intrinsics, sensor.distortion, WORLD
    ).u
    raw = RawObservation(sensor=sensor.id, ids=tuple(range(100, 106)), pixels=pixels)
    return frame, sensor, raw


def test_new_landmark_lies_on_the_measured_ray(robot, rig):
    frame, sensor, raw = rig
    landmarks = LandmarkPool(10)
    observations = {}
    options = EstimationOptions()

    _, _, _, slot = init_new_lmk(robot, sensor, raw, landmarks, observations, frame, options)

    assert slot == 0
    lmk = landmarks[slot]
    assert lmk.id == 100
    assert lmk.kind == "ahmPnt"
    assert lmk.anchor_frame == frame.id

    anchor = compose_frames(frame.state, sensor.frame)[0:3]
    assert jnp.allclose(lmk.state[0:3], anchor, atol=1e-12)
    assert float(lmk.state[6]) == pytest.approx(options.init.rho_prior)

    to_point = WORLD[0] - anchor
    direction = lmk.state[3:6]
    assert float(jnp.linalg.norm(direction)) == pytest.approx(1.0)
    assert jnp.allclose(direction, to_point / jnp.linalg.norm(to_point), atol=1e-8)

    obs = observations[(sensor.id, slot)]
    assert obs.visible and obs.matched
    assert jnp.allclose(obs.innovation, 0.0, atol=1e-6)
    assert obs.U_l.shape == (2, 7)
    assert robot.landmarks == [slot]
    assert (lmk.n_search, lmk.n_match) == (1, 1)


def test_initialization_skips_associated_ids(robot, rig):
    frame, sensor, raw = rig
    landmarks = LandmarkPool(10)
    options = EstimationOptions()
    ids = []
    for _ in range(6):
        _, _, _, slot = init_new_lmk(robot, sensor, raw, landmarks, {}, frame, options)
        ids.append(landmarks[slot].id)
    assert ids == list(range(100, 106))

    assert init_new_lmk(robot, sensor, raw, landmarks, {}, frame, options)[3] is None


def test_euclidean_landmark_kind(robot, rig):
    frame, sensor, raw = rig
    landmarks = LandmarkPool(2)
    options = EstimationOptions.from_dict({"init": {"lmk_kind": "eucPnt", "rho_prior": 0.5}})
    observations = {}

    _, _, _, slot = init_new_lmk(robot, sensor, raw, landmarks, observations, frame, options)

    lmk = landmarks[slot]
    assert lmk.kind == "eucPnt"
    assert lmk.state.shape == (3,)
    anchor = compose_frames(frame.state, sensor.frame)[0:3]
    assert float(jnp.linalg.norm(lmk.state - anchor)) == pytest.approx(2.0)
    assert observations[(sensor.id, slot)].U_l.shape == (2, 3)
    assert jnp.allclose(observations[(sensor.id, slot)].innovation, 0.0, atol=1e-6)


def test_init_quota_first_and_later_phases():
    options = EstimationOptions.from_dict({"nbrInits": [7, 2]})
    assert init_quota(options, True) == 7
    assert init_quota(options, False) == 2


def test_initializations_respect_the_quota(robot, rig):
    frame, sensor, raw = rig
    landmarks = LandmarkPool(10)
    factors = FactorPool(20)
    observations = {}
    options = EstimationOptions.from_dict({"nbrInits": [4, 1]})

    first = init_new_landmarks(robot, sensor, raw, landmarks, observations, frame, factors, options, is_first=True)
    assert len(first) == 4
    later = init_new_landmarks(robot, sensor, raw, landmarks, observations, frame, factors, options)
    assert len(later) == 1
    assert landmarks.n_used() == 5

    # every new landmark is bound by exactly one measurement factor
    assert factors.n_used() == 5
    for slot in first + later:
        (fac_slot,) = landmarks[slot].factors
        fac = factors[fac_slot]
        assert fac.kind is FactorKind.MEASUREMENT
        assert fac.var_ids[1] == landmark_key(slot)
        assert fac_slot in frame.factors


def test_initialization_stops_when_factor_pool_is_full(robot, rig):
    frame, sensor, raw = rig
    landmarks = LandmarkPool(10)
    factors = FactorPool(3)
    factors.allocate()
    options = EstimationOptions.from_dict({"nbrInits": [5, 5]})

    created = init_new_landmarks(robot, sensor, raw, landmarks, {}, frame, factors, options, is_first=True)
    assert len(created) == 2
    assert landmarks.n_used() == 2
    assert factors.n_used() == 3


def test_initialization_stops_when_landmark_pool_is_full(robot, rig):
    frame, sensor, raw = rig
    landmarks = LandmarkPool(1)
    factors = FactorPool(10)
    options = EstimationOptions.from_dict({"nbrInits": [5, 5]})

    created = init_new_landmarks(robot, sensor, raw, landmarks, {}, frame, factors, options, is_first=True)
    assert created == [0]
    assert factors.n_used() == 1


def test_zero_prior_inverse_depth_is_rejected():
    with pytest.raises(ValueError):
        EstimationOptions.from_dict({"init": {"rho_prior": 0.0}})
    assert get_landmark_model("ahmPnt").dim == 7
