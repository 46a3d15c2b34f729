# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Measurement factors for landmarks already in the map.

At every keyframe each used landmark is projected into each sensor with the
current estimates. The resulting `Observation` holds the predicted pixel,
the depth proxy and the Jacobian blocks; it is marked visible when the
prediction falls in the image with positive depth and the sensor actually
reported that landmark. Visible landmarks get a measurement factor binding
the keyframe and the landmark, as long as the factor pool has room.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

import jax.numpy as jnp

from omnigraph.core.config import EstimationOptions
from omnigraph.core.factor_pool import FactorPool
from omnigraph.core.types import (
    Factor,
    FactorKind,
    Frame,
    Landmark,
    Observation,
    RawObservation,
    Robot,
    Sensor,
    frame_key,
    landmark_key,
)
from .landmarks import LandmarkPool, get_landmark_model
from .measurements import sigma_to_sqrt_info
from .projection import is_visible

logger = logging.getLogger("omnigraph.known_landmarks")

ObservationTable = Dict[Tuple[int, int], Observation]


def make_meas_factor(
    landmark: Landmark,
    observation: Observation,
    frame: Frame,
    factor: Factor,
    sensor: Sensor,
) -> Tuple[Landmark, Frame, Factor]:
    """
    Fill an allocated factor slot with a pixel measurement of ``landmark``
    from ``frame``, and link it to both.

    The residual and Jacobians are taken from ``observation``:
    r = measured − predicted, J_frame = −U_r, J_landmark = −U_l.
    """
    fk = frame_key(frame.id)
    lk = landmark_key(landmark.slot)
    measured = jnp.asarray(observation.measured)

    factor.kind = FactorKind.MEASUREMENT
    factor.var_ids = (fk, lk)
    factor.params = {
        "measurement": measured,
        "sensor": sensor.id,
        "sensor_frame": sensor.frame,
        "intrinsics": sensor.intrinsics,
        "distortion": sensor.distortion,
        "lmk_kind": landmark.kind,
        "sqrt_info": sigma_to_sqrt_info(sensor.pixel_std, 2),
    }
    factor.residual = measured - observation.predicted
    factor.jacobians = {fk: -observation.U_r, lk: -observation.U_l}

    frame.factors.append(factor.slot)
    landmark.factors.append(factor.slot)
    return landmark, frame, factor


def observe_landmark(
    landmark: Landmark,
    sensor: Sensor,
    frame: Frame,
    measured: Dict[int, jnp.ndarray],
) -> Observation:
    """Predict ``landmark`` in ``sensor`` from ``frame`` and decide visibility."""
    obs = Observation(sensor=sensor.id, landmark=landmark.slot)
    model = get_landmark_model(landmark.kind)
    if not model.is_valid(landmark.state):
        logger.debug("Landmark %d has a degenerate state; not observable", landmark.id)
        return obs
    proj = model.project(
        frame.state,
        sensor.frame,
        sensor.intrinsics,
        sensor.distortion,
        landmark.state,
        jacobians=True,
    )

    obs.predicted = proj.u
    obs.depth = float(proj.s)
    obs.U_r, obs.U_s, obs.U_l = proj.U_r, proj.U_s, proj.U_l

    z = measured.get(landmark.id)
    obs.matched = z is not None
    in_view = is_visible(proj.u, proj.s, sensor.image_size)
    if in_view:
        landmark.n_search += 1
        if obs.matched:
            landmark.n_match += 1

    if obs.matched:
        obs.measured = jnp.asarray(z)
        obs.innovation = obs.measured - proj.u
    obs.visible = in_view and obs.matched
    return obs


def add_known_lmk_factors(
    robot: Robot,
    sensor: Sensor,
    raw: RawObservation,
    landmarks: LandmarkPool,
    observations: ObservationTable,
    frame: Frame,
    factors: FactorPool,
    options: EstimationOptions,
) -> List[int]:
    """
    Observe every used landmark from ``frame`` and add measurement factors
    for the visible ones.

    Observations are stored under ``(sensor.id, landmark.slot)`` and visible
    slots appended to ``robot.landmarks``. When the factor pool runs out the
    remaining visible landmarks are observed but left without a factor for
    this keyframe. Returns the slots of the factors created.
    """
    measured = raw.as_dict()
    created: List[int] = []
    n_visible = 0

    for lmk in list(landmarks):
        obs = observe_landmark(lmk, sensor, frame, measured)
        observations[(sensor.id, lmk.slot)] = obs
        if not obs.visible:
            continue
        n_visible += 1
        robot.landmarks.append(lmk.slot)

        slot = factors.allocate()
        if slot is None:
            logger.debug(
                "Factor pool full; skipping measurement of landmark %d in sensor %d",
                lmk.id, sensor.id,
            )
            continue
        make_meas_factor(lmk, obs, frame, factors[slot], sensor)
        created.append(slot)

    logger.debug(
        "Sensor %d at frame %d: %d/%d known landmarks visible, %d factors added (%s)",
        sensor.id, frame.id, n_visible, landmarks.n_used(), len(created), options.init.lmk_kind,
    )
    return created
