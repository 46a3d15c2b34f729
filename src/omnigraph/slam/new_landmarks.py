# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Initialization of new landmarks from single omnidirectional bearings.

A camera measures a direction, not a distance, so a new landmark is
created as an anchored homogeneous point:

    anchor    = sensor position in the world at the current keyframe
    direction = back-projected pixel ray, rotated into the world
    rho       = configured prior inverse depth

The solver then refines the depth as soon as the landmark is seen from a
second keyframe. Each estimation phase initializes at most a fixed number
of landmarks per sensor, with a larger quota on the first phase to seed the
map.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import jax.numpy as jnp

from omnigraph.core.config import EstimationOptions
from omnigraph.core.factor_pool import FactorPool
from omnigraph.core.math3d import compose_frames, quat_to_rot
from omnigraph.core.types import Frame, Observation, RawObservation, Robot, Sensor
from .known_landmarks import ObservationTable, make_meas_factor
from .landmarks import LandmarkPool, associated_ids, create_landmark, get_landmark_model
from .projection import back_project_omni

logger = logging.getLogger("omnigraph.new_landmarks")


def _first_unassociated(raw: RawObservation, landmarks: LandmarkPool) -> Optional[Tuple[int, jnp.ndarray]]:
    known = associated_ids(landmarks)
    for lmk_id, pixel in raw.as_dict().items():
        if lmk_id not in known:
            return lmk_id, pixel
    return None


def init_new_lmk(
    robot: Robot,
    sensor: Sensor,
    raw: RawObservation,
    landmarks: LandmarkPool,
    observations: ObservationTable,
    frame: Frame,
    options: EstimationOptions,
) -> Tuple[LandmarkPool, ObservationTable, Frame, Optional[int]]:
    """
    Create one landmark from the first raw measurement not yet in the map.

    The landmark slot is returned last, or None when every measurement is
    already associated or the landmark pool is full. The observation of the
    new landmark is filled in with its prediction and Jacobians so that a
    measurement factor can be built from it right away.
    """
    pick = _first_unassociated(raw, landmarks)
    if pick is None:
        return landmarks, observations, frame, None
    lmk_id, pixel = pick

    Sw = compose_frames(frame.state, sensor.frame)
    ray = quat_to_rot(Sw[3:7]) @ back_project_omni(pixel, sensor.intrinsics, sensor.distortion)

    model = get_landmark_model(options.init.lmk_kind)
    state = model.from_ray(Sw[0:3], ray, options.init.rho_prior)
    lmk = create_landmark(landmarks, lmk_id, model.kind, state, frame.id)
    if lmk is None:
        return landmarks, observations, frame, None

    proj = model.project(
        frame.state, sensor.frame, sensor.intrinsics, sensor.distortion, state, jacobians=True
    )
    observations[(sensor.id, lmk.slot)] = Observation(
        sensor=sensor.id,
        landmark=lmk.slot,
        measured=pixel,
        predicted=proj.u,
        depth=float(proj.s),
        innovation=pixel - proj.u,
        visible=True,
        matched=True,
        U_r=proj.U_r,
        U_s=proj.U_s,
        U_l=proj.U_l,
    )
    lmk.n_search = 1
    lmk.n_match = 1
    robot.landmarks.append(lmk.slot)

    logger.debug(
        "Initialized landmark %d in slot %d from sensor %d at frame %d",
        lmk_id, lmk.slot, sensor.id, frame.id,
    )
    return landmarks, observations, frame, lmk.slot


def init_quota(options: EstimationOptions, is_first: bool) -> int:
    first, later = options.map.nbr_inits
    return first if is_first else later


def init_new_landmarks(
    robot: Robot,
    sensor: Sensor,
    raw: RawObservation,
    landmarks: LandmarkPool,
    observations: ObservationTable,
    frame: Frame,
    factors: FactorPool,
    options: EstimationOptions,
    is_first: bool = False,
) -> List[int]:
    """
    Initialize up to `init_quota` landmarks and bind each with a measurement
    factor. Stops early when the factor pool is full or nothing is left to
    initialize. Returns the new landmark slots.
    """
    created: List[int] = []
    for _ in range(init_quota(options, is_first)):
        if not factors.has_free():
            logger.debug("Factor pool full; no more landmark initializations at frame %d", frame.id)
            break
        _, _, _, slot = init_new_lmk(robot, sensor, raw, landmarks, observations, frame, options)
        if slot is None:
            break
        fac = factors.allocate()
        make_meas_factor(landmarks[slot], observations[(sensor.id, slot)], frame, factors[fac], sensor)
        created.append(slot)
    return created
