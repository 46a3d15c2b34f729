# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Core typed data structures for omnigraph.

This module defines the lightweight containers that make up the estimation
graph. They store structure and current estimates only; every numerical
operation (projection, linearization, optimization) lives in the `slam` and
`optimization` layers and works on the JAX arrays held here.

Classes
-------
Robot
    Current pose estimate, pose covariance, control input and the sensors it
    carries.

Sensor
    Extrinsic frame in the robot, omnidirectional intrinsics
    ``[xc, yc, c, d, e]`` and radial polynomial ``[a0, a1, ...]``.

Landmark
    A slot of the landmark pool. ``state`` is ``[x, y, z, vx, vy, vz, rho]``
    for anchored homogeneous points (kind ``"ahmPnt"``) or ``[x, y, z]`` for
    Euclidean points (kind ``"eucPnt"``).

Frame / Trajectory
    Keyframes and the per-robot ordered list of keyframe ids.

Variable
    A keyframe or landmark state as seen by the factor graph.

Factor
    A slot of the factor pool: kind tag, connected variables, parameters,
    last residual and Jacobian blocks.

RawObservation / Observation
    The measurements fed by the outside world for one sensor, and the
    per (sensor, landmark) prediction computed at every estimation step.

MotionAccumulator
    Odometry integrated since the last keyframe.

Notes
-----
Frames are 7-vectors ``[tx, ty, tz, qw, qx, qy, qz]`` (scalar-first
quaternion). Graph variables are addressed with ``VarKey`` tuples,
``("frm", frame_id)`` or ``("lmk", landmark_slot)``.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NewType, Optional, Tuple

import jax.numpy as jnp

FrameId = NewType("FrameId", int)
FactorId = NewType("FactorId", int)
LandmarkSlot = NewType("LandmarkSlot", int)

VarKey = Tuple[str, int]

IDENTITY_FRAME = (0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0)


def frame_key(frame_id: int) -> VarKey:
    return ("frm", int(frame_id))


def landmark_key(slot: int) -> VarKey:
    return ("lmk", int(slot))


class FactorKind(str, Enum):
    ABSOLUTE = "absolute"
    MOTION = "motion"
    MEASUREMENT = "measurement"


@dataclass
class Robot:
    id: int
    frame: jnp.ndarray                 # (7,)
    P: jnp.ndarray                     # (6, 6) error-state covariance
    u: jnp.ndarray                     # (6,) linear + angular velocity
    u_std: jnp.ndarray                 # (6,)
    sensors: List[int] = field(default_factory=list)
    landmarks: List[int] = field(default_factory=list)  # visible landmark slots


@dataclass(frozen=True, eq=False)
class Sensor:
    id: int
    robot: int
    frame: jnp.ndarray                 # (7,) extrinsic, in robot frame
    intrinsics: jnp.ndarray            # (5,) [xc, yc, c, d, e]
    distortion: jnp.ndarray            # (K,) [a0, a1, ...]
    image_size: Tuple[int, int] = (640, 480)
    pixel_std: float = 1.0
    kind: str = "omniCam"


@dataclass
class Landmark:
    slot: int
    id: int = -1
    kind: str = "ahmPnt"
    state: Optional[jnp.ndarray] = None
    used: bool = False
    deprecated: bool = False
    anchor_frame: Optional[int] = None
    factors: List[int] = field(default_factory=list)
    n_search: int = 0
    n_match: int = 0


@dataclass
class Frame:
    id: FrameId
    robot: int
    state: jnp.ndarray                 # (7,)
    factors: List[int] = field(default_factory=list)


@dataclass
class Trajectory:
    robot: int
    frames: List[FrameId] = field(default_factory=list)

    @property
    def head(self) -> Optional[FrameId]:
        """Most recent keyframe, or None before the first one."""
        return self.frames[-1] if self.frames else None

    def __len__(self) -> int:
        return len(self.frames)


@dataclass
class Variable:
    """Optimization variable: a keyframe or a landmark state."""
    id: VarKey
    type: str          # "frame", "ahmPnt", "eucPnt"
    value: Any


@dataclass
class Factor:
    slot: int
    kind: Optional[FactorKind] = None
    var_ids: Tuple[VarKey, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)
    residual: Optional[jnp.ndarray] = None
    jacobians: Dict[VarKey, jnp.ndarray] = field(default_factory=dict)
    used: bool = False

    @property
    def frame_ids(self) -> Tuple[int, ...]:
        return tuple(k[1] for k in self.var_ids if k[0] == "frm")

    @property
    def landmark_slot(self) -> Optional[int]:
        for k in self.var_ids:
            if k[0] == "lmk":
                return k[1]
        return None


@dataclass
class RawObservation:
    """Measurements delivered by one sensor at the current time step."""
    sensor: int
    ids: Tuple[int, ...] = ()
    pixels: Any = None                 # (N, 2)

    @classmethod
    def empty(cls, sensor: int) -> "RawObservation":
        return cls(sensor=sensor, ids=(), pixels=jnp.zeros((0, 2)))

    def as_dict(self) -> Dict[int, jnp.ndarray]:
        if not self.ids:
            return {}
        pixels = jnp.asarray(self.pixels)
        return {int(i): pixels[n] for n, i in enumerate(self.ids)}


@dataclass
class Observation:
    sensor: int
    landmark: int
    measured: Optional[jnp.ndarray] = None
    predicted: Optional[jnp.ndarray] = None
    depth: Optional[float] = None
    innovation: Optional[jnp.ndarray] = None
    visible: bool = False
    matched: bool = False
    U_r: Optional[jnp.ndarray] = None
    U_s: Optional[jnp.ndarray] = None
    U_l: Optional[jnp.ndarray] = None


@dataclass
class MotionAccumulator:
    robot: int
    delta: jnp.ndarray                 # (7,) motion since the last keyframe
    cov: jnp.ndarray                   # (6, 6)
    n_steps: int = 0
