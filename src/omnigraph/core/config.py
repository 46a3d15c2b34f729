# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Configuration objects for the estimation core.

Every option group is a plain dataclass validated in ``__post_init__``.
`EstimationOptions.from_dict` accepts the flat option names used by
experiment scripts (``kfrmPeriod``, ``nbrInits``, ``landmarkCapacity``,
``factorCapacity``) in addition to the nested dataclass fields.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Sequence, Tuple

from .types import IDENTITY_FRAME


@dataclass
class RobotConfig:
    id: int
    frame: Sequence[float] = IDENTITY_FRAME
    u_std: Sequence[float] = (0.01, 0.01, 0.01, 0.001, 0.001, 0.001)
    u: Sequence[float] = (0.0,) * 6

    def __post_init__(self) -> None:
        if len(self.frame) != 7:
            raise ValueError(f"Robot {self.id}: frame must have 7 entries, got {len(self.frame)}")
        if len(self.u_std) != 6 or len(self.u) != 6:
            raise ValueError(f"Robot {self.id}: control and its noise must have 6 entries")


@dataclass
class SensorConfig:
    id: int
    robot: int
    frame: Sequence[float] = IDENTITY_FRAME
    intrinsics: Sequence[float] = (320.0, 240.0, 1.0, 0.0, 0.0)   # xc, yc, c, d, e
    distortion: Sequence[float] = (200.0,)                          # a0, a1, ...
    image_size: Tuple[int, int] = (640, 480)
    pixel_std: float = 1.0

    def __post_init__(self) -> None:
        if len(self.frame) != 7:
            raise ValueError(f"Sensor {self.id}: frame must have 7 entries")
        if len(self.intrinsics) != 5:
            raise ValueError(f"Sensor {self.id}: intrinsics must be [xc, yc, c, d, e]")
        if len(self.distortion) == 0:
            raise ValueError(f"Sensor {self.id}: distortion polynomial is empty")
        if self.pixel_std <= 0:
            raise ValueError(f"Sensor {self.id}: pixel_std must be positive")


@dataclass
class TimeConfig:
    dt: float = 0.1
    first_frame: int = 1
    last_frame: int = 100

    def __post_init__(self) -> None:
        if self.dt <= 0:
            raise ValueError("dt must be positive")
        if self.last_frame < self.first_frame:
            raise ValueError("last_frame must not precede first_frame")


@dataclass
class GNConfig:
    max_iters: int = 20
    damping: float = 1e-3       # LM-style diagonal damping (also its floor)
    max_step_norm: float = 1.0  # clamp step size for stability
    tol: float = 1e-6           # relative cost decrease regarded as converged
    damping_factor: float = 10.0
    max_damping: float = 1e8
    rho_min: float = 1e-6       # inverse depth clamp for anchored points


@dataclass
class MapOptions:
    kfrm_period: int = 5
    nbr_inits: Tuple[int, int] = (10, 3)   # first estimation phase, later phases
    landmark_capacity: int = 200
    factor_capacity: int = 2000

    def __post_init__(self) -> None:
        self.nbr_inits = tuple(int(n) for n in self.nbr_inits)
        if self.kfrm_period < 1:
            raise ValueError("kfrm_period must be >= 1")
        if len(self.nbr_inits) != 2 or min(self.nbr_inits) < 0:
            raise ValueError("nbr_inits must be two non-negative quotas")
        if self.landmark_capacity < 0 or self.factor_capacity < 0:
            raise ValueError("pool capacities must be non-negative")


@dataclass
class InitOptions:
    rho_prior: float = 0.3      # inverse depth given to a landmark at first sight
    lmk_kind: str = "ahmPnt"

    def __post_init__(self) -> None:
        if not self.rho_prior > 0:
            raise ValueError("rho_prior must be positive")


@dataclass
class LandmarkOptions:
    min_searches: int = 10
    min_match_ratio: float = 0.3


@dataclass
class EstimationOptions:
    map: MapOptions = field(default_factory=MapOptions)
    init: InitOptions = field(default_factory=InitOptions)
    landmarks: LandmarkOptions = field(default_factory=LandmarkOptions)
    solver: GNConfig = field(default_factory=GNConfig)

    _FLAT_KEYS = {
        "kfrmPeriod": ("map", "kfrm_period"),
        "nbrInits": ("map", "nbr_inits"),
        "landmarkCapacity": ("map", "landmark_capacity"),
        "factorCapacity": ("map", "factor_capacity"),
    }

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "EstimationOptions":
        groups: Dict[str, Dict[str, Any]] = {"map": {}, "init": {}, "landmarks": {}, "solver": {}}
        for key, value in options.items():
            if key in cls._FLAT_KEYS:
                group, name = cls._FLAT_KEYS[key]
                groups[group][name] = value
            elif key in groups and isinstance(value, Mapping):
                groups[key].update(value)
            else:
                raise ValueError(f"Unknown estimation option '{key}'")
        return cls(
            map=MapOptions(**groups["map"]),
            init=InitOptions(**groups["init"]),
            landmarks=LandmarkOptions(**groups["landmarks"]),
            solver=GNConfig(**groups["solver"]),
        )
