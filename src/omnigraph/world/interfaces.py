# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""
Collaborators of the estimation loop.

The estimator never generates ground truth and never draws anything. A
simulator (or a real robot) feeds it controls and pixel measurements, and a
renderer may consume read-only snapshots of the graph. These protocols
describe what `world.model.run` expects from them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import jax.numpy as jnp

from omnigraph.core.types import RawObservation

if TYPE_CHECKING:
    from .model import Clock, GraphSnapshot


class MotionSource(Protocol):
    def control(self, robot_id: int, clock: "Clock") -> jnp.ndarray:
        """Noisy body-velocity control ``[v, ω]`` (6,) applied at this step."""
        ...


class ObservationSource(Protocol):
    def observe(self, sensor_id: int, clock: "Clock") -> RawObservation:
        """Pixel measurements of the landmarks seen by ``sensor_id`` now."""
        ...


class VisualizationSink(Protocol):
    def render(self, snapshot: "GraphSnapshot", current_frame: int) -> None:
        ...
