# Copyright (c) 2025.
# This file is part of omnigraph, released under the MIT License.
"""Exceptions raised by the estimation core."""

from __future__ import annotations


class OmniGraphError(Exception):
    """Base class for every error raised by omnigraph."""


class UnsupportedOperationError(OmniGraphError, NotImplementedError):
    """Raised when a call asks for something the model cannot provide,
    e.g. exact Jacobians for a stacked multi-point projection."""


class DegenerateInverseDepthError(OmniGraphError, ValueError):
    """Raised when an anchored homogeneous point has ``rho`` at (or near) zero
    or a non-finite inverse depth."""


class FactorPoolExhaustedError(OmniGraphError, RuntimeError):
    """Raised when a keyframe cannot be bound because the factor pool is full."""
