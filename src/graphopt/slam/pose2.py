# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Planar pose-graph SLAM.

Poses are SE(2) elements stored as (x, y, theta). This module supplies the
residuals and a `Pose2Graph` builder for the classic 2D pose-graph problem:
priors anchor poses, relative-pose constraints come from odometry and loop
closures, hard constraints pin a pose.

    • `pose2_compose(a, b)`        a ∘ b
    • `pose2_between(a, b)`        a⁻¹ ∘ b
    • `pose2_prior_residual`       target⁻¹ ∘ x  (heading wrapped)
    • `pose2_between_residual`     measurement⁻¹ ∘ (x_i⁻¹ ∘ x_j)
    • `circle(n, radius)`          n poses evenly spaced on a circle

Residual heading components are wrapped to (-π, π] so that errors near ±π
do not jump by 2π.
"""

from __future__ import annotations

import math
from typing import Dict

import jax.numpy as jnp

from graphopt.core.factor_graph import FactorGraph
from graphopt.core.types import Factor, FactorId, NodeId, Values, Variable
from .manifold import wrap_angle
from .measurements import whiten

POSE2_PRIOR = "prior_pose2"
POSE2_BETWEEN = "between_pose2"

# Information used for hard constraints (sigma = 1e-4).
HARD_CONSTRAINT_WEIGHT = 1e8


def pose2_compose(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    c, s = jnp.cos(a[2]), jnp.sin(a[2])
    return jnp.array([
        a[0] + c * b[0] - s * b[1],
        a[1] + s * b[0] + c * b[1],
        wrap_angle(a[2] + b[2]),
    ])


def pose2_between(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    c, s = jnp.cos(a[2]), jnp.sin(a[2])
    dx, dy = b[0] - a[0], b[1] - a[1]
    return jnp.array([
        c * dx + s * dy,
        -s * dx + c * dy,
        wrap_angle(b[2] - a[2]),
    ])


def pose2_prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    r = pose2_between(params["target"], x)
    return whiten(r, params)


def pose2_between_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """x = [pose_i, pose_j]; residual = measurement⁻¹ ∘ (pose_i⁻¹ ∘ pose_j)."""
    predicted = pose2_between(x[:3], x[3:])
    r = pose2_between(params["measurement"], predicted)
    return whiten(r, params)


def circle(n: int, radius: float = 1.0) -> Values:
    """
    ``n`` poses evenly spaced on a circle of ``radius`` around the origin,
    keys 0..n-1, each heading tangent to the circle (counter-clockwise).
    """
    if n < 1:
        raise ValueError(f"circle needs at least one pose, got n={n}")
    poses = {}
    dtheta = 2.0 * math.pi / n
    for i in range(n):
        theta = i * dtheta
        poses[NodeId(i)] = jnp.array([
            radius * math.cos(theta),
            radius * math.sin(theta),
            float(wrap_angle(math.pi / 2 + theta)),
        ])
    return Values(poses)


def _noise_params(params: Dict[str, jnp.ndarray], weight, sigma) -> Dict[str, jnp.ndarray]:
    if weight is not None:
        params["weight"] = jnp.asarray(weight, dtype=jnp.float64)
    if sigma is not None:
        params["sigma"] = jnp.asarray(sigma, dtype=jnp.float64)
    return params


class Pose2Graph(FactorGraph):
    """FactorGraph with the SE(2) residuals registered and builder helpers."""

    def __init__(self) -> None:
        super().__init__()
        self.register_residual(POSE2_PRIOR, pose2_prior_residual)
        self.register_residual(POSE2_BETWEEN, pose2_between_residual)

    def _next_factor_id(self) -> FactorId:
        return FactorId(len(self.factors))

    def add_pose(self, key: int, initial) -> NodeId:
        nid = NodeId(key)
        self.add_variable(Variable(id=nid, type="pose2", value=jnp.asarray(initial, dtype=jnp.float64)))
        return nid

    def _ensure_pose(self, key: int, initial) -> None:
        if NodeId(key) not in self.variables:
            self.add_pose(key, initial)

    def add_prior(self, key: int, pose, weight=None, sigma=None) -> FactorId:
        """
        Prior factor pulling pose ``key`` towards ``pose``. Adds the pose,
        initialised at ``pose``, if it does not exist yet.
        """
        pose = jnp.asarray(pose, dtype=jnp.float64)
        self._ensure_pose(key, pose)
        params = _noise_params({"target": pose}, weight, sigma)
        fid = self._next_factor_id()
        self.add_factor(Factor(id=fid, type=POSE2_PRIOR, var_ids=(NodeId(key),), params=params))
        return fid

    def add_constraint(self, i: int, j: int, measurement, weight=None, sigma=None) -> FactorId:
        """Relative-pose constraint: pose_j observed at ``measurement`` in pose_i's frame."""
        measurement = jnp.asarray(measurement, dtype=jnp.float64)
        for key in (i, j):
            if NodeId(key) not in self.variables:
                raise ValueError(f"Pose {key} must be added before constraining it")
        params = _noise_params({"measurement": measurement}, weight, sigma)
        fid = self._next_factor_id()
        self.add_factor(
            Factor(id=fid, type=POSE2_BETWEEN, var_ids=(NodeId(i), NodeId(j)), params=params)
        )
        return fid

    def add_hard_constraint(self, key: int, pose) -> FactorId:
        """Pin pose ``key`` to ``pose`` with a very stiff prior."""
        return self.add_prior(key, pose, weight=HARD_CONSTRAINT_WEIGHT)
