# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Manifold labels and retractions for graphopt variables.

The optimizer solves for a tangent-space step and hands it to the problem,
which applies it per variable with the update rule of that variable's
manifold:

    • "se2": planar pose (x, y, theta); the step is added and the heading
      wrapped back to (-pi, pi].
    • "euclidean": plain addition.

Helpers:
    - `TYPE_TO_MANIFOLD`           (variable type -> manifold label)
    - `get_manifold_for_var_type`
    - `retract_block`              (x ⊕ d for one variable)

Extending
---------
To support another manifold, add its variable types to `TYPE_TO_MANIFOLD`
and a branch in `retract_block`. Jacobians are taken with respect to the
same additive parameterization, so the retraction must agree with it to
first order.
"""

from __future__ import annotations

from typing import Dict

import jax.numpy as jnp


TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose2": "se2",
    "point2": "euclidean",
    "scalar": "euclidean",
    "pose1d": "euclidean",
}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def wrap_angle(theta):
    """Wrap an angle (or array of angles) to (-pi, pi]."""
    return jnp.pi - jnp.mod(jnp.pi - theta, 2.0 * jnp.pi)


def retract_block(manifold: str, x: jnp.ndarray, d) -> jnp.ndarray:
    """Apply the tangent step ``d`` to a single variable value ``x``."""
    x_new = x + jnp.asarray(d, dtype=x.dtype)
    if manifold == "se2":
        x_new = x_new.at[2].set(wrap_angle(x_new[2]))
    return x_new
