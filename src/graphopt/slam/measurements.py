# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Euclidean measurement residuals and noise whitening.

A residual function maps the stacked values of a factor's variables and the
factor's params to r ∈ ℝᵏ. Register it per factor type with
`FactorGraph.register_residual`; the optimizer minimizes ½ Σ ||r||², so any
noise model has to be folded into r. That is what `whiten` does.

    • `prior_residual`:  r = x − target
    • `odom_residual`:   r = (x_j − x_i) − measurement

Noise keys recognised in params
-------------------------------
    "sigma"   standard deviation(s)        r' = r / σ
    "weight"  scalar information w         r' = √w · r
              vector sqrt-information      r' = w ⊙ r

"sigma" wins when both are present. SE(2) residuals live in `slam.pose2`
and go through the same `whiten`.
"""

from __future__ import annotations
from typing import Dict

import jax.numpy as jnp

Params = Dict[str, jnp.ndarray]


def whiten(r: jnp.ndarray, params: Params) -> jnp.ndarray:
    sigma = params.get("sigma")
    if sigma is not None:
        return r / jnp.asarray(sigma)

    w = params.get("weight")
    if w is None:
        return r
    w = jnp.asarray(w)
    # scalar: information, vector: per-component sqrt-information
    return jnp.sqrt(w) * r if w.ndim == 0 else w * r


def sigma_to_weight(sigma):
    """Scalar information 1 / σ² for a standard deviation (or array of them)."""
    s = jnp.asarray(sigma)
    return 1.0 / (s * s)


def prior_residual(x: jnp.ndarray, params: Params) -> jnp.ndarray:
    return whiten(x - params["target"], params)


def odom_residual(x: jnp.ndarray, params: Params) -> jnp.ndarray:
    """x = [x_i, x_j], both of the same dimension."""
    half = x.shape[0] // 2
    delta = x[half:] - x[:half]
    return whiten(delta - params["measurement"], params)
