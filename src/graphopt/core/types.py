# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Core typed data structures for graphopt.

This module defines the lightweight container classes shared by the factor
graph, the linear solvers and the optimization driver. Structural types
(variables, factors) stay deliberately simple; the estimate itself is an
immutable mapping so that an optimizer can hand out snapshots safely.

Classes
-------
Variable
    A node in the factor graph:
    - id: Unique identifier
    - type: Variable kind, used to select a manifold (e.g. "pose2")
    - value: Initial numeric state, a 1-D array

Factor
    An error term over one or more variables:
    - id: Unique identifier
    - type: String key selecting a registered residual function
    - var_ids: Ordered tuple of variable ids used by the residual
    - params: Dictionary passed into the residual (measurement, weight, ...)

Values
    The estimate: NodeId -> 1-D array. Never mutated in place; `insert`
    and `update` return new instances. An empty `Values()` is the sentinel
    result of a failed safe optimization.

Notes
-----
Values stores float64 JAX arrays. Callers may pass NumPy arrays or
sequences, they are converted on construction. Importing this module turns
on JAX 64-bit mode: relative error tolerances around 1e-5 are not
meaningful in float32.
"""

from __future__ import annotations
from collections.abc import Mapping
from dataclasses import dataclass
from typing import NewType, Dict, Any, Iterator

import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)

NodeId = NewType("NodeId", int)
FactorId = NewType("FactorId", int)


@dataclass
class Variable:
    """Generic optimization variable node in the factor graph."""
    id: NodeId
    type: str          # e.g. "pose2", "point2", "scalar"
    value: Any         # initial value, 1-D array-like


@dataclass
class Factor:
    """Error term connecting variables."""
    id: FactorId
    type: str          # e.g. "prior", "between_pose2"
    var_ids: tuple[NodeId, ...]
    params: Dict[str, Any]  # Measurement, weight, etc.


class Values(Mapping):
    """Immutable assignment of values to variables."""

    __slots__ = ("_data",)

    def __init__(self, data: Mapping | None = None) -> None:
        items = {} if data is None else dict(data)
        self._data: Dict[NodeId, jnp.ndarray] = {
            key: jnp.atleast_1d(jnp.asarray(value, dtype=jnp.float64))
            for key, value in items.items()
        }

    def __getitem__(self, key: NodeId) -> jnp.ndarray:
        return self._data[key]

    def __iter__(self) -> Iterator[NodeId]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        body = ", ".join(f"{k}: {v}" for k, v in sorted(self._data.items()))
        return f"Values({{{body}}})"

    def insert(self, key: NodeId, value) -> "Values":
        """Return a copy with ``key`` added. Raises KeyError if it already exists."""
        if key in self._data:
            raise KeyError(f"Values already contains key {key}")
        new = dict(self._data)
        new[key] = value
        return Values(new)

    def update(self, other: Mapping) -> "Values":
        """Return a copy where every key of ``other`` replaces the existing entry."""
        missing = [k for k in other if k not in self._data]
        if missing:
            raise KeyError(f"Values has no entries for keys {missing}")
        new = dict(self._data)
        new.update(other)
        return Values(new)

    def dims(self) -> Dict[NodeId, int]:
        return {key: int(value.shape[0]) for key, value in self._data.items()}
