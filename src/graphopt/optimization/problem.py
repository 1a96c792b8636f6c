# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""The capability an object needs to be optimized."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from graphopt.core.types import Values
from graphopt.linear.system import LinearSystem, VectorValues


@runtime_checkable
class Problem(Protocol):
    """
    A nonlinear least-squares problem over an estimate.

    `core.factor_graph.FactorGraph` is the standard implementation; the
    optimizer never looks past these three methods.
    """

    def error(self, values: Values) -> float:
        """Total cost at ``values``."""
        ...

    def linearize(self, values: Values) -> LinearSystem:
        """Linear least-squares system whose solution is the step at ``values``."""
        ...

    def retract(self, values: Values, delta: VectorValues) -> Values:
        """Apply the tangent step ``delta`` to ``values``."""
        ...
