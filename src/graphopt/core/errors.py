# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Exception hierarchy shared by the linear solvers and the optimizer.

ConfigurationError
    Missing or inconsistent solver selection (no iterative parameters, no
    ordering for the subgraph solver, unknown solver family, ...). Always
    reaches the caller; nothing falls back to a default solver.

OptimizationFailure
    Any other failure raised while taking an optimization step. The original
    exception is chained as ``__cause__``.

IndeterminantLinearSystemError
    Raised by the elimination kernels when a frontal block is singular or
    not positive definite, typically because a variable is unconstrained.
"""

from __future__ import annotations


class GraphOptError(Exception):
    """Base class for graphopt errors."""


class ConfigurationError(GraphOptError, ValueError):
    pass


class OptimizationFailure(GraphOptError, RuntimeError):
    pass


class IndeterminantLinearSystemError(GraphOptError, ArithmeticError):
    def __init__(self, key=None) -> None:
        where = "" if key is None else f" while eliminating variable {key}"
        super().__init__(
            f"Indeterminant linear system detected{where}: "
            "the problem is probably under-constrained"
        )
        self.key = key
