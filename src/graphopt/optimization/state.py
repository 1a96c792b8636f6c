# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Immutable optimizer state snapshots.

A state is created from (problem, values, iterations) and computes its error
on construction, so the error always matches the values it is stored with.
Strategies never modify a state; they build the next one with `advance`
(or the subclass equivalent), which counts exactly one more iteration.
"""

from __future__ import annotations

from graphopt.core.types import Values
from .problem import Problem


class OptimizerState:
    __slots__ = ("_values", "_error", "_iterations")

    def __init__(self, problem: Problem, values: Values, iterations: int = 0) -> None:
        object.__setattr__(self, "_values", values)
        object.__setattr__(self, "_error", float(problem.error(values)))
        object.__setattr__(self, "_iterations", int(iterations))

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __delattr__(self, name):
        raise AttributeError(f"{type(self).__name__} is immutable")

    @property
    def values(self) -> Values:
        return self._values

    @property
    def error(self) -> float:
        return self._error

    @property
    def iterations(self) -> int:
        return self._iterations

    def advance(self, problem: Problem, values: Values) -> "OptimizerState":
        return OptimizerState(problem, values, self._iterations + 1)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(error={self._error:g}, "
            f"iterations={self._iterations}, n_values={len(self._values)})"
        )


class LevenbergMarquardtState(OptimizerState):
    __slots__ = ("_lambda",)

    def __init__(
        self, problem: Problem, values: Values, lambda_: float, iterations: int = 0
    ) -> None:
        super().__init__(problem, values, iterations)
        object.__setattr__(self, "_lambda", float(lambda_))

    @property
    def lambda_(self) -> float:
        return self._lambda

    def advance(self, problem: Problem, values: Values, lambda_: float | None = None):
        lam = self._lambda if lambda_ is None else lambda_
        return LevenbergMarquardtState(problem, values, lam, self._iterations + 1)


class DoglegState(OptimizerState):
    __slots__ = ("_delta",)

    def __init__(self, problem: Problem, values: Values, delta: float, iterations: int = 0) -> None:
        super().__init__(problem, values, iterations)
        object.__setattr__(self, "_delta", float(delta))

    @property
    def delta(self) -> float:
        """Trust-region radius."""
        return self._delta

    def advance(self, problem: Problem, values: Values, delta: float | None = None):
        d = self._delta if delta is None else delta
        return DoglegState(problem, values, d, self._iterations + 1)
