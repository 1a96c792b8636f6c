# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Nonlinear optimization driver.

`NonlinearOptimizer` owns the current `OptimizerState` and runs the
iterate / check-convergence loop. What one iteration does is delegated to a
`StepStrategy` (Gauss–Newton, Levenberg–Marquardt, Dogleg); the loop itself
is the same for all of them:

    if error <= error_tol:              stop, no step taken
    if iterations >= max_iterations:    stop, no step taken
    repeat:
        current_error = error
        state = strategy.step(...)      # iterations + 1, error recomputed
        stop if should_stop(state)
    while iterations < max_iterations and not converged(current_error, error)

At least one step is taken once the two entry checks pass. Divergence (an
increased error) counts as converged and ends the run with the worse state.

Failure handling
----------------
`optimize()` lets `ConfigurationError` through unchanged and re-raises
anything else a step raises as `OptimizationFailure`. `optimize_safely()`
never raises for ordinary exceptions; it returns an `OptimizationResult`
that is either a success carrying the final state or a failure carrying the
reason, with `values` falling back to an empty `Values()`.

Usage
-----
    graph = Pose2Graph()
    ...
    opt = LevenbergMarquardtOptimizer(graph, initial, LevenbergMarquardtParams())
    result = opt.optimize()
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

from graphopt.core.errors import ConfigurationError, OptimizationFailure
from graphopt.core.types import Values
from .convergence import check_convergence_params
from .params import DoglegParams, LevenbergMarquardtParams, OptimizerParams, Verbosity
from .problem import Problem
from .state import OptimizerState
from .strategies import (
    DoglegStrategy,
    GaussNewtonStrategy,
    LevenbergMarquardtStrategy,
    StepStrategy,
)

logger = logging.getLogger(__name__)

StopPredicate = Callable[[OptimizerState], bool]


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of `NonlinearOptimizer.optimize_safely`."""
    ok: bool
    state: Optional[OptimizerState] = None
    reason: Optional[str] = None
    exception: Optional[BaseException] = None

    @property
    def values(self) -> Values:
        """Final values, or an empty `Values` if the run failed."""
        return self.state.values if self.ok else Values()

    def unwrap(self) -> OptimizerState:
        if not self.ok:
            raise OptimizationFailure(self.reason) from self.exception
        return self.state


class NonlinearOptimizer:
    """Iterate a step strategy on ``problem`` until convergence."""

    def __init__(
        self,
        problem: Problem,
        initial_values: Values,
        params: Optional[OptimizerParams] = None,
        strategy: Optional[StepStrategy] = None,
        should_stop: Optional[StopPredicate] = None,
    ) -> None:
        self.problem = problem
        self.params = OptimizerParams() if params is None else params
        self.strategy = GaussNewtonStrategy() if strategy is None else strategy
        self.should_stop = should_stop
        if not isinstance(initial_values, Values):
            initial_values = Values(initial_values)
        self._state = self.strategy.initial_state(problem, initial_values, self.params)

    # --- Accessors ---

    @property
    def state(self) -> OptimizerState:
        return self._state

    def error(self) -> float:
        return self._state.error

    def iterations(self) -> int:
        return self._state.iterations

    def values(self) -> Values:
        return self._state.values

    # --- Iteration ---

    def iterate(self) -> OptimizerState:
        """Take one step and replace the current state."""
        try:
            new_state = self.strategy.step(self.problem, self._state, self.params)
        except ConfigurationError:
            raise
        except Exception as exc:
            raise OptimizationFailure(
                f"{self.strategy.name} step {self._state.iterations + 1} failed: {exc}"
            ) from exc
        if not math.isfinite(new_state.error):
            raise OptimizationFailure(
                f"{self.strategy.name} step {new_state.iterations} produced a non-finite error"
            )
        self._state = new_state
        return new_state

    def optimize(self) -> Values:
        params = self.params
        current_error = self.error()

        if current_error <= params.error_tol:
            if params.verbosity >= Verbosity.ERROR:
                logger.info("Exiting, as error = %g <= %g", current_error, params.error_tol)
            return self.values()

        if params.verbosity >= Verbosity.VALUES:
            logger.info("Initial values: %r", self.values())
        if params.verbosity >= Verbosity.ERROR:
            logger.info("Initial error: %g", current_error)

        if self.iterations() >= params.max_iterations:
            if params.verbosity >= Verbosity.TERMINATION:
                logger.info("iterations: %d >? %d", self.iterations(), params.max_iterations)
            return self.values()

        while True:
            current_error = self.error()
            self.iterate()

            if params.verbosity >= Verbosity.VALUES:
                logger.info("newValues: %r", self.values())
            if params.verbosity >= Verbosity.ERROR:
                logger.info("newError: %g", self.error())

            if self.should_stop is not None and self.should_stop(self._state):
                if params.verbosity >= Verbosity.TERMINATION:
                    logger.info("Stopping on request after %d iterations", self.iterations())
                break
            if self.iterations() >= params.max_iterations:
                break
            if check_convergence_params(params, current_error, self.error()):
                break

        if params.verbosity >= Verbosity.TERMINATION:
            logger.info("iterations: %d >? %d", self.iterations(), params.max_iterations)
            if self.iterations() >= params.max_iterations:
                logger.info("Terminating because reached maximum iterations")
        return self.values()

    run = optimize

    def optimize_safely(self) -> OptimizationResult:
        try:
            self.optimize()
        except Exception as exc:
            logger.debug("optimization failed", exc_info=True)
            return OptimizationResult(ok=False, reason=str(exc), exception=exc)
        return OptimizationResult(ok=True, state=self._state)


class GaussNewtonOptimizer(NonlinearOptimizer):
    def __init__(self, problem, initial_values, params=None, should_stop=None):
        super().__init__(problem, initial_values, params, GaussNewtonStrategy(), should_stop)


class LevenbergMarquardtOptimizer(NonlinearOptimizer):
    def __init__(self, problem, initial_values, params=None, should_stop=None):
        params = LevenbergMarquardtParams() if params is None else params
        super().__init__(problem, initial_values, params, LevenbergMarquardtStrategy(), should_stop)

    @property
    def lambda_(self) -> float:
        return self._state.lambda_


class DoglegOptimizer(NonlinearOptimizer):
    def __init__(self, problem, initial_values, params=None, should_stop=None):
        params = DoglegParams() if params is None else params
        super().__init__(problem, initial_values, params, DoglegStrategy(), should_stop)

    @property
    def delta(self) -> float:
        return self._state.delta
