# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
One-step optimization strategies.

A strategy turns the current `OptimizerState` into the next one. Every
strategy follows the same pattern:

    1. linearize the problem at the current values
    2. solve the linear sub-problem through `graphopt.linear.dispatch.solve`
       (whichever solver family the params select)
    3. retract the step onto the values
    4. return a new state with exactly one more iteration

The driver loop (`optimization.driver`) is identical for all strategies.

GaussNewtonStrategy
    Full Gauss–Newton step, no safeguards. Can increase the error; the
    convergence check then stops the run.

LevenbergMarquardtStrategy
    Adds λ‖δ‖² (or λ‖diag(AᵀA)^½ δ‖²) damping as extra unary factors. A step
    is accepted only if it lowers the error, in which case λ shrinks by
    `lambda_factor`; otherwise λ grows (from at least `MIN_LAMBDA`) and the
    damped system is re-solved.
    Past `lambda_upper_bound` the strategy gives up for this iteration and
    returns the unchanged values, which the convergence check reads as zero
    decrease.

DoglegStrategy
    Powell's dogleg inside a trust region of radius Δ, interpolating between
    the steepest-descent (Cauchy) point and the Gauss–Newton step. Δ grows
    when the linear model predicts the actual decrease well (ρ > 0.75) and
    shrinks when it does not (ρ < 0.25). Steps that increase the error are
    retried with a smaller Δ until `delta_min`.
"""

from __future__ import annotations

import logging
import math
from typing import List

import numpy as np

from graphopt.core.errors import ConfigurationError, IndeterminantLinearSystemError
from graphopt.core.types import Values
from graphopt.linear import dispatch
from graphopt.linear.system import LinearFactor, LinearSystem, VectorValues
from .params import DoglegParams, LevenbergMarquardtParams, OptimizerParams, Verbosity
from .problem import Problem
from .state import DoglegState, LevenbergMarquardtState, OptimizerState

logger = logging.getLogger(__name__)

# Diagonal damping entries are clamped to this range.
MIN_DIAGONAL = 1e-6
MAX_DIAGONAL = 1e32

# lambda is raised to at least this before it is grown after a rejection.
MIN_LAMBDA = 1e-12


class StepStrategy:
    """Base class; subclasses implement `step`."""

    name = "base"

    def initial_state(self, problem: Problem, values: Values, params: OptimizerParams) -> OptimizerState:
        return OptimizerState(problem, values)

    def step(self, problem: Problem, state: OptimizerState, params: OptimizerParams) -> OptimizerState:
        raise NotImplementedError


class GaussNewtonStrategy(StepStrategy):
    name = "gauss_newton"

    def step(self, problem, state, params):
        system = problem.linearize(state.values)
        delta = dispatch.solve(system, params)
        new_values = problem.retract(state.values, delta)
        return state.advance(problem, new_values)


def _damping_factors(
    system: LinearSystem, lambda_: float, diagonal: bool
) -> List[LinearFactor]:
    """Unary factors √λ·D δ_k = 0 for every variable."""
    hdiag = system.hessian_diagonal() if diagonal else None
    factors = []
    for key in system.keys():
        dim = system.dim(key)
        if hdiag is None:
            weights = np.ones(dim)
        else:
            weights = np.clip(hdiag[key], MIN_DIAGONAL, MAX_DIAGONAL)
        block = np.diag(np.sqrt(lambda_ * weights))
        factors.append(LinearFactor(keys=(key,), blocks=(block,), b=np.zeros(dim)))
    return factors


class LevenbergMarquardtStrategy(StepStrategy):
    name = "levenberg_marquardt"

    def initial_state(self, problem, values, params):
        lambda_initial = getattr(params, "lambda_initial", LevenbergMarquardtParams.lambda_initial)
        return LevenbergMarquardtState(problem, values, lambda_initial)

    def step(self, problem, state, params):
        lm = params if isinstance(params, LevenbergMarquardtParams) else LevenbergMarquardtParams()
        if not lm.lambda_factor > 1.0:
            raise ConfigurationError(f"lambda_factor must be greater than 1, got {lm.lambda_factor}")
        system = problem.linearize(state.values)
        lam = state.lambda_

        while True:
            damped = system.augmented(_damping_factors(system, lam, lm.diagonal_damping))
            try:
                delta = dispatch.solve(damped, params)
            except IndeterminantLinearSystemError:
                if params.verbosity >= Verbosity.ERROR:
                    logger.info("lambda = %g: damped system is indeterminant", lam)
                delta = None

            if delta is not None:
                new_values = problem.retract(state.values, delta)
                new_error = problem.error(new_values)
                if params.verbosity >= Verbosity.ERROR:
                    logger.info("lambda = %g, trial error = %g", lam, new_error)
                if math.isfinite(new_error) and new_error <= state.error:
                    lam = max(lam / lm.lambda_factor, lm.lambda_lower_bound)
                    return state.advance(problem, new_values, lam)

            lam = max(lam, MIN_LAMBDA) * lm.lambda_factor
            if lam >= lm.lambda_upper_bound:
                if params.verbosity >= Verbosity.TERMINATION:
                    logger.warning(
                        "Levenberg-Marquardt giving up: lambda %g exceeds upper bound %g",
                        lam,
                        lm.lambda_upper_bound,
                    )
                return state.advance(problem, state.values, lam)


def _dogleg_point(dx_sd: VectorValues, dx_gn: VectorValues, radius: float) -> VectorValues:
    """Point where the dogleg path leaves the trust region."""
    gn_norm = dx_gn.norm()
    if gn_norm <= radius:
        return dx_gn
    sd_norm = dx_sd.norm()
    if sd_norm >= radius:
        return dx_sd.scale(radius / sd_norm)
    # Solve ||dx_sd + tau (dx_gn - dx_sd)|| = radius for tau in [0, 1].
    d = dx_gn - dx_sd
    a = d.dot(d)
    b = 2.0 * dx_sd.dot(d)
    c = sd_norm ** 2 - radius ** 2
    tau = (-b + math.sqrt(max(b * b - 4.0 * a * c, 0.0))) / (2.0 * a)
    return dx_sd + d.scale(tau)


class DoglegStrategy(StepStrategy):
    name = "dogleg"

    def initial_state(self, problem, values, params):
        delta_initial = getattr(params, "delta_initial", DoglegParams.delta_initial)
        return DoglegState(problem, values, delta_initial)

    def step(self, problem, state, params):
        dl = params if isinstance(params, DoglegParams) else DoglegParams()
        if not dl.delta_min > 0.0:
            raise ConfigurationError(f"delta_min must be positive, got {dl.delta_min}")
        system = problem.linearize(state.values)

        g = system.gradient_at_zero()
        g_norm_sq = g.dot(g)
        if g_norm_sq == 0.0:
            return state.advance(problem, state.values)
        Ag = system.multiply(g)
        dx_sd = g.scale(g_norm_sq / float(np.dot(Ag, Ag)))
        dx_gn = dispatch.solve(system, params)

        zero = VectorValues.zero(system.dims)
        model_error0 = system.error(zero)
        radius = state.delta
        while True:
            dx = _dogleg_point(dx_sd, dx_gn, radius)
            new_values = problem.retract(state.values, dx)
            new_error = problem.error(new_values)
            predicted = model_error0 - system.error(dx)
            actual = state.error - new_error
            rho = actual / predicted if predicted > 0.0 and math.isfinite(new_error) else 0.0

            if rho > 0.75:
                radius = max(radius, 3.0 * dx.norm())
            elif rho < 0.25:
                radius = 0.5 * radius
            if params.verbosity >= Verbosity.ERROR:
                logger.info("dogleg: rho = %g, new error = %g, radius = %g", rho, new_error, radius)

            if math.isfinite(new_error) and new_error < state.error:
                return state.advance(problem, new_values, radius)
            if radius < dl.delta_min:
                if params.verbosity >= Verbosity.TERMINATION:
                    logger.warning("Dogleg giving up: trust region radius %g below %g", radius, dl.delta_min)
                return state.advance(problem, state.values, radius)
