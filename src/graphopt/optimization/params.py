# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Optimizer configuration.

OptimizerParams
    Shared by every strategy:
    - error_tol: stop as soon as the error is at or below this value
    - relative_error_tol / absolute_error_tol: stop when one step decreases
      the error by less than this (relative tolerance 0 disables it)
    - max_iterations: hard cap on the number of steps
    - verbosity: which diagnostics are logged; never changes the result
    - ordering: optional explicit elimination ordering (tuple of NodeIds)
    - ordering_type: how to compute an ordering when none is given
    - solver_family / elimination_function / iterative_params: linear
      solver selection, see `graphopt.linear.dispatch`

LevenbergMarquardtParams, DoglegParams
    Add the damping / trust-region settings of those strategies.

All parameter objects are frozen; derive variants with
`dataclasses.replace`. The pairing of `solver_family` with
`iterative_params` is only checked when a linear system is solved.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional, Tuple

from graphopt.core.types import NodeId
from graphopt.linear.elimination import EliminationFunction
from graphopt.linear.iterative import ConjugateGradientParams
from graphopt.linear.ordering import OrderingType


class Verbosity(IntEnum):
    SILENT = 0
    TERMINATION = 1
    ERROR = 2
    VALUES = 3


class SolverFamily(Enum):
    MULTIFRONTAL = "multifrontal"
    SEQUENTIAL = "sequential"
    ITERATIVE = "iterative"
    EXTERNAL_QR = "external_qr"
    EXTERNAL_CHOLESKY = "external_cholesky"


@dataclass(frozen=True)
class OptimizerParams:
    error_tol: float = 0.0
    relative_error_tol: float = 1e-5
    absolute_error_tol: float = 1e-5
    max_iterations: int = 100
    verbosity: Verbosity = Verbosity.SILENT
    ordering: Optional[Tuple[NodeId, ...]] = None
    ordering_type: OrderingType = OrderingType.MIN_DEGREE
    solver_family: SolverFamily = SolverFamily.MULTIFRONTAL
    elimination_function: EliminationFunction = EliminationFunction.CHOLESKY
    # Only read for SolverFamily.ITERATIVE: PCGParams or SubgraphParams.
    iterative_params: Optional[ConjugateGradientParams] = None

    def is_multifrontal(self) -> bool:
        return self.solver_family == SolverFamily.MULTIFRONTAL

    def is_sequential(self) -> bool:
        return self.solver_family == SolverFamily.SEQUENTIAL

    def is_iterative(self) -> bool:
        return self.solver_family == SolverFamily.ITERATIVE

    def is_external(self) -> bool:
        return self.solver_family in (SolverFamily.EXTERNAL_QR, SolverFamily.EXTERNAL_CHOLESKY)


@dataclass(frozen=True)
class LevenbergMarquardtParams(OptimizerParams):
    lambda_initial: float = 1e-5
    lambda_factor: float = 10.0
    lambda_upper_bound: float = 1e5
    lambda_lower_bound: float = 0.0
    diagonal_damping: bool = False  # scale damping by diag(AᵀA)


@dataclass(frozen=True)
class DoglegParams(OptimizerParams):
    delta_initial: float = 1.0      # initial trust-region radius
    delta_min: float = 1e-10        # radius below which the step is abandoned
