# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Route a linearized system to the linear solver selected in the params.

    MULTIFRONTAL        elimination tree, QR or Cholesky kernel
    SEQUENTIAL          variable-by-variable elimination, QR or Cholesky
    ITERATIVE           PCGParams      -> preconditioned CG
                        SubgraphParams -> subgraph-preconditioned CG,
                                          requires an explicit ordering
    EXTERNAL_QR         SciPy QR of the whole Jacobian
    EXTERNAL_CHOLESKY   SciPy SuperLU of the normal equations

A missing or mismatched companion parameter is a ConfigurationError; no
other solver is substituted.
"""

from __future__ import annotations

from graphopt.core.errors import ConfigurationError
from graphopt.optimization.params import OptimizerParams, SolverFamily
from .elimination import EliminationFunction, solve_elimination
from .iterative import PCGParams, SubgraphParams, solve_pcg, solve_subgraph
from .ordering import resolve_ordering, validate_ordering
from .sparse import solve_sparse
from .system import LinearSystem, VectorValues


def solve(system: LinearSystem, params: OptimizerParams) -> VectorValues:
    """Solve ``system`` for the step that updates the linearization point."""
    family = params.solver_family

    if family in (SolverFamily.MULTIFRONTAL, SolverFamily.SEQUENTIAL):
        if not isinstance(params.elimination_function, EliminationFunction):
            raise ConfigurationError(
                f"invalid elimination function {params.elimination_function!r}"
            )
        ordering = resolve_ordering(system, params.ordering, params.ordering_type)
        return solve_elimination(
            system,
            ordering,
            params.elimination_function,
            multifrontal=family == SolverFamily.MULTIFRONTAL,
        )

    if family == SolverFamily.ITERATIVE:
        iterative = params.iterative_params
        if iterative is None:
            raise ConfigurationError(
                "Iterative solver selected but no iterative parameters were given "
                "(set iterative_params to PCGParams or SubgraphParams)"
            )
        if isinstance(iterative, PCGParams):
            return solve_pcg(system, iterative)
        if isinstance(iterative, SubgraphParams):
            if params.ordering is None:
                raise ConfigurationError("SubgraphSolver needs an ordering")
            return solve_subgraph(system, iterative, validate_ordering(system, params.ordering))
        raise ConfigurationError(
            f"unhandled iterative parameter type {type(iterative).__name__}"
        )

    if family in (SolverFamily.EXTERNAL_QR, SolverFamily.EXTERNAL_CHOLESKY):
        ordering = resolve_ordering(system, params.ordering, params.ordering_type)
        method = "qr" if family == SolverFamily.EXTERNAL_QR else "cholesky"
        return solve_sparse(system, ordering, method)

    raise ConfigurationError(f"invalid optimization parameter: solver family {family!r}")
