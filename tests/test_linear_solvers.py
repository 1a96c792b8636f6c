from __future__ import annotations

import numpy as np
import pytest

from graphopt.core.errors import ConfigurationError, IndeterminantLinearSystemError
from graphopt.core.types import NodeId
from graphopt.linear.elimination import (
    EliminationFunction,
    EliminationTree,
    back_substitute,
    eliminate_multifrontal,
    eliminate_sequential,
    solve_elimination,
)
from graphopt.linear.iterative import PCGParams, SubgraphParams, solve_pcg, solve_subgraph, split_subgraph
from graphopt.linear.ordering import OrderingType, compute_ordering, validate_ordering
from graphopt.linear.sparse import solve_sparse
from graphopt.linear.system import LinearFactor, LinearSystem, VectorValues


DIMS = {NodeId(0): 3, NodeId(1): 3, NodeId(2): 2, NodeId(3): 2}


def _loop_system(seed: int = 0) -> LinearSystem:
    """
    Four variables (two 3-D, two 2-D) on a loop with one chord:

        prior(0), 0-1, 1-2, 2-3, 3-0, 1-3

    Every binary factor has at least as many rows as its larger variable,
    so any spanning tree plus the prior is already full rank.
    """
    rng = np.random.default_rng(seed)

    def factor(*ids):
        keys = tuple(NodeId(i) for i in ids)
        rows = max(DIMS[k] for k in keys)
        blocks = tuple(rng.standard_normal((rows, DIMS[k])) for k in keys)
        return LinearFactor(keys=keys, blocks=blocks, b=rng.standard_normal(rows))

    factors = [factor(0), factor(0, 1), factor(1, 2), factor(2, 3), factor(3, 0), factor(1, 3)]
    return LinearSystem(factors, DIMS)


def _reference(system: LinearSystem) -> np.ndarray:
    A, b = system.sparse_jacobian()
    x, *_ = np.linalg.lstsq(A.toarray(), b, rcond=None)
    return x


def _assert_matches(solution: VectorValues, system: LinearSystem, rtol=1e-8, atol=1e-10):
    assert set(solution) == set(system.dims)
    np.testing.assert_allclose(solution.vector(), _reference(system), rtol=rtol, atol=atol)


@pytest.mark.parametrize("function", list(EliminationFunction))
@pytest.mark.parametrize("multifrontal", [True, False])
@pytest.mark.parametrize("ordering_type", list(OrderingType))
def test_elimination_matches_least_squares(function, multifrontal, ordering_type):
    system = _loop_system()
    ordering = compute_ordering(system, ordering_type)
    solution = solve_elimination(system, ordering, function, multifrontal=multifrontal)
    _assert_matches(solution, system)


def test_sequential_and_multifrontal_agree_on_conditionals():
    """Same ordering -> same conditionals, possibly processed in another order."""
    system = _loop_system(seed=3)
    ordering = compute_ordering(system, OrderingType.MIN_DEGREE)

    seq = {c.frontal: c for c in eliminate_sequential(system, ordering, EliminationFunction.QR)}
    mf = {c.frontal: c for c in eliminate_multifrontal(system, ordering, EliminationFunction.QR)}

    assert set(seq) == set(mf) == set(system.dims)
    for key in seq:
        assert seq[key].parents == mf[key].parents
        # QR is unique up to row signs
        np.testing.assert_allclose(np.abs(seq[key].R), np.abs(mf[key].R), atol=1e-10)


def test_back_substitution_of_sequential_conditionals():
    system = _loop_system(seed=5)
    ordering = (NodeId(2), NodeId(0), NodeId(3), NodeId(1))
    conditionals = eliminate_sequential(system, ordering, EliminationFunction.CHOLESKY)

    assert [c.frontal for c in conditionals] == list(ordering)
    assert conditionals[-1].parents == ()
    _assert_matches(back_substitute(conditionals), system)


def test_elimination_tree_of_a_chain():
    """Chain 0-1-2-3 in natural order: each variable's parent is the next one."""
    dims = {NodeId(i): 1 for i in range(4)}
    factors = [LinearFactor(keys=(NodeId(0),), blocks=(np.eye(1),), b=np.zeros(1))]
    for i in range(3):
        factors.append(
            LinearFactor(
                keys=(NodeId(i), NodeId(i + 1)),
                blocks=(-np.eye(1), np.eye(1)),
                b=np.ones(1),
            )
        )
    system = LinearSystem(factors, dims)
    tree = EliminationTree.build(system, [NodeId(i) for i in range(4)])

    assert tree.parent == {NodeId(0): NodeId(1), NodeId(1): NodeId(2), NodeId(2): NodeId(3), NodeId(3): None}
    assert tree.roots() == [NodeId(3)]
    assert tree.postorder() == [NodeId(0), NodeId(1), NodeId(2), NodeId(3)]

    solution = solve_elimination(system, tree.ordering, EliminationFunction.CHOLESKY)
    np.testing.assert_allclose(solution.vector(), [0.0, 1.0, 2.0, 3.0], atol=1e-12)


def test_disconnected_components_are_separate_roots():
    dims = {NodeId(0): 1, NodeId(1): 1}
    factors = [
        LinearFactor(keys=(NodeId(0),), blocks=(np.eye(1),), b=np.array([2.0])),
        LinearFactor(keys=(NodeId(1),), blocks=(2.0 * np.eye(1),), b=np.array([2.0])),
    ]
    system = LinearSystem(factors, dims)
    tree = EliminationTree.build(system, [NodeId(0), NodeId(1)])

    assert tree.roots() == [NodeId(0), NodeId(1)]
    solution = solve_elimination(system, tree.ordering, EliminationFunction.QR)
    assert solution[NodeId(0)][0] == pytest.approx(2.0)
    assert solution[NodeId(1)][0] == pytest.approx(1.0)


@pytest.mark.parametrize("preconditioner", ["none", "jacobi", "block_jacobi"])
def test_pcg_matches_least_squares(preconditioner):
    system = _loop_system(seed=1)
    solution = solve_pcg(system, PCGParams(preconditioner=preconditioner))
    _assert_matches(solution, system, rtol=1e-6, atol=1e-6)


def test_pcg_rejects_unknown_preconditioner():
    with pytest.raises(ValueError, match="preconditioner"):
        solve_pcg(_loop_system(), PCGParams(preconditioner="ilu"))


def test_subgraph_split_is_a_spanning_tree_plus_unaries():
    system = _loop_system()
    subgraph, remainder = split_subgraph(system)

    # 1 prior + 3 tree edges over 4 variables, 2 loop-closing factors left
    assert len(subgraph) == 4
    assert len(remainder) == 2
    assert 0 in subgraph
    assert sorted(subgraph + remainder) == list(range(len(system)))


def test_subgraph_solver_matches_least_squares():
    system = _loop_system(seed=2)
    ordering = compute_ordering(system, OrderingType.MIN_DEGREE)
    solution = solve_subgraph(system, SubgraphParams(), ordering)
    _assert_matches(solution, system, rtol=1e-6, atol=1e-6)


@pytest.mark.parametrize("method", ["qr", "cholesky"])
@pytest.mark.parametrize("ordering_type", list(OrderingType))
def test_sparse_solvers_match_least_squares(method, ordering_type):
    system = _loop_system(seed=4)
    ordering = compute_ordering(system, ordering_type)
    _assert_matches(solve_sparse(system, ordering, method), system, rtol=1e-7, atol=1e-9)


def test_sparse_solver_rejects_unknown_method():
    system = _loop_system()
    with pytest.raises(ValueError):
        solve_sparse(system, system.keys(), "lu")


@pytest.mark.parametrize("ordering_type", list(OrderingType))
def test_computed_orderings_are_permutations(ordering_type):
    system = _loop_system()
    ordering = compute_ordering(system, ordering_type)
    assert sorted(ordering) == system.keys()
    assert validate_ordering(system, ordering) == tuple(ordering)


def test_natural_ordering_is_sorted_keys():
    system = _loop_system()
    assert compute_ordering(system, OrderingType.NATURAL) == tuple(system.keys())


def test_min_degree_eliminates_leaves_first():
    """Star around 0: the leaves have degree 1 and go before the hub."""
    dims = {NodeId(i): 1 for i in range(4)}
    factors = [
        LinearFactor(keys=(NodeId(0), NodeId(i)), blocks=(np.eye(1), np.eye(1)), b=np.zeros(1))
        for i in (1, 2, 3)
    ]
    system = LinearSystem(factors, dims)
    ordering = compute_ordering(system, OrderingType.MIN_DEGREE)
    assert ordering[:2] == (NodeId(1), NodeId(2))
    assert set(ordering[2:]) == {NodeId(0), NodeId(3)}


@pytest.mark.parametrize(
    "ordering",
    [
        (NodeId(0), NodeId(1), NodeId(2)),                         # missing 3
        (NodeId(0), NodeId(1), NodeId(2), NodeId(3), NodeId(9)),   # unknown 9
        (NodeId(0), NodeId(1), NodeId(1), NodeId(2), NodeId(3)),   # duplicate
    ],
)
def test_validate_ordering_rejects_bad_orderings(ordering):
    with pytest.raises(ConfigurationError):
        validate_ordering(_loop_system(), ordering)


def _underconstrained_system() -> LinearSystem:
    """Variable 1 only appears with a zero Jacobian block."""
    dims = {NodeId(0): 2, NodeId(1): 2}
    factors = [
        LinearFactor(keys=(NodeId(0),), blocks=(np.eye(2),), b=np.ones(2)),
        LinearFactor(keys=(NodeId(1),), blocks=(np.zeros((2, 2)),), b=np.ones(2)),
    ]
    return LinearSystem(factors, dims)


@pytest.mark.parametrize("function", list(EliminationFunction))
@pytest.mark.parametrize("multifrontal", [True, False])
def test_elimination_detects_indeterminant_system(function, multifrontal):
    system = _underconstrained_system()
    with pytest.raises(IndeterminantLinearSystemError) as info:
        solve_elimination(system, (NodeId(0), NodeId(1)), function, multifrontal=multifrontal)
    assert info.value.key == NodeId(1)


@pytest.mark.parametrize("multifrontal", [True, False])
def test_variable_without_factors_is_indeterminant(multifrontal):
    dims = {NodeId(0): 1, NodeId(1): 1}
    factors = [LinearFactor(keys=(NodeId(0),), blocks=(np.eye(1),), b=np.ones(1))]
    system = LinearSystem(factors, dims)
    with pytest.raises(IndeterminantLinearSystemError):
        solve_elimination(system, (NodeId(0), NodeId(1)), EliminationFunction.QR, multifrontal=multifrontal)


def test_external_qr_detects_indeterminant_system():
    system = _underconstrained_system()
    with pytest.raises(IndeterminantLinearSystemError):
        solve_sparse(system, system.keys(), "qr")


def test_linear_factor_validates_block_shapes():
    with pytest.raises(ValueError):
        LinearFactor(keys=(NodeId(0),), blocks=(np.eye(3),), b=np.zeros(2))
    with pytest.raises(ValueError):
        LinearSystem(
            [LinearFactor(keys=(NodeId(0),), blocks=(np.eye(2),), b=np.zeros(2))],
            {NodeId(0): 3},
        )


def test_system_views():
    """gradient_at_zero, multiply and error agree with the assembled Jacobian."""
    system = _loop_system(seed=6)
    A, b = system.sparse_jacobian()
    A = A.toarray()
    delta = VectorValues({k: np.arange(d, dtype=float) + 1.0 for k, d in DIMS.items()})

    np.testing.assert_allclose(system.gradient_at_zero().vector(), A.T @ b)
    np.testing.assert_allclose(system.multiply(delta), A @ delta.vector())
    assert system.error(delta) == pytest.approx(0.5 * np.sum((A @ delta.vector() - b) ** 2))
    np.testing.assert_allclose(system.hessian_diagonal().vector(), np.sum(A * A, axis=0))
    assert system.total_dim() == 10
    assert system.rows() == A.shape[0]
