# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Direct solvers by variable elimination.

Eliminating a variable j from a linear least-squares system gathers every
factor that touches j, factorizes the gathered block with j's columns first
and splits the result into

    • a Gaussian conditional  R_jj δ_j + R_jS δ_S = d   (S = separator keys)
    • a new factor on the separator S, which replaces the gathered factors.

Once every variable has been eliminated the conditionals form a chain (a
Gaussian Bayes net) and back-substitution in reverse elimination order
yields the step.

Two elimination kernels are provided:

    QR
        Works directly on the stacked Jacobian [A_j A_S | b]. Numerically
        the safer choice for ill-conditioned problems.
    CHOLESKY
        Works on augmented information matrices [A b]ᵀ[A b]. Roughly half
        the flops of QR, squares the condition number.

and two traversals:

    eliminate_sequential
        Eliminates variables one by one in ordering order over a shared
        factor pool.
    eliminate_multifrontal
        Builds the elimination tree of the ordering (each variable's parent
        is the first of its separator keys to be eliminated) and eliminates
        it bottom-up, children first, passing each node's separator factor
        to its parent. Fronts hold a single variable.

Both produce the same conditionals for the same ordering; they differ in
the order in which independent subtrees are processed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Sequence, Tuple, Union

import numpy as np
import scipy.linalg

from graphopt.core.errors import IndeterminantLinearSystemError
from graphopt.core.types import NodeId
from .system import LinearFactor, LinearSystem, VectorValues

# Relative threshold on |diag(R)| below which a frontal block counts as singular.
SINGULAR_TOL = 1e-12


class EliminationFunction(Enum):
    QR = "qr"
    CHOLESKY = "cholesky"


@dataclass(frozen=True)
class GaussianConditional:
    """R δ_frontal + Σ_k S_k δ_k = d, with R upper triangular."""
    frontal: NodeId
    R: np.ndarray
    parents: Tuple[NodeId, ...]
    S: Tuple[np.ndarray, ...]
    d: np.ndarray

    def solve(self, solution: Dict[NodeId, np.ndarray]) -> np.ndarray:
        rhs = self.d.copy()
        for key, block in zip(self.parents, self.S):
            rhs -= block @ solution[key]
        return scipy.linalg.solve_triangular(self.R, rhs, lower=False)


@dataclass(frozen=True)
class _HessianFactor:
    """Augmented information form: info = [A b]ᵀ[A b] over ``keys`` + rhs."""
    keys: Tuple[NodeId, ...]
    info: np.ndarray


_Factor = Union[LinearFactor, _HessianFactor]


def _to_hessian(f: LinearFactor) -> _HessianFactor:
    Ab = np.hstack(list(f.blocks) + [f.b[:, None]])
    return _HessianFactor(keys=f.keys, info=Ab.T @ Ab)


def _separator(
    frontal: NodeId, factors: Sequence[_Factor], position: Dict[NodeId, int]
) -> Tuple[NodeId, ...]:
    keys = {k for f in factors for k in f.keys if k != frontal}
    return tuple(sorted(keys, key=lambda k: position[k]))


def _eliminate_qr(
    frontal: NodeId,
    factors: Sequence[LinearFactor],
    dims: Dict[NodeId, int],
    position: Dict[NodeId, int],
) -> Tuple[GaussianConditional, LinearFactor | None]:
    sep = _separator(frontal, factors, position)
    keys = (frontal,) + sep
    offsets = np.cumsum([0] + [dims[k] for k in keys])
    col = {k: (offsets[i], offsets[i + 1]) for i, k in enumerate(keys)}
    m = sum(f.rows for f in factors)
    n = int(offsets[-1])

    Ab = np.zeros((m, n + 1))
    row = 0
    for f in factors:
        for key, block in zip(f.keys, f.blocks):
            c0, c1 = col[key]
            Ab[row:row + f.rows, c0:c1] += block
        Ab[row:row + f.rows, n] = f.b
        row += f.rows

    dj = dims[frontal]
    if m < dj:
        raise IndeterminantLinearSystemError(frontal)
    R = np.linalg.qr(Ab, mode="r")
    Rjj = R[:dj, :dj]
    scale = max(1.0, float(np.abs(Ab).max()))
    if np.any(np.abs(np.diag(Rjj)) <= SINGULAR_TOL * scale):
        raise IndeterminantLinearSystemError(frontal)

    conditional = GaussianConditional(
        frontal=frontal,
        R=Rjj,
        parents=sep,
        S=tuple(R[:dj, col[k][0]:col[k][1]] for k in sep),
        d=R[:dj, n],
    )

    rest = R[dj:, :]
    if not sep or rest.shape[0] == 0:
        return conditional, None
    new_factor = LinearFactor(
        keys=sep,
        blocks=tuple(rest[:, col[k][0]:col[k][1]] for k in sep),
        b=rest[:, n],
    )
    return conditional, new_factor


def _eliminate_cholesky(
    frontal: NodeId,
    factors: Sequence[_HessianFactor],
    dims: Dict[NodeId, int],
    position: Dict[NodeId, int],
) -> Tuple[GaussianConditional, _HessianFactor | None]:
    sep = _separator(frontal, factors, position)
    keys = (frontal,) + sep
    offsets = np.cumsum([0] + [dims[k] for k in keys])
    col = {k: (offsets[i], offsets[i + 1]) for i, k in enumerate(keys)}
    n = int(offsets[-1])

    info = np.zeros((n + 1, n + 1))
    for f in factors:
        idx = np.concatenate([np.arange(*col[k]) for k in f.keys] + [[n]])
        info[np.ix_(idx, idx)] += f.info

    dj = dims[frontal]
    try:
        L = np.linalg.cholesky(info[:dj, :dj])
    except np.linalg.LinAlgError as exc:
        raise IndeterminantLinearSystemError(frontal) from exc
    scale = max(1.0, float(np.sqrt(np.abs(np.diag(info)).max())))
    if np.any(np.abs(np.diag(L)) <= SINGULAR_TOL * scale):
        raise IndeterminantLinearSystemError(frontal)

    # [R_jS d] = L⁻¹ [H_jS H_jb]
    top = scipy.linalg.solve_triangular(L, info[:dj, dj:], lower=True)
    conditional = GaussianConditional(
        frontal=frontal,
        R=L.T,
        parents=sep,
        S=tuple(top[:, col[k][0] - dj:col[k][1] - dj] for k in sep),
        d=top[:, -1],
    )
    if not sep:
        return conditional, None
    schur = info[dj:, dj:] - top.T @ top
    return conditional, _HessianFactor(keys=sep, info=schur)


def _eliminate(function: EliminationFunction, frontal, factors, dims, position):
    if function == EliminationFunction.QR:
        return _eliminate_qr(frontal, factors, dims, position)
    if function == EliminationFunction.CHOLESKY:
        return _eliminate_cholesky(frontal, factors, dims, position)
    raise ValueError(f"Unknown elimination function {function!r}")


def _initial_factors(system: LinearSystem, function: EliminationFunction) -> List[_Factor]:
    if function == EliminationFunction.CHOLESKY:
        return [_to_hessian(f) for f in system.factors]
    return list(system.factors)


def back_substitute(conditionals: Sequence[GaussianConditional]) -> VectorValues:
    """Solve a Bayes net whose conditionals are listed in elimination order."""
    solution: Dict[NodeId, np.ndarray] = {}
    for conditional in reversed(conditionals):
        solution[conditional.frontal] = conditional.solve(solution)
    return VectorValues(solution)


def eliminate_sequential(
    system: LinearSystem,
    ordering: Sequence[NodeId],
    function: EliminationFunction = EliminationFunction.CHOLESKY,
) -> List[GaussianConditional]:
    position = {key: i for i, key in enumerate(ordering)}
    pool: Dict[int, _Factor] = dict(enumerate(_initial_factors(system, function)))
    next_id = len(pool)
    touching: Dict[NodeId, set] = {key: set() for key in ordering}
    for fid, f in pool.items():
        for key in f.keys:
            touching[key].add(fid)

    conditionals: List[GaussianConditional] = []
    for key in ordering:
        fids = sorted(touching[key])
        if not fids:
            raise IndeterminantLinearSystemError(key)
        gathered = [pool.pop(fid) for fid in fids]
        for f in gathered:
            for k in f.keys:
                touching[k].difference_update(fids)
        conditional, new_factor = _eliminate(function, key, gathered, system.dims, position)
        conditionals.append(conditional)
        if new_factor is not None:
            pool[next_id] = new_factor
            for k in new_factor.keys:
                touching[k].add(next_id)
            next_id += 1
    return conditionals


@dataclass
class EliminationTree:
    """Single-variable fronts; ``parent[key]`` is None for roots."""
    ordering: Tuple[NodeId, ...]
    parent: Dict[NodeId, NodeId | None]
    children: Dict[NodeId, List[NodeId]]
    assigned: Dict[NodeId, List[int]]   # indices into system.factors

    @staticmethod
    def build(system: LinearSystem, ordering: Sequence[NodeId]) -> "EliminationTree":
        ordering = tuple(ordering)
        position = {key: i for i, key in enumerate(ordering)}
        assigned: Dict[NodeId, List[int]] = {key: [] for key in ordering}
        structure: Dict[NodeId, set] = {key: set() for key in ordering}
        for i, f in enumerate(system.factors):
            first = min(f.keys, key=lambda k: position[k])
            assigned[first].append(i)
            structure[first].update(f.keys)

        parent: Dict[NodeId, NodeId | None] = {}
        children: Dict[NodeId, List[NodeId]] = {key: [] for key in ordering}
        for key in ordering:
            sep = structure[key] - {key}
            if not sep:
                parent[key] = None
                continue
            p = min(sep, key=lambda k: position[k])
            parent[key] = p
            children[p].append(key)
            structure[p].update(sep)
        return EliminationTree(ordering, parent, children, assigned)

    def roots(self) -> List[NodeId]:
        return [key for key in self.ordering if self.parent[key] is None]

    def postorder(self) -> List[NodeId]:
        order: List[NodeId] = []
        for root in self.roots():
            stack = [(root, False)]
            while stack:
                key, expanded = stack.pop()
                if expanded:
                    order.append(key)
                    continue
                stack.append((key, True))
                for child in reversed(self.children[key]):
                    stack.append((child, False))
        return order


def eliminate_multifrontal(
    system: LinearSystem,
    ordering: Sequence[NodeId],
    function: EliminationFunction = EliminationFunction.CHOLESKY,
) -> List[GaussianConditional]:
    tree = EliminationTree.build(system, ordering)
    position = {key: i for i, key in enumerate(tree.ordering)}
    initial = _initial_factors(system, function)
    messages: Dict[NodeId, List[_Factor]] = {key: [] for key in tree.ordering}

    conditionals: List[GaussianConditional] = []
    for key in tree.postorder():
        gathered = [initial[i] for i in tree.assigned[key]] + messages.pop(key)
        if not gathered:
            raise IndeterminantLinearSystemError(key)
        conditional, new_factor = _eliminate(function, key, gathered, system.dims, position)
        conditionals.append(conditional)
        if new_factor is not None:
            messages[tree.parent[key]].append(new_factor)

    # Separator keys are ancestors in the tree, so reversed post-order is a
    # valid back-substitution order.
    return conditionals


def solve_elimination(
    system: LinearSystem,
    ordering: Sequence[NodeId],
    function: EliminationFunction,
    multifrontal: bool = True,
) -> VectorValues:
    eliminate = eliminate_multifrontal if multifrontal else eliminate_sequential
    return back_substitute(eliminate(system, ordering, function))
