# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Whole-matrix solvers backed by SciPy.

Instead of eliminating variable by variable, these assemble the full
Jacobian with columns permuted by the variable ordering and hand it to a
library factorization:

    "cholesky"  SuperLU on the sparse normal equations AᵀA δ = Aᵀb. The
                column permutation is the ordering, SuperLU itself is told
                not to reorder.
    "qr"        Economic QR of the (densified) Jacobian, then R δ = Qᵀb.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import scipy.linalg
import scipy.sparse.linalg

from graphopt.core.errors import IndeterminantLinearSystemError
from graphopt.core.types import NodeId
from .elimination import SINGULAR_TOL
from .system import LinearSystem, VectorValues


def _solve_cholesky(A, b) -> np.ndarray:
    H = (A.T @ A).tocsc()
    try:
        lu = scipy.sparse.linalg.splu(H, permc_spec="NATURAL")
    except RuntimeError as exc:
        raise IndeterminantLinearSystemError() from exc
    return lu.solve(A.T @ b)


def _solve_qr(A, b) -> np.ndarray:
    m, n = A.shape
    if m < n:
        raise IndeterminantLinearSystemError()
    Q, R = scipy.linalg.qr(A.toarray(), mode="economic")
    scale = max(1.0, float(abs(A).max())) if A.nnz else 1.0
    if np.any(np.abs(np.diag(R)) <= SINGULAR_TOL * scale):
        raise IndeterminantLinearSystemError()
    return scipy.linalg.solve_triangular(R, Q.T @ b, lower=False)


def solve_sparse(system: LinearSystem, ordering: Sequence[NodeId], method: str) -> VectorValues:
    ordering = list(ordering)
    A, b = system.sparse_jacobian(ordering)
    if method == "cholesky":
        x = _solve_cholesky(A, b)
    elif method == "qr":
        x = _solve_qr(A, b)
    else:
        raise ValueError(f"Unknown sparse solver method '{method}'")
    return VectorValues.from_vector(x, system.dims, ordering)
