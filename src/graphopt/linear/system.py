# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Linearized least-squares systems.

Linearizing a factor graph at an estimate produces one Jacobian factor per
nonlinear factor:

    e_f(δ) = Σ_k A_fk δ_k - b_f,        b_f = -r_f(x)

and the linear sub-problem is min_δ Σ_f ||e_f(δ)||². The solution δ is a
`VectorValues`, the step that the problem retracts onto its estimate.

Classes
-------
LinearFactor
    keys, dense Jacobian blocks (one per key, all with the same row count)
    and the right-hand side b.

LinearSystem
    The collection of linear factors plus the tangent dimension of every
    variable. Provides the views each solver family needs: per-key factor
    adjacency for elimination, a scipy sparse Jacobian for iterative and
    external solvers, gradient and products for trust-region strategies.

VectorValues
    NodeId -> NumPy vector, with the small algebra the strategies use.

Notes
-----
Everything here is NumPy/SciPy on the host. Residuals and Jacobians are
produced with JAX by the factor graph and converted once per linearization.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple

import numpy as np
import scipy.sparse

from graphopt.core.types import NodeId


class VectorValues(Mapping):
    """Tangent-space vector split per variable."""

    __slots__ = ("_data",)

    def __init__(self, data: Mapping | None = None) -> None:
        items = {} if data is None else dict(data)
        self._data: Dict[NodeId, np.ndarray] = {
            key: np.atleast_1d(np.asarray(value, dtype=np.float64))
            for key, value in items.items()
        }

    def __getitem__(self, key: NodeId) -> np.ndarray:
        return self._data[key]

    def __iter__(self) -> Iterator[NodeId]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        body = ", ".join(f"{k}: {v}" for k, v in sorted(self._data.items()))
        return f"VectorValues({{{body}}})"

    @staticmethod
    def zero(dims: Mapping[NodeId, int]) -> "VectorValues":
        return VectorValues({key: np.zeros(dim) for key, dim in dims.items()})

    @staticmethod
    def from_vector(
        vec: np.ndarray, dims: Mapping[NodeId, int], ordering: Sequence[NodeId]
    ) -> "VectorValues":
        """Split a flat vector laid out in ``ordering`` back into per-key blocks."""
        out: Dict[NodeId, np.ndarray] = {}
        offset = 0
        for key in ordering:
            dim = dims[key]
            out[key] = vec[offset:offset + dim]
            offset += dim
        return VectorValues(out)

    def vector(self, ordering: Sequence[NodeId] | None = None) -> np.ndarray:
        keys = sorted(self._data) if ordering is None else ordering
        if not keys:
            return np.zeros(0)
        return np.concatenate([self._data[key] for key in keys])

    def dot(self, other: "VectorValues") -> float:
        return float(sum(np.dot(v, other[k]) for k, v in self._data.items()))

    def norm(self) -> float:
        return float(np.sqrt(self.dot(self)))

    def scale(self, alpha: float) -> "VectorValues":
        return VectorValues({k: alpha * v for k, v in self._data.items()})

    def __add__(self, other: "VectorValues") -> "VectorValues":
        return VectorValues({k: v + other[k] for k, v in self._data.items()})

    def __sub__(self, other: "VectorValues") -> "VectorValues":
        return VectorValues({k: v - other[k] for k, v in self._data.items()})


@dataclass(frozen=True)
class LinearFactor:
    """Jacobian factor  Σ_k A_k δ_k - b."""
    keys: Tuple[NodeId, ...]
    blocks: Tuple[np.ndarray, ...]  # one (m, dim_k) block per key
    b: np.ndarray                   # (m,)

    def __post_init__(self) -> None:
        if len(self.keys) != len(self.blocks):
            raise ValueError("LinearFactor needs exactly one Jacobian block per key")
        rows = self.b.shape[0]
        for key, block in zip(self.keys, self.blocks):
            if block.ndim != 2 or block.shape[0] != rows:
                raise ValueError(
                    f"Jacobian block for key {key} has shape {block.shape}, expected ({rows}, d)"
                )

    @property
    def rows(self) -> int:
        return int(self.b.shape[0])

    def residual(self, delta: Mapping[NodeId, np.ndarray]) -> np.ndarray:
        r = -self.b.copy()
        for key, block in zip(self.keys, self.blocks):
            r += block @ delta[key]
        return r


class LinearSystem:
    """A sparse linear least-squares problem made of Jacobian factors."""

    def __init__(self, factors: Iterable[LinearFactor], dims: Mapping[NodeId, int]) -> None:
        self.factors: List[LinearFactor] = list(factors)
        self.dims: Dict[NodeId, int] = dict(dims)
        for f in self.factors:
            for key, block in zip(f.keys, f.blocks):
                if key not in self.dims:
                    raise ValueError(f"LinearFactor references unknown key {key}")
                if block.shape[1] != self.dims[key]:
                    raise ValueError(
                        f"Jacobian block for key {key} has {block.shape[1]} columns, "
                        f"variable dimension is {self.dims[key]}"
                    )

    def __len__(self) -> int:
        return len(self.factors)

    def keys(self) -> List[NodeId]:
        return sorted(self.dims)

    def dim(self, key: NodeId) -> int:
        return self.dims[key]

    def total_dim(self) -> int:
        return sum(self.dims.values())

    def rows(self) -> int:
        return sum(f.rows for f in self.factors)

    def augmented(self, extra: Iterable[LinearFactor]) -> "LinearSystem":
        """New system with ``extra`` factors appended (used for damping)."""
        return LinearSystem(self.factors + list(extra), self.dims)

    def column_index(self, ordering: Sequence[NodeId]) -> Dict[NodeId, Tuple[int, int]]:
        """key -> (start column, dim) when columns are laid out in ``ordering``."""
        index: Dict[NodeId, Tuple[int, int]] = {}
        offset = 0
        for key in ordering:
            index[key] = (offset, self.dims[key])
            offset += self.dims[key]
        return index

    def sparse_jacobian(
        self, ordering: Sequence[NodeId] | None = None
    ) -> Tuple[scipy.sparse.csr_matrix, np.ndarray]:
        """Assemble (A, b) with columns in ``ordering`` (sorted keys by default)."""
        ordering = self.keys() if ordering is None else list(ordering)
        index = self.column_index(ordering)
        rows, cols, vals, rhs = [], [], [], []
        row0 = 0
        for f in self.factors:
            m = f.rows
            for key, block in zip(f.keys, f.blocks):
                start, dim = index[key]
                r, c = np.nonzero(block)
                rows.append(r + row0)
                cols.append(c + start)
                vals.append(block[r, c])
            rhs.append(f.b)
            row0 += m
        n = sum(self.dims[k] for k in ordering)
        if not rows:
            return scipy.sparse.csr_matrix((row0, n)), np.zeros(row0)
        A = scipy.sparse.coo_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(row0, n),
        ).tocsr()
        return A, np.concatenate(rhs)

    def gradient_at_zero(self) -> VectorValues:
        """Aᵀb, the negative gradient of ½||Aδ - b||² at δ = 0."""
        g = {key: np.zeros(dim) for key, dim in self.dims.items()}
        for f in self.factors:
            for key, block in zip(f.keys, f.blocks):
                g[key] += block.T @ f.b
        return VectorValues(g)

    def multiply(self, delta: Mapping[NodeId, np.ndarray]) -> np.ndarray:
        """Stacked A δ."""
        out = []
        for f in self.factors:
            y = np.zeros(f.rows)
            for key, block in zip(f.keys, f.blocks):
                y += block @ delta[key]
            out.append(y)
        return np.concatenate(out) if out else np.zeros(0)

    def error(self, delta: Mapping[NodeId, np.ndarray]) -> float:
        """½ Σ_f ||A_f δ - b_f||²."""
        return 0.5 * float(sum(np.sum(f.residual(delta) ** 2) for f in self.factors))

    def hessian_diagonal(self) -> VectorValues:
        """diag(AᵀA) per key, used by diagonal damping and Jacobi preconditioning."""
        d = {key: np.zeros(dim) for key, dim in self.dims.items()}
        for f in self.factors:
            for key, block in zip(f.keys, f.blocks):
                d[key] += np.sum(block * block, axis=0)
        return VectorValues(d)
