# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Variable elimination orderings.

An ordering is a tuple of NodeIds listing every variable of a linear
system exactly once. It changes fill-in and speed, never the solution.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Sequence, Set, Tuple

import numpy as np
import scipy.sparse
from scipy.sparse.csgraph import reverse_cuthill_mckee

from graphopt.core.errors import ConfigurationError
from graphopt.core.types import NodeId
from .system import LinearSystem

Ordering = Tuple[NodeId, ...]


class OrderingType(Enum):
    NATURAL = "natural"
    MIN_DEGREE = "min_degree"
    RCM = "rcm"


def variable_adjacency(system: LinearSystem) -> Dict[NodeId, Set[NodeId]]:
    """key -> keys sharing at least one factor with it."""
    adj: Dict[NodeId, Set[NodeId]] = {key: set() for key in system.dims}
    for f in system.factors:
        for a in f.keys:
            for b in f.keys:
                if a != b:
                    adj[a].add(b)
    return adj


def _min_degree(system: LinearSystem) -> List[NodeId]:
    adj = variable_adjacency(system)
    order: List[NodeId] = []
    while adj:
        key = min(adj, key=lambda k: (len(adj[k]), k))
        neighbors = adj.pop(key)
        for n in neighbors:
            adj[n].discard(key)
            adj[n].update(neighbors - {n})
        order.append(key)
    return order


def _rcm(system: LinearSystem) -> List[NodeId]:
    keys = system.keys()
    if not keys:
        return []
    pos = {key: i for i, key in enumerate(keys)}
    rows, cols = [], []
    for key, neighbors in variable_adjacency(system).items():
        for n in neighbors:
            rows.append(pos[key])
            cols.append(pos[n])
    graph = scipy.sparse.csr_matrix(
        (np.ones(len(rows)), (rows, cols)), shape=(len(keys), len(keys))
    )
    perm = reverse_cuthill_mckee(graph, symmetric_mode=True)
    return [keys[i] for i in perm]


def compute_ordering(system: LinearSystem, ordering_type: OrderingType) -> Ordering:
    if ordering_type == OrderingType.NATURAL:
        return tuple(system.keys())
    if ordering_type == OrderingType.MIN_DEGREE:
        return tuple(_min_degree(system))
    if ordering_type == OrderingType.RCM:
        return tuple(_rcm(system))
    raise ConfigurationError(f"Unknown ordering type {ordering_type!r}")


def validate_ordering(system: LinearSystem, ordering: Sequence[NodeId]) -> Ordering:
    """Check that ``ordering`` lists every variable of ``system`` exactly once."""
    ordering = tuple(ordering)
    if len(set(ordering)) != len(ordering):
        raise ConfigurationError("Ordering contains duplicate keys")
    missing = set(system.dims) - set(ordering)
    extra = set(ordering) - set(system.dims)
    if missing or extra:
        raise ConfigurationError(
            f"Ordering does not match the linear system (missing {sorted(missing)}, "
            f"unknown {sorted(extra)})"
        )
    return ordering


def resolve_ordering(
    system: LinearSystem,
    ordering: Sequence[NodeId] | None,
    ordering_type: OrderingType,
) -> Ordering:
    """Explicit ordering if given (validated), else one computed from ``ordering_type``."""
    if ordering is not None:
        return validate_ordering(system, ordering)
    return compute_ordering(system, ordering_type)
