"""
Nonlinear factor graph for graphopt.

This module implements the problem type the optimizers work on: a factor
graph whose factors are registered residual functions. It provides the
three operations the optimization driver needs (error, linearize, retract)
plus the flat-vector views used for quick objective evaluation.

The FactorGraph stores:
    - Variables (nodes in the optimization graph) with their initial values
    - Factors (error terms between variables)
    - Registered residual functions (by factor type)

Key Features
------------
• Per-factor linearization
    Each factor type's residual is wrapped once in a jitted function that
    returns both r(x) and its Jacobian (`jax.jacfwd`). Linearizing the graph
    evaluates it per factor and splits the Jacobian into per-variable
    blocks, which keeps the linear system sparse.

• Manifold-aware updates
    `retract` applies a tangent step per variable using the manifold of its
    type (see `slam.manifold`), so SE(2) headings stay wrapped.

• Cost convention
    error(values) = ½ Σ_f ||r_f||², with any weighting already applied
    inside the residual functions.

Primary Methods
---------------
initial_values()
    The declared initial estimate as an immutable `Values`.

error(values), linearize(values), retract(values, delta)
    The problem capability consumed by `optimization.driver`.

pack_state(values=None) / unpack_state(x, index)
    Flat-vector conversion, sorted by NodeId.

build_residual_function() / build_objective()
    Jitted r(x) and ½||r(x)||² on the packed state, for callers that want
    to use JAX solvers or autodiff directly.

Notes
-----
Residual functions must accept (x_stacked, params) where params is a dict of
arrays or numbers; strings and other non-array leaves cannot be traced.
The graph is a builder: add everything before optimizing and do not mutate
it during a run.
"""


from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from graphopt.linear.system import LinearFactor, LinearSystem, VectorValues
from graphopt.slam.manifold import get_manifold_for_var_type, retract_block
from .types import NodeId, FactorId, Variable, Factor, Values


# Type aliases for clarity
ResidualFn = Callable[[jnp.ndarray, Dict[str, jnp.ndarray]], jnp.ndarray]


def _make_linearizer(fn: ResidualFn):
    jac = jax.jacfwd(fn)

    def linearize(x, params):
        return fn(x, params), jac(x, params)

    return jax.jit(linearize)


@dataclass
class FactorGraph:
    """
    Nonlinear factor graph.

    - variables: mapping from NodeId -> Variable
    - factors: mapping from FactorId -> Factor
    - residual_fns: mapping factor.type -> callable that computes residuals
    """
    variables: Dict[NodeId, Variable] = field(default_factory=dict)
    factors: Dict[FactorId, Factor] = field(default_factory=dict)
    residual_fns: Dict[str, ResidualFn] = field(default_factory=dict)
    _compiled: Dict[str, Tuple[Callable, Callable]] = field(
        default_factory=dict, repr=False, compare=False
    )

    def add_variable(self, var: Variable) -> None:
        if var.id in self.variables:
            raise ValueError(f"Variable {var.id} already exists")
        self.variables[var.id] = var

    def add_factor(self, factor: Factor) -> None:
        if factor.id in self.factors:
            raise ValueError(f"Factor {factor.id} already exists")
        self.factors[factor.id] = factor

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn
        self._compiled.pop(factor_type, None)

    def _compiled_fns(self, factor_type: str) -> Tuple[Callable, Callable]:
        if factor_type not in self._compiled:
            fn = self.residual_fns.get(factor_type, None)
            if fn is None:
                raise ValueError(f"No residual fn registered for factor type '{factor_type}'")
            self._compiled[factor_type] = (jax.jit(fn), _make_linearizer(fn))
        return self._compiled[factor_type]

    def _stacked(self, factor: Factor, values: Mapping[NodeId, jnp.ndarray]) -> jnp.ndarray:
        try:
            return jnp.concatenate([values[vid] for vid in factor.var_ids])
        except KeyError as exc:
            raise ValueError(
                f"Factor {factor.id} ('{factor.type}') references variable {exc.args[0]} "
                "which has no value"
            ) from exc

    # --- Problem capability ---

    def initial_values(self) -> Values:
        return Values({nid: var.value for nid, var in self.variables.items()})

    def error(self, values: Values) -> float:
        total = 0.0
        for factor in self.factors.values():
            residual, _ = self._compiled_fns(factor.type)
            r = residual(self._stacked(factor, values), factor.params)
            total += 0.5 * float(jnp.sum(r ** 2))
        return total

    def linearize(self, values: Values) -> LinearSystem:
        dims = {key: int(v.shape[0]) for key, v in values.items()}
        linear_factors = []
        for factor in self.factors.values():
            _, linearizer = self._compiled_fns(factor.type)
            r, J = linearizer(self._stacked(factor, values), factor.params)
            r = np.atleast_1d(np.asarray(r, dtype=np.float64))
            J = np.asarray(J, dtype=np.float64).reshape(r.shape[0], -1)

            blocks = []
            offset = 0
            for vid in factor.var_ids:
                blocks.append(J[:, offset:offset + dims[vid]])
                offset += dims[vid]
            linear_factors.append(
                LinearFactor(keys=tuple(factor.var_ids), blocks=tuple(blocks), b=-r)
            )
        return LinearSystem(linear_factors, dims)

    def retract(self, values: Values, delta: VectorValues) -> Values:
        updated = {}
        for key, value in values.items():
            if key not in delta:
                updated[key] = value
                continue
            var = self.variables.get(key)
            manifold = get_manifold_for_var_type(var.type) if var is not None else "euclidean"
            updated[key] = retract_block(manifold, value, delta[key])
        return Values(updated)

    # --- State packing/unpacking ---

    def _build_state_index(self, values: Mapping | None = None) -> Dict[NodeId, Tuple[int, int]]:
        """
        Returns a mapping: NodeId -> (start_index, dim)
        All values are 1D arrays.
        """
        source = values if values is not None else {
            nid: var.value for nid, var in self.variables.items()
        }
        index: Dict[NodeId, Tuple[int, int]] = {}
        offset = 0
        for node_id in sorted(source):
            dim = jnp.atleast_1d(jnp.asarray(source[node_id])).shape[0]
            index[node_id] = (offset, dim)
            offset += dim
        return index

    def pack_state(self, values: Mapping | None = None):
        source = values if values is not None else {
            nid: var.value for nid, var in self.variables.items()
        }
        index = self._build_state_index(source)
        chunks = [jnp.atleast_1d(jnp.asarray(source[node_id])) for node_id in sorted(source)]
        return jnp.concatenate(chunks), index

    def unpack_state(self, x: jnp.ndarray, index: Dict[NodeId, Tuple[int, int]]) -> Dict[NodeId, jnp.ndarray]:
        result: Dict[NodeId, jnp.ndarray] = {}
        for node_id, (start, dim) in index.items():
            result[node_id] = x[start:start+dim]
        return result

    # --- Objective ---

    def build_residual_function(self):
        """
        Returns a JIT-able function r(x) -> residual vector,
        where x is the packed state.
        """
        # Freeze index and factor list inside the closure
        _, index = self.pack_state()
        factors = tuple(self.factors.values())
        residual_fns = dict(self.residual_fns)
        for factor in factors:
            if factor.type not in residual_fns:
                raise ValueError(f"No residual fn registered for factor type '{factor.type}'")

        def residual(x: jnp.ndarray) -> jnp.ndarray:
            var_values = self.unpack_state(x, index)
            res_list = [
                jnp.reshape(residual_fns[f.type](self._stacked(f, var_values), f.params), (-1,))
                for f in factors
            ]
            if not res_list:
                return jnp.zeros((0,), dtype=x.dtype)
            return jnp.concatenate(res_list)

        return jax.jit(residual)

    def build_objective(self):
        """
        Returns a JIT-able function f(x) -> ½||r(x)||², matching `error`.
        """
        residual = self.build_residual_function()

        def objective(x: jnp.ndarray) -> jnp.ndarray:
            r = residual(x)
            return 0.5 * jnp.sum(r ** 2)

        return jax.jit(objective)
