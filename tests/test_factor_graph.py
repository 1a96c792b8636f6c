from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from graphopt.core.types import NodeId, FactorId, Variable, Factor, Values
from graphopt.core.factor_graph import FactorGraph
from graphopt.linear.system import VectorValues
from graphopt.slam.measurements import prior_residual, odom_residual, sigma_to_weight
from graphopt.optimization.driver import GaussNewtonOptimizer


def _tiny_slam() -> FactorGraph:
    """
    Two variables: p0, p1 (1D each).

    Factors:
      - prior on p0: wants p0 = 0
      - odom between p0 and p1: wants (p1 - p0) = 1
    """
    fg = FactorGraph()
    fg.add_variable(Variable(id=NodeId(0), type="pose1d", value=jnp.array([0.5])))
    fg.add_variable(Variable(id=NodeId(1), type="pose1d", value=jnp.array([0.5])))
    fg.add_factor(
        Factor(id=FactorId(0), type="prior", var_ids=(NodeId(0),),
               params={"target": jnp.array([0.0])})
    )
    fg.add_factor(
        Factor(id=FactorId(1), type="odom", var_ids=(NodeId(0), NodeId(1)),
               params={"measurement": jnp.array([1.0])})
    )
    fg.register_residual("prior", prior_residual)
    fg.register_residual("odom", odom_residual)
    return fg


def test_single_variable_prior():
    """
    One variable x, one prior factor:
        residual = x - target
    The optimum should be x ~= target after a single Gauss-Newton step.
    """
    fg = FactorGraph()
    fg.add_variable(Variable(id=NodeId(0), type="scalar", value=jnp.array([0.0])))
    fg.add_factor(
        Factor(id=FactorId(0), type="prior", var_ids=(NodeId(0),),
               params={"target": jnp.array([2.0])})
    )
    fg.register_residual("prior", prior_residual)

    opt = GaussNewtonOptimizer(fg, fg.initial_values())
    values = opt.optimize()

    assert values[NodeId(0)].shape == (1,)
    assert float(values[NodeId(0)][0]) == pytest.approx(2.0, abs=1e-9)
    assert opt.error() == pytest.approx(0.0, abs=1e-12)


def test_tiny_slam_prior_plus_odom():
    """
    Optimum: p0 = 0, p1 = 1. The problem is linear, so Gauss-Newton
    lands on it in one step and the second step confirms convergence.
    """
    fg = _tiny_slam()

    opt = GaussNewtonOptimizer(fg, fg.initial_values())
    values = opt.optimize()

    assert float(values[NodeId(0)][0]) == pytest.approx(0.0, abs=1e-9)
    assert float(values[NodeId(1)][0]) == pytest.approx(1.0, abs=1e-9)
    assert opt.iterations() <= 2


def test_error_is_half_squared_residual_norm():
    """
    At the initial values: prior residual 0.5, odom residual (0.5-0.5)-1 = -1.
    error = 0.5 * (0.25 + 1.0)
    """
    fg = _tiny_slam()
    assert fg.error(fg.initial_values()) == pytest.approx(0.625)

    x, _ = fg.pack_state()
    objective = fg.build_objective()
    assert float(objective(x)) == pytest.approx(0.625)


def test_linearize_splits_jacobian_per_variable():
    fg = _tiny_slam()
    system = fg.linearize(fg.initial_values())

    assert len(system) == 2
    assert system.dims == {NodeId(0): 1, NodeId(1): 1}

    prior, odom = system.factors
    assert prior.keys == (NodeId(0),)
    np.testing.assert_allclose(prior.blocks[0], [[1.0]])
    np.testing.assert_allclose(prior.b, [-0.5])

    assert odom.keys == (NodeId(0), NodeId(1))
    np.testing.assert_allclose(odom.blocks[0], [[-1.0]])
    np.testing.assert_allclose(odom.blocks[1], [[1.0]])
    np.testing.assert_allclose(odom.b, [1.0])


def test_retract_returns_new_values():
    fg = _tiny_slam()
    initial = fg.initial_values()
    delta = VectorValues({NodeId(0): [-0.5], NodeId(1): [0.5]})

    updated = fg.retract(initial, delta)

    assert float(updated[NodeId(0)][0]) == pytest.approx(0.0)
    assert float(updated[NodeId(1)][0]) == pytest.approx(1.0)
    # the original estimate is untouched
    assert float(initial[NodeId(0)][0]) == pytest.approx(0.5)


def test_missing_residual_raises():
    fg = FactorGraph()
    fg.add_variable(Variable(id=NodeId(0), type="scalar", value=jnp.array([0.0])))
    fg.add_factor(
        Factor(id=FactorId(0), type="unknown", var_ids=(NodeId(0),), params={})
    )
    with pytest.raises(ValueError, match="No residual fn registered"):
        fg.error(fg.initial_values())


def test_duplicate_variable_rejected():
    fg = FactorGraph()
    fg.add_variable(Variable(id=NodeId(0), type="scalar", value=jnp.array([0.0])))
    with pytest.raises(ValueError):
        fg.add_variable(Variable(id=NodeId(0), type="scalar", value=jnp.array([1.0])))


def test_values_are_immutable_snapshots():
    values = Values({NodeId(0): [1.0, 2.0]})
    extended = values.insert(NodeId(1), [3.0])

    assert len(values) == 1
    assert len(extended) == 2
    assert values.dims() == {NodeId(0): 2}
    with pytest.raises(KeyError):
        values.insert(NodeId(0), [0.0])
    with pytest.raises(TypeError):
        values[NodeId(0)] = jnp.zeros(2)


def test_sigma_and_weight_whiten_the_same_way():
    """
    sigma = 0.5 and information weight 1 / 0.5² give the same residual
    (2 * raw); "sigma" takes precedence over "weight".
    """
    x = jnp.array([1.0, 3.0])
    target = jnp.array([0.0, 0.0])

    by_sigma = prior_residual(x, {"target": target, "sigma": jnp.array(0.5)})
    by_weight = prior_residual(x, {"target": target, "weight": sigma_to_weight(0.5)})
    both = prior_residual(x, {"target": target, "sigma": jnp.array(0.5), "weight": jnp.array(100.0)})

    np.testing.assert_allclose(by_sigma, [2.0, 6.0])
    np.testing.assert_allclose(by_weight, [2.0, 6.0])
    np.testing.assert_allclose(both, [2.0, 6.0])


def test_vector_weight_is_sqrt_information():
    x = jnp.array([1.0, 1.0, 2.0, 3.0])
    r = odom_residual(x, {"measurement": jnp.array([1.0, 1.0]), "weight": jnp.array([3.0, 0.5])})
    np.testing.assert_allclose(r, [0.0, 0.5], atol=1e-12)
