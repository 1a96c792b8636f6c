from __future__ import annotations

import logging

import pytest

from graphopt.optimization.convergence import check_convergence, check_convergence_params
from graphopt.optimization.params import OptimizerParams, Verbosity


def test_relative_decrease_below_tolerance_converges():
    """
    currentError = 100, newError = 99.9999:
        absoluteDecrease = 1e-4  (> 1e-5, not enough on its own)
        relativeDecrease = 1e-6  (<= 1e-5)
    -> converged.
    """
    assert check_convergence(1e-5, 1e-5, 0.0, 100.0, 99.9999) is True


def test_error_increase_counts_as_converged():
    """
    currentError = 10, newError = 11: the absolute decrease is -1, which is
    below any non-negative tolerance, so the loop stops on divergence.
    """
    assert check_convergence(1e-5, 1e-5, 0.0, 10.0, 11.0) is True


@pytest.mark.parametrize("rel, abs_, current", [(0.0, 0.0, 5.0), (1e-5, 1e-5, 1e9), (0.9, 10.0, 3.0)])
def test_error_below_error_tol_always_converges(rel, abs_, current):
    assert check_convergence(rel, abs_, 1.0, current, 0.99) is True
    assert check_convergence(rel, abs_, 1.0, current, 1.0) is True


def test_large_decrease_does_not_converge():
    """Error halves: both decreases are far above the tolerances."""
    assert check_convergence(1e-5, 1e-5, 0.0, 10.0, 5.0) is False


def test_zero_relative_tolerance_disables_relative_test():
    """
    relativeDecrease = 1e-6 would pass any small relative tolerance, but with
    relative_error_tol = 0 only the absolute test (1e-4 > 1e-5) applies.
    """
    assert check_convergence(0.0, 1e-5, 0.0, 100.0, 99.9999) is False
    assert check_convergence(1e-5, 1e-5, 0.0, 100.0, 99.9999) is True


def test_absolute_decrease_below_tolerance_converges():
    assert check_convergence(0.0, 1e-3, 0.0, 1.0, 0.9995) is True


def test_zero_current_error_stops_without_dividing():
    """Only reachable with a negative error_tol."""
    assert check_convergence(1e-5, 1e-5, -1.0, 0.0, 0.5) is True


def test_one_percent_steps_never_meet_half_percent_tolerance():
    """
    Ten consecutive 1% decreases with relative_error_tol = 0.5%: every
    single step still decreases the error by 1%, so the checker keeps
    saying "not converged" and only max_iterations would end the run.
    """
    error = 100.0
    verdicts = []
    for _ in range(10):
        new_error = error * 0.99
        verdicts.append(check_convergence(0.005, 1e-8, 0.0, error, new_error))
        error = new_error
    assert verdicts == [False] * 10


def test_params_wrapper_reads_tolerances():
    params = OptimizerParams(relative_error_tol=0.0, absolute_error_tol=0.5, error_tol=0.0)
    assert check_convergence_params(params, 10.0, 9.6) is True
    assert check_convergence_params(params, 10.0, 9.0) is False


def test_verbosity_changes_logging_only(caplog):
    """The verdict is identical at every verbosity; only the log output differs."""
    args = (1e-5, 1e-5, 0.0, 10.0, 11.0)
    verdicts = []
    with caplog.at_level(logging.INFO, logger="graphopt.optimization.convergence"):
        for verbosity in Verbosity:
            verdicts.append(check_convergence(*args, verbosity=verbosity))
    assert all(verdicts)
    assert any("error increased" in rec.getMessage() for rec in caplog.records)


def test_silent_verbosity_logs_nothing(caplog):
    with caplog.at_level(logging.DEBUG, logger="graphopt.optimization.convergence"):
        check_convergence(1e-5, 1e-5, 0.0, 10.0, 11.0, verbosity=Verbosity.SILENT)
    assert caplog.records == []
