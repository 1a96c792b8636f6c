# Copyright (c) 2025.
# This file is part of graphopt, released under the MIT License.
"""
Convergence test shared by every optimization strategy.

check_convergence(relative_error_tol, absolute_error_tol, error_tol,
                  current_error, new_error) -> bool

    1. new_error <= error_tol                      -> converged
    2. absolute_decrease = current_error - new_error
       relative_decrease = absolute_decrease / current_error
    3. converged iff
           (relative_error_tol != 0 and relative_decrease <= relative_error_tol)
        or absolute_decrease <= absolute_error_tol

A step that *increases* the error has a negative absolute decrease and is
therefore reported as converged: the loop stops on divergence instead of
running until max_iterations. The only trace of the difference is a warning
in the diagnostics.

If current_error is 0 and new_error is above error_tol (possible only with a
negative error_tol) the relative decrease is undefined; that case is treated
as converged without dividing.

Verbosity controls logging only.
"""

from __future__ import annotations

import logging

from .params import OptimizerParams, Verbosity

logger = logging.getLogger(__name__)


def check_convergence(
    relative_error_tol: float,
    absolute_error_tol: float,
    error_tol: float,
    current_error: float,
    new_error: float,
    verbosity: Verbosity = Verbosity.SILENT,
) -> bool:
    if verbosity >= Verbosity.ERROR:
        if new_error <= error_tol:
            logger.info("errorThreshold: %g <= %g", new_error, error_tol)
        else:
            logger.info("errorThreshold: %g > %g", new_error, error_tol)

    if new_error <= error_tol:
        return True

    absolute_decrease = current_error - new_error
    if verbosity >= Verbosity.ERROR:
        op = "<=" if absolute_decrease <= absolute_error_tol else ">"
        logger.info("absoluteDecrease: %.12g %s %g", absolute_decrease, op, absolute_error_tol)

    if current_error == 0.0:
        if verbosity >= Verbosity.TERMINATION:
            logger.warning(
                "current error is 0 but new error %g exceeds errorTol %g; stopping",
                new_error,
                error_tol,
            )
        return True

    relative_decrease = absolute_decrease / current_error
    if verbosity >= Verbosity.ERROR:
        op = "<=" if relative_decrease <= relative_error_tol else ">"
        logger.info("relativeDecrease: %.12g %s %g", relative_decrease, op, relative_error_tol)

    converged = bool(
        (relative_error_tol != 0 and relative_decrease <= relative_error_tol)
        or absolute_decrease <= absolute_error_tol
    )

    if verbosity >= Verbosity.TERMINATION and converged:
        if absolute_decrease >= 0.0:
            logger.info("converged")
        else:
            logger.warning("stopping nonlinear iterations because error increased")
        logger.info("errorThreshold: %g <? %g", new_error, error_tol)
        logger.info("absoluteDecrease: %.12g <? %g", absolute_decrease, absolute_error_tol)
        logger.info("relativeDecrease: %.12g <? %g", relative_decrease, relative_error_tol)
    return converged


def check_convergence_params(params: OptimizerParams, current_error: float, new_error: float) -> bool:
    return check_convergence(
        params.relative_error_tol,
        params.absolute_error_tol,
        params.error_tol,
        current_error,
        new_error,
        params.verbosity,
    )
