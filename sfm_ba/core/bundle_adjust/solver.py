"""
Solver invocation

Runs scipy.optimize.least_squares over a Problem and reports a summary.
The summary is for logging; callers do not branch on it.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import least_squares

from .config import SolverOptions
from .exceptions import InvalidConfigurationError
from .loss import LossFunctionType
from .problem import Problem

logger = logging.getLogger(__name__)


class TerminationType(Enum):
    """Why the solver stopped"""
    CONVERGENCE = "convergence"
    NO_CONVERGENCE = "no_convergence"
    FAILURE = "failure"


# scipy least_squares status codes
_STATUS_TERMINATION = {
    -1: TerminationType.FAILURE,
    0: TerminationType.NO_CONVERGENCE,
    1: TerminationType.CONVERGENCE,
    2: TerminationType.CONVERGENCE,
    3: TerminationType.CONVERGENCE,
    4: TerminationType.CONVERGENCE,
}


@dataclass
class SolverSummary:
    """Outcome of one solve"""

    termination_type: TerminationType
    message: str
    num_residual_blocks: int
    num_residuals: int
    num_parameters: int
    num_free_parameters: int
    num_iterations: int = 0
    num_function_evaluations: int = 0
    num_jacobian_evaluations: int = 0
    initial_cost: float = 0.0
    final_cost: float = 0.0
    total_time: float = 0.0
    method: str = ""

    @property
    def success(self) -> bool:
        return self.termination_type == TerminationType.CONVERGENCE

    def brief_report(self) -> str:
        return (
            f"Solver: {self.termination_type.value}, "
            f"iterations={self.num_iterations}, "
            f"cost {self.initial_cost:.6e} -> {self.final_cost:.6e}"
        )

    def full_report(self) -> str:
        reduction = self.initial_cost - self.final_cost
        lines = [
            "Solver Summary",
            f"  Method                  {self.method or '-'}",
            f"  Residual blocks         {self.num_residual_blocks}",
            f"  Residuals               {self.num_residuals}",
            f"  Parameters              {self.num_parameters}",
            f"  Free parameters         {self.num_free_parameters}",
            f"  Initial cost            {self.initial_cost:.6e}",
            f"  Final cost              {self.final_cost:.6e}",
            f"  Change                  {reduction:.6e}",
            f"  Iterations              {self.num_iterations}",
            f"  Function evaluations    {self.num_function_evaluations}",
            f"  Jacobian evaluations    {self.num_jacobian_evaluations}",
            f"  Total time (s)          {self.total_time:.4f}",
            f"  Termination             {self.termination_type.value} ({self.message})",
        ]
        return "\n".join(lines)


def is_valid(
    options: SolverOptions,
    loss_type: LossFunctionType = LossFunctionType.TRIVIAL_LOSS,
) -> Tuple[bool, str]:
    """(valid, message) for solver options combined with a loss type"""
    return options.is_valid(loss_type)


def solve(
    problem: Problem,
    options: SolverOptions,
    verbose: bool = False,
    log: Optional[logging.Logger] = None,
) -> SolverSummary:
    """
    Minimize the problem's robustified reprojection error

    The solution is written into the problem's parameter buffers.
    Problems without residuals or free parameters, and zero-iteration
    options, return without invoking the solver.

    Raises:
        InvalidConfigurationError: method "lm" on a problem with fewer
            residuals than free parameters
    """
    log = log or logger
    start_time = time.time()

    base = problem.full_parameters()
    x0 = problem.free_parameters()

    initial_residuals = problem.evaluate(x0, base) if problem.num_residual_blocks else np.zeros(0)
    initial_cost = 0.5 * float(initial_residuals @ initial_residuals)

    summary = SolverSummary(
        termination_type=TerminationType.CONVERGENCE,
        message="",
        num_residual_blocks=problem.num_residual_blocks,
        num_residuals=problem.num_residuals,
        num_parameters=problem.num_parameters,
        num_free_parameters=x0.size,
        initial_cost=initial_cost,
        final_cost=initial_cost,
        method=options.method,
    )

    if problem.num_residual_blocks == 0:
        summary.message = "No residual blocks"
        return summary
    if x0.size == 0:
        summary.message = "No free parameters"
        return summary
    if options.max_iterations == 0:
        summary.termination_type = TerminationType.NO_CONVERGENCE
        summary.message = "Maximum number of iterations is zero"
        return summary
    if options.method == "lm" and problem.num_residuals < x0.size:
        raise InvalidConfigurationError(
            f"Method 'lm' needs at least as many residuals as free parameters, "
            f"got {problem.num_residuals} residuals and {x0.size} free parameters"
        )

    evaluations = [0]

    def residual_fn(x):
        residuals = problem.evaluate(x, base)
        evaluations[0] += 1
        if verbose:
            log.info(
                f"Evaluation {evaluations[0]}: "
                f"cost={0.5 * float(residuals @ residuals):.6e}"
            )
        return residuals

    kwargs = dict(
        method=options.method,
        jac=options.jacobian,
        ftol=options.function_tolerance,
        xtol=options.parameter_tolerance,
        gtol=options.gradient_tolerance,
        x_scale=options.x_scale,
        max_nfev=options.max_iterations,
        verbose=2 if verbose else 0,
    )
    if problem.loss is not None:
        kwargs.update(problem.loss.least_squares_kwargs())
    if options.method != "lm":
        kwargs["jac_sparsity"] = problem.jacobian_sparsity()
        kwargs["tr_solver"] = options.tr_solver

    result = least_squares(residual_fn, x0, **kwargs)

    problem.set_free_parameters(result.x)

    summary.termination_type = _STATUS_TERMINATION.get(result.status, TerminationType.FAILURE)
    summary.message = result.message
    # lm reports no Jacobian count
    summary.num_iterations = int(result.njev) if result.njev is not None else int(result.nfev)
    summary.num_function_evaluations = evaluations[0]
    summary.num_jacobian_evaluations = int(result.njev or 0)
    summary.final_cost = 0.5 * float(result.fun @ result.fun)
    summary.total_time = time.time() - start_time
    return summary
