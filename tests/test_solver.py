"""
Unit tests for solver invocation and robust losses
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sfm_ba.core.bundle_adjust.config import SolverOptions
from sfm_ba.core.bundle_adjust.distortion import LensDistortionType
from sfm_ba.core.bundle_adjust.exceptions import InvalidConfigurationError
from sfm_ba.core.bundle_adjust.loss import (
    LossFunctionType,
    loss_function_factory,
    tukey_loss,
)
from sfm_ba.core.bundle_adjust.problem import (
    Problem,
    extrinsics_key,
    intrinsics_key,
    landmark_key,
)
from sfm_ba.core.bundle_adjust.reprojection import create_cost_func
from sfm_ba.core.bundle_adjust.solver import (
    SolverSummary,
    TerminationType,
    is_valid,
    solve,
)


def create_problem(point, loss=None):
    """Two fixed identity-intrinsics cameras observing one free landmark"""
    problem = Problem()
    intrinsics = np.array([1000.0, 640.0, 480.0, 1.0, 0.0])
    observations = {
        1: (np.zeros(6), (740.0, 520.0)),
        2: (np.array([0.0, 0.0, 0.0, 1.0, 0.0, 0.0]), (540.0, 520.0)),
    }
    for frame_id, (extrinsics, (x, y)) in observations.items():
        problem.add_residual_block(
            create_cost_func(LensDistortionType.NO_DISTORTION, x, y),
            loss,
            (intrinsics_key(0), intrinsics),
            (extrinsics_key(frame_id), extrinsics),
            (landmark_key(7), point),
        )
    problem.set_parameter_block_constant(intrinsics_key(0))
    problem.set_parameter_block_constant(extrinsics_key(1))
    problem.set_parameter_block_constant(extrinsics_key(2))
    return problem


class TestSolve:
    """Test the least squares solve"""

    def test_empty_problem(self):
        """Test a problem without residuals is not solved"""
        summary = solve(Problem(), SolverOptions())

        assert summary.num_residual_blocks == 0
        assert summary.num_iterations == 0
        assert summary.message == "No residual blocks"

    def test_no_free_parameters(self):
        """Test a fully constant problem is not solved"""
        point = np.array([0.5, 0.2, 5.0])
        problem = create_problem(point)
        problem.set_parameter_block_constant(landmark_key(7))

        summary = solve(problem, SolverOptions())

        assert summary.num_free_parameters == 0
        assert summary.num_iterations == 0
        assert summary.message == "No free parameters"

    def test_zero_iterations(self):
        """Test zero iterations leaves the buffers untouched"""
        point = np.array([0.6, 0.1, 5.5])
        problem = create_problem(point)

        summary = solve(problem, SolverOptions(max_iterations=0))

        np.testing.assert_array_equal(point, [0.6, 0.1, 5.5])
        assert summary.termination_type == TerminationType.NO_CONVERGENCE
        assert summary.final_cost == summary.initial_cost

    def test_recovers_landmark(self):
        """Test triangulation of a perturbed landmark from fixed cameras"""
        point = np.array([0.55, 0.17, 5.2])
        problem = create_problem(point)
        options = SolverOptions(
            function_tolerance=1e-15,
            gradient_tolerance=1e-15,
            parameter_tolerance=1e-15,
        )

        summary = solve(problem, options)

        np.testing.assert_allclose(point, [0.5, 0.2, 5.0], atol=1e-6)
        assert summary.final_cost < summary.initial_cost
        assert summary.num_free_parameters == 3

    def test_iterations_count_jacobian_evaluations(self):
        """Test iterations exclude finite difference evaluations"""
        point = np.array([0.55, 0.17, 5.2])
        problem = create_problem(point)

        summary = solve(problem, SolverOptions())

        assert summary.num_iterations == summary.num_jacobian_evaluations
        assert 0 < summary.num_iterations < summary.num_function_evaluations

    def test_lm_method(self):
        """Test lm solves a problem with enough residuals"""
        point = np.array([0.55, 0.17, 5.2])
        problem = create_problem(point)
        options = SolverOptions(
            method="lm",
            function_tolerance=1e-15,
            gradient_tolerance=1e-15,
            parameter_tolerance=1e-15,
        )

        summary = solve(problem, options)

        np.testing.assert_allclose(point, [0.5, 0.2, 5.0], atol=1e-6)
        assert summary.method == "lm"
        assert summary.num_iterations > 0

    def test_lm_rejects_underdetermined_problem(self):
        """Test lm raises before solving with fewer residuals than unknowns"""
        point = np.array([0.55, 0.17, 5.2])
        problem = create_problem(point)
        problem.set_parameter_block_variable(extrinsics_key(2))

        with pytest.raises(InvalidConfigurationError):
            solve(problem, SolverOptions(method="lm"))

        np.testing.assert_array_equal(point, [0.55, 0.17, 5.2])

    def test_recovers_landmark_with_robust_loss(self):
        """Test a robust loss still reaches the exact solution"""
        point = np.array([0.55, 0.17, 5.2])
        problem = create_problem(point, loss_function_factory("cauchy", 2.0))
        options = SolverOptions(
            function_tolerance=1e-15,
            gradient_tolerance=1e-15,
            parameter_tolerance=1e-15,
        )

        solve(problem, options)

        np.testing.assert_allclose(point, [0.5, 0.2, 5.0], atol=1e-5)

    def test_exact_solution_stops_immediately(self):
        """Test a zero-residual start converges without moving"""
        point = np.array([0.5, 0.2, 5.0])
        problem = create_problem(point)

        summary = solve(problem, SolverOptions())

        assert summary.success
        assert summary.num_iterations <= 2
        np.testing.assert_allclose(point, [0.5, 0.2, 5.0], atol=1e-9)

    def test_verbose_logs_evaluations(self, caplog):
        """Test verbose mode logs per-evaluation cost"""
        point = np.array([0.55, 0.17, 5.2])
        problem = create_problem(point)

        with caplog.at_level("INFO"):
            solve(problem, SolverOptions(max_iterations=5), verbose=True)

        assert "Evaluation 1: cost=" in caplog.text


class TestSolverSummary:
    """Test summary reports"""

    def create_summary(self):
        return SolverSummary(
            termination_type=TerminationType.CONVERGENCE,
            message="`ftol` termination condition is satisfied.",
            num_residual_blocks=2,
            num_residuals=4,
            num_parameters=22,
            num_free_parameters=3,
            num_iterations=6,
            initial_cost=1250.0,
            final_cost=1e-20,
            method="trf",
        )

    def test_brief_report(self):
        """Test the one-line report"""
        report = self.create_summary().brief_report()

        assert report.startswith("Solver: convergence")
        assert "iterations=6" in report

    def test_full_report(self):
        """Test the multi-line report lists counts and termination"""
        report = self.create_summary().full_report()

        assert report.splitlines()[0] == "Solver Summary"
        assert "Residual blocks         2" in report
        assert "Free parameters         3" in report
        assert "ftol" in report


class TestIsValid:
    """Test solver option validation"""

    def test_defaults_valid(self):
        """Test default options pass"""
        valid, message = is_valid(SolverOptions())
        assert valid
        assert message == ""

    def test_lm_with_robust_loss(self):
        """Test lm rejects robust losses"""
        valid, message = is_valid(SolverOptions(method="lm"), LossFunctionType.HUBER_LOSS)
        assert not valid
        assert "lm" in message

        valid, _ = is_valid(SolverOptions(method="lm"), "trivial")
        assert valid

    @pytest.mark.parametrize("options", [
        SolverOptions(method="newton"),
        SolverOptions(jacobian="cs"),
        SolverOptions(tr_solver="exact"),
        SolverOptions(max_iterations=-1),
        SolverOptions(function_tolerance=-1.0),
        SolverOptions(function_tolerance=0.0, gradient_tolerance=0.0, parameter_tolerance=0.0),
        SolverOptions(x_scale=0.0),
        SolverOptions(x_scale="auto"),
    ])
    def test_invalid_options(self, options):
        """Test invalid solver options are reported"""
        valid, message = is_valid(options)
        assert not valid
        assert message


class TestLossFunctions:
    """Test robust loss construction"""

    def test_factory(self):
        """Test factory converts names and keeps the scale"""
        loss = loss_function_factory("huber", 2.5)

        assert loss.loss_type == LossFunctionType.HUBER_LOSS
        assert loss.least_squares_kwargs() == {"loss": "huber", "f_scale": 2.5}

    def test_trivial_loss(self):
        """Test the trivial loss maps to plain least squares"""
        loss = loss_function_factory(LossFunctionType.TRIVIAL_LOSS)

        assert loss.is_trivial
        assert loss.least_squares_kwargs() == {"loss": "linear"}

    def test_tukey_uses_callable(self):
        """Test Tukey is passed to scipy as a callable"""
        loss = loss_function_factory("tukey", 3.0)
        kwargs = loss.least_squares_kwargs()

        assert kwargs["loss"] is tukey_loss
        assert kwargs["f_scale"] == 3.0

    def test_invalid_scale(self):
        """Test non-positive scales are rejected"""
        with pytest.raises(ValueError):
            loss_function_factory("cauchy", 0.0)

    def test_unknown_type(self):
        """Test unknown loss names are rejected"""
        with pytest.raises(ValueError):
            loss_function_factory("l2")

    def test_instances_are_distinct(self):
        """Test each factory call creates a new loss"""
        assert loss_function_factory("huber") is not loss_function_factory("huber")

    def test_tukey_values(self):
        """Test Tukey rho and derivatives inside and outside the cutoff"""
        z = np.array([0.0, 0.5, 1.0, 4.0])

        rho = tukey_loss(z)

        assert rho.shape == (3, 4)
        np.testing.assert_allclose(rho[0], [0.0, (1.0 - 0.125) / 3.0, 1.0 / 3.0, 1.0 / 3.0])
        np.testing.assert_allclose(rho[1], [1.0, 0.25, 0.0, 0.0])
        np.testing.assert_allclose(rho[2], [-2.0, -1.0, 0.0, 0.0])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
