"""
Integration tests for the full control tick.
Tests the pipeline: Latency -> Frame transform -> Fit -> Errors -> Optimizer
"""

import math
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from control.mpc_controller import SolverResult
from data.formats.data_format import ActuatorCommand, Telemetry
from mpc_stack import ControlLoop, MPCStack, build_control_loop, load_config
from trajectory.utils import UnderdeterminedFitError, polyeval


def _straight_telemetry(**overrides):
    fields = dict(
        ptsx=[10.0, 20.0, 30.0],
        ptsy=[0.0, 0.0, 0.0],
        x=0.0,
        y=0.0,
        psi=0.0,
        speed=10.0,
        steering_angle=0.0,
        throttle=0.0,
    )
    fields.update(overrides)
    return Telemetry(**fields)


def _curve_telemetry(rng):
    """Waypoints ahead of a random pose along a random gentle curve."""
    x0, y0 = rng.uniform(-100.0, 100.0, size=2)
    psi = rng.uniform(-math.pi, math.pi)
    speed = rng.uniform(0.0, 50.0)
    local_x = np.array([5.0, 15.0, 25.0, 35.0, 45.0, 55.0])
    local_y = (
        rng.uniform(-3.0, 3.0)
        + rng.uniform(-0.1, 0.1) * local_x
        + rng.uniform(-0.002, 0.002) * local_x ** 2
    )
    ptsx = x0 + local_x * math.cos(psi) - local_y * math.sin(psi)
    ptsy = y0 + local_x * math.sin(psi) + local_y * math.cos(psi)
    return Telemetry(
        ptsx=list(ptsx), ptsy=list(ptsy), x=x0, y=y0, psi=psi, speed=speed,
        steering_angle=rng.uniform(-1.0, 1.0), throttle=rng.uniform(-1.0, 1.0),
    )


class FailingSolver:
    def solve(self, problem):
        return SolverResult(x=problem.initial_guess, success=False, message="Iteration limit reached")


class TestEndToEnd:
    def test_straight_waypoints_scenario(self):
        """Waypoints on the x-axis, pose at origin, speed 10, no previous command."""
        stack = MPCStack(load_config())

        output = stack.process_telemetry(_straight_telemetry(), previous_command=None)

        assert output.state.cross_track_error == pytest.approx(0.0, abs=1e-9)
        assert output.state.heading_error == pytest.approx(0.0, abs=1e-9)
        # First-tick compensation: 10 m/s for 0.1 s with zero command
        np.testing.assert_allclose(output.reference_x, [9.0, 19.0, 29.0])
        assert output.converged
        assert output.command.steering_angle == pytest.approx(0.0, abs=0.05)
        # Reference speed is above the current speed
        assert output.command.throttle > 0.1

    def test_outbound_message_shape(self):
        stack = MPCStack(load_config())
        message = stack.process_telemetry(_straight_telemetry()).to_message()

        assert set(message) == {"steering_angle", "throttle", "mpc_x", "mpc_y", "next_x", "next_y"}
        assert len(message["mpc_x"]) == len(message["mpc_y"]) == 10
        assert len(message["next_x"]) == len(message["next_y"]) == 3
        assert all(isinstance(v, float) for v in message["mpc_x"])

    def test_curve_fit_matches_transformed_waypoints(self):
        stack = MPCStack(load_config())
        telemetry = _curve_telemetry(np.random.default_rng(3))
        output = stack.process_telemetry(telemetry)

        assert len(output.coefficients) == 4
        fitted = polyeval(output.coefficients, output.reference_x)
        np.testing.assert_allclose(fitted, output.reference_y, atol=1e-6)

    def test_underdetermined_waypoints_propagate(self):
        stack = MPCStack(load_config())
        with pytest.raises(UnderdeterminedFitError):
            stack.process_telemetry(_straight_telemetry(ptsx=[10.0, 10.0], ptsy=[0.0, 1.0]))


class TestProperties:
    def test_commands_within_bounds_for_random_inputs(self):
        stack = MPCStack(load_config())
        rng = np.random.default_rng(42)
        for _ in range(8):
            telemetry = _curve_telemetry(rng)
            previous = ActuatorCommand(
                steering_angle=rng.uniform(-1.0, 1.0), throttle=rng.uniform(-1.0, 1.0)
            )
            command = stack.process_telemetry(telemetry, previous).command
            assert -1.0 <= command.steering_angle <= 1.0
            assert -1.0 <= command.throttle <= 1.0

    def test_same_inputs_same_outputs(self):
        stack = MPCStack(load_config())
        telemetry = _curve_telemetry(np.random.default_rng(11))
        previous = ActuatorCommand(steering_angle=0.1, throttle=0.3)

        first = stack.process_telemetry(telemetry, previous)
        second = stack.process_telemetry(telemetry, previous)

        assert first.command == second.command
        np.testing.assert_array_equal(first.predicted.x, second.predicted.x)
        np.testing.assert_array_equal(first.predicted.y, second.predicted.y)
        np.testing.assert_array_equal(first.coefficients, second.coefficients)

    def test_previous_command_shifts_compensated_pose(self):
        stack = MPCStack(load_config())
        telemetry = _straight_telemetry(speed=20.0)
        neutral = stack.process_telemetry(telemetry, None)
        turning = stack.process_telemetry(
            telemetry, ActuatorCommand(steering_angle=0.5, throttle=0.0)
        )
        # Clockwise turn during the delay puts the path to the left
        assert turning.state.heading_error < neutral.state.heading_error


class TestControlLoop:
    def test_previous_command_threaded_between_ticks(self):
        loop = build_control_loop(load_config())
        assert loop.previous_command is None

        first = loop.step(_straight_telemetry())
        assert loop.previous_command == first.command
        assert loop.tick_count == 1

        second = loop.step(_straight_telemetry())
        # The second tick compensated with the first tick's throttle
        assert second.state.speed == pytest.approx(10.0 + first.command.throttle * 0.1)

    def test_telemetry_source_uses_echoed_command(self):
        config = load_config()
        config["latency"] = dict(config.get("latency", {}), previous_command_source="telemetry")
        loop = build_control_loop(config)

        output = loop.step(_straight_telemetry(throttle=1.0))
        assert output.state.speed == pytest.approx(10.0 + 1.0 * 0.1)

    def test_fallback_counted_and_loop_continues(self):
        loop = ControlLoop(MPCStack(load_config(), solver=FailingSolver()))
        loop.step(_straight_telemetry())
        loop.step(_straight_telemetry())
        assert loop.tick_count == 2
        assert loop.fallback_count == 2
        assert loop.previous_command == ActuatorCommand.neutral()

    def test_reset(self):
        loop = build_control_loop(load_config())
        loop.step(_straight_telemetry())
        loop.reset()
        assert loop.previous_command is None
        assert loop.tick_count == 0

    def test_invalid_source(self):
        with pytest.raises(ValueError):
            ControlLoop(MPCStack({}), previous_command_source="elsewhere")


class TestConfig:
    def test_default_config_file_loads(self):
        config = load_config()
        assert config["horizon"]["steps"] == 10
        assert config["bridge"]["port"] == 4567
        assert config["latency"]["actuation_delay_s"] == pytest.approx(0.1)

    def test_missing_config_falls_back_to_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "missing.yaml")) == {}
        stack = MPCStack({})
        assert stack.actuation_delay == pytest.approx(0.1)
        assert stack.polynomial_degree == 3

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            MPCStack({"latency": {"actuation_delay_s": -0.1}})
