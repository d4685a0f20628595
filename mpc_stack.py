"""
Main MPC stack integration script.
Connects all components: latency compensation, frame transform,
reference fitting, error evaluation and the horizon optimizer.
"""

import time
import sys
import logging
from pathlib import Path
from typing import Optional

import numpy as np
import yaml

# Add paths
sys.path.insert(0, str(Path(__file__).parent))

from control.latency import compensate_latency
from control.mpc_controller import MPCController, NonlinearSolver, build_mpc_controller
from data.formats.data_format import (
    ActuatorCommand,
    ControlOutput,
    Pose,
    Telemetry,
    VehicleState,
)
from trajectory.utils import (
    DEFAULT_POLYNOMIAL_DEGREE,
    compute_tracking_errors,
    fit_reference_polynomial,
    to_vehicle_frame,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "mpc_config.yaml"
PREVIOUS_COMMAND_SOURCES = ("loop", "telemetry")


def configure_logging(level: int = logging.INFO) -> None:
    """Log to stderr and tmp/logs/mpc_stack.log."""
    log_dir = Path(__file__).parent / 'tmp' / 'logs'
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / 'mpc_stack.log'

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(str(log_file))
        ]
    )


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}


class MPCStack:
    """
    One control tick, end to end.

    ``process_telemetry`` mutates nothing: the previous command comes in as
    an argument, so identical inputs always produce identical outputs.
    """

    def __init__(self, config: Optional[dict] = None,
                 solver: Optional[NonlinearSolver] = None):
        """
        Initialize MPC stack.

        Args:
            config: Configuration dictionary (see config/mpc_config.yaml)
            solver: Optional replacement for the default SLSQP solver
        """
        self.config = config or {}
        latency_cfg = self.config.get("latency", {})
        trajectory_cfg = self.config.get("trajectory", {})

        self.controller: MPCController = build_mpc_controller(self.config, solver=solver)
        self.model = self.controller.model
        self.actuation_delay = float(latency_cfg.get("actuation_delay_s", 0.1))
        if self.actuation_delay < 0.0:
            raise ValueError(f"actuation_delay_s must be non-negative, got {self.actuation_delay}")
        self.polynomial_degree = int(
            trajectory_cfg.get("polynomial_degree", DEFAULT_POLYNOMIAL_DEGREE)
        )
        self.allow_reduced_degree = bool(trajectory_cfg.get("allow_reduced_degree", True))

    def compute_state(self, telemetry: Telemetry,
                      previous_command: Optional[ActuatorCommand]):
        """
        Build the vehicle-frame state and the reference polynomial.

        Returns:
            (state, coefficients, reference_x, reference_y)
        """
        measured = Pose(
            x=float(telemetry.x),
            y=float(telemetry.y),
            heading=float(telemetry.psi),
            speed=float(telemetry.speed),
        )
        pose = compensate_latency(
            measured,
            previous_command,
            self.actuation_delay,
            self.model,
            steering_scale=self.controller.steering_scale,
            acceleration_scale=self.controller.acceleration_scale,
        )

        reference_x, reference_y = to_vehicle_frame(
            telemetry.ptsx, telemetry.ptsy, pose.x, pose.y, pose.heading
        )
        coeffs = fit_reference_polynomial(
            reference_x,
            reference_y,
            self.polynomial_degree,
            allow_reduced_degree=self.allow_reduced_degree,
        )
        cte, epsi = compute_tracking_errors(coeffs)

        # The compensated pose is the vehicle-frame origin
        state = VehicleState(
            x=0.0,
            y=0.0,
            heading=0.0,
            speed=pose.speed,
            cross_track_error=cte,
            heading_error=epsi,
        )
        return state, coeffs, reference_x, reference_y

    def process_telemetry(self, telemetry: Telemetry,
                          previous_command: Optional[ActuatorCommand] = None) -> ControlOutput:
        """
        Compute the actuator command for one telemetry sample.

        Args:
            telemetry: Inbound telemetry (world frame)
            previous_command: Command issued on the previous tick, None on the first

        Returns:
            ControlOutput with the clamped command and diagnostic paths

        Raises:
            UnderdeterminedFitError: waypoints cannot determine the reference curve
        """
        start_time = time.time()
        state, coeffs, reference_x, reference_y = self.compute_state(telemetry, previous_command)
        solution = self.controller.solve(state, coeffs, previous_command=previous_command)
        solve_time = time.time() - start_time

        logger.debug(
            "tick cte=%.3f epsi=%.3f steer=%.3f throttle=%.3f converged=%s (%.1f ms)",
            state.cross_track_error,
            state.heading_error,
            solution.command.steering_angle,
            solution.command.throttle,
            solution.converged,
            solve_time * 1000.0,
        )

        return ControlOutput(
            command=solution.command.clamped(),
            predicted=solution.predicted,
            reference_x=np.asarray(reference_x),
            reference_y=np.asarray(reference_y),
            state=state,
            coefficients=np.asarray(coeffs),
            converged=solution.converged,
            solve_time=solve_time,
            cost=solution.cost,
            metadata={
                "iterations": solution.iterations,
                "solver_message": solution.message,
            },
        )


class ControlLoop:
    """
    Sequential tick driver that owns the previous command.

    The previous command is read at the start of a tick and replaced with
    that tick's command at the end; ticks must not overlap.
    """

    def __init__(self, stack: MPCStack, previous_command_source: str = "loop"):
        if previous_command_source not in PREVIOUS_COMMAND_SOURCES:
            raise ValueError(
                f"previous_command_source must be one of {PREVIOUS_COMMAND_SOURCES}, "
                f"got {previous_command_source!r}"
            )
        self.stack = stack
        self.previous_command_source = previous_command_source
        self.previous_command: Optional[ActuatorCommand] = None
        self.tick_count = 0
        self.fallback_count = 0

    def _previous_for(self, telemetry: Telemetry) -> Optional[ActuatorCommand]:
        if self.previous_command_source == "telemetry":
            return ActuatorCommand(
                steering_angle=float(telemetry.steering_angle),
                throttle=float(telemetry.throttle),
            ).clamped()
        return self.previous_command

    def step(self, telemetry: Telemetry) -> ControlOutput:
        """Run one tick and record its command as the new previous command."""
        output = self.stack.process_telemetry(telemetry, self._previous_for(telemetry))
        self.previous_command = output.command
        self.tick_count += 1
        if not output.converged:
            self.fallback_count += 1
        return output

    def reset(self) -> None:
        self.previous_command = None
        self.tick_count = 0
        self.fallback_count = 0


def build_control_loop(config: dict, solver: Optional[NonlinearSolver] = None) -> ControlLoop:
    """Build a ControlLoop from the config dictionary."""
    latency_cfg = config.get("latency", {})
    return ControlLoop(
        MPCStack(config, solver=solver),
        previous_command_source=str(latency_cfg.get("previous_command_source", "loop")),
    )


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Run MPC path-tracking stack')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--host', type=str, default=None,
                        help='Bridge listen host (overrides config)')
    parser.add_argument('--port', type=int, default=None,
                        help='Bridge listen port (overrides config)')
    parser.add_argument('--no-dispatch-delay', dest='dispatch_delay', action='store_false',
                        default=None,
                        help='Send commands immediately instead of waiting the actuation delay')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')

    args = parser.parse_args()

    configure_logging(getattr(logging, args.log_level))
    config = load_config(args.config)

    bridge_cfg = config.setdefault("bridge", {})
    if args.host is not None:
        bridge_cfg["host"] = args.host
    if args.port is not None:
        bridge_cfg["port"] = args.port
    if args.dispatch_delay is not None:
        config.setdefault("latency", {})["dispatch_delay_enabled"] = args.dispatch_delay

    from bridge.server import run_server

    run_server(config)


if __name__ == "__main__":
    main()
