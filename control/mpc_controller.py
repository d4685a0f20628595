"""
MPC (Model Predictive Control) controller.

Plans N steps ahead with the kinematic bicycle model against a fixed
reference polynomial, executes only the first actuator pair, and replans on
the next tick.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import numpy as np
from scipy.optimize import Bounds, minimize

from control.vehicle_model import BicycleModel
from data.formats.data_format import ActuatorCommand, PredictedTrajectory, VehicleState
from trajectory.utils import polyderiv, polyeval


logger = logging.getLogger(__name__)

STATE_SIZE = 6  # x, y, heading, speed, cte, heading_error
X, Y, HEADING, SPEED, CTE, EPSI = range(STATE_SIZE)


@dataclass(frozen=True)
class CostWeights:
    """Weights of the tracking cost terms."""

    cte: float = 2000.0
    heading_error: float = 2000.0
    speed: float = 1.0
    steering: float = 5.0
    acceleration: float = 5.0
    # Change between consecutive actuator steps
    steering_rate: float = 200.0
    acceleration_rate: float = 10.0


@dataclass(frozen=True)
class HorizonConfig:
    """Prediction horizon configuration."""

    steps: int = 10
    step_duration: float = 0.1
    reference_speed: float = 40.0
    weights: CostWeights = field(default_factory=CostWeights)

    def __post_init__(self) -> None:
        if self.steps < 2:
            raise ValueError(f"horizon needs at least 2 steps, got {self.steps}")
        if self.step_duration <= 0.0:
            raise ValueError(f"step_duration must be positive, got {self.step_duration}")


@dataclass(frozen=True)
class VehicleConfig:
    """Vehicle geometry and actuator limits."""

    wheelbase: float = 2.67
    max_steering_angle_deg: float = 25.0
    max_acceleration: float = 1.0

    @property
    def steering_limit(self) -> float:
        """Bound on the optimizer's steering variable (model units)."""
        return math.radians(self.max_steering_angle_deg) * self.wheelbase


@dataclass(frozen=True)
class SolverConfig:
    """Iteration budget and tolerance of the numerical solve."""

    max_iterations: int = 200
    tolerance: float = 1e-4


@dataclass
class OptimizationProblem:
    """Solver-agnostic description of one horizon problem."""

    objective: Callable[[np.ndarray], float]
    gradient: Callable[[np.ndarray], np.ndarray]
    constraints: Callable[[np.ndarray], np.ndarray]  # equality residuals, == 0
    constraints_jacobian: Callable[[np.ndarray], np.ndarray]
    lower_bounds: np.ndarray
    upper_bounds: np.ndarray
    initial_guess: np.ndarray


@dataclass
class SolverResult:
    x: np.ndarray
    success: bool
    iterations: int = 0
    cost: float = float("nan")
    message: str = ""


class NonlinearSolver(Protocol):
    """Anything that can minimize an OptimizationProblem."""

    def solve(self, problem: OptimizationProblem) -> SolverResult:
        ...


class ScipySolver:
    """SLSQP from scipy with analytic gradient and constraint Jacobian."""

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()

    def solve(self, problem: OptimizationProblem) -> SolverResult:
        result = minimize(
            problem.objective,
            problem.initial_guess,
            jac=problem.gradient,
            method="SLSQP",
            bounds=Bounds(problem.lower_bounds, problem.upper_bounds),
            constraints=[{
                "type": "eq",
                "fun": problem.constraints,
                "jac": problem.constraints_jacobian,
            }],
            options={
                "maxiter": self.config.max_iterations,
                "ftol": self.config.tolerance,
            },
        )
        return SolverResult(
            x=np.asarray(result.x, dtype=float),
            success=bool(result.success),
            iterations=int(getattr(result, "nit", 0)),
            cost=float(result.fun),
            message=str(result.message),
        )


class HorizonLayout:
    """
    Index layout of the flat decision vector.

    N states per component (x, y, heading, speed, cte, heading_error), then
    N-1 steering values and N-1 acceleration values.
    """

    def __init__(self, steps: int):
        self.steps = steps
        self.state_vars = STATE_SIZE * steps
        self.steering_start = self.state_vars
        self.acceleration_start = self.steering_start + steps - 1
        self.size = self.acceleration_start + steps - 1

    def component(self, index: int) -> slice:
        return slice(index * self.steps, (index + 1) * self.steps)

    @property
    def steering(self) -> slice:
        return slice(self.steering_start, self.acceleration_start)

    @property
    def acceleration(self) -> slice:
        return slice(self.acceleration_start, self.size)

    def unpack(self, z: np.ndarray):
        """Split z into (states[6, N], steering[N-1], acceleration[N-1])."""
        states = z[:self.state_vars].reshape(STATE_SIZE, self.steps)
        return states, z[self.steering], z[self.acceleration]

    def pack(self, states: np.ndarray, steering: np.ndarray,
             acceleration: np.ndarray) -> np.ndarray:
        return np.concatenate([np.ravel(states), steering, acceleration])


@dataclass
class MPCSolution:
    """Output of one horizon solve."""

    command: ActuatorCommand
    steering: float  # First steering value (model units)
    acceleration: float  # First acceleration value
    predicted: PredictedTrajectory
    converged: bool
    cost: float
    iterations: int = 0
    message: str = ""


class MPCController:
    """
    Receding-horizon tracking controller.

    Stateless across calls: every solve builds an independent problem from
    the given state and reference polynomial.
    """

    def __init__(
        self,
        horizon: Optional[HorizonConfig] = None,
        vehicle: Optional[VehicleConfig] = None,
        solver: Optional[NonlinearSolver] = None,
    ):
        """
        Initialize MPC controller.

        Args:
            horizon: Horizon length, step duration, reference speed and weights
            vehicle: Wheelbase and actuator limits
            solver: Numerical solver, SLSQP by default
        """
        self.horizon = horizon or HorizonConfig()
        self.vehicle = vehicle or VehicleConfig()
        self.solver = solver or ScipySolver()
        self.model = BicycleModel(wheelbase=self.vehicle.wheelbase)
        self.layout = HorizonLayout(self.horizon.steps)

    @property
    def steering_scale(self) -> float:
        """Model-unit steering per unit of normalized command."""
        return self.vehicle.steering_limit

    @property
    def acceleration_scale(self) -> float:
        return self.vehicle.max_acceleration

    def _propagate(self, states: np.ndarray, steering: np.ndarray,
                   acceleration: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        """Predict states 1..N-1 from states 0..N-2 and the actuator sequence."""
        x, y, heading, speed, cte, epsi = states[:, :-1]
        dt = self.horizon.step_duration
        slope = polyeval(polyderiv(coeffs), x)

        nx, ny, nheading, nspeed = self.model.update(
            x, y, heading, speed, steering, acceleration, dt
        )
        ncte = polyeval(coeffs, x) - y - speed * np.sin(epsi) * dt
        nepsi = heading - np.arctan(slope) + self.model.heading_rate(speed, steering) * dt
        return np.vstack([nx, ny, nheading, nspeed, ncte, nepsi])

    def rollout(self, state: VehicleState, coeffs: np.ndarray,
                steering: Optional[np.ndarray] = None,
                acceleration: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Simulate the horizon from ``state`` under an actuator sequence.

        Missing sequences default to zeros. Returns a full decision vector
        that satisfies every equality constraint.
        """
        n = self.horizon.steps
        steering = np.zeros(n - 1) if steering is None else np.asarray(steering, dtype=float)
        acceleration = (
            np.zeros(n - 1) if acceleration is None else np.asarray(acceleration, dtype=float)
        )
        states = np.zeros((STATE_SIZE, n))
        states[:, 0] = state.as_array()
        for t in range(n - 1):
            states[:, t + 1] = self._propagate(
                states[:, t:t + 2], steering[t:t + 1], acceleration[t:t + 1], coeffs
            )[:, 0]
        return self.layout.pack(states, steering, acceleration)

    def objective(self, z: np.ndarray) -> float:
        """Tracking cost of a decision vector."""
        w = self.horizon.weights
        states, steering, acceleration = self.layout.unpack(z)
        speed_error = states[SPEED] - self.horizon.reference_speed
        return float(
            w.cte * np.sum(states[CTE] ** 2)
            + w.heading_error * np.sum(states[EPSI] ** 2)
            + w.speed * np.sum(speed_error ** 2)
            + w.steering * np.sum(steering ** 2)
            + w.acceleration * np.sum(acceleration ** 2)
            + w.steering_rate * np.sum(np.diff(steering) ** 2)
            + w.acceleration_rate * np.sum(np.diff(acceleration) ** 2)
        )

    def objective_gradient(self, z: np.ndarray) -> np.ndarray:
        w = self.horizon.weights
        layout = self.layout
        states, steering, acceleration = layout.unpack(z)
        grad = np.zeros(layout.size)
        grad[layout.component(CTE)] = 2.0 * w.cte * states[CTE]
        grad[layout.component(EPSI)] = 2.0 * w.heading_error * states[EPSI]
        grad[layout.component(SPEED)] = (
            2.0 * w.speed * (states[SPEED] - self.horizon.reference_speed)
        )
        grad[layout.steering] = _actuator_gradient(steering, w.steering, w.steering_rate)
        grad[layout.acceleration] = _actuator_gradient(
            acceleration, w.acceleration, w.acceleration_rate
        )
        return grad

    def constraints(self, z: np.ndarray, state: VehicleState,
                    coeffs: np.ndarray) -> np.ndarray:
        """
        Equality residuals, ordered like the state block of z.

        Row k*N is the initial condition of component k, rows k*N+1..k*N+N-1
        are its dynamics residuals.
        """
        states, steering, acceleration = self.layout.unpack(z)
        expected = np.empty_like(states)
        expected[:, 0] = state.as_array()
        expected[:, 1:] = self._propagate(states, steering, acceleration, coeffs)
        return np.ravel(states - expected)

    def constraints_jacobian(self, z: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        layout = self.layout
        n = self.horizon.steps
        dt = self.horizon.step_duration
        wheelbase = self.vehicle.wheelbase
        states, steering, _ = layout.unpack(z)
        x, _, heading, speed, _, epsi = states[:, :-1]

        jac = np.zeros((layout.state_vars, layout.size))
        jac[:, :layout.state_vars] = np.eye(layout.state_vars)

        t = np.arange(n - 1)

        def row(component):
            return component * n + 1 + t

        def col(component):
            return component * n + t

        col_steer = layout.steering_start + t
        col_accel = layout.acceleration_start + t

        d1 = polyderiv(coeffs)
        slope = polyeval(d1, x)
        slope_rate = polyeval(polyderiv(d1), x)

        # x' = x + v cos(psi) dt
        jac[row(X), col(X)] = -1.0
        jac[row(X), col(HEADING)] = speed * np.sin(heading) * dt
        jac[row(X), col(SPEED)] = -np.cos(heading) * dt
        # y' = y + v sin(psi) dt
        jac[row(Y), col(Y)] = -1.0
        jac[row(Y), col(HEADING)] = -speed * np.cos(heading) * dt
        jac[row(Y), col(SPEED)] = -np.sin(heading) * dt
        # psi' = psi - v / Lf * delta * dt
        jac[row(HEADING), col(HEADING)] = -1.0
        jac[row(HEADING), col(SPEED)] = steering / wheelbase * dt
        jac[row(HEADING), col_steer] = speed / wheelbase * dt
        # v' = v + a dt
        jac[row(SPEED), col(SPEED)] = -1.0
        jac[row(SPEED), col_accel] = -dt
        # cte' = f(x) - y - v sin(epsi) dt
        jac[row(CTE), col(X)] = -slope
        jac[row(CTE), col(Y)] = 1.0
        jac[row(CTE), col(SPEED)] = np.sin(epsi) * dt
        jac[row(CTE), col(EPSI)] = speed * np.cos(epsi) * dt
        # epsi' = psi - atan(f'(x)) - v / Lf * delta * dt
        jac[row(EPSI), col(HEADING)] = -1.0
        jac[row(EPSI), col(X)] = slope_rate / (1.0 + slope ** 2)
        jac[row(EPSI), col(SPEED)] = steering / wheelbase * dt
        jac[row(EPSI), col_steer] = speed / wheelbase * dt
        return jac

    def bounds(self):
        """Lower and upper variable bounds; states are unbounded."""
        layout = self.layout
        lower = np.full(layout.size, -np.inf)
        upper = np.full(layout.size, np.inf)
        lower[layout.steering] = -self.vehicle.steering_limit
        upper[layout.steering] = self.vehicle.steering_limit
        lower[layout.acceleration] = -self.vehicle.max_acceleration
        upper[layout.acceleration] = self.vehicle.max_acceleration
        return lower, upper

    def build_problem(self, state: VehicleState, coeffs) -> OptimizationProblem:
        coeffs = np.asarray(coeffs, dtype=float)
        lower, upper = self.bounds()
        return OptimizationProblem(
            objective=self.objective,
            gradient=self.objective_gradient,
            constraints=lambda z: self.constraints(z, state, coeffs),
            constraints_jacobian=lambda z: self.constraints_jacobian(z, coeffs),
            lower_bounds=lower,
            upper_bounds=upper,
            initial_guess=self.rollout(state, coeffs),
        )

    def normalize(self, steering: float, acceleration: float) -> ActuatorCommand:
        """Convert model-unit actuator values to a clamped normalized command."""
        return ActuatorCommand(
            steering_angle=steering / self.steering_scale,
            throttle=acceleration / self.acceleration_scale,
        ).clamped()

    def solve(self, state: VehicleState, coeffs,
              previous_command: Optional[ActuatorCommand] = None) -> MPCSolution:
        """
        Solve the horizon problem and return the first actuator pair.

        Args:
            state: Current state in the vehicle frame
            coeffs: Reference polynomial, lowest degree first
            previous_command: Last issued command, used by the fallback

        Returns:
            MPCSolution; ``converged`` is False when the fallback was applied
        """
        coeffs = np.asarray(coeffs, dtype=float)
        problem = self.build_problem(state, coeffs)
        result = self.solver.solve(problem)

        if result.success and np.all(np.isfinite(result.x)):
            states, steering, acceleration = self.layout.unpack(result.x)
            first_steering = float(steering[0])
            first_acceleration = float(acceleration[0])
            return MPCSolution(
                command=self.normalize(first_steering, first_acceleration),
                steering=first_steering,
                acceleration=first_acceleration,
                predicted=PredictedTrajectory(x=states[X].copy(), y=states[Y].copy()),
                converged=True,
                cost=float(result.cost),
                iterations=result.iterations,
                message=result.message,
            )

        logger.warning(
            "MPC solve did not converge (iterations=%d, message=%s); applying fallback",
            result.iterations,
            result.message,
        )
        return self._fallback(problem, previous_command, result)

    def _fallback(self, problem: OptimizationProblem,
                  previous_command: Optional[ActuatorCommand],
                  result: SolverResult) -> MPCSolution:
        """Hold the previous steering and coast."""
        held = (previous_command or ActuatorCommand.neutral()).clamped()
        command = ActuatorCommand(steering_angle=held.steering_angle, throttle=0.0)
        states, _, _ = self.layout.unpack(problem.initial_guess)
        return MPCSolution(
            command=command,
            steering=command.steering_angle * self.steering_scale,
            acceleration=0.0,
            predicted=PredictedTrajectory(x=states[X].copy(), y=states[Y].copy()),
            converged=False,
            cost=float(self.objective(problem.initial_guess)),
            iterations=result.iterations,
            message=result.message,
        )


def _actuator_gradient(values: np.ndarray, weight: float, rate_weight: float) -> np.ndarray:
    grad = 2.0 * weight * values
    delta = np.diff(values)
    grad[:-1] -= 2.0 * rate_weight * delta
    grad[1:] += 2.0 * rate_weight * delta
    return grad


def build_mpc_controller(config: dict, solver: Optional[NonlinearSolver] = None) -> MPCController:
    """Build an MPCController from the config dictionary."""
    horizon_cfg = config.get("horizon", {})
    weights_cfg = config.get("weights", {})
    vehicle_cfg = config.get("vehicle", {})
    solver_cfg = config.get("solver", {})

    defaults = CostWeights()
    weights = CostWeights(
        cte=float(weights_cfg.get("cte", defaults.cte)),
        heading_error=float(weights_cfg.get("heading_error", defaults.heading_error)),
        speed=float(weights_cfg.get("speed", defaults.speed)),
        steering=float(weights_cfg.get("steering", defaults.steering)),
        acceleration=float(weights_cfg.get("acceleration", defaults.acceleration)),
        steering_rate=float(weights_cfg.get("steering_rate", defaults.steering_rate)),
        acceleration_rate=float(
            weights_cfg.get("acceleration_rate", defaults.acceleration_rate)
        ),
    )
    horizon = HorizonConfig(
        steps=int(horizon_cfg.get("steps", 10)),
        step_duration=float(horizon_cfg.get("step_duration", 0.1)),
        reference_speed=float(horizon_cfg.get("reference_speed", 40.0)),
        weights=weights,
    )
    vehicle = VehicleConfig(
        wheelbase=float(vehicle_cfg.get("wheelbase", 2.67)),
        max_steering_angle_deg=float(vehicle_cfg.get("max_steering_angle_deg", 25.0)),
        max_acceleration=float(vehicle_cfg.get("max_acceleration", 1.0)),
    )
    if solver is None:
        solver = ScipySolver(SolverConfig(
            max_iterations=int(solver_cfg.get("max_iterations", 200)),
            tolerance=float(solver_cfg.get("tolerance", 1e-4)),
        ))
    return MPCController(horizon=horizon, vehicle=vehicle, solver=solver)
