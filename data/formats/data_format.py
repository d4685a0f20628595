"""
Data format definitions for the MPC control stack.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
import numpy as np


@dataclass(frozen=True)
class Telemetry:
    """One inbound telemetry sample (world frame)."""
    ptsx: Tuple[float, ...]  # Reference waypoints x (world coords)
    ptsy: Tuple[float, ...]  # Reference waypoints y (world coords)
    x: float
    y: float
    psi: float  # Heading (radians)
    speed: float
    steering_angle: float = 0.0  # Previous command, echoed by the vehicle
    throttle: float = 0.0  # Previous command, echoed by the vehicle

    def __post_init__(self):
        object.__setattr__(self, "ptsx", tuple(float(v) for v in self.ptsx))
        object.__setattr__(self, "ptsy", tuple(float(v) for v in self.ptsy))


@dataclass(frozen=True)
class Pose:
    """Kinematic part of the vehicle state."""
    x: float
    y: float
    heading: float
    speed: float


@dataclass(frozen=True)
class VehicleState:
    """Full state vector consumed by the horizon optimizer."""
    x: float
    y: float
    heading: float
    speed: float
    cross_track_error: float
    heading_error: float

    def as_array(self) -> np.ndarray:
        return np.array([
            self.x, self.y, self.heading, self.speed,
            self.cross_track_error, self.heading_error,
        ], dtype=float)


@dataclass(frozen=True)
class ActuatorCommand:
    """Normalized actuator command sent to the vehicle."""
    steering_angle: float  # -1.0 to 1.0
    throttle: float  # -1.0 to 1.0

    @classmethod
    def neutral(cls) -> "ActuatorCommand":
        return cls(steering_angle=0.0, throttle=0.0)

    def clamped(self) -> "ActuatorCommand":
        """Return a copy with both values inside [-1, 1]."""
        return ActuatorCommand(
            steering_angle=float(np.clip(self.steering_angle, -1.0, 1.0)),
            throttle=float(np.clip(self.throttle, -1.0, 1.0)),
        )


@dataclass
class PredictedTrajectory:
    """Planned path over the horizon (vehicle frame), diagnostics only."""
    x: np.ndarray
    y: np.ndarray

    def __len__(self) -> int:
        return len(self.x)


@dataclass
class ControlOutput:
    """Result of one control tick."""
    command: ActuatorCommand
    predicted: PredictedTrajectory
    reference_x: np.ndarray  # Waypoints in vehicle frame
    reference_y: np.ndarray
    state: VehicleState
    coefficients: np.ndarray
    converged: bool = True
    solve_time: float = 0.0
    cost: Optional[float] = None
    metadata: dict = field(default_factory=dict)

    def to_message(self) -> dict:
        """Build the outbound steer payload."""
        return {
            "steering_angle": float(self.command.steering_angle),
            "throttle": float(self.command.throttle),
            "mpc_x": [float(v) for v in self.predicted.x],
            "mpc_y": [float(v) for v in self.predicted.y],
            "next_x": [float(v) for v in self.reference_x],
            "next_y": [float(v) for v in self.reference_y],
        }
