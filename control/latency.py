"""
Actuation latency compensation.

Commands take effect only after the actuation delay, so the controller plans
from the pose the vehicle will have at that moment, not the measured one.
"""

from typing import Optional

from control.vehicle_model import BicycleModel
from data.formats.data_format import ActuatorCommand, Pose


def compensate_latency(
    pose: Pose,
    previous_command: Optional[ActuatorCommand],
    delay: float,
    model: BicycleModel,
    steering_scale: float,
    acceleration_scale: float = 1.0,
) -> Pose:
    """
    Predict the pose after ``delay`` seconds under the previous command.

    Args:
        pose: Measured pose
        previous_command: Last issued normalized command (None on the first tick)
        delay: Declared actuation delay (seconds)
        model: Kinematic model
        steering_scale: Model-unit steering per unit of normalized steering
        acceleration_scale: Acceleration per unit of normalized throttle

    Returns:
        Compensated pose
    """
    if delay < 0.0:
        raise ValueError(f"actuation delay must be non-negative, got {delay}")
    if previous_command is None:
        previous_command = ActuatorCommand.neutral()

    steering = previous_command.steering_angle * steering_scale
    acceleration = previous_command.throttle * acceleration_scale
    x, y, heading, speed = model.update(
        pose.x, pose.y, pose.heading, pose.speed,
        steering, acceleration, delay,
    )
    return Pose(x=float(x), y=float(y), heading=float(heading), speed=float(speed))
