"""
Vehicle dynamics model (kinematic bicycle model).
Used for latency compensation and as the horizon optimizer's dynamics.
"""

import numpy as np
from typing import Tuple


class BicycleModel:
    """
    Kinematic bicycle model.
    Simplified 2D model assuming no slip, roll or pitch.

    Positive steering turns clockwise (heading decreases), matching the
    simulator's steering convention.
    """

    def __init__(self, wheelbase: float = 2.67):
        """
        Initialize bicycle model.

        Args:
            wheelbase: Distance from the front axle to the center of gravity
                that yields a matching turning radius (meters)
        """
        if wheelbase <= 0.0:
            raise ValueError(f"wheelbase must be positive, got {wheelbase}")
        self.wheelbase = wheelbase

    def heading_rate(self, speed, steering_angle):
        """Heading change per second for the given speed and steering."""
        return -speed / self.wheelbase * steering_angle

    def update(self, x, y, heading, speed, steering_angle, acceleration,
               dt: float) -> Tuple:
        """
        Advance the vehicle state by one time slice.

        Works elementwise, so every state/input argument may be a float or
        an array of equal length.

        Args:
            x: Current x position
            y: Current y position
            heading: Current heading (radians)
            speed: Current speed
            steering_angle: Steering input (model units)
            acceleration: Acceleration input
            dt: Time step (seconds)

        Returns:
            New (x, y, heading, speed)
        """
        new_x = x + speed * np.cos(heading) * dt
        new_y = y + speed * np.sin(heading) * dt
        new_heading = heading + self.heading_rate(speed, steering_angle) * dt
        new_speed = speed + acceleration * dt

        # Heading is not wrapped to [-pi, pi]
        return new_x, new_y, new_heading, new_speed
