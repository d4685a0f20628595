#!/usr/bin/env python3
"""
Closed-loop offline drive against the kinematic bicycle model.

The plant is the same kinematic model the controller uses, so this checks
the control loop wiring and tuning without a simulator.

Usage:
    python tools/simulate_drive.py
    python tools/simulate_drive.py --ticks 300 --amplitude 8 --plot
"""

import argparse
import sys
from pathlib import Path

import numpy as np

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from control.vehicle_model import BicycleModel
from data.formats.data_format import ActuatorCommand, Telemetry
from mpc_stack import build_control_loop, load_config

WINDOW_SIZE = 6


def build_track(length: float, spacing: float, amplitude: float, wavelength: float):
    """Sinusoidal centerline sampled every ``spacing`` meters along x."""
    xs = np.arange(0.0, length, spacing)
    ys = amplitude * np.sin(2.0 * np.pi * xs / wavelength)
    return xs, ys


def waypoint_window(track_x: np.ndarray, track_y: np.ndarray, x: float, y: float):
    """The next WINDOW_SIZE waypoints starting at the closest one ahead."""
    nearest = int(np.argmin((track_x - x) ** 2 + (track_y - y) ** 2))
    if track_x[nearest] < x:
        nearest += 1
    end = min(nearest + WINDOW_SIZE, len(track_x))
    return track_x[nearest:end], track_y[nearest:end]


def simulate(config: dict, ticks: int, amplitude: float, wavelength: float,
             initial_speed: float, tick_period: float) -> dict:
    loop = build_control_loop(config)
    stack = loop.stack
    plant = BicycleModel(wheelbase=stack.controller.vehicle.wheelbase)
    steering_scale = stack.controller.steering_scale
    acceleration_scale = stack.controller.acceleration_scale

    track_x, track_y = build_track(
        length=max(200.0, initial_speed * 2.0 * ticks * tick_period),
        spacing=5.0,
        amplitude=amplitude,
        wavelength=wavelength,
    )

    x, y, heading, speed = 0.0, 0.0, 0.0, initial_speed
    applied = ActuatorCommand.neutral()
    path_x, path_y, cte_log, speeds = [], [], [], []

    for _ in range(ticks):
        ptsx, ptsy = waypoint_window(track_x, track_y, x, y)
        if len(ptsx) < 2:
            break

        telemetry = Telemetry(
            ptsx=list(ptsx), ptsy=list(ptsy), x=x, y=y, psi=heading, speed=speed,
            steering_angle=applied.steering_angle, throttle=applied.throttle,
        )
        command = loop.step(telemetry).command

        # The old command acts during the actuation delay, the new one after
        for active, dt in ((applied, stack.actuation_delay), (command, tick_period)):
            x, y, heading, speed = plant.update(
                x, y, heading, speed,
                active.steering_angle * steering_scale,
                active.throttle * acceleration_scale,
                dt,
            )
        applied = command

        path_x.append(x)
        path_y.append(y)
        cte_log.append(y - amplitude * np.sin(2.0 * np.pi * x / wavelength))
        speeds.append(speed)

    cte = np.asarray(cte_log)
    return {
        "ticks": loop.tick_count,
        "fallbacks": loop.fallback_count,
        "cte_rms": float(np.sqrt(np.mean(cte ** 2))) if len(cte) else 0.0,
        "cte_max": float(np.max(np.abs(cte))) if len(cte) else 0.0,
        "mean_speed": float(np.mean(speeds)) if speeds else 0.0,
        "path_x": path_x,
        "path_y": path_y,
        "track_x": track_x,
        "track_y": track_y,
    }


def plot_result(result: dict):
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(12, 4))
    ax.plot(result["track_x"], result["track_y"], "y--", label="reference")
    ax.plot(result["path_x"], result["path_y"], "g-", label="vehicle")
    ax.set_xlim(0.0, max(result["path_x"]) + 10.0)
    ax.set_xlabel("x (m)")
    ax.set_ylabel("y (m)")
    ax.legend()
    ax.set_title(f"cte rms={result['cte_rms']:.2f} m, mean speed={result['mean_speed']:.1f}")
    plt.show()


def main():
    parser = argparse.ArgumentParser(description="Closed-loop MPC drive on a synthetic track")
    parser.add_argument("--config", type=str, default=None, help="Configuration YAML file")
    parser.add_argument("--ticks", type=int, default=200, help="Number of control ticks")
    parser.add_argument("--amplitude", type=float, default=5.0, help="Track amplitude (m)")
    parser.add_argument("--wavelength", type=float, default=150.0, help="Track wavelength (m)")
    parser.add_argument("--initial-speed", type=float, default=10.0, help="Initial speed")
    parser.add_argument("--tick-period", type=float, default=0.05,
                        help="Plant time per tick after the actuation delay (s)")
    parser.add_argument("--plot", action="store_true", help="Plot the driven path")
    args = parser.parse_args()

    config = load_config(args.config)
    result = simulate(
        config,
        ticks=args.ticks,
        amplitude=args.amplitude,
        wavelength=args.wavelength,
        initial_speed=args.initial_speed,
        tick_period=args.tick_period,
    )

    print(f"Ticks:       {result['ticks']}")
    print(f"Fallbacks:   {result['fallbacks']}")
    print(f"CTE RMS:     {result['cte_rms']:.3f} m")
    print(f"CTE max:     {result['cte_max']:.3f} m")
    print(f"Mean speed:  {result['mean_speed']:.2f}")

    if args.plot and result["path_x"]:
        plot_result(result)


if __name__ == "__main__":
    main()
